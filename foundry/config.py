"""Loading, saving and validation of VirtualMachine YAML documents."""

from __future__ import annotations

import ipaddress
from pathlib import Path
from typing import Set, Union

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from foundry.constants import (
    API_GROUP_VERSION,
    FQDN_RE,
    SUPPORTED_CPU_MODES,
    SUPPORTED_DISK_FORMATS,
    VIRTUAL_MACHINE_KIND,
    VM_NAME_RE,
)
from foundry.exceptions import EncodingError, ValidationError
from foundry.models import CloudInitSpec, NetworkInterfaceSpec, VirtualMachine, apply_defaults, set_default_api_version
from foundry.utils import log

SSH_KEY_TYPES = (
    "ssh-rsa",
    "ssh-dss",
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
)


def load_from_file(path: Union[str, Path]) -> VirtualMachine:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(f"failed to read file {path}: {exc}") from exc
    log("DEBUG", f"Loading VirtualMachine from {path}")
    return load_from_yaml(text)


def load_from_yaml(text: str) -> VirtualMachine:
    """Parse, default, normalize and validate a VirtualMachine document."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise EncodingError(f"failed to unmarshal YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise EncodingError("failed to unmarshal YAML: document is not a mapping")

    vm = VirtualMachine.from_dict(data)
    if not vm.api_version:
        raise ValidationError("missing required field: apiVersion")
    if not vm.kind:
        raise ValidationError("missing required field: kind")
    if vm.api_version != API_GROUP_VERSION:
        raise ValidationError(f"unsupported apiVersion: {vm.api_version} (expected: {API_GROUP_VERSION})")
    if vm.kind != VIRTUAL_MACHINE_KIND:
        raise ValidationError(f"unsupported kind: {vm.kind} (expected: {VIRTUAL_MACHINE_KIND})")

    apply_defaults(vm)
    vm.normalize()
    validate_spec(vm)
    return vm


def save_to_file(vm: VirtualMachine, path: Union[str, Path]) -> None:
    set_default_api_version(vm)
    text = yaml.safe_dump(vm.to_dict(), sort_keys=False, default_flow_style=False)
    Path(path).write_text(text, encoding="utf-8")


def validate_spec(vm: VirtualMachine) -> None:
    spec = vm.spec
    if not vm.name:
        raise ValidationError("metadata.name is required")
    if not VM_NAME_RE.match(vm.name):
        raise ValidationError(
            "metadata.name must start and end with alphanumeric characters and contain only "
            f"alphanumeric, hyphens, or underscores, got {vm.name!r}"
        )
    if spec.vcpus <= 0:
        raise ValidationError("spec.vcpus must be greater than 0")
    if spec.memory_gib <= 0:
        raise ValidationError("spec.memoryGiB must be greater than 0")
    if spec.cpu_mode and spec.cpu_mode not in SUPPORTED_CPU_MODES:
        raise ValidationError(f"spec.cpuMode must be one of {', '.join(sorted(SUPPORTED_CPU_MODES))}")

    boot = spec.boot_disk
    if boot.size_gb <= 0:
        raise ValidationError("spec.bootDisk.sizeGB must be greater than 0")
    if not boot.image and not boot.empty:
        raise ValidationError("spec.bootDisk must specify either 'image' or 'empty: true'")
    if boot.image and boot.empty:
        raise ValidationError("spec.bootDisk cannot specify both 'image' and 'empty: true'")
    if boot.format and boot.format not in SUPPORTED_DISK_FORMATS:
        raise ValidationError(f"spec.bootDisk.format must be one of {', '.join(sorted(SUPPORTED_DISK_FORMATS))}")

    devices_seen: Set[str] = set()
    for idx, disk in enumerate(spec.data_disks):
        if not disk.device:
            raise ValidationError(f"spec.dataDisks[{idx}].device is required")
        if disk.size_gb <= 0:
            raise ValidationError(f"spec.dataDisks[{idx}].sizeGB must be greater than 0")
        if disk.device in devices_seen:
            raise ValidationError(f"spec.dataDisks[{idx}].device {disk.device!r} is duplicated")
        devices_seen.add(disk.device)

    if not spec.network_interfaces:
        raise ValidationError("spec.networkInterfaces must have at least one interface")
    ips_seen: Set[str] = set()
    for idx, iface in enumerate(spec.network_interfaces):
        _validate_interface(iface, f"spec.networkInterfaces[{idx}]")
        if iface.ip in ips_seen:
            raise ValidationError(f"spec.networkInterfaces[{idx}].ip {iface.ip!r} is duplicated")
        ips_seen.add(iface.ip)

    if spec.cloud_init is not None:
        _validate_cloud_init(spec.cloud_init)


def _validate_interface(iface: NetworkInterfaceSpec, path: str) -> None:
    if not iface.ip:
        raise ValidationError(f"{path}.ip is required")
    if not iface.gateway:
        raise ValidationError(f"{path}.gateway is required")
    if not iface.bridge:
        raise ValidationError(f"{path}.bridge is required")
    if "/" not in iface.ip:
        raise ValidationError(f"{path}.ip must use CIDR notation, got {iface.ip!r}")
    try:
        address = ipaddress.ip_interface(iface.ip)
    except ValueError as exc:
        raise ValidationError(f"{path}.ip has invalid ip/cidr format {iface.ip!r}") from exc
    if address.version != 4:
        raise ValidationError(f"{path}.ip must be an IPv4 address, got {iface.ip!r}")
    try:
        ipaddress.ip_address(iface.gateway)
    except ValueError as exc:
        raise ValidationError(f"{path}.gateway is not a valid IP address: {iface.gateway!r}") from exc
    for idx, dns in enumerate(iface.dns_servers):
        try:
            ipaddress.ip_address(dns)
        except ValueError as exc:
            raise ValidationError(f"{path}.dnsServers[{idx}] is not a valid IP address: {dns!r}") from exc


def _validate_cloud_init(cloud_init: CloudInitSpec) -> None:
    if cloud_init.fqdn and not FQDN_RE.match(cloud_init.fqdn):
        raise ValidationError(
            f"spec.cloudInit.fqdn must be a valid hostname with domain (e.g., host.example.com), got {cloud_init.fqdn!r}"
        )
    for idx, key in enumerate(cloud_init.ssh_authorized_keys):
        parts = key.split()
        if len(parts) < 2 or parts[0] not in SSH_KEY_TYPES:
            raise ValidationError(f"spec.cloudInit.sshAuthorizedKeys[{idx}] is not a valid SSH public key")
    if cloud_init.password_hash:
        if len(cloud_init.password_hash) < 10 or not cloud_init.password_hash.startswith("$"):
            raise ValidationError("spec.cloudInit.passwordHash must be a valid crypt hash (should start with $)")
