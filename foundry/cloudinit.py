"""cloud-init NoCloud seed generation.

Produces the three NoCloud documents (``user-data``, ``meta-data`` and
``network-config``) for a VirtualMachine and packs them into an ISO labelled
``CIDATA`` so cloud-init discovers it on first boot.

See https://cloudinit.readthedocs.io/en/latest/reference/datasources/nocloud.html
"""

from __future__ import annotations

import subprocess
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from foundry.constants import CLOUD_CONFIG_HEADER, CLOUD_INIT_LABEL, CLOUD_INIT_OUTPUT, SEED_FILES
from foundry.exceptions import FoundryError, ValidationError
from foundry.models import VirtualMachine
from foundry.naming import interface_mac
from foundry.utils import log, run


def _dump(data: Dict[str, Any]) -> str:
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def _require_vm(vm: Optional[VirtualMachine]) -> VirtualMachine:
    if vm is None:
        raise ValidationError("VM configuration cannot be None")
    return vm


def generate_user_data(vm: Optional[VirtualMachine]) -> str:
    """Return the cloud-config user-data, including the ``#cloud-config`` header."""
    vm = _require_vm(vm)
    cloud_init = vm.spec.cloud_init

    hostname = fqdn = vm.name
    if cloud_init is not None and cloud_init.fqdn:
        fqdn = cloud_init.fqdn
        hostname = fqdn.split(".", 1)[0]

    user_data: Dict[str, Any] = {"hostname": hostname, "fqdn": fqdn}
    ssh_pwauth = False
    if cloud_init is not None:
        if cloud_init.ssh_authorized_keys:
            user_data["ssh_authorized_keys"] = list(cloud_init.ssh_authorized_keys)
        if cloud_init.password_hash:
            user_data["chpasswd"] = {"expire": False, "list": f"root:{cloud_init.password_hash}"}
        ssh_pwauth = cloud_init.ssh_password_auth
    user_data["ssh_pwauth"] = ssh_pwauth
    user_data["output"] = {"all": CLOUD_INIT_OUTPUT}

    return f"{CLOUD_CONFIG_HEADER}\n" + _dump(user_data)


def generate_meta_data(vm: Optional[VirtualMachine]) -> str:
    """Return meta-data.

    instance-id is the VM name, so a VM destroyed and recreated under the same
    name is treated by cloud-init as the same instance.
    """
    vm = _require_vm(vm)
    return _dump({"instance-id": vm.name, "local-hostname": vm.name})


def generate_network_config(vm: Optional[VirtualMachine]) -> str:
    """Return a version 2 network-config matching interfaces by MAC address."""
    vm = _require_vm(vm)
    if not vm.spec.network_interfaces:
        raise ValidationError("at least one network interface is required")

    ethernets: Dict[str, Any] = {}
    for idx, iface in enumerate(vm.spec.network_interfaces):
        try:
            mac = interface_mac(iface)
        except ValidationError as exc:
            raise ValidationError(f"failed to calculate MAC address for {iface.ip}: {exc}") from exc
        eth: Dict[str, Any] = {"match": {"macaddress": mac}, "addresses": [iface.ip]}
        if iface.default_route:
            eth["routes"] = [{"to": "0.0.0.0/0", "via": iface.gateway}]
        if iface.dns_servers:
            eth["nameservers"] = {"addresses": list(iface.dns_servers)}
        ethernets[f"eth{idx}"] = eth

    return _dump({"version": 2, "ethernets": ethernets})


def build_seed_files(vm: Optional[VirtualMachine]) -> Dict[str, bytes]:
    """Return the NoCloud seed as ``{filename: content}``."""
    vm = _require_vm(vm)
    documents = (generate_user_data(vm), generate_meta_data(vm), generate_network_config(vm))
    return {name: doc.encode("utf-8") for name, doc in zip(SEED_FILES, documents)}


def write_iso(files: Dict[str, bytes], output: Path, label: str = CLOUD_INIT_LABEL) -> None:
    """Pack ``files`` into the root of an ISO9660 image at ``output``."""
    if set(files) != set(SEED_FILES):
        raise ValidationError(f"seed ISO must contain exactly {', '.join(SEED_FILES)} (got {', '.join(sorted(files))})")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        for name in SEED_FILES:
            (tmp / name).write_bytes(files[name])
        cmd = [
            "genisoimage",
            "-output",
            str(output),
            "-volid",
            label,
            "-joliet",
            "-rock",
            "-quiet",
        ]
        cmd += [str(tmp / name) for name in SEED_FILES]
        try:
            run(cmd, capture_output=True)
        except FileNotFoundError as exc:
            raise FoundryError("genisoimage not found. Install genisoimage to build cloud-init ISOs.") from exc
        except subprocess.CalledProcessError as exc:
            raise FoundryError(f"genisoimage failed: {(exc.stderr or '').strip()}") from exc


def generate_iso(vm: Optional[VirtualMachine]) -> bytes:
    """Build the cloud-init seed ISO for ``vm`` and return its bytes."""
    files = build_seed_files(vm)
    with tempfile.TemporaryDirectory() as tmpdir:
        output = Path(tmpdir) / "seed.iso"
        write_iso(files, output)
        data = output.read_bytes()
    log("DEBUG", f"Generated {len(data)} byte cloud-init ISO for {vm.name}")
    return data
