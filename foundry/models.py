"""Data models for Foundry VirtualMachine resources.

A ``VirtualMachine`` separates desired state (``spec``) from observed state
(``status``) following Kubernetes API conventions. ``to_dict``/``from_dict``
define the document keys used both in user-written YAML files and in the
copy persisted in libvirt domain metadata, so the mapping must stay stable.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from foundry.constants import (
    API_GROUP_VERSION,
    DEFAULT_AUTOSTART,
    DEFAULT_CPU_MODE,
    DEFAULT_DISK_FORMAT,
    DEFAULT_IMAGES_POOL,
    DEFAULT_STORAGE_POOL,
    VIRTUAL_MACHINE_KIND,
)
from foundry.exceptions import EncodingError


class Phase(str, Enum):
    PENDING = "Pending"
    CREATING = "Creating"
    RUNNING = "Running"
    STOPPING = "Stopping"
    STOPPED = "Stopped"
    FAILED = "Failed"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


_FRACTION = re.compile(r"\.(\d+)")


def now() -> datetime:
    """Current UTC time at microsecond precision."""
    return datetime.now(timezone.utc)


def format_time(value: Optional[datetime]) -> Optional[str]:
    """RFC3339 in UTC; fractional seconds are written only when present."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    if value.microsecond:
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: Any, path: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    # Unquoted RFC3339 values come back from yaml.safe_load as datetimes.
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        # fromisoformat wants exactly six fraction digits on older interpreters.
        text = value.replace("Z", "+00:00")
        text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise EncodingError(f"{path}: invalid RFC3339 timestamp {value!r}") from exc
    else:
        raise EncodingError(f"{path}: expected timestamp, got {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# --- document field helpers -------------------------------------------------


def _mapping(value: Any, path: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise EncodingError(f"{path}: expected a mapping, got {type(value).__name__}")
    return value


def _list(value: Any, path: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise EncodingError(f"{path}: expected a list, got {type(value).__name__}")
    return value


def _str(value: Any, path: str) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise EncodingError(f"{path}: expected a string, got {type(value).__name__}")
    return str(value)


def _int(value: Any, path: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise EncodingError(f"{path}: expected an integer, got {value!r}")
    return value


def _bool(value: Any, path: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise EncodingError(f"{path}: expected a boolean, got {value!r}")
    return value


def _str_list(value: Any, path: str) -> List[str]:
    return [_str(item, f"{path}[{idx}]") for idx, item in enumerate(_list(value, path))]


def _str_map(value: Any, path: str) -> Dict[str, str]:
    return {str(k): _str(v, f"{path}.{k}") for k, v in _mapping(value, path).items()}


def _prune(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop empty optional keys, mirroring ``omitempty`` semantics."""
    return {k: v for k, v in data.items() if v not in (None, "", [], {}, 0, False)}


# --- spec -------------------------------------------------------------------


@dataclass
class BootDiskSpec:
    size_gb: int = 0
    image: str = ""  # volume name, "pool:volume", or absolute path
    image_pool: str = ""
    format: str = ""
    empty: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = _prune({"image": self.image, "imagePool": self.image_pool, "format": self.format, "empty": self.empty})
        return {"sizeGB": self.size_gb, **data}

    @classmethod
    def from_dict(cls, raw: Any, path: str = "spec.bootDisk") -> "BootDiskSpec":
        data = _mapping(raw, path)
        return cls(
            size_gb=_int(data.get("sizeGB"), f"{path}.sizeGB"),
            image=_str(data.get("image"), f"{path}.image"),
            image_pool=_str(data.get("imagePool"), f"{path}.imagePool"),
            format=_str(data.get("format"), f"{path}.format"),
            empty=_bool(data.get("empty"), f"{path}.empty"),
        )


@dataclass
class DataDiskSpec:
    device: str
    size_gb: int

    def to_dict(self) -> Dict[str, Any]:
        return {"device": self.device, "sizeGB": self.size_gb}

    @classmethod
    def from_dict(cls, raw: Any, path: str) -> "DataDiskSpec":
        data = _mapping(raw, path)
        return cls(device=_str(data.get("device"), f"{path}.device"), size_gb=_int(data.get("sizeGB"), f"{path}.sizeGB"))


@dataclass
class NetworkInterfaceSpec:
    ip: str  # address with CIDR, e.g. "10.250.250.10/24"
    gateway: str = ""
    bridge: str = ""
    dns_servers: List[str] = field(default_factory=list)
    default_route: bool = False
    # Derived from ``ip`` when not supplied.
    mac_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ip": self.ip, "gateway": self.gateway, "bridge": self.bridge}
        data.update(
            _prune(
                {
                    "dnsServers": list(self.dns_servers),
                    "defaultRoute": self.default_route,
                    "macAddress": self.mac_address,
                }
            )
        )
        return data

    @classmethod
    def from_dict(cls, raw: Any, path: str) -> "NetworkInterfaceSpec":
        data = _mapping(raw, path)
        mac = data.get("macAddress")
        return cls(
            ip=_str(data.get("ip"), f"{path}.ip"),
            gateway=_str(data.get("gateway"), f"{path}.gateway"),
            bridge=_str(data.get("bridge"), f"{path}.bridge"),
            dns_servers=_str_list(data.get("dnsServers"), f"{path}.dnsServers"),
            default_route=_bool(data.get("defaultRoute"), f"{path}.defaultRoute"),
            mac_address=_str(mac, f"{path}.macAddress").lower() if mac else None,
        )


@dataclass
class CloudInitSpec:
    fqdn: str = ""
    ssh_authorized_keys: List[str] = field(default_factory=list)
    password_hash: str = ""  # crypt(3) hash for root, e.g. from `mkpasswd --method=SHA-512`
    ssh_password_auth: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return _prune(
            {
                "fqdn": self.fqdn,
                "sshAuthorizedKeys": list(self.ssh_authorized_keys),
                "passwordHash": self.password_hash,
                "sshPasswordAuth": self.ssh_password_auth,
            }
        )

    @classmethod
    def from_dict(cls, raw: Any, path: str = "spec.cloudInit") -> "CloudInitSpec":
        data = _mapping(raw, path)
        return cls(
            fqdn=_str(data.get("fqdn"), f"{path}.fqdn"),
            ssh_authorized_keys=_str_list(data.get("sshAuthorizedKeys"), f"{path}.sshAuthorizedKeys"),
            password_hash=_str(data.get("passwordHash"), f"{path}.passwordHash"),
            ssh_password_auth=_bool(data.get("sshPasswordAuth"), f"{path}.sshPasswordAuth"),
        )


@dataclass
class VirtualMachineSpec:
    vcpus: int = 0
    memory_gib: int = 0
    cpu_mode: str = ""
    storage_pool: str = ""
    boot_disk: BootDiskSpec = field(default_factory=BootDiskSpec)
    data_disks: List[DataDiskSpec] = field(default_factory=list)
    network_interfaces: List[NetworkInterfaceSpec] = field(default_factory=list)
    cloud_init: Optional[CloudInitSpec] = None
    # Tri-state: None means "unset" and defaults to True.
    autostart: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"vcpus": self.vcpus}
        if self.cpu_mode:
            data["cpuMode"] = self.cpu_mode
        data["memoryGiB"] = self.memory_gib
        if self.storage_pool:
            data["storagePool"] = self.storage_pool
        data["bootDisk"] = self.boot_disk.to_dict()
        if self.data_disks:
            data["dataDisks"] = [disk.to_dict() for disk in self.data_disks]
        data["networkInterfaces"] = [iface.to_dict() for iface in self.network_interfaces]
        if self.cloud_init is not None:
            data["cloudInit"] = self.cloud_init.to_dict()
        if self.autostart is not None:
            data["autostart"] = self.autostart
        return data

    @classmethod
    def from_dict(cls, raw: Any, path: str = "spec") -> "VirtualMachineSpec":
        data = _mapping(raw, path)
        cloud_init = data.get("cloudInit")
        autostart = data.get("autostart")
        return cls(
            vcpus=_int(data.get("vcpus"), f"{path}.vcpus"),
            memory_gib=_int(data.get("memoryGiB"), f"{path}.memoryGiB"),
            cpu_mode=_str(data.get("cpuMode"), f"{path}.cpuMode"),
            storage_pool=_str(data.get("storagePool"), f"{path}.storagePool"),
            boot_disk=BootDiskSpec.from_dict(data.get("bootDisk"), f"{path}.bootDisk"),
            data_disks=[
                DataDiskSpec.from_dict(item, f"{path}.dataDisks[{idx}]")
                for idx, item in enumerate(_list(data.get("dataDisks"), f"{path}.dataDisks"))
            ],
            network_interfaces=[
                NetworkInterfaceSpec.from_dict(item, f"{path}.networkInterfaces[{idx}]")
                for idx, item in enumerate(_list(data.get("networkInterfaces"), f"{path}.networkInterfaces"))
            ],
            cloud_init=CloudInitSpec.from_dict(cloud_init, f"{path}.cloudInit") if cloud_init is not None else None,
            autostart=_bool(autostart, f"{path}.autostart") if autostart is not None else None,
        )


# --- status -----------------------------------------------------------------


@dataclass
class Condition:
    type: str
    status: ConditionStatus
    observed_generation: int = 0
    last_transition_time: Optional[datetime] = None
    reason: str = ""
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "status": self.status.value}
        data.update(
            _prune(
                {
                    "observedGeneration": self.observed_generation,
                    "lastTransitionTime": format_time(self.last_transition_time),
                    "reason": self.reason,
                    "message": self.message,
                }
            )
        )
        return data

    @classmethod
    def from_dict(cls, raw: Any, path: str) -> "Condition":
        data = _mapping(raw, path)
        status = _str(data.get("status"), f"{path}.status") or ConditionStatus.UNKNOWN.value
        try:
            cond_status = ConditionStatus(status)
        except ValueError as exc:
            raise EncodingError(f"{path}.status: unknown condition status {status!r}") from exc
        return cls(
            type=_str(data.get("type"), f"{path}.type"),
            status=cond_status,
            observed_generation=_int(data.get("observedGeneration"), f"{path}.observedGeneration"),
            last_transition_time=parse_time(data.get("lastTransitionTime"), f"{path}.lastTransitionTime"),
            reason=_str(data.get("reason"), f"{path}.reason"),
            message=_str(data.get("message"), f"{path}.message"),
        )


@dataclass
class VMAddress:
    type: str  # InternalIP, ExternalIP or Hostname
    address: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "address": self.address}


@dataclass
class VirtualMachineStatus:
    phase: Optional[Phase] = None
    observed_generation: int = 0
    conditions: List[Condition] = field(default_factory=list)
    domain_uuid: str = ""
    addresses: List[VMAddress] = field(default_factory=list)
    mac_addresses: List[str] = field(default_factory=list)
    interface_names: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _prune(
            {
                "phase": self.phase.value if self.phase else None,
                "conditions": [cond.to_dict() for cond in self.conditions],
                "addresses": [addr.to_dict() for addr in self.addresses],
                "domainUUID": self.domain_uuid,
                "macAddresses": list(self.mac_addresses),
                "interfaceNames": list(self.interface_names),
                "observedGeneration": self.observed_generation,
            }
        )

    @classmethod
    def from_dict(cls, raw: Any, path: str = "status") -> "VirtualMachineStatus":
        data = _mapping(raw, path)
        phase_raw = _str(data.get("phase"), f"{path}.phase")
        try:
            phase = Phase(phase_raw) if phase_raw else None
        except ValueError as exc:
            raise EncodingError(f"{path}.phase: unknown phase {phase_raw!r}") from exc
        addresses = []
        for idx, item in enumerate(_list(data.get("addresses"), f"{path}.addresses")):
            addr = _mapping(item, f"{path}.addresses[{idx}]")
            addresses.append(VMAddress(type=_str(addr.get("type"), "type"), address=_str(addr.get("address"), "address")))
        return cls(
            phase=phase,
            observed_generation=_int(data.get("observedGeneration"), f"{path}.observedGeneration"),
            conditions=[
                Condition.from_dict(item, f"{path}.conditions[{idx}]")
                for idx, item in enumerate(_list(data.get("conditions"), f"{path}.conditions"))
            ],
            domain_uuid=_str(data.get("domainUUID"), f"{path}.domainUUID"),
            addresses=addresses,
            mac_addresses=_str_list(data.get("macAddresses"), f"{path}.macAddresses"),
            interface_names=_str_list(data.get("interfaceNames"), f"{path}.interfaceNames"),
        )


# --- root entity ------------------------------------------------------------


@dataclass
class ObjectMeta:
    name: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    creation_timestamp: Optional[datetime] = None
    uid: str = ""
    resource_version: str = ""
    generation: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return _prune(
            {
                "name": self.name,
                "labels": dict(self.labels),
                "annotations": dict(self.annotations),
                "creationTimestamp": format_time(self.creation_timestamp),
                "uid": self.uid,
                "resourceVersion": self.resource_version,
                "generation": self.generation,
            }
        )

    @classmethod
    def from_dict(cls, raw: Any, path: str = "metadata") -> "ObjectMeta":
        data = _mapping(raw, path)
        return cls(
            name=_str(data.get("name"), f"{path}.name"),
            labels=_str_map(data.get("labels"), f"{path}.labels"),
            annotations=_str_map(data.get("annotations"), f"{path}.annotations"),
            creation_timestamp=parse_time(data.get("creationTimestamp"), f"{path}.creationTimestamp"),
            uid=_str(data.get("uid"), f"{path}.uid"),
            resource_version=_str(data.get("resourceVersion"), f"{path}.resourceVersion"),
            generation=_int(data.get("generation"), f"{path}.generation"),
        )


@dataclass
class VirtualMachine:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: VirtualMachineSpec = field(default_factory=VirtualMachineSpec)
    status: VirtualMachineStatus = field(default_factory=VirtualMachineStatus)
    api_version: str = ""
    kind: str = ""

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def generation(self) -> int:
        return self.metadata.generation

    @property
    def phase(self) -> Optional[Phase]:
        return self.status.phase

    def set_phase(self, phase: Phase) -> None:
        self.status.phase = phase

    @property
    def domain_uuid(self) -> str:
        return self.status.domain_uuid

    def set_domain_uuid(self, domain_uuid: str) -> None:
        self.status.domain_uuid = domain_uuid

    def add_address(self, addr_type: str, address: str) -> None:
        self.status.addresses.append(VMAddress(type=addr_type, address=address))

    @property
    def mac_addresses(self) -> List[str]:
        return self.status.mac_addresses

    def set_mac_addresses(self, macs: List[str]) -> None:
        self.status.mac_addresses = list(macs)

    @property
    def interface_names(self) -> List[str]:
        return self.status.interface_names

    def set_interface_names(self, names: List[str]) -> None:
        self.status.interface_names = list(names)

    def update_observed_generation(self) -> None:
        self.status.observed_generation = self.metadata.generation

    def is_autostart(self) -> bool:
        if self.spec.autostart is None:
            return DEFAULT_AUTOSTART
        return self.spec.autostart

    def get_cpu_mode(self) -> str:
        return self.spec.cpu_mode or DEFAULT_CPU_MODE

    def get_storage_pool(self) -> str:
        return self.spec.storage_pool or DEFAULT_STORAGE_POOL

    def get_boot_disk_format(self) -> str:
        return self.spec.boot_disk.format or DEFAULT_DISK_FORMAT

    def get_boot_disk_image_pool(self) -> str:
        return self.spec.boot_disk.image_pool or DEFAULT_IMAGES_POOL

    def normalize(self) -> None:
        """Sanitize user input. Bridge names are left as-is: they must match the host exactly."""
        self.metadata.name = self.metadata.name.strip().lower()
        if self.spec.cloud_init is not None:
            self.spec.cloud_init.fqdn = self.spec.cloud_init.fqdn.strip().lower()
        if not self.spec.storage_pool:
            self.spec.storage_pool = DEFAULT_STORAGE_POOL
        if not self.spec.boot_disk.image_pool:
            self.spec.boot_disk.image_pool = DEFAULT_IMAGES_POOL

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.api_version:
            data["apiVersion"] = self.api_version
        if self.kind:
            data["kind"] = self.kind
        meta = self.metadata.to_dict()
        if meta:
            data["metadata"] = meta
        data["spec"] = self.spec.to_dict()
        status = self.status.to_dict()
        if status:
            data["status"] = status
        return data

    @classmethod
    def from_dict(cls, raw: Any) -> "VirtualMachine":
        data = _mapping(raw, "document")
        return cls(
            api_version=_str(data.get("apiVersion"), "apiVersion"),
            kind=_str(data.get("kind"), "kind"),
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=VirtualMachineSpec.from_dict(data.get("spec")),
            status=VirtualMachineStatus.from_dict(data.get("status")),
        )


def new_virtual_machine(name: str) -> VirtualMachine:
    """Create a VirtualMachine with identity, defaults and a Pending status."""
    return VirtualMachine(
        api_version=API_GROUP_VERSION,
        kind=VIRTUAL_MACHINE_KIND,
        metadata=ObjectMeta(
            name=name,
            uid=str(uuid.uuid4()),
            creation_timestamp=now(),
            generation=1,
        ),
        spec=VirtualMachineSpec(
            cpu_mode=DEFAULT_CPU_MODE,
            storage_pool=DEFAULT_STORAGE_POOL,
            autostart=DEFAULT_AUTOSTART,
            boot_disk=BootDiskSpec(image_pool=DEFAULT_IMAGES_POOL, format=DEFAULT_DISK_FORMAT),
        ),
        status=VirtualMachineStatus(phase=Phase.PENDING),
    )


def set_default_api_version(vm: VirtualMachine) -> None:
    if not vm.api_version:
        vm.api_version = API_GROUP_VERSION
    if not vm.kind:
        vm.kind = VIRTUAL_MACHINE_KIND


def apply_defaults(vm: VirtualMachine) -> None:
    """Fill unset fields of a VirtualMachine loaded from an external source."""
    set_default_api_version(vm)
    if not vm.spec.cpu_mode:
        vm.spec.cpu_mode = DEFAULT_CPU_MODE
    if not vm.spec.storage_pool:
        vm.spec.storage_pool = DEFAULT_STORAGE_POOL
    if not vm.spec.boot_disk.format:
        vm.spec.boot_disk.format = DEFAULT_DISK_FORMAT
    if not vm.spec.boot_disk.image_pool:
        vm.spec.boot_disk.image_pool = DEFAULT_IMAGES_POOL
    if vm.spec.autostart is None:
        vm.spec.autostart = DEFAULT_AUTOSTART
    if vm.status.phase is None:
        vm.status.phase = Phase.PENDING


def ensure_identity(vm: VirtualMachine) -> None:
    """Assign uid, creation time and the first generation if the document has none."""
    if not vm.metadata.uid:
        vm.metadata.uid = str(uuid.uuid4())
    if vm.metadata.creation_timestamp is None:
        vm.metadata.creation_timestamp = now()
    if vm.metadata.generation <= 0:
        vm.metadata.generation = 1


@dataclass
class VMInfo:
    """Summary of a libvirt domain for listings."""

    name: str
    state: str
    autostart: bool
    vcpus: int
    memory_mib: int
