"""VM lifecycle management for Foundry.

``VMManager`` reconciles a VirtualMachine against a libvirt connection: it
provisions storage, derives network identities, attaches the cloud-init seed,
defines and starts the domain, and records every step in the VM's phase and
conditions. The resource is persisted in the domain's own metadata so later
invocations can pick it up by name.

The manager does no locking; callers must not run two operations against the
same VM name concurrently.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import List, Optional, Union

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from foundry import metadata
from foundry.cloudinit import generate_iso
from foundry.conditions import (
    CONDITION_READY,
    mark_cloud_init_failed,
    mark_cloud_init_ready,
    mark_network_configured,
    mark_network_failed,
    mark_ready,
    mark_storage_failed,
    mark_storage_provisioned,
    set_condition,
)
from foundry.constants import DEFAULT_IMAGES_POOL, DEFAULT_STORAGE_POOL, GIB, LIBVIRT_URI
from foundry.domain import render_domain_xml
from foundry.exceptions import FoundryError, MetadataStoreError
from foundry.models import ConditionStatus, VirtualMachine, VMInfo, ensure_identity
from foundry.naming import (
    interface_mac,
    interface_name_from_ip,
    volume_name_boot,
    volume_name_cloud_init,
    volume_name_data,
)
from foundry.phases import (
    transition_to_creating,
    transition_to_failed,
    transition_to_running,
    transition_to_stopped,
    transition_to_stopping,
)
from foundry.storage import (
    VolumeFormat,
    VolumeInfo,
    VolumeSpec,
    VolumeType,
    backing_format_for,
    detect_image_format,
    render_volume_xml,
    volume_format_from_xml,
)
from foundry.utils import log

UPLOAD_CHUNK = 1024 * 1024  # 1 MiB

_DOMAIN_STATES = {
    libvirt.VIR_DOMAIN_NOSTATE: "no state",
    libvirt.VIR_DOMAIN_RUNNING: "running",
    libvirt.VIR_DOMAIN_BLOCKED: "blocked",
    libvirt.VIR_DOMAIN_PAUSED: "paused",
    libvirt.VIR_DOMAIN_SHUTDOWN: "shutdown",
    libvirt.VIR_DOMAIN_SHUTOFF: "shutoff",
    libvirt.VIR_DOMAIN_CRASHED: "crashed",
    libvirt.VIR_DOMAIN_PMSUSPENDED: "pmsuspended",
}


class VMManager:
    def __init__(self, uri: str = LIBVIRT_URI) -> None:
        self.uri = uri
        self.conn: Optional[libvirt.virConnect] = None

    def connect(self) -> None:
        try:
            self.conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise FoundryError(f"Failed to connect to libvirt at {self.uri}: {exc}") from exc
        if self.conn is None:
            raise FoundryError(f"Failed to connect to libvirt at {self.uri}")
        log("DEBUG", f"Connected to {self.uri}")

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def __enter__(self) -> "VMManager":
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _require_conn(self):
        if self.conn is None:
            raise FoundryError("libvirt connection not established")
        return self.conn

    # --- queries -----------------------------------------------------------

    def _lookup(self, name: str):
        conn = self._require_conn()
        try:
            return conn.lookupByName(name)
        except libvirt.libvirtError as exc:
            raise FoundryError(f"VM {name} not found: {exc}") from exc

    def domain_exists(self, name: str) -> bool:
        conn = self._require_conn()
        try:
            conn.lookupByName(name)
            return True
        except libvirt.libvirtError:
            return False

    def get(self, name: str) -> VirtualMachine:
        return metadata.load(self._lookup(name))

    def list(self) -> List[VMInfo]:
        """Summarize every domain on the connection, sorted by name.

        Domains whose details cannot be read are skipped with a warning.
        """
        conn = self._require_conn()
        try:
            domains = conn.listAllDomains(0)
        except libvirt.libvirtError as exc:
            raise FoundryError(f"failed to list domains: {exc}") from exc
        result = []
        for domain in domains:
            try:
                name = domain.name()
                state, _reason = domain.state()
                _state, _max_mem, memory_kib, vcpus, _cpu_time = domain.info()
                autostart = bool(domain.autostart())
            except libvirt.libvirtError as exc:
                log("WARN", f"Skipping domain: {exc}")
                continue
            result.append(
                VMInfo(
                    name=name,
                    state=_DOMAIN_STATES.get(state, f"unknown({state})"),
                    autostart=autostart,
                    vcpus=vcpus,
                    memory_mib=memory_kib // 1024,
                )
            )
        return sorted(result, key=lambda info: info.name)

    # --- create ------------------------------------------------------------

    def create(self, vm: VirtualMachine) -> VirtualMachine:
        """Provision and start ``vm``.

        A failing step marks its condition False, moves the VM to Failed,
        removes whatever this call already created, and re-raises. Retrying is
        left to the caller.
        """
        if self.domain_exists(vm.name):
            raise FoundryError(f"VM {vm.name} already exists")
        self._check_boot_volume_free(vm)

        ensure_identity(vm)
        transition_to_creating(vm)
        log("INFO", f"Creating VM {vm.name}")
        created: List[str] = []

        try:
            self._provision_storage(vm, created)
        except (libvirt.libvirtError, FoundryError) as exc:
            mark_storage_failed(vm, exc)
            self._rollback(vm, created)
            raise FoundryError(f"storage provisioning failed for {vm.name}: {exc}") from exc
        mark_storage_provisioned(vm)

        try:
            self._configure_network(vm)
        except FoundryError as exc:
            mark_network_failed(vm, exc)
            self._rollback(vm, created)
            raise FoundryError(f"network configuration failed for {vm.name}: {exc}") from exc
        mark_network_configured(vm)

        try:
            self._attach_cloud_init(vm, created)
        except (libvirt.libvirtError, FoundryError) as exc:
            mark_cloud_init_failed(vm, exc)
            self._rollback(vm, created)
            raise FoundryError(f"cloud-init generation failed for {vm.name}: {exc}") from exc
        mark_cloud_init_ready(vm)

        domain = None
        try:
            domain = self._define_domain(vm)
            metadata.store(domain, vm)
            domain.setAutostart(1 if vm.is_autostart() else 0)
            domain.create()
        except (libvirt.libvirtError, FoundryError) as exc:
            transition_to_failed(vm, "DomainFailed", str(exc))
            self._rollback(vm, created, domain)
            raise FoundryError(f"failed to start VM {vm.name}: {exc}") from exc

        mark_ready(vm)
        metadata.store(domain, vm)
        log("SUCCESS", f"VM {vm.name} is running")
        return vm

    def _check_boot_volume_free(self, vm: VirtualMachine) -> None:
        pool_name = vm.get_storage_pool()
        name = volume_name_boot(vm.name)
        pool = self._storage_pool(pool_name)
        try:
            pool.storageVolLookupByName(name)
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_STORAGE_VOL:
                return
            raise FoundryError(f"failed to check boot volume {pool_name}/{name}: {exc}") from exc
        raise FoundryError(f"boot volume already exists: {pool_name}/{name}")

    def _rollback(self, vm: VirtualMachine, created: List[str], domain=None) -> None:
        """Best-effort removal of the domain and volumes a failed create left behind."""
        log("WARN", f"Cleaning up after failed creation of {vm.name}")
        if domain is not None:
            try:
                if domain.isActive():
                    domain.destroy()
                domain.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)
            except libvirt.libvirtError as exc:
                log("WARN", f"Failed to undefine domain {vm.name}: {exc}")
        if not created:
            return
        try:
            pool = self._storage_pool(vm.get_storage_pool())
        except FoundryError as exc:
            log("WARN", f"Volumes {', '.join(created)} left behind: {exc}")
            return
        for name in reversed(created):
            try:
                self._delete_volume(pool, name)
            except FoundryError as exc:
                log("WARN", str(exc))

    def _storage_pool(self, name: str):
        conn = self._require_conn()
        try:
            return conn.storagePoolLookupByName(name)
        except libvirt.libvirtError as exc:
            raise FoundryError(f"storage pool {name} not found: {exc}") from exc

    def _resolve_image_path(self, vm: VirtualMachine) -> str:
        """Resolve ``bootDisk.image`` (path, ``pool:volume`` or volume name) to a file path."""
        image = vm.spec.boot_disk.image
        if image.startswith("/"):
            return image
        if ":" in image:
            pool_name, volume = image.split(":", 1)
        else:
            pool_name, volume = vm.get_boot_disk_image_pool(), image
        pool = self._storage_pool(pool_name)
        try:
            return pool.storageVolLookupByName(volume).path()
        except libvirt.libvirtError as exc:
            raise FoundryError(f"image {volume} not found in pool {pool_name}: {exc}") from exc

    def _provision_storage(self, vm: VirtualMachine, created: List[str]) -> None:
        pool = self._storage_pool(vm.get_storage_pool())
        backing = self._resolve_image_path(vm) if vm.spec.boot_disk.image else None
        boot = VolumeSpec(
            name=volume_name_boot(vm.name),
            type=VolumeType.BOOT,
            format=VolumeFormat(vm.get_boot_disk_format()),
            capacity_gb=vm.spec.boot_disk.size_gb,
            backing_path=backing,
        )
        pool.createXML(render_volume_xml(boot), 0)
        created.append(boot.name)
        log("INFO", f"Created boot volume {boot.name}")
        for disk in vm.spec.data_disks:
            spec = VolumeSpec(
                name=volume_name_data(vm.name, disk.device),
                type=VolumeType.DATA,
                format=VolumeFormat.QCOW2,
                capacity_gb=disk.size_gb,
            )
            pool.createXML(render_volume_xml(spec), 0)
            created.append(spec.name)
            log("INFO", f"Created data volume {spec.name}")

    def _configure_network(self, vm: VirtualMachine) -> None:
        macs = [interface_mac(iface) for iface in vm.spec.network_interfaces]
        names = [interface_name_from_ip(iface.ip) for iface in vm.spec.network_interfaces]
        vm.set_mac_addresses(macs)
        vm.set_interface_names(names)
        vm.status.addresses = []
        for iface in vm.spec.network_interfaces:
            vm.add_address("InternalIP", iface.ip.split("/", 1)[0])

    def _attach_cloud_init(self, vm: VirtualMachine, created: List[str]) -> None:
        if vm.spec.cloud_init is None:
            return
        data = generate_iso(vm)
        spec = VolumeSpec(name=volume_name_cloud_init(vm.name), type=VolumeType.CLOUD_INIT, format=VolumeFormat.RAW)
        pool = self._storage_pool(vm.get_storage_pool())
        volume = pool.createXML(render_volume_xml(spec, capacity_bytes=len(data)), 0)
        created.append(spec.name)
        self._upload(volume, data)
        log("INFO", f"Uploaded cloud-init ISO {spec.name}")

    def _upload(self, volume, data: bytes) -> None:
        conn = self._require_conn()
        stream = conn.newStream(0)
        try:
            volume.upload(stream, 0, len(data), 0)
            offset = 0
            while offset < len(data):
                offset += stream.send(data[offset : offset + UPLOAD_CHUNK])
            stream.finish()
        except libvirt.libvirtError:
            stream.abort()
            raise

    def _define_domain(self, vm: VirtualMachine):
        conn = self._require_conn()
        domain = conn.defineXML(render_domain_xml(vm))
        if domain is None:
            raise FoundryError("Failed to define libvirt domain")
        vm.set_domain_uuid(domain.UUIDString())
        log("SUCCESS", f"Defined domain {vm.name}")
        return domain

    def _store_best_effort(self, domain, vm: VirtualMachine) -> None:
        try:
            metadata.store(domain, vm)
        except MetadataStoreError as exc:
            log("WARN", f"Could not record status for {vm.name}: {exc}")

    # --- lifecycle ---------------------------------------------------------

    def start(self, name: str) -> VirtualMachine:
        domain = self._lookup(name)
        vm = metadata.load(domain)
        transition_to_running(vm)
        try:
            domain.create()
        except libvirt.libvirtError as exc:
            transition_to_failed(vm, "StartFailed", str(exc))
            self._store_best_effort(domain, vm)
            raise FoundryError(f"failed to start VM {name}: {exc}") from exc
        metadata.store(domain, vm)
        log("SUCCESS", f"VM {name} started")
        return vm

    def stop(self, name: str, force: bool = False, timeout: float = 120.0, interval: float = 1.0) -> VirtualMachine:
        """Shut the VM down gracefully, or power it off immediately with ``force``.

        A graceful stop that runs out of time leaves the VM in Stopping with
        Ready=False/StopTimeout, so a forced stop can still follow.
        """
        domain = self._lookup(name)
        vm = metadata.load(domain)
        if force:
            transition_to_stopped(vm)
            if domain.isActive():
                try:
                    domain.destroy()
                except libvirt.libvirtError as exc:
                    raise FoundryError(f"failed to power off VM {name}: {exc}") from exc
            metadata.store(domain, vm)
            log("SUCCESS", f"VM {name} powered off")
            return vm

        transition_to_stopping(vm)
        metadata.store(domain, vm)
        domain.shutdown()
        deadline = time.time() + timeout
        while domain.isActive():
            if time.time() >= deadline:
                message = f"VM did not shut down within {timeout:.0f}s"
                set_condition(vm, CONDITION_READY, ConditionStatus.FALSE, "StopTimeout", message)
                self._store_best_effort(domain, vm)
                raise FoundryError(f"VM {name} did not shut down within {timeout:.0f}s; retry with force")
            time.sleep(interval)
        transition_to_stopped(vm)
        metadata.store(domain, vm)
        log("SUCCESS", f"VM {name} stopped")
        return vm

    def destroy(self, name: str) -> None:
        """Power off the VM, delete its volumes and metadata, and undefine it."""
        domain = self._lookup(name)
        try:
            vm = metadata.load(domain)
        except FoundryError as exc:
            log("WARN", f"No usable metadata on {name}: {exc}")
            vm = None
        if domain.isActive():
            domain.destroy()

        volumes = [volume_name_boot(name), volume_name_cloud_init(name)]
        pool_name = DEFAULT_STORAGE_POOL
        if vm is not None:
            pool_name = vm.get_storage_pool()
            volumes += [volume_name_data(name, disk.device) for disk in vm.spec.data_disks]
        pool = self._storage_pool(pool_name)
        for volume in volumes:
            self._delete_volume(pool, volume)

        metadata.delete(domain)
        domain.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)
        log("SUCCESS", f"VM {name} destroyed")

    def _delete_volume(self, pool, name: str) -> None:
        try:
            pool.storageVolLookupByName(name).delete(0)
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_STORAGE_VOL:
                return
            raise FoundryError(f"failed to delete volume {name}: {exc}") from exc
        log("INFO", f"Deleted volume {name}")

    # --- images ------------------------------------------------------------

    def import_image(self, path: Union[str, Path], name: str) -> str:
        """Validate a local disk image and upload it to the images pool."""
        path = Path(path)
        fmt = detect_image_format(path)
        stem = name.rsplit(".", 1)[0] if Path(name).suffix in (".qcow2", ".raw", ".img") else name
        name = f"{stem}.{fmt.value}"
        data = path.read_bytes()

        pool = self._storage_pool(DEFAULT_IMAGES_POOL)
        spec = VolumeSpec(name=name, type=VolumeType.BASE_IMAGE, format=fmt, capacity_gb=len(data) // GIB + 1)
        volume = pool.createXML(render_volume_xml(spec, capacity_bytes=len(data)), 0)
        try:
            self._upload(volume, data)
        except libvirt.libvirtError as exc:
            volume.delete(0)
            raise FoundryError(f"failed to upload image data: {exc}") from exc
        log("SUCCESS", f"Imported {path} as {name} ({fmt.value})")
        return name

    def _image_volume(self, name: str):
        pool = self._storage_pool(DEFAULT_IMAGES_POOL)
        try:
            return pool.storageVolLookupByName(name)
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_STORAGE_VOL:
                raise FoundryError(f"image {name} not found") from exc
            raise FoundryError(f"failed to look up image {name}: {exc}") from exc

    def _volume_info(self, volume, pool_name: str) -> VolumeInfo:
        _type, capacity, allocation = volume.info()
        name = volume.name()
        fmt = volume_format_from_xml(volume.XMLDesc(0)) or backing_format_for(name).value
        return VolumeInfo(
            name=name,
            pool=pool_name,
            format=fmt,
            path=volume.path(),
            capacity=capacity,
            allocation=allocation,
        )

    def list_images(self) -> List[VolumeInfo]:
        """Every volume in the images pool, sorted by name."""
        pool = self._storage_pool(DEFAULT_IMAGES_POOL)
        try:
            volumes = pool.listAllVolumes(0)
            images = [self._volume_info(volume, DEFAULT_IMAGES_POOL) for volume in volumes]
        except libvirt.libvirtError as exc:
            raise FoundryError(f"failed to list images: {exc}") from exc
        return sorted(images, key=lambda image: image.name)

    def image_info(self, name: str) -> VolumeInfo:
        volume = self._image_volume(name)
        try:
            return self._volume_info(volume, DEFAULT_IMAGES_POOL)
        except libvirt.libvirtError as exc:
            raise FoundryError(f"failed to read image {name}: {exc}") from exc

    def delete_image(self, name: str) -> None:
        volume = self._image_volume(name)
        try:
            volume.delete(0)
        except libvirt.libvirtError as exc:
            raise FoundryError(f"failed to delete image {name}: {exc}") from exc
        log("SUCCESS", f"Deleted image {name}")
