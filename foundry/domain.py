"""libvirt domain XML generation for Foundry."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional
from xml.dom.minidom import parseString
from xml.etree.ElementTree import Element, SubElement, tostring

from foundry.constants import BOOT_DISK_DEV, DISK_BUS, SEED_DISK_DEV
from foundry.exceptions import ValidationError
from foundry.models import VirtualMachine
from foundry.naming import (
    interface_mac,
    interface_name_from_ip,
    volume_name_boot,
    volume_name_cloud_init,
    volume_name_data,
)


@dataclass
class DiskLayout:
    """Resolved filesystem paths for a VM's volumes.

    When handed to ``render_domain_xml`` the disks are attached by path
    instead of by ``pool``/``volume`` reference. ``backing_path`` makes the
    boot disk a copy-on-write overlay of that image.
    """

    boot_path: str
    backing_path: Optional[str] = None
    backing_format: str = "qcow2"
    data_paths: Dict[str, str] = field(default_factory=dict)
    seed_path: Optional[str] = None


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def _disk_source(disk: Element, pool: str, volume: str, path: Optional[str]) -> None:
    if path:
        disk.set("type", "file")
        SubElement(disk, "source", file=path)
    else:
        disk.set("type", "volume")
        SubElement(disk, "source", pool=pool, volume=volume)


def render_domain_xml(vm: VirtualMachine, layout: Optional[DiskLayout] = None) -> str:
    """Render the domain definition for ``vm``.

    Output depends only on the arguments: rendering the same VM twice gives
    byte-identical XML. libvirt assigns the domain UUID itself.
    """
    pool = vm.get_storage_pool()

    domain = Element("domain", type="kvm")
    SubElement(domain, "name").text = vm.name
    SubElement(domain, "memory", unit="GiB").text = str(vm.spec.memory_gib)
    SubElement(domain, "vcpu", placement="static").text = str(vm.spec.vcpus)

    os_el = SubElement(domain, "os", firmware="efi")
    SubElement(os_el, "type", arch="x86_64").text = "hvm"
    SubElement(os_el, "bios", useserial="yes")

    features = SubElement(domain, "features")
    for feature in ("acpi", "apic", "pae"):
        SubElement(features, feature)

    cpu = SubElement(domain, "cpu", mode=vm.get_cpu_mode())
    SubElement(cpu, "model", fallback="allow")

    clock = SubElement(domain, "clock", offset="utc")
    SubElement(clock, "timer", name="rtc", tickpolicy="catchup")
    SubElement(clock, "timer", name="pit", tickpolicy="delay")
    SubElement(clock, "timer", name="hpet", present="no")

    SubElement(domain, "on_poweroff").text = "destroy"
    SubElement(domain, "on_reboot").text = "restart"
    SubElement(domain, "on_crash").text = "restart"

    devices = SubElement(domain, "devices")

    # Boot disk
    boot = SubElement(devices, "disk", device="disk")
    SubElement(boot, "driver", name="qemu", type=vm.get_boot_disk_format(), cache="none")
    _disk_source(boot, pool, volume_name_boot(vm.name), layout.boot_path if layout else None)
    if layout and layout.backing_path:
        backing = SubElement(boot, "backingStore", type="file")
        SubElement(backing, "format", type=layout.backing_format)
        SubElement(backing, "source", file=layout.backing_path)
    SubElement(boot, "target", dev=BOOT_DISK_DEV, bus=DISK_BUS)
    SubElement(boot, "boot", order="1")

    # Data disks
    for data_disk in vm.spec.data_disks:
        disk = SubElement(devices, "disk", device="disk")
        SubElement(disk, "driver", name="qemu", type="qcow2", cache="none")
        path = layout.data_paths.get(data_disk.device) if layout else None
        _disk_source(disk, pool, volume_name_data(vm.name, data_disk.device), path)
        SubElement(disk, "target", dev=data_disk.device, bus=DISK_BUS)

    # Seed ISO (cloud-init)
    if vm.spec.cloud_init is not None:
        cdrom = SubElement(devices, "disk", device="cdrom")
        SubElement(cdrom, "driver", name="qemu", type="raw")
        _disk_source(cdrom, pool, volume_name_cloud_init(vm.name), layout.seed_path if layout else None)
        SubElement(cdrom, "target", dev=SEED_DISK_DEV, bus="sata")
        SubElement(cdrom, "readonly")

    SubElement(devices, "controller", type="pci", index="0", model="pci-root")

    for iface in vm.spec.network_interfaces:
        try:
            mac = interface_mac(iface)
            tap = interface_name_from_ip(iface.ip)
        except ValidationError as exc:
            raise ValidationError(f"failed to derive interface settings for {iface.ip}: {exc}") from exc
        iface_el = SubElement(devices, "interface", type="bridge")
        SubElement(iface_el, "mac", address=mac)
        SubElement(iface_el, "source", bridge=iface.bridge)
        SubElement(iface_el, "model", type="virtio")
        SubElement(iface_el, "target", dev=tap)

    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "target", port="0")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="serial", port="0")

    SubElement(devices, "memballoon", model="virtio")
    rng = SubElement(devices, "rng", model="virtio")
    SubElement(rng, "backend", model="random").text = "/dev/urandom"

    return _element_to_str(domain)
