"""Deterministic naming of MAC addresses, tap interfaces and storage volumes.

MAC addresses and tap device names are derived from the interface's IPv4
address so the guest-side network config and the libvirt domain always agree
without either side having to ask libvirt.
"""

from __future__ import annotations

from foundry.constants import INTERFACE_PREFIX, MAC_PREFIX
from foundry.models import NetworkInterfaceSpec
from foundry.utils import parse_ipv4


def mac_from_ip(ip: str) -> str:
    """Return ``be:ef:`` followed by the four IPv4 octets, e.g. 10.20.30.40 -> be:ef:0a:14:1e:28."""
    octets = tuple(MAC_PREFIX) + tuple(parse_ipv4(ip).packed)
    return ":".join(f"{octet:02x}" for octet in octets)


def interface_name_from_ip(ip: str) -> str:
    """Return the tap device name, e.g. 10.20.30.40 -> vm0a141e28 (within the 15 char limit)."""
    return INTERFACE_PREFIX + parse_ipv4(ip).packed.hex()


def interface_mac(iface: NetworkInterfaceSpec) -> str:
    if iface.mac_address:
        return iface.mac_address.lower()
    return mac_from_ip(iface.ip)


def volume_name_boot(vm_name: str) -> str:
    return f"{vm_name}_boot.qcow2"


def volume_name_data(vm_name: str, device: str) -> str:
    return f"{vm_name}_data-{device}.qcow2"


def volume_name_cloud_init(vm_name: str) -> str:
    return f"{vm_name}_cloudinit.iso"
