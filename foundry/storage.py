"""Disk image validation and storage volume XML for Foundry."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union
from xml.etree.ElementTree import Element, ParseError, SubElement, fromstring, tostring

from foundry.constants import GIB, MBR_SIGNATURE, MBR_SIGNATURE_OFFSET, QCOW2_MAGIC
from foundry.exceptions import FormatError, ValidationError


class VolumeFormat(str, Enum):
    QCOW2 = "qcow2"
    RAW = "raw"


class VolumeType(str, Enum):
    BOOT = "boot"
    DATA = "data"
    CLOUD_INIT = "cloudinit"
    BASE_IMAGE = "base-image"


def detect_image_format(path: Union[str, Path]) -> VolumeFormat:
    """Classify a disk image by its signatures, rejecting anything not bootable.

    qcow2 images start with ``QFI\\xfb``. Raw images must carry the boot sector
    signature ``0x55 0xaa`` at offset 510; GPT disks have it too in their
    protective MBR.
    """
    try:
        with open(path, "rb") as fh:
            magic = fh.read(len(QCOW2_MAGIC))
            if len(magic) < len(QCOW2_MAGIC):
                raise FormatError(f"{path}: file too small to be a valid image (< {len(QCOW2_MAGIC)} bytes)")
            if magic == QCOW2_MAGIC:
                return VolumeFormat.QCOW2

            fh.seek(MBR_SIGNATURE_OFFSET)
            signature = fh.read(len(MBR_SIGNATURE))
    except OSError as exc:
        raise FormatError(f"failed to read image {path}: {exc}") from exc

    if len(signature) < len(MBR_SIGNATURE):
        raise FormatError(f"{path}: file too small for a boot sector (< {MBR_SIGNATURE_OFFSET + 2} bytes)")
    if signature == MBR_SIGNATURE:
        return VolumeFormat.RAW
    raise FormatError(
        f"{path}: unsupported or invalid image: not qcow2 and missing boot sector signature (0x55aa at offset 510)"
    )


def backing_format_for(path: str) -> VolumeFormat:
    """Infer a backing image's format from its extension; image names always carry one."""
    if Path(path).suffix in (".raw", ".img"):
        return VolumeFormat.RAW
    return VolumeFormat.QCOW2


@dataclass
class VolumeSpec:
    name: str
    type: VolumeType
    format: VolumeFormat
    capacity_gb: int = 0
    # Filesystem path of a backing image; the volume becomes a qcow2 overlay.
    backing_path: Optional[str] = None

    def validate(self) -> None:
        if not self.name:
            raise ValidationError("volume name is required")
        if self.capacity_gb <= 0 and self.type != VolumeType.CLOUD_INIT:
            raise ValidationError("volume capacity must be greater than 0")
        if self.backing_path and self.format != VolumeFormat.QCOW2:
            raise ValidationError("backing volumes are only supported for qcow2 format")


def render_volume_xml(spec: VolumeSpec, capacity_bytes: Optional[int] = None) -> str:
    """Render a libvirt storage volume definition for ``spec``."""
    spec.validate()
    if capacity_bytes is None:
        capacity_bytes = spec.capacity_gb * GIB

    vol = Element("volume", type="file")
    SubElement(vol, "name").text = spec.name
    SubElement(vol, "capacity", unit="B").text = str(capacity_bytes)
    target = SubElement(vol, "target")
    SubElement(target, "format", type=spec.format.value)
    perms = SubElement(target, "permissions")
    SubElement(perms, "mode").text = "0644"
    if spec.backing_path:
        backing = SubElement(vol, "backingStore")
        SubElement(backing, "path").text = spec.backing_path
        SubElement(backing, "format", type=backing_format_for(spec.backing_path).value)
    return tostring(vol, encoding="unicode")


@dataclass
class VolumeInfo:
    """A volume as reported by libvirt."""

    name: str
    pool: str
    format: str
    path: str
    capacity: int = 0  # bytes
    allocation: int = 0  # bytes

    @property
    def capacity_gb(self) -> float:
        return self.capacity / GIB

    @property
    def allocation_gb(self) -> float:
        return self.allocation / GIB


def volume_format_from_xml(xml: str) -> str:
    """Return ``target/format/@type`` from a volume's XML description, or ``""``."""
    try:
        root = fromstring(xml)
    except ParseError:
        return ""
    node = root.find("target/format")
    if node is None:
        return ""
    return node.get("type", "")
