"""Global constants and environment configuration for Foundry."""

from __future__ import annotations

import os
import re

GROUP_NAME = "foundry.cofront.xyz"
API_VERSION = "v1alpha1"
API_GROUP_VERSION = f"{GROUP_NAME}/{API_VERSION}"
VIRTUAL_MACHINE_KIND = "VirtualMachine"

DEFAULT_CPU_MODE = "host-model"
DEFAULT_STORAGE_POOL = "foundry-vms"
DEFAULT_IMAGES_POOL = "foundry-images"
DEFAULT_DISK_FORMAT = "qcow2"
DEFAULT_AUTOSTART = True
SUPPORTED_CPU_MODES = {"host-model", "host-passthrough"}
SUPPORTED_DISK_FORMATS = {"qcow2", "raw"}

# libvirt domain metadata: the namespace URI identifies our element, the key
# is the XML prefix libvirt uses when it stores it in the domain definition.
METADATA_NAMESPACE = f"http://{GROUP_NAME}/{API_VERSION}"
METADATA_KEY = "foundry"
METADATA_ELEMENT = "vm"

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Disk image signatures
QCOW2_MAGIC = b"\x51\x46\x49\xfb"  # "QFI\xfb"
MBR_SIGNATURE = b"\x55\xaa"
MBR_SIGNATURE_OFFSET = 510

# cloud-init NoCloud
CLOUD_INIT_LABEL = "CIDATA"
CLOUD_CONFIG_HEADER = "#cloud-config"
CLOUD_INIT_OUTPUT = "| tee -a /var/log/cloud-init-output.log"
SEED_FILES = ("user-data", "meta-data", "network-config")

MAC_PREFIX = (0xBE, 0xEF)
INTERFACE_PREFIX = "vm"

# Domain layout
BOOT_DISK_DEV = "vda"
SEED_DISK_DEV = "sda"
DISK_BUS = "virtio"
GIB = 1024 * 1024 * 1024

VM_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9_-]*[a-z0-9])?$")
FQDN_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)+$")
