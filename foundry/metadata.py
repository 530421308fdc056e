"""Persist VirtualMachine resources in libvirt domain metadata.

The full resource (spec and status) is stored as a namespaced XML element
attached to the domain, so the desired state travels with the guest and
survives restarts of the tool. The encoding itself lives in
``foundry.codec``; this module only moves it in and out of libvirt.
"""

from __future__ import annotations

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from foundry.codec import decode, decode_payload, encode, encode_payload, unwrap, wrap  # noqa: F401
from foundry.constants import METADATA_KEY, METADATA_NAMESPACE
from foundry.exceptions import MetadataStoreError
from foundry.models import VirtualMachine
from foundry.utils import log


def _write_flags(domain) -> int:
    # A running domain has a live and a persistent definition; write both.
    flags = libvirt.VIR_DOMAIN_AFFECT_CONFIG
    if domain.isActive():
        flags |= libvirt.VIR_DOMAIN_AFFECT_LIVE
    return flags


def store(domain, vm: VirtualMachine) -> None:
    """Save the VM to the domain's metadata, replacing any previous copy."""
    xml = encode(vm)
    try:
        domain.setMetadata(
            libvirt.VIR_DOMAIN_METADATA_ELEMENT,
            xml,
            METADATA_KEY,
            METADATA_NAMESPACE,
            _write_flags(domain),
        )
    except libvirt.libvirtError as exc:
        raise MetadataStoreError(f"failed to set libvirt domain metadata for {vm.name}: {exc}") from exc
    log("DEBUG", f"Stored metadata for {vm.name} (generation {vm.generation})")


def load(domain) -> VirtualMachine:
    try:
        xml = domain.metadata(
            libvirt.VIR_DOMAIN_METADATA_ELEMENT,
            METADATA_NAMESPACE,
            libvirt.VIR_DOMAIN_AFFECT_CURRENT,
        )
    except libvirt.libvirtError as exc:
        raise MetadataStoreError(f"failed to get libvirt domain metadata: {exc}") from exc
    return decode(xml)


def update(domain, vm: VirtualMachine) -> None:
    """Bump the generation and store.

    The in-memory generation stays bumped even when the store fails.
    """
    vm.metadata.generation += 1
    store(domain, vm)


def delete(domain) -> None:
    try:
        domain.setMetadata(
            libvirt.VIR_DOMAIN_METADATA_ELEMENT,
            None,
            METADATA_KEY,
            METADATA_NAMESPACE,
            _write_flags(domain),
        )
    except libvirt.libvirtError as exc:
        if exc.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN_METADATA:
            return
        raise MetadataStoreError(f"failed to delete libvirt domain metadata: {exc}") from exc


def exists(domain) -> bool:
    try:
        domain.metadata(
            libvirt.VIR_DOMAIN_METADATA_ELEMENT,
            METADATA_NAMESPACE,
            libvirt.VIR_DOMAIN_AFFECT_CURRENT,
        )
    except Exception:
        return False
    return True
