"""Two-layer encoding of VirtualMachine resources for domain metadata.

The resource is serialized to a YAML payload which is then wrapped as the text
of a namespaced XML element. Each layer raises its own ``EncodingError``
subclass so callers can tell which one failed. Nothing here talks to libvirt.
"""

from __future__ import annotations

from xml.etree.ElementTree import Element, ParseError, fromstring, register_namespace, tostring

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from foundry.constants import METADATA_ELEMENT, METADATA_KEY, METADATA_NAMESPACE
from foundry.exceptions import EncodingError, MetadataPayloadError, MetadataWrapperError
from foundry.models import VirtualMachine

_WRAPPER_TAG = f"{{{METADATA_NAMESPACE}}}{METADATA_ELEMENT}"


def encode_payload(vm: VirtualMachine) -> str:
    try:
        return yaml.safe_dump(vm.to_dict(), sort_keys=False, default_flow_style=False)
    except yaml.YAMLError as exc:
        raise MetadataPayloadError(f"failed to marshal VM {vm.name!r} to YAML: {exc}") from exc


def decode_payload(text: str) -> VirtualMachine:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise MetadataPayloadError(f"failed to unmarshal VM from YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise MetadataPayloadError("failed to unmarshal VM from YAML: document is not a mapping")
    try:
        return VirtualMachine.from_dict(data)
    except EncodingError as exc:
        raise MetadataPayloadError(f"failed to unmarshal VM from YAML: {exc}") from exc


def wrap(payload: str) -> str:
    register_namespace(METADATA_KEY, METADATA_NAMESPACE)
    root = Element(_WRAPPER_TAG)
    root.text = payload
    return tostring(root, encoding="unicode")


def unwrap(xml: str) -> str:
    try:
        root = fromstring(xml)
    except ParseError as exc:
        raise MetadataWrapperError(f"failed to unmarshal metadata XML: {exc}") from exc
    if root.tag != _WRAPPER_TAG:
        raise MetadataWrapperError(f"unexpected metadata element {root.tag!r} (expected {_WRAPPER_TAG!r})")
    return root.text or ""


def encode(vm: VirtualMachine) -> str:
    return wrap(encode_payload(vm))


def decode(xml: str) -> VirtualMachine:
    return decode_payload(unwrap(xml))
