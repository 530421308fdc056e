"""Custom exceptions for Foundry."""


class FoundryError(RuntimeError):
    """Base class for all errors raised by Foundry."""


class ValidationError(FoundryError):
    """Raised when a VirtualMachine or a requested operation on it is invalid."""


class EncodingError(FoundryError):
    """Raised when a VirtualMachine cannot be serialized or deserialized."""


class MetadataWrapperError(EncodingError):
    """The XML wrapper around stored metadata could not be parsed."""


class MetadataPayloadError(EncodingError):
    """The YAML payload inside the metadata wrapper could not be decoded."""


class FormatError(FoundryError):
    """Raised when a disk image fails signature checks."""


class MetadataStoreError(FoundryError):
    """Raised when libvirt fails to read or write domain metadata."""
