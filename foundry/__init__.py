"""foundry package."""

__all__ = [
    "cli",
    "cloudinit",
    "conditions",
    "config",
    "constants",
    "domain",
    "exceptions",
    "metadata",
    "models",
    "naming",
    "phases",
    "storage",
    "utils",
    "vm",
]
