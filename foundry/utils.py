"""Utility functions for Foundry."""

from __future__ import annotations

import ipaddress
import os
import subprocess
from pathlib import Path
from typing import List, Optional

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from foundry.constants import _LOG_VERBOSE
from foundry.exceptions import ValidationError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_ipv4(address: str) -> ipaddress.IPv4Address:
    """Parse ``10.1.2.3`` or ``10.1.2.3/24`` into an IPv4 address."""
    try:
        if "/" in address:
            ip = ipaddress.ip_interface(address).ip
        else:
            ip = ipaddress.ip_address(address)
    except ValueError as exc:
        raise ValidationError(f"invalid IP address {address!r}: {exc}") from exc
    if not isinstance(ip, ipaddress.IPv4Address):
        raise ValidationError(f"only IPv4 addresses are supported: {address}")
    return ip


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def hash_password(password: str) -> str:
    """Generate a bcrypt crypt(3) hash usable as a cloud-init password hash."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
