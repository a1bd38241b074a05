"""Utility functions for qvm."""

from __future__ import annotations

import hashlib
import os
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from qvm.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
    ERROR_LOG_NAME,
    EVENT_LOG_NAME,
    MAX_CORES,
    MEMORY_RE,
    MIN_MEMORY_MB,
    MOUNT_TAG_RE,
    PORT_SPEC_RE,
    RESERVED_NAMES,
    SIZE_UNITS,
    TRUTHY,
    USB_ID_RE,
    VM_NAME_MAX_LEN,
    VM_NAME_RE,
)
from qvm.exceptions import ManagerError, ValidationError
from qvm.models import PortForward, UsbDevice


def log(level: str, message: str, log_dir: Optional[Path] = None) -> None:
    """Lightweight structured logging compatible with existing colour expectation.

    With log_dir set, the line is also appended to that VM's event log.
    """
    if log_dir is not None:
        append_event(log_dir, level, message)
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


def append_event(log_dir: Path, level: str, message: str) -> None:
    """Append a timestamped line to log_dir/qvm.log, and to error.log for errors."""
    if not log_dir.is_dir():
        return
    line = f"{datetime.now().strftime('%Y-%m-%d %H:%M:%S')} [{level}] {message}\n"
    targets = [log_dir / EVENT_LOG_NAME]
    if level == "ERROR":
        targets.append(log_dir / ERROR_LOG_NAME)
    for target in targets:
        with open(target, "a", encoding="utf-8") as handle:
            handle.write(line)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_vm_name(name: str) -> str:
    if not name:
        raise ValidationError("VM name cannot be empty")
    if len(name) > VM_NAME_MAX_LEN:
        raise ValidationError(f"VM name '{name}' is too long (max {VM_NAME_MAX_LEN} characters)")
    if not VM_NAME_RE.match(name):
        raise ValidationError(
            f"Invalid VM name '{name}'. Use letters, numbers, hyphens and underscores, "
            "starting with a letter or number"
        )
    if name.lower() in RESERVED_NAMES:
        raise ValidationError(f"VM name '{name}' is reserved")
    return name


def validate_cores(raw) -> int:
    try:
        cores = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid CPU cores '{raw}'. Must be a number between 1 and {MAX_CORES}")
    if cores < 1 or cores > MAX_CORES:
        raise ValidationError(f"Invalid CPU cores '{raw}'. Must be a number between 1 and {MAX_CORES}")
    return cores


def normalize_memory(raw) -> int:
    """Return memory in MiB. Bare numbers are MiB; 'G' suffixes are scaled."""
    match = MEMORY_RE.match(str(raw).strip())
    if not match:
        raise ValidationError(f"Invalid memory '{raw}'. Use formats like: 2048, 1024M, 4G")
    value = int(match.group(1))
    if (match.group(2) or "M").upper() == "G":
        value *= 1024
    if value < MIN_MEMORY_MB:
        raise ValidationError(f"Memory size too small: {raw}. Minimum is {MIN_MEMORY_MB}M")
    return value


def parse_size_to_bytes(raw: str) -> int:
    match = DISK_SIZE_RE.match(str(raw).strip())
    if not match:
        raise ValidationError(
            f"Invalid disk size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    unit = (match.group(2) or "").upper()
    return int(match.group(1)) * SIZE_UNITS.get(unit, 1)


def format_size(size_bytes: int) -> str:
    """Render bytes with the largest unit that divides them exactly."""
    for unit in ("T", "G", "M", "K"):
        factor = SIZE_UNITS[unit]
        if size_bytes and size_bytes % factor == 0:
            return f"{size_bytes // factor}{unit}"
    return str(size_bytes)


def normalize_disk_size(raw: str) -> str:
    size = parse_size_to_bytes(raw)
    if size < SIZE_UNITS["M"]:
        raise ValidationError(f"Disk size too small: {raw}. Minimum is 1M")
    return format_size(size)


def parse_port_spec(raw: str, require_guest: bool = True) -> PortForward:
    """Parse host[:guest][:tcp|udp] into a PortForward."""
    match = PORT_SPEC_RE.match(raw.strip())
    if not match or (require_guest and match.group(2) is None):
        raise ValidationError(f"Invalid port format: '{raw}'. Use host:guest[:tcp|udp]")
    host_port = int(match.group(1))
    guest_port = int(match.group(2)) if match.group(2) else 0
    protocol = (match.group(3) or "tcp").lower()
    for port in (host_port, guest_port) if require_guest else (host_port,):
        if port < 1 or port > 65535:
            raise ValidationError(f"Ports must be between 1 and 65535: '{raw}'")
    return PortForward(host_port, guest_port, protocol)


def parse_usb_id(raw: str) -> UsbDevice:
    match = USB_ID_RE.match(raw.strip())
    if not match:
        raise ValidationError(f"Invalid USB device '{raw}'. Use VENDOR_ID:PRODUCT_ID (e.g. 1d6b:0002)")
    return UsbDevice(match.group(1).lower(), match.group(2).lower(), match.group(3))


def derive_mount_tag(path: Path) -> str:
    return hashlib.md5(str(path).encode("utf-8")).hexdigest()[:8]


def validate_mount_tag(tag: str) -> str:
    if not MOUNT_TAG_RE.match(tag):
        raise ValidationError(
            f"Invalid mount tag '{tag}'. Use up to 36 letters, numbers, hyphens or underscores"
        )
    return tag


def deterministic_mac(seed: str) -> str:
    digest = hashlib.md5(seed.encode("utf-8")).digest()
    octets = [0x52, 0x54, 0x00, digest[0], digest[1], digest[2]]
    return ":".join(f"{octet:02x}" for octet in octets)


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def confirm(prompt: str, reader: Callable[[str], str] = input) -> bool:
    """Ask a [y/N] question; anything but y/yes (including EOF) is a no."""
    try:
        answer = reader(f"{prompt} [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def tail_file(path: Path, lines: int = 5) -> str:
    try:
        content = path.read_text(errors="replace")
    except OSError:
        return ""
    return "\n".join(content.splitlines()[-lines:])


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
