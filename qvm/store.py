"""Persistent KEY=value config records for qvm.

Records are parsed as inert data: no shell expansion, no evaluation. Every
write goes through a temporary file in the VM directory followed by an
atomic rename, so readers see either the old or the new record.
"""

from __future__ import annotations

import os
import stat
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from qvm.constants import CONFIG_KEY_RE, FALSY, TRUTHY, USB_ID_RE, VM_DIR
from qvm.exceptions import ConfigCorruptedError, NotFoundError, ValidationError
from qvm.models import PortForward, SharedFolder, UsbDevice, VMPaths, VMRecord
from qvm.utils import log, normalize_memory

REQUIRED_KEYS = ("NAME", "CORES", "MEMORY", "MACHINE_TYPE")

# Unquoted values may not contain anything a shell would interpret.
_UNQUOTED_FORBIDDEN = set(" \t\"'`$\\;&|<>(){}")

# Record attribute -> config key, in file order.
_STR_FIELDS = [
    ("name", "NAME"),
    ("machine_type", "MACHINE_TYPE"),
    ("machine_options", "MACHINE_OPTIONS"),
    ("cpu_type", "CPU_TYPE"),
    ("disk_size", "DISK_SIZE"),
    ("mac_address", "MAC_ADDRESS"),
    ("network_type", "NETWORK_TYPE"),
    ("network_model", "NETWORK_MODEL"),
    ("video_type", "VIDEO_TYPE"),
    ("disk_interface", "DISK_INTERFACE"),
    ("disk_cache", "DISK_CACHE"),
    ("disk_io", "DISK_IO"),
    ("disk_discard", "DISK_DISCARD"),
    ("os_type", "OS_TYPE"),
    ("created", "CREATED"),
]
_BOOL_FIELDS = [
    ("enable_virtio", "ENABLE_VIRTIO"),
    ("memory_prealloc", "MEMORY_PREALLOC"),
    ("memory_share", "MEMORY_SHARE"),
    ("locked", "LOCKED"),
    ("enable_audio", "ENABLE_AUDIO"),
    ("port_forwarding_enabled", "PORT_FORWARDING_ENABLED"),
]
_KNOWN_KEYS = (
    {key for _, key in _STR_FIELDS}
    | {key for _, key in _BOOL_FIELDS}
    | {"ID", "CORES", "MEMORY", "PORT_FORWARDS", "SHARED_FOLDERS", "USB_DEVICES"}
)


def _unquote(raw: str, source: str, lineno: int) -> str:
    if raw.startswith('"'):
        out = []
        i = 1
        while i < len(raw):
            ch = raw[i]
            if ch == "\\" and i + 1 < len(raw):
                out.append(raw[i + 1])
                i += 2
                continue
            if ch == '"':
                if raw[i + 1 :].strip():
                    raise ConfigCorruptedError(f"{source}:{lineno}: trailing data after quoted value")
                return "".join(out)
            out.append(ch)
            i += 1
        raise ConfigCorruptedError(f"{source}:{lineno}: unterminated double-quoted value")
    if raw.startswith("'"):
        end = raw.find("'", 1)
        if end == -1:
            raise ConfigCorruptedError(f"{source}:{lineno}: unterminated single-quoted value")
        if raw[end + 1 :].strip():
            raise ConfigCorruptedError(f"{source}:{lineno}: trailing data after quoted value")
        return raw[1:end]
    value = raw.rstrip()
    if any(ch in _UNQUOTED_FORBIDDEN for ch in value):
        raise ConfigCorruptedError(f"{source}:{lineno}: unquoted value contains shell metacharacters")
    return value


def parse_config(text: str, source: str = "<config>") -> Dict[str, str]:
    """Parse KEY=value lines into a dict without interpreting the values."""
    values: Dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        if any((ord(ch) < 32 and ch != "\t") or ord(ch) == 127 for ch in line):
            raise ConfigCorruptedError(f"{source}:{lineno}: control character in config")
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, raw = stripped.partition("=")
        if not sep or not CONFIG_KEY_RE.match(key):
            raise ConfigCorruptedError(f"{source}:{lineno}: expected KEY=value, got '{stripped[:60]}'")
        values[key] = _unquote(raw, source, lineno)
    return values


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def render_config(values: Dict[str, str]) -> str:
    lines = ["# qvm virtual machine configuration"]
    for key, value in values.items():
        if any(ord(ch) < 32 or ord(ch) == 127 for ch in value):
            raise ConfigCorruptedError(f"Refusing to write control character in {key}")
        lines.append(f"{key}={_quote(value)}")
    return "\n".join(lines) + "\n"


def _parse_bool(values: Dict[str, str], key: str, default: bool, source: str) -> bool:
    raw = values.get(key)
    if raw is None or raw == "":
        return default
    if raw.lower() in TRUTHY:
        return True
    if raw.lower() in FALSY:
        return False
    raise ConfigCorruptedError(f"{source}: {key} must be 0 or 1 (got '{raw}')")


def _split_list(raw: Optional[str]) -> List[str]:
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


def _parse_port_forwards(raw: Optional[str], source: str) -> List[PortForward]:
    rules = []
    for item in _split_list(raw):
        parts = item.split(":")
        try:
            if len(parts) == 2:
                rule = PortForward(int(parts[0]), int(parts[1]), "tcp")
            elif len(parts) == 3 and parts[2].lower() in ("tcp", "udp"):
                rule = PortForward(int(parts[0]), int(parts[1]), parts[2].lower())
            else:
                raise ValueError(item)
        except ValueError:
            raise ConfigCorruptedError(f"{source}: malformed PORT_FORWARDS entry '{item}'")
        rules.append(rule)
    return rules


def _parse_shared_folders(raw: Optional[str], source: str) -> List[SharedFolder]:
    folders = []
    for item in _split_list(raw):
        if "|" in item:
            parts = item.split("|")
        else:
            # path:tag:transport as written by older shell tooling
            parts = item.rsplit(":", 2)
        if len(parts) != 3 or not parts[0]:
            raise ConfigCorruptedError(f"{source}: malformed SHARED_FOLDERS entry '{item}'")
        folders.append(SharedFolder(Path(parts[0]), parts[1], parts[2] or "virtiofs"))
    return folders


def _parse_usb_devices(raw: Optional[str], source: str) -> List[UsbDevice]:
    devices = []
    for item in _split_list(raw):
        match = USB_ID_RE.match(item)
        if not match:
            raise ConfigCorruptedError(f"{source}: malformed USB_DEVICES entry '{item}'")
        devices.append(UsbDevice(match.group(1).lower(), match.group(2).lower(), match.group(3)))
    return devices


def record_from_values(values: Dict[str, str], source: str = "<config>") -> VMRecord:
    missing = [key for key in REQUIRED_KEYS if not values.get(key)]
    if missing:
        raise ConfigCorruptedError(f"{source}: missing required field(s): {', '.join(missing)}")
    try:
        cores = int(values["CORES"])
    except ValueError:
        raise ConfigCorruptedError(f"{source}: CORES must be an integer (got '{values['CORES']}')")
    try:
        memory_mb = normalize_memory(values["MEMORY"])
    except ValidationError as exc:
        raise ConfigCorruptedError(f"{source}: {exc}")
    vm_id: Optional[int] = None
    if values.get("ID"):
        try:
            vm_id = int(values["ID"])
        except ValueError:
            raise ConfigCorruptedError(f"{source}: ID must be an integer (got '{values['ID']}')")

    record = VMRecord(name=values["NAME"], cores=cores, memory_mb=memory_mb, id=vm_id)
    for attr, key in _STR_FIELDS:
        if values.get(key):
            setattr(record, attr, values[key])
    for attr, key in _BOOL_FIELDS:
        setattr(record, attr, _parse_bool(values, key, getattr(record, attr), source))
    record.port_forwards = _parse_port_forwards(values.get("PORT_FORWARDS"), source)
    record.shared_folders = _parse_shared_folders(values.get("SHARED_FOLDERS"), source)
    record.usb_devices = _parse_usb_devices(values.get("USB_DEVICES"), source)
    record.extra = {k: v for k, v in values.items() if k not in _KNOWN_KEYS}
    return record


def record_to_values(record: VMRecord) -> Dict[str, str]:
    values: Dict[str, str] = {
        "NAME": record.name,
        "ID": "" if record.id is None else str(record.id),
        "CORES": str(record.cores),
        "MEMORY": str(record.memory_mb),
    }
    for attr, key in _STR_FIELDS:
        if key not in values:
            values[key] = str(getattr(record, attr))
    for attr, key in _BOOL_FIELDS:
        values[key] = "1" if getattr(record, attr) else "0"
    values["PORT_FORWARDS"] = ",".join(str(rule) for rule in record.port_forwards)
    for folder in record.shared_folders:
        if "," in str(folder.source) or "|" in str(folder.source):
            raise ValidationError(f"Shared folder path may not contain ',' or '|': {folder.source}")
    values["SHARED_FOLDERS"] = ",".join(
        f"{folder.source}|{folder.tag}|{folder.transport}" for folder in record.shared_folders
    )
    values["USB_DEVICES"] = ",".join(str(device) for device in record.usb_devices)
    for key, value in record.extra.items():
        values.setdefault(key, value)
    return values


def atomic_write(destination: Path, text: str, mode: int = 0o600) -> None:
    """Write text to a sibling temp file, then rename it over destination."""
    with tempfile.NamedTemporaryFile(
        "w", delete=False, dir=destination.parent, prefix=f".{destination.name}.", suffix=".tmp"
    ) as tmp:
        tmp_path = Path(tmp.name)
        try:
            os.fchmod(tmp.fileno(), mode)
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
        except BaseException:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
    try:
        tmp_path.replace(destination)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class ConfigStore:
    """Loads and saves VM records under a VM directory.

    The store performs no locking; callers serialise writers with the
    LockManager.
    """

    def __init__(self, vm_dir: Optional[Path] = None) -> None:
        self.vm_dir = vm_dir if vm_dir is not None else VM_DIR

    def paths(self, name: str) -> VMPaths:
        return VMPaths(self.vm_dir / name)

    def exists(self, name: str) -> bool:
        return (self.vm_dir / name).is_dir()

    def names(self) -> List[str]:
        """Directory names that hold a config file, sorted."""
        if not self.vm_dir.is_dir():
            return []
        found = []
        for entry in sorted(self.vm_dir.iterdir()):
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            if (entry / "config").is_file():
                found.append(entry.name)
        return found

    def load(self, name: str) -> VMRecord:
        path = self.paths(name).config
        try:
            st = path.stat()
        except FileNotFoundError:
            raise NotFoundError(f"VM '{name}' does not exist")
        if not stat.S_ISREG(st.st_mode):
            raise ConfigCorruptedError(f"Config for VM '{name}' is not a regular file: {path}")
        perms = stat.S_IMODE(st.st_mode)
        if perms & 0o077:
            raise ConfigCorruptedError(
                f"Config for VM '{name}' has insecure permissions {perms:04o}; "
                f"expected 0600 (chmod 600 {path})"
            )
        try:
            text = path.read_text()
        except UnicodeDecodeError:
            raise ConfigCorruptedError(f"Config for VM '{name}' is not valid UTF-8: {path}")
        record = record_from_values(parse_config(text, str(path)), str(path))
        if record.name != name:
            raise ConfigCorruptedError(f"{path}: NAME '{record.name}' does not match directory '{name}'")
        return record

    def save(self, record: VMRecord) -> None:
        paths = self.paths(record.name)
        if not paths.root.is_dir():
            raise NotFoundError(f"VM '{record.name}' does not exist")
        values = record_to_values(record)
        missing = [key for key in REQUIRED_KEYS if not values.get(key)]
        if missing:
            raise ConfigCorruptedError(f"Refusing to save VM '{record.name}': missing {', '.join(missing)}")
        atomic_write(paths.config, render_config(values))
        log("DEBUG", f"Configuration saved for VM: {record.name}")
