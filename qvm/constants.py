"""Global constants and path configuration for qvm."""

from __future__ import annotations

import os
import re
from pathlib import Path

_HOME = Path(os.path.expanduser("~"))
_XDG_DATA_HOME = Path(os.environ.get("XDG_DATA_HOME") or _HOME / ".local" / "share")
_XDG_CONFIG_HOME = Path(os.environ.get("XDG_CONFIG_HOME") or _HOME / ".config")

# QVM_HOME relocates every VM directory (and the lock directory inside it).
VM_DIR = Path(os.environ.get("QVM_HOME") or _XDG_DATA_HOME / "qvm" / "vms")
DEFAULT_SETTINGS_PATH = Path(os.environ.get("QVM_SETTINGS") or _XDG_CONFIG_HOME / "qvm" / "settings.yaml")

LOCK_DIR_NAME = ".locks"
CONFIG_FILE_NAME = "config"
DISK_FILE_NAME = "disk.qcow2"
PID_FILE_NAME = "qemu.pid"
LOGS_DIR_NAME = "logs"
SOCKETS_DIR_NAME = "sockets"
MONITOR_SOCKET_NAME = "monitor.sock"
EVENT_LOG_NAME = "qvm.log"
ERROR_LOG_NAME = "error.log"

QEMU_BINARY = os.environ.get("QVM_QEMU_BINARY", "qemu-system-x86_64")
VIRTIOFSD_FALLBACK_PATHS = (Path("/usr/lib/virtiofsd"), Path("/usr/libexec/virtiofsd"))

TRUTHY = {"1", "true", "yes", "on"}
FALSY = {"0", "false", "no", "off"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

VM_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]*$")
VM_NAME_MAX_LEN = 64
RESERVED_NAMES = {
    "root",
    "daemon",
    "bin",
    "sys",
    "sync",
    "games",
    "man",
    "lp",
    "mail",
    "news",
    "uucp",
    "proxy",
    "www-data",
    "backup",
    "list",
    "irc",
    "gnats",
    "nobody",
    "systemd-network",
    "systemd-resolve",
    "messagebus",
    "syslog",
}

MEMORY_RE = re.compile(r"^(\d+)\s*([MG])?(?:i?B)?$", re.IGNORECASE)
MIN_MEMORY_MB = 256
MAX_CORES = 64
DISK_SIZE_RE = re.compile(r"^(\d+)\s*([KMGT])?(?:i?B)?$", re.IGNORECASE)
SIZE_UNITS = {"K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}

MOUNT_TAG_RE = re.compile(r"^[A-Za-z0-9_-]{1,36}$")
USB_ID_RE = re.compile(r"^([0-9a-fA-F]{4}):([0-9a-fA-F]{4})(?::([A-Za-z0-9._-]+))?$")
PORT_SPEC_RE = re.compile(r"^(\d+)(?::(\d+))?(?::(tcp|udp))?$", re.IGNORECASE)
CONFIG_KEY_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")

MACHINE_TYPES = {"q35", "pc"}
MACHINE_OPTIONS = {"accel=kvm", "accel=tcg"}
OS_TYPES = {"linux", "windows"}
NETWORK_TYPES = {"user", "nat", "none"}
NETWORK_MODELS = {"virtio-net-pci", "e1000", "rtl8139"}
OS_SHARE_TRANSPORTS = {
    "linux": ("virtiofs", "9p"),
    "windows": ("smb",),
}

# VIDEO_TYPE -> qemu arguments
VIDEO_DEVICES = {
    "virtio": ["-device", "virtio-vga"],
    "std": ["-vga", "std"],
    "qxl": ["-vga", "qxl"],
    "cirrus": ["-vga", "cirrus"],
    "none": ["-vga", "none"],
}
VIRTIO_VIDEO_TYPES = {"virtio"}

DISK_INTERFACES = {
    "virtio": "virtio-blk-pci",
    "ide-hd": "ide-hd",
}
DISK_IO_MODES = {"native", "threads", "io_uring"}
DISK_CACHE_MODES = {"none", "writeback", "writethrough", "directsync", "unsafe"}
DISK_DISCARD_MODES = {"unmap", "ignore"}

# Probed in order; first match wins.
AUDIO_BACKENDS = (
    ("pipewire", "pw-cat"),
    ("pa", "pactl"),
    ("alsa", "aplay"),
)

LINUX_DEFAULTS = {
    "cores": 2,
    "memory_mb": 2048,
    "disk_size": "20G",
    "network_model": "virtio-net-pci",
    "disk_interface": "virtio",
    "video_type": "virtio",
    "enable_audio": False,
    "enable_virtio": True,
}

WINDOWS_DEFAULTS = {
    "cores": 2,
    "memory_mb": 4096,
    "disk_size": "60G",
    "network_model": "e1000",
    "disk_interface": "ide-hd",
    "video_type": "std",
    "enable_audio": True,
    "enable_virtio": False,
}

COMMON_DEFAULTS = {
    "machine_type": "q35",
    "machine_options": "accel=kvm",
    "cpu_type": "host",
    "network_type": "user",
    "disk_cache": "writeback",
    "disk_io": "threads",
    "disk_discard": "unmap",
    "memory_prealloc": False,
    "memory_share": False,
}

DEFAULT_LIMITS = {
    "max_vms": 50,
    "max_ports_per_vm": 20,
    "max_shares_per_vm": 10,
    "max_usb_devices": 10,
}

DEFAULT_TIMEOUTS = {
    "shutdown": 30.0,
    "lock": 30.0,
    "lock_stale": None,
    "socket": 10.0,
    "registry_cache_ttl": 2.0,
}
