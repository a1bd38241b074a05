"""Data models for qvm."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from qvm.constants import (
    CONFIG_FILE_NAME,
    DISK_FILE_NAME,
    LOGS_DIR_NAME,
    MONITOR_SOCKET_NAME,
    PID_FILE_NAME,
    SOCKETS_DIR_NAME,
)


class PortForward(NamedTuple):
    host_port: int
    guest_port: int
    protocol: str = "tcp"

    def __str__(self) -> str:
        return f"{self.host_port}:{self.guest_port}:{self.protocol}"


class UsbDevice(NamedTuple):
    vendor_id: str
    product_id: str
    serial: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.vendor_id}:{self.product_id}"

    @property
    def qdev_id(self) -> str:
        """Device id used for device_add/device_del on the monitor."""
        return f"usb-{self.vendor_id}-{self.product_id}"

    def __str__(self) -> str:
        if self.serial:
            return f"{self.key}:{self.serial}"
        return self.key


@dataclass
class SharedFolder:
    source: Path
    tag: str
    transport: str = "virtiofs"


class DiskInfo(NamedTuple):
    virtual_size: int
    actual_size: int
    format: str = "qcow2"


@dataclass
class VMRecord:
    name: str
    cores: int
    memory_mb: int
    machine_type: str = "q35"
    id: Optional[int] = None
    machine_options: str = "accel=kvm"
    cpu_type: str = "host"
    disk_size: str = "20G"
    mac_address: str = ""
    network_type: str = "user"
    network_model: str = "virtio-net-pci"
    video_type: str = "virtio"
    disk_interface: str = "virtio"
    disk_cache: str = "writeback"
    disk_io: str = "threads"
    disk_discard: str = "unmap"
    enable_virtio: bool = True
    memory_prealloc: bool = False
    memory_share: bool = False
    locked: bool = False
    os_type: str = "linux"
    enable_audio: bool = False
    port_forwarding_enabled: bool = False
    port_forwards: List[PortForward] = field(default_factory=list)
    shared_folders: List[SharedFolder] = field(default_factory=list)
    usb_devices: List[UsbDevice] = field(default_factory=list)
    created: str = ""
    # Keys found on disk that this version does not understand; written back untouched.
    extra: Dict[str, str] = field(default_factory=dict)


@dataclass
class Settings:
    max_vms: int = 50
    max_ports_per_vm: int = 20
    max_shares_per_vm: int = 10
    max_usb_devices: int = 10
    shutdown_timeout: float = 30.0
    lock_timeout: float = 30.0
    lock_stale_after: Optional[float] = None
    socket_timeout: float = 10.0
    registry_cache_ttl: float = 2.0
    check_host_ports: bool = True
    os_defaults: Dict[str, Dict[str, object]] = field(default_factory=dict)

    def __post_init__(self):
        if self.lock_stale_after is None:
            self.lock_stale_after = self.lock_timeout


@dataclass
class LaunchOptions:
    headless: bool = False
    iso: Optional[Path] = None
    audio_backend: Optional[str] = None
    accel: Optional[str] = None  # overrides MACHINE_OPTIONS accel when set


@dataclass
class VMPaths:
    """Filesystem layout of a single VM directory."""

    root: Path

    @property
    def name(self) -> str:
        return self.root.name

    @property
    def config(self) -> Path:
        return self.root / CONFIG_FILE_NAME

    @property
    def disk(self) -> Path:
        return self.root / DISK_FILE_NAME

    @property
    def pid_file(self) -> Path:
        return self.root / PID_FILE_NAME

    @property
    def logs(self) -> Path:
        return self.root / LOGS_DIR_NAME

    @property
    def sockets(self) -> Path:
        return self.root / SOCKETS_DIR_NAME

    @property
    def monitor_socket(self) -> Path:
        return self.sockets / MONITOR_SOCKET_NAME

    @property
    def qemu_log(self) -> Path:
        return self.logs / "qemu.log"

    def virtiofs_socket(self, tag: str) -> Path:
        return self.sockets / f"virtiofs_{tag}.sock"

    def virtiofs_log(self, tag: str) -> Path:
        return self.logs / f"virtiofsd_{tag}.log"


class VMStatus(NamedTuple):
    """Point-in-time view of a VM used by list and status output."""

    record: VMRecord
    vm_id: int
    pid: Optional[int] = None
    daemons: int = 0
    disk: Optional[DiskInfo] = None

    @property
    def state(self) -> str:
        return "running" if self.pid is not None else "stopped"
