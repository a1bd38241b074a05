"""VM lifecycle management for qvm."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from qvm import invocation
from qvm.config import os_defaults
from qvm.constants import (
    DISK_CACHE_MODES,
    DISK_DISCARD_MODES,
    DISK_INTERFACES,
    DISK_IO_MODES,
    LOCK_DIR_NAME,
    MACHINE_OPTIONS,
    MACHINE_TYPES,
    NETWORK_MODELS,
    NETWORK_TYPES,
    OS_SHARE_TRANSPORTS,
    QEMU_BINARY,
    TRUTHY,
    VIDEO_DEVICES,
)
from qvm.exceptions import (
    ExternalProcessError,
    NotFoundError,
    OperationCancelled,
    StateError,
    ValidationError,
)
from qvm.locking import GLOBAL_SCOPE, LockManager, vm_scope
from qvm.models import DiskInfo, LaunchOptions, SharedFolder, Settings, UsbDevice, VMPaths, VMRecord, VMStatus
from qvm.ports import PortForwardRegistry, ensure_mutable
from qvm.registry import VMRegistry
from qvm.runtime import (
    detect_audio_backend,
    display_available,
    host_memory_mb,
    kvm_available,
    pid_alive,
    process_cmdline,
    read_pid,
    terminate_process,
)
from qvm.services import MonitorChannel, SharedFolderSupervisor, UsbHotplug, cleanup_socket
from qvm.store import ConfigStore, atomic_write
from qvm.utils import (
    append_event,
    derive_mount_tag,
    deterministic_mac,
    ensure_directory,
    get_env_bool,
    log,
    normalize_disk_size,
    normalize_memory,
    parse_size_to_bytes,
    run,
    tail_file,
    validate_cores,
    validate_mount_tag,
    validate_vm_name,
)

_AUDIO_OFF = {"0", "false", "off", "no", "disable", "disabled"}
_AUDIO_ON = TRUTHY | {"enable", "enabled"}

CONFIGURABLE_SETTINGS = ("cores", "memory", "audio")


def parse_machine(raw: str) -> Tuple[str, str]:
    """Split 'q35[,accel=kvm|tcg]' into machine type and options."""
    machine_type, _, options = raw.partition(",")
    if machine_type not in MACHINE_TYPES:
        raise ValidationError(f"Invalid machine type '{machine_type}'. Use one of: {', '.join(sorted(MACHINE_TYPES))}")
    options = options or "accel=kvm"
    if options not in MACHINE_OPTIONS:
        raise ValidationError(f"Invalid machine options '{options}'. Use one of: {', '.join(sorted(MACHINE_OPTIONS))}")
    return machine_type, options


def validate_record(record: VMRecord) -> None:
    checks = [
        ("NETWORK_TYPE", record.network_type, NETWORK_TYPES),
        ("NETWORK_MODEL", record.network_model, NETWORK_MODELS),
        ("VIDEO_TYPE", record.video_type, VIDEO_DEVICES),
        ("DISK_INTERFACE", record.disk_interface, DISK_INTERFACES),
        ("DISK_CACHE", record.disk_cache, DISK_CACHE_MODES),
        ("DISK_IO", record.disk_io, DISK_IO_MODES),
        ("DISK_DISCARD", record.disk_discard, DISK_DISCARD_MODES),
    ]
    for key, value, allowed in checks:
        if value not in allowed:
            raise ValidationError(f"Invalid {key} '{value}'. Use one of: {', '.join(sorted(allowed))}")


def _check_host_memory(memory_mb: int) -> None:
    total = host_memory_mb()
    if total is not None and memory_mb > total:
        log("WARN", f"Requested memory ({memory_mb}M) exceeds host memory ({total}M)")


def qemu_img(args: List[str], action: str) -> str:
    cmd = ["qemu-img"] + args
    try:
        result = run(cmd, check=False, capture_output=True)
    except FileNotFoundError as exc:
        raise ExternalProcessError("qemu-img not found. Install qemu-utils (or qemu-img)") from exc
    if result.returncode != 0:
        raise ExternalProcessError(f"qemu-img failed to {action}", result.stderr or result.stdout)
    return result.stdout


def disk_info(path: Path) -> DiskInfo:
    output = qemu_img(["info", "--output=json", str(path)], f"inspect {path}")
    try:
        data = json.loads(output)
    except json.JSONDecodeError as exc:
        raise ExternalProcessError(f"Unexpected qemu-img info output for {path}", output) from exc
    return DiskInfo(
        int(data.get("virtual-size", 0)),
        int(data.get("actual-size", 0)),
        data.get("format", "unknown"),
    )


class LifecycleController:
    """Drives create/start/stop/resize/delete and every configuration change.

    Each operation holds the lock for its whole read-check-write span: the
    global scope for anything that changes the set of VMs or the host-wide
    port namespace, the VM's own scope for everything else.
    """

    # Seconds to wait after launch before checking that qemu is still up.
    startup_grace = 0.5

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[ConfigStore] = None,
        locks: Optional[LockManager] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        qemu_binary: str = QEMU_BINARY,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store or ConfigStore()
        if locks is None:
            locks = LockManager(
                self.store.vm_dir / LOCK_DIR_NAME,
                timeout=self.settings.lock_timeout,
                stale_after=self.settings.lock_stale_after,
            )
        self.locks = locks
        self.registry = VMRegistry(self.store, ttl=self.settings.registry_cache_ttl)
        self.ports = PortForwardRegistry(
            self.store,
            self.registry,
            self.locks,
            self.is_running,
            max_per_vm=self.settings.max_ports_per_vm,
            check_host=self.settings.check_host_ports,
        )
        self.confirm = confirm or (lambda prompt: False)
        self.qemu_binary = qemu_binary

    def running_pid(self, name: str) -> Optional[int]:
        """Pid of this VM's qemu process, or None when it is not running."""
        pid = read_pid(self.store.paths(name).pid_file)
        if pid is None or not pid_alive(pid):
            return None
        cmdline = process_cmdline(pid)
        if cmdline is not None and f"guest={name}," not in cmdline:
            log("DEBUG", f"PID {pid} recorded for VM '{name}' now belongs to another process")
            return None
        return pid

    def is_running(self, name: str) -> bool:
        return self.running_pid(name) is not None

    def _require_exists(self, name: str) -> VMPaths:
        if not self.store.exists(name):
            raise NotFoundError(f"VM '{name}' does not exist")
        return self.store.paths(name)

    def _require_stopped(self, name: str, action: str) -> None:
        if self.is_running(name):
            raise StateError(f"Cannot {action} while VM '{name}' is running. Stop it first")

    def _load_mutable(self, name: str, action: str) -> VMRecord:
        record = self.store.load(name)
        ensure_mutable(record, action)
        self._require_stopped(name, action)
        return record

    def create(
        self,
        name: str,
        os_type: str = "linux",
        memory: Optional[str] = None,
        cores: Optional[str] = None,
        disk_size: Optional[str] = None,
        machine: Optional[str] = None,
        enable_audio: Optional[bool] = None,
    ) -> VMRecord:
        validate_vm_name(name)
        defaults = os_defaults(os_type, self.settings)
        record = VMRecord(
            name=name,
            cores=validate_cores(cores if cores is not None else defaults["cores"]),
            memory_mb=normalize_memory(memory if memory is not None else defaults["memory_mb"]),
            os_type=os_type,
        )
        for key, value in defaults.items():
            if key not in ("cores", "memory_mb"):
                setattr(record, key, value)
        record.disk_size = normalize_disk_size(str(disk_size or defaults["disk_size"]))
        if machine:
            record.machine_type, record.machine_options = parse_machine(machine)
        if enable_audio is not None:
            record.enable_audio = enable_audio
        record.mac_address = deterministic_mac(name)
        validate_record(record)
        _check_host_memory(record.memory_mb)

        with self.locks.hold(GLOBAL_SCOPE):
            if self.store.exists(name):
                raise StateError(f"VM '{name}' already exists")
            if self.registry.count() >= self.settings.max_vms:
                raise StateError(f"Maximum number of VMs ({self.settings.max_vms}) reached")
            record.id = self.registry.next_id()
            record.created = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

            paths = self.store.paths(name)
            ensure_directory(self.store.vm_dir)
            paths.root.mkdir(mode=0o700)
            try:
                ensure_directory(paths.logs)
                ensure_directory(paths.sockets)
                log("INFO", f"Creating disk {paths.disk} ({record.disk_size})")
                qemu_img(["create", "-f", "qcow2", str(paths.disk), record.disk_size], f"create disk for '{name}'")
                self.store.save(record)
            except BaseException:
                shutil.rmtree(paths.root, ignore_errors=True)
                raise
            finally:
                self.registry.invalidate()
        log("SUCCESS", f"VM '{name}' created (ID {record.id})", log_dir=self.store.paths(name).logs)
        return record

    def _select_accel(self, record: VMRecord) -> Optional[str]:
        if "accel=tcg" in record.machine_options.split(","):
            return None
        if kvm_available():
            return None
        if get_env_bool("QVM_REQUIRE_KVM"):
            raise StateError("/dev/kvm is not available and QVM_REQUIRE_KVM is set")
        log("WARN", "KVM not available; falling back to TCG software emulation (slow)")
        return "tcg"

    def _launch(self, cmd: List[str], paths: VMPaths) -> subprocess.Popen:
        ensure_directory(paths.logs)
        ensure_directory(paths.sockets)
        log("DEBUG", f"Running: {' '.join(cmd)}")
        with open(paths.qemu_log, "ab") as log_handle:
            try:
                return subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=log_handle,
                    start_new_session=True,
                )
            except OSError as exc:
                raise ExternalProcessError(f"Failed to launch {cmd[0]}: {exc}") from exc

    def start(self, name: str, headless: bool = False, iso: Optional[str] = None) -> int:
        """Launch the VM and return the qemu pid."""
        options = LaunchOptions(headless=headless, iso=Path(iso).expanduser().resolve() if iso else None)
        with self.locks.hold(vm_scope(name)):
            record = self.store.load(name)
            paths = self.store.paths(name)
            pid = self.running_pid(name)
            if pid is not None:
                raise StateError(f"VM '{name}' is already running (PID {pid})")
            if not headless and not display_available():
                raise StateError("No graphical display available (DISPLAY/WAYLAND_DISPLAY unset). Use --headless")

            options.accel = self._select_accel(record)
            if record.enable_audio:
                options.audio_backend = detect_audio_backend()
                if options.audio_backend is None:
                    log("WARN", "No audio backend found (pipewire, pulseaudio, alsa); starting without audio")
            cmd = invocation.build(record, paths, options, self.qemu_binary)

            paths.pid_file.unlink(missing_ok=True)
            cleanup_socket(paths.monitor_socket)
            supervisor = SharedFolderSupervisor(paths, socket_timeout=self.settings.socket_timeout)
            log("INFO", f"Starting VM '{name}'")
            supervisor.start(record)
            proc: Optional[subprocess.Popen] = None
            try:
                proc = self._launch(cmd, paths)
                time.sleep(self.startup_grace)
                if proc.poll() is not None:
                    raise ExternalProcessError(
                        f"VM '{name}' exited immediately (exit code {proc.returncode}). See {paths.qemu_log}",
                        tail_file(paths.qemu_log, 10),
                    )
                atomic_write(paths.pid_file, f"{proc.pid}\n")
            except BaseException as exc:
                append_event(paths.logs, "ERROR", f"VM '{name}' failed to start: {exc}")
                if proc is not None and proc.poll() is None:
                    proc.kill()
                    proc.wait()
                supervisor.stop()
                paths.pid_file.unlink(missing_ok=True)
                raise
            log("SUCCESS", f"VM '{name}' started (PID {proc.pid})", log_dir=paths.logs)

            if record.usb_devices:
                if paths.monitor_socket.is_socket() or self._wait_for_monitor(paths):
                    UsbHotplug(MonitorChannel(paths.monitor_socket)).replay(record.usb_devices)
                else:
                    log("WARN", f"Monitor socket did not appear; USB devices were not attached to '{name}'")
            return proc.pid

    def _wait_for_monitor(self, paths: VMPaths, interval: float = 0.1) -> bool:
        deadline = time.monotonic() + self.settings.socket_timeout
        while time.monotonic() < deadline:
            if paths.monitor_socket.is_socket():
                return True
            time.sleep(interval)
        return False

    def stop(self, name: str, force: bool = False) -> bool:
        """Stop the VM. Returns False when it was not running."""
        with self.locks.hold(vm_scope(name)):
            paths = self._require_exists(name)
            pid = self.running_pid(name)
            if pid is None:
                log("INFO", f"VM '{name}' is not running")
            else:
                log("INFO", f"Stopping VM '{name}' (PID {pid})")
                try:
                    killed = terminate_process(pid, timeout=self.settings.shutdown_timeout, force=force)
                except ExternalProcessError as exc:
                    raise StateError(f"VM '{name}' (PID {pid}) could not be stopped: {exc}") from exc
                if killed:
                    log("WARN", f"VM '{name}' was forcibly terminated", log_dir=paths.logs)
            stopped = SharedFolderSupervisor(paths).stop()
            if stopped:
                log("DEBUG", f"Stopped {stopped} virtiofsd daemon(s) for '{name}'")
            paths.pid_file.unlink(missing_ok=True)
            paths.monitor_socket.unlink(missing_ok=True)
        if pid is not None:
            log("SUCCESS", f"VM '{name}' stopped", log_dir=paths.logs)
        return pid is not None

    def delete(self, name: str, force: bool = False) -> None:
        with self.locks.hold(GLOBAL_SCOPE), self.locks.hold(vm_scope(name)):
            paths = self._require_exists(name)
            record = self.store.load(name)
            if record.locked and not force:
                raise StateError(f"VM '{name}' is locked. Unlock it first or use --force")
            if self.is_running(name):
                if not force:
                    raise StateError(f"VM '{name}' is running. Stop it first or use --force")
                self.stop(name, force=True)
            if force:
                log("WARN", f"Force-deleting VM '{name}' without confirmation")
            elif not self.confirm(f"Are you sure you want to delete VM '{name}'?"):
                raise OperationCancelled("Deletion cancelled")
            try:
                shutil.rmtree(paths.root)
            except OSError as exc:
                raise StateError(f"Failed to delete VM '{name}': {exc}") from exc
            finally:
                self.registry.invalidate()
        log("SUCCESS", f"VM '{name}' deleted")

    def resize(self, name: str, new_size: str, force: bool = False) -> bool:
        """Grow the disk image. Returns False when it already has that size."""
        size = normalize_disk_size(new_size)
        with self.locks.hold(vm_scope(name)):
            record = self.store.load(name)
            paths = self.store.paths(name)
            if not force:
                ensure_mutable(record, "resize its disk")
                self._require_stopped(name, "resize the disk")
            if not paths.disk.is_file():
                raise StateError(f"Disk image not found for VM '{name}': {paths.disk}")

            current = disk_info(paths.disk).virtual_size
            requested = parse_size_to_bytes(size)
            if requested < current:
                raise ValidationError(
                    f"New size ({size}) is smaller than the current size. Shrinking is not supported"
                )
            if requested == current:
                log("INFO", f"Disk of VM '{name}' is already {size}")
                return False

            if force:
                log("WARN", f"--force bypasses the running and locked checks for '{name}' and may corrupt data")
                if not self.confirm("Are you sure you want to continue with --force?"):
                    raise OperationCancelled("Resize cancelled")
            if not self.confirm(f"Resize the disk of VM '{name}' to {size}?"):
                raise OperationCancelled("Resize cancelled")

            qemu_img(["resize", str(paths.disk), size], f"resize disk for '{name}'")
            record.disk_size = size
            self.store.save(record)
        log("SUCCESS", f"Disk for VM '{name}' resized to {size}", log_dir=paths.logs)
        return True

    def set_locked(self, name: str, locked: bool) -> bool:
        """Flip the LOCKED flag. Returns False when it already had that value."""
        with self.locks.hold(vm_scope(name)):
            record = self.store.load(name)
            if record.locked == locked:
                log("INFO", f"VM '{name}' is already {'locked' if locked else 'unlocked'}")
                return False
            record.locked = locked
            self.store.save(record)
        log("SUCCESS", f"VM '{name}' {'locked' if locked else 'unlocked'}", log_dir=self.store.paths(name).logs)
        return True

    def configure(self, name: str, setting: str, value: Optional[str] = None) -> str:
        """Show (value None) or change cores, memory or audio. Returns the resulting value."""
        if setting not in CONFIGURABLE_SETTINGS:
            raise ValidationError(f"Unknown setting '{setting}'. Use one of: {', '.join(CONFIGURABLE_SETTINGS)}")
        if value is None:
            record = self.store.load(name)
            return self._describe_setting(record, setting)

        with self.locks.hold(vm_scope(name)):
            record = self._load_mutable(name, "change its configuration")
            if setting == "cores":
                record.cores = validate_cores(value)
            elif setting == "memory":
                record.memory_mb = normalize_memory(value)
                _check_host_memory(record.memory_mb)
            else:
                lowered = value.strip().lower()
                if lowered in _AUDIO_ON:
                    record.enable_audio = True
                elif lowered in _AUDIO_OFF:
                    record.enable_audio = False
                else:
                    raise ValidationError(f"Invalid audio setting '{value}'. Use on/off")
            self.store.save(record)
        described = self._describe_setting(record, setting)
        log(
            "SUCCESS",
            f"{setting.capitalize()} for VM '{name}' set to: {described}",
            log_dir=self.store.paths(name).logs,
        )
        return described

    @staticmethod
    def _describe_setting(record: VMRecord, setting: str) -> str:
        if setting == "cores":
            return str(record.cores)
        if setting == "memory":
            return f"{record.memory_mb}M"
        return "enabled" if record.enable_audio else "disabled"

    def set_network_type(self, name: str, network_type: str) -> None:
        if network_type not in NETWORK_TYPES:
            raise ValidationError(f"Invalid network type '{network_type}'. Use one of: {', '.join(sorted(NETWORK_TYPES))}")
        with self.locks.hold(vm_scope(name)):
            record = self._load_mutable(name, "change its network type")
            record.network_type = network_type
            if network_type == "none" and record.port_forwards:
                log("WARN", f"Removing {len(record.port_forwards)} port forward(s) from '{name}'")
                record.port_forwards = []
            if network_type == "none":
                record.port_forwarding_enabled = False
            self.store.save(record)
        log("SUCCESS", f"Network type for VM '{name}' set to: {network_type}", log_dir=self.store.paths(name).logs)

    def set_network_model(self, name: str, model: str) -> None:
        if model not in NETWORK_MODELS:
            raise ValidationError(f"Invalid network model '{model}'. Use one of: {', '.join(sorted(NETWORK_MODELS))}")
        with self.locks.hold(vm_scope(name)):
            record = self._load_mutable(name, "change its network model")
            if model == "virtio-net-pci" and not record.enable_virtio:
                raise ValidationError(f"virtio-net-pci requires ENABLE_VIRTIO=1 on VM '{name}'")
            record.network_model = model
            self.store.save(record)
        log("SUCCESS", f"Network model for VM '{name}' set to: {model}", log_dir=self.store.paths(name).logs)

    def add_shared_folder(
        self,
        name: str,
        path: str,
        tag: Optional[str] = None,
        transport: Optional[str] = None,
    ) -> Optional[SharedFolder]:
        """Persist a shared folder. Returns None when the path is already shared."""
        source = Path(path).expanduser().resolve()
        if not source.is_dir():
            raise ValidationError(f"Directory does not exist: {source}")
        if not os.access(source, os.R_OK | os.W_OK):
            raise ValidationError(f"Directory is not readable/writable: {source}")
        if tag is not None:
            validate_mount_tag(tag)
        with self.locks.hold(vm_scope(name)):
            record = self._load_mutable(name, "change shared folders")
            allowed = OS_SHARE_TRANSPORTS[record.os_type]
            transport = transport or allowed[0]
            if transport not in allowed:
                raise ValidationError(
                    f"Invalid folder type '{transport}' for {record.os_type} VM. Use: {', '.join(allowed)}"
                )
            if any(folder.source == source for folder in record.shared_folders):
                log("INFO", f"Shared folder already exists: {source}")
                return None
            if len(record.shared_folders) >= self.settings.max_shares_per_vm:
                raise StateError(
                    f"VM '{name}' already has the maximum of {self.settings.max_shares_per_vm} shared folder(s)"
                )
            tag = tag or derive_mount_tag(source)
            if any(folder.tag == tag for folder in record.shared_folders):
                raise ValidationError(f"Mount tag '{tag}' already exists on VM '{name}'")
            folder = SharedFolder(source, tag, transport)
            record.shared_folders.append(folder)
            self.store.save(record)
        log(
            "SUCCESS",
            f"Shared folder added: {source} (tag: {tag}, type: {transport})",
            log_dir=self.store.paths(name).logs,
        )
        return folder

    def remove_shared_folder(self, name: str, path_or_tag: str) -> SharedFolder:
        with self.locks.hold(vm_scope(name)):
            record = self._load_mutable(name, "change shared folders")
            resolved = Path(path_or_tag).expanduser().resolve()
            for folder in record.shared_folders:
                if folder.tag == path_or_tag or folder.source == resolved:
                    record.shared_folders.remove(folder)
                    self.store.save(record)
                    break
            else:
                raise StateError(f"Shared folder not found on VM '{name}': {path_or_tag}")
        log(
            "SUCCESS",
            f"Shared folder removed: {folder.source} (tag: {folder.tag})",
            log_dir=self.store.paths(name).logs,
        )
        return folder

    def list_shared_folders(self, name: str) -> List[SharedFolder]:
        return list(self.store.load(name).shared_folders)

    def _hotplug(self, name: str) -> UsbHotplug:
        return UsbHotplug(MonitorChannel(self.store.paths(name).monitor_socket))

    def add_usb_device(self, name: str, device: UsbDevice) -> str:
        """Attach live when running, persist otherwise. Returns 'attached', 'added' or 'exists'."""
        with self.locks.hold(vm_scope(name)):
            record = self.store.load(name)
            ensure_mutable(record, "change USB devices")
            if self.is_running(name):
                self._hotplug(name).attach(device)
                return "attached"
            if any(existing.key == device.key for existing in record.usb_devices):
                log("INFO", f"USB device '{device.key}' is already configured for passthrough")
                return "exists"
            if len(record.usb_devices) >= self.settings.max_usb_devices:
                raise StateError(
                    f"VM '{name}' already has the maximum of {self.settings.max_usb_devices} USB device(s)"
                )
            record.usb_devices.append(device)
            self.store.save(record)
        log("SUCCESS", f"USB device '{device}' added for passthrough", log_dir=self.store.paths(name).logs)
        log("WARN", "USB passthrough may require root privileges or udev rules for the host device")
        return "added"

    def remove_usb_device(self, name: str, device: UsbDevice) -> str:
        """Detach live when running, drop from config otherwise. Returns 'detached' or 'removed'."""
        with self.locks.hold(vm_scope(name)):
            record = self.store.load(name)
            ensure_mutable(record, "change USB devices")
            if self.is_running(name):
                self._hotplug(name).detach(device)
                return "detached"
            remaining = [existing for existing in record.usb_devices if existing.key != device.key]
            if len(remaining) == len(record.usb_devices):
                raise StateError(f"USB device not found in configuration of VM '{name}': {device.key}")
            record.usb_devices = remaining
            self.store.save(record)
        log(
            "SUCCESS",
            f"USB device '{device.key}' removed from passthrough configuration",
            log_dir=self.store.paths(name).logs,
        )
        return "removed"

    def list_usb_devices(self, name: str) -> List[UsbDevice]:
        return list(self.store.load(name).usb_devices)

    def list_vms(self) -> List[VMStatus]:
        rows = []
        for name in self.registry.list(refresh=True):
            try:
                record = self.store.load(name)
            except NotFoundError:
                continue
            rows.append(VMStatus(record, self.registry.id_of(name), self.running_pid(name)))
        return rows

    def status(self, name: str) -> VMStatus:
        record = self.store.load(name)
        paths = self.store.paths(name)
        pid = self.running_pid(name)
        disk: Optional[DiskInfo] = None
        if pid is None and paths.disk.is_file():
            try:
                disk = disk_info(paths.disk)
            except ExternalProcessError as exc:
                log("WARN", f"Cannot inspect disk of '{name}': {exc}")
        daemons = len(SharedFolderSupervisor(paths).daemon_pids()) if pid is not None else 0
        return VMStatus(record, self.registry.id_of(name), pid, daemons, disk)
