"""Auxiliary processes bound to a running VM: virtiofsd daemons and USB hot-plug."""

from __future__ import annotations

import errno
import os
import shutil
import socket
import subprocess
import time
from pathlib import Path
from typing import List, Tuple

from qvm.constants import VIRTIOFSD_FALLBACK_PATHS
from qvm.exceptions import ExternalProcessError, StateError, ValidationError
from qvm.invocation import virtiofs_folders
from qvm.models import SharedFolder, UsbDevice, VMPaths, VMRecord
from qvm.runtime import pid_alive, process_cmdline, read_pid, terminate_process
from qvm.store import atomic_write
from qvm.utils import ensure_directory, log, run, tail_file

_MONITOR_PROMPT = b"(qemu) "
_MONITOR_ERROR_MARKERS = ("Error", "error:", "Could not", "failed")


def find_virtiofsd() -> Path:
    found = shutil.which("virtiofsd")
    if found:
        return Path(found)
    for candidate in VIRTIOFSD_FALLBACK_PATHS:
        if candidate.exists() and os.access(candidate, os.X_OK):
            return candidate
    raise ExternalProcessError("virtiofsd not found. Install virtiofsd to use VirtioFS shared folders")


def cleanup_socket(path: Path) -> None:
    """Remove a stale Unix socket without touching one that still accepts connections."""
    if not path.exists() or not path.is_socket():
        return

    stale = False
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
            client.settimeout(0.2)
            client.connect(str(path))
    except socket.timeout:
        stale = True
    except OSError as exc:
        if exc.errno in {errno.ECONNREFUSED, errno.ENOENT}:
            stale = True
        else:
            log("WARN", f"Skipping removal of socket {path}: {exc}")
            return
    else:
        log("WARN", f"Socket {path} is still in use; leaving in place")
        return

    if stale:
        try:
            path.unlink()
            log("DEBUG", f"Removed stale socket {path}")
        except FileNotFoundError:
            return


class SharedFolderSupervisor:
    """Runs one virtiofsd per shared folder and tears them down with the VM.

    Daemon pids are persisted next to their sockets (``<sock>.pid``) so a
    later ``stop`` from another invocation can find them.
    """

    def __init__(self, paths: VMPaths, socket_timeout: float = 10.0) -> None:
        self.paths = paths
        self.socket_timeout = socket_timeout
        self.processes: List[subprocess.Popen] = []

    @staticmethod
    def pid_file(socket_path: Path) -> Path:
        return socket_path.with_name(socket_path.name + ".pid")

    def start(self, record: VMRecord) -> List[int]:
        """Start daemons for every virtiofs folder; all-or-nothing."""
        folders = virtiofs_folders(record)
        if not folders:
            return []
        tags = [folder.tag for folder in folders]
        duplicates = sorted({tag for tag in tags if tags.count(tag) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate mount tag(s) for VM '{record.name}': {', '.join(duplicates)}")
        for folder in folders:
            self._check_folder(folder)

        binary = find_virtiofsd()
        ensure_directory(self.paths.sockets)
        ensure_directory(self.paths.logs)
        pids = []
        try:
            for folder in folders:
                pids.append(self._start_daemon(binary, folder))
        except BaseException:
            self.stop()
            raise
        return pids

    def _check_folder(self, folder: SharedFolder) -> None:
        if not folder.source.is_dir():
            raise StateError(f"Shared folder does not exist: {folder.source}")
        if not os.access(folder.source, os.R_OK | os.W_OK):
            raise StateError(f"Shared folder is not readable/writable: {folder.source}")

    def _start_daemon(self, binary: Path, folder: SharedFolder) -> int:
        socket_path = self.paths.virtiofs_socket(folder.tag)
        pid_file = self.pid_file(socket_path)
        self._kill_recorded(pid_file)
        cleanup_socket(socket_path)

        log_path = self.paths.virtiofs_log(folder.tag)
        cmd = [
            str(binary),
            f"--socket-path={socket_path}",
            f"--shared-dir={folder.source}",
            "--thread-pool-size=4",
            "--announce-submounts",
            "--sandbox",
            "none",
        ]
        log("DEBUG", f"Running: {' '.join(cmd)}")
        with open(log_path, "ab") as log_handle:
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=log_handle,
                    start_new_session=True,
                )
            except OSError as exc:
                raise ExternalProcessError(f"Failed to start virtiofsd for {folder.source}: {exc}") from exc
        self.processes.append(proc)
        atomic_write(pid_file, f"{proc.pid}\n")

        if not self._wait_for_socket(proc, socket_path):
            if proc.poll() is None:
                proc.kill()
            proc.wait()
            socket_path.unlink(missing_ok=True)
            pid_file.unlink(missing_ok=True)
            raise ExternalProcessError(
                f"virtiofsd failed to create socket {socket_path} (tag {folder.tag})",
                tail_file(log_path),
            )
        log("DEBUG", f"virtiofsd serving {folder.source} as '{folder.tag}' (PID {proc.pid})")
        return proc.pid

    def _wait_for_socket(self, proc: subprocess.Popen, path: Path, interval: float = 0.1) -> bool:
        deadline = time.monotonic() + self.socket_timeout
        while time.monotonic() < deadline:
            if path.is_socket():
                return True
            if proc.poll() is not None:
                return False
            time.sleep(interval)
        return path.is_socket()

    def _kill_recorded(self, pid_file: Path) -> bool:
        pid = read_pid(pid_file)
        killed = False
        if pid is not None and pid_alive(pid):
            cmdline = process_cmdline(pid)
            if cmdline is None or "virtiofsd" in cmdline:
                log("DEBUG", f"Stopping virtiofsd daemon (PID {pid})")
                terminate_process(pid, timeout=5.0)
                killed = True
            else:
                log("WARN", f"PID {pid} from {pid_file.name} is no longer virtiofsd; not killing it")
        pid_file.unlink(missing_ok=True)
        return killed

    def daemon_pids(self) -> List[int]:
        if not self.paths.sockets.is_dir():
            return []
        pids = []
        for pid_file in sorted(self.paths.sockets.glob("virtiofs_*.sock.pid")):
            pid = read_pid(pid_file)
            if pid is not None and pid_alive(pid):
                pids.append(pid)
        return pids

    def stop(self) -> int:
        """Kill every daemon recorded for this VM and remove its sockets."""
        stopped = 0
        for proc in self.processes:
            if proc.poll() is None:
                proc.terminate()
        for proc in self.processes:
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        self.processes = []
        if not self.paths.sockets.is_dir():
            return stopped
        for pid_file in sorted(self.paths.sockets.glob("*.sock.pid")):
            if self._kill_recorded(pid_file):
                stopped += 1
        for sock in sorted(self.paths.sockets.glob("*.sock")):
            sock.unlink(missing_ok=True)
        return stopped


class MonitorChannel:
    """Text commands over the qemu human monitor (HMP) Unix socket."""

    def __init__(self, socket_path: Path, timeout: float = 5.0) -> None:
        self.socket_path = socket_path
        self.timeout = timeout

    @staticmethod
    def _read_until_prompt(client: socket.socket) -> bytes:
        buf = b""
        while not buf.rstrip().endswith(_MONITOR_PROMPT.rstrip()):
            chunk = client.recv(4096)
            if not chunk:
                break
            buf += chunk
        return buf

    def send(self, command: str) -> str:
        if not self.socket_path.is_socket():
            raise ExternalProcessError(f"Monitor socket not available: {self.socket_path}")
        log("DEBUG", f"Monitor command: {command}")
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
                client.settimeout(self.timeout)
                client.connect(str(self.socket_path))
                self._read_until_prompt(client)
                client.sendall(command.encode("utf-8") + b"\n")
                raw = self._read_until_prompt(client)
        except socket.timeout as exc:
            raise ExternalProcessError(f"Monitor did not respond to '{command}'") from exc
        except OSError as exc:
            raise ExternalProcessError(f"Monitor connection failed: {exc}") from exc
        text = raw.decode("utf-8", errors="replace").replace("\r", "")
        lines = [line for line in text.split("\n") if line.strip() and not line.startswith("(qemu)")]
        # HMP echoes the command line before its output
        if lines and command in lines[0]:
            lines = lines[1:]
        response = "\n".join(lines)
        if any(marker in response for marker in _MONITOR_ERROR_MARKERS):
            raise ExternalProcessError(f"Monitor rejected '{command}'", response)
        return response


class UsbHotplug:
    """Attach or detach host USB devices on a live VM."""

    def __init__(self, monitor: MonitorChannel) -> None:
        self.monitor = monitor

    @staticmethod
    def host_devices() -> List[Tuple[UsbDevice, str]]:
        try:
            result = run(["lsusb"], check=False, capture_output=True)
        except FileNotFoundError as exc:
            raise ExternalProcessError("lsusb not found. Install usbutils to manage USB devices") from exc
        if result.returncode != 0:
            raise ExternalProcessError("lsusb failed", result.stderr)
        devices = []
        for line in result.stdout.splitlines():
            # Bus 001 Device 004: ID 046d:c52b Logitech, Inc. Unifying Receiver
            _, sep, rest = line.partition(" ID ")
            if not sep:
                continue
            ident, _, description = rest.partition(" ")
            vendor, _, product = ident.partition(":")
            if len(vendor) == 4 and len(product) == 4:
                devices.append((UsbDevice(vendor.lower(), product.lower()), description.strip()))
        return devices

    @staticmethod
    def present(device: UsbDevice) -> bool:
        try:
            result = run(["lsusb", "-d", device.key], check=False, capture_output=True)
        except FileNotFoundError as exc:
            raise ExternalProcessError("lsusb not found. Install usbutils to manage USB devices") from exc
        return result.returncode == 0 and bool(result.stdout.strip())

    def attach(self, device: UsbDevice, check_present: bool = True) -> None:
        if check_present and not self.present(device):
            raise StateError(f"USB device {device.key} is not connected to the host")
        self.monitor.send(
            f"device_add usb-host,vendorid=0x{device.vendor_id},productid=0x{device.product_id},"
            f"bus=xhci.0,id={device.qdev_id}"
        )
        log("INFO", f"USB device {device.key} attached")

    def detach(self, device: UsbDevice) -> None:
        self.monitor.send(f"device_del {device.qdev_id}")
        log("INFO", f"USB device {device.key} detached")

    def replay(self, devices: List[UsbDevice]) -> List[UsbDevice]:
        """Attach persisted devices after boot; absent or refused devices only warn."""
        attached = []
        for device in devices:
            try:
                if not self.present(device):
                    log("WARN", f"USB device {device.key} not found on host; skipping")
                    continue
                self.attach(device, check_present=False)
            except ExternalProcessError as exc:
                log("WARN", f"Could not attach USB device {device.key}: {exc}")
                continue
            attached.append(device)
        return attached
