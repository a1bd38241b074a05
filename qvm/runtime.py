"""Host process and capability probes for qvm."""

from __future__ import annotations

import os
import shutil
import signal
import time
from pathlib import Path
from typing import Optional

from qvm.constants import AUDIO_BACKENDS
from qvm.exceptions import ExternalProcessError
from qvm.utils import get_env, log


def pid_alive(pid: int) -> bool:
    """Return True if a process with this pid exists and is not a zombie."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    try:
        with open(f"/proc/{pid}/stat") as f:
            # The state letter follows the parenthesised command name
            state = f.read().rsplit(")", 1)[1].split()[0]
        return state != "Z"
    except (OSError, IndexError):
        return True


def process_cmdline(pid: int) -> Optional[str]:
    try:
        with open(f"/proc/{pid}/cmdline", "rb") as f:
            return f.read().replace(b"\0", b" ").decode("utf-8", errors="replace")
    except OSError:
        return None


def read_pid(path: Path) -> Optional[int]:
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return None


def terminate_process(pid: int, timeout: float, force: bool = False, interval: float = 0.5) -> bool:
    """Stop pid with SIGTERM, escalating to SIGKILL after timeout.

    Returns True when SIGKILL had to be sent. Raises ExternalProcessError if
    the process outlives SIGKILL.
    """
    if not force:
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return False
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not pid_alive(pid):
                return False
            time.sleep(interval)
        log("WARN", f"Process {pid} ignored SIGTERM for {timeout:.0f}s; forcing termination")
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        return False
    deadline = time.monotonic() + 5.0
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.1)
    raise ExternalProcessError(f"Process {pid} is still alive after SIGKILL")


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def display_available() -> bool:
    return bool(get_env("DISPLAY") or get_env("WAYLAND_DISPLAY"))


def detect_audio_backend() -> Optional[str]:
    """Pick the first audio backend whose client tool is installed."""
    for backend, probe in AUDIO_BACKENDS:
        if shutil.which(probe):
            log("DEBUG", f"Audio backend: {backend}")
            return backend
    return None


def host_memory_mb() -> Optional[int]:
    """Total host memory from /proc/meminfo, or None if it cannot be read."""
    try:
        with open("/proc/meminfo") as f:
            for line in f:
                if line.startswith("MemTotal:"):
                    return int(line.split()[1]) // 1024
    except (OSError, ValueError, IndexError):
        return None
    return None
