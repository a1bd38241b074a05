"""Shared test fixtures: temporary VM directory, fake qemu-img and fake host processes."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Dict, List
from unittest.mock import MagicMock

import pytest

from qvm.locking import LockManager
from qvm.models import Settings, VMRecord
from qvm.store import ConfigStore
from qvm.utils import parse_size_to_bytes
from qvm.vm import LifecycleController


@pytest.fixture
def vm_dir(tmp_path) -> Path:
    path = tmp_path / "vms"
    path.mkdir()
    return path


@pytest.fixture
def store(vm_dir) -> ConfigStore:
    return ConfigStore(vm_dir)


@pytest.fixture
def locks(vm_dir) -> LockManager:
    manager = LockManager(vm_dir / ".locks", timeout=0.3, retry_interval=0.01, max_interval=0.05)
    yield manager
    manager.release_all()


@pytest.fixture
def settings() -> Settings:
    return Settings(shutdown_timeout=1.0, lock_timeout=0.3, socket_timeout=0.2, check_host_ports=False)


@pytest.fixture
def sample_record() -> VMRecord:
    return VMRecord(
        name="web",
        cores=2,
        memory_mb=2048,
        id=1,
        mac_address="52:54:00:aa:bb:cc",
        created="2024-01-01T00:00:00Z",
    )


@pytest.fixture
def write_record(store):
    """Persist a record (creating its directory and an empty disk image)."""

    def _write(record: VMRecord, disk: bool = True) -> VMRecord:
        paths = store.paths(record.name)
        paths.root.mkdir(parents=True, exist_ok=True)
        paths.logs.mkdir(exist_ok=True)
        paths.sockets.mkdir(exist_ok=True)
        if disk:
            paths.disk.touch()
        store.save(record)
        return record

    return _write


class FakeQemuImg:
    """Stands in for qvm.vm.run, emulating qemu-img create/info/resize."""

    def __init__(self) -> None:
        self.sizes: Dict[str, int] = {}
        self.calls: List[List[str]] = []
        self.fail_on: str = ""

    def __call__(self, cmd, check=True, **kwargs):
        self.calls.append(list(cmd))
        action = cmd[1]
        if action == self.fail_on:
            return subprocess.CompletedProcess(cmd, 1, "", f"qemu-img: {action} failed: No space left on device")
        if action == "create":
            Path(cmd[4]).write_bytes(b"")
            self.sizes[cmd[4]] = parse_size_to_bytes(cmd[5])
            return subprocess.CompletedProcess(cmd, 0, "", "")
        if action == "info":
            info = {"virtual-size": self.sizes.get(cmd[-1], 0), "actual-size": 196608, "format": "qcow2"}
            return subprocess.CompletedProcess(cmd, 0, json.dumps(info), "")
        if action == "resize":
            self.sizes[cmd[2]] = parse_size_to_bytes(cmd[3])
            return subprocess.CompletedProcess(cmd, 0, "Image resized.\n", "")
        raise AssertionError(f"unexpected qemu-img call: {cmd}")


@pytest.fixture
def qemu_img(monkeypatch) -> FakeQemuImg:
    fake = FakeQemuImg()
    monkeypatch.setattr("qvm.vm.run", fake)
    return fake


class FakeHost:
    """Process table for hypervisor launches; nothing is really executed."""

    def __init__(self) -> None:
        self.processes: Dict[int, str] = {}
        self.launched: List[List[str]] = []
        self.terminated: List[tuple] = []
        self.exit_immediately = False
        self.ignore_sigterm = False
        self._next_pid = 4242

    def pid_alive(self, pid: int) -> bool:
        return pid in self.processes

    def cmdline(self, pid: int):
        return self.processes.get(pid)

    def popen(self, cmd, **kwargs):
        pid = self._next_pid
        self._next_pid += 1
        self.launched.append(list(cmd))
        proc = MagicMock()
        proc.pid = pid
        if self.exit_immediately:
            proc.poll.return_value = 1
            proc.returncode = 1
        else:
            proc.poll.return_value = None
            proc.returncode = None
            self.processes[pid] = " ".join(cmd)
        return proc

    def terminate(self, pid, timeout, force=False, interval=0.5):
        killed = force or self.ignore_sigterm
        self.terminated.append((pid, killed))
        self.processes.pop(pid, None)
        return killed


@pytest.fixture
def host(monkeypatch) -> FakeHost:
    fake = FakeHost()
    monkeypatch.setattr("qvm.vm.pid_alive", fake.pid_alive)
    monkeypatch.setattr("qvm.vm.process_cmdline", fake.cmdline)
    monkeypatch.setattr("qvm.vm.subprocess.Popen", fake.popen)
    monkeypatch.setattr("qvm.vm.terminate_process", fake.terminate)
    monkeypatch.setattr("qvm.vm.kvm_available", lambda: True)
    monkeypatch.setattr("qvm.vm.display_available", lambda: True)
    monkeypatch.setattr("qvm.vm.detect_audio_backend", lambda: None)
    return fake


@pytest.fixture
def answers():
    """Scripted confirmation answers; an empty queue means 'no'."""
    queue: List[bool] = []
    prompts: List[str] = []

    def _confirm(prompt: str) -> bool:
        prompts.append(prompt)
        return queue.pop(0) if queue else False

    _confirm.queue = queue  # type: ignore[attr-defined]
    _confirm.prompts = prompts  # type: ignore[attr-defined]
    return _confirm


@pytest.fixture
def controller(settings, store, locks, qemu_img, host, answers) -> LifecycleController:
    ctl = LifecycleController(settings, store=store, locks=locks, confirm=answers)
    ctl.startup_grace = 0
    return ctl


@pytest.fixture
def clean_env(monkeypatch):
    """Clear the environment variables qvm reads."""
    for key in (
        "QVM_MAX_VMS",
        "QVM_LOCK_TIMEOUT",
        "QVM_SHUTDOWN_TIMEOUT",
        "QVM_REQUIRE_KVM",
        "LOG_VERBOSE",
        "DISPLAY",
        "WAYLAND_DISPLAY",
    ):
        monkeypatch.delenv(key, raising=False)
