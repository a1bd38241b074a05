"""Directory-based scope locks shared by concurrent qvm invocations.

A lock is a directory ``<lock_dir>/<scope>.lock`` created with mkdir (atomic
on POSIX), holding ``pid`` and ``time`` files. A lock is reclaimed when its
owner is dead, or when it is older than the stale timeout even if the owner
is still alive. Every lock taken by this process is tracked so it can be
released on exit.
"""

from __future__ import annotations

import atexit
import os
import shutil
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from qvm.constants import LOCK_DIR_NAME, VM_DIR
from qvm.exceptions import LockBusyError, ManagerError
from qvm.runtime import pid_alive
from qvm.utils import ensure_directory, log

GLOBAL_SCOPE = "global"


def vm_scope(name: str) -> str:
    return f"vm-{name}"


class LockManager:
    def __init__(
        self,
        lock_dir: Optional[Path] = None,
        timeout: float = 30.0,
        stale_after: Optional[float] = None,
        retry_interval: float = 0.1,
        max_interval: float = 1.0,
    ) -> None:
        self.lock_dir = lock_dir if lock_dir is not None else VM_DIR / LOCK_DIR_NAME
        self.timeout = timeout
        self.stale_after = stale_after if stale_after is not None else timeout
        self.retry_interval = retry_interval
        self.max_interval = max_interval
        # scope -> (lock path, re-entry depth)
        self._held: Dict[str, Tuple[Path, int]] = {}
        atexit.register(self.release_all)

    def lock_path(self, scope: str) -> Path:
        return self.lock_dir / f"{scope}.lock"

    def holds(self, scope: str) -> bool:
        return scope in self._held

    def read_owner(self, scope: str) -> Tuple[Optional[int], Optional[float]]:
        """Return (pid, acquired_at) recorded in a lock, None where unreadable."""
        path = self.lock_path(scope)
        pid: Optional[int] = None
        acquired: Optional[float] = None
        try:
            pid = int((path / "pid").read_text().strip())
        except (OSError, ValueError):
            pass
        try:
            acquired = float((path / "time").read_text().strip())
        except (OSError, ValueError):
            try:
                acquired = path.stat().st_mtime
            except OSError:
                pass
        return pid, acquired

    def acquire(self, scope: str, timeout: Optional[float] = None) -> Path:
        """Take the lock for scope, waiting up to timeout seconds.

        Raises LockBusyError if a live holder keeps it for the whole wait.
        """
        if scope in self._held:
            path, depth = self._held[scope]
            self._held[scope] = (path, depth + 1)
            return path

        ensure_directory(self.lock_dir)
        path = self.lock_path(scope)
        wait = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + wait
        interval = self.retry_interval
        owner: Optional[int] = None

        while True:
            try:
                path.mkdir()
            except FileExistsError:
                pass
            except OSError as exc:
                raise ManagerError(f"Cannot create lock {path}: {exc}")
            else:
                self._write_owner(path)
                self._held[scope] = (path, 1)
                log("DEBUG", f"Acquired lock '{scope}'")
                return path

            owner, acquired = self.read_owner(scope)
            age = time.time() - acquired if acquired is not None else 0.0
            if owner is not None and not pid_alive(owner):
                log("DEBUG", f"Reclaiming lock '{scope}' from dead process {owner}")
                self._reclaim(path, owner)
                continue
            if age > self.stale_after:
                holder = f"PID {owner}" if owner is not None else "an unknown process"
                log("WARN", f"Lock '{scope}' held by {holder} for {age:.0f}s; forcibly reclaiming")
                self._reclaim(path, owner)
                continue

            now = time.monotonic()
            if now >= deadline:
                raise LockBusyError(scope, owner)
            time.sleep(min(interval, deadline - now))
            interval = min(interval * 2, self.max_interval)

    def release(self, scope: str) -> None:
        entry = self._held.get(scope)
        if entry is None:
            return
        path, depth = entry
        if depth > 1:
            self._held[scope] = (path, depth - 1)
            return
        del self._held[scope]
        pid, _ = self.read_owner(scope)
        if pid is not None and pid != os.getpid():
            log("WARN", f"Lock '{scope}' was taken over by PID {pid}; leaving it in place")
            return
        shutil.rmtree(path, ignore_errors=True)
        log("DEBUG", f"Released lock '{scope}'")

    def release_all(self) -> None:
        for scope in list(self._held):
            self._held[scope] = (self._held[scope][0], 1)
            self.release(scope)

    @contextmanager
    def hold(self, scope: str, timeout: Optional[float] = None) -> Iterator[Path]:
        path = self.acquire(scope, timeout)
        try:
            yield path
        finally:
            self.release(scope)

    def _write_owner(self, path: Path) -> None:
        (path / "pid").write_text(f"{os.getpid()}\n")
        (path / "time").write_text(f"{time.time():.3f}\n")

    def _reclaim(self, path: Path, expected_owner: Optional[int]) -> None:
        """Move a stale lock aside, then delete it.

        The rename makes reclamation atomic: when two processes race to
        reclaim the same lock only one rename succeeds.
        """
        graveyard = path.with_name(f"{path.name}.stale-{uuid.uuid4().hex[:8]}")
        try:
            current = int((path / "pid").read_text().strip())
        except (OSError, ValueError):
            current = None
        if current != expected_owner:
            return
        try:
            path.rename(graveyard)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise ManagerError(f"Cannot reclaim stale lock {path}: {exc}")
        shutil.rmtree(graveyard, ignore_errors=True)
