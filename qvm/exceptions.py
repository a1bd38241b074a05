"""Custom exceptions for qvm."""

from __future__ import annotations

from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ValidationError(ManagerError):
    """Rejected user input (name, size, port, device id)."""


class StateError(ManagerError):
    """The VM is in a state that forbids the requested operation."""


class NotFoundError(StateError):
    """The requested VM does not exist."""


class ConfigCorruptedError(ManagerError):
    """A persisted config record is unreadable, incomplete or insecure."""


class ExternalProcessError(ManagerError):
    """An external tool (qemu, qemu-img, virtiofsd) failed."""

    def __init__(self, message: str, output: Optional[str] = None) -> None:
        if output:
            message = f"{message}\n{output.rstrip()}"
        super().__init__(message)
        self.output = output


class LockBusyError(ManagerError):
    """A scope lock is held by another live process."""

    def __init__(self, scope: str, owner_pid: Optional[int]) -> None:
        holder = f"PID {owner_pid}" if owner_pid else "another process"
        super().__init__(f"Lock '{scope}' is held by {holder}; try again later")
        self.scope = scope
        self.owner_pid = owner_pid


class OperationCancelled(ManagerError):
    """The user declined a confirmation prompt."""
