"""Host-wide port-forward bookkeeping for qvm."""

from __future__ import annotations

from typing import Callable, List, Optional, Tuple

from qvm.exceptions import ManagerError, StateError, ValidationError
from qvm.locking import GLOBAL_SCOPE, LockManager, vm_scope
from qvm.models import PortForward, VMRecord
from qvm.registry import VMRegistry
from qvm.store import ConfigStore
from qvm.utils import log, run


def host_port_in_use(port: int, protocol: str = "tcp") -> Optional[bool]:
    """Check listening sockets with ss; None when ss is unavailable."""
    flag = "-t" if protocol == "tcp" else "-u"
    try:
        result = run(["ss", "-H", "-l", "-n", flag], check=False, capture_output=True)
    except FileNotFoundError:
        return None
    if result.returncode != 0:
        return None
    for line in result.stdout.splitlines():
        fields = line.split()
        if len(fields) < 4:
            continue
        _, _, local_port = fields[3].rpartition(":")
        if local_port == str(port):
            return True
    return False


def validate_rule(host_port: int, guest_port: int, protocol: str = "tcp") -> PortForward:
    protocol = protocol.lower()
    if protocol not in ("tcp", "udp"):
        raise ValidationError(f"Invalid protocol '{protocol}'. Use tcp or udp")
    for label, port in (("host", host_port), ("guest", guest_port)):
        if not isinstance(port, int) or port < 1 or port > 65535:
            raise ValidationError(f"Invalid {label} port {port}. Ports must be between 1 and 65535")
    return PortForward(host_port, guest_port, protocol)


def ensure_mutable(record: VMRecord, action: str) -> None:
    if record.locked:
        raise StateError(f"VM '{record.name}' is locked. Unlock it first to {action}")


class PortForwardRegistry:
    """Adds and removes forwarding rules, keeping (host_port, protocol) unique across all VMs.

    Both mutations hold the global lock (the namespace spans VMs) and the
    VM's own lock, and require the VM to be stopped.
    """

    def __init__(
        self,
        store: ConfigStore,
        registry: VMRegistry,
        locks: LockManager,
        is_running: Callable[[str], bool],
        max_per_vm: int = 20,
        check_host: bool = True,
    ) -> None:
        self.store = store
        self.registry = registry
        self.locks = locks
        self.is_running = is_running
        self.max_per_vm = max_per_vm
        self.check_host = check_host

    def list(self, name: str) -> List[PortForward]:
        return list(self.store.load(name).port_forwards)

    def find_conflict(self, host_port: int, protocol: str, exclude: str) -> Optional[Tuple[str, PortForward]]:
        for other in self.registry.list(refresh=True):
            if other == exclude:
                continue
            try:
                record = self.store.load(other)
            except ManagerError as exc:
                log("WARN", f"Cannot check port forwards of VM '{other}': {exc}")
                continue
            for rule in record.port_forwards:
                if rule.host_port == host_port and rule.protocol == protocol:
                    return other, rule
        return None

    def _check_stopped(self, name: str) -> None:
        if self.is_running(name):
            raise StateError(f"Cannot modify port forwards while VM '{name}' is running. Stop it first")

    def add(self, name: str, host_port: int, guest_port: int, protocol: str = "tcp") -> bool:
        """Add a rule. Returns False when the identical rule already exists."""
        rule = validate_rule(host_port, guest_port, protocol)
        with self.locks.hold(GLOBAL_SCOPE), self.locks.hold(vm_scope(name)):
            record = self.store.load(name)
            ensure_mutable(record, "change port forwards")
            self._check_stopped(name)
            if rule in record.port_forwards:
                log("INFO", f"Port forward already exists: {rule}")
                return False
            for existing in record.port_forwards:
                if existing.host_port == rule.host_port and existing.protocol == rule.protocol:
                    raise StateError(
                        f"Host port {rule.host_port}/{rule.protocol} is already forwarded to guest port "
                        f"{existing.guest_port} on VM '{name}'"
                    )
            if len(record.port_forwards) >= self.max_per_vm:
                raise StateError(f"VM '{name}' already has the maximum of {self.max_per_vm} port forwards")
            if record.network_type == "none":
                raise StateError(f"VM '{name}' has networking disabled. Set a network type first")

            conflict = self.find_conflict(rule.host_port, rule.protocol, exclude=name)
            if conflict is not None:
                other, _ = conflict
                raise StateError(f"Host port {rule.host_port}/{rule.protocol} is already used by VM '{other}'")
            if self.check_host:
                in_use = host_port_in_use(rule.host_port, rule.protocol)
                if in_use is None:
                    log("WARN", "Cannot check host port usage (ss not available)")
                elif in_use:
                    raise StateError(
                        f"Host port {rule.host_port}/{rule.protocol} is already in use by a host service"
                    )
            if rule.host_port <= 1024:
                log("WARN", f"Port {rule.host_port} is privileged (<=1024) and may require root privileges")

            record.port_forwards.append(rule)
            record.port_forwarding_enabled = True
            self.store.save(record)
        log("SUCCESS", f"Port forward added: {rule}")
        return True

    def remove(self, name: str, host_port: int, protocol: str = "tcp", guest_port: Optional[int] = None) -> PortForward:
        protocol = protocol.lower()
        with self.locks.hold(GLOBAL_SCOPE), self.locks.hold(vm_scope(name)):
            record = self.store.load(name)
            ensure_mutable(record, "change port forwards")
            self._check_stopped(name)
            match = None
            for rule in record.port_forwards:
                if rule.host_port == host_port and rule.protocol == protocol:
                    if guest_port is None or rule.guest_port == guest_port:
                        match = rule
                        break
            if match is None:
                others = [str(rule) for rule in record.port_forwards if rule.host_port == host_port]
                hint = f" (existing rules for port {host_port}: {', '.join(others)})" if others else ""
                spec = f"{host_port}:{guest_port}:{protocol}" if guest_port else f"{host_port}/{protocol}"
                raise StateError(f"Port forward not found on VM '{name}': {spec}{hint}")
            record.port_forwards.remove(match)
            if not record.port_forwards:
                record.port_forwarding_enabled = False
            self.store.save(record)
        log("SUCCESS", f"Port forward removed: {match}")
        return match
