"""VM enumeration and id lookup for qvm."""

from __future__ import annotations

import time
from typing import Dict, List, Optional

from qvm.exceptions import ManagerError, NotFoundError
from qvm.store import ConfigStore
from qvm.utils import log


class VMRegistry:
    """Maps VM names to their numeric ids.

    Ids are persisted in each record (``ID=``). Records written before ids
    existed get one assigned in name order after the highest persisted id;
    those assignments live only in memory until the record is next saved.
    The scan result is cached for ``ttl`` seconds; create and delete must
    call ``invalidate``.
    """

    def __init__(self, store: ConfigStore, ttl: float = 2.0) -> None:
        self.store = store
        self.ttl = ttl
        self._by_name: Dict[str, int] = {}
        self._loaded_at: Optional[float] = None

    def invalidate(self) -> None:
        self._loaded_at = None

    def _scan(self) -> Dict[str, int]:
        persisted: Dict[str, Optional[int]] = {}
        for name in self.store.names():
            try:
                record = self.store.load(name)
            except ManagerError as exc:
                log("WARN", f"Skipping VM '{name}': {exc}")
                continue
            persisted[name] = record.id

        ids: Dict[str, int] = {}
        seen = set()
        pending = []
        for name, vm_id in persisted.items():
            if vm_id is None or vm_id in seen:
                if vm_id is not None:
                    log("WARN", f"VM '{name}' duplicates id {vm_id}; assigning a new one")
                pending.append(name)
                continue
            ids[name] = vm_id
            seen.add(vm_id)
        next_id = max(seen, default=0) + 1
        for name in pending:
            ids[name] = next_id
            seen.add(next_id)
            next_id += 1
        return ids

    def _entries(self, refresh: bool = False) -> Dict[str, int]:
        now = time.monotonic()
        if refresh or self._loaded_at is None or now - self._loaded_at > self.ttl:
            self._by_name = self._scan()
            self._loaded_at = now
        return self._by_name

    def list(self, refresh: bool = False) -> List[str]:
        """VM names ordered by id."""
        entries = self._entries(refresh)
        return sorted(entries, key=lambda name: entries[name])

    def count(self) -> int:
        return len(self._entries(refresh=True))

    def id_of(self, name: str) -> int:
        entries = self._entries()
        if name not in entries:
            entries = self._entries(refresh=True)
        if name not in entries:
            raise NotFoundError(f"VM '{name}' does not exist")
        return entries[name]

    def name_of(self, vm_id: int) -> str:
        for refresh in (False, True):
            for name, candidate in self._entries(refresh).items():
                if candidate == vm_id:
                    return name
        raise NotFoundError(f"No VM with id {vm_id}")

    def next_id(self) -> int:
        """Smallest id above every id currently in use; never reuses a live id."""
        return max(self._entries(refresh=True).values(), default=0) + 1

    def resolve(self, ref: str) -> str:
        """Accept either a VM name or its numeric id."""
        if ref.isdigit() and not self.store.exists(ref):
            return self.name_of(int(ref))
        return ref
