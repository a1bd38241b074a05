"""Tests for qvm.registry module."""

from __future__ import annotations

import os
import shutil

import pytest

from qvm.exceptions import NotFoundError
from qvm.models import VMRecord
from qvm.registry import VMRegistry


@pytest.fixture
def registry(store) -> VMRegistry:
    return VMRegistry(store, ttl=60)


def _record(name: str, vm_id=None) -> VMRecord:
    return VMRecord(name=name, cores=1, memory_mb=512, id=vm_id)


class TestIds:
    def test_persisted_ids_order_the_listing(self, registry, write_record):
        write_record(_record("alpha", 3))
        write_record(_record("beta", 1))
        write_record(_record("gamma", 2))
        assert registry.list() == ["beta", "gamma", "alpha"]
        assert registry.id_of("alpha") == 3
        assert registry.name_of(2) == "gamma"

    def test_ids_survive_deletion_of_another_vm(self, registry, write_record, store):
        write_record(_record("alpha", 1))
        write_record(_record("beta", 2))
        write_record(_record("gamma", 3))
        shutil.rmtree(store.paths("beta").root)
        registry.invalidate()
        assert registry.id_of("gamma") == 3
        assert registry.next_id() == 4

    def test_records_without_id_are_numbered_after_the_highest(self, registry, write_record):
        write_record(_record("old-b"))
        write_record(_record("new", 5))
        write_record(_record("old-a"))
        assert registry.id_of("new") == 5
        assert registry.id_of("old-a") == 6
        assert registry.id_of("old-b") == 7

    def test_duplicate_id_gets_a_fresh_one(self, registry, write_record):
        write_record(_record("a", 1))
        write_record(_record("b", 1))
        assert registry.id_of("a") == 1
        assert registry.id_of("b") == 2

    def test_corrupted_record_is_skipped(self, registry, write_record, store):
        write_record(_record("good", 1))
        write_record(_record("bad", 2))
        os.chmod(store.paths("bad").config, 0o644)
        assert registry.list() == ["good"]

    def test_next_id_on_empty_registry(self, registry):
        assert registry.next_id() == 1
        assert registry.count() == 0


class TestLookup:
    def test_unknown_name_and_id(self, registry, write_record):
        write_record(_record("alpha", 1))
        with pytest.raises(NotFoundError, match="'ghost' does not exist"):
            registry.id_of("ghost")
        with pytest.raises(NotFoundError, match="No VM with id 9"):
            registry.name_of(9)

    def test_resolve_accepts_id_or_name(self, registry, write_record):
        write_record(_record("alpha", 7))
        write_record(_record("42", 1))
        assert registry.resolve("7") == "alpha"
        assert registry.resolve("alpha") == "alpha"
        assert registry.resolve("42") == "42"

    def test_cache_is_reused_until_invalidated(self, registry, write_record):
        write_record(_record("alpha", 1))
        assert registry.list() == ["alpha"]
        write_record(_record("beta", 2))
        assert registry.list() == ["alpha"]
        registry.invalidate()
        assert registry.list() == ["alpha", "beta"]

    def test_lookup_miss_forces_refresh(self, registry, write_record):
        write_record(_record("alpha", 1))
        registry.list()
        write_record(_record("beta", 2))
        assert registry.id_of("beta") == 2
