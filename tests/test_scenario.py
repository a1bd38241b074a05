"""End-to-end lifecycle scenarios against a temporary VM directory."""

from __future__ import annotations

import pytest

from qvm.exceptions import StateError
from qvm.models import PortForward


def test_create_start_forward_stop_delete(controller, store):
    controller.create("v1", memory="4096", cores="4")
    status = controller.status("v1")
    assert (status.record.memory_mb, status.record.cores, status.state) == (4096, 4, "stopped")

    controller.start("v1", headless=True)
    status = controller.status("v1")
    assert status.state == "running"
    assert status.pid == int(store.paths("v1").pid_file.read_text())

    with pytest.raises(StateError, match="Stop it first"):
        controller.ports.add("v1", 8080, 80, "tcp")

    assert controller.stop("v1") is True
    assert controller.status("v1").state == "stopped"

    assert controller.ports.add("v1", 8080, 80, "tcp") is True
    assert controller.ports.list("v1") == [PortForward(8080, 80, "tcp")]

    controller.create("v2")
    with pytest.raises(StateError, match="VM 'v1'"):
        controller.ports.add("v2", 8080, 8000, "tcp")

    controller.delete("v1", force=True)
    assert not store.paths("v1").root.exists()
    assert [row.record.name for row in controller.list_vms()] == ["v2"]


def test_recreate_after_delete(controller, store):
    controller.create("v1", memory="1G", disk_size="10240M")
    assert store.load("v1").memory_mb == 1024
    assert store.load("v1").disk_size == "10G"
    controller.delete("v1", force=True)
    assert not store.paths("v1").root.exists()
    assert controller.create("v1").name == "v1"


def test_port_forward_is_idempotent(controller, store):
    controller.create("v1")
    controller.ports.add("v1", 2222, 22)
    controller.ports.add("v1", 2222, 22)
    assert store.load("v1").port_forwards == [PortForward(2222, 22, "tcp")]


def test_lock_blocks_mutation_until_unlocked(controller, store, answers):
    controller.create("v1", disk_size="20G")
    controller.set_locked("v1", True)
    with pytest.raises(StateError, match="locked"):
        controller.delete("v1")
    with pytest.raises(StateError, match="locked"):
        controller.resize("v1", "40G")
    with pytest.raises(StateError, match="locked"):
        controller.ports.add("v1", 8080, 80)

    controller.set_locked("v1", False)
    controller.ports.add("v1", 8080, 80)
    answers.queue.append(True)
    assert controller.resize("v1", "40G") is True
    answers.queue.append(True)
    controller.delete("v1")
    assert not store.exists("v1")


def test_unresponsive_vm_is_killed(controller, host):
    controller.create("v1")
    controller.start("v1", headless=True)
    host.ignore_sigterm = True
    controller.stop("v1")
    assert host.terminated == [(4242, True)]
    assert controller.status("v1").state == "stopped"
