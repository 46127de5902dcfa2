"""Tests for the sandbox registry."""

import threading
import time

from proctorbox.models import SandboxRecord, SandboxStatus
from proctorbox.registry import SandboxRegistry


def _record(owner: str, sandbox_id: str, port: int = 20000, status=SandboxStatus.RUNNING) -> SandboxRecord:
    return SandboxRecord(owner_id=owner, sandbox_id=sandbox_id, endpoint=f"localhost:{port}", status=status)


def test_add_get_remove():
    registry = SandboxRegistry()
    registry.add(_record("u1", "a"))

    assert "a" in registry
    assert registry.get("a").owner_id == "u1"
    assert len(registry) == 1

    removed = registry.remove("a")
    assert removed.sandbox_id == "a"
    assert registry.remove("a") is None
    assert len(registry) == 0


def test_running_for_ignores_other_states():
    registry = SandboxRegistry()
    registry.add(_record("u1", "a", status=SandboxStatus.STOPPING))
    assert registry.running_for("u1") is None

    registry.update_status("a", SandboxStatus.RUNNING)
    assert registry.running_for("u1").sandbox_id == "a"


def test_for_owner_and_owners():
    registry = SandboxRegistry()
    registry.add(_record("u1", "a", 20000))
    registry.add(_record("u2", "b", 20001))
    registry.add(_record("u1", "c", 20002))

    assert {r.sandbox_id for r in registry.for_owner("u1")} == {"a", "c"}
    assert registry.owners() == ["u1", "u2"]
    assert registry.find_by_endpoint("localhost:20001").sandbox_id == "b"


def test_owner_lock_serializes_same_owner():
    registry = SandboxRegistry()
    inside = []
    overlaps = []

    def work():
        with registry.owner_lock("u1"):
            if inside:
                overlaps.append(True)
            inside.append(1)
            time.sleep(0.02)
            inside.pop()

    threads = [threading.Thread(target=work) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == []


def test_owner_lock_is_reentrant():
    registry = SandboxRegistry()
    with registry.owner_lock("u1"):
        with registry.owner_lock("u1"):
            registry.add(_record("u1", "a"))
    assert "a" in registry
