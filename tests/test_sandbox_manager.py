"""Tests for the sandbox lifecycle manager."""

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from proctorbox.errors import (
    ImageBuildFailed,
    PortResolutionFailed,
    UnsupportedSubject,
)
from proctorbox.models import SandboxRecord, SandboxStatus
from proctorbox.sandbox_manager import (
    OWNER_LABEL,
    WORKSPACE_MOUNT,
    SandboxLifecycleManager,
    container_name,
    workspace_dirname,
)
from proctorbox.storage import JsonRecordStore, MemoryRecordStore


def test_create_registers_running_sandbox(manager, fake_runtime, tmp_path):
    record = manager.create("42", "JavaScript")

    assert record.status == SandboxStatus.RUNNING
    assert record.owner_id == "42"
    assert record.image == "codespace-javascript"
    assert record.endpoint == f"localhost:{fake_runtime.containers[record.sandbox_id]}"
    assert manager.find_by_owner("42") is record

    durable = JsonRecordStore(tmp_path / "sandboxes.json").load_all()
    assert [r.sandbox_id for r in durable] == [record.sandbox_id]

    spec = fake_runtime.runs[0]
    assert spec.labels[OWNER_LABEL] == "42"
    assert spec.auto_remove is True
    assert spec.container_port == 8080
    assert "--auth" in spec.command and spec.command[spec.command.index("--auth") + 1] == "none"
    assert spec.environment["DEFAULT_WORKSPACE"] == WORKSPACE_MOUNT
    assert spec.name.startswith("codespace_42_")


def test_unsupported_subject_touches_nothing(manager, fake_runtime):
    with pytest.raises(UnsupportedSubject) as exc:
        manager.create("42", "COBOL")

    assert exc.value.status_code == 400
    assert "COBOL" in str(exc.value)
    assert fake_runtime.runs == []
    assert len(manager.registry) == 0


def test_subject_lookup_is_case_insensitive(manager):
    record = manager.create("42", "python")
    assert record.subject_label == "python"


def test_concurrent_creates_leave_one_running_sandbox(manager, fake_runtime):
    fake_runtime.run_delay = 0.01

    with ThreadPoolExecutor(max_workers=5) as pool:
        records = list(pool.map(lambda _: manager.create("42", "JavaScript"), range(5)))

    running = [r for r in manager.registry.for_owner("42") if r.status == SandboxStatus.RUNNING]
    assert len(running) == 1
    assert len(fake_runtime.containers) == 1
    assert len(fake_runtime.removed) == 4
    assert running[0].sandbox_id in {r.sandbox_id for r in records}


def test_create_then_stop_removes_exactly_once(manager, fake_runtime, tmp_path):
    record = manager.create("42", "JavaScript")

    assert manager.stop(record.sandbox_id) is True

    assert len(manager.registry) == 0
    assert fake_runtime.removed == [record.sandbox_id]
    assert JsonRecordStore(tmp_path / "sandboxes.json").load_all() == []
    assert record.port not in manager.ports.allocated


def test_double_stop_is_success(manager, fake_runtime):
    record = manager.create("42", "JavaScript")

    first = manager.stop(record.sandbox_id)
    second = manager.stop(record.sandbox_id)

    assert first is True
    assert second is False
    assert fake_runtime.removed == [record.sandbox_id]


def test_stop_unknown_sandbox_is_noop(manager, fake_runtime):
    assert manager.stop("does-not-exist") is False
    assert fake_runtime.removed == []


def test_create_replaces_previous_sandbox(manager, fake_runtime):
    first = manager.create("42", "JavaScript")
    second = manager.create("42", "Python")

    assert fake_runtime.removed == [first.sandbox_id]
    assert manager.get(first.sandbox_id) is None
    assert manager.find_by_owner("42").sandbox_id == second.sandbox_id


def test_owners_are_independent(manager):
    a = manager.create("1", "JavaScript")
    b = manager.create("2", "JavaScript")

    assert a.port != b.port
    assert {r.owner_id for r in manager.list()} == {"1", "2"}


def test_cleanup_all_continues_past_failures(manager, fake_runtime, tmp_path):
    records = [manager.create(str(owner), "JavaScript") for owner in range(3)]
    fake_runtime.fail_remove.add(records[1].sandbox_id)

    summary = manager.cleanup_all()

    assert sorted(fake_runtime.removed) == sorted(r.sandbox_id for r in records)
    assert len(manager.registry) == 0
    assert summary == {"total": 3, "stopped": 2, "failed": 1}
    # the failed one stays durable so the next start can recover it
    durable = JsonRecordStore(tmp_path / "sandboxes.json").load_all()
    assert [r.sandbox_id for r in durable] == [records[1].sandbox_id]


def test_cleanup_owner_logs_failure_and_does_not_block_create(manager, fake_runtime, tmp_path):
    record = manager.create("42", "JavaScript")
    fake_runtime.fail_remove.add(record.sandbox_id)

    assert manager.cleanup_owner("42") == 0
    assert manager.get(record.sandbox_id) is None
    assert record.status == SandboxStatus.ORPHANED
    durable = JsonRecordStore(tmp_path / "sandboxes.json").load_all()
    assert [r.sandbox_id for r in durable] == [record.sandbox_id]

    replacement = manager.create("42", "JavaScript")

    assert manager.find_by_owner("42").sandbox_id == replacement.sandbox_id


def test_stop_failure_is_logged_not_raised(manager, fake_runtime):
    record = manager.create("42", "JavaScript")
    fake_runtime.fail_remove.add(record.sandbox_id)

    assert manager.stop(record.sandbox_id) is False
    assert len(manager.registry) == 0
    assert record.port not in manager.ports.allocated


def test_orphaned_sandbox_is_recovered_on_next_start(runtime_config, fake_runtime, tmp_path):
    store = JsonRecordStore(tmp_path / "sandboxes.json")
    first = SandboxLifecycleManager(runtime_config, fake_runtime, record_store=store)
    record = first.create("42", "JavaScript")
    fake_runtime.fail_remove.add(record.sandbox_id)
    first.cleanup_owner("42")

    fake_runtime.fail_remove.clear()
    recovered = SandboxLifecycleManager(runtime_config, fake_runtime, record_store=store).recover()

    assert [r.sandbox_id for r in recovered] == [record.sandbox_id]
    assert fake_runtime.containers == {}
    assert store.load_all() == []


def test_missing_image_is_built_on_demand(manager, fake_runtime):
    fake_runtime.images.clear()

    manager.create("42", "JavaScript")

    assert fake_runtime.built == ["codespace-javascript"]


def test_build_failure_releases_port(manager, fake_runtime):
    fake_runtime.images.clear()
    fake_runtime.build_error = ImageBuildFailed("dockerfile broken")

    with pytest.raises(ImageBuildFailed):
        manager.create("42", "JavaScript")

    assert fake_runtime.runs == []
    assert manager.ports.allocated == frozenset()
    assert len(manager.registry) == 0


def test_missing_port_binding_rolls_back(manager, fake_runtime):
    fake_runtime.bind_port = False

    with pytest.raises(PortResolutionFailed):
        manager.create("42", "JavaScript")

    assert len(fake_runtime.removed) == 1
    assert fake_runtime.containers == {}
    assert len(manager.registry) == 0
    assert manager.ports.allocated == frozenset()


def test_endpoint_uses_port_reported_by_runtime(manager, fake_runtime):
    fake_runtime.port_override = 47399

    record = manager.create("42", "JavaScript")

    assert record.endpoint == "localhost:47399"
    assert 47399 in manager.ports.allocated


def test_recover_removes_orphaned_records(runtime_config, fake_runtime):
    store = MemoryRecordStore()
    store.save(SandboxRecord(owner_id="7", sandbox_id="orphan-1", endpoint="localhost:47001"))
    fake_runtime.containers["orphan-1"] = 47001
    manager = SandboxLifecycleManager(runtime_config, fake_runtime, record_store=store)

    recovered = manager.recover()

    assert [r.sandbox_id for r in recovered] == ["orphan-1"]
    assert fake_runtime.removed == ["orphan-1"]
    assert store.load_all() == []


def test_shared_credential_enables_password_auth(runtime_config, fake_runtime):
    runtime_config.shared_credential = "s3cret"
    manager = SandboxLifecycleManager(runtime_config, fake_runtime)

    manager.create("42", "JavaScript")

    spec = fake_runtime.runs[0]
    assert spec.command[spec.command.index("--auth") + 1] == "password"
    assert spec.environment["PASSWORD"] == "s3cret"


def test_each_owner_mounts_own_workspace(runtime_config, fake_runtime, tmp_path):
    template = tmp_path / "template"
    manager = SandboxLifecycleManager(
        runtime_config,
        fake_runtime,
        workspace_template=template,
        workspace_root=tmp_path / "workspaces",
    )

    manager.create("alice", "JavaScript")
    manager.create("bob", "JavaScript")

    alice, bob = (next(iter(spec.volumes)) for spec in fake_runtime.runs)
    assert alice != bob
    assert str(template.resolve()) not in (alice, bob)
    for spec, mount in zip(fake_runtime.runs, (alice, bob)):
        assert spec.volumes[mount]["bind"] == WORKSPACE_MOUNT
        assert (Path(mount) / "README.md").read_text().startswith("# Welcome")

    (Path(alice) / "student_work.js").write_text("// alice\n")
    assert not (Path(bob) / "student_work.js").exists()


def test_replacement_sandbox_keeps_owner_workspace(runtime_config, fake_runtime, tmp_path):
    manager = SandboxLifecycleManager(runtime_config, fake_runtime, workspace_template=tmp_path / "template")

    manager.create("42", "JavaScript")
    manager.create("42", "JavaScript")

    first, second = (next(iter(spec.volumes)) for spec in fake_runtime.runs)
    assert first == second
    assert Path(first).parent == (tmp_path / "workspaces").resolve()


def test_workspace_names_do_not_collide():
    assert workspace_dirname("a@b") != workspace_dirname("a#b")
    assert workspace_dirname("../x").startswith("x-")


def test_present_image_skips_build_lock(manager, fake_runtime):
    blocker = manager._build_lock("codespace-javascript")
    blocker.acquire()
    try:
        with ThreadPoolExecutor(max_workers=1) as pool:
            record = pool.submit(manager.create, "42", "JavaScript").result(timeout=5)
    finally:
        blocker.release()

    assert record.image == "codespace-javascript"


def test_container_name_is_runtime_safe():
    name = container_name("codespace", "user@example.com")
    assert name.startswith("codespace_user-example.com_")
