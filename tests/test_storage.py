import json
from datetime import UTC, datetime

import pytest

from proctorbox.errors import StorageError
from proctorbox.models import (
    CaptureArtifact,
    Resolution,
    SandboxRecord,
    SandboxStatus,
    SourceKind,
    TriggerKind,
)
from proctorbox.storage import FileArtifactStore, JsonRecordStore


def _record(sandbox_id: str, owner: str = "42") -> SandboxRecord:
    return SandboxRecord(
        owner_id=owner,
        sandbox_id=sandbox_id,
        endpoint="localhost:47000",
        subject_label="JavaScript",
        status=SandboxStatus.RUNNING,
    )


def test_json_record_store_save_and_delete(tmp_path):
    store = JsonRecordStore(tmp_path / "state" / "sandboxes.json")
    store.save(_record("c1"))
    store.save(_record("c2", owner="7"))
    store.delete("c1")
    store.delete("missing")

    records = JsonRecordStore(tmp_path / "state" / "sandboxes.json").load_all()

    assert [(r.sandbox_id, r.owner_id, r.status) for r in records] == [("c2", "7", SandboxStatus.RUNNING)]
    assert not (tmp_path / "state" / "sandboxes.tmp").exists()


def test_json_record_store_tolerates_bad_content(tmp_path):
    path = tmp_path / "sandboxes.json"
    path.write_text("{broken")
    assert JsonRecordStore(path).load_all() == []

    path.write_text(json.dumps({"sandboxes": {"x": {"sandbox_id": "x"}, "c1": _record("c1").to_dict()}}))
    assert [r.sandbox_id for r in JsonRecordStore(path).load_all()] == ["c1"]


def test_json_record_store_write_failure(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    store = JsonRecordStore(blocker / "sandboxes.json")

    with pytest.raises(StorageError):
        store.save(_record("c1"))


def test_file_artifact_store_sanitizes_owner(tmp_path):
    artifact = CaptureArtifact(
        owner_id="../evil",
        image="data:image/jpeg;base64,AAAA",
        captured_at=datetime(2026, 1, 1, tzinfo=UTC),
        resolution=Resolution(1920, 1080),
        source_kind=SourceKind.SANDBOX_FRAME,
        trigger_kind=TriggerKind.MANUAL,
        size_bytes=3,
        filename="user-evil-javascript-manual-20260101T000000000000Z.jpg",
        subject_label="JavaScript",
    )
    store = FileArtifactStore(tmp_path)

    location = store.save(artifact)

    assert store.path_for(artifact).parent.parent == tmp_path
    assert store.path_for(artifact).parent.name == "_evil"
    with open(location) as f:
        assert json.load(f)["ownerId"] == "../evil"
    assert len(store.list_documents()) == 1
    assert store.list_documents("nobody") == []
