import asyncio

import httpx
import pytest

from proctorbox.api import Coordinator, create_api
from proctorbox.capture.service import CaptureService
from proctorbox.config import SessionConfig, Settings
from proctorbox.errors import NavigationTimeout, RuntimeUnavailable
from proctorbox.events import EventType
from proctorbox.storage import MemoryArtifactStore

from fakes import FakeDriver, FakePool

OWNER = {"X-Owner-Id": "42"}


def _coordinator(manager, fake_runtime, capture_config, tmp_path, token=None, driver=None):
    settings = Settings(
        capture=capture_config,
        session=SessionConfig(tick_interval=60, capture_interval=0),
        data_dir=tmp_path,
        api_token=token,
    )
    capture = CaptureService(
        capture_config,
        MemoryArtifactStore(),
        pool=FakePool(),
        driver=driver or FakeDriver(alive=fake_runtime.is_serving),
    )
    coordinator = Coordinator(settings=settings, manager=manager, capture=capture)
    app = create_api(coordinator=coordinator, settings=settings, manage_lifecycle=False)
    return coordinator, app


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_needs_no_identity(manager, fake_runtime, capture_config, tmp_path):
    _, app = _coordinator(manager, fake_runtime, capture_config, tmp_path, token="secret")

    async with _client(app) as client:
        resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["ok"] is True


@pytest.mark.asyncio
async def test_start_and_stop_sandbox(manager, fake_runtime, capture_config, tmp_path):
    coordinator, app = _coordinator(manager, fake_runtime, capture_config, tmp_path)

    async with _client(app) as client:
        resp = await client.post("/sandbox/start", json={"subjectLabel": "JavaScript"}, headers=OWNER)
        assert resp.status_code == 200
        payload = resp.json()
        assert payload["endpoint"].startswith("localhost:")

        listed = await client.get("/sandboxes", headers=OWNER)
        assert [s["sandbox_id"] for s in listed.json()["sandboxes"]] == [payload["sandboxId"]]

        stop = await client.post("/sandbox/stop", json={"sandboxId": payload["sandboxId"]}, headers=OWNER)
        assert stop.status_code == 200
        assert stop.json() == {"success": True}

        again = await client.post("/sandbox/stop", json={"sandboxId": payload["sandboxId"]}, headers=OWNER)
        assert again.json() == {"success": True}

    assert fake_runtime.removed == [payload["sandboxId"]]
    assert coordinator.event_store.count() == 2


@pytest.mark.asyncio
async def test_unsupported_subject_is_rejected(manager, fake_runtime, capture_config, tmp_path):
    coordinator, app = _coordinator(manager, fake_runtime, capture_config, tmp_path)

    async with _client(app) as client:
        resp = await client.post("/sandbox/start", json={"subjectLabel": "COBOL"}, headers=OWNER)

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["category"] == "unsupported_subject"
    assert "COBOL" in body["error"]
    assert fake_runtime.runs == []
    assert coordinator.event_store.count() == 1


@pytest.mark.asyncio
async def test_owner_identity_and_token_are_required(manager, fake_runtime, capture_config, tmp_path):
    _, app = _coordinator(manager, fake_runtime, capture_config, tmp_path, token="secret")
    body = {"subjectLabel": "JavaScript"}

    async with _client(app) as client:
        no_token = await client.post("/sandbox/start", json=body, headers=OWNER)
        no_owner = await client.post("/sandbox/start", json=body, headers={"X-Proctorbox-Token": "secret"})
        ok = await client.post(
            "/sandbox/start", json=body, headers={**OWNER, "X-Proctorbox-Token": "secret"}
        )

    assert no_token.status_code == 401
    assert no_owner.status_code == 401
    assert ok.status_code == 200


@pytest.mark.asyncio
async def test_cannot_stop_another_owners_sandbox(manager, fake_runtime, capture_config, tmp_path):
    _, app = _coordinator(manager, fake_runtime, capture_config, tmp_path)

    async with _client(app) as client:
        started = await client.post("/sandbox/start", json={"subjectLabel": "JavaScript"}, headers=OWNER)
        sandbox_id = started.json()["sandboxId"]
        resp = await client.post("/sandbox/stop", json={"sandboxId": sandbox_id}, headers={"X-Owner-Id": "7"})

    assert resp.status_code == 403
    assert fake_runtime.removed == []


@pytest.mark.asyncio
async def test_capture_frame_success_and_failure(manager, fake_runtime, capture_config, tmp_path):
    _, app = _coordinator(manager, fake_runtime, capture_config, tmp_path)

    async with _client(app) as client:
        started = await client.post("/sandbox/start", json={"subjectLabel": "JavaScript"}, headers=OWNER)
        endpoint = started.json()["endpoint"]

        ok = await client.post(
            "/capture/frame",
            json={"endpoint": endpoint, "subjectLabel": "JavaScript", "trigger": "submission"},
            headers=OWNER,
        )
        dead = await client.post("/capture/frame", json={"endpoint": "localhost:1"}, headers=OWNER)

    assert ok.status_code == 200
    assert ok.json()["success"] is True
    assert ok.json()["filename"].startswith("user-42-javascript-submission-")
    assert ok.json()["sizeBytes"] > 0

    assert dead.status_code == 500
    assert dead.json() == {
        "success": False,
        "error": "Navigation to http://localhost:1 failed: net::ERR_CONNECTION_REFUSED",
        "category": "navigation",
    }


@pytest.mark.asyncio
async def test_capture_desktop(manager, fake_runtime, capture_config, tmp_path):
    _, app = _coordinator(manager, fake_runtime, capture_config, tmp_path)

    async with _client(app) as client:
        resp = await client.post("/capture/desktop", json={"subjectLabel": "Python"}, headers=OWNER)

    assert resp.status_code == 200
    assert resp.json()["filename"].startswith("desktop-user-42-python-manual-")


@pytest.mark.asyncio
async def test_admin_capture_all(manager, fake_runtime, capture_config, tmp_path):
    driver = FakeDriver(alive=fake_runtime.is_serving)
    _, app = _coordinator(manager, fake_runtime, capture_config, tmp_path, driver=driver)
    manager.create("1", "JavaScript")
    manager.create("2", "Python")

    async with _client(app) as client:
        resp = await client.post("/admin/capture-all")

    payload = resp.json()
    assert payload["summary"] == {"total": 2, "successful": 2, "failed": 0}
    assert {r["ownerId"] for r in payload["results"]} == {"1", "2"}
    assert all("-admin-bulk-" in r["filename"] for r in payload["results"])


@pytest.mark.asyncio
async def test_admin_capture_all_reports_failures(manager, fake_runtime, capture_config, tmp_path):
    driver = FakeDriver(error=NavigationTimeout("slow"))
    _, app = _coordinator(manager, fake_runtime, capture_config, tmp_path, driver=driver)
    manager.create("1", "JavaScript")

    async with _client(app) as client:
        resp = await client.post("/admin/capture-all")

    assert resp.json()["summary"] == {"total": 1, "successful": 0, "failed": 1}
    assert resp.json()["results"][0]["category"] == "navigation_timeout"


@pytest.mark.asyncio
async def test_session_start_status_and_end(manager, fake_runtime, capture_config, tmp_path):
    coordinator, app = _coordinator(manager, fake_runtime, capture_config, tmp_path)

    async with _client(app) as client:
        idle = await client.get("/session", headers=OWNER)
        assert idle.json() == {"ownerId": "42", "status": "idle"}

        started = await client.post(
            "/session/start", json={"durationSeconds": 600, "subjectLabel": "JavaScript"}, headers=OWNER
        )
        assert started.status_code == 200
        state = started.json()
        assert state["status"] == "active"
        assert state["remainingSeconds"] == 600
        assert state["sandboxId"] == manager.find_by_owner("42").sandbox_id

        status = await client.get("/session", headers=OWNER)
        assert status.json()["status"] == "active"

        ended = await client.post("/session/end", headers=OWNER)
        assert ended.json()["status"] == "ended-manually"

        missing = await client.post("/session/end", headers={"X-Owner-Id": "7"})
        assert missing.status_code == 404

        events = await client.get("/events", headers=OWNER)

    assert manager.find_by_owner("42") is None
    assert coordinator.capture.store.for_owner("42")[0]["metadata"]["triggerKind"] == "manual"

    types = [e["type"] for e in events.json()["events"]]
    assert types[0] == "sandbox.created"
    assert "session.started" in types
    assert "session.ended" in types
    assert "session.submission" not in types
    assert events.json()["sequence"] == coordinator.event_store.sequence


@pytest.mark.asyncio
async def test_session_rejects_non_positive_duration(manager, fake_runtime, capture_config, tmp_path):
    _, app = _coordinator(manager, fake_runtime, capture_config, tmp_path)

    async with _client(app) as client:
        resp = await client.post("/session/start", json={"durationSeconds": 0}, headers=OWNER)

    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_events_are_scoped_to_owner(manager, fake_runtime, capture_config, tmp_path):
    _, app = _coordinator(manager, fake_runtime, capture_config, tmp_path)

    async with _client(app) as client:
        await client.post("/sandbox/start", json={"subjectLabel": "JavaScript"}, headers={"X-Owner-Id": "7"})
        first = await client.get("/events", headers={"X-Owner-Id": "7"})
        other = await client.get("/events", headers=OWNER)
        later = await client.get(
            "/events", params={"since": first.json()["sequence"]}, headers={"X-Owner-Id": "7"}
        )

    assert len(first.json()["events"]) == 1
    assert other.json()["events"] == []
    assert later.json()["events"] == []


@pytest.mark.asyncio
async def test_shutdown_sweeps_everything(manager, fake_runtime, capture_config, tmp_path):
    coordinator, _ = _coordinator(manager, fake_runtime, capture_config, tmp_path)
    await coordinator.start_sandbox("1", "JavaScript")
    await coordinator.start_session("2", 300, "Python")

    summary = await coordinator.shutdown()

    assert summary == {"total": 2, "stopped": 2, "failed": 0}
    assert fake_runtime.containers == {}
    assert coordinator.capture.pool.closed is True


async def _wait_for(predicate, attempts=100, delay=0.02):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(delay)
    return False


@pytest.mark.asyncio
async def test_stalled_create_fails_and_late_sandbox_is_removed(manager, fake_runtime, capture_config, tmp_path):
    coordinator, _ = _coordinator(manager, fake_runtime, capture_config, tmp_path)
    coordinator.settings.runtime.call_timeout = 0.1
    fake_runtime.run_delay = 0.4

    with pytest.raises(RuntimeUnavailable, match="did not answer within 0.1s"):
        await coordinator.start_sandbox("7", "JavaScript")

    assert await _wait_for(lambda: coordinator.event_store.count(EventType.SANDBOX_STOPPED) == 1)
    assert len(manager.registry) == 0
    assert fake_runtime.containers == {}
    assert manager.ports.allocated == frozenset()
    stopped = coordinator.event_store.query(event_type=EventType.SANDBOX_STOPPED)
    assert stopped[0].data["reason"] == "create_timeout"
    assert coordinator.event_store.count(EventType.SANDBOX_ERROR) == 1


@pytest.mark.asyncio
async def test_image_build_has_its_own_timeout(manager, fake_runtime, capture_config, tmp_path):
    coordinator, _ = _coordinator(manager, fake_runtime, capture_config, tmp_path)
    coordinator.settings.runtime.call_timeout = 0.1
    coordinator.settings.runtime.build_timeout = 5
    fake_runtime.images.clear()
    fake_runtime.build_delay = 0.3

    record = await coordinator.start_sandbox("7", "JavaScript")

    assert fake_runtime.built == ["codespace-javascript"]
    assert manager.find_by_owner("7").sandbox_id == record.sandbox_id


@pytest.mark.asyncio
async def test_failed_removal_is_audited_and_owner_can_restart(manager, fake_runtime, capture_config, tmp_path):
    coordinator, _ = _coordinator(manager, fake_runtime, capture_config, tmp_path)
    first = await coordinator.start_sandbox("7", "JavaScript")
    fake_runtime.fail_remove.add(first.sandbox_id)

    assert await coordinator.cleanup_owner("7") == 0
    second = await coordinator.start_sandbox("7", "JavaScript")

    assert second.sandbox_id != first.sandbox_id
    errors = coordinator.event_store.query(event_type=EventType.SANDBOX_ERROR)
    assert [e.owner_id for e in errors] == ["7"]
    assert coordinator.event_store.count(EventType.SANDBOX_STOPPED) == 0
