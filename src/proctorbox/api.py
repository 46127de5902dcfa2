from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .capture.service import CaptureOutcome, CaptureService
from .config import Settings, load_settings
from .errors import ErrorCategory, ProctorboxError, RuntimeUnavailable
from .events import AuditTrail, EventStore
from .models import (
    CaptureFailed,
    CaptureJob,
    SandboxRecord,
    SandboxStatus,
    SessionState,
    SourceKind,
    TriggerKind,
)
from .runtime import DockerRuntime
from .sandbox_manager import SandboxLifecycleManager
from .session import HttpSubmitter, SessionHooks, SessionManager
from .storage import FileArtifactStore, JsonRecordStore

logger = logging.getLogger("proctorbox.api")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SandboxStartRequest(_CamelModel):
    subject_label: str = Field(alias="subjectLabel")


class SandboxStopRequest(_CamelModel):
    sandbox_id: str = Field(alias="sandboxId")


class FrameCaptureRequest(_CamelModel):
    endpoint: str
    subject_label: str = Field(default="", alias="subjectLabel")
    trigger: TriggerKind = TriggerKind.MANUAL


class DesktopCaptureRequest(_CamelModel):
    subject_label: str = Field(default="", alias="subjectLabel")
    trigger: TriggerKind = TriggerKind.MANUAL


class SessionStartRequest(_CamelModel):
    duration_seconds: int = Field(alias="durationSeconds", gt=0)
    subject_label: Optional[str] = Field(default=None, alias="subjectLabel")


class Coordinator:
    """Wires lifecycle, capture and sessions together and owns shutdown order."""

    def __init__(
        self,
        *,
        settings: Settings,
        manager: SandboxLifecycleManager,
        capture: CaptureService,
        event_store: Optional[EventStore] = None,
        submit: Optional[Callable[[SessionState], Any]] = None,
    ):
        self.settings = settings
        self.manager = manager
        self.capture = capture
        self.event_store = event_store or EventStore()
        self.audit = AuditTrail(self.event_store)
        self._background: Set[asyncio.Future] = set()
        if self.capture.audit is None:
            self.capture.audit = self.audit
        self.sessions = SessionManager(
            settings.session,
            SessionHooks(
                final_capture=self.capture_for_session,
                cleanup=self.cleanup_owner,
                submit=submit,
                scheduled_capture=self._scheduled_capture,
            ),
            audit=self.audit,
        )

    @classmethod
    def build(cls, settings: Settings) -> "Coordinator":
        rt = settings.runtime
        manager = SandboxLifecycleManager(
            rt,
            DockerRuntime(base_url=rt.docker_base_url, timeout=rt.client_timeout),
            record_store=JsonRecordStore(settings.records_path),
            workspace_template=settings.workspace_template,
            workspace_root=settings.workspace_root,
        )
        capture = CaptureService(
            settings.capture,
            FileArtifactStore(settings.artifact_dir),
            credential=rt.shared_credential,
        )
        submit = None
        if settings.session.submit_url:
            submit = HttpSubmitter(settings.session.submit_url, timeout=settings.session.submit_timeout)
        return cls(
            settings=settings,
            manager=manager,
            capture=capture,
            event_store=EventStore(journal=settings.events_path),
            submit=submit,
        )

    async def _lifecycle(
        self,
        fn: Callable,
        *args: Any,
        timeout: Optional[float] = None,
        on_late: Optional[Callable[[Any], Awaitable[None]]] = None,
    ) -> Any:
        """Run a blocking lifecycle call in a worker thread, bounded in time.

        The thread itself cannot be interrupted. When the caller gives up,
        ``on_late`` receives the result the call eventually produces.
        """
        timeout = timeout or self.settings.runtime.call_timeout
        call = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.wait_for(asyncio.shield(call), timeout=timeout)
        except asyncio.TimeoutError as e:
            self._track(call)
            call.add_done_callback(lambda done: self._late_result(done, on_late))
            raise RuntimeUnavailable(f"Container runtime did not answer within {timeout:g}s") from e

    def _track(self, task: asyncio.Future) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _late_result(
        self,
        call: asyncio.Future,
        on_late: Optional[Callable[[Any], Awaitable[None]]],
    ) -> None:
        if call.cancelled():
            return
        error = call.exception()
        if error is not None:
            logger.warning(f"Timed-out lifecycle call failed afterwards: {error}")
            return
        if on_late is not None:
            self._track(asyncio.ensure_future(on_late(call.result())))

    async def _discard_late_sandbox(self, record: SandboxRecord) -> None:
        """Remove a sandbox whose create was already reported as failed."""
        logger.warning(
            f"[{record.owner_id}] Sandbox {record.sandbox_id[:12]} came up after its create timed out, removing it"
        )
        if await asyncio.to_thread(self.manager.stop, record.sandbox_id):
            await self.audit.sandbox_stopped(record.owner_id, record.sandbox_id, reason="create_timeout")

    # -- lifecycle ------------------------------------------------------------

    async def startup(self) -> None:
        for record in await self._lifecycle(self.manager.recover):
            await self.audit.sandbox_recovered(record)

    async def start_sandbox(self, owner_id: str, subject_label: str) -> SandboxRecord:
        try:
            # builds run under their own timeout
            await self._lifecycle(
                self.manager.prepare_image, subject_label, timeout=self.settings.runtime.build_timeout
            )
            record = await self._lifecycle(
                self.manager.create, owner_id, subject_label, on_late=self._discard_late_sandbox
            )
        except ProctorboxError as e:
            await self.audit.sandbox_error(owner_id, str(e), e.category.value)
            raise
        await self.audit.sandbox_created(record)
        return record

    async def _audit_teardown(self, records: List[SandboxRecord], reason: str) -> None:
        for record in records:
            if record.status == SandboxStatus.STOPPED:
                await self.audit.sandbox_stopped(record.owner_id, record.sandbox_id, reason=reason)
            elif record.status == SandboxStatus.ORPHANED:
                await self.audit.sandbox_error(
                    record.owner_id,
                    f"Removal of {record.sandbox_id} failed, left for recovery",
                    ErrorCategory.RUNTIME_UNAVAILABLE.value,
                )

    async def stop_sandbox(self, owner_id: str, sandbox_id: str) -> bool:
        record = self.manager.get(sandbox_id)
        stopped = await self._lifecycle(self.manager.stop, sandbox_id)
        if record is not None:
            await self._audit_teardown([record], reason="user_request")
        return stopped

    async def cleanup_owner(self, owner_id: str) -> int:
        records = self.manager.registry.for_owner(owner_id)
        stopped = await self._lifecycle(self.manager.cleanup_owner, owner_id)
        await self._audit_teardown(records, reason="cleanup")
        return stopped

    # -- capture --------------------------------------------------------------

    async def capture_frame(
        self,
        owner_id: str,
        endpoint: str,
        subject_label: str = "",
        trigger: TriggerKind = TriggerKind.MANUAL,
    ) -> CaptureOutcome:
        job = CaptureJob(
            target_endpoint=endpoint,
            owner_id=owner_id,
            subject_label=subject_label,
            trigger_kind=trigger,
        )
        return await self.capture.capture(job)

    async def capture_desktop(
        self,
        owner_id: str,
        subject_label: str = "",
        trigger: TriggerKind = TriggerKind.MANUAL,
    ) -> CaptureOutcome:
        job = CaptureJob(
            target_endpoint="",
            owner_id=owner_id,
            subject_label=subject_label,
            trigger_kind=trigger,
            source_kind=SourceKind.FULL_DESKTOP,
        )
        return await self.capture.capture(job)

    async def capture_for_session(self, state: SessionState, trigger: TriggerKind) -> Optional[CaptureOutcome]:
        record = self.manager.find_by_owner(state.owner_id)
        if record is None:
            logger.info(f"[{state.owner_id}] No running sandbox to capture ({trigger.value})")
            return None
        return await self.capture_frame(state.owner_id, record.endpoint, record.subject_label, trigger)

    async def _scheduled_capture(self, state: SessionState) -> Optional[CaptureOutcome]:
        return await self.capture_for_session(state, TriggerKind.SCHEDULED)

    async def capture_all(self) -> Tuple[List[Tuple[SandboxRecord, CaptureOutcome]], Dict[str, int]]:
        records = self.manager.registry.running()
        jobs = [
            CaptureJob(
                target_endpoint=r.endpoint,
                owner_id=r.owner_id,
                subject_label=r.subject_label,
                trigger_kind=TriggerKind.ADMIN_BULK,
            )
            for r in records
        ]
        outcomes, summary = await self.capture.capture_many(jobs)
        return list(zip(records, outcomes)), summary

    # -- sessions -------------------------------------------------------------

    async def start_session(
        self,
        owner_id: str,
        duration_seconds: int,
        subject_label: Optional[str] = None,
    ) -> SessionState:
        record = self.manager.find_by_owner(owner_id)
        if record is None and subject_label:
            record = await self.start_sandbox(owner_id, subject_label)
        return await self.sessions.start(
            owner_id,
            duration_seconds,
            sandbox_id=record.sandbox_id if record else None,
        )

    async def end_session(self, owner_id: str) -> Optional[SessionState]:
        return await self.sessions.end(owner_id)

    # -- shutdown -------------------------------------------------------------

    async def shutdown(self) -> Dict[str, int]:
        """Cancel timers, drain captures, sweep sandboxes, close the browser."""
        cancelled = self.sessions.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} active session timer(s)")

        if self.capture.in_flight:
            drained = await self.capture.wait_idle(self.capture.config.worst_case_seconds)
            if not drained:
                logger.warning(f"{self.capture.in_flight} capture(s) still running at shutdown")

        if self._background:
            _, pending = await asyncio.wait(set(self._background), timeout=self.settings.runtime.call_timeout)
            if pending:
                logger.warning(f"{len(pending)} timed-out lifecycle call(s) still running at shutdown")

        summary = await asyncio.to_thread(self.manager.cleanup_all)
        await self.capture.close()
        return summary


def _outcome_payload(outcome: CaptureOutcome) -> Dict[str, Any]:
    if isinstance(outcome, CaptureFailed):
        return {"success": False, "error": outcome.reason, "category": outcome.category.value}
    return {"success": True, "filename": outcome.filename, "sizeBytes": outcome.size_bytes}


def _outcome_response(outcome: CaptureOutcome) -> JSONResponse:
    return JSONResponse(status_code=200 if outcome.success else 500, content=_outcome_payload(outcome))


def create_api(*, coordinator: Coordinator, settings: Settings, manage_lifecycle: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await coordinator.startup()
        try:
            yield
        finally:
            if manage_lifecycle:
                summary = await coordinator.shutdown()
                logger.info(f"Shutdown complete: {summary}")

    app = FastAPI(title="proctorbox", lifespan=lifespan)

    @app.exception_handler(ProctorboxError)
    async def proctorbox_error(request: Request, exc: ProctorboxError) -> JSONResponse:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc), "category": exc.category.value},
        )

    def require_token(x_proctorbox_token: Optional[str] = Header(default=None)) -> None:
        if not settings.api_token:
            return
        if not x_proctorbox_token or x_proctorbox_token != settings.api_token:
            raise HTTPException(status_code=401, detail="unauthorized")

    def owner_id(x_owner_id: Optional[str] = Header(default=None)) -> str:
        if not x_owner_id or not x_owner_id.strip():
            raise HTTPException(status_code=401, detail="owner identity required")
        return x_owner_id.strip()

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "sandboxes": len(coordinator.manager.registry),
            "activeSessions": len(coordinator.sessions.active()),
            "capturesInFlight": coordinator.capture.in_flight,
        }

    @app.post("/sandbox/start", dependencies=[Depends(require_token)])
    async def sandbox_start(req: SandboxStartRequest, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        record = await coordinator.start_sandbox(owner, req.subject_label)
        return {"endpoint": record.endpoint, "sandboxId": record.sandbox_id}

    @app.post("/sandbox/stop", dependencies=[Depends(require_token)])
    async def sandbox_stop(req: SandboxStopRequest, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        record = coordinator.manager.get(req.sandbox_id)
        if record is not None and record.owner_id != owner:
            raise HTTPException(status_code=403, detail="sandbox belongs to another owner")
        await coordinator.stop_sandbox(owner, req.sandbox_id)
        return {"success": True}

    @app.get("/sandboxes", dependencies=[Depends(require_token)])
    async def sandboxes() -> Dict[str, Any]:
        return {"sandboxes": coordinator.manager.status()}

    @app.post("/capture/frame", dependencies=[Depends(require_token)])
    async def capture_frame(req: FrameCaptureRequest, owner: str = Depends(owner_id)) -> JSONResponse:
        outcome = await coordinator.capture_frame(owner, req.endpoint, req.subject_label, req.trigger)
        return _outcome_response(outcome)

    @app.post("/capture/desktop", dependencies=[Depends(require_token)])
    async def capture_desktop(req: DesktopCaptureRequest, owner: str = Depends(owner_id)) -> JSONResponse:
        outcome = await coordinator.capture_desktop(owner, req.subject_label, req.trigger)
        return _outcome_response(outcome)

    @app.post("/admin/capture-all", dependencies=[Depends(require_token)])
    async def capture_all() -> Dict[str, Any]:
        results, summary = await coordinator.capture_all()
        return {
            "summary": summary,
            "results": [
                {"ownerId": record.owner_id, "sandboxId": record.sandbox_id, **_outcome_payload(outcome)}
                for record, outcome in results
            ],
        }

    @app.post("/session/start", dependencies=[Depends(require_token)])
    async def session_start(req: SessionStartRequest, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        state = await coordinator.start_session(owner, req.duration_seconds, req.subject_label)
        return state.to_dict()

    @app.post("/session/end", dependencies=[Depends(require_token)])
    async def session_end(owner: str = Depends(owner_id)) -> Dict[str, Any]:
        state = await coordinator.end_session(owner)
        if state is None:
            raise HTTPException(status_code=404, detail="no session")
        return state.to_dict()

    @app.get("/session", dependencies=[Depends(require_token)])
    async def session_status(owner: str = Depends(owner_id)) -> Dict[str, Any]:
        state = coordinator.sessions.get(owner)
        if state is None:
            return {"ownerId": owner, "status": "idle"}
        return state.to_dict()

    @app.get("/events", dependencies=[Depends(require_token)])
    async def events(since: int = 0, limit: int = 100, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        found = coordinator.event_store.query(owner_id=owner, since_sequence=since, limit=limit)
        return {
            "events": [e.to_dict() for e in found],
            "sequence": coordinator.event_store.sequence,
        }

    return app


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    coordinator = Coordinator.build(settings)
    return create_api(coordinator=coordinator, settings=settings)


def main() -> None:
    import uvicorn
    from dotenv import load_dotenv

    from .log_setup import setup_logging

    load_dotenv()
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_dir)
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port)
