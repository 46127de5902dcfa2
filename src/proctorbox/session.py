"""
Time-boxed work sessions.

A ``SessionEnforcer`` counts one session down tick by tick:
- warnings fire once per threshold (only when the session is longer than it)
- at zero the session expires: final capture, sandbox cleanup, auto-submit
- a manual end runs the same teardown without auto-submit

``SessionManager`` keeps one enforcer per owner and couples each to a
``CaptureScheduler`` for periodic captures.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .config import SessionConfig
from .events import AuditTrail
from .models import SessionState, SessionStatus, TriggerKind, utcnow

logger = logging.getLogger("proctorbox.session")

FinalCaptureHook = Callable[[SessionState, TriggerKind], Awaitable[Any]]
CleanupHook = Callable[[str], Awaitable[Any]]
SubmitHook = Callable[[SessionState], Awaitable[Any]]
ScheduledCaptureHook = Callable[[SessionState], Awaitable[Any]]


@dataclass
class SessionHooks:
    """Collaborators a session calls into when it ends or captures."""
    final_capture: Optional[FinalCaptureHook] = None
    cleanup: Optional[CleanupHook] = None
    submit: Optional[SubmitHook] = None
    scheduled_capture: Optional[ScheduledCaptureHook] = None


class HttpSubmitter:
    """Posts an auto-submission request to the external grading service."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.token = token
        self.transport = transport

    async def __call__(self, state: SessionState) -> bool:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        payload = {
            "ownerId": state.owner_id,
            "sandboxId": state.sandbox_id,
            "reason": state.status.value,
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(self.url, json=payload, headers=headers)
            resp.raise_for_status()
        return True


class SessionEnforcer:
    def __init__(
        self,
        state: SessionState,
        config: SessionConfig,
        hooks: Optional[SessionHooks] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.state = state
        self.config = config
        self.hooks = hooks or SessionHooks()
        self.audit = audit
        self.thresholds = sorted(set(config.warning_thresholds), reverse=True)
        self._task: Optional[asyncio.Task] = None
        self._finishing = asyncio.Lock()

    @property
    def owner_id(self) -> str:
        return self.state.owner_id

    async def start(self, run_timer: bool = True) -> SessionState:
        if self.state.status != SessionStatus.IDLE:
            raise RuntimeError(f"Session for {self.owner_id} already {self.state.status.value}")
        self.state.status = SessionStatus.ACTIVE
        self.state.started_at = utcnow()
        logger.info(f"[{self.owner_id}] Session started ({self.state.total_duration_seconds}s)")
        if self.audit:
            await self.audit.session_started(self.state)
        if run_timer:
            self._task = asyncio.create_task(self._run(), name=f"session-{self.owner_id}")
        return self.state

    async def _run(self) -> None:
        while self.state.is_active:
            await asyncio.sleep(self.config.tick_interval)
            await self.tick()

    async def tick(self) -> None:
        """Advance the countdown by one second."""
        if not self.state.is_active:
            return
        self.state.remaining_seconds = max(0, self.state.remaining_seconds - 1)

        for threshold in self.due_warnings():
            self.state.warnings_fired.add(threshold)
            logger.info(f"[{self.owner_id}] {threshold}s remaining")
            if self.audit:
                await self.audit.session_warning(self.state, threshold)

        if self.state.remaining_seconds <= 0:
            await self._expire()

    def due_warnings(self) -> List[int]:
        return [
            t for t in self.thresholds
            if t not in self.state.warnings_fired
            and self.state.remaining_seconds <= t
            and self.state.total_duration_seconds > t
        ]

    async def _expire(self) -> None:
        async with self._finishing:
            if not self.state.is_active:
                return
            self.state.status = SessionStatus.EXPIRED
            self.state.ended_at = utcnow()
            logger.info(f"[{self.owner_id}] Session expired")
            await self._teardown(TriggerKind.SESSION_EXPIRY, auto_submit=self.config.auto_submit)
            if self.audit:
                await self.audit.session_expired(self.state)

    async def end_manually(self) -> bool:
        """Active -> EndedManually. Returns False if the session was not active."""
        async with self._finishing:
            if not self.state.is_active:
                return False
            self.state.status = SessionStatus.ENDED_MANUALLY
            self.state.ended_at = utcnow()
            self._cancel_timer()
            logger.info(f"[{self.owner_id}] Session ended manually")
            await self._teardown(TriggerKind.MANUAL, auto_submit=False)
            if self.audit:
                await self.audit.session_ended(self.state)
            return True

    async def abandon(self) -> None:
        """Stop counting without teardown, e.g. when a new session replaces this one."""
        self._cancel_timer()
        if self.state.is_active:
            self.state.status = SessionStatus.ENDED_MANUALLY
            self.state.ended_at = utcnow()

    def cancel(self) -> None:
        """Cancel the timer immediately (process shutdown)."""
        self._cancel_timer()

    def _cancel_timer(self) -> None:
        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _teardown(self, trigger: TriggerKind, auto_submit: bool) -> None:
        hooks = self.hooks
        if hooks.final_capture:
            try:
                await hooks.final_capture(self.state, trigger)
            except Exception:
                logger.exception(f"[{self.owner_id}] Final capture failed")

        if hooks.cleanup:
            try:
                await hooks.cleanup(self.owner_id)
            except Exception:
                logger.exception(f"[{self.owner_id}] Sandbox cleanup failed")

        if auto_submit and hooks.submit:
            ok, detail = True, ""
            try:
                await hooks.submit(self.state)
            except Exception as e:
                ok, detail = False, str(e)
                logger.error(f"[{self.owner_id}] Auto-submission failed: {e}")
            if self.audit:
                await self.audit.submission_sent(self.owner_id, ok, detail)


class CaptureScheduler:
    """Periodic captures for one active session."""

    def __init__(
        self,
        state: SessionState,
        interval: float,
        capture: ScheduledCaptureHook,
        audit: Optional[AuditTrail] = None,
    ):
        self.state = state
        self.interval = interval
        self.capture = capture
        self.audit = audit
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self.interval <= 0 or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name=f"capture-{self.state.owner_id}")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not self.state.is_active:
                return
            await self.run_once()

    async def run_once(self) -> bool:
        """One scheduled capture; a miss is counted, never fatal."""
        reason = ""
        try:
            outcome = await self.capture(self.state)
        except Exception as e:
            logger.exception(f"[{self.state.owner_id}] Scheduled capture raised")
            outcome, reason = None, str(e)

        if outcome is not None and outcome.success:
            return True

        if outcome is None:
            reason = reason or "no running sandbox"
        else:
            reason = outcome.reason
        self.state.missed_captures += 1
        logger.warning(f"[{self.state.owner_id}] Scheduled capture missed: {reason}")
        if self.audit:
            await self.audit.capture_missed(self.state, reason)
        return False

    def stop(self) -> None:
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None


class SessionManager:
    """One session per owner; a new session replaces the previous one."""

    def __init__(
        self,
        config: SessionConfig,
        hooks: Optional[SessionHooks] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.config = config
        self.hooks = hooks or SessionHooks()
        self.audit = audit
        self._enforcers: Dict[str, SessionEnforcer] = {}
        self._schedulers: Dict[str, CaptureScheduler] = {}

    def _wrap_hooks(self, owner_id: str) -> SessionHooks:
        """Stop the owner's scheduler before the session tears down."""
        base = self.hooks

        async def final_capture(state: SessionState, trigger: TriggerKind) -> Any:
            self._stop_scheduler(owner_id)
            if base.final_capture:
                return await base.final_capture(state, trigger)
            return None

        return SessionHooks(
            final_capture=final_capture,
            cleanup=base.cleanup,
            submit=base.submit,
            scheduled_capture=base.scheduled_capture,
        )

    async def start(
        self,
        owner_id: str,
        duration_seconds: int,
        sandbox_id: Optional[str] = None,
        run_timer: bool = True,
    ) -> SessionState:
        if duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")

        previous = self._enforcers.pop(owner_id, None)
        if previous is not None:
            self._stop_scheduler(owner_id)
            await previous.abandon()
            logger.info(f"[{owner_id}] Previous session replaced")

        state = SessionState(
            owner_id=owner_id,
            sandbox_id=sandbox_id,
            total_duration_seconds=int(duration_seconds),
            remaining_seconds=int(duration_seconds),
        )
        enforcer = SessionEnforcer(state, self.config, self._wrap_hooks(owner_id), self.audit)
        self._enforcers[owner_id] = enforcer
        await enforcer.start(run_timer=run_timer)

        if self.hooks.scheduled_capture and self.config.capture_interval > 0 and run_timer:
            scheduler = CaptureScheduler(state, self.config.capture_interval, self.hooks.scheduled_capture, self.audit)
            self._schedulers[owner_id] = scheduler
            scheduler.start()
        return state

    def _stop_scheduler(self, owner_id: str) -> None:
        scheduler = self._schedulers.pop(owner_id, None)
        if scheduler is not None:
            scheduler.stop()

    def get(self, owner_id: str) -> Optional[SessionState]:
        enforcer = self._enforcers.get(owner_id)
        return enforcer.state if enforcer else None

    def enforcer(self, owner_id: str) -> Optional[SessionEnforcer]:
        return self._enforcers.get(owner_id)

    async def end(self, owner_id: str) -> Optional[SessionState]:
        enforcer = self._enforcers.get(owner_id)
        if enforcer is None:
            return None
        self._stop_scheduler(owner_id)
        await enforcer.end_manually()
        return enforcer.state

    def active(self) -> List[SessionState]:
        return [e.state for e in self._enforcers.values() if e.state.is_active]

    def cancel_all(self) -> int:
        """Cancel every timer and scheduler. Returns the number of active sessions."""
        count = 0
        for owner_id, enforcer in list(self._enforcers.items()):
            if enforcer.state.is_active:
                count += 1
            enforcer.cancel()
            self._stop_scheduler(owner_id)
        return count
