"""Capture service: one attempt end to end, never raising past its boundary."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from playwright.async_api import Error as PlaywrightError

from ..config import CaptureConfig
from ..errors import CaptureError, ErrorCategory, StorageError
from ..events import AuditTrail
from ..models import (
    CaptureArtifact,
    CaptureFailed,
    CaptureJob,
    RawFrame,
    Resolution,
    SourceKind,
    utcnow,
)
from ..storage import ArtifactStore
from .browser import BrowserPool
from .desktop import encode_data_url
from .driver import CaptureDriver, DriveReport

logger = logging.getLogger("proctorbox.capture")

CaptureOutcome = Union[CaptureArtifact, CaptureFailed]

# Grace on top of the summed driver timeouts before an attempt is abandoned.
ATTEMPT_MARGIN_SECONDS = 10.0


def artifact_filename(job: CaptureJob, captured_at) -> str:
    subject = re.sub(r"[^a-z0-9]+", "-", job.subject_label.lower().replace("+", "p")).strip("-") or "code"
    owner = re.sub(r"[^A-Za-z0-9_-]+", "-", str(job.owner_id)).strip("-") or "owner"
    stamp = captured_at.strftime("%Y%m%dT%H%M%S%fZ")
    prefix = "desktop-user" if job.source_kind == SourceKind.FULL_DESKTOP else "user"
    return f"{prefix}-{owner}-{subject}-{job.trigger_kind.value}-{stamp}.jpg"


def summarize(outcomes: Iterable[CaptureOutcome]) -> Dict[str, int]:
    outcomes = list(outcomes)
    successful = sum(1 for o in outcomes if o.success)
    return {"total": len(outcomes), "successful": successful, "failed": len(outcomes) - successful}


class CaptureService:
    """Acquire page, drive, encode, persist, release.

    Driver and persistence failures come back as ``CaptureFailed`` values and
    write no artifact. Concurrency is bounded by ``max_concurrent``.
    """

    def __init__(
        self,
        config: CaptureConfig,
        store: ArtifactStore,
        pool: Optional[BrowserPool] = None,
        driver: Optional[CaptureDriver] = None,
        audit: Optional[AuditTrail] = None,
        credential: Optional[str] = None,
        clock: Callable[[], Any] = utcnow,
    ):
        self.config = config
        self.store = store
        self.pool = pool or BrowserPool(config)
        self.driver = driver or CaptureDriver(config)
        self.audit = audit
        self.credential = credential
        self.clock = clock
        self._semaphore = asyncio.Semaphore(max(1, config.max_concurrent))
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def attempt_timeout(self, job: CaptureJob) -> float:
        if job.source_kind == SourceKind.FULL_DESKTOP:
            budget = self.config.desktop_attempts * self.config.desktop_poll_interval
        else:
            budget = self.config.worst_case_seconds
        return budget + ATTEMPT_MARGIN_SECONDS

    async def capture(self, job: CaptureJob) -> CaptureOutcome:
        self._in_flight += 1
        self._idle.clear()
        try:
            async with self._semaphore:
                outcome = await self._attempt(job)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

        if isinstance(outcome, CaptureArtifact):
            logger.info(
                f"[{job.owner_id}] Captured {outcome.filename} "
                f"({outcome.size_bytes} bytes, {job.trigger_kind.value})"
            )
            if self.audit:
                await self.audit.capture_completed(outcome)
        else:
            logger.warning(f"[{job.owner_id}] Capture failed ({outcome.category.value}): {outcome.reason}")
            if self.audit:
                await self.audit.capture_failed(job, outcome)
        return outcome

    async def _attempt(self, job: CaptureJob) -> CaptureOutcome:
        try:
            frame = await asyncio.wait_for(self._drive(job), timeout=self.attempt_timeout(job))
        except CaptureError as e:
            return self._failed(job, str(e), e.category)
        except asyncio.TimeoutError:
            return self._failed(
                job, f"Capture abandoned after {self.attempt_timeout(job):g}s", ErrorCategory.CAPTURE_TIMEOUT
            )
        except PlaywrightError as e:
            return self._failed(job, f"Browser error: {e.message}", ErrorCategory.UNKNOWN)
        except Exception as e:
            logger.exception(f"[{job.owner_id}] Unexpected capture error")
            return self._failed(job, f"Unexpected error: {e}", ErrorCategory.UNKNOWN)

        if not frame.data:
            return self._failed(job, "Browser returned an empty frame", ErrorCategory.UNKNOWN)

        artifact = self.encode(job, frame)
        try:
            await asyncio.to_thread(self.store.save, artifact)
        except StorageError as e:
            return self._failed(job, str(e), ErrorCategory.STORAGE)
        return artifact

    async def _drive(self, job: CaptureJob) -> RawFrame:
        if job.source_kind == SourceKind.FULL_DESKTOP:
            async with self.pool.desktop_page() as page:
                return await self.driver.capture_desktop(page, job.owner_id)

        report = DriveReport()
        async with self.pool.page() as page:
            frame = await self.driver.drive(
                page,
                job.target_endpoint,
                credential=self.credential,
                subject_label=job.subject_label,
                owner_hints=("student", str(job.owner_id)),
                report=report,
            )
        for warning in report.warnings:
            logger.debug(f"[{job.owner_id}] {warning}")
        return frame

    def encode(self, job: CaptureJob, frame: RawFrame) -> CaptureArtifact:
        captured_at = self.clock()
        return CaptureArtifact(
            owner_id=job.owner_id,
            image=encode_data_url(frame.data, frame.mime_type),
            captured_at=captured_at,
            resolution=Resolution(frame.width, frame.height),
            source_kind=frame.source_kind,
            trigger_kind=job.trigger_kind,
            size_bytes=len(frame.data),
            filename=artifact_filename(job, captured_at),
            subject_label=job.subject_label,
            endpoint=job.target_endpoint,
            mime_type=frame.mime_type,
        )

    def _failed(self, job: CaptureJob, reason: str, category: ErrorCategory) -> CaptureFailed:
        return CaptureFailed(
            reason=reason,
            category=category,
            owner_id=job.owner_id,
            trigger_kind=job.trigger_kind,
            source_kind=job.source_kind,
        )

    async def capture_many(self, jobs: Iterable[CaptureJob]) -> Tuple[List[CaptureOutcome], Dict[str, int]]:
        """Capture several sandboxes in parallel, bounded by the semaphore."""
        outcomes = await asyncio.gather(*(self.capture(job) for job in jobs))
        return list(outcomes), summarize(outcomes)

    async def wait_idle(self, timeout: float) -> bool:
        """Wait for in-flight captures to finish. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def close(self) -> None:
        await self.pool.close()
