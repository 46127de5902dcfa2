"""
Audit trail for proctorbox.

Every lifecycle, capture and session fact about an owner is appended to an
``EventStore``:
- Event: immutable, sequenced record keyed by owner
- EventStore: in-memory log with handlers and an optional JSON Lines journal
- AuditTrail: write side used by the coordinator, capture service and sessions

Clients poll ``GET /events?since=<sequence>`` to receive session warnings and
expiry notifications.
"""
import asyncio
import inspect
import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .models import CaptureArtifact, CaptureFailed, CaptureJob, SandboxRecord, SessionState

logger = logging.getLogger("proctorbox.events")


class EventType(str, Enum):
    # Sandbox lifecycle
    SANDBOX_CREATED = "sandbox.created"
    SANDBOX_STOPPED = "sandbox.stopped"
    SANDBOX_RECOVERED = "sandbox.recovered"
    SANDBOX_ERROR = "sandbox.error"

    # Capture pipeline
    CAPTURE_COMPLETED = "capture.completed"
    CAPTURE_FAILED = "capture.failed"
    CAPTURE_MISSED = "capture.missed"

    # Session enforcement
    SESSION_STARTED = "session.started"
    SESSION_WARNING = "session.warning"
    SESSION_EXPIRED = "session.expired"
    SESSION_ENDED = "session.ended"
    SUBMISSION_SENT = "session.submission"


def _parse_type(value: str) -> Union[EventType, str]:
    try:
        return EventType(value)
    except ValueError:
        return value


@dataclass(frozen=True)
class Event:
    """One audit fact. ``sequence`` is assigned by the store on append."""
    event_type: Union[EventType, str]
    owner_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    sequence: int = 0

    @property
    def type_name(self) -> str:
        return self.event_type.value if isinstance(self.event_type, EventType) else str(self.event_type)

    @property
    def category(self) -> str:
        """``sandbox``, ``capture`` or ``session`` for built-in types."""
        return self.type_name.split(".", 1)[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.event_id,
            "type": self.type_name,
            "category": self.category,
            "ownerId": self.owner_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Event":
        return cls(
            event_type=_parse_type(raw["type"]),
            owner_id=str(raw["ownerId"]),
            data=raw.get("data") or {},
            timestamp=datetime.fromisoformat(raw["timestamp"]),
            event_id=raw["id"],
            sequence=int(raw["sequence"]),
        )


EventHandler = Callable[[Event], Optional[Awaitable[None]]]


class EventStore:
    """Sequenced event log.

    With a ``journal`` path every event is appended as one JSON line; a new
    store replays the journal and continues its sequence. Only the newest
    ``retain`` events are kept in memory.
    """

    def __init__(self, journal: Optional[Path] = None, retain: int = 10000):
        self.journal = Path(journal) if journal else None
        self.retain = retain
        self._events: List[Event] = []
        self._sequence = 0
        self._lock = asyncio.Lock()
        self._handlers: List[Tuple[Optional[Union[EventType, str]], EventHandler]] = []

        if self.journal is not None and self.journal.exists():
            self._replay()

    @property
    def sequence(self) -> int:
        return self._sequence

    def _replay(self) -> None:
        with open(self.journal) as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    event = Event.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping unreadable line {lineno} of {self.journal}: {e}")
                    continue
                self._events.append(event)
                self._sequence = max(self._sequence, event.sequence)
        self._trim()
        logger.debug(f"Replayed {len(self._events)} audit event(s), sequence {self._sequence}")

    def _trim(self) -> None:
        excess = len(self._events) - self.retain
        if excess > 0:
            del self._events[:excess]

    def _write(self, event: Event) -> None:
        try:
            self.journal.parent.mkdir(parents=True, exist_ok=True)
            with open(self.journal, "a") as f:
                f.write(json.dumps(event.to_dict(), default=str) + "\n")
        except OSError as e:
            # the in-memory log still has the event
            logger.error(f"Audit journal {self.journal} not writable: {e}")

    async def append(self, event: Event) -> Event:
        async with self._lock:
            self._sequence += 1
            stored = replace(event, sequence=self._sequence)
            self._events.append(stored)
            self._trim()
            if self.journal is not None:
                self._write(stored)
        await self._dispatch(stored)
        return stored

    async def _dispatch(self, event: Event) -> None:
        for wanted, handler in list(self._handlers):
            if wanted is not None and wanted != event.event_type:
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Audit handler failed for {event.type_name} #{event.sequence}")

    def subscribe(
        self,
        handler: EventHandler,
        event_type: Optional[Union[EventType, str]] = None,
    ) -> Callable[[], None]:
        """Call ``handler`` for every event (or one type). Returns an unsubscribe function."""
        entry = (event_type, handler)
        self._handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return unsubscribe

    def query(
        self,
        owner_id: Optional[str] = None,
        category: Optional[str] = None,
        event_type: Optional[Union[EventType, str]] = None,
        since_sequence: int = 0,
        limit: Optional[int] = 100,
    ) -> List[Event]:
        """Matching events in stream order; the newest ``limit`` when capped."""
        found = [
            e for e in self._events
            if e.sequence > since_sequence
            and (owner_id is None or e.owner_id == owner_id)
            and (category is None or e.category == category)
            and (event_type is None or e.event_type == event_type)
        ]
        return found[-limit:] if limit else found

    def count(self, event_type: Optional[Union[EventType, str]] = None) -> int:
        return len(self.query(event_type=event_type, limit=None))


class AuditTrail:
    """Records domain facts as events."""

    def __init__(self, store: EventStore):
        self.store = store

    async def _record(self, event_type: EventType, owner_id: str, data: Dict[str, Any]) -> Event:
        return await self.store.append(Event(event_type=event_type, owner_id=owner_id, data=data))

    async def sandbox_created(self, record: SandboxRecord) -> Event:
        return await self._record(EventType.SANDBOX_CREATED, record.owner_id, record.to_dict())

    async def sandbox_stopped(self, owner_id: str, sandbox_id: str, reason: str = "user_request") -> Event:
        return await self._record(EventType.SANDBOX_STOPPED, owner_id, {"sandbox_id": sandbox_id, "reason": reason})

    async def sandbox_recovered(self, record: SandboxRecord) -> Event:
        return await self._record(EventType.SANDBOX_RECOVERED, record.owner_id, record.to_dict())

    async def sandbox_error(self, owner_id: str, error: str, category: str) -> Event:
        return await self._record(EventType.SANDBOX_ERROR, owner_id, {"error": error, "category": category})

    async def capture_completed(self, artifact: CaptureArtifact) -> Event:
        return await self._record(
            EventType.CAPTURE_COMPLETED,
            artifact.owner_id,
            {
                "filename": artifact.filename,
                "size_bytes": artifact.size_bytes,
                "trigger_kind": artifact.trigger_kind.value,
                "source_kind": artifact.source_kind.value,
                "subject_label": artifact.subject_label,
            },
        )

    async def capture_failed(self, job: CaptureJob, failure: CaptureFailed) -> Event:
        return await self._record(
            EventType.CAPTURE_FAILED,
            job.owner_id,
            {
                "reason": failure.reason,
                "category": failure.category.value,
                "trigger_kind": job.trigger_kind.value,
                "source_kind": job.source_kind.value,
                "endpoint": job.target_endpoint,
            },
        )

    async def capture_missed(self, state: SessionState, reason: str) -> Event:
        return await self._record(
            EventType.CAPTURE_MISSED,
            state.owner_id,
            {"reason": reason, "missed_captures": state.missed_captures},
        )

    async def session_started(self, state: SessionState) -> Event:
        return await self._record(EventType.SESSION_STARTED, state.owner_id, state.to_dict())

    async def session_warning(self, state: SessionState, threshold: int) -> Event:
        return await self._record(
            EventType.SESSION_WARNING,
            state.owner_id,
            {"threshold": threshold, "remaining_seconds": state.remaining_seconds},
        )

    async def session_expired(self, state: SessionState) -> Event:
        return await self._record(EventType.SESSION_EXPIRED, state.owner_id, state.to_dict())

    async def session_ended(self, state: SessionState) -> Event:
        return await self._record(EventType.SESSION_ENDED, state.owner_id, state.to_dict())

    async def submission_sent(self, owner_id: str, ok: bool, detail: str = "") -> Event:
        return await self._record(EventType.SUBMISSION_SENT, owner_id, {"ok": ok, "detail": detail})
