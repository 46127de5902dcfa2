"""Data models shared by the lifecycle, capture and session layers."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from .errors import ErrorCategory


class SandboxStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ORPHANED = "orphaned"


class TriggerKind(str, Enum):
    SUBMISSION = "submission"
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    ADMIN_BULK = "admin-bulk"
    SESSION_EXPIRY = "session-expiry"


class SourceKind(str, Enum):
    SANDBOX_FRAME = "sandbox-frame"
    FULL_DESKTOP = "full-desktop"


class SessionStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    EXPIRED = "expired"
    ENDED_MANUALLY = "ended-manually"


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class SandboxRecord:
    """A sandbox instance owned by one user."""
    owner_id: str
    sandbox_id: str
    endpoint: str
    subject_label: str = ""
    image: str = ""
    name: str = ""
    created_at: float = field(default_factory=time.time)
    status: SandboxStatus = SandboxStatus.STARTING

    @property
    def url(self) -> str:
        return f"http://{self.endpoint}"

    @property
    def port(self) -> int:
        return int(self.endpoint.rsplit(":", 1)[1])

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "sandbox_id": self.sandbox_id,
            "endpoint": self.endpoint,
            "subject_label": self.subject_label,
            "image": self.image,
            "name": self.name,
            "created_at": self.created_at,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SandboxRecord":
        return cls(
            owner_id=str(data["owner_id"]),
            sandbox_id=data["sandbox_id"],
            endpoint=data["endpoint"],
            subject_label=data.get("subject_label", ""),
            image=data.get("image", ""),
            name=data.get("name", ""),
            created_at=float(data.get("created_at", 0.0)),
            status=SandboxStatus(data.get("status", SandboxStatus.RUNNING.value)),
        )


@dataclass(frozen=True)
class Resolution:
    width: int
    height: int

    def to_dict(self) -> dict[str, int]:
        return {"width": self.width, "height": self.height}


@dataclass(frozen=True)
class CaptureJob:
    """One capture request; created and consumed within a single attempt."""
    target_endpoint: str
    owner_id: str
    subject_label: str
    trigger_kind: TriggerKind = TriggerKind.MANUAL
    source_kind: SourceKind = SourceKind.SANDBOX_FRAME
    requested_at: datetime = field(default_factory=utcnow)

    @property
    def target_url(self) -> str:
        if self.target_endpoint.startswith(("http://", "https://")):
            return self.target_endpoint
        return f"http://{self.target_endpoint}"


@dataclass(frozen=True)
class RawFrame:
    """Image bytes as produced by the browser, before encoding."""
    data: bytes
    width: int
    height: int
    mime_type: str = "image/jpeg"
    source_kind: SourceKind = SourceKind.SANDBOX_FRAME


@dataclass(frozen=True)
class CaptureArtifact:
    owner_id: str
    image: str
    captured_at: datetime
    resolution: Resolution
    source_kind: SourceKind
    trigger_kind: TriggerKind
    size_bytes: int
    filename: str
    subject_label: str = ""
    endpoint: str = ""
    mime_type: str = "image/jpeg"

    success = True

    def to_document(self) -> dict[str, Any]:
        """Shape handed to the artifact store."""
        return {
            "ownerId": self.owner_id,
            "image": self.image,
            "metadata": {
                "capturedAt": self.captured_at.isoformat(),
                "triggerKind": self.trigger_kind.value,
                "sourceKind": self.source_kind.value,
                "resolution": self.resolution.to_dict(),
                "sizeBytes": self.size_bytes,
                "filename": self.filename,
                "subjectLabel": self.subject_label,
                "endpoint": self.endpoint,
                "mimeType": self.mime_type,
            },
        }


@dataclass(frozen=True)
class CaptureFailed:
    """Structured capture failure; callers decide whether to surface it."""
    reason: str
    category: ErrorCategory = ErrorCategory.UNKNOWN
    owner_id: str = ""
    trigger_kind: Optional[TriggerKind] = None
    source_kind: Optional[SourceKind] = None

    success = False


@dataclass
class SessionState:
    owner_id: str
    sandbox_id: Optional[str]
    total_duration_seconds: int
    remaining_seconds: int
    warnings_fired: set[int] = field(default_factory=set)
    status: SessionStatus = SessionStatus.IDLE
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    missed_captures: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "ownerId": self.owner_id,
            "sandboxId": self.sandbox_id,
            "totalDurationSeconds": self.total_duration_seconds,
            "remainingSeconds": self.remaining_seconds,
            "warningsFired": sorted(self.warnings_fired, reverse=True),
            "status": self.status.value,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
            "missedCaptures": self.missed_captures,
        }
