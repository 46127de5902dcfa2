"""Persistence collaborators: durable sandbox records and capture artifacts."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol

from .errors import StorageError
from .models import CaptureArtifact, SandboxRecord

logger = logging.getLogger("proctorbox.storage")


class SandboxRecordStore(Protocol):
    def save(self, record: SandboxRecord) -> None:
        ...

    def delete(self, sandbox_id: str) -> None:
        ...

    def load_all(self) -> List[SandboxRecord]:
        ...


class ArtifactStore(Protocol):
    def save(self, artifact: CaptureArtifact) -> str:
        """Persist one artifact document. Returns its location."""
        ...


class MemoryRecordStore:
    def __init__(self):
        self._records: Dict[str, SandboxRecord] = {}
        self._lock = Lock()

    def save(self, record: SandboxRecord) -> None:
        with self._lock:
            self._records[record.sandbox_id] = record

    def delete(self, sandbox_id: str) -> None:
        with self._lock:
            self._records.pop(sandbox_id, None)

    def load_all(self) -> List[SandboxRecord]:
        with self._lock:
            return list(self._records.values())


class JsonRecordStore:
    """Sandbox records in a single JSON file, rewritten on every change."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = Lock()

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupt sandbox record file {self.path}: {e}")
            return {}
        return data.get("sandboxes", {}) if isinstance(data, dict) else {}

    def _write(self, records: Dict[str, Dict[str, Any]]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps({"sandboxes": records}, indent=2))
            tmp.replace(self.path)
        except OSError as e:
            raise StorageError(f"Cannot write sandbox records to {self.path}: {e}") from e

    def save(self, record: SandboxRecord) -> None:
        with self._lock:
            records = self._read()
            records[record.sandbox_id] = record.to_dict()
            self._write(records)

    def delete(self, sandbox_id: str) -> None:
        with self._lock:
            records = self._read()
            if records.pop(sandbox_id, None) is not None:
                self._write(records)

    def load_all(self) -> List[SandboxRecord]:
        with self._lock:
            out = []
            for raw in self._read().values():
                try:
                    out.append(SandboxRecord.from_dict(raw))
                except (KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed sandbox record {raw!r}: {e}")
            return out


class MemoryArtifactStore:
    def __init__(self):
        self.documents: List[Dict[str, Any]] = []
        self._lock = Lock()

    def save(self, artifact: CaptureArtifact) -> str:
        with self._lock:
            self.documents.append(artifact.to_document())
            return f"memory://{len(self.documents) - 1}"

    def for_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [d for d in self.documents if d["ownerId"] == owner_id]


class FileArtifactStore:
    """One JSON document per artifact under ``<root>/<owner_id>/``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, artifact: CaptureArtifact) -> Path:
        stem = Path(artifact.filename).stem
        return self.root / _safe_segment(artifact.owner_id) / f"{stem}.json"

    def save(self, artifact: CaptureArtifact) -> str:
        path = self.path_for(artifact)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(artifact.to_document()))
        except OSError as e:
            raise StorageError(f"Cannot store artifact {artifact.filename}: {e}") from e
        logger.debug(f"Stored artifact {path} ({artifact.size_bytes} bytes)")
        return str(path)

    def list_documents(self, owner_id: Optional[str] = None) -> List[Path]:
        base = self.root / _safe_segment(owner_id) if owner_id else self.root
        if not base.exists():
            return []
        return sorted(base.rglob("*.json"))


def _safe_segment(value: str) -> str:
    segment = "".join(c if c.isalnum() or c in "-_." else "_" for c in str(value))
    return segment.lstrip(".") or "_"
