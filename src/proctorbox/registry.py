"""
Sandbox registry - the in-process source of truth for running sandboxes.

Responsibilities:
- Track sandbox records by id and by owner
- Serialize lifecycle operations per owner (create / stop / cleanup)
- Guard every read-modify-write with a single registry lock
"""

from __future__ import annotations

from contextlib import contextmanager
from threading import Lock, RLock
from typing import Dict, Iterator, List, Optional

from .models import SandboxRecord, SandboxStatus


class SandboxRegistry:
    """Thread-safe mapping of owner -> sandbox records."""

    def __init__(self):
        self._records: Dict[str, SandboxRecord] = {}
        self._owner_locks: Dict[str, RLock] = {}
        self._lock = Lock()

    @contextmanager
    def owner_lock(self, owner_id: str) -> Iterator[None]:
        """Hold the lifecycle lock of one owner.

        Re-entrant, so ``create`` can call ``cleanup_owner`` while holding it.
        """
        with self._lock:
            lock = self._owner_locks.setdefault(owner_id, RLock())
        with lock:
            yield

    def add(self, record: SandboxRecord) -> None:
        with self._lock:
            self._records[record.sandbox_id] = record

    def remove(self, sandbox_id: str) -> Optional[SandboxRecord]:
        with self._lock:
            return self._records.pop(sandbox_id, None)

    def get(self, sandbox_id: str) -> Optional[SandboxRecord]:
        with self._lock:
            return self._records.get(sandbox_id)

    def update_status(self, sandbox_id: str, status: SandboxStatus) -> Optional[SandboxRecord]:
        with self._lock:
            record = self._records.get(sandbox_id)
            if record is not None:
                record.status = status
            return record

    def for_owner(self, owner_id: str) -> List[SandboxRecord]:
        with self._lock:
            return [r for r in self._records.values() if r.owner_id == owner_id]

    def running_for(self, owner_id: str) -> Optional[SandboxRecord]:
        with self._lock:
            for record in self._records.values():
                if record.owner_id == owner_id and record.status == SandboxStatus.RUNNING:
                    return record
        return None

    def find_by_endpoint(self, endpoint: str) -> Optional[SandboxRecord]:
        with self._lock:
            for record in self._records.values():
                if record.endpoint == endpoint:
                    return record
        return None

    def all(self) -> List[SandboxRecord]:
        with self._lock:
            return list(self._records.values())

    def running(self) -> List[SandboxRecord]:
        return [r for r in self.all() if r.status == SandboxStatus.RUNNING]

    def owners(self) -> List[str]:
        with self._lock:
            return sorted({r.owner_id for r in self._records.values()})

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, sandbox_id: str) -> bool:
        with self._lock:
            return sandbox_id in self._records
