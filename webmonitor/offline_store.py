"""Durable offline queue: bounded FIFO of undelivered batches.

Records are kept in arrival order and evicted oldest-first once the record
limit is reached.  ``FileOfflineStore`` persists them as a JSON document
rewritten atomically (tmp + os.replace) so a crash mid-write never leaves a
half-written queue behind.  Several processes sharing one file is tolerated
with last-writer-wins semantics.
"""

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OfflineRecord:
    project_id: str
    events: list
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "events": self.events,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "OfflineRecord":
        return cls(
            project_id=raw["project_id"],
            events=list(raw["events"]),
            id=raw["id"],
            created_at=raw.get("created_at", 0.0),
        )


class MemoryOfflineStore:
    """In-process store; survives nothing, used for tests and ephemeral clients."""

    def __init__(self, max_records: int = 20):
        self._max_records = max_records
        self._records: list[OfflineRecord] = []
        self._lock = threading.Lock()
        self.evicted = 0

    def append(self, record: OfflineRecord) -> None:
        with self._lock:
            self._records.append(record)
            evicted = _evict(self._records, self._max_records)
            if evicted:
                self.evicted += evicted
                logger.warning("Offline queue full, evicted %d oldest record(s)", evicted)

    def read_all(self) -> list[OfflineRecord]:
        with self._lock:
            return list(self._records)

    def remove(self, ids) -> None:
        drop = set(ids)
        with self._lock:
            self._records = [r for r in self._records if r.id not in drop]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class FileOfflineStore:
    """JSON-file backed store that survives process restarts."""

    def __init__(self, path: str, max_records: int = 20):
        self._path = path
        self._max_records = max_records
        self._lock = threading.Lock()
        self.evicted = 0
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def append(self, record: OfflineRecord) -> None:
        with self._lock:
            records = self._load()
            records.append(record)
            evicted = _evict(records, self._max_records)
            if evicted:
                self.evicted += evicted
                logger.warning(
                    "Offline queue full, evicted %d oldest record(s)", evicted
                )
            self._save(records)

    def read_all(self) -> list[OfflineRecord]:
        with self._lock:
            return self._load()

    def remove(self, ids) -> None:
        drop = set(ids)
        if not drop:
            return
        with self._lock:
            records = [r for r in self._load() if r.id not in drop]
            self._save(records)

    def __len__(self) -> int:
        return len(self.read_all())

    def _load(self) -> list[OfflineRecord]:
        if not os.path.exists(self._path):
            return []
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
            return [OfflineRecord.from_dict(raw) for raw in data.get("records", [])]
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Discarding unreadable offline queue %s: %s", self._path, exc)
            return []

    def _save(self, records: list[OfflineRecord]) -> None:
        data = {"records": [r.to_dict() for r in records]}
        fd, tmp = tempfile.mkstemp(dir=os.path.dirname(self._path) or ".")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f)
            os.replace(tmp, self._path)
        except Exception:
            os.unlink(tmp)
            raise


def _evict(records: list, max_records: int) -> int:
    """Drop oldest records in place beyond *max_records*; return how many."""
    overflow = len(records) - max_records
    if overflow <= 0:
        return 0
    del records[:overflow]
    return overflow
