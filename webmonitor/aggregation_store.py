"""Aggregation store: atomic upsert of error groups in SQLite.

Each ingested batch runs in its own connection and transaction.  The group
row is created or updated by a single ``INSERT ... ON CONFLICT DO UPDATE``
statement, so concurrent writers for the same fingerprint (threads or
separate server processes) never double-create a group or lose an
increment.

Besides the counters, a group keeps a sample of its most recent
occurrence (stack, origin location and breadcrumb trail).  The sample is
only replaced by an event whose timestamp is not older than the group's
``last_seen``, so late replays never overwrite fresher context.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass

from webmonitor.fingerprint import FingerprintResult
from webmonitor.models import ErrorEvent, PerformanceEvent

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS error_groups (
    project_id TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    type TEXT NOT NULL,
    message TEXT NOT NULL,
    normalized_message TEXT NOT NULL,
    stack_signature TEXT NOT NULL,
    count INTEGER NOT NULL,
    first_seen INTEGER NOT NULL,
    last_seen INTEGER NOT NULL,
    stack TEXT,
    filename TEXT,
    lineno INTEGER,
    colno INTEGER,
    last_breadcrumbs TEXT NOT NULL DEFAULT '[]',
    PRIMARY KEY (project_id, fingerprint)
);
CREATE TABLE IF NOT EXISTS group_urls (
    project_id TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    url TEXT NOT NULL,
    PRIMARY KEY (project_id, fingerprint, url)
);
CREATE TABLE IF NOT EXISTS performance (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    metrics TEXT NOT NULL,
    url TEXT NOT NULL,
    timestamp INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_groups_last_seen ON error_groups(project_id, last_seen);
CREATE INDEX IF NOT EXISTS idx_performance_project ON performance(project_id, timestamp);
"""

UPSERT_GROUP = """
INSERT INTO error_groups (
    project_id, fingerprint, type, message, normalized_message,
    stack_signature, count, first_seen, last_seen,
    stack, filename, lineno, colno, last_breadcrumbs
) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (project_id, fingerprint) DO UPDATE SET
    count = error_groups.count + 1,
    first_seen = MIN(error_groups.first_seen, excluded.first_seen),
    last_seen = MAX(error_groups.last_seen, excluded.last_seen),
    stack = CASE WHEN excluded.last_seen >= error_groups.last_seen
        THEN excluded.stack ELSE error_groups.stack END,
    filename = CASE WHEN excluded.last_seen >= error_groups.last_seen
        THEN excluded.filename ELSE error_groups.filename END,
    lineno = CASE WHEN excluded.last_seen >= error_groups.last_seen
        THEN excluded.lineno ELSE error_groups.lineno END,
    colno = CASE WHEN excluded.last_seen >= error_groups.last_seen
        THEN excluded.colno ELSE error_groups.colno END,
    last_breadcrumbs = CASE WHEN excluded.last_seen >= error_groups.last_seen
        THEN excluded.last_breadcrumbs ELSE error_groups.last_breadcrumbs END
RETURNING count
"""

INSERT_URL = """
INSERT OR IGNORE INTO group_urls (project_id, fingerprint, url) VALUES (?, ?, ?)
"""


@dataclass(frozen=True)
class UpsertResult:
    is_new_group: bool
    count: int


class StoreError(Exception):
    """Raised when the aggregation database cannot complete an operation."""


class Transaction:
    """Write operations bound to one open connection and transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def upsert(
        self, project_id: str, result: FingerprintResult, event: ErrorEvent
    ) -> UpsertResult:
        """Create the group for *result* or fold *event* into it."""
        rows = self._conn.execute(
            UPSERT_GROUP,
            (
                project_id,
                result.fingerprint,
                event.kind,
                event.message,
                result.normalized_message,
                result.stack_signature,
                event.timestamp,
                event.timestamp,
                event.stack,
                event.filename,
                event.lineno,
                event.colno,
                json.dumps([crumb.to_dict() for crumb in event.breadcrumbs]),
            ),
        ).fetchall()
        self._conn.execute(INSERT_URL, (project_id, result.fingerprint, event.url))

        count = rows[0][0]
        return UpsertResult(is_new_group=count == 1, count=count)

    def insert_performance(self, project_id: str, event: PerformanceEvent) -> None:
        self._conn.execute(
            "INSERT INTO performance (project_id, metrics, url, timestamp) "
            "VALUES (?, ?, ?, ?)",
            (project_id, json.dumps(event.metrics), event.url, event.timestamp),
        )


class AggregationStore:
    def __init__(self, db_path: str, busy_timeout: float = 5.0):
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = self._connect()
        try:
            conn.executescript(SCHEMA)
        finally:
            conn.close()
        logger.info("Aggregation store ready at %s", db_path)

    def _connect(self) -> sqlite3.Connection:
        # Explicit BEGIN/COMMIT below; disable the module's implicit transactions.
        conn = sqlite3.connect(
            self._db_path, timeout=self._busy_timeout, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self):
        """Yield a Transaction; commit on success, roll back on any exception."""
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open {self._db_path}: {exc}") from exc

        try:
            conn.execute("BEGIN IMMEDIATE")
            yield Transaction(conn)
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            self._rollback(conn)
            raise StoreError(str(exc)) from exc
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def upsert(
        self, project_id: str, result: FingerprintResult, event: ErrorEvent
    ) -> UpsertResult:
        """Single-event upsert in its own transaction."""
        with self.transaction() as tx:
            return tx.upsert(project_id, result, event)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_group(self, project_id: str, fingerprint: str) -> dict | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM error_groups WHERE project_id = ? AND fingerprint = ?",
                (project_id, fingerprint),
            ).fetchone()
            if row is None:
                return None
            return self._group_to_dict(conn, row)
        finally:
            conn.close()

    def list_groups(self, project_id: str, page: int = 1, page_size: int = 20) -> dict:
        """Return one page of groups, most recently seen first."""
        offset = (max(page, 1) - 1) * page_size
        conn = self._connect()
        try:
            total = conn.execute(
                "SELECT COUNT(*) FROM error_groups WHERE project_id = ?",
                (project_id,),
            ).fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM error_groups WHERE project_id = ? "
                "ORDER BY last_seen DESC LIMIT ? OFFSET ?",
                (project_id, page_size, offset),
            ).fetchall()
            groups = [self._group_to_dict(conn, row) for row in rows]
        finally:
            conn.close()

        return {"total": total, "page": page, "page_size": page_size, "groups": groups}

    def count_performance(self, project_id: str) -> int:
        conn = self._connect()
        try:
            return conn.execute(
                "SELECT COUNT(*) FROM performance WHERE project_id = ?",
                (project_id,),
            ).fetchone()[0]
        finally:
            conn.close()

    @staticmethod
    def _group_to_dict(conn: sqlite3.Connection, row: sqlite3.Row) -> dict:
        urls = conn.execute(
            "SELECT url FROM group_urls WHERE project_id = ? AND fingerprint = ? "
            "ORDER BY url",
            (row["project_id"], row["fingerprint"]),
        ).fetchall()
        return {
            "fingerprint": row["fingerprint"],
            "type": row["type"],
            "message": row["message"],
            "normalized_message": row["normalized_message"],
            "stack_signature": row["stack_signature"],
            "count": row["count"],
            "first_seen": row["first_seen"],
            "last_seen": row["last_seen"],
            "stack": row["stack"],
            "filename": row["filename"],
            "lineno": row["lineno"],
            "colno": row["colno"],
            "last_breadcrumbs": json.loads(row["last_breadcrumbs"]),
            "affected_urls": [r["url"] for r in urls],
        }
