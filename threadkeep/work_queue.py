"""
Durable queue of derived-state jobs.

Two kinds of job keep the index and the summaries in step with the
thread store: ``embed`` (keyed by message id, carrying the revision to
embed) and ``summarize`` (keyed by thread id). Mutations enqueue them;
the background worker or ``threadkeep pending`` drains them.

A dequeue stamps each item with a claim token inside one IMMEDIATE
transaction, so two workers never run the same job. A claim that is
never resolved (the process died) is put back after STALE_CLAIM_SECONDS.

Re-enqueueing an item that is being processed hands it back to 'pending'
with a fresh key; the old claim then no longer matches, so the outcome
of the superseded run (complete, fail) is ignored.

A failed job waits 30s, 60s, 120s and so on (at most 1h) before its next
attempt. Jobs out of attempts stay in the table with status 'failed'
and their last error, until retry_failed() or their thread is deleted.
"""

import json
import logging
import os
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

TASK_EMBED = "embed"
TASK_SUMMARIZE = "summarize"

STALE_CLAIM_SECONDS = 600
RETRY_BACKOFF_BASE = 30
RETRY_BACKOFF_MAX = 3600


@dataclass
class PendingItem:
    """One claimed job. ``attempts`` counts this run."""
    id: str
    thread_id: str
    task_type: str
    queued_at: str
    attempts: int = 0
    metadata: dict = field(default_factory=dict)
    claim: Optional[str] = None


@dataclass(frozen=True)
class JobResult:
    """Outcome of processing one item: done, skipped, failed or abandoned."""
    outcome: str
    error: Optional[str] = None


def backoff_delay(attempts: int, base: float = RETRY_BACKOFF_BASE,
                  maximum: float = RETRY_BACKOFF_MAX) -> float:
    """min(base * 2^(attempts-1), maximum) seconds."""
    return min(base * (2 ** max(attempts - 1, 0)), maximum)


class PendingWorkQueue:
    """
    SQLite-backed queue for embedding and summarization jobs.

    Items are added by store mutations and processed later by the
    background worker, ``threadkeep pending``, or programmatically via
    ``ThreadKeeper.process_pending()``.
    """

    def __init__(
        self,
        queue_path: Path,
        *,
        backoff_base: float = RETRY_BACKOFF_BASE,
        backoff_max: float = RETRY_BACKOFF_MAX,
        stale_claim_seconds: float = STALE_CLAIM_SECONDS,
    ):
        """
        Args:
            queue_path: Path to SQLite database file
            backoff_base: First retry delay in seconds
            backoff_max: Upper bound on retry delay
            stale_claim_seconds: Age after which a processing claim is reclaimed
        """
        self._queue_path = Path(queue_path)
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._stale_claim_seconds = stale_claim_seconds
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        self._queue_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit; dequeue opens its own BEGIN IMMEDIATE
        self._conn = sqlite3.connect(
            str(self._queue_path), check_same_thread=False,
            isolation_level=None,
        )

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS pending_work (
                id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                task_type TEXT NOT NULL,
                queued_at TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                metadata TEXT DEFAULT '{}',
                status TEXT DEFAULT 'pending',
                claimed_by TEXT,
                claimed_at TEXT,
                last_error TEXT,
                retry_after TEXT,
                PRIMARY KEY (id, thread_id, task_type)
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_work_queued_at
            ON pending_work(queued_at)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_work_status
            ON pending_work(status)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_work_thread
            ON pending_work(thread_id)
        """)

    def _recover_stale_claims(self) -> int:
        """Return abandoned claims to 'pending'. Runs before each dequeue."""
        now = datetime.now(timezone.utc).isoformat()
        cursor = self._conn.execute("""
            UPDATE pending_work
            SET status = 'pending', claimed_by = NULL, claimed_at = NULL
            WHERE status = 'processing'
              AND claimed_at IS NOT NULL
              AND julianday(?) - julianday(claimed_at) > ? / 86400.0
        """, (now, self._stale_claim_seconds))
        recovered = cursor.rowcount
        if recovered:
            logger.warning("Reclaimed %d jobs whose worker never finished", recovered)
        return recovered

    def enqueue(
        self,
        id: str,
        thread_id: str,
        task_type: str,
        *,
        metadata: Optional[dict] = None,
        replace: bool = True,
    ) -> bool:
        """
        Queue a job.

        With ``replace`` (the default) an existing (id, thread_id, task_type)
        item is reset to a fresh pending item, superseding any claim on it.
        Without it, an existing item is left exactly as it is (attempt count,
        backoff and claim preserved).

        Returns:
            True if a new pending item was written
        """
        now = datetime.now(timezone.utc).isoformat()
        meta_json = json.dumps(metadata) if metadata else "{}"
        verb = "INSERT OR REPLACE" if replace else "INSERT OR IGNORE"
        with self._lock:
            cursor = self._conn.execute(f"""
                {verb} INTO pending_work
                (id, thread_id, task_type, queued_at, attempts, metadata,
                 status, claimed_by, claimed_at, last_error, retry_after)
                VALUES (?, ?, ?, ?, 0, ?, 'pending', NULL, NULL, NULL, NULL)
            """, (id, thread_id, task_type, now, meta_json))
        return cursor.rowcount > 0

    def dequeue(
        self,
        limit: int = 10,
        task_types: Optional[Iterable[str]] = None,
    ) -> list[PendingItem]:
        """
        Claim up to ``limit`` due jobs, oldest first.

        Each claimed job moves to 'processing' with its attempt count
        bumped. Resolve it with complete(), fail(), abandon() or release().
        """
        claim = f"{os.getpid()}:{uuid.uuid4().hex[:12]}"
        now = datetime.now(timezone.utc).isoformat()
        type_clause = ""
        type_params: list = []
        if task_types is not None:
            task_types = list(task_types)
            if not task_types:
                return []
            type_clause = f"AND task_type IN ({','.join('?' * len(task_types))})"
            type_params = task_types

        with self._lock:
            self._recover_stale_claims()

            self._conn.execute("BEGIN IMMEDIATE")
            try:
                rows = self._conn.execute(f"""
                    SELECT id, thread_id, task_type, queued_at, attempts, metadata
                    FROM pending_work
                    WHERE status = 'pending'
                      AND (retry_after IS NULL OR retry_after <= ?)
                      {type_clause}
                    ORDER BY queued_at ASC, rowid ASC
                    LIMIT ?
                """, (now, *type_params, limit)).fetchall()

                items = []
                for row in rows:
                    meta = {}
                    if row[5]:
                        try:
                            meta = json.loads(row[5])
                        except (json.JSONDecodeError, TypeError):
                            logger.warning("Bad metadata on queued item %s: %r", row[0], row[5])
                    items.append(PendingItem(
                        id=row[0],
                        thread_id=row[1],
                        task_type=row[2],
                        queued_at=row[3],
                        attempts=row[4] + 1,
                        metadata=meta,
                        claim=claim,
                    ))

                if items:
                    self._conn.executemany("""
                        UPDATE pending_work
                        SET status = 'processing',
                            claimed_by = ?,
                            claimed_at = ?,
                            attempts = attempts + 1
                        WHERE id = ? AND thread_id = ? AND task_type = ?
                    """, [(claim, now, i.id, i.thread_id, i.task_type) for i in items])

                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

        return items

    @staticmethod
    def _claim_clause(item: PendingItem) -> tuple[str, tuple]:
        where = "id = ? AND thread_id = ? AND task_type = ?"
        params: tuple = (item.id, item.thread_id, item.task_type)
        if item.claim is not None:
            where += " AND claimed_by = ?"
            params += (item.claim,)
        return where, params

    def complete(self, item: PendingItem) -> bool:
        """
        Delete a finished job.

        Returns False if the job was re-enqueued while it ran; the newer
        one stays queued.
        """
        where, params = self._claim_clause(item)
        with self._lock:
            cursor = self._conn.execute(f"DELETE FROM pending_work WHERE {where}", params)
        return cursor.rowcount > 0

    def fail(self, item: PendingItem, error: Optional[str] = None) -> float:
        """
        Put a job back with a backoff delay, keeping its attempt count.

        Returns:
            Retry delay in seconds
        """
        where, params = self._claim_clause(item)
        delay = backoff_delay(item.attempts, self._backoff_base, self._backoff_max)
        retry_at = (datetime.now(timezone.utc) + timedelta(seconds=delay)).isoformat()
        with self._lock:
            cursor = self._conn.execute(f"""
                UPDATE pending_work
                SET status = 'pending', claimed_by = NULL, claimed_at = NULL,
                    last_error = ?, retry_after = ?
                WHERE {where}
            """, (error, retry_at, *params))
        if cursor.rowcount:
            logger.info(
                "%s %s failed (attempt %d), retry after %ds: %s",
                item.task_type, item.id, item.attempts, delay, error or "unknown",
            )
        return delay

    def abandon(self, item: PendingItem, error: Optional[str] = None) -> None:
        """Dead-letter a job that is out of attempts, keeping its error."""
        where, params = self._claim_clause(item)
        with self._lock:
            cursor = self._conn.execute(f"""
                UPDATE pending_work
                SET status = 'failed', claimed_by = NULL, claimed_at = NULL,
                    last_error = ?
                WHERE {where}
            """, (error, *params))
        if cursor.rowcount:
            logger.warning(
                "Abandoned %s %s in thread %s: %s",
                item.task_type, item.id, item.thread_id, error or "max attempts",
            )

    def release(self, item: PendingItem) -> None:
        """Hand a claimed item back to pending without counting the attempt."""
        where, params = self._claim_clause(item)
        with self._lock:
            self._conn.execute(f"""
                UPDATE pending_work
                SET status = 'pending', claimed_by = NULL, claimed_at = NULL,
                    attempts = MAX(attempts - 1, 0)
                WHERE {where}
            """, params)

    def remove(self, id: str, thread_id: str, task_type: str) -> bool:
        """Drop an item regardless of its status."""
        with self._lock:
            cursor = self._conn.execute("""
                DELETE FROM pending_work
                WHERE id = ? AND thread_id = ? AND task_type = ?
            """, (id, thread_id, task_type))
        return cursor.rowcount > 0

    def purge_thread(self, thread_id: str) -> int:
        """Drop every item belonging to a thread."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM pending_work WHERE thread_id = ?", (thread_id,)
            )
        return cursor.rowcount

    def stats(self) -> dict:
        """Counts by status and by task type."""
        with self._lock:
            by_status = {
                row[0] or "pending": row[1] for row in self._conn.execute("""
                    SELECT status, COUNT(*) FROM pending_work GROUP BY status
                """)
            }
            row = self._conn.execute("""
                SELECT
                    COUNT(*),
                    COUNT(DISTINCT thread_id),
                    MAX(attempts),
                    MIN(queued_at)
                FROM pending_work
            """).fetchone()
            by_type = {
                r[0]: r[1] for r in self._conn.execute("""
                    SELECT task_type, COUNT(*) FROM pending_work
                    WHERE status != 'failed'
                    GROUP BY task_type
                """)
            }
        return {
            "pending": by_status.get("pending", 0),
            "processing": by_status.get("processing", 0),
            "failed": by_status.get("failed", 0),
            "total": row[0],
            "threads": row[1],
            "max_attempts": row[2] or 0,
            "oldest": row[3],
            "queue_path": str(self._queue_path),
            "by_type": by_type,
        }

    def list_failed(self) -> list[dict]:
        """List items in failed (dead letter) status."""
        with self._lock:
            rows = self._conn.execute("""
                SELECT id, thread_id, task_type, attempts, last_error, queued_at
                FROM pending_work
                WHERE status = 'failed'
                ORDER BY queued_at ASC
            """).fetchall()
        return [
            {
                "id": r[0], "thread_id": r[1], "task_type": r[2],
                "attempts": r[3], "last_error": r[4], "queued_at": r[5],
            }
            for r in rows
        ]

    def retry_failed(self) -> list[dict]:
        """
        Give every dead-lettered job a fresh set of attempts.

        Returns:
            The items moved back to pending (id, thread_id, task_type)
        """
        with self._lock:
            rows = self._conn.execute("""
                SELECT id, thread_id, task_type FROM pending_work WHERE status = 'failed'
            """).fetchall()
            self._conn.execute("""
                UPDATE pending_work
                SET status = 'pending', attempts = 0, claimed_by = NULL,
                    claimed_at = NULL, last_error = NULL, retry_after = NULL
                WHERE status = 'failed'
            """)
        if rows:
            logger.info("Requeued %d dead-lettered jobs", len(rows))
        return [{"id": r[0], "thread_id": r[1], "task_type": r[2]} for r in rows]

    def get_status(self, id: str, task_type: Optional[str] = None) -> Optional[dict]:
        """Queue status of one item, or None if no work is queued for it."""
        sql = """
            SELECT id, thread_id, task_type, queued_at, status, attempts, last_error
            FROM pending_work WHERE id = ?
        """
        params: tuple = (id,)
        if task_type is not None:
            sql += " AND task_type = ?"
            params += (task_type,)
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        if row is None:
            return None
        return {
            "id": row[0],
            "thread_id": row[1],
            "task_type": row[2],
            "queued_at": row[3],
            "status": row[4] or "pending",
            "attempts": row[5],
            "last_error": row[6],
        }

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
