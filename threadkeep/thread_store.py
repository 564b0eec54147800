"""
Thread and message store using SQLite.

The thread store is the source of truth for:
- Thread identity, metadata and lifecycle (active / deleting tombstone)
- Messages and their sequence numbers
- Embedding vectors (one per message revision)
- Summary versions and the current-summary reference

The in-memory embedding index is derived from the embeddings table and
can always be rebuilt from it.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional

import numpy as np

from .errors import Conflict, Corruption, NotFound
from .types import (
    EMBEDDING_FAILED,
    EMBEDDING_PENDING,
    EMBEDDING_READY,
    SUMMARY_CURRENT,
    THREAD_ACTIVE,
    THREAD_DELETING,
    Content,
    EmbeddingRecord,
    Message,
    Summary,
    Thread,
    ThreadFilter,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

_MESSAGE_COLUMNS = """
    m.id, m.thread_id, m.seq, m.role, m.content, m.content_parts,
    m.created_at, m.updated_at, m.revision, m.embedding_status, e.model AS embedding_model
"""


def _encode_content(content: Content) -> tuple[str, int]:
    """Column values for content: the text itself, or a JSON list of parts."""
    if isinstance(content, str):
        return content, 0
    return json.dumps(list(content)), 1


class ThreadStore:
    """
    SQLite-backed store for threads, messages, embeddings and summaries.

    One connection is shared across threads; statements are serialized
    with a lock. Writes run in ``BEGIN IMMEDIATE`` transactions so each
    operation is atomic against other processes using the same file.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = Path(store_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS threads (
                id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                last_seq INTEGER NOT NULL DEFAULT 0,
                summary_version INTEGER,
                summary_status TEXT NOT NULL DEFAULT 'none',
                state TEXT NOT NULL DEFAULT 'active'
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                content_parts INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                revision INTEGER NOT NULL DEFAULT 1,
                embedding_status TEXT NOT NULL DEFAULT 'pending',
                UNIQUE (thread_id, seq)
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS embeddings (
                message_id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL,
                revision INTEGER NOT NULL,
                model TEXT NOT NULL,
                dimension INTEGER NOT NULL,
                vector BLOB NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS summaries (
                thread_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                text TEXT NOT NULL,
                watermark INTEGER NOT NULL,
                generated_at TEXT NOT NULL,
                PRIMARY KEY (thread_id, version)
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_threads_created
            ON threads(created_at)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_embeddings_thread
            ON embeddings(thread_id)
        """)
        self._migrate()
        self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    def _migrate(self) -> None:
        """Bring a version 1 database up to the current schema."""
        columns = {row[1] for row in self._conn.execute("PRAGMA table_info(messages)")}
        if "content_parts" not in columns:
            self._conn.execute(
                "ALTER TABLE messages ADD COLUMN content_parts INTEGER NOT NULL DEFAULT 0"
            )
            logger.info("Migrated %s: added messages.content_parts", self._db_path)

    def _now(self) -> str:
        return utc_now()

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Run statements in one IMMEDIATE transaction."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise

    def _read(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # -------------------------------------------------------------------------
    # Row mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_thread(row: sqlite3.Row) -> Thread:
        return Thread(
            id=row["id"],
            created_at=row["created_at"],
            metadata=json.loads(row["metadata_json"]),
            last_seq=row["last_seq"],
            summary_version=row["summary_version"],
            summary_status=row["summary_status"],
            state=row["state"],
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        status = row["embedding_status"]
        return Message(
            id=row["id"],
            thread_id=row["thread_id"],
            role=row["role"],
            content=json.loads(row["content"]) if row["content_parts"] else row["content"],
            seq=row["seq"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            revision=row["revision"],
            embedding_status=status,
            embedding_model=row["embedding_model"] if status == EMBEDDING_READY else None,
        )

    @staticmethod
    def _row_to_summary(row: sqlite3.Row) -> Summary:
        return Summary(
            thread_id=row["thread_id"],
            version=row["version"],
            text=row["text"],
            watermark=row["watermark"],
            generated_at=row["generated_at"],
        )

    def _active_thread_row(self, conn: sqlite3.Connection, thread_id: str) -> sqlite3.Row:
        """Fetch a thread row for mutation; NotFound or Conflict otherwise."""
        row = conn.execute(
            "SELECT * FROM threads WHERE id = ?", (thread_id,)
        ).fetchone()
        if row is None:
            raise NotFound(f"Thread not found: {thread_id}")
        if row["state"] != THREAD_ACTIVE:
            raise Conflict(f"Thread {thread_id} is being deleted")
        return row

    # -------------------------------------------------------------------------
    # Threads
    # -------------------------------------------------------------------------

    def create_thread(self, metadata: Optional[dict[str, str]] = None) -> Thread:
        """
        Create a new, empty thread.

        Args:
            metadata: Initial key-value pairs (None values are dropped)

        Returns:
            The stored Thread
        """
        thread_id = new_id()
        now = self._now()
        meta = {k: v for k, v in (metadata or {}).items() if v is not None}
        with self._write() as conn:
            conn.execute("""
                INSERT INTO threads (id, created_at, metadata_json)
                VALUES (?, ?, ?)
            """, (thread_id, now, json.dumps(meta, ensure_ascii=False)))
        return Thread(id=thread_id, created_at=now, metadata=meta)

    def get_thread(self, thread_id: str, *, include_deleting: bool = False) -> Thread:
        """
        Get a thread by ID.

        A tombstoned thread is reported as NotFound unless include_deleting.

        Raises:
            NotFound: Unknown or deleted thread
        """
        rows = self._read("SELECT * FROM threads WHERE id = ?", (thread_id,))
        if not rows:
            raise NotFound(f"Thread not found: {thread_id}")
        thread = self._row_to_thread(rows[0])
        if thread.deleted and not include_deleting:
            raise NotFound(f"Thread not found: {thread_id}")
        return thread

    def _filter_clause(self, filter: Optional[ThreadFilter]) -> tuple[str, list]:
        clauses = ["state = ?"]
        params: list = [THREAD_ACTIVE]
        if filter is not None:
            for key, value in filter.metadata.items():
                clauses.append("json_extract(metadata_json, ?) = ?")
                params.extend([f'$."{key}"', value])
            if filter.created_after:
                clauses.append("created_at > ?")
                params.append(filter.created_after)
            if filter.created_before:
                clauses.append("created_at < ?")
                params.append(filter.created_before)
        return " AND ".join(clauses), params

    def list_threads(
        self,
        filter: Optional[ThreadFilter] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Thread]:
        """
        List active threads, oldest first.

        Args:
            filter: Optional metadata / creation-time filter
            limit: Maximum number to return (None for all)
            offset: Number of matching threads to skip

        Returns:
            Threads ordered by creation time
        """
        where, params = self._filter_clause(filter)
        rows = self._read(f"""
            SELECT * FROM threads
            WHERE {where}
            ORDER BY created_at ASC, rowid ASC
            LIMIT ? OFFSET ?
        """, (*params, -1 if limit is None else limit, offset))
        return [self._row_to_thread(r) for r in rows]

    def count_threads(self, filter: Optional[ThreadFilter] = None) -> int:
        """Count active threads matching the filter."""
        where, params = self._filter_clause(filter)
        rows = self._read(f"SELECT COUNT(*) FROM threads WHERE {where}", tuple(params))
        return rows[0][0]

    def update_thread_metadata(self, thread_id: str, metadata: dict[str, Optional[str]]) -> Thread:
        """
        Merge metadata into a thread. A None value removes the key.

        Raises:
            NotFound: Unknown thread
            Conflict: Thread is being deleted
        """
        with self._write() as conn:
            row = self._active_thread_row(conn, thread_id)
            merged = json.loads(row["metadata_json"])
            for key, value in metadata.items():
                if value is None:
                    merged.pop(key, None)
                else:
                    merged[key] = value
            conn.execute(
                "UPDATE threads SET metadata_json = ? WHERE id = ?",
                (json.dumps(merged, ensure_ascii=False), thread_id),
            )
            row = conn.execute("SELECT * FROM threads WHERE id = ?", (thread_id,)).fetchone()
        return self._row_to_thread(row)

    def mark_thread_deleting(self, thread_id: str) -> Thread:
        """
        Tombstone a thread. From now on reads report it as NotFound and
        mutations fail with Conflict.

        Raises:
            NotFound: Unknown thread
            Conflict: Thread is already being deleted
        """
        with self._write() as conn:
            self._active_thread_row(conn, thread_id)
            conn.execute(
                "UPDATE threads SET state = ? WHERE id = ? AND state = ?",
                (THREAD_DELETING, thread_id, THREAD_ACTIVE),
            )
            row = conn.execute("SELECT * FROM threads WHERE id = ?", (thread_id,)).fetchone()
        return self._row_to_thread(row)

    def purge_thread(self, thread_id: str) -> int:
        """
        Reclaim a tombstoned thread: messages, embeddings, summaries and
        the thread row go in one transaction.

        Returns:
            Number of messages removed
        """
        with self._write() as conn:
            row = conn.execute(
                "SELECT state FROM threads WHERE id = ?", (thread_id,)
            ).fetchone()
            if row is None:
                return 0
            if row["state"] != THREAD_DELETING:
                raise Conflict(f"Thread {thread_id} must be tombstoned before purge")
            conn.execute("DELETE FROM embeddings WHERE thread_id = ?", (thread_id,))
            conn.execute("DELETE FROM summaries WHERE thread_id = ?", (thread_id,))
            cursor = conn.execute("DELETE FROM messages WHERE thread_id = ?", (thread_id,))
            removed = cursor.rowcount
            conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
        return removed

    def list_deleting_threads(self) -> list[str]:
        """IDs of tombstoned threads awaiting purge (e.g. after a crash)."""
        rows = self._read("SELECT id FROM threads WHERE state = ?", (THREAD_DELETING,))
        return [r["id"] for r in rows]

    def list_threads_by_summary_status(self, statuses: Iterable[str]) -> list[Thread]:
        """Active threads whose summary status is one of ``statuses``."""
        statuses = list(statuses)
        if not statuses:
            return []
        placeholders = ",".join("?" * len(statuses))
        rows = self._read(f"""
            SELECT * FROM threads
            WHERE state = ? AND summary_status IN ({placeholders})
            ORDER BY created_at ASC
        """, (THREAD_ACTIVE, *statuses))
        return [self._row_to_thread(r) for r in rows]

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def add_message(self, thread_id: str, role: str, content: Content) -> Message:
        """
        Append a message, assigning the next sequence number.

        The sequence counter is advanced with a compare-and-swap on
        ``threads.last_seq`` in the same transaction as the insert.

        Raises:
            NotFound: Unknown thread
            Conflict: Thread is being deleted, or the counter moved under us
            Corruption: A stored message already holds the new sequence number
        """
        message_id = new_id()
        now = self._now()
        with self._write() as conn:
            row = self._active_thread_row(conn, thread_id)
            last_seq = row["last_seq"]
            seq = last_seq + 1

            top = conn.execute(
                "SELECT MAX(seq) FROM messages WHERE thread_id = ?", (thread_id,)
            ).fetchone()[0]
            if top is not None and top >= seq:
                logger.error(
                    "Sequence corruption in thread %s: max stored seq %d >= next seq %d",
                    thread_id, top, seq,
                )
                raise Corruption(
                    f"Thread {thread_id}: stored sequence {top} is not below next sequence {seq}"
                )

            cursor = conn.execute(
                "UPDATE threads SET last_seq = ? WHERE id = ? AND last_seq = ?",
                (seq, thread_id, last_seq),
            )
            if cursor.rowcount != 1:
                raise Conflict(f"Sequence assignment for thread {thread_id} lost a race")

            conn.execute("""
                INSERT INTO messages
                (id, thread_id, seq, role, content, content_parts, created_at, updated_at,
                 revision, embedding_status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
            """, (message_id, thread_id, seq, role, *_encode_content(content), now, now,
                  EMBEDDING_PENDING))

        return Message(
            id=message_id,
            thread_id=thread_id,
            role=role,
            content=content,
            seq=seq,
            created_at=now,
            updated_at=now,
        )

    def update_message_content(self, thread_id: str, message_id: str,
                               content: Content) -> Message:
        """
        Replace a message's content.

        Bumps the revision, resets the embedding status to pending and
        drops the stored vector in the same transaction. Role, sequence
        and thread are immutable.

        Raises:
            NotFound: Unknown thread or message
            Conflict: Thread is being deleted
        """
        now = self._now()
        with self._write() as conn:
            self._active_thread_row(conn, thread_id)
            row = conn.execute(
                "SELECT * FROM messages WHERE id = ? AND thread_id = ?",
                (message_id, thread_id),
            ).fetchone()
            if row is None:
                raise NotFound(f"Message not found: {message_id}")
            revision = row["revision"] + 1
            conn.execute("""
                UPDATE messages
                SET content = ?, content_parts = ?, updated_at = ?, revision = ?,
                    embedding_status = ?
                WHERE id = ?
            """, (*_encode_content(content), now, revision, EMBEDDING_PENDING, message_id))
            conn.execute("DELETE FROM embeddings WHERE message_id = ?", (message_id,))

        return Message(
            id=message_id,
            thread_id=thread_id,
            role=row["role"],
            content=content,
            seq=row["seq"],
            created_at=row["created_at"],
            updated_at=now,
            revision=revision,
        )

    def delete_message(self, thread_id: str, message_id: str) -> Message:
        """
        Delete a message and its vector. Surviving messages keep their
        sequence numbers.

        Returns:
            The deleted message as it was

        Raises:
            NotFound: Unknown thread or message
            Conflict: Thread is being deleted
        """
        with self._write() as conn:
            self._active_thread_row(conn, thread_id)
            row = conn.execute(f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages m LEFT JOIN embeddings e ON e.message_id = m.id
                WHERE m.id = ? AND m.thread_id = ?
            """, (message_id, thread_id)).fetchone()
            if row is None:
                raise NotFound(f"Message not found: {message_id}")
            conn.execute("DELETE FROM embeddings WHERE message_id = ?", (message_id,))
            conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
        return self._row_to_message(row)

    def get_message(self, thread_id: str, message_id: str) -> Message:
        """
        Get one message of an active thread.

        Raises:
            NotFound: Unknown thread or message
        """
        rows = self._read(f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages m
            JOIN threads t ON t.id = m.thread_id
            LEFT JOIN embeddings e ON e.message_id = m.id
            WHERE m.id = ? AND m.thread_id = ? AND t.state = ?
        """, (message_id, thread_id, THREAD_ACTIVE))
        if not rows:
            raise NotFound(f"Message not found: {message_id}")
        return self._row_to_message(rows[0])

    def find_message(self, message_id: str) -> Message:
        """Get a message by ID alone (any active thread)."""
        rows = self._read(f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages m
            JOIN threads t ON t.id = m.thread_id
            LEFT JOIN embeddings e ON e.message_id = m.id
            WHERE m.id = ? AND t.state = ?
        """, (message_id, THREAD_ACTIVE))
        if not rows:
            raise NotFound(f"Message not found: {message_id}")
        return self._row_to_message(rows[0])

    def get_messages(
        self,
        thread_id: str,
        *,
        start_seq: Optional[int] = None,
        end_seq: Optional[int] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Message]:
        """
        Get messages of a thread in ascending sequence order.

        Chronological order is a hard contract: results are never
        reordered by recency or relevance.

        Args:
            thread_id: Thread identifier
            start_seq: Lowest sequence number to include
            end_seq: Highest sequence number to include
            limit: Maximum number to return (None for all)
            offset: Number of messages to skip

        Raises:
            NotFound: Unknown or deleted thread
            Corruption: Stored order or bounds violate sequence invariants
        """
        clauses = ["m.thread_id = ?"]
        params: list = [thread_id]
        if start_seq is not None:
            clauses.append("m.seq >= ?")
            params.append(start_seq)
        if end_seq is not None:
            clauses.append("m.seq <= ?")
            params.append(end_seq)

        with self._lock:
            thread_row = self._conn.execute(
                "SELECT last_seq, state FROM threads WHERE id = ?", (thread_id,)
            ).fetchone()
            if thread_row is None or thread_row["state"] != THREAD_ACTIVE:
                raise NotFound(f"Thread not found: {thread_id}")
            rows = self._conn.execute(f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages m LEFT JOIN embeddings e ON e.message_id = m.id
                WHERE {' AND '.join(clauses)}
                ORDER BY m.seq ASC
                LIMIT ? OFFSET ?
            """, (*params, -1 if limit is None else limit, offset)).fetchall()

        messages = [self._row_to_message(r) for r in rows]
        self._check_sequence(thread_id, thread_row["last_seq"], messages)
        return messages

    def _check_sequence(self, thread_id: str, last_seq: int, messages: list[Message]) -> None:
        previous = 0
        for message in messages:
            if message.seq <= previous or message.seq > last_seq:
                logger.error(
                    "Sequence corruption in thread %s at message %s (seq %d, previous %d, last %d)",
                    thread_id, message.id, message.seq, previous, last_seq,
                )
                raise Corruption(
                    f"Thread {thread_id}: message {message.id} has sequence {message.seq} "
                    f"(previous {previous}, last assigned {last_seq})"
                )
            previous = message.seq

    def count_messages(self, thread_id: str) -> int:
        """Count messages in an active thread."""
        self.get_thread(thread_id)
        rows = self._read("SELECT COUNT(*) FROM messages WHERE thread_id = ?", (thread_id,))
        return rows[0][0]

    def get_messages_by_ids(self, message_ids: list[str]) -> dict[str, Message]:
        """
        Get multiple messages by ID, skipping deleted ones and those whose
        thread is tombstoned.

        Returns:
            Dict mapping id -> Message (missing IDs omitted)
        """
        if not message_ids:
            return {}
        placeholders = ",".join("?" * len(message_ids))
        rows = self._read(f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages m
            JOIN threads t ON t.id = m.thread_id
            LEFT JOIN embeddings e ON e.message_id = m.id
            WHERE m.id IN ({placeholders}) AND t.state = ?
        """, (*message_ids, THREAD_ACTIVE))
        return {r["id"]: self._row_to_message(r) for r in rows}

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    def put_embedding(
        self,
        message_id: str,
        revision: int,
        model: str,
        vector: list[float],
    ) -> bool:
        """
        Store a vector if the message still has the given revision.

        Compare-and-set on the revision: an embedding computed from content
        that has since been updated (or deleted) is discarded.

        Returns:
            True if stored, False if the message moved on or is gone
        """
        blob = np.asarray(vector, dtype=np.float32)
        with self._write() as conn:
            row = conn.execute("""
                SELECT m.thread_id, m.revision, t.state
                FROM messages m JOIN threads t ON t.id = m.thread_id
                WHERE m.id = ?
            """, (message_id,)).fetchone()
            if row is None or row["revision"] != revision or row["state"] != THREAD_ACTIVE:
                return False
            conn.execute("""
                INSERT OR REPLACE INTO embeddings
                (message_id, thread_id, revision, model, dimension, vector, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (message_id, row["thread_id"], revision, model, int(blob.shape[0]),
                  blob.tobytes(), self._now()))
            conn.execute(
                "UPDATE messages SET embedding_status = ? WHERE id = ?",
                (EMBEDDING_READY, message_id),
            )
        return True

    def mark_embedding_failed(self, message_id: str, revision: int) -> bool:
        """Record that embedding this revision was given up on."""
        with self._write() as conn:
            cursor = conn.execute("""
                UPDATE messages SET embedding_status = ?
                WHERE id = ? AND revision = ? AND embedding_status = ?
            """, (EMBEDDING_FAILED, message_id, revision, EMBEDDING_PENDING))
        return cursor.rowcount > 0

    def reset_embedding(self, message_id: str) -> None:
        """Drop a stored vector and mark the message pending again."""
        with self._write() as conn:
            conn.execute("DELETE FROM embeddings WHERE message_id = ?", (message_id,))
            conn.execute(
                "UPDATE messages SET embedding_status = ? WHERE id = ?",
                (EMBEDDING_PENDING, message_id),
            )

    def _row_to_embedding(self, row: sqlite3.Row) -> EmbeddingRecord:
        vector = np.frombuffer(row["vector"], dtype=np.float32)
        return EmbeddingRecord(
            message_id=row["message_id"],
            thread_id=row["thread_id"],
            seq=row["seq"],
            revision=row["revision"],
            model=row["model"],
            vector=vector.tolist(),
        )

    def get_embedding(self, message_id: str) -> Optional[EmbeddingRecord]:
        """Get the stored vector for a message, if any."""
        rows = self._read("""
            SELECT e.*, m.seq
            FROM embeddings e JOIN messages m ON m.id = e.message_id
            WHERE e.message_id = ? AND e.revision = m.revision
        """, (message_id,))
        if not rows:
            return None
        return self._row_to_embedding(rows[0])

    def iter_embeddings(self) -> Iterator[EmbeddingRecord]:
        """All current vectors of active threads (used to rebuild the index)."""
        rows = self._read("""
            SELECT e.*, m.seq
            FROM embeddings e
            JOIN messages m ON m.id = e.message_id
            JOIN threads t ON t.id = e.thread_id
            WHERE t.state = ? AND e.revision = m.revision
            ORDER BY e.thread_id, m.seq
        """, (THREAD_ACTIVE,))
        for row in rows:
            yield self._row_to_embedding(row)

    def list_pending_embeddings(self) -> list[Message]:
        """Messages of active threads still waiting for a vector."""
        rows = self._read(f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages m
            JOIN threads t ON t.id = m.thread_id
            LEFT JOIN embeddings e ON e.message_id = m.id
            WHERE t.state = ? AND m.embedding_status = ?
            ORDER BY m.thread_id, m.seq
        """, (THREAD_ACTIVE, EMBEDDING_PENDING))
        return [self._row_to_message(r) for r in rows]

    # -------------------------------------------------------------------------
    # Summaries
    # -------------------------------------------------------------------------

    def put_summary(
        self,
        thread_id: str,
        text: str,
        watermark: int,
        *,
        status: str = SUMMARY_CURRENT,
    ) -> Summary:
        """
        Append a new summary version and make it current.

        The version insert and the current-reference swap happen in one
        transaction; earlier versions are kept for audit.

        Raises:
            NotFound: Unknown thread
            Conflict: Thread is being deleted
            Corruption: Watermark beyond the last assigned sequence number
        """
        now = self._now()
        with self._write() as conn:
            row = self._active_thread_row(conn, thread_id)
            if watermark > row["last_seq"] or watermark < 0:
                raise Corruption(
                    f"Thread {thread_id}: summary watermark {watermark} "
                    f"outside [0, {row['last_seq']}]"
                )
            version = conn.execute(
                "SELECT COALESCE(MAX(version), 0) + 1 FROM summaries WHERE thread_id = ?",
                (thread_id,),
            ).fetchone()[0]
            conn.execute("""
                INSERT INTO summaries (thread_id, version, text, watermark, generated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (thread_id, version, text, watermark, now))
            conn.execute(
                "UPDATE threads SET summary_version = ?, summary_status = ? WHERE id = ?",
                (version, status, thread_id),
            )
        return Summary(
            thread_id=thread_id,
            version=version,
            text=text,
            watermark=watermark,
            generated_at=now,
        )

    def get_current_summary(self, thread_id: str) -> Optional[Summary]:
        """The summary version the thread currently points to, if any."""
        rows = self._read("""
            SELECT s.* FROM summaries s
            JOIN threads t ON t.id = s.thread_id AND t.summary_version = s.version
            WHERE s.thread_id = ? AND t.state = ?
        """, (thread_id, THREAD_ACTIVE))
        if not rows:
            return None
        return self._row_to_summary(rows[0])

    def list_summaries(self, thread_id: str) -> list[Summary]:
        """All retained summary versions, oldest first."""
        self.get_thread(thread_id)
        rows = self._read(
            "SELECT * FROM summaries WHERE thread_id = ? ORDER BY version ASC",
            (thread_id,),
        )
        return [self._row_to_summary(r) for r in rows]

    def set_summary_status(
        self,
        thread_id: str,
        status: str,
        *,
        expected: Optional[Iterable[str]] = None,
    ) -> bool:
        """
        Set a thread's summary status.

        Args:
            expected: Only transition from one of these statuses

        Returns:
            True if the status was changed
        """
        sql = "UPDATE threads SET summary_status = ? WHERE id = ? AND state = ?"
        params: list = [status, thread_id, THREAD_ACTIVE]
        if expected is not None:
            expected = list(expected)
            sql += f" AND summary_status IN ({','.join('?' * len(expected))})"
            params.extend(expected)
        with self._write() as conn:
            cursor = conn.execute(sql, params)
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Verification and stats
    # -------------------------------------------------------------------------

    def verify_thread(self, thread_id: str) -> dict:
        """
        Check a thread's stored invariants.

        Returns:
            Report dict (messages, embeddings, summary watermark)

        Raises:
            NotFound: Unknown thread
            Corruption: Any invariant violation, listing all problems found
        """
        thread = self.get_thread(thread_id)
        problems = []

        messages = self._read("""
            SELECT m.id, m.seq, m.revision, m.embedding_status,
                   e.revision AS emb_revision
            FROM messages m LEFT JOIN embeddings e ON e.message_id = m.id
            WHERE m.thread_id = ?
            ORDER BY m.seq ASC
        """, (thread_id,))
        previous = 0
        for row in messages:
            if row["seq"] <= previous:
                problems.append(f"message {row['id']} seq {row['seq']} not above {previous}")
            if row["seq"] > thread.last_seq:
                problems.append(f"message {row['id']} seq {row['seq']} beyond last_seq {thread.last_seq}")
            previous = row["seq"]
            has_vector = row["emb_revision"] is not None
            if row["embedding_status"] == EMBEDDING_READY and not has_vector:
                problems.append(f"message {row['id']} ready without a vector")
            if has_vector and row["emb_revision"] != row["revision"]:
                problems.append(f"message {row['id']} vector from revision {row['emb_revision']}")

        summary = self.get_current_summary(thread_id)
        if thread.summary_version is not None and summary is None:
            problems.append(f"current summary version {thread.summary_version} missing")
        if summary is not None and summary.watermark > thread.last_seq:
            problems.append(f"summary watermark {summary.watermark} beyond last_seq {thread.last_seq}")

        if problems:
            logger.error("Thread %s failed verification: %s", thread_id, "; ".join(problems))
            raise Corruption(f"Thread {thread_id}: " + "; ".join(problems))

        return {
            "thread_id": thread_id,
            "messages": len(messages),
            "last_seq": thread.last_seq,
            "embedded": sum(1 for r in messages if r["embedding_status"] == EMBEDDING_READY),
            "summary_watermark": summary.watermark if summary else None,
        }

    def stats(self) -> dict:
        """Counts for diagnostics."""
        with self._lock:
            threads = self._conn.execute(
                "SELECT COUNT(*) FROM threads WHERE state = ?", (THREAD_ACTIVE,)
            ).fetchone()[0]
            by_status = {
                row[0]: row[1] for row in self._conn.execute(
                    "SELECT embedding_status, COUNT(*) FROM messages GROUP BY embedding_status"
                )
            }
            summaries = self._conn.execute("SELECT COUNT(*) FROM summaries").fetchone()[0]
        return {
            "threads": threads,
            "messages": sum(by_status.values()),
            "embedding_status": by_status,
            "summary_versions": summaries,
            "db_path": str(self._db_path),
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
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
