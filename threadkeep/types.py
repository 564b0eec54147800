"""
Data types for threaded conversations.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union


# Roles accepted on messages. Role is immutable after insert.
ROLES = frozenset({"user", "assistant", "system", "tool"})

# Embedding status values
EMBEDDING_PENDING = "pending"
EMBEDDING_READY = "ready"
EMBEDDING_FAILED = "failed"

# Summary status values (per thread)
SUMMARY_NONE = "none"
SUMMARY_CURRENT = "current"
SUMMARY_STALE = "stale"
SUMMARY_REFRESHING = "refreshing"
SUMMARY_FAILED = "failed"

# Thread lifecycle
THREAD_ACTIVE = "active"
THREAD_DELETING = "deleting"

MAX_ID_LENGTH = 128
MAX_META_KEY_LENGTH = 128
MAX_META_VALUE_LENGTH = 4096

_META_KEY_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_.-]*$')
_ID_RE = re.compile(r'^[A-Za-z0-9_-]+$')


def utc_now() -> str:
    """Current UTC timestamp in ISO format (microsecond precision)."""
    return datetime.now(timezone.utc).isoformat()


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime."""
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id() -> str:
    """Generate a fresh thread or message identifier."""
    return uuid.uuid4().hex


def validate_id(id: str) -> None:
    """Validate a thread or message ID."""
    if not id or len(id) > MAX_ID_LENGTH or not _ID_RE.match(id):
        raise ValueError(f"Invalid ID: {id!r}")


def validate_role(role: str) -> str:
    """Normalize and validate a message role."""
    normalized = (role or "").strip().lower()
    if normalized not in ROLES:
        raise ValueError(
            f"Invalid role {role!r}. Expected one of: {', '.join(sorted(ROLES))}"
        )
    return normalized


# Message content: one text, or an ordered list of text parts
Content = Union[str, list[str]]
CONTENT_PART_SEPARATOR = "\n\n"


def _text_part(part) -> str:
    if isinstance(part, dict):
        kind = part.get("type", "text")
        if kind != "text":
            raise ValueError(f"Unsupported content part type {kind!r}; only text parts are stored")
        part = part.get("text")
    if not isinstance(part, str):
        raise ValueError("Content parts must be text")
    return part


def validate_content(content) -> Content:
    """
    Normalize message content.

    Accepts a string, or a list whose items are strings or
    ``{"type": "text", "text": ...}`` dicts. A list comes back as a list
    of strings. At least one part must hold non-blank text.
    """
    if isinstance(content, str):
        if not content.strip():
            raise ValueError("Message content must be non-empty text")
        return content
    if isinstance(content, (list, tuple)):
        parts = [_text_part(p) for p in content]
        if not any(p.strip() for p in parts):
            raise ValueError("Message content must contain non-empty text")
        return parts
    raise ValueError("Message content must be text or a list of text parts")


def content_text(content: Content) -> str:
    """The text of a message's content, parts joined by blank lines."""
    if isinstance(content, str):
        return content
    return CONTENT_PART_SEPARATOR.join(p for p in content if p.strip())


def validate_metadata(metadata: dict) -> None:
    """Validate thread metadata keys and values.

    A value of None is allowed in updates and means "remove this key".
    """
    for key, value in metadata.items():
        if not isinstance(key, str) or not key or len(key) > MAX_META_KEY_LENGTH:
            raise ValueError(f"Metadata key must be 1-{MAX_META_KEY_LENGTH} characters: {key!r}")
        if not _META_KEY_RE.match(key):
            raise ValueError(f"Metadata key contains invalid characters: {key!r}")
        if value is None:
            continue
        if not isinstance(value, str):
            raise ValueError(f"Metadata value for {key!r} must be a string")
        if len(value) > MAX_META_VALUE_LENGTH:
            raise ValueError(f"Metadata value for {key!r} exceeds {MAX_META_VALUE_LENGTH} characters")


@dataclass(frozen=True)
class Thread:
    """
    A conversation container.

    Attributes:
        id: Unique, immutable identifier
        created_at: ISO timestamp of creation
        metadata: Mutable key-value pairs
        last_seq: Highest sequence number ever assigned (0 if none)
        summary_version: Version number of the current summary (None if none)
        summary_status: One of the SUMMARY_* values
        state: THREAD_ACTIVE or THREAD_DELETING (tombstone)
    """
    id: str
    created_at: str
    metadata: dict[str, str] = field(default_factory=dict)
    last_seq: int = 0
    summary_version: Optional[int] = None
    summary_status: str = SUMMARY_NONE
    state: str = THREAD_ACTIVE

    @property
    def deleted(self) -> bool:
        return self.state != THREAD_ACTIVE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "metadata": dict(self.metadata),
            "last_seq": self.last_seq,
            "summary_version": self.summary_version,
            "summary_status": self.summary_status,
        }


@dataclass(frozen=True)
class Message:
    """
    One chronologically-sequenced entry in a thread.

    ``seq`` defines chronological order independent of wall-clock ties.
    ``revision`` increments on each content update; embeddings record the
    revision they were computed from.

    ``content`` is a string or a list of text parts; ``text`` joins the
    parts and is what gets embedded, summarized and shown in snippets.
    """
    id: str
    thread_id: str
    role: str
    content: Content
    seq: int
    created_at: str
    updated_at: str
    revision: int = 1
    embedding_status: str = EMBEDDING_PENDING
    embedding_model: Optional[str] = None

    @property
    def text(self) -> str:
        return content_text(self.content)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "role": self.role,
            "content": self.content,
            "seq": self.seq,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "revision": self.revision,
            "embedding_status": self.embedding_status,
        }


@dataclass(frozen=True)
class EmbeddingRecord:
    """A stored vector for one message revision."""
    message_id: str
    thread_id: str
    seq: int
    revision: int
    model: str
    vector: list[float]


@dataclass(frozen=True)
class Summary:
    """An immutable summary version. New versions supersede old ones."""
    thread_id: str
    version: int
    text: str
    watermark: int
    generated_at: str

    def to_dict(self) -> dict:
        return {
            "thread_id": self.thread_id,
            "version": self.version,
            "text": self.text,
            "watermark": self.watermark,
            "generated_at": self.generated_at,
        }


@dataclass(frozen=True)
class SummaryView:
    """
    What readers see for a thread's summary.

    ``summary`` is the last current version even while a refresh runs;
    ``stale`` tells the reader newer content is not yet accounted for.
    """
    thread_id: str
    summary: Optional[Summary]
    status: str
    pending_count: int
    stale: bool

    def to_dict(self) -> dict:
        return {
            "thread_id": self.thread_id,
            "summary": self.summary.to_dict() if self.summary else None,
            "status": self.status,
            "pending_count": self.pending_count,
            "stale": self.stale,
        }


@dataclass(frozen=True)
class ThreadFilter:
    """Filter for listing threads. All conditions must match."""
    metadata: dict[str, str] = field(default_factory=dict)
    created_after: Optional[str] = None
    created_before: Optional[str] = None


@dataclass(frozen=True)
class SearchScope:
    """
    Subset of the index a query considers.

    Empty ``thread_ids`` means all threads (global scope).
    """
    thread_ids: frozenset[str] = frozenset()

    @classmethod
    def thread(cls, thread_id: str) -> "SearchScope":
        return cls(frozenset({thread_id}))

    @classmethod
    def threads(cls, thread_ids) -> "SearchScope":
        return cls(frozenset(thread_ids))

    @property
    def is_global(self) -> bool:
        return not self.thread_ids


GLOBAL = SearchScope()


def as_scope(scope) -> SearchScope:
    """Accept a SearchScope, a thread id, an iterable of thread ids, or None."""
    if scope is None:
        return GLOBAL
    if isinstance(scope, SearchScope):
        return scope
    if isinstance(scope, str):
        return SearchScope.thread(scope)
    return SearchScope.threads(scope)


@dataclass(frozen=True)
class SearchResult:
    """A ranked message hit, hydrated with its thread context."""
    message_id: str
    thread_id: str
    role: str
    seq: int
    snippet: str
    score: float

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "thread_id": self.thread_id,
            "role": self.role,
            "seq": self.seq,
            "snippet": self.snippet,
            "score": round(self.score, 6),
        }


@dataclass(frozen=True)
class ThreadSearchResult:
    """A ranked thread hit: best matching message plus current summary."""
    thread_id: str
    score: float
    best_message: SearchResult
    summary: Optional[str] = None
    hits: int = 1

    def to_dict(self) -> dict:
        return {
            "thread_id": self.thread_id,
            "score": round(self.score, 6),
            "summary": self.summary,
            "hits": self.hits,
            "best_message": self.best_message.to_dict(),
        }


def snippet(content: str, max_chars: int) -> str:
    """Shorten content for search result display."""
    text = " ".join(content.split())
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars].rsplit(" ", 1)[0]
    return (cut or text[:max_chars]) + "..."
