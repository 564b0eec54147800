"""
Error taxonomy and error logging for threadkeep.

Synchronous (CRUD and search) failures surface as one of the exceptions
below. Background failures (embedding, summarization) are recorded as
status on the owning message or thread instead of being raised.

Each error carries ``status_code`` so an HTTP layer can map it directly.
"""

import logging
import os
import traceback
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class ThreadKeepError(Exception):
    """Base class for all threadkeep errors."""
    status_code = 500


class NotFound(ThreadKeepError):
    """Unknown thread, message or summary."""
    status_code = 404


class EmbeddingNotReady(NotFound):
    """The message exists but has no ready embedding to search with."""


class Conflict(ThreadKeepError):
    """Concurrent structural mutation, e.g. the thread is being deleted."""
    status_code = 409


class DimensionMismatch(ThreadKeepError):
    """Vector shape does not match the index dimension."""
    status_code = 422

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class CapabilityUnavailable(ThreadKeepError):
    """Embedding or summarization provider timed out or failed."""
    status_code = 503

    def __init__(self, capability: str, message: str):
        super().__init__(f"{capability} unavailable: {message}")
        self.capability = capability


class Corruption(ThreadKeepError):
    """
    An invariant violation was detected (e.g. a sequence gap or reorder).

    Fatal for the affected operation. Never repaired automatically.
    """
    status_code = 500


ERROR_LOG = "threadkeep-errors.log"


def _error_log_path() -> Path:
    store = os.environ.get("THREADKEEP_STORE_PATH")
    return (Path(store) if store else Path.home() / ".threadkeep") / ERROR_LOG


def log_exception(exc: Exception, context: str = "", log_path: Path | None = None) -> Path:
    """
    Append ``exc`` and its traceback to the store's error log.

    The user sees a one-line message; the log keeps the detail. ``context``
    names what was running (a CLI command, "add_message <thread>").

    Returns:
        The log file written (or that could not be written)
    """
    log_path = log_path or _error_log_path()
    header = f"[{datetime.now(timezone.utc).isoformat()}] {context}".rstrip()
    entry = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        # Tracebacks can quote message content; owner-only
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'-' * 72}\n{header}\n{entry}")
    except OSError:
        logger.warning("Could not write error log %s", log_path)
    return log_path
