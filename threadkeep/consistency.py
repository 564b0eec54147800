"""
Per-thread write serialization and bounded capability calls.

Mutations on the same thread are totally ordered by holding that thread's
lock; distinct threads never contend. Calls to embedding and summarization
providers run on a shared executor with a timeout so a hung model cannot
wedge a thread lock or a worker.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from .errors import CapabilityUnavailable, Conflict

logger = logging.getLogger(__name__)

PROVIDER_WORKERS = 8


class ThreadLocks:
    """
    Registry of reentrant per-thread locks.

    Locks are created on first use and dropped when a thread is purged.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def get(self, thread_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(thread_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[thread_id] = lock
            return lock

    @contextmanager
    def hold(self, thread_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Exclusive section for one thread.

        Raises:
            Conflict: The lock could not be acquired within ``timeout``
        """
        lock = self.get(thread_id)
        if not lock.acquire(timeout=-1 if timeout is None else timeout):
            raise Conflict(f"Timed out waiting for thread {thread_id}")
        try:
            yield
        finally:
            lock.release()

    def discard(self, thread_id: str) -> None:
        with self._guard:
            self._locks.pop(thread_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(
                max_workers=PROVIDER_WORKERS, thread_name_prefix="threadkeep-provider",
            )
        return _executor


def call_with_timeout(capability: str, fn: Callable, *args, timeout: float, **kwargs):
    """
    Run a provider call with a deadline.

    A timeout or any provider error becomes CapabilityUnavailable. On
    timeout the future is cancelled; a call that already started keeps
    its worker until it returns, and its result is discarded.

    Args:
        capability: "embedding" or "summarization" (for the error)
        fn: Provider callable
        timeout: Seconds to wait

    Raises:
        CapabilityUnavailable: Timeout or provider failure
    """
    future = _get_executor().submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        logger.warning("%s call timed out after %.1fs", capability, timeout)
        raise CapabilityUnavailable(capability, f"timed out after {timeout}s") from None
    except CapabilityUnavailable:
        raise
    except Exception as e:
        logger.warning("%s call failed: %s", capability, e)
        raise CapabilityUnavailable(capability, str(e) or type(e).__name__) from e
