"""
Rolling thread summaries.

Per-thread state machine::

    none -> stale -> refreshing -> current -> stale -> refreshing -> ...
                         \\-> stale (job failed, retried with backoff)
                         \\-> failed (retry cap reached)

After every committed mutation the policy computes
``pending_count = last_seq - watermark``. Reaching the message threshold
(or the optional maximum age) marks the thread stale and enqueues a
refresh. A refreshing thread keeps serving its last current summary.

A refresh covers messages up to the sequence number observed when the
job starts. Messages added while it runs stay pending for the next cycle.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .consistency import ThreadLocks, call_with_timeout
from .errors import CapabilityUnavailable, Conflict, NotFound
from .types import (
    SUMMARY_CURRENT,
    SUMMARY_FAILED,
    SUMMARY_NONE,
    SUMMARY_REFRESHING,
    SUMMARY_STALE,
    Summary,
    SummaryView,
    Thread,
    parse_utc_timestamp,
)
from .work_queue import TASK_SUMMARIZE, JobResult, PendingItem

logger = logging.getLogger(__name__)

# Statuses under which the served summary may lag the thread
STALE_STATUSES = frozenset({SUMMARY_STALE, SUMMARY_REFRESHING, SUMMARY_FAILED})


@dataclass(frozen=True)
class SummaryDecision:
    """Outcome of evaluating the trigger policy for one thread."""
    pending_count: int
    trigger: Optional[str] = None      # "threshold", "max_age" or None
    enqueue: bool = False
    reset_attempts: bool = False       # leave the dead-letter state


class SummaryPolicy:
    """
    When a thread's summary needs refreshing.

    Args:
        threshold: New messages since the watermark that trigger a refresh
        max_age_seconds: Age of the last summary that triggers a refresh
            while anything is pending (0 disables)
    """

    def __init__(self, threshold: int = 10, max_age_seconds: float = 0.0):
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.threshold = threshold
        self.max_age_seconds = max_age_seconds

    @classmethod
    def from_config(cls, config) -> "SummaryPolicy":
        return cls(threshold=config.threshold, max_age_seconds=config.max_age_seconds)

    @staticmethod
    def pending_count(thread: Thread, summary: Optional[Summary]) -> int:
        watermark = summary.watermark if summary else 0
        return max(thread.last_seq - watermark, 0)

    def _trigger(self, pending: int, thread: Thread, summary: Optional[Summary],
                 now: datetime) -> Optional[str]:
        if pending <= 0:
            return None
        if pending >= self.threshold:
            return "threshold"
        if self.max_age_seconds > 0:
            since = parse_utc_timestamp(summary.generated_at if summary else thread.created_at)
            if (now - since).total_seconds() >= self.max_age_seconds:
                return "max_age"
        return None

    def evaluate(
        self,
        thread: Thread,
        summary: Optional[Summary],
        now: Optional[datetime] = None,
    ) -> SummaryDecision:
        """
        Decide whether a thread needs a refresh.

        A refreshing thread is never re-enqueued; its job re-evaluates on
        completion.
        """
        pending = self.pending_count(thread, summary)
        if thread.summary_status == SUMMARY_REFRESHING:
            return SummaryDecision(pending)
        trigger = self._trigger(pending, thread, summary, now or datetime.now(timezone.utc))
        if trigger is None:
            return SummaryDecision(pending)
        return SummaryDecision(
            pending,
            trigger=trigger,
            enqueue=True,
            reset_attempts=thread.summary_status == SUMMARY_FAILED,
        )

    def view(self, thread: Thread, summary: Optional[Summary]) -> SummaryView:
        """What readers see: last current summary plus staleness."""
        return SummaryView(
            thread_id=thread.id,
            summary=summary,
            status=thread.summary_status,
            pending_count=self.pending_count(thread, summary),
            stale=thread.summary_status in STALE_STATUSES,
        )


class SummarizationPipeline:
    """
    Schedules and runs summary refresh jobs.

    ``schedule`` is called by mutations while they hold the thread lock.
    ``run`` is called by the queue processor for a claimed item; it takes
    the thread lock only around its store reads and writes, never across
    the provider call.
    """

    def __init__(
        self,
        store,
        queue,
        locks: ThreadLocks,
        policy: SummaryPolicy,
        get_provider: Callable,
        *,
        timeout: float = 120.0,
        max_attempts: int = 5,
    ):
        self._store = store
        self._queue = queue
        self._locks = locks
        self.policy = policy
        self._get_provider = get_provider
        self._timeout = timeout
        self._max_attempts = max_attempts

    def schedule(self, thread_id: str, *, now: Optional[datetime] = None) -> SummaryDecision:
        """Re-evaluate the trigger and enqueue a refresh if it fires."""
        with self._locks.hold(thread_id):
            thread = self._store.get_thread(thread_id)
            summary = self._store.get_current_summary(thread_id)
            decision = self.policy.evaluate(thread, summary, now)
            if decision.enqueue:
                if thread.summary_status != SUMMARY_STALE:
                    self._store.set_summary_status(
                        thread_id, SUMMARY_STALE, expected=[thread.summary_status],
                    )
                self._queue.enqueue(
                    thread_id, thread_id, TASK_SUMMARIZE,
                    replace=decision.reset_attempts,
                )
                logger.info(
                    "Summary of thread %s stale (%s, %d pending), refresh queued",
                    thread_id, decision.trigger, decision.pending_count,
                )
            return decision

    def _summarize(self, messages, previous: Optional[str]) -> str:
        try:
            provider = self._get_provider()
        except (RuntimeError, ValueError) as e:
            raise CapabilityUnavailable("summarization", str(e)) from e
        text = call_with_timeout(
            "summarization", provider.summarize, messages,
            previous=previous, timeout=self._timeout,
        )
        if not isinstance(text, str) or not text.strip():
            raise CapabilityUnavailable("summarization", "provider returned an empty summary")
        return text.strip()

    def run(self, item: PendingItem) -> JobResult:
        """
        Execute one claimed refresh job.

        Returns:
            JobResult with outcome "summarized", "skipped" (thread gone or
            nothing pending), "failed" (will retry) or "abandoned"
        """
        thread_id = item.thread_id
        with self._locks.hold(thread_id):
            try:
                thread = self._store.get_thread(thread_id)
            except NotFound:
                self._queue.complete(item)
                return JobResult("skipped")
            previous = self._store.get_current_summary(thread_id)
            start = previous.watermark if previous else 0
            watermark = thread.last_seq
            if watermark <= start:
                self._queue.complete(item)
                if thread.summary_status in (SUMMARY_STALE, SUMMARY_FAILED):
                    self._store.set_summary_status(
                        thread_id, SUMMARY_CURRENT if previous else SUMMARY_NONE,
                    )
                return JobResult("skipped")
            self._store.set_summary_status(thread_id, SUMMARY_REFRESHING)

        # From here on every failure must leave the refreshing state
        try:
            text = self._refresh_text(thread_id, start, watermark, previous)
        except CapabilityUnavailable as e:
            return self.fail(item, str(e))
        except Exception as e:
            logger.exception("Summary refresh of thread %s failed", thread_id)
            return self.fail(item, f"{type(e).__name__}: {e}")

        with self._locks.hold(thread_id):
            try:
                summary = self._store.put_summary(thread_id, text, watermark, status=SUMMARY_CURRENT)
            except (NotFound, Conflict):
                # Thread deleted while the job ran
                self._queue.complete(item)
                return JobResult("skipped")
            self._queue.complete(item)
            logger.info(
                "Summary v%d of thread %s covers seq <= %d",
                summary.version, thread_id, watermark,
            )
            self.schedule(thread_id)
        return JobResult("summarized")

    def _refresh_text(self, thread_id: str, start: int, watermark: int,
                      previous: Optional[Summary]) -> str:
        with self._locks.hold(thread_id):
            messages = self._store.get_messages(thread_id, start_seq=start + 1, end_seq=watermark)
        previous_text = previous.text if previous else None
        if not messages:
            # Everything in range was deleted; carry the old text forward
            return previous_text or ""
        return self._summarize(messages, previous_text)

    def fail(self, item: PendingItem, error: str) -> JobResult:
        """
        Record a failed refresh attempt.

        The thread goes back to stale for a retry, or to failed once
        ``max_attempts`` is reached.
        """
        thread_id = item.thread_id
        with self._locks.hold(thread_id):
            if item.attempts >= self._max_attempts:
                self._store.set_summary_status(
                    thread_id, SUMMARY_FAILED, expected=[SUMMARY_REFRESHING, SUMMARY_STALE],
                )
                self._queue.abandon(item, error)
                logger.warning(
                    "Summarization of thread %s failed after %d attempts: %s",
                    thread_id, item.attempts, error,
                )
                return JobResult("abandoned", error)
            else:
                self._store.set_summary_status(
                    thread_id, SUMMARY_STALE, expected=[SUMMARY_REFRESHING],
                )
                self._queue.fail(item, error)
                return JobResult("failed", error)

    def recover(self) -> int:
        """
        Re-enqueue stale threads and threads whose refresh was interrupted.

        Queue items that survived the restart keep their attempts and backoff.
        """
        count = 0
        for thread in self._store.list_threads_by_summary_status(
            [SUMMARY_STALE, SUMMARY_REFRESHING]
        ):
            if thread.summary_status == SUMMARY_REFRESHING:
                self._store.set_summary_status(
                    thread.id, SUMMARY_STALE, expected=[SUMMARY_REFRESHING],
                )
            self._queue.enqueue(thread.id, thread.id, TASK_SUMMARIZE, replace=False)
            count += 1
        return count

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Apply the age trigger to idle threads. No-op when max age is off."""
        if self.policy.max_age_seconds <= 0:
            return 0
        fired = 0
        for thread in self._store.list_threads_by_summary_status(
            [SUMMARY_CURRENT, SUMMARY_NONE]
        ):
            try:
                if self.schedule(thread.id, now=now).enqueue:
                    fired += 1
            except NotFound:
                continue
        return fired
