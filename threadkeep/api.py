"""
Core API for threadkeep.

This is the minimal interface an HTTP layer, the CLI or an agent calls.
Every mutation commits to the thread store under the thread's lock and
then, before returning, invalidates what derives from it: the message
leaves the embedding index, an embed job is queued, and the summary
trigger is re-evaluated. Embedding and summarization themselves run
later, in the background worker or in ``process_pending()``.
"""

import logging
import math
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .backend import QUEUE_DB, THREADS_DB, create_index, create_stores
from .config import StoreConfig, get_default_store_path, load_or_create_config
from .consistency import ThreadLocks, call_with_timeout
from .errors import (
    ERROR_LOG,
    CapabilityUnavailable,
    Corruption,
    DimensionMismatch,
    NotFound,
    log_exception,
)
from .logging_config import configure_ops_log, remove_ops_log
from .providers.base import (
    EmbeddingProvider,
    SummarizationProvider,
    embedding_model_name,
    get_registry,
)
from .search import SearchCoordinator
from .summaries import SummarizationPipeline, SummaryPolicy
from .types import (
    EMBEDDING_FAILED,
    EMBEDDING_PENDING,
    EMBEDDING_READY,
    SUMMARY_FAILED,
    SUMMARY_STALE,
    Content,
    Message,
    SearchResult,
    SearchScope,
    Summary,
    SummaryView,
    Thread,
    ThreadFilter,
    ThreadSearchResult,
    as_scope,
    validate_content,
    validate_id,
    validate_metadata,
    validate_role,
)
from .work_queue import TASK_EMBED, TASK_SUMMARIZE, JobResult, PendingItem
from .workers import BackgroundWorker

logger = logging.getLogger(__name__)

# Upper bound on batches in one drain() call
MAX_DRAIN_ROUNDS = 1000


class ThreadKeeper:
    """
    Embedding-indexed conversation thread store.

    Threads hold ordered messages. Each message is embedded for similarity
    search; each thread keeps a rolling summary refreshed after enough new
    messages arrive.

    Args:
        store_path: Store directory (default: THREADKEEP_STORE_PATH or ~/.threadkeep)
        config: Explicit configuration (skips loading threadkeep.toml)
        thread_store: Injected thread store (otherwise created from config)
        vector_index: Injected embedding index
        work_queue: Injected pending work queue
        background: Run the background worker (default: config.workers.enabled)
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        thread_store=None,
        vector_index=None,
        work_queue=None,
        background: Optional[bool] = None,
    ):
        if config is not None:
            self._store_path = Path(config.path)
            self._config = config
        else:
            if store_path is None:
                self._store_path = get_default_store_path()
            else:
                self._store_path = Path(store_path).expanduser().resolve()
            self._config = load_or_create_config(self._store_path)

        self._error_log = self._store_path / ERROR_LOG
        self._ops_log_handler = configure_ops_log(self._store_path)

        if thread_store is None and vector_index is None and work_queue is None:
            bundle = create_stores(self._config)
            thread_store = bundle.thread_store
            vector_index = bundle.vector_index
            work_queue = bundle.work_queue
        else:
            if thread_store is None:
                from .thread_store import ThreadStore
                thread_store = ThreadStore(self._store_path / THREADS_DB)
            if vector_index is None:
                vector_index = create_index(self._config)
            if work_queue is None:
                from .work_queue import PendingWorkQueue
                work_queue = PendingWorkQueue(
                    self._store_path / QUEUE_DB,
                    backoff_base=self._config.workers.retry_backoff_base,
                    backoff_max=self._config.workers.retry_backoff_max,
                )
        self._thread_store = thread_store
        self._index = vector_index
        self._queue = work_queue

        # Providers are created on first use
        self._embedding_provider: Optional[EmbeddingProvider] = None
        self._summarization_provider: Optional[SummarizationProvider] = None
        self._provider_init_lock = threading.Lock()

        self._closing = threading.Event()
        self._locks = ThreadLocks()
        self._policy = SummaryPolicy.from_config(self._config.summary)
        self._summaries = SummarizationPipeline(
            self._thread_store,
            self._queue,
            self._locks,
            self._policy,
            self._get_summarization_provider,
            timeout=self._config.workers.summarize_timeout,
            max_attempts=self._config.summary.max_attempts,
        )
        self._search = SearchCoordinator(
            self._thread_store,
            self._index,
            self._get_embedding_provider,
            snippet_chars=self._config.search.snippet_chars,
            min_score=self._config.search.min_score,
            query_timeout=self._config.search.query_timeout,
        )

        self._recover()

        if background is None:
            background = self._config.workers.enabled
        self._worker: Optional[BackgroundWorker] = None
        if background:
            self._worker = BackgroundWorker(
                self._process_batch,
                poll_interval=self._config.workers.poll_interval,
            )
            self._worker.start()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def config(self) -> StoreConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Providers
    # -------------------------------------------------------------------------

    def _get_embedding_provider(self) -> EmbeddingProvider:
        """
        Get embedding provider, creating it lazily on first use.

        Thread-safe: the background worker and a search call may both ask
        for it at once; only one loads the model.
        """
        if self._embedding_provider is not None:
            return self._embedding_provider

        with self._provider_init_lock:
            if self._embedding_provider is not None:
                return self._embedding_provider

            registry = get_registry()
            provider = registry.create_embedding(
                self._config.embedding.name,
                self._config.embedding.params,
            )
            self._check_embedding_dimension(provider)
            self._embedding_provider = provider
            logger.info("Embedding provider: %s", embedding_model_name(provider))
        return self._embedding_provider

    def _get_summarization_provider(self) -> SummarizationProvider:
        """Get summarization provider, creating it lazily on first use."""
        if self._summarization_provider is not None:
            return self._summarization_provider

        with self._provider_init_lock:
            if self._summarization_provider is not None:
                return self._summarization_provider

            registry = get_registry()
            self._summarization_provider = registry.create_summarization(
                self._config.summarization.name,
                self._config.summarization.params,
            )
        return self._summarization_provider

    def _check_embedding_dimension(self, provider: EmbeddingProvider) -> None:
        """Re-embed everything if the provider's dimension differs from the index."""
        indexed = self._index.dimension
        dimension = provider.dimension
        if indexed is None or dimension == indexed:
            return
        logger.warning(
            "Embedding dimension changed from %d to %d, re-embedding all messages",
            indexed, dimension,
        )
        self.reindex(dimension=dimension)

    # -------------------------------------------------------------------------
    # Startup recovery
    # -------------------------------------------------------------------------

    def _recover(self) -> None:
        """
        Bring derived state back in line with the thread store.

        Finishes interrupted thread deletions, rebuilds the embedding index
        from stored vectors and re-enqueues pending embed and summary jobs.
        """
        for thread_id in self._thread_store.list_deleting_threads():
            logger.info("Finishing interrupted deletion of thread %s", thread_id)
            self._purge(thread_id)

        loaded = dropped = 0
        for record in self._thread_store.iter_embeddings():
            try:
                self._index.upsert(
                    record.message_id, record.thread_id, record.vector, seq=record.seq,
                )
                loaded += 1
            except (DimensionMismatch, ValueError):
                self._thread_store.reset_embedding(record.message_id)
                dropped += 1
        if dropped:
            logger.warning(
                "Dropped %d unusable stored vectors; they will be re-embedded",
                dropped,
            )

        requeued = 0
        for message in self._thread_store.list_pending_embeddings():
            if self._queue.enqueue(
                message.id, message.thread_id, TASK_EMBED,
                metadata={"revision": message.revision}, replace=False,
            ):
                requeued += 1
        summaries = self._summaries.recover()

        if loaded or requeued or summaries:
            logger.info(
                "Recovered store: %d vectors indexed, %d embed jobs and %d summary jobs queued",
                loaded, requeued, summaries,
            )

    def reindex(self, dimension: Optional[int] = None) -> int:
        """
        Drop every stored vector and queue all messages for re-embedding.

        Used when the embedding model changes. Search returns fewer results
        until the queue drains.

        Returns:
            Number of messages queued
        """
        for record in self._thread_store.iter_embeddings():
            self._thread_store.reset_embedding(record.message_id)
        self._index.clear(dimension=dimension)

        count = 0
        for message in self._thread_store.list_pending_embeddings():
            self._queue.enqueue(
                message.id, message.thread_id, TASK_EMBED,
                metadata={"revision": message.revision},
            )
            count += 1
        logger.info("Queued %d messages for re-embedding", count)
        self._notify()
        return count

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    @contextmanager
    def _mutating(self, thread_id: str, action: str) -> Iterator[None]:
        """Exclusive section for one mutation; corruption is logged and re-raised."""
        validate_id(thread_id)
        with self._locks.hold(thread_id):
            try:
                yield
            except Corruption as e:
                logger.error("Corruption during %s on thread %s: %s", action, thread_id, e)
                log_exception(e, f"{action} {thread_id}", self._error_log)
                raise

    def _notify(self) -> None:
        if self._worker is not None:
            self._worker.notify()

    def create_thread(self, metadata: Optional[dict[str, str]] = None) -> Thread:
        """
        Create an empty thread.

        Args:
            metadata: Optional key-value pairs (string values)
        """
        metadata = dict(metadata or {})
        validate_metadata(metadata)
        metadata = {k: v for k, v in metadata.items() if v is not None}
        thread = self._thread_store.create_thread(metadata)
        logger.info("Created thread %s", thread.id)
        return thread

    def update_thread(self, thread_id: str, metadata: dict[str, Optional[str]]) -> Thread:
        """
        Merge metadata into a thread. A None value removes the key.

        Raises:
            NotFound: Unknown thread
            Conflict: Thread is being deleted
        """
        validate_metadata(metadata)
        with self._mutating(thread_id, "update_thread"):
            return self._thread_store.update_thread_metadata(thread_id, metadata)

    def delete_thread(self, thread_id: str) -> int:
        """
        Delete a thread with its messages, vectors, summaries and queued jobs.

        The thread is tombstoned first, so from that point reads report it
        as NotFound and concurrent mutations fail with Conflict. A crash
        before the purge completes is finished at the next startup.

        Returns:
            Number of messages removed

        Raises:
            NotFound: Unknown thread
            Conflict: Thread is already being deleted
        """
        with self._mutating(thread_id, "delete_thread"):
            self._thread_store.mark_thread_deleting(thread_id)
            removed = self._purge(thread_id)
        self._locks.discard(thread_id)
        logger.info("Deleted thread %s (%d messages)", thread_id, removed)
        return removed

    def _purge(self, thread_id: str) -> int:
        self._index.remove_thread(thread_id)
        self._queue.purge_thread(thread_id)
        return self._thread_store.purge_thread(thread_id)

    def add_message(self, thread_id: str, role: str, content: Content) -> Message:
        """
        Append a message to a thread.

        ``content`` is a string or a list of text parts (strings or
        ``{"type": "text", "text": ...}`` dicts).

        The message gets the next sequence number and is queued for
        embedding; the thread's summary trigger is re-evaluated.

        Raises:
            ValueError: Unknown role, empty content or a non-text part
            NotFound: Unknown thread
            Conflict: Thread is being deleted
            Corruption: The thread's stored sequence is inconsistent
        """
        role = validate_role(role)
        content = validate_content(content)
        with self._mutating(thread_id, "add_message"):
            message = self._thread_store.add_message(thread_id, role, content)
            self._queue.enqueue(
                message.id, thread_id, TASK_EMBED,
                metadata={"revision": message.revision},
            )
            self._summaries.schedule(thread_id)
        logger.info("Added message %s to thread %s (seq %d)", message.id, thread_id, message.seq)
        self._notify()
        return message

    def update_message(self, thread_id: str, message_id: str, content: Content) -> Message:
        """
        Replace a message's content.

        The old vector leaves the index before this returns, so searches
        never match the previous content. A fresh embed job supersedes any
        job still running for the old content.

        Raises:
            ValueError: Empty content
            NotFound: Unknown thread or message
            Conflict: Thread is being deleted
        """
        content = validate_content(content)
        with self._mutating(thread_id, "update_message"):
            message = self._thread_store.update_message_content(thread_id, message_id, content)
            self._index.remove(message_id)
            self._queue.enqueue(
                message_id, thread_id, TASK_EMBED,
                metadata={"revision": message.revision},
            )
            self._summaries.schedule(thread_id)
        logger.info("Updated message %s (revision %d)", message_id, message.revision)
        self._notify()
        return message

    def delete_message(self, thread_id: str, message_id: str) -> Message:
        """
        Delete one message. Other messages keep their sequence numbers.

        Returns:
            The deleted message

        Raises:
            NotFound: Unknown thread or message
            Conflict: Thread is being deleted
        """
        with self._mutating(thread_id, "delete_message"):
            message = self._thread_store.delete_message(thread_id, message_id)
            self._index.remove(message_id)
            self._queue.remove(message_id, thread_id, TASK_EMBED)
            self._summaries.schedule(thread_id)
        logger.info("Deleted message %s from thread %s", message_id, thread_id)
        return message

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_thread(self, thread_id: str) -> Thread:
        """Raises NotFound for unknown or deleted threads."""
        return self._thread_store.get_thread(thread_id)

    def list_threads(
        self,
        filter: Optional[ThreadFilter] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Thread]:
        """Threads matching ``filter``, oldest first."""
        return self._thread_store.list_threads(filter, limit=limit, offset=offset)

    def count_threads(self, filter: Optional[ThreadFilter] = None) -> int:
        return self._thread_store.count_threads(filter)

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
        Messages of a thread in ascending sequence order.

        Args:
            start_seq: Lowest sequence number to include
            end_seq: Highest sequence number to include
            limit: Page size
            offset: Messages to skip

        Raises:
            NotFound: Unknown thread
            Corruption: Stored sequence numbers are inconsistent
        """
        try:
            return self._thread_store.get_messages(
                thread_id, start_seq=start_seq, end_seq=end_seq, limit=limit, offset=offset,
            )
        except Corruption as e:
            log_exception(e, f"get_messages {thread_id}", self._error_log)
            raise

    def get_message(self, thread_id: str, message_id: str) -> Message:
        return self._thread_store.get_message(thread_id, message_id)

    def count_messages(self, thread_id: str) -> int:
        self._thread_store.get_thread(thread_id)
        return self._thread_store.count_messages(thread_id)

    def get_summary(self, thread_id: str) -> SummaryView:
        """
        The thread's last current summary and whether it lags the thread.

        Never waits for a refresh in progress.

        Raises:
            NotFound: Unknown thread
        """
        thread = self._thread_store.get_thread(thread_id)
        summary = self._thread_store.get_current_summary(thread_id)
        return self._policy.view(thread, summary)

    def list_summary_versions(self, thread_id: str) -> list[Summary]:
        """All summary versions of a thread, oldest first."""
        self._thread_store.get_thread(thread_id)
        return self._thread_store.list_summaries(thread_id)

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def _resolve_scope(self, scope) -> SearchScope:
        scope = as_scope(scope)
        for thread_id in scope.thread_ids:
            self._thread_store.get_thread(thread_id)
        return scope

    def search_by_text(self, query: str, k: int = 10, scope=None) -> list[SearchResult]:
        """
        Messages most similar to ``query``, best first.

        Args:
            query: Free text
            k: Maximum number of results
            scope: A thread id, several thread ids, a SearchScope, or None
                for all threads

        Raises:
            ValueError: Empty query or k < 1
            NotFound: A scoped thread does not exist
            CapabilityUnavailable: The query could not be embedded
        """
        return self._search.search_by_text(query, k, self._resolve_scope(scope))

    def search_by_message(self, message_id: str, k: int = 10, scope=None) -> list[SearchResult]:
        """
        Messages similar to an existing one, excluding the message itself.

        Raises:
            NotFound: Unknown message or scoped thread
            EmbeddingNotReady: The message has not been embedded yet
        """
        return self._search.search_by_message(message_id, k, self._resolve_scope(scope))

    def search_threads(
        self,
        query: str,
        k: int = 10,
        thread_ids: Optional[Iterable[str]] = None,
    ) -> list[ThreadSearchResult]:
        """Threads ranked by their best matching message, with summaries."""
        if thread_ids:
            thread_ids = self._resolve_scope(thread_ids).thread_ids
        return self._search.search_threads(query, k, thread_ids)

    # -------------------------------------------------------------------------
    # Pending work
    # -------------------------------------------------------------------------

    def process_pending(self, limit: Optional[int] = None) -> dict:
        """
        Process a batch of pending embedding and summarization jobs.

        Args:
            limit: Maximum number of items (default: workers.batch_size)

        Returns:
            Dict with: processed, embedded, summarized, skipped, failed,
            abandoned, released (ints) and errors (list of strings). Items
            claimed after close() began are released back to the queue.
        """
        self._summaries.sweep()
        items = self._queue.dequeue(limit=limit or self._config.workers.batch_size)
        result = {
            "processed": 0, "embedded": 0, "summarized": 0, "skipped": 0,
            "failed": 0, "abandoned": 0, "released": 0, "errors": [],
        }

        for item in items:
            if self._closing.is_set():
                self._queue.release(item)
                result["released"] += 1
                continue
            logger.debug("Processing %s %s (attempt %d)", item.task_type, item.id, item.attempts)
            try:
                if item.task_type == TASK_EMBED:
                    outcome = self._process_embed(item)
                elif item.task_type == TASK_SUMMARIZE:
                    outcome = self._summaries.run(item)
                else:
                    self._queue.abandon(item, f"unknown task type {item.task_type!r}")
                    outcome = JobResult("abandoned", f"unknown task type {item.task_type!r}")
            except Exception as e:
                error_msg = f"{type(e).__name__}: {e}"
                if isinstance(e, Corruption):
                    logger.error("Corruption while processing %s %s: %s", item.task_type, item.id, e)
                    log_exception(e, f"{item.task_type} {item.id}", self._error_log)
                outcome = self._fail_item(item, error_msg)

            if outcome.outcome in ("failed", "abandoned"):
                result[outcome.outcome] += 1
                result["errors"].append(f"{item.id}: {outcome.error}")
            else:
                result["processed"] += 1
                result[outcome.outcome] += 1

        return result

    def _fail_item(self, item: PendingItem, error: str) -> JobResult:
        """Retry or dead-letter a job that raised, honouring the attempt limits."""
        if item.task_type == TASK_SUMMARIZE:
            return self._summaries.fail(item, error)
        if item.attempts >= self._config.workers.embed_max_attempts:
            self._queue.abandon(item, error)
            return JobResult("abandoned", error)
        self._queue.fail(item, error)
        return JobResult("failed", error)

    def _process_batch(self) -> int:
        """One background-worker iteration; returns the number of items handled."""
        result = self.process_pending()
        return result["processed"] + result["failed"] + result["abandoned"]

    def drain(self, max_rounds: int = MAX_DRAIN_ROUNDS) -> dict:
        """
        Process pending work until nothing is ready.

        Items waiting out a retry backoff are left queued.

        Returns:
            Totals over all batches, in the process_pending() format
        """
        totals = {
            "processed": 0, "embedded": 0, "summarized": 0, "skipped": 0,
            "failed": 0, "abandoned": 0, "released": 0, "errors": [],
        }
        for _ in range(max_rounds):
            result = self.process_pending()
            for key, value in result.items():
                totals[key] += value
            if not (result["processed"] or result["failed"] or result["abandoned"]):
                break
        return totals

    def _process_embed(self, item: PendingItem) -> JobResult:
        """
        Embed the current content of one message.

        The vector is stored only if the message still has the revision that
        was read at job start; an update in between leaves a newer job queued.
        """
        thread_id = item.thread_id
        with self._locks.hold(thread_id):
            try:
                message = self._thread_store.get_message(thread_id, item.id)
            except NotFound:
                self._queue.complete(item)
                return JobResult("skipped")
            if message.embedding_status == EMBEDDING_READY and message.id in self._index:
                self._queue.complete(item)
                return JobResult("skipped")

        try:
            vector = self._embed(message.text)
        except (CapabilityUnavailable, DimensionMismatch) as e:
            return self._record_embed_failure(item, message, str(e))
        model = embedding_model_name(self._embedding_provider)

        with self._locks.hold(thread_id):
            if not self._thread_store.put_embedding(message.id, message.revision, model, vector):
                # Edited or deleted while embedding
                self._queue.complete(item)
                return JobResult("skipped")
            try:
                self._index.upsert(message.id, thread_id, vector, seq=message.seq)
            except (DimensionMismatch, ValueError) as e:
                self._thread_store.reset_embedding(message.id)
                return self._record_embed_failure(item, message, str(e))
            self._queue.complete(item)
        logger.debug("Embedded message %s (revision %d)", message.id, message.revision)
        return JobResult("embedded")

    def _embed(self, content: str) -> list[float]:
        try:
            provider = self._get_embedding_provider()
        except (RuntimeError, ValueError) as e:
            raise CapabilityUnavailable("embedding", str(e)) from e
        vector = call_with_timeout(
            "embedding", provider.embed, content,
            timeout=self._config.workers.embed_timeout,
        )
        vector = [float(x) for x in vector]
        if not all(math.isfinite(x) for x in vector):
            raise CapabilityUnavailable("embedding", "provider returned NaN or infinite values")
        expected = self._index.dimension
        if expected is not None and len(vector) != expected:
            raise DimensionMismatch(expected, len(vector))
        return vector

    def _record_embed_failure(self, item: PendingItem, message: Message, error: str) -> JobResult:
        with self._locks.hold(item.thread_id):
            if item.attempts >= self._config.workers.embed_max_attempts:
                self._thread_store.mark_embedding_failed(message.id, message.revision)
                self._queue.abandon(item, error)
                logger.warning(
                    "Embedding of message %s failed after %d attempts: %s",
                    message.id, item.attempts, error,
                )
                return JobResult("abandoned", error)
            self._queue.fail(item, error)
            return JobResult("failed", error)

    def pending_stats(self) -> dict:
        """Queue counts by status and task type."""
        return self._queue.stats()

    def list_failed(self) -> list[dict]:
        """Jobs that exhausted their retries (dead letter)."""
        return self._queue.list_failed()

    def retry_failed(self) -> int:
        """
        Move dead-lettered jobs back to pending with fresh attempt counts.

        Returns:
            Number of jobs requeued
        """
        items = self._queue.retry_failed()
        for entry in items:
            thread_id = entry["thread_id"]
            try:
                with self._locks.hold(thread_id):
                    if entry["task_type"] == TASK_EMBED:
                        message = self._thread_store.get_message(thread_id, entry["id"])
                        if message.embedding_status == EMBEDDING_FAILED:
                            self._thread_store.reset_embedding(message.id)
                    elif entry["task_type"] == TASK_SUMMARIZE:
                        self._thread_store.set_summary_status(
                            thread_id, SUMMARY_STALE, expected=[SUMMARY_FAILED],
                        )
            except NotFound:
                self._queue.remove(entry["id"], thread_id, entry["task_type"])
        self._notify()
        return len(items)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def verify_thread(self, thread_id: str) -> dict:
        """
        Check a thread's invariants and its coverage in the embedding index.

        Returns:
            Report dict; ``index_missing`` lists ready messages absent from
            the index, ``unqueued`` lists pending messages with no embed job

        Raises:
            NotFound: Unknown thread
            Corruption: Stored state violates an invariant
        """
        try:
            report = self._thread_store.verify_thread(thread_id)
            messages = self._thread_store.get_messages(thread_id)
        except Corruption as e:
            log_exception(e, f"verify {thread_id}", self._error_log)
            raise
        report["index_missing"] = [
            m.id for m in messages
            if m.embedding_status == EMBEDDING_READY and m.id not in self._index
        ]
        report["unqueued"] = [
            m.id for m in messages
            if m.embedding_status == EMBEDDING_PENDING
            and self._queue.get_status(m.id, TASK_EMBED) is None
        ]
        report["summary_status"] = self._thread_store.get_thread(thread_id).summary_status
        return report

    def stats(self) -> dict:
        """Store, index and queue statistics."""
        return {
            "store_path": str(self._store_path),
            "store": self._thread_store.stats(),
            "index": self._index.stats(),
            "queue": self._queue.stats(),
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Stop the worker, then close the stores and the ops log."""
        closing = getattr(self, "_closing", None)
        if closing is not None:
            closing.set()
        worker = getattr(self, "_worker", None)
        if worker is not None:
            worker.stop()
            self._worker = None

        if getattr(self, "_thread_store", None) is not None:
            self._thread_store.close()
        if getattr(self, "_queue", None) is not None:
            self._queue.close()

        if getattr(self, "_ops_log_handler", None) is not None:
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass  # Suppress errors during garbage collection
