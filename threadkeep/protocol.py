"""
Protocol definitions for ThreadKeeper's storage backends.

- ThreadStoreProtocol: durable threads, messages, vectors and summaries
  (SQLite locally)
- VectorIndexProtocol: in-memory similarity index derived from the store
- WorkQueueProtocol: pending embedding and summarization jobs
"""

from typing import Iterable, Iterator, Optional, Protocol, runtime_checkable

from .types import (
    Content,
    EmbeddingRecord,
    Message,
    SearchScope,
    Summary,
    Thread,
    ThreadFilter,
)
from .work_queue import PendingItem


@runtime_checkable
class ThreadStoreProtocol(Protocol):
    """
    Abstract thread store.

    Implemented by:
    - ThreadStore (local SQLite)
    """

    # -- Threads --

    def create_thread(self, metadata: Optional[dict[str, str]] = None) -> Thread: ...

    def get_thread(self, thread_id: str, *, include_deleting: bool = False) -> Thread: ...

    def list_threads(
        self,
        filter: Optional[ThreadFilter] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Thread]: ...

    def count_threads(self, filter: Optional[ThreadFilter] = None) -> int: ...

    def update_thread_metadata(
        self, thread_id: str, metadata: dict[str, Optional[str]]
    ) -> Thread: ...

    def mark_thread_deleting(self, thread_id: str) -> Thread: ...

    def purge_thread(self, thread_id: str) -> int: ...

    def list_deleting_threads(self) -> list[str]: ...

    def list_threads_by_summary_status(self, statuses: Iterable[str]) -> list[Thread]: ...

    # -- Messages --

    def add_message(self, thread_id: str, role: str, content: Content) -> Message: ...

    def update_message_content(
        self, thread_id: str, message_id: str, content: Content
    ) -> Message: ...

    def delete_message(self, thread_id: str, message_id: str) -> Message: ...

    def get_message(self, thread_id: str, message_id: str) -> Message: ...

    def find_message(self, message_id: str) -> Message: ...

    def get_messages(
        self,
        thread_id: str,
        *,
        start_seq: Optional[int] = None,
        end_seq: Optional[int] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Message]: ...

    def count_messages(self, thread_id: str) -> int: ...

    def get_messages_by_ids(self, message_ids: list[str]) -> dict[str, Message]: ...

    # -- Embeddings --

    def put_embedding(
        self, message_id: str, revision: int, model: str, vector: list[float]
    ) -> bool: ...

    def mark_embedding_failed(self, message_id: str, revision: int) -> bool: ...

    def reset_embedding(self, message_id: str) -> None: ...

    def get_embedding(self, message_id: str) -> Optional[EmbeddingRecord]: ...

    def iter_embeddings(self) -> Iterator[EmbeddingRecord]: ...

    def list_pending_embeddings(self) -> list[Message]: ...

    # -- Summaries --

    def put_summary(
        self, thread_id: str, text: str, watermark: int, *, status: str = ...
    ) -> Summary: ...

    def get_current_summary(self, thread_id: str) -> Optional[Summary]: ...

    def list_summaries(self, thread_id: str) -> list[Summary]: ...

    def set_summary_status(
        self, thread_id: str, status: str, *, expected: Optional[Iterable[str]] = None
    ) -> bool: ...

    # -- Maintenance --

    def verify_thread(self, thread_id: str) -> dict: ...

    def stats(self) -> dict: ...

    def close(self) -> None: ...


@runtime_checkable
class VectorIndexProtocol(Protocol):
    """
    Abstract similarity index.

    Implemented by:
    - VectorIndex (in-process numpy, inverted-file partitions)
    """

    @property
    def dimension(self) -> Optional[int]: ...

    def upsert(self, message_id: str, thread_id: str, vector, *, seq: int = 0) -> None: ...

    def remove(self, message_id: str) -> bool: ...

    def remove_thread(self, thread_id: str) -> int: ...

    def query(
        self,
        vector,
        k: int,
        scope: SearchScope = ...,
        *,
        nprobe: Optional[int] = None,
    ) -> list[tuple[str, float]]: ...

    def get_vector(self, message_id: str) -> Optional[list[float]]: ...

    def clear(self, *, dimension: Optional[int] = None) -> None: ...

    def stats(self) -> dict: ...

    def __len__(self) -> int: ...

    def __contains__(self, message_id: str) -> bool: ...


@runtime_checkable
class WorkQueueProtocol(Protocol):
    """
    Abstract pending work queue.

    Implemented by:
    - PendingWorkQueue (local SQLite)
    """

    def enqueue(
        self,
        id: str,
        thread_id: str,
        task_type: str,
        *,
        metadata: Optional[dict] = None,
        replace: bool = True,
    ) -> bool: ...

    def dequeue(
        self, limit: int = 10, task_types: Optional[Iterable[str]] = None
    ) -> list[PendingItem]: ...

    def complete(self, item: PendingItem) -> bool: ...

    def fail(self, item: PendingItem, error: Optional[str] = None) -> float: ...

    def abandon(self, item: PendingItem, error: Optional[str] = None) -> None: ...

    def release(self, item: PendingItem) -> None: ...

    def remove(self, id: str, thread_id: str, task_type: str) -> bool: ...

    def purge_thread(self, thread_id: str) -> int: ...

    def stats(self) -> dict: ...

    def list_failed(self) -> list[dict]: ...

    def retry_failed(self) -> list[dict]: ...

    def get_status(self, id: str, task_type: Optional[str] = None) -> Optional[dict]: ...

    def close(self) -> None: ...
