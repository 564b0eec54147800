"""
Similarity search over thread messages.

Queries go to the embedding index, then hits are hydrated from the
thread store. Hydration drops anything the index still held a moment ago
but the store no longer backs: deleted messages, messages of deleted
threads, and messages whose content changed since they were embedded.
"""

import logging
from typing import Callable, Iterable, Optional

from .consistency import call_with_timeout
from .errors import CapabilityUnavailable, EmbeddingNotReady
from .types import (
    EMBEDDING_READY,
    SearchResult,
    SearchScope,
    ThreadSearchResult,
    as_scope,
    snippet,
)

logger = logging.getLogger(__name__)

# How many message hits to gather per requested thread in search_threads
THREAD_FANOUT = 5
MAX_REFETCH_ROUNDS = 4


def _check_k(k: int) -> None:
    if not isinstance(k, int) or isinstance(k, bool) or k < 1:
        raise ValueError(f"k must be a positive integer, got {k!r}")


class SearchCoordinator:
    """
    Answers top-K similarity queries and hydrates the results.

    Args:
        store: Thread store used for hydration
        index: Embedding index
        get_embedder: Returns the embedding provider (created lazily)
        snippet_chars: Maximum snippet length
        min_score: Drop hits scoring below this (None keeps everything)
        query_timeout: Deadline for embedding the query text
    """

    def __init__(
        self,
        store,
        index,
        get_embedder: Callable,
        *,
        snippet_chars: int = 200,
        min_score: Optional[float] = None,
        query_timeout: float = 15.0,
    ):
        self._store = store
        self._index = index
        self._get_embedder = get_embedder
        self.snippet_chars = snippet_chars
        self.min_score = min_score
        self.query_timeout = query_timeout

    def embed_query(self, text: str) -> list[float]:
        """Embed query text, preferring the provider's query-side encoder."""
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Query text must be non-empty")
        try:
            provider = self._get_embedder()
        except (RuntimeError, ValueError) as e:
            raise CapabilityUnavailable("embedding", str(e)) from e
        embed = getattr(provider, "embed_query", None) or provider.embed
        return call_with_timeout("embedding", embed, text, timeout=self.query_timeout)

    def search_by_text(self, query: str, k: int = 10, scope=None) -> list[SearchResult]:
        """
        Top-k messages most similar to ``query``.

        Args:
            query: Free text
            k: Maximum number of results
            scope: SearchScope, a thread id, several thread ids, or None for all

        Raises:
            CapabilityUnavailable: Query could not be embedded in time
            DimensionMismatch: Provider dimension differs from the index
        """
        _check_k(k)
        vector = self.embed_query(query)
        return self._search(vector, k, as_scope(scope))

    def search_by_message(self, message_id: str, k: int = 10, scope=None) -> list[SearchResult]:
        """
        Top-k messages similar to an existing message, excluding itself.

        Raises:
            NotFound: Unknown message
            EmbeddingNotReady: The message has no current embedding yet
        """
        _check_k(k)
        message = self._store.find_message(message_id)
        vector = self._index.get_vector(message_id)
        if vector is None or message.embedding_status != EMBEDDING_READY:
            raise EmbeddingNotReady(
                f"Message {message_id} has no ready embedding (status: {message.embedding_status})"
            )
        return self._search(vector, k, as_scope(scope), exclude=message_id)

    def search_threads(
        self,
        query: str,
        k: int = 10,
        thread_ids: Optional[Iterable[str]] = None,
    ) -> list[ThreadSearchResult]:
        """
        Rank threads by their best matching message.

        Each result carries the thread's current summary text.
        """
        _check_k(k)
        scope = SearchScope.threads(thread_ids) if thread_ids else SearchScope()
        vector = self.embed_query(query)
        hits = self._search(vector, k * THREAD_FANOUT, scope)

        by_thread: dict[str, ThreadSearchResult] = {}
        for hit in hits:
            found = by_thread.get(hit.thread_id)
            if found is None:
                by_thread[hit.thread_id] = ThreadSearchResult(
                    thread_id=hit.thread_id, score=hit.score, best_message=hit,
                )
            else:
                by_thread[hit.thread_id] = ThreadSearchResult(
                    thread_id=found.thread_id,
                    score=found.score,
                    best_message=found.best_message,
                    hits=found.hits + 1,
                )

        # Hits arrive best first, so insertion order is already the ranking
        ranked = list(by_thread.values())[:k]
        results = []
        for result in ranked:
            summary = self._store.get_current_summary(result.thread_id)
            results.append(ThreadSearchResult(
                thread_id=result.thread_id,
                score=result.score,
                best_message=result.best_message,
                summary=summary.text if summary else None,
                hits=result.hits,
            ))
        return results

    def _search(
        self,
        vector,
        k: int,
        scope: SearchScope,
        *,
        exclude: Optional[str] = None,
    ) -> list[SearchResult]:
        """Query the index, over-fetching to cover hits dropped in hydration."""
        fetch = k + (1 if exclude else 0)
        results: list[SearchResult] = []
        for _ in range(MAX_REFETCH_ROUNDS):
            hits = self._index.query(vector, fetch, scope)
            results = self._hydrate(hits, exclude)
            if len(results) >= k or len(hits) < fetch:
                break
            fetch *= 2
        return results[:k]

    def _hydrate(self, hits: list[tuple[str, float]], exclude: Optional[str]) -> list[SearchResult]:
        ids = [mid for mid, _ in hits if mid != exclude]
        messages = self._store.get_messages_by_ids(ids)
        results = []
        for message_id, score in hits:
            if message_id == exclude:
                continue
            if self.min_score is not None and score < self.min_score:
                continue
            message = messages.get(message_id)
            if message is None or message.embedding_status != EMBEDDING_READY:
                continue
            results.append(SearchResult(
                message_id=message.id,
                thread_id=message.thread_id,
                role=message.role,
                seq=message.seq,
                snippet=snippet(message.text, self.snippet_chars),
                score=score,
            ))
        return results
