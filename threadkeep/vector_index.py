"""
In-process embedding index for message vectors.

Approximate nearest neighbour search with an inverted-file layout:

- Below ``train_threshold`` vectors everything lives in one partition and
  every query is exact.
- Past the threshold, k-means centroids split the space into partitions.
  A global query scans the ``nprobe`` partitions nearest to the query, so
  recall only grows as ``nprobe`` grows; ``nprobe >= partitions`` is exact.
- Thread-scoped queries scan the rows of those threads in every partition.

Entries are referenced by integer handles into an append-only arena of
immutable slots. Handles are never reused, so a reader holding an older
snapshot can never resolve a handle to a different message.

Writers serialize on a lock and publish a new immutable snapshot
(copy-on-write per partition). Queries read the current snapshot
reference and never take the lock.
"""

import logging
import math
import threading
from dataclasses import dataclass
from typing import NamedTuple, Optional

import numpy as np

from .errors import DimensionMismatch
from .types import GLOBAL, SearchScope

logger = logging.getLogger(__name__)

METRICS = ("cosine", "dot")
KMEANS_ITERATIONS = 12
KMEANS_SEED = 0
# Compact the arena when it holds this many times more slots than live rows
ARENA_COMPACT_RATIO = 4


class _Slot(NamedTuple):
    """Immutable arena entry."""
    message_id: str
    thread_id: str
    seq: int


@dataclass(frozen=True)
class _Partition:
    """Rows of one inverted list. Never mutated after publication."""
    handles: np.ndarray   # int64 arena handles
    threads: np.ndarray   # int64 thread ordinals
    seqs: np.ndarray      # int64 message sequence numbers
    vectors: np.ndarray   # float32 (n, dim)

    @classmethod
    def empty(cls, dimension: int) -> "_Partition":
        return cls(
            handles=np.empty(0, dtype=np.int64),
            threads=np.empty(0, dtype=np.int64),
            seqs=np.empty(0, dtype=np.int64),
            vectors=np.empty((0, dimension), dtype=np.float32),
        )

    def __len__(self) -> int:
        return int(self.handles.shape[0])

    def with_row(self, handle: int, thread: int, seq: int, vector: np.ndarray) -> "_Partition":
        return _Partition(
            handles=np.append(self.handles, np.int64(handle)),
            threads=np.append(self.threads, np.int64(thread)),
            seqs=np.append(self.seqs, np.int64(seq)),
            vectors=np.vstack([self.vectors, vector[np.newaxis, :]]),
        )

    def select(self, mask: np.ndarray) -> "_Partition":
        return _Partition(
            handles=self.handles[mask],
            threads=self.threads[mask],
            seqs=self.seqs[mask],
            vectors=self.vectors[mask],
        )


@dataclass(frozen=True)
class _Snapshot:
    dimension: Optional[int]
    centroids: Optional[np.ndarray]       # (nlist, dim) or None before training
    partitions: tuple[_Partition, ...]
    slots: list                           # arena; append-only for its lifetime


def _kmeans(data: np.ndarray, nlist: int, normalize: bool) -> np.ndarray:
    """Deterministic Lloyd's k-means (fixed seed, fixed iteration count)."""
    rng = np.random.default_rng(KMEANS_SEED)
    picks = np.sort(rng.choice(data.shape[0], size=nlist, replace=False))
    centroids = data[picks].astype(np.float32, copy=True)
    for _ in range(KMEANS_ITERATIONS):
        assign = _nearest_centroid(data, centroids)
        for c in range(nlist):
            members = data[assign == c]
            if len(members):
                centroids[c] = members.mean(axis=0)
        if normalize:
            centroids = _normalize_rows(centroids)
    return centroids


def _nearest_centroid(data: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    # argmin ||x - c||^2 == argmin (||c||^2 - 2 x.c)
    dist = (centroids * centroids).sum(axis=1)[np.newaxis, :] - 2.0 * (data @ centroids.T)
    return np.argmin(dist, axis=1)


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (matrix / norms).astype(np.float32)


class VectorIndex:
    """
    Shared approximate nearest neighbour index, partitionable by thread.

    Example:
        index = VectorIndex(dimension=384)
        index.upsert("m1", "t1", vector, seq=1)
        index.query(query_vector, k=5)                          # all threads
        index.query(query_vector, k=5, scope=SearchScope.thread("t1"))
    """

    def __init__(
        self,
        dimension: Optional[int] = None,
        *,
        metric: str = "cosine",
        train_threshold: int = 2048,
        nprobe: int = 8,
        max_partitions: int = 256,
    ):
        """
        Args:
            dimension: Vector dimension; adopted from the first upsert if None
            metric: "cosine" or "dot", fixed for the lifetime of the index
            train_threshold: Size at which partitioning starts
            nprobe: Default partitions scanned by global queries
            max_partitions: Upper bound on k-means partitions
        """
        if metric not in METRICS:
            raise ValueError(f"Unknown metric {metric!r}; expected one of {METRICS}")
        self.metric = metric
        self.train_threshold = max(1, train_threshold)
        self.nprobe = max(1, nprobe)
        self.max_partitions = max(1, max_partitions)

        self._dimension = dimension
        self._write_lock = threading.Lock()
        # Writer-side bookkeeping (only touched under _write_lock, except
        # _thread_ords and _vectors which readers may look up)
        self._locations: dict[str, tuple[int, int]] = {}   # message -> (handle, partition)
        self._by_thread: dict[str, set[str]] = {}
        self._thread_ords: dict[str, int] = {}
        self._vectors: dict[str, np.ndarray] = {}
        self._trained_size = 0
        self._snapshot = self._empty_snapshot()

    def _empty_snapshot(self) -> _Snapshot:
        return _Snapshot(
            dimension=self._dimension,
            centroids=None,
            partitions=(_Partition.empty(self._dimension or 0),),
            slots=[],
        )

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    # -------------------------------------------------------------------------
    # Vector preparation
    # -------------------------------------------------------------------------

    def _prepare(self, vector, dimension: Optional[int] = None, *, adopt: bool = False) -> np.ndarray:
        """Check and normalize a vector against ``dimension`` (default: the index's)."""
        v = np.asarray(vector, dtype=np.float32).reshape(-1)
        if adopt and self._dimension is None:
            self._dimension = int(v.shape[0])
            self._snapshot = self._empty_snapshot()
        expected = self._dimension if dimension is None else dimension
        if v.shape[0] != expected:
            raise DimensionMismatch(expected, int(v.shape[0]))
        if not np.all(np.isfinite(v)):
            raise ValueError("Vector contains NaN or infinite values")
        if self.metric == "cosine":
            norm = float(np.linalg.norm(v))
            if norm > 0:
                v = v / norm
        return v.astype(np.float32, copy=False)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def upsert(self, message_id: str, thread_id: str, vector, *, seq: int = 0) -> None:
        """
        Insert or replace the vector of a message.

        A replacement is published atomically: readers see either the old
        entry or the new one.

        Raises:
            DimensionMismatch: Vector has the wrong dimension
        """
        with self._write_lock:
            v = self._prepare(vector, adopt=True)
            snap = self._snapshot
            partitions = list(snap.partitions)

            previous = self._locations.get(message_id)
            if previous is not None:
                old_handle, old_part = previous
                partitions[old_part] = partitions[old_part].select(
                    partitions[old_part].handles != old_handle
                )
                old_thread = snap.slots[old_handle].thread_id
                if old_thread != thread_id:
                    self._by_thread.get(old_thread, set()).discard(message_id)

            handle = len(snap.slots)
            snap.slots.append(_Slot(message_id, thread_id, int(seq)))
            thread_ord = self._thread_ords.setdefault(thread_id, len(self._thread_ords))

            target = 0
            if snap.centroids is not None:
                target = int(_nearest_centroid(v[np.newaxis, :], snap.centroids)[0])
            partitions[target] = partitions[target].with_row(handle, thread_ord, int(seq), v)

            self._locations[message_id] = (handle, target)
            self._by_thread.setdefault(thread_id, set()).add(message_id)
            self._vectors[message_id] = v
            self._snapshot = _Snapshot(snap.dimension, snap.centroids, tuple(partitions), snap.slots)

            self._maybe_rebuild()

    def remove(self, message_id: str) -> bool:
        """
        Remove a message's vector.

        Returns:
            True if the message was indexed
        """
        with self._write_lock:
            location = self._locations.pop(message_id, None)
            if location is None:
                return False
            handle, part = location
            snap = self._snapshot
            partitions = list(snap.partitions)
            partitions[part] = partitions[part].select(partitions[part].handles != handle)
            thread_id = snap.slots[handle].thread_id
            self._by_thread.get(thread_id, set()).discard(message_id)
            self._vectors.pop(message_id, None)
            self._snapshot = _Snapshot(snap.dimension, snap.centroids, tuple(partitions), snap.slots)
            return True

    def remove_thread(self, thread_id: str) -> int:
        """
        Remove every vector of a thread in a single publication.

        Returns:
            Number of vectors removed
        """
        with self._write_lock:
            message_ids = self._by_thread.pop(thread_id, set())
            thread_ord = self._thread_ords.get(thread_id)
            if not message_ids or thread_ord is None:
                return 0
            snap = self._snapshot
            partitions = tuple(p.select(p.threads != thread_ord) for p in snap.partitions)
            for message_id in message_ids:
                self._locations.pop(message_id, None)
                self._vectors.pop(message_id, None)
            self._snapshot = _Snapshot(snap.dimension, snap.centroids, partitions, snap.slots)
            return len(message_ids)

    def clear(self, *, dimension: Optional[int] = None) -> None:
        """Drop everything; optionally switch to a new dimension."""
        with self._write_lock:
            self._dimension = dimension
            self._locations.clear()
            self._by_thread.clear()
            self._vectors.clear()
            self._trained_size = 0
            self._snapshot = self._empty_snapshot()

    def _maybe_rebuild(self) -> None:
        """Retrain when the index doubled since last training; compact a bloated arena."""
        live = len(self._locations)
        if live >= self.train_threshold and live >= 2 * self._trained_size:
            self._rebuild(train=True)
        elif len(self._snapshot.slots) > ARENA_COMPACT_RATIO * max(live, 1024):
            self._rebuild(train=False)

    def _rebuild(self, *, train: bool) -> None:
        """Re-partition (optionally retraining centroids) and compact the arena."""
        snap = self._snapshot
        rows = [p for p in snap.partitions if len(p)]
        if not rows:
            self._snapshot = self._empty_snapshot()
            return
        handles = np.concatenate([p.handles for p in rows])
        threads = np.concatenate([p.threads for p in rows])
        seqs = np.concatenate([p.seqs for p in rows])
        vectors = np.vstack([p.vectors for p in rows])

        # Stable order so training is reproducible for the same contents
        order = np.argsort(handles, kind="stable")
        handles, threads, seqs, vectors = handles[order], threads[order], seqs[order], vectors[order]

        centroids = snap.centroids
        if train:
            n = vectors.shape[0]
            nlist = min(self.max_partitions, max(1, int(math.sqrt(n))))
            centroids = _kmeans(vectors, nlist, normalize=self.metric == "cosine")
            self._trained_size = n
            logger.info("Trained embedding index: %d vectors in %d partitions", n, nlist)

        slots = [snap.slots[int(h)] for h in handles]
        new_handles = np.arange(len(slots), dtype=np.int64)
        if centroids is None:
            assign = np.zeros(len(slots), dtype=np.int64)
            nparts = 1
        else:
            assign = _nearest_centroid(vectors, centroids)
            nparts = centroids.shape[0]

        partitions = []
        for c in range(nparts):
            mask = assign == c
            partitions.append(_Partition(
                handles=new_handles[mask],
                threads=threads[mask],
                seqs=seqs[mask],
                vectors=vectors[mask],
            ))
        for handle, (slot, part) in enumerate(zip(slots, assign)):
            self._locations[slot.message_id] = (handle, int(part))

        self._snapshot = _Snapshot(snap.dimension, centroids, tuple(partitions), slots)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def query(
        self,
        vector,
        k: int,
        scope: SearchScope = GLOBAL,
        *,
        nprobe: Optional[int] = None,
    ) -> list[tuple[str, float]]:
        """
        Find the k most similar messages.

        Ranking is deterministic for the same index state and query:
        score descending, then higher sequence number, then older handle.

        Args:
            vector: Query vector
            k: Maximum number of results
            scope: One thread, several threads, or GLOBAL
            nprobe: Partitions scanned for global queries (default: self.nprobe)

        Returns:
            List of (message_id, score), best first

        Raises:
            DimensionMismatch: Query vector has the wrong dimension
        """
        if k <= 0:
            return []
        # Everything below reads this one snapshot, including its dimension
        snap = self._snapshot
        if snap.dimension is None:
            return []
        q = self._prepare(vector, snap.dimension)

        thread_ords = None
        if scope.is_global:
            partitions = self._nearest_partitions(snap, q, nprobe or self.nprobe)
        else:
            ords = [self._thread_ords[t] for t in scope.thread_ids if t in self._thread_ords]
            if not ords:
                return []
            thread_ords = np.asarray(ords, dtype=np.int64)
            partitions = snap.partitions

        score_parts, seq_parts, handle_parts = [], [], []
        for part in partitions:
            if not len(part):
                continue
            if thread_ords is not None:
                mask = np.isin(part.threads, thread_ords)
                if not mask.any():
                    continue
                part = part.select(mask)
            score_parts.append(part.vectors @ q)
            seq_parts.append(part.seqs)
            handle_parts.append(part.handles)

        if not score_parts:
            return []
        scores = np.concatenate(score_parts)
        seqs = np.concatenate(seq_parts)
        handles = np.concatenate(handle_parts)

        if scores.shape[0] > k:
            # Keep everything tied with the k-th score so tie-breaking stays exact
            kth = np.partition(scores, scores.shape[0] - k)[scores.shape[0] - k]
            keep = scores >= kth
            scores, seqs, handles = scores[keep], seqs[keep], handles[keep]

        order = np.lexsort((handles, -seqs, -scores))[:k]
        return [
            (snap.slots[int(handles[i])].message_id, float(scores[i]))
            for i in order
        ]

    def _nearest_partitions(self, snap: _Snapshot, q: np.ndarray, nprobe: int) -> tuple[_Partition, ...]:
        if snap.centroids is None or nprobe >= len(snap.partitions):
            return snap.partitions
        dist = (snap.centroids * snap.centroids).sum(axis=1) - 2.0 * (snap.centroids @ q)
        nearest = np.argsort(dist, kind="stable")[:nprobe]
        return tuple(snap.partitions[int(i)] for i in nearest)

    def get_vector(self, message_id: str) -> Optional[list[float]]:
        """The indexed (normalized, for cosine) vector of a message."""
        v = self._vectors.get(message_id)
        return None if v is None else v.tolist()

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._vectors

    def __len__(self) -> int:
        return sum(len(p) for p in self._snapshot.partitions)

    def stats(self) -> dict:
        snap = self._snapshot
        return {
            "vectors": len(self),
            "dimension": self._dimension,
            "metric": self.metric,
            "partitions": len(snap.partitions),
            "trained": snap.centroids is not None,
            "arena_slots": len(snap.slots),
            "threads": sum(1 for ids in self._by_thread.values() if ids),
        }
