"""Tests for the in-process embedding index."""

import threading

import numpy as np
import pytest

from threadkeep.errors import DimensionMismatch
from threadkeep.types import SearchScope
from threadkeep.vector_index import VectorIndex


class TestBasics:
    """Upsert, query and removal."""

    def test_dimension_adopted_from_first_upsert(self):
        """An index without a dimension takes the first vector's."""
        index = VectorIndex()
        assert index.dimension is None
        index.upsert("m1", "t1", [1.0, 0.0, 0.0])
        assert index.dimension == 3
        assert len(index) == 1
        assert "m1" in index

    def test_dimension_mismatch_rejected(self):
        """Vectors of another dimension are rejected on write and query."""
        index = VectorIndex(dimension=3)
        with pytest.raises(DimensionMismatch) as exc:
            index.upsert("m1", "t1", [1.0, 0.0])
        assert exc.value.expected == 3
        assert exc.value.actual == 2

        index.upsert("m1", "t1", [1.0, 0.0, 0.0])
        with pytest.raises(DimensionMismatch):
            index.query([1.0, 0.0], k=1)

    def test_query_ranks_by_cosine(self):
        """Nearest vectors come first with cosine scores."""
        index = VectorIndex()
        index.upsert("close", "t1", [1.0, 0.1])
        index.upsert("far", "t1", [0.0, 1.0])
        index.upsert("middle", "t2", [1.0, 1.0])

        results = index.query([1.0, 0.0], k=3)
        assert [mid for mid, _ in results] == ["close", "middle", "far"]
        assert results[0][1] == pytest.approx(1.0 / np.sqrt(1.01), rel=1e-5)
        assert results[2][1] == pytest.approx(0.0, abs=1e-6)

    def test_k_limits_results(self):
        """At most k results are returned."""
        index = VectorIndex()
        for i in range(10):
            index.upsert(f"m{i}", "t1", [1.0, i / 10])
        assert len(index.query([1.0, 0.0], k=4)) == 4
        assert index.query([1.0, 0.0], k=0) == []

    def test_empty_index_query(self):
        """Querying an empty index returns nothing."""
        assert VectorIndex().query([1.0, 0.0], k=5) == []

    def test_upsert_replaces(self):
        """Re-upserting a message replaces its vector."""
        index = VectorIndex()
        index.upsert("m1", "t1", [1.0, 0.0])
        index.upsert("m1", "t1", [0.0, 1.0])
        assert len(index) == 1
        results = index.query([0.0, 1.0], k=1)
        assert results[0][0] == "m1"
        assert results[0][1] == pytest.approx(1.0)

    def test_remove(self):
        """Removed messages never appear in results."""
        index = VectorIndex()
        index.upsert("m1", "t1", [1.0, 0.0])
        index.upsert("m2", "t1", [0.9, 0.1])
        assert index.remove("m1")
        assert not index.remove("m1")
        assert [mid for mid, _ in index.query([1.0, 0.0], k=5)] == ["m2"]
        assert index.get_vector("m1") is None

    def test_remove_thread(self):
        """All vectors of a thread go at once."""
        index = VectorIndex()
        index.upsert("a1", "ta", [1.0, 0.0])
        index.upsert("a2", "ta", [0.8, 0.2])
        index.upsert("b1", "tb", [0.9, 0.1])
        assert index.remove_thread("ta") == 2
        assert [mid for mid, _ in index.query([1.0, 0.0], k=5)] == ["b1"]
        assert index.remove_thread("ta") == 0

    def test_clear_with_new_dimension(self):
        """Clearing can switch the index to a new dimension."""
        index = VectorIndex()
        index.upsert("m1", "t1", [1.0, 0.0])
        index.clear(dimension=4)
        assert len(index) == 0
        assert index.dimension == 4
        index.upsert("m1", "t1", [1.0, 0.0, 0.0, 0.0])
        assert len(index) == 1

    def test_dot_metric_keeps_magnitude(self):
        """Dot-product scores are not normalized."""
        index = VectorIndex(metric="dot")
        index.upsert("big", "t1", [3.0, 0.0])
        index.upsert("small", "t1", [1.0, 0.0])
        results = index.query([1.0, 0.0], k=2)
        assert results[0] == ("big", pytest.approx(3.0))

    def test_unknown_metric(self):
        """Only cosine and dot are supported."""
        with pytest.raises(ValueError):
            VectorIndex(metric="l1")


class TestScopeAndTies:
    """Thread scoping and deterministic ordering."""

    def test_thread_scope(self):
        """Scoped queries only see the chosen threads."""
        index = VectorIndex()
        index.upsert("a1", "ta", [1.0, 0.0])
        index.upsert("b1", "tb", [1.0, 0.0])
        index.upsert("c1", "tc", [1.0, 0.0])

        only_b = index.query([1.0, 0.0], k=5, scope=SearchScope.thread("tb"))
        assert [mid for mid, _ in only_b] == ["b1"]

        a_and_c = index.query([1.0, 0.0], k=5, scope=SearchScope.threads(["ta", "tc"]))
        assert sorted(mid for mid, _ in a_and_c) == ["a1", "c1"]

        assert index.query([1.0, 0.0], k=5, scope=SearchScope.thread("unknown")) == []

    def test_ties_prefer_higher_sequence(self):
        """Equal scores rank the more recent message first."""
        index = VectorIndex()
        index.upsert("old", "t1", [1.0, 0.0], seq=1)
        index.upsert("new", "t1", [1.0, 0.0], seq=5)
        index.upsert("mid", "t2", [1.0, 0.0], seq=3)
        assert [mid for mid, _ in index.query([1.0, 0.0], k=3)] == ["new", "mid", "old"]

    def test_ties_at_the_cutoff_are_exact(self):
        """Truncation to k keeps the tie-break order."""
        index = VectorIndex()
        for seq in range(1, 11):
            index.upsert(f"m{seq}", "t1", [1.0, 0.0], seq=seq)
        assert [mid for mid, _ in index.query([1.0, 0.0], k=3)] == ["m10", "m9", "m8"]

    def test_repeated_queries_are_deterministic(self):
        """Same state and query give the same answer."""
        rng = np.random.default_rng(7)
        index = VectorIndex()
        for i in range(200):
            index.upsert(f"m{i}", f"t{i % 5}", rng.normal(size=8).tolist(), seq=i)
        q = rng.normal(size=8).tolist()
        assert index.query(q, k=10) == index.query(q, k=10)


class TestPartitioning:
    """Inverted-file behaviour past the training threshold."""

    def _filled(self, n=600, dim=16, **kwargs):
        rng = np.random.default_rng(0)
        index = VectorIndex(train_threshold=256, max_partitions=16, **kwargs)
        data = rng.normal(size=(n, dim)).astype(np.float32)
        for i, v in enumerate(data):
            index.upsert(f"m{i}", f"t{i % 7}", v.tolist(), seq=i)
        return index, data, rng

    def test_training_creates_partitions(self):
        """Crossing the threshold trains centroids."""
        index, _, _ = self._filled()
        stats = index.stats()
        assert stats["trained"]
        assert stats["partitions"] > 1
        assert stats["vectors"] == 600

    def test_scanning_every_partition_is_exact(self):
        """Probing every partition matches brute force."""
        index, data, rng = self._filled()
        q = rng.normal(size=16)
        normed = data / np.linalg.norm(data, axis=1, keepdims=True)
        expected = np.argsort(-(normed @ (q / np.linalg.norm(q))))[:10]

        results = index.query(q.tolist(), k=10, nprobe=1000)
        assert {mid for mid, _ in results} == {f"m{i}" for i in expected}
        assert results[0][0] == f"m{expected[0]}"

    def test_recall_grows_with_nprobe(self):
        """Probing more partitions never finds fewer true neighbours."""
        index, data, rng = self._filled()
        q = rng.normal(size=16)
        exact = {mid for mid, _ in index.query(q.tolist(), k=20, nprobe=1000)}

        previous = 0
        for nprobe in (1, 2, 4, 8, 16):
            found = {mid for mid, _ in index.query(q.tolist(), k=20, nprobe=nprobe)}
            recall = len(found & exact)
            assert recall >= previous
            previous = recall
        assert previous == 20

    def test_scoped_query_is_exact_when_partitioned(self):
        """Thread-scoped queries scan every partition."""
        index, data, rng = self._filled()
        q = rng.normal(size=16)
        rows = [i for i in range(600) if i % 7 == 3]
        normed = data[rows] / np.linalg.norm(data[rows], axis=1, keepdims=True)
        order = np.argsort(-(normed @ (q / np.linalg.norm(q))))[:5]

        results = index.query(q.tolist(), k=5, scope=SearchScope.thread("t3"))
        assert {mid for mid, _ in results} == {f"m{rows[i]}" for i in order}

    def test_removals_survive_retraining(self):
        """Removed vectors stay gone after the index retrains."""
        index, _, rng = self._filled(n=300)
        for i in range(0, 300, 2):
            index.remove(f"m{i}")
        extra = rng.normal(size=(400, 16))
        for j, v in enumerate(extra):
            index.upsert(f"x{j}", "tx", v.tolist(), seq=1000 + j)

        ids = {mid for mid, _ in index.query(extra[0].tolist(), k=700, nprobe=1000)}
        assert not any(f"m{i}" in ids for i in range(0, 300, 2))
        assert len(index) == 150 + 400


class TestConcurrentReaders:
    """Readers never block on writers and never see torn entries."""

    def test_queries_during_writes(self):
        """Queries racing with upserts and removals return live, well-formed results."""
        index = VectorIndex(train_threshold=128, max_partitions=8)
        rng = np.random.default_rng(1)
        for i in range(100):
            index.upsert(f"m{i}", "t1", rng.normal(size=8).tolist(), seq=i)

        stop = threading.Event()
        errors = []

        def writer():
            local = np.random.default_rng(2)
            i = 100
            while not stop.is_set() and i < 600:
                index.upsert(f"m{i}", f"t{i % 3}", local.normal(size=8).tolist(), seq=i)
                index.remove(f"m{i - 50}")
                i += 1

        def reader():
            local = np.random.default_rng(3)
            try:
                while not stop.is_set():
                    results = index.query(local.normal(size=8).tolist(), k=10)
                    ids = [mid for mid, _ in results]
                    assert len(ids) == len(set(ids))
                    scores = [s for _, s in results]
                    assert scores == sorted(scores, reverse=True)
            except AssertionError as e:
                errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(3)]
        w = threading.Thread(target=writer)
        for t in threads:
            t.start()
        w.start()
        w.join(30)
        stop.set()
        for t in threads:
            t.join(5)

        assert not errors

    def test_query_reads_one_dimension(self, monkeypatch):
        """A clear to a new dimension mid-query leaves the query on its snapshot."""
        index = VectorIndex()
        index.upsert("m1", "t1", [1.0, 0.0, 0.0, 0.0])
        original = index._prepare

        def prepare_after_clear(vector, dimension=None, **kwargs):
            index.clear(dimension=6)
            return original(vector, dimension, **kwargs)

        monkeypatch.setattr(index, "_prepare", prepare_after_clear)
        results = index.query([1.0, 0.0, 0.0, 0.0], k=1)
        assert [mid for mid, _ in results] == ["m1"]
        assert index.dimension == 6

    def test_stale_dimension_query_is_a_mismatch(self, monkeypatch):
        """A query shaped for the new dimension against the old snapshot raises DimensionMismatch."""
        index = VectorIndex()
        index.upsert("m1", "t1", [1.0, 0.0, 0.0, 0.0])
        original = index._prepare

        def prepare_after_clear(vector, dimension=None, **kwargs):
            index.clear(dimension=6)
            return original(vector, dimension, **kwargs)

        monkeypatch.setattr(index, "_prepare", prepare_after_clear)
        with pytest.raises(DimensionMismatch) as exc:
            index.query([1.0] * 6, k=1)
        assert exc.value.expected == 4
