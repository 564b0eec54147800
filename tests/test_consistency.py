"""
Tests for concurrency control: per-thread locks, bounded provider calls,
and the interleavings between mutations and background jobs.
"""

import threading

import numpy as np
import pytest

from threadkeep.consistency import ThreadLocks, call_with_timeout
from threadkeep.errors import CapabilityUnavailable, Conflict

from tests.conftest import BlockingEmbeddingProvider, BlockingSummarizationProvider


class TestThreadLocks:
    """Per-thread lock registry."""

    def test_same_thread_same_lock(self):
        """One lock per thread id, created on first use."""
        locks = ThreadLocks()
        assert locks.get("a") is locks.get("a")
        assert locks.get("a") is not locks.get("b")
        assert len(locks) == 2
        locks.discard("a")
        assert len(locks) == 1

    def test_reentrant(self):
        """A holder can take its own lock again."""
        locks = ThreadLocks()
        with locks.hold("a"):
            with locks.hold("a", timeout=0.1):
                pass

    def test_timeout_raises_conflict(self):
        """Waiting past the timeout on a held lock raises Conflict."""
        locks = ThreadLocks()
        held = threading.Event()
        done = threading.Event()

        def holder():
            with locks.hold("a"):
                held.set()
                done.wait(5)

        t = threading.Thread(target=holder)
        t.start()
        try:
            assert held.wait(5)
            with pytest.raises(Conflict):
                with locks.hold("a", timeout=0.05):
                    pass
            # Other threads are not affected
            with locks.hold("b", timeout=0.05):
                pass
        finally:
            done.set()
            t.join()


class TestCallWithTimeout:
    """Bounded provider calls."""

    def test_returns_result(self):
        """A prompt call returns its value."""
        assert call_with_timeout("embedding", lambda x, y=0: x + y, 1, y=2, timeout=5) == 3

    def test_timeout(self):
        """A call past its deadline raises CapabilityUnavailable."""
        release = threading.Event()
        try:
            with pytest.raises(CapabilityUnavailable) as exc:
                call_with_timeout("embedding", release.wait, 5, timeout=0.05)
            assert exc.value.capability == "embedding"
            assert "timed out" in str(exc.value)
        finally:
            release.set()

    def test_provider_error(self):
        """Provider exceptions are wrapped with their cause."""
        def boom():
            raise ConnectionError("refused")

        with pytest.raises(CapabilityUnavailable) as exc:
            call_with_timeout("summarization", boom, timeout=5)
        assert exc.value.capability == "summarization"
        assert isinstance(exc.value.__cause__, ConnectionError)


@pytest.mark.slow
class TestInterleavings:
    """Mutations racing with background jobs."""

    def test_edit_during_embedding_keeps_new_revision(self, keeper, mock_providers):
        """A vector computed for old content is discarded; the edit wins."""
        provider = BlockingEmbeddingProvider()
        mock_providers["registry"].create_embedding.return_value = provider

        thread = keeper.create_thread()
        message = keeper.add_message(thread.id, "user", "cats are great")

        runner = threading.Thread(target=keeper.drain)
        runner.start()
        try:
            assert provider.started.wait(5)
            # The embed job does not hold the thread lock while the model runs
            keeper.update_message(thread.id, message.id, "refund my payment")
        finally:
            provider.release.set()
            runner.join(10)

        keeper.drain()
        assert provider.texts == ["cats are great", "refund my payment"]

        stored = keeper._thread_store.get_embedding(message.id)
        assert stored.revision == 2
        expected = np.asarray(stored.vector) / np.linalg.norm(stored.vector)
        assert keeper._index.get_vector(message.id) == pytest.approx(expected.tolist(), rel=1e-5)
        top = keeper.search_by_text("invoice", k=1)[0]
        assert top.message_id == message.id
        assert top.score == pytest.approx(1.0, abs=0.05)

    def test_delete_during_embedding(self, keeper, mock_providers):
        """A message deleted mid-embed never reaches the index."""
        provider = BlockingEmbeddingProvider()
        mock_providers["registry"].create_embedding.return_value = provider

        thread = keeper.create_thread()
        message = keeper.add_message(thread.id, "user", "cats")

        runner = threading.Thread(target=keeper.drain)
        runner.start()
        try:
            assert provider.started.wait(5)
            keeper.delete_message(thread.id, message.id)
        finally:
            provider.release.set()
            runner.join(10)

        assert message.id not in keeper._index
        assert keeper.stats()["index"]["vectors"] == 0

    def test_thread_deleted_during_refresh(self, keeper, mock_providers):
        """A summary finished after its thread was deleted is dropped."""
        provider = BlockingSummarizationProvider()
        mock_providers["registry"].create_summarization.return_value = provider

        thread = keeper.create_thread()
        for i in range(3):
            keeper.add_message(thread.id, "user", f"m{i}")

        runner = threading.Thread(target=keeper.drain)
        runner.start()
        try:
            assert provider.started.wait(5)
            keeper.delete_thread(thread.id)
        finally:
            provider.release.set()
            runner.join(10)

        stats = keeper.stats()
        assert stats["store"]["threads"] == 0
        assert stats["store"]["summary_versions"] == 0
        assert stats["queue"]["total"] == 0

    def test_concurrent_appends_through_api(self, keeper):
        """Parallel writers to one thread get a dense, unique sequence."""
        thread = keeper.create_thread()
        errors = []

        def writer(n):
            try:
                for i in range(10):
                    keeper.add_message(thread.id, "user", f"writer {n} line {i}")
            except Exception as e:
                errors.append(e)

        workers = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for w in workers:
            w.start()
        for w in workers:
            w.join()

        assert not errors
        assert [m.seq for m in keeper.get_messages(thread.id)] == list(range(1, 41))

        keeper.drain()
        view = keeper.get_summary(thread.id)
        assert view.summary.watermark == 40
        assert keeper.verify_thread(thread.id)["index_missing"] == []

    def test_distinct_threads_do_not_block(self, keeper, mock_providers):
        """A held lock on one thread leaves others writable."""
        busy = keeper.create_thread()
        free = keeper.create_thread()
        with keeper._locks.hold(busy.id):
            result = {}

            def write():
                result["message"] = keeper.add_message(free.id, "user", "hello")

            t = threading.Thread(target=write)
            t.start()
            t.join(5)
            assert not t.is_alive()
        assert result["message"].seq == 1

    def test_search_during_writes(self, keeper):
        """Searches racing with writes and processing stay well-formed."""
        thread = keeper.create_thread()
        keeper.add_message(thread.id, "user", "cats")
        keeper.drain()

        stop = threading.Event()
        errors = []

        def searcher():
            try:
                while not stop.is_set():
                    results = keeper.search_by_text("feline", k=5)
                    ids = [r.message_id for r in results]
                    assert len(ids) == len(set(ids))
            except Exception as e:
                errors.append(e)

        readers = [threading.Thread(target=searcher) for _ in range(2)]
        for r in readers:
            r.start()
        try:
            for i in range(20):
                m = keeper.add_message(thread.id, "user", f"kitten number {i}")
                if i % 3 == 0:
                    keeper.update_message(thread.id, m.id, f"dog number {i}")
                keeper.process_pending()
        finally:
            stop.set()
            for r in readers:
                r.join(5)

        assert not errors
