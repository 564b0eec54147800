"""Tests for the rolling summary policy and refresh pipeline."""

import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from threadkeep.summaries import SummaryPolicy
from threadkeep.types import (
    SUMMARY_CURRENT,
    SUMMARY_FAILED,
    SUMMARY_NONE,
    SUMMARY_REFRESHING,
    SUMMARY_STALE,
    Summary,
    Thread,
    utc_now,
)

from tests.conftest import BlockingSummarizationProvider, MockSummarizationProvider


def _thread(last_seq, status=SUMMARY_NONE, created_at=None):
    return Thread(
        id="t1",
        created_at=created_at or utc_now(),
        last_seq=last_seq,
        summary_status=status,
    )


def _summary(watermark, generated_at=None):
    return Summary(
        thread_id="t1", version=1, text="old", watermark=watermark,
        generated_at=generated_at or utc_now(),
    )


class FlakySummarizationProvider(MockSummarizationProvider):
    """Fails while ``failing`` is set."""

    def __init__(self):
        super().__init__()
        self.failing = True

    def summarize(self, messages, *, previous=None):
        if self.failing:
            self.calls.append((list(messages), previous))
            raise RuntimeError("model overloaded")
        return super().summarize(messages, previous=previous)


class TestSummaryPolicy:
    """Trigger decisions without a store."""

    def test_threshold_trigger(self):
        """Reaching the threshold of new messages fires a refresh."""
        policy = SummaryPolicy(threshold=3)
        assert not policy.evaluate(_thread(2), None).enqueue

        decision = policy.evaluate(_thread(5, SUMMARY_CURRENT), _summary(2))
        assert decision.enqueue
        assert decision.trigger == "threshold"
        assert decision.pending_count == 3

    def test_refreshing_thread_not_reenqueued(self):
        """A refresh in progress re-evaluates on completion instead."""
        policy = SummaryPolicy(threshold=1)
        decision = policy.evaluate(_thread(9, SUMMARY_REFRESHING), _summary(2))
        assert not decision.enqueue
        assert decision.pending_count == 7

    def test_failed_thread_leaves_dead_letter(self):
        """New messages after a failed refresh reset the attempt count."""
        policy = SummaryPolicy(threshold=2)
        decision = policy.evaluate(_thread(4, SUMMARY_FAILED), _summary(2))
        assert decision.enqueue
        assert decision.reset_attempts

    def test_max_age_trigger(self):
        """An old summary with pending messages refreshes below the threshold."""
        policy = SummaryPolicy(threshold=10, max_age_seconds=60)
        generated = datetime.now(timezone.utc) - timedelta(seconds=30)
        summary = _summary(1, generated.isoformat())
        thread = _thread(2, SUMMARY_CURRENT)

        assert not policy.evaluate(thread, summary).enqueue
        later = datetime.now(timezone.utc) + timedelta(seconds=60)
        decision = policy.evaluate(thread, summary, now=later)
        assert decision.trigger == "max_age"

    def test_max_age_needs_pending_messages(self):
        """Age alone does not refresh a summary that covers everything."""
        policy = SummaryPolicy(threshold=10, max_age_seconds=1)
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        assert not policy.evaluate(_thread(2, SUMMARY_CURRENT), _summary(2), now=later).enqueue

    def test_max_age_without_summary_counts_from_creation(self):
        """A thread never summarized ages from its creation time."""
        policy = SummaryPolicy(threshold=10, max_age_seconds=60)
        created = (datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat()
        assert policy.evaluate(_thread(1, created_at=created), None).trigger == "max_age"

    def test_invalid_threshold(self):
        """Threshold must be positive."""
        with pytest.raises(ValueError):
            SummaryPolicy(threshold=0)

    def test_view_marks_lagging_statuses(self):
        """Readers see staleness for stale, refreshing and failed threads."""
        policy = SummaryPolicy(threshold=3)
        for status, stale in [
            (SUMMARY_CURRENT, False),
            (SUMMARY_STALE, True),
            (SUMMARY_REFRESHING, True),
            (SUMMARY_FAILED, True),
        ]:
            view = policy.view(_thread(4, status), _summary(3))
            assert view.stale is stale
            assert view.pending_count == 1


class TestRefreshPipeline:
    """Summaries produced through the keeper."""

    def test_no_summary_below_threshold(self, keeper):
        """Fewer messages than the threshold leave the thread unsummarized."""
        thread = keeper.create_thread()
        keeper.add_message(thread.id, "user", "hello")
        keeper.add_message(thread.id, "assistant", "hi")
        keeper.drain()

        view = keeper.get_summary(thread.id)
        assert view.summary is None
        assert view.status == SUMMARY_NONE
        assert view.pending_count == 2

    def test_threshold_produces_summary_and_tracks_pending(self, keeper, mock_providers):
        """Three messages summarize; two more are pending against the watermark."""
        thread = keeper.create_thread()
        for i in range(3):
            keeper.add_message(thread.id, "user", f"message {i}")
        assert keeper.get_summary(thread.id).status == SUMMARY_STALE

        result = keeper.drain()
        assert result["summarized"] == 1

        keeper.add_message(thread.id, "user", "message 3")
        keeper.add_message(thread.id, "user", "message 4")
        view = keeper.get_summary(thread.id)
        assert view.summary.watermark == 3
        assert view.summary.version == 1
        assert view.pending_count == 2
        assert view.status == SUMMARY_CURRENT
        assert not view.stale

        messages, previous = mock_providers["summarization"].calls[0]
        assert [m.seq for m in messages] == [1, 2, 3]
        assert previous is None

    def test_refresh_is_incremental(self, keeper, mock_providers):
        """A refresh folds only the new messages into the previous text."""
        thread = keeper.create_thread()
        for i in range(6):
            keeper.add_message(thread.id, "user", f"message {i}")
            keeper.drain()

        versions = keeper.list_summary_versions(thread.id)
        assert [s.watermark for s in versions] == [3, 6]

        messages, previous = mock_providers["summarization"].calls[1]
        assert [m.seq for m in messages] == [4, 5, 6]
        assert previous == versions[0].text
        assert versions[1].text.startswith(versions[0].text)

    def test_edit_below_watermark_does_not_refresh(self, keeper):
        """Editing a summarized message leaves the summary current."""
        thread = keeper.create_thread()
        messages = [keeper.add_message(thread.id, "user", f"m{i}") for i in range(3)]
        keeper.drain()

        keeper.update_message(thread.id, messages[0].id, "rewritten")
        stats = keeper.pending_stats()
        assert "summarize" not in stats["by_type"]
        assert keeper.get_summary(thread.id).status == SUMMARY_CURRENT

    def test_deleted_range_carries_text_forward(self, keeper, mock_providers):
        """If every new message was deleted, the old text becomes the next version."""
        thread = keeper.create_thread()
        for i in range(3):
            keeper.add_message(thread.id, "user", f"m{i}")
        keeper.drain()

        extra = [keeper.add_message(thread.id, "user", f"x{i}") for i in range(3)]
        for message in extra:
            keeper.delete_message(thread.id, message.id)
        keeper.drain()

        versions = keeper.list_summary_versions(thread.id)
        assert versions[-1].watermark == 6
        assert versions[-1].text == versions[0].text
        assert len(mock_providers["summarization"].calls) == 1

    def test_failure_dead_letters_then_retries(self, make_keeper, mock_providers):
        """A summarizer that keeps failing ends in 'failed'; retry recovers."""
        flaky = FlakySummarizationProvider()
        mock_providers["registry"].create_summarization.return_value = flaky
        tk = make_keeper(max_attempts=2)

        thread = tk.create_thread()
        for i in range(3):
            tk.add_message(thread.id, "user", f"m{i}")
        result = tk.drain()
        assert result["abandoned"] == 1

        view = tk.get_summary(thread.id)
        assert view.status == SUMMARY_FAILED
        assert view.stale
        assert view.summary is None
        assert [f["task_type"] for f in tk.list_failed()] == ["summarize"]

        flaky.failing = False
        assert tk.retry_failed() == 1
        assert tk.get_summary(thread.id).status == SUMMARY_STALE
        tk.drain()
        assert tk.get_summary(thread.id).status == SUMMARY_CURRENT

    def test_store_error_during_refresh_counts_attempts(self, make_keeper, monkeypatch):
        """A store error after the refresh starts leaves 'refreshing' and honours max_attempts."""
        tk = make_keeper(max_attempts=2)
        thread = tk.create_thread()
        for i in range(3):
            tk.add_message(thread.id, "user", f"m{i}")

        def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(tk._thread_store, "get_messages", locked)
        result = tk.drain()
        assert result["failed"] == 1
        assert result["abandoned"] == 1
        assert "OperationalError" in result["errors"][-1]

        monkeypatch.undo()
        assert tk.get_summary(thread.id).status == SUMMARY_FAILED
        assert tk.pending_stats()["pending"] == 0
        assert [f["task_type"] for f in tk.list_failed()] == ["summarize"]

    def test_error_before_refresh_counts_attempts(self, make_keeper, monkeypatch):
        """A job that raises before it starts refreshing is still dead-lettered."""
        tk = make_keeper(max_attempts=2)
        thread = tk.create_thread()
        for i in range(3):
            tk.add_message(thread.id, "user", f"m{i}")

        def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(tk._thread_store, "get_current_summary", locked)
        result = tk.drain()
        assert result["abandoned"] == 1

        monkeypatch.undo()
        assert tk.get_summary(thread.id).status == SUMMARY_FAILED
        assert [f["task_type"] for f in tk.list_failed()] == ["summarize"]

    def test_new_messages_after_failure_requeue(self, make_keeper, mock_providers):
        """Writes to a failed thread start a fresh refresh cycle."""
        flaky = FlakySummarizationProvider()
        mock_providers["registry"].create_summarization.return_value = flaky
        tk = make_keeper(max_attempts=1)

        thread = tk.create_thread()
        for i in range(3):
            tk.add_message(thread.id, "user", f"m{i}")
        tk.drain()
        assert tk.get_summary(thread.id).status == SUMMARY_FAILED

        flaky.failing = False
        tk.add_message(thread.id, "user", "one more")
        tk.drain()
        view = tk.get_summary(thread.id)
        assert view.status == SUMMARY_CURRENT
        assert view.summary.watermark == 4
        assert tk.list_failed() == []

    def test_max_age_sweep(self, make_keeper):
        """Idle threads below the threshold refresh once their summary is old."""
        tk = make_keeper(threshold=10, max_age_seconds=0.05)
        thread = tk.create_thread()
        tk.add_message(thread.id, "user", "lonely message")
        time.sleep(0.1)

        tk.drain()
        view = tk.get_summary(thread.id)
        assert view.summary is not None
        assert view.summary.watermark == 1

    def test_unknown_thread(self, keeper):
        """Summaries of unknown threads raise NotFound."""
        from threadkeep.errors import NotFound

        with pytest.raises(NotFound):
            keeper.get_summary("missing")


@pytest.mark.slow
class TestConcurrentRefresh:
    """Readers and writers during a running refresh."""

    def test_old_summary_served_while_refreshing(self, keeper, mock_providers):
        """A reader sees the previous version and a stale flag, without waiting."""
        provider = BlockingSummarizationProvider()
        provider.release.set()
        mock_providers["registry"].create_summarization.return_value = provider

        thread = keeper.create_thread()
        for i in range(3):
            keeper.add_message(thread.id, "user", f"first {i}")
        keeper.drain()
        first = keeper.get_summary(thread.id).summary

        provider.release.clear()
        provider.started.clear()
        for i in range(3):
            keeper.add_message(thread.id, "user", f"second {i}")

        runner = threading.Thread(target=keeper.drain)
        runner.start()
        try:
            assert provider.started.wait(5)

            view = keeper.get_summary(thread.id)
            assert view.status == SUMMARY_REFRESHING
            assert view.stale
            assert view.summary == first

            # Writers are not blocked by the running provider call
            late = keeper.add_message(thread.id, "user", "during refresh")
            assert late.seq == 7
        finally:
            provider.release.set()
            runner.join(10)

        view = keeper.get_summary(thread.id)
        assert view.summary.version == 2
        assert view.summary.watermark == 6
        assert view.pending_count == 1
