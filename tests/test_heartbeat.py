"""
Review heartbeat: sweep results, loop control and status.
"""

import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from verdict.core import heartbeat, ledger, reviews
from verdict.core.errors import PersistenceConflict
from verdict.core.heartbeat import ReviewHeartbeat
from verdict.core.schema import OUTCOME_CHANGED


@pytest.fixture
def enabled():
    with patch('verdict.core.heartbeat.is_review_heartbeat_enabled', return_value=True), \
         patch('verdict.core.heartbeat.validate_config', return_value=[]):
        yield


class TestRunOnce:
    """Single sweeps against the real trigger engine and stubs."""

    def test_sweep_raises_review_for_outcome_change(self, make_record):
        ledger.create_decision(make_record(outcome="book", created_at="2026-03-01T01:00:00+00:00"))
        ledger.create_decision(make_record(outcome="wait", created_at="2026-03-01T02:00:00+00:00"))
        beat = ReviewHeartbeat(interval_sec=60)

        result = beat.run_once()

        assert result["status"] == "success"
        assert result["created"] == 1
        pending = reviews.list_pending_reviews()
        assert [r.reason_code for r in pending] == [OUTCOME_CHANGED]
        assert result["review_ids"] == [pending[0].review_id]

    def test_repeat_sweep_creates_nothing_new(self, make_record):
        ledger.create_decision(make_record(outcome="book", created_at="2026-03-01T01:00:00+00:00"))
        ledger.create_decision(make_record(outcome="wait", created_at="2026-03-01T02:00:00+00:00"))
        beat = ReviewHeartbeat(interval_sec=60)

        beat.run_once()
        second = beat.run_once()

        assert second["created"] == 0
        assert beat.sweep_count == 2
        assert beat.reviews_created == 1

    @pytest.mark.parametrize("error", [
        sqlite3.OperationalError("database is locked"),
        PersistenceConflict("review", "rev_1"),
    ])
    def test_failed_sweep_recorded(self, error):
        beat = ReviewHeartbeat(interval_sec=60, sweep=MagicMock(side_effect=error))

        result = beat.run_once()

        assert result["status"] == "error"
        assert result["created"] == 0
        assert beat.recent_sweeps[-1] is result

    def test_history_is_bounded(self):
        beat = ReviewHeartbeat(interval_sec=60, sweep=lambda: [], history=3)

        for _ in range(5):
            beat.run_once()

        assert len(beat.recent_sweeps) == 3
        assert beat.sweep_count == 5


class TestLoop:

    @patch('verdict.core.heartbeat.is_review_heartbeat_enabled', return_value=False)
    def test_disabled_does_not_sweep(self, mock_enabled):
        sweep = MagicMock(return_value=[])
        beat = ReviewHeartbeat(interval_sec=60, sweep=sweep)

        beat.start()

        sweep.assert_not_called()
        assert beat.running is False

    def test_sweeps_until_stopped(self, enabled):
        """A sweep that stops the loop runs exactly once."""
        beat = ReviewHeartbeat(interval_sec=60)
        calls = []

        def sweep():
            calls.append(1)
            beat.stop()
            return []

        beat.sweep = sweep
        beat.start()

        assert calls == [1]
        assert beat.running is False

    def test_failed_sweep_keeps_loop_alive(self, enabled):
        beat = ReviewHeartbeat(interval_sec=1)
        outcomes = [sqlite3.OperationalError("database is locked")]

        def sweep():
            if outcomes:
                raise outcomes.pop()
            beat.stop()
            return []

        beat.sweep = sweep
        beat.start()

        assert [s["status"] for s in beat.recent_sweeps] == ["error", "success"]

    def test_invalid_config_refuses_to_start(self):
        with patch('verdict.core.heartbeat.is_review_heartbeat_enabled', return_value=True), \
             patch('verdict.core.heartbeat.validate_config', return_value=["Invalid setting"]):
            with pytest.raises(ValueError, match="Heartbeat configuration invalid"):
                ReviewHeartbeat(interval_sec=60).start()

    def test_already_running(self, enabled):
        beat = ReviewHeartbeat(interval_sec=60)
        beat.running = True

        with pytest.raises(RuntimeError, match="already running"):
            beat.start()


class TestStatus:

    def test_disabled(self):
        with patch('verdict.core.heartbeat.is_review_heartbeat_enabled', return_value=False):
            status = heartbeat.get_status()

        assert status["status"] == "disabled"
        assert "REVIEW_HEARTBEAT_ENABLED=false" in status["reason"]

    def test_reports_last_sweep(self, enabled):
        beat = ReviewHeartbeat(interval_sec=120, sweep=lambda: [])
        beat.run_once()

        status = beat.get_status()

        assert status["status"] == "stopped"
        assert status["interval_sec"] == 120
        assert status["sweeps"] == 1
        assert status["last_sweep"]["status"] == "success"

    def test_interval_defaults_to_config(self, enabled):
        with patch('verdict.core.heartbeat.get_review_interval', return_value=300):
            assert ReviewHeartbeat().get_status()["interval_sec"] == 300
