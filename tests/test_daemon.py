"""Tests for the background sync daemon."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from risu.config import RisuConfig
from risu.daemon import DaemonState, SyncDaemon
from risu.errors import AuthError, LocalIOError, NetworkError, SyncAborted
from risu.models import PullReport, PushReport, SyncReport


def _report(**kwargs) -> SyncReport:
    return SyncReport(collection="notes", pull=PullReport(applied=2), push=PushReport(uploaded=1), **kwargs)


@pytest.fixture
def fake_reconciler() -> MagicMock:
    rec = MagicMock()
    rec.cancel_event = threading.Event()
    rec.sync.return_value = _report()
    return rec


@pytest.fixture
def daemon(fake_reconciler) -> SyncDaemon:
    d = SyncDaemon(fake_reconciler, RisuConfig(sync_interval=60, max_backoff=900))
    yield d
    d.stop()


class TestDaemonState:
    """Tests for thread-safe DaemonState."""

    def test_initial_state(self):
        state = DaemonState()
        assert state.running is False
        assert state.syncs_completed == 0

    def test_snapshot(self):
        snap = DaemonState().snapshot()
        assert snap["running"] is False
        assert snap["recent_errors"] == []

    def test_record_sync_counts(self):
        state = DaemonState()
        state.record_sync(_report())
        snap = state.snapshot()
        assert snap["syncs_completed"] == 1
        assert snap["notes_pulled"] == 2
        assert snap["notes_pushed"] == 1
        assert snap["last_sync"] is not None

    def test_coalesced_not_counted(self):
        state = DaemonState()
        state.record_sync(SyncReport(collection="notes", coalesced=True))
        assert state.syncs_completed == 0

    def test_errors_capped(self):
        state = DaemonState()
        for i in range(60):
            state.record_failure(f"err {i}")
        assert len(state.errors) == 50
        assert len(state.snapshot()["recent_errors"]) == 10

    def test_success_resets_failures(self):
        state = DaemonState()
        state.record_failure("x")
        state.record_sync(_report())
        assert state.failures == 0


class TestBackoff:
    """Tests for the retry delay."""

    def test_interval_without_failures(self, daemon) -> None:
        assert daemon.next_delay() == 60

    def test_exponential(self, daemon, fake_reconciler) -> None:
        fake_reconciler.sync.side_effect = NetworkError("down")
        daemon.run_once()
        assert daemon.next_delay() == 120
        daemon.run_once()
        assert daemon.next_delay() == 240

    def test_capped(self, daemon, fake_reconciler) -> None:
        fake_reconciler.sync.side_effect = NetworkError("down")
        for _ in range(10):
            daemon.run_once()
        assert daemon.next_delay() == 900

    def test_success_restores_interval(self, daemon, fake_reconciler) -> None:
        fake_reconciler.sync.side_effect = NetworkError("down")
        daemon.run_once()
        fake_reconciler.sync.side_effect = None
        daemon.run_once()
        assert daemon.next_delay() == 60


class TestRunOnce:
    """Tests for error accounting of a single pass."""

    @pytest.mark.parametrize("exc", [NetworkError("n"), AuthError("a"), LocalIOError("l")])
    def test_errors_recorded_not_raised(self, daemon, fake_reconciler, exc) -> None:
        fake_reconciler.sync.side_effect = exc
        assert daemon.run_once() is None
        assert daemon.state.failures == 1

    def test_abort_does_not_back_off(self, daemon, fake_reconciler) -> None:
        fake_reconciler.sync.side_effect = SyncAborted("reset")
        daemon.run_once()
        assert daemon.state.failures == 0

    def test_unexpected_error_recorded_not_raised(self, daemon, fake_reconciler) -> None:
        fake_reconciler.sync.side_effect = ValueError("bad payload")
        assert daemon.run_once() is None
        assert daemon.state.failures == 1
        assert "unexpected: bad payload" in daemon.state.snapshot()["recent_errors"][-1]

    def test_crashing_before_sync_hook_does_not_block_pass(self, fake_reconciler) -> None:
        d = SyncDaemon(fake_reconciler, RisuConfig(), before_sync=MagicMock(side_effect=KeyError("x")))
        assert d.run_once() is not None

    def test_before_sync_hook(self, fake_reconciler) -> None:
        hook = MagicMock(side_effect=NetworkError("still offline"))
        d = SyncDaemon(fake_reconciler, RisuConfig(), before_sync=hook)
        assert d.run_once() is not None
        hook.assert_called_once()
        fake_reconciler.sync.assert_called_once()


class TestLifecycle:
    """Tests for start, trigger and stop."""

    def test_first_pass_runs_immediately(self, daemon, fake_reconciler) -> None:
        done = threading.Event()
        fake_reconciler.sync.side_effect = lambda: (done.set(), _report())[1]
        daemon.start()
        assert done.wait(5)
        assert daemon.running is True

    def test_trigger_runs_another_pass(self, daemon, fake_reconciler) -> None:
        calls = []
        second = threading.Event()

        def record():
            calls.append(1)
            if len(calls) >= 2:
                second.set()
            return _report()

        fake_reconciler.sync.side_effect = record
        daemon.start()
        while not calls:
            threading.Event().wait(0.01)
        daemon.trigger()
        assert second.wait(5)

    def test_stop_cancels_and_joins(self, daemon, fake_reconciler) -> None:
        daemon.start()
        daemon.stop()
        assert daemon.running is False
        assert fake_reconciler.cancel_event.is_set()
        assert daemon.state.snapshot()["running"] is False

    def test_worker_survives_unexpected_error(self, daemon, fake_reconciler) -> None:
        calls = []
        second = threading.Event()

        def crash_then_succeed():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            second.set()
            return _report()

        fake_reconciler.sync.side_effect = crash_then_succeed
        daemon.start()
        while not calls:
            threading.Event().wait(0.01)
        daemon.trigger()
        assert second.wait(5)
        assert daemon.running is True

    def test_start_clears_cancel(self, daemon, fake_reconciler) -> None:
        fake_reconciler.cancel_event.set()
        daemon.start()
        assert not fake_reconciler.cancel_event.is_set()
