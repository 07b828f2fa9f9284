"""Tests for the periodic refresh scheduler."""
from __future__ import annotations

import threading
from unittest.mock import Mock

import pytest

from health_tap.models import HealthSnapshot, utcnow
from health_tap.scheduler import RefreshScheduler
from health_tap.store import ModelStore


def _next_snapshot(previous):
    return HealthSnapshot(sequence=previous.sequence + 1, captured_at=utcnow())


@pytest.fixture
def builder():
    builder = Mock()
    builder.build.side_effect = _next_snapshot
    return builder


@pytest.fixture
def store():
    return ModelStore()


class TestRunOnce:
    """Tests for a single scheduled cycle."""

    def test_run_once_publishes(self, builder, store):
        scheduler = RefreshScheduler(builder, store, interval_s=5.0)

        assert scheduler.run_once()
        assert scheduler.run_once()

        assert store.current().sequence == 2
        assert scheduler.cycles_run == 2
        assert builder.build.call_args.args[0].sequence == 1

    def test_cycle_skipped_while_running(self, builder, store):
        """Test that a tick during a running cycle is dropped, not queued."""
        scheduler = RefreshScheduler(builder, store)
        scheduler._cycle_lock.acquire()
        try:
            assert not scheduler.run_once()
        finally:
            scheduler._cycle_lock.release()

        assert scheduler.cycles_skipped == 1
        builder.build.assert_not_called()
        assert store.current().is_initial

    def test_failed_cycle_keeps_previous_snapshot(self, builder, store):
        scheduler = RefreshScheduler(builder, store)
        scheduler.run_once()
        published = store.current()

        builder.build.side_effect = RuntimeError("enumeration exploded")
        assert not scheduler.run_once()

        assert store.current() is published

    def test_cancelled_cycle_not_published(self, builder, store):
        scheduler = RefreshScheduler(builder, store)
        builder.build.side_effect = None
        builder.build.return_value = None

        assert not scheduler.run_once()
        assert store.current().is_initial

    def test_no_publish_after_stop(self, builder, store):
        scheduler = RefreshScheduler(builder, store)
        scheduler.stop()

        assert not scheduler.run_once()
        assert store.current().is_initial
        builder.cancel.assert_called_once()

    def test_trigger_ignored_while_running(self, builder, store):
        scheduler = RefreshScheduler(builder, store)
        scheduler._cycle_lock.acquire()
        try:
            scheduler.trigger()
        finally:
            scheduler._cycle_lock.release()

        assert not scheduler._wake.is_set()
        scheduler.trigger()
        assert scheduler._wake.is_set()

    @pytest.mark.parametrize("interval", [0, -1.0])
    def test_invalid_interval(self, builder, store, interval):
        with pytest.raises(ValueError):
            RefreshScheduler(builder, store, interval_s=interval)


@pytest.mark.integration
class TestBackgroundLoop:
    """Tests that start the real refresh thread."""

    def test_start_publishes_and_stop_joins(self, builder, store):
        published = threading.Event()
        store.subscribe(lambda snapshot: published.set())
        scheduler = RefreshScheduler(builder, store, interval_s=1.0)

        scheduler.start()
        try:
            assert published.wait(timeout=5)
            assert scheduler.running
        finally:
            scheduler.stop(timeout=5)

        assert not scheduler.running
        builder.reset.assert_called_once()
        builder.cancel.assert_called_once()
        assert store.current().sequence >= 1

    def test_trigger_runs_cycle_early(self, builder, store):
        seen = []
        second = threading.Event()

        def on_publish(snapshot):
            seen.append(snapshot.sequence)
            if len(seen) >= 2:
                second.set()

        store.subscribe(on_publish)
        scheduler = RefreshScheduler(builder, store, interval_s=60.0)
        scheduler.start()
        try:
            for _ in range(100):
                if seen and not scheduler._cycle_lock.locked():
                    break
                threading.Event().wait(0.05)
            scheduler.trigger()
            assert second.wait(timeout=5)
        finally:
            scheduler.stop(timeout=5)

        assert seen[:2] == [1, 2]
