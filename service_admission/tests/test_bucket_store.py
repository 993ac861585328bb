"""
Unit tests for BucketStore.
"""

import threading

import pytest

from service_admission.app.ratelimit.store import BucketStore
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock


class TestBucketStore:
    """Test cases for BucketStore."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        """Store with the sweeper disabled; sweeps are driven by hand."""
        store = BucketStore(idle_seconds=600, clock=clock, start_sweeper=False)
        yield store
        store.shutdown()

    def test_get_or_create_returns_same_bucket(self, store):
        first = store.get_or_create("k", 5, 1.0)
        second = store.get_or_create("k", 5, 1.0)
        assert first is second
        assert len(store) == 1

    def test_first_parameters_win(self, store):
        store.get_or_create("k", 5, 1.0)
        bucket = store.get_or_create("k", 50, 10.0)
        assert bucket.capacity == 5
        assert bucket.refill_rate == 1.0

    def test_consume_reports_snapshot(self, store):
        results = [store.consume("k", 5, 5 / 60) for _ in range(6)]
        assert [r.admitted for r in results] == [True] * 5 + [False]
        assert [r.remaining for r in results[:5]] == [4, 3, 2, 1, 0]
        assert results[-1].retry_after_seconds == pytest.approx(12.0)

    def test_out_of_order_timestamps_never_over_admit(self, store):
        """At one token per second, at most two requests fit in the first second."""
        results = [store.consume("k", 1, 1.0, now=t) for t in (1000.0, 1001.0, 1000.0, 1001.0)]
        assert sum(r.admitted for r in results) == 2

    def test_clock_read_under_shard_lock(self, store, clock):
        held = []

        def locked_clock():
            held.append(store._shard_for("k").lock.locked())
            return clock()

        store.clock = locked_clock
        store.consume("k", 5, 1.0)

        assert held and all(held)

    def test_keys_are_isolated(self, store):
        assert store.consume("a", 1, 1.0).admitted is True
        assert store.consume("b", 1, 1.0).admitted is True
        assert store.consume("a", 1, 1.0).admitted is False
        assert store.get("b").tokens == 0.0

    def test_sweep_evicts_full_idle_bucket(self, store, clock):
        store.consume("idle", 2, 1.0)
        clock.advance(601)
        assert store.sweep() == 1
        assert "idle" not in store

    def test_sweep_keeps_recently_used_bucket(self, store, clock):
        store.consume("busy", 2, 1.0)
        clock.advance(300)
        store.consume("busy", 2, 1.0)
        clock.advance(301)
        assert store.sweep() == 0
        assert "busy" in store

    def test_sweep_keeps_partially_drained_bucket(self, store, clock):
        store.consume("slow", 10, 1 / 3600)
        clock.advance(601)
        assert store.sweep() == 0
        assert "slow" in store

    def test_sweep_updates_metrics(self, clock):
        metrics = MetricsCollector("admission")
        store = BucketStore(idle_seconds=10, clock=clock, metrics=metrics, start_sweeper=False)
        store.consume("a", 1, 1.0)
        store.consume("b", 1, 1.0)
        clock.advance(20)

        store.sweep()

        assert metrics.get_sample_value("rate_limit_evictions_total") == 2
        assert metrics.get_sample_value("rate_limit_buckets") == 0
        store.shutdown()

    def test_bucket_gauge_tracks_live_count_between_sweeps(self, clock):
        metrics = MetricsCollector("admission")
        store = BucketStore(clock=clock, metrics=metrics, start_sweeper=False)

        store.consume("a", 1, 1.0)
        store.consume("b", 1, 1.0)
        assert metrics.get_sample_value("rate_limit_buckets") == 2

        store.shutdown()
        assert metrics.get_sample_value("rate_limit_buckets") == 0

    def test_concurrent_consume_never_over_admits(self, store):
        """Many threads racing on one key at a frozen clock admit exactly capacity."""
        admitted = []
        lock = threading.Lock()
        barrier = threading.Barrier(16)

        def worker():
            barrier.wait()
            for _ in range(20):
                result = store.consume("hot", 50, 1.0)
                if result.admitted:
                    with lock:
                        admitted.append(result)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(admitted) == 50

    def test_shutdown_clears_buckets_and_is_idempotent(self, clock):
        store = BucketStore(sweep_interval_seconds=60, clock=clock)
        store.consume("k", 1, 1.0)
        assert store.running is True

        store.shutdown()
        store.shutdown()

        assert store.running is False
        assert len(store) == 0

    def test_background_sweeper_runs_on_interval(self, clock):
        swept = threading.Event()
        store = BucketStore(sweep_interval_seconds=0.01, idle_seconds=1, clock=clock)
        store.consume("k", 1, 1.0)
        clock.advance(5)

        original_sweep = store.sweep

        def tracking_sweep(now=None):
            evicted = original_sweep(now)
            swept.set()
            return evicted

        store.sweep = tracking_sweep
        try:
            assert swept.wait(timeout=2)
            assert "k" not in store
        finally:
            store.shutdown()
