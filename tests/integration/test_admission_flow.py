"""
Integration tests for the admission flow under concurrent load.
"""

import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from service_admission.app.main import AdmissionService
from service_admission.app.ratelimit import BucketStore, RequestDescriptor
from shared.metrics import MetricsCollector


class TestAdmissionFlow:
    """End-to-end admission checks against a running app."""

    @pytest.fixture
    def service(self, tmp_path):
        """Service on the real clock, with an hour-long general window so no token regenerates mid-test."""
        limits = tmp_path / "rate_limits.yaml"
        limits.write_text(
            "policies:\n"
            "  general:\n"
            "    windowMs: 3600000\n"
            "    max: 10\n"
        )
        return AdmissionService(rate_limits_file=str(limits))

    def test_concurrent_requests_admit_exactly_capacity(self, service):
        with TestClient(service.app) as client:
            with ThreadPoolExecutor(max_workers=8) as pool:
                statuses = list(pool.map(lambda _: client.get("/api/v1/status").status_code, range(30)))

        assert statuses.count(200) == 10
        assert statuses.count(429) == 20

    def test_remaining_counts_down(self, service):
        with TestClient(service.app) as client:
            remaining = [
                int(client.get("/api/v1/status").headers["X-RateLimit-Remaining"])
                for _ in range(10)
            ]
            denied = client.get("/api/v1/status")

        assert remaining == list(range(9, -1, -1))
        assert denied.status_code == 429
        assert int(denied.headers["Retry-After"]) in (359, 360)


class TestIdleSweep:
    """The background sweeper bounds memory for abandoned keys."""

    def test_idle_buckets_evicted_in_background(self):
        metrics = MetricsCollector("admission")
        store = BucketStore(sweep_interval_seconds=0.05, idle_seconds=0.1, metrics=metrics)
        service = AdmissionService(store=store)
        descriptors = [RequestDescriptor(origin=f"198.51.100.{i}") for i in range(20)]

        try:
            for descriptor in descriptors:
                service.admission.check(descriptor, "health")
            assert len(store) == 20

            # health refills 5 tokens/s, so one spent token is back within 0.2s
            deadline = time.monotonic() + 3
            while len(store) and time.monotonic() < deadline:
                time.sleep(0.05)

            assert len(store) == 0
            assert metrics.get_sample_value("rate_limit_evictions_total") == 20
        finally:
            store.shutdown()
