import pytest

from luxlife_worker import fallback_limiter, metrics

pytestmark = pytest.mark.unit


def test_snapshot_collects_counters_errors_and_latency():
    metrics.inc_counter("orders.created")
    metrics.inc_counter("orders.created")
    metrics.record_error("generation", "generation_pipeline_error", "did_timeout", "o1")
    metrics.record_latency("generation", 1200.0)
    metrics.set_gauge("queue_depth", 4)

    snap = metrics.get_snapshot()

    assert snap["counters"]["orders.created"] == 2
    assert snap["counters"]["errors.generation_pipeline_error"] == 1
    assert snap["recent_errors"][0]["order_id"] == "o1"
    assert snap["latency"]["generation"]["count"] == 1
    assert snap["gauges"]["queue_depth"] == 4


def test_recent_errors_are_bounded():
    for i in range(metrics.MAX_ERRORS + 5):
        metrics.record_error("validation", "validation_error", f"e{i}")
    assert len(metrics.get_snapshot()["recent_errors"]) == 10


def test_job_slots():
    assert all(fallback_limiter.acquire_job_slot(limit=2) for _ in range(2))
    assert fallback_limiter.acquire_job_slot(limit=2) is False
    fallback_limiter.release_job_slot()
    assert fallback_limiter.get_active_jobs() == 1
    fallback_limiter.release_job_slot()
    fallback_limiter.release_job_slot()
    assert fallback_limiter.get_active_jobs() == 0
