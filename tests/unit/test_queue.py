import time

import fakeredis
import pytest

from luxlife_worker import queue as task_queue

pytestmark = pytest.mark.unit


@pytest.fixture
def r():
    return fakeredis.FakeRedis()


def test_fifo_dequeue(r):
    task_queue.enqueue_task(r, "o1", "order_created")
    task_queue.enqueue_task(r, "o2", "order_created")

    assert task_queue.dequeue_task(r, timeout=1) == "order_created:o1"
    assert task_queue.dequeue_task(r, timeout=1) == "order_created:o2"
    assert task_queue.get_processing_count(r) == 2
    assert task_queue.get_task_meta(r, "order_created:o1")["status"] == "processing"


def test_duplicate_enqueue_is_ignored_while_active(r):
    assert task_queue.enqueue_task(r, "o1", "order_generation") == "order_generation:o1"
    assert task_queue.enqueue_task(r, "o1", "order_generation") is None
    assert task_queue.get_queue_length(r) == 1

    task_id = task_queue.dequeue_task(r, timeout=1)
    assert task_queue.enqueue_task(r, "o1", "order_generation") is None

    task_queue.ack_task(r, task_id)
    assert task_queue.enqueue_task(r, "o1", "order_generation") == "order_generation:o1"


def test_ack_clears_processing(r):
    task_queue.enqueue_task(r, "o1", "order_created")
    task_id = task_queue.dequeue_task(r, timeout=1)

    task_queue.ack_task(r, task_id)

    assert task_queue.get_processing_count(r) == 0
    assert task_queue.get_task_meta(r, task_id)["status"] == "completed"


def test_nack_retries_then_dead_letters(r):
    task_queue.enqueue_task(r, "o1", "order_created")

    statuses = []
    for _ in range(task_queue.MAX_RETRIES):
        task_id = task_queue.dequeue_task(r, timeout=1)
        statuses.append(task_queue.nack_task(r, task_id, "boom"))

    assert statuses == ["queued", "queued", "dead_letter"]
    assert task_queue.get_queue_length(r) == 0
    assert task_queue.get_dead_letter_jobs(r) == ["order_created:o1"]
    assert task_queue.get_task_meta(r, "order_created:o1")["last_error"] == "boom"

    assert task_queue.retry_dead_letter(r, "order_created:o1") is True
    assert task_queue.get_dead_letter_jobs(r) == []
    assert task_queue.get_queue_length(r) == 1


def test_recover_stale_tasks(r):
    task_queue.enqueue_task(r, "o1", "order_created")
    task_queue.enqueue_task(r, "o2", "order_created")
    stale = task_queue.dequeue_task(r, timeout=1)
    fresh = task_queue.dequeue_task(r, timeout=1)
    r.hset(f"{task_queue.META_PREFIX}{stale}", "processing_started_at", str(time.time() - 7200))
    r.lpush(task_queue.PROCESSING_KEY, "orphan")

    recovered = task_queue.recover_stale_tasks(r)

    assert recovered == 1
    assert task_queue.get_processing_count(r) == 1
    assert task_queue.dequeue_task(r, timeout=1) == stale
    assert fresh != stale


def test_dequeue_timeout_returns_none(r):
    assert task_queue.dequeue_task(r, timeout=1) is None
