"""
Redis-backed FIFO queue of workflow tasks with reliable delivery.

Uses the BLMOVE (reliable queue) pattern so a task is never lost:
  1. LPUSH → `taskqueue:jobs`              (enqueue)
  2. BLMOVE → `taskqueue:processing`       (atomic dequeue + in-flight tracking)
  3. LREM from processing on success       (ack)
  4. Requeue, or → `taskqueue:dead_letter` after 3 failures (nack)

A task is one handler run for one order; its id is `{task_type}:{order_id}`
so a change notification delivered twice while the first copy is still
waiting or running is only queued once.

Keys:
  taskqueue:jobs             pending task ids (Redis list, FIFO)
  taskqueue:processing       in-flight task ids (Redis list)
  taskqueue:dead_letter      permanently failed task ids (Redis list)
  taskqueue:meta:{task_id}   per-task metadata (Redis hash, TTL 2h)
"""

import json
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

QUEUE_KEY = "taskqueue:jobs"
PROCESSING_KEY = "taskqueue:processing"
DEAD_LETTER_KEY = "taskqueue:dead_letter"
META_PREFIX = "taskqueue:meta:"
META_TTL = 7200  # 2 hours

MAX_RETRIES = 3
# Longer than one generation run: two polling budgets plus the encode.
STALE_TASK_TIMEOUT = 1800

ACTIVE_STATUSES = ("queued", "processing")


def _decode(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


def task_id_for(task_type: str, order_id: str) -> str:
    return f"{task_type}:{order_id}"


# ── Enqueue ───────────────────────────────────────────────────────────────────

def enqueue_task(
    redis_client,
    order_id: str,
    task_type: str,
    payload: Optional[dict] = None,
) -> Optional[str]:
    """
    Add a task to the back of the queue.
    Returns the task id, or None if the same task is already queued or running.
    """
    task_id = task_id_for(task_type, order_id)
    meta_key = f"{META_PREFIX}{task_id}"

    current = redis_client.hget(meta_key, "status")
    if current is not None and _decode(current) in ACTIVE_STATUSES:
        logger.info(f"Task {task_id} already {_decode(current)}; not enqueuing again")
        return None

    meta = {
        "order_id": order_id,
        "task_type": task_type,
        "payload": json.dumps(payload or {}),
        "enqueued_at": str(time.time()),
        "status": "queued",
        "retries": "0",
    }

    pipe = redis_client.pipeline(transaction=True)
    pipe.delete(meta_key)
    pipe.hset(meta_key, mapping=meta)
    pipe.expire(meta_key, META_TTL)
    # LPUSH = new items go to left; pop from right = FIFO
    pipe.lpush(QUEUE_KEY, task_id)
    pipe.execute()

    logger.info(f"Enqueued task {task_id} (queue length {redis_client.llen(QUEUE_KEY)})")
    return task_id


# ── Reliable Dequeue (BLMOVE) ─────────────────────────────────────────────────

def dequeue_task(redis_client, timeout: int = 5) -> Optional[str]:
    """
    Atomically move a task from the pending queue to the processing list.

    The task is always either in `jobs` or in `processing`.  If the worker
    crashes, `recover_stale_tasks()` moves it back.

    Returns the task id or None on timeout.
    """
    result = redis_client.blmove(QUEUE_KEY, PROCESSING_KEY, timeout, "RIGHT", "LEFT")
    if result is None:
        return None

    task_id = _decode(result)
    redis_client.hset(
        f"{META_PREFIX}{task_id}",
        mapping={"processing_started_at": str(time.time()), "status": "processing"},
    )

    logger.info(f"Dequeued task {task_id} → processing")
    return task_id


# ── Ack / Nack ────────────────────────────────────────────────────────────────

def ack_task(redis_client, task_id: str):
    """Acknowledge successful completion: remove from the processing list."""
    redis_client.lrem(PROCESSING_KEY, 1, task_id)
    update_task_status(redis_client, task_id, "completed")
    logger.info(f"Acked task {task_id}")


def nack_task(redis_client, task_id: str, error_msg: str = "") -> str:
    """
    Negative-acknowledge a failed task.

    Increments the retry count; requeues below MAX_RETRIES, otherwise moves
    the task to the dead-letter queue.  Returns the new status.
    """
    meta_key = f"{META_PREFIX}{task_id}"
    retries = int(redis_client.hget(meta_key, "retries") or 0) + 1
    redis_client.hset(meta_key, "retries", str(retries))
    if error_msg:
        redis_client.hset(meta_key, "last_error", error_msg[:500])

    redis_client.lrem(PROCESSING_KEY, 1, task_id)

    if retries < MAX_RETRIES:
        redis_client.lpush(QUEUE_KEY, task_id)
        update_task_status(redis_client, task_id, "queued")
        logger.warning(f"Nacked task {task_id} (retry {retries}/{MAX_RETRIES}), requeued")
        return "queued"

    redis_client.lpush(DEAD_LETTER_KEY, task_id)
    update_task_status(redis_client, task_id, "dead_letter")
    logger.error(f"Task {task_id} moved to dead-letter queue after {MAX_RETRIES} failures: {error_msg}")
    return "dead_letter"


# ── Stale Task Recovery ───────────────────────────────────────────────────────

def recover_stale_tasks(redis_client, stale_after: int = STALE_TASK_TIMEOUT) -> int:
    """
    Move tasks that have been in-flight longer than `stale_after` seconds
    (left behind by a crashed worker) back to the pending queue.

    Call this on worker startup.  Returns the number of recovered tasks.
    """
    recovered = 0
    now = time.time()

    for item in redis_client.lrange(PROCESSING_KEY, 0, -1):
        task_id = _decode(item)
        meta = get_task_meta(redis_client, task_id)

        if not meta:
            redis_client.lrem(PROCESSING_KEY, 1, task_id)
            logger.warning(f"Removed orphaned task {task_id} from processing (no metadata)")
            continue

        started_at = float(meta.get("processing_started_at", 0))
        if started_at > 0 and (now - started_at) > stale_after:
            redis_client.lrem(PROCESSING_KEY, 1, task_id)
            redis_client.lpush(QUEUE_KEY, task_id)
            update_task_status(redis_client, task_id, "queued")
            recovered += 1
            logger.warning(f"Recovered stale task {task_id} (in-flight {int(now - started_at)}s)")

    if recovered:
        logger.info(f"Recovered {recovered} stale task(s) from processing queue")
    return recovered


# ── Dead-Letter Inspection ────────────────────────────────────────────────────

def get_dead_letter_jobs(redis_client, limit: int = 50) -> list:
    """Return the most recent dead-letter task ids."""
    return [_decode(item) for item in redis_client.lrange(DEAD_LETTER_KEY, 0, limit - 1)]


def retry_dead_letter(redis_client, task_id: str) -> bool:
    """Manually retry a dead-letter task by resetting retries and requeuing."""
    meta_key = f"{META_PREFIX}{task_id}"
    if not redis_client.exists(meta_key):
        return False

    redis_client.lrem(DEAD_LETTER_KEY, 1, task_id)
    redis_client.hset(meta_key, "retries", "0")
    redis_client.lpush(QUEUE_KEY, task_id)
    update_task_status(redis_client, task_id, "queued")
    logger.info(f"Retried dead-letter task {task_id}")
    return True


# ── Metadata Helpers ──────────────────────────────────────────────────────────

def get_queue_length(redis_client) -> int:
    return redis_client.llen(QUEUE_KEY)


def get_processing_count(redis_client) -> int:
    return redis_client.llen(PROCESSING_KEY)


def get_task_meta(redis_client, task_id: str) -> Optional[dict]:
    """Get metadata for a queued/processing task."""
    data = redis_client.hgetall(f"{META_PREFIX}{task_id}")
    if not data:
        return None
    return {_decode(k): _decode(v) for k, v in data.items()}


def update_task_status(redis_client, task_id: str, status: str):
    redis_client.hset(f"{META_PREFIX}{task_id}", "status", status)
