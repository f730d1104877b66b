"""
LuxLife order worker — FastAPI app.

  GET  /health            liveness
  GET  /metrics           in-memory counters, gauges, recent errors
  POST /webhook/orders    orders-table change notifications (shared secret)
  GET  /orders/{id}       order status

With REDIS_URL set, webhook tasks go through the reliable Redis queue and
are worked by consumer tasks started in the lifespan hook.  Without it
they run in-process as BackgroundTasks.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import redis
import uvicorn
from fastapi import FastAPI

from luxlife_worker import fallback_limiter, metrics
from luxlife_worker import queue as task_queue
from luxlife_worker.auth_middleware import WorkerAuthMiddleware
from luxlife_worker.config import Settings, get_settings
from luxlife_worker.pipeline import OrderWorkflow, order_router
from luxlife_worker.pipeline.ledger import InMemoryCreditLedger, SupabaseCreditLedger
from luxlife_worker.pipeline.repository import InMemoryOrderRepository, SupabaseOrderRepository

logger = logging.getLogger(__name__)

QUEUE_CONSUMERS = fallback_limiter.MAX_CONCURRENT_JOBS
DEQUEUE_TIMEOUT = 5  # seconds


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Wiring ────────────────────────────────────────────────────────────────────

def build_workflow(settings: Settings) -> OrderWorkflow:
    """Supabase-backed workflow, or in-memory stores when Supabase is not configured."""
    if settings.supabase_url and settings.supabase_service_role_key:
        repository, ledger = SupabaseOrderRepository(), SupabaseCreditLedger()
    else:
        logger.warning("Supabase not configured — using in-memory order store and ledger")
        repository, ledger = InMemoryOrderRepository(), InMemoryCreditLedger()
    return OrderWorkflow(repository, ledger, settings=settings)


def connect_redis(settings: Settings) -> Optional[redis.Redis]:
    """Redis client, or None if Redis is not configured or unreachable."""
    if not settings.redis_url:
        return None
    client = redis.from_url(settings.redis_url, decode_responses=False)
    try:
        client.ping()
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e} — falling back to in-process tasks")
        return None
    logger.info(f"Redis connected: {settings.redis_url[:30]}...")
    return client


# ── Queue consumer (reliable) ─────────────────────────────────────────────────

async def process_next_task(r, workflow: OrderWorkflow, timeout: int = DEQUEUE_TIMEOUT) -> Optional[str]:
    """
    Dequeue one task and run it: ack on success, nack (retry or dead-letter)
    on failure.  Returns the task id, or None if the queue stayed empty.
    """
    task_id = await asyncio.to_thread(task_queue.dequeue_task, r, timeout)
    if task_id is None:
        return None

    meta = await asyncio.to_thread(task_queue.get_task_meta, r, task_id)
    if not meta:
        logger.warning(f"Queue consumer: no metadata for task {task_id}, skipping")
        await asyncio.to_thread(task_queue.ack_task, r, task_id)
        return task_id

    task_type = meta.get("task_type", "")
    order_id = meta.get("order_id", "")
    attempt = int(meta.get("retries", "0")) + 1
    logger.info(f"Queue consumer: {task_type} for order {order_id} (attempt {attempt})")

    try:
        await workflow.run_task(task_type, order_id)
    except Exception as e:
        logger.error(f"Queue consumer: task {task_id} failed: {e}", exc_info=True)
        metrics.record_error(task_type, "task_crashed", str(e), order_id)
        await asyncio.to_thread(task_queue.nack_task, r, task_id, str(e))
        return task_id

    await asyncio.to_thread(task_queue.ack_task, r, task_id)
    return task_id


async def _queue_consumer_loop(r, workflow: OrderWorkflow, name: str):
    logger.info(f"Queue consumer {name} started (reliable mode)")
    while True:
        try:
            await process_next_task(r, workflow)
            metrics.set_gauge("queue_depth", await asyncio.to_thread(task_queue.get_queue_length, r))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Queue consumer {name} loop error: {e}")
            await asyncio.sleep(2)


# ── App ───────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("Worker starting up...")

    if not hasattr(app.state, "workflow"):
        app.state.workflow = build_workflow(settings)
    if not hasattr(app.state, "redis"):
        app.state.redis = connect_redis(settings)

    consumers = []
    r = app.state.redis
    if r is not None:
        recovered = await asyncio.to_thread(task_queue.recover_stale_tasks, r)
        if recovered:
            logger.info(f"Recovered {recovered} stale task(s) from previous session")
        consumers = [
            asyncio.create_task(_queue_consumer_loop(r, app.state.workflow, f"#{i + 1}"))
            for i in range(QUEUE_CONSUMERS)
        ]
    else:
        logger.info("No Redis — using in-process job slots")

    yield

    logger.info("Worker shutting down...")
    for consumer in consumers:
        consumer.cancel()
    await asyncio.gather(*consumers, return_exceptions=True)


def create_app() -> FastAPI:
    configure_logging(get_settings())
    app = FastAPI(title="LuxLife order worker", lifespan=lifespan)
    app.add_middleware(WorkerAuthMiddleware)
    app.include_router(order_router)

    @app.get("/health")
    async def health_check():
        return {"ok": True, "message": "LuxLife worker ready."}

    @app.get("/metrics")
    async def get_metrics():
        snapshot = metrics.get_snapshot()
        snapshot["active_jobs"] = fallback_limiter.get_active_jobs()
        return snapshot

    return app


app = create_app()


def run():
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("luxlife_worker.main:app", host="0.0.0.0", port=port)


if __name__ == "__main__":
    run()
