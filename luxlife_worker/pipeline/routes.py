"""
FastAPI routes for the order pipeline.

  POST /webhook/orders      — Supabase database webhook for the orders table
  GET  /orders/{order_id}   — Order status, output and fallback details
  GET  /webhook/queue       — Queue depth and dead-letter task ids
  POST /webhook/queue/dead-letter/{task_id}/retry
                            — Requeue a dead-lettered task

The webhook never runs a handler inline.  With Redis the task goes on the
reliable queue; without it the task runs as a BackgroundTask, bounded by
the in-process job slot guard.
"""

import asyncio
import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request

from luxlife_worker import fallback_limiter, metrics
from luxlife_worker import queue as task_queue
from .models import OrderChangeEvent, OrderStatusResponse
from .orchestrator import OrderWorkflow, route_change

logger = logging.getLogger(__name__)

order_router = APIRouter(tags=["orders"])


def _workflow(request: Request) -> OrderWorkflow:
    return request.app.state.workflow


def _redis(request: Request):
    return getattr(request.app.state, "redis", None)


async def _run_and_release(workflow: OrderWorkflow, task_type: str, order_id: str):
    try:
        await workflow.run_task(task_type, order_id)
    except Exception as e:
        metrics.record_error(task_type, "task_crashed", str(e), order_id)
        logger.error(f"[{order_id}] {task_type} crashed: {e}", exc_info=True)
    finally:
        fallback_limiter.release_job_slot()
        metrics.set_gauge("active_jobs", fallback_limiter.get_active_jobs())


@order_router.post("/webhook/orders")
async def handle_order_change(event: OrderChangeEvent, request: Request, background_tasks: BackgroundTasks):
    """Turn an orders-table change into a workflow task."""
    if event.table != "orders" or event.type == "DELETE":
        return {"status": "ignored"}

    before = None if event.type == "INSERT" else event.old_record
    routed = route_change(before, event.record)
    if routed is None:
        return {"status": "ignored"}

    task_type, order_id = routed
    metrics.inc_counter(f"webhook.{task_type}")

    r = _redis(request)
    if r is not None:
        task_id = await asyncio.to_thread(task_queue.enqueue_task, r, order_id, task_type)
        return {
            "status": "queued" if task_id else "duplicate",
            "task_type": task_type,
            "order_id": order_id,
        }

    if not fallback_limiter.acquire_job_slot():
        logger.warning(f"[{order_id}] Job slots exhausted; rejecting {task_type}")
        raise HTTPException(
            status_code=503,
            detail="Worker at capacity, retry shortly",
            headers={"Retry-After": "30"},
        )
    metrics.set_gauge("active_jobs", fallback_limiter.get_active_jobs())

    background_tasks.add_task(_run_and_release, _workflow(request), task_type, order_id)
    return {"status": "accepted", "task_type": task_type, "order_id": order_id}


@order_router.get("/orders/{order_id}", response_model=OrderStatusResponse)
async def get_order_status(order_id: str, request: Request):
    order = await _workflow(request).repository.get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")

    return OrderStatusResponse(
        order_id=order.id,
        status=order.status,
        video_url=order.video_url,
        error_code=order.error_code,
        error_message=order.error_message,
        fallback=order.pipeline.generation.fallback,
        updated_at=order.updated_at,
    )


# ── Queue admin (behind the worker secret) ───────────────────────────────────

def _queue_snapshot(r) -> dict:
    return {
        "queue_length": task_queue.get_queue_length(r),
        "processing": task_queue.get_processing_count(r),
        "dead_letter": task_queue.get_dead_letter_jobs(r),
    }


@order_router.get("/webhook/queue")
async def queue_status(request: Request):
    r = _redis(request)
    if r is None:
        return {"redis": False, "queue_length": 0, "processing": 0, "dead_letter": []}
    snapshot = await asyncio.to_thread(_queue_snapshot, r)
    return {"redis": True, **snapshot}


@order_router.post("/webhook/queue/dead-letter/{task_id}/retry")
async def retry_dead_letter_task(task_id: str, request: Request):
    r = _redis(request)
    if r is None:
        raise HTTPException(status_code=409, detail="Queue not configured")

    if not await asyncio.to_thread(task_queue.retry_dead_letter, r, task_id):
        raise HTTPException(status_code=404, detail="Task not found")

    logger.info(f"Dead-letter task {task_id} requeued by operator")
    return {"status": "queued", "task_id": task_id}
