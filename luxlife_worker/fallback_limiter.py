"""
In-memory concurrency guard for order jobs.

Activates when Redis is not configured: webhook-triggered jobs then run as
FastAPI BackgroundTasks in this process, and this guard caps how many of
them run at once so a burst of orders cannot flood the providers.
State is per-process and lost on restart.
"""

import threading

# ── Configuration ─────────────────────────────────────────────────────────────
MAX_CONCURRENT_JOBS = 3

# ── State ─────────────────────────────────────────────────────────────────────
_lock = threading.Lock()
_active_jobs = 0


def acquire_job_slot(limit: int = MAX_CONCURRENT_JOBS) -> bool:
    """
    Try to acquire a slot for a background job.
    Returns True if a slot is available, False if at capacity.
    """
    global _active_jobs
    with _lock:
        if _active_jobs >= limit:
            return False
        _active_jobs += 1
        return True


def release_job_slot():
    """Release a background job slot after completion."""
    global _active_jobs
    with _lock:
        _active_jobs = max(0, _active_jobs - 1)


def get_active_jobs() -> int:
    with _lock:
        return _active_jobs


def reset():
    """Forget all held slots."""
    global _active_jobs
    with _lock:
        _active_jobs = 0
