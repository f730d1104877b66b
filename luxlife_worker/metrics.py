"""
Thread-safe in-memory metrics collector for the worker.

Tracks what the operators look at when orders stall:
  - Traffic: orders received, stages started, by handler
  - Errors: failures by error code, plus the last few messages
  - Latency: stage duration samples
  - Saturation: active jobs, queue depth

All data is ephemeral (resets on restart).  The orders table remains the
source of truth for per-order history.
"""

import threading
import time
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

# ── Counters ──────────────────────────────────────────────────────────────────
_counters: Dict[str, int] = defaultdict(int)

# ── Latency samples (last 100 per stage) ─────────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

# ── Gauges ────────────────────────────────────────────────────────────────────
_gauges: Dict[str, float] = defaultdict(float)

# ── Error log (last 50 errors for RCA) ────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50

_started_at = time.time()


# ── Public API ────────────────────────────────────────────────────────────────

def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'orders.created', 'errors.generation_pipeline_error')."""
    with _lock:
        _counters[name] += amount


def record_latency(stage: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[stage]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[stage] = samples[-MAX_SAMPLES:]


def set_gauge(name: str, value: float):
    """Set a gauge value (e.g. 'queue_depth', 'active_jobs')."""
    with _lock:
        _gauges[name] = value


def record_error(stage: str, error_code: str, message: str, order_id: str = ""):
    """Record an order failure for root-cause analysis."""
    with _lock:
        _counters[f"errors.{error_code}"] += 1
        _recent_errors.append({
            "timestamp": time.time(),
            "stage": stage,
            "error_code": error_code,
            "message": (message or "")[:300],
            "order_id": order_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_snapshot() -> dict:
    """Complete metrics snapshot for the /metrics endpoint."""
    now = time.time()

    with _lock:
        latency_stats = {}
        for stage, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[stage] = {
                "p50": sorted_s[n // 2],
                "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                "avg": sum(sorted_s) / n,
                "count": n,
            }

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "recent_errors": list(_recent_errors[-10:]),
            "uptime_seconds": now - _started_at,
        }


def reset():
    """Clear everything."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()
