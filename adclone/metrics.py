"""
Thread-safe in-memory metrics collector for the orchestrator.

Tracks tick throughput and pipeline outcomes:
  - Latency: tick duration samples
  - Traffic: ticks, projects and segments handled
  - Errors: recent failures with their project for root-cause analysis
  - Saturation: batch size and recency of the last tick

All data is ephemeral (resets on restart).
"""

import time
import threading
from typing import Dict, List
from collections import defaultdict

_lock = threading.Lock()

# ── Counters ──────────────────────────────────────────────────────────────────
_counters: Dict[str, int] = defaultdict(int)

# ── Latency samples (last 100 per name) ──────────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

# ── Gauges ────────────────────────────────────────────────────────────────────
_gauges: Dict[str, float] = defaultdict(float)

# ── Error log (last 50 errors) ───────────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'monitor.ticks', 'segments.video_retries')."""
    with _lock:
        _counters[name] += amount


def record_latency(name: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[name]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[name] = samples[-MAX_SAMPLES:]


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(source: str, error_type: str, message: str, project_id: str = ""):
    """Record an error for root-cause analysis."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "source": source,
            "error_type": error_type,
            "message": message[:300],
            "project_id": project_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def _ratio(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _pipeline_rates(counters: Dict[str, int]) -> dict:
    """Outcome rates over segment video attempts and finished projects."""
    retries = counters.get("segments.video_retries", 0)
    ready = counters.get("segments.videos_ready", 0)
    failed = counters.get("segments.failed", 0)
    completed = counters.get("projects.completed", 0)
    projects_failed = counters.get("projects.failed", 0)
    return {
        "video_retry_rate": _ratio(retries, retries + ready + failed),
        "segment_failure_rate": _ratio(failed, ready + failed),
        "project_success_rate": _ratio(completed, completed + projects_failed),
    }


def get_snapshot() -> dict:
    """Return a complete metrics snapshot for the /metrics endpoint."""
    now = time.time()

    with _lock:
        latency_stats = {}
        for name, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[name] = {
                "p50": sorted_s[n // 2],
                "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                "avg": sum(sorted_s) / n,
                "count": n,
            }

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['source']}:{err['error_type']}"] += 1

        counters = dict(_counters)
        last_tick = _gauges.get("monitor.last_tick_at")
        return {
            "timestamp": now,
            "counters": counters,
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "pipeline": _pipeline_rates(counters),
            "seconds_since_last_tick": now - last_tick if last_tick else None,
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    """Clear everything (used by tests)."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()
