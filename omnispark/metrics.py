"""
In-memory metrics for generation calls.

Tracks per-modality request counters, provider latency samples and the most
recent provider errors. Everything resets on restart.
"""

import time
import threading
from typing import Dict, List
from collections import defaultdict

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)

# ── Latency samples (last 100 per modality) ──────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

_gauges: Dict[str, float] = defaultdict(float)

# ── Error log (last 50 provider errors) ──────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'requests.image', 'storyboard.shots_dropped')."""
    with _lock:
        _counters[name] += amount


def record_latency(modality: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[modality]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[modality] = samples[-MAX_SAMPLES:]


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(modality: str, error_type: str, message: str):
    with _lock:
        _counters[f"errors.{modality}"] += 1
        _recent_errors.append({
            "timestamp": time.time(),
            "modality": modality,
            "error_type": error_type,
            "message": message[:300],
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_snapshot() -> dict:
    now = time.time()
    with _lock:
        latency_stats = {}
        for modality, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[modality] = {
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
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()
