#!/usr/bin/env python3
"""
Questline Prometheus Metrics v1.0
Exposes /metrics endpoint for turn, retry and reconciliation observability.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Response


# =============================================================================
# METRIC TYPES
# =============================================================================

@dataclass
class Counter:
    """Monotonically increasing counter"""
    name: str
    help: str
    value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def inc(self, value: float = 1.0):
        if value < 0:
            raise ValueError(f"Counter {self.name} cannot decrease")
        with self._lock:
            self.value += value

    def to_prometheus(self) -> str:
        return f"{self.name} {self.value}"


@dataclass
class Gauge:
    """Value that can go up or down"""
    name: str
    help: str
    value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def set(self, value: float):
        with self._lock:
            self.value = value

    def inc(self, value: float = 1.0):
        with self._lock:
            self.value += value

    def dec(self, value: float = 1.0):
        self.inc(-value)

    def to_prometheus(self) -> str:
        return f"{self.name} {self.value}"


@dataclass
class Histogram:
    """Turn-duration distribution over a bounded window of observations"""
    name: str
    help: str
    buckets: Tuple[float, ...] = (0.5, 1, 2.5, 5, 10, 30, 60, 120)
    window: int = 10000
    _values: List[float] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def observe(self, value: float):
        with self._lock:
            self._values.append(value)
            if len(self._values) > self.window:
                del self._values[:-self.window]

    def snapshot(self) -> List[float]:
        with self._lock:
            return list(self._values)

    def to_prometheus(self) -> str:
        values = self.snapshot()
        if not values:
            return ""

        lines = [f'{self.name}_bucket{{le="{bucket}"}} {sum(1 for v in values if v <= bucket)}'
                 for bucket in self.buckets]
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {len(values)}')
        lines.append(f'{self.name}_sum {sum(values)}')
        lines.append(f'{self.name}_count {len(values)}')
        return "\n".join(lines)


# =============================================================================
# METRICS REGISTRY
# =============================================================================

class MetricsRegistry:
    """
    Central registry for all metrics.
    """

    def __init__(self):
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._register_default_metrics()

    def _register_default_metrics(self):
        """Register standard turn-pipeline metrics"""
        self.register(Counter("questline_turns_started_total", "Story turns started"))
        self.register(Counter("questline_turns_completed_total", "Story turns that ended with complete"))
        self.register(Counter("questline_turns_failed_total", "Story turns that ended with error"))
        self.register(Counter("questline_model_retries_total", "Model call retries"))
        self.register(Counter("questline_assessments_total", "Turns whose response carried a valid assessment"))
        self.register(Counter("questline_sections_applied_total", "Assessment sections applied"))
        self.register(Counter("questline_sections_failed_total", "Assessment sections that failed"))
        self.register(Gauge("questline_active_turns", "Turns currently in flight"))
        self.register(Histogram("questline_turn_duration_seconds", "Turn duration in seconds"))

    def register(self, metric):
        """Register a metric"""
        with self._lock:
            self._metrics[metric.name] = metric

    def get(self, name: str):
        """Get a metric by name"""
        return self._metrics.get(name)

    def counter(self, name: str) -> Optional[Counter]:
        m = self.get(name)
        return m if isinstance(m, Counter) else None

    def gauge(self, name: str) -> Optional[Gauge]:
        m = self.get(name)
        return m if isinstance(m, Gauge) else None

    def histogram(self, name: str) -> Optional[Histogram]:
        m = self.get(name)
        return m if isinstance(m, Histogram) else None

    def to_prometheus(self) -> str:
        """
        Generate Prometheus-format metrics output.
        """
        lines = []

        with self._lock:
            for name, metric in sorted(self._metrics.items()):
                lines.append(f"# HELP {name} {metric.help}")

                if isinstance(metric, Counter):
                    lines.append(f"# TYPE {name} counter")
                elif isinstance(metric, Gauge):
                    lines.append(f"# TYPE {name} gauge")
                elif isinstance(metric, Histogram):
                    lines.append(f"# TYPE {name} histogram")

                prometheus_str = metric.to_prometheus()
                if prometheus_str:
                    lines.append(prometheus_str)

                lines.append("")

        return "\n".join(lines)


# Global registry
registry = MetricsRegistry()


# =============================================================================
# FASTAPI ROUTER
# =============================================================================

router = APIRouter()


@router.get("/metrics")
async def get_metrics():
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus exposition format.
    """
    content = registry.to_prometheus()
    return Response(content=content, media_type="text/plain; charset=utf-8")


@router.get("/metrics/json")
async def get_metrics_json():
    """
    Get metrics in JSON format for debugging.
    """
    result = {}

    for name, metric in registry._metrics.items():
        if isinstance(metric, (Counter, Gauge)):
            result[name] = {"type": type(metric).__name__, "value": metric.value}
        elif isinstance(metric, Histogram):
            values = metric.snapshot()
            if values:
                result[name] = {
                    "type": "Histogram",
                    "count": len(values),
                    "sum": sum(values),
                    "avg": sum(values) / len(values)
                }

    return result


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def inc_turns_started():
    registry.counter("questline_turns_started_total").inc()
    registry.gauge("questline_active_turns").inc()


def inc_turns_completed():
    registry.counter("questline_turns_completed_total").inc()


def inc_turns_failed():
    registry.counter("questline_turns_failed_total").inc()


def turn_finished(seconds: float):
    """Record turn duration and drop it from the in-flight gauge"""
    registry.gauge("questline_active_turns").dec()
    registry.histogram("questline_turn_duration_seconds").observe(seconds)


def inc_retries(count: int = 1):
    registry.counter("questline_model_retries_total").inc(count)


def inc_assessments():
    registry.counter("questline_assessments_total").inc()


def record_reconciliation(applied: int, failed: int):
    """Count applied and failed assessment sections"""
    if applied:
        registry.counter("questline_sections_applied_total").inc(applied)
    if failed:
        registry.counter("questline_sections_failed_total").inc(failed)
