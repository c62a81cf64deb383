"""
Prometheus-compatible call metrics.

Exposes the call counters, the scheduled-calls gauge and the call duration
histogram in Prometheus text format at /metrics.
"""

import re
import threading
import time
from dataclasses import dataclass, field

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

_UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")


def _label_key(labels: dict[str, str]) -> str:
    if not labels:
        return ""
    return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))


@dataclass
class Counter:
    """Prometheus counter metric."""

    name: str
    help_text: str
    _values: dict[str, float] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def inc(self, value: float = 1.0, **labels: str) -> None:
        key = _label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def get(self, **labels: str) -> float:
        key = _label_key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def collect(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} counter"]
        with self._lock:
            for key, value in self._values.items():
                lines.append(f"{self.name}{{{key}}} {value}" if key else f"{self.name} {value}")
        return lines


@dataclass
class Gauge:
    """Prometheus gauge metric."""

    name: str
    help_text: str
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def get(self) -> float:
        with self._lock:
            return self._value

    def collect(self) -> list[str]:
        with self._lock:
            value = self._value
        return [
            f"# HELP {self.name} {self.help_text}",
            f"# TYPE {self.name} gauge",
            f"{self.name} {value}",
        ]


@dataclass
class Histogram:
    """Prometheus histogram metric."""

    name: str
    help_text: str
    buckets: list[float]
    _bucket_counts: dict[str, list[int]] = field(default_factory=dict, repr=False)
    _sums: dict[str, float] = field(default_factory=dict, repr=False)
    _counts: dict[str, int] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def observe(self, value: float, **labels: str) -> None:
        key = _label_key(labels)
        with self._lock:
            counts = self._bucket_counts.setdefault(key, [0] * len(self.buckets))
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    counts[i] += 1
            self._sums[key] = self._sums.get(key, 0.0) + value
            self._counts[key] = self._counts.get(key, 0) + 1

    def count(self, **labels: str) -> int:
        with self._lock:
            return self._counts.get(_label_key(labels), 0)

    def collect(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} histogram"]
        with self._lock:
            for key, counts in self._bucket_counts.items():
                prefix = f"{key}," if key else ""
                for bound, count in zip(self.buckets, counts):
                    lines.append(f'{self.name}_bucket{{{prefix}le="{bound:g}"}} {count}')
                lines.append(f'{self.name}_bucket{{{prefix}le="+Inf"}} {self._counts[key]}')
                suffix = f"{{{key}}}" if key else ""
                lines.append(f"{self.name}_sum{suffix} {self._sums[key]}")
                lines.append(f"{self.name}_count{suffix} {self._counts[key]}")
        return lines


class MetricsRegistry:
    """Central registry for the call engine metrics."""

    def __init__(self, namespace: str = "callscheduler") -> None:
        self.namespace = namespace

        self.calls_total = Counter(
            f"{namespace}_calls_total",
            "Total number of calls made",
        )
        self.calls_scheduled = Gauge(
            f"{namespace}_calls_scheduled",
            "Number of pending scheduled calls",
        )
        self.call_duration_seconds = Histogram(
            f"{namespace}_call_duration_seconds",
            "Duration of calls in seconds",
            buckets=[5, 10, 30, 60, 120, 300],
        )
        self.last_call_timestamp = Gauge(
            f"{namespace}_last_call_timestamp",
            "Timestamp of the last call (Unix seconds)",
        )
        self.http_request_duration_seconds = Histogram(
            f"{namespace}_http_request_duration_seconds",
            "Duration of HTTP requests in seconds",
            buckets=[0.01, 0.05, 0.1, 0.5, 1, 2, 5],
        )

    def collect(self) -> str:
        """Collect all metrics in Prometheus text format."""
        lines: list[str] = []
        for metric in (
            self.calls_total,
            self.calls_scheduled,
            self.call_duration_seconds,
            self.last_call_timestamp,
            self.http_request_duration_seconds,
        ):
            lines.extend(metric.collect())
            lines.append("")
        return "\n".join(lines)


_registry: MetricsRegistry | None = None


def get_metrics_registry() -> MetricsRegistry:
    """Get the process-wide metrics registry."""
    global _registry
    if _registry is None:
        _registry = MetricsRegistry()
    return _registry


async def metrics_endpoint(request: Request) -> Response:
    """Prometheus metrics endpoint handler."""
    return Response(
        content=get_metrics_registry().collect(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Record HTTP request durations, with ids collapsed out of the route label."""

    def __init__(self, app, exclude_paths: list[str] | None = None) -> None:
        super().__init__(app)
        self.exclude_paths = exclude_paths or ["/health", "/metrics"]

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if any(path.startswith(p) for p in self.exclude_paths):
            return await call_next(request)

        start = time.perf_counter()
        status_code = "500"
        try:
            response = await call_next(request)
            status_code = str(response.status_code)
            return response
        finally:
            get_metrics_registry().http_request_duration_seconds.observe(
                time.perf_counter() - start,
                method=request.method,
                route=_UUID_RE.sub("{id}", path),
                status_code=status_code,
            )
