"""In-process Prometheus metrics for gate outcomes, promotions and runs.

Series are rendered in the Prometheus text format and served on ``/metrics``
when ``DEPLOYGATE_METRICS_PORT`` is set.
"""

from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, HTTPServer
import logging
from threading import Lock, Thread
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

_DEFAULT_BUCKETS = (1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0)

_S = TypeVar("_S")


@dataclass
class _CounterSeries:
    value: float = 0.0
    _lock: Lock = field(default_factory=Lock, repr=False)

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters can only increase")
        with self._lock:
            self.value += amount


@dataclass
class _HistogramSeries:
    buckets: tuple[float, ...]
    counts: list[int] = field(init=False)
    total: float = 0.0
    _lock: Lock = field(default_factory=Lock, repr=False)

    def __post_init__(self) -> None:
        # one slot per bound plus +Inf
        self.counts = [0] * (len(self.buckets) + 1)

    @property
    def count(self) -> int:
        return sum(self.counts)

    def observe(self, value: float) -> None:
        with self._lock:
            self.counts[bisect_left(self.buckets, value)] += 1
            self.total += value


@dataclass
class _Metric(Generic[_S]):
    name: str
    description: str
    label_names: tuple[str, ...]
    series: dict[tuple[str, ...], _S] = field(default_factory=dict, repr=False)
    _lock: Lock = field(default_factory=Lock, repr=False)

    kind = "untyped"

    def _new_series(self) -> _S:
        raise NotImplementedError

    def labels(self, **labels: str) -> _S:
        if set(labels) != set(self.label_names):
            raise ValueError(f"{self.name} expects labels {self.label_names}, got {sorted(labels)}")
        key = tuple(str(labels[name]) for name in self.label_names)
        with self._lock:
            if key not in self.series:
                self.series[key] = self._new_series()
            return self.series[key]

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]

    def _labels(self, key: tuple[str, ...], **extra: str) -> str:
        pairs = [*zip(self.label_names, key, strict=True), *extra.items()]
        return ",".join(f'{name}="{_escape(value)}"' for name, value in pairs)

    def render(self) -> list[str]:
        raise NotImplementedError


@dataclass
class Counter(_Metric[_CounterSeries]):
    kind = "counter"

    def _new_series(self) -> _CounterSeries:
        return _CounterSeries()

    def render(self) -> list[str]:
        lines = self._header()
        for key, series in sorted(self.series.items()):
            lines.append(f"{self.name}{{{self._labels(key)}}} {series.value}")
        return lines


@dataclass
class Histogram(_Metric[_HistogramSeries]):
    buckets: tuple[float, ...] = _DEFAULT_BUCKETS

    kind = "histogram"

    def __post_init__(self) -> None:
        if list(self.buckets) != sorted(set(self.buckets)):
            raise ValueError("histogram buckets must be strictly increasing")

    def _new_series(self) -> _HistogramSeries:
        return _HistogramSeries(self.buckets)

    def render(self) -> list[str]:
        lines = self._header()
        for key, series in sorted(self.series.items()):
            cumulative = 0
            for bound, count in zip((*self.buckets, float("inf")), series.counts, strict=True):
                cumulative += count
                le = "+Inf" if bound == float("inf") else repr(bound)
                lines.append(f"{self.name}_bucket{{{self._labels(key, le=le)}}} {cumulative}")
            lines.append(f"{self.name}_count{{{self._labels(key)}}} {cumulative}")
            lines.append(f"{self.name}_sum{{{self._labels(key)}}} {series.total}")
        return lines


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


GATE_RESULTS = Counter(
    name="deploygate_gate_results_total",
    description="Gate results by gate and outcome",
    label_names=("gate", "outcome"),
)

PROMOTIONS = Counter(
    name="deploygate_promotions_total",
    description="Promotion attempts by environment, kind and rollout status",
    label_names=("environment", "kind", "status"),
)

RUNS = Counter(
    name="deploygate_runs_total",
    description="Finished pipeline runs by terminal status and stage",
    label_names=("status", "stage"),
)

PROMOTION_DURATION = Histogram(
    name="deploygate_promotion_duration_seconds",
    description="Wall time of apply and verify cycles",
    label_names=("environment", "kind"),
)

_REGISTRY: tuple[_Metric, ...] = (GATE_RESULTS, PROMOTIONS, RUNS, PROMOTION_DURATION)


def render_metrics() -> str:
    lines: list[str] = []
    for metric in _REGISTRY:
        lines.extend(metric.render())
    return "\n".join(lines) + "\n"


class _MetricsHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        if self.path.split("?", 1)[0] != "/metrics":
            self.send_error(404)
            return
        body = render_metrics().encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        return None


_server: HTTPServer | None = None


def start_metrics_server(port: int = 8005, host: str = "0.0.0.0") -> HTTPServer:
    """Serve ``/metrics`` from a daemon thread; later calls reuse the first server."""
    global _server
    if _server is not None:
        return _server
    _server = HTTPServer((host, port), _MetricsHandler)
    Thread(target=_server.serve_forever, name="deploygate-metrics", daemon=True).start()
    logger.info("metrics.server_started", extra={"extra": {"host": host, "port": port}})
    return _server
