"""Prometheus-format metrics for the UEM AI gateway.

Counts requests, cache hits, rejections, tokens and spend per operation
and exposes them on /metrics.  Values live in thread-safe in-process
counters and histograms; no prometheus_client dependency.

Each histogram carries its own bucket bounds: latency in seconds and
per-request spend in USD.  The cache hit ratio per endpoint is derived
from the request counters at render time.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, field

from fastapi import APIRouter, Response

LabelKey = tuple[tuple[str, str], ...]

LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
COST_BUCKETS = (0.0001, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0)

_HISTOGRAM_BOUNDS = {
    "uemgw_request_duration_seconds": LATENCY_BUCKETS,
    "uemgw_request_cost_usd": COST_BUCKETS,
}


@dataclass
class _Series:
    bounds: tuple[float, ...]
    hits: list[int] = field(init=False)
    total: float = 0.0
    count: int = 0

    def __post_init__(self) -> None:
        self.hits = [0] * len(self.bounds)

    def observe(self, value: float) -> None:
        self.total += value
        self.count += 1
        for index, bound in enumerate(self.bounds):
            if value <= bound:
                self.hits[index] += 1
                break


_lock = threading.Lock()
_counters: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
_histograms: dict[str, dict[LabelKey, _Series]] = defaultdict(dict)


def _key(labels: dict[str, str]) -> LabelKey:
    return tuple(sorted(labels.items()))


def inc_counter(name: str, labels: dict[str, str], value: float = 1.0) -> None:
    with _lock:
        _counters[name][_key(labels)] += value


def observe_histogram(name: str, labels: dict[str, str], value: float) -> None:
    key = _key(labels)
    with _lock:
        series = _histograms[name].get(key)
        if series is None:
            series = _Series(_HISTOGRAM_BOUNDS.get(name, LATENCY_BUCKETS))
            _histograms[name][key] = series
        series.observe(value)


def counter_value(name: str, labels: dict[str, str]) -> float:
    with _lock:
        return _counters.get(name, {}).get(_key(labels), 0.0)


def reset_metrics() -> None:
    with _lock:
        _counters.clear()
        _histograms.clear()


def _labels(pairs: LabelKey, **extra: str) -> str:
    merged = dict(pairs) | extra
    if not merged:
        return ""
    escaped = (
        (name, value.replace("\\", "\\\\").replace('"', '\\"'))
        for name, value in sorted(merged.items())
    )
    return "{" + ",".join(f'{name}="{value}"' for name, value in escaped) + "}"


def _cache_hit_ratios() -> dict[str, float]:
    served: dict[str, float] = defaultdict(float)
    for pairs, value in _counters.get("uemgw_requests_total", {}).items():
        served[dict(pairs)["endpoint"]] += value
    hits = {
        dict(pairs)["endpoint"]: value
        for pairs, value in _counters.get("uemgw_cache_hits_total", {}).items()
    }
    return {
        endpoint: round(hits.get(endpoint, 0.0) / total, 4)
        for endpoint, total in served.items()
        if total
    }


def render_metrics() -> str:
    lines: list[str] = []
    with _lock:
        for name, values in sorted(_counters.items()):
            lines.append(f"# TYPE {name} counter")
            for pairs, value in sorted(values.items()):
                lines.append(f"{name}{_labels(pairs)} {value}")

        ratios = _cache_hit_ratios()
        if ratios:
            lines.append("# TYPE uemgw_cache_hit_ratio gauge")
            for endpoint, ratio in sorted(ratios.items()):
                lines.append(f'uemgw_cache_hit_ratio{{endpoint="{endpoint}"}} {ratio}')

        for name, by_labels in sorted(_histograms.items()):
            lines.append(f"# TYPE {name} histogram")
            for pairs, series in sorted(by_labels.items()):
                cumulative = 0
                for bound, hits in zip(series.bounds, series.hits):
                    cumulative += hits
                    lines.append(f"{name}_bucket{_labels(pairs, le=str(bound))} {cumulative}")
                lines.append(f"{name}_bucket{_labels(pairs, le='+Inf')} {series.count}")
                lines.append(f"{name}_sum{_labels(pairs)} {series.total}")
                lines.append(f"{name}_count{_labels(pairs)} {series.count}")

    lines.append("")
    return "\n".join(lines)


# -- Gateway helpers --


def record_request(
    endpoint: str,
    model: str,
    status_code: int,
    latency_s: float,
    cached: bool = False,
    tokens_in: int = 0,
    tokens_out: int = 0,
    cost_usd: float = 0.0,
) -> None:
    """Record all metrics for one finished pipeline execution."""
    base_labels = {"endpoint": endpoint, "model": model}

    inc_counter(
        "uemgw_requests_total",
        {**base_labels, "status": str(status_code), "cached": str(cached).lower()},
    )
    observe_histogram("uemgw_request_duration_seconds", base_labels, latency_s)

    if cached:
        inc_counter("uemgw_cache_hits_total", {"endpoint": endpoint})
    for direction, tokens in (("input", tokens_in), ("output", tokens_out)):
        if tokens > 0:
            inc_counter("uemgw_tokens_total", {**base_labels, "direction": direction}, tokens)
    if cost_usd > 0:
        inc_counter("uemgw_cost_usd_total", base_labels, cost_usd)
        observe_histogram("uemgw_request_cost_usd", base_labels, cost_usd)


def record_rejection(endpoint: str, reason: str) -> None:
    inc_counter("uemgw_rejections_total", {"endpoint": endpoint, "reason": reason})


metrics_router = APIRouter()


@metrics_router.get("/metrics")
def prometheus_metrics() -> Response:
    return Response(content=render_metrics(), media_type="text/plain; charset=utf-8")
