from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import ItemsView
from typing import Any

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_ABORTED = "aborted"


class BoundedCounterMap[K]:
    """Counter keyed by ``K`` that evicts the least recently touched key."""

    def __init__(self, max_keys: int):
        self._max_keys = max(1, int(max_keys))
        self._data: OrderedDict[K, int] = OrderedDict()

    def increment(self, key: K, amount: int = 1) -> int:
        is_new = key not in self._data
        value = self._data.get(key, 0) + int(amount)
        self._data[key] = value
        self._data.move_to_end(key)
        if is_new and len(self._data) > self._max_keys:
            self._data.popitem(last=False)
        return value

    def get(self, key: K, default: int = 0) -> int:
        return self._data.get(key, default)

    def items(self) -> ItemsView[K, int]:
        return self._data.items()

    def to_dict(self) -> dict[K, int]:
        return dict(self._data)


class RequestMetrics:
    """Process-wide request counters.

    Every mutation is plain arithmetic with no suspension point, so interleaved
    requests on the event loop never observe a half-applied update.
    """

    def __init__(
        self,
        *,
        model_max_keys: int = 256,
        error_kind_max_keys: int = 64,
        clock: Any = time.monotonic,
    ) -> None:
        self._clock = clock
        self.started_at = clock()
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.aborted_requests = 0
        self.active_requests = 0
        self.retries_total = 0
        self.total_latency_ms = 0.0
        self.completed_requests = 0
        self.requests_by_model: BoundedCounterMap[str] = BoundedCounterMap(
            max_keys=model_max_keys
        )
        self.errors_by_kind: BoundedCounterMap[str] = BoundedCounterMap(
            max_keys=error_kind_max_keys
        )

    def record_start(self) -> None:
        self.total_requests += 1
        self.active_requests += 1

    def record_model(self, model: str) -> None:
        self.requests_by_model.increment(model)

    def record_retry(self) -> None:
        self.retries_total += 1

    def record_finish(
        self,
        outcome: str,
        latency_ms: float,
        error_kind: str | None = None,
    ) -> None:
        self.active_requests = max(0, self.active_requests - 1)
        self.completed_requests += 1
        self.total_latency_ms += max(0.0, float(latency_ms))
        if outcome == OUTCOME_SUCCESS:
            self.successful_requests += 1
            return
        self.failed_requests += 1
        if outcome == OUTCOME_ABORTED:
            self.aborted_requests += 1
        if error_kind:
            self.errors_by_kind.increment(error_kind)

    @property
    def uptime_seconds(self) -> float:
        return max(0.0, self._clock() - self.started_at)

    @property
    def average_latency_ms(self) -> float:
        if self.completed_requests == 0:
            return 0.0
        return self.total_latency_ms / self.completed_requests

    @property
    def success_rate(self) -> float:
        finished = self.successful_requests + self.failed_requests
        if finished == 0:
            return 1.0
        return self.successful_requests / finished

    def snapshot(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "aborted_requests": self.aborted_requests,
            "active_requests": self.active_requests,
            "retries_total": self.retries_total,
            "average_latency_ms": round(self.average_latency_ms, 2),
            "success_rate": f"{self.success_rate * 100:.2f}%",
            "requests_by_model": self.requests_by_model.to_dict(),
            "errors_by_kind": self.errors_by_kind.to_dict(),
        }


def format_uptime(seconds: float) -> str:
    total = int(max(0.0, seconds))
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    parts: list[str] = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


def _prometheus_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prometheus_labels(labels: dict[str, str] | None) -> str:
    if not labels:
        return ""
    rendered = ",".join(
        f'{key}="{_prometheus_escape(str(value))}"' for key, value in sorted(labels.items())
    )
    return "{" + rendered + "}"


def _append_prometheus_metric(
    lines: list[str],
    declared: set[str],
    *,
    name: str,
    metric_type: str,
    help_text: str,
    value: float | int,
    labels: dict[str, str] | None = None,
) -> None:
    if name not in declared:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {metric_type}")
        declared.add(name)
    lines.append(f"{name}{_prometheus_labels(labels)} {float(value):.6f}")


def render_prometheus_metrics(
    metrics: RequestMetrics,
    pool_stats: dict[str, Any] | None = None,
) -> str:
    lines: list[str] = []
    declared: set[str] = set()

    counters = (
        ("acp_gateway_requests_total", "Chat completion requests received.", metrics.total_requests),
        (
            "acp_gateway_requests_successful_total",
            "Chat completion requests that completed.",
            metrics.successful_requests,
        ),
        (
            "acp_gateway_requests_failed_total",
            "Chat completion requests that failed or were aborted.",
            metrics.failed_requests,
        ),
        (
            "acp_gateway_requests_aborted_total",
            "Chat completion requests aborted by deadline or disconnect.",
            metrics.aborted_requests,
        ),
        ("acp_gateway_retries_total", "Upstream prompt retries.", metrics.retries_total),
        (
            "acp_gateway_request_latency_ms_sum",
            "Cumulative latency of finished requests in milliseconds.",
            metrics.total_latency_ms,
        ),
    )
    for name, help_text, value in counters:
        _append_prometheus_metric(
            lines,
            declared,
            name=name,
            metric_type="counter",
            help_text=help_text,
            value=value,
        )
    _append_prometheus_metric(
        lines,
        declared,
        name="acp_gateway_requests_active",
        metric_type="gauge",
        help_text="Chat completion requests currently in flight.",
        value=metrics.active_requests,
    )
    _append_prometheus_metric(
        lines,
        declared,
        name="acp_gateway_uptime_seconds",
        metric_type="gauge",
        help_text="Seconds since the gateway started.",
        value=metrics.uptime_seconds,
    )
    for model, count in sorted(metrics.requests_by_model.items()):
        _append_prometheus_metric(
            lines,
            declared,
            name="acp_gateway_requests_by_model_total",
            metric_type="counter",
            help_text="Chat completion requests by requested model.",
            value=count,
            labels={"model": model},
        )
    for kind, count in sorted(metrics.errors_by_kind.items()):
        _append_prometheus_metric(
            lines,
            declared,
            name="acp_gateway_errors_by_kind_total",
            metric_type="counter",
            help_text="Failed requests by error kind.",
            value=count,
            labels={"kind": kind},
        )

    if pool_stats:
        for field_name in ("available", "in_use", "creating"):
            _append_prometheus_metric(
                lines,
                declared,
                name=f"acp_gateway_pool_handles_{field_name}",
                metric_type="gauge",
                help_text=f"Pooled agent client handles currently {field_name.replace('_', ' ')}.",
                value=int(pool_stats.get(field_name, 0)),
            )
        _append_prometheus_metric(
            lines,
            declared,
            name="acp_gateway_pool_overflow_created_total",
            metric_type="counter",
            help_text="Temporary handles created while a pool was saturated.",
            value=int(pool_stats.get("overflow_created", 0)),
        )
        _append_prometheus_metric(
            lines,
            declared,
            name="acp_gateway_pool_evicted_total",
            metric_type="counter",
            help_text="Handles discarded after a session fault or abort.",
            value=int(pool_stats.get("evicted", 0)),
        )

    return "\n".join(lines) + "\n"
