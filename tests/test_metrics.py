from __future__ import annotations

from acp_gateway.runtime.metrics import (
    OUTCOME_ABORTED,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    BoundedCounterMap,
    RequestMetrics,
    format_uptime,
    render_prometheus_metrics,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_record_finish_tracks_outcomes_and_latency() -> None:
    metrics = RequestMetrics()
    for _ in range(4):
        metrics.record_start()
    metrics.record_finish(OUTCOME_SUCCESS, 100.0)
    metrics.record_finish(OUTCOME_SUCCESS, 300.0)
    metrics.record_finish(OUTCOME_FAILURE, 200.0, "rate_limited")
    metrics.record_finish(OUTCOME_ABORTED, 400.0, "request_timeout")

    assert metrics.active_requests == 0
    assert metrics.successful_requests == 2
    assert metrics.failed_requests == 2
    assert metrics.aborted_requests == 1
    assert metrics.average_latency_ms == 250.0
    assert metrics.success_rate == 0.5

    snapshot = metrics.snapshot()
    assert snapshot["success_rate"] == "50.00%"
    assert snapshot["errors_by_kind"] == {"rate_limited": 1, "request_timeout": 1}


def test_fresh_metrics_report_full_success_rate() -> None:
    metrics = RequestMetrics()
    assert metrics.success_rate == 1.0
    assert metrics.average_latency_ms == 0.0


def test_active_requests_never_go_negative() -> None:
    metrics = RequestMetrics()
    metrics.record_finish(OUTCOME_FAILURE, 0.0, "validation")
    assert metrics.active_requests == 0


def test_bounded_counter_map_evicts_least_recent_key() -> None:
    counters: BoundedCounterMap[str] = BoundedCounterMap(max_keys=2)
    counters.increment("a")
    counters.increment("b")
    counters.increment("a")
    counters.increment("c")
    assert counters.to_dict() == {"a": 2, "c": 1}


def test_uptime_uses_injected_clock() -> None:
    clock = _Clock()
    metrics = RequestMetrics(clock=clock)
    clock.now += 3725
    assert metrics.uptime_seconds == 3725
    assert format_uptime(metrics.uptime_seconds) == "1h 2m 5s"


def test_format_uptime() -> None:
    assert format_uptime(0) == "0s"
    assert format_uptime(59.9) == "59s"
    assert format_uptime(90061) == "1d 1h 1m 1s"


def test_prometheus_rendering_declares_each_metric_once() -> None:
    metrics = RequestMetrics()
    metrics.record_start()
    metrics.record_model("claude-opus-4-6")
    metrics.record_start()
    metrics.record_model('odd"model')
    metrics.record_finish(OUTCOME_FAILURE, 10.0, "transient")

    text = render_prometheus_metrics(
        metrics,
        {"available": 1, "in_use": 2, "creating": 0, "overflow_created": 3, "evicted": 4},
    )

    assert text.endswith("\n")
    assert text.count("# TYPE acp_gateway_requests_by_model_total counter") == 1
    assert 'acp_gateway_requests_by_model_total{model="claude-opus-4-6"} 1.000000' in text
    assert 'acp_gateway_requests_by_model_total{model="odd\\"model"} 1.000000' in text
    assert 'acp_gateway_errors_by_kind_total{kind="transient"} 1.000000' in text
    assert "acp_gateway_requests_active 1.000000" in text
    assert "acp_gateway_pool_handles_in_use 2.000000" in text
    assert "acp_gateway_pool_evicted_total 4.000000" in text


def test_prometheus_rendering_without_pool_stats() -> None:
    text = render_prometheus_metrics(RequestMetrics())
    assert "acp_gateway_requests_total 0.000000" in text
    assert "acp_gateway_pool_" not in text
