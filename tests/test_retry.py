from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from acp_gateway.gateway.retry import RetryPolicy, run_with_retry


def test_compute_delay_without_jitter_is_exponential_and_capped() -> None:
    policy = RetryPolicy(
        max_retries=5,
        initial_delay_ms=100,
        max_delay_ms=1000,
        backoff_multiplier=3.0,
        jitter_factor=0.0,
    )
    assert [policy.compute_delay_ms(n) for n in range(4)] == [100, 300, 900, 1000]


def test_compute_delay_jitter_bounds() -> None:
    policy = RetryPolicy(initial_delay_ms=1000, jitter_factor=0.1)
    assert policy.compute_delay_ms(0, rng=lambda: 0.0) == 900
    assert policy.compute_delay_ms(0, rng=lambda: 1.0) == 1100
    assert policy.compute_delay_ms(0, rng=lambda: 0.5) == 1000


def test_decide_refuses_non_retryable_and_exhausted_attempts() -> None:
    policy = RetryPolicy(max_retries=2, jitter_factor=0.0)
    assert policy.decide(RuntimeError("ECONNRESET"), 0) == 1000
    assert policy.decide(RuntimeError("ECONNRESET"), 2) is None
    assert policy.decide(RuntimeError("context length exceeded"), 0) is None
    assert policy.decide(RuntimeError("Unauthorized"), 0) is None


def test_policy_rejects_invalid_parameters() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_retries=-1)
    with pytest.raises(ValueError):
        RetryPolicy(backoff_multiplier=0.5)
    with pytest.raises(ValueError):
        RetryPolicy(jitter_factor=1.5)


def test_transient_failure_is_attempted_max_retries_plus_one_times(caplog: Any) -> None:
    policy = RetryPolicy(
        max_retries=3,
        initial_delay_ms=100,
        max_delay_ms=250,
        backoff_multiplier=2.0,
        jitter_factor=0.1,
    )
    calls = 0
    delays: list[float] = []

    async def operation() -> str:
        nonlocal calls
        calls += 1
        raise RuntimeError("service unavailable")

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds * 1000.0)

    with caplog.at_level(logging.WARNING), pytest.raises(RuntimeError):
        asyncio.run(
            run_with_retry(
                operation,
                policy=policy,
                operation_name="prompt",
                request_id="r-1",
                sleep=fake_sleep,
            )
        )

    assert calls == policy.max_retries + 1
    assert len(delays) == policy.max_retries
    for attempt, delay in enumerate(delays):
        base = min(100 * 2.0**attempt, 250)
        assert base * 0.9 - 1 <= delay <= base * 1.1 + 1e-6
        assert delay <= 250 * 1.1 + 1e-6
    assert "retry_scheduled request_id=r-1" in caplog.text
    assert "retry_exhausted request_id=r-1" in caplog.text


def test_non_retryable_failure_propagates_immediately() -> None:
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        raise RuntimeError("Unauthorized")

    async def fake_sleep(_seconds: float) -> None:
        raise AssertionError("should not sleep")

    with pytest.raises(RuntimeError, match="Unauthorized"):
        asyncio.run(
            run_with_retry(
                operation,
                policy=RetryPolicy(),
                operation_name="prompt",
                sleep=fake_sleep,
            )
        )
    assert calls == 1


def test_retry_recovers_and_reports_each_retry() -> None:
    outcomes: list[Exception | str] = [
        RuntimeError("rate limit"),
        RuntimeError("not connected"),
        "ok",
    ]
    retries: list[int] = []

    async def operation() -> str:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def fake_sleep(_seconds: float) -> None:
        return None

    result = asyncio.run(
        run_with_retry(
            operation,
            policy=RetryPolicy(jitter_factor=0.0),
            operation_name="prompt",
            sleep=fake_sleep,
            on_retry=lambda _exc, attempt, _delay: retries.append(attempt),
        )
    )
    assert result == "ok"
    assert retries == [0, 1]


def test_can_retry_false_stops_retrying() -> None:
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        raise RuntimeError("ECONNRESET")

    async def fake_sleep(_seconds: float) -> None:
        return None

    with pytest.raises(RuntimeError):
        asyncio.run(
            run_with_retry(
                operation,
                policy=RetryPolicy(),
                operation_name="prompt",
                can_retry=lambda: False,
                sleep=fake_sleep,
            )
        )
    assert calls == 1
