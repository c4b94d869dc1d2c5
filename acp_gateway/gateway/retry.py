from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from acp_gateway.gateway.errors import classify_exception, is_retryable

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]
RetryHook = Callable[[BaseException, int, float], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must be >= 0")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be between 0 and 1")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def compute_delay_ms(
        self,
        attempt: int,
        rng: Callable[[], float] = random.random,
    ) -> int:
        """Delay before retrying after the 0-indexed ``attempt`` failed."""
        base = min(
            self.initial_delay_ms * (self.backoff_multiplier**attempt),
            self.max_delay_ms,
        )
        jitter = base * self.jitter_factor * (rng() * 2.0 - 1.0)
        return max(0, math.floor(base + jitter))

    def decide(
        self,
        exc: BaseException,
        attempt: int,
        rng: Callable[[], float] = random.random,
    ) -> int | None:
        """Return the delay in ms before the next attempt, or None to give up."""
        if attempt >= self.max_retries or not is_retryable(exc):
            return None
        return self.compute_delay_ms(attempt, rng)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    operation_name: str,
    request_id: str = "-",
    can_retry: Callable[[], bool] | None = None,
    sleep: SleepFn = asyncio.sleep,
    on_retry: RetryHook | None = None,
    rng: Callable[[], float] = random.random,
) -> T:
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            delay_ms = policy.decide(exc, attempt, rng)
            if delay_ms is None or (can_retry is not None and not can_retry()):
                if attempt > 0:
                    logger.warning(
                        "retry_exhausted request_id=%s operation=%s attempts=%d error_kind=%s",
                        request_id,
                        operation_name,
                        attempt + 1,
                        classify_exception(exc).value,
                    )
                raise
            logger.warning(
                "retry_scheduled request_id=%s operation=%s attempt=%d/%d delay_ms=%d "
                "error_kind=%s error=%s",
                request_id,
                operation_name,
                attempt + 1,
                policy.max_attempts,
                delay_ms,
                classify_exception(exc).value,
                exc,
            )
            if on_retry is not None:
                on_retry(exc, attempt, delay_ms / 1000.0)
            await sleep(delay_ms / 1000.0)
            attempt += 1
