from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from acp_gateway.config import ModelCatalog
from acp_gateway.gateway.errors import (
    ErrorKind,
    GatewayError,
    RequestAbortedError,
    RequestValidationError,
    classify_exception,
    requires_handle_eviction,
)
from acp_gateway.gateway.pool import ClientPool, PooledHandle
from acp_gateway.gateway.retry import RetryPolicy, run_with_retry
from acp_gateway.gateway.translator import (
    DONE_EVENT,
    ResponseAccumulator,
    StreamTranslator,
    build_chat_completion,
    completion_id_for,
)
from acp_gateway.runtime.metrics import (
    OUTCOME_ABORTED,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    RequestMetrics,
)
from acp_gateway.upstream.channel import SERVER_SHUTDOWN, CancellationSignal, PromptExecution
from acp_gateway.validation import (
    ChatMessage,
    extract_workspace_root,
    format_messages,
    parse_json_body,
    validate_chat_request,
)

logger = logging.getLogger("uvicorn.error")

SleepFn = Callable[[float], Awaitable[None]]


class RequestState(str, Enum):
    VALIDATING = "validating"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    BUFFERING = "buffering"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({RequestState.COMPLETED, RequestState.FAILED, RequestState.ABORTED})


@dataclass(eq=False, slots=True)
class RequestContext:
    request_id: str
    model: str
    messages: tuple[ChatMessage, ...]
    stream: bool
    prompt_text: str
    workspace_root: str | None = None
    cancellation: CancellationSignal = field(default_factory=CancellationSignal)
    state: RequestState = RequestState.VALIDATING
    started_at: float = field(default_factory=time.monotonic)
    created: int = field(default_factory=lambda: int(time.time()))
    attempts: int = 0

    @property
    def completion_id(self) -> str:
        return completion_id_for(self.request_id)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000.0


class RequestOrchestrator:
    """Runs one chat-completion request from validation to a terminal state."""

    def __init__(
        self,
        *,
        catalog: ModelCatalog,
        pool: ClientPool,
        retry_policy: RetryPolicy,
        metrics: RequestMetrics,
        request_timeout_seconds: float = 300.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._catalog = catalog
        self._pool = pool
        self._retry_policy = retry_policy
        self._metrics = metrics
        self._request_timeout_seconds = request_timeout_seconds
        self._sleep = sleep
        self._active: set[RequestContext] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._accepting = True

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def pool(self) -> ClientPool:
        return self._pool

    @property
    def metrics(self) -> RequestMetrics:
        return self._metrics

    def begin(self, payload: Any, request_id: str) -> RequestContext:
        """Validate the request body and register the request as in flight."""
        self._metrics.record_start()
        started_at = time.monotonic()
        if not self._accepting:
            self._metrics.record_finish(
                OUTCOME_FAILURE, 0.0, ErrorKind.SERVICE_UNAVAILABLE.value
            )
            raise GatewayError(ErrorKind.SERVICE_UNAVAILABLE, "Server is shutting down")
        try:
            if isinstance(payload, (bytes, bytearray)):
                payload = parse_json_body(bytes(payload))
            request = validate_chat_request(payload)
        except RequestValidationError as exc:
            self._metrics.record_finish(
                OUTCOME_FAILURE,
                (time.monotonic() - started_at) * 1000.0,
                exc.kind.value,
            )
            logger.info(
                "request_rejected request_id=%s code=%s param=%s",
                request_id,
                exc.code,
                exc.param,
            )
            raise

        model = request.model or self._catalog.default_model
        self._metrics.record_model(model)
        if self._catalog.get(model) is None:
            logger.warning(
                "request_unknown_model request_id=%s model=%s default_model=%s",
                request_id,
                model,
                self._catalog.default_model,
            )
        ctx = RequestContext(
            request_id=request_id,
            model=model,
            messages=request.messages,
            stream=request.stream,
            prompt_text=format_messages(request.messages),
            workspace_root=extract_workspace_root(request.messages),
            started_at=started_at,
            state=RequestState.DISPATCHING,
        )
        self._active.add(ctx)
        self._idle.clear()
        logger.info(
            "request_start request_id=%s model=%s stream=%s messages=%d workspace=%s",
            request_id,
            model,
            ctx.stream,
            len(ctx.messages),
            ctx.workspace_root or "-",
        )
        return ctx

    def _finish(
        self,
        ctx: RequestContext,
        state: RequestState,
        error_kind: ErrorKind | None = None,
    ) -> None:
        if ctx.finished:
            return
        ctx.state = state
        ctx.cancellation.disarm()
        self._active.discard(ctx)
        if not self._active:
            self._idle.set()
        outcome = {
            RequestState.COMPLETED: OUTCOME_SUCCESS,
            RequestState.ABORTED: OUTCOME_ABORTED,
        }.get(state, OUTCOME_FAILURE)
        latency_ms = ctx.elapsed_ms
        self._metrics.record_finish(
            outcome,
            latency_ms,
            error_kind.value if error_kind is not None else None,
        )
        log = logger.info if state == RequestState.COMPLETED else logger.error
        log(
            "request_finished request_id=%s state=%s model=%s attempts=%d latency_ms=%.2f "
            "error_kind=%s",
            ctx.request_id,
            state.value,
            ctx.model,
            ctx.attempts,
            latency_ms,
            error_kind.value if error_kind is not None else "-",
        )

    def _to_gateway_error(self, exc: BaseException) -> GatewayError:
        return GatewayError.from_exception(exc, default_model=self._catalog.default_model)

    def _terminal_state(self, ctx: RequestContext, exc: BaseException) -> RequestState:
        if ctx.cancellation.is_set or isinstance(exc, RequestAbortedError):
            return RequestState.ABORTED
        return RequestState.FAILED

    async def _acquire(self, ctx: RequestContext) -> PooledHandle:
        if ctx.cancellation.is_set:
            raise ctx.cancellation.abort_error()
        acquire_task = asyncio.create_task(
            self._pool.acquire(ctx.model, ctx.workspace_root, request_id=ctx.request_id)
        )
        abort_task = asyncio.create_task(ctx.cancellation.wait())
        try:
            await asyncio.wait(
                (acquire_task, abort_task),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._reclaim(acquire_task)
            raise
        finally:
            abort_task.cancel()
        if acquire_task.done():
            return acquire_task.result()
        await self._reclaim(acquire_task)
        raise ctx.cancellation.abort_error()

    async def _reclaim(self, acquire_task: asyncio.Task[PooledHandle]) -> None:
        # A completed acquisition still holds a checked-out handle.
        acquire_task.cancel()
        await asyncio.gather(acquire_task, return_exceptions=True)
        if not acquire_task.cancelled() and acquire_task.exception() is None:
            await self._pool.discard(acquire_task.result(), reason="aborted")

    async def _dispose(self, ctx: RequestContext, handle: PooledHandle, exc: BaseException) -> None:
        aborted = ctx.cancellation.is_set or isinstance(
            exc, (asyncio.CancelledError, GeneratorExit, RequestAbortedError)
        )
        if aborted:
            await self._pool.discard(handle, reason="aborted")
        elif requires_handle_eviction(exc):
            await self._pool.discard(handle, reason=classify_exception(exc).value)
        else:
            await self._pool.release(handle)

    async def _backoff(self, ctx: RequestContext, seconds: float) -> None:
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(ctx.cancellation.wait())
        try:
            await asyncio.wait((sleeper, waiter), return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()

    def _open_execution(self, ctx: RequestContext, handle: PooledHandle) -> PromptExecution:
        ctx.attempts += 1
        return PromptExecution(
            handle.client,
            ctx.prompt_text,
            cancellation=ctx.cancellation,
            request_id=ctx.request_id,
        )

    async def _attempt_buffered(self, ctx: RequestContext) -> str:
        handle = await self._acquire(ctx)
        accumulator = ResponseAccumulator()
        try:
            async with self._open_execution(ctx, handle) as execution:
                async for update in execution.updates():
                    accumulator.feed(update)
                answer = await execution.result()
        except BaseException as exc:
            await self._dispose(ctx, handle, exc)
            raise
        await self._pool.release(handle)
        return accumulator.text if accumulator.has_text else answer

    async def complete(self, ctx: RequestContext) -> dict[str, Any]:
        ctx.state = RequestState.BUFFERING
        ctx.cancellation.arm_deadline(self._request_timeout_seconds)
        try:
            content = await run_with_retry(
                lambda: self._attempt_buffered(ctx),
                policy=self._retry_policy,
                operation_name="prompt",
                request_id=ctx.request_id,
                can_retry=lambda: not ctx.cancellation.is_set,
                sleep=lambda seconds: self._backoff(ctx, seconds),
                on_retry=lambda *_: self._metrics.record_retry(),
            )
        except asyncio.CancelledError:
            self._finish(ctx, RequestState.ABORTED, ErrorKind.REQUEST_TIMEOUT)
            raise
        except Exception as exc:
            error = self._to_gateway_error(exc)
            self._finish(ctx, self._terminal_state(ctx, exc), error.kind)
            raise error from exc
        self._finish(ctx, RequestState.COMPLETED)
        return build_chat_completion(
            content=content,
            model=ctx.model,
            request_id=ctx.request_id,
            prompt_text=ctx.prompt_text,
            created=ctx.created,
        )

    async def _attempt_stream(
        self,
        ctx: RequestContext,
        translator: StreamTranslator,
    ) -> AsyncIterator[bytes]:
        handle = await self._acquire(ctx)
        try:
            async with self._open_execution(ctx, handle) as execution:
                async for update in execution.updates():
                    for chunk in translator.feed(update):
                        yield chunk
                answer = await execution.result()
            tail: list[bytes] = []
            if not translator.content_started and answer:
                tail.extend(translator.emit_content(answer))
            tail.extend(translator.finish())
        except BaseException as exc:
            await self._dispose(ctx, handle, exc)
            raise
        await self._pool.release(handle)
        for chunk in tail:
            yield chunk

    async def stream(self, ctx: RequestContext) -> AsyncIterator[bytes]:
        """Yield SSE bytes for ``ctx``.

        Failures before anything is yielded are retried per the retry policy
        and finally raised as :class:`GatewayError`. Once a chunk has been
        yielded a failure ends the stream with a single error event instead.
        """
        ctx.state = RequestState.STREAMING
        ctx.cancellation.arm_deadline(self._request_timeout_seconds)
        attempt = 0
        try:
            while True:
                translator = StreamTranslator(
                    completion_id=ctx.completion_id,
                    model=ctx.model,
                    created=ctx.created,
                    request_id=ctx.request_id,
                )
                try:
                    async with contextlib.aclosing(self._attempt_stream(ctx, translator)) as chunks:
                        async for chunk in chunks:
                            if chunk == DONE_EVENT:
                                self._finish(ctx, RequestState.COMPLETED)
                            yield chunk
                except Exception as exc:
                    error = self._to_gateway_error(exc)
                    if translator.has_emitted:
                        self._finish(ctx, self._terminal_state(ctx, exc), error.kind)
                        yield translator.error_event(error.to_envelope())
                        return
                    delay_ms = None
                    if not ctx.cancellation.is_set:
                        delay_ms = self._retry_policy.decide(exc, attempt)
                    if delay_ms is None:
                        self._finish(ctx, self._terminal_state(ctx, exc), error.kind)
                        raise error from exc
                    logger.warning(
                        "retry_scheduled request_id=%s operation=stream attempt=%d/%d "
                        "delay_ms=%d error_kind=%s error=%s",
                        ctx.request_id,
                        attempt + 1,
                        self._retry_policy.max_attempts,
                        delay_ms,
                        error.kind.value,
                        exc,
                    )
                    self._metrics.record_retry()
                    await self._backoff(ctx, delay_ms / 1000.0)
                    attempt += 1
                    continue
                self._finish(ctx, RequestState.COMPLETED)
                return
        except (asyncio.CancelledError, GeneratorExit):
            self._finish(ctx, RequestState.ABORTED, ErrorKind.REQUEST_TIMEOUT)
            raise

    async def shutdown(self, timeout_seconds: float) -> None:
        self._accepting = False
        remaining = len(self._active)
        logger.info(
            "orchestrator_draining active=%d timeout_seconds=%.1f",
            remaining,
            timeout_seconds,
        )
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=max(0.0, timeout_seconds))
        except TimeoutError:
            stuck = list(self._active)
            logger.warning("orchestrator_drain_timeout cancelling=%d", len(stuck))
            for ctx in stuck:
                ctx.cancellation.cancel(SERVER_SHUTDOWN)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._idle.wait(), timeout=1.0)
        await self._pool.shutdown()
