from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from types import TracebackType
from typing import Any

from pydantic import ValidationError

from acp_gateway.gateway.errors import RequestAbortedError, UpstreamError
from acp_gateway.upstream.protocol import AgentClient, SessionUpdate, parse_notification

logger = logging.getLogger("uvicorn.error")

DEADLINE_EXCEEDED = "deadline exceeded"
CLIENT_GONE = "client went away"
SERVER_SHUTDOWN = "server shutdown"


class CancellationSignal:
    """One-shot abort flag shared by everything working on a single request."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str) -> bool:
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        self.disarm()
        return True

    async def wait(self) -> str | None:
        await self._event.wait()
        return self._reason

    def arm_deadline(self, timeout_seconds: float) -> None:
        self.disarm()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(timeout_seconds, self.cancel, DEADLINE_EXCEEDED)

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def abort_error(self) -> RequestAbortedError:
        return RequestAbortedError(self._reason or DEADLINE_EXCEEDED)


class SessionUpdateChannel:
    """Async iterator over the session updates pushed by an agent client."""

    _CLOSED = object()

    def __init__(self, request_id: str) -> None:
        self._request_id = request_id
        # The push callback is synchronous and cannot wait for room.
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, raw: Any) -> None:
        if self._closed:
            return
        try:
            notification = parse_notification(raw)
        except ValidationError as exc:
            self.dropped += 1
            logger.warning(
                "session_update_unparseable request_id=%s error=%s",
                self._request_id,
                exc.errors()[0]["msg"] if exc.errors() else exc,
            )
            return
        self._queue.put_nowait(notification.update)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> AsyncIterator[SessionUpdate]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[SessionUpdate]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item


def check_prompt_result(text: Any) -> str:
    """Raise :class:`UpstreamError` when a resolved prompt result encodes a failure."""
    if not isinstance(text, str):
        return "" if text is None else str(text)
    stripped = text.strip()
    if not stripped.startswith("{"):
        return text
    try:
        parsed = json.loads(stripped)
    except ValueError:
        return text
    if not isinstance(parsed, dict) or "error" not in parsed:
        return text
    error_field = parsed["error"]
    if isinstance(error_field, str):
        raise UpstreamError(error_field)
    if isinstance(error_field, dict):
        status = error_field.get("status") or error_field.get("status_code")
        message = error_field.get("message")
        raise UpstreamError(
            str(message) if message else json.dumps(error_field),
            status_code=status if isinstance(status, int) else None,
        )
    if error_field:
        raise UpstreamError(str(error_field))
    return text


class PromptExecution:
    """A single prompt call on one handle, raced against a cancellation signal.

    Usage::

        async with PromptExecution(client, text, cancellation=signal, request_id=rid) as run:
            async for update in run.updates():
                ...
            answer = await run.result()

    The update sink is installed on entry and always removed on exit.
    """

    def __init__(
        self,
        client: AgentClient,
        prompt_text: str,
        *,
        cancellation: CancellationSignal,
        request_id: str,
    ) -> None:
        self._client = client
        self._prompt_text = prompt_text
        self._cancellation = cancellation
        self._request_id = request_id
        self._channel = SessionUpdateChannel(request_id)
        self._prompt_task: asyncio.Task[str] | None = None
        self._watch_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> PromptExecution:
        if self._cancellation.is_set:
            raise self._cancellation.abort_error()
        self._client.on_session_update(self._channel.push)
        self._prompt_task = asyncio.create_task(self._client.prompt(self._prompt_text))
        self._prompt_task.add_done_callback(lambda _task: self._channel.close())
        self._watch_task = asyncio.create_task(self._watch_cancellation())
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self._client.on_session_update(None)
        self._channel.close()
        if self._channel.dropped:
            logger.warning(
                "session_updates_dropped request_id=%s count=%d",
                self._request_id,
                self._channel.dropped,
            )
        pending = [
            task
            for task in (self._watch_task, self._prompt_task)
            if task is not None and not task.done()
        ]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        prompt_task = self._prompt_task
        if prompt_task is not None and not prompt_task.cancelled():
            # Mark the losing side's outcome as retrieved.
            prompt_task.exception()

    async def _watch_cancellation(self) -> None:
        reason = await self._cancellation.wait()
        prompt_task = self._prompt_task
        if prompt_task is not None and not prompt_task.done():
            logger.warning(
                "prompt_aborted request_id=%s reason=%s",
                self._request_id,
                reason,
            )
            prompt_task.cancel()
        self._channel.close()

    def updates(self) -> AsyncIterator[SessionUpdate]:
        return aiter(self._channel)

    async def result(self) -> str:
        if self._prompt_task is None:
            raise RuntimeError("PromptExecution must be entered before result().")
        try:
            text = await self._prompt_task
        except asyncio.CancelledError:
            if self._cancellation.is_set:
                raise self._cancellation.abort_error() from None
            raise
        return check_prompt_result(text)
