"""Session-update to OpenAI chat-completion translation.

Streaming output is built by :class:`StreamTranslator`. Reasoning that arrives
before any answer content is held back and flushed as a single delta in front
of the first content delta; reasoning that arrives after content has started
is forwarded as it comes. Tool activity, plans, command lists, and mode changes
are upstream-internal and only logged.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from acp_gateway import __version__
from acp_gateway.upstream.protocol import (
    AGENT_MESSAGE_CHUNK,
    AGENT_THOUGHT_CHUNK,
    AVAILABLE_COMMANDS_UPDATE,
    CURRENT_MODE_UPDATE,
    PLAN,
    TOOL_CALL,
    TOOL_CALL_UPDATE,
    USER_MESSAGE_CHUNK,
    SessionUpdate,
)
from acp_gateway.utils.token_utils import estimate_tokens

logger = logging.getLogger("uvicorn.error")

SYSTEM_FINGERPRINT = f"acp-gateway-{__version__}"
DONE_EVENT = b"data: [DONE]\n\n"

_PREVIEW_CHARS = 80


def completion_id_for(request_id: str) -> str:
    return f"chatcmpl-{request_id}"


def sse_event(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n".encode("utf-8")


def chat_completion_chunk(
    completion_id: str,
    created: int,
    model: str,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> bytes:
    return sse_event(
        {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "system_fingerprint": SYSTEM_FINGERPRINT,
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "finish_reason": finish_reason,
                    "logprobs": None,
                }
            ],
        }
    )


def _preview(text: str | None) -> str:
    if not text:
        return ""
    flat = text.replace("\n", " ")
    return flat if len(flat) <= _PREVIEW_CHARS else f"{flat[:_PREVIEW_CHARS]}..."


class StreamTranslator:
    def __init__(
        self,
        *,
        completion_id: str,
        model: str,
        created: int | None = None,
        request_id: str = "-",
    ) -> None:
        self.completion_id = completion_id
        self.model = model
        self.created = created if created is not None else int(time.time())
        self.request_id = request_id
        self._pending_reasoning: list[str] = []
        self._reasoning_flushed = False
        self._content_started = False
        self._role_sent = False
        self._tool_indices: dict[str, int] = {}
        self._next_tool_index = 0
        self._emitted = 0
        self._finished = False

    @property
    def has_emitted(self) -> bool:
        return self._emitted > 0

    @property
    def content_started(self) -> bool:
        return self._content_started

    @property
    def tool_indices(self) -> dict[str, int]:
        return dict(self._tool_indices)

    def _chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> bytes:
        if not self._role_sent and delta:
            delta = {"role": "assistant", **delta}
            self._role_sent = True
        self._emitted += 1
        return chat_completion_chunk(
            self.completion_id,
            self.created,
            self.model,
            delta,
            finish_reason,
        )

    def _flush_reasoning(self) -> list[bytes]:
        if self._reasoning_flushed or not self._pending_reasoning:
            return []
        text = "".join(self._pending_reasoning)
        self._pending_reasoning.clear()
        self._reasoning_flushed = True
        return [self._chunk({"reasoning_content": text})]

    def tool_index(self, tool_call_id: str) -> int:
        index = self._tool_indices.get(tool_call_id)
        if index is None:
            index = self._next_tool_index
            self._tool_indices[tool_call_id] = index
            self._next_tool_index += 1
        return index

    def emit_content(self, text: str | None) -> list[bytes]:
        if not text:
            return []
        out = self._flush_reasoning()
        self._content_started = True
        out.append(self._chunk({"content": text}))
        return out

    def feed(self, update: SessionUpdate) -> list[bytes]:
        kind = update.kind_name
        logger.debug(
            "session_update request_id=%s type=%s tool_call_id=%s status=%s",
            self.request_id,
            kind,
            update.tool_call_id,
            update.status,
        )

        if kind == AGENT_MESSAGE_CHUNK:
            return self.emit_content(update.text)

        if kind == AGENT_THOUGHT_CHUNK:
            text = update.text
            if not text:
                return []
            if not self._content_started:
                self._pending_reasoning.append(text)
                return []
            return [self._chunk({"reasoning_content": text})]

        if kind == USER_MESSAGE_CHUNK:
            logger.debug(
                "session_user_echo request_id=%s text=%s",
                self.request_id,
                _preview(update.text),
            )
        elif kind in (TOOL_CALL, TOOL_CALL_UPDATE):
            tool_call_id = update.tool_call_id or f"unknown-{self._next_tool_index}"
            logger.info(
                "session_tool_activity request_id=%s type=%s index=%d tool_call_id=%s "
                "title=%s kind=%s status=%s",
                self.request_id,
                kind,
                self.tool_index(tool_call_id),
                tool_call_id,
                update.title,
                update.tool_kind,
                update.status,
            )
        elif kind == PLAN:
            logger.info(
                "session_plan request_id=%s entries=%d completed=%d",
                self.request_id,
                len(update.entries),
                sum(1 for entry in update.entries if entry.status == "completed"),
            )
        elif kind == AVAILABLE_COMMANDS_UPDATE:
            logger.info(
                "session_commands request_id=%s commands=%s",
                self.request_id,
                ",".join(command.name for command in update.available_commands),
            )
        elif kind == CURRENT_MODE_UPDATE:
            logger.info(
                "session_mode request_id=%s mode=%s",
                self.request_id,
                update.current_mode_id,
            )
        else:
            logger.info(
                "session_update_unknown request_id=%s type=%s",
                self.request_id,
                kind,
            )
        return []

    def finish(self) -> list[bytes]:
        if self._finished:
            return []
        self._finished = True
        out = self._flush_reasoning()
        out.append(self._chunk({}, finish_reason="stop"))
        out.append(DONE_EVENT)
        return out

    def error_event(self, envelope: dict[str, Any]) -> bytes:
        self._finished = True
        self._emitted += 1
        return sse_event(envelope)


class ResponseAccumulator:
    """Collapses a session-update stream into the final answer text."""

    def __init__(self) -> None:
        self._parts: list[str] = []

    def feed(self, update: SessionUpdate) -> None:
        if update.kind_name == AGENT_MESSAGE_CHUNK and update.text:
            self._parts.append(update.text)

    @property
    def has_text(self) -> bool:
        return bool(self._parts)

    @property
    def text(self) -> str:
        return "".join(self._parts)


def build_chat_completion(
    *,
    content: str,
    model: str,
    request_id: str,
    prompt_text: str,
    created: int | None = None,
) -> dict[str, Any]:
    prompt_tokens = estimate_tokens(prompt_text)
    completion_tokens = estimate_tokens(content)
    return {
        "id": completion_id_for(request_id),
        "object": "chat.completion",
        "created": created if created is not None else int(time.time()),
        "model": model,
        "system_fingerprint": SYSTEM_FINGERPRINT,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "logprobs": None,
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }
