from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from acp_gateway.gateway.errors import RequestValidationError

ALLOWED_ROLES = ("user", "assistant", "system", "tool", "function")

ROLE_LABELS = {
    "user": "User",
    "assistant": "Assistant",
    "system": "System",
    "tool": "Tool Result",
    "function": "Function Result",
}

_SUPERVISOR_WORKSPACE_RE = re.compile(
    r"<supervisor>[^<]*?(?:workspace is opened at|workspace is)\s+[`\"']?([^`\"'<\n]+)[`\"']?",
    re.IGNORECASE,
)
_LABELLED_WORKSPACE_RE = re.compile(
    r"(?:workspace|working directory|cwd):\s*[`\"']?([^\s`\"'\n]+)",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: str
    content: str


@dataclass(frozen=True, slots=True)
class ChatCompletionRequest:
    messages: tuple[ChatMessage, ...]
    model: str | None = None
    stream: bool = False


def parse_json_body(raw: bytes) -> Any:
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise RequestValidationError(
            f"Request body is not valid JSON: {exc}",
            code="invalid_json",
        ) from exc


def _validate_message(index: int, raw: Any) -> ChatMessage:
    prefix = f"messages[{index}]"
    if not isinstance(raw, dict):
        raise RequestValidationError(
            f"{prefix} must be an object",
            code="invalid_type",
            param=prefix,
        )
    role = raw.get("role")
    if role is None or role == "":
        raise RequestValidationError(
            f"{prefix}.role is required",
            code="missing_required_parameter",
            param=f"{prefix}.role",
        )
    if not isinstance(role, str) or role not in ALLOWED_ROLES:
        raise RequestValidationError(
            f"{prefix}.role must be one of: {', '.join(ALLOWED_ROLES)}",
            code="invalid_value",
            param=f"{prefix}.role",
        )
    content = raw.get("content")
    if content is None:
        raise RequestValidationError(
            f"{prefix}.content is required",
            code="missing_required_parameter",
            param=f"{prefix}.content",
        )
    if not isinstance(content, str):
        raise RequestValidationError(
            f"{prefix}.content must be a string",
            code="invalid_type",
            param=f"{prefix}.content",
        )
    return ChatMessage(role=role, content=content)


def validate_chat_request(payload: Any) -> ChatCompletionRequest:
    if not isinstance(payload, dict):
        raise RequestValidationError(
            "Request body must be a JSON object",
            code="invalid_type",
        )

    raw_messages = payload.get("messages")
    if raw_messages is None:
        raise RequestValidationError(
            "Missing required parameter: messages",
            code="missing_required_parameter",
            param="messages",
        )
    if not isinstance(raw_messages, list):
        raise RequestValidationError(
            "messages must be an array",
            code="invalid_type",
            param="messages",
        )
    if not raw_messages:
        raise RequestValidationError(
            "messages array must not be empty",
            code="invalid_value",
            param="messages",
        )
    messages = tuple(_validate_message(i, item) for i, item in enumerate(raw_messages))

    model = payload.get("model")
    if model is not None and not isinstance(model, str):
        raise RequestValidationError(
            "model must be a string",
            code="invalid_type",
            param="model",
        )

    stream = payload.get("stream")
    if stream is not None and not isinstance(stream, bool):
        raise RequestValidationError(
            "stream must be a boolean",
            code="invalid_type",
            param="stream",
        )

    return ChatCompletionRequest(
        messages=messages,
        model=model or None,
        stream=bool(stream),
    )


def format_messages(messages: tuple[ChatMessage, ...] | list[ChatMessage]) -> str:
    return "\n\n".join(
        f"{ROLE_LABELS.get(message.role, 'User')}: {message.content}" for message in messages
    )


def extract_workspace_root(messages: tuple[ChatMessage, ...] | list[ChatMessage]) -> str | None:
    for message in messages:
        if message.role != "system" or not message.content:
            continue
        match = _SUPERVISOR_WORKSPACE_RE.search(message.content)
        if match:
            return match.group(1).strip().removesuffix(".")
        match = _LABELLED_WORKSPACE_RE.search(message.content)
        if match:
            return match.group(1).strip()
    return None
