"""Failure taxonomy for upstream agent calls.

The upstream client reports most failures only as free-form message text, so
classification is string matching. Everything that inspects failure text lives
in this module; callers ask for an :class:`ErrorKind` and derive retry,
eviction, HTTP status, and the caller-facing envelope from it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    CONTEXT_TOO_LONG = "context_too_long"
    RATE_LIMITED = "rate_limited"
    SESSION_FAULT = "session_fault"
    TRANSIENT = "transient"
    AUTH_FAILURE = "auth_failure"
    MODEL_NOT_FOUND = "model_not_found"
    REQUEST_TIMEOUT = "request_timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"
    GENERIC = "generic"


RETRYABLE_KINDS = frozenset(
    {ErrorKind.RATE_LIMITED, ErrorKind.SESSION_FAULT, ErrorKind.TRANSIENT}
)
EVICTING_KINDS = frozenset({ErrorKind.SESSION_FAULT, ErrorKind.REQUEST_TIMEOUT})

ABORT_ERROR_NAME = "AbortError"

_CONTEXT_TOO_LONG_MARKERS = (
    "context length",
    "context_length",
    "token limit",
    "too long",
    "maximum context",
    "message too large",
    "input too long",
    "exceeds the model",
    "max_tokens",
)
_RATE_LIMIT_MARKERS = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "quota exceeded",
    "throttl",
)
_SESSION_FAULT_MARKERS = (
    "not connected",
    "no session",
    "initialization failed",
    "session expired",
    "session invalid",
    "websocket",
    "disconnected",
)
_TRANSIENT_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "socket hang up",
    "connection",
    "temporarily unavailable",
    "service unavailable",
    "internal server error",
)
_AUTH_MARKERS = ("unauthorized", "invalid api key")
_TIMEOUT_MARKERS = ("timeout", "timed out")


@dataclass(frozen=True, slots=True)
class _KindSpec:
    status_code: int
    error_type: str
    code: str | None
    param: str | None
    message_prefix: str | None
    suggestion: str


_KIND_SPECS: dict[ErrorKind, _KindSpec] = {
    ErrorKind.VALIDATION: _KindSpec(
        status_code=400,
        error_type="invalid_request_error",
        code="invalid_value",
        param=None,
        message_prefix=None,
        suggestion=(
            "Fix the request body so it matches the OpenAI chat completions "
            "schema, then resend it."
        ),
    ),
    ErrorKind.CONTEXT_TOO_LONG: _KindSpec(
        status_code=400,
        error_type="invalid_request_error",
        code="context_length_exceeded",
        param="messages",
        message_prefix="Context length exceeded",
        suggestion=(
            "Reduce the number of messages, shorten message content, or use a "
            "model with a larger context window."
        ),
    ),
    ErrorKind.RATE_LIMITED: _KindSpec(
        status_code=429,
        error_type="rate_limit_error",
        code="rate_limit_exceeded",
        param=None,
        message_prefix="Rate limit exceeded",
        suggestion=(
            "Wait a moment before retrying. Consider reducing request frequency "
            "or implementing exponential backoff."
        ),
    ),
    ErrorKind.SESSION_FAULT: _KindSpec(
        status_code=500,
        error_type="server_error",
        code="connection_error",
        param=None,
        message_prefix="Upstream session error",
        suggestion=(
            "The upstream agent connection was lost. This is usually temporary. "
            "If it persists, re-authenticate with the agent CLI, restart the "
            "gateway, and check your network connection."
        ),
    ),
    ErrorKind.TRANSIENT: _KindSpec(
        status_code=500,
        error_type="server_error",
        code="server_error",
        param=None,
        message_prefix="Server error",
        suggestion="This is likely a temporary issue. Retry the request in a few seconds.",
    ),
    ErrorKind.AUTH_FAILURE: _KindSpec(
        status_code=401,
        error_type="invalid_request_error",
        code="invalid_api_key",
        param=None,
        message_prefix="Authentication failed",
        suggestion=(
            "Re-authenticate with the agent CLI (or update ACP_ACCESS_TOKEN), "
            "then restart the gateway."
        ),
    ),
    ErrorKind.MODEL_NOT_FOUND: _KindSpec(
        status_code=404,
        error_type="invalid_request_error",
        code="model_not_found",
        param="model",
        message_prefix="Invalid model",
        suggestion="Use GET /v1/models to see available models.",
    ),
    ErrorKind.REQUEST_TIMEOUT: _KindSpec(
        status_code=504,
        error_type="server_error",
        code="request_timeout",
        param=None,
        message_prefix="Request timeout",
        suggestion=(
            "The request took too long to process. Try a shorter prompt or "
            "increase REQUEST_TIMEOUT_SECONDS."
        ),
    ),
    ErrorKind.SERVICE_UNAVAILABLE: _KindSpec(
        status_code=503,
        error_type="server_error",
        code="server_shutdown",
        param=None,
        message_prefix=None,
        suggestion="The gateway is shutting down. Retry against another instance.",
    ),
    ErrorKind.GENERIC: _KindSpec(
        status_code=500,
        error_type="api_error",
        code=None,
        param=None,
        message_prefix=None,
        suggestion=(
            "Check the error message for details. If the issue persists, check "
            "the gateway logs."
        ),
    ),
}


@dataclass(frozen=True, slots=True)
class FailureInfo:
    message: str
    status_code: int | None = None
    name: str | None = None


class GatewayError(Exception):
    """A classified failure ready to be rendered for the caller."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        code: str | None = None,
        param: str | None = None,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        spec = _KIND_SPECS[kind]
        self.code = code if code is not None else spec.code
        self.param = param if param is not None else spec.param
        self.suggestion = suggestion or spec.suggestion

    @property
    def status_code(self) -> int:
        return _KIND_SPECS[self.kind].status_code

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_envelope(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": _KIND_SPECS[self.kind].error_type,
                "code": self.code,
                "param": self.param,
                "suggestion": self.suggestion,
            }
        }

    @classmethod
    def from_exception(
        cls, exc: BaseException, *, default_model: str | None = None
    ) -> GatewayError:
        if isinstance(exc, GatewayError):
            return exc
        info = describe_failure(exc)
        kind = classify_failure(info)
        spec = _KIND_SPECS[kind]
        message = info.message or exc.__class__.__name__
        if spec.message_prefix:
            message = f"{spec.message_prefix}: {message}"
        suggestion = spec.suggestion
        if kind == ErrorKind.MODEL_NOT_FOUND and default_model:
            suggestion = f"{suggestion} Default model: {default_model}"
        return cls(kind, message, suggestion=suggestion)


class RequestValidationError(GatewayError):
    def __init__(self, message: str, *, code: str, param: str | None = None) -> None:
        super().__init__(ErrorKind.VALIDATION, message, code=code, param=param)


class UpstreamError(Exception):
    """A failure the upstream reported inside an otherwise successful prompt result."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RequestAbortedError(Exception):
    name = ABORT_ERROR_NAME

    def __init__(self, reason: str) -> None:
        super().__init__(f"Request aborted ({reason})")
        self.reason = reason


def describe_failure(exc: BaseException) -> FailureInfo:
    status_code = getattr(exc, "status_code", None)
    if not isinstance(status_code, int):
        status_code = getattr(exc, "status", None)
    if not isinstance(status_code, int) or isinstance(status_code, bool):
        status_code = None
    name = getattr(exc, "name", None)
    if not isinstance(name, str) or not name:
        name = exc.__class__.__name__
    return FailureInfo(message=str(exc), status_code=status_code, name=name)


def _contains_any(text: str, markers: tuple[str, ...]) -> bool:
    return any(marker in text for marker in markers)


def classify_failure(info: FailureInfo) -> ErrorKind:
    text = info.message.lower()
    status = info.status_code or 0

    if _contains_any(text, _CONTEXT_TOO_LONG_MARKERS):
        return ErrorKind.CONTEXT_TOO_LONG
    if status == 429 or _contains_any(text, _RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMITED
    if _contains_any(text, _SESSION_FAULT_MARKERS):
        return ErrorKind.SESSION_FAULT
    if 500 <= status < 600 or _contains_any(text, _TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    if _contains_any(text, _AUTH_MARKERS):
        return ErrorKind.AUTH_FAILURE
    if "model" in text and ("not found" in text or "invalid" in text):
        return ErrorKind.MODEL_NOT_FOUND
    if _contains_any(text, _TIMEOUT_MARKERS) or info.name == ABORT_ERROR_NAME:
        return ErrorKind.REQUEST_TIMEOUT
    return ErrorKind.GENERIC


def classify_exception(exc: BaseException) -> ErrorKind:
    if isinstance(exc, GatewayError):
        return exc.kind
    return classify_failure(describe_failure(exc))


def is_retryable(exc: BaseException) -> bool:
    return classify_exception(exc) in RETRYABLE_KINDS


def requires_handle_eviction(exc: BaseException) -> bool:
    return classify_exception(exc) in EVICTING_KINDS


def http_status_for(kind: ErrorKind) -> int:
    return _KIND_SPECS[kind].status_code
