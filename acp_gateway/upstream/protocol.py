from __future__ import annotations

import importlib
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

USER_MESSAGE_CHUNK = "user_message_chunk"
AGENT_MESSAGE_CHUNK = "agent_message_chunk"
AGENT_THOUGHT_CHUNK = "agent_thought_chunk"
TOOL_CALL = "tool_call"
TOOL_CALL_UPDATE = "tool_call_update"
PLAN = "plan"
AVAILABLE_COMMANDS_UPDATE = "available_commands_update"
CURRENT_MODE_UPDATE = "current_mode_update"

KNOWN_UPDATE_KINDS = frozenset(
    {
        USER_MESSAGE_CHUNK,
        AGENT_MESSAGE_CHUNK,
        AGENT_THOUGHT_CHUNK,
        TOOL_CALL,
        TOOL_CALL_UPDATE,
        PLAN,
        AVAILABLE_COMMANDS_UPDATE,
        CURRENT_MODE_UPDATE,
    }
)


class _WireModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        extra="allow",
        from_attributes=True,
    )


class ContentBlock(_WireModel):
    type: str = "text"
    text: str | None = None


class PlanEntry(_WireModel):
    content: str = ""
    status: str = "pending"
    priority: str = "medium"


class AvailableCommand(_WireModel):
    name: str = ""
    description: str = ""


class SessionUpdate(_WireModel):
    kind_name: str = Field(alias="sessionUpdate")
    content: ContentBlock | list[Any] | None = None
    tool_call_id: str | None = Field(default=None, alias="toolCallId")
    title: str | None = None
    tool_kind: str | None = Field(default=None, alias="kind")
    status: str | None = None
    raw_input: dict[str, Any] | None = Field(default=None, alias="rawInput")
    raw_output: dict[str, Any] | None = Field(default=None, alias="rawOutput")
    entries: list[PlanEntry] = Field(default_factory=list)
    available_commands: list[AvailableCommand] = Field(
        default_factory=list, alias="availableCommands"
    )
    current_mode_id: str | None = Field(default=None, alias="currentModeId")

    @property
    def text(self) -> str | None:
        """Text payload of a message or thought chunk, if it carries one."""
        if isinstance(self.content, ContentBlock) and self.content.type == "text":
            return self.content.text or None
        return None

    @property
    def is_known(self) -> bool:
        return self.kind_name in KNOWN_UPDATE_KINDS


class SessionNotification(_WireModel):
    session_id: str | None = Field(default=None, alias="sessionId")
    update: SessionUpdate


def parse_notification(raw: Any) -> SessionNotification:
    if isinstance(raw, SessionNotification):
        return raw
    return SessionNotification.model_validate(raw)


SessionUpdateSink = Callable[[Any], None]


@runtime_checkable
class AgentClient(Protocol):
    async def prompt(self, text: str) -> str: ...

    def on_session_update(self, callback: SessionUpdateSink | None) -> None: ...

    async def close(self) -> None: ...


class AgentClientFactory(Protocol):
    async def create(
        self,
        *,
        model: str,
        api_key: str,
        api_url: str,
        workspace_root: str | None = None,
    ) -> AgentClient: ...


def load_client_factory(import_path: str) -> AgentClientFactory:
    """Resolve a ``module:attribute`` path to an agent client factory.

    A class, or a zero-argument callable without ``create``, is called once
    to build the factory.
    """
    module_name, sep, attr_path = import_path.partition(":")
    if not sep or not module_name or not attr_path:
        raise ValueError(
            f"AGENT_CLIENT_FACTORY must look like 'module:attribute', got '{import_path}'."
        )
    target: Any = importlib.import_module(module_name)
    for part in attr_path.split("."):
        target = getattr(target, part)
    if isinstance(target, type) or (not hasattr(target, "create") and callable(target)):
        target = target()
    if not callable(getattr(target, "create", None)):
        raise TypeError(f"'{import_path}' does not provide an async create() method.")
    return target
