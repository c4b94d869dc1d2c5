from __future__ import annotations

import json
import logging
from typing import Any

from acp_gateway.gateway.translator import (
    DONE_EVENT,
    ResponseAccumulator,
    StreamTranslator,
    build_chat_completion,
)
from acp_gateway.upstream.protocol import SessionUpdate, parse_notification
from tests.fakes import message, thought, tool_call


def _update(raw: dict[str, Any]) -> SessionUpdate:
    return parse_notification(raw).update


def _decode(events: list[bytes]) -> list[dict[str, Any]]:
    decoded: list[dict[str, Any]] = []
    for event in events:
        assert event.startswith(b"data: ")
        assert event.endswith(b"\n\n")
        if event == DONE_EVENT:
            continue
        decoded.append(json.loads(event[len(b"data: ") : -2]))
    return decoded


def _translator() -> StreamTranslator:
    return StreamTranslator(completion_id="chatcmpl-req-1", model="claude-opus-4-6", created=1700000000)


def _run(translator: StreamTranslator, raws: list[dict[str, Any]]) -> list[bytes]:
    events: list[bytes] = []
    for raw in raws:
        events.extend(translator.feed(_update(raw)))
    events.extend(translator.finish())
    return events


def test_reasoning_before_content_is_coalesced_and_later_reasoning_streams() -> None:
    events = _run(_translator(), [thought("a"), thought("b"), message("c"), thought("d")])
    chunks = _decode(events)
    deltas = [chunk["choices"][0]["delta"] for chunk in chunks]

    assert deltas[0] == {"role": "assistant", "reasoning_content": "ab"}
    assert deltas[1] == {"content": "c"}
    assert deltas[2] == {"reasoning_content": "d"}
    assert deltas[3] == {}
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert events[-1] == DONE_EVENT
    assert len({chunk["id"] for chunk in chunks}) == 1
    assert chunks[0]["id"] == "chatcmpl-req-1"


def test_reasoning_only_stream_is_flushed_on_finish() -> None:
    chunks = _decode(_run(_translator(), [thought("thinking"), thought(" more")]))
    assert chunks[0]["choices"][0]["delta"]["reasoning_content"] == "thinking more"
    assert chunks[1]["choices"][0]["finish_reason"] == "stop"
    assert len(chunks) == 2


def test_nothing_is_emitted_until_content_or_finish() -> None:
    translator = _translator()
    assert translator.feed(_update(thought("x"))) == []
    assert translator.has_emitted is False
    assert translator.feed(_update(message("y")))
    assert translator.has_emitted is True


def test_tool_and_metadata_events_are_never_forwarded(caplog: Any) -> None:
    translator = _translator()
    raws = [
        tool_call("call-1"),
        {"update": {"sessionUpdate": "tool_call_update", "toolCallId": "call-1", "status": "completed"}},
        tool_call("call-2"),
        {"update": {"sessionUpdate": "plan", "entries": [{"content": "step", "status": "completed"}]}},
        {"update": {"sessionUpdate": "available_commands_update", "availableCommands": [{"name": "run"}]}},
        {"update": {"sessionUpdate": "current_mode_update", "currentModeId": "agent"}},
        {"update": {"sessionUpdate": "user_message_chunk", "content": {"type": "text", "text": "hi"}}},
        {"update": {"sessionUpdate": "brand_new_kind"}},
    ]
    with caplog.at_level(logging.INFO):
        for raw in raws:
            assert translator.feed(_update(raw)) == []
    assert translator.tool_indices == {"call-1": 0, "call-2": 1}
    assert "session_update_unknown" in caplog.text
    assert "session_tool_activity" in caplog.text
    assert not any("tool_calls" in json.dumps(chunk) for chunk in _decode(translator.finish()))


def test_error_event_is_plain_envelope_without_done() -> None:
    translator = _translator()
    translator.feed(_update(message("partial")))
    event = translator.error_event({"error": {"message": "boom"}})
    assert event == b'data: {"error":{"message":"boom"}}\n\n'
    assert translator.finish() == []


def test_accumulator_keeps_only_agent_text() -> None:
    accumulator = ResponseAccumulator()
    for raw in [thought("hidden"), message("Hello"), tool_call("c"), message(", world")]:
        accumulator.feed(_update(raw))
    assert accumulator.text == "Hello, world"


def test_parse_notification_accepts_attribute_objects() -> None:
    class Content:
        type = "text"
        text = "from object"

    class Update:
        sessionUpdate = "agent_message_chunk"
        content = Content()

    class Notification:
        sessionId = "s-9"
        update = Update()

    update = parse_notification(Notification()).update
    assert update.text == "from object"


def test_build_chat_completion_shape_and_usage() -> None:
    body = build_chat_completion(
        content="12345678",
        model="claude-opus-4-6",
        request_id="abc",
        prompt_text="User: Hello!",
        created=1700000000,
    )
    assert body["id"] == "chatcmpl-abc"
    assert body["object"] == "chat.completion"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "12345678"}
    assert body["choices"][0]["finish_reason"] == "stop"
    assert body["usage"] == {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}
