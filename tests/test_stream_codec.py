from __future__ import annotations

import json
from datetime import datetime, timezone

from storycli.adapters.events import (
    Connected,
    ErrorEvent,
    MessageEvent,
    Result,
    ToolResult,
    ToolUse,
    decode,
    event_to_dict,
)


def _frame(kind, data=None, **extra) -> str:
    payload = {"type": kind, "data": data if data is not None else {}}
    payload.update(extra)
    return json.dumps(payload)


def test_decode_connected_reads_resumable_id() -> None:
    event = decode(_frame("connected", {"sessionId": "conv-1", "model": "m", "tools": ["Read"]}))

    assert isinstance(event, Connected)
    assert event.session_id == "conv-1"
    assert event.model == "m"
    assert event.tools == ["Read"]


def test_decode_worker_aliases() -> None:
    init = decode(_frame("init", {"sessionId": "conv-2"}))
    text = decode(_frame("text", {"content": "hello"}))

    assert isinstance(init, Connected)
    assert init.kind == "connected"
    assert isinstance(text, MessageEvent)
    assert text.content == "hello"


def test_decode_tool_use_accepts_both_key_styles() -> None:
    short = decode(_frame("tool_use", {"id": "t1", "name": "Edit", "input": {"file_path": "a.md"}}))
    long = decode(_frame("tool_use", {"toolUseId": "t2", "toolName": "Write", "toolInput": {"path": "b.md"}}))

    assert isinstance(short, ToolUse)
    assert (short.tool_use_id, short.tool_name, short.tool_input) == ("t1", "Edit", {"file_path": "a.md"})
    assert isinstance(long, ToolUse)
    assert (long.tool_use_id, long.tool_name, long.tool_input) == ("t2", "Write", {"path": "b.md"})


def test_decode_tool_result_encodes_structured_content() -> None:
    event = decode(_frame("tool_result", {"toolUseId": "t1", "content": [{"type": "text", "text": "ok"}]}))

    assert isinstance(event, ToolResult)
    assert json.loads(event.content) == [{"type": "text", "text": "ok"}]


def test_decode_result_usage_and_flags() -> None:
    event = decode(_frame("result", {
        "sessionId": "conv-9",
        "usage": {"inputTokens": 1200, "output_tokens": 350},
        "durationMs": 4200,
        "costUsd": 0.0123,
        "isError": False,
    }))

    assert isinstance(event, Result)
    assert event.session_id == "conv-9"
    assert (event.input_tokens, event.output_tokens) == (1200, 350)
    assert event.duration_ms == 4200
    assert event.cost_usd == 0.0123
    assert event.is_error is False
    assert event.synthetic is False


def test_decode_result_error_flag_only_for_true() -> None:
    def flag(value):
        return decode(_frame("result", {"isError": value})).is_error

    assert flag(True) is True
    assert flag("true") is True
    assert flag("false") is False
    assert flag("0") is False
    assert flag(1) is False
    assert decode(_frame("result", {"is_error": True})).is_error is True


def test_decode_error_from_exit_code() -> None:
    event = decode(_frame("error", {"exitCode": 2}))

    assert isinstance(event, ErrorEvent)
    assert event.exit_code == 2
    assert "2" in event.error


def test_decode_timestamp_is_epoch_millis() -> None:
    event = decode(_frame("text", {"content": "x"}, timestamp=1_700_000_000_000))

    assert event is not None
    assert event.timestamp == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)


def test_decode_drops_malformed_frames() -> None:
    assert decode("") is None
    assert decode("   ") is None
    assert decode("not json") is None
    assert decode("[1, 2, 3]") is None
    assert decode(json.dumps({"data": {}})) is None
    assert decode(_frame("stdout", {"content": "raw"})) is None
    assert decode(_frame("heartbeat")) is None
    assert decode(json.dumps({"type": "text", "data": "oops"})) is None


def test_event_to_dict_uses_event_key_and_iso_timestamps() -> None:
    event = decode(_frame("text", {"content": "hi"}, timestamp=1_700_000_000_000))
    d = event_to_dict(event)

    assert d["event"] == "message"
    assert d["content"] == "hi"
    assert d["timestamp"].startswith("2023-11-14T")
    assert "model" not in d
