from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from storycli.adapters.events import (
    Connected,
    ErrorEvent,
    MessageEvent,
    Result,
    ToolResult,
    ToolUse,
)
from storycli.adapters.log_buffer import LogBuffer
from storycli.adapters.protocol import (
    EventProtocol,
    event_to_log,
    tool_use_to_file_change,
    user_log,
)
from storycli.shared.models.log import ChangeType, LogType

TS = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_translation_yields_zero_or_one_entry() -> None:
    assert event_to_log(Connected(timestamp=TS, session_id="c")) is None
    assert event_to_log(Result(timestamp=TS)) is None
    assert event_to_log(MessageEvent(timestamp=TS, content="")) is None

    message = event_to_log(MessageEvent(timestamp=TS, content="Drafting the scene"))
    assert message is not None
    assert message.type == LogType.ASSISTANT
    assert message.content == "Drafting the scene"
    assert message.timestamp == TS

    error = event_to_log(ErrorEvent(timestamp=TS, error="boom"))
    assert error is not None and error.type == LogType.ERROR and error.content == "boom"

    result = event_to_log(ToolResult(timestamp=TS, tool_use_id="t1", content="done"))
    assert result is not None and result.type == LogType.TOOL_RESULT


def test_tool_use_log_keeps_raw_name_and_input() -> None:
    event = ToolUse(timestamp=TS, tool_use_id="t1", tool_name="write_file", tool_input={"path": "a.md"})

    entry = event_to_log(event)

    assert entry is not None
    assert entry.id == "t1"
    assert entry.type == LogType.TOOL_USE
    assert entry.content == "Write"
    assert entry.tool_name == "write_file"
    assert entry.tool_input == {"path": "a.md"}

    change = tool_use_to_file_change(event)
    assert change is not None and change.change_type == ChangeType.WRITE


@pytest.mark.asyncio
async def test_event_protocol_dispatches_sync_and_async_handlers() -> None:
    seen: list[str] = []

    async def on_result(event: Result) -> None:
        await asyncio.sleep(0)
        seen.append("result")

    protocol = EventProtocol({
        "message": lambda event: seen.append(event.content),
        "result": on_result,
    })

    await protocol.handle(MessageEvent(timestamp=TS, content="hi"))
    await protocol.handle(Result(timestamp=TS))
    await protocol.handle(ToolResult(timestamp=TS, content="ignored"))

    assert seen == ["hi", "result"]


@pytest.mark.asyncio
async def test_log_buffer_coalesces_into_one_ordered_flush() -> None:
    batches: list[list[str]] = []
    buffer: LogBuffer[str] = LogBuffer(batches.append, interval=0.01)

    buffer.add("a")
    buffer.add(None)
    buffer.add("b")
    buffer.add("c")

    assert buffer.pending == 3
    assert buffer.flush_scheduled
    await asyncio.sleep(0.05)

    assert batches == [["a", "b", "c"]]
    assert buffer.pending == 0
    assert not buffer.flush_scheduled


@pytest.mark.asyncio
async def test_log_buffer_flush_and_discard() -> None:
    batches: list[list[str]] = []
    buffer: LogBuffer[str] = LogBuffer(batches.append, interval=10)

    buffer.add("a")
    buffer.flush()
    buffer.add("b")
    buffer.discard()
    await asyncio.sleep(0)

    assert batches == [["a"]]
    assert buffer.pending == 0
    assert not buffer.flush_scheduled


@pytest.mark.asyncio
async def test_log_buffer_survives_failing_consumer() -> None:
    def explode(batch):
        raise RuntimeError("consumer down")

    buffer: LogBuffer = LogBuffer(explode, interval=0)
    buffer.add(user_log("hello"))
    buffer.flush()

    assert buffer.pending == 0
