"""Event-to-projection translation and kind-keyed dispatch.

The translation functions are pure: each maps one decoded event to at
most one LogEntry (or FileChange). ``connected`` and ``result`` produce
no log entries; they only drive controller state.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from storycli.adapters.events import (
    DecodedEvent,
    ErrorEvent,
    MessageEvent,
    ToolResult,
    ToolUse,
)
from storycli.adapters.file_tracker import derive_file_change, normalize_tool_name
from storycli.shared.models.log import FileChange, LogEntry, LogType

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None] | None]


def _log_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def message_to_log(event: MessageEvent) -> LogEntry | None:
    if not event.content:
        return None
    return LogEntry(
        id=_log_id("msg"),
        type=LogType.ASSISTANT,
        content=event.content,
        timestamp=event.timestamp,
    )


def tool_use_to_log(event: ToolUse) -> LogEntry:
    return LogEntry(
        id=event.tool_use_id or _log_id("tool"),
        type=LogType.TOOL_USE,
        content=normalize_tool_name(event.tool_name) or event.tool_name,
        timestamp=event.timestamp,
        tool_name=event.tool_name,
        tool_input=dict(event.tool_input),
    )


def tool_result_to_log(event: ToolResult) -> LogEntry:
    return LogEntry(
        id=_log_id(f"result-{event.tool_use_id}" if event.tool_use_id else "result"),
        type=LogType.TOOL_RESULT,
        content=event.content,
        timestamp=event.timestamp,
    )


def error_to_log(event: ErrorEvent) -> LogEntry:
    return LogEntry(
        id=_log_id("err"),
        type=LogType.ERROR,
        content=event.error,
        timestamp=event.timestamp,
    )


def tool_use_to_file_change(event: ToolUse) -> FileChange | None:
    return derive_file_change(
        event.tool_name,
        event.tool_input,
        tool_use_id=event.tool_use_id,
        timestamp=event.timestamp,
    )


def event_to_log(event: DecodedEvent) -> LogEntry | None:
    """Zero-or-one log entry for any decoded event."""
    if isinstance(event, MessageEvent):
        return message_to_log(event)
    if isinstance(event, ToolUse):
        return tool_use_to_log(event)
    if isinstance(event, ToolResult):
        return tool_result_to_log(event)
    if isinstance(event, ErrorEvent):
        return error_to_log(event)
    return None


def system_log(content: str) -> LogEntry:
    return LogEntry(
        id=_log_id("system"),
        type=LogType.SYSTEM,
        content=content,
        timestamp=datetime.now(timezone.utc),
    )


def user_log(content: str) -> LogEntry:
    return LogEntry(
        id=_log_id("user"),
        type=LogType.USER,
        content=content,
        timestamp=datetime.now(timezone.utc),
    )


def local_error_log(content: str) -> LogEntry:
    return LogEntry(
        id=_log_id("err"),
        type=LogType.ERROR,
        content=content,
        timestamp=datetime.now(timezone.utc),
    )


class EventProtocol:
    """Dispatch decoded events to per-kind handlers.

    Handlers may be plain or async callables. Kinds without a handler
    are ignored.
    """

    def __init__(self, handlers: dict[str, EventHandler]) -> None:
        self._handlers = dict(handlers)

    async def handle(self, event: DecodedEvent) -> None:
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.debug("No handler for %s event", event.kind)
            return
        outcome = handler(event)
        if outcome is not None and hasattr(outcome, "__await__"):
            await outcome
