"""Typed events decoded from worker stream frames.

Each frame on the push stream is a JSON object::

    {"type": "tool_use", "data": {...}, "timestamp": 1718000000000}

``decode()`` turns one frame into one of the dataclasses below, or None
when the frame is not a well-formed event of a known kind.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StreamEvent:
    """Base event decoded from a stream frame."""
    kind: str = ""
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class Connected(StreamEvent):
    kind: str = "connected"
    session_id: str | None = None
    model: str | None = None
    tools: list[str] = field(default_factory=list)


@dataclass
class MessageEvent(StreamEvent):
    kind: str = "message"
    content: str = ""
    model: str | None = None


@dataclass
class ToolUse(StreamEvent):
    kind: str = "tool_use"
    tool_use_id: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult(StreamEvent):
    kind: str = "tool_result"
    tool_use_id: str = ""
    content: str = ""


@dataclass
class Result(StreamEvent):
    """Terminal success/failure report with usage telemetry."""
    kind: str = "result"
    session_id: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int | None = None
    cost_usd: float | None = None
    is_error: bool = False
    synthetic: bool = False


@dataclass
class ErrorEvent(StreamEvent):
    kind: str = "error"
    error: str = ""
    exit_code: int | None = None
    source: str | None = None


DecodedEvent = Connected | MessageEvent | ToolUse | ToolResult | Result | ErrorEvent

TERMINAL_KINDS = frozenset({"result", "error"})

# Older worker builds emit these names for the same events.
_KIND_ALIASES: dict[str, str] = {
    "init": "connected",
    "text": "message",
}


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _timestamp(raw: Any) -> datetime:
    ms = _as_float(raw)
    if ms is None:
        return _utcnow()
    try:
        return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return _utcnow()


def _build_connected(data: dict[str, Any], ts: datetime) -> Connected:
    tools = data.get("tools")
    return Connected(
        timestamp=ts,
        session_id=_first(data, "sessionId", "session_id"),
        model=data.get("model"),
        tools=[str(t) for t in tools] if isinstance(tools, list) else [],
    )


def _build_message(data: dict[str, Any], ts: datetime) -> MessageEvent:
    return MessageEvent(
        timestamp=ts,
        content=_as_text(_first(data, "content", "text")),
        model=data.get("model"),
    )


def _build_tool_use(data: dict[str, Any], ts: datetime) -> ToolUse:
    tool_input = _first(data, "toolInput", "input")
    return ToolUse(
        timestamp=ts,
        tool_use_id=str(_first(data, "toolUseId", "id") or ""),
        tool_name=str(_first(data, "toolName", "name") or ""),
        tool_input=tool_input if isinstance(tool_input, dict) else {},
    )


def _build_tool_result(data: dict[str, Any], ts: datetime) -> ToolResult:
    return ToolResult(
        timestamp=ts,
        tool_use_id=str(_first(data, "toolUseId", "tool_use_id") or ""),
        content=_as_text(data.get("content")),
    )


def _build_result(data: dict[str, Any], ts: datetime) -> Result:
    usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
    return Result(
        timestamp=ts,
        session_id=_first(data, "sessionId", "session_id"),
        input_tokens=_as_int(_first(usage, "inputTokens", "input_tokens")) or 0,
        output_tokens=_as_int(_first(usage, "outputTokens", "output_tokens")) or 0,
        duration_ms=_as_int(_first(data, "durationMs", "duration_ms")),
        cost_usd=_as_float(_first(data, "costUsd", "cost_usd")),
        is_error=_as_flag(_first(data, "isError", "is_error")),
        synthetic=bool(data.get("synthetic")),
    )


def _build_error(data: dict[str, Any], ts: datetime) -> ErrorEvent:
    message = _first(data, "error", "message")
    exit_code = _as_int(_first(data, "exitCode", "exit_code"))
    if message is None and exit_code is not None:
        message = f"Process exited with code {exit_code}"
    return ErrorEvent(
        timestamp=ts,
        error=_as_text(message) or "Unknown error",
        exit_code=exit_code,
        source=data.get("source"),
    )


_EVENT_BUILDERS = {
    "connected": _build_connected,
    "message": _build_message,
    "tool_use": _build_tool_use,
    "tool_result": _build_tool_result,
    "result": _build_result,
    "error": _build_error,
}


def decode(raw_frame: str) -> DecodedEvent | None:
    """Decode one stream frame. Malformed or unknown frames yield None."""
    if not raw_frame or not raw_frame.strip():
        return None
    try:
        payload = json.loads(raw_frame)
    except (TypeError, ValueError):
        logger.debug("Dropping undecodable frame: %.80r", raw_frame)
        return None
    if not isinstance(payload, dict):
        return None

    kind = payload.get("type")
    if not isinstance(kind, str):
        return None
    kind = _KIND_ALIASES.get(kind, kind)
    builder = _EVENT_BUILDERS.get(kind)
    if builder is None:
        return None

    data = payload.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return None
    return builder(data, _timestamp(payload.get("timestamp")))


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """Plain-dict form of an event for callbacks and JSON output."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is None:
            continue
        d[f] = val.isoformat() if isinstance(val, datetime) else val
    d["event"] = d.pop("kind")
    return d
