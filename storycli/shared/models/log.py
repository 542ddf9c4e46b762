"""Log and file-change projections built from stream events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class LogType(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"
    ERROR = "error"


class ChangeType(str, Enum):
    EDIT = "edit"
    WRITE = "write"
    READ = "read"
    DELETE = "delete"


@dataclass(frozen=True)
class LogEntry:
    id: str
    type: LogType
    content: str
    timestamp: datetime
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None


@dataclass(frozen=True)
class FileChange:
    file_path: str
    change_type: ChangeType
    timestamp: datetime
    tool_use_id: str | None = None
    preview: str | None = None


@dataclass
class ExecutionResult:
    """Usage/cost telemetry carried by a ``result`` event."""

    resumable_id: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int | None = None
    cost_usd: float | None = None
    is_error: bool = False
    synthetic: bool = False
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def token_summary(self) -> str:
        return f"{_format_k(self.input_tokens)}/{_format_k(self.output_tokens)}"


def _format_k(n: int) -> str:
    return f"{n / 1000:.1f}k" if n >= 1000 else str(n)
