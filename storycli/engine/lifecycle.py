"""Streaming session state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> CONNECTING ──> STREAMING ──┬──> COMPLETED
                 │                      │
                 └──> FAILED <──────────┘   (error event, submit error,
                                             or transient transport loss)

    Any state ──> ABORTED  (abort())
    COMPLETED / FAILED / ABORTED ──> CONNECTING  (next submit or reattach)
"""
from __future__ import annotations

from enum import Enum


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({
    StreamState.COMPLETED,
    StreamState.FAILED,
    StreamState.ABORTED,
})

VALID_TRANSITIONS: dict[StreamState, set[StreamState]] = {
    StreamState.IDLE: {
        StreamState.CONNECTING,
        StreamState.ABORTED,
    },
    StreamState.CONNECTING: {
        StreamState.STREAMING,
        StreamState.FAILED,
        StreamState.ABORTED,
    },
    StreamState.STREAMING: {
        StreamState.COMPLETED,
        StreamState.FAILED,
        StreamState.ABORTED,
    },
    StreamState.COMPLETED: {
        StreamState.CONNECTING,
        StreamState.ABORTED,
    },
    StreamState.FAILED: {
        StreamState.CONNECTING,
        StreamState.COMPLETED,  # poll fallback found the run finished
        StreamState.ABORTED,
    },
    StreamState.ABORTED: {
        StreamState.CONNECTING,
        StreamState.ABORTED,
    },
}


def validate_transition(current: StreamState, target: StreamState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid stream state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
