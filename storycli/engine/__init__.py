"""storycli engine — queued, streamed execution of generation tasks."""
from .config import EventCallback, ExecutorConfig, fire_event
from .errors import (
    ConfigError,
    ExecutionNotFoundError,
    SessionStateError,
    StatusQueryError,
    StoryCLIError,
    StreamTransportError,
    SubmissionError,
    WorkerRequestError,
)
from .lifecycle import StreamState, validate_transition

__all__ = [
    # Core engine (lazy import to avoid circular deps)
    "ExecutionManager",
    "StreamingSessionController",
    "TaskOutcome",
    "PollFallback",
    "TransportRegistry",
    "RecoveryCoordinator",
    "RecoveryReport",
    "FeatureSession",
    # Config
    "EventCallback",
    "ExecutorConfig",
    "fire_event",
    # Lifecycle
    "StreamState",
    "validate_transition",
    # Errors
    "ConfigError",
    "ExecutionNotFoundError",
    "SessionStateError",
    "StatusQueryError",
    "StoryCLIError",
    "StreamTransportError",
    "SubmissionError",
    "WorkerRequestError",
]


def __getattr__(name: str):
    if name == "ExecutionManager":
        from .execution_manager import ExecutionManager
        return ExecutionManager
    if name == "StreamingSessionController":
        from .controller import StreamingSessionController
        return StreamingSessionController
    if name == "TaskOutcome":
        from .controller import TaskOutcome
        return TaskOutcome
    if name == "PollFallback":
        from .poller import PollFallback
        return PollFallback
    if name == "TransportRegistry":
        from .registry import TransportRegistry
        return TransportRegistry
    if name == "RecoveryCoordinator":
        from .recovery import RecoveryCoordinator
        return RecoveryCoordinator
    if name == "RecoveryReport":
        from .recovery import RecoveryReport
        return RecoveryReport
    if name == "FeatureSession":
        from .feature import FeatureSession
        return FeatureSession
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
