"""Exception hierarchy for the task-execution core.

Transport and protocol problems are absorbed inside the controller and
poller; these types mark the places where a caller has to decide.
"""
from __future__ import annotations


class StoryCLIError(Exception):
    """Base exception for all storycli errors."""


class ConfigError(StoryCLIError):
    """Invalid configuration file or value."""


class WorkerRequestError(StoryCLIError):
    """A request to the worker endpoints failed."""
    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class SubmissionError(WorkerRequestError):
    """The worker rejected (or never received) a submit request."""


class StatusQueryError(WorkerRequestError):
    """Execution status could not be determined."""


class ExecutionNotFoundError(StatusQueryError):
    """The worker no longer knows the execution id (evicted or never existed)."""
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}", status=404)


class StreamTransportError(StoryCLIError):
    """The push stream closed or broke before a terminal event arrived."""


class SessionStateError(StoryCLIError):
    """A store mutation would break a session invariant."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Session {session_id}: {reason}")
