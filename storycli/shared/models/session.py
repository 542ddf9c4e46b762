"""Session state — per-feature execution context and its task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from storycli.shared.models.task import QueuedTask, TaskStatus, _parse_dt


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CLISession:
    """Persisted execution state for one session key.

    ``current_execution_id`` and ``current_task_id`` are always written
    together, so one is set exactly when the other is.
    """

    id: str
    project_path: str | None = None
    project_id: str | None = None
    resumable_conversation_id: str | None = None
    current_execution_id: str | None = None
    current_task_id: str | None = None
    queue: list[QueuedTask] = field(default_factory=list)
    is_running: bool = False
    auto_start: bool = False
    created_at: datetime | None = None
    last_activity_at: datetime | None = None
    completed_count: int = 0
    enabled_skills: list[str] = field(default_factory=list)

    def get_task(self, task_id: str) -> QueuedTask | None:
        for task in self.queue:
            if task.id == task_id:
                return task
        return None

    def running_task(self) -> QueuedTask | None:
        for task in self.queue:
            if task.status == TaskStatus.RUNNING:
                return task
        return None

    def next_pending_task(self) -> QueuedTask | None:
        for task in self.queue:
            if task.status == TaskStatus.PENDING:
                return task
        return None

    def has_pending(self) -> bool:
        return any(t.status == TaskStatus.PENDING for t in self.queue)

    def tasks_with_status(self, status: TaskStatus) -> list[QueuedTask]:
        return [t for t in self.queue if t.status == status]

    @property
    def needs_recovery(self) -> bool:
        return self.running_task() is not None or (self.auto_start and self.has_pending())

    @property
    def is_active(self) -> bool:
        return self.is_running or self.running_task() is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_path": self.project_path,
            "project_id": self.project_id,
            "resumable_conversation_id": self.resumable_conversation_id,
            "current_execution_id": self.current_execution_id,
            "current_task_id": self.current_task_id,
            "queue": [t.to_dict() for t in self.queue],
            "is_running": self.is_running,
            "auto_start": self.auto_start,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_activity_at": (
                self.last_activity_at.isoformat() if self.last_activity_at else None
            ),
            "completed_count": self.completed_count,
            "enabled_skills": list(self.enabled_skills),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CLISession:
        return cls(
            id=str(data["id"]),
            project_path=data.get("project_path"),
            project_id=data.get("project_id"),
            resumable_conversation_id=data.get("resumable_conversation_id"),
            current_execution_id=data.get("current_execution_id"),
            current_task_id=data.get("current_task_id"),
            queue=[QueuedTask.from_dict(t) for t in data.get("queue", [])],
            is_running=bool(data.get("is_running", False)),
            auto_start=bool(data.get("auto_start", False)),
            created_at=_parse_dt(data.get("created_at")),
            last_activity_at=_parse_dt(data.get("last_activity_at")),
            completed_count=int(data.get("completed_count", 0)),
            enabled_skills=[str(s) for s in data.get("enabled_skills", [])],
        )


@dataclass
class RecoveryState:
    """Recovery window bookkeeping. Never persisted."""

    in_progress: bool = False
    end_time: datetime | None = None
