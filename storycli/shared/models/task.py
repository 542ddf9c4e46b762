"""Queued task — one unit of requested generation work.

A task references either a named skill or carries a literal prompt,
never both.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


@dataclass
class QueuedTask:
    """A task waiting in (or running from) a session queue."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    skill_id: str | None = None
    direct_prompt: str | None = None
    label: str = ""
    status: TaskStatus = TaskStatus.PENDING
    added_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    context_params: dict[str, str] = field(default_factory=dict)
    project_id: str | None = None
    project_path: str | None = None

    def __post_init__(self) -> None:
        if bool(self.skill_id) == bool(self.direct_prompt):
            raise ValueError(
                "QueuedTask requires exactly one of skill_id or direct_prompt"
            )
        if not isinstance(self.status, TaskStatus):
            self.status = TaskStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def build_prompt(self) -> str:
        """Prompt sent to the worker for this task.

        Direct prompts go out verbatim. Skill tasks become an instruction
        naming the skill, followed by the context parameters (if any).
        """
        if self.direct_prompt:
            return self.direct_prompt
        prompt = f"Execute skill: {self.skill_id}"
        if self.context_params:
            lines = [f"- {key}: {value}" for key, value in self.context_params.items()]
            prompt += "\n\nContext:\n" + "\n".join(lines)
        return prompt

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "skill_id": self.skill_id,
            "direct_prompt": self.direct_prompt,
            "label": self.label,
            "status": self.status.value,
            "added_at": self.added_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "context_params": dict(self.context_params),
            "project_id": self.project_id,
            "project_path": self.project_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedTask:
        return cls(
            id=str(data["id"]),
            skill_id=data.get("skill_id"),
            direct_prompt=data.get("direct_prompt"),
            label=data.get("label") or "",
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            added_at=_parse_dt(data.get("added_at")) or _utcnow(),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            context_params={
                str(k): str(v) for k, v in (data.get("context_params") or {}).items()
            },
            project_id=data.get("project_id"),
            project_path=data.get("project_path"),
        )


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def create_skill_task(
    project_id: str | None,
    project_path: str | None,
    skill_id: str,
    label: str | None = None,
    context_params: dict[str, str] | None = None,
) -> QueuedTask:
    return QueuedTask(
        skill_id=skill_id,
        label=label or f"Run {skill_id}",
        context_params=dict(context_params or {}),
        project_id=project_id,
        project_path=project_path,
    )


def create_prompt_task(
    project_id: str | None,
    project_path: str | None,
    prompt: str,
    label: str | None = None,
) -> QueuedTask:
    return QueuedTask(
        direct_prompt=prompt,
        label=label or "Custom prompt",
        project_id=project_id,
        project_path=project_path,
    )
