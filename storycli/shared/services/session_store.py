"""Session store — durable, keyed table of per-session execution state.

Storage layout:
    ~/.storycli/sessions.json  ->  {"version": 1, "sessions": {id: {...}}}

Every mutation get-or-creates its session, applies the change and writes
the whole table back atomically. Only ``sessions`` is persisted; the
recovery window and all live log/stream state stay in memory.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from storycli.engine.errors import SessionStateError
from storycli.shared.models.session import CLISession, RecoveryState
from storycli.shared.models.task import QueuedTask, TaskStatus
from storycli.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """Single writer for all persisted session state.

    Reads hand out deep copies, so the only way to change a session is
    through the operations below. Pass ``path=None`` for an in-memory store.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._clock = clock
        self._sessions: dict[str, CLISession] = {}
        self._recovery = RecoveryState()
        if self._path is not None:
            self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    # ── persistence ──

    def _load(self) -> None:
        if self._path is None:
            return
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            version = data.get("version")
            if version != SCHEMA_VERSION:
                logger.warning(
                    "Session store %s has unsupported version %r, starting empty",
                    self._path, version,
                )
                return
            self._sessions = {
                sid: CLISession.from_dict(raw)
                for sid, raw in (data.get("sessions") or {}).items()
            }
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            backup = self._path.with_suffix(self._path.suffix + ".bak")
            logger.warning(
                "Session store %s is unreadable (%s); moved aside to %s",
                self._path, exc, backup,
            )
            self._path.replace(backup)
            self._sessions = {}
            return
        logger.info("Loaded %d session(s) from %s", len(self._sessions), self._path)

    def _persist(self) -> None:
        if self._path is None:
            return
        payload = {
            "version": SCHEMA_VERSION,
            "sessions": {sid: s.to_dict() for sid, s in self._sessions.items()},
        }
        atomic_write_text(self._path, json.dumps(payload, indent=2))

    def _ensure(self, session_id: str) -> CLISession:
        session = self._sessions.get(session_id)
        if session is None:
            session = CLISession(id=session_id)
            self._sessions[session_id] = session
        return session

    def _touch(self, session: CLISession) -> None:
        session.last_activity_at = self._clock()

    # ── reads ──

    def get_session(self, session_id: str) -> CLISession | None:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session is not None else None

    def get_or_create_session(self, session_id: str) -> CLISession:
        if session_id not in self._sessions:
            self._ensure(session_id)
            self._persist()
        return copy.deepcopy(self._sessions[session_id])

    def all_sessions(self) -> dict[str, CLISession]:
        return copy.deepcopy(self._sessions)

    def get_active_sessions(self) -> list[CLISession]:
        return [copy.deepcopy(s) for s in self._sessions.values() if s.is_active]

    def get_sessions_needing_recovery(self) -> list[CLISession]:
        return [copy.deepcopy(s) for s in self._sessions.values() if s.needs_recovery]

    # ── session-level mutations ──

    def init_session(
        self,
        session_id: str,
        project_path: str,
        project_id: str | None = None,
    ) -> None:
        session = self._ensure(session_id)
        session.project_path = project_path
        if project_id is not None:
            session.project_id = project_id
        now = self._clock()
        session.created_at = now
        session.last_activity_at = now
        self._persist()

    def clear_session(self, session_id: str) -> None:
        """Reset a session to defaults (queue, identifiers and flags)."""
        self._sessions[session_id] = CLISession(id=session_id)
        self._persist()

    def set_resumable_id(self, session_id: str, resumable_id: str | None) -> None:
        session = self._ensure(session_id)
        session.resumable_conversation_id = resumable_id
        self._touch(session)
        self._persist()

    def set_current_execution(
        self,
        session_id: str,
        execution_id: str | None,
        task_id: str | None,
    ) -> None:
        if (execution_id is None) != (task_id is None):
            raise SessionStateError(
                session_id,
                "current execution id and task id must be set or cleared together",
            )
        session = self._ensure(session_id)
        session.current_execution_id = execution_id
        session.current_task_id = task_id
        self._touch(session)
        self._persist()

    def set_running(self, session_id: str, is_running: bool) -> None:
        session = self._ensure(session_id)
        session.is_running = is_running
        self._touch(session)
        self._persist()

    def set_auto_start(self, session_id: str, auto_start: bool) -> None:
        session = self._ensure(session_id)
        session.auto_start = auto_start
        self._touch(session)
        self._persist()

    def update_last_activity(self, session_id: str) -> None:
        session = self._ensure(session_id)
        self._touch(session)
        self._persist()

    def toggle_skill(self, session_id: str, skill_id: str) -> None:
        session = self._ensure(session_id)
        if skill_id in session.enabled_skills:
            session.enabled_skills = [s for s in session.enabled_skills if s != skill_id]
        else:
            session.enabled_skills = [*session.enabled_skills, skill_id]
        self._persist()

    def set_skills(self, session_id: str, skill_ids: Iterable[str]) -> None:
        session = self._ensure(session_id)
        session.enabled_skills = list(skill_ids)
        self._persist()

    # ── queue mutations ──

    def add_tasks_to_session(
        self,
        session_id: str,
        tasks: Iterable[QueuedTask],
    ) -> list[QueuedTask]:
        """Append tasks whose ids are not queued yet. Returns the ones added."""
        session = self._ensure(session_id)
        existing = {t.id for t in session.queue}
        new_tasks: list[QueuedTask] = []
        for task in tasks:
            if task.id in existing:
                continue
            existing.add(task.id)
            new_tasks.append(copy.deepcopy(task))
        if not new_tasks:
            return []

        session.project_path = session.project_path or new_tasks[0].project_path
        session.project_id = session.project_id or new_tasks[0].project_id
        session.queue.extend(new_tasks)
        self._touch(session)
        self._persist()
        logger.debug("Queued %d task(s) on session %s", len(new_tasks), session_id)
        return copy.deepcopy(new_tasks)

    def update_task_status(
        self,
        session_id: str,
        task_id: str,
        status: TaskStatus,
    ) -> QueuedTask | None:
        """Move a task to *status*. Returns the updated task, or None if unknown.

        Raises SessionStateError if another task in the session is already
        running and *status* is RUNNING.
        """
        status = TaskStatus(status)
        session = self._ensure(session_id)
        task = session.get_task(task_id)
        if task is None:
            logger.warning("update_task_status: no task %s in session %s", task_id, session_id)
            return None

        if status == TaskStatus.RUNNING:
            other = session.running_task()
            if other is not None and other.id != task_id:
                raise SessionStateError(
                    session_id,
                    f"task {other.id} is already running; cannot start {task_id}",
                )

        now = self._clock()
        was_completed = task.status == TaskStatus.COMPLETED
        task.status = status
        if status == TaskStatus.RUNNING:
            task.started_at = now
        elif status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            task.completed_at = now
        if status == TaskStatus.COMPLETED and not was_completed:
            session.completed_count += 1
        session.last_activity_at = now
        self._persist()
        return copy.deepcopy(task)

    def retry_task(self, session_id: str, task_id: str) -> QueuedTask | None:
        """Put a failed task back to pending (keeps its queue position)."""
        session = self._ensure(session_id)
        task = session.get_task(task_id)
        if task is None or task.status != TaskStatus.FAILED:
            return None
        task.status = TaskStatus.PENDING
        task.started_at = None
        task.completed_at = None
        self._touch(session)
        self._persist()
        return copy.deepcopy(task)

    def remove_task(self, session_id: str, task_id: str) -> bool:
        session = self._ensure(session_id)
        before = len(session.queue)
        session.queue = [t for t in session.queue if t.id != task_id]
        removed = len(session.queue) != before
        self._touch(session)
        self._persist()
        return removed

    # ── recovery window ──

    def start_recovery(self, duration_seconds: float = 10.0) -> None:
        self._recovery = RecoveryState(
            in_progress=True,
            end_time=self._clock() + timedelta(seconds=duration_seconds),
        )

    def end_recovery(self) -> None:
        self._recovery = RecoveryState()

    @property
    def recovery_in_progress(self) -> bool:
        """True while reconciliation runs, bounded by the window's end time."""
        state = self._recovery
        if not state.in_progress or state.end_time is None:
            return False
        return self._clock() < state.end_time
