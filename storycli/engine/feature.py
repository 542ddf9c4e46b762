"""Per-feature entrypoint onto the execution engine.

A feature (character editor, scene composer, ...) works against one
session per project, keyed ``"{feature_id}-{project_id}"``. Queuing a
skill or prompt through the facade also turns on auto-start, so the task
runs as soon as the session is free.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable

from storycli.engine.execution_manager import ExecutionManager
from storycli.shared.models.log import FileChange, LogEntry
from storycli.shared.models.session import CLISession
from storycli.shared.models.task import QueuedTask, create_prompt_task, create_skill_task

logger = logging.getLogger(__name__)


def feature_session_id(feature_id: str, project_id: str) -> str:
    return f"{feature_id}-{project_id}"


class FeatureSession:
    def __init__(
        self,
        manager: ExecutionManager,
        feature_id: str,
        project_id: str,
        project_path: str,
        *,
        default_skills: Iterable[str] = (),
    ) -> None:
        self._manager = manager
        self._store = manager.store
        self.feature_id = feature_id
        self.project_id = project_id
        self.project_path = project_path
        self.default_skills = list(default_skills)
        self.session_id = feature_session_id(feature_id, project_id)

    def ensure_session(self) -> CLISession:
        """Create the session (with default skills) on first use."""
        session = self._store.get_session(self.session_id)
        if session is None:
            self._store.init_session(self.session_id, self.project_path, self.project_id)
            if self.default_skills:
                self._store.set_skills(self.session_id, self.default_skills)
            session = self._store.get_or_create_session(self.session_id)
        return session

    # ── state ──

    @property
    def session(self) -> CLISession:
        return self.ensure_session()

    @property
    def queue(self) -> list[QueuedTask]:
        return self.session.queue

    @property
    def is_running(self) -> bool:
        return self.session.is_running

    @property
    def enabled_skills(self) -> list[str]:
        return self.session.enabled_skills

    @property
    def logs(self) -> list[LogEntry]:
        return self._manager.controller(self.session_id).logs

    @property
    def file_changes(self) -> list[FileChange]:
        return self._manager.controller(self.session_id).file_changes

    def execution_status(self) -> dict[str, object]:
        return self._manager.execution_status(self.session_id)

    # ── queueing ──

    def execute(
        self,
        skill_id: str,
        context_params: dict[str, str] | None = None,
        label: str | None = None,
    ) -> QueuedTask:
        self.ensure_session()
        task = create_skill_task(
            self.project_id, self.project_path, skill_id, label, context_params,
        )
        self._manager.enqueue(self.session_id, [task])
        self._manager.start(self.session_id)
        return task

    def execute_prompt(self, prompt: str, label: str | None = None) -> QueuedTask:
        self.ensure_session()
        task = create_prompt_task(self.project_id, self.project_path, prompt, label)
        self._manager.enqueue(self.session_id, [task])
        self._manager.start(self.session_id)
        return task

    def execute_enabled(self, context_params: dict[str, str] | None = None) -> list[QueuedTask]:
        """Queue every enabled skill, in the order they were enabled."""
        session = self.ensure_session()
        tasks = [
            create_skill_task(self.project_id, self.project_path, skill_id, None, context_params)
            for skill_id in session.enabled_skills
        ]
        if not tasks:
            return []
        self._manager.enqueue(self.session_id, tasks)
        self._manager.start(self.session_id)
        return tasks

    # ── skills ──

    def toggle_skill(self, skill_id: str) -> None:
        self.ensure_session()
        self._store.toggle_skill(self.session_id, skill_id)

    def set_skills(self, skill_ids: Iterable[str]) -> None:
        self.ensure_session()
        self._store.set_skills(self.session_id, skill_ids)

    # ── control ──

    async def abort(self) -> bool:
        return await self._manager.abort(self.session_id)

    async def clear(self) -> None:
        """Stop anything live, then reset the session and its projections."""
        if self.session.is_active or self._manager.execution_status(self.session_id)["execution_id"]:
            await self._manager.abort(self.session_id)
        self._store.clear_session(self.session_id)
        self._store.init_session(self.session_id, self.project_path, self.project_id)
        self._manager.controller(self.session_id).clear()
        logger.info("Cleared session %s", self.session_id)
