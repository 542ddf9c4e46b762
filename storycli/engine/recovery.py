"""Crash recovery for executions interrupted by a process restart.

Runs once at startup. Every persisted session that was mid-task, or had
an auto-started queue with pending work, is reconciled against the
worker's view of its execution before the queue is allowed to move
again.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from storycli.adapters.worker_client import STATUS_COMPLETED, STATUS_RUNNING
from storycli.engine.errors import ExecutionNotFoundError, StatusQueryError
from storycli.engine.execution_manager import ExecutionManager
from storycli.shared.models.session import CLISession
from storycli.shared.models.task import TaskStatus

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    """What recovery did, as ``(session_id, task_id)`` pairs per outcome."""
    sessions: int = 0
    completed: list[tuple[str, str]] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    polling: list[tuple[str, str]] = field(default_factory=list)
    demoted: list[tuple[str, str]] = field(default_factory=list)
    resumed: list[str] = field(default_factory=list)
    idled: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.sessions == 0


class RecoveryCoordinator:
    """One-shot reconciliation of persisted sessions with the worker."""

    def __init__(self, manager: ExecutionManager) -> None:
        self._manager = manager
        self._store = manager.store
        self._client = manager.client
        self._config = manager.config
        self._ran = False

    @property
    def has_run(self) -> bool:
        return self._ran

    async def run(self) -> RecoveryReport:
        """Reconcile every session needing recovery. Later calls are no-ops."""
        report = RecoveryReport()
        if self._ran:
            logger.debug("Recovery already ran, skipping")
            return report
        self._ran = True

        sessions = self._store.get_sessions_needing_recovery()
        if not sessions:
            return report

        logger.info("Recovering %d session(s)", len(sessions))
        self._store.start_recovery(self._config.recovery_window_seconds)
        try:
            for session in sessions:
                report.sessions += 1
                try:
                    await self._recover_session(session, report)
                except Exception:
                    logger.exception("Recovery of session %s failed", session.id)
        finally:
            self._store.end_recovery()
        logger.info(
            "Recovery done: %d completed, %d failed, %d polling, %d demoted, %d resumed",
            len(report.completed), len(report.failed), len(report.polling),
            len(report.demoted), len(report.resumed),
        )
        return report

    async def _recover_session(self, session: CLISession, report: RecoveryReport) -> None:
        sid = session.id
        running = session.running_task()
        if running is not None:
            if await self._reconcile_running(session, running.id, report):
                return

        current = self._store.get_or_create_session(sid)
        if current.auto_start and current.has_pending():
            self._store.set_running(sid, False)
            self._manager.schedule_advance(sid, self._config.recovery_advance_delay_seconds)
            report.resumed.append(sid)
        else:
            self._store.set_auto_start(sid, False)
            self._store.set_running(sid, False)
            report.idled.append(sid)

    async def _reconcile_running(
        self,
        session: CLISession,
        task_id: str,
        report: RecoveryReport,
    ) -> bool:
        """Settle a task persisted as running. Returns True if it is still live."""
        sid = session.id
        execution_id = session.current_execution_id
        if not execution_id:
            logger.info("Session %s: task %s has no execution id, requeueing", sid, task_id)
            self._demote(sid, task_id)
            report.demoted.append((sid, task_id))
            return False

        try:
            status = await self._client.get_status(execution_id)
        except ExecutionNotFoundError:
            status = None
        except StatusQueryError as exc:
            logger.warning(
                "Session %s: cannot check execution %s (%s), requeueing task %s",
                sid, execution_id, exc, task_id,
            )
            self._demote(sid, task_id)
            report.demoted.append((sid, task_id))
            return False

        if status == STATUS_RUNNING:
            logger.info("Session %s: execution %s still running, polling", sid, execution_id)
            self._manager.start_polling(sid, execution_id, task_id)
            report.polling.append((sid, task_id))
            return True

        success = status == STATUS_COMPLETED
        await self._manager.finalize_task(
            sid,
            task_id,
            success,
            source="recovery",
            error=None if success else f"Execution {execution_id} ended as {status or 'not found'}",
            advance=False,
            removal_delay=self._config.recovery_removal_delay_seconds,
        )
        (report.completed if success else report.failed).append((sid, task_id))
        return False

    def _demote(self, session_id: str, task_id: str) -> None:
        self._store.update_task_status(session_id, task_id, TaskStatus.PENDING)
        self._store.set_current_execution(session_id, None, None)
        self._store.set_running(session_id, False)
