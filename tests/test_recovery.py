from __future__ import annotations

from fake_worker import Script, frame, wait_until
from storycli.engine.recovery import RecoveryCoordinator
from storycli.shared.models.task import TaskStatus, create_prompt_task
from storycli.shared.services.session_store import SessionStore
from worker_case import WorkerCase

SID = "scenes-p1"


class TestRecovery(WorkerCase):
    def _crashed_session(self, execution_id: str | None, *, auto_start: bool = True, extra: int = 0):
        """Persist a session as a killed process would have left it."""
        tasks = [create_prompt_task("p1", "/story", f"task {i}", label=f"task {i}") for i in range(1 + extra)]
        self.store.init_session(SID, "/story", "p1")
        self.store.add_tasks_to_session(SID, tasks)
        self.store.set_auto_start(SID, auto_start)
        self.store.update_task_status(SID, tasks[0].id, TaskStatus.RUNNING)
        self.store.set_running(SID, True)
        if execution_id is not None:
            self.store.set_current_execution(SID, execution_id, tasks[0].id)
        return tasks

    def _restart(self) -> RecoveryCoordinator:
        self.store = SessionStore(self.config.state_path)
        self.manager = self.make_manager(self.store)
        return RecoveryCoordinator(self.manager)

    async def test_running_execution_is_polled_not_refinalized(self):
        # Scenario B
        (task,) = self._crashed_session("exec-1")
        self.worker.add_execution("exec-1", Script(statuses=["running", "running", "completed"]))
        recovery = self._restart()

        report = await recovery.run()

        assert report.polling == [(SID, task.id)]
        assert report.completed == [] and report.failed == []
        assert self.manager.execution_status(SID) == {
            "is_polling": True, "is_streaming": False, "execution_id": "exec-1",
        }
        session = self.store.get_session(SID)
        assert session.running_task().id == task.id
        assert session.is_running is True
        assert session.current_execution_id == "exec-1"
        assert self.events_of("task_finished") == []
        assert self.store.recovery_in_progress is False

        await self.idle()
        session = self.store.get_session(SID)
        assert session.queue == []
        assert session.completed_count == 1
        assert [e["source"] for e in self.events_of("task_finished")] == ["poll"]

    async def test_completed_execution_is_finalized_and_queue_resumes(self):
        first, second = self._crashed_session("exec-1", extra=1)
        self.worker.add_execution("exec-1", Script(statuses=["completed"]))
        self.worker.scripts = [Script(frames=[frame("result", isError=False)])]
        recovery = self._restart()

        report = await recovery.run()

        assert report.completed == [(SID, first.id)]
        assert report.resumed == [SID]
        await self.idle()
        session = self.store.get_session(SID)
        assert session.queue == []
        assert session.completed_count == 2
        assert [s["prompt"] for s in self.worker.submissions] == ["task 1"]

    async def test_unknown_execution_fails_task(self):
        (task,) = self._crashed_session("exec-gone", auto_start=False)
        recovery = self._restart()

        report = await recovery.run()

        assert report.failed == [(SID, task.id)]
        assert report.idled == [SID]
        session = self.store.get_session(SID)
        assert session.get_task(task.id).status == TaskStatus.FAILED
        assert session.current_execution_id is None
        assert session.is_running is False
        assert session.auto_start is False

    async def test_status_query_failure_demotes_to_pending(self):
        (task,) = self._crashed_session("exec-1", auto_start=False)
        self.worker.add_execution("exec-1", Script(statuses=["running"]))
        self.worker.status_failures = 1
        recovery = self._restart()

        report = await recovery.run()

        assert report.demoted == [(SID, task.id)]
        session = self.store.get_session(SID)
        assert session.get_task(task.id).status == TaskStatus.PENDING
        assert session.current_execution_id is None
        assert session.current_task_id is None
        assert session.is_running is False

    async def test_running_task_without_execution_id_is_requeued_and_rerun(self):
        (task,) = self._crashed_session(None)
        self.worker.scripts = [Script(frames=[frame("result", isError=False)])]
        recovery = self._restart()

        report = await recovery.run()

        assert report.demoted == [(SID, task.id)]
        assert report.resumed == [SID]
        await wait_until(lambda: len(self.worker.submissions) == 1)
        await self.idle()
        assert self.store.get_session(SID).completed_count == 1

    async def test_runs_once_and_converges(self):
        self._crashed_session("exec-gone", extra=2)
        self.worker.scripts = [Script(frames=[frame("result", isError=False)]) for _ in range(2)]
        recovery = self._restart()

        first = await recovery.run()
        second = await recovery.run()
        await self.idle()

        assert first.sessions == 1
        assert second.is_empty
        assert recovery.has_run
        assert self.store.get_sessions_needing_recovery() == []
        session = self.store.get_session(SID)
        assert session.running_task() is None
        assert session.current_execution_id is None
        assert [t.status for t in session.queue] == [TaskStatus.FAILED]

    async def test_nothing_to_recover(self):
        self.store.init_session(SID, "/story", "p1")
        report = await self._restart().run()

        assert report.is_empty
        assert self.worker.status_queries == []
