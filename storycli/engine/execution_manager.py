"""Task queue and execution manager.

Drives each session's queue one task at a time: picks the first pending
task, marks it running, hands its prompt to the session's streaming
controller and, when the controller reports a terminal outcome, records
it and schedules the next task.

Engine notifications go through ``on_event`` (see ``fire_event``) as
plain dicts keyed by ``"event"``:

    task_started      {session_id, task_id, label}
    task_finished     {session_id, task_id, success, source, error}
    execution_result  {session_id, task_id, tokens, duration_ms, cost_usd}
    invalidate        {session_id, skill_id, regions}
    queue_empty       {session_id}
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable

from storycli.adapters.worker_client import WorkerClient
from storycli.engine.config import EventCallback, ExecutorConfig, fire_event
from storycli.engine.controller import LogsCallback, StreamingSessionController, TaskOutcome
from storycli.engine.errors import SessionStateError
from storycli.engine.invalidation import resolve_regions
from storycli.engine.poller import PollFallback
from storycli.engine.registry import TransportRegistry
from storycli.shared.models.task import QueuedTask, TaskStatus
from storycli.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)


class ExecutionManager:
    """Per-session FIFO execution with at most one running task each."""

    def __init__(
        self,
        store: SessionStore,
        client: WorkerClient,
        config: ExecutorConfig | None = None,
        *,
        registry: TransportRegistry | None = None,
        on_event: EventCallback | None = None,
        on_logs: LogsCallback | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.config = config or ExecutorConfig()
        self.registry = registry or TransportRegistry()
        self.poller = PollFallback(client, self.registry, self.config)
        self._on_event = on_event
        self._on_logs = on_logs
        self._controllers: dict[str, StreamingSessionController] = {}
        self._timers: dict[tuple[str, ...], asyncio.Task] = {}
        self._jobs: set[asyncio.Task] = set()
        self._closed = False

    # ── controllers ──

    def controller(self, session_id: str) -> StreamingSessionController:
        ctrl = self._controllers.get(session_id)
        if ctrl is None:
            ctrl = StreamingSessionController(
                session_id,
                store=self.store,
                client=self.client,
                registry=self.registry,
                poller=self.poller,
                config=self.config,
                on_finalize=self._handle_finalize,
                on_logs=self._on_logs,
            )
            self._controllers[session_id] = ctrl
        return ctrl

    # ── queue ──

    def enqueue(self, session_id: str, tasks: Iterable[QueuedTask]) -> list[QueuedTask]:
        """Append tasks to the session queue. Ids already queued are ignored."""
        added = self.store.add_tasks_to_session(session_id, tasks)
        if added:
            logger.info(
                "Session %s: enqueued %s",
                session_id, ", ".join(t.label or t.id for t in added),
            )
        return added

    def start(self, session_id: str, delay: float = 0.0) -> None:
        """Enable auto-start and kick the queue."""
        self.store.set_auto_start(session_id, True)
        self.schedule_advance(session_id, delay)

    async def advance(self, session_id: str) -> QueuedTask | None:
        """Start the next pending task, if the session is free to run one.

        Returns the task that was started, or None.
        """
        if self._closed:
            return None
        session = self.store.get_or_create_session(session_id)
        if session.is_running or not session.auto_start:
            return None
        ctrl = self.controller(session_id)
        if ctrl.is_busy:
            logger.debug("Session %s: controller busy, not advancing", session_id)
            return None

        task = session.next_pending_task()
        if task is None:
            self.store.set_running(session_id, False)
            self.store.set_auto_start(session_id, False)
            logger.info("Session %s: queue empty", session_id)
            await fire_event(self._on_event, {"event": "queue_empty", "session_id": session_id})
            return None

        try:
            self.store.update_task_status(session_id, task.id, TaskStatus.RUNNING)
        except SessionStateError as exc:
            logger.warning("Session %s: %s", session_id, exc)
            return None
        self.store.set_running(session_id, True)
        logger.info("Session %s: starting task %s (%s)", session_id, task.id, task.label)
        await fire_event(self._on_event, {
            "event": "task_started",
            "session_id": session_id,
            "task_id": task.id,
            "label": task.label,
        })

        await ctrl.submit(
            task.build_prompt(),
            task_id=task.id,
            project_path=task.project_path or session.project_path,
            project_id=task.project_id or session.project_id,
            resume_id=session.resumable_conversation_id,
        )
        return task

    # ── outcomes ──

    async def _handle_finalize(self, outcome: TaskOutcome) -> None:
        if outcome.task_id is None:
            # Manual prompt outside the queue.
            await self._fire_result(outcome)
            await fire_event(self._on_event, {
                "event": "task_finished",
                "session_id": outcome.session_id,
                "task_id": None,
                "success": outcome.success,
                "source": outcome.source,
                "error": outcome.error,
            })
            # A queue start that arrived while the prompt was live was skipped.
            if outcome.source != "abort":
                session = self.store.get_session(outcome.session_id)
                if session is not None and session.auto_start:
                    self.schedule_advance(outcome.session_id, self.config.advance_delay_seconds)
            return
        if outcome.source == "abort":
            self.store.set_auto_start(outcome.session_id, False)
        await self.finalize_task(
            outcome.session_id,
            outcome.task_id,
            outcome.success,
            source=outcome.source,
            error=outcome.error,
            advance=outcome.source != "abort",
            outcome=outcome,
        )

    async def finalize_task(
        self,
        session_id: str,
        task_id: str,
        success: bool,
        *,
        source: str,
        error: str | None = None,
        advance: bool = True,
        advance_delay: float | None = None,
        removal_delay: float | None = None,
        outcome: TaskOutcome | None = None,
    ) -> QueuedTask | None:
        """Record a task's terminal status and schedule what follows."""
        session = self.store.get_or_create_session(session_id)
        task = session.get_task(task_id)
        if task is not None and task.is_terminal:
            logger.debug("Session %s: task %s already %s", session_id, task_id, task.status.value)
            return task

        status = TaskStatus.COMPLETED if success else TaskStatus.FAILED
        updated = self.store.update_task_status(session_id, task_id, status)
        if session.current_task_id == task_id:
            self.store.set_current_execution(session_id, None, None)
        self.store.set_running(session_id, False)

        if success:
            logger.info("Session %s: task %s completed (%s)", session_id, task_id, source)
        else:
            logger.warning("Session %s: task %s failed (%s): %s", session_id, task_id, source, error)

        await fire_event(self._on_event, {
            "event": "task_finished",
            "session_id": session_id,
            "task_id": task_id,
            "success": success,
            "source": source,
            "error": error,
        })
        if outcome is not None:
            await self._fire_result(outcome)

        if success and updated is not None:
            await self._invalidate(session_id, updated, session.project_id)
            self.schedule_removal(
                session_id,
                task_id,
                self.config.completed_removal_delay_seconds if removal_delay is None else removal_delay,
            )
        if advance:
            self.schedule_advance(
                session_id,
                self.config.advance_delay_seconds if advance_delay is None else advance_delay,
            )
        return updated

    async def _fire_result(self, outcome: TaskOutcome) -> None:
        result = outcome.result
        if result is None:
            return
        await fire_event(self._on_event, {
            "event": "execution_result",
            "session_id": outcome.session_id,
            "task_id": outcome.task_id,
            "tokens": result.token_summary(),
            "duration_ms": result.duration_ms,
            "cost_usd": result.cost_usd,
            "is_error": result.is_error,
        })

    async def _invalidate(
        self,
        session_id: str,
        task: QueuedTask,
        project_id: str | None,
    ) -> None:
        context = {"projectId": task.project_id or project_id or "", **task.context_params}
        regions = resolve_regions(task.skill_id, context)
        if not regions:
            return
        await fire_event(self._on_event, {
            "event": "invalidate",
            "session_id": session_id,
            "skill_id": task.skill_id,
            "regions": regions,
        })

    # ── user actions ──

    async def abort(self, session_id: str) -> bool:
        """Stop the session's live execution and pause its queue."""
        self.store.set_auto_start(session_id, False)
        self._cancel_timer(("advance", session_id))
        stopped = await self.controller(session_id).abort()

        # Anything still marked running has no live execution behind it.
        session = self.store.get_or_create_session(session_id)
        running = session.running_task()
        if running is not None:
            self.store.update_task_status(session_id, running.id, TaskStatus.FAILED)
            stopped = True
        self.store.set_current_execution(session_id, None, None)
        self.store.set_running(session_id, False)
        return stopped

    def dismiss(self, session_id: str, task_id: str) -> bool:
        """Remove a task that is not running (typically a failed one)."""
        session = self.store.get_session(session_id)
        task = session.get_task(task_id) if session is not None else None
        if task is None:
            return False
        if task.status == TaskStatus.RUNNING:
            raise SessionStateError(session_id, f"task {task_id} is running; abort it first")
        self._cancel_timer(("remove", session_id, task_id))
        return self.store.remove_task(session_id, task_id)

    def retry(self, session_id: str, task_id: str) -> QueuedTask | None:
        """Requeue a failed task in place and restart the queue."""
        task = self.store.retry_task(session_id, task_id)
        if task is not None:
            self.start(session_id)
        return task

    async def ask(self, session_id: str, prompt: str) -> str | None:
        return await self.controller(session_id).ask(prompt)

    def start_polling(self, session_id: str, execution_id: str, task_id: str | None) -> None:
        self.controller(session_id).resume_polling(execution_id, task_id)

    def reattach(self, session_id: str, execution_id: str, task_id: str | None) -> bool:
        return self.controller(session_id).reattach(execution_id, task_id)

    def execution_status(self, session_id: str) -> dict[str, object]:
        return self.registry.status(session_id)

    # ── timers ──

    def schedule_advance(self, session_id: str, delay: float) -> None:
        self._schedule(("advance", session_id), delay, lambda: self.advance(session_id))

    def schedule_removal(self, session_id: str, task_id: str, delay: float) -> None:
        async def remove() -> None:
            session = self.store.get_session(session_id)
            task = session.get_task(task_id) if session is not None else None
            if task is not None and task.status == TaskStatus.COMPLETED:
                self.store.remove_task(session_id, task_id)

        self._schedule(("remove", session_id, task_id), delay, remove)

    def _schedule(
        self,
        key: tuple[str, ...],
        delay: float,
        factory: Callable[[], Awaitable[object]],
    ) -> None:
        if self._closed:
            return
        self._cancel_timer(key)
        self._timers[key] = asyncio.create_task(
            self._delayed(key, delay, factory), name=":".join(key),
        )

    async def _delayed(
        self,
        key: tuple[str, ...],
        delay: float,
        factory: Callable[[], Awaitable[object]],
    ) -> None:
        await asyncio.sleep(delay)
        # Past this point a reschedule must not cancel the running body.
        current = asyncio.current_task()
        if self._timers.get(key) is current:
            del self._timers[key]
        if current is not None:
            self._jobs.add(current)
        try:
            await factory()
        except Exception:
            logger.exception("Scheduled %s failed", "/".join(key))
        finally:
            self._jobs.discard(current)

    def _cancel_timer(self, key: tuple[str, ...]) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def has_pending_timers(self, session_id: str | None = None) -> bool:
        if session_id is None:
            return bool(self._timers)
        return any(key[1] == session_id for key in self._timers)

    def has_pending_work(self) -> bool:
        """True while any timer, scheduled job or execution is outstanding."""
        if self._timers or self._jobs:
            return True
        return any(not ctrl.is_finished for ctrl in self._controllers.values())

    async def wait_idle(self, poll_interval: float = 0.1) -> None:
        while self.has_pending_work():
            await asyncio.sleep(poll_interval)

    async def shutdown(self) -> None:
        """Cancel every live transport and pending timer."""
        self._closed = True
        pending = [*self._timers.values(), *self._jobs]
        self._timers.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.registry.shutdown()
        for ctrl in self._controllers.values():
            await ctrl.close()
        logger.info("Execution manager shut down")
