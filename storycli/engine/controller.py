"""Streaming session controller.

Owns the single push-stream (or fallback poll loop) of one session,
turns decoded events into log/file-change projections and resolves
terminal outcomes back to the execution manager through ``on_finalize``.

Two entrypoints lead into the same state machine:

* ``submit()`` starts a new execution and streams it;
* ``reattach()`` opens the stream of an execution that is already known.

``resume_polling()`` is the recovery variant of ``reattach()`` for a
process that can no longer open the original stream.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from storycli.adapters.events import (
    TERMINAL_KINDS,
    Connected,
    ErrorEvent,
    MessageEvent,
    Result,
    ToolResult,
    ToolUse,
    decode,
)
from storycli.adapters.log_buffer import LogBuffer
from storycli.adapters.protocol import (
    EventProtocol,
    error_to_log,
    local_error_log,
    message_to_log,
    system_log,
    tool_result_to_log,
    tool_use_to_file_change,
    tool_use_to_log,
    user_log,
)
from storycli.adapters.worker_client import WorkerClient
from storycli.engine.config import ExecutorConfig
from storycli.engine.errors import SessionStateError, StreamTransportError, SubmissionError
from storycli.engine.lifecycle import StreamState, validate_transition
from storycli.engine.poller import PollFallback, PollOutcome
from storycli.engine.registry import TransportKind, TransportRegistry
from storycli.shared.models.log import ChangeType, ExecutionResult, FileChange, LogEntry
from storycli.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class TaskOutcome:
    """Terminal outcome of one execution attempt."""
    session_id: str
    task_id: str | None
    execution_id: str | None
    success: bool
    source: str  # "stream", "poll", "submit", "abort"
    result: ExecutionResult | None = None
    error: str | None = None


FinalizeCallback = Callable[[TaskOutcome], Awaitable[None]]
LogsCallback = Callable[[str, list[LogEntry]], None]


class StreamingSessionController:
    """State machine for one session's live execution."""

    def __init__(
        self,
        session_id: str,
        *,
        store: SessionStore,
        client: WorkerClient,
        registry: TransportRegistry,
        poller: PollFallback,
        config: ExecutorConfig,
        on_finalize: FinalizeCallback | None = None,
        on_logs: LogsCallback | None = None,
    ) -> None:
        self.session_id = session_id
        self._store = store
        self._client = client
        self._registry = registry
        self._poller = poller
        self._on_finalize = on_finalize
        self._on_logs = on_logs

        self.state = StreamState.IDLE
        self.logs: list[LogEntry] = []
        self.file_changes: list[FileChange] = []
        self.last_result: ExecutionResult | None = None
        self.last_error: str | None = None

        self._task_id: str | None = None
        self._execution_id: str | None = None
        self._pending_resumable_id: str | None = None
        self._finalized = True
        self._done = asyncio.Event()
        self._done.set()
        self._background: set[asyncio.Task] = set()
        self._buffer: LogBuffer[LogEntry] = LogBuffer(
            self._append_logs, interval=config.flush_interval_seconds,
        )
        self._protocol = EventProtocol({
            "connected": self._handle_connected,
            "message": self._handle_message,
            "tool_use": self._handle_tool_use,
            "tool_result": self._handle_tool_result,
            "result": self._handle_result,
            "error": self._handle_error,
        })

    # ── properties ──

    @property
    def task_id(self) -> str | None:
        return self._task_id

    @property
    def execution_id(self) -> str | None:
        return self._execution_id

    @property
    def is_streaming(self) -> bool:
        return self._registry.is_streaming(self.session_id)

    @property
    def is_polling(self) -> bool:
        return self._registry.is_polling(self.session_id)

    @property
    def is_busy(self) -> bool:
        return self._registry.get(self.session_id) is not None or self.state in (
            StreamState.CONNECTING, StreamState.STREAMING,
        )

    def file_change_stats(self) -> dict[str, int]:
        return {
            "edits": sum(1 for f in self.file_changes if f.change_type == ChangeType.EDIT),
            "writes": sum(1 for f in self.file_changes if f.change_type == ChangeType.WRITE),
        }

    @property
    def is_finished(self) -> bool:
        return self._done.is_set()

    async def wait_finished(self) -> None:
        """Block until the current execution has been finalized."""
        await self._done.wait()

    # ── state ──

    def _transition(self, target: StreamState) -> None:
        validate_transition(self.state, target)
        logger.debug("Session %s: %s -> %s", self.session_id, self.state.value, target.value)
        self.state = target

    def _begin(self, task_id: str | None, execution_id: str | None) -> None:
        self._transition(StreamState.CONNECTING)
        self._task_id = task_id
        self._execution_id = execution_id
        self._pending_resumable_id = None
        self.last_error = None
        self._finalized = False
        self._done.clear()

    # ── projections ──

    def _append_logs(self, batch: list[LogEntry]) -> None:
        self.logs.extend(batch)
        if self._on_logs is not None:
            self._on_logs(self.session_id, batch)

    def add_log(self, entry: LogEntry | None) -> None:
        self._buffer.add(entry)

    def clear(self) -> None:
        """Drop the in-memory log and file-change projections."""
        self._buffer.discard()
        self.logs = []
        self.file_changes = []
        self.last_result = None
        self.last_error = None

    # ── entrypoints ──

    async def submit(
        self,
        prompt: str,
        *,
        task_id: str | None = None,
        project_path: str | None = None,
        project_id: str | None = None,
        resume_id: str | None = None,
    ) -> str | None:
        """Start a new execution and stream it.

        Returns the execution id, or None when submission failed (the
        outcome has then already been finalized as a failure).
        """
        if self.is_busy:
            raise SessionStateError(self.session_id, "an execution is already live")
        self._begin(task_id, None)
        try:
            response = await self._client.submit(
                project_path=project_path,
                project_id=project_id,
                prompt=prompt,
                resume_id=resume_id,
            )
        except SubmissionError as exc:
            logger.warning("Session %s: submit failed: %s", self.session_id, exc)
            if self.state == StreamState.ABORTED:
                return None
            self.add_log(local_error_log(f"Failed to start execution: {exc}"))
            self.last_error = str(exc)
            self._transition(StreamState.FAILED)
            await self._finalize(False, "submit", error=str(exc))
            return None

        if self.state == StreamState.ABORTED:
            # abort() ran while the submit request was in flight.
            self._spawn(self._client.cancel(response.execution_id))
            return None

        self._execution_id = response.execution_id
        if task_id is not None:
            # Persist before touching the stream so recovery can find it.
            self._store.set_current_execution(self.session_id, response.execution_id, task_id)
        logger.info(
            "Session %s: execution %s started (task=%s)",
            self.session_id, response.execution_id, task_id,
        )
        self._open_stream(response.stream_url)
        return response.execution_id

    def reattach(self, execution_id: str, task_id: str | None) -> bool:
        """Open the stream of an execution that is already running.

        No-op (returns False) if that execution's stream is already live.
        """
        live = self._registry.get(self.session_id)
        if live is not None and live.kind == TransportKind.STREAM and live.execution_id == execution_id:
            return False
        if not self._finalized and self._execution_id not in (None, execution_id):
            raise SessionStateError(
                self.session_id, f"execution {self._execution_id} is still live",
            )
        if live is not None:
            self._registry.stop(self.session_id)
        if self.state in (StreamState.CONNECTING, StreamState.STREAMING):
            self._transition(StreamState.FAILED)
        self._begin(task_id, execution_id)
        self._open_stream(self._client.stream_url_for(execution_id))
        return True

    def resume_polling(self, execution_id: str, task_id: str | None) -> None:
        """Re-attach to a running execution by polling only."""
        self._begin(task_id, execution_id)
        self._transition(StreamState.FAILED)
        self._start_polling()

    async def ask(self, prompt: str) -> str | None:
        """Manual prompt outside the queue, echoed locally as a user entry."""
        if self.is_busy:
            raise SessionStateError(self.session_id, "an execution is already live")
        session = self._store.get_or_create_session(self.session_id)
        self.add_log(user_log(prompt))
        return await self.submit(
            prompt,
            project_path=session.project_path,
            project_id=session.project_id,
            resume_id=session.resumable_conversation_id,
        )

    async def abort(self) -> bool:
        """Stop local streaming/polling now; request remote cancel best-effort."""
        session = self._store.get_or_create_session(self.session_id)
        live = not self._finalized
        execution_id = (self._execution_id if live else None) or session.current_execution_id
        task_id = (self._task_id if live else None) or session.current_task_id
        had_transport = self._registry.stop(self.session_id)

        if self.state != StreamState.ABORTED:
            self._transition(StreamState.ABORTED)
        if execution_id:
            self._spawn(self._client.cancel(execution_id))
        self._store.set_current_execution(self.session_id, None, None)
        if not (live or had_transport or execution_id):
            return False

        self.add_log(system_log("Execution aborted"))
        logger.info(
            "Session %s: aborted (execution=%s, task=%s)", self.session_id, execution_id, task_id,
        )
        if not live and task_id is not None:
            # Execution known only from persisted state (e.g. after a restart).
            self._finalized = False
            self._task_id = task_id
            self._execution_id = execution_id
        if not self._finalized:
            await self._finalize(False, "abort", error="Aborted by user")
        return True

    # ── stream handling ──

    def _open_stream(self, stream_url: str) -> None:
        task = asyncio.create_task(
            self._consume(stream_url), name=f"stream:{self.session_id}",
        )
        self._registry.attach(self.session_id, TransportKind.STREAM, task, self._execution_id)

    async def _consume(self, stream_url: str) -> None:
        frames = self._client.iter_frames(stream_url)
        terminal = False
        try:
            async for raw in frames:
                if self.state == StreamState.CONNECTING:
                    self._transition(StreamState.STREAMING)
                event = decode(raw)
                if event is None:
                    continue
                self._store.update_last_activity(self.session_id)
                await self._protocol.handle(event)
                if event.kind in TERMINAL_KINDS:
                    terminal = True
                    break
        except StreamTransportError as exc:
            logger.info("Session %s: stream lost: %s", self.session_id, exc)
        finally:
            await frames.aclose()

        if terminal or self._finalized or self.state == StreamState.ABORTED:
            return

        # No terminal event: the execution may still finish server-side.
        self._buffer.flush()
        self._transition(StreamState.FAILED)
        current = asyncio.current_task()
        if current is not None:
            self._registry.detach(self.session_id, current)
        self._start_polling()

    def _start_polling(self) -> None:
        if self._execution_id is None:
            logger.warning("Session %s: cannot poll without an execution id", self.session_id)
            self._spawn(self._finalize(False, "poll", error="Stream lost before execution id was known"))
            return
        self._poller.start(self.session_id, self._execution_id, self._handle_poll_outcome)

    async def _handle_poll_outcome(self, outcome: PollOutcome) -> None:
        if outcome.execution_id != self._execution_id or self._finalized:
            return
        if outcome.success:
            self._transition(StreamState.COMPLETED)
            await self._finalize(True, "poll")
            return
        error = outcome.error or f"Execution ended with status {outcome.status}"
        self.last_error = error
        self.add_log(local_error_log(error))
        await self._finalize(False, "poll", error=error)

    # ── event handlers ──

    def _handle_connected(self, event: Connected) -> None:
        # Held back until a successful result confirms it.
        if event.session_id:
            self._pending_resumable_id = event.session_id

    def _handle_message(self, event: MessageEvent) -> None:
        self.add_log(message_to_log(event))

    def _handle_tool_use(self, event: ToolUse) -> None:
        self.add_log(tool_use_to_log(event))
        change = tool_use_to_file_change(event)
        if change is not None:
            self.file_changes.append(change)

    def _handle_tool_result(self, event: ToolResult) -> None:
        self.add_log(tool_result_to_log(event))

    async def _handle_result(self, event: Result) -> None:
        result = ExecutionResult(
            resumable_id=event.session_id or self._pending_resumable_id,
            input_tokens=event.input_tokens,
            output_tokens=event.output_tokens,
            duration_ms=event.duration_ms,
            cost_usd=event.cost_usd,
            is_error=event.is_error,
            synthetic=event.synthetic,
        )
        self.last_result = result
        if event.is_error:
            error = "Execution finished with an error result"
            self.last_error = error
            self.add_log(local_error_log(error))
            self._transition(StreamState.FAILED)
            await self._finalize(False, "stream", result=result, error=error)
            return
        if result.resumable_id:
            self._store.set_resumable_id(self.session_id, result.resumable_id)
        self._transition(StreamState.COMPLETED)
        await self._finalize(True, "stream", result=result)

    async def _handle_error(self, event: ErrorEvent) -> None:
        self.add_log(error_to_log(event))
        self.last_error = event.error
        self._transition(StreamState.FAILED)
        await self._finalize(False, "stream", error=event.error)

    # ── completion ──

    async def _finalize(
        self,
        success: bool,
        source: str,
        *,
        result: ExecutionResult | None = None,
        error: str | None = None,
    ) -> None:
        if self._finalized:
            return
        self._finalized = True
        self._buffer.flush()
        # A finished stream must not hold the slot the next task needs.
        current = asyncio.current_task()
        live = self._registry.get(self.session_id)
        if live is not None and live.task is current:
            self._registry.detach(self.session_id, current)
        outcome = TaskOutcome(
            session_id=self.session_id,
            task_id=self._task_id,
            execution_id=self._execution_id,
            success=success,
            source=source,
            result=result,
            error=error,
        )
        try:
            if self._on_finalize is not None:
                await self._on_finalize(outcome)
        except Exception:
            logger.exception("Session %s: finalize handler failed", self.session_id)
        finally:
            self._done.set()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def close(self) -> None:
        """Flush projections and wait for outstanding cancel requests."""
        self._buffer.flush()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
