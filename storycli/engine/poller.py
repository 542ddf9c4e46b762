"""Poll fallback — coarse status checks after a stream drops.

Used when a stream ends without a terminal event, and by recovery when
a restarted process finds an execution still running. Poll and stream
share the transport registry slot for the session, so starting one
always tears down the other.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from storycli.adapters.worker_client import STATUS_COMPLETED, STATUS_RUNNING, WorkerClient
from storycli.engine.config import ExecutorConfig
from storycli.engine.errors import ExecutionNotFoundError, StatusQueryError
from storycli.engine.registry import TransportKind, TransportRegistry

logger = logging.getLogger(__name__)


@dataclass
class PollOutcome:
    execution_id: str
    success: bool
    status: str
    error: str | None = None


PollCallback = Callable[[PollOutcome], Awaitable[None]]


class PollFallback:
    """Timer-driven status loop, one per session at most."""

    def __init__(
        self,
        client: WorkerClient,
        registry: TransportRegistry,
        config: ExecutorConfig,
    ) -> None:
        self._client = client
        self._registry = registry
        self._interval = config.poll_interval_seconds
        self._max_errors = max(1, config.max_poll_errors)

    def start(
        self,
        session_id: str,
        execution_id: str,
        on_outcome: PollCallback,
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self._run(session_id, execution_id, on_outcome),
            name=f"poll:{session_id}:{execution_id}",
        )
        self._registry.attach(session_id, TransportKind.POLL, task, execution_id)
        logger.info(
            "Polling execution %s for session %s every %.1fs",
            execution_id, session_id, self._interval,
        )
        return task

    def stop(self, session_id: str) -> bool:
        if not self._registry.is_polling(session_id):
            return False
        return self._registry.stop(session_id)

    async def _run(
        self,
        session_id: str,
        execution_id: str,
        on_outcome: PollCallback,
    ) -> None:
        errors = 0
        while True:
            await asyncio.sleep(self._interval)
            try:
                status = await self._client.get_status(execution_id)
            except ExecutionNotFoundError as exc:
                logger.warning("Session %s: %s", session_id, exc)
                outcome = PollOutcome(execution_id, False, "not_found", str(exc))
                break
            except StatusQueryError as exc:
                errors += 1
                logger.info(
                    "Session %s: status check %d/%d for %s failed: %s",
                    session_id, errors, self._max_errors, execution_id, exc,
                )
                if errors >= self._max_errors:
                    outcome = PollOutcome(
                        execution_id,
                        False,
                        "unknown",
                        f"Could not determine execution status after {errors} attempts: {exc}",
                    )
                    break
                continue

            errors = 0
            if status == STATUS_RUNNING:
                continue
            outcome = PollOutcome(execution_id, status == STATUS_COMPLETED, status)
            break

        # Release the slot before finalizing so the next task's stream
        # does not cancel this (already finished) loop.
        current = asyncio.current_task()
        if current is not None:
            self._registry.detach(session_id, current)
        logger.info(
            "Session %s: poll for %s resolved as %s", session_id, execution_id, outcome.status,
        )
        await on_outcome(outcome)
