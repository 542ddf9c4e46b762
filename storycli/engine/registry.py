"""In-process registry of live transports (stream or poll) per session.

Transport handles are asyncio tasks and never persisted. A session owns
at most one live transport: attaching a new one cancels whatever was
attached before.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class TransportKind(str, Enum):
    STREAM = "stream"
    POLL = "poll"


@dataclass
class LiveTransport:
    kind: TransportKind
    task: asyncio.Task
    execution_id: str | None
    started_at: float = field(default_factory=time.monotonic)


class TransportRegistry:
    """Session id -> the one live stream/poll task for that session."""

    def __init__(self) -> None:
        self._live: dict[str, LiveTransport] = {}

    def attach(
        self,
        session_id: str,
        kind: TransportKind,
        task: asyncio.Task,
        execution_id: str | None,
    ) -> None:
        """Register *task*, cancelling any other live transport for the session."""
        previous = self._live.get(session_id)
        if previous is not None and previous.task is not task:
            logger.debug(
                "Session %s: replacing live %s with %s",
                session_id, previous.kind.value, kind.value,
            )
            previous.task.cancel()
        self._live[session_id] = LiveTransport(kind=kind, task=task, execution_id=execution_id)
        task.add_done_callback(lambda t, sid=session_id: self.detach(sid, t))

    def detach(self, session_id: str, task: asyncio.Task) -> None:
        """Forget *task* if it is still the session's live transport."""
        live = self._live.get(session_id)
        if live is not None and live.task is task:
            del self._live[session_id]

    def stop(self, session_id: str) -> bool:
        live = self._live.pop(session_id, None)
        if live is None:
            return False
        live.task.cancel()
        return True

    def get(self, session_id: str) -> LiveTransport | None:
        return self._live.get(session_id)

    def is_streaming(self, session_id: str) -> bool:
        live = self._live.get(session_id)
        return live is not None and live.kind == TransportKind.STREAM

    def is_polling(self, session_id: str) -> bool:
        live = self._live.get(session_id)
        return live is not None and live.kind == TransportKind.POLL

    def status(self, session_id: str) -> dict[str, object]:
        live = self._live.get(session_id)
        return {
            "is_polling": live is not None and live.kind == TransportKind.POLL,
            "is_streaming": live is not None and live.kind == TransportKind.STREAM,
            "execution_id": live.execution_id if live is not None else None,
        }

    def sessions(self) -> list[str]:
        return list(self._live)

    async def shutdown(self) -> None:
        tasks = [live.task for live in self._live.values()]
        self._live.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
