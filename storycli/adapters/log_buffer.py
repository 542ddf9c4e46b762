"""Coalescing buffer between the stream handler and log consumers.

Rapid successive entries are appended to a pending list; one flush is
scheduled per display tick and delivers everything pending as a single
batch, in arrival order.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LogBuffer(Generic[T]):
    """Buffer plus at most one outstanding scheduled flush."""

    def __init__(
        self,
        on_flush: Callable[[list[T]], None],
        *,
        interval: float = 1 / 60,
    ) -> None:
        self._on_flush = on_flush
        self._interval = interval
        self._pending: list[T] = []
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def flush_scheduled(self) -> bool:
        return self._handle is not None

    def add(self, entry: T | None) -> None:
        if entry is None:
            return
        self._pending.append(entry)
        if self._handle is None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self._interval, self._scheduled_flush)

    def _scheduled_flush(self) -> None:
        self._handle = None
        self._deliver()

    def flush(self) -> None:
        """Deliver pending entries now and drop the scheduled flush."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._deliver()

    def discard(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = []

    def _deliver(self) -> None:
        if not self._pending:
            return
        batch, self._pending = self._pending, []
        try:
            self._on_flush(batch)
        except Exception:
            logger.exception("Log flush consumer failed (%d entries)", len(batch))
