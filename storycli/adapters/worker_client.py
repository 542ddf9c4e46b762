"""HTTP client for the endpoints fronting the worker process.

    POST   {api}/query                    start an execution
    GET    {api}/query?executionId=X      execution status
    DELETE {api}/query?executionId=X      cancel (best effort)
    GET    {api}/stream?executionId=X     server-sent event stream
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import aiohttp
from yarl import URL

from storycli.engine.errors import (
    ExecutionNotFoundError,
    StatusQueryError,
    StreamTransportError,
    SubmissionError,
)

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def normalize_status(raw: Any) -> str:
    """Collapse worker statuses onto running/completed/failed.

    The worker also reports ``error`` and ``aborted``; both are failures
    from the queue's point of view.
    """
    if raw == STATUS_RUNNING:
        return STATUS_RUNNING
    if raw == STATUS_COMPLETED:
        return STATUS_COMPLETED
    return STATUS_FAILED


@dataclass
class SubmitResponse:
    execution_id: str
    stream_url: str


async def _error_message(resp: aiohttp.ClientResponse) -> str:
    try:
        payload = await resp.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return f"HTTP {resp.status}"


class WorkerClient:
    """Thin aiohttp wrapper. One ClientSession per client, created lazily."""

    def __init__(
        self,
        api_base: str,
        *,
        timeout_seconds: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._api_base = URL(api_base.rstrip("/"))
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        # Streams stay open for as long as the execution runs.
        self._stream_timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=timeout_seconds, sock_read=None,
        )
        self._session = session
        self._owns_session = session is None

    @property
    def api_base(self) -> URL:
        return self._api_base

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> WorkerClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── URLs ──

    def _url(self, name: str) -> URL:
        return URL(f"{self._api_base}/{name}")

    def stream_url_for(self, execution_id: str) -> str:
        return str(self._url("stream").with_query(executionId=execution_id))

    def resolve_stream_url(self, stream_url: str) -> str:
        """Absolute form of a (possibly relative) stream address."""
        url = URL(stream_url)
        if url.is_absolute():
            return str(url)
        return str(self._api_base.join(url))

    # ── requests ──

    async def submit(
        self,
        *,
        project_path: str | None,
        prompt: str,
        project_id: str | None = None,
        resume_id: str | None = None,
    ) -> SubmitResponse:
        body: dict[str, Any] = {"projectPath": project_path, "prompt": prompt}
        if project_id:
            body["projectId"] = project_id
        if resume_id:
            body["resumeSessionId"] = resume_id
        try:
            async with self._http().post(
                self._url("query"), json=body, timeout=self._timeout,
            ) as resp:
                if resp.status >= 400:
                    raise SubmissionError(await _error_message(resp), status=resp.status)
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise SubmissionError(f"Submit request failed: {exc or type(exc).__name__}") from exc

        if not isinstance(payload, dict):
            raise SubmissionError("Submit response is not a JSON object")
        execution_id = payload.get("executionId")
        stream_url = payload.get("streamUrl")
        if not execution_id:
            raise SubmissionError("Submit response has no executionId")
        return SubmitResponse(
            execution_id=str(execution_id),
            stream_url=self.resolve_stream_url(
                str(stream_url) if stream_url else self.stream_url_for(str(execution_id))
            ),
        )

    async def get_status(self, execution_id: str) -> str:
        """Normalized status of *execution_id*.

        Raises ExecutionNotFoundError on 404 and StatusQueryError when the
        status cannot be determined.
        """
        try:
            async with self._http().get(
                self._url("query"),
                params={"executionId": execution_id},
                timeout=self._timeout,
            ) as resp:
                if resp.status == 404:
                    raise ExecutionNotFoundError(execution_id)
                if resp.status >= 400:
                    raise StatusQueryError(await _error_message(resp), status=resp.status)
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise StatusQueryError(f"Status request failed: {exc or type(exc).__name__}") from exc

        if not isinstance(payload, dict):
            raise StatusQueryError("Status response is not a JSON object")
        execution = payload.get("execution")
        if isinstance(execution, dict):
            return normalize_status(execution.get("status"))
        if "status" in payload:
            return normalize_status(payload.get("status"))
        raise ExecutionNotFoundError(execution_id)

    async def cancel(self, execution_id: str) -> bool:
        """Ask the worker to stop *execution_id*. Never raises."""
        try:
            async with self._http().delete(
                self._url("query"),
                params={"executionId": execution_id},
                timeout=self._timeout,
            ) as resp:
                ok = resp.status < 400
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Cancel request for %s failed: %s", execution_id, exc)
            return False
        if not ok:
            logger.warning("Cancel request for %s rejected", execution_id)
        return ok

    async def iter_frames(self, stream_url: str) -> AsyncIterator[str]:
        """Yield the ``data`` payload of each server-sent event.

        Comment lines (keep-alives) are skipped. Raises StreamTransportError
        if the connection cannot be opened or breaks mid-stream; a clean end
        of stream simply stops the iteration.
        """
        url = self.resolve_stream_url(stream_url)
        try:
            async with self._http().get(
                url,
                timeout=self._stream_timeout,
                headers={"Accept": "text/event-stream"},
            ) as resp:
                if resp.status >= 400:
                    raise StreamTransportError(f"Stream {url} returned HTTP {resp.status}")
                data_lines: list[str] = []
                async for raw_line in resp.content:
                    line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                    if not line:
                        if data_lines:
                            yield "\n".join(data_lines)
                            data_lines = []
                        continue
                    if line.startswith(":"):
                        continue
                    name, _, value = line.partition(":")
                    if name == "data":
                        data_lines.append(value[1:] if value.startswith(" ") else value)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StreamTransportError(f"Stream {url} broke: {exc or type(exc).__name__}") from exc
