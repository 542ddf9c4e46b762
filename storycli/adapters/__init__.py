"""Adapters package - Bridge between the engine and the worker process.

Contains the stream event codec, the projection/dispatch layer, the log
coalescing buffer and the HTTP client for the worker endpoints.
"""
from __future__ import annotations

__all__ = [
    "decode",
    "EventProtocol",
    "LogBuffer",
    "WorkerClient",
]

from storycli.adapters.events import decode
from storycli.adapters.log_buffer import LogBuffer
from storycli.adapters.protocol import EventProtocol
from storycli.adapters.worker_client import WorkerClient
