"""Outbound frame sinks.

A ClientConnection owns one websocket and a bounded queue drained by a
single writer task, so frames from providers, terminals and the
scheduler reach the socket in the order they were enqueued. Frames are
serialized at enqueue time; later mutation of the source dict cannot
change what is sent.

HeadlessSink stands in for a client during scheduled runs and folds
the event stream into a response text and a completion future.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from aiohttp import web

logger = logging.getLogger(__name__)

_CLOSE = object()


class ClientSink(Protocol):
    """Anything a session or terminal can push frames to."""
    client_id: str

    def send(self, frame: dict[str, Any]) -> None: ...


class ClientConnection:
    """Serialised outbound stream for one websocket."""

    def __init__(
        self,
        ws: web.WebSocketResponse,
        *,
        remote: str | None = None,
        maxsize: int = 5000,
    ) -> None:
        self.client_id = uuid.uuid4().hex[:8]
        self.remote = remote
        self.authenticated = False
        self.current_session_id: str | None = None
        self._ws = ws
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._writer: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"<ClientConnection {self.client_id} from={self.remote}>"

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    def send(self, frame: dict[str, Any]) -> None:
        """Enqueue a frame without blocking; drops it if the queue is full."""
        if self._closed:
            return
        try:
            payload = json.dumps(frame, default=str)
        except (TypeError, ValueError):
            logger.exception("client=%s unserializable frame %s", self.client_id, frame.get("type"))
            return
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.error(
                "client=%s outbound queue full, dropping: %s (queue size: %d)",
                self.client_id, frame.get("type"), self._queue.qsize(),
            )

    async def _drain(self) -> None:
        while True:
            payload = await self._queue.get()
            if payload is _CLOSE:
                break
            if self._ws.closed:
                continue
            try:
                await self._ws.send_str(payload)
            except (ConnectionResetError, RuntimeError) as exc:
                logger.debug("client=%s send failed: %s", self.client_id, exc)

    async def close(self) -> None:
        """Stop accepting frames and flush what is already queued."""
        if self._closed:
            return
        self._closed = True
        if self._writer is None:
            return
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            self._writer.cancel()
        try:
            await asyncio.wait_for(self._writer, timeout=5.0)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            self._writer.cancel()


@dataclass
class HeadlessOutcome:
    """What a headless run produced."""
    success: bool
    response: str = ""
    error: str | None = None
    stats: dict[str, Any] | None = None


@dataclass
class HeadlessSink:
    """Synthetic client capturing a scheduled run's events."""
    client_id: str = field(default_factory=lambda: f"headless-{uuid.uuid4().hex[:8]}")
    parts: list[str] = field(default_factory=list)
    stats: dict[str, Any] | None = None
    done: asyncio.Future = field(
        default_factory=lambda: asyncio.get_running_loop().create_future(),
    )

    @property
    def response(self) -> str:
        return "".join(self.parts).strip()

    def _finish(self, success: bool, error: str | None = None) -> None:
        if self.done.done():
            return
        self.done.set_result(HeadlessOutcome(
            success=success, response=self.response, error=error, stats=self.stats,
        ))

    def send(self, frame: dict[str, Any]) -> None:
        kind = frame.get("type")
        if kind == "llm_event":
            event = frame.get("event") or {}
            if event.get("type") != "assistant":
                return
            message = event.get("message") or {}
            for block in message.get("content") or []:
                if isinstance(block, dict) and block.get("type") == "text":
                    self.parts.append(block.get("text", ""))
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                self.parts.append(delta.get("text", ""))
        elif kind == "stats_update":
            self.stats = frame.get("stats")
        elif kind == "message_complete":
            self._finish(True)
        elif kind == "error":
            self._finish(False, str(frame.get("message") or "Unknown error"))
        elif kind == "process_exited":
            self._finish(False, f"Process exited with code {frame.get('code')}")
