"""Session state: persisted transcript plus the transient runtime binding."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
import uuid
from typing import TYPE_CHECKING, Any, Callable

from eve.shared.models.message import (
    Stats,
    Turn,
    _iso,
    _parse_ts,
    _utcnow,
    turn_from_dict,
)

if TYPE_CHECKING:
    from eve.adapters.client_queue import ClientSink
    from eve.engine.providers.base import Provider

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "haiku"
MAX_NAME_LENGTH = 100


def new_session_id() -> str:
    """128 random bits, hex encoded."""
    return uuid.uuid4().hex


@dataclass
class Session:
    """One conversation with one model.

    Everything above the ``transient`` marker is written to disk; the
    rest is rebuilt at runtime and never persisted.
    """

    session_id: str = field(default_factory=new_session_id)
    directory: str = ""
    model: str = DEFAULT_MODEL
    project_id: str | None = None
    name: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    messages: list[Turn] = field(default_factory=list)
    stats: Stats = field(default_factory=Stats)
    provider_state: dict[str, Any] | None = None
    transferred: bool = False

    # transient
    client: ClientSink | None = field(default=None, repr=False, compare=False)
    provider: Provider | None = field(default=None, repr=False, compare=False)
    processing: bool = field(default=False, compare=False)
    headless: bool = field(default=False, compare=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)
    on_change: Callable[[Session], None] | None = field(
        default=None, repr=False, compare=False,
    )

    # ── Client binding ──

    def bind_client(self, client: ClientSink) -> None:
        """Make *client* the sole receiver of this session's events."""
        self.client = client
        self.emit_stats()

    def unbind_client(self, client: ClientSink | None = None) -> bool:
        """Drop the binding (only if it is *client*, when given)."""
        if self.client is None:
            return False
        if client is not None and self.client is not client:
            return False
        self.client = None
        return True

    def emit(self, frame: dict[str, Any]) -> None:
        """Deliver a frame to the bound client, or drop it."""
        client = self.client
        if client is None:
            logger.debug(
                "session=%s unbound, dropping %s", self.session_id, frame.get("type"),
            )
            return
        frame.setdefault("sessionId", self.session_id)
        client.send(frame)

    def emit_stats(self) -> None:
        self.emit({"type": "stats_update", "stats": self.stats.to_dict()})

    def system_message(self, text: str) -> None:
        self.emit({"type": "system_message", "message": text})

    def error(self, text: str) -> None:
        self.emit({"type": "error", "message": text})

    # ── Mutation ──

    def touch(self) -> None:
        """Signal that persisted state changed so a snapshot gets scheduled."""
        if self.on_change is not None:
            self.on_change(self)

    def append_turn(self, turn: Turn) -> None:
        self.messages.append(turn)
        self.touch()

    def reset(self) -> None:
        """Empty the transcript and zero the stats (``/clear``)."""
        self.messages = []
        self.stats = Stats(context_window=self.stats.context_window)
        self.provider_state = None
        self.transferred = False
        self.touch()

    def rename(self, name: str) -> str:
        self.name = name.strip()[:MAX_NAME_LENGTH] or None
        self.touch()
        return self.name or ""

    # ── Serialization ──

    def history(self) -> list[dict[str, Any]]:
        return [turn.to_dict() for turn in self.messages]

    def summary(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "projectId": self.project_id,
            "name": self.name,
            "directory": self.directory,
            "model": self.model,
            "createdAt": _iso(self.created_at),
            "messageCount": len(self.messages),
            "processing": self.processing,
            "transferred": self.transferred,
        }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "projectId": self.project_id,
            "name": self.name,
            "directory": self.directory,
            "model": self.model,
            "createdAt": _iso(self.created_at),
            "messages": self.history(),
            "stats": self.stats.to_dict(),
            "providerState": self.provider_state,
        }
        if self.transferred:
            data["transferred"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        messages = [
            turn for turn in (
                turn_from_dict(raw) for raw in data.get("messages") or []
                if isinstance(raw, dict)
            )
            if turn is not None
        ]
        provider_state = data.get("providerState")
        return cls(
            session_id=str(data["sessionId"]),
            directory=str(data.get("directory") or ""),
            model=str(data.get("model") or DEFAULT_MODEL),
            project_id=data.get("projectId"),
            name=data.get("name"),
            created_at=_parse_ts(data.get("createdAt")),
            messages=messages,
            stats=Stats.from_dict(data.get("stats")),
            provider_state=provider_state if isinstance(provider_state, dict) else None,
            transferred=bool(data.get("transferred", False)),
        )
