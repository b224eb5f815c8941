"""Transcript models: turns, content blocks, attachments and usage stats."""

from __future__ import annotations

import base64
import binascii
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

DEFAULT_CONTEXT_WINDOW = 200_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    return ts.isoformat().replace("+00:00", "Z")


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return _utcnow()


class TurnRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Encoding(Enum):
    UTF8 = "utf8"
    BASE64 = "base64"


@dataclass
class Attachment:
    """A file attached to a user turn.

    ``data`` holds the text itself for utf8 attachments and the base64
    payload (without any ``data:`` prefix) for binary ones.
    """
    name: str
    media_type: str
    encoding: Encoding
    data: str

    @property
    def is_image(self) -> bool:
        return self.media_type.startswith("image/")

    @property
    def size(self) -> int:
        """Decoded size in bytes."""
        if self.encoding is Encoding.BASE64:
            padding = self.data.count("=", -2) if self.data else 0
            return max(0, len(self.data) * 3 // 4 - padding)
        return len(self.data.encode("utf-8"))

    def raw_bytes(self) -> bytes:
        if self.encoding is Encoding.BASE64:
            try:
                return base64.b64decode(self.data, validate=True)
            except (binascii.Error, ValueError):
                return b""
        return self.data.encode("utf-8")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "mediaType": self.media_type,
            "encoding": self.encoding.value,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attachment:
        """Build from a persisted entry or a client ``files[]`` entry.

        Client entries look like ``{name, type, content}`` where images
        arrive as ``data:<mime>;base64,<payload>`` URLs and text files
        as their literal contents.
        """
        if "encoding" in data and "data" in data:
            return cls(
                name=str(data.get("name") or "file"),
                media_type=str(data.get("mediaType") or "application/octet-stream"),
                encoding=Encoding(data["encoding"]),
                data=str(data["data"]),
            )

        name = str(data.get("name") or "file")
        declared = str(data.get("type") or data.get("mediaType") or "")
        content = data.get("content")
        if content is None:
            content = data.get("data") or ""
        content = str(content)
        if content.startswith("data:") and "," in content:
            header, payload = content.split(",", 1)
            mime = header[len("data:"):].split(";", 1)[0] or declared
            if ";base64" in header:
                return cls(name, mime, Encoding.BASE64, payload)
            return cls(name, mime, Encoding.UTF8, payload)
        if declared == "image":
            declared = "image/unknown"
        return cls(name, declared or "text/plain", Encoding.UTF8, content)


@dataclass
class TextBlock:
    text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ToolUseBlock:
    name: str
    input: Any = field(default_factory=dict)
    id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": "tool_use", "name": self.name, "input": self.input}
        if self.id:
            out["id"] = self.id
        return out


Block = Union[TextBlock, ToolUseBlock]


def block_from_dict(data: dict[str, Any]) -> Block | None:
    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=str(data.get("text") or ""))
    if kind == "tool_use":
        return ToolUseBlock(
            name=str(data.get("name") or ""),
            input=data.get("input", {}),
            id=data.get("id"),
        )
    return None


@dataclass
class UserTurn:
    text: str
    attachments: list[Attachment] = field(default_factory=list)
    timestamp: datetime = field(default_factory=_utcnow)

    role = TurnRole.USER

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": "user",
            "content": self.text,
            "files": [a.to_dict() for a in self.attachments],
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class AssistantTurn:
    blocks: list[Block] = field(default_factory=list)
    timestamp: datetime = field(default_factory=_utcnow)

    role = TurnRole.ASSISTANT

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    def append_text(self, text: str) -> None:
        """Extend the trailing text block, opening one if needed."""
        if self.blocks and isinstance(self.blocks[-1], TextBlock):
            self.blocks[-1].text += text
        else:
            self.blocks.append(TextBlock(text=text))

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": "assistant",
            "content": [b.to_dict() for b in self.blocks],
            "timestamp": _iso(self.timestamp),
        }


Turn = Union[UserTurn, AssistantTurn]


def turn_from_dict(data: dict[str, Any]) -> Turn | None:
    role = data.get("role")
    timestamp = _parse_ts(data.get("timestamp"))
    if role == "user":
        content = data.get("content")
        if not isinstance(content, str):
            # Older snapshots stored the raw content block list.
            content = "".join(
                b.get("text", "") for b in content or [] if isinstance(b, dict)
            )
        return UserTurn(
            text=content,
            attachments=[
                Attachment.from_dict(f) for f in data.get("files") or []
                if isinstance(f, dict)
            ],
            timestamp=timestamp,
        )
    if role == "assistant":
        content = data.get("content")
        if isinstance(content, str):
            blocks: list[Block] = [TextBlock(text=content)]
        else:
            blocks = [
                b for b in (block_from_dict(raw) for raw in content or [] if isinstance(raw, dict))
                if b is not None
            ]
        return AssistantTurn(blocks=blocks, timestamp=timestamp)
    return None


@dataclass
class Stats:
    """Monotone usage counters for a session."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    context_window: int = DEFAULT_CONTEXT_WINDOW
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens + self.output_tokens
            + self.cache_read_tokens + self.cache_creation_tokens
        )

    @property
    def context_percent(self) -> int:
        if self.context_window <= 0:
            return 0
        # Round half up, as clients display it.
        return int(math.floor(100 * self.total_tokens / self.context_window + 0.5))

    def add_usage(self, usage: dict[str, Any]) -> None:
        """Accumulate an Anthropic-shaped usage block."""
        self.input_tokens += int(usage.get("input_tokens") or 0)
        self.output_tokens += int(usage.get("output_tokens") or 0)
        self.cache_read_tokens += int(usage.get("cache_read_input_tokens") or 0)
        self.cache_creation_tokens += int(usage.get("cache_creation_input_tokens") or 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
            "totalTokens": self.total_tokens,
            "contextWindow": self.context_window,
            "contextPercent": self.context_percent,
            "costUsd": self.cost_usd,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Stats:
        if not data:
            return cls()
        return cls(
            input_tokens=int(data.get("inputTokens") or 0),
            output_tokens=int(data.get("outputTokens") or 0),
            cache_read_tokens=int(data.get("cacheReadTokens") or 0),
            cache_creation_tokens=int(data.get("cacheCreationTokens") or 0),
            context_window=int(data.get("contextWindow") or DEFAULT_CONTEXT_WINDOW),
            cost_usd=float(data.get("costUsd") or 0.0),
        )
