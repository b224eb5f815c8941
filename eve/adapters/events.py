"""Normalised LLM event types.

Every provider adapter parses its backend's stream into these typed
events so that session bookkeeping never branches on provider identity.
``event_to_dict`` produces the ``llm_event.event`` wire shape; fields a
backend sent that we do not model are carried through in ``extra``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class LlmEvent:
    """Base normalised event."""
    event_type: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class SystemEvent(LlmEvent):
    event_type: str = "system"
    subtype: str = ""
    session_token: str | None = None


@dataclass
class AssistantEvent(LlmEvent):
    """Either a message opening (``message``) or a streamed ``delta``."""
    event_type: str = "assistant"
    message: dict[str, Any] | None = None
    delta: dict[str, Any] | None = None


@dataclass
class ResultEvent(LlmEvent):
    event_type: str = "result"
    usage: dict[str, Any] | None = None
    total_cost_usd: float | None = None
    result: str | None = None
    model_usage: dict[str, Any] | None = None
    is_error: bool = False


@dataclass
class UserEvent(LlmEvent):
    """Echo of a user-side message, e.g. tool results."""
    event_type: str = "user"
    message: dict[str, Any] | None = None


def text_delta(text: str) -> AssistantEvent:
    return AssistantEvent(delta={"type": "text_delta", "text": text})


def tool_use_delta(name: str, tool_input: Any, tool_id: str | None = None) -> AssistantEvent:
    delta: dict[str, Any] = {"type": "tool_use", "name": name, "input": tool_input}
    if tool_id:
        delta["id"] = tool_id
    return AssistantEvent(delta=delta)


_KNOWN_KEYS = {
    "system": {"type", "subtype", "session_id"},
    "assistant": {"type", "message", "delta"},
    "result": {"type", "usage", "total_cost_usd", "result", "modelUsage", "is_error"},
    "user": {"type", "message"},
}


def dict_to_event(data: dict[str, Any]) -> LlmEvent:
    """Parse a backend's stream-json object into a typed event."""
    event_type = str(data.get("type", ""))
    known = _KNOWN_KEYS.get(event_type, {"type"})
    extra = {k: v for k, v in data.items() if k not in known}

    if event_type == "system":
        return SystemEvent(
            subtype=str(data.get("subtype") or ""),
            session_token=data.get("session_id"),
            extra=extra,
        )
    if event_type == "assistant":
        message = data.get("message")
        delta = data.get("delta")
        return AssistantEvent(
            message=message if isinstance(message, dict) else None,
            delta=delta if isinstance(delta, dict) else None,
            extra=extra,
        )
    if event_type == "result":
        cost = data.get("total_cost_usd")
        result = data.get("result")
        return ResultEvent(
            usage=data.get("usage") if isinstance(data.get("usage"), dict) else None,
            total_cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
            result=result if isinstance(result, str) else None,
            model_usage=data.get("modelUsage") if isinstance(data.get("modelUsage"), dict) else None,
            is_error=bool(data.get("is_error", False)),
            extra=extra,
        )
    if event_type == "user":
        message = data.get("message")
        return UserEvent(
            message=message if isinstance(message, dict) else None,
            extra=extra,
        )
    return LlmEvent(event_type=event_type, extra=extra)


def event_to_dict(event: LlmEvent) -> dict[str, Any]:
    """Serialize an event to its ``llm_event.event`` wire form."""
    out: dict[str, Any] = dict(event.extra)
    out["type"] = event.event_type

    if isinstance(event, SystemEvent):
        out["subtype"] = event.subtype
        if event.session_token:
            out["session_id"] = event.session_token
    elif isinstance(event, AssistantEvent):
        if event.message is not None:
            out["message"] = event.message
        if event.delta is not None:
            out["delta"] = event.delta
    elif isinstance(event, ResultEvent):
        if event.usage is not None:
            out["usage"] = event.usage
        if event.total_cost_usd is not None:
            out["total_cost_usd"] = event.total_cost_usd
        if event.result is not None:
            out["result"] = event.result
        if event.model_usage is not None:
            out["modelUsage"] = event.model_usage
        if event.is_error:
            out["is_error"] = True
    elif isinstance(event, UserEvent):
        if event.message is not None:
            out["message"] = event.message
    return out
