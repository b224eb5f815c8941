"""Relay CLI tool-permission prompts to the browser and back.

The ``claude`` CLI runs a PreToolUse hook (``eve.hooks.permission_hook``)
that POSTs to ``/api/permission``. The request is parked here under a
fresh correlation id, a ``permission_request`` frame goes to the
session's bound client, and the HTTP call resolves when the client
answers with ``permission_response`` or the timeout passes.

A missing client or a timeout resolves as ``deny``; the hook script
itself fails open on network errors.
"""
from __future__ import annotations

import asyncio
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Any

from eve.engine.errors import PermissionTimeoutError
from eve.shared.models.session import Session

logger = logging.getLogger(__name__)

VALID_DECISIONS = frozenset({"allow", "deny", "ask"})


@dataclass
class PermissionDecision:
    decision: str
    reason: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"decision": self.decision, "reason": self.reason}


@dataclass
class PendingPermission:
    request_id: str
    session_id: str
    tool_name: str
    future: asyncio.Future = field(repr=False)


class PermissionBridge:
    """Hook tokens per session plus the table of parked requests."""

    def __init__(self, timeout_seconds: float = 60.0) -> None:
        self.timeout_seconds = timeout_seconds
        self._tokens: dict[str, str] = {}
        self._pending: dict[str, PendingPermission] = {}

    # ── Hook tokens ──

    def issue_token(self, session_id: str) -> str:
        """Token handed to the CLI via EVE_AUTH_TOKEN; stable per session."""
        token = self._tokens.get(session_id)
        if token is None:
            token = secrets.token_urlsafe(32)
            self._tokens[session_id] = token
        return token

    def revoke_token(self, session_id: str) -> None:
        self._tokens.pop(session_id, None)
        self.cancel_session(session_id)

    def validate(self, session_id: str | None, token: str | None) -> bool:
        if not session_id or not token:
            return False
        expected = self._tokens.get(session_id)
        return expected is not None and hmac.compare_digest(expected, token)

    # ── Requests ──

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def request(
        self,
        session: Session,
        tool_name: str,
        tool_input: Any,
        tool_use_id: str | None,
    ) -> PermissionDecision:
        if session.client is None:
            logger.info(
                "Permission for %s in session=%s denied: no client bound",
                tool_name, session.session_id,
            )
            return PermissionDecision("deny", "No client connected to approve this action")

        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingPermission(
            request_id=request_id,
            session_id=session.session_id,
            tool_name=tool_name,
            future=future,
        )
        session.emit({
            "type": "permission_request",
            "requestId": request_id,
            "sessionId": session.session_id,
            "toolName": tool_name,
            "toolInput": tool_input,
            "toolUseId": tool_use_id,
        })
        logger.info("Permission requested id=%s session=%s tool=%s", request_id, session.session_id, tool_name)
        try:
            return await asyncio.wait_for(future, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            exc = PermissionTimeoutError(request_id, self.timeout_seconds)
            logger.warning("%s", exc)
            return PermissionDecision("deny", str(exc))
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, request_id: str, decision: str, reason: str | None = None) -> bool:
        """Answer a parked request. Unknown or already-settled ids return False."""
        pending = self._pending.get(request_id)
        if pending is None or pending.future.done():
            logger.debug("Ignoring permission response for unknown id=%s", request_id)
            return False
        if decision not in VALID_DECISIONS:
            logger.warning("Invalid permission decision %r for id=%s; denying", decision, request_id)
            decision = "deny"
        pending.future.set_result(PermissionDecision(decision, reason or ""))
        logger.info("Permission %s id=%s tool=%s", decision, request_id, pending.tool_name)
        return True

    def cancel_session(self, session_id: str) -> int:
        """Deny everything parked for *session_id* (session ended or deleted)."""
        cancelled = 0
        for pending in list(self._pending.values()):
            if pending.session_id == session_id and not pending.future.done():
                pending.future.set_result(PermissionDecision("deny", "Session ended"))
                cancelled += 1
        return cancelled
