"""PreToolUse hook run by the ``claude`` CLI inside an Eve session.

Reads the hook payload from stdin, asks the Eve server for a decision
and prints it in the CLI's ``hookSpecificOutput`` shape. Outside Eve
(``EVE_HOOK_URL`` unset) it does nothing. Any failure to reach the
server exits 0 with no output so the CLI falls back to its own rules.
"""
from __future__ import annotations

import asyncio
import json
import os
import sys
from typing import Any
from urllib.parse import urlsplit

import aiohttp

HOOK_TIMEOUT_SECONDS = 120
_LOOPBACK = frozenset({"localhost", "127.0.0.1", "::1"})


def build_payload(hook_input: dict[str, Any], session_id: str | None) -> dict[str, Any]:
    return {
        "sessionId": session_id,
        "toolName": hook_input.get("tool_name"),
        "toolInput": hook_input.get("tool_input"),
        "toolUseId": hook_input.get("tool_use_id"),
    }


def format_decision(result: dict[str, Any]) -> dict[str, Any]:
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": result.get("decision"),
            "permissionDecisionReason": result.get("reason") or "",
        }
    }


async def request_decision(
    hook_url: str,
    payload: dict[str, Any],
    token: str | None,
    *,
    timeout: float = HOOK_TIMEOUT_SECONDS,
) -> dict[str, Any] | None:
    """POST *payload* to the server; None on any transport or parse failure."""
    url = f"{hook_url.rstrip('/')}/api/permission"
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    # The server's certificate is issued for its public name, not loopback.
    ssl_check = False if urlsplit(url).hostname in _LOOPBACK else None
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as http:
            async with http.post(url, json=payload, headers=headers, ssl=ssl_check) as resp:
                result = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
        return None
    if not isinstance(result, dict) or "decision" not in result:
        return None
    return result


def main() -> None:
    hook_url = os.environ.get("EVE_HOOK_URL")
    if not hook_url:
        sys.exit(0)
    try:
        hook_input = json.loads(sys.stdin.read())
    except ValueError:
        sys.exit(0)
    if not isinstance(hook_input, dict):
        sys.exit(0)

    payload = build_payload(hook_input, os.environ.get("EVE_SESSION_ID"))
    result = asyncio.run(request_decision(hook_url, payload, os.environ.get("EVE_AUTH_TOKEN")))
    if result is not None:
        print(json.dumps(format_decision(result)))
    sys.exit(0)


if __name__ == "__main__":
    main()
