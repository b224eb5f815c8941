"""Gemini CLI provider.

Spawns a fresh ``gemini`` process for every user turn. The prompt is
written to stdin; conversation continuity comes from ``--resume`` with
the session id the CLI reported on its previous run.
"""
from __future__ import annotations

import logging
from typing import Any

from eve.adapters.events import (
    LlmEvent,
    ResultEvent,
    SystemEvent,
    UserEvent,
    dict_to_event,
    text_delta,
    tool_use_delta,
)
from eve.engine.errors import ProviderSpawnError
from eve.shared.models.message import Attachment

from .base import (
    CommandInfo,
    CommandResult,
    ModelInfo,
    Reply,
    StreamJsonProvider,
    TurnPhase,
    inline_text_attachments,
)

logger = logging.getLogger(__name__)

# Rough flash pricing per token; the CLI reports no cost.
INPUT_COST_PER_TOKEN = 0.075 / 1_000_000
OUTPUT_COST_PER_TOKEN = 0.30 / 1_000_000

_STDERR_NOISE = ("DeprecationWarning", "Loaded cached", "Hook registry")


class GeminiProvider(StreamJsonProvider):
    """Provider backed by the Gemini CLI, one process per message."""

    kind = "gemini"
    label = "Gemini"
    parse_leftover_on_exit = True

    def __init__(self, session, context=None) -> None:
        super().__init__(session, context)
        self._command = self.resolve_command(self.context.command_path, "gemini")

    def build_command(self) -> list[str]:
        # Empty --prompt puts the CLI in non-interactive mode reading stdin.
        cmd = [self._command, "--output-format=stream-json", "--prompt="]
        if self.resume_token:
            cmd.extend(["--resume", self.resume_token])
        model = self.session.model
        if model and not model.startswith("auto-"):
            cmd.extend(["--model", model])
        return cmd

    def keep_stderr_line(self, line: str) -> bool:
        return not any(noise in line for noise in _STDERR_NOISE)

    async def send(self, text: str, attachments: list[Attachment]) -> None:
        if not self.begin_turn():
            return
        content = inline_text_attachments(text, attachments)
        if not content.endswith("\n"):
            content += "\n"
        try:
            proc = await self.spawn()
            proc.stdin.write(content.encode("utf-8"))
            await proc.stdin.drain()
            proc.stdin.close()
            if self.turn_open:
                self.phase = TurnPhase.STREAMING
        except ProviderSpawnError as exc:
            logger.error("[gemini] %s", exc)
            self.fail_turn(str(exc))
        except (BrokenPipeError, ConnectionResetError) as exc:
            # The exit handler reports the outcome once the process is reaped.
            logger.warning("[gemini] stdin write failed session=%s: %s", self.session.session_id, exc)

    # ── Events ──

    def normalize(self, raw: dict[str, Any]) -> LlmEvent | None:
        kind = raw.get("type")
        if kind == "init":
            extra = {k: v for k, v in raw.items() if k not in ("type", "session_id")}
            return SystemEvent(subtype="init", session_token=raw.get("session_id"), extra=extra)
        if kind == "message":
            if raw.get("role") == "assistant":
                return text_delta(str(raw.get("content") or ""))
            # The CLI echoes the user's own prompt; nothing to show.
            return None
        if kind == "tool_use":
            return tool_use_delta(
                str(raw.get("tool_name") or raw.get("name") or ""),
                raw.get("parameters", raw.get("input", {})),
                raw.get("tool_id"),
            )
        if kind == "tool_result":
            return UserEvent(message={
                "role": "user",
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": raw.get("tool_id"),
                    "status": raw.get("status"),
                    "content": raw.get("output", ""),
                }],
            })
        if kind == "result":
            stats = raw.get("stats") or {}
            usage = raw.get("usage")
            if not usage and stats:
                usage = {
                    "input_tokens": int(stats.get("input_tokens") or 0),
                    "output_tokens": int(stats.get("output_tokens") or 0),
                }
            error = raw.get("error")
            is_error = raw.get("status") == "error"
            result = None
            if is_error:
                result = error.get("message") if isinstance(error, dict) else str(error or "Gemini request failed")
            extra = {k: v for k, v in raw.items() if k not in ("type", "usage", "error")}
            return ResultEvent(usage=usage or None, result=result, is_error=is_error, extra=extra)
        return dict_to_event(raw)

    def apply_cost(self, event: ResultEvent) -> None:
        usage = event.usage or {}
        self.session.stats.cost_usd += (
            int(usage.get("input_tokens") or 0) * INPUT_COST_PER_TOKEN
            + int(usage.get("output_tokens") or 0) * OUTPUT_COST_PER_TOKEN
        )

    def on_process_exit(self, code: int | None) -> None:
        if not self.turn_open:
            # Normal: the result event already finished the turn.
            self._current = None
            return
        turn, self._current = self._current, None
        if code == 0 and self.commit_assistant(turn):
            self.save_state()
            self.session.emit_stats()
            self.complete_turn()
            return
        self.finish_turn({"type": "process_exited", "code": code})

    # ── Snapshot ──

    def snapshot(self) -> dict[str, Any] | None:
        if not self.resume_token:
            return None
        return {"geminiSessionId": self.resume_token}

    def restore(self, blob: dict[str, Any] | None) -> None:
        if blob:
            self.resume_token = blob.get("geminiSessionId") or None

    # ── Commands ──

    @classmethod
    def list_models(cls) -> list[ModelInfo]:
        return [
            ModelInfo("auto-gemini-2.5", "Auto Gemini 2.5 (recommended)", "Gemini"),
            ModelInfo("gemini-2.0-flash-lite", "Gemini 2.0 Flash Lite (cheap)", "Gemini"),
            ModelInfo("gemini-2.0-flash", "Gemini 2.0 Flash", "Gemini"),
        ]

    @classmethod
    def list_commands(cls) -> list[CommandInfo]:
        names = ", ".join(m.value for m in cls.list_models())
        return [CommandInfo("model", f"Switch model ({names})")]

    async def handle_command(self, name: str, args: list[str], reply: Reply) -> CommandResult:
        if name != "model":
            return CommandResult.unhandled()
        values = [m.value for m in self.list_models()]
        if not args:
            reply(f"Current model: {self.session.model}\nAvailable: {', '.join(values)}")
            return CommandResult.handled()
        target = args[0].lower()
        if target not in values:
            reply(f'Invalid model "{target}". Available: {", ".join(values)}')
            return CommandResult.handled()
        await self.kill()
        self.resume_token = None
        self.session.model = target
        self.save_state()
        reply(f"Model changed to: {target}")
        return CommandResult.handled()
