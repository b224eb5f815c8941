"""Claude CLI provider.

Keeps one ``claude --print`` process per session alive for the whole
conversation, speaking stream-json in both directions. User turns are
written to stdin as JSON lines; events stream back on stdout.
"""
from __future__ import annotations

import json
import logging
import re
import shlex
from typing import Any

from eve.adapters.events import UserEvent
from eve.engine.errors import ProviderSpawnError
from eve.shared.models.message import Attachment, Encoding

from .base import (
    CommandInfo,
    CommandResult,
    ModelInfo,
    Reply,
    StreamJsonProvider,
    TransferRequest,
    TurnPhase,
)

logger = logging.getLogger(__name__)

_LOCAL_STDOUT_RE = re.compile(r"<local-command-stdout>(.*?)</local-command-stdout>", re.S)


def parse_quoted_args(text: str) -> list[str]:
    """Split a flag string the way a POSIX shell would."""
    try:
        return shlex.split(text)
    except ValueError:
        # Unbalanced quote: fall back to whitespace splitting.
        return text.split()


def remove_custom_arg(args: list[str], flag: str) -> list[str]:
    """Drop *flag* and every value after it up to the next ``--flag``."""
    out: list[str] = []
    skipping = False
    for arg in args:
        if arg.startswith("--"):
            skipping = arg == flag
        if not skipping:
            out.append(arg)
    return out


def format_args_for_display(args: list[str]) -> str:
    """One flag (with its values) per line."""
    lines: list[str] = []
    for arg in args:
        if arg.startswith("--") or not lines:
            lines.append(arg)
        else:
            lines[-1] += " " + (shlex.quote(arg) if " " in arg else arg)
    return "\n".join(lines)


class ClaudeProvider(StreamJsonProvider):
    """Provider backed by a long-lived Claude Code CLI process."""

    kind = "claude"
    label = "Claude"

    def __init__(self, session, context=None) -> None:
        super().__init__(session, context)
        self.custom_args: list[str] = list(self.context.options.get("extra_args") or [])
        self._command = self.resolve_command(self.context.command_path, "claude")

    # ── Process ──

    def build_command(self) -> list[str]:
        cmd = [
            self._command,
            "--print",
            "--output-format", "stream-json",
            "--input-format", "stream-json",
            "--verbose",
            "--model", self.session.model,
        ]
        if self.resume_token:
            cmd.extend(["--resume", self.resume_token])
        cmd.extend(self.custom_args)
        return cmd

    async def start(self) -> None:
        if self.running:
            return
        try:
            await self.spawn()
        except ProviderSpawnError as exc:
            logger.error("[claude] %s", exc)
            self.session.error(str(exc))

    async def restart(self) -> None:
        await self.kill()
        await self.start()

    @staticmethod
    def build_content(text: str, attachments: list[Attachment]) -> str | list[dict[str, Any]]:
        if not attachments:
            return text
        blocks: list[dict[str, Any]] = []
        for att in attachments:
            if att.is_image:
                if att.encoding is Encoding.BASE64:
                    blocks.append({
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": att.media_type,
                            "data": att.data,
                        },
                    })
            else:
                blocks.append({
                    "type": "text",
                    "text": f'<file name="{att.name}">\n{att.data}\n</file>',
                })
        blocks.append({"type": "text", "text": text})
        return blocks

    async def send(self, text: str, attachments: list[Attachment]) -> None:
        if not self.begin_turn():
            return
        try:
            if not self.running:
                await self.spawn()
            proc = self._process
            frame = {
                "type": "user",
                "message": {"role": "user", "content": self.build_content(text, attachments)},
            }
            proc.stdin.write((json.dumps(frame) + "\n").encode("utf-8"))
            await proc.stdin.drain()
            if self.turn_open:
                self.phase = TurnPhase.STREAMING
        except ProviderSpawnError as exc:
            logger.error("[claude] %s", exc)
            self.fail_turn(str(exc))
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("[claude] stdin write failed session=%s: %s", self.session.session_id, exc)
            self._process = None
            self.fail_turn(f"Failed to send message to Claude: {exc}")

    # ── Events ──

    def on_user_echo(self, event: UserEvent) -> None:
        content = (event.message or {}).get("content")
        if isinstance(content, str):
            match = _LOCAL_STDOUT_RE.search(content)
            if match:
                self.session.system_message(match.group(1).strip())
                self.complete_turn()
                return
        self.emit(event)

    # ── Snapshot ──

    def snapshot(self) -> dict[str, Any] | None:
        if not self.resume_token and not self.custom_args:
            return None
        return {"claudeSessionId": self.resume_token, "customArgs": list(self.custom_args)}

    def restore(self, blob: dict[str, Any] | None) -> None:
        if not blob:
            return
        self.resume_token = blob.get("claudeSessionId") or None
        saved_args = blob.get("customArgs")
        if isinstance(saved_args, list):
            self.custom_args = [str(a) for a in saved_args]

    # ── Commands ──

    @classmethod
    def list_models(cls) -> list[ModelInfo]:
        return [
            ModelInfo("haiku", "Haiku (fast, cheap)", "Claude"),
            ModelInfo("sonnet", "Sonnet (balanced)", "Claude"),
            ModelInfo("opus", "Opus (powerful)", "Claude"),
        ]

    @classmethod
    def list_commands(cls) -> list[CommandInfo]:
        return [
            CommandInfo("model", "Show or switch the Claude model (haiku, sonnet, opus)"),
            CommandInfo("args", "Show or change extra CLI flags: /args add|remove|clear"),
            CommandInfo("transfer-cli", "Continue this conversation in a Claude CLI terminal"),
        ]

    async def handle_command(self, name: str, args: list[str], reply: Reply) -> CommandResult:
        if name == "model":
            await self._cmd_model(args, reply)
            return CommandResult.handled()
        if name == "args":
            await self._cmd_args(args, reply)
            return CommandResult.handled()
        if name == "transfer-cli":
            if not self.resume_token:
                reply("No active Claude session to transfer. Send a message first.")
                return CommandResult.handled()
            return CommandResult.transfer_to(TransferRequest(
                resume_token=self.resume_token,
                model=self.session.model,
                extra_args=list(self.custom_args),
            ))
        return CommandResult.unhandled()

    async def _cmd_model(self, args: list[str], reply: Reply) -> None:
        values = [m.value for m in self.list_models()]
        if not args:
            reply(f"Current model: {self.session.model}\nAvailable: {', '.join(values)}")
            return
        target = args[0].lower()
        if target not in values:
            reply(f"Unknown model: {target}. Available: {', '.join(values)}")
            return
        if target == self.session.model:
            reply(f"Already using {target}")
            return
        await self.kill()
        self.resume_token = None
        self.session.model = target
        self.save_state()
        await self.start()
        reply(f"Switched to {target}. Starting a new conversation.")

    async def _cmd_args(self, args: list[str], reply: Reply) -> None:
        if not args:
            if self.custom_args:
                reply("Custom args:\n" + format_args_for_display(self.custom_args))
            else:
                reply("No custom args set. Use /args add --flag value")
            return
        action, rest = args[0].lower(), " ".join(args[1:])
        if action == "add":
            new_args = parse_quoted_args(rest)
            if not new_args:
                reply("Usage: /args add --flag [value ...]")
                return
            self.custom_args.extend(new_args)
        elif action == "remove":
            if not rest.strip():
                reply("Usage: /args remove --flag")
                return
            flag = rest.split()[0]
            remaining = remove_custom_arg(self.custom_args, flag)
            if remaining == self.custom_args:
                reply(f"Flag {flag} is not set")
                return
            self.custom_args = remaining
        elif action == "clear":
            self.custom_args = []
        else:
            reply("Usage: /args [add --flag value | remove --flag | clear]")
            return
        self.save_state()
        await self.restart()
        shown = format_args_for_display(self.custom_args) or "(none)"
        reply(f"Custom args updated, Claude restarted:\n{shown}")
