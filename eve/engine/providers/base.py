"""Abstract base for chat providers.

Each provider adapts one LLM backend (a long-lived CLI, a per-message
CLI, or an HTTP chat-completions endpoint) to the session protocol:
it receives user turns, emits normalised events to the session's bound
client, commits the assistant turn to the transcript and keeps the
session's stats current.

Turn bookkeeping lives here so that every accepted turn ends exactly
once: with ``message_complete``, ``error`` or ``process_exited``.
"""
from __future__ import annotations

import abc
import asyncio
import codecs
import enum
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar

from eve.adapters.events import (
    AssistantEvent,
    LlmEvent,
    ResultEvent,
    SystemEvent,
    UserEvent,
    dict_to_event,
    event_to_dict,
)
from eve.engine.errors import ProviderSpawnError
from eve.shared.models.message import (
    AssistantTurn,
    Attachment,
    Encoding,
    TextBlock,
    ToolUseBlock,
)
from eve.shared.models.session import Session
from eve.shared.services.process_cleanup import PidRegistry

logger = logging.getLogger(__name__)

IMAGE_MEDIA_TYPES = frozenset({"image/png", "image/jpeg", "image/gif", "image/webp"})
MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
MAX_TOTAL_ATTACHMENT_BYTES = 50 * 1024 * 1024

BUSY_MESSAGE = "Please wait for the current response to complete"

Reply = Callable[[str], None]


def validate_attachments(attachments: list[Attachment]) -> list[str]:
    """Return every problem with *attachments*; empty means acceptable."""
    errors: list[str] = []
    total = 0
    for att in attachments:
        size = att.size
        total += size
        if att.is_image:
            if att.media_type not in IMAGE_MEDIA_TYPES:
                errors.append(f"Unsupported image type for {att.name}: {att.media_type}")
            elif att.encoding is not Encoding.BASE64 or not att.raw_bytes():
                errors.append(f"Invalid image format for {att.name}")
        if size > MAX_ATTACHMENT_BYTES:
            errors.append(
                f"{att.name} is too large ({size / 1024 / 1024:.1f} MB, "
                f"max {MAX_ATTACHMENT_BYTES // 1024 // 1024} MB)"
            )
    if total > MAX_TOTAL_ATTACHMENT_BYTES:
        errors.append(
            f"Total attachment size {total / 1024 / 1024:.1f} MB exceeds "
            f"{MAX_TOTAL_ATTACHMENT_BYTES // 1024 // 1024} MB"
        )
    return errors


def inline_text_attachments(text: str, attachments: list[Attachment]) -> str:
    """Prefix *text* with ``<file>`` blocks for each non-image attachment."""
    parts = [
        f'<file name="{att.name}">\n{att.data}\n</file>'
        for att in attachments
        if not att.is_image and att.encoding is Encoding.UTF8
    ]
    parts.append(text)
    return "\n\n".join(parts)


@dataclass
class ModelInfo:
    value: str
    label: str
    group: str

    def to_dict(self) -> dict[str, str]:
        return {"value": self.value, "label": self.label, "group": self.group}


@dataclass
class CommandInfo:
    name: str
    description: str


@dataclass
class TransferRequest:
    """Hand the conversation to a terminal running the native CLI."""
    resume_token: str
    model: str
    extra_args: list[str] = field(default_factory=list)

    def terminal_args(self) -> list[str]:
        return ["--resume", self.resume_token, "--model", self.model, *self.extra_args]


class CommandOutcome(enum.Enum):
    UNHANDLED = "unhandled"
    HANDLED = "handled"
    TRANSFER = "transfer"


@dataclass
class CommandResult:
    outcome: CommandOutcome
    transfer: TransferRequest | None = None

    @classmethod
    def unhandled(cls) -> CommandResult:
        return cls(CommandOutcome.UNHANDLED)

    @classmethod
    def handled(cls) -> CommandResult:
        return cls(CommandOutcome.HANDLED)

    @classmethod
    def transfer_to(cls, request: TransferRequest) -> CommandResult:
        return cls(CommandOutcome.TRANSFER, request)


@dataclass
class ProviderContext:
    """Per-spawn wiring handed to a provider by the registry."""
    command_path: str | None = None
    hook_url: str | None = None
    hook_token: str | None = None
    pid_registry: PidRegistry | None = field(default=None, repr=False)
    options: dict[str, Any] = field(default_factory=dict)


class TurnPhase(enum.Enum):
    IDLE = "idle"
    WRITING = "writing"
    STREAMING = "streaming"
    RESULT = "result"


class Provider(abc.ABC):
    """Abstract provider interface.

    Implementations:
    - ClaudeProvider: long-lived ``claude`` CLI speaking stream-json
    - GeminiProvider: ``gemini`` CLI spawned per message
    - LMStudioProvider: OpenAI-compatible HTTP endpoint with SSE
    """

    kind: ClassVar[str] = ""
    label: ClassVar[str] = ""

    def __init__(self, session: Session, context: ProviderContext | None = None) -> None:
        self.session = session
        self.context = context or ProviderContext()
        self.phase = TurnPhase.IDLE
        self._turn_open = False

    @property
    def name(self) -> str:
        return self.kind

    # ── Contract ──

    async def start(self) -> None:
        """Prepare long-lived resources. Idempotent; default no-op."""
        return None

    @abc.abstractmethod
    async def send(self, text: str, attachments: list[Attachment]) -> None:
        """Deliver one user turn. Streaming continues in the background."""

    async def handle_command(self, name: str, args: list[str], reply: Reply) -> CommandResult:
        return CommandResult.unhandled()

    @abc.abstractmethod
    async def kill(self) -> None:
        """Release every resource. Safe to call repeatedly."""

    def snapshot(self) -> dict[str, Any] | None:
        """Provider continuation state, stored verbatim on the session."""
        return None

    def restore(self, blob: dict[str, Any] | None) -> None:
        return None

    def metadata(self) -> str:
        return f"{self.label} {self.session.model} • {self.session.directory}"

    @classmethod
    @abc.abstractmethod
    def list_models(cls) -> list[ModelInfo]:
        """Models this provider serves."""

    @classmethod
    def list_commands(cls) -> list[CommandInfo]:
        return []

    # ── Event plumbing ──

    def normalize(self, raw: dict[str, Any]) -> LlmEvent | None:
        """Map a backend object onto the shared event vocabulary."""
        return dict_to_event(raw)

    def emit(self, event: LlmEvent) -> None:
        self.session.emit({"type": "llm_event", "event": event_to_dict(event)})

    def save_state(self) -> None:
        """Copy the continuation state onto the session and persist it."""
        self.session.provider_state = self.snapshot()
        self.session.touch()

    # ── Turn bookkeeping ──

    @property
    def turn_open(self) -> bool:
        return self._turn_open

    def begin_turn(self) -> bool:
        """Claim the session for a new turn, or report that one is running."""
        if self.session.processing or self._turn_open:
            self.session.error(BUSY_MESSAGE)
            return False
        self.session.processing = True
        self._turn_open = True
        self.phase = TurnPhase.WRITING
        return True

    def finish_turn(self, frame: dict[str, Any] | None) -> bool:
        """Close the open turn with *frame* as its terminal outcome.

        Returns False (and sends nothing) when no turn is open, so a late
        second finisher can never produce a duplicate outcome.
        """
        if not self._turn_open:
            return False
        self._turn_open = False
        self.session.processing = False
        self.phase = TurnPhase.IDLE
        if frame is not None:
            self.session.emit(frame)
        return True

    def complete_turn(self) -> bool:
        return self.finish_turn({"type": "message_complete"})

    def fail_turn(self, message: str) -> None:
        if not self.finish_turn({"type": "error", "message": message}):
            self.session.error(message)

    def commit_assistant(self, turn: AssistantTurn | None) -> bool:
        if turn is None or not turn.blocks:
            return False
        self.session.append_turn(turn)
        return True

    # ── Subprocess helpers ──

    def resolve_command(self, command: str | None, fallback: str) -> str:
        """Prefer the configured binary, falling back to *fallback* on PATH.

        An unresolvable configured command is kept as-is so spawn errors
        name what the user actually configured.
        """
        if command:
            if shutil.which(command):
                return command
            if shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s for provider %s",
                    command, fallback, self.name,
                )
                return fallback
            return command
        return fallback

    def build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        ctx = self.context
        if ctx.hook_url and ctx.hook_token:
            env["EVE_HOOK_URL"] = ctx.hook_url
            env["EVE_SESSION_ID"] = self.session.session_id
            env["EVE_AUTH_TOKEN"] = ctx.hook_token
        return env


class StreamJsonProvider(Provider):
    """Shared machinery for CLIs that print newline-delimited JSON events.

    stdout is read in chunks into a rolling buffer split on newlines.
    Lines that are not JSON objects become ``raw_output`` frames and do
    not touch turn state. stderr lines become ``stderr`` frames.
    """

    # Parse whatever is left in the buffer once the process exits.
    parse_leftover_on_exit: ClassVar[bool] = False

    def __init__(self, session: Session, context: ProviderContext | None = None) -> None:
        super().__init__(session, context)
        self.resume_token: str | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._buffer = ""
        self._current: AssistantTurn | None = None
        self._readers: list[asyncio.Task] = []
        self._spawned_with_resume = False
        self._events_since_spawn = 0

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @abc.abstractmethod
    def build_command(self) -> list[str]:
        """argv for the next spawn."""

    def keep_stderr_line(self, line: str) -> bool:
        return True

    async def spawn(self) -> asyncio.subprocess.Process:
        cmd = self.build_command()
        self._spawned_with_resume = "--resume" in cmd
        logger.info("[%s] spawning session=%s: %s", self.name, self.session.session_id, " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.session.directory or None,
                env=self.build_env(),
            )
        except FileNotFoundError:
            raise ProviderSpawnError(self.name, f"'{cmd[0]}' CLI not found")
        except OSError as exc:
            raise ProviderSpawnError(self.name, str(exc))

        self._process = proc
        self._buffer = ""
        self._events_since_spawn = 0
        if self.context.pid_registry is not None:
            self.context.pid_registry.add(proc.pid)
        self._readers = [
            asyncio.create_task(self._read_stdout(proc)),
            asyncio.create_task(self._read_stderr(proc)),
        ]
        return proc

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await proc.stdout.read(65536)
                if not chunk:
                    break
                if proc is self._process:
                    self.feed(decoder.decode(chunk))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] stdout reader failed", self.name)
        await self._on_exit(proc)

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> None:
        while True:
            line = await proc.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip("\n")
            logger.debug("[%s] stderr: %s", self.name, text)
            if text.strip() and proc is self._process and self.keep_stderr_line(text):
                self.session.emit({"type": "stderr", "text": text})

    def feed(self, data: str) -> None:
        """Append decoded stdout and process every complete line."""
        self._buffer += data
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self.process_line(line)

    def process_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            raw = json.loads(line)
        except json.JSONDecodeError:
            raw = None
        if not isinstance(raw, dict):
            self.session.emit({"type": "raw_output", "text": line})
            return
        self._events_since_spawn += 1
        try:
            event = self.normalize(raw)
            if event is not None:
                self.handle_event(event)
        except Exception:
            logger.exception("[%s] failed to handle event %s", self.name, raw.get("type"))

    def handle_event(self, event: LlmEvent) -> None:
        if isinstance(event, SystemEvent):
            if event.subtype == "init" and event.session_token:
                if event.session_token != self.resume_token:
                    self.resume_token = event.session_token
                    self.save_state()
            self.emit(event)
        elif isinstance(event, AssistantEvent):
            self._on_assistant(event)
            self.emit(event)
        elif isinstance(event, ResultEvent):
            self._on_result(event)
        elif isinstance(event, UserEvent):
            self.on_user_echo(event)
        else:
            self.emit(event)

    def _on_assistant(self, event: AssistantEvent) -> None:
        self.phase = TurnPhase.STREAMING
        if event.message is not None:
            if self._current is None:
                self._current = AssistantTurn()
            for raw in event.message.get("content") or []:
                if not isinstance(raw, dict):
                    continue
                if raw.get("type") == "text":
                    self._current.blocks.append(TextBlock(text=str(raw.get("text") or "")))
                elif raw.get("type") == "tool_use":
                    self._current.blocks.append(ToolUseBlock(
                        name=str(raw.get("name") or ""),
                        input=raw.get("input", {}),
                        id=raw.get("id"),
                    ))
        delta = event.delta
        if delta:
            if self._current is None:
                self._current = AssistantTurn()
            if delta.get("type") == "text_delta" and delta.get("text"):
                self._current.append_text(str(delta["text"]))
            elif delta.get("type") == "tool_use":
                self._current.blocks.append(ToolUseBlock(
                    name=str(delta.get("name") or ""),
                    input=delta.get("input", {}),
                    id=delta.get("id"),
                ))

    def apply_cost(self, event: ResultEvent) -> None:
        if event.total_cost_usd is not None:
            self.session.stats.cost_usd = event.total_cost_usd

    def _on_result(self, event: ResultEvent) -> None:
        self.phase = TurnPhase.RESULT
        self.emit(event)
        stats = self.session.stats
        if event.usage:
            stats.add_usage(event.usage)
        if event.model_usage:
            for usage in event.model_usage.values():
                if isinstance(usage, dict) and usage.get("contextWindow"):
                    stats.context_window = int(usage["contextWindow"])
                    break
        self.apply_cost(event)

        turn, self._current = self._current, None
        if not self.commit_assistant(turn) and event.result:
            self.session.system_message(event.result)
        self.save_state()
        self.session.emit_stats()
        self.complete_turn()

    def on_user_echo(self, event: UserEvent) -> None:
        self.emit(event)

    async def _on_exit(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        if self.context.pid_registry is not None:
            self.context.pid_registry.remove(proc.pid)
        if proc is not self._process:
            # Killed deliberately, or superseded by a newer spawn.
            return
        logger.info("[%s] process exited session=%s code=%s", self.name, self.session.session_id, code)
        if self.parse_leftover_on_exit and self._buffer.strip():
            leftover, self._buffer = self._buffer, ""
            self.process_line(leftover)
        self._process = None

        if self._spawned_with_resume and self._events_since_spawn == 0 and self.resume_token:
            logger.warning(
                "[%s] process died before any output while resuming %s; "
                "starting a fresh conversation next turn",
                self.name, self.resume_token,
            )
            self.resume_token = None
            self.save_state()
        self.on_process_exit(code)

    def on_process_exit(self, code: int | None) -> None:
        frame = {"type": "process_exited", "code": code}
        self._current = None
        if not self.finish_turn(frame):
            self.session.emit(frame)

    async def kill(self) -> None:
        proc, self._process = self._process, None
        self._current = None
        if self._turn_open:
            self.finish_turn({"type": "error", "message": "Request cancelled"})
        if proc is not None and proc.returncode is None:
            logger.info("[%s] killing pid=%s session=%s", self.name, proc.pid, self.session.session_id)
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        readers, self._readers = self._readers, []
        if readers:
            _, pending = await asyncio.wait(readers, timeout=2.0)
            for task in pending:
                task.cancel()
        if proc is not None and self.context.pid_registry is not None:
            self.context.pid_registry.remove(proc.pid)
        self._buffer = ""
        self.phase = TurnPhase.IDLE
