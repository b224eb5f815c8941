"""Session manager: creates, restores, routes and tears down sessions.

Sole owner of the ``session_id -> Session`` map. Every operation that a
websocket frame or a scheduled task can trigger on a session goes
through here; no other component reaches into the map.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from eve.adapters.client_queue import ClientSink, HeadlessSink
from eve.engine.errors import (
    AttachmentValidationError,
    EveError,
    ProjectNotFoundError,
    ProviderDisabledError,
    SessionBusyError,
    SessionNotFoundError,
    SessionTransferredError,
    TaskTimeoutError,
)
from eve.engine.providers.base import CommandOutcome, Provider, validate_attachments
from eve.shared.models.message import Attachment, UserTurn
from eve.shared.models.session import DEFAULT_MODEL, Session
from eve.shared.services.durable_write import atomic_write_json

if TYPE_CHECKING:
    from eve.engine.config import ServerConfig
    from eve.engine.permission_bridge import PermissionBridge
    from eve.engine.providers.registry import ProviderRegistry
    from eve.engine.scheduler import Task, TaskRequest
    from eve.shared.services.persistence import SessionStore
    from eve.shared.services.project import Project, ProjectStore

logger = logging.getLogger(__name__)

HOOK_MODULE = "eve.hooks.permission_hook"
HOOK_TIMEOUT_SECONDS = 120

GLOBAL_HELP = (
    "Global commands:\n"
    "/clear - Clear conversation history\n"
    "/zsh - Open terminal in session directory\n"
    "/claude - Open Claude CLI in session directory\n"
    "/help - Show this help message"
)
TRANSFER_MESSAGE = (
    "Session transferred to Claude CLI terminal. "
    "Use /clear to start a new web conversation."
)
TRANSFER_ENDED_MESSAGE = "CLI terminal closed. You can continue this conversation here."

Broadcast = Callable[[dict[str, Any]], None]


def ensure_hook_config(project_dir: str | None) -> bool:
    """Install the PreToolUse permission hook in ``.claude/settings.local.json``.

    Returns True when the file was written, False when the hook was
    already present or the directory is unusable.
    """
    if not project_dir or not os.path.isdir(project_dir):
        return False
    settings_file = Path(project_dir) / ".claude" / "settings.local.json"
    try:
        settings = json.loads(settings_file.read_text(encoding="utf-8"))
        if not isinstance(settings, dict):
            settings = {}
    except (OSError, ValueError):
        settings = {}

    hooks = settings.setdefault("hooks", {})
    if not isinstance(hooks, dict):
        hooks = settings["hooks"] = {}
    pre_tool_use = hooks.setdefault("PreToolUse", [])
    if not isinstance(pre_tool_use, list):
        pre_tool_use = hooks["PreToolUse"] = []
    for entry in pre_tool_use:
        for hook in (entry or {}).get("hooks") or []:
            if HOOK_MODULE in str((hook or {}).get("command") or ""):
                return False

    pre_tool_use.append({
        "matcher": "",
        "hooks": [{
            "type": "command",
            "command": f"{sys.executable} -m {HOOK_MODULE}",
            "timeout": HOOK_TIMEOUT_SECONDS,
        }],
    })
    try:
        atomic_write_json(settings_file, settings)
    except OSError as exc:
        logger.error("Failed to write hook settings %s: %s", settings_file, exc)
        return False
    logger.info("Configured PreToolUse hook in %s", settings_file)
    return True


def parse_slash_command(text: str) -> tuple[str, list[str]] | None:
    """``"/args add --x 1"`` -> ``("args", ["add", "--x", "1"])``."""
    trimmed = text.strip()
    if not trimmed.startswith("/"):
        return None
    parts = trimmed[1:].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


class SessionManager:
    """Creates, tracks and tears down chat sessions."""

    def __init__(
        self,
        config: ServerConfig,
        store: SessionStore,
        projects: ProjectStore,
        registry: ProviderRegistry,
        *,
        bridge: PermissionBridge | None = None,
        broadcast: Broadcast | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.projects = projects
        self.registry = registry
        self.bridge = bridge
        self.broadcast = broadcast
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._task_runs: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _track(self, session: Session) -> Session:
        session.on_change = self.store.schedule_save
        self._sessions[session.session_id] = session
        return session

    def is_interactive(self, session: Session) -> bool:
        return self.registry.is_model_enabled(session.model)

    # ── Providers ──

    def _build_provider(self, session: Session, extra_args: list[str] | None = None) -> Provider:
        hook_token = self.bridge.issue_token(session.session_id) if self.bridge else None
        provider = self.registry.create(session, hook_token=hook_token, extra_args=extra_args)
        provider.restore(session.provider_state)
        session.provider = provider
        return provider

    async def _kill_provider(self, session: Session) -> None:
        provider, session.provider = session.provider, None
        if provider is not None:
            await provider.kill()

    @staticmethod
    def _extra_args_for(project: Project | None) -> list[str]:
        if project is not None and project.allowed_tools:
            return ["--allowedTools", *project.allowed_tools]
        return []

    # ── Lifecycle ──

    async def create_session(
        self,
        client: ClientSink,
        directory: str | None = None,
        project_id: str | None = None,
    ) -> Session:
        project = None
        if project_id:
            project = self.projects.get(project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)
        model = project.model if project else DEFAULT_MODEL
        kind = self.registry.kind_for_model(model)
        if not self.registry.is_enabled(kind):
            raise ProviderDisabledError(kind, model)

        session = Session(
            directory=project.path if project else (directory or os.path.expanduser("~")),
            model=model,
            project_id=project_id,
        )
        async with self._lock:
            self._track(session)
        if kind == "claude":
            await asyncio.to_thread(ensure_hook_config, session.directory)
        provider = self._build_provider(session, self._extra_args_for(project))
        await asyncio.to_thread(self.store.save, session)

        client.send({
            "type": "session_created",
            "sessionId": session.session_id,
            "directory": session.directory,
            "projectId": project_id,
            "name": session.name,
            "model": session.model,
            "metadata": provider.metadata(),
        })
        session.bind_client(client)
        await provider.start()
        logger.info(
            "Created session=%s model=%s provider=%s dir=%s",
            session.session_id, model, kind, session.directory,
        )
        return session

    async def _recover(self, session_id: str) -> Session:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return session
            session = await asyncio.to_thread(self.store.load, session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            logger.info("Recovered session=%s from disk", session_id)
            return self._track(session)

    async def join_session(self, session_id: str, client: ClientSink) -> Session:
        session = await self._recover(session_id)
        interactive = self.is_interactive(session)
        start_provider = False
        if session.provider is None and not session.transferred and interactive:
            project = self.projects.get(session.project_id)
            self._build_provider(session, self._extra_args_for(project))
            start_provider = True

        client.send({
            "type": "session_joined",
            "sessionId": session.session_id,
            "directory": session.directory,
            "projectId": session.project_id,
            "name": session.name,
            "model": session.model,
            "metadata": session.provider.metadata() if session.provider else session.directory,
            "history": session.history(),
            "transferred": session.transferred,
            "disabled": not interactive,
        })
        session.bind_client(client)
        if start_provider and session.provider is not None:
            await session.provider.start()
        return session

    async def send_message(self, session_id: str, text: str, files: list[dict[str, Any]] | None = None) -> None:
        session = self._require(session_id)
        async with session.lock:
            if parse_slash_command(text) and await self.handle_slash_command(session, text):
                return
            if session.transferred:
                raise SessionTransferredError(session_id)
            if not self.is_interactive(session):
                raise ProviderDisabledError(self.registry.kind_for_model(session.model), session.model)
            if session.processing:
                raise SessionBusyError(session_id)

            attachments = [Attachment.from_dict(f) for f in files or [] if isinstance(f, dict)]
            problems = validate_attachments(attachments)
            if problems:
                raise AttachmentValidationError(problems)

            provider = session.provider
            if provider is None:
                project = self.projects.get(session.project_id)
                provider = self._build_provider(session, self._extra_args_for(project))
                await provider.start()
            session.append_turn(UserTurn(text=text, attachments=attachments))
            await provider.send(text, attachments)

    async def end_session(self, session_id: str) -> bool:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await asyncio.to_thread(self.store.save, session)
        await self._kill_provider(session)
        session.unbind_client()
        if self.bridge is not None:
            self.bridge.revoke_token(session_id)
        logger.info("Ended session=%s", session_id)
        return True

    async def delete_session(self, session_id: str, client: ClientSink | None = None) -> bool:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            await self._kill_provider(session)
            session.on_change = None
            session.unbind_client()
        if self.bridge is not None:
            self.bridge.revoke_token(session_id)
        removed = await self.store.delete(session_id)
        logger.info("Deleted session=%s (snapshot removed=%s)", session_id, removed)
        if client is not None:
            client.send({"type": "session_ended", "sessionId": session_id})
        return session is not None or removed

    async def rename_session(self, session_id: str, name: str) -> Session:
        session = await self._recover(session_id)
        session.rename(name or "")
        frame = {"type": "session_renamed", "sessionId": session_id, "name": session.name}
        if self.broadcast is not None:
            self.broadcast(frame)
        else:
            session.emit(frame)
        return session

    def detach_client(self, client: ClientSink) -> int:
        """Unbind *client* everywhere; sessions and providers keep running."""
        detached = sum(1 for s in self._sessions.values() if s.unbind_client(client))
        if detached:
            logger.debug("Detached client=%s from %d session(s)", client.client_id, detached)
        return detached

    def on_linked_terminal_exit(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None or not session.transferred:
            return
        session.transferred = False
        session.touch()
        session.system_message(TRANSFER_ENDED_MESSAGE)
        logger.info("Transfer terminal for session=%s exited; web conversation resumed", session_id)

    def list_sessions(self, project_id: str | None = None) -> list[dict[str, Any]]:
        sessions = [
            {**s.summary(), "disabled": not self.is_interactive(s)}
            for s in self._sessions.values()
            if project_id is None or s.project_id == project_id
        ]
        sessions.sort(key=lambda s: s["createdAt"], reverse=True)
        return sessions

    async def restore_saved_sessions(self) -> int:
        saved = await asyncio.to_thread(self.store.load_all)
        async with self._lock:
            for session in saved:
                if session.session_id not in self._sessions:
                    self._track(session)
        logger.info("Restored %d saved session(s)", len(saved))
        return len(saved)

    async def shutdown(self) -> None:
        for session in list(self._sessions.values()):
            try:
                await self._kill_provider(session)
            except Exception:
                logger.exception("Failed to stop provider for session=%s", session.session_id)
            try:
                await asyncio.to_thread(self.store.save, session)
            except OSError:
                logger.exception("Failed to save session=%s on shutdown", session.session_id)
        for run in list(self._task_runs):
            run.cancel()
        await self.store.flush()

    # ── Slash commands ──

    async def handle_slash_command(self, session: Session, text: str) -> bool:
        """Run a slash command; False means it should be sent as a message."""
        parsed = parse_slash_command(text)
        if parsed is None:
            return False
        command, args = parsed

        if command == "clear":
            await self.clear_session(session)
            return True
        if command == "help":
            session.system_message(self.help_text(session))
            return True
        if command in ("zsh", "bash", "claude"):
            session.emit({
                "type": "terminal_request",
                "directory": session.directory,
                "command": "claude" if command == "claude" else "shell",
            })
            return True

        provider = session.provider
        if provider is None:
            return False
        result = await provider.handle_command(command, args, session.system_message)
        if result.outcome is CommandOutcome.UNHANDLED:
            return False
        if result.outcome is CommandOutcome.TRANSFER and result.transfer is not None:
            await self._kill_provider(session)
            session.transferred = True
            session.touch()
            session.system_message(TRANSFER_MESSAGE)
            session.emit({
                "type": "terminal_request",
                "directory": session.directory,
                "command": "claude",
                "args": result.transfer.terminal_args(),
            })
            logger.info("Session=%s transferred to CLI", session.session_id)
        return True

    async def clear_session(self, session: Session) -> None:
        await self._kill_provider(session)
        session.reset()
        if self.is_interactive(session):
            project = self.projects.get(session.project_id)
            provider = self._build_provider(session, self._extra_args_for(project))
            await provider.start()
        session.system_message("Conversation history cleared")
        session.emit({"type": "clear_messages"})
        session.emit_stats()
        logger.info("Cleared session=%s", session.session_id)

    def help_text(self, session: Session) -> str:
        text = GLOBAL_HELP
        if session.provider is not None:
            commands = session.provider.list_commands()
            if commands:
                lines = [f"/{c.name} - {c.description}" for c in commands]
                text += f"\n\nProvider commands ({session.provider.label}):\n" + "\n".join(lines)
        return text

    # ── Headless runs ──

    async def execute_headless_task(self, project: Project, task: Task) -> dict[str, Any]:
        """Run *task*'s prompt against a throwaway session and collect the reply."""
        model = task.model or project.model or DEFAULT_MODEL
        kind = self.registry.kind_for_model(model)
        if not self.registry.is_enabled(kind):
            raise ProviderDisabledError(kind, model)

        sink = HeadlessSink()
        session = Session(
            session_id=f"headless-{uuid.uuid4().hex[:12]}",
            directory=project.path,
            model=model,
            project_id=project.id,
            headless=True,
        )
        session.client = sink
        provider = self.registry.create(session, extra_args=task.args or None)
        session.provider = provider
        logger.info("Headless run task=%s model=%s session=%s", task.id, model, session.session_id)
        try:
            await provider.start()
            session.append_turn(UserTurn(text=task.prompt))
            await provider.send(task.prompt, [])
            outcome = await asyncio.wait_for(
                asyncio.shield(sink.done), timeout=self.config.task_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise TaskTimeoutError(task.id, self.config.task_timeout_seconds)
        finally:
            await self._kill_provider(session)
        if not outcome.success:
            raise EveError(outcome.error or "Task failed")
        return {"response": outcome.response, "stats": session.stats.to_dict()}

    async def _serve_one(self, request: TaskRequest) -> None:
        if request.reply.done():
            return
        runner = asyncio.create_task(self.execute_headless_task(request.project, request.task))

        def _on_reply_done(fut: asyncio.Future) -> None:
            if fut.cancelled() and not runner.done():
                runner.cancel()

        request.reply.add_done_callback(_on_reply_done)
        try:
            result = await runner
        except asyncio.CancelledError:
            if request.reply.cancelled():
                logger.info("Headless run for task=%s abandoned by scheduler", request.task.id)
                return
            raise
        except Exception as exc:
            if not request.reply.done():
                request.reply.set_exception(exc)
            return
        if not request.reply.done():
            request.reply.set_result(result)

    async def serve_task_requests(self, queue: asyncio.Queue) -> None:
        """Consume scheduler requests forever; each runs concurrently."""
        while True:
            request = await queue.get()
            run = asyncio.create_task(self._serve_one(request))
            self._task_runs.add(run)
            run.add_done_callback(self._task_runs.discard)
