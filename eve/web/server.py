"""HTTP + websocket server for the Eve workspace.

One aiohttp application serves the REST collaborators under ``/api`` and
the websocket hub at ``/ws``. Every websocket connection gets its own
outbound queue (``ClientConnection``); inbound frames are handled one at
a time, in arrival order, by the connection's reader loop.

Usage:
    eve [--port PORT] [--data-dir DIR]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import ssl
import time
import uuid
from typing import Any, Awaitable, Callable

from aiohttp import WSCloseCode, WSMsgType, web

from eve.adapters.client_queue import ClientConnection
from eve.engine.config import ServerConfig
from eve.engine.errors import EveError, FileServiceError
from eve.engine.permission_bridge import PermissionBridge
from eve.engine.providers.registry import build_provider_registry
from eve.engine.scheduler import SCHEDULE_TYPES, TaskScheduler
from eve.engine.session_manager import SessionManager
from eve.engine.terminal_manager import TerminalManager
from eve.engine.yaml_config import LMStudioConfig
from eve.shared.services.auth import AuthService
from eve.shared.services.file_service import FileService
from eve.shared.services.persistence import SessionStore
from eve.shared.services.process_cleanup import PidRegistry
from eve.shared.services.project import ProjectStore
from eve.shared.services.settings import Settings

logger = logging.getLogger(__name__)

# Attachments travel inline as base64; 50 MiB of files grows by a third.
WS_MAX_MSG_SIZE = 80 * 1024 * 1024
WS_HEARTBEAT_SECONDS = 30.0

FrameHandler = Callable[[ClientConnection, dict[str, Any]], Awaitable[None]]

FILE_FRAMES = frozenset({
    "list_directory", "read_file", "write_file", "rename_file",
    "move_file", "delete_file", "create_directory",
})


def _slash(path: str) -> str:
    return "/" + path.lstrip("/")


class EveServer:
    """Wires the collaborators together and owns the aiohttp application."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        lmstudio: LMStudioConfig | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.config = config
        data_dir = config.data_path
        data_dir.mkdir(parents=True, exist_ok=True)

        self.pid_registry = PidRegistry(data_dir / "pids.json")
        self.settings = settings or Settings.load(data_dir / "settings.json")
        self.lmstudio = lmstudio or LMStudioConfig()
        self.projects = ProjectStore(data_dir)
        self.store = SessionStore(data_dir)
        self.auth = AuthService(data_dir)
        self.files = FileService()
        self.bridge = PermissionBridge(config.permission_timeout_seconds)
        self.registry = build_provider_registry(
            config, self.settings, self.lmstudio, pid_registry=self.pid_registry,
        )
        self.sessions = SessionManager(
            config, self.store, self.projects, self.registry,
            bridge=self.bridge, broadcast=self.broadcast,
        )
        self.terminals = TerminalManager(
            config,
            pid_registry=self.pid_registry,
            on_linked_exit=self.sessions.on_linked_terminal_exit,
        )
        self.scheduler = TaskScheduler(
            self.projects, data_dir,
            timeout_seconds=config.task_timeout_seconds,
            notify=self.broadcast,
        )

        self._clients: dict[ClientConnection, web.WebSocketResponse] = {}
        self._task_server: asyncio.Task | None = None
        self._started_at = time.time()
        self._handlers: dict[str, FrameHandler] = {
            "create_session": self._ws_create_session,
            "join_session": self._ws_join_session,
            "user_input": self._ws_user_input,
            "end_session": self._ws_end_session,
            "delete_session": self._ws_delete_session,
            "rename_session": self._ws_rename_session,
            "permission_response": self._ws_permission_response,
            "list_directory": self._ws_list_directory,
            "read_file": self._ws_read_file,
            "write_file": self._ws_write_file,
            "rename_file": self._ws_rename_file,
            "move_file": self._ws_move_file,
            "delete_file": self._ws_delete_file,
            "create_directory": self._ws_create_directory,
            "terminal_create": self._ws_terminal_create,
            "terminal_input": self._ws_terminal_input,
            "terminal_resize": self._ws_terminal_resize,
            "terminal_close": self._ws_terminal_close,
            "terminal_list": self._ws_terminal_list,
            "terminal_reconnect": self._ws_terminal_reconnect,
        }

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_shutdown.append(self._on_shutdown)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()
        logger.info(
            "EveServer init host=%s port=%s data_dir=%s tls=%s no_auth=%s pid=%s",
            config.host, config.port, data_dir, config.tls_enabled,
            config.no_auth, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-eve-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/ws", self._handle_ws)
        r.add_get("/api/auth/status", self._handle_auth_status)
        r.add_get("/api/models", self._handle_models)
        # Projects
        r.add_get("/api/projects", self._handle_list_projects)
        r.add_post("/api/projects", self._handle_create_project)
        r.add_delete("/api/projects/{project_id}", self._handle_delete_project)
        r.add_get("/api/sessions", self._handle_list_sessions)
        # Scheduled tasks
        r.add_get("/api/tasks", self._handle_list_tasks)
        r.add_post("/api/tasks/{project_id}", self._handle_create_task)
        r.add_put("/api/tasks/{project_id}/{task_id}", self._handle_update_task)
        r.add_delete("/api/tasks/{project_id}/{task_id}", self._handle_delete_task)
        r.add_get("/api/tasks/{project_id}/{task_id}/history", self._handle_task_history)
        r.add_post("/api/tasks/{project_id}/{task_id}/run", self._handle_run_task)
        # CLI permission hook
        r.add_post("/api/permission", self._handle_permission)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        await self.sessions.restore_saved_sessions()
        self.scheduler.start()
        self._task_server = asyncio.create_task(
            self.sessions.serve_task_requests(self.scheduler.requests)
        )

    async def _on_shutdown(self, app: web.Application) -> None:
        for ws in list(self._clients.values()):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.scheduler.stop()
        if self._task_server is not None:
            self._task_server.cancel()
            try:
                await self._task_server
            except asyncio.CancelledError:
                pass
            self._task_server = None
        await self.terminals.shutdown()
        await self.sessions.shutdown()
        self.auth.cleanup()
        logger.info("Server resources released")

    def _ssl_context(self) -> ssl.SSLContext | None:
        if not self.config.tls_enabled:
            return None
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(self.config.https_cert, self.config.https_key)
        return context

    async def start(self) -> None:
        """Serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        ssl_context = self._ssl_context()
        site = web.TCPSite(runner, self.config.host, self.config.port, ssl_context=ssl_context)
        await site.start()
        logger.info(
            "Eve server listening on %s://%s:%d",
            "https" if ssl_context else "http", self.config.host, self.config.port,
        )
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    # ── Fan-out ──

    def broadcast(self, frame: dict[str, Any]) -> None:
        """Send *frame* to every authenticated connection."""
        for client in list(self._clients):
            if client.authenticated:
                client.send(frame)

    # ── Auth helpers ──

    def _is_local(self, request: web.Request) -> bool:
        return AuthService.is_localhost(request.host, request.remote)

    def _auth_bypassed(self, request: web.Request) -> bool:
        return self.config.no_auth or not self.auth.is_enrolled() or self._is_local(request)

    def _require_auth(self, request: web.Request) -> web.Response | None:
        if self._auth_bypassed(request):
            return None
        if self.auth.validate_session(request.headers.get("x-session-token")):
            return None
        return web.json_response({"error": "Unauthorized"}, status=401)

    @staticmethod
    async def _read_body(request: web.Request) -> dict[str, Any] | web.Response:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Request body must be an object"}, status=400)
        return body

    # ── REST handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(time.time() - self._started_at, 1),
            "sessions": len(self.sessions),
            "terminals": len(self.terminals),
            "clients": len(self._clients),
        })

    async def _handle_auth_status(self, request: web.Request) -> web.Response:
        if self._is_local(request):
            return web.json_response({"enrolled": False, "authenticated": True, "localhost": True})
        enrolled = self.auth.is_enrolled()
        authenticated = self.config.no_auth or not enrolled or self.auth.validate_session(
            request.headers.get("x-session-token")
        )
        return web.json_response({"enrolled": enrolled, "authenticated": authenticated})

    async def _handle_models(self, request: web.Request) -> web.Response:
        err = self._require_auth(request)
        if err:
            return err
        return web.json_response([m.to_dict() for m in self.registry.all_models()])

    async def _handle_list_projects(self, request: web.Request) -> web.Response:
        err = self._require_auth(request)
        if err:
            return err
        return web.json_response([
            {**p.to_dict(), "disabled": not self.registry.is_model_enabled(p.model)}
            for p in self.projects.list()
        ])

    async def _handle_create_project(self, request: web.Request) -> web.Response:
        err = self._require_auth(request)
        if err:
            return err
        body = await self._read_body(request)
        if isinstance(body, web.Response):
            return body
        name = str(body.get("name") or "").strip()
        path = str(body.get("path") or "").strip()
        if not name or not path:
            return web.json_response({"error": "Name and path are required"}, status=400)
        tools = body.get("allowedTools")
        project = await asyncio.to_thread(
            self.projects.add,
            name,
            os.path.expanduser(path),
            str(body.get("model") or ""),
            valid_models=[m.value for m in self.registry.all_models()],
            allowed_tools=[str(t) for t in tools] if isinstance(tools, list) else None,
        )
        self.scheduler.add_project(project)
        return web.json_response(project.to_dict())

    async def _handle_delete_project(self, request: web.Request) -> web.Response:
        err = self._require_auth(request)
        if err:
            return err
        project_id = request.match_info["project_id"]
        removed = await asyncio.to_thread(self.projects.remove, project_id)
        if not removed:
            return web.json_response({"error": "Project not found"}, status=404)
        self.scheduler.remove_project(project_id)
        return web.json_response({"success": True})

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        err = self._require_auth(request)
        if err:
            return err
        project_id = request.query.get("projectId") or None
        sessions = [
            {**summary, "id": summary["sessionId"], "active": self._is_active(summary["sessionId"])}
            for summary in self.sessions.list_sessions(project_id)
        ]
        return web.json_response(sessions)

    def _is_active(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        return session is not None and session.provider is not None

    async def _handle_list_tasks(self, request: web.Request) -> web.Response:
        err = self._require_auth(request)
        if err:
            return err
        return web.json_response(self.scheduler.get_all_tasks())

    async def _handle_task_history(self, request: web.Request) -> web.Response:
        err = self._require_auth(request)
        if err:
            return err
        history = await asyncio.to_thread(
            self.scheduler.get_task_history,
            request.match_info["project_id"],
            request.match_info["task_id"],
        )
        return web.json_response(history)

    async def _handle_run_task(self, request: web.Request) -> web.Response:
        err = self._require_auth(request)
        if err:
            return err
        try:
            self.scheduler.run_task_now(request.match_info["project_id"], request.match_info["task_id"])
        except (EveError, ValueError) as exc:
            return web.json_response({"error": str(exc)}, status=400)
        return web.json_response({"success": True, "message": "Task execution started"})

    @staticmethod
    def _task_problem(body: dict[str, Any], *, partial: bool) -> str | None:
        if not partial and not (body.get("name") and body.get("prompt") and body.get("schedule")):
            return "name, prompt, and schedule are required"
        if "schedule" in body:
            schedule = body["schedule"]
            if not isinstance(schedule, dict) or schedule.get("type") not in SCHEDULE_TYPES:
                return f"schedule.type must be one of: {', '.join(SCHEDULE_TYPES)}"
        if "args" in body and body["args"] is not None and not isinstance(body["args"], list):
            return "args must be an array"
        return None

    async def _handle_create_task(self, request: web.Request) -> web.Response:
        err = self._require_auth(request)
        if err:
            return err
        body = await self._read_body(request)
        if isinstance(body, web.Response):
            return body
        problem = self._task_problem(body, partial=False)
        if problem:
            return web.json_response({"error": problem}, status=400)
        try:
            task = await asyncio.to_thread(
                self.scheduler.create_task, request.match_info["project_id"], body,
            )
        except (EveError, ValueError, OSError) as exc:
            return web.json_response({"error": str(exc)}, status=400)
        return web.json_response(task)

    async def _handle_update_task(self, request: web.Request) -> web.Response:
        err = self._require_auth(request)
        if err:
            return err
        body = await self._read_body(request)
        if isinstance(body, web.Response):
            return body
        problem = self._task_problem(body, partial=True)
        if problem:
            return web.json_response({"error": problem}, status=400)
        try:
            task = await asyncio.to_thread(
                self.scheduler.update_task,
                request.match_info["project_id"], request.match_info["task_id"], body,
            )
        except (EveError, ValueError, OSError) as exc:
            return web.json_response({"error": str(exc)}, status=400)
        return web.json_response(task)

    async def _handle_delete_task(self, request: web.Request) -> web.Response:
        err = self._require_auth(request)
        if err:
            return err
        try:
            await asyncio.to_thread(
                self.scheduler.delete_task,
                request.match_info["project_id"], request.match_info["task_id"],
            )
        except (EveError, ValueError, OSError) as exc:
            return web.json_response({"error": str(exc)}, status=400)
        return web.json_response({"success": True})

    async def _handle_permission(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        if isinstance(body, web.Response):
            return body
        session_id = body.get("sessionId")
        header = request.headers.get("Authorization", "")
        token = header[len("Bearer "):] if header.startswith("Bearer ") else None
        if not self.bridge.validate(session_id, token):
            return web.json_response({"error": "Unauthorized"}, status=401)
        session = self.sessions.get(session_id)
        if session is None:
            return web.json_response({"decision": "deny", "reason": "Session not found"})
        decision = await self.bridge.request(
            session,
            str(body.get("toolName") or ""),
            body.get("toolInput"),
            body.get("toolUseId"),
        )
        return web.json_response(decision.to_dict())

    # ── Websocket hub ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=WS_HEARTBEAT_SECONDS, max_msg_size=WS_MAX_MSG_SIZE)
        await ws.prepare(request)
        client = ClientConnection(ws, remote=request.remote, maxsize=self.config.client_queue_size)
        client.start()
        self._clients[client] = ws
        logger.info("WS connected client=%s from=%s", client.client_id, request.remote)
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    if not await self._on_frame(client, request, ws, msg.data):
                        break
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WS client=%s error: %s", client.client_id, ws.exception())
        finally:
            self._clients.pop(client, None)
            self.sessions.detach_client(client)
            self.terminals.detach_all(client)
            await client.close()
            logger.info("WS disconnected client=%s", client.client_id)
        return ws

    async def _on_frame(
        self,
        client: ClientConnection,
        request: web.Request,
        ws: web.WebSocketResponse,
        raw: str,
    ) -> bool:
        """Handle one inbound frame; returns False when the socket must close."""
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            client.send({"type": "error", "message": "Invalid JSON"})
            return True
        if not isinstance(frame, dict):
            client.send({"type": "error", "message": "Frame must be an object"})
            return True
        frame_type = frame.get("type")

        if not client.authenticated:
            if frame_type == "auth" and self._authenticate(request, frame.get("token")):
                client.authenticated = True
                client.send({"type": "auth_success"})
                return True
            logger.warning("WS client=%s failed authentication", client.client_id)
            client.send({"type": "auth_failed", "message": "Authentication required"})
            await client.close()
            await ws.close(code=WSCloseCode.POLICY_VIOLATION, message=b"Unauthorized")
            return False

        if frame_type == "auth":
            client.send({"type": "auth_success"})
            return True
        handler = self._handlers.get(frame_type)
        if handler is None:
            client.send({"type": "error", "message": f"Unknown message type: {frame_type}"})
            return True
        try:
            await handler(client, frame)
        except EveError as exc:
            self._report(client, frame, str(exc))
        except Exception as exc:
            logger.exception("WS client=%s frame %s failed", client.client_id, frame_type)
            self._report(client, frame, f"Internal error: {type(exc).__name__}")
        return True

    def _authenticate(self, request: web.Request, token: Any) -> bool:
        if self._auth_bypassed(request):
            return True
        return self.auth.validate_session(token if isinstance(token, str) else None)

    @staticmethod
    def _report(client: ClientConnection, frame: dict[str, Any], message: str) -> None:
        if frame.get("type") in FILE_FRAMES:
            client.send({
                "type": "file_error",
                "projectId": frame.get("projectId"),
                "path": frame.get("path") or frame.get("sourcePath") or frame.get("parentPath"),
                "error": message,
            })
            return
        error: dict[str, Any] = {"type": "error", "message": message}
        session_id = frame.get("sessionId") or client.current_session_id
        if session_id:
            error["sessionId"] = session_id
        client.send(error)

    # Sessions

    def _session_id(self, client: ClientConnection, frame: dict[str, Any]) -> str:
        session_id = frame.get("sessionId") or client.current_session_id
        if not session_id:
            raise EveError("No active session")
        return str(session_id)

    async def _ws_create_session(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        session = await self.sessions.create_session(
            client, frame.get("directory"), frame.get("projectId"),
        )
        client.current_session_id = session.session_id

    async def _ws_join_session(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        session = await self.sessions.join_session(self._session_id(client, frame), client)
        client.current_session_id = session.session_id

    async def _ws_user_input(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        files = frame.get("files")
        await self.sessions.send_message(
            self._session_id(client, frame),
            str(frame.get("text") or ""),
            files if isinstance(files, list) else None,
        )

    async def _ws_end_session(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        session_id = self._session_id(client, frame)
        await self.sessions.end_session(session_id)
        if client.current_session_id == session_id:
            client.current_session_id = None

    async def _ws_delete_session(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        session_id = self._session_id(client, frame)
        await self.sessions.delete_session(session_id, client)
        if client.current_session_id == session_id:
            client.current_session_id = None

    async def _ws_rename_session(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        await self.sessions.rename_session(self._session_id(client, frame), str(frame.get("name") or ""))

    async def _ws_permission_response(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        self.bridge.resolve(
            str(frame.get("requestId") or ""),
            str(frame.get("decision") or "deny"),
            frame.get("reason"),
        )

    # Files

    def _project_path(self, frame: dict[str, Any]) -> str:
        project = self.projects.get(frame.get("projectId"))
        if project is None:
            raise FileServiceError("Project not found")
        return project.path

    async def _ws_list_directory(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        path = frame.get("path") or "/"
        entries = await self.files.list_directory(self._project_path(frame), path)
        client.send({
            "type": "directory_listing",
            "projectId": frame.get("projectId"),
            "path": path,
            "entries": entries,
        })

    async def _ws_read_file(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        result = await self.files.read_file(self._project_path(frame), frame.get("path") or "")
        client.send({
            "type": "file_content",
            "projectId": frame.get("projectId"),
            "path": frame.get("path"),
            "content": result["content"],
            "size": result["size"],
        })

    async def _ws_write_file(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        await self.files.write_file(
            self._project_path(frame), frame.get("path") or "", str(frame.get("content") or ""),
        )
        client.send({"type": "file_saved", "projectId": frame.get("projectId"), "path": frame.get("path")})

    async def _ws_rename_file(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        new_path = await self.files.rename_file(
            self._project_path(frame), frame.get("path") or "", str(frame.get("newName") or ""),
        )
        client.send({
            "type": "file_renamed",
            "projectId": frame.get("projectId"),
            "oldPath": frame.get("path"),
            "newPath": _slash(new_path),
        })

    async def _ws_move_file(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        new_path = await self.files.move_file(
            self._project_path(frame), frame.get("sourcePath") or "", frame.get("destDirectory") or "/",
        )
        client.send({
            "type": "file_moved",
            "projectId": frame.get("projectId"),
            "oldPath": frame.get("sourcePath"),
            "newPath": _slash(new_path),
        })

    async def _ws_delete_file(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        await self.files.delete_file(self._project_path(frame), frame.get("path") or "")
        client.send({"type": "file_deleted", "projectId": frame.get("projectId"), "path": frame.get("path")})

    async def _ws_create_directory(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        name = str(frame.get("name") or "")
        new_path = await self.files.create_directory(
            self._project_path(frame), frame.get("parentPath") or "/", name,
        )
        client.send({
            "type": "directory_created",
            "projectId": frame.get("projectId"),
            "path": _slash(new_path),
            "name": name,
        })

    # Terminals

    async def _ws_terminal_create(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        directory = frame.get("directory")
        linked = frame.get("linkedSessionId")
        if not directory and linked:
            session = self.sessions.get(linked)
            directory = session.directory if session else None
        args = frame.get("args")
        await self.terminals.create(
            client,
            directory,
            str(frame.get("command") or "shell"),
            [str(a) for a in args] if isinstance(args, list) else None,
            linked_session_id=linked,
        )

    async def _ws_terminal_input(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        await self.terminals.input(str(frame.get("terminalId") or ""), str(frame.get("data") or ""))

    async def _ws_terminal_resize(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        try:
            cols, rows = int(frame.get("cols")), int(frame.get("rows"))
        except (TypeError, ValueError):
            return
        self.terminals.resize(str(frame.get("terminalId") or ""), cols, rows)

    async def _ws_terminal_close(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        await self.terminals.close(str(frame.get("terminalId") or ""))

    async def _ws_terminal_list(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        self.terminals.list(client)

    async def _ws_terminal_reconnect(self, client: ClientConnection, frame: dict[str, Any]) -> None:
        self.terminals.reconnect(str(frame.get("terminalId") or ""), client)
