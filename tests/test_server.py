from __future__ import annotations

import asyncio
import shutil
import tempfile
from pathlib import Path

from aiohttp import WSMsgType
from aiohttp.test_utils import AioHTTPTestCase

from eve.engine.config import ServerConfig
from eve.engine.providers.registry import ProviderEntry
from eve.shared.services.settings import Settings
from eve.web.server import EveServer

from conftest import FakeProvider

REMOTE_HOST = {"Host": "eve.example.com"}


class TestEveServer(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        root = Path(self.tmpdir)
        self.project_dir = root / "proj"
        (self.project_dir / "src").mkdir(parents=True)
        (self.project_dir / "src" / "main.py").write_text("x = 1\n", encoding="utf-8")

        self.eve = EveServer(
            ServerConfig(data_dir=str(root / "data"), shell="/bin/sh", task_timeout_seconds=5),
            settings=Settings(),
        )
        registry = self.eve.registry
        registry._entries.insert(0, ProviderEntry(
            "fake", FakeProvider, lambda m: m == "haiku", FakeProvider.list_models,
        ))
        registry.options["fake"] = {"reply": "pong"}
        return self.eve._app

    async def asyncTearDown(self):
        await super().asyncTearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    # helpers

    def _enroll(self):
        (self.eve.config.data_path / "auth.json").write_text("{}", encoding="utf-8")

    async def _add_project(self):
        resp = await self.client.post(
            "/api/projects", json={"name": "proj", "path": str(self.project_dir), "model": "haiku"},
        )
        assert resp.status == 200
        return await resp.json()

    async def _connect(self, **kwargs):
        ws = await self.client.ws_connect("/ws", **kwargs)
        await ws.send_json({"type": "auth"})
        assert (await ws.receive_json(timeout=5))["type"] == "auth_success"
        return ws

    @staticmethod
    async def _until(ws, frame_type, limit=30):
        frames = []
        for _ in range(limit):
            frame = await ws.receive_json(timeout=5)
            frames.append(frame)
            if frame["type"] == frame_type:
                return frames
        raise AssertionError(f"no {frame_type} frame in {[f['type'] for f in frames]}")

    async def _create_session(self, ws):
        await ws.send_json({"type": "create_session", "directory": str(self.project_dir)})
        frames = await self._until(ws, "session_created")
        return frames[-1]["sessionId"]

    # REST

    async def test_health(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["sessions"] == 0
        assert data["terminals"] == 0

    async def test_auth_status_from_localhost(self):
        resp = await self.client.get("/api/auth/status")
        assert await resp.json() == {"enrolled": False, "authenticated": True, "localhost": True}

    async def test_models_catalogue(self):
        resp = await self.client.get("/api/models")
        data = await resp.json()
        assert {"value": "haiku", "label": "Fake Haiku", "group": "Fake"} in data
        assert any(m["group"] == "Gemini" for m in data)

    async def test_project_crud(self):
        resp = await self.client.post("/api/projects", json={"name": "x"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "Name and path are required"

        project = await self._add_project()
        listed = await (await self.client.get("/api/projects")).json()
        assert listed == [{**project, "disabled": False}]

        resp = await self.client.delete(f"/api/projects/{project['id']}")
        assert await resp.json() == {"success": True}
        resp = await self.client.delete(f"/api/projects/{project['id']}")
        assert resp.status == 404

    async def test_invalid_json_body(self):
        resp = await self.client.post("/api/projects", data="{nope", headers={"Content-Type": "application/json"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid JSON body"
        resp = await self.client.post("/api/projects", json=[1, 2])
        assert (await resp.json())["error"] == "Request body must be an object"

    async def test_rest_requires_token_when_enrolled_and_remote(self):
        self._enroll()
        resp = await self.client.get("/api/projects", headers=REMOTE_HOST)
        assert resp.status == 401
        status = await (await self.client.get("/api/auth/status", headers=REMOTE_HOST)).json()
        assert status == {"enrolled": True, "authenticated": False}

        token = self.eve.auth.create_session()
        resp = await self.client.get("/api/projects", headers={**REMOTE_HOST, "x-session-token": token})
        assert resp.status == 200

        # Loopback callers skip the check.
        assert (await self.client.get("/api/projects")).status == 200

    async def test_task_validation_and_crud(self):
        project = await self._add_project()
        url = f"/api/tasks/{project['id']}"

        resp = await self.client.post(url, json={"name": "n"})
        assert (await resp.json())["error"] == "name, prompt, and schedule are required"
        resp = await self.client.post(url, json={"name": "n", "prompt": "p", "schedule": {"type": "yearly"}})
        assert (await resp.json())["error"].startswith("schedule.type must be one of: daily")
        resp = await self.client.post(
            url, json={"name": "n", "prompt": "p", "schedule": {"type": "hourly"}, "args": "--x"},
        )
        assert (await resp.json())["error"] == "args must be an array"
        resp = await self.client.post("/api/tasks/missing", json={"name": "n", "prompt": "p", "schedule": {"type": "hourly"}})
        assert resp.status == 400

        resp = await self.client.post(url, json={"name": "Check", "prompt": "ping", "schedule": {"type": "hourly"}})
        assert resp.status == 200
        task = await resp.json()

        tasks = await (await self.client.get("/api/tasks")).json()
        assert [t["id"] for t in tasks] == [task["id"]]

        resp = await self.client.put(f"{url}/{task['id']}", json={"schedule": {"type": "bogus"}})
        assert resp.status == 400
        resp = await self.client.put(f"{url}/{task['id']}", json={"name": "Renamed"})
        assert (await resp.json())["name"] == "Renamed"

        resp = await self.client.delete(f"{url}/{task['id']}")
        assert await resp.json() == {"success": True}
        resp = await self.client.delete(f"{url}/{task['id']}")
        assert resp.status == 400

    async def test_run_task_now_records_history(self):
        project = await self._add_project()
        url = f"/api/tasks/{project['id']}"
        task = await (await self.client.post(
            url, json={"name": "Check", "prompt": "ping", "schedule": {"type": "hourly"}},
        )).json()

        resp = await self.client.post(f"{url}/{task['id']}/run")
        assert await resp.json() == {"success": True, "message": "Task execution started"}

        history = []
        for _ in range(100):
            history = await (await self.client.get(f"{url}/{task['id']}/history")).json()
            if history:
                break
            await asyncio.sleep(0.05)
        assert history[0]["status"] == "success"
        assert history[0]["response"] == "pong"

    # Websocket

    async def test_ws_chat_round_trip(self):
        ws = await self._connect()
        session_id = await self._create_session(ws)

        await ws.send_json({"type": "user_input", "text": "hello"})
        frames = await self._until(ws, "message_complete")
        deltas = [f["event"]["delta"]["text"] for f in frames if "delta" in f.get("event", {})]
        assert deltas == ["pong"]
        assert all(f.get("sessionId") == session_id for f in frames)

        sessions = await (await self.client.get("/api/sessions")).json()
        assert sessions[0]["id"] == session_id
        assert sessions[0]["messageCount"] == 2
        assert sessions[0]["active"] is True
        await ws.close()

    async def test_ws_first_frame_must_be_auth(self):
        ws = await self.client.ws_connect("/ws")
        await ws.send_json({"type": "create_session"})
        frame = await ws.receive_json(timeout=5)
        assert frame == {"type": "auth_failed", "message": "Authentication required"}
        msg = await ws.receive(timeout=5)
        assert msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.CLOSING)

    async def test_ws_remote_needs_valid_token(self):
        self._enroll()
        ws = await self.client.ws_connect("/ws", headers=REMOTE_HOST)
        await ws.send_json({"type": "auth", "token": "bogus"})
        assert (await ws.receive_json(timeout=5))["type"] == "auth_failed"
        await ws.close()

        token = self.eve.auth.create_session()
        ws = await self.client.ws_connect("/ws", headers=REMOTE_HOST)
        await ws.send_json({"type": "auth", "token": token})
        assert (await ws.receive_json(timeout=5))["type"] == "auth_success"
        await ws.close()

    async def test_ws_errors(self):
        ws = await self._connect()
        await ws.send_str("{not json")
        assert await ws.receive_json(timeout=5) == {"type": "error", "message": "Invalid JSON"}
        await ws.send_json({"type": "teleport"})
        assert await ws.receive_json(timeout=5) == {"type": "error", "message": "Unknown message type: teleport"}
        await ws.send_json({"type": "user_input", "text": "hi"})
        assert await ws.receive_json(timeout=5) == {"type": "error", "message": "No active session"}
        await ws.send_json({"type": "join_session", "sessionId": "ghost"})
        frame = await ws.receive_json(timeout=5)
        assert frame["message"] == "Session not found: ghost"
        assert frame["sessionId"] == "ghost"
        await ws.close()

    async def test_ws_rename_is_broadcast(self):
        first = await self._connect()
        second = await self._connect()
        session_id = await self._create_session(first)
        await first.send_json({"type": "rename_session", "name": "Bugfix"})
        expected = {"type": "session_renamed", "sessionId": session_id, "name": "Bugfix"}
        assert (await self._until(first, "session_renamed"))[-1] == expected
        assert (await self._until(second, "session_renamed"))[-1] == expected
        await first.close()
        await second.close()

    async def test_ws_file_operations(self):
        project = await self._add_project()
        pid = project["id"]
        ws = await self._connect()

        await ws.send_json({"type": "list_directory", "projectId": pid})
        listing = await ws.receive_json(timeout=5)
        assert listing["type"] == "directory_listing"
        assert [e["name"] for e in listing["entries"]] == ["src"]

        await ws.send_json({"type": "read_file", "projectId": pid, "path": "/src/main.py"})
        content = await ws.receive_json(timeout=5)
        assert content["content"] == "x = 1\n"

        await ws.send_json({"type": "rename_file", "projectId": pid, "path": "/src/main.py", "newName": "app.py"})
        renamed = await ws.receive_json(timeout=5)
        assert renamed["newPath"] == "/src/app.py"

        await ws.send_json({"type": "create_directory", "projectId": pid, "parentPath": "/", "name": "docs"})
        assert (await ws.receive_json(timeout=5))["path"] == "/docs"

        await ws.send_json({"type": "move_file", "projectId": pid, "sourcePath": "/src/app.py", "destDirectory": "/docs"})
        assert (await ws.receive_json(timeout=5))["newPath"] == "/docs/app.py"

        await ws.send_json({"type": "read_file", "projectId": pid, "path": "../../etc/passwd"})
        error = await ws.receive_json(timeout=5)
        assert error == {
            "type": "file_error", "projectId": pid, "path": "../../etc/passwd",
            "error": "Path traversal not allowed",
        }

        await ws.send_json({"type": "delete_file", "projectId": "nope", "path": "/docs"})
        assert (await ws.receive_json(timeout=5))["error"] == "Project not found"
        await ws.close()

    async def test_permission_round_trip(self):
        ws = await self._connect()
        session_id = await self._create_session(ws)
        token = self.eve.bridge.issue_token(session_id)
        payload = {"sessionId": session_id, "toolName": "Bash", "toolInput": {"command": "ls"}, "toolUseId": "t1"}

        resp = await self.client.post("/api/permission", json=payload, headers={"Authorization": "Bearer wrong"})
        assert resp.status == 401

        pending = asyncio.ensure_future(self.client.post(
            "/api/permission", json=payload, headers={"Authorization": f"Bearer {token}"},
        ))
        request = (await self._until(ws, "permission_request"))[-1]
        assert request["toolName"] == "Bash"
        await ws.send_json({"type": "permission_response", "requestId": request["requestId"], "decision": "allow"})
        resp = await pending
        assert await resp.json() == {"decision": "allow", "reason": ""}

        ghost_token = self.eve.bridge.issue_token("ghost")
        resp = await self.client.post(
            "/api/permission", json={**payload, "sessionId": "ghost"},
            headers={"Authorization": f"Bearer {ghost_token}"},
        )
        assert await resp.json() == {"decision": "deny", "reason": "Session not found"}
        await ws.close()

    async def test_ws_terminal_lifecycle(self):
        ws = await self._connect()
        await ws.send_json({"type": "terminal_create", "directory": str(self.project_dir)})
        created = (await self._until(ws, "terminal_created"))[-1]
        terminal_id = created["terminalId"]
        assert created["command"] == "shell"

        await ws.send_json({"type": "terminal_input", "terminalId": terminal_id, "data": "echo eve-$((40+2))\n"})
        output = ""
        for _ in range(50):
            frame = await ws.receive_json(timeout=5)
            if frame["type"] == "terminal_output":
                output += frame["data"]
                if "eve-42" in output:
                    break
        assert "eve-42" in output

        await ws.send_json({"type": "terminal_list"})
        listing = (await self._until(ws, "terminal_list"))[-1]
        assert [t["terminalId"] for t in listing["terminals"]] == [terminal_id]

        await ws.send_json({"type": "terminal_close", "terminalId": terminal_id})
        await ws.send_json({"type": "terminal_list"})
        assert (await self._until(ws, "terminal_list"))[-1]["terminals"] == []
        await ws.close()
