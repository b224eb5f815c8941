"""Tests for the pty multiplexer and its scrollback ring."""
from __future__ import annotations

import sys

import pytest

from eve.engine.config import ServerConfig
from eve.engine.errors import TerminalSpawnError
from eve.engine.terminal_manager import EXIT_MARKER, RingBuffer, TerminalManager

from conftest import RecordingClient


def _output(client: RecordingClient) -> str:
    return "".join(f["data"] for f in client.of_type("terminal_output"))


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def test_ring_buffer_keeps_newest_bytes():
    ring = RingBuffer(8)
    ring.write(b"abc")
    ring.write(b"defg")
    assert ring.getvalue() == b"abcdefg"
    ring.write(b"hij")
    assert ring.getvalue() == b"cdefghij"
    assert len(ring) == 8
    ring.write(b"0123456789")
    assert ring.getvalue() == b"23456789"
    ring.clear()
    assert ring.getvalue() == b""
    with pytest.raises(ValueError):
        RingBuffer(0)


def test_argv_only_allows_shell_and_claude():
    manager = TerminalManager(ServerConfig(shell="/bin/sh", claude_path="/opt/claude"))
    assert manager._argv("shell", None) == ["/bin/sh"]
    assert manager._argv("claude", ["--resume", "x"]) == ["/opt/claude", "--resume", "x"]
    assert manager._argv("rm", ["-rf", "/"]) == ["/bin/sh"]


@pytest.mark.asyncio
async def test_output_exit_and_reconnect_replay(tmp_path, wait_until):
    manager = TerminalManager(ServerConfig(terminal_buffer_size=4096))
    client = RecordingClient()
    terminal = await manager.create(client, str(tmp_path), argv=_python("print('hello from pty')"))
    try:
        created = client.frames[0]
        assert created["type"] == "terminal_created"
        assert created["directory"] == str(tmp_path)

        await wait_until(lambda: "terminal_exit" in client.types(), timeout=10)
        assert "hello from pty" in _output(client)
        assert client.of_type("terminal_exit")[0]["exitCode"] == 0
        assert terminal.exited
        assert manager.list(client)[0]["exited"] is True

        later = RecordingClient("later")
        assert manager.reconnect(terminal.terminal_id, later) is True
        replay = later.frames[0]["data"]
        assert "hello from pty" in replay
        assert replay.endswith(EXIT_MARKER)
        assert later.frames[-1]["type"] == "terminal_exit"
    finally:
        await manager.shutdown()
    assert len(manager) == 0


@pytest.mark.asyncio
async def test_input_reaches_process(tmp_path, wait_until):
    manager = TerminalManager(ServerConfig())
    client = RecordingClient()
    code = "import sys; line = sys.stdin.readline(); print('got:' + line.strip())"
    terminal = await manager.create(client, str(tmp_path), argv=_python(code))
    try:
        manager.resize(terminal.terminal_id, 120, 40)
        await manager.input(terminal.terminal_id, "ping\n")
        await wait_until(lambda: "got:ping" in _output(client), timeout=10)
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_detached_terminal_keeps_running(tmp_path, wait_until):
    manager = TerminalManager(ServerConfig())
    client = RecordingClient()
    code = "import sys; sys.stdin.readline(); print('after')"
    terminal = await manager.create(client, str(tmp_path), argv=_python(code))
    try:
        assert manager.detach_all(client) == 1
        await manager.input(terminal.terminal_id, "go\n")
        await wait_until(lambda: terminal.exited, timeout=10)
        assert "after" not in _output(client)
        assert b"after" in terminal.buffer.getvalue()
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_linked_exit_callback(tmp_path, wait_until):
    seen = []
    manager = TerminalManager(ServerConfig(), on_linked_exit=seen.append)
    await manager.create(None, str(tmp_path), argv=_python("pass"), linked_session_id="s-1")
    try:
        await wait_until(lambda: seen == ["s-1"], timeout=10)
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_close_kills_running_process(tmp_path):
    manager = TerminalManager(ServerConfig())
    client = RecordingClient()
    terminal = await manager.create(client, str(tmp_path), argv=_python("import time; time.sleep(30)"))
    assert await manager.close(terminal.terminal_id) is True
    assert terminal.process.returncode is not None
    assert await manager.close(terminal.terminal_id) is False
    assert manager.get(terminal.terminal_id) is None


@pytest.mark.asyncio
async def test_missing_directory_falls_back_to_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    manager = TerminalManager(ServerConfig())
    terminal = await manager.create(None, str(tmp_path / "gone"), argv=_python("pass"))
    try:
        assert terminal.directory == str(tmp_path)
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_spawn_failure_raises(tmp_path):
    manager = TerminalManager(ServerConfig())
    with pytest.raises(TerminalSpawnError):
        await manager.create(None, str(tmp_path), argv=["/nonexistent/binary"])
    assert len(manager) == 0


def test_reconnect_unknown_terminal():
    client = RecordingClient()
    assert TerminalManager(ServerConfig()).reconnect("nope", client) is False
    assert client.frames == [{"type": "error", "terminalId": "nope", "message": "Terminal not found"}]
