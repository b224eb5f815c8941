"""Shared pytest fixtures: a recording client sink, a scriptable subprocess
and an in-process provider."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from eve.adapters.events import text_delta
from eve.engine.providers.base import (
    CommandInfo,
    CommandResult,
    ModelInfo,
    Provider,
    TransferRequest,
)
from eve.shared.models.message import AssistantTurn, TextBlock


class RecordingClient:
    """ClientSink that keeps every frame it is sent."""

    def __init__(self, client_id: str = "test-client") -> None:
        self.client_id = client_id
        self.frames: list[dict] = []

    def send(self, frame: dict) -> None:
        self.frames.append(frame)

    def of_type(self, frame_type: str) -> list[dict]:
        return [f for f in self.frames if f.get("type") == frame_type]

    def types(self) -> list[str]:
        return [f.get("type") for f in self.frames]


class _FakeStream:
    def __init__(self) -> None:
        self._chunks: asyncio.Queue[bytes] = asyncio.Queue()

    def push(self, data: bytes) -> None:
        self._chunks.put_nowait(data)

    async def read(self, n: int = -1) -> bytes:
        return await self._chunks.get()

    async def readline(self) -> bytes:
        return await self._chunks.get()


class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process``; stdout is fed by the test."""

    _next_pid = 40000

    def __init__(self) -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode: int | None = None
        self.stdin = MagicMock()
        self.stdin.drain = AsyncMock()
        self.stdout = _FakeStream()
        self.stderr = _FakeStream()
        self._exited = asyncio.Event()

    def written(self) -> list[bytes]:
        return [c.args[0] for c in self.stdin.write.call_args_list]

    def emit(self, line: str) -> None:
        self.stdout.push((line + "\n").encode("utf-8"))

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.push(b"")
        self.stderr.push(b"")
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)


class FakeProvider(Provider):
    """Answers with ``options["reply"]`` when set, otherwise stays mid-turn."""

    kind = "fake"
    label = "Fake"

    def __init__(self, session, context=None):
        super().__init__(session, context)
        self.sent: list[str] = []
        self.started = 0
        self.killed = 0

    async def start(self):
        self.started += 1

    async def send(self, text, attachments):
        if not self.begin_turn():
            return
        self.sent.append(text)
        reply = self.context.options.get("reply")
        if reply:
            self.reply(reply)

    def reply(self, text: str) -> None:
        self.emit(text_delta(text))
        self.commit_assistant(AssistantTurn(blocks=[TextBlock(text)]))
        self.session.emit_stats()
        self.complete_turn()

    async def kill(self):
        self.killed += 1

    @classmethod
    def list_models(cls):
        return [ModelInfo("haiku", "Fake Haiku", "Fake")]

    @classmethod
    def list_commands(cls):
        return [CommandInfo("transfer-cli", "Hand over to a terminal")]

    async def handle_command(self, name, args, reply):
        if name == "transfer-cli":
            return CommandResult.transfer_to(TransferRequest("tok-1", self.session.model))
        if name == "ping":
            reply("pong")
            return CommandResult.handled()
        return CommandResult.unhandled()


@pytest.fixture
def recorder():
    return RecordingClient()


@pytest.fixture
def fake_process():
    return FakeProcess


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout: float = 3.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)
    return _wait
