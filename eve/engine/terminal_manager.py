"""Pseudo-terminal multiplexer.

Terminals outlive the websocket that created them: a disconnect only
unbinds the client, and a later ``terminal_reconnect`` replays the
scrollback ring. A terminal whose process has exited stays listed until
it is explicitly closed.
"""
from __future__ import annotations

import asyncio
import codecs
import errno
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from eve.adapters.client_queue import ClientSink
from eve.engine.config import ServerConfig
from eve.engine.errors import TerminalSpawnError
from eve.shared.services.process_cleanup import PidRegistry

logger = logging.getLogger(__name__)

DEFAULT_COLS = 80
DEFAULT_ROWS = 24
EXIT_MARKER = "\r\n\x1b[90m[Process Terminated]\x1b[0m\r\n"
READ_CHUNK = 65536


class RingBuffer:
    """Fixed-capacity byte log; the oldest bytes are overwritten first."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._buf = bytearray(capacity)
        self._start = 0
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def write(self, data: bytes) -> None:
        if not data:
            return
        cap = self.capacity
        if len(data) >= cap:
            self._buf[:] = data[-cap:]
            self._start = 0
            self._size = cap
            return
        end = (self._start + self._size) % cap
        first = min(len(data), cap - end)
        self._buf[end:end + first] = data[:first]
        rest = len(data) - first
        if rest:
            self._buf[:rest] = data[first:]
        overflow = self._size + len(data) - cap
        if overflow > 0:
            self._start = (self._start + overflow) % cap
            self._size = cap
        else:
            self._size += len(data)

    def getvalue(self) -> bytes:
        end = self._start + self._size
        if end <= self.capacity:
            return bytes(self._buf[self._start:end])
        return bytes(self._buf[self._start:]) + bytes(self._buf[:end - self.capacity])

    def clear(self) -> None:
        self._start = 0
        self._size = 0


@dataclass
class Terminal:
    terminal_id: str
    command: str
    directory: str
    process: asyncio.subprocess.Process = field(repr=False)
    master_fd: int
    buffer: RingBuffer = field(repr=False)
    client: ClientSink | None = field(default=None, repr=False)
    linked_session_id: str | None = None
    exited: bool = False
    exit_code: int | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    decoder: Any = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        repr=False,
    )
    watcher: asyncio.Task | None = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    def send(self, frame: dict[str, Any]) -> None:
        if self.client is not None:
            self.client.send(frame)

    def info(self) -> dict[str, Any]:
        return {
            "terminalId": self.terminal_id,
            "directory": self.directory,
            "command": self.command,
            "exited": self.exited,
            "exitCode": self.exit_code,
        }


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the pty slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class TerminalManager:
    """Owns every pty in the process; the terminals map is private to it."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        pid_registry: PidRegistry | None = None,
        on_linked_exit: Callable[[str], None] | None = None,
    ) -> None:
        self.config = config
        self.pid_registry = pid_registry
        self.on_linked_exit = on_linked_exit
        self._terminals: dict[str, Terminal] = {}

    def __len__(self) -> int:
        return len(self._terminals)

    def get(self, terminal_id: str) -> Terminal | None:
        return self._terminals.get(terminal_id)

    def _argv(self, command: str, args: list[str] | None) -> list[str]:
        if command == "claude":
            return [self.config.claude_path, *(args or [])]
        if command != "shell":
            # Arbitrary executables are not accepted from clients.
            logger.warning("Unknown terminal command %r; starting a shell", command)
        return [self.config.shell]

    async def create(
        self,
        client: ClientSink | None,
        directory: str | None,
        command: str = "shell",
        args: list[str] | None = None,
        *,
        linked_session_id: str | None = None,
        argv: list[str] | None = None,
    ) -> Terminal:
        """Spawn a pty running the shell (or the ``claude`` CLI)."""
        cwd = directory or os.path.expanduser("~")
        if not os.path.isdir(cwd):
            logger.warning("Terminal directory %s does not exist; using home", cwd)
            cwd = os.path.expanduser("~")
        cmd = argv or self._argv(command, args)
        env = os.environ.copy()
        env["TERM"] = "xterm-256color"

        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, DEFAULT_COLS, DEFAULT_ROWS)
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except OSError as exc:
            os.close(master_fd)
            raise TerminalSpawnError(cmd[0], exc.strerror or str(exc)) from exc
        finally:
            os.close(slave_fd)
        os.set_blocking(master_fd, False)

        terminal = Terminal(
            terminal_id=str(uuid.uuid4()),
            command=command,
            directory=cwd,
            process=process,
            master_fd=master_fd,
            buffer=RingBuffer(self.config.terminal_buffer_size),
            client=client,
            linked_session_id=linked_session_id,
        )
        self._terminals[terminal.terminal_id] = terminal
        if self.pid_registry is not None:
            self.pid_registry.add(process.pid)

        asyncio.get_running_loop().add_reader(master_fd, self._on_readable, terminal)
        terminal.watcher = asyncio.create_task(self._watch(terminal))
        logger.info(
            "Terminal %s started pid=%s cmd=%s cwd=%s",
            terminal.terminal_id, process.pid, " ".join(cmd), cwd,
        )
        terminal.send({
            "type": "terminal_created",
            "terminalId": terminal.terminal_id,
            "directory": cwd,
            "command": command,
        })
        return terminal

    # ── Output path ──

    def _read_available(self, terminal: Terminal) -> bool:
        """Drain whatever the pty has; returns False once it reached EOF."""
        while True:
            try:
                data = os.read(terminal.master_fd, READ_CHUNK)
            except BlockingIOError:
                return True
            except OSError as exc:
                # EIO: every slave descriptor is closed.
                if exc.errno != errno.EIO:
                    logger.debug("Terminal %s read failed: %s", terminal.terminal_id, exc)
                return False
            if not data:
                return False
            terminal.buffer.write(data)
            text = terminal.decoder.decode(data)
            if text:
                terminal.send({
                    "type": "terminal_output",
                    "terminalId": terminal.terminal_id,
                    "data": text,
                })

    def _on_readable(self, terminal: Terminal) -> None:
        if not self._read_available(terminal):
            self._stop_reading(terminal)

    def _stop_reading(self, terminal: Terminal) -> None:
        try:
            asyncio.get_running_loop().remove_reader(terminal.master_fd)
        except (ValueError, OSError):
            pass

    async def _watch(self, terminal: Terminal) -> None:
        code = await terminal.process.wait()
        if terminal.master_fd >= 0:
            self._read_available(terminal)
            self._stop_reading(terminal)
        if self.pid_registry is not None:
            self.pid_registry.remove(terminal.pid)
        terminal.exited = True
        terminal.exit_code = code
        terminal.buffer.write(EXIT_MARKER.encode("utf-8"))
        logger.info("Terminal %s exited code=%s", terminal.terminal_id, code)
        terminal.send({
            "type": "terminal_exit",
            "terminalId": terminal.terminal_id,
            "exitCode": code,
        })
        if terminal.linked_session_id and self.on_linked_exit is not None:
            try:
                self.on_linked_exit(terminal.linked_session_id)
            except Exception:
                logger.exception("Linked-exit callback failed for session=%s", terminal.linked_session_id)

    # ── Client operations ──

    async def input(self, terminal_id: str, data: str) -> None:
        terminal = self._terminals.get(terminal_id)
        if terminal is None or terminal.exited:
            return
        payload = data.encode("utf-8")
        async with terminal.lock:
            while payload:
                try:
                    written = os.write(terminal.master_fd, payload)
                except BlockingIOError:
                    await asyncio.sleep(0.01)
                    continue
                except OSError as exc:
                    logger.debug("Terminal %s write failed: %s", terminal_id, exc)
                    return
                payload = payload[written:]

    def resize(self, terminal_id: str, cols: int, rows: int) -> None:
        terminal = self._terminals.get(terminal_id)
        if terminal is None or terminal.exited:
            return
        try:
            _set_winsize(terminal.master_fd, max(1, int(cols)), max(1, int(rows)))
        except (OSError, ValueError) as exc:
            logger.debug("Terminal %s resize failed: %s", terminal_id, exc)

    def list(self, client: ClientSink) -> list[dict[str, Any]]:
        terminals = [t.info() for t in self._terminals.values()]
        client.send({"type": "terminal_list", "terminals": terminals})
        return terminals

    def reconnect(self, terminal_id: str, client: ClientSink) -> bool:
        """Rebind *client* and replay the full scrollback."""
        terminal = self._terminals.get(terminal_id)
        if terminal is None:
            client.send({
                "type": "error",
                "terminalId": terminal_id,
                "message": "Terminal not found",
            })
            return False
        terminal.client = client
        scrollback = terminal.buffer.getvalue()
        if scrollback:
            client.send({
                "type": "terminal_output",
                "terminalId": terminal_id,
                "data": scrollback.decode("utf-8", errors="replace"),
            })
        if terminal.exited:
            client.send({
                "type": "terminal_exit",
                "terminalId": terminal_id,
                "exitCode": terminal.exit_code,
            })
        return True

    def detach_all(self, client: ClientSink) -> int:
        detached = 0
        for terminal in self._terminals.values():
            if terminal.client is client:
                terminal.client = None
                detached += 1
        return detached

    async def close(self, terminal_id: str) -> bool:
        terminal = self._terminals.pop(terminal_id, None)
        if terminal is None:
            return False
        if not terminal.exited:
            try:
                os.killpg(terminal.pid, signal.SIGHUP)
            except ProcessLookupError:
                pass
            except PermissionError:
                terminal.process.terminate()
            try:
                await asyncio.wait_for(asyncio.shield(terminal.process.wait()), timeout=2.0)
            except asyncio.TimeoutError:
                try:
                    os.killpg(terminal.pid, signal.SIGKILL)
                except (ProcessLookupError, PermissionError):
                    pass
        if terminal.watcher is not None:
            try:
                await asyncio.wait_for(terminal.watcher, timeout=2.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
        self._stop_reading(terminal)
        try:
            os.close(terminal.master_fd)
        except OSError:
            pass
        terminal.master_fd = -1
        logger.info("Terminal %s closed", terminal_id)
        return True

    async def shutdown(self) -> None:
        for terminal_id in list(self._terminals):
            await self.close(terminal_id)
