"""Tracking and cleanup of child processes spawned by the server.

Every provider CLI and terminal child is recorded in ``pids.json`` while
it runs. If the server dies without reaping them, the next startup
terminates whatever is left over and resets the registry.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from eve.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 2:
            continue
        try:
            pid, ppid = int(parts[0]), int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2] if len(parts) > 2 else "")
    return table


class PidRegistry:
    """Persistent set of live child pids."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._pids: set[int] = set()
        try:
            if self._path.exists():
                data = json.loads(self._path.read_text(encoding="utf-8"))
                if isinstance(data, list):
                    self._pids = {int(p) for p in data if isinstance(p, int)}
        except (OSError, ValueError):
            logger.warning("Corrupt pid registry %s; starting empty", self._path)

    def _persist(self) -> None:
        try:
            atomic_write_json(self._path, sorted(self._pids))
        except OSError as exc:
            logger.error("Failed to write pid registry %s: %s", self._path, exc)

    def add(self, pid: int | None) -> None:
        if pid is None:
            return
        with self._lock:
            self._pids.add(pid)
            self._persist()

    def remove(self, pid: int | None) -> None:
        if pid is None:
            return
        with self._lock:
            if pid in self._pids:
                self._pids.discard(pid)
                self._persist()

    def all(self) -> list[int]:
        with self._lock:
            return sorted(self._pids)

    def clear(self) -> None:
        with self._lock:
            self._pids.clear()
            self._persist()


def cleanup_stale_processes(
    registry: PidRegistry,
    *,
    current_pid: int | None = None,
    log: Callable[[str], None] | None = None,
) -> int:
    """SIGTERM registered pids that outlived their server, then reset.

    A pid is only signalled when it is still running and orphaned
    (parent is PID 1 or gone), so a recycled pid that belongs to some
    unrelated live process tree is left alone.
    """
    pid = current_pid or os.getpid()
    emit = log or (lambda _: None)
    recorded = registry.all()
    if not recorded:
        return 0
    try:
        table = _list_processes()
    except (OSError, subprocess.CalledProcessError) as exc:
        logger.warning("Could not list processes for cleanup: %s", exc)
        registry.clear()
        return 0

    killed = 0
    for stale_pid in recorded:
        proc = table.get(stale_pid)
        if proc is None or proc.pid == pid:
            continue
        if proc.ppid not in (1, pid) and proc.ppid in table:
            continue
        try:
            os.kill(proc.pid, signal.SIGTERM)
            killed += 1
            emit(f"Reaped stale child process pid={proc.pid} cmd={proc.args[:180]}")
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            emit(f"Failed to reap stale process pid={proc.pid}: {exc}")
    registry.clear()
    return killed
