"""Session persistence: one JSON snapshot per session.

Storage layout:
    <dataDir>/sessions/{session_id}.json

Snapshots are taken on the event loop (so they are consistent with the
in-memory session) and written off-loop via atomic replace. Writes for a
given session are coalesced: at most one is in flight, and any changes
that land meanwhile are folded into a single follow-up write.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from eve.shared.models.session import Session
from eve.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)


class SessionStore:
    """Save and load session snapshots under a data directory."""

    def __init__(self, data_dir: Path) -> None:
        self._dir = Path(data_dir) / "sessions"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._inflight: dict[str, asyncio.Task] = {}
        self._dirty: set[str] = set()

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, session_id: str) -> Path:
        # Session ids are server-minted hex, but never trust a path component.
        safe = Path(session_id).name
        return self._dir / f"{safe}.json"

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    def save(self, session: Session) -> Path:
        """Write a snapshot synchronously."""
        path = self.path_for(session.session_id)
        atomic_write_json(path, session.to_dict())
        return path

    def load(self, session_id: str) -> Session | None:
        """Load a snapshot, or None if absent or unreadable."""
        path = self.path_for(session_id)
        try:
            data = read_json(path)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable session snapshot %s: %s", path, exc)
            return None
        if not isinstance(data, dict) or "sessionId" not in data:
            if data is not None:
                logger.warning("Malformed session snapshot %s", path)
            return None
        try:
            return Session.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Failed to parse session snapshot %s: %s", path, exc)
            return None

    def list_ids(self) -> list[str]:
        return sorted(p.stem for p in self._dir.glob("*.json"))

    def load_all(self) -> list[Session]:
        sessions = []
        for session_id in self.list_ids():
            session = self.load(session_id)
            if session is not None:
                sessions.append(session)
        return sessions

    async def delete(self, session_id: str) -> bool:
        """Remove a snapshot, waiting out any write still in flight."""
        self._dirty.discard(session_id)
        pending = self._inflight.get(session_id)
        if pending is not None:
            await asyncio.gather(pending, return_exceptions=True)
        path = self.path_for(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted session snapshot %s", session_id)
        return True

    # ── Coalesced background writes ──

    def schedule_save(self, session: Session) -> None:
        """Queue an asynchronous snapshot write for *session*."""
        session_id = session.session_id
        if session_id in self._inflight:
            self._dirty.add(session_id)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save(session)
            return
        self._inflight[session_id] = loop.create_task(self._write_loop(session))

    async def _write_loop(self, session: Session) -> None:
        session_id = session.session_id
        path = self.path_for(session_id)
        try:
            while True:
                self._dirty.discard(session_id)
                data = session.to_dict()
                await asyncio.to_thread(atomic_write_json, path, data)
                if session_id not in self._dirty:
                    break
        except OSError:
            logger.exception("Snapshot write failed for session %s", session_id)
        finally:
            self._inflight.pop(session_id, None)

    async def flush(self) -> None:
        """Wait for every pending snapshot write to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)
