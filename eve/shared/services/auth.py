"""Login-token bookkeeping for websocket and REST authentication.

Enrollment itself (passkeys) happens elsewhere; an enrolled server has
an ``auth.json`` credential file. This service only mints, persists and
checks the bearer tokens issued after a successful login, and decides
when a request is coming from the local machine.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import threading
import time
from pathlib import Path

from eve.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 7 * 24 * 60 * 60
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


def host_without_port(host: str | None) -> str:
    if not host:
        return "localhost"
    if host.startswith("["):
        return host[1:].split("]", 1)[0]
    return host.split(":", 1)[0] if host.count(":") == 1 else host


class AuthService:
    """Token store backed by <dataDir>/auth-sessions.json."""

    def __init__(self, data_dir: Path, *, ttl_seconds: float = SESSION_TTL_SECONDS) -> None:
        self._auth_file = Path(data_dir) / "auth.json"
        self._sessions_file = Path(data_dir) / "auth-sessions.json"
        self._ttl = ttl_seconds
        self._lock = threading.Lock()
        self._tokens: dict[str, float] = self._load()

    def _load(self) -> dict[str, float]:
        try:
            if self._sessions_file.exists():
                data = json.loads(self._sessions_file.read_text(encoding="utf-8"))
                return {
                    str(token): float(entry["expiresAt"])
                    for token, entry in data.items()
                    if isinstance(entry, dict) and "expiresAt" in entry
                }
        except (OSError, ValueError, AttributeError) as exc:
            logger.error("Failed to load auth sessions: %s", exc)
        return {}

    def _save(self) -> None:
        try:
            atomic_write_json(
                self._sessions_file,
                {token: {"expiresAt": exp} for token, exp in self._tokens.items()},
            )
            os.chmod(self._sessions_file, 0o600)
        except OSError as exc:
            logger.error("Failed to save auth sessions: %s", exc)

    def is_enrolled(self) -> bool:
        return self._auth_file.exists()

    def create_session(self) -> str:
        token = secrets.token_hex(32)
        with self._lock:
            self._tokens[token] = time.time() + self._ttl
            self._save()
        return token

    def validate_session(self, token: str | None) -> bool:
        if not token:
            return False
        with self._lock:
            expires_at = self._tokens.get(token)
            if expires_at is None:
                return False
            if time.time() > expires_at:
                del self._tokens[token]
                self._save()
                return False
        return True

    def revoke(self, token: str) -> None:
        with self._lock:
            if self._tokens.pop(token, None) is not None:
                self._save()

    def cleanup(self) -> int:
        """Drop expired tokens; returns how many were removed."""
        now = time.time()
        with self._lock:
            expired = [t for t, exp in self._tokens.items() if now > exp]
            for token in expired:
                del self._tokens[token]
            if expired:
                self._save()
        return len(expired)

    @staticmethod
    def is_localhost(host: str | None, remote: str | None = None) -> bool:
        """True when the Host header names this machine and the peer is loopback.

        *remote* is the peer address; when it is unknown only the Host
        header is checked.
        """
        if host_without_port(host) not in LOCAL_HOSTS:
            return False
        return remote is None or remote in LOCAL_HOSTS
