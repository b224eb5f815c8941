"""Server configuration loaded from environment variables.

All settings have sensible defaults. Override via PORT, HOST and the
EVE_* family; provider binaries come from CLAUDE_PATH / GEMINI_PATH.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_ENV_KEYS = (
    "PORT", "HOST", "HTTPS_KEY", "HTTPS_CERT", "CLAUDE_PATH",
    "GEMINI_PATH", "SHELL",
)


def _truthy(value: str | None) -> bool:
    return (value or "").lower() in {"1", "true", "yes", "on"}


def _default_claude_path() -> str:
    home = os.environ.get("HOME")
    if home:
        local = Path(home) / ".local" / "bin" / "claude"
        if local.exists():
            return str(local)
    return "claude"


@dataclass
class ServerConfig:
    """Workspace server configuration."""

    host: str = "0.0.0.0"
    port: int = 3000
    data_dir: str = str(Path.home() / ".eve")

    # Optional TLS; both must be set.
    https_key: str | None = None
    https_cert: str | None = None

    # Skip websocket/REST authentication entirely.
    no_auth: bool = False

    claude_path: str = "claude"
    gemini_path: str = "gemini"
    shell: str = "/bin/zsh"

    log_level: str = "INFO"

    # Hard cap for a headless scheduled run.
    task_timeout_seconds: float = 300.0
    # How long the permission bridge waits for a client decision.
    permission_timeout_seconds: float = 60.0
    # Terminal scrollback ring size in bytes.
    terminal_buffer_size: int = 100_000
    # Outbound frame queue per websocket connection.
    client_queue_size: int = 5000

    # URL handed to the permission hook; derived from host/port if unset.
    hook_url: str | None = None

    @property
    def tls_enabled(self) -> bool:
        return bool(self.https_key and self.https_cert)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def hook_base_url(self) -> str:
        if self.hook_url:
            return self.hook_url.rstrip("/")
        scheme = "https" if self.tls_enabled else "http"
        return f"{scheme}://127.0.0.1:{self.port}"

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load configuration from the process environment."""
        overrides = {
            k: v for k, v in os.environ.items()
            if k.startswith("EVE_") or k in _ENV_KEYS
        }
        if overrides:
            logger.info(
                "ServerConfig.from_env: env overrides: %s",
                ", ".join(sorted(overrides)),
            )
        else:
            logger.debug("ServerConfig.from_env: no overrides, using defaults")

        config = cls(
            host=os.getenv("HOST", cls.host),
            port=int(os.getenv("PORT", str(cls.port))),
            data_dir=os.getenv("EVE_DATA_DIR", cls.data_dir),
            https_key=os.getenv("HTTPS_KEY") or None,
            https_cert=os.getenv("HTTPS_CERT") or None,
            no_auth=_truthy(os.getenv("EVE_NO_AUTH")),
            claude_path=os.getenv("CLAUDE_PATH") or _default_claude_path(),
            gemini_path=os.getenv("GEMINI_PATH", cls.gemini_path),
            shell=os.getenv("SHELL") or cls.shell,
            log_level=os.getenv("EVE_LOG_LEVEL", cls.log_level).upper(),
            task_timeout_seconds=float(os.getenv(
                "EVE_TASK_TIMEOUT", str(cls.task_timeout_seconds)
            )),
            permission_timeout_seconds=float(os.getenv(
                "EVE_PERMISSION_TIMEOUT", str(cls.permission_timeout_seconds)
            )),
            terminal_buffer_size=int(os.getenv(
                "EVE_TERMINAL_BUFFER", str(cls.terminal_buffer_size)
            )),
            hook_url=os.getenv("EVE_HOOK_URL") or None,
        )
        logger.info(
            "ServerConfig.from_env: host=%s port=%d data_dir=%s tls=%s no_auth=%s",
            config.host, config.port, config.data_dir,
            config.tls_enabled, config.no_auth,
        )
        return config
