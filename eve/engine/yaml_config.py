"""YAML configuration loader.

Layers an optional ``eve.yaml`` over the env-derived ServerConfig and
declares the HTTP chat-completions backend's model catalogue.

Example YAML:
    server:
      port: 3000
      data_dir: ~/.eve
      task_timeout_seconds: 300

    lmstudio:
      baseUrl: http://localhost:1234/v1
      temperature: 0.7
      models:
        - id: qwen2.5-coder-14b
          label: Qwen 2.5 Coder 14B
          contextWindow: 32768
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from .config import ServerConfig

logger = logging.getLogger(__name__)

DEFAULT_LMSTUDIO_URL = "http://localhost:1234/v1"
DEFAULT_HTTP_CONTEXT_WINDOW = 32768

_SERVER_KEYS = {
    "host": str,
    "port": int,
    "data_dir": str,
    "task_timeout_seconds": float,
    "permission_timeout_seconds": float,
    "terminal_buffer_size": int,
    "shell": str,
}


@dataclass
class HttpModel:
    """One model served by the HTTP backend."""
    id: str
    label: str = ""
    context_window: int = DEFAULT_HTTP_CONTEXT_WINDOW

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HttpModel:
        model_id = str(data["id"])
        return cls(
            id=model_id,
            label=str(data.get("label") or model_id),
            context_window=int(
                data.get("contextWindow")
                or data.get("context_window")
                or DEFAULT_HTTP_CONTEXT_WINDOW
            ),
        )


@dataclass
class LMStudioConfig:
    """Connection settings for the OpenAI-compatible HTTP backend."""
    base_url: str = DEFAULT_LMSTUDIO_URL
    temperature: float = 0.7
    models: list[HttpModel] = field(default_factory=list)

    def find_model(self, model_id: str) -> HttpModel | None:
        for model in self.models:
            if model.id == model_id:
                return model
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> LMStudioConfig:
        if not data:
            return cls()
        models = []
        for raw in data.get("models") or []:
            if not isinstance(raw, dict) or "id" not in raw:
                logger.warning("Skipping malformed lmstudio model entry: %r", raw)
                continue
            models.append(HttpModel.from_dict(raw))
        return cls(
            base_url=str(
                data.get("baseUrl") or data.get("base_url") or DEFAULT_LMSTUDIO_URL
            ).rstrip("/"),
            temperature=float(data.get("temperature", 0.7)),
            models=models,
        )


@dataclass
class YamlConfig:
    """Parsed eve.yaml contents."""
    server: ServerConfig
    lmstudio: LMStudioConfig


def _apply_server_overrides(
    config: ServerConfig, section: dict[str, Any],
) -> ServerConfig:
    updates: dict[str, Any] = {}
    for key, value in section.items():
        caster = _SERVER_KEYS.get(key)
        if caster is None:
            logger.warning("Unknown server config key in YAML: %s", key)
            continue
        try:
            updates[key] = caster(value)
        except (TypeError, ValueError):
            logger.warning("Invalid value for server.%s: %r", key, value)
    return replace(config, **updates) if updates else config


def _load_legacy_lmstudio(data_dir: Path) -> dict[str, Any] | None:
    legacy = data_dir / "lmstudio-config.json"
    if not legacy.exists():
        return None
    try:
        return json.loads(legacy.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read %s: %s", legacy, exc)
        return None


def load_yaml_config(
    path: str | Path | None,
    base: ServerConfig | None = None,
) -> YamlConfig:
    """Load eve.yaml (if any) on top of an env-derived ServerConfig.

    When *path* is None the data directory's ``eve.yaml`` is tried.
    A missing file is not an error.
    """
    server = base or ServerConfig.from_env()
    config_path = Path(path) if path else server.data_path / "eve.yaml"
    raw: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"{config_path}: top level must be a mapping")
        raw = loaded
        logger.info("Loaded YAML config from %s", config_path)
    elif path:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    server_section = raw.get("server") or {}
    if server_section:
        server = _apply_server_overrides(server, server_section)

    lmstudio_section = raw.get("lmstudio")
    if lmstudio_section is None:
        lmstudio_section = _load_legacy_lmstudio(server.data_path)
    lmstudio = LMStudioConfig.from_dict(lmstudio_section)
    if lmstudio.models:
        logger.info(
            "HTTP backend %s serving %d model(s)",
            lmstudio.base_url, len(lmstudio.models),
        )
    return YamlConfig(server=server, lmstudio=lmstudio)
