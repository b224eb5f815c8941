"""Server settings stored in <dataDir>/settings.json.

Holds the provider on/off switches and per-provider overrides such as a
custom CLI path. Unknown keys are ignored and missing providers default
to enabled.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from eve.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

PROVIDER_KINDS = ("claude", "gemini", "lmstudio")


@dataclass
class Settings:
    """Provider switches and configuration."""

    providers: dict[str, bool] = field(
        default_factory=lambda: {kind: True for kind in PROVIDER_KINDS}
    )
    provider_config: dict[str, dict[str, Any]] = field(default_factory=dict)

    def validate(self) -> None:
        """Coerce loaded values into the expected shapes."""
        if not isinstance(self.providers, dict):
            self.providers = {}
        cleaned = {kind: True for kind in PROVIDER_KINDS}
        for kind, enabled in self.providers.items():
            if isinstance(enabled, bool):
                cleaned[str(kind)] = enabled
        self.providers = cleaned
        if not isinstance(self.provider_config, dict):
            self.provider_config = {}
        self.provider_config = {
            str(kind): cfg for kind, cfg in self.provider_config.items()
            if isinstance(cfg, dict)
        }

    def is_enabled(self, kind: str) -> bool:
        return self.providers.get(kind, True)

    def provider_path(self, kind: str) -> str | None:
        path = self.provider_config.get(kind, {}).get("path")
        return str(path) if path else None

    def to_dict(self) -> dict[str, Any]:
        return {"providers": dict(self.providers), "providerConfig": dict(self.provider_config)}

    def save(self, path: Path) -> None:
        """Persist settings to disk."""
        atomic_write_json(Path(path), self.to_dict())

    @classmethod
    def load(cls, path: Path) -> Settings:
        """Load settings from disk, returning defaults if missing/corrupt."""
        target = Path(path)
        try:
            if target.exists():
                data = json.loads(target.read_text(encoding="utf-8"))
                settings = cls(
                    providers=data.get("providers", {}),
                    provider_config=data.get("providerConfig", {}),
                )
                settings.validate()
                disabled = [k for k, on in settings.providers.items() if not on]
                logger.info(
                    "Loaded settings from %s (disabled providers: %s)",
                    target, ", ".join(disabled) or "none",
                )
                return settings
            logger.debug("Settings file not found at %s; using defaults", target)
        except (OSError, ValueError, AttributeError):
            logger.warning("Failed to load settings from %s; using defaults", target)
        return cls()
