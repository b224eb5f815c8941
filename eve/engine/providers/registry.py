"""Provider registry: maps models to provider kinds and builds instances.

Routing is ordered and first match wins; Claude is registered last as
the catch-all.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from eve.engine.config import ServerConfig
from eve.engine.yaml_config import LMStudioConfig
from eve.shared.models.session import Session
from eve.shared.services.process_cleanup import PidRegistry
from eve.shared.services.settings import Settings

from .base import CommandInfo, ModelInfo, Provider, ProviderContext
from .claude_provider import ClaudeProvider
from .gemini_provider import GeminiProvider
from .lmstudio_provider import LMStudioProvider

logger = logging.getLogger(__name__)


@dataclass
class ProviderEntry:
    kind: str
    provider_class: type[Provider]
    matches: Callable[[str], bool]
    models: Callable[[], list[ModelInfo]]


class ProviderRegistry:
    """Ordered registry of provider kinds."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._entries: list[ProviderEntry] = []
        self.settings = settings or Settings()
        self.command_paths: dict[str, str] = {}
        self.hook_url: str | None = None
        self.pid_registry: PidRegistry | None = None
        self.options: dict[str, dict] = {}

    def register(
        self,
        kind: str,
        provider_class: type[Provider],
        matches: Callable[[str], bool],
        models: Callable[[], list[ModelInfo]] | None = None,
    ) -> None:
        """Register a provider kind; earlier registrations match first."""
        self._entries.append(ProviderEntry(
            kind=kind,
            provider_class=provider_class,
            matches=matches,
            models=models or provider_class.list_models,
        ))
        logger.info("Provider registered: %s (enabled=%s)", kind, self.is_enabled(kind))

    def list_kinds(self) -> list[str]:
        return [e.kind for e in self._entries]

    def _entry(self, kind: str) -> ProviderEntry:
        for entry in self._entries:
            if entry.kind == kind:
                return entry
        available = ", ".join(self.list_kinds())
        raise KeyError(f"Provider '{kind}' not found. Available: {available or 'none'}")

    def kind_for_model(self, model: str) -> str:
        for entry in self._entries:
            if entry.matches(model):
                return entry.kind
        return self._entries[-1].kind if self._entries else "claude"

    def provider_class(self, kind: str) -> type[Provider]:
        return self._entry(kind).provider_class

    def is_enabled(self, kind: str) -> bool:
        return self.settings.is_enabled(kind)

    def is_model_enabled(self, model: str) -> bool:
        return self.is_enabled(self.kind_for_model(model))

    def models_for(self, kind: str) -> list[ModelInfo]:
        return self._entry(kind).models()

    def all_models(self, *, include_disabled: bool = False) -> list[ModelInfo]:
        """Catalogue exposed to clients, filtered by the enabled flags."""
        models: list[ModelInfo] = []
        for entry in self._entries:
            if include_disabled or self.is_enabled(entry.kind):
                models.extend(entry.models())
        return models

    def commands_for(self, kind: str) -> list[CommandInfo]:
        return self._entry(kind).provider_class.list_commands()

    def create(
        self,
        session: Session,
        *,
        hook_token: str | None = None,
        extra_args: list[str] | None = None,
    ) -> Provider:
        """Instantiate the provider serving *session.model*."""
        kind = self.kind_for_model(session.model)
        options = dict(self.options.get(kind, {}))
        if extra_args:
            options["extra_args"] = list(extra_args)
        context = ProviderContext(
            command_path=self.settings.provider_path(kind) or self.command_paths.get(kind),
            hook_url=self.hook_url,
            hook_token=hook_token,
            pid_registry=self.pid_registry,
            options=options,
        )
        provider = self.provider_class(kind)(session, context)
        logger.debug("Created %s provider for session=%s model=%s", kind, session.session_id, session.model)
        return provider


def build_provider_registry(
    config: ServerConfig,
    settings: Settings,
    lmstudio: LMStudioConfig,
    *,
    pid_registry: PidRegistry | None = None,
) -> ProviderRegistry:
    """Wire the three built-in providers in routing order."""
    registry = ProviderRegistry(settings)
    registry.command_paths = {"claude": config.claude_path, "gemini": config.gemini_path}
    registry.hook_url = config.hook_base_url
    registry.pid_registry = pid_registry
    registry.options = {"lmstudio": {"lmstudio": lmstudio}}

    gemini_models = {m.value for m in GeminiProvider.list_models()}
    registry.register(
        "gemini", GeminiProvider,
        lambda m: m.startswith("gemini") or m in gemini_models,
    )
    registry.register(
        "lmstudio", LMStudioProvider,
        lambda m: lmstudio.find_model(m) is not None,
        lambda: LMStudioProvider.list_models(lmstudio),
    )
    registry.register("claude", ClaudeProvider, lambda m: True)
    return registry
