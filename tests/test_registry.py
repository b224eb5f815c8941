"""Tests for provider routing and the enabled-provider filter."""
from __future__ import annotations

from eve.engine.config import ServerConfig
from eve.engine.providers.claude_provider import ClaudeProvider
from eve.engine.providers.gemini_provider import GeminiProvider
from eve.engine.providers.lmstudio_provider import LMStudioProvider
from eve.engine.providers.registry import build_provider_registry
from eve.engine.yaml_config import HttpModel, LMStudioConfig
from eve.shared.models.session import Session
from eve.shared.services.settings import Settings


def _registry(settings=None, **config):
    lmstudio = LMStudioConfig(models=[HttpModel("qwen-7b", "Qwen 7B")])
    return build_provider_registry(ServerConfig(**config), settings or Settings(), lmstudio)


def test_routing_order():
    registry = _registry()
    assert registry.list_kinds() == ["gemini", "lmstudio", "claude"]
    assert registry.kind_for_model("gemini-2.0-flash") == "gemini"
    assert registry.kind_for_model("auto-gemini-2.5") == "gemini"
    assert registry.kind_for_model("qwen-7b") == "lmstudio"
    assert registry.kind_for_model("sonnet") == "claude"
    assert registry.kind_for_model("anything-else") == "claude"


def test_disabled_provider_is_filtered_from_catalogue():
    settings = Settings(providers={"claude": True, "gemini": False, "lmstudio": True})
    registry = _registry(settings)
    values = [m.value for m in registry.all_models()]
    assert "haiku" in values
    assert "qwen-7b" in values
    assert not any(v.startswith(("gemini", "auto-gemini")) for v in values)
    assert registry.is_model_enabled("gemini-2.0-flash") is False
    assert len(registry.all_models(include_disabled=True)) > len(values)


def test_create_builds_context(tmp_path):
    settings = Settings(provider_config={"claude": {"path": "/opt/claude"}})
    registry = _registry(settings, port=4100)
    claude = registry.create(Session(model="opus"), hook_token="tok", extra_args=["--verbose"])
    assert isinstance(claude, ClaudeProvider)
    assert claude.context.command_path == "/opt/claude"
    assert claude.context.hook_url == "http://127.0.0.1:4100"
    assert claude.context.hook_token == "tok"
    assert claude.custom_args == ["--verbose"]
    env = claude.build_env()
    assert env["EVE_AUTH_TOKEN"] == "tok"
    assert env["EVE_SESSION_ID"] == claude.session.session_id

    assert isinstance(registry.create(Session(model="gemini-2.0-flash")), GeminiProvider)
    lm = registry.create(Session(model="qwen-7b"))
    assert isinstance(lm, LMStudioProvider)
    assert lm.config.find_model("qwen-7b") is not None


def test_commands_for_kind():
    registry = _registry()
    assert [c.name for c in registry.commands_for("claude")] == ["model", "args", "transfer-cli"]
    assert [c.name for c in registry.commands_for("lmstudio")] == []
