"""Chat provider adapters behind one streaming interface."""
from .base import (
    CommandOutcome,
    CommandResult,
    ModelInfo,
    Provider,
    ProviderContext,
    StreamJsonProvider,
    TransferRequest,
    validate_attachments,
)
from .registry import ProviderRegistry, build_provider_registry
from .claude_provider import ClaudeProvider
from .gemini_provider import GeminiProvider
from .lmstudio_provider import LMStudioProvider

__all__ = [
    "CommandOutcome",
    "CommandResult",
    "ModelInfo",
    "Provider",
    "ProviderContext",
    "StreamJsonProvider",
    "TransferRequest",
    "validate_attachments",
    "ProviderRegistry",
    "build_provider_registry",
    "ClaudeProvider",
    "GeminiProvider",
    "LMStudioProvider",
]
