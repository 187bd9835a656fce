"""
External API clients.
"""

from .openrouter_client import (
    Balance,
    ChatMessage,
    GeneratedImage,
    GenerationKind,
    GenerationResult,
    ImageConfig,
    ImageModel,
    OpenRouterClient,
    OpenRouterError,
    OpenRouterResponseError,
)

__all__ = [
    "Balance",
    "ChatMessage",
    "GeneratedImage",
    "GenerationKind",
    "GenerationResult",
    "ImageConfig",
    "ImageModel",
    "OpenRouterClient",
    "OpenRouterError",
    "OpenRouterResponseError",
]
