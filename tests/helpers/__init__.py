"""
PromptCanvas - Test Helpers

Provides utilities for testing:
- Fake OpenRouter client
- Recording listener
- Deterministic clock and image payloads
"""

from .fixtures import (
    PNG_BYTES,
    FakeOpenRouterClient,
    FixedClock,
    GenerateCall,
    RecordingListener,
    build_generation_result,
    png_data_url,
)

__all__ = [
    "PNG_BYTES",
    "FakeOpenRouterClient",
    "FixedClock",
    "GenerateCall",
    "RecordingListener",
    "build_generation_result",
    "png_data_url",
]
