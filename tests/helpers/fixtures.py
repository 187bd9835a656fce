"""
Test fixtures and helpers for PromptCanvas tests.

Provides:
- Deterministic clock and image payloads
- Fake OpenRouter client for offline orchestrator tests
- Recording listener for asserting notification order
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from promptcanvas.clients.openrouter_client import (
    Balance,
    ChatMessage,
    GenerationResult,
    ImageConfig,
    ImageModel,
    OpenRouterError,
)
from promptcanvas.orchestrator.listener import GenerationListener


PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"fake-image-content"


def png_data_url(content: bytes = PNG_BYTES) -> str:
    """Encode bytes as a PNG data URL, as returned by the API."""
    return "data:image/png;base64," + base64.b64encode(content).decode("ascii")


class FixedClock:
    """Settable clock returning epoch seconds."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_generation_result(
    images: int = 1,
    generation_id: Optional[str] = "gen-1",
    content: Optional[str] = "Here is your image",
    urls: Optional[List[str]] = None,
) -> GenerationResult:
    """Build a GenerationResult like the client returns for a chat completion."""
    if urls is None:
        urls = [png_data_url(PNG_BYTES + bytes([i])) for i in range(images)]
    raw = {
        "id": generation_id,
        "model": "test/image-model",
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "content": content,
                    "images": [
                        {"type": "image_url", "image_url": {"url": url}} for url in urls
                    ],
                }
            }
        ],
    }
    return GenerationResult.from_api_response(raw)


@dataclass
class GenerateCall:
    """Arguments of one generate_image call."""
    api_key: str
    prompt: str
    model: str
    system_prompt: Optional[str]
    history: List[ChatMessage]
    image_config: Optional[ImageConfig]
    seed: Optional[int]
    image_input: Optional[str]


@dataclass
class FakeOpenRouterClient:
    """
    Offline stand-in for OpenRouterClient.

    Queue results (or exceptions) in `generate_results`; each
    generate_image call pops the next one.
    """
    models: List[ImageModel] = field(default_factory=list)
    balance: Optional[Balance] = None
    balance_error: Optional[Exception] = None
    generate_results: List[Any] = field(default_factory=list)
    generation_info: List[Any] = field(default_factory=list)
    title: Any = "A Cat Portrait"

    generate_calls: List[GenerateCall] = field(default_factory=list)
    info_calls: List[str] = field(default_factory=list)
    title_calls: List[Tuple[str, str]] = field(default_factory=list)
    balance_calls: int = 0

    async def fetch_models(self, api_key: str) -> List[ImageModel]:
        return list(self.models)

    async def fetch_balance(self, api_key: str) -> Balance:
        self.balance_calls += 1
        if self.balance_error is not None:
            raise self.balance_error
        if self.balance is None:
            raise OpenRouterError("Failed to fetch balance: 401 - unauthorized", status_code=401)
        return self.balance

    async def generate_image(
        self,
        api_key,
        prompt,
        model,
        system_prompt,
        history,
        image_config=None,
        seed=None,
        image_input=None,
    ) -> GenerationResult:
        self.generate_calls.append(
            GenerateCall(
                api_key=api_key,
                prompt=prompt,
                model=model,
                system_prompt=system_prompt,
                history=list(history or []),
                image_config=image_config,
                seed=seed,
                image_input=image_input,
            )
        )
        result = self.generate_results.pop(0) if self.generate_results else build_generation_result()
        if isinstance(result, Exception):
            raise result
        return result

    async def get_generation_info(self, api_key: str, generation_id: str) -> Dict[str, Any]:
        self.info_calls.append(generation_id)
        if not self.generation_info:
            raise OpenRouterError("Failed to fetch generation info: 404 - not found", status_code=404)
        info = self.generation_info.pop(0)
        if isinstance(info, Exception):
            raise info
        return info

    async def generate_title(self, api_key, prompt, system_prompt, model) -> str:
        self.title_calls.append((prompt, model))
        if isinstance(self.title, Exception):
            raise self.title
        return self.title

    async def aclose(self) -> None:
        pass

    async def __aenter__(self) -> "FakeOpenRouterClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


class RecordingListener(GenerationListener):
    """Listener that records every notification as (name, payload)."""

    def __init__(self):
        self.events: List[Tuple[str, Any]] = []

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def payloads(self, name: str) -> List[Any]:
        return [payload for event, payload in self.events if event == name]

    def on_placeholder_created(self, conversation):
        # Snapshot: the conversation object keeps changing afterwards
        self.events.append(("placeholder_created", conversation.model_copy(deep=True)))

    def on_placeholder_removed(self, conversation):
        self.events.append(("placeholder_removed", conversation.model_copy(deep=True)))

    def on_entry_finalized(self, conversation):
        self.events.append(("entry_finalized", conversation.model_copy(deep=True)))

    def on_summary_updated(self, timestamp, summary):
        self.events.append(("summary_updated", (timestamp, summary)))

    def on_conversations_changed(self, timestamps):
        self.events.append(("conversations_changed", list(timestamps)))

    def on_conversation_loaded(self, conversation):
        self.events.append(("conversation_loaded", conversation))

    def on_models_loaded(self, models, selected):
        self.events.append(("models_loaded", (models, selected)))

    def on_balance_updated(self, balance):
        self.events.append(("balance_updated", balance))

    def on_error(self, message):
        self.events.append(("error", message))
