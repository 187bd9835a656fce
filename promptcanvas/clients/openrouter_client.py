"""
OpenRouter API Client

Handles all communication with the OpenRouter API:
- Image-capable model listing
- Credit balance lookup
- Image generation via chat completions
- Generation usage/cost lookup
- Short title generation with a cheap text model

Responses are validated at this boundary and returned as typed results.
"""

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class OpenRouterError(Exception):
    """Error returned by the OpenRouter API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OpenRouterResponseError(OpenRouterError):
    """Response body did not have the expected shape."""
    pass


@dataclass
class ChatMessage:
    """One role-tagged message of the running model context."""
    role: str
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass
class ImageConfig:
    """Image size and aspect ratio sent with a generation request."""
    image_size: Optional[str] = None
    aspect_ratio: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        result = {}
        if self.image_size:
            result["image_size"] = self.image_size
        if self.aspect_ratio:
            result["aspect_ratio"] = self.aspect_ratio
        return result


@dataclass
class ImageModel:
    """Parsed model data from the models endpoint."""
    id: str
    name: str
    description: Optional[str] = None
    context_length: Optional[int] = None
    output_modalities: List[str] = field(default_factory=list)

    @property
    def supports_image_output(self) -> bool:
        return "image" in self.output_modalities

    @classmethod
    def from_api_response(cls, data: Dict[str, Any]) -> "ImageModel":
        architecture = data.get("architecture")
        if not isinstance(architecture, dict):
            architecture = {}
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            description=data.get("description"),
            context_length=data.get("context_length"),
            output_modalities=list(architecture.get("output_modalities") or []),
        )


@dataclass
class Balance:
    """Account credits and usage in USD."""
    total_credits: float
    total_usage: float

    @property
    def available(self) -> float:
        return self.total_credits - self.total_usage

    @classmethod
    def from_api_response(cls, data: Dict[str, Any]) -> "Balance":
        payload = data.get("data") or {}
        try:
            return cls(
                total_credits=float(payload["total_credits"]),
                total_usage=float(payload["total_usage"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise OpenRouterResponseError(f"Unexpected balance response: {e}") from e


class GenerationKind(str, Enum):
    """What a generation response actually contained."""
    IMAGES = "images"
    TEXT_ONLY = "text_only"
    EMPTY = "empty"


@dataclass
class GeneratedImage:
    """One image returned by the model, usually a base64 data URL."""
    url: str


@dataclass
class GenerationResult:
    """Typed view of a chat completion carrying generated images."""
    id: Optional[str]
    model: Optional[str]
    content: Optional[str]
    images: List[GeneratedImage]
    raw: Dict[str, Any]

    @property
    def kind(self) -> GenerationKind:
        if self.images:
            return GenerationKind.IMAGES
        if self.content:
            return GenerationKind.TEXT_ONLY
        return GenerationKind.EMPTY

    @property
    def has_images(self) -> bool:
        return self.kind == GenerationKind.IMAGES

    def stripped_payload(self) -> Dict[str, Any]:
        """Raw payload without the image data, suitable for persisting."""
        payload = copy.deepcopy(self.raw)
        for choice in payload.get("choices") or []:
            message = choice.get("message") if isinstance(choice, dict) else None
            if isinstance(message, dict):
                message.pop("images", None)
        return payload

    @classmethod
    def from_api_response(cls, data: Dict[str, Any]) -> "GenerationResult":
        """
        Validate a chat completion payload.

        Raises:
            OpenRouterResponseError: If the payload has no usable choice
        """
        if not isinstance(data, dict):
            raise OpenRouterResponseError("Generation response is not an object")

        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise OpenRouterError(f"Failed to generate image: {message}")

        choices = data.get("choices")
        if not choices or not isinstance(choices, list):
            raise OpenRouterResponseError("Generation response has no choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not isinstance(message, dict):
            raise OpenRouterResponseError("Generation response has no message")

        images = []
        for item in message.get("images") or []:
            url = ((item or {}).get("image_url") or {}).get("url") if isinstance(item, dict) else None
            if url:
                images.append(GeneratedImage(url=url))

        content = message.get("content")
        if isinstance(content, list):
            # Multimodal content parts: keep the text parts only
            content = "".join(
                part.get("text", "") for part in content
                if isinstance(part, dict) and part.get("type") == "text"
            )
        if content is not None and not isinstance(content, str):
            content = str(content)

        return cls(
            id=data.get("id"),
            model=data.get("model"),
            content=content or None,
            images=images,
            raw=data,
        )


class OpenRouterClient:
    """
    Async client for the OpenRouter API.

    No timeout is imposed by default: image generation may take minutes.
    """

    BASE_URL = "https://openrouter.ai/api/v1"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-initialized shared HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": "PromptCanvas/1.0"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OpenRouterClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        api_key: str,
        action: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Send a request and return the decoded JSON body.

        Raises:
            OpenRouterError: On non-2xx status
            OpenRouterResponseError: If the body is not a JSON object
            httpx.HTTPError: On transport failures
        """
        url = f"{self.base_url}{endpoint}"
        logger.debug("[openrouter] %s %s", method, endpoint)
        response = await self.client.request(
            method,
            url,
            headers=self._headers(api_key),
            params=params,
            json=json_body,
        )
        if not response.is_success:
            raise OpenRouterError(
                f"Failed to {action}: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise OpenRouterResponseError(f"Failed to {action}: invalid JSON response") from e
        if not isinstance(data, dict):
            raise OpenRouterResponseError(f"Failed to {action}: response is not a JSON object")
        return data

    async def fetch_models(self, api_key: str) -> List[ImageModel]:
        """Fetch models that advertise image output, sorted by name."""
        data = await self._request("GET", "/models", api_key, "fetch models")
        items = data.get("data") or []
        if not isinstance(items, list):
            raise OpenRouterResponseError("Failed to fetch models: unexpected response")

        models = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                model = ImageModel.from_api_response(item)
            except (KeyError, TypeError):
                continue
            if model.supports_image_output:
                models.append(model)
        models.sort(key=lambda m: m.name.lower())
        logger.debug("[openrouter] %d image models available", len(models))
        return models

    async def fetch_balance(self, api_key: str) -> Balance:
        """Fetch the account balance."""
        data = await self._request("GET", "/credits", api_key, "fetch balance")
        return Balance.from_api_response(data)

    def build_generation_body(
        self,
        prompt: str,
        model: str,
        system_prompt: Optional[str],
        history: Optional[List[ChatMessage]],
        image_config: Optional[ImageConfig] = None,
        seed: Optional[int] = None,
        image_input: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build the chat completion request body for an image generation."""
        messages: List[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for message in history or []:
            messages.append(message.to_dict())

        if image_input:
            user_content: Any = [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image_input}},
            ]
        else:
            user_content = prompt
        messages.append({"role": "user", "content": user_content})

        body: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "modalities": ["image", "text"],
        }
        if image_config is not None:
            config = image_config.to_dict()
            if config:
                body["image_config"] = config
        if seed is not None:
            body["seed"] = seed
        return body

    async def generate_image(
        self,
        api_key: str,
        prompt: str,
        model: str,
        system_prompt: Optional[str],
        history: Optional[List[ChatMessage]],
        image_config: Optional[ImageConfig] = None,
        seed: Optional[int] = None,
        image_input: Optional[str] = None,
    ) -> GenerationResult:
        """
        Generate images with a chat completion.

        Args:
            api_key: OpenRouter API key
            prompt: User prompt for this turn
            model: Model id
            system_prompt: System prompt
            history: Previous role-tagged messages (excluding this prompt)
            image_config: Image size and aspect ratio
            seed: Seed for reproducible generation
            image_input: Optional data URL sent along with the prompt

        Returns:
            GenerationResult (may contain zero images)
        """
        body = self.build_generation_body(
            prompt, model, system_prompt, history, image_config, seed, image_input
        )
        data = await self._request(
            "POST", "/chat/completions", api_key, "generate image", json_body=body
        )
        result = GenerationResult.from_api_response(data)
        logger.info(
            "[openrouter] Generation %s returned %d image(s)", result.id, len(result.images)
        )
        return result

    async def get_generation_info(self, api_key: str, generation_id: str) -> Dict[str, Any]:
        """Fetch usage and cost data for a finished generation."""
        data = await self._request(
            "GET",
            "/generation",
            api_key,
            "fetch generation info",
            params={"id": generation_id},
        )
        payload = data.get("data", data)
        if not isinstance(payload, dict):
            raise OpenRouterResponseError("Unexpected generation info response")
        return payload

    async def generate_title(
        self,
        api_key: str,
        prompt: str,
        system_prompt: str,
        model: str,
    ) -> str:
        """Generate a short conversation title for a prompt."""
        body = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
        }
        data = await self._request(
            "POST", "/chat/completions", api_key, "generate title", json_body=body
        )
        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise OpenRouterResponseError("Title response has no content") from e
        return clean_title(content)


def clean_title(text: str) -> str:
    """Normalize model output to a single-line title without quotes."""
    line = text.strip().splitlines()[0] if text.strip() else ""
    line = line.strip().strip("\"'`*").strip()
    if line.lower().startswith("title:"):
        line = line[len("title:"):].strip().strip("\"'")
    return line
