"""
Panelforge Provider Clients

Async REST clients for the generation providers:
- Google Gemini (primary): text and image generation via generateContent
- xAI Grok (fallback): chat completions and image generations

Each client returns a provider-specific response which it normalizes into a
single ProviderPayload before handing it back, so callers never see raw
provider JSON.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx

from panelforge.core.config import ProviderConfig
from panelforge.core.constants import RequestKind
from panelforge.core.env_loader import get_api_key
from panelforge.core.exceptions import (
    ContentSafetyRejection,
    InvalidConfigError,
    MalformedResponseError,
    PermanentProviderError,
    TransientProviderError,
)
from panelforge.core.logging_config import get_logger
from panelforge.utils.image_utils import b64_to_data_url, split_data_url

logger = get_logger("llm.api_clients")


# Content rejection indicators in provider error bodies (case-insensitive)
CONTENT_REJECTION_PATTERNS = [
    "prohibited_content",
    "content policy",
    "safety filter",
    "content filter",
    "content moderation",
]


def is_content_rejection(text: str) -> bool:
    """Check if an error body indicates a content-policy rejection."""
    text_lower = (text or "").lower()
    return any(pattern in text_lower for pattern in CONTENT_REJECTION_PATTERNS)


# ============================================================================
#  REQUEST / RESPONSE TYPES
# ============================================================================

@dataclass
class GenerationRequest:
    """A fully rendered request. Attachments are image data URLs, in order."""
    prompt: str
    attachments: List[str] = field(default_factory=list)
    output_schema: Optional[Dict[str, Any]] = None
    label: str = "request"
    temperature: Optional[float] = None


@dataclass
class ProviderPayload:
    """Normalized provider output."""
    kind: RequestKind
    provider: str
    model: str
    text: str = ""
    image: str = ""


@dataclass
class GeminiResponse:
    """Raw generateContent response."""
    model: str
    candidates: List[Dict[str, Any]]
    prompt_feedback: Dict[str, Any]
    tag: str = "gemini"


@dataclass
class GrokChatResponse:
    """Raw chat completions response."""
    model: str
    choices: List[Dict[str, Any]]
    usage: Dict[str, Any] = field(default_factory=dict)
    tag: str = "grok_chat"


@dataclass
class GrokImageResponse:
    """Raw image generations response."""
    model: str
    data: List[Dict[str, Any]]
    tag: str = "grok_image"


ProviderResponse = Union[GeminiResponse, GrokChatResponse, GrokImageResponse]


# ============================================================================
#  BASE CLIENT
# ============================================================================

class BaseProviderClient(ABC):
    """Base class for provider clients with shared HTTP error mapping."""

    def __init__(
        self,
        config: ProviderConfig,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.name = config.name
        self._api_key = api_key or get_api_key(config.api_key_env, config.fallback_key_envs)
        self._transport = transport

    @property
    def is_available(self) -> bool:
        """Check if the provider has credentials."""
        return bool(self._api_key)

    def model_for(self, kind: RequestKind) -> str:
        return self.config.image_model if kind == RequestKind.IMAGE else self.config.text_model

    async def generate(self, request: GenerationRequest, kind: RequestKind) -> ProviderPayload:
        """Send a request and return the normalized payload."""
        if not self._api_key:
            raise PermanentProviderError(self.name, "No API key configured")
        response = await self._send(request, kind)
        return self.normalize(response, kind)

    @abstractmethod
    async def _send(self, request: GenerationRequest, kind: RequestKind) -> ProviderResponse:
        """Perform the HTTP call(s) for a request."""
        pass

    @abstractmethod
    def normalize(self, response: ProviderResponse, kind: RequestKind) -> ProviderPayload:
        """Convert a raw provider response into a ProviderPayload."""
        pass

    @abstractmethod
    def _headers(self) -> Dict[str, str]:
        pass

    async def _post_json(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST JSON and map transport and HTTP failures onto provider errors."""
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport) as client:
                response = await client.post(url, headers=self._headers(), json=body)
        except httpx.TimeoutException as e:
            raise TransientProviderError(self.name, f"Request timeout: {e}")
        except httpx.TransportError as e:
            raise TransientProviderError(self.name, f"Network error: {e}")

        if response.status_code >= 400:
            text = response.text[:500]
            if response.status_code >= 500:
                raise TransientProviderError(self.name, f"HTTP {response.status_code}: {text}", response.status_code)
            if is_content_rejection(text):
                raise ContentSafetyRejection(self.name, text)
            raise PermanentProviderError(self.name, f"HTTP {response.status_code}: {text}", response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(self.name, f"Response is not JSON: {e}")
        if not isinstance(data, dict):
            raise MalformedResponseError(self.name, "Response is not a JSON object")
        return data


# ============================================================================
#  GEMINI CLIENT
# ============================================================================

class GeminiClient(BaseProviderClient):
    """Client for the Google Gemini generateContent API."""

    SAFETY_FINISH_REASONS = frozenset({
        "PROHIBITED_CONTENT",
        "SAFETY",
        "BLOCKLIST",
        "SPII",
        "IMAGE_SAFETY",
        "IMAGE_PROHIBITED_CONTENT",
    })

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self._api_key,
        }

    def build_body(self, request: GenerationRequest, kind: RequestKind) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = [{"text": request.prompt}]
        for attachment in request.attachments:
            mime_type, data_b64 = split_data_url(attachment)
            parts.append({"inlineData": {"mimeType": mime_type, "data": data_b64}})

        generation_config: Dict[str, Any] = {
            "temperature": request.temperature if request.temperature is not None else self.config.temperature,
        }
        if kind == RequestKind.IMAGE:
            generation_config["responseModalities"] = ["TEXT", "IMAGE"]
        elif request.output_schema:
            generation_config["responseMimeType"] = "application/json"
            generation_config["responseSchema"] = request.output_schema

        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }

    async def _send(self, request: GenerationRequest, kind: RequestKind) -> GeminiResponse:
        model = self.model_for(kind)
        url = f"{self.config.base_url}/models/{model}:generateContent"
        data = await self._post_json(url, self.build_body(request, kind))
        return GeminiResponse(
            model=model,
            candidates=data.get("candidates") or [],
            prompt_feedback=data.get("promptFeedback") or {},
        )

    def normalize(self, response: GeminiResponse, kind: RequestKind) -> ProviderPayload:
        block_reason = response.prompt_feedback.get("blockReason")
        if block_reason:
            logger.warning(f"Gemini blocked prompt: block_reason={block_reason}")
            raise ContentSafetyRejection(self.name, f"block_reason: {block_reason}")

        if not response.candidates:
            raise MalformedResponseError(self.name, "No content parts received")

        candidate = response.candidates[0]
        finish_reason = candidate.get("finishReason")
        if finish_reason in self.SAFETY_FINISH_REASONS:
            logger.warning(f"Gemini blocked content: finish_reason={finish_reason}")
            raise ContentSafetyRejection(self.name, f"finish_reason: {finish_reason}")

        parts = (candidate.get("content") or {}).get("parts") or []
        if not parts:
            raise MalformedResponseError(self.name, "No content parts received")

        if kind == RequestKind.TEXT:
            text = "".join(part.get("text", "") for part in parts)
            if not text.strip():
                raise MalformedResponseError(self.name, "Empty text in response parts")
            return ProviderPayload(kind=kind, provider=self.name, model=response.model, text=text)

        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                return ProviderPayload(
                    kind=kind,
                    provider=self.name,
                    model=response.model,
                    image=b64_to_data_url(inline["data"], mime_type),
                )

        raise MalformedResponseError(self.name, "No image data received in response parts")


# ============================================================================
#  GROK CLIENT
# ============================================================================

def to_json_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a Gemini-style response schema into standard JSON Schema."""
    converted: Dict[str, Any] = {}
    for key, value in schema.items():
        if key == "propertyOrdering":
            continue
        if key == "type" and isinstance(value, str):
            converted[key] = value.lower()
        elif key == "properties" and isinstance(value, dict):
            converted[key] = {name: to_json_schema(sub) for name, sub in value.items()}
        elif key == "items" and isinstance(value, dict):
            converted[key] = to_json_schema(value)
        else:
            converted[key] = value
    return converted


class GrokClient(BaseProviderClient):
    """Client for the xAI Grok API (OpenAI-compatible)."""

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
        }

    def build_chat_body(self, request: GenerationRequest) -> Dict[str, Any]:
        content: Union[str, List[Dict[str, Any]]] = request.prompt
        if request.attachments:
            content = [{"type": "text", "text": request.prompt}]
            for attachment in request.attachments:
                content.append({"type": "image_url", "image_url": {"url": attachment}})

        body: Dict[str, Any] = {
            "model": self.config.text_model,
            "messages": [{"role": "user", "content": content}],
            "temperature": request.temperature if request.temperature is not None else self.config.temperature,
        }
        if request.output_schema:
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": request.label.replace(" ", "_") or "response",
                                "schema": to_json_schema(request.output_schema)},
            }
        return body

    async def _send(self, request: GenerationRequest, kind: RequestKind) -> ProviderResponse:
        if kind == RequestKind.TEXT:
            data = await self._post_json(f"{self.config.base_url}/chat/completions", self.build_chat_body(request))
            return GrokChatResponse(
                model=data.get("model", self.config.text_model),
                choices=data.get("choices") or [],
                usage=data.get("usage") or {},
            )

        if request.attachments:
            logger.debug(f"Grok image generation ignores {len(request.attachments)} reference image(s)")
        body = {
            "model": self.config.image_model,
            "prompt": request.prompt,
            "n": 1,
            "response_format": "b64_json",
        }
        data = await self._post_json(f"{self.config.base_url}/images/generations", body)
        return GrokImageResponse(model=data.get("model", self.config.image_model), data=data.get("data") or [])

    def normalize(self, response: ProviderResponse, kind: RequestKind) -> ProviderPayload:
        if isinstance(response, GrokImageResponse):
            if not response.data or not response.data[0].get("b64_json"):
                raise MalformedResponseError(self.name, "No image data received in response")
            return ProviderPayload(
                kind=kind,
                provider=self.name,
                model=response.model,
                image=b64_to_data_url(response.data[0]["b64_json"], "image/jpeg"),
            )

        if not response.choices:
            raise MalformedResponseError(self.name, "No choices received")
        choice = response.choices[0]
        if choice.get("finish_reason") == "content_filter":
            raise ContentSafetyRejection(self.name, "finish_reason: content_filter")

        content = (choice.get("message") or {}).get("content", "")
        if isinstance(content, list):
            content = "".join(part.get("text", "") for part in content)
        if not content or not content.strip():
            raise MalformedResponseError(self.name, "Empty message content")
        return ProviderPayload(kind=kind, provider=self.name, model=response.model, text=content)


# ============================================================================
#  FACTORY
# ============================================================================

PROVIDER_CLASSES = {
    "gemini": GeminiClient,
    "grok": GrokClient,
}


def create_provider(
    config: ProviderConfig,
    api_key: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BaseProviderClient:
    """Instantiate the client class registered for a provider config."""
    provider_class = PROVIDER_CLASSES.get(config.name)
    if provider_class is None:
        raise InvalidConfigError(f"Unknown provider: {config.name}")
    return provider_class(config, api_key=api_key, transport=transport)
