"""
Panelforge Provider Call Adapter

Executes one logical generation request against a primary provider with a
single transient retry and an optional fallback provider.

Transitions:

    PRIMARY --ok--------------------------------> SUCCEEDED
    PRIMARY --content blocked-------------------> FAILED
    PRIMARY --retryable-------------------------> RETRY
    PRIMARY --other, fallback configured--------> FALLBACK
    RETRY   --ok--------------------------------> SUCCEEDED
    RETRY   --content blocked-------------------> FAILED
    RETRY   --other, fallback configured--------> FALLBACK
    FALLBACK --ok-------------------------------> SUCCEEDED
    FALLBACK --any error------------------------> FAILED (primary error raised)

A content-safety rejection is never retried and never sent to the fallback.
"""

import asyncio
import dataclasses
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar

import httpx

from panelforge.core.config import PanelforgeConfig
from panelforge.core.constants import DEFAULT_RETRY_DELAY, RequestKind
from panelforge.core.exceptions import (
    ContentSafetyRejection,
    MalformedResponseError,
    PermanentProviderError,
    TransientProviderError,
)
from panelforge.core.logging_config import get_logger, truncate_error
from panelforge.utils.image_utils import reencode_as_jpeg

from .api_clients import BaseProviderClient, GenerationRequest, ProviderPayload, create_provider

logger = get_logger("llm.adapter")

T = TypeVar("T")

# Error text fragments that mark a transient failure
RETRYABLE_MESSAGES = [
    "No content parts received",
    "fetch failed",
    "network error",
    "timeout",
    "Internal error encountered",
]


class FailureClass(Enum):
    """How a provider failure is handled."""
    CONTENT_BLOCKED = "content_blocked"
    RETRYABLE = "retryable"
    FALLBACK_ONLY = "fallback_only"


class CallState(Enum):
    """States of a single adapter invocation."""
    PRIMARY = "primary"
    RETRY = "retry"
    FALLBACK = "fallback"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _is_internal_error_json(message: str) -> bool:
    """Detect an embedded ``{"error": {"code": 500, "status": "INTERNAL"}}`` body."""
    start = message.find('{"error"')
    if start == -1:
        return False
    try:
        body = json.loads(message[start:])
    except json.JSONDecodeError:
        return False
    error = body.get("error") if isinstance(body, dict) else None
    return isinstance(error, dict) and error.get("code") == 500 and error.get("status") == "INTERNAL"


def classify_error(error: BaseException) -> FailureClass:
    """Classify a provider failure."""
    if isinstance(error, ContentSafetyRejection) or getattr(error, "is_content_block", False):
        return FailureClass.CONTENT_BLOCKED
    if isinstance(error, TransientProviderError):
        return FailureClass.RETRYABLE
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError, TimeoutError, ConnectionError)):
        return FailureClass.RETRYABLE
    if isinstance(error, PermanentProviderError):
        return FailureClass.FALLBACK_ONLY

    message = str(error)
    lowered = message.lower()
    if any(fragment.lower() in lowered for fragment in RETRYABLE_MESSAGES):
        return FailureClass.RETRYABLE
    if _is_internal_error_json(message):
        return FailureClass.RETRYABLE
    return FailureClass.FALLBACK_ONLY


@dataclass
class AttemptRecord:
    """One provider call made by the adapter."""
    attempt: int
    provider: str
    state: CallState
    duration_seconds: float
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class ProviderCallResult(Generic[T]):
    """Parsed value plus which provider produced it. Never persisted."""
    value: T
    payload: ProviderPayload
    provider_used: str
    attempts: List[AttemptRecord] = field(default_factory=list)


class ProviderCallAdapter:
    """
    Runs generation requests with classification, bounded retry and fallback.

    Args:
        primary: Provider tried first
        fallback: Provider tried once after the primary gives up, if any
        retry_delay: Fixed delay in seconds before the single primary retry
        drop_unencodable_attachments: When translating for the fallback, drop
            reference images that cannot be re-encoded instead of failing
        sleep: Awaitable sleep used between attempts
    """

    def __init__(
        self,
        primary: BaseProviderClient,
        fallback: Optional[BaseProviderClient] = None,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        drop_unencodable_attachments: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.primary = primary
        self.fallback = fallback
        self.retry_delay = retry_delay
        self.drop_unencodable_attachments = drop_unencodable_attachments
        self._sleep = sleep

    async def invoke(
        self,
        request: GenerationRequest,
        kind: RequestKind,
        parse: Optional[Callable[[ProviderPayload], T]] = None,
    ) -> ProviderCallResult[T]:
        """
        Execute a request.

        Args:
            request: Fully rendered request
            kind: Text or image output
            parse: Optional converter applied to the payload inside each
                attempt; ValueError/KeyError/TypeError/AttributeError count
                as a malformed response

        Returns:
            ProviderCallResult with the parsed value and provider used

        Raises:
            ContentSafetyRejection: Primary refused the content
            Exception: The primary's last error when every route failed
        """
        attempts: List[AttemptRecord] = []
        primary_error: Optional[BaseException] = None
        state = CallState.PRIMARY

        while True:
            if state in (CallState.PRIMARY, CallState.RETRY):
                if state == CallState.RETRY:
                    logger.info(f"🔄 {request.label}: retrying {self.primary.name} in {self.retry_delay}s")
                    await self._sleep(self.retry_delay)
                try:
                    return await self._attempt(self.primary, request, kind, parse, state, attempts)
                except Exception as error:
                    primary_error = error
                    state = self._next_state(state, classify_error(error))

            elif state == CallState.FALLBACK:
                logger.info(f"🔄 {request.label}: routing to fallback provider {self.fallback.name}")
                try:
                    fallback_request = await self.translate_request(request)
                    return await self._attempt(self.fallback, fallback_request, kind, parse, state, attempts)
                except Exception as fallback_error:
                    logger.error(
                        f"❌ {request.label}: fallback {self.fallback.name} also failed: "
                        f"{truncate_error(fallback_error)}"
                    )
                    raise primary_error from fallback_error

            else:
                raise primary_error

    def _next_state(self, state: CallState, failure: FailureClass) -> CallState:
        if failure == FailureClass.CONTENT_BLOCKED:
            return CallState.FAILED
        if failure == FailureClass.RETRYABLE and state == CallState.PRIMARY:
            return CallState.RETRY
        if self.fallback is not None:
            return CallState.FALLBACK
        return CallState.FAILED

    async def _attempt(
        self,
        provider: BaseProviderClient,
        request: GenerationRequest,
        kind: RequestKind,
        parse: Optional[Callable[[ProviderPayload], T]],
        state: CallState,
        attempts: List[AttemptRecord],
    ) -> ProviderCallResult[T]:
        attempt_number = len(attempts) + 1
        start = time.monotonic()
        try:
            payload = await provider.generate(request, kind)
            if parse is None:
                value = payload
            else:
                try:
                    value = parse(payload)
                except (ValueError, KeyError, TypeError, AttributeError) as e:
                    raise MalformedResponseError(provider.name, f"Unparseable response: {e}") from e
        except Exception as error:
            duration = time.monotonic() - start
            attempts.append(AttemptRecord(attempt_number, provider.name, state, duration, truncate_error(error)))
            logger.warning(
                f"⚠️ {request.label}: attempt {attempt_number} ({state.value}) on {provider.name} "
                f"failed after {duration:.2f}s: {truncate_error(error)}"
            )
            raise

        duration = time.monotonic() - start
        attempts.append(AttemptRecord(attempt_number, provider.name, state, duration))
        logger.info(
            f"✓ {request.label}: attempt {attempt_number} ({state.value}) on {provider.name} "
            f"succeeded in {duration:.2f}s"
        )
        return ProviderCallResult(value=value, payload=payload, provider_used=provider.name, attempts=attempts)

    async def translate_request(self, request: GenerationRequest) -> GenerationRequest:
        """
        Translate a request for the fallback provider.

        The prompt maps directly; reference images are re-encoded as JPEG.

        Raises:
            ValueError: An attachment could not be re-encoded and dropping is disabled
        """
        if not request.attachments:
            return request

        encoded: List[str] = []
        for index, attachment in enumerate(request.attachments, start=1):
            try:
                encoded.append(await asyncio.to_thread(reencode_as_jpeg, attachment))
            except ValueError as e:
                if not self.drop_unencodable_attachments:
                    raise
                logger.warning(f"{request.label}: dropping reference image {index} for fallback: {e}")
        return dataclasses.replace(request, attachments=encoded)


def build_adapter(
    config: PanelforgeConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderCallAdapter:
    """Create an adapter from configuration. The fallback needs an API key to be used."""
    primary = create_provider(config.primary_provider, transport=transport)
    if not primary.is_available:
        logger.warning(f"Primary provider '{primary.name}' has no API key configured")

    fallback = None
    if config.adapter.fallback_enabled and config.fallback_provider is not None:
        candidate = create_provider(config.fallback_provider, transport=transport)
        if candidate.is_available:
            fallback = candidate
        else:
            logger.info(f"Fallback provider '{candidate.name}' has no API key; fallback disabled")

    return ProviderCallAdapter(
        primary,
        fallback,
        retry_delay=config.adapter.retry_delay,
        drop_unencodable_attachments=config.adapter.drop_unencodable_attachments,
    )
