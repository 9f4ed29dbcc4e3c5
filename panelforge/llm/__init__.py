"""
Panelforge LLM Module

Provider clients and the call adapter that wraps them with retry and fallback.
Supports: Google Gemini (primary), xAI Grok (fallback)
"""

from .api_clients import (
    BaseProviderClient,
    GeminiClient,
    GenerationRequest,
    GrokClient,
    ProviderPayload,
    create_provider,
)
from .provider_adapter import (
    AttemptRecord,
    CallState,
    FailureClass,
    ProviderCallAdapter,
    ProviderCallResult,
    build_adapter,
    classify_error,
)

__all__ = [
    'BaseProviderClient',
    'GeminiClient',
    'GenerationRequest',
    'GrokClient',
    'ProviderPayload',
    'create_provider',
    'AttemptRecord',
    'CallState',
    'FailureClass',
    'ProviderCallAdapter',
    'ProviderCallResult',
    'build_adapter',
    'classify_error',
]
