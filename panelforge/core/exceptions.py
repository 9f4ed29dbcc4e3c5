"""
Panelforge Custom Exceptions

Custom exception classes for error handling throughout the Panelforge system.
"""

from typing import Optional


class PanelforgeError(Exception):
    """Base exception for all Panelforge errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================

class ConfigurationError(PanelforgeError):
    """Raised when there's an issue with configuration."""
    pass


class InvalidConfigError(ConfigurationError):
    """Raised when a configuration value is invalid."""
    pass


# =============================================================================
# PIPELINE ERRORS
# =============================================================================

class PipelineError(PanelforgeError):
    """Base exception for pipeline errors."""
    pass


class ValidationError(PipelineError):
    """Raised when run input or a requested operation is invalid. Never retried."""
    pass


class PipelineBusyError(PipelineError):
    """Raised when an operation is requested while the job is already in progress."""

    def __init__(self, operation: str):
        message = f"Cannot start '{operation}': a generation is already in progress"
        super().__init__(message, {"operation": operation})


class StageFailedError(PipelineError):
    """Raised when a pipeline stage fails."""

    def __init__(self, stage_name: str, reason: str, item_index: Optional[int] = None):
        if item_index is None:
            message = f"Pipeline stage '{stage_name}' failed: {reason}"
        else:
            message = f"Pipeline stage '{stage_name}' failed at item {item_index}: {reason}"
        super().__init__(message, {"stage": stage_name, "item_index": item_index, "reason": reason})
        self.stage_name = stage_name
        self.item_index = item_index


class GenerationCancelled(PipelineError):
    """Raised between items when a cooperative cancel was requested."""
    pass


# =============================================================================
# PROVIDER ERRORS
# =============================================================================

class ProviderError(PanelforgeError):
    """Raised when there's an issue with a generation provider."""

    def __init__(self, provider: str, reason: str, status_code: int = None):
        message = f"Provider '{provider}' error: {reason}"
        details = {"provider": provider, "reason": reason}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.provider = provider
        self.reason = reason
        self.status_code = status_code


class ContentSafetyRejection(ProviderError):
    """Raised when content is blocked by a provider's safety filters. Terminal."""

    is_content_block = True

    def __init__(self, provider: str, reason: str):
        super().__init__(provider, reason)
        self.message = f"Content blocked by {provider} safety filters: {reason}"


class TransientProviderError(ProviderError):
    """Raised for network failures, timeouts and internal server errors. Retried once."""
    pass


class MalformedResponseError(TransientProviderError):
    """Raised when a provider response is empty or cannot be parsed."""
    pass


class PermanentProviderError(ProviderError):
    """Raised for non-transient provider failures. Not retried, fallback-eligible."""
    pass


# =============================================================================
# STORAGE ERRORS
# =============================================================================

class StorageError(PanelforgeError):
    """Base exception for persistence errors."""
    pass


class PersistenceCapacityError(StorageError):
    """Raised when the record store has no room for a write."""

    def __init__(self, key: str, required: int, capacity: int):
        message = f"Record store capacity exceeded writing '{key}': {required} > {capacity} bytes"
        super().__init__(message, {"key": key, "required": required, "capacity": capacity})


class PersistenceCorruptionError(StorageError):
    """Raised when a persisted record cannot be read back."""
    pass


class BlobStoreError(StorageError):
    """Raised when the blob store cannot be opened, read or written."""
    pass
