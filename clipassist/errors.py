"""Typed errors shared by the clipboard, generation and vault layers.

Every error carries a machine-checkable ``error_type`` tag and a
``retryable`` flag. Messages never include API keys or prompt bodies.
"""

from __future__ import annotations

from typing import Any, Optional


class ClipAssistError(Exception):
    error_type = "error"
    retryable = False

    def __init__(self, message: str, *, error_type: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if error_type:
            self.error_type = error_type

    def to_event(self, **extra: Any) -> dict[str, Any]:
        event = {"type": self.error_type, "error": self.message}
        event.update(extra)
        return event


class GenerationError(ClipAssistError):
    error_type = "generation-failed"

    def __init__(
        self,
        message: str,
        *,
        error_type: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message, error_type=error_type)
        self.status = status
        self.attempts = 1


class TransientGenerationError(GenerationError):
    """Timeouts, 5xx, rate limits and network failures."""

    retryable = True


class RequestTimeoutError(TransientGenerationError):
    error_type = "timeout"


class ServerError(TransientGenerationError):
    error_type = "server-error"


class RateLimitedError(TransientGenerationError):
    error_type = "rate-limited"


class NetworkError(TransientGenerationError):
    error_type = "network-error"


class PermanentGenerationError(GenerationError):
    """Conditions a retry cannot fix."""


class ModelNotFoundError(PermanentGenerationError):
    error_type = "model-not-found"


class InvalidApiKeyError(PermanentGenerationError):
    error_type = "invalid-api-key"


class PermissionDeniedError(PermanentGenerationError):
    error_type = "permission-denied"


class InvalidRequestError(PermanentGenerationError):
    error_type = "invalid-request"


class InvalidPromptError(PermanentGenerationError):
    error_type = "invalid-prompt"


class ServiceNotConnectedError(PermanentGenerationError):
    error_type = "service-not-connected"


class StreamingError(PermanentGenerationError):
    error_type = "streaming-failed"


class GenerationFailedError(GenerationError):
    """Raised once the retry budget is exhausted."""

    error_type = "generation-failed"

    def __init__(self, message: str, *, attempts: int, last_error: GenerationError) -> None:
        super().__init__(message, status=last_error.status)
        self.attempts = attempts
        self.last_error = last_error


class GenerationInProgressError(ClipAssistError):
    error_type = "generation-in-progress"


class BackendValidationError(ClipAssistError):
    error_type = "backend-validation-failed"


class UnsupportedContentError(ClipAssistError):
    error_type = "unsupported-content"


class VaultError(ClipAssistError):
    error_type = "storage-error"


class DecryptionError(VaultError):
    error_type = "decrypt-failed"


class ClipboardError(ClipAssistError):
    error_type = "clipboard-read-failed"
