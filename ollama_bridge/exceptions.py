"""Error taxonomy for the inference adapter."""
from __future__ import annotations

from typing import Optional


class InferenceError(RuntimeError):
    """Base class for inference backend errors."""


class TransportError(InferenceError):
    """Raised when the backend is unreachable or answers with an error status."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConflictError(TransportError):
    """Raised when a custom model with the same name already exists."""


class ArtifactNotFoundError(TransportError):
    """Raised when the backend has no custom model under the requested name."""


class CompletionTimeoutError(InferenceError):
    """Raised when a completion exceeds its time budget."""

    user_message = "The request took too long. Please try a shorter question."

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Completion exceeded the {timeout:g}s time budget")
        self.timeout = timeout


class StreamDecodeError(InferenceError):
    """Raised for a single undecodable streaming line."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"Could not decode stream line: {reason}")
        self.line = line
        self.reason = reason
