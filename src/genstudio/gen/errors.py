from __future__ import annotations

from typing import Optional

from .types import ErrorKind

HTTP_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.SERVICE_ERROR: 500,
    ErrorKind.SERVICE_DEGRADED: 500,
    ErrorKind.EMPTY_RESULT: 500,
    ErrorKind.NETWORK: 502,
    ErrorKind.UPSTREAM: 502,
}

USER_MESSAGES = {
    ErrorKind.BAD_REQUEST: "Invalid request. Please check your image format and prompt.",
    ErrorKind.RATE_LIMITED: "Rate limit exceeded. Please wait a moment before trying again.",
    ErrorKind.SERVICE_ERROR: "Image service temporarily unavailable. Please try again in a few moments.",
    ErrorKind.SERVICE_DEGRADED: (
        "Image processing failed after multiple attempts. This could be due to image "
        "complexity, format issues, or temporary service problems. Please try with a "
        "different image or try again later."
    ),
    ErrorKind.EMPTY_RESULT: "No image generated",
    ErrorKind.NETWORK: "Could not reach the image provider",
}


def classify_status(status_code: Optional[int]) -> ErrorKind:
    if status_code is None:
        return ErrorKind.NETWORK
    if status_code == 400:
        return ErrorKind.BAD_REQUEST
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code == 500:
        return ErrorKind.SERVICE_ERROR
    return ErrorKind.UPSTREAM


class StudioError(Exception):
    kind = ErrorKind.UPSTREAM

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND.get(self.kind, 500)


class ImageValidationError(StudioError):
    """Raised when an image fails MIME type, size or encoding checks."""

    kind = ErrorKind.VALIDATION


class ProviderError(StudioError):
    """Raised by providers. ``status_code`` is None for transport failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return classify_status(self.status_code)


class GenerationError(StudioError):
    """Terminal, classified failure of one generation call."""

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        self._kind = kind
        self.status_code = status_code
        self.detail = detail
        super().__init__(message or USER_MESSAGES.get(kind) or detail or kind.value)

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return self._kind

    @property
    def http_status(self) -> int:
        if self._kind is ErrorKind.UPSTREAM and self.status_code and 400 <= self.status_code < 600:
            return self.status_code
        return super().http_status

    @property
    def message(self) -> str:
        return str(self)

    @classmethod
    def from_provider(cls, err: ProviderError) -> "GenerationError":
        kind = err.kind
        message = USER_MESSAGES.get(kind) or f"Image provider error: {err}"
        return cls(kind, message, status_code=err.status_code, detail=str(err))


class OrchestratorBusyError(StudioError):
    """Raised when a submission arrives while another one is in flight."""
