"""Domain exception hierarchy for the streaming chat engine."""

from __future__ import annotations

import asyncio

import httpx


class StreamChatError(RuntimeError):
    """Base class for all domain-level chat errors.

    ``str(exc)`` is always the user-facing message, so an error can be rendered
    directly as the assistant's reply.
    """

    code: str = "UNKNOWN_ERROR"
    recoverable: bool = False

    def __init__(self, user_message: str, *, detail: str = "") -> None:
        super().__init__(user_message)
        self.user_message = user_message
        self.detail = detail


class ConfigError(StreamChatError):
    """Raised for missing keys, wrong provider endpoints, or unsupported models."""

    code = "CONFIG_ERROR"


class ConfigValidationError(ConfigError):
    """Raised when configuration cannot be validated safely."""

    code = "CONFIG_VALIDATION_ERROR"


class AuthError(StreamChatError):
    """Raised when the provider rejects the credentials."""

    code = "API_AUTH_ERROR"


class RateLimitError(StreamChatError):
    """Raised when the provider throttles the request."""

    code = "API_RATE_LIMIT"
    recoverable = True


class NotFoundError(StreamChatError):
    """Raised when the endpoint path or model does not exist."""

    code = "API_NOT_FOUND"


class TransportError(StreamChatError):
    """Raised when the provider host cannot be reached or the stream breaks."""

    code = "API_TRANSPORT_ERROR"
    recoverable = True


class UnsupportedAttachmentError(StreamChatError):
    """Raised before any network call when a provider cannot accept an attachment."""

    code = "UNSUPPORTED_ATTACHMENT"


class StreamCancelledError(StreamChatError):
    """Raised inside adapters when the cancellation token has fired."""

    code = "CANCELLED"


class StorageError(StreamChatError):
    """Raised when a persistence operation fails."""

    code = "DB_ERROR"


class ProviderError(StreamChatError):
    """Raised for provider failures that fit no narrower category."""

    code = "API_UNKNOWN_ERROR"


KNOWN_API_ERROR_MESSAGES: dict[str, tuple[type[StreamChatError], str]] = {
    "api key not valid": (
        AuthError,
        "Your API key is not valid. Please check it in Settings.",
    ),
    "quota exceeded": (
        RateLimitError,
        "You have exceeded your API quota. Please check your account.",
    ),
    "rate limit exceeded": (
        RateLimitError,
        "You are sending requests too quickly. Please wait a moment and try again.",
    ),
    "failed to fetch": (
        TransportError,
        "Could not connect to the API server. Please check your network "
        "connection and Base URL in Settings.",
    ),
}

STORAGE_USER_MESSAGE = (
    "A database operation failed. Your data might not be saved correctly."
)


def error_for_status(status_code: int, message: str = "") -> StreamChatError:
    """Map an HTTP status code (and optional provider message) to the taxonomy."""
    detail = f"API error ({status_code}): {message}" if message else ""
    lowered = message.lower()
    for key, (error_cls, user_message) in KNOWN_API_ERROR_MESSAGES.items():
        if key in lowered:
            return error_cls(user_message, detail=detail)
    if status_code in (401, 403):
        return AuthError(
            "Authentication failed. Please check your API key in Settings.",
            detail=detail,
        )
    if status_code == 404:
        return NotFoundError(
            "The API endpoint was not found. Please check the Base URL in Settings.",
            detail=detail,
        )
    if status_code == 429:
        return RateLimitError(
            "You are sending requests too quickly. Please wait a moment and try again.",
            detail=detail,
        )
    if status_code >= 500:
        return TransportError(
            f"The API server returned an error ({status_code}). Please try again.",
            detail=detail,
        )
    return ProviderError(
        f"An API error occurred: {message or status_code}. "
        "Please check your settings or try again.",
        detail=detail,
    )


def classify_error(exc: BaseException) -> StreamChatError:
    """Return a StreamChatError describing ``exc``.

    Domain errors pass through unchanged; transport exceptions and raw error
    strings are interpreted so callers never see an unclassified failure.
    """
    if isinstance(exc, StreamChatError):
        return exc
    if isinstance(exc, asyncio.CancelledError):
        return StreamCancelledError("Request was cancelled by the user.")

    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response.status_code, str(exc))
    if isinstance(exc, (httpx.TransportError, httpx.StreamError)):
        return TransportError(
            "Could not connect to the API server. Please check your network "
            "connection and Base URL in Settings.",
            detail=str(exc),
        )
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return TransportError(
            "Could not connect to the API server. Please check your network "
            "connection and Base URL in Settings.",
            detail=str(exc),
        )

    text = str(exc)
    lowered = text.lower()
    for key, (error_cls, user_message) in KNOWN_API_ERROR_MESSAGES.items():
        if key in lowered:
            return error_cls(user_message, detail=text)
    if "401" in lowered or "authentication" in lowered:
        return error_for_status(401)
    if "404" in lowered:
        return error_for_status(404)
    if "429" in lowered:
        return error_for_status(429)
    return ProviderError(
        f"An API error occurred: {text}. Please check your settings or try again.",
        detail=text,
    )
