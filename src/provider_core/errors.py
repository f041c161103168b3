"""Shared error types for provider_core."""

from __future__ import annotations

from enum import StrEnum


class TransientError(RuntimeError):
    """Generic retry-safe transient dependency failure."""


class ProviderRequestError(RuntimeError):
    """Base exception for outbound provider request failures."""

    def __init__(
        self,
        message: str,
        *,
        provider_id: str,
        http_status: int | None = None,
        response_body: str | None = None,
        attempts: int | None = None,
    ) -> None:
        """Initialize request-error metadata.

        Args:
            message: Human-readable error message.
            provider_id: External dependency the request was sent to.
            http_status: Optional HTTP status observed from the provider.
            response_body: Optional (truncated) response payload text.
            attempts: Number of HTTP attempts made before giving up.
        """
        super().__init__(message)
        self.provider_id = provider_id
        self.http_status = http_status
        self.response_body = response_body
        self.attempts = attempts


class ProviderTransientFailure(ProviderRequestError, TransientError):
    """Raised for retryable failures: network errors, 429 and 5xx responses."""


class ProviderTimeout(ProviderTransientFailure):
    """Raised when one attempt exceeds its timeout and is aborted."""


class ProviderAttemptError(ProviderRequestError):
    """Raised when an attempt fails with an error outside the HTTP transport.

    Counts as a circuit failure and is retried, but is not a ``TransientError``.
    """


class ProviderFetchInterrupted(ProviderRequestError):
    """Raised when shutdown is requested between attempts."""


class ProviderErrorCategory(StrEnum):
    """Normalized failure categories for parsed provider calls."""

    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    PROVIDER_DOWN = "provider_down"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    PARSE = "parse"
    UNKNOWN = "unknown"


class ProviderError(ProviderRequestError):
    """Normalized provider failure raised by ``ProviderHttpClient``."""

    def __init__(
        self,
        message: str,
        *,
        category: ProviderErrorCategory,
        provider_id: str,
        http_status: int | None = None,
        provider_error_code: str | None = None,
        retryable: bool = False,
        response_body: str | None = None,
        attempts: int | None = None,
    ) -> None:
        """Initialize normalized error metadata.

        Args:
            message: Human-readable error message.
            category: Normalized failure category.
            provider_id: Provider the request was sent to.
            http_status: Optional HTTP status observed from the provider.
            provider_error_code: Optional provider-specific error code.
            retryable: Whether a later retry by the caller may succeed.
            response_body: Optional (truncated) response payload text.
            attempts: Number of HTTP attempts made, when known.
        """
        super().__init__(
            message,
            provider_id=provider_id,
            http_status=http_status,
            response_body=response_body,
            attempts=attempts,
        )
        self.category = category
        self.provider_error_code = provider_error_code
        self.retryable = retryable
