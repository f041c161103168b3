"""JSON provider client with normalized errors, built on ``ResilientClient``."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Literal

import httpx
import structlog

from provider_core.errors import (
    ProviderError,
    ProviderErrorCategory,
    ProviderRequestError,
    ProviderTimeout,
    ProviderTransientFailure,
)
from provider_core.logging import StructuredLogger, log_debug
from provider_core.masking import mask_sensitive, mask_url
from provider_core.resilient import RATE_LIMIT_STATUS, ResilientClient

HttpMethod = Literal["GET", "POST", "PUT", "DELETE"]

BODY_EXCERPT_LIMIT = 200
HTML_EXCERPT_LIMIT = 100
AUTH_STATUSES = frozenset({401, 403})
NOT_FOUND_STATUS = 404


class ProviderHttpClient:
    """Single entry point for one provider's JSON API calls."""

    def __init__(
        self,
        *,
        resilient: ResilientClient,
        provider: str,
        base_url: str,
        default_headers: Mapping[str, str] | None = None,
        timeout: float = 15.0,
        max_retries: int = 2,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create a client bound to one provider and base URL.

        Args:
            resilient: Shared resilient client (owns the circuit registry).
            provider: Provider identifier, also the circuit key.
            base_url: Prefix for relative request paths.
            default_headers: Headers sent with every request.
            timeout: Default per-attempt timeout in seconds.
            max_retries: Default retries after the first attempt.
            logger: Structured logger for request events.
        """
        self.provider = provider
        self._resilient = resilient
        self._base_url = base_url
        self._default_headers = dict(default_headers or {})
        self._timeout = timeout
        self._max_retries = max_retries
        self._logger: StructuredLogger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def set_base_url(self, url: str) -> None:
        """Replace the base URL, for example after region discovery."""
        self._base_url = url

    async def request(
        self,
        method: HttpMethod,
        path: str,
        *,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
        absolute_url: str | None = None,
        content_type: str = "application/json",
        timeout: float | None = None,
        no_retry: bool = False,
    ) -> Any:
        """Send a request and return the parsed JSON body.

        Raises:
            CircuitOpenError: When the provider's circuit is open.
            ProviderError: For every other failure, with a normalized category.
        """
        url = absolute_url or f"{self._base_url}{path}"
        request_headers = {**self._default_headers, **(headers or {})}
        if method != "GET" and body is not None:
            request_headers["Content-Type"] = content_type

        content: str | None = None
        if body is not None:
            content = json.dumps(body) if "json" in content_type else str(body)

        attempt_timeout = self._timeout if timeout is None else timeout
        log_debug(
            self._logger,
            "provider.request.prepared",
            provider_id=self.provider,
            method=method,
            url=mask_url(url),
            headers=mask_sensitive(request_headers),
        )
        try:
            response = await self._resilient.fetch(
                self.provider,
                url,
                method=method,
                headers=request_headers,
                content=content,
                timeout=attempt_timeout,
                max_retries=0 if no_retry else self._max_retries,
            )
        except ProviderTimeout as exc:
            raise ProviderError(
                f"Request timed out after {round(attempt_timeout * 1000)}ms",
                category=ProviderErrorCategory.TIMEOUT,
                provider_id=self.provider,
                retryable=True,
                attempts=exc.attempts,
            ) from exc
        except ProviderTransientFailure as exc:
            raise self._transient_error(exc) from exc
        except ProviderRequestError as exc:
            raise ProviderError(
                str(exc),
                category=ProviderErrorCategory.UNKNOWN,
                provider_id=self.provider,
                http_status=exc.http_status,
                retryable=False,
                attempts=exc.attempts,
            ) from exc

        return self._parse_response(response, path)

    async def get(self, path: str, **options: Any) -> Any:
        """Send a GET request."""
        return await self.request("GET", path, **options)

    async def post(self, path: str, body: Any = None, **options: Any) -> Any:
        """Send a POST request with an optional body."""
        return await self.request("POST", path, body=body, **options)

    def _transient_error(self, exc: ProviderTransientFailure) -> ProviderError:
        if exc.http_status == RATE_LIMIT_STATUS:
            return ProviderError(
                "Rate limit exceeded",
                category=ProviderErrorCategory.RATE_LIMIT,
                provider_id=self.provider,
                http_status=exc.http_status,
                retryable=True,
                attempts=exc.attempts,
            )
        if exc.http_status is not None:
            excerpt = (exc.response_body or "")[:BODY_EXCERPT_LIMIT]
            message = f"Server error: {excerpt}"
        else:
            message = str(exc)
        return ProviderError(
            message,
            category=ProviderErrorCategory.PROVIDER_DOWN,
            provider_id=self.provider,
            http_status=exc.http_status,
            retryable=True,
            response_body=exc.response_body,
            attempts=exc.attempts,
        )

    def _parse_response(self, response: httpx.Response, path: str) -> Any:
        status = response.status_code
        text = response.text
        excerpt = text[:BODY_EXCERPT_LIMIT]

        if status in AUTH_STATUSES:
            raise self._error(
                f"Auth failed ({status}): {excerpt}",
                ProviderErrorCategory.AUTH,
                status,
                text,
            )
        if status == NOT_FOUND_STATUS:
            raise self._error(
                f"Not found: {path}",
                ProviderErrorCategory.NOT_FOUND,
                status,
                text,
            )
        if 400 <= status < 500:
            raise self._error(
                f"Client error {status}: {excerpt}",
                ProviderErrorCategory.UNKNOWN,
                status,
                text,
            )

        if not text.strip():
            return {}
        try:
            return json.loads(text)
        except ValueError as exc:
            if text.strip().startswith("<"):
                message = (
                    "HTML response (likely auth redirect): "
                    f"{text[:HTML_EXCERPT_LIMIT]}"
                )
            else:
                message = f"Invalid JSON: {excerpt}"
            raise self._error(
                message, ProviderErrorCategory.PARSE, status, text
            ) from exc

    def _error(
        self,
        message: str,
        category: ProviderErrorCategory,
        status: int,
        body: str,
    ) -> ProviderError:
        return ProviderError(
            message,
            category=category,
            provider_id=self.provider,
            http_status=status,
            retryable=False,
            response_body=body[:BODY_EXCERPT_LIMIT],
        )


def create_provider_client(
    resilient: ResilientClient,
    provider: str,
    base_url: str,
    extra_headers: Mapping[str, str] | None = None,
) -> ProviderHttpClient:
    """Create a standard HTTP client for a provider."""
    return ProviderHttpClient(
        resilient=resilient,
        provider=provider,
        base_url=base_url,
        default_headers=extra_headers,
    )
