"""Resilient outbound HTTP fetch for third-party provider APIs."""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import RetryCallState, retry_if_exception_type

from provider_core.circuit_breaker import (
    AbstractCircuitRegistry,
    CircuitListener,
    CircuitOpenError,
    InMemoryCircuitRegistry,
)
from provider_core.errors import (
    ProviderAttemptError,
    ProviderFetchInterrupted,
    ProviderRequestError,
    ProviderTimeout,
    ProviderTransientFailure,
)
from provider_core.logging import (
    StructuredLogger,
    log_error,
    log_info,
    log_warning,
)
from provider_core.masking import mask_url
from provider_core.retry import (
    RetryBackoffPolicy,
    build_exponential_jitter_retrying,
    build_interruptible_sleep,
)

if TYPE_CHECKING:
    from provider_core.settings import ResilienceSettings

RATE_LIMIT_STATUS = 429
RESPONSE_BODY_LIMIT = 1024
STOP_MESSAGE = "Shutdown requested before provider request."


def is_retryable_status(status_code: int) -> bool:
    """Return true for statuses retried internally: 429 and any 5xx."""
    return status_code == RATE_LIMIT_STATUS or status_code >= 500


@dataclass(frozen=True)
class ResilienceConfig:
    """Per-call defaults for timeout, retries and backoff, in seconds.

    Attributes:
        timeout: Time limit for one HTTP attempt.
        max_retries: Retries after the first attempt.
        backoff_base: Raw delay before the first retry.
        backoff_max: Cap on the raw delay before jitter.
    """

    timeout: float = 15.0
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_base < 0:
            raise ValueError("backoff_base must be >= 0")
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must be >= backoff_base")


class ResilientClient:
    """HTTP client wrapper with per-attempt timeout, retries and a circuit registry."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        config: ResilienceConfig | None = None,
        registry: AbstractCircuitRegistry | None = None,
        rng: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create a resilient client around a shared async HTTP client.

        Args:
            client: Shared async HTTP client used for every attempt.
            config: Default timeout, retry and backoff values.
            registry: Circuit registry; defaults to a fresh in-memory one.
            rng: Random source in ``[0, 1)`` used for backoff jitter.
            sleep: Async sleep used between attempts.
            logger: Structured logger for request events.
        """
        self._client = client
        self._config = ResilienceConfig() if config is None else config
        self._registry = InMemoryCircuitRegistry() if registry is None else registry
        self._rng = random.random if rng is None else rng
        self._sleep = sleep
        self._logger: StructuredLogger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    @classmethod
    def from_settings(
        cls,
        settings: ResilienceSettings,
        *,
        client: httpx.AsyncClient,
        listeners: Sequence[CircuitListener] | None = None,
        logger: StructuredLogger | None = None,
        configure_logging: bool = False,
    ) -> ResilientClient:
        """Build a client whose defaults and registry come from settings.

        With ``configure_logging`` the process-wide structlog output is
        installed at ``settings.log_level`` first.
        """
        if configure_logging:
            settings.configure_logging()
        registry = InMemoryCircuitRegistry(
            config=settings.circuit_config(),
            listeners=listeners,
        )
        return cls(
            client=client,
            config=settings.resilience_config(),
            registry=registry,
            logger=logger,
        )

    @property
    def config(self) -> ResilienceConfig:
        return self._config

    @property
    def registry(self) -> AbstractCircuitRegistry:
        return self._registry

    async def fetch(
        self,
        provider_id: str,
        url: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | None = None,
        content: str | bytes | None = None,
        data: Mapping[str, Any] | None = None,
        json: Any = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> httpx.Response:
        """Send one logical request with retries and circuit-breaker gating.

        Args:
            provider_id: Key identifying the external dependency.
            url: Absolute request URL.
            method: HTTP method.
            headers: Request headers, passed through unchanged.
            params: Query parameters, passed through unchanged.
            content: Raw request body.
            data: Form body.
            json: JSON body.
            timeout: Per-attempt time limit override in seconds.
            max_retries: Retry count override.
            backoff_base: Raw first-retry delay override in seconds.
            backoff_max: Raw delay cap override in seconds.
            stop_event: Optional shutdown signal checked before each attempt
                and honored during backoff sleeps.

        Returns:
            The provider response. Any status other than 429 and 5xx is
            returned as-is, 4xx included.

        Raises:
            CircuitOpenError: When the provider's circuit is open. No request
                is sent.
            ProviderTransientFailure: When every attempt failed with a network
                error, timeout, 429 or 5xx. The last error is raised.
            ProviderAttemptError: When every attempt failed with any other
                error, such as an invalid URL.
            ProviderFetchInterrupted: When ``stop_event`` is set between
                attempts.
        """
        config = self._config
        attempt_timeout = config.timeout if timeout is None else timeout
        if attempt_timeout <= 0:
            raise ValueError("timeout must be > 0")
        retries = config.max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ValueError("max_retries must be >= 0")
        policy = RetryBackoffPolicy(
            attempts=retries + 1,
            base_seconds=config.backoff_base if backoff_base is None else backoff_base,
            max_seconds=config.backoff_max if backoff_max is None else backoff_max,
            rng=self._rng,
        )
        masked_url = mask_url(url)

        if await self._registry.is_open(provider_id):
            snapshot = await self._registry.get_or_create(provider_id)
            retry_after = self._registry.retry_after(snapshot)
            log_warning(
                self._logger,
                "provider.circuit.rejected",
                provider_id=provider_id,
                method=method,
                url=masked_url,
                failure_count=snapshot.failure_count,
                retry_after=retry_after,
            )
            raise CircuitOpenError(provider_id, retry_after=retry_after)

        request_options: dict[str, Any] = {
            "headers": headers,
            "params": params,
            "content": content,
            "data": data,
            "json": json,
        }
        retrying = build_exponential_jitter_retrying(
            retry=retry_if_exception_type(
                (ProviderTransientFailure, ProviderAttemptError)
            ),
            policy=policy,
            sleep=self._resolve_sleep(stop_event),
            before_sleep=self._build_before_sleep(provider_id, method, masked_url),
            reraise=True,
        )

        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    self._raise_if_stopped(stop_event, provider_id, attempts)
                    attempts += 1
                    return await self._attempt_once(
                        provider_id,
                        method,
                        url,
                        masked_url=masked_url,
                        timeout=attempt_timeout,
                        attempt_number=attempts,
                        request_options=request_options,
                    )
        except ProviderRequestError as exc:
            exc.attempts = attempts
            log_error(
                self._logger,
                "provider.request.failed",
                provider_id=provider_id,
                method=method,
                url=masked_url,
                http_status=exc.http_status,
                attempts=attempts,
                error=str(exc),
            )
            raise

        raise ProviderRequestError(
            f"{provider_id}: exceeded retries after {attempts} attempts",
            provider_id=provider_id,
            attempts=attempts,
        )

    async def _attempt_once(
        self,
        provider_id: str,
        method: str,
        url: str,
        *,
        masked_url: str,
        timeout: float,
        attempt_number: int,
        request_options: dict[str, Any],
    ) -> httpx.Response:
        started = time.perf_counter()
        try:
            async with asyncio.timeout(timeout):
                response = await self._client.request(
                    method,
                    url,
                    timeout=httpx.Timeout(timeout),
                    **request_options,
                )
        except (TimeoutError, httpx.TimeoutException) as exc:
            await self._registry.record_failure(provider_id)
            raise ProviderTimeout(
                f"{provider_id}: request timed out after {timeout:g}s",
                provider_id=provider_id,
            ) from exc
        except httpx.HTTPError as exc:
            await self._registry.record_failure(provider_id)
            raise ProviderTransientFailure(
                f"{provider_id}: {exc.__class__.__name__}: {exc}",
                provider_id=provider_id,
            ) from exc
        except Exception as exc:
            await self._registry.record_failure(provider_id)
            raise ProviderAttemptError(
                f"{provider_id}: {exc.__class__.__name__}: {exc}",
                provider_id=provider_id,
            ) from exc

        log_info(
            self._logger,
            "provider.request.completed",
            provider_id=provider_id,
            method=method,
            url=masked_url,
            http_status=response.status_code,
            latency_ms=round((time.perf_counter() - started) * 1000),
            attempt=attempt_number,
        )
        if is_retryable_status(response.status_code):
            await self._registry.record_failure(provider_id)
            raise ProviderTransientFailure(
                f"{provider_id}: transient HTTP {response.status_code}",
                provider_id=provider_id,
                http_status=response.status_code,
                response_body=response.text[:RESPONSE_BODY_LIMIT],
            )

        await self._registry.record_success(provider_id)
        return response

    def _resolve_sleep(
        self, stop_event: asyncio.Event | None
    ) -> Callable[[float], Awaitable[None]] | None:
        if stop_event is not None:
            return build_interruptible_sleep(stop_event, self._sleep)
        return self._sleep

    def _build_before_sleep(
        self, provider_id: str, method: str, masked_url: str
    ) -> Callable[[RetryCallState], None]:
        def _log_retry(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome is not None else None
            delay = state.next_action.sleep if state.next_action is not None else None
            log_warning(
                self._logger,
                "provider.request.retrying",
                provider_id=provider_id,
                method=method,
                url=masked_url,
                attempt=state.attempt_number,
                delay_seconds=delay,
                error=str(error),
            )

        return _log_retry

    @staticmethod
    def _raise_if_stopped(
        stop_event: asyncio.Event | None, provider_id: str, attempts: int
    ) -> None:
        if stop_event is not None and stop_event.is_set():
            raise ProviderFetchInterrupted(
                STOP_MESSAGE, provider_id=provider_id, attempts=attempts
            )
