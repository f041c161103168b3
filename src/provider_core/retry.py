from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    stop_after_attempt,
    stop_never,
)
from tenacity.retry import retry_base


@dataclass(frozen=True)
class RetryBackoffPolicy:
    """Attempt count plus capped exponential backoff with half jitter."""

    attempts: int | None
    base_seconds: float = 1.0
    max_seconds: float = 30.0
    rng: Callable[[], float] = field(default=random.random, compare=False)

    def __post_init__(self) -> None:
        if self.attempts is not None and self.attempts < 1:
            raise ValueError("attempts must be >= 1 when provided")
        if self.base_seconds < 0:
            raise ValueError("base_seconds must be >= 0")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")

    def raw_delay(self, attempt_index: int) -> float:
        """Return ``min(base * 2**attempt_index, max)`` before jitter."""
        if attempt_index < 0:
            raise ValueError("attempt_index must be >= 0")
        if self.base_seconds == 0:
            return 0.0
        # Clamp the exponent before it can overflow a float.
        if attempt_index >= 1024:
            return self.max_seconds
        return min(self.base_seconds * (2.0**attempt_index), self.max_seconds)

    def delay_for(self, attempt_index: int) -> float:
        """Return a delay uniformly drawn from ``[0.5 * raw, raw]``."""
        raw = self.raw_delay(attempt_index)
        return raw * (0.5 + self.rng() * 0.5)

    def wait(self, retry_state: RetryCallState) -> float:
        """Tenacity wait hook; ``attempt_number`` is 1-based."""
        return self.delay_for(retry_state.attempt_number - 1)


def build_interruptible_sleep(
    stop_event: asyncio.Event,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> Callable[[float], Awaitable[None]]:
    """Build an async sleep that exits early when shutdown is requested.

    When ``sleep`` is given it performs the wait, raced against ``stop_event``.
    """

    async def _interruptible_sleep(delay: float) -> None:
        if stop_event.is_set():
            return

        bounded_delay = max(delay, 0.0)
        if sleep is None:
            with suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=bounded_delay)
            return

        sleeper = asyncio.ensure_future(sleep(bounded_delay))
        stopper = asyncio.ensure_future(stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            sleeper.cancel()
            stopper.cancel()
        if sleeper in done:
            sleeper.result()

    return _interruptible_sleep


def build_exponential_jitter_retrying(
    *,
    retry: retry_base,
    policy: RetryBackoffPolicy,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` that waits ``policy.delay_for`` between tries."""
    stop = (
        stop_never if policy.attempts is None else stop_after_attempt(policy.attempts)
    )
    options: dict[str, object] = {}
    if sleep is not None:
        options["sleep"] = sleep
    if before_sleep is not None:
        options["before_sleep"] = before_sleep
    return AsyncRetrying(
        retry=retry,
        wait=policy.wait,
        stop=stop,
        reraise=reraise,
        **options,  # type: ignore[arg-type]
    )
