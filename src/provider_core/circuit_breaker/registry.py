"""Per-provider circuit registry.

The registry is intentionally decoupled from the fetch logic. Custom backends
(for example Redis) can implement the interface to share provider health
across processes.

Important: the registry is two-state. An open circuit closes again, with its
failure count reset, the first time it is checked after the reset window has
elapsed; no trial request is granted in between.
"""

import asyncio
import sys
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from provider_core.circuit_breaker.listeners import CircuitListener
from provider_core.circuit_breaker.state import CircuitSnapshot, CircuitState


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class CircuitRegistryConfig:
    """Circuit registry configuration values.

    Attributes:
        open_threshold: Consecutive failures required before opening.
        reset_window: Seconds after the last failure before an open circuit
            closes on its own.
    """

    open_threshold: int = 5
    reset_window: float = 60.0

    def __post_init__(self) -> None:
        if self.open_threshold < 1:
            raise ValueError("open_threshold must be >= 1")
        if self.reset_window < 0:
            raise ValueError("reset_window must be >= 0")


class AbstractCircuitRegistry(ABC):
    """Abstract circuit registry interface."""

    config: CircuitRegistryConfig

    @abstractmethod
    async def get_or_create(self, provider_id: str) -> CircuitSnapshot:
        """Return the snapshot for ``provider_id``, creating a zeroed one."""

    @abstractmethod
    async def record_success(self, provider_id: str) -> CircuitSnapshot:
        """Record a successful call and return the updated snapshot."""

    @abstractmethod
    async def record_failure(self, provider_id: str) -> CircuitSnapshot:
        """Record a failed call and return the updated snapshot."""

    @abstractmethod
    async def is_open(self, provider_id: str) -> bool:
        """Return whether calls to ``provider_id`` must currently fail fast."""

    @abstractmethod
    async def reset(self, provider_id: str) -> CircuitSnapshot:
        """Reset ``provider_id`` to a healthy ``CLOSED`` state."""

    def retry_after(self, snapshot: CircuitSnapshot) -> float:
        """Return seconds left before an open circuit closes on its own."""
        if not snapshot.is_open or snapshot.last_failure_at is None:
            return 0.0
        elapsed = (_utcnow() - snapshot.last_failure_at).total_seconds()
        return max(self.config.reset_window - elapsed, 0.0)


class InMemoryCircuitRegistry(AbstractCircuitRegistry):
    """In-memory registry with per-provider cooperative + optional thread locks."""

    def __init__(
        self,
        *,
        config: CircuitRegistryConfig | None = None,
        listeners: Sequence[CircuitListener] | None = None,
    ) -> None:
        """Initialize in-memory snapshot and lock registries.

        Args:
            config: Threshold and reset window. Defaults to
                ``CircuitRegistryConfig()``.
            listeners: Optional hooks notified of state transitions.
        """
        self.config = CircuitRegistryConfig() if config is None else config
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._snapshots: dict[str, CircuitSnapshot] = {}
        self._async_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._thread_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
        self._gil_enabled = True if is_gil_enabled is None else bool(is_gil_enabled())

    @staticmethod
    def _closed_snapshot(provider_id: str) -> CircuitSnapshot:
        return CircuitSnapshot(
            provider_id=provider_id,
            state=CircuitState.CLOSED,
            failure_count=0,
            last_failure_at=None,
        )

    @asynccontextmanager
    async def _locked(self, provider_id: str) -> AsyncIterator[None]:
        async_lock = self._async_locks[provider_id]
        if self._gil_enabled:
            await async_lock.acquire()
            try:
                yield
            finally:
                async_lock.release()
            return

        thread_lock = self._thread_locks[provider_id]
        thread_lock.acquire()
        try:
            await async_lock.acquire()
        except Exception:
            thread_lock.release()
            raise
        try:
            yield
        finally:
            async_lock.release()
            thread_lock.release()

    async def _emit_state_change(
        self, provider_id: str, old: CircuitState, new: CircuitState
    ) -> None:
        for listener in self._listeners:
            try:
                await listener.on_state_change(provider_id, old, new)
            except Exception:
                continue

    async def get_or_create(self, provider_id: str) -> CircuitSnapshot:
        """Return the current snapshot, creating a closed one if missing."""
        async with self._locked(provider_id):
            snapshot = self._snapshots.get(provider_id)
            if snapshot is None:
                snapshot = self._closed_snapshot(provider_id)
                self._snapshots[provider_id] = snapshot
            return snapshot

    async def record_success(self, provider_id: str) -> CircuitSnapshot:
        """Reset the failure count and close the circuit."""
        async with self._locked(provider_id):
            previous = self._snapshots.get(provider_id)
            updated = CircuitSnapshot(
                provider_id=provider_id,
                state=CircuitState.CLOSED,
                failure_count=0,
                last_failure_at=None if previous is None else previous.last_failure_at,
            )
            self._snapshots[provider_id] = updated

        if previous is not None and previous.is_open:
            await self._emit_state_change(
                provider_id, CircuitState.OPEN, CircuitState.CLOSED
            )
        return updated

    async def record_failure(self, provider_id: str) -> CircuitSnapshot:
        """Count one failure and open the circuit once the threshold is hit."""
        async with self._locked(provider_id):
            previous = self._snapshots.get(provider_id)
            if previous is None:
                previous = self._closed_snapshot(provider_id)
            failure_count = previous.failure_count + 1
            state = previous.state
            if failure_count >= self.config.open_threshold:
                state = CircuitState.OPEN
            updated = CircuitSnapshot(
                provider_id=provider_id,
                state=state,
                failure_count=failure_count,
                last_failure_at=_utcnow(),
            )
            self._snapshots[provider_id] = updated

        if not previous.is_open and updated.is_open:
            await self._emit_state_change(
                provider_id, CircuitState.CLOSED, CircuitState.OPEN
            )
        return updated

    async def is_open(self, provider_id: str) -> bool:
        """Return true while open; close the circuit once the window elapses."""
        async with self._locked(provider_id):
            snapshot = self._snapshots.get(provider_id)
            if snapshot is None or not snapshot.is_open:
                return False
            last_failure_at = snapshot.last_failure_at
            if last_failure_at is not None:
                elapsed = (_utcnow() - last_failure_at).total_seconds()
                if elapsed <= self.config.reset_window:
                    return True
            self._snapshots[provider_id] = CircuitSnapshot(
                provider_id=provider_id,
                state=CircuitState.CLOSED,
                failure_count=0,
                last_failure_at=last_failure_at,
            )

        await self._emit_state_change(
            provider_id, CircuitState.OPEN, CircuitState.CLOSED
        )
        return False

    async def reset(self, provider_id: str) -> CircuitSnapshot:
        """Reset circuit state and counters to a healthy default snapshot."""
        async with self._locked(provider_id):
            previous = self._snapshots.get(provider_id)
            updated = self._closed_snapshot(provider_id)
            self._snapshots[provider_id] = updated

        if previous is not None and previous.is_open:
            await self._emit_state_change(
                provider_id, CircuitState.OPEN, CircuitState.CLOSED
            )
        return updated
