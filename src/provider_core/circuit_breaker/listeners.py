"""Observability hooks for the circuit registry."""

from __future__ import annotations

from typing import Protocol

import structlog

from provider_core.circuit_breaker.state import CircuitState
from provider_core.logging import StructuredLogger, log_info, log_warning


class CircuitListener(Protocol):
    """Listener protocol for circuit state transitions.

    Notes:
        ``closed -> open`` fires when a failure reaches the open threshold.
        ``open -> closed`` fires on success or when the reset window elapses.
    """

    async def on_state_change(
        self, provider_id: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""


class LoggingCircuitListener:
    """Log circuit transitions as structured events."""

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._logger: StructuredLogger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    async def on_state_change(
        self, provider_id: str, old: CircuitState, new: CircuitState
    ) -> None:
        if new == CircuitState.OPEN:
            log_warning(
                self._logger,
                "provider.circuit.opened",
                provider_id=provider_id,
                previous_state=str(old),
            )
            return
        log_info(
            self._logger,
            "provider.circuit.closed",
            provider_id=provider_id,
            previous_state=str(old),
        )
