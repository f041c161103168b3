"""Per-provider async circuit registry.

Key behavior notes:
  - A provider's circuit opens once its consecutive failure count reaches the
    open threshold and stays open while the last failure is inside the reset
    window. Further failures while open keep it open and restart the window.
  - There is no half-open probe: the first check after the window elapses
    closes the circuit and zeroes the failure count, whether or not a request
    follows.
  - One success closes the circuit and zeroes the failure count.
"""

from provider_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from provider_core.circuit_breaker.listeners import (
    CircuitListener,
    LoggingCircuitListener,
)
from provider_core.circuit_breaker.registry import (
    AbstractCircuitRegistry,
    CircuitRegistryConfig,
    InMemoryCircuitRegistry,
)
from provider_core.circuit_breaker.state import CircuitSnapshot, CircuitState

__all__ = [
    "AbstractCircuitRegistry",
    "CircuitBreakerError",
    "CircuitListener",
    "CircuitOpenError",
    "CircuitRegistryConfig",
    "CircuitSnapshot",
    "CircuitState",
    "InMemoryCircuitRegistry",
    "LoggingCircuitListener",
]
