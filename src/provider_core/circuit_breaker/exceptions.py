"""Circuit breaker exceptions.

Callers can distinguish between:
  - A call being rejected because the provider's circuit is open.
"""


class CircuitBreakerError(Exception):
    """Base exception for the circuit breaker package."""


class CircuitOpenError(CircuitBreakerError):
    """Raised when a call is rejected because the circuit is open.

    Attributes:
        provider_id: Provider whose circuit rejected the call.
        retry_after: Seconds until the reset window elapses.
    """

    def __init__(self, provider_id: str, retry_after: float) -> None:
        """Initialize a circuit-open exception payload.

        Args:
            provider_id: Provider whose circuit rejected the call.
            retry_after: Seconds until the circuit closes on its own.
        """
        self.provider_id = provider_id
        self.retry_after = retry_after
        super().__init__(f"circuit_open: {provider_id} retry_after={retry_after:g}s")
