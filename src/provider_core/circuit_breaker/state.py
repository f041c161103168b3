"""Circuit registry state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit state values.

    There is no half-open state: an open circuit fully closes once its reset
    window has elapsed.
    """

    CLOSED = "closed"
    OPEN = "open"


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view of one provider's circuit.

    Attributes:
        provider_id: External dependency the circuit guards.
        state: Current circuit state.
        failure_count: Consecutive failures since the last success or reset.
        last_failure_at: Timestamp of the most recent failure, if any.
    """

    provider_id: str
    state: CircuitState
    failure_count: int
    last_failure_at: datetime | None

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN
