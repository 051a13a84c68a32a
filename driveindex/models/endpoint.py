"""
Endpoint Model
Circuit breaker state for one mirror of the remote index
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class CircuitState(Enum):
    """Circuit breaker state"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class EndpointConfig:
    """Static mirror configuration"""
    id: str
    base_url: str
    priority: int


@dataclass
class Endpoint:
    """Mirror endpoint with its circuit breaker bookkeeping"""
    id: str
    base_url: str
    priority: int
    circuit_state: CircuitState = CircuitState.CLOSED
    consecutive_error_count: int = 0
    half_open_probe_count: int = 0
    # Monotonic timestamps (seconds).
    opened_at: Optional[float] = None
    last_error_at: Optional[float] = None
    last_success_at: Optional[float] = None

    @property
    def is_eligible(self) -> bool:
        return self.circuit_state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def snapshot(self) -> "Endpoint":
        return replace(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.base_url,
            "priority": self.priority,
            "circuit_state": self.circuit_state.value,
            "error_count": self.consecutive_error_count,
            "half_open_probes": self.half_open_probe_count,
            "opened_at": self.opened_at,
            "last_error_at": self.last_error_at,
            "last_success_at": self.last_success_at,
        }
