from .circuit_breaker import CircuitBreaker, CircuitState
from .refresh_events import RefreshEventBus, TokenEvent
from .refresh_queue import RefreshJob, RefreshQueue

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "RefreshEventBus",
    "TokenEvent",
    "RefreshJob",
    "RefreshQueue",
]
