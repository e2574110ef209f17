"""
Per-key circuit breaker shared by token refresh attempts.

CLOSED counts consecutive failures and opens at the threshold. OPEN rejects
every call until the cool-down has elapsed. The first call after the
cool-down moves the circuit to HALF_OPEN and is the only call admitted
until it reports back: success closes the circuit, failure re-opens it with
a fresh cool-down.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..constants import CircuitStatus
from ..db.db_base import utc_now
from ..exceptions import CircuitOpenError
from ..utils.logger import get_logger


@dataclass
class CircuitState:
    status: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[datetime] = None
    trial_in_flight: bool = False


class CircuitBreaker:
    """Thread-safe registry of circuit states keyed by credential key."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_after_seconds: float = 60.0,
        clock: Optional[Callable[[], datetime]] = None,
        on_state_change: Optional[Callable[[str, CircuitStatus, CircuitStatus], None]] = None,
    ):
        """
        Args:
            failure_threshold: Consecutive failures that open the circuit
            reset_after_seconds: Cool-down before a half-open trial is allowed
            clock: Callable returning the current aware UTC datetime
            on_state_change: Called with (key, old_status, new_status)
        """
        self.failure_threshold = failure_threshold
        self.reset_after_seconds = reset_after_seconds
        self.clock = clock or utc_now
        self.on_state_change = on_state_change
        self._states: Dict[str, CircuitState] = {}
        self._lock = threading.RLock()
        self.logger = get_logger()

    def _state(self, key: str) -> CircuitState:
        state = self._states.get(key)
        if state is None:
            state = CircuitState()
            self._states[key] = state
        return state

    def _elapsed(self, state: CircuitState) -> float:
        if state.opened_at is None:
            return float("inf")
        return (self.clock() - state.opened_at).total_seconds()

    def _transition(self, key: str, state: CircuitState, new_status: CircuitStatus) -> None:
        old_status = state.status
        state.status = new_status
        if old_status == new_status:
            return
        self.logger.info(
            "Circuit state changed",
            extra={
                "circuit_key": key,
                "from_status": old_status.value,
                "to_status": new_status.value,
                "consecutive_failures": state.consecutive_failures,
            },
        )
        if self.on_state_change:
            self.on_state_change(key, old_status, new_status)

    def before_call(self, key: str) -> None:
        """
        Gate a call for ``key``.

        Raises:
            CircuitOpenError: The call must not reach the network
        """
        with self._lock:
            state = self._state(key)

            if state.status == CircuitStatus.CLOSED:
                return

            if state.status == CircuitStatus.OPEN:
                remaining = self.reset_after_seconds - self._elapsed(state)
                if remaining > 0:
                    rejection = remaining
                else:
                    self._transition(key, state, CircuitStatus.HALF_OPEN)
                    state.trial_in_flight = True
                    return
            else:
                if not state.trial_in_flight:
                    state.trial_in_flight = True
                    return
                rejection = self.reset_after_seconds

        raise CircuitOpenError(
            f"Circuit open for {key}, failing fast", key=key, retry_after_seconds=rejection
        )

    def record_success(self, key: str) -> None:
        with self._lock:
            state = self._state(key)
            state.consecutive_failures = 0
            state.opened_at = None
            state.trial_in_flight = False
            self._transition(key, state, CircuitStatus.CLOSED)

    def record_failure(self, key: str) -> None:
        with self._lock:
            state = self._state(key)
            state.consecutive_failures += 1
            state.trial_in_flight = False

            if state.status == CircuitStatus.HALF_OPEN or (
                state.status == CircuitStatus.CLOSED
                and state.consecutive_failures >= self.failure_threshold
            ):
                state.opened_at = self.clock()
                self._transition(key, state, CircuitStatus.OPEN)

    def get_state(self, key: str) -> CircuitStatus:
        """Current status, without side effects."""
        with self._lock:
            state = self._states.get(key)
            return state.status if state else CircuitStatus.CLOSED

    def get_failure_count(self, key: str) -> int:
        with self._lock:
            state = self._states.get(key)
            return state.consecutive_failures if state else 0

    def retry_after(self, key: str) -> float:
        """Seconds until an OPEN circuit admits a trial. Zero otherwise."""
        with self._lock:
            state = self._states.get(key)
            if state is None or state.status != CircuitStatus.OPEN:
                return 0.0
            return max(0.0, self.reset_after_seconds - self._elapsed(state))

    def reset(self, key: str) -> None:
        """Forget a key, e.g. after a credential is re-authorized."""
        with self._lock:
            self._states.pop(key, None)

    def open_keys(self) -> List[str]:
        with self._lock:
            return [k for k, s in self._states.items() if s.status != CircuitStatus.CLOSED]

    def snapshot(self) -> Dict[str, CircuitState]:
        with self._lock:
            return {
                key: CircuitState(
                    status=s.status,
                    consecutive_failures=s.consecutive_failures,
                    opened_at=s.opened_at,
                    trial_in_flight=s.trial_in_flight,
                )
                for key, s in self._states.items()
            }
