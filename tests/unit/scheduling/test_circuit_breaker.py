"""Tests for the per-key circuit breaker."""

import pytest

from integration_sync_core.constants import CircuitStatus
from integration_sync_core.exceptions import CircuitOpenError
from integration_sync_core.scheduling.circuit_breaker import CircuitBreaker

KEY = "hubspot:tenant-acme"


@pytest.fixture
def transitions():
    return []


@pytest.fixture
def breaker(clock, transitions):
    return CircuitBreaker(
        failure_threshold=5,
        reset_after_seconds=60,
        clock=clock,
        on_state_change=lambda key, old, new: transitions.append((key, old, new)),
    )


def _fail(breaker, times, key=KEY):
    for _ in range(times):
        breaker.before_call(key)
        breaker.record_failure(key)


class TestClosedState:
    """Test failure counting while closed."""

    def test_unknown_key_is_closed(self, breaker):
        assert breaker.get_state(KEY) == CircuitStatus.CLOSED
        assert breaker.get_failure_count(KEY) == 0
        breaker.before_call(KEY)

    def test_stays_closed_below_threshold(self, breaker):
        _fail(breaker, 4)

        assert breaker.get_state(KEY) == CircuitStatus.CLOSED
        assert breaker.get_failure_count(KEY) == 4

    def test_success_resets_count(self, breaker):
        _fail(breaker, 4)
        breaker.record_success(KEY)

        assert breaker.get_failure_count(KEY) == 0
        _fail(breaker, 4)
        assert breaker.get_state(KEY) == CircuitStatus.CLOSED

    def test_keys_are_independent(self, breaker):
        _fail(breaker, 5)

        assert breaker.get_state("hubspot:other") == CircuitStatus.CLOSED
        breaker.before_call("hubspot:other")


class TestOpenState:
    """Test fail-fast while open and the half-open trial."""

    def test_opens_at_threshold(self, breaker, transitions):
        _fail(breaker, 5)

        assert breaker.get_state(KEY) == CircuitStatus.OPEN
        assert transitions == [(KEY, CircuitStatus.CLOSED, CircuitStatus.OPEN)]
        assert breaker.open_keys() == [KEY]

    def test_sixth_attempt_fails_fast(self, breaker, clock):
        _fail(breaker, 5)
        clock.advance(10)

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.before_call(KEY)

        assert exc_info.value.retry_after_seconds == pytest.approx(50)
        assert breaker.retry_after(KEY) == pytest.approx(50)
        # A rejection is not a failure
        assert breaker.get_failure_count(KEY) == 5

    def test_single_half_open_trial_after_cool_down(self, breaker, clock, transitions):
        _fail(breaker, 5)
        clock.advance(60)

        breaker.before_call(KEY)
        assert breaker.get_state(KEY) == CircuitStatus.HALF_OPEN

        with pytest.raises(CircuitOpenError):
            breaker.before_call(KEY)

    def test_trial_success_closes(self, breaker, clock, transitions):
        _fail(breaker, 5)
        clock.advance(61)
        breaker.before_call(KEY)
        breaker.record_success(KEY)

        assert breaker.get_state(KEY) == CircuitStatus.CLOSED
        assert breaker.get_failure_count(KEY) == 0
        assert transitions[-1] == (KEY, CircuitStatus.HALF_OPEN, CircuitStatus.CLOSED)

    def test_trial_failure_reopens_with_fresh_cool_down(self, breaker, clock):
        _fail(breaker, 5)
        clock.advance(61)
        breaker.before_call(KEY)
        breaker.record_failure(KEY)

        assert breaker.get_state(KEY) == CircuitStatus.OPEN
        assert breaker.retry_after(KEY) == pytest.approx(60)
        with pytest.raises(CircuitOpenError):
            breaker.before_call(KEY)


class TestHousekeeping:
    def test_reset_forgets_key(self, breaker):
        _fail(breaker, 5)
        breaker.reset(KEY)

        assert breaker.get_state(KEY) == CircuitStatus.CLOSED
        breaker.before_call(KEY)

    def test_snapshot_is_a_copy(self, breaker):
        _fail(breaker, 2)
        snapshot = breaker.snapshot()
        snapshot[KEY].consecutive_failures = 99

        assert breaker.get_failure_count(KEY) == 2

    def test_retry_after_zero_when_closed(self, breaker):
        assert breaker.retry_after(KEY) == 0.0
