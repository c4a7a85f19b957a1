"""Unit tests for the circuit breaker used by the Claude client.

Tests state transitions:
- CLOSED -> OPEN after failure_threshold consecutive failures
- OPEN -> HALF_OPEN after recovery_timeout
- HALF_OPEN -> CLOSED on success
- HALF_OPEN -> OPEN on failure
"""

from unittest.mock import patch

import pytest

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def make_breaker(
    threshold: int = 2, recovery: float = 30.0, name: str = "test"
) -> tuple[CircuitBreaker, ManualClock]:
    clock = ManualClock()
    config = CircuitBreakerConfig(failure_threshold=threshold, recovery_timeout=recovery)
    return CircuitBreaker(config, name=name, clock=clock), clock


# ---------------------------------------------------------------------------
# Opening
# ---------------------------------------------------------------------------


class TestCircuitBreakerOpens:
    async def test_starts_closed(self) -> None:
        cb, _ = make_breaker()

        assert cb.is_closed is True
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    async def test_stays_closed_below_threshold(self) -> None:
        cb, _ = make_breaker(threshold=3)

        await cb.record_failure()
        await cb.record_failure()

        assert cb.is_closed is True
        assert cb.failure_count == 2

    async def test_opens_at_threshold(self) -> None:
        cb, _ = make_breaker(threshold=3)

        for _ in range(3):
            await cb.record_failure()

        assert cb.is_open is True
        assert await cb.can_execute() is False

    async def test_success_resets_failure_count(self) -> None:
        cb, _ = make_breaker(threshold=3)

        await cb.record_failure()
        await cb.record_failure()
        await cb.record_success()
        await cb.record_failure()

        assert cb.is_closed is True
        assert cb.failure_count == 1


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


class TestCircuitBreakerRecovery:
    async def test_blocks_before_recovery_timeout(self) -> None:
        cb, clock = make_breaker(recovery=30.0)
        await cb.record_failure()
        await cb.record_failure()

        clock.now += 29.0

        assert await cb.can_execute() is False
        assert cb.is_open is True

    async def test_half_open_after_recovery_timeout(self) -> None:
        cb, clock = make_breaker(recovery=30.0)
        await cb.record_failure()
        await cb.record_failure()

        clock.now += 31.0

        assert await cb.can_execute() is True
        assert cb.is_half_open is True

    async def test_half_open_allows_single_trial_call(self) -> None:
        cb, clock = make_breaker(recovery=30.0)
        await cb.record_failure()
        await cb.record_failure()
        clock.now += 31.0

        assert await cb.can_execute() is True
        assert await cb.can_execute() is False

    async def test_trial_success_closes(self) -> None:
        cb, clock = make_breaker(recovery=30.0)
        await cb.record_failure()
        await cb.record_failure()
        clock.now += 31.0
        await cb.can_execute()

        await cb.record_success()

        assert cb.is_closed is True
        assert cb.failure_count == 0
        assert await cb.can_execute() is True

    async def test_trial_failure_reopens(self) -> None:
        cb, clock = make_breaker(recovery=30.0)
        await cb.record_failure()
        await cb.record_failure()
        clock.now += 31.0
        await cb.can_execute()

        await cb.record_failure()

        assert cb.is_open is True
        # Recovery timer restarts from the failed trial call
        clock.now += 10.0
        assert await cb.can_execute() is False


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestCircuitBreakerLogging:
    async def test_logs_warning_when_opening(self) -> None:
        cb, _ = make_breaker(name="claude")

        with patch("app.core.circuit_breaker.logger") as mock_logger:
            await cb.record_failure()
            await cb.record_failure()

        assert mock_logger.warning.called
        extra = mock_logger.warning.call_args.kwargs["extra"]
        assert extra["circuit_name"] == "claude"
        assert extra["new_state"] == "open"

    async def test_logs_info_on_recovery(self) -> None:
        cb, clock = make_breaker()
        await cb.record_failure()
        await cb.record_failure()
        clock.now += 60.0

        with patch("app.core.circuit_breaker.logger") as mock_logger:
            await cb.can_execute()
            await cb.record_success()

        states = [c.kwargs["extra"]["new_state"] for c in mock_logger.info.call_args_list]
        assert states == ["half_open", "closed"]


class TestCircuitStateEnum:
    def test_circuit_states(self) -> None:
        assert CircuitState.CLOSED.value == "closed"
        assert CircuitState.OPEN.value == "open"
        assert CircuitState.HALF_OPEN.value == "half_open"


@pytest.mark.parametrize("threshold", [1, 5])
async def test_threshold_is_respected(threshold: int) -> None:
    cb, _ = make_breaker(threshold=threshold)

    for _ in range(threshold - 1):
        await cb.record_failure()
    assert cb.is_closed is True

    await cb.record_failure()
    assert cb.is_open is True
