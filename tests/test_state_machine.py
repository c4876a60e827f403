from __future__ import annotations

import threading

import allure
import pytest

from agent_circuit.breaker import (
    BreakerConfig,
    BreakerConfigError,
    BreakerSnapshot,
    CircuitBreaker,
    CircuitState,
    Decision,
    Outcome,
    TransitionRecorder,
)

pytestmark = [
    allure.epic("Circuit Breaker"),
    allure.feature("State Machine"),
]


def _breaker(
    recorder: TransitionRecorder | None = None,
    *,
    threshold: int = 3,
    window: float = 60,
    cooldown: float = 10,
) -> CircuitBreaker:
    return CircuitBreaker(
        "agent",
        BreakerConfig(
            failure_threshold=threshold,
            window_seconds=window,
            cooldown_seconds=cooldown,
        ),
        notifier=recorder,
    )


def _fail(breaker: CircuitBreaker, *times: float) -> None:
    for now in times:
        assert breaker.evaluate(now) is Decision.ALLOW
        breaker.report_outcome(now, Outcome.FAILURE, was_trial=False)


def _trip_at(breaker: CircuitBreaker, now: float) -> None:
    _fail(breaker, now - 2, now - 1, now)
    assert breaker.state is CircuitState.OPEN


def test_new_breaker_is_closed_and_allows() -> None:
    breaker = _breaker()
    assert breaker.state is CircuitState.CLOSED
    assert breaker.trip_time is None
    assert breaker.trial_in_flight is False
    assert breaker.evaluate(0) is Decision.ALLOW


def test_threshold_failures_inside_window_trip() -> None:
    recorder = TransitionRecorder()
    breaker = _breaker(recorder)

    _fail(breaker, 0, 1)
    assert breaker.state is CircuitState.CLOSED
    _fail(breaker, 2)

    assert breaker.state is CircuitState.OPEN
    assert breaker.trip_time == 2
    [event] = recorder.events()
    assert (event.from_state, event.to_state) == (CircuitState.CLOSED, CircuitState.OPEN)
    assert event.reason == "failure_threshold_reached"
    assert event.at == 2


def test_failures_spread_beyond_window_never_trip() -> None:
    breaker = _breaker()
    _fail(breaker, 0, 61, 62)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count() == 2


def test_successes_do_not_reset_failure_window() -> None:
    breaker = _breaker()
    _fail(breaker, 0, 1)
    breaker.report_outcome(1.5, Outcome.SUCCESS, was_trial=False)
    _fail(breaker, 2)
    assert breaker.state is CircuitState.OPEN


def test_threshold_of_one_trips_on_first_failure() -> None:
    breaker = _breaker(threshold=1)
    _fail(breaker, 5)
    assert breaker.state is CircuitState.OPEN


def test_cooldown_gating() -> None:
    breaker = _breaker()
    _trip_at(breaker, 20)

    assert breaker.evaluate(25) is Decision.DENY
    assert breaker.retry_after(25) == pytest.approx(5)
    assert breaker.evaluate(31) is Decision.ALLOW_TRIAL
    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.trial_in_flight is True


def test_cooldown_boundary_admits_trial() -> None:
    breaker = _breaker()
    _trip_at(breaker, 20)
    assert breaker.evaluate(29.999) is Decision.DENY
    assert breaker.evaluate(30) is Decision.ALLOW_TRIAL


def test_half_open_admits_only_one_trial() -> None:
    breaker = _breaker()
    _trip_at(breaker, 20)
    assert breaker.evaluate(31) is Decision.ALLOW_TRIAL
    assert breaker.evaluate(32) is Decision.DENY
    assert breaker.evaluate(100) is Decision.DENY


def test_concurrent_evaluate_in_half_open_yields_one_trial() -> None:
    breaker = _breaker()
    _trip_at(breaker, 20)
    breaker.restore(
        BreakerSnapshot(
            name="agent",
            state=CircuitState.HALF_OPEN,
            trip_time=20,
            failure_times=(),
            config=breaker.config,
        ),
    )
    assert breaker.trial_in_flight is False

    start = threading.Barrier(16)
    decisions: list[Decision] = []
    lock = threading.Lock()

    def _evaluate() -> None:
        start.wait()
        decision = breaker.evaluate(31)
        with lock:
            decisions.append(decision)

    threads = [threading.Thread(target=_evaluate) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert decisions.count(Decision.ALLOW_TRIAL) == 1
    assert decisions.count(Decision.DENY) == 15


def test_trial_success_closes_and_clears_state() -> None:
    recorder = TransitionRecorder()
    breaker = _breaker(recorder)
    _trip_at(breaker, 20)
    assert breaker.evaluate(31) is Decision.ALLOW_TRIAL

    breaker.report_outcome(32, Outcome.SUCCESS, was_trial=True)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.trip_time is None
    assert breaker.trial_in_flight is False
    assert breaker.failure_count() == 0
    assert [event.reason for event in recorder.events()] == [
        "failure_threshold_reached",
        "cooldown_elapsed",
        "trial_succeeded",
    ]


def test_trial_failure_reopens_with_fresh_cooldown() -> None:
    breaker = _breaker()
    _trip_at(breaker, 20)
    assert breaker.evaluate(31) is Decision.ALLOW_TRIAL

    breaker.report_outcome(31, Outcome.FAILURE, was_trial=True)

    assert breaker.state is CircuitState.OPEN
    assert breaker.trip_time == 31
    assert breaker.trial_in_flight is False
    assert breaker.evaluate(40.9) is Decision.DENY
    assert breaker.evaluate(41) is Decision.ALLOW_TRIAL


def test_repeated_evaluate_without_reports_is_idempotent() -> None:
    recorder = TransitionRecorder()
    breaker = _breaker(recorder)

    for now in (0, 1, 2, 3):
        assert breaker.evaluate(now) is Decision.ALLOW
    assert breaker.state is CircuitState.CLOSED

    _trip_at(breaker, 20)
    for now in (21, 22, 25, 29):
        assert breaker.evaluate(now) is Decision.DENY
    assert breaker.state is CircuitState.OPEN
    assert len(recorder.events()) == 1


def test_late_failure_after_trip_does_not_retrip() -> None:
    recorder = TransitionRecorder()
    breaker = _breaker(recorder)
    _trip_at(breaker, 20)

    breaker.report_outcome(21, Outcome.FAILURE, was_trial=False)

    assert breaker.trip_time == 20
    assert recorder.count("agent", CircuitState.OPEN) == 1


def test_stale_trial_report_is_ignored() -> None:
    breaker = _breaker()
    breaker.report_outcome(5, Outcome.FAILURE, was_trial=True)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count() == 0


def test_end_to_end_recovery_scenario() -> None:
    breaker = _breaker()
    _fail(breaker, 0, 10, 20)
    assert breaker.state is CircuitState.OPEN
    assert breaker.trip_time == 20

    assert breaker.evaluate(25) is Decision.DENY
    assert breaker.evaluate(31) is Decision.ALLOW_TRIAL
    assert breaker.state is CircuitState.HALF_OPEN

    breaker.report_outcome(31, Outcome.SUCCESS, was_trial=True)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.snapshot().failure_times == ()


def test_end_to_end_failed_trial_scenario() -> None:
    breaker = _breaker()
    _fail(breaker, 0, 10, 20)
    assert breaker.evaluate(31) is Decision.ALLOW_TRIAL

    breaker.report_outcome(31, Outcome.FAILURE, was_trial=True)

    assert breaker.state is CircuitState.OPEN
    assert breaker.trip_time == 31
    assert breaker.retry_after(31) == pytest.approx(10)
    assert breaker.evaluate(40) is Decision.DENY
    assert breaker.evaluate(41) is Decision.ALLOW_TRIAL


def test_evaluate_prunes_expired_failures_in_every_state() -> None:
    breaker = _breaker(window=60, cooldown=10)
    _trip_at(breaker, 2)

    assert breaker.evaluate(5) is Decision.DENY
    assert breaker.snapshot().failure_times == (0, 1, 2)

    assert breaker.evaluate(100) is Decision.ALLOW_TRIAL
    assert breaker.snapshot().failure_times == ()
    assert breaker.evaluate(101) is Decision.DENY
    assert breaker.snapshot().failure_times == ()


def test_admit_reports_retry_delay_with_the_denial() -> None:
    breaker = _breaker()
    _trip_at(breaker, 20)

    denied = breaker.admit(24)
    assert denied.decision is Decision.DENY
    assert denied.retry_after == pytest.approx(6)

    trial = breaker.admit(30)
    assert trial.decision is Decision.ALLOW_TRIAL
    assert trial.retry_after == 0.0

    busy = breaker.admit(31)
    assert busy.decision is Decision.DENY
    assert busy.retry_after == 0.0


def test_released_trial_is_handed_to_the_next_caller() -> None:
    recorder = TransitionRecorder()
    breaker = _breaker(recorder)
    _trip_at(breaker, 20)
    assert breaker.evaluate(31) is Decision.ALLOW_TRIAL

    assert breaker.release_trial() is True
    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.trial_in_flight is False
    assert breaker.release_trial() is False

    assert breaker.evaluate(32) is Decision.ALLOW_TRIAL
    breaker.report_outcome(33, Outcome.SUCCESS, was_trial=True)
    assert breaker.state is CircuitState.CLOSED
    assert recorder.count("agent", CircuitState.HALF_OPEN) == 1


def test_release_trial_is_noop_outside_half_open() -> None:
    breaker = _breaker()
    assert breaker.release_trial() is False
    _trip_at(breaker, 20)
    assert breaker.release_trial() is False
    assert breaker.state is CircuitState.OPEN


def test_reset_forces_closed() -> None:
    recorder = TransitionRecorder()
    breaker = _breaker(recorder)
    _trip_at(breaker, 20)

    breaker.reset(22)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.trip_time is None
    assert breaker.failure_count() == 0
    assert recorder.events()[-1].reason == "manual_reset"


def test_restore_rejects_open_snapshot_without_trip_time() -> None:
    breaker = _breaker()
    with pytest.raises(ValueError, match="has no trip_time"):
        breaker.restore(
            BreakerSnapshot(
                name="agent",
                state=CircuitState.OPEN,
                trip_time=None,
                failure_times=(),
                config=breaker.config,
            ),
        )


def test_notifier_errors_are_swallowed(caplog: pytest.LogCaptureFixture) -> None:
    class _Exploding:
        def on_transition(self, *args: object) -> None:
            raise RuntimeError("sink down")

    breaker = CircuitBreaker(
        "agent",
        BreakerConfig(failure_threshold=1, window_seconds=60, cooldown_seconds=10),
        notifier=_Exploding(),
    )
    breaker.report_outcome(1, Outcome.FAILURE, was_trial=False)

    assert breaker.state is CircuitState.OPEN
    assert "State change notifier" in caplog.text


@pytest.mark.parametrize(
    "config",
    [
        BreakerConfig(failure_threshold=0),
        BreakerConfig(failure_threshold=-1),
        BreakerConfig(window_seconds=0),
        BreakerConfig(cooldown_seconds=-5),
    ],
)
def test_invalid_config_fails_at_creation(config: BreakerConfig) -> None:
    with pytest.raises(BreakerConfigError):
        CircuitBreaker("agent", config)
