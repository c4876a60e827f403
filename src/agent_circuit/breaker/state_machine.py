"""CLOSED / OPEN / HALF_OPEN state machine for one protected resource.

Transitions are computed lazily from the `now` passed by the caller, so there
is no timer thread: OPEN becomes HALF_OPEN on the first `evaluate()` after the
cooldown has elapsed. Every read and mutation goes through one re-entrant lock
per breaker, which makes the evaluate/report pair linearizable per name while
leaving other names untouched.
"""

from __future__ import annotations

import logging
import threading

from agent_circuit.breaker.models import (
    Admission,
    BreakerConfig,
    BreakerSnapshot,
    CircuitState,
    Decision,
    Outcome,
    TransitionEvent,
)
from agent_circuit.breaker.notifier import StateChangeNotifier, notify_safely
from agent_circuit.breaker.window import FailureWindow

logger = logging.getLogger(__name__)

REASON_THRESHOLD_REACHED = "failure_threshold_reached"
REASON_COOLDOWN_ELAPSED = "cooldown_elapsed"
REASON_TRIAL_SUCCEEDED = "trial_succeeded"
REASON_TRIAL_FAILED = "trial_failed"
REASON_MANUAL_RESET = "manual_reset"


class CircuitBreaker:
    """Mutex-guarded breaker state for a single name."""

    def __init__(
        self,
        name: str,
        config: BreakerConfig,
        *,
        notifier: StateChangeNotifier | None = None,
    ) -> None:
        self.name = name
        self.config = config.validate()
        self._notifier = notifier
        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._window = FailureWindow(config.window_seconds)
        self._trip_time: float | None = None
        self._trial_in_flight = False

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self.name!r}, state={self._state.value})"

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def trip_time(self) -> float | None:
        with self._lock:
            return self._trip_time

    @property
    def trial_in_flight(self) -> bool:
        with self._lock:
            return self._trial_in_flight

    def failure_count(self, now: float | None = None) -> int:
        """Failures currently held in the window, pruned at `now` when given."""

        with self._lock:
            if now is None:
                return len(self._window)
            return self._window.prune(now)

    def retry_after(self, now: float) -> float:
        """Seconds until an OPEN breaker admits a trial; zero otherwise."""

        with self._lock:
            if self._state is not CircuitState.OPEN or self._trip_time is None:
                return 0.0
            return max(0.0, self._trip_time + self.config.cooldown_seconds - now)

    def evaluate(self, now: float) -> Decision:
        """Decide whether a call at `now` may run, claiming the trial slot if so."""

        return self.admit(now).decision

    def admit(self, now: float) -> Admission:
        """Same as `evaluate()`, also returning the retry delay seen at decision time."""

        with self._lock:
            self._window.prune(now)
            if self._state is CircuitState.CLOSED:
                return Admission(Decision.ALLOW)

            if self._state is CircuitState.OPEN:
                if self._trip_time is not None and (
                    now < self._trip_time + self.config.cooldown_seconds
                ):
                    return Admission(
                        Decision.DENY,
                        retry_after=self._trip_time + self.config.cooldown_seconds - now,
                    )
                self._trial_in_flight = True
                self._transition(CircuitState.HALF_OPEN, REASON_COOLDOWN_ELAPSED, now)
                return Admission(Decision.ALLOW_TRIAL)

            if self._trial_in_flight:
                return Admission(Decision.DENY)
            self._trial_in_flight = True
            return Admission(Decision.ALLOW_TRIAL)

    def release_trial(self) -> bool:
        """Give back a claimed trial slot whose call never ran.

        Returns True when a slot was released; the breaker stays HALF_OPEN and
        the next `evaluate()` hands the trial to another caller.
        """

        with self._lock:
            if self._state is not CircuitState.HALF_OPEN or not self._trial_in_flight:
                return False
            self._trial_in_flight = False
            return True

    def report_outcome(self, now: float, outcome: Outcome, was_trial: bool) -> None:
        """Feed the classified result of a call admitted by `evaluate()`."""

        with self._lock:
            if was_trial:
                self._report_trial(now, outcome)
                return
            if outcome is Outcome.SUCCESS:
                return

            count = self._window.record(now)
            if self._state is not CircuitState.CLOSED:
                # late report from a call admitted before the trip
                return
            if count >= self.config.failure_threshold:
                self._trip_time = now
                self._transition(CircuitState.OPEN, REASON_THRESHOLD_REACHED, now)

    def _report_trial(self, now: float, outcome: Outcome) -> None:
        if self._state is not CircuitState.HALF_OPEN or not self._trial_in_flight:
            logger.debug(
                "Ignoring stale trial outcome %s for %s in state %s",
                outcome.value,
                self.name,
                self._state.value,
            )
            return

        self._trial_in_flight = False
        if outcome is Outcome.SUCCESS:
            self._window.clear()
            self._trip_time = None
            self._transition(CircuitState.CLOSED, REASON_TRIAL_SUCCEEDED, now)
            return

        # cooldown restarts from the failed trial, not from the original trip
        self._trip_time = now
        self._transition(CircuitState.OPEN, REASON_TRIAL_FAILED, now)

    def reset(self, now: float) -> None:
        """Administratively force the breaker back to CLOSED with an empty window."""

        with self._lock:
            self._window.clear()
            self._trip_time = None
            self._trial_in_flight = False
            if self._state is not CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED, REASON_MANUAL_RESET, now)

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            return BreakerSnapshot(
                name=self.name,
                state=self._state,
                trip_time=self._trip_time,
                failure_times=self._window.timestamps(),
                config=self.config,
            )

    def restore(self, snapshot: BreakerSnapshot) -> None:
        """Load persisted state without emitting notifications.

        A restored HALF_OPEN breaker has no trial in flight: the process that
        owned it is gone, so the next `evaluate()` hands out a fresh trial.
        """

        if snapshot.state is not CircuitState.CLOSED and snapshot.trip_time is None:
            raise ValueError(
                f"Snapshot for {snapshot.name!r} in state {snapshot.state.value} "
                "has no trip_time.",
            )
        with self._lock:
            self._state = snapshot.state
            self._trip_time = (
                None if snapshot.state is CircuitState.CLOSED else snapshot.trip_time
            )
            self._trial_in_flight = False
            self._window = FailureWindow(
                self.config.window_seconds,
                snapshot.failure_times,
            )

    def _transition(self, to_state: CircuitState, reason: str, now: float) -> None:
        from_state = self._state
        self._state = to_state
        notify_safely(
            self._notifier,
            TransitionEvent(
                name=self.name,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                at=now,
            ),
        )
