"""Public entry point: run an operation through its named breaker."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, wait
from dataclasses import dataclass
from typing import Any

from agent_circuit.breaker.classifier import OutcomeClassifier
from agent_circuit.breaker.models import Admission, CircuitState, Decision, Outcome
from agent_circuit.breaker.registry import BreakerRegistry
from agent_circuit.breaker.state_machine import CircuitBreaker

logger = logging.getLogger(__name__)

Operation = Callable[[Any], Any]


class CallTimeoutError(TimeoutError):
    """Protected operation missed the gate deadline and was reported as failed."""

    def __init__(self, name: str, timeout_seconds: float) -> None:
        super().__init__(f"Call through circuit {name!r} exceeded {timeout_seconds:g}s deadline.")
        self.name = name
        self.timeout_seconds = timeout_seconds


@dataclass(frozen=True, slots=True)
class DegradedResponse:
    """Fallback result returned when the breaker denies a call."""

    value: Any
    circuit_state: CircuitState
    retry_after: float
    fallback: bool = True

    def to_payload(self) -> dict[str, object]:
        """Dict form that downstream tooling can tell apart from a real result."""

        payload: dict[str, object]
        if isinstance(self.value, Mapping):
            payload = dict(self.value)
        else:
            payload = {"result": self.value}
        payload["circuit_state"] = self.circuit_state.value
        payload["retry_after"] = self.retry_after
        payload["fallback"] = self.fallback
        return payload


class CallGate:
    """Decide per call between the protected operation and its fallback.

    The gate never retries and never raises errors of its own on the
    operation path: the operation's value or exception reaches the caller
    unchanged. The one exception is the optional deadline, which raises
    `CallTimeoutError` after reporting the call as failed.

    Deadline calls each run on their own daemon thread, so an operation that
    hangs past its deadline only holds its own thread and never delays calls
    through other breakers.
    """

    def __init__(
        self,
        registry: BreakerRegistry,
        *,
        clock: Callable[[], float] = time.time,
        timeout_seconds: float | None = None,
    ) -> None:
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {timeout_seconds}.")
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def execute(
        self,
        name: str,
        operation: Operation,
        fallback: Operation,
        request: Any = None,
        *,
        classifier: OutcomeClassifier | None = None,
    ) -> Any:
        breaker = self.registry.get_or_create(name)
        admission = breaker.admit(self._clock())

        if admission.decision is Decision.DENY:
            return self._run_fallback(breaker, admission, fallback, request)

        report = _CallReport(
            breaker=breaker,
            was_trial=admission.decision is Decision.ALLOW_TRIAL,
            classifier=classifier or self.registry.classifier_for(name),
            clock=self._clock,
        )
        if self.timeout_seconds is None:
            try:
                response = operation(request)
            except BaseException as error:
                report.record_result(None, error)
                raise
            report.record_result(response, None)
            return response
        return self._run_with_deadline(report, operation, request, self.timeout_seconds)

    def _run_fallback(
        self,
        breaker: CircuitBreaker,
        admission: Admission,
        fallback: Operation,
        request: Any,
    ) -> Any:
        logger.debug(
            "Circuit %s denied call, retry after %.1fs; using fallback",
            breaker.name,
            admission.retry_after,
        )
        value = fallback(request)
        # denials read OPEN, including HALF_OPEN with a trial in flight
        return DegradedResponse(
            value=value,
            circuit_state=CircuitState.OPEN,
            retry_after=admission.retry_after,
        )

    def _run_with_deadline(
        self,
        report: _CallReport,
        operation: Operation,
        request: Any,
        timeout_seconds: float,
    ) -> Any:
        name = report.breaker.name
        future: Future[Any] = Future()
        worker = threading.Thread(
            target=_run_into_future,
            args=(future, operation, request),
            name=f"circuit-call-{name}",
            daemon=True,
        )
        try:
            worker.start()
        except RuntimeError:
            # the operation never ran, so it has no outcome to report
            if report.was_trial:
                report.breaker.release_trial()
            raise

        done, _ = wait([future], timeout=timeout_seconds)
        if not done:
            report.record_outcome(Outcome.FAILURE)
            future.add_done_callback(_log_straggler(name))
            raise CallTimeoutError(name, timeout_seconds)

        try:
            response = future.result()
        except BaseException as error:
            report.record_result(None, error)
            raise
        report.record_result(response, None)
        return response


class _CallReport:
    """Reports the outcome of one logical call exactly once."""

    def __init__(
        self,
        *,
        breaker: CircuitBreaker,
        was_trial: bool,
        classifier: OutcomeClassifier,
        clock: Callable[[], float],
    ) -> None:
        self.breaker = breaker
        self.was_trial = was_trial
        self._classifier = classifier
        self._clock = clock
        self._lock = threading.Lock()
        self._reported = False

    def record_result(self, response: Any, error: BaseException | None) -> None:
        self.record_outcome(self._classify(response, error))

    def record_outcome(self, outcome: Outcome) -> bool:
        with self._lock:
            if self._reported:
                return False
            self._reported = True
        self.breaker.report_outcome(self._clock(), outcome, self.was_trial)
        return True

    def _classify(self, response: Any, error: BaseException | None) -> Outcome:
        try:
            outcome = self._classifier(response, error)
        except Exception:
            logger.exception(
                "Outcome classifier failed for %s; counting as failure",
                self.breaker.name,
            )
            return Outcome.FAILURE
        if not isinstance(outcome, Outcome):
            logger.warning(
                "Outcome classifier for %s returned %r; counting as failure",
                self.breaker.name,
                outcome,
            )
            return Outcome.FAILURE
        return outcome


def _run_into_future(future: Future[Any], operation: Operation, request: Any) -> None:
    if not future.set_running_or_notify_cancel():
        return
    try:
        response = operation(request)
    except BaseException as error:
        future.set_exception(error)
    else:
        future.set_result(response)


def _log_straggler(name: str) -> Callable[[Future[Any]], None]:
    def _callback(future: Future[Any]) -> None:
        logger.debug(
            "Late completion ignored for %s (error=%r)",
            name,
            future.exception(),
        )

    return _callback
