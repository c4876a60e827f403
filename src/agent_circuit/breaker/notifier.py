"""Transition observers for logging and lightweight metrics."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import Protocol

from agent_circuit.breaker.models import CircuitState, TransitionEvent

logger = logging.getLogger(__name__)


class StateChangeNotifier(Protocol):
    """Observer invoked synchronously on every breaker transition."""

    def on_transition(
        self,
        name: str,
        from_state: CircuitState,
        to_state: CircuitState,
        reason: str,
        at: float,
    ) -> None: ...


class LoggingNotifier:
    """Log each transition; trips are warnings, recoveries are info."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def on_transition(
        self,
        name: str,
        from_state: CircuitState,
        to_state: CircuitState,
        reason: str,
        at: float,
    ) -> None:
        level = logging.WARNING if to_state is CircuitState.OPEN else logging.INFO
        self._log.log(
            level,
            "Circuit %s: %s -> %s (%s) at %.3f",
            name,
            from_state.value,
            to_state.value,
            reason,
            at,
        )


class TransitionRecorder:
    """Thread-safe in-memory log of transitions with per-state counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[TransitionEvent] = []
        self._counts: Counter[tuple[str, CircuitState]] = Counter()

    def on_transition(
        self,
        name: str,
        from_state: CircuitState,
        to_state: CircuitState,
        reason: str,
        at: float,
    ) -> None:
        event = TransitionEvent(
            name=name,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            at=at,
        )
        with self._lock:
            self._events.append(event)
            self._counts[(name, to_state)] += 1

    def events(self, name: str | None = None) -> list[TransitionEvent]:
        with self._lock:
            if name is None:
                return list(self._events)
            return [event for event in self._events if event.name == name]

    def count(self, name: str, to_state: CircuitState) -> int:
        with self._lock:
            return self._counts[(name, to_state)]


class CompositeNotifier:
    """Fan one transition out to several notifiers, isolating their failures."""

    def __init__(self, *notifiers: StateChangeNotifier) -> None:
        self.notifiers = notifiers

    def on_transition(
        self,
        name: str,
        from_state: CircuitState,
        to_state: CircuitState,
        reason: str,
        at: float,
    ) -> None:
        for notifier in self.notifiers:
            notify_safely(notifier, TransitionEvent(name, from_state, to_state, reason, at))


def notify_safely(notifier: StateChangeNotifier | None, event: TransitionEvent) -> None:
    """Deliver `event`; notifier errors are logged, never raised."""

    if notifier is None:
        return
    try:
        notifier.on_transition(
            event.name,
            event.from_state,
            event.to_state,
            event.reason,
            event.at,
        )
    except Exception:
        logger.exception(
            "State change notifier %r failed for %s (%s -> %s)",
            notifier,
            event.name,
            event.from_state.value,
            event.to_state.value,
        )
