"""Shared test fixtures."""

from __future__ import annotations

import threading

import pytest

from agent_circuit.breaker import BreakerConfig, BreakerRegistry, TransitionRecorder


class FakeClock:
    """Manually advanced clock, callable like `time.time`."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def set(self, now: float) -> None:
        with self._lock:
            self.now = now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def recorder() -> TransitionRecorder:
    return TransitionRecorder()


@pytest.fixture()
def registry(recorder: TransitionRecorder) -> BreakerRegistry:
    """Registry with threshold=3, window=60s, cooldown=10s."""

    return BreakerRegistry(
        default_config=BreakerConfig(
            failure_threshold=3,
            window_seconds=60,
            cooldown_seconds=10,
        ),
        notifier=recorder,
    )
