"""Domain models for circuit breaker state and decisions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_COOLDOWN_SECONDS = 300.0


class CircuitState(str, Enum):
    """Breaker lifecycle states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class Decision(str, Enum):
    """Gate decision for one call."""

    ALLOW = "allow"
    ALLOW_TRIAL = "allow_trial"
    DENY = "deny"


class Outcome(str, Enum):
    """Classified result of one protected call."""

    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True, slots=True)
class Admission:
    """Decision for one call plus the wait a denied caller should observe.

    Both fields are taken under the breaker lock, so a denial never carries
    a `retry_after` computed against a later state.
    """

    decision: Decision
    retry_after: float = 0.0


class BreakerConfigError(ValueError):
    """Invalid breaker configuration, raised at creation time."""


@dataclass(frozen=True, slots=True)
class BreakerConfig:
    """Per-breaker thresholds, immutable after breaker creation."""

    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    window_seconds: float = DEFAULT_WINDOW_SECONDS
    cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS

    def validate(self) -> BreakerConfig:
        """Raise `BreakerConfigError` for non-positive limits, return self otherwise."""

        if isinstance(self.failure_threshold, bool) or not isinstance(
            self.failure_threshold, int
        ):
            raise BreakerConfigError(
                f"failure_threshold must be an integer, got {self.failure_threshold!r}.",
            )
        if self.failure_threshold <= 0:
            raise BreakerConfigError(
                f"failure_threshold must be > 0, got {self.failure_threshold}.",
            )
        if self.window_seconds <= 0:
            raise BreakerConfigError(
                f"window_seconds must be > 0, got {self.window_seconds}.",
            )
        if self.cooldown_seconds <= 0:
            raise BreakerConfigError(
                f"cooldown_seconds must be > 0, got {self.cooldown_seconds}.",
            )
        return self


@dataclass(frozen=True, slots=True)
class BreakerSnapshot:
    """Point-in-time copy of one breaker, used for persistence and inspection."""

    name: str
    state: CircuitState
    trip_time: float | None
    failure_times: tuple[float, ...]
    config: BreakerConfig

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "state": self.state.value,
            "trip_time": self.trip_time,
            "failure_times": list(self.failure_times),
            "failure_threshold": self.config.failure_threshold,
            "window_seconds": self.config.window_seconds,
            "cooldown_seconds": self.config.cooldown_seconds,
        }


@dataclass(frozen=True, slots=True)
class TransitionEvent:
    """One state transition as delivered to notifiers."""

    name: str
    from_state: CircuitState
    to_state: CircuitState
    reason: str
    at: float
