"""Success/failure classification of protected call results."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from agent_circuit.breaker.models import Outcome

DEFAULT_ERROR_MARKERS: tuple[str, ...] = ("error",)


class OutcomeClassifier(Protocol):
    """Map a call's response or raised error to a decisive outcome."""

    def __call__(self, response: Any, error: BaseException | None) -> Outcome: ...


class ErrorMarkerClassifier:
    """Treat errors, timeouts and application error markers as failures.

    A response counts as failed when it is a mapping holding a truthy value
    under one of `markers`, or an object reporting `timed_out` or a non-zero
    `exit_code` (CLI agent replies).
    """

    def __init__(self, markers: tuple[str, ...] = DEFAULT_ERROR_MARKERS) -> None:
        self.markers = markers

    def __call__(self, response: Any, error: BaseException | None) -> Outcome:
        if error is not None:
            return Outcome.FAILURE
        if response is None:
            return Outcome.SUCCESS
        if isinstance(response, Mapping):
            return _mapping_outcome(response, self.markers)
        if getattr(response, "timed_out", False) is True:
            return Outcome.FAILURE
        exit_code = getattr(response, "exit_code", None)
        if isinstance(exit_code, int) and exit_code != 0:
            return Outcome.FAILURE
        payload = getattr(response, "payload", None)
        if isinstance(payload, Mapping):
            return _mapping_outcome(payload, self.markers)
        return Outcome.SUCCESS


def _mapping_outcome(response: Mapping[Any, Any], markers: tuple[str, ...]) -> Outcome:
    for marker in markers:
        if response.get(marker):
            return Outcome.FAILURE
    return Outcome.SUCCESS


classify_outcome: OutcomeClassifier = ErrorMarkerClassifier()
