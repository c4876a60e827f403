"""In-process circuit breaker guarding calls to unreliable operations."""

from agent_circuit.breaker.classifier import (
    ErrorMarkerClassifier,
    OutcomeClassifier,
    classify_outcome,
)
from agent_circuit.breaker.gate import CallGate, CallTimeoutError, DegradedResponse
from agent_circuit.breaker.models import (
    Admission,
    BreakerConfig,
    BreakerConfigError,
    BreakerSnapshot,
    CircuitState,
    Decision,
    Outcome,
    TransitionEvent,
)
from agent_circuit.breaker.notifier import (
    CompositeNotifier,
    LoggingNotifier,
    StateChangeNotifier,
    TransitionRecorder,
)
from agent_circuit.breaker.persistence import (
    InMemorySnapshotStore,
    PersistenceAdapter,
    SqliteSnapshotStore,
)
from agent_circuit.breaker.registry import BreakerRegistry
from agent_circuit.breaker.state_machine import CircuitBreaker
from agent_circuit.breaker.window import FailureWindow

__all__ = [
    "Admission",
    "BreakerConfig",
    "BreakerConfigError",
    "BreakerRegistry",
    "BreakerSnapshot",
    "CallGate",
    "CallTimeoutError",
    "CircuitBreaker",
    "CircuitState",
    "CompositeNotifier",
    "Decision",
    "DegradedResponse",
    "ErrorMarkerClassifier",
    "FailureWindow",
    "InMemorySnapshotStore",
    "LoggingNotifier",
    "Outcome",
    "OutcomeClassifier",
    "PersistenceAdapter",
    "SqliteSnapshotStore",
    "StateChangeNotifier",
    "TransitionEvent",
    "TransitionRecorder",
    "classify_outcome",
]
