"""Per-name breaker registry with isolated state per protected resource."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping

from agent_circuit.breaker.classifier import OutcomeClassifier, classify_outcome
from agent_circuit.breaker.models import BreakerConfig, BreakerSnapshot
from agent_circuit.breaker.notifier import StateChangeNotifier
from agent_circuit.breaker.persistence import PersistenceAdapter
from agent_circuit.breaker.state_machine import CircuitBreaker

logger = logging.getLogger(__name__)


class BreakerRegistry:
    """Owns every `CircuitBreaker`; callers only receive references.

    The registry lock guards creation only. Once a breaker exists, lookups
    are lock-free and all state changes go through the breaker's own lock.
    """

    def __init__(
        self,
        *,
        default_config: BreakerConfig | None = None,
        overrides: Mapping[str, BreakerConfig] | None = None,
        notifier: StateChangeNotifier | None = None,
        classifiers: Mapping[str, OutcomeClassifier] | None = None,
        default_classifier: OutcomeClassifier = classify_outcome,
    ) -> None:
        self.default_config = (default_config or BreakerConfig()).validate()
        self._overrides = {name: config.validate() for name, config in (overrides or {}).items()}
        self._notifier = notifier
        self._classifiers = dict(classifiers or {})
        self._default_classifier = default_classifier
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get_or_create(self, name: str, config: BreakerConfig | None = None) -> CircuitBreaker:
        """Return the single breaker for `name`, creating it on first access.

        `config` only applies when this call creates the breaker; an existing
        breaker keeps the config it was created with.
        """

        breaker = self._breakers.get(name)
        if breaker is not None:
            return breaker
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    self.config_for(name, config),
                    notifier=self._notifier,
                )
                self._breakers[name] = breaker
                logger.debug("Created circuit breaker %s with %s", name, breaker.config)
            return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def config_for(self, name: str, config: BreakerConfig | None = None) -> BreakerConfig:
        if config is not None:
            return config.validate()
        return self._overrides.get(name, self.default_config)

    def classifier_for(self, name: str) -> OutcomeClassifier:
        return self._classifiers.get(name, self._default_classifier)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._breakers)

    def snapshots(self) -> list[BreakerSnapshot]:
        with self._lock:
            breakers = [self._breakers[name] for name in sorted(self._breakers)]
        return [breaker.snapshot() for breaker in breakers]

    def reset(self, name: str, now: float) -> bool:
        """Administrative reset; returns False when `name` is unknown."""

        breaker = self.get(name)
        if breaker is None:
            return False
        breaker.reset(now)
        return True

    def remove(self, name: str) -> bool:
        """Administrative eviction; the next access creates a fresh breaker."""

        with self._lock:
            return self._breakers.pop(name, None) is not None

    def load_from(self, adapter: PersistenceAdapter) -> int:
        """Startup checkpoint: restore every stored snapshot, return how many."""

        restored = 0
        for name in adapter.names():
            snapshot = adapter.load(name)
            if snapshot is None:
                continue
            try:
                self.get_or_create(name).restore(snapshot)
            except ValueError:
                logger.warning("Skipping invalid breaker snapshot for %s", name, exc_info=True)
                continue
            restored += 1
        logger.info("Restored %d circuit breaker snapshot(s)", restored)
        return restored

    def save_to(self, adapter: PersistenceAdapter) -> int:
        """Shutdown checkpoint: persist every breaker, return how many."""

        snapshots = self.snapshots()
        for snapshot in snapshots:
            adapter.save(snapshot.name, snapshot)
        logger.info("Saved %d circuit breaker snapshot(s)", len(snapshots))
        return len(snapshots)
