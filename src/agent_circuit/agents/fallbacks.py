"""Deterministic substitutes served while a breaker denies calls."""

from __future__ import annotations

import copy
import hashlib
import json
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, is_dataclass
from typing import Any, Protocol

from agent_circuit.breaker.classifier import OutcomeClassifier, classify_outcome
from agent_circuit.breaker.models import Outcome


class NoCachedResponseError(LookupError):
    """Cache fallback has no fresh reply for the request."""


class ResponseStore(Protocol):
    """Durable backing for `ResponseCache`, shared by short-lived processes."""

    def get(self, key: str) -> tuple[float, Any] | None:
        """Return `(stored_at, response)` for `key`, or None."""

    def put(self, key: str, stored_at: float, response: Any) -> None:
        """Insert or replace the entry for `key`."""

    def purge(self, cutoff: float) -> int:
        """Delete entries stored at or before `cutoff`, returning how many were removed."""


def static_fallback(payload: Any) -> Callable[[Any], Any]:
    """Fallback that always returns a copy of `payload`."""

    def _fallback(_request: Any) -> Any:
        return copy.deepcopy(payload)

    return _fallback


def chained_fallback(*fallbacks: Callable[[Any], Any]) -> Callable[[Any], Any]:
    """Try each fallback in order, moving on when one has no cached reply."""

    if not fallbacks:
        raise ValueError("chained_fallback needs at least one fallback.")

    def _fallback(request: Any) -> Any:
        for fallback in fallbacks[:-1]:
            try:
                return fallback(request)
            except NoCachedResponseError:
                continue
        return fallbacks[-1](request)

    return _fallback


class ResponseCache:
    """TTL cache of successful replies keyed by a sha256 of the request.

    Expired entries are swept on every `remember()`, so after each write the
    cache only holds replies stored within the last `ttl_seconds`.
    With a `store`, writes go through to it and in-memory misses read from it.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 3_600.0,
        clock: Callable[[], float] = time.time,
        classifier: OutcomeClassifier = classify_outcome,
        store: ResponseStore | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}.")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._classifier = classifier
        self._store = store
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, Any]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def remember(self, request: Any, response: Any) -> None:
        key = request_key(request)
        now = self._clock()
        cutoff = now - self.ttl_seconds
        with self._lock:
            self._entries = {
                entry_key: entry
                for entry_key, entry in self._entries.items()
                if entry[0] > cutoff
            }
            self._entries[key] = (now, response)
        if self._store is not None:
            self._store.put(key, now, response)
            self._store.purge(cutoff)

    def lookup(self, request: Any) -> Any:
        """Return the fresh cached reply or raise `NoCachedResponseError`."""

        key = request_key(request)
        with self._lock:
            entry = self._entries.get(key)
        if entry is None and self._store is not None:
            entry = self._store.get(key)
        if entry is None:
            raise NoCachedResponseError(f"No cached response for request {key[:12]}.")

        stored_at, response = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            with self._lock:
                self._entries.pop(key, None)
            raise NoCachedResponseError(f"Cached response for request {key[:12]} expired.")
        return response

    def caching(self, operation: Callable[[Any], Any]) -> Callable[[Any], Any]:
        """Wrap `operation` so its successful replies feed the cache."""

        def _operation(request: Any) -> Any:
            response = operation(request)
            if self._classifier(response, None) is Outcome.SUCCESS:
                self.remember(request, response)
            return response

        return _operation

    def as_fallback(self) -> Callable[[Any], Any]:
        return self.lookup


def request_key(request: Any) -> str:
    if is_dataclass(request) and not isinstance(request, type):
        request = asdict(request)
    raw = json.dumps(request, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
