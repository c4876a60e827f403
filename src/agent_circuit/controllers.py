"""Controllers for breaker CLI commands."""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_circuit.agents import (
    AgentCommandError,
    AgentReply,
    AgentRequest,
    CliAgentOperation,
    ResponseCache,
    SqliteResponseStore,
    chained_fallback,
    static_fallback,
)
from agent_circuit.breaker import (
    BreakerRegistry,
    CallGate,
    CallTimeoutError,
    CompositeNotifier,
    DegradedResponse,
    LoggingNotifier,
    Outcome,
    SqliteSnapshotStore,
    TransitionRecorder,
    classify_outcome,
)
from agent_circuit.config import Settings


@dataclass(slots=True)
class BreakerCallCommand:
    """CLI input for one protected agent call."""

    db_path: Path | None
    breaker: str
    prompt: str
    input_text: str | None
    model: str
    fallback_payload: dict[str, Any]
    cache_fallback: bool = False


@dataclass(slots=True)
class BreakerStatusCommand:
    """CLI input for persisted breaker inspection."""

    db_path: Path | None
    breaker: str | None


@dataclass(slots=True)
class BreakerResetCommand:
    """CLI input for administrative reset."""

    db_path: Path | None
    breaker: str


@dataclass(slots=True)
class BreakerCallResult:
    """Call report to render in CLI."""

    lines: list[str]
    success: bool


class BreakerCliController:
    """Coordinates snapshot restore, the protected call and snapshot save."""

    def call(self, command: BreakerCallCommand) -> BreakerCallResult:
        settings = _load_settings(command.db_path)
        recorder = TransitionRecorder()
        agent = CliAgentOperation(
            settings.agent.command_template,
            timeout_seconds=settings.agent.timeout_seconds,
        )
        with _registry(settings, recorder) as registry, _response_cache(
            settings,
            enabled=command.cache_fallback,
        ) as cache:
            operation: Callable[[Any], Any] = agent
            fallback = static_fallback(command.fallback_payload)
            if cache is not None:
                operation = cache.caching(lambda request: agent(request).payload)
                fallback = chained_fallback(cache.as_fallback(), fallback)
            request = AgentRequest(
                prompt=command.prompt,
                input_text=command.input_text,
                model=command.model,
            )
            gate = CallGate(registry, timeout_seconds=settings.agent.call_timeout_seconds)
            try:
                result = gate.execute(command.breaker, operation, fallback, request)
            except CallTimeoutError as error:
                result = {"error": "timeout", "detail": str(error)}
            except AgentCommandError as error:
                result = {"error": "agent_command", "detail": str(error)}

        payload, success = _render_result(result)
        lines = [json.dumps(payload, ensure_ascii=False, sort_keys=True)]
        lines.extend(
            f"Transition: {event.name} {event.from_state.value} -> {event.to_state.value} "
            f"({event.reason})"
            for event in recorder.events()
        )
        return BreakerCallResult(lines=lines, success=success)

    def status(self, command: BreakerStatusCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        now = time.time()
        with _registry(settings, None, save=False) as registry:
            snapshots = registry.snapshots()
            if command.breaker is not None:
                snapshots = [item for item in snapshots if item.name == command.breaker]
            if not snapshots:
                return ["No circuit breakers recorded."]

            lines: list[str] = []
            for snapshot in snapshots:
                breaker = registry.get_or_create(snapshot.name)
                lines.append(
                    f"{snapshot.name}: state={snapshot.state.value} "
                    f"failures={breaker.failure_count(now)} "
                    f"threshold={breaker.config.failure_threshold} "
                    f"retry_after={breaker.retry_after(now):.1f}s",
                )
        return lines

    def reset(self, command: BreakerResetCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _registry(settings, None) as registry:
            if command.breaker not in registry.names():
                return [f"Unknown circuit breaker: {command.breaker}"]
            registry.reset(command.breaker, time.time())
        return [f"Circuit breaker reset: {command.breaker}"]


def _load_settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _registry(
    settings: Settings,
    recorder: TransitionRecorder | None,
    *,
    save: bool = True,
) -> Iterator[BreakerRegistry]:
    notifier: LoggingNotifier | CompositeNotifier = LoggingNotifier()
    if recorder is not None:
        notifier = CompositeNotifier(notifier, recorder)
    registry = BreakerRegistry(
        default_config=settings.breaker.default_config(),
        overrides=settings.breaker.overrides,
        notifier=notifier,
    )
    if not settings.persist:
        yield registry
        return

    store = SqliteSnapshotStore(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        if not save:
            store.init_schema()
            registry.load_from(store)
            yield registry
            return
        # other processes checkpoint the same rows; load, call and save as one unit
        with store.exclusive(timeout_seconds=settings.lock_timeout_seconds):
            store.init_schema()
            registry.load_from(store)
            yield registry
            registry.save_to(store)
    finally:
        store.close()


@contextmanager
def _response_cache(settings: Settings, *, enabled: bool) -> Iterator[ResponseCache | None]:
    if not enabled:
        yield None
        return
    if not settings.persist:
        yield ResponseCache(ttl_seconds=settings.agent.cache_ttl_seconds)
        return

    store = SqliteResponseStore(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        store.init_schema()
        yield ResponseCache(ttl_seconds=settings.agent.cache_ttl_seconds, store=store)
    finally:
        store.close()


def _render_result(result: Any) -> tuple[dict[str, Any], bool]:
    if isinstance(result, DegradedResponse):
        return result.to_payload(), True
    if isinstance(result, AgentReply):
        return dict(result.payload), classify_outcome(result, None) is Outcome.SUCCESS
    return dict(result), classify_outcome(result, None) is Outcome.SUCCESS
