"""Runtime configuration for breakers and the agent call path."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from agent_circuit.breaker.models import (
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_WINDOW_SECONDS,
    BreakerConfig,
    BreakerConfigError,
)

DEFAULT_AGENT_COMMAND_TEMPLATE = "claude -p {prompt} --output-format json"


@dataclass(slots=True)
class BreakerSettings:
    """Default breaker limits plus per-name overrides."""

    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    window_seconds: float = DEFAULT_WINDOW_SECONDS
    cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS
    overrides: dict[str, BreakerConfig] = field(default_factory=dict)

    def default_config(self) -> BreakerConfig:
        return BreakerConfig(
            failure_threshold=self.failure_threshold,
            window_seconds=self.window_seconds,
            cooldown_seconds=self.cooldown_seconds,
        )


@dataclass(slots=True)
class AgentSettings:
    """LLM CLI call settings."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    timeout_seconds: float = 15.0
    call_timeout_seconds: float | None = None
    cache_ttl_seconds: float = 3_600.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_circuit.db")
    persist: bool = True
    sqlite_busy_timeout_ms: int = 5_000
    lock_timeout_seconds: float = 120.0
    breaker: BreakerSettings = field(default_factory=BreakerSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_CIRCUIT_DB_PATH", ".agent_circuit.db")),
            persist=_env_bool("AGENT_CIRCUIT_PERSIST", default=True),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_CIRCUIT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            lock_timeout_seconds=float(os.getenv("AGENT_CIRCUIT_LOCK_TIMEOUT_SECONDS", "120")),
            breaker=BreakerSettings(
                failure_threshold=int(os.getenv("AGENT_CIRCUIT_FAILURE_THRESHOLD", "3")),
                window_seconds=float(os.getenv("AGENT_CIRCUIT_WINDOW_SECONDS", "60")),
                cooldown_seconds=float(os.getenv("AGENT_CIRCUIT_COOLDOWN_SECONDS", "300")),
                overrides=_collect_breaker_overrides(),
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "AGENT_CIRCUIT_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                timeout_seconds=float(os.getenv("AGENT_CIRCUIT_AGENT_TIMEOUT_SECONDS", "15")),
                call_timeout_seconds=_env_optional_float("AGENT_CIRCUIT_CALL_TIMEOUT_SECONDS"),
                cache_ttl_seconds=float(os.getenv("AGENT_CIRCUIT_CACHE_TTL_SECONDS", "3600")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for invalid limits before any breaker is built."""

        try:
            self.breaker.default_config().validate()
        except BreakerConfigError as error:
            raise BreakerConfigError(f"Invalid default breaker config: {error}") from error
        for name, config in self.breaker.overrides.items():
            try:
                config.validate()
            except BreakerConfigError as error:
                raise BreakerConfigError(f"Invalid breaker override {name!r}: {error}") from error
        if self.agent.timeout_seconds <= 0:
            raise ValueError("AGENT_CIRCUIT_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.call_timeout_seconds is not None and self.agent.call_timeout_seconds <= 0:
            raise ValueError("AGENT_CIRCUIT_CALL_TIMEOUT_SECONDS must be > 0.")
        if self.agent.cache_ttl_seconds <= 0:
            raise ValueError("AGENT_CIRCUIT_CACHE_TTL_SECONDS must be > 0.")
        if "{prompt}" not in self.agent.command_template:
            raise ValueError("AGENT_CIRCUIT_AGENT_COMMAND_TEMPLATE must include {prompt}.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_CIRCUIT_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.lock_timeout_seconds <= 0:
            raise ValueError("AGENT_CIRCUIT_LOCK_TIMEOUT_SECONDS must be > 0.")


def _collect_breaker_overrides() -> dict[str, BreakerConfig]:
    raw = os.getenv("AGENT_CIRCUIT_BREAKER_OVERRIDES", "").strip()
    if not raw:
        return {}

    overrides: dict[str, BreakerConfig] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        fields = [value.strip() for value in token.split("|")]
        if len(fields) != 4 or not fields[0]:
            raise ValueError(
                "Invalid AGENT_CIRCUIT_BREAKER_OVERRIDES entry: "
                f"{token!r}. Expected format '<name>|<threshold>|<window>|<cooldown>'.",
            )
        name, threshold_raw, window_raw, cooldown_raw = fields
        try:
            config = BreakerConfig(
                failure_threshold=int(threshold_raw),
                window_seconds=float(window_raw),
                cooldown_seconds=float(cooldown_raw),
            )
        except ValueError as error:
            raise ValueError(
                f"Invalid AGENT_CIRCUIT_BREAKER_OVERRIDES values for {name!r}: {token!r}",
            ) from error
        overrides[name] = config
    return overrides


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid float value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
