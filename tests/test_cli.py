from __future__ import annotations

import json
import shlex
import sys
import threading
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_circuit.controllers import BreakerCallCommand, BreakerCallResult, BreakerCliController
from agent_circuit.main import agent_circuit

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("Breaker Commands"),
]

_PYTHON = shlex.quote(sys.executable)
_ECHO_TEMPLATE = f"{_PYTHON} -c 'import sys; print(sys.argv[1])' {{prompt}}"


@pytest.fixture()
def cli_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_CIRCUIT_AGENT_COMMAND_TEMPLATE", _ECHO_TEMPLATE)
    monkeypatch.setenv("AGENT_CIRCUIT_FAILURE_THRESHOLD", "2")
    monkeypatch.setenv("AGENT_CIRCUIT_WINDOW_SECONDS", "600")
    monkeypatch.setenv("AGENT_CIRCUIT_COOLDOWN_SECONDS", "600")
    monkeypatch.delenv("AGENT_CIRCUIT_BREAKER_OVERRIDES", raising=False)
    monkeypatch.delenv("AGENT_CIRCUIT_CALL_TIMEOUT_SECONDS", raising=False)
    monkeypatch.delenv("AGENT_CIRCUIT_PERSIST", raising=False)


def _call(db_path: Path, prompt: str, *extra: str):
    return CliRunner().invoke(
        agent_circuit,
        ["call", "--db-path", str(db_path), "--breaker", "agent:echo", "--prompt", prompt, *extra],
    )


def test_call_prints_agent_payload(tmp_path: Path, cli_env: None) -> None:
    result = _call(tmp_path / "cb.db", '{"status": "active"}')

    assert result.exit_code == 0, result.output
    assert json.loads(result.output.splitlines()[0]) == {"status": "active"}


def test_breaker_state_persists_across_invocations(tmp_path: Path, cli_env: None) -> None:
    db_path = tmp_path / "cb.db"

    first = _call(db_path, "not json at all")
    assert first.exit_code != 0
    assert json.loads(first.output.splitlines()[0])["error"] == "invalid_json"

    second = _call(db_path, "still not json")
    assert "Transition: agent:echo CLOSED -> OPEN (failure_threshold_reached)" in second.output

    denied = _call(db_path, '{"status": "active"}', "--fallback-json", '{"status": "degraded"}')
    assert denied.exit_code == 0, denied.output
    payload = json.loads(denied.output.splitlines()[0])
    assert payload["status"] == "degraded"
    assert payload["circuit_state"] == "OPEN"
    assert payload["fallback"] is True
    assert payload["retry_after"] > 0

    status = CliRunner().invoke(agent_circuit, ["status", "--db-path", str(db_path)])
    assert status.exit_code == 0, status.output
    assert "agent:echo: state=OPEN failures=2 threshold=2" in status.output

    reset = CliRunner().invoke(agent_circuit, ["reset", "agent:echo", "--db-path", str(db_path)])
    assert "Circuit breaker reset: agent:echo" in reset.output

    recovered = _call(db_path, '{"status": "active"}')
    assert recovered.exit_code == 0, recovered.output
    assert json.loads(recovered.output.splitlines()[0]) == {"status": "active"}


def test_status_and_reset_on_empty_db(tmp_path: Path, cli_env: None) -> None:
    db_path = tmp_path / "cb.db"
    status = CliRunner().invoke(agent_circuit, ["status", "--db-path", str(db_path)])
    assert "No circuit breakers recorded." in status.output

    reset = CliRunner().invoke(agent_circuit, ["reset", "missing", "--db-path", str(db_path)])
    assert "Unknown circuit breaker: missing" in reset.output


def test_call_rejects_non_object_fallback(tmp_path: Path, cli_env: None) -> None:
    result = _call(tmp_path / "cb.db", "{}", "--fallback-json", "[1, 2]")
    assert result.exit_code == 2
    assert "expected a JSON object" in result.output


def test_concurrent_calls_share_one_failure_count(
    tmp_path: Path,
    cli_env: None,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv(
        "AGENT_CIRCUIT_AGENT_COMMAND_TEMPLATE",
        f"{_PYTHON} -c 'import sys, time; time.sleep(0.3); print(sys.argv[1])' {{prompt}}",
    )
    monkeypatch.setenv("AGENT_CIRCUIT_FAILURE_THRESHOLD", "5")
    db_path = tmp_path / "cb.db"
    controller = BreakerCliController()
    command = BreakerCallCommand(
        db_path=db_path,
        breaker="agent:echo",
        prompt="not json",
        input_text=None,
        model="",
        fallback_payload={},
    )

    results: list[BreakerCallResult] = []
    threads = [
        threading.Thread(target=lambda: results.append(controller.call(command)))
        for _ in range(2)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert [result.success for result in results] == [False, False]
    status = CliRunner().invoke(agent_circuit, ["status", "--db-path", str(db_path)])
    assert "agent:echo: state=CLOSED failures=2 threshold=5" in status.output


def test_cache_fallback_serves_last_good_reply_while_open(tmp_path: Path, cli_env: None) -> None:
    db_path = tmp_path / "cb.db"
    good_prompt = '{"status": "active"}'

    first = _call(db_path, good_prompt, "--cache-fallback")
    assert first.exit_code == 0, first.output

    _call(db_path, "not json")
    _call(db_path, "still not json")

    cached = _call(db_path, good_prompt, "--cache-fallback", "--fallback-json", '{"status": "x"}')
    assert cached.exit_code == 0, cached.output
    payload = json.loads(cached.output.splitlines()[0])
    assert payload["status"] == "active"
    assert payload["circuit_state"] == "OPEN"
    assert payload["fallback"] is True

    uncached = _call(db_path, '{"status": "other"}', "--cache-fallback")
    assert json.loads(uncached.output.splitlines()[0])["fallback"] is True
    assert "status" not in json.loads(uncached.output.splitlines()[0])
