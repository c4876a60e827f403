"""Subprocess-based LLM CLI call used as a protected operation."""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_RAW_PREVIEW_CHARS = 2_000

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)


class AgentCommandError(RuntimeError):
    """Agent command cannot be built or started."""


@dataclass(slots=True)
class AgentRequest:
    """Inputs for one agent call."""

    prompt: str
    input_text: str | None = None
    model: str = ""


@dataclass(slots=True)
class AgentReply:
    """Execution outcome with the JSON payload extracted from stdout."""

    exit_code: int
    timed_out: bool
    stdout: str
    stderr: str
    duration_seconds: float
    payload: dict[str, Any] = field(default_factory=dict)


class CliAgentOperation:
    """Run an LLM CLI from a command template and parse its JSON reply.

    The template must contain `{prompt}` and may contain `{model}`; values are
    shell-quoted before the command is split into argv.
    """

    def __init__(self, command_template: str, *, timeout_seconds: float = 15.0) -> None:
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {timeout_seconds}.")
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def __call__(self, request: AgentRequest | str) -> AgentReply:
        if isinstance(request, str):
            request = AgentRequest(prompt=request)
        argv = build_run_args(
            command_template=self.command_template,
            prompt=request.prompt,
            model=request.model,
        )
        started = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                env=os.environ.copy(),
                stdin=subprocess.PIPE if request.input_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as error:
            raise AgentCommandError(f"Agent command not found: {argv[0]}") from error
        except OSError as error:
            raise AgentCommandError(f"Agent command failed to start: {error}") from error

        try:
            stdout, stderr = process.communicate(
                input=request.input_text,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            _terminate_process(process)
            duration = time.monotonic() - started
            logger.warning("Agent command timed out after %.1fs: %s", duration, argv[0])
            return AgentReply(
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                stdout="",
                stderr="",
                duration_seconds=duration,
                payload={"error": "timeout", "duration": f"{self.timeout_seconds:g}s"},
            )

        return AgentReply(
            exit_code=process.returncode,
            timed_out=False,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=time.monotonic() - started,
            payload=extract_payload(
                stdout=stdout,
                stderr=stderr,
                exit_code=process.returncode,
            ),
        )


def build_run_args(*, command_template: str, prompt: str, model: str = "") -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentCommandError("Agent command template is empty.")
    if "{prompt}" not in stripped:
        raise AgentCommandError("Agent command template must include {prompt}.")
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            model=shlex.quote(model),
        )
    except (KeyError, IndexError) as error:
        raise AgentCommandError(
            f"Unsupported command template placeholder: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentCommandError("Agent command template rendered empty command.")
    return argv


def extract_payload(*, stdout: str, stderr: str = "", exit_code: int = 0) -> dict[str, Any]:
    """Extract the reply object, or an `error` payload the classifier will fail."""

    text = stdout.strip()
    if exit_code != 0:
        return {
            "error": "agent_failed",
            "exit_code": exit_code,
            "raw": (stderr.strip() or text)[-_RAW_PREVIEW_CHARS:],
        }

    envelope = _parse_json_payload(text) if text else None
    if envelope is not None and _is_cli_envelope(envelope):
        if envelope.get("is_error") is True:
            return {"error": "agent_error", "raw": envelope["result"][-_RAW_PREVIEW_CHARS:]}
        text = envelope["result"].strip()
        envelope = _parse_json_payload(text) if text else None

    if envelope is None:
        return {"error": "invalid_json", "raw": text[:_RAW_PREVIEW_CHARS]}
    return envelope


def _is_cli_envelope(payload: dict[str, Any]) -> bool:
    # `--output-format json` wraps the model text as {"type": "result", "result": "..."}
    return payload.get("type") == "result" and isinstance(payload.get("result"), str)


def _parse_json_payload(text: str) -> dict[str, Any] | None:
    direct = _try_load_dict(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(text[start : end + 1])


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.communicate(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.communicate(timeout=2)
