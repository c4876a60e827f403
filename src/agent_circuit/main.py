"""CLI entrypoint for agent-circuit."""

import json
import logging
from pathlib import Path

import rich_click as click

from agent_circuit import __version__
from agent_circuit.controllers import (
    BreakerCallCommand,
    BreakerCliController,
    BreakerResetCommand,
    BreakerStatusCommand,
)
from agent_circuit.storage import SnapshotLockTimeoutError

click.rich_click.USE_MARKDOWN = True
BREAKER_CONTROLLER = BreakerCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-circuit")
@click.option("--verbose", is_flag=True, default=False, help="Log breaker transitions.")
def agent_circuit(verbose: bool) -> None:
    """Circuit breaker for LLM agent calls."""

    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


@agent_circuit.command("call")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--breaker", "breaker_name", required=True, help="Breaker name, e.g. agent:claude.")
@click.option("--prompt", required=True, help="Prompt passed to the agent command template.")
@click.option("--input", "input_text", default=None, help="Optional text piped to agent stdin.")
@click.option("--model", default="", help="Value for the {model} template placeholder.")
@click.option(
    "--fallback-json",
    default="{}",
    show_default=True,
    help="JSON object returned (with circuit fields) while the breaker denies calls.",
)
@click.option(
    "--cache-fallback",
    is_flag=True,
    default=False,
    help="Serve the last successful reply for the same request while the breaker denies calls.",
)
def call(
    db_path: Path | None,
    breaker_name: str,
    prompt: str,
    input_text: str | None,
    model: str,
    fallback_json: str,
    cache_fallback: bool,
) -> None:
    """Run one agent call through its circuit breaker and print the JSON reply."""

    try:
        fallback_payload = json.loads(fallback_json)
    except json.JSONDecodeError as error:
        raise click.BadParameter(f"invalid JSON: {error}", param_hint="--fallback-json") from error
    if not isinstance(fallback_payload, dict):
        raise click.BadParameter("expected a JSON object", param_hint="--fallback-json")

    try:
        result = BREAKER_CONTROLLER.call(
            BreakerCallCommand(
                db_path=db_path,
                breaker=breaker_name,
                prompt=prompt,
                input_text=input_text,
                model=model,
                fallback_payload=fallback_payload,
                cache_fallback=cache_fallback,
            ),
        )
    except SnapshotLockTimeoutError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Agent call failed.")


@agent_circuit.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--breaker", "breaker_name", default=None, help="Show only this breaker.")
def status(db_path: Path | None, breaker_name: str | None) -> None:
    """Show persisted breaker state."""

    _emit_lines(
        BREAKER_CONTROLLER.status(
            BreakerStatusCommand(db_path=db_path, breaker=breaker_name),
        ),
    )


@agent_circuit.command("reset")
@click.argument("breaker_name")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def reset(breaker_name: str, db_path: Path | None) -> None:
    """Force a persisted breaker back to CLOSED."""

    try:
        lines = BREAKER_CONTROLLER.reset(
            BreakerResetCommand(db_path=db_path, breaker=breaker_name),
        )
    except SnapshotLockTimeoutError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_circuit()
