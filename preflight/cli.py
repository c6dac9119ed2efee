"""Preflight commands: validate credentials and inspect configuration."""

import asyncio
import logging
import sys
from typing import Optional

import typer

from telemetry.config import resolve_config
from preflight.inspector import inspect_config, render_report
from preflight.validator import PROBE_TIMEOUT_SECONDS, all_passed, run_validation

app = typer.Typer(
    help="Preflight checks for the telemetry configuration.",
    no_args_is_help=True,
)

BACKEND_LABELS = {
    "otlp": "OTLP (traces/metrics/logs)",
    "pyroscope": "Pyroscope",
}


def _env_file(value: Optional[str]) -> Optional[str]:
    # "--env-file ''" disables the dotenv file
    return value or None


@app.command(name="validate")
def validate(
    env_file: str = typer.Option(
        ".env",
        "--env-file",
        "-e",
        help="Dotenv file merged below the live environment.",
    ),
    timeout: float = typer.Option(
        PROBE_TIMEOUT_SECONDS,
        "--timeout",
        help="Seconds to wait for each backend probe.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log probe requests.",
    ),
) -> None:
    """Send a minimal write to each configured Grafana Cloud backend."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr)

    typer.echo("Validating telemetry configuration...\n")
    config = resolve_config(env_file=_env_file(env_file))
    outcomes = asyncio.run(run_validation(config, timeout=timeout))

    for backend, outcome in outcomes.items():
        label = BACKEND_LABELS.get(backend, backend)
        if outcome.skip:
            typer.echo(f"- {label}: skipped ({outcome.detail})")
        elif outcome.ok:
            typer.echo(f"✓ {label}: {outcome.detail}")
        else:
            typer.echo(f"✗ {label}: validation failed: {outcome.detail}", err=True)

    if not all_passed(outcomes):
        typer.echo("\n❌ Validation failed. Fix your configuration and try again.")
        raise typer.Exit(code=1)

    typer.echo("\n✓ All validations passed. Your configuration is working.")


@app.command(name="inspect")
def inspect(
    env_file: str = typer.Option(
        ".env",
        "--env-file",
        "-e",
        help="Dotenv file merged below the live environment.",
    ),
) -> None:
    """Print the resolved configuration and heuristic warnings (no network calls)."""
    config = resolve_config(env_file=_env_file(env_file))
    for line in render_report(inspect_config(config)):
        typer.echo(line)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
