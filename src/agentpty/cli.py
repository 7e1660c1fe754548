"""CLI entry point for agentpty."""

from __future__ import annotations

import asyncio
import json
import logging

import typer

from agentpty.config import AgentConfig, SpawnOptions
from agentpty.errors import AgentPTYError
from agentpty.runtime import ParsedOutput, Runtime
from agentpty.runtime.parsers import OutputKind

app = typer.Typer(
    name="agentpty",
    help="Run interactive CLI agents inside managed pseudo-terminals.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_config(config_file: str | None) -> AgentConfig:
    try:
        return AgentConfig.load(config_file)
    except AgentPTYError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def check(
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Agent definition (JSON or YAML)."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
) -> None:
    """Probe the configured CLI binary with --version."""
    setup_logging(verbose)
    config = _load_config(config_file)

    async def _check() -> int:
        async with Runtime(config) as runtime:
            result = await runtime.check_availability()
        typer.echo(f"Binary: {config.claude_code.binary_path}")
        if result.available:
            typer.echo(f"Available: yes ({result.version})")
            return 0
        typer.echo(f"Available: no ({result.error})")
        return 1

    try:
        code = asyncio.run(_check())
    except AgentPTYError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    raise typer.Exit(code)


@app.command()
def run(
    task: str = typer.Argument(help="Task to type into the CLI."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Agent definition (JSON or YAML)."
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", help="Model override for this session."
    ),
    timeout: float = typer.Option(
        300.0, "--timeout", "-t", help="Seconds to wait for completion."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
) -> None:
    """Start a session, stream its classified output, and wait for completion."""
    setup_logging(verbose)
    config = _load_config(config_file)

    def _print(output: ParsedOutput) -> None:
        if output.kind == OutputKind.RAW:
            typer.echo(output.content, nl=False)
        elif output.kind == OutputKind.STATUS and output.data is not None:
            typer.echo(json.dumps(output.data))
        elif output.kind == OutputKind.PROMPT:
            typer.echo(f"\n[prompt] {output.content.strip()}")

    async def _run() -> int:
        runtime = Runtime(config)
        try:
            session = await runtime.start_session(SpawnOptions(task=task, model=model))
            typer.echo(f"Session: {session.session_id} (pid {session.pid})")
            runtime.on_output(session.session_id, _print)
            result = await runtime.wait_for_completion(session.session_id, timeout)
            typer.echo(f"\n--- completed ---\n{result.content.strip()}")
            await runtime.stop_session(session.session_id)
            return 0
        except AgentPTYError as e:
            typer.echo(f"\nError: {e}", err=True)
            return 1
        finally:
            await runtime.shutdown()

    try:
        code = asyncio.run(_run())
    except AgentPTYError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    raise typer.Exit(code)


@app.command()
def version() -> None:
    """Print the agentpty version."""
    from agentpty import __version__

    typer.echo(f"agentpty v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
