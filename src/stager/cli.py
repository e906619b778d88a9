"""CLI commands for staged agent runs."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer

from .collaborators import CREDENTIAL_ENV_VARS, JsonSettingsStore
from .config import DEFAULT_CONFIG_NAME, ConfigError, StagerConfig, load_config, write_config
from .events import AgentEvent
from .models import ClaudeCodeClient
from .orchestrator import OrchestrationRequest, OrchestrationResult, Orchestrator
from .tools.gates import Validator, phases_from_config
from .tools.workspace import list_workspaces, sweep_stale_workspaces

APP_HELP = "Run a coding agent against a disposable copy of a project and merge changes only after validation."

app = typer.Typer(help=APP_HELP)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config: str) -> StagerConfig:
    config_path = Path(config)
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")
    try:
        return load_config(config_path)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _build_client(config: StagerConfig) -> ClaudeCodeClient:
    agent = config.agent
    env: dict[str, Optional[str]] = {}
    credential = JsonSettingsStore(config.settings_path).credential(agent.credential)
    env_name = CREDENTIAL_ENV_VARS.get(agent.credential)
    if credential and env_name:
        env[env_name] = credential
    try:
        return ClaudeCodeClient(
            command=agent.command,
            permission_mode=agent.permission_mode,
            model=agent.model,
            env=env,
        )
    except ValueError as error:
        typer.echo(f"Failed to initialise agent client: {error}")
        raise typer.Exit(code=1) from error


def _print_event(event: AgentEvent) -> None:
    typer.echo(f"{event.icon} {event.text}")


def _render_result(result: OrchestrationResult) -> None:
    if result.success:
        typer.echo(result.summary())
        for path in result.changed_files:
            typer.echo(f"- {path}")
        if result.response_text:
            typer.echo("")
            typer.echo(result.response_text)
        return

    typer.echo(result.summary())
    if result.diagnostic:
        typer.echo("")
        typer.echo(result.diagnostic)
    if result.provision_error:
        typer.echo(f"Note: dependency provisioning failed: {result.provision_error}")


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file to create.",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write the default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config_path)
    typer.echo(f"Wrote default configuration to {config_path}")


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Instruction handed to the coding agent."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    max_turns: Optional[int] = typer.Option(None, "--max-turns", min=1, help="Override agent.max_turns."),
    timeout: Optional[float] = typer.Option(None, "--timeout", min=1, help="Override agent.timeout in seconds."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not print live progress events."),
    json_output: bool = typer.Option(False, "--json", help="Print the result as JSON."),
) -> None:
    """Run the agent in a staging copy, validate, and merge changes on success."""
    if not prompt.strip():
        raise typer.BadParameter("A non-empty prompt is required.", param_hint="PROMPT")
    stager_config = _load(config)
    orchestrator = Orchestrator(stager_config, _build_client(stager_config))
    subscribers = [] if quiet or json_output else [_print_event]
    request = OrchestrationRequest(prompt=prompt, max_turns=max_turns, timeout=timeout)

    result = orchestrator.run(request, subscribers)

    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _render_result(result)
    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def validate(
    path: Optional[Path] = typer.Argument(None, help="Tree to validate; defaults to the project root."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Run the configured validation phases against a tree without staging it."""
    stager_config = _load(config)
    target = (path or stager_config.repo_root).resolve()
    if not target.is_dir():
        raise typer.BadParameter(f"Not a directory: {target}", param_hint="PATH")

    validator = Validator(
        phases_from_config(stager_config.validation.phases),
        timeout=stager_config.validation.timeout,
    )
    result = validator.validate(target)
    typer.echo(result.format_summary())
    if not result.success:
        if result.diagnostic:
            typer.echo("")
            typer.echo(result.diagnostic)
        raise typer.Exit(code=1)


@app.command()
def clean(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    all_workspaces: bool = typer.Option(
        False,
        "--all",
        help="Remove every leftover staging directory regardless of age.",
    ),
) -> None:
    """Remove staging directories left behind by interrupted runs."""
    stager_config = _load(config)
    workspace = stager_config.workspace
    removed = sweep_stale_workspaces(
        stager_config.staging_base,
        prefix=workspace.prefix,
        retention_hours=0 if all_workspaces else workspace.retention_hours,
        max_workspaces=0 if all_workspaces else workspace.max_workspaces,
    )
    if removed:
        typer.echo(f"Removed {len(removed)} stale workspace(s):")
        for entry in removed:
            typer.echo(f"- {entry}")
    else:
        typer.echo("No stale workspaces found.")


@app.command()
def status(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    )
) -> None:
    """Validate configuration and report basic status information."""
    config_path = Path(config)
    stager_config = _load(config)
    base = stager_config.staging_base

    typer.echo(f"Loaded configuration from {config_path}")
    typer.echo(f"Project: {stager_config.project.name or 'unnamed'}")
    typer.echo(f"Project root: {stager_config.repo_root}")
    typer.echo(f"Staging base: {base if base is not None else 'system temp directory'}")
    typer.echo(f"Excluded paths: {', '.join(stager_config.workspace.skip_paths) or 'none'}")
    phases = phases_from_config(stager_config.validation.phases)
    typer.echo(f"Validation phases: {', '.join(phase.name for phase in phases)}")
    typer.echo(f"Run logs: {stager_config.logs_dir}")

    leftovers = list_workspaces(base, prefix=stager_config.workspace.prefix)
    typer.echo(f"Leftover workspaces: {len(leftovers)}")


if __name__ == "__main__":
    app()
