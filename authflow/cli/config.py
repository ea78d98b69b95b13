"""Configuration management CLI commands."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click
import yaml

# Common option for JSON output
json_option = click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output results as JSON for scripting",
)


def output_result(data: dict[str, Any], as_json: bool = False) -> None:
    """Output result as JSON or YAML.

    Args:
        data: Data to output
        as_json: If True, output as JSON
    """
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


def error_result(message: str, as_json: bool = False) -> NoReturn:
    """Output error message and exit.

    This function never returns - it either raises ClickException or calls sys.exit.
    """
    if as_json:
        click.echo(json.dumps({"error": message}, indent=2), err=True)
        sys.exit(1)
    raise click.ClickException(message)


@click.group()
def config() -> None:
    """Manage AuthFlow configuration."""
    pass


@config.command("show")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),  # type: ignore[type-var]
    help="Path to config.yaml",
)
@json_option
def config_show(config_path: Path | None, output_json: bool) -> None:
    """Show the effective configuration.

    The output merges defaults, config.yaml and AUTHFLOW_* environment
    variables, in that order of precedence.
    """
    from authflow.core.config import load_config

    app_config = load_config(config_path)
    data = app_config.to_dict()
    if app_config.config_path and not output_json:
        click.echo(f"# Loaded from {app_config.config_path}")
    output_result(data, output_json)


@config.command("init")
@click.option(
    "--path",
    "config_path",
    type=click.Path(path_type=Path),  # type: ignore[type-var]
    help="Where to write config.yaml. Defaults to ~/.authflow/config.yaml",
)
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite an existing config file.",
)
@json_option
def config_init(config_path: Path | None, force: bool, output_json: bool) -> None:
    """Write the commented default config.yaml.

    Examples:

        # Write to the default location
        authflow config init

        # Write next to a deployment
        authflow config init --path ./config.yaml
    """
    from authflow.core.config import DEFAULT_CONFIG_FILE, get_default_config_yaml

    path = config_path or DEFAULT_CONFIG_FILE
    if path.exists() and not force:
        error_result(f"Config file already exists: {path}. Use --force to overwrite.", output_json)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_default_config_yaml())

    if output_json:
        click.echo(json.dumps({"status": "created", "path": str(path)}, indent=2))
    else:
        click.echo(f"Configuration written to: {path}")
