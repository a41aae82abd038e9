"""CLI commands for managing Aularis settings."""

from __future__ import annotations

import json
from pathlib import Path

import typer

from aularis.configuration.settings import (
    DEFAULT_CONFIG_PATH,
    Settings,
    _mask_secret_fields,
    load_settings,
    save_settings,
    validate_settings_file,
)
from aularis.errors import ConfigurationError, format_error_for_cli


config_app = typer.Typer(help="Manage Aularis configuration")


@config_app.command("init")
def init_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
) -> None:
    """Write a configuration file with default values."""

    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path} (use --force)")
        raise typer.Exit(1)
    save_settings(Settings(), config_path)
    typer.echo(f"Configuration initialized at {config_path}")


@config_app.command("show")
def show_config(config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config")) -> None:
    """Display effective configuration with secrets masked."""

    try:
        settings = load_settings(config_path)
    except ConfigurationError as exc:
        typer.echo(format_error_for_cli(exc), err=True)
        raise typer.Exit(1)
    payload = _mask_secret_fields(settings.model_dump(mode="json"))
    typer.echo(json.dumps(payload, indent=2))


@config_app.command("validate")
def validate_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config"),
) -> None:
    """Check a configuration file without applying environment overrides."""

    errors = validate_settings_file(config_path)
    if errors:
        for error in errors:
            typer.echo(f"  - {error}", err=True)
        raise typer.Exit(1)
    typer.echo("Configuration is valid")


__all__ = ["config_app"]
