"""Command line entry points for Aularis."""

from ..configuration.cli import config_app
from .pipeline import pipeline_app


cli = pipeline_app
cli.add_typer(config_app, name="config")

__all__ = ["cli", "config_app", "pipeline_app"]
