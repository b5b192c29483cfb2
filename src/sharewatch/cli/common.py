"""Helpers shared by the CLI commands."""

from __future__ import annotations

import click
import yaml
from rich.console import Console

from sharewatch.config import SharewatchConfig
from sharewatch.rules.models import Severity

console = Console(stderr=True)

SEVERITY_COLORS = {
    Severity.HIGH: "red",
    Severity.WARNING: "yellow",
    Severity.LOW: "blue",
}

EXIT_CONFIG_ERROR = 2


def load_config(ctx: click.Context) -> SharewatchConfig:
    """Load configuration for a command, exiting with status 2 if it is invalid."""
    try:
        config = SharewatchConfig.load(ctx.obj.get("config_path"))
    except (OSError, ValueError, yaml.YAMLError) as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        ctx.exit(EXIT_CONFIG_ERROR)
    config.verbose = bool(ctx.obj.get("verbose"))
    return config
