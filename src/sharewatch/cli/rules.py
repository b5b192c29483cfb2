"""CLI commands: sharewatch rules — inspect rule files."""

from __future__ import annotations

import sys

import click
import yaml
from rich.table import Table

from sharewatch.cli.common import EXIT_CONFIG_ERROR, console
from sharewatch.rules.loader import check_params, load_rules


@click.group()
def rules() -> None:
    """Inspect detection rules."""


@rules.command("check")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def check(ctx: click.Context, path: str) -> None:
    """Load a rules file and show each rule with its parameter status."""
    try:
        loaded = load_rules(path)
    except (ValueError, yaml.YAMLError) as exc:
        console.print(f"[red]Invalid rules file:[/red] {exc}")
        ctx.exit(EXIT_CONFIG_ERROR)

    table = Table(title=f"Rules ({len(loaded)})")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Scope")
    table.add_column("Active", justify="center")
    table.add_column("Params")

    invalid = 0
    for rule in loaded:
        problem = check_params(rule)
        if problem:
            invalid += 1
        table.add_row(
            rule.id,
            rule.name,
            rule.type.value,
            rule.account or "all accounts",
            "yes" if rule.active else "[dim]no[/dim]",
            f"[red]{problem}[/red]" if problem else "[green]ok[/green]",
        )

    console.print(table)
    if invalid:
        console.print(f"\n[red]{invalid} rule(s) have invalid params and will be skipped[/red]")
        sys.exit(1)
