"""CLI commands: sharewatch violations — list and acknowledge violations."""

from __future__ import annotations

import asyncio
import time

import click
from rich.table import Table

from sharewatch.cli.common import SEVERITY_COLORS, console, load_config
from sharewatch.config import SharewatchConfig
from sharewatch.rules.models import Violation
from sharewatch.storage.db import get_db
from sharewatch.storage.repos import ViolationRepo


@click.group()
def violations() -> None:
    """Review recorded violations."""


@violations.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include acknowledged violations.")
@click.option("--limit", type=int, default=100, show_default=True)
@click.pass_context
def list_violations(ctx: click.Context, show_all: bool, limit: int) -> None:
    """List open (unacknowledged) violations, newest first."""
    config = load_config(ctx)
    found = asyncio.run(_list(config, show_all, limit))
    if not found:
        console.print("[dim]No violations.[/dim]")
        return

    table = Table(title="Violations")
    table.add_column("ID", style="cyan")
    table.add_column("When")
    table.add_column("Severity", style="bold", width=8)
    table.add_column("Rule")
    table.add_column("Account")
    table.add_column("Session")
    table.add_column("Ack", justify="center")

    for v in found:
        color = SEVERITY_COLORS.get(v.severity, "white")
        table.add_row(
            v.id,
            time.strftime("%Y-%m-%d %H:%M", time.localtime(v.created_at)),
            f"[{color}]{v.severity.value}[/{color}]",
            f"{v.rule_name} ({v.rule_type.value})",
            v.account_id,
            v.session_id,
            "yes" if v.acknowledged_at else "",
        )
    console.print(table)


@violations.command("ack")
@click.argument("violation_id")
@click.pass_context
def ack(ctx: click.Context, violation_id: str) -> None:
    """Acknowledge a violation so the same anomaly can be reported again."""
    config = load_config(ctx)
    if asyncio.run(_ack(config, violation_id)):
        console.print(f"Acknowledged [cyan]{violation_id}[/cyan]")
    else:
        console.print(f"[red]No open violation with id {violation_id}[/red]")
        ctx.exit(1)


async def _list(config: SharewatchConfig, show_all: bool, limit: int) -> list[Violation]:
    db = await get_db(config.database)
    try:
        return await ViolationRepo(db).list_all(include_acknowledged=show_all, limit=limit)
    finally:
        await db.close()


async def _ack(config: SharewatchConfig, violation_id: str) -> bool:
    db = await get_db(config.database)
    try:
        return await ViolationRepo(db).acknowledge(violation_id)
    finally:
        await db.close()
