"""CLI command: sharewatch watch — poll every configured server until stopped."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Any

import click
import yaml

from sharewatch.cli.common import EXIT_CONFIG_ERROR, SEVERITY_COLORS, console, load_config
from sharewatch.config import SharewatchConfig
from sharewatch.events import (
    SERVER_DOWN,
    SERVER_UP,
    SESSION_STARTED,
    SESSION_STOPPED,
    VIOLATION_CREATED,
    AlertSubscriber,
    EventBus,
)
from sharewatch.poller.supervisor import PollerSupervisor
from sharewatch.rules.loader import load_rules
from sharewatch.rules.models import Rule, Severity
from sharewatch.storage.db import get_db


@click.command()
@click.option(
    "--rules",
    "rules_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML rules file (replaces the rules in config.yaml).",
)
@click.pass_context
def watch(ctx: click.Context, rules_path: str | None) -> None:
    """Poll media servers and report sessions and violations."""
    config = load_config(ctx)
    if not config.servers:
        console.print("[red]No servers configured.[/red] Add a 'servers:' list to config.yaml.")
        ctx.exit(EXIT_CONFIG_ERROR)

    rules = config.rules
    if rules_path:
        try:
            rules = load_rules(rules_path)
        except (ValueError, yaml.YAMLError) as exc:
            console.print(f"[red]Invalid rules file:[/red] {exc}")
            ctx.exit(EXIT_CONFIG_ERROR)

    console.print(
        f"[bold]Sharewatch[/bold] watching {len(config.servers)} server(s) "
        f"with {len(rules)} rule(s)"
    )
    console.print(f"  Database: [dim]{config.database}[/dim]")
    console.print("  Press Ctrl+C to stop.\n")

    asyncio.run(_watch(config, rules))


async def _watch(config: SharewatchConfig, rules: list[Rule]) -> None:
    db = await get_db(config.database)
    bus = EventBus()
    AlertSubscriber().attach(bus)
    bus.subscribe(_print_event)
    supervisor = PollerSupervisor(config, db, rules=rules, bus=bus)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, supervisor.request_stop)

    try:
        await supervisor.run_forever()
    finally:
        await db.close()
        console.print("\n[dim]Stopped.[/dim]")


def _print_event(event_type: str, payload: dict[str, Any]) -> None:
    if event_type == SESSION_STARTED:
        where = payload.get("city") or payload.get("country") or payload.get("ip_address")
        console.print(
            f"  [green]▶[/green] {payload.get('username')} "
            f"[cyan]{payload.get('title')}[/cyan] on {payload.get('player_name')} "
            f"[dim]({where})[/dim]"
        )
    elif event_type == SESSION_STOPPED:
        minutes = (payload.get("duration_ms") or 0) / 60000
        console.print(
            f"  [dim]■ {payload.get('username')} {payload.get('title')} "
            f"({minutes:.1f} min)[/dim]"
        )
    elif event_type == VIOLATION_CREATED:
        color = SEVERITY_COLORS.get(Severity(payload["severity"]), "white")
        console.print(
            f"  [{color}]⚠ VIOLATION[/{color}] [{color}]{payload['severity'].upper()}"
            f"[/{color}] {payload.get('rule_name')} — account {payload.get('account_id')}"
        )
    elif event_type == SERVER_DOWN:
        console.print(f"  [red]Server {payload.get('server_id')} is down[/red]")
    elif event_type == SERVER_UP:
        console.print(f"  [green]Server {payload.get('server_id')} is back up[/green]")
