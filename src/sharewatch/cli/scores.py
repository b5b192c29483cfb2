"""CLI command: sharewatch scores — account and identity trust scores."""

from __future__ import annotations

import asyncio

import click
from rich.table import Table

from sharewatch.cli.common import console, load_config
from sharewatch.config import SharewatchConfig
from sharewatch.storage.db import DEFAULT_TRUST_SCORE, get_db
from sharewatch.storage.repos import TrustScoreRepo


def _score_style(score: int) -> str:
    if score < 50:
        return "red"
    if score < 80:
        return "yellow"
    return "green"


@click.command()
@click.pass_context
def scores(ctx: click.Context) -> None:
    """Show trust scores (accounts without violations stay at 100)."""
    config = load_config(ctx)
    accounts, identities = asyncio.run(_load(config))

    table = Table(title="Account trust scores")
    table.add_column("Account", style="cyan")
    table.add_column("Score", justify="right")
    for row in accounts:
        style = _score_style(row["score"])
        table.add_row(row["account_id"], f"[{style}]{row['score']}[/{style}]")
    if not accounts:
        table.add_row("[dim]all accounts[/dim]", str(DEFAULT_TRUST_SCORE))
    console.print(table)

    if config.identities:
        recorded = {row["identity"]: row["score"] for row in identities}
        id_table = Table(title="Identity trust scores")
        id_table.add_column("Identity", style="cyan")
        id_table.add_column("Accounts")
        id_table.add_column("Score", justify="right")
        for name, members in sorted(config.identities.items()):
            score = recorded.get(name, DEFAULT_TRUST_SCORE)
            style = _score_style(score)
            id_table.add_row(name, ", ".join(members), f"[{style}]{score}[/{style}]")
        console.print(id_table)


async def _load(config: SharewatchConfig) -> tuple[list[dict], list[dict]]:
    db = await get_db(config.database)
    try:
        repo = TrustScoreRepo(db)
        return await repo.list_accounts(), await repo.list_identities()
    finally:
        await db.close()
