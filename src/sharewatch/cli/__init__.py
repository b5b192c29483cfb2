"""CLI entry point — Click group with global options."""

from __future__ import annotations

import logging

import click

from sharewatch import __version__


@click.group()
@click.version_option(version=__version__, prog_name="sharewatch")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Path to config.yaml (default: $XDG_CONFIG_HOME/sharewatch/config.yaml).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Sharewatch — account-sharing detection for Plex, Jellyfin and Emby."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _register_commands() -> None:
    from sharewatch.cli.rules import rules  # noqa: F811
    from sharewatch.cli.scores import scores  # noqa: F811
    from sharewatch.cli.violations import violations  # noqa: F811
    from sharewatch.cli.watch import watch  # noqa: F811

    main.add_command(watch)
    main.add_command(rules)
    main.add_command(violations)
    main.add_command(scores)


_register_commands()
