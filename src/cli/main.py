"""CLI entry point for the Gmail sync engine."""

import logging

import click
from dotenv import load_dotenv

from src.agent.watcher import SyncConfig

logger = logging.getLogger(__name__)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log sync activity to stderr.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Gmail mailbox sync — threads, unread feed, and auth commands."""
    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,  # keep CLI output clean
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    ctx.obj = SyncConfig.from_env()


# Import and register commands after cli is defined to avoid circular imports.
from src.cli.commands import history, profile, threads, unread, upgrade  # noqa: E402

cli.add_command(threads)
cli.add_command(unread)
cli.add_command(upgrade)
cli.add_command(profile)
cli.add_command(history)
