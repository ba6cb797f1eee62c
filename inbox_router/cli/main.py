"""CLI entry point for the forwarded-mail router."""

import logging
from dataclasses import dataclass

import click
from dotenv import load_dotenv

from inbox_router.agent.config import IngestConfig
from inbox_router.storage.db import RouterDatabase

logger = logging.getLogger(__name__)


@dataclass
class RouterContext:
    """Objects shared by every command."""

    config: IngestConfig
    db: RouterDatabase


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Forwarded-mail router — run ingestion, manage routes, inspect destinations."""
    load_dotenv()
    logging.basicConfig(
        level=logging.WARNING,  # keep CLI output clean; errors still surface
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    config = IngestConfig.from_env()
    db = RouterDatabase(db_path=config.db_path)
    ctx.obj = RouterContext(config=config, db=db)
    ctx.call_on_close(db.close)


# Import and register commands after cli is defined to avoid circular imports.
from inbox_router.cli.commands import (  # noqa: E402
    destinations,
    route_add,
    route_remove,
    routes,
    run,
    show,
    status,
)

cli.add_command(run)
cli.add_command(status)
cli.add_command(routes)
cli.add_command(route_add)
cli.add_command(route_remove)
cli.add_command(destinations)
cli.add_command(show)
