"""CLI entry points for SICM.

Provides command-line tools for:
- Inspecting and updating Suggested Investigations cases
- Queueing auto-close checks
- Creating the case tables
"""

import asyncio

import click

from ..config import get_settings
from ..db import close_all_connections, create_tables
from ..investigations.services import load_host_configuration
from ..logging import setup_logging
from .cases import case_group


@click.group()
@click.version_option(version="0.1.0", prog_name="sicm")
@click.option(
    "--host-module",
    default=None,
    help="Module (or module:function) that calls configure_services(); "
    "defaults to the HOST_MODULE setting",
)
def main(host_module: str | None):
    """SICM - Suggested Investigations Case Management.

    Command-line tools for reviewing cases and running
    auto-close maintenance.
    """
    setup_logging()

    host_module = host_module or get_settings().host_module
    if host_module:
        try:
            load_host_configuration(host_module)
        except (ImportError, AttributeError) as e:
            raise click.BadParameter(
                f"cannot load {host_module}: {e}", param_hint="--host-module"
            ) from e


@main.command("init-db")
def init_db() -> None:
    """Create the case tables if they do not exist."""

    async def _init() -> None:
        try:
            await create_tables()
        finally:
            await close_all_connections()

    asyncio.run(_init())
    click.echo("Case tables are ready.")


main.add_command(case_group, name="case")


if __name__ == "__main__":
    main()
