"""CLI commands for Suggested Investigations cases.

Provides commands for inspecting cases, changing their status and queueing
auto-close checks.
"""

import asyncio
import json

import click

from ..db import close_all_connections
from ..investigations.errors import (
    CaseNotFoundError,
    ServicesNotConfiguredError,
    SuggestedInvestigationsDisabledError,
)
from ..investigations.lookup import CaseLookupService
from ..investigations.manager import CaseManager
from ..investigations.models import CaseStatus
from ..investigations.services import get_autoclose_service, get_dispatcher


def _parse_status(ctx: click.Context, param: click.Parameter, value: str | None) -> CaseStatus | None:
    if value is None:
        return None
    status = CaseStatus.from_string_name(value)
    if status is None:
        raise click.BadParameter(
            f"'{value}' is not a case status (open, resolved, closed, invalid)"
        )
    return status


def _run(coro):
    """Run a coroutine, turning expected failures into CLI errors."""

    async def run():
        try:
            return await coro
        finally:
            await close_all_connections()

    try:
        return asyncio.run(run())
    except (SuggestedInvestigationsDisabledError, CaseNotFoundError) as e:
        raise click.ClickException(str(e)) from e
    except ServicesNotConfiguredError as e:
        raise click.ClickException(
            f"{e}. Pass --host-module or set HOST_MODULE to the module that does so."
        ) from e


@click.group("case")
def case_group() -> None:
    """Manage Suggested Investigations cases."""
    pass


@case_group.command("show")
@click.argument("case_id", type=int)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def show_case(case_id: int, as_json: bool) -> None:
    """Show a case with its users and signals."""

    async def _show() -> None:
        case = await CaseLookupService().get_case(case_id)

        if case is None:
            raise click.ClickException(f"Case not found: {case_id}")

        if as_json:
            click.echo(json.dumps(case.model_dump(mode="json"), indent=2))
            return

        click.echo(f"Case: {case.id} ({case.url_identifier_hex})")
        click.echo(f"  Status: {case.status.label}")
        if case.status_reason:
            click.echo(f"  Reason: {case.status_reason}")
        click.echo(f"  Updated: {case.updated_at}")
        click.echo("")
        click.echo(f"  Users ({len(case.users)}):")
        for member in case.users:
            click.echo(f"    {member.user_id} (flags: {int(member.info_flags)})")
        click.echo(f"  Signals ({len(case.signals)}):")
        for signal in case.signals:
            trigger = ""
            if signal.trigger_id:
                trigger = f" [{signal.trigger_type.table_name} {signal.trigger_id}]"
            click.echo(f"    {signal.name} = {signal.value}{trigger}")

    _run(_show())


@case_group.command("list")
@click.option("--status", "-s", callback=_parse_status, help="Filter by status")
@click.option("--limit", "-l", default=20, type=int, help="Maximum results")
@click.option("--offset", default=0, type=int, help="Results to skip")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def list_cases(status: CaseStatus | None, limit: int, offset: int, as_json: bool) -> None:
    """List cases, most recently updated first."""

    async def _list() -> None:
        cases, total = await CaseLookupService().list_cases(
            status=status, limit=limit, offset=offset
        )

        if as_json:
            data = {
                "items": [c.model_dump(mode="json") for c in cases],
                "total": total,
            }
            click.echo(json.dumps(data, indent=2))
        else:
            click.echo(f"Cases ({total} total):")
            click.echo("")
            for case in cases:
                click.echo(f"  {case.id}")
                click.echo(f"    Status: {case.status.label}")
                click.echo(f"    Updated: {case.updated_at}")
                click.echo("")

    _run(_list())


@case_group.command("set-status")
@click.argument("case_id", type=int)
@click.argument("status", callback=_parse_status)
@click.option("--reason", "-r", default="", help="Reason for the change")
@click.option("--performer-id", type=int, default=None, help="User ID of the investigator")
def set_status(case_id: int, status: CaseStatus, reason: str, performer_id: int | None) -> None:
    """Change the status of a case."""

    async def _set() -> None:
        await CaseManager().set_case_status(case_id, status, reason, performer_id)

    _run(_set())
    click.echo(f"Case {case_id} is now {status.label}")


@case_group.command("dispatch-autoclose")
@click.argument("username")
def dispatch_autoclose(username: str) -> None:
    """Ask a user's other wikis to re-check their cases."""

    async def _dispatch() -> int:
        return await get_dispatcher().dispatch(username)

    pushed = _run(_dispatch())
    click.echo(f"Queued {pushed} cross-wiki auto-close job(s) for {username}")


@case_group.command("queue-autoclose")
@click.option("--batch-size", default=100, type=int, help="Cases per batch")
def queue_autoclose(batch_size: int) -> None:
    """Queue an auto-close check for every open case."""

    async def _queue() -> int:
        return await get_autoclose_service().queue_autoclose_for_open_cases(batch_size)

    queued = _run(_queue())
    click.echo(f"Done. Queued {queued} auto-close job(s).")
