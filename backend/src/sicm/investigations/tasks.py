"""Celery tasks for Suggested Investigations jobs.

Each task runs one service call on a fresh event loop and disposes the
database engine afterwards, since pooled connections cannot outlive the
loop they were opened on.
"""

import asyncio
from typing import Any

from ..db import close_all_connections
from ..worker import app
from .jobs import AUTOCLOSE_CASE, AUTOCLOSE_FOR_USER, MATCH_SIGNALS_AGAINST_USER
from .models import UserIdentity
from .services import get_autoclose_service, get_signal_match_service


def _run(coro):
    async def run():
        try:
            return await coro
        finally:
            await close_all_connections()

    return asyncio.run(run())


@app.task(name=AUTOCLOSE_CASE)
def autoclose_case_task(case_id: int) -> bool:
    """Resolve a case if all of its users are indefinitely blocked."""
    return _run(get_autoclose_service().autoclose_case(case_id))


@app.task(name=AUTOCLOSE_FOR_USER)
def autoclose_for_user_task(username: str) -> int:
    """Queue auto-close checks for a user's open cases on this wiki."""
    return _run(get_autoclose_service().autoclose_for_user(username))


@app.task(name=MATCH_SIGNALS_AGAINST_USER)
def match_signals_against_user_task(
    user_id: int,
    username: str,
    event_type: str,
    extra_data: dict[str, Any] | None = None,
) -> int | None:
    """Evaluate signals for a user.

    Returns:
        ID of the case the user was filed into, if any
    """
    user = UserIdentity(id=user_id, name=username)
    case = _run(get_signal_match_service().match_signals_against_user(user, event_type, extra_data))
    return case.id if case is not None else None
