"""Case lifecycle management for Suggested Investigations.

The CaseManager is the only writer of case data. It decides whether a batch
of signal matches joins an existing open case or starts a new one, attaches
users and signals to cases, and changes case status.
"""

import logging
import secrets
from collections.abc import Sequence
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings, get_settings
from ..db import get_session_factory, session_scope
from ..logging import log_case_created, log_case_merged, log_case_status_change
from . import store
from .errors import CaseNotFoundError, SuggestedInvestigationsDisabledError
from .models import Case, CaseStatus, CaseUser, TriggerType, UserIdentity
from .signals import PositiveSignalMatch, SignalMatchResult

logger = logging.getLogger(__name__)


class CaseManager:
    """Creates cases and changes their users, signals and status.

    Merging works on the signal values recorded in open cases. When
    ``create_case`` is given a signal that allows merging, it looks for the
    lowest-numbered open case that recorded the same value under the
    signal's name or one of its equivalent names. The first such case found,
    scanning the batch's signals in order, receives every user and every
    signal in the batch. Without one, a single new case is created.

    The search and the write run in one transaction that holds the merge
    locks for the batch's mergeable values, so two concurrent batches with
    the same value end up in the same case.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ):
        """Initialize the CaseManager.

        Args:
            session_factory: Optional session factory. If not provided, the
                default factory from :mod:`sicm.db` is used.
            settings: Optional settings, defaults to :func:`get_settings`
        """
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    @asynccontextmanager
    async def _get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Run one unit of work.

        Usage:
            async with self._get_session() as session:
                await session.execute(...)
        """
        async with session_scope(self._session_factory or get_session_factory()) as session:
            yield session

    def _assert_enabled(self) -> None:
        if not self._settings.suggested_investigations_enabled:
            raise SuggestedInvestigationsDisabledError()

    @staticmethod
    def _to_positive_signals(
        signals: Sequence[SignalMatchResult],
    ) -> list[PositiveSignalMatch]:
        positives = []
        for signal in signals:
            if not isinstance(signal, PositiveSignalMatch):
                raise ValueError(f"Signal {signal.name} did not match and cannot be added to a case")
            # Unknown trigger tables fail here, before anything is written
            TriggerType.from_table_name(signal.trigger_id_table)
            positives.append(signal)
        return positives

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._settings.merge_retry_attempts),
            wait=wait_exponential(multiplier=0.1, max=2),
            retry=retry_if_exception_type(DBAPIError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def _generate_url_identifier(self, session: AsyncSession) -> int:
        """Pick a random non-zero URL identifier that no case uses yet."""
        upper = store.max_url_identifier(session)
        while True:
            candidate = secrets.randbelow(upper) + 1
            if not await store.url_identifier_in_use(session, candidate):
                return candidate

    async def create_case(
        self,
        users: Sequence[UserIdentity | CaseUser],
        signals: Sequence[SignalMatchResult],
    ) -> Case:
        """Attach users and their signal matches to a case.

        Args:
            users: Users that matched; bare identities get no info flags
            signals: Positive signal matches for these users

        Returns:
            The case the batch was merged into, or the newly created case

        Raises:
            ValueError: If users or signals are empty, or a signal is negative
            SuggestedInvestigationsDisabledError: If the feature is disabled
        """
        self._assert_enabled()
        if not users:
            raise ValueError("At least one user is required to create a case")
        if not signals:
            raise ValueError("At least one signal is required to create a case")

        case_users = [CaseUser.from_user(user) for user in users]
        positives = self._to_positive_signals(signals)
        mergeable_values = [signal.value for signal in positives if signal.allows_merging]

        case = None
        merged = False
        async for attempt in self._retrying():
            with attempt:
                async with self._get_session() as session:
                    await store.acquire_merge_locks(session, mergeable_values)

                    case_id = None
                    for signal in positives:
                        if not signal.allows_merging:
                            continue
                        case_id = await store.select_first_mergeable_case_id(session, signal)
                        if case_id is not None:
                            break

                    merged = case_id is not None
                    if case_id is None:
                        url_identifier = await self._generate_url_identifier(session)
                        case_id = await store.insert_case(session, url_identifier)
                    else:
                        await store.touch_case(session, case_id)

                    await store.upsert_case_users(session, case_id, case_users)
                    await store.insert_case_signals(session, case_id, positives)
                    case = await store.load_case(session, case_id)

        signal_names = [signal.name for signal in positives]
        user_ids = [user.id for user in case_users]
        if merged:
            log_case_merged(case.id, signal_names, user_ids)
        else:
            log_case_created(case.id, signal_names, user_ids)
        return case

    async def update_case(
        self,
        case_id: int,
        users: Sequence[UserIdentity | CaseUser],
        signals: Sequence[SignalMatchResult],
    ) -> None:
        """Add users and signals to an existing case.

        Users already in the case keep their flags, OR'd with the new ones.
        Signals already recorded with the same trigger are not added again.

        Raises:
            CaseNotFoundError: If the case does not exist
            ValueError: If a signal is negative
        """
        self._assert_enabled()
        if not users and not signals:
            return

        case_users = [CaseUser.from_user(user) for user in users]
        positives = self._to_positive_signals(signals)

        async with self._get_session() as session:
            if await store.select_case_status(session, case_id) is None:
                raise CaseNotFoundError(case_id)

            await store.upsert_case_users(session, case_id, case_users)
            await store.insert_case_signals(session, case_id, positives)
            await store.touch_case(session, case_id)

        logger.info(
            f"Updated case {case_id} with {len(case_users)} users and {len(positives)} signals",
            extra={"case_id": case_id},
        )

    async def set_case_status(
        self,
        case_id: int,
        status: CaseStatus,
        reason: str = "",
        performer_user_id: int | None = None,
    ) -> None:
        """Change the status of a case.

        Any status may follow any other. Setting Invalid without a reason
        stores the configured default reason.

        Args:
            case_id: The case to change
            status: New status
            reason: Free text explaining the change, surrounding whitespace
                is removed
            performer_user_id: Investigator making the change, None when the
                change is automatic

        Raises:
            CaseNotFoundError: If the case does not exist
        """
        self._assert_enabled()
        reason = reason.strip()
        if status == CaseStatus.INVALID and not reason:
            reason = self._settings.invalid_status_default_reason

        async with self._get_session() as session:
            old_status = await store.select_case_status(session, case_id)
            if old_status is None:
                raise CaseNotFoundError(case_id)

            await store.update_case_status(session, case_id, status, reason)

        if old_status != status.value:
            try:
                old_label = CaseStatus(old_status).label
            except ValueError:
                old_label = str(old_status)
            log_case_status_change(case_id, old_label, status.label, performer_user_id)
