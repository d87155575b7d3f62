"""Read-only queries over Suggested Investigations cases."""

import logging
from collections.abc import Sequence
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, get_settings
from ..db import get_session_factory, session_scope
from . import store
from .errors import SuggestedInvestigationsDisabledError
from .models import Case, CaseStatus, CaseSummary
from .signals import SignalMatchResult

logger = logging.getLogger(__name__)


class CaseLookupService:
    """Looks up cases, their users and their signals."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    @asynccontextmanager
    async def _get_session(self) -> AsyncGenerator[AsyncSession, None]:
        self._assert_enabled()
        async with session_scope(self._session_factory or get_session_factory()) as session:
            yield session

    def _assert_enabled(self) -> None:
        if not self._settings.suggested_investigations_enabled:
            raise SuggestedInvestigationsDisabledError()

    @staticmethod
    def _assert_positive(signal: SignalMatchResult) -> None:
        if not signal.is_match:
            raise ValueError(f"Signal {signal.name} did not match; cases cannot be looked up for it")

    @staticmethod
    def _row_to_summary(row: Any) -> CaseSummary | None:
        """Convert a case row, or None when the stored status is not known."""
        try:
            status = CaseStatus(row.status)
        except ValueError:
            logger.warning(
                f"Skipping case {row.id} with unknown status {row.status}",
                extra={"case_id": row.id, "status": row.status},
            )
            return None

        return CaseSummary(
            id=row.id,
            status=status,
            status_reason=row.status_reason,
            url_identifier=row.url_identifier,
            updated_at=getattr(row, "updated_at", None),
        )

    async def get_case(self, case_id: int) -> Case | None:
        """Get a case with its users and signals.

        Returns:
            The case, or None if it does not exist
        """
        async with self._get_session() as session:
            try:
                return await store.load_case(session, case_id)
            except ValueError as e:
                logger.warning(f"Cannot load case {case_id}: {e}")
                return None

    async def get_case_status(self, case_id: int) -> CaseStatus | None:
        async with self._get_session() as session:
            status = await store.select_case_status(session, case_id)
        if status is None:
            return None
        try:
            return CaseStatus(status)
        except ValueError:
            logger.warning(f"Case {case_id} has unknown status {status}")
            return None

    async def case_exists(self, case_id: int) -> bool:
        async with self._get_session() as session:
            return await store.select_case_status(session, case_id) is not None

    async def get_user_ids_in_case(self, case_id: int) -> list[int]:
        async with self._get_session() as session:
            members = await store.select_case_members(session, case_id)
        return [member.user_id for member in members]

    async def get_open_case_ids_for_user(self, user_id: int) -> list[int]:
        """IDs of open cases the user is attached to, ascending."""
        async with self._get_session() as session:
            return await store.select_open_case_ids_for_user(session, user_id)

    async def get_mergeable_cases_for_signal(
        self, signal: SignalMatchResult
    ) -> list[CaseSummary]:
        """Open cases a match for this signal would be merged into.

        Cases recorded against the signal's name or any of its equivalent
        names are returned, lowest ID first. The first entry is the case
        :meth:`CaseManager.create_case` picks. Signals that do not allow
        merging have no mergeable cases.

        Raises:
            ValueError: If the signal is a negative match
        """
        self._assert_positive(signal)
        if not signal.allows_merging:
            return []

        async with self._get_session() as session:
            rows = await store.select_case_rows_for_signal(
                session, signal.merge_names, signal.value, statuses=[CaseStatus.OPEN]
            )
        return [summary for row in rows if (summary := self._row_to_summary(row))]

    async def get_cases_for_signal(
        self,
        signal: SignalMatchResult,
        statuses: Sequence[CaseStatus] | None = None,
    ) -> list[CaseSummary]:
        """Cases that recorded this signal name with the same value.

        Args:
            signal: A positive signal match
            statuses: Only return cases in these statuses; None means all

        Raises:
            ValueError: If the signal is a negative match
        """
        self._assert_positive(signal)
        if statuses is not None and len(statuses) == 0:
            return []

        async with self._get_session() as session:
            rows = await store.select_case_rows_for_signal(
                session, [signal.name], signal.value, statuses=statuses
            )
        return [summary for row in rows if (summary := self._row_to_summary(row))]

    async def get_case_id_for_url_identifier(self, url_identifier: str) -> int | None:
        """Resolve the hexadecimal identifier used in case links."""
        try:
            value = int(url_identifier, 16)
        except ValueError:
            return None

        async with self._get_session() as session:
            return await store.select_case_id_by_url_identifier(session, value)

    async def list_cases(
        self,
        status: CaseStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[CaseSummary], int]:
        """List cases, most recently updated first.

        Returns:
            Tuple of (cases, total count)
        """
        async with self._get_session() as session:
            rows, total = await store.select_case_rows(session, status, limit, offset)
        return [summary for row in rows if (summary := self._row_to_summary(row))], total

    async def get_open_case_ids_after(self, last_id: int, limit: int = 100) -> list[int]:
        """Page through open case IDs in ascending order."""
        async with self._get_session() as session:
            return await store.select_open_case_ids_after(session, last_id, limit)
