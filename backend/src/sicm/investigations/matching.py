"""Matching signals against users.

Signal evaluators run when something happens to a user (account creation,
email change, an edit). Positive results are handed to the case manager,
which files the user into an existing open case or a new one.
"""

import logging
from collections.abc import Sequence
from typing import Any

from ..config import Settings, get_settings
from .composite import CompositeBlockChecker
from .jobs import JobQueue, JobSpec
from .manager import CaseManager
from .models import Case, CaseUser, CaseUserInfoFlags, UserIdentity
from .signals import PositiveSignalMatch, SignalEvaluator

logger = logging.getLogger(__name__)


class SignalMatchService:
    """Evaluates signals for a user and records the matches."""

    def __init__(
        self,
        manager: CaseManager,
        evaluators: Sequence[SignalEvaluator],
        block_checker: CompositeBlockChecker,
        job_queue: JobQueue | None = None,
        settings: Settings | None = None,
    ):
        self._manager = manager
        self._evaluators = list(evaluators)
        self._block_checker = block_checker
        self._job_queue = job_queue
        self._settings = settings or get_settings()

    async def match_signals_against_user(
        self,
        user: UserIdentity,
        event_type: str,
        extra_data: dict[str, Any] | None = None,
    ) -> Case | None:
        """Run every evaluator for ``user`` and record positive matches.

        Args:
            user: The user the event happened to
            event_type: One of the ``EVENT_*`` constants in
                :mod:`sicm.investigations.signals`
            extra_data: Event details passed through to evaluators

        Returns:
            The case the user was added to, or None if nothing was recorded
        """
        if not self._settings.suggested_investigations_enabled:
            return None
        if not user.is_registered:
            return None

        extra_data = extra_data or {}
        positives: list[PositiveSignalMatch] = []
        for evaluator in self._evaluators:
            for result in await evaluator.evaluate(user, event_type, extra_data):
                if isinstance(result, PositiveSignalMatch):
                    positives.append(result)

        if not positives:
            return None

        if user.id not in await self._block_checker.get_user_ids_not_blocked({user.id}):
            logger.info(
                f"User {user.id} is blocked, not adding to a case",
                extra={"user_id": user.id, "event_type": event_type},
            )
            return None

        return await self._manager.create_case(
            [CaseUser(user=user, info_flags=CaseUserInfoFlags.SIGNAL_MATCHED)],
            positives,
        )

    def queue_match_signals_against_user(
        self,
        user: UserIdentity,
        event_type: str,
        extra_data: dict[str, Any] | None = None,
    ) -> bool:
        """Defer matching to a job on the current wiki.

        Returns:
            True if a job was queued
        """
        if not self._settings.suggested_investigations_enabled or self._job_queue is None:
            return False

        self._job_queue.push(
            JobSpec.match_signals_against_user(user.id, user.name, event_type, extra_data)
        )
        return True
