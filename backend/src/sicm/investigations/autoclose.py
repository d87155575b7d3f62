"""Automatic resolution of cases whose users are all indefinitely blocked.

Blocks and global locks queue an auto-close job for every open case of the
blocked user. The job resolves the case once no user in it is left
unblocked. Jobs queued from block events are delayed so that a block which
is quickly lifted does not close the case.
"""

import logging

from ..config import Settings, get_settings
from ..logging import log_autoclose_skipped
from .block_checks import UserIdentityLookup
from .composite import CompositeIndefiniteBlockChecker
from .dispatcher import CrossWikiAutoCloseDispatcher
from .jobs import JobQueue, JobSpec
from .lookup import CaseLookupService
from .manager import CaseManager
from .models import BlockRecord, CaseStatus, UserIdentity

logger = logging.getLogger(__name__)


class AutoCloseService:
    """Queues and runs auto-close checks for cases."""

    def __init__(
        self,
        lookup: CaseLookupService,
        manager: CaseManager,
        block_checker: CompositeIndefiniteBlockChecker,
        users: UserIdentityLookup,
        job_queue: JobQueue,
        dispatcher: CrossWikiAutoCloseDispatcher | None = None,
        settings: Settings | None = None,
    ):
        self._lookup = lookup
        self._manager = manager
        self._block_checker = block_checker
        self._users = users
        self._job_queue = job_queue
        self._dispatcher = dispatcher
        self._settings = settings or get_settings()

    @property
    def enabled(self) -> bool:
        return self._settings.suggested_investigations_enabled

    # =========================================================================
    # Job bodies
    # =========================================================================

    async def autoclose_case(self, case_id: int) -> bool:
        """Resolve an open case if every user in it is indefinitely blocked.

        Returns:
            True if the case was resolved
        """
        if await self._lookup.get_case_status(case_id) != CaseStatus.OPEN:
            return False

        user_ids = await self._lookup.get_user_ids_in_case(case_id)
        if not user_ids:
            return False

        unblocked = await self._block_checker.get_unblocked_user_ids(set(user_ids))
        if unblocked:
            log_autoclose_skipped(case_id, sorted(unblocked))
            return False

        await self._manager.set_case_status(
            case_id, CaseStatus.RESOLVED, self._settings.autoclose_reason
        )
        logger.info(
            f"Auto resolved case {case_id} as all associated users are indefinitely blocked",
            extra={"case_id": case_id},
        )
        return True

    async def autoclose_for_user(self, username: str) -> int:
        """Queue auto-close checks for a user's open cases on this wiki.

        Runs on the wikis a cross-wiki dispatch was sent to. Jobs are not
        delayed since the block itself happened elsewhere.

        Returns:
            Number of jobs queued
        """
        if not self.enabled:
            return 0

        user = await self._users.get_user_by_name(username)
        if user is None or not user.is_registered:
            logger.info(
                f"User {username}: global account reported a local account but no user "
                "was found. Skipping cross-wiki auto-close",
                extra={"username": username},
            )
            return 0

        return await self.enqueue_autoclose_jobs_for_user(user.id, delayed=False)

    async def queue_autoclose_for_open_cases(self, batch_size: int = 100) -> int:
        """Queue an undelayed auto-close check for every open case.

        Returns:
            Number of jobs queued
        """
        if not self.enabled:
            return 0

        queued = 0
        last_id = 0
        while True:
            case_ids = await self._lookup.get_open_case_ids_after(last_id, batch_size)
            for case_id in case_ids:
                self._job_queue.push(JobSpec.autoclose_case(case_id))
            queued += len(case_ids)
            if case_ids:
                last_id = case_ids[-1]
                logger.info(f"Processed up to case ID {last_id}, queued {queued} jobs total")
            if len(case_ids) < batch_size:
                break
        return queued

    # =========================================================================
    # Queueing
    # =========================================================================

    def _delay_seconds(self) -> int | None:
        if self._job_queue.delayed_jobs_enabled:
            return self._settings.autoclose_delay_seconds

        logger.warning("Auto-close delayed jobs are not supported, queueing without delay")
        return None

    async def enqueue_autoclose_jobs_for_user(self, user_id: int, delayed: bool = True) -> int:
        """Queue an auto-close check for each open case the user is in.

        Returns:
            Number of jobs queued
        """
        case_ids = await self._lookup.get_open_case_ids_for_user(user_id)
        if not case_ids:
            return 0

        delay = self._delay_seconds() if delayed else None
        for case_id in case_ids:
            self._job_queue.push(JobSpec.autoclose_case(case_id, delay))
        return len(case_ids)

    # =========================================================================
    # Event handlers
    # =========================================================================

    async def on_user_blocked(self, block: BlockRecord) -> int:
        """Handle a local block being placed.

        Only sitewide indefinite blocks on registered users queue checks.
        """
        if not self.enabled:
            return 0
        if block.target_user_id is None or not block.sitewide or not block.is_indefinite:
            return 0

        return await self.enqueue_autoclose_jobs_for_user(block.target_user_id)

    async def on_global_block(self, block: BlockRecord, target: UserIdentity | None) -> int:
        """Handle a global block being placed or changed.

        Queues checks for the local cases of the target and asks the target's
        other wikis to do the same.
        """
        if not self.enabled:
            return 0
        if target is None or not target.is_registered or not block.is_indefinite:
            return 0

        queued = await self.enqueue_autoclose_jobs_for_user(target.id)
        if self._dispatcher is not None:
            await self._dispatcher.dispatch(target.name)
        return queued

    async def on_global_lock_status_changed(self, username: str, is_locked: bool) -> int:
        """Handle a global account being locked or unlocked.

        Unlocking does nothing; locked accounts count as indefinitely blocked.
        """
        if not is_locked or not self.enabled:
            return 0

        user = await self._users.get_user_by_name(username)
        if user is None or not user.is_registered:
            return 0

        return await self.enqueue_autoclose_jobs_for_user(user.id)
