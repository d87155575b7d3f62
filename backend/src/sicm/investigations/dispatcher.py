"""Cross-wiki auto-close dispatch.

When a user becomes indefinitely blocked, cases on other wikis that mention
the same global account may be ready to close. The dispatcher asks each of
those wikis to check.
"""

from collections.abc import Callable

from ..logging import get_context_logger, log_dispatch_failure
from .block_checks import GlobalAccountLookup
from .jobs import JobQueue, JobSpec, get_job_queue


class CrossWikiAutoCloseDispatcher:
    """Pushes an auto-close-for-user job to every other wiki a user is attached to.

    Without global accounts there is no way to find the other wikis and
    dispatching does nothing.
    """

    def __init__(
        self,
        global_accounts: GlobalAccountLookup | None,
        current_wiki_id: str,
        central_auth_enabled: bool = True,
        queue_factory: Callable[[str], JobQueue] = get_job_queue,
    ):
        self._global_accounts = global_accounts
        self._current_wiki_id = current_wiki_id
        self._central_auth_enabled = central_auth_enabled
        self._queue_factory = queue_factory
        self._logger = get_context_logger(__name__, wiki_id=current_wiki_id)

    async def dispatch(self, username: str) -> int:
        """Queue auto-close checks for ``username`` on the user's other wikis.

        A failed push to one wiki is logged and the remaining wikis are still
        tried.

        Returns:
            Number of jobs pushed
        """
        if self._global_accounts is None or not self._central_auth_enabled:
            self._logger.warning(
                f"Found no attached wikis for user {username} and cannot check autoclose of blocks",
                extra={"username": username},
            )
            return 0

        attached_wikis = await self._global_accounts.list_attached_wikis(username)

        pushed = 0
        for wiki_id in attached_wikis:
            if wiki_id == self._current_wiki_id:
                continue
            try:
                self._queue_factory(wiki_id).push(JobSpec.autoclose_for_user(username))
            except Exception as e:
                log_dispatch_failure(wiki_id, username, str(e))
                continue
            pushed += 1

        self._logger.debug(
            f"Dispatched {pushed} cross-wiki auto-close jobs for user {username}",
            extra={"username": username, "jobs": pushed},
        )
        return pushed
