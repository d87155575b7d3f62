"""Block checks used by Suggested Investigations.

A block check answers, for a set of local user IDs, which of them are
blocked (``BlockCheck``) or indefinitely blocked (``IndefiniteBlockCheck``).
Each check wraps one block store; checks are combined by the composites in
:mod:`sicm.investigations.composite`.

The stores themselves belong to the host wiki and are described here only
by the lookup protocols the checks call.
"""

from typing import Protocol, runtime_checkable

from .models import BlockRecord, UserIdentity


# =============================================================================
# Capabilities
# =============================================================================


@runtime_checkable
class BlockCheck(Protocol):
    """Reports which users have any block."""

    async def get_blocked_user_ids(self, user_ids: set[int]) -> set[int]:
        """Return the subset of ``user_ids`` that is blocked."""
        ...


@runtime_checkable
class IndefiniteBlockCheck(Protocol):
    """Reports which users are indefinitely blocked."""

    async def get_indefinitely_blocked_user_ids(self, user_ids: set[int]) -> set[int]:
        """Return the subset of ``user_ids`` that is indefinitely blocked."""
        ...


# =============================================================================
# Host lookups
# =============================================================================


class UserIdentityLookup(Protocol):
    """Resolves local accounts."""

    async def get_user_by_id(self, user_id: int) -> UserIdentity | None:
        ...

    async def get_user_by_name(self, name: str) -> UserIdentity | None:
        ...

    async def get_users_by_ids(self, user_ids: set[int]) -> list[UserIdentity]:
        ...


class BlockStore(Protocol):
    """The local wiki's block table."""

    async def get_blocks_for_users(self, user_ids: set[int]) -> list[BlockRecord]:
        ...


class CentralIdLookup(Protocol):
    """Maps local accounts to global account IDs."""

    async def get_central_id(self, user: UserIdentity) -> int:
        """Return the central ID, 0 when the user has no global account."""
        ...


class GlobalBlockLookup(Protocol):
    """The cross-wiki block store."""

    async def get_global_block(self, central_id: int) -> BlockRecord | None:
        """Return the global block for a central ID, honouring local exemptions."""
        ...


class GlobalAccountLookup(Protocol):
    """Global account information shared by all wikis."""

    async def list_attached_wikis(self, username: str) -> list[str]:
        """Return the IDs of wikis where the user has an attached local account."""
        ...

    async def get_locked_user_ids(self, usernames: list[str]) -> set[int]:
        """Return local user IDs of the given accounts that are globally locked."""
        ...


# =============================================================================
# Checks
# =============================================================================


class LocalBlockCheck:
    """Checks blocks stored on the local wiki."""

    def __init__(self, block_store: BlockStore):
        self._block_store = block_store

    async def get_blocked_user_ids(self, user_ids: set[int]) -> set[int]:
        if not user_ids:
            return set()
        blocks = await self._block_store.get_blocks_for_users(user_ids)
        return {
            block.target_user_id
            for block in blocks
            if block.target_user_id is not None and block.target_user_id in user_ids
        }

    async def get_indefinitely_blocked_user_ids(self, user_ids: set[int]) -> set[int]:
        if not user_ids:
            return set()
        blocks = await self._block_store.get_blocks_for_users(user_ids)
        # Partial blocks still leave the account usable elsewhere on the wiki
        return {
            block.target_user_id
            for block in blocks
            if block.target_user_id is not None
            and block.target_user_id in user_ids
            and block.sitewide
            and block.is_indefinite
        }


class _GlobalBlockReader:
    """Looks up the global block, if any, for a local user."""

    def __init__(
        self,
        global_blocks: GlobalBlockLookup,
        central_ids: CentralIdLookup,
        users: UserIdentityLookup,
        apply_global_blocks_enabled: bool = True,
    ):
        self._global_blocks = global_blocks
        self._central_ids = central_ids
        self._users = users
        self._enabled = apply_global_blocks_enabled

    async def _get_global_block(self, user_id: int) -> BlockRecord | None:
        user = await self._users.get_user_by_id(user_id)
        if user is None:
            return None

        central_id = await self._central_ids.get_central_id(user)
        if central_id == 0:
            return None

        return await self._global_blocks.get_global_block(central_id)

    async def get_indefinitely_blocked_user_ids(self, user_ids: set[int]) -> set[int]:
        if not self._enabled:
            return set()

        blocked = set()
        for user_id in user_ids:
            block = await self._get_global_block(user_id)
            if block is not None and block.is_indefinite:
                blocked.add(user_id)
        return blocked


class GlobalIndefiniteBlockCheck(_GlobalBlockReader):
    """Checks indefinite global blocks only."""


class GlobalBlockCheck(_GlobalBlockReader):
    """Checks any global block that applies to the local wiki."""

    async def get_blocked_user_ids(self, user_ids: set[int]) -> set[int]:
        if not self._enabled:
            return set()

        blocked = set()
        for user_id in user_ids:
            if await self._get_global_block(user_id) is not None:
                blocked.add(user_id)
        return blocked


class GlobalLockCheck:
    """Treats globally locked accounts as indefinitely blocked."""

    def __init__(self, global_accounts: GlobalAccountLookup, users: UserIdentityLookup):
        self._global_accounts = global_accounts
        self._users = users

    async def get_indefinitely_blocked_user_ids(self, user_ids: set[int]) -> set[int]:
        if not user_ids:
            return set()

        users = await self._users.get_users_by_ids(user_ids)
        usernames = [user.name for user in users]
        if not usernames:
            return set()

        locked = await self._global_accounts.get_locked_user_ids(usernames)
        return locked & user_ids
