"""Unit tests for local and global block checks."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from sicm.investigations.block_checks import (
    BlockCheck,
    GlobalBlockCheck,
    GlobalIndefiniteBlockCheck,
    GlobalLockCheck,
    IndefiniteBlockCheck,
    LocalBlockCheck,
)
from sicm.investigations.models import BlockRecord

EXPIRY = datetime(2030, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def block_store():
    store = MagicMock()
    store.get_blocks_for_users = AsyncMock(
        return_value=[
            BlockRecord(target_user_id=1),  # sitewide, indefinite
            BlockRecord(target_user_id=2, expiry=EXPIRY),  # temporary
            BlockRecord(target_user_id=3, sitewide=False),  # partial
            BlockRecord(target_user_id=None),  # IP block
        ]
    )
    return store


class TestLocalBlockCheck:
    """Tests for LocalBlockCheck."""

    @pytest.mark.asyncio
    async def test_any_block_counts_as_blocked(self, block_store):
        check = LocalBlockCheck(block_store)

        assert await check.get_blocked_user_ids({1, 2, 3, 4}) == {1, 2, 3}

    @pytest.mark.asyncio
    async def test_only_sitewide_indefinite_blocks_are_indefinite(self, block_store):
        check = LocalBlockCheck(block_store)

        assert await check.get_indefinitely_blocked_user_ids({1, 2, 3, 4}) == {1}

    @pytest.mark.asyncio
    async def test_result_is_subset_of_input(self, block_store):
        check = LocalBlockCheck(block_store)

        assert await check.get_blocked_user_ids({2}) == {2}

    @pytest.mark.asyncio
    async def test_empty_input_skips_store(self, block_store):
        check = LocalBlockCheck(block_store)

        assert await check.get_blocked_user_ids(set()) == set()
        block_store.get_blocks_for_users.assert_not_awaited()

    def test_satisfies_both_capabilities(self, block_store):
        check = LocalBlockCheck(block_store)

        assert isinstance(check, BlockCheck)
        assert isinstance(check, IndefiniteBlockCheck)


@pytest.fixture
def global_lookups(user_lookup):
    central_ids = MagicMock()
    # Alice -> 100, Bob -> 200, Carol has no global account
    central_ids.get_central_id = AsyncMock(
        side_effect=lambda user: {1: 100, 2: 200}.get(user.id, 0)
    )

    global_blocks = MagicMock()
    global_blocks.get_global_block = AsyncMock(
        side_effect=lambda central_id: {
            100: BlockRecord(),
            200: BlockRecord(expiry=EXPIRY),
        }.get(central_id)
    )
    return global_blocks, central_ids, user_lookup


class TestGlobalBlockChecks:
    """Tests for GlobalBlockCheck and GlobalIndefiniteBlockCheck."""

    @pytest.mark.asyncio
    async def test_any_global_block_counts_as_blocked(self, global_lookups):
        check = GlobalBlockCheck(*global_lookups)

        assert await check.get_blocked_user_ids({1, 2, 3, 99}) == {1, 2}

    @pytest.mark.asyncio
    async def test_only_indefinite_global_blocks_are_indefinite(self, global_lookups):
        check = GlobalBlockCheck(*global_lookups)

        assert await check.get_indefinitely_blocked_user_ids({1, 2, 3}) == {1}

    @pytest.mark.asyncio
    async def test_disabled_reports_nobody(self, global_lookups):
        check = GlobalBlockCheck(*global_lookups, apply_global_blocks_enabled=False)

        assert await check.get_blocked_user_ids({1, 2}) == set()
        assert await check.get_indefinitely_blocked_user_ids({1, 2}) == set()

    @pytest.mark.asyncio
    async def test_indefinite_only_check(self, global_lookups):
        check = GlobalIndefiniteBlockCheck(*global_lookups)

        assert await check.get_indefinitely_blocked_user_ids({1, 2}) == {1}
        assert not isinstance(check, BlockCheck)


class TestGlobalLockCheck:
    """Tests for GlobalLockCheck."""

    @pytest.mark.asyncio
    async def test_locked_accounts_are_indefinitely_blocked(self, user_lookup):
        global_accounts = MagicMock()
        global_accounts.get_locked_user_ids = AsyncMock(return_value={2, 42})

        check = GlobalLockCheck(global_accounts, user_lookup)

        assert await check.get_indefinitely_blocked_user_ids({1, 2}) == {2}
        global_accounts.get_locked_user_ids.assert_awaited_once_with(["Alice", "Bob"])

    @pytest.mark.asyncio
    async def test_unknown_users_are_not_looked_up(self, user_lookup):
        global_accounts = MagicMock()
        global_accounts.get_locked_user_ids = AsyncMock(return_value=set())

        check = GlobalLockCheck(global_accounts, user_lookup)

        assert await check.get_indefinitely_blocked_user_ids({99}) == set()
        global_accounts.get_locked_user_ids.assert_not_awaited()
