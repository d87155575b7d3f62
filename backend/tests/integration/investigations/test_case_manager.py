"""Integration tests for CaseManager against a real SQLite database.

Run with: pytest backend/tests/integration/investigations -v
"""

import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from sicm.investigations import store
from sicm.investigations.errors import CaseNotFoundError, SuggestedInvestigationsDisabledError
from sicm.investigations.manager import CaseManager
from sicm.investigations.models import (
    CaseStatus,
    CaseUser,
    CaseUserInfoFlags,
    TriggerType,
    UserIdentity,
)
from sicm.investigations.signals import SignalMatchResult


def ip_match(value: str = "1.2.3.0/24", allows_merging: bool = True, **kwargs):
    return SignalMatchResult.new_positive_result("ip-match", value, allows_merging, **kwargs)


async def count_rows(session_factory, table) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(table))
        return result.scalar()


class TestCreateCase:
    """Tests for creating new cases."""

    @pytest.mark.asyncio
    async def test_creates_open_case_with_users_and_signal(
        self, manager, lookup, session_factory, alice, bob
    ):
        case = await manager.create_case([alice, bob], [ip_match()])

        assert case.status == CaseStatus.OPEN
        assert case.status_reason == ""
        assert sorted(case.user_ids) == [1, 2]
        assert [(s.name, s.value) for s in case.signals] == [("ip-match", "1.2.3.0/24")]
        assert await count_rows(session_factory, store.CaseRow) == 1

        stored = await lookup.get_case(case.id)
        assert stored == case

    @pytest.mark.asyncio
    async def test_bare_users_have_no_flags(self, manager, alice):
        case = await manager.create_case([alice], [ip_match()])

        assert case.users[0].info_flags == CaseUserInfoFlags.NONE

    @pytest.mark.asyncio
    async def test_assigns_unique_url_identifiers(self, manager, lookup, alice):
        first = await manager.create_case([alice], [ip_match("10.0.0.0/8")])
        second = await manager.create_case([alice], [ip_match("192.168.0.0/16")])

        assert first.id != second.id
        assert 0 < first.url_identifier <= store.DEFAULT_MAX_URL_IDENTIFIER
        assert first.url_identifier != second.url_identifier
        assert await lookup.get_case_id_for_url_identifier(first.url_identifier_hex) == first.id

    @pytest.mark.asyncio
    async def test_records_trigger(self, manager, alice):
        signal = ip_match(trigger_id=99, trigger_id_table="logging")

        case = await manager.create_case([alice], [signal])

        assert case.signals[0].trigger_id == 99
        assert case.signals[0].trigger_type == TriggerType.LOGGING

    @pytest.mark.asyncio
    async def test_requires_users_and_signals(self, manager, alice):
        with pytest.raises(ValueError):
            await manager.create_case([], [ip_match()])
        with pytest.raises(ValueError):
            await manager.create_case([alice], [])

    @pytest.mark.asyncio
    async def test_rejects_negative_signal(self, manager, session_factory, alice):
        with pytest.raises(ValueError):
            await manager.create_case(
                [alice], [ip_match(), SignalMatchResult.new_negative_result("email-match")]
            )

        assert await count_rows(session_factory, store.CaseRow) == 0

    @pytest.mark.asyncio
    async def test_rejects_unknown_trigger_table(self, manager, session_factory, alice):
        with pytest.raises(ValueError):
            await manager.create_case([alice], [ip_match(trigger_id=1, trigger_id_table="page")])

        assert await count_rows(session_factory, store.CaseRow) == 0

    @pytest.mark.asyncio
    async def test_disabled_feature_raises(self, session_factory, disabled_settings, alice):
        manager = CaseManager(session_factory=session_factory, settings=disabled_settings)

        with pytest.raises(SuggestedInvestigationsDisabledError):
            await manager.create_case([alice], [ip_match()])


class TestMergeCases:
    """Tests for merging matches into existing open cases."""

    @pytest.mark.asyncio
    async def test_same_value_joins_open_case(
        self, manager, session_factory, alice, bob, carol
    ):
        existing = await manager.create_case([alice, bob], [ip_match()])

        merged = await manager.create_case([carol], [ip_match()])

        assert merged.id == existing.id
        assert sorted(merged.user_ids) == [1, 2, 3]
        assert await count_rows(session_factory, store.CaseRow) == 1
        # The identical signal row is not recorded twice
        assert len(merged.signals) == 1

    @pytest.mark.asyncio
    async def test_existing_user_flags_are_ored(self, manager, alice):
        await manager.create_case(
            [CaseUser(user=alice, info_flags=CaseUserInfoFlags.SIGNAL_MATCHED)], [ip_match()]
        )

        case = await manager.create_case(
            [CaseUser(user=alice, info_flags=CaseUserInfoFlags.RELATED_ACCOUNT)], [ip_match()]
        )

        assert case.users[0].info_flags == (
            CaseUserInfoFlags.SIGNAL_MATCHED | CaseUserInfoFlags.RELATED_ACCOUNT
        )

    @pytest.mark.asyncio
    async def test_flags_are_never_cleared(self, manager, alice):
        await manager.create_case(
            [CaseUser(user=alice, info_flags=CaseUserInfoFlags.MANUALLY_ADDED)], [ip_match()]
        )

        case = await manager.create_case([alice], [ip_match()])

        assert case.users[0].info_flags == CaseUserInfoFlags.MANUALLY_ADDED

    @pytest.mark.asyncio
    async def test_different_value_creates_new_case(self, manager, alice, bob):
        first = await manager.create_case([alice], [ip_match("1.2.3.0/24")])

        second = await manager.create_case([bob], [ip_match("5.6.7.0/24")])

        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_non_mergeable_signal_creates_new_case(self, manager, alice, bob):
        first = await manager.create_case([alice], [ip_match()])

        second = await manager.create_case([bob], [ip_match(allows_merging=False)])

        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_closed_cases_are_not_merged_into(self, manager, alice, bob):
        first = await manager.create_case([alice], [ip_match()])
        await manager.set_case_status(first.id, CaseStatus.RESOLVED)

        second = await manager.create_case([bob], [ip_match()])

        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_equivalent_signal_names_merge(self, manager, alice, bob):
        first = await manager.create_case([alice], [ip_match()])
        equivalent = SignalMatchResult.new_positive_result(
            "ip-range-match",
            "1.2.3.0/24",
            True,
            equivalent_names_for_merging=["ip-match"],
        )

        second = await manager.create_case([bob], [equivalent])

        assert second.id == first.id
        assert {s.name for s in second.signals} == {"ip-match", "ip-range-match"}

    @pytest.mark.asyncio
    async def test_lowest_open_case_wins(self, manager, alice, bob, carol):
        first = await manager.create_case([alice], [ip_match(allows_merging=False)])
        second = await manager.create_case([bob], [ip_match(allows_merging=False)])

        merged = await manager.create_case([carol], [ip_match()])

        assert merged.id == min(first.id, second.id)

    @pytest.mark.asyncio
    async def test_batch_merges_into_single_target(self, manager, lookup, alice, bob, carol):
        """Test that signals pointing at different cases still produce one target."""
        first = await manager.create_case([alice], [ip_match("1.1.1.0/24")])
        second = await manager.create_case([bob], [ip_match("2.2.2.0/24")])

        merged = await manager.create_case(
            [carol], [ip_match("2.2.2.0/24"), ip_match("1.1.1.0/24")]
        )

        # Scan order decides: the first signal points at the second case
        assert merged.id == second.id
        assert {s.value for s in merged.signals} == {"1.1.1.0/24", "2.2.2.0/24"}
        assert await lookup.get_user_ids_in_case(first.id) == [1]

    @pytest.mark.asyncio
    async def test_non_mergeable_signals_follow_merge_target(self, manager, alice, bob):
        existing = await manager.create_case([alice], [ip_match()])
        extra = SignalMatchResult.new_positive_result("ua-match", "curl/8.0", False)

        merged = await manager.create_case([bob], [extra, ip_match()])

        assert merged.id == existing.id
        assert {s.name for s in merged.signals} == {"ip-match", "ua-match"}


class TestConcurrentMerge:
    """Tests for concurrent create_case calls on the same value."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_create_one_case(
        self, manager, session_factory, alice, bob
    ):
        first, second = await asyncio.gather(
            manager.create_case([alice], [ip_match()]),
            manager.create_case([bob], [ip_match()]),
        )

        assert first.id == second.id
        assert await count_rows(session_factory, store.CaseRow) == 1
        assert await count_rows(session_factory, store.CaseUserRow) == 2

    @pytest.mark.asyncio
    async def test_many_concurrent_calls_create_one_case(
        self, manager, session_factory, lookup
    ):
        users = [UserIdentity(id=i, name=f"User{i}") for i in range(1, 9)]

        cases = await asyncio.gather(
            *(manager.create_case([user], [ip_match()]) for user in users)
        )

        assert len({case.id for case in cases}) == 1
        assert await count_rows(session_factory, store.CaseRow) == 1
        assert sorted(await lookup.get_user_ids_in_case(cases[0].id)) == list(range(1, 9))


class TestRetry:
    """Tests for retrying the merge-or-create unit of work."""

    @pytest.mark.asyncio
    async def test_transient_store_error_is_retried(self, manager, session_factory, alice):
        real_insert = store.insert_case
        attempts = []

        async def flaky_insert(session, url_identifier):
            attempts.append(url_identifier)
            if len(attempts) == 1:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return await real_insert(session, url_identifier)

        with patch.object(store, "insert_case", flaky_insert):
            case = await manager.create_case([alice], [ip_match()])

        assert len(attempts) == 2
        assert await count_rows(session_factory, store.CaseRow) == 1
        assert case.user_ids == [1]

    @pytest.mark.asyncio
    async def test_error_is_raised_after_retry_budget(
        self, session_factory, settings, alice
    ):
        manager = CaseManager(
            session_factory=session_factory,
            settings=settings.model_copy(update={"merge_retry_attempts": 2}),
        )

        async def failing_insert(session, url_identifier):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        with patch.object(store, "insert_case", failing_insert):
            with pytest.raises(OperationalError):
                await manager.create_case([alice], [ip_match()])

        assert await count_rows(session_factory, store.CaseRow) == 0


class TestUpdateCase:
    @pytest.mark.asyncio
    async def test_adds_users_and_signals(self, manager, lookup, alice, bob):
        case = await manager.create_case([alice], [ip_match()])
        extra = SignalMatchResult.new_positive_result("ua-match", "curl/8.0", False)

        await manager.update_case(case.id, [bob], [extra])

        updated = await lookup.get_case(case.id)
        assert sorted(updated.user_ids) == [1, 2]
        assert {s.name for s in updated.signals} == {"ip-match", "ua-match"}
        assert updated.updated_at >= case.updated_at

    @pytest.mark.asyncio
    async def test_unknown_case_raises(self, manager, alice):
        with pytest.raises(CaseNotFoundError):
            await manager.update_case(12345, [alice], [])

    @pytest.mark.asyncio
    async def test_nothing_to_add_is_a_no_op(self, manager):
        await manager.update_case(12345, [], [])


class TestSetCaseStatus:
    """Tests for case status transitions."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "first,second",
        [
            (CaseStatus.RESOLVED, CaseStatus.OPEN),
            (CaseStatus.INVALID, CaseStatus.OPEN),
            (CaseStatus.RESOLVED, CaseStatus.INVALID),
        ],
    )
    async def test_any_transition_is_allowed(self, manager, lookup, alice, first, second):
        case = await manager.create_case([alice], [ip_match()])

        await manager.set_case_status(case.id, first, "checked")
        await manager.set_case_status(case.id, second, "checked again")

        assert await lookup.get_case_status(case.id) == second

    @pytest.mark.asyncio
    async def test_reason_is_trimmed(self, manager, lookup, alice):
        case = await manager.create_case([alice], [ip_match()])

        await manager.set_case_status(case.id, CaseStatus.RESOLVED, "  sockpuppets  ")

        assert (await lookup.get_case(case.id)).status_reason == "sockpuppets"

    @pytest.mark.asyncio
    async def test_invalid_without_reason_gets_default(self, manager, lookup, settings, alice):
        case = await manager.create_case([alice], [ip_match()])

        await manager.set_case_status(case.id, CaseStatus.INVALID, "   ")

        stored = await lookup.get_case(case.id)
        assert stored.status == CaseStatus.INVALID
        assert stored.status_reason == settings.invalid_status_default_reason

    @pytest.mark.asyncio
    async def test_resolved_without_reason_stays_empty(self, manager, lookup, alice):
        case = await manager.create_case([alice], [ip_match()])

        await manager.set_case_status(case.id, CaseStatus.RESOLVED)

        assert (await lookup.get_case(case.id)).status_reason == ""

    @pytest.mark.asyncio
    async def test_unknown_case_raises(self, manager):
        with pytest.raises(CaseNotFoundError) as exc_info:
            await manager.set_case_status(404, CaseStatus.RESOLVED)

        assert exc_info.value.case_id == 404
        assert isinstance(exc_info.value, LookupError)

    @pytest.mark.asyncio
    async def test_status_change_is_logged(self, manager, alice, caplog):
        case = await manager.create_case([alice], [ip_match()])

        with caplog.at_level("INFO", logger="sicm.cases"):
            await manager.set_case_status(case.id, CaseStatus.RESOLVED, performer_user_id=9)

        assert f"Case {case.id} status changed from open to resolved" in caplog.text
