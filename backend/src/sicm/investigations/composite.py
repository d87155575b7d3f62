"""Composite block checkers.

Combine several block checks into one answer: a user counts as blocked as
soon as any single check reports them. Each check is only asked about the
users that no earlier check has already reported, so later (often slower,
cross-wiki) checks see a shrinking set. The result is the same whatever the
order of the checks.
"""

from collections.abc import Iterable, Sequence

from .block_checks import BlockCheck, IndefiniteBlockCheck


class CompositeBlockChecker:
    """Answers which users have no block in any of the given checks.

    Used before attaching users to cases.
    """

    def __init__(self, checks: Sequence[BlockCheck]):
        self._checks = list(checks)

    async def get_user_ids_not_blocked(self, user_ids: Iterable[int]) -> set[int]:
        remaining = set(user_ids)
        for check in self._checks:
            if not remaining:
                break
            remaining -= await check.get_blocked_user_ids(set(remaining))
        return remaining


class CompositeIndefiniteBlockChecker:
    """Answers which users are not indefinitely blocked in any of the given checks.

    Used to decide whether a case can be closed automatically.
    """

    def __init__(self, checks: Sequence[IndefiniteBlockCheck]):
        self._checks = list(checks)

    async def get_unblocked_user_ids(self, user_ids: Iterable[int]) -> set[int]:
        remaining = set(user_ids)
        for check in self._checks:
            if not remaining:
                break
            remaining -= await check.get_indefinitely_blocked_user_ids(set(remaining))
        return remaining
