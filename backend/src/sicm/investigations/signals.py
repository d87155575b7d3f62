"""Signal match results.

A signal is a named heuristic evaluated against a user. Evaluating it yields
either a :class:`PositiveSignalMatch`, which carries the value that matched
and whether equal values should share one case, or a
:class:`NegativeSignalMatch`, which carries only the signal name.

Both variants are created through the factories on :class:`SignalMatchResult`.
Asking a negative result for match-only data raises
:class:`~sicm.investigations.errors.SignalMatchLogicError`.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import SignalMatchLogicError
from .models import TriggerType, UserIdentity

# Events on which signals are matched against a user
EVENT_CREATE_ACCOUNT = "createaccount"
EVENT_AUTOCREATE_ACCOUNT = "autocreateaccount"
EVENT_SET_EMAIL = "setemail"
EVENT_CONFIRM_EMAIL = "confirmemail"
EVENT_SUCCESSFUL_EDIT = "successfuledit"


@dataclass(frozen=True)
class SignalMatchResult(ABC):
    """Outcome of evaluating one signal against one user.

    Only :class:`PositiveSignalMatch` and :class:`NegativeSignalMatch` can be
    instantiated.
    """

    name: str

    @property
    @abstractmethod
    def is_match(self) -> bool:
        ...

    @staticmethod
    def new_positive_result(
        name: str,
        value: str,
        allows_merging: bool,
        trigger_id: int = 0,
        trigger_id_table: str = "",
        equivalent_names_for_merging: list[str] | tuple[str, ...] = (),
    ) -> "PositiveSignalMatch":
        """Create a result for a user that matched the signal.

        Args:
            name: Internal signal name, stable across wikis
            value: Value describing the match, stored with the case
            allows_merging: Whether open cases recording the same value for
                this signal should absorb the match instead of a new case
            trigger_id: ID of the revision or log entry that triggered the
                match, 0 for none
            trigger_id_table: Table holding ``trigger_id`` ("revision" or
                "logging"), empty for none
            equivalent_names_for_merging: Other signal names whose recorded
                values count as the same signal when looking for a case to
                merge into
        """
        return PositiveSignalMatch(
            name=name,
            value=value,
            allows_merging=allows_merging,
            trigger_id=trigger_id,
            trigger_id_table=trigger_id_table,
            equivalent_names_for_merging=tuple(equivalent_names_for_merging),
        )

    @staticmethod
    def new_negative_result(name: str) -> "NegativeSignalMatch":
        """Create a result for a user that did not match the signal."""
        return NegativeSignalMatch(name=name)


@dataclass(frozen=True)
class PositiveSignalMatch(SignalMatchResult):
    """A user matched the signal."""

    value: str
    allows_merging: bool
    trigger_id: int = 0
    trigger_id_table: str = ""
    equivalent_names_for_merging: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_match(self) -> bool:
        return True

    @property
    def trigger_type(self) -> TriggerType:
        """Stored form of ``trigger_id_table``.

        Raises:
            ValueError: If the trigger table is not recognised
        """
        return TriggerType.from_table_name(self.trigger_id_table)

    @property
    def merge_names(self) -> list[str]:
        """This signal's name followed by its equivalent names, without duplicates."""
        names = [self.name]
        for name in self.equivalent_names_for_merging:
            if name not in names:
                names.append(name)
        return names


@dataclass(frozen=True)
class NegativeSignalMatch(SignalMatchResult):
    """A user did not match the signal."""

    @property
    def is_match(self) -> bool:
        return False

    def _no_match(self, what: str) -> SignalMatchLogicError:
        return SignalMatchLogicError(
            f"No {what} is associated with a negative match for signal {self.name}."
        )

    @property
    def value(self) -> str:
        raise self._no_match("value")

    @property
    def allows_merging(self) -> bool:
        raise self._no_match("value")

    @property
    def trigger_id(self) -> int:
        raise self._no_match("trigger ID")

    @property
    def trigger_id_table(self) -> str:
        raise self._no_match("trigger table")

    @property
    def equivalent_names_for_merging(self) -> tuple[str, ...]:
        raise self._no_match("equivalent signal name")


class SignalEvaluator(Protocol):
    """Produces signal match results for a user when an event occurs.

    Evaluators are supplied by the host; this package only consumes their
    results.
    """

    async def evaluate(
        self,
        user: UserIdentity,
        event_type: str,
        extra_data: dict[str, Any],
    ) -> list[SignalMatchResult]:
        ...
