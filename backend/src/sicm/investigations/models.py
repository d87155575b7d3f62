"""Pydantic models for Suggested Investigations cases.

This module defines the case lifecycle status, the users and signals
attached to a case, and the block records consulted by block checks.
"""

from datetime import datetime
from enum import IntEnum, IntFlag
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, PlainValidator


# =============================================================================
# Enumerations
# =============================================================================


class CaseStatus(IntEnum):
    """Status of a Suggested Investigations case.

    The integer value is what gets stored in the database. Any status can move
    to any other status; cases are never deleted, Invalid acts as a soft delete.
    """

    OPEN = 0
    RESOLVED = 1
    INVALID = 2

    @classmethod
    def from_string_name(cls, status: str) -> "CaseStatus | None":
        """Parse a status name case-insensitively.

        "closed" is accepted as an alias of "resolved". Returns None for an
        unrecognized name so the caller can decide whether that is an error.
        """
        return _STATUS_NAMES.get(status.strip().lower())

    @property
    def label(self) -> str:
        """Lowercase name used in logs and the CLI."""
        return self.name.lower()


_STATUS_NAMES = {
    "open": CaseStatus.OPEN,
    "invalid": CaseStatus.INVALID,
    "resolved": CaseStatus.RESOLVED,
    "closed": CaseStatus.RESOLVED,
}


class CaseUserInfoFlags(IntFlag):
    """Reasons a user is attached to a case.

    Flags arriving for a user who is already in the case are combined with
    bitwise OR; existing bits are never cleared. Bits not listed here are
    preserved as-is.
    """

    NONE = 0
    SIGNAL_MATCHED = 1  # the user matched a signal themselves
    RELATED_ACCOUNT = 2  # added as related to a user that matched
    MANUALLY_ADDED = 4  # added by an investigator


# Composite flag values are not enum members, so validate through the
# IntFlag constructor instead of a member lookup.
InfoFlags = Annotated[
    CaseUserInfoFlags,
    PlainValidator(lambda value: CaseUserInfoFlags(int(value))),
    PlainSerializer(int, return_type=int),
]


class TriggerType(IntEnum):
    """Table referenced by a signal's trigger ID."""

    NONE = 0
    REVISION = 1
    LOGGING = 2

    @classmethod
    def from_table_name(cls, table: str) -> "TriggerType":
        """Map a trigger table name to its stored type.

        An empty table name means the signal has no trigger.

        Raises:
            ValueError: If the table is not a known trigger table
        """
        if table == "":
            return cls.NONE
        try:
            return _TRIGGER_TABLES[table]
        except KeyError:
            raise ValueError(f"Unrecognised database table {table}") from None

    @property
    def table_name(self) -> str:
        for table, trigger_type in _TRIGGER_TABLES.items():
            if trigger_type is self:
                return table
        return ""


_TRIGGER_TABLES = {
    "revision": TriggerType.REVISION,
    "logging": TriggerType.LOGGING,
}


# =============================================================================
# Users
# =============================================================================


class UserIdentity(BaseModel):
    """A local wiki account."""

    id: int = Field(..., ge=0, description="Local user ID, 0 for anonymous")
    name: str

    model_config = ConfigDict(frozen=True)

    @property
    def is_registered(self) -> bool:
        return self.id > 0


class CaseUser(BaseModel):
    """A user as attached (or about to be attached) to a case."""

    user: UserIdentity
    info_flags: InfoFlags = CaseUserInfoFlags.NONE

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_user(cls, user: "UserIdentity | CaseUser") -> "CaseUser":
        """Wrap a bare identity with no flags set; CaseUser values pass through."""
        if isinstance(user, CaseUser):
            return user
        return cls(user=user)

    @property
    def id(self) -> int:
        return self.user.id

    @property
    def name(self) -> str:
        return self.user.name

    def combine(self, other: "CaseUser") -> "CaseUser":
        """Merge the flags of another entry for the same user."""
        if other.id != self.id:
            raise ValueError(f"Cannot combine user {self.id} with user {other.id}")
        return CaseUser(user=self.user, info_flags=self.info_flags | other.info_flags)


# =============================================================================
# Cases
# =============================================================================


class CaseSignal(BaseModel):
    """A signal match recorded against a case."""

    name: str
    value: str
    trigger_id: int = 0
    trigger_type: TriggerType = TriggerType.NONE

    model_config = ConfigDict(frozen=True)


class CaseMember(BaseModel):
    """A user ID stored in a case together with its info flags."""

    user_id: int
    info_flags: InfoFlags = CaseUserInfoFlags.NONE


class Case(BaseModel):
    """A Suggested Investigations case.

    Groups users suspected of coordinated abuse together with the signals
    that linked them.
    """

    id: int
    status: CaseStatus = CaseStatus.OPEN
    status_reason: str = ""
    url_identifier: int = 0
    users: list[CaseMember] = Field(default_factory=list)
    signals: list[CaseSignal] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def url_identifier_hex(self) -> str:
        """URL identifier in the hexadecimal form used in links."""
        return format(self.url_identifier, "x")

    @property
    def user_ids(self) -> list[int]:
        return [member.user_id for member in self.users]


class CaseSummary(BaseModel):
    """Lightweight case representation for listings."""

    id: int
    status: CaseStatus
    status_reason: str = ""
    url_identifier: int = 0
    updated_at: datetime | None = None


# =============================================================================
# Blocks
# =============================================================================


class BlockRecord(BaseModel):
    """A block reported by a local or global block store."""

    target_user_id: int | None = Field(
        default=None, description="Blocked user, None for IP or range blocks"
    )
    sitewide: bool = True
    expiry: datetime | None = Field(default=None, description="None means infinity")

    model_config = ConfigDict(frozen=True)

    @property
    def is_indefinite(self) -> bool:
        return self.expiry is None
