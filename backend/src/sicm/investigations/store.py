"""Persistence for Suggested Investigations cases.

Defines the case tables and the statements run against them. Every
function here takes the caller's session and runs inside the caller's
transaction; committing is left to the services.
"""

import hashlib
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    func,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base
from .models import Case, CaseMember, CaseSignal, CaseStatus, CaseUser
from .signals import PositiveSignalMatch

# Largest URL identifier that fits the integer column on each database
MAX_URL_IDENTIFIER = {
    "postgresql": 2147483647,
}
DEFAULT_MAX_URL_IDENTIFIER = 4294967295


# =========================
# Tables
# =========================


class CaseRow(Base):
    """One Suggested Investigations case."""

    __tablename__ = "si_cases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=CaseStatus.OPEN.value, index=True
    )
    status_reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    url_identifier: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CaseUserRow(Base):
    """A user attached to a case, with the bit flags describing why."""

    __tablename__ = "si_case_users"

    case_id: Mapped[int] = mapped_column(
        ForeignKey("si_cases.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_info: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class CaseSignalRow(Base):
    """A signal match recorded against a case."""

    __tablename__ = "si_case_signals"
    __table_args__ = (
        UniqueConstraint("case_id", "name", "value", "trigger_id", "trigger_type"),
        Index("ix_si_case_signals_name_value", "name", "value"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(
        ForeignKey("si_cases.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    trigger_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    trigger_type: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)


# =========================
# Locking
# =========================


def merge_lock_key(value: str) -> int:
    """Signed 64-bit advisory lock key for a signal value."""
    digest = hashlib.blake2b(f"sicm-merge:{value}".encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


async def acquire_merge_locks(session: AsyncSession, values: Iterable[str]) -> None:
    """Serialize merge decisions for the given signal values.

    On PostgreSQL this takes one transaction-scoped advisory lock per value,
    in a fixed order so two batches never wait on each other in a cycle.
    SQLite transactions already hold the database write lock from BEGIN
    IMMEDIATE, so nothing more is needed there.
    """
    if dialect_name(session) != "postgresql":
        return

    for key in sorted({merge_lock_key(value) for value in values}):
        await session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})


# =========================
# Cases
# =========================


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def max_url_identifier(session: AsyncSession) -> int:
    return MAX_URL_IDENTIFIER.get(dialect_name(session), DEFAULT_MAX_URL_IDENTIFIER)


async def url_identifier_in_use(session: AsyncSession, url_identifier: int) -> bool:
    result = await session.execute(
        select(CaseRow.id).where(CaseRow.url_identifier == url_identifier).limit(1)
    )
    return result.first() is not None


async def insert_case(session: AsyncSession, url_identifier: int) -> int:
    """Insert an open case with an empty status reason and return its ID."""
    now = utcnow()
    result = await session.execute(
        insert(CaseRow).values(
            status=CaseStatus.OPEN.value,
            status_reason="",
            url_identifier=url_identifier,
            created_at=now,
            updated_at=now,
        )
    )
    return result.inserted_primary_key[0]


async def touch_case(session: AsyncSession, case_id: int) -> None:
    await session.execute(
        update(CaseRow).where(CaseRow.id == case_id).values(updated_at=utcnow())
    )


async def update_case_status(
    session: AsyncSession, case_id: int, status: CaseStatus, reason: str
) -> None:
    await session.execute(
        update(CaseRow)
        .where(CaseRow.id == case_id)
        .values(status=status.value, status_reason=reason, updated_at=utcnow())
    )


async def select_case_row(session: AsyncSession, case_id: int) -> Any | None:
    result = await session.execute(select(CaseRow.__table__).where(CaseRow.id == case_id))
    return result.first()


async def select_case_status(session: AsyncSession, case_id: int) -> int | None:
    result = await session.execute(select(CaseRow.status).where(CaseRow.id == case_id))
    return result.scalar_one_or_none()


async def select_case_id_by_url_identifier(
    session: AsyncSession, url_identifier: int
) -> int | None:
    result = await session.execute(
        select(CaseRow.id).where(CaseRow.url_identifier == url_identifier)
    )
    return result.scalar_one_or_none()


async def select_case_rows(
    session: AsyncSession,
    status: CaseStatus | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Any], int]:
    """Page through cases, most recently updated first."""
    query = select(CaseRow.__table__)
    count_query = select(func.count()).select_from(CaseRow)
    if status is not None:
        query = query.where(CaseRow.status == status.value)
        count_query = count_query.where(CaseRow.status == status.value)

    total = (await session.execute(count_query)).scalar() or 0
    result = await session.execute(
        query.order_by(CaseRow.updated_at.desc(), CaseRow.id.desc()).limit(limit).offset(offset)
    )
    return list(result.fetchall()), total


async def count_cases(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(CaseRow))
    return result.scalar() or 0


# =========================
# Signals
# =========================


async def select_case_rows_for_signal(
    session: AsyncSession,
    names: Sequence[str],
    value: str,
    statuses: Sequence[CaseStatus] | None = None,
) -> list[Any]:
    """Cases with a recorded signal named in ``names`` holding exactly ``value``.

    Trigger columns are ignored. Rows come back in ascending case ID order.
    """
    query = (
        select(CaseRow.id, CaseRow.status, CaseRow.status_reason, CaseRow.url_identifier)
        .distinct()
        .join(CaseSignalRow, CaseSignalRow.case_id == CaseRow.id)
        .where(CaseSignalRow.name.in_(list(names)), CaseSignalRow.value == value)
        .order_by(CaseRow.id.asc())
    )
    if statuses is not None:
        query = query.where(CaseRow.status.in_([status.value for status in statuses]))

    result = await session.execute(query)
    return list(result.fetchall())


async def select_first_mergeable_case_id(
    session: AsyncSession, signal: PositiveSignalMatch
) -> int | None:
    """Lowest open case ID that recorded this signal (or an equivalent) with the same value."""
    result = await session.execute(
        select(CaseRow.id)
        .join(CaseSignalRow, CaseSignalRow.case_id == CaseRow.id)
        .where(
            CaseSignalRow.name.in_(signal.merge_names),
            CaseSignalRow.value == signal.value,
            CaseRow.status == CaseStatus.OPEN.value,
        )
        .order_by(CaseRow.id.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def insert_case_signals(
    session: AsyncSession, case_id: int, signals: Sequence[PositiveSignalMatch]
) -> None:
    """Record signals against a case, skipping ones already recorded."""
    rows = [
        {
            "case_id": case_id,
            "name": signal.name,
            "value": signal.value,
            "trigger_id": signal.trigger_id,
            "trigger_type": signal.trigger_type.value,
        }
        for signal in signals
    ]
    if not rows:
        return

    await session.execute(
        text("""
        INSERT INTO si_case_signals (case_id, name, value, trigger_id, trigger_type)
        VALUES (:case_id, :name, :value, :trigger_id, :trigger_type)
        ON CONFLICT (case_id, name, value, trigger_id, trigger_type) DO NOTHING
        """),
        rows,
    )


async def select_case_signals(session: AsyncSession, case_id: int) -> list[CaseSignal]:
    result = await session.execute(
        select(
            CaseSignalRow.name,
            CaseSignalRow.value,
            CaseSignalRow.trigger_id,
            CaseSignalRow.trigger_type,
        )
        .where(CaseSignalRow.case_id == case_id)
        .order_by(CaseSignalRow.id.asc())
    )
    return [
        CaseSignal(
            name=row.name,
            value=row.value,
            trigger_id=row.trigger_id,
            trigger_type=row.trigger_type,
        )
        for row in result.fetchall()
    ]


async def select_signal_names_in_case(session: AsyncSession, case_id: int) -> list[str]:
    result = await session.execute(
        select(CaseSignalRow.name).distinct().where(CaseSignalRow.case_id == case_id)
    )
    return list(result.scalars().all())


# =========================
# Users
# =========================


def combine_case_users(users: Iterable[CaseUser]) -> list[CaseUser]:
    """Collapse repeated entries for one user into a single entry with OR'd flags."""
    combined: dict[int, CaseUser] = {}
    for user in users:
        existing = combined.get(user.id)
        combined[user.id] = user if existing is None else existing.combine(user)
    return list(combined.values())


async def upsert_case_users(
    session: AsyncSession, case_id: int, users: Sequence[CaseUser]
) -> None:
    """Attach users to a case.

    A user already in the case keeps their row; the incoming flags are OR'd
    into the stored ones so no flag is ever cleared.
    """
    rows = [
        {"case_id": case_id, "user_id": user.id, "user_info": int(user.info_flags)}
        for user in combine_case_users(users)
    ]
    if not rows:
        return

    await session.execute(
        text("""
        INSERT INTO si_case_users (case_id, user_id, user_info)
        VALUES (:case_id, :user_id, :user_info)
        ON CONFLICT (case_id, user_id)
        DO UPDATE SET user_info = si_case_users.user_info | excluded.user_info
        """),
        rows,
    )


async def select_case_members(session: AsyncSession, case_id: int) -> list[Any]:
    result = await session.execute(
        select(CaseUserRow.user_id, CaseUserRow.user_info)
        .where(CaseUserRow.case_id == case_id)
        .order_by(CaseUserRow.user_id.asc())
    )
    return list(result.fetchall())


async def select_open_case_ids_for_user(session: AsyncSession, user_id: int) -> list[int]:
    result = await session.execute(
        select(CaseRow.id)
        .join(CaseUserRow, CaseUserRow.case_id == CaseRow.id)
        .where(CaseUserRow.user_id == user_id, CaseRow.status == CaseStatus.OPEN.value)
        .order_by(CaseRow.id.asc())
    )
    return list(result.scalars().all())


async def load_case(session: AsyncSession, case_id: int) -> Case | None:
    """Read a case with its users and signals.

    Raises:
        ValueError: If the stored status is not a known status
    """
    row = await select_case_row(session, case_id)
    if row is None:
        return None

    status = CaseStatus(row.status)
    members = await select_case_members(session, case_id)
    signals = await select_case_signals(session, case_id)
    return Case(
        id=row.id,
        status=status,
        status_reason=row.status_reason,
        url_identifier=row.url_identifier,
        users=[
            CaseMember(user_id=member.user_id, info_flags=member.user_info)
            for member in members
        ],
        signals=signals,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


async def select_open_case_ids_after(
    session: AsyncSession, last_id: int, limit: int
) -> list[int]:
    """Next batch of open case IDs above ``last_id``, ascending."""
    result = await session.execute(
        select(CaseRow.id)
        .where(CaseRow.status == CaseStatus.OPEN.value, CaseRow.id > last_id)
        .order_by(CaseRow.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())
