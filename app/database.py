"""Roster persistence layer.

Store helpers take a session first and only ``flush``; the engine operation
that owns the unit of work decides when to commit or roll back.
"""

from __future__ import annotations

import datetime
import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    or_,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.types import Time

from errors import AmbiguousOverrideError, InvalidStateError, NotFoundError, StoreFailure


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
ROSTER_DATABASE_URL = os.environ.get("ROSTER_DATABASE_URL") or f"sqlite:///{(DATA_DIR / 'roster.db').as_posix()}"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Base(DeclarativeBase):
    """Metadata for every roster table living in roster.db."""

    pass


class Officer(Base):
    __tablename__ = "officers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    rank: Mapped[str] = mapped_column(String(80), default="", nullable=False)
    badge_number: Mapped[str] = mapped_column(String(20), default="", nullable=False)
    status: Mapped[str] = mapped_column(String(12), default="active", nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    balances: Mapped[List["LeaveBalance"]] = relationship(
        back_populates="officer", cascade="all, delete-orphan"
    )


class ShiftType(Base):
    __tablename__ = "shift_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)


class RecurringSchedule(Base):
    __tablename__ = "recurring_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    officer_id: Mapped[int] = mapped_column(ForeignKey("officers.id", ondelete="CASCADE"), nullable=False)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)  # 0 = Monday
    shift_type_id: Mapped[int] = mapped_column(ForeignKey("shift_types.id"), nullable=False)
    position_name: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    unit_number: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    is_partnership: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    partner_officer_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def active_on(self, on_date: datetime.date) -> bool:
        if self.start_date > on_date:
            return False
        return self.end_date is None or self.end_date >= on_date


class ScheduleException(Base):
    __tablename__ = "schedule_exceptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    officer_id: Mapped[int] = mapped_column(ForeignKey("officers.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    shift_type_id: Mapped[int] = mapped_column(ForeignKey("shift_types.id"), nullable=False)
    is_off: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Free text from the editors; parsed lazily so malformed pairs can be reported.
    custom_start_time: Mapped[str | None] = mapped_column(String(8), nullable=True)
    custom_end_time: Mapped[str | None] = mapped_column(String(8), nullable=True)
    position_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    unit_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    notes: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    is_partnership: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    partner_officer_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    partnership_suspended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    partnership_suspension_reason: Mapped[str | None] = mapped_column(String(80), nullable=True)
    pto_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    hours_deducted: Mapped[float | None] = mapped_column(Float, nullable=True)
    schedule_type: Mapped[str] = mapped_column(String(40), nullable=False, default="manual")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class LeaveBalance(Base):
    __tablename__ = "leave_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    officer_id: Mapped[int] = mapped_column(ForeignKey("officers.id", ondelete="CASCADE"), nullable=False)
    pto_type: Mapped[str] = mapped_column(String(20), nullable=False)
    hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    officer: Mapped[Officer] = relationship(back_populates="balances")

    __table_args__ = (UniqueConstraint("officer_id", "pto_type", name="uq_leave_balance_officer_type"),)


class LeaveLedgerEntry(Base):
    __tablename__ = "leave_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    officer_id: Mapped[int] = mapped_column(Integer, nullable=False)
    pto_type: Mapped[str] = mapped_column(String(20), nullable=False)
    delta_hours: Mapped[float] = mapped_column(Float, nullable=False)
    exception_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str] = mapped_column(String(20), nullable=False, default="adjust")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class PartnershipEvent(Base):
    __tablename__ = "partnership_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    officer_id: Mapped[int] = mapped_column(Integer, nullable=False)
    partner_officer_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    shift_type_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    is_ppo_partnership: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Settings(Base):
    __tablename__ = "settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (UniqueConstraint("name", name="uq_settings_name"),)

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="ScheduleException")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


roster_engine = create_engine(
    ROSTER_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=roster_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    Base.metadata.create_all(roster_engine)


# ---------------------------------------------------------------------------
# Reference data


def get_shift_type(session, shift_type_id: int) -> Optional[ShiftType]:
    return session.get(ShiftType, shift_type_id)


def get_officer(session, officer_id: int) -> Optional[Officer]:
    return session.get(Officer, officer_id)


def get_officers(session, officer_ids: Iterable[int]) -> Dict[int, Officer]:
    ids = {officer_id for officer_id in officer_ids if officer_id is not None}
    if not ids:
        return {}
    stmt = select(Officer).where(Officer.id.in_(ids))
    return {officer.id: officer for officer in session.scalars(stmt)}


# ---------------------------------------------------------------------------
# Recurring pattern store


def list_recurring(
    session,
    shift_type_id: int,
    day_of_week: int,
    on_date: Optional[datetime.date] = None,
) -> List[RecurringSchedule]:
    stmt = select(RecurringSchedule).where(
        RecurringSchedule.shift_type_id == shift_type_id,
        RecurringSchedule.day_of_week == day_of_week,
    )
    if on_date is not None:
        stmt = stmt.where(
            RecurringSchedule.start_date <= on_date,
            or_(RecurringSchedule.end_date.is_(None), RecurringSchedule.end_date >= on_date),
        )
    stmt = stmt.order_by(RecurringSchedule.officer_id, RecurringSchedule.id)
    return list(session.scalars(stmt))


def list_recurring_partnerships(session, on_date: datetime.date) -> List[RecurringSchedule]:
    stmt = (
        select(RecurringSchedule)
        .where(
            RecurringSchedule.is_partnership.is_(True),
            RecurringSchedule.day_of_week == on_date.weekday(),
            RecurringSchedule.start_date <= on_date,
            or_(RecurringSchedule.end_date.is_(None), RecurringSchedule.end_date >= on_date),
        )
        .order_by(RecurringSchedule.shift_type_id, RecurringSchedule.officer_id)
    )
    return list(session.scalars(stmt))


def close_recurring(session, recurring_id: int, end_date: datetime.date) -> RecurringSchedule:
    row = session.get(RecurringSchedule, recurring_id)
    if not row:
        raise NotFoundError("RecurringSchedule", recurring_id)
    if end_date < row.start_date:
        raise InvalidStateError(
            f"End date {end_date.isoformat()} is before the row's start date {row.start_date.isoformat()}."
        )
    row.end_date = end_date
    session.flush()
    return row


# ---------------------------------------------------------------------------
# Exception store


def list_exceptions(session, date: datetime.date, shift_type_id: int) -> List[ScheduleException]:
    stmt = (
        select(ScheduleException)
        .where(ScheduleException.date == date, ScheduleException.shift_type_id == shift_type_id)
        .order_by(ScheduleException.officer_id, ScheduleException.id)
    )
    return list(session.scalars(stmt))


def find_exceptions(
    session,
    officer_id: int,
    date: datetime.date,
    shift_type_id: int,
) -> List[ScheduleException]:
    stmt = (
        select(ScheduleException)
        .where(
            ScheduleException.officer_id == officer_id,
            ScheduleException.date == date,
            ScheduleException.shift_type_id == shift_type_id,
        )
        .order_by(ScheduleException.id)
    )
    return list(session.scalars(stmt))


def find_exception(
    session,
    officer_id: int,
    date: datetime.date,
    shift_type_id: int,
) -> Optional[ScheduleException]:
    """Return the single exception for the key, refusing to guess between duplicates."""
    rows = find_exceptions(session, officer_id, date, shift_type_id)
    if len(rows) > 1:
        raise AmbiguousOverrideError(officer_id, date, shift_type_id, [row.id for row in rows])
    return rows[0] if rows else None


def get_exception(session, exception_id: int, *, refresh: bool = False) -> Optional[ScheduleException]:
    return session.get(ScheduleException, exception_id, populate_existing=refresh)


_EXCEPTION_FIELDS = (
    "is_off",
    "custom_start_time",
    "custom_end_time",
    "position_name",
    "unit_number",
    "notes",
    "is_partnership",
    "partner_officer_id",
    "partnership_suspended",
    "partnership_suspension_reason",
    "pto_type",
    "hours_deducted",
    "schedule_type",
)


def upsert_exception(session, row: Dict[str, Any]) -> ScheduleException:
    """Create or update an exception, addressed by ``id`` or by its (officer, date, shift) key."""
    exception_id = row.get("id")
    if exception_id:
        record = session.get(ScheduleException, exception_id)
        if not record:
            raise NotFoundError("ScheduleException", exception_id)
    else:
        officer_id = row.get("officer_id")
        date = row.get("date")
        shift_type_id = row.get("shift_type_id")
        if officer_id is None or shift_type_id is None:
            raise ValueError("officer_id and shift_type_id are required.")
        if not isinstance(date, datetime.date):
            raise TypeError("date must be a date instance.")
        record = find_exception(session, officer_id, date, shift_type_id)
        if record is None:
            record = ScheduleException(officer_id=officer_id, date=date, shift_type_id=shift_type_id)
            session.add(record)
    for field in _EXCEPTION_FIELDS:
        if field in row:
            setattr(record, field, row[field])
    if record.notes is None:
        record.notes = ""
    session.flush()
    return record


def delete_exception(session, exception_id: int) -> bool:
    record = session.get(ScheduleException, exception_id)
    if not record:
        return False
    session.delete(record)
    session.flush()
    return True


# ---------------------------------------------------------------------------
# Leave balances


def get_balance(session, officer_id: int, pto_type: str) -> float:
    stmt = select(LeaveBalance.hours).where(
        LeaveBalance.officer_id == officer_id,
        LeaveBalance.pto_type == pto_type,
    )
    value = session.execute(stmt).scalar_one_or_none()
    return float(value or 0.0)


def get_balances(session, officer_id: int) -> Dict[str, float]:
    stmt = select(LeaveBalance).where(LeaveBalance.officer_id == officer_id).order_by(LeaveBalance.pto_type)
    return {row.pto_type: float(row.hours or 0.0) for row in session.scalars(stmt)}


def adjust_balance(
    session,
    officer_id: int,
    pto_type: str,
    delta_hours: float,
    *,
    exception_id: Optional[int] = None,
    reason: str = "adjust",
) -> float:
    """Apply a signed delta with a single UPDATE so concurrent writers never overwrite each other."""
    result = session.execute(
        update(LeaveBalance)
        .where(LeaveBalance.officer_id == officer_id, LeaveBalance.pto_type == pto_type)
        .values(hours=LeaveBalance.hours + delta_hours)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        session.add(LeaveBalance(officer_id=officer_id, pto_type=pto_type, hours=delta_hours))
    session.add(
        LeaveLedgerEntry(
            officer_id=officer_id,
            pto_type=pto_type,
            delta_hours=delta_hours,
            exception_id=exception_id,
            reason=reason,
        )
    )
    session.flush()
    return get_balance(session, officer_id, pto_type)


def list_ledger_entries(session) -> List[LeaveLedgerEntry]:
    stmt = select(LeaveLedgerEntry).order_by(LeaveLedgerEntry.id)
    return list(session.scalars(stmt))


# ---------------------------------------------------------------------------
# Settings


def get_active_settings(session) -> Optional[Settings]:
    stmt = select(Settings).order_by(Settings.lastEditedAt.desc(), Settings.id.desc())
    return session.scalars(stmt).first()


def upsert_settings(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> Settings:
    existing: Optional[Settings] = session.execute(
        select(Settings).where(Settings.name == name)
    ).scalars().first()
    payload = params_dict if isinstance(params_dict, dict) else {}
    if existing:
        existing.paramsJSON = json.dumps(payload)
        existing.lastEditedBy = edited_by
        existing.lastEditedAt = _utcnow()
        session.commit()
        session.refresh(existing)
        return existing
    settings = Settings(
        name=name,
        paramsJSON=json.dumps(payload),
        lastEditedBy=edited_by,
        lastEditedAt=_utcnow(),
    )
    session.add(settings)
    session.commit()
    session.refresh(settings)
    return settings


# ---------------------------------------------------------------------------
# Event trails


def record_partnership_event(
    session,
    *,
    officer_id: int,
    partner_officer_id: Optional[int],
    date: datetime.date,
    shift_type_id: int,
    event_type: str,
    reason: str = "",
    is_ppo_partnership: bool = False,
) -> PartnershipEvent:
    event = PartnershipEvent(
        officer_id=officer_id,
        partner_officer_id=partner_officer_id,
        date=date,
        shift_type_id=shift_type_id,
        event_type=event_type,
        reason=reason,
        is_ppo_partnership=is_ppo_partnership,
    )
    session.add(event)
    session.flush()
    return event


def resolve_partnership_events(
    session,
    *,
    officer_id: int,
    date: datetime.date,
    shift_type_id: int,
    event_type: str,
) -> int:
    result = session.execute(
        update(PartnershipEvent)
        .where(
            PartnershipEvent.officer_id == officer_id,
            PartnershipEvent.date == date,
            PartnershipEvent.shift_type_id == shift_type_id,
            PartnershipEvent.event_type == event_type,
            PartnershipEvent.resolved_at.is_(None),
        )
        .values(resolved_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "ScheduleException",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    session.flush()
    return log


def list_pto_exceptions(session) -> List[ScheduleException]:
    stmt = (
        select(ScheduleException)
        .where(ScheduleException.is_off.is_(True))
        .order_by(ScheduleException.date, ScheduleException.officer_id, ScheduleException.id)
    )
    return list(session.scalars(stmt))


@contextmanager
def unit_of_work(session, description: str):
    """Commit on success; roll back and wrap persistence errors in ``StoreFailure`` otherwise."""
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StoreFailure(f"{description} failed: {exc}", cause=exc) from exc
    except BaseException:
        session.rollback()
        raise
