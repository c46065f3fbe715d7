from __future__ import annotations

import datetime
import sys
from pathlib import Path
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database as db  # noqa: E402
from database import (  # noqa: E402
    Base,
    LeaveBalance,
    Officer,
    RecurringSchedule,
    ScheduleException,
    ShiftType,
)

MONDAY = datetime.date(2024, 3, 4)


class RosterSeeder:
    """Small factory for roster rows; every helper commits so ids are assigned."""

    def __init__(self, session) -> None:
        self.session = session

    def _save(self, row):
        self.session.add(row)
        self.session.commit()
        return row

    def officer(self, name: str, rank: str = "Officer") -> Officer:
        return self._save(Officer(full_name=name, rank=rank))

    def shift_type(self, name: str = "Day", start: str = "07:00", end: str = "15:00") -> ShiftType:
        return self._save(
            ShiftType(
                name=name,
                start_time=datetime.time.fromisoformat(start),
                end_time=datetime.time.fromisoformat(end),
            )
        )

    def recurring(
        self,
        officer: Officer,
        shift: ShiftType,
        *,
        day_of_week: int = 0,
        start_date: datetime.date = datetime.date(2024, 1, 1),
        end_date: Optional[datetime.date] = None,
        position: str = "District 1",
        unit: str = "101",
        partner: Optional[Officer] = None,
    ) -> RecurringSchedule:
        return self._save(
            RecurringSchedule(
                officer_id=officer.id,
                day_of_week=day_of_week,
                shift_type_id=shift.id,
                position_name=position,
                unit_number=unit,
                start_date=start_date,
                end_date=end_date,
                is_partnership=partner is not None,
                partner_officer_id=partner.id if partner is not None else None,
            )
        )

    def partnered_recurring(self, first: Officer, second: Officer, shift: ShiftType, **kwargs):
        return (
            self.recurring(first, shift, partner=second, **kwargs),
            self.recurring(second, shift, partner=first, **kwargs),
        )

    def exception(self, officer: Officer, shift: ShiftType, date: datetime.date = MONDAY, **fields) -> ScheduleException:
        fields.setdefault("notes", "")
        return self._save(ScheduleException(officer_id=officer.id, date=date, shift_type_id=shift.id, **fields))

    def balance(self, officer: Officer, pto_type: str, hours: float) -> LeaveBalance:
        return self._save(LeaveBalance(officer_id=officer.id, pto_type=pto_type, hours=hours))


@pytest.fixture()
def session_factory(monkeypatch):
    """In-memory roster database swapped in for the module-level engine."""
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    monkeypatch.setattr(db, "roster_engine", engine)
    monkeypatch.setattr(db, "SessionLocal", factory)
    yield factory
    engine.dispose()


@pytest.fixture()
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture()
def seed(session) -> RosterSeeder:
    return RosterSeeder(session)
