"""Effective schedule resolution.

Every caller that needs to know who works a shift on a date goes through
``resolve``/``resolve_day``; nothing else merges recurring rows with
exceptions.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from database import (
    Officer,
    RecurringSchedule,
    ScheduleException,
    ShiftType,
    get_officers,
    get_shift_type,
    list_exceptions,
    list_recurring,
)
from errors import AmbiguousOverrideError, NotFoundError, StoreFailure
from ranks import is_ppo_rank
from shift_catalog import shift_window, time_label

logger = logging.getLogger(__name__)

SOURCE_RECURRING = "recurring"
SOURCE_EXCEPTION = "exception"

KIND_RECURRING = "recurring"
KIND_ADDITION = "addition"
KIND_MODIFICATION = "modification"
KIND_REMOVAL = "removal"


@dataclass
class EffectiveAssignment:
    officer_id: int
    date: datetime.date
    shift_type_id: int
    source: str
    kind: str
    officer_name: str = ""
    rank: str = ""
    position: str = ""
    unit: str = ""
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    is_off: bool = False
    is_partnership: bool = False
    partner_officer_id: Optional[int] = None
    partnership_suspended: bool = False
    is_ppo: bool = False
    pto_type: Optional[str] = None
    notes: str = ""
    exception_id: Optional[int] = None
    recurring_id: Optional[int] = None

    @property
    def has_active_partnership(self) -> bool:
        return (
            self.is_partnership
            and self.partner_officer_id is not None
            and not self.is_off
            and not self.partnership_suspended
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["date"] = self.date.isoformat()
        return payload


@dataclass
class DaySchedule:
    date: datetime.date
    shift_type_id: int
    assignments: List[EffectiveAssignment] = field(default_factory=list)
    removals: List[EffectiveAssignment] = field(default_factory=list)

    def assignment_for(self, officer_id: int) -> Optional[EffectiveAssignment]:
        for assignment in self.assignments:
            if assignment.officer_id == officer_id:
                return assignment
        return None

    def removal_for(self, officer_id: int) -> Optional[EffectiveAssignment]:
        for removal in self.removals:
            if removal.officer_id == officer_id:
                return removal
        return None


def resolve(session, date: datetime.date, shift_type_id: int) -> List[EffectiveAssignment]:
    """Return the working roster for ``shift_type_id`` on ``date``, ordered by officer id."""
    return resolve_day(session, date, shift_type_id).assignments


def resolve_day(session, date: datetime.date, shift_type_id: int) -> DaySchedule:
    if isinstance(date, datetime.datetime):
        date = date.date()
    try:
        shift_type = get_shift_type(session, shift_type_id)
        if shift_type is None:
            raise NotFoundError("ShiftType", shift_type_id)
        recurring_rows = list_recurring(session, shift_type_id, date.weekday(), on_date=date)
        exceptions = list_exceptions(session, date, shift_type_id)
        officer_ids = {row.officer_id for row in recurring_rows}
        officer_ids.update(row.officer_id for row in exceptions)
        officers = get_officers(session, officer_ids)
    except SQLAlchemyError as exc:
        raise StoreFailure(f"Could not load the schedule for {date.isoformat()}: {exc}", cause=exc) from exc
    return merge_schedule(date, shift_type, recurring_rows, exceptions, officers)


def merge_schedule(
    date: datetime.date,
    shift_type: ShiftType,
    recurring_rows: Iterable[RecurringSchedule],
    exceptions: Iterable[ScheduleException],
    officers: Optional[Dict[int, Officer]] = None,
) -> DaySchedule:
    """Apply date exceptions on top of the weekly pattern for one date and shift type."""
    officers = officers or {}
    default_start, default_end = shift_window(shift_type)
    day = DaySchedule(date=date, shift_type_id=shift_type.id)

    recurring_by_officer = _recurring_by_officer(date, shift_type.id, recurring_rows)
    exceptions_by_officer: Dict[int, List[ScheduleException]] = {}
    for exception in exceptions:
        if exception.date != date or exception.shift_type_id != shift_type.id:
            continue
        exceptions_by_officer.setdefault(exception.officer_id, []).append(exception)
    for officer_id, rows in exceptions_by_officer.items():
        if len(rows) > 1:
            raise AmbiguousOverrideError(officer_id, date, shift_type.id, [row.id for row in rows])

    for officer_id in sorted(set(recurring_by_officer) | set(exceptions_by_officer)):
        officer = officers.get(officer_id)
        recurring = recurring_by_officer.get(officer_id)
        overrides = exceptions_by_officer.get(officer_id)
        if overrides:
            assignment = _from_exception(overrides[0], recurring, officer, default_start, default_end)
            if assignment.is_off:
                day.removals.append(assignment)
            else:
                day.assignments.append(assignment)
            continue
        day.assignments.append(_from_recurring(date, recurring, officer, default_start, default_end))
    return day


def classify_exception(exception: ScheduleException, recurring: Optional[RecurringSchedule]) -> str:
    if exception.is_off:
        return KIND_REMOVAL
    if recurring is None:
        return KIND_ADDITION
    return KIND_MODIFICATION


def _recurring_by_officer(
    date: datetime.date,
    shift_type_id: int,
    recurring_rows: Iterable[RecurringSchedule],
) -> Dict[int, RecurringSchedule]:
    selected: Dict[int, RecurringSchedule] = {}
    for row in recurring_rows:
        if row.shift_type_id != shift_type_id or row.day_of_week != date.weekday():
            continue
        if not row.active_on(date):
            continue
        current = selected.get(row.officer_id)
        if current is None:
            selected[row.officer_id] = row
            continue
        logger.warning(
            "Officer %s has overlapping recurring rows %s and %s for shift %s on %s; using the newer pattern.",
            row.officer_id,
            current.id,
            row.id,
            shift_type_id,
            date.isoformat(),
        )
        if (row.start_date, row.id) > (current.start_date, current.id):
            selected[row.officer_id] = row
    return selected


def _officer_fields(officer: Optional[Officer]) -> Dict[str, Any]:
    if officer is None:
        return {"officer_name": "", "rank": "", "is_ppo": False}
    return {
        "officer_name": officer.full_name,
        "rank": officer.rank or "",
        "is_ppo": is_ppo_rank(officer.rank),
    }


def _from_recurring(
    date: datetime.date,
    recurring: RecurringSchedule,
    officer: Optional[Officer],
    default_start: Optional[str],
    default_end: Optional[str],
) -> EffectiveAssignment:
    return EffectiveAssignment(
        officer_id=recurring.officer_id,
        date=date,
        shift_type_id=recurring.shift_type_id,
        source=SOURCE_RECURRING,
        kind=KIND_RECURRING,
        position=recurring.position_name or "",
        unit=recurring.unit_number or "",
        start_time=default_start,
        end_time=default_end,
        is_partnership=bool(recurring.is_partnership and recurring.partner_officer_id),
        partner_officer_id=recurring.partner_officer_id if recurring.is_partnership else None,
        recurring_id=recurring.id,
        **_officer_fields(officer),
    )


def _from_exception(
    exception: ScheduleException,
    recurring: Optional[RecurringSchedule],
    officer: Optional[Officer],
    default_start: Optional[str],
    default_end: Optional[str],
) -> EffectiveAssignment:
    position = exception.position_name
    unit = exception.unit_number
    if recurring is not None:
        position = position or recurring.position_name
        unit = unit or recurring.unit_number
    return EffectiveAssignment(
        officer_id=exception.officer_id,
        date=exception.date,
        shift_type_id=exception.shift_type_id,
        source=SOURCE_EXCEPTION,
        kind=classify_exception(exception, recurring),
        position=position or "",
        unit=unit or "",
        start_time=time_label(exception.custom_start_time) or default_start,
        end_time=time_label(exception.custom_end_time) or default_end,
        is_off=bool(exception.is_off),
        is_partnership=bool(exception.is_partnership and exception.partner_officer_id),
        partner_officer_id=exception.partner_officer_id,
        partnership_suspended=bool(exception.partnership_suspended),
        pto_type=exception.pto_type,
        notes=exception.notes or "",
        exception_id=exception.id,
        recurring_id=recurring.id if recurring is not None else None,
        **_officer_fields(officer),
    )
