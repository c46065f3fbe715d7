from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, Optional

from database import (
    ScheduleException,
    close_recurring,
    delete_exception,
    get_officer,
    record_audit_log,
    unit_of_work,
    upsert_exception,
)
from errors import InvalidStateError, NotFoundError
from resolver import SOURCE_EXCEPTION, EffectiveAssignment, resolve_day
from shift_catalog import parse_time_label, time_label

logger = logging.getLogger(__name__)


def add_officer_to_shift(
    session,
    officer_id: int,
    date: datetime.date,
    shift_type_id: int,
    *,
    position: Optional[str] = None,
    unit: Optional[str] = None,
    start_time=None,
    end_time=None,
    notes: str = "",
    actor: str = "system",
) -> ScheduleException:
    """Put an officer on a shift for one date without touching their weekly pattern."""
    with unit_of_work(session, "Adding officer to shift"):
        if get_officer(session, officer_id) is None:
            raise NotFoundError("Officer", officer_id)
        day = resolve_day(session, date, shift_type_id)
        if day.assignment_for(officer_id) is not None:
            raise InvalidStateError(f"Officer {officer_id} is already on shift {shift_type_id} for {day.date}.")
        if day.removal_for(officer_id) is not None:
            raise InvalidStateError(f"Officer {officer_id} is off for shift {shift_type_id} on {day.date}.")
        row: Dict[str, Any] = {
            "officer_id": officer_id,
            "date": day.date,
            "shift_type_id": shift_type_id,
            "is_off": False,
            "position_name": position or None,
            "unit_number": unit or None,
            "notes": notes or "",
            "schedule_type": "manual",
        }
        row.update(_custom_times(start_time, end_time))
        exception = upsert_exception(session, row)
        record_audit_log(
            session,
            user_id=actor,
            action="SCHEDULE_ADD",
            target_id=exception.id,
            payload={"officer_id": officer_id, "date": day.date.isoformat(), "shift_type_id": shift_type_id},
        )
    return exception


def update_assignment(
    session,
    officer_id: int,
    date: datetime.date,
    shift_type_id: int,
    *,
    position: Optional[str] = None,
    unit: Optional[str] = None,
    notes: Optional[str] = None,
    start_time=None,
    end_time=None,
    actor: str = "system",
) -> ScheduleException:
    """Override position, unit, notes or hours for one date. Omitted fields keep their value."""
    with unit_of_work(session, "Updating assignment"):
        day = resolve_day(session, date, shift_type_id)
        assignment = day.assignment_for(officer_id)
        if assignment is None:
            raise InvalidStateError(f"Officer {officer_id} is not working shift {shift_type_id} on {day.date}.")
        row: Dict[str, Any] = {}
        if assignment.source != SOURCE_EXCEPTION:
            # The new row replaces the pattern for the day, so it must keep the pattern's link.
            row.update(
                is_partnership=assignment.is_partnership,
                partner_officer_id=assignment.partner_officer_id,
                position_name=assignment.position or None,
                unit_number=assignment.unit or None,
            )
        if position is not None:
            row["position_name"] = position or None
        if unit is not None:
            row["unit_number"] = unit or None
        if notes is not None:
            row["notes"] = notes
        if start_time is not None or end_time is not None:
            row.update(_custom_times(start_time, end_time))
        _address(row, assignment)
        exception = upsert_exception(session, row)
        record_audit_log(
            session,
            user_id=actor,
            action="SCHEDULE_UPDATE",
            target_id=exception.id,
            payload={key: value for key, value in row.items() if key not in ("id", "date")},
        )
    return exception


def remove_officer_from_shift(
    session,
    officer_id: int,
    date: datetime.date,
    shift_type_id: int,
    *,
    actor: str = "system",
) -> Optional[int]:
    """Take an officer off a shift for one date; returns the surviving day-off exception id, if any.

    Any partnership on the date is cleared on both sides. A one-off addition is
    deleted outright; an officer who works the shift by pattern gets a day-off
    exception.
    """
    with unit_of_work(session, "Removing officer from shift"):
        day = resolve_day(session, date, shift_type_id)
        assignment = day.assignment_for(officer_id)
        if assignment is None:
            raise InvalidStateError(f"Officer {officer_id} is not working shift {shift_type_id} on {day.date}.")
        if assignment.is_partnership and assignment.partner_officer_id is not None:
            partner = day.assignment_for(assignment.partner_officer_id)
            if partner is not None and partner.partner_officer_id == officer_id:
                row = {
                    "is_partnership": False,
                    "partner_officer_id": None,
                    "partnership_suspended": False,
                    "partnership_suspension_reason": None,
                }
                _address(row, partner)
                upsert_exception(session, row)

        result_id: Optional[int] = None
        if assignment.recurring_id is None:
            delete_exception(session, assignment.exception_id)
            action = "SCHEDULE_REMOVE"
        else:
            row = {
                "is_off": True,
                "pto_type": None,
                "hours_deducted": None,
                "is_partnership": False,
                "partner_officer_id": None,
                "partnership_suspended": False,
                "partnership_suspension_reason": None,
                "schedule_type": "manual",
            }
            _address(row, assignment)
            result_id = upsert_exception(session, row).id
            action = "SCHEDULE_DAY_OFF"
        record_audit_log(
            session,
            user_id=actor,
            action=action,
            target_id=assignment.exception_id or result_id,
            payload={"officer_id": officer_id, "date": day.date.isoformat(), "shift_type_id": shift_type_id},
        )
    return result_id


def end_recurring_assignment(
    session,
    recurring_id: int,
    end_date: datetime.date,
    *,
    actor: str = "system",
):
    """Close a weekly pattern row; it stops contributing after ``end_date``."""
    with unit_of_work(session, "Ending recurring assignment"):
        row = close_recurring(session, recurring_id, end_date)
        record_audit_log(
            session,
            user_id=actor,
            action="RECURRING_END",
            target_type="RecurringSchedule",
            target_id=recurring_id,
            payload={"end_date": end_date.isoformat(), "officer_id": row.officer_id},
        )
    logger.info("Recurring assignment %s ends on %s.", recurring_id, end_date)
    return row


def _address(row: Dict[str, Any], assignment: EffectiveAssignment) -> None:
    if assignment.source == SOURCE_EXCEPTION:
        row["id"] = assignment.exception_id
        return
    row.setdefault("is_off", False)
    row.update(officer_id=assignment.officer_id, date=assignment.date, shift_type_id=assignment.shift_type_id)


def _custom_times(start_time, end_time) -> Dict[str, Optional[str]]:
    if start_time in (None, "") and end_time in (None, ""):
        return {}
    for value in (start_time, end_time):
        if value not in (None, "") and parse_time_label(value) is None:
            raise InvalidStateError(f"Invalid time {value!r}; use HH:MM.")
    return {"custom_start_time": time_label(start_time), "custom_end_time": time_label(end_time)}
