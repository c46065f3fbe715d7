"""Leave records and the hour balances they draw on.

A leave record is an ``is_off`` exception carrying a PTO type. Creating one
debits the officer's balance; retracting one credits the same hours back and
deletes the record in the same transaction.
"""

from __future__ import annotations

import datetime
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from database import (
    ShiftType,
    adjust_balance,
    delete_exception,
    get_balance,
    get_exception,
    get_shift_type,
    list_ledger_entries,
    list_pto_exceptions,
    record_audit_log,
    unit_of_work,
    upsert_exception,
)
from errors import InvalidStateError, NotFoundError, StoreFailure
from partnerships import restore_partnership_after_pto, suspend_partnership_for_pto
from resolver import SOURCE_EXCEPTION, resolve_day
from settings import load_active_settings, pto_type_values
from settings_defaults import DEFAULT_LEAVE_HOURS
from shift_catalog import parse_time_label, shift_window, span_hours, time_label

logger = logging.getLogger(__name__)

_HOURS_TOLERANCE = 1e-6

_balance_locks: Dict[Tuple[int, str], threading.Lock] = {}
_balance_locks_guard = threading.Lock()


def _balance_lock(officer_id: int, pto_type: str) -> threading.Lock:
    with _balance_locks_guard:
        lock = _balance_locks.get((officer_id, pto_type))
        if lock is None:
            lock = threading.Lock()
            _balance_locks[(officer_id, pto_type)] = lock
        return lock


@dataclass
class LeaveDeduction:
    officer_id: int
    pto_type: str
    hours_deducted: float
    exception_id: int
    balance_after: float
    suspended_partner_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LeaveRestoration:
    officer_id: int
    pto_type: Optional[str]
    hours_restored: float
    exception_id: int
    balance_after: Optional[float]
    partnership_restored: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LedgerMismatch:
    kind: str
    exception_id: int
    officer_id: int
    pto_type: str
    expected_hours: float
    ledger_hours: float
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_leave_hours(
    start,
    end,
    shift_type: Optional[ShiftType] = None,
    *,
    default: float = DEFAULT_LEAVE_HOURS,
) -> float:
    """Hours covered by a leave record.

    Custom start/end win. With neither set, the shift type's window is used.
    Anything unusable (one side missing, unparsable, end before start, or no
    shift type to fall back on) yields ``default``.
    """
    if start is None and end is None:
        if shift_type is None:
            logger.warning("No times and no shift type for leave record; using %.1f hours.", default)
            return default
        start, end = shift_window(shift_type)
    hours = span_hours(start, end)
    if hours is None:
        logger.warning("Unusable leave window %r-%r; using %.1f hours.", start, end, default)
        return default
    return hours


def deduct_leave(
    session,
    officer_id: int,
    date: datetime.date,
    shift_type_id: int,
    pto_type: str,
    *,
    start_time=None,
    end_time=None,
    actor: str = "system",
    settings: Optional[Dict[str, Any]] = None,
) -> LeaveDeduction:
    settings = settings or load_active_settings(session)
    pto_type = str(pto_type or "").strip().lower()
    if pto_type not in pto_type_values(settings):
        raise InvalidStateError(f"Unknown PTO type {pto_type!r}.")
    start_label, end_label = _explicit_window(start_time, end_time)
    balances_enabled = settings["pto_balances_enabled"]

    with _balance_lock(officer_id, pto_type):
        with unit_of_work(session, "Recording leave"):
            day = resolve_day(session, date, shift_type_id)
            if day.removal_for(officer_id) is not None:
                raise InvalidStateError(
                    f"Officer {officer_id} already has leave for shift {shift_type_id} on {day.date.isoformat()}."
                )
            assignment = day.assignment_for(officer_id)
            if assignment is None:
                raise InvalidStateError(
                    f"Officer {officer_id} is not scheduled for shift {shift_type_id} on {day.date.isoformat()}."
                )
            if start_label is not None:
                hours = span_hours(start_label, end_label)
            else:
                hours = compute_leave_hours(
                    assignment.start_time,
                    assignment.end_time,
                    get_shift_type(session, shift_type_id),
                    default=settings["default_leave_hours"],
                )
            hours = round(hours, 2)

            if balances_enabled and settings["enforce_sufficient_balance"]:
                available = get_balance(session, officer_id, pto_type)
                if available + _HOURS_TOLERANCE < hours:
                    raise InvalidStateError(
                        f"Insufficient {pto_type} balance: {available:.2f} hours available, {hours:.2f} needed."
                    )

            partner_id = suspend_partnership_for_pto(session, day, assignment, pto_type)
            row: Dict[str, Any] = {
                "is_off": True,
                "pto_type": pto_type,
                "hours_deducted": hours if balances_enabled else 0.0,
                "is_partnership": False,
                "partner_officer_id": partner_id,
                "partnership_suspended": partner_id is not None,
                "partnership_suspension_reason": pto_type if partner_id is not None else None,
                "schedule_type": "pto",
            }
            if start_label is not None:
                row["custom_start_time"] = start_label
                row["custom_end_time"] = end_label
            if assignment.source == SOURCE_EXCEPTION:
                row["id"] = assignment.exception_id
            else:
                row.update(
                    officer_id=officer_id,
                    date=day.date,
                    shift_type_id=shift_type_id,
                    position_name=assignment.position or None,
                    unit_number=assignment.unit or None,
                )
            exception = upsert_exception(session, row)

            if balances_enabled and hours > 0:
                balance_after = adjust_balance(
                    session, officer_id, pto_type, -hours, exception_id=exception.id, reason="deduct"
                )
            else:
                balance_after = get_balance(session, officer_id, pto_type)
            record_audit_log(
                session,
                user_id=actor,
                action="LEAVE_DEDUCT",
                target_id=exception.id,
                payload={
                    "officer_id": officer_id,
                    "date": day.date.isoformat(),
                    "shift_type_id": shift_type_id,
                    "pto_type": pto_type,
                    "hours": hours,
                },
            )
            exception_id = exception.id

    logger.info("Deducted %.2f %s hours from officer %s (exception %s).", hours, pto_type, officer_id, exception_id)
    return LeaveDeduction(
        officer_id=officer_id,
        pto_type=pto_type,
        hours_deducted=hours if balances_enabled else 0.0,
        exception_id=exception_id,
        balance_after=balance_after,
        suspended_partner_id=partner_id,
    )


def restore_leave(
    session,
    exception_id: int,
    *,
    actor: str = "system",
    settings: Optional[Dict[str, Any]] = None,
) -> LeaveRestoration:
    """Credit a leave record's hours back and delete it in one transaction."""
    settings = settings or load_active_settings(session)
    try:
        exception = get_exception(session, exception_id)
    except SQLAlchemyError as exc:
        raise StoreFailure(f"Could not load exception {exception_id}: {exc}", cause=exc) from exc
    if exception is None:
        raise NotFoundError("ScheduleException", exception_id)
    if not exception.is_off:
        raise InvalidStateError(f"Exception {exception_id} is not a leave record.")
    lock_key = (exception.officer_id, (exception.pto_type or "").lower())

    with _balance_lock(*lock_key):
        with unit_of_work(session, "Restoring leave"):
            # Another request may have restored the record while this one waited.
            exception = get_exception(session, exception_id, refresh=True)
            if exception is None:
                raise NotFoundError("ScheduleException", exception_id)
            if not exception.is_off:
                raise InvalidStateError(f"Exception {exception_id} is not a leave record.")
            officer_id = exception.officer_id
            pto_type = (exception.pto_type or "").lower() or None
            date = exception.date
            shift_type_id = exception.shift_type_id
            partner_id = exception.partner_officer_id if exception.partnership_suspended else None

            hours = 0.0
            balance_after = None
            if pto_type is not None and (exception.hours_deducted is not None or settings["pto_balances_enabled"]):
                hours = round(_hours_to_restore(session, exception, settings), 2)
                if hours > 0:
                    balance_after = adjust_balance(
                        session, officer_id, pto_type, hours, exception_id=exception_id, reason="restore"
                    )
                else:
                    balance_after = get_balance(session, officer_id, pto_type)
            elif pto_type is None:
                logger.info("Exception %s has no PTO type; deleting without a balance credit.", exception_id)

            delete_exception(session, exception_id)
            partnership_restored = restore_partnership_after_pto(session, officer_id, partner_id, date, shift_type_id)
            record_audit_log(
                session,
                user_id=actor,
                action="LEAVE_RESTORE",
                target_id=exception_id,
                payload={
                    "officer_id": officer_id,
                    "date": date.isoformat(),
                    "shift_type_id": shift_type_id,
                    "pto_type": pto_type,
                    "hours": hours,
                },
            )

    logger.info("Restored %.2f %s hours to officer %s (exception %s).", hours, pto_type, officer_id, exception_id)
    return LeaveRestoration(
        officer_id=officer_id,
        pto_type=pto_type,
        hours_restored=hours,
        exception_id=exception_id,
        balance_after=balance_after,
        partnership_restored=partnership_restored,
    )


def reconcile_leave_ledger(session) -> List[LedgerMismatch]:
    """Compare ledger nets per leave record with what the exception store holds."""
    nets: Dict[int, float] = {}
    keys: Dict[int, Tuple[int, str]] = {}
    for entry in list_ledger_entries(session):
        if entry.exception_id is None:
            continue
        nets[entry.exception_id] = nets.get(entry.exception_id, 0.0) + float(entry.delta_hours)
        keys[entry.exception_id] = (entry.officer_id, entry.pto_type)

    live = {exception.id: exception for exception in list_pto_exceptions(session)}
    mismatches: List[LedgerMismatch] = []
    for exception_id, net in sorted(nets.items()):
        if exception_id in live or abs(net) <= _HOURS_TOLERANCE:
            continue
        officer_id, pto_type = keys[exception_id]
        mismatches.append(
            LedgerMismatch(
                kind="balance_not_restored",
                exception_id=exception_id,
                officer_id=officer_id,
                pto_type=pto_type,
                expected_hours=0.0,
                ledger_hours=net,
                message=f"Leave record {exception_id} is gone but {-net:.2f} hours were never credited back.",
            )
        )

    for exception_id, exception in sorted(live.items()):
        expected = float(exception.hours_deducted or 0.0)
        if expected <= 0:
            continue
        if exception_id not in nets:
            kind = "deduction_missing"
            message = f"Leave record {exception_id} claims {expected:.2f} hours but no deduction was recorded."
        elif abs(-nets[exception_id] - expected) > _HOURS_TOLERANCE:
            kind = "deduction_mismatch"
            message = (
                f"Leave record {exception_id} claims {expected:.2f} hours "
                f"but the ledger shows {-nets[exception_id]:.2f}."
            )
        else:
            continue
        mismatches.append(
            LedgerMismatch(
                kind=kind,
                exception_id=exception_id,
                officer_id=exception.officer_id,
                pto_type=exception.pto_type or "",
                expected_hours=expected,
                ledger_hours=-nets.get(exception_id, 0.0),
                message=message,
            )
        )
    return mismatches


def _explicit_window(start_time, end_time) -> Tuple[Optional[str], Optional[str]]:
    if start_time in (None, "") and end_time in (None, ""):
        return None, None
    if start_time in (None, "") or end_time in (None, ""):
        raise InvalidStateError("Leave needs both a start and an end time.")
    start_minutes = parse_time_label(start_time)
    end_minutes = parse_time_label(end_time)
    if start_minutes is None or end_minutes is None:
        raise InvalidStateError(f"Invalid leave window {start_time!r}-{end_time!r}; use HH:MM.")
    if end_minutes < start_minutes:
        raise InvalidStateError("Leave must end after it starts.")
    return time_label(start_time), time_label(end_time)


def _hours_to_restore(session, exception, settings: Dict[str, Any]) -> float:
    if exception.hours_deducted is not None:
        return float(exception.hours_deducted)
    default = settings["default_leave_hours"]
    shift_type = None
    if exception.custom_start_time is None and exception.custom_end_time is None:
        try:
            shift_type = get_shift_type(session, exception.shift_type_id)
        except SQLAlchemyError as exc:
            logger.warning("Shift type lookup for exception %s failed (%s).", exception.id, exc)
        if shift_type is None:
            logger.warning(
                "Shift type %s unavailable for exception %s; crediting %.1f hours.",
                exception.shift_type_id,
                exception.id,
                default,
            )
            return default
    return compute_leave_hours(exception.custom_start_time, exception.custom_end_time, shift_type, default=default)
