from __future__ import annotations

import dataclasses
import datetime
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from database import (
    ScheduleException,
    delete_exception,
    find_exception,
    get_officers,
    list_recurring,
    list_recurring_partnerships,
    record_audit_log,
    record_partnership_event,
    resolve_partnership_events,
    unit_of_work,
    upsert_exception,
)
from errors import EngineError, InvalidStateError
from ranks import riding_partner_position
from resolver import DaySchedule, EffectiveAssignment, SOURCE_EXCEPTION, resolve_day
from settings import load_active_settings

logger = logging.getLogger(__name__)

PPO_PPO_PAIRING = "PPO_PPO_PAIRING"
UNMATCHED_PARTNER = "UNMATCHED_PARTNER"

PARTNER_AVAILABLE_POSITION = "Available for Reassignment"


@dataclass(frozen=True)
class PartnershipIssue:
    kind: str
    officer_id: int
    partner_officer_id: Optional[int]
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def validate_partnerships(assignments: Iterable[EffectiveAssignment]) -> List[PartnershipIssue]:
    """Report illegal or one-sided pairings in a resolved roster without touching it.

    A pairing is only checked while it is active: neither side is off and
    neither side carries a suspension marker.
    """
    roster = list(assignments)
    by_officer = {assignment.officer_id: assignment for assignment in roster}
    issues: List[PartnershipIssue] = []
    seen_pairs = set()
    for assignment in sorted(roster, key=lambda item: item.officer_id):
        if not assignment.has_active_partnership:
            continue
        partner_id = assignment.partner_officer_id
        partner = by_officer.get(partner_id)
        if partner is None:
            issues.append(
                PartnershipIssue(
                    kind=UNMATCHED_PARTNER,
                    officer_id=assignment.officer_id,
                    partner_officer_id=partner_id,
                    message=f"{_label(assignment)} is partnered with officer {partner_id}, "
                    "who is not on this shift.",
                )
            )
            continue
        if partner.is_off or partner.partnership_suspended:
            continue
        if not partner.is_partnership or partner.partner_officer_id != assignment.officer_id:
            issues.append(
                PartnershipIssue(
                    kind=UNMATCHED_PARTNER,
                    officer_id=assignment.officer_id,
                    partner_officer_id=partner_id,
                    message=f"{_label(assignment)} lists {_label(partner)} as partner, "
                    "but the partner's record does not point back.",
                )
            )
            continue
        pair = frozenset((assignment.officer_id, partner_id))
        if pair in seen_pairs:
            continue
        seen_pairs.add(pair)
        if assignment.is_ppo and partner.is_ppo:
            issues.append(
                PartnershipIssue(
                    kind=PPO_PPO_PAIRING,
                    officer_id=assignment.officer_id,
                    partner_officer_id=partner_id,
                    message=f"{_label(assignment)} and {_label(partner)} are both probationary "
                    "and cannot ride as each other's only partner.",
                )
            )
    return issues


def _label(assignment: EffectiveAssignment) -> str:
    return assignment.officer_name or f"Officer {assignment.officer_id}"


# ---------------------------------------------------------------------------
# Partnership mutations


def create_partnership(
    session,
    officer_id: int,
    partner_officer_id: int,
    date: datetime.date,
    shift_type_id: int,
    *,
    actor: str = "system",
    emergency: bool = False,
    settings: Optional[Dict[str, Any]] = None,
) -> List[PartnershipIssue]:
    """Pair two officers for one date and shift, writing both sides of the link."""
    if officer_id == partner_officer_id:
        raise InvalidStateError("An officer cannot be partnered with themselves.")
    settings = settings or load_active_settings(session)
    with unit_of_work(session, "Creating partnership"):
        day = resolve_day(session, date, shift_type_id)
        officer = _working_assignment(day, officer_id)
        partner = _working_assignment(day, partner_officer_id)
        for side, other in ((officer, partner), (partner, officer)):
            if side.has_active_partnership and side.partner_officer_id != other.officer_id:
                raise InvalidStateError(f"{_label(side)} is already in a partnership.")

        proposed = [
            dataclasses.replace(
                officer, is_partnership=True, partner_officer_id=partner_officer_id, partnership_suspended=False
            ),
            dataclasses.replace(
                partner, is_partnership=True, partner_officer_id=officer_id, partnership_suspended=False
            ),
        ]
        issues = validate_partnerships(proposed)
        blocking = [issue for issue in issues if issue.kind == PPO_PPO_PAIRING]
        if blocking and not settings.get("allow_ppo_pairs"):
            raise InvalidStateError(blocking[0].message)

        for side, other in ((officer, partner), (partner, officer)):
            _write_link(session, side, other.officer_id, schedule_type="partnership")
        record_partnership_event(
            session,
            officer_id=officer_id,
            partner_officer_id=partner_officer_id,
            date=day.date,
            shift_type_id=shift_type_id,
            event_type="emergency" if emergency else "created",
            reason="Emergency reassignment" if emergency else "Partnership created",
            is_ppo_partnership=officer.is_ppo or partner.is_ppo,
        )
        record_audit_log(
            session,
            user_id=actor,
            action="PARTNERSHIP_EMERGENCY" if emergency else "PARTNERSHIP_CREATE",
            target_type="Partnership",
            target_id=officer_id,
            payload={
                "partner_officer_id": partner_officer_id,
                "date": day.date.isoformat(),
                "shift_type_id": shift_type_id,
            },
        )
    logger.info(
        "Partnered officer %s with %s for shift %s on %s.", officer_id, partner_officer_id, shift_type_id, date
    )
    return issues


def remove_partnership(
    session,
    officer_id: int,
    date: datetime.date,
    shift_type_id: int,
    *,
    actor: str = "system",
) -> Optional[int]:
    """Clear a date-scoped partnership on both sides; returns the former partner's id."""
    with unit_of_work(session, "Removing partnership"):
        day = resolve_day(session, date, shift_type_id)
        officer = _working_assignment(day, officer_id)
        if not officer.is_partnership or officer.partner_officer_id is None:
            raise InvalidStateError(f"{_label(officer)} is not in a partnership.")
        partner_id = officer.partner_officer_id
        _write_unlink(session, officer)
        partner = day.assignment_for(partner_id)
        if partner is not None and partner.partner_officer_id == officer_id:
            _write_unlink(session, partner)
        record_partnership_event(
            session,
            officer_id=officer_id,
            partner_officer_id=partner_id,
            date=day.date,
            shift_type_id=shift_type_id,
            event_type="removed",
            reason="Partnership removed",
        )
        record_audit_log(
            session,
            user_id=actor,
            action="PARTNERSHIP_REMOVE",
            target_type="Partnership",
            target_id=officer_id,
            payload={"partner_officer_id": partner_id, "date": day.date.isoformat(), "shift_type_id": shift_type_id},
        )
    return partner_id


def suspend_partnership_for_pto(
    session,
    day: DaySchedule,
    officer: EffectiveAssignment,
    pto_type: str,
) -> Optional[int]:
    """Mark the partner of an officer going on leave as available.

    Runs inside the caller's unit of work; the officer's own leave record is
    written by the caller with the suspension marker.
    """
    if not officer.has_active_partnership:
        return None
    partner_id = officer.partner_officer_id
    partner = day.assignment_for(partner_id)
    if partner is not None:
        row: Dict[str, Any] = {
            "is_off": False,
            "is_partnership": False,
            "partner_officer_id": officer.officer_id,
            "partnership_suspended": True,
            "partnership_suspension_reason": pto_type,
        }
        if partner.source == SOURCE_EXCEPTION:
            row["id"] = partner.exception_id
        else:
            row.update(
                officer_id=partner.officer_id,
                date=day.date,
                shift_type_id=day.shift_type_id,
                position_name=partner.position or PARTNER_AVAILABLE_POSITION,
                unit_number=partner.unit or None,
                schedule_type="pto_partner_available",
            )
        upsert_exception(session, row)
    record_partnership_event(
        session,
        officer_id=officer.officer_id,
        partner_officer_id=partner_id,
        date=day.date,
        shift_type_id=day.shift_type_id,
        event_type="pto_suspension",
        reason=f"Officer on {pto_type} leave",
        is_ppo_partnership=officer.is_ppo or bool(partner and partner.is_ppo),
    )
    logger.info(
        "Suspended partnership %s <-> %s on %s for %s leave.", officer.officer_id, partner_id, day.date, pto_type
    )
    return partner_id


def restore_partnership_after_pto(
    session,
    officer_id: int,
    partner_officer_id: Optional[int],
    date: datetime.date,
    shift_type_id: int,
) -> bool:
    """Re-link a pairing suspended by leave once the leave record is gone.

    Runs inside the caller's unit of work, after the leave row was deleted.
    """
    if partner_officer_id is None:
        return False
    partner_exception = find_exception(session, partner_officer_id, date, shift_type_id)
    if (
        partner_exception is None
        or not partner_exception.partnership_suspended
        or partner_exception.partner_officer_id != officer_id
    ):
        return False
    officer_pattern = _recurring_for(session, officer_id, date, shift_type_id)
    if officer_pattern is None:
        _clear_suspension(session, partner_exception, keep_partner=False)
        logger.info(
            "Officer %s has no regular assignment on %s; partner %s stays unpaired.",
            officer_id,
            date,
            partner_officer_id,
        )
        return False

    partner_pattern = _recurring_for(session, partner_officer_id, date, shift_type_id)
    if (
        partner_exception.schedule_type == "pto_partner_available"
        and partner_pattern is not None
        and partner_pattern.is_partnership
        and partner_pattern.partner_officer_id == officer_id
    ):
        delete_exception(session, partner_exception.id)
    else:
        _clear_suspension(session, partner_exception, keep_partner=True)

    if not (officer_pattern.is_partnership and officer_pattern.partner_officer_id == partner_officer_id):
        upsert_exception(
            session,
            {
                "officer_id": officer_id,
                "date": date,
                "shift_type_id": shift_type_id,
                "is_off": False,
                "is_partnership": True,
                "partner_officer_id": partner_officer_id,
                "partnership_suspended": False,
                "partnership_suspension_reason": None,
                "schedule_type": "partnership",
            },
        )
    resolve_partnership_events(
        session,
        officer_id=officer_id,
        date=date,
        shift_type_id=shift_type_id,
        event_type="pto_suspension",
    )
    return True


def auto_create_partnerships_from_recurring(
    session,
    date: datetime.date,
    *,
    actor: str = "system",
) -> Dict[str, Any]:
    """Copy the day's recurring partnerships into date rows so supervisors can edit them."""
    pairs: Dict[Tuple[int, frozenset], Tuple[int, int]] = {}
    for row in list_recurring_partnerships(session, date):
        if row.partner_officer_id is None:
            continue
        key = (row.shift_type_id, frozenset((row.officer_id, row.partner_officer_id)))
        pairs.setdefault(key, (row.officer_id, row.partner_officer_id))

    created = 0
    skipped = 0
    errors: List[str] = []
    days: Dict[int, DaySchedule] = {}
    for (shift_type_id, _), (officer_id, partner_id) in sorted(pairs.items(), key=lambda item: (item[0][0], item[1])):
        try:
            with unit_of_work(session, "Creating partnership from recurring schedule"):
                day = days.get(shift_type_id) or resolve_day(session, date, shift_type_id)
                days[shift_type_id] = day
                if day.removal_for(officer_id) or day.removal_for(partner_id):
                    skipped += 1
                    continue
                officer = day.assignment_for(officer_id)
                partner = day.assignment_for(partner_id)
                if officer is None or partner is None:
                    missing = officer_id if officer is None else partner_id
                    errors.append(f"Officer {missing} is not on shift {shift_type_id} for {date.isoformat()}.")
                    continue
                if any(side.source == SOURCE_EXCEPTION and side.is_partnership for side in (officer, partner)):
                    skipped += 1
                    continue
                officers = get_officers(session, (officer_id, partner_id))
                for side, other in ((officer, partner), (partner, officer)):
                    rank = officers[side.officer_id].rank if side.officer_id in officers else ""
                    _write_link(
                        session,
                        side,
                        other.officer_id,
                        schedule_type="partnership_from_recurring",
                        position=riding_partner_position(rank),
                    )
                record_audit_log(
                    session,
                    user_id=actor,
                    action="PARTNERSHIP_AUTO_CREATE",
                    target_type="Partnership",
                    target_id=officer_id,
                    payload={"partner_officer_id": partner_id, "date": date.isoformat(), "shift_type_id": shift_type_id},
                )
                days.pop(shift_type_id, None)
            created += 1
        except (EngineError, SQLAlchemyError) as exc:
            errors.append(str(exc))
    logger.info(
        "Auto-created %s partnerships for %s (%s skipped, %s errors).", created, date, skipped, len(errors)
    )
    return {"created": created, "skipped": skipped, "errors": errors}


def _working_assignment(day: DaySchedule, officer_id: int) -> EffectiveAssignment:
    assignment = day.assignment_for(officer_id)
    if assignment is not None:
        return assignment
    if day.removal_for(officer_id) is not None:
        raise InvalidStateError(f"Officer {officer_id} is on PTO and cannot be partnered.")
    raise InvalidStateError(
        f"Officer {officer_id} is not scheduled for shift {day.shift_type_id} on {day.date.isoformat()}."
    )


def _write_link(
    session,
    side: EffectiveAssignment,
    partner_id: int,
    *,
    schedule_type: str,
    position: Optional[str] = None,
) -> ScheduleException:
    row: Dict[str, Any] = {
        "is_partnership": True,
        "partner_officer_id": partner_id,
        "partnership_suspended": False,
        "partnership_suspension_reason": None,
    }
    if position:
        row["position_name"] = position
    if side.source == SOURCE_EXCEPTION:
        row["id"] = side.exception_id
    else:
        row.update(
            officer_id=side.officer_id,
            date=side.date,
            shift_type_id=side.shift_type_id,
            is_off=False,
            position_name=row.get("position_name") or side.position or None,
            unit_number=side.unit or None,
            schedule_type=schedule_type,
        )
    return upsert_exception(session, row)


def _write_unlink(session, side: EffectiveAssignment) -> ScheduleException:
    row: Dict[str, Any] = {
        "is_partnership": False,
        "partner_officer_id": None,
        "partnership_suspended": False,
        "partnership_suspension_reason": None,
    }
    if side.source == SOURCE_EXCEPTION:
        row["id"] = side.exception_id
    else:
        row.update(
            officer_id=side.officer_id,
            date=side.date,
            shift_type_id=side.shift_type_id,
            is_off=False,
            position_name=side.position or None,
            unit_number=side.unit or None,
            schedule_type="manual",
        )
    return upsert_exception(session, row)


def _clear_suspension(session, exception: ScheduleException, *, keep_partner: bool) -> None:
    exception.partnership_suspended = False
    exception.partnership_suspension_reason = None
    exception.is_partnership = keep_partner
    if not keep_partner:
        exception.partner_officer_id = None
    session.flush()


def _recurring_for(session, officer_id: int, date: datetime.date, shift_type_id: int):
    rows = [
        row
        for row in list_recurring(session, shift_type_id, date.weekday(), on_date=date)
        if row.officer_id == officer_id
    ]
    if not rows:
        return None
    return max(rows, key=lambda row: (row.start_date, row.id))
