from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest
from sqlalchemy import select

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import AuditLog, PartnershipEvent, ScheduleException  # noqa: E402
from errors import InvalidStateError  # noqa: E402
from partnerships import (  # noqa: E402
    PPO_PPO_PAIRING,
    UNMATCHED_PARTNER,
    auto_create_partnerships_from_recurring,
    create_partnership,
    remove_partnership,
    validate_partnerships,
)
from resolver import EffectiveAssignment, resolve  # noqa: E402

MONDAY = datetime.date(2024, 3, 4)


def _assignment(officer_id, partner_id=None, *, is_ppo=False, is_off=False, suspended=False):
    return EffectiveAssignment(
        officer_id=officer_id,
        date=MONDAY,
        shift_type_id=1,
        source="recurring",
        kind="recurring",
        is_partnership=partner_id is not None,
        partner_officer_id=partner_id,
        is_ppo=is_ppo,
        is_off=is_off,
        partnership_suspended=suspended,
    )


def test_symmetric_pair_has_no_issues():
    assert validate_partnerships([_assignment(1, 2), _assignment(2, 1)]) == []


def test_ppo_pair_reported_once_per_pair():
    issues = validate_partnerships([_assignment(3, 4, is_ppo=True), _assignment(4, 3, is_ppo=True)])

    assert [issue.kind for issue in issues] == [PPO_PPO_PAIRING]
    assert {issues[0].officer_id, issues[0].partner_officer_id} == {3, 4}


def test_ppo_with_regular_officer_is_fine():
    assert validate_partnerships([_assignment(3, 4, is_ppo=True), _assignment(4, 3)]) == []


def test_partner_missing_from_roster_is_unmatched():
    [issue] = validate_partnerships([_assignment(1, 9)])

    assert issue.kind == UNMATCHED_PARTNER
    assert issue.partner_officer_id == 9


def test_one_sided_link_is_unmatched():
    issues = validate_partnerships([_assignment(1, 2), _assignment(2, None)])

    assert [(issue.kind, issue.officer_id) for issue in issues] == [(UNMATCHED_PARTNER, 1)]


def test_partner_pointing_elsewhere_is_unmatched():
    issues = validate_partnerships([_assignment(1, 2), _assignment(2, 3), _assignment(3, 2)])

    assert [(issue.kind, issue.officer_id) for issue in issues] == [(UNMATCHED_PARTNER, 1)]


def test_suspended_or_off_pairings_are_inactive():
    suspended = [_assignment(1, 2, is_ppo=True, suspended=True), _assignment(2, 1, is_ppo=True)]
    off = [_assignment(1, 2, is_ppo=True), _assignment(2, 1, is_ppo=True, is_off=True)]

    assert validate_partnerships(suspended) == []
    assert validate_partnerships(off) == []


def test_validator_does_not_mutate_input():
    roster = [_assignment(1, 9)]
    before = [item.to_dict() for item in roster]

    validate_partnerships(roster)

    assert [item.to_dict() for item in roster] == before


def test_scenario_two_probationary_recurring_partners(session, seed):
    shift = seed.shift_type()
    o3 = seed.officer("Officer Three", rank="Probationary")
    o4 = seed.officer("Officer Four", rank="Probationary")
    seed.partnered_recurring(o3, o4, shift)

    issues = validate_partnerships(resolve(session, MONDAY, shift.id))

    assert [issue.kind for issue in issues] == [PPO_PPO_PAIRING]


def test_create_partnership_writes_both_sides(session, seed):
    shift = seed.shift_type()
    first = seed.officer("First")
    second = seed.officer("Second", rank="PPO")
    seed.recurring(first, shift)
    seed.recurring(second, shift)

    issues = create_partnership(session, first.id, second.id, MONDAY, shift.id, actor="sgt")

    assert issues == []
    roster = {item.officer_id: item for item in resolve(session, MONDAY, shift.id)}
    assert roster[first.id].partner_officer_id == second.id
    assert roster[second.id].partner_officer_id == first.id
    assert roster[first.id].position == "District 1"
    assert validate_partnerships(roster.values()) == []
    event = session.scalars(select(PartnershipEvent)).one()
    assert (event.event_type, event.is_ppo_partnership) == ("created", True)
    assert session.scalars(select(AuditLog).where(AuditLog.action == "PARTNERSHIP_CREATE")).one().user_id == "sgt"


def test_create_partnership_blocks_ppo_pair_unless_allowed(session, seed):
    shift = seed.shift_type()
    first = seed.officer("First", rank="PPO")
    second = seed.officer("Second", rank="Probationary Officer")
    seed.recurring(first, shift)
    seed.recurring(second, shift)

    with pytest.raises(InvalidStateError):
        create_partnership(session, first.id, second.id, MONDAY, shift.id)
    assert session.scalars(select(ScheduleException)).all() == []

    issues = create_partnership(
        session,
        first.id,
        second.id,
        MONDAY,
        shift.id,
        settings={"allow_ppo_pairs": True},
    )
    assert [issue.kind for issue in issues] == [PPO_PPO_PAIRING]


def test_create_partnership_rejects_officer_on_leave_or_already_paired(session, seed):
    shift = seed.shift_type()
    first = seed.officer("First")
    second = seed.officer("Second")
    third = seed.officer("Third")
    seed.partnered_recurring(first, second, shift)
    seed.recurring(third, shift)
    seed.exception(third, shift, is_off=True, pto_type="sick")

    with pytest.raises(InvalidStateError):
        create_partnership(session, first.id, third.id, MONDAY, shift.id)
    with pytest.raises(InvalidStateError):
        create_partnership(session, third.id, first.id, MONDAY, shift.id)
    with pytest.raises(InvalidStateError):
        create_partnership(session, first.id, first.id, MONDAY, shift.id)


def test_remove_partnership_clears_both_sides(session, seed):
    shift = seed.shift_type()
    first = seed.officer("First")
    second = seed.officer("Second")
    seed.partnered_recurring(first, second, shift)

    former = remove_partnership(session, first.id, MONDAY, shift.id, actor="sgt")

    assert former == second.id
    roster = resolve(session, MONDAY, shift.id)
    assert all(not item.is_partnership for item in roster)
    assert validate_partnerships(roster) == []


def test_remove_partnership_requires_a_partnership(session, seed):
    shift = seed.shift_type()
    officer = seed.officer("Solo")
    seed.recurring(officer, shift)

    with pytest.raises(InvalidStateError):
        remove_partnership(session, officer.id, MONDAY, shift.id)


def test_auto_create_materializes_recurring_pairs(session, seed):
    shift = seed.shift_type()
    first = seed.officer("First")
    second = seed.officer("Second", rank="PPO")
    third = seed.officer("Third")
    fourth = seed.officer("Fourth")
    seed.partnered_recurring(first, second, shift)
    seed.partnered_recurring(third, fourth, shift)
    seed.exception(fourth, shift, is_off=True, pto_type="vacation")

    result = auto_create_partnerships_from_recurring(session, MONDAY, actor="sgt")

    assert result == {"created": 1, "skipped": 1, "errors": []}
    rows = {
        row.officer_id: row
        for row in session.scalars(
            select(ScheduleException).where(ScheduleException.schedule_type == "partnership_from_recurring")
        )
    }
    assert set(rows) == {first.id, second.id}
    assert rows[first.id].position_name == "Riding Partner"
    assert rows[second.id].position_name == "Riding Partner (PPO)"
    assert rows[second.id].partner_officer_id == first.id

    again = auto_create_partnerships_from_recurring(session, MONDAY, actor="sgt")
    assert again["created"] == 0


def test_auto_create_ignores_other_weekdays(session, seed):
    shift = seed.shift_type()
    first = seed.officer("First")
    second = seed.officer("Second")
    seed.partnered_recurring(first, second, shift, day_of_week=2)

    result = auto_create_partnerships_from_recurring(session, MONDAY)

    assert result == {"created": 0, "skipped": 0, "errors": []}
