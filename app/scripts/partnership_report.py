from __future__ import annotations

import argparse
import datetime
import sys
from pathlib import Path
from typing import Dict, List

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import SessionLocal, get_officers, init_database, list_recurring_partnerships  # noqa: E402
from errors import EngineError  # noqa: E402
from partnerships import validate_partnerships  # noqa: E402
from ranks import RANK_GROUP_ORDER, is_ppo_rank, rank_group  # noqa: E402
from resolver import DaySchedule, resolve_day  # noqa: E402
from shift_catalog import weekday_token  # noqa: E402


def _name(officers: Dict[int, object], officer_id) -> str:
    officer = officers.get(officer_id)
    if officer is None:
        return f"#{officer_id}"
    return f"{officer.full_name} (#{officer_id})"


def build_report(session, on_date: datetime.date, shift_type_id: int) -> List[str]:
    """Describe recurring pairings, the day's resolved pairings, PPOs and rank groups on shift, and pairing issues."""
    day: DaySchedule = resolve_day(session, on_date, shift_type_id)
    recurring = [row for row in list_recurring_partnerships(session, on_date) if row.shift_type_id == shift_type_id]
    ids = {row.officer_id for row in recurring} | {row.partner_officer_id for row in recurring}
    officers = get_officers(session, ids)

    lines = [f"Partnership report for shift {shift_type_id} on {on_date.isoformat()} ({weekday_token(on_date)})"]
    lines.append("Recurring partnerships:")
    if not recurring:
        lines.append("  (none)")
    for row in recurring:
        officer = officers.get(row.officer_id)
        partner = officers.get(row.partner_officer_id)
        flags = []
        if officer is not None and is_ppo_rank(officer.rank):
            flags.append("officer PPO")
        if partner is not None and is_ppo_rank(partner.rank):
            flags.append("partner PPO")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        lines.append(
            f"  {_name(officers, row.officer_id)} -> {_name(officers, row.partner_officer_id)}{suffix}"
        )

    lines.append("Effective pairings:")
    paired = [assignment for assignment in day.assignments if assignment.is_partnership]
    if not paired:
        lines.append("  (none)")
    for assignment in paired:
        state = "suspended" if assignment.partnership_suspended else assignment.source
        lines.append(
            f"  {assignment.officer_name or assignment.officer_id} -> officer {assignment.partner_officer_id} ({state})"
        )
    for removal in day.removals:
        reason = removal.pto_type or "off"
        lines.append(f"  {removal.officer_name or removal.officer_id} is off ({reason})")

    ppos = [assignment for assignment in day.assignments if assignment.is_ppo]
    lines.append("PPOs on shift:")
    if not ppos:
        lines.append("  (none)")
    for assignment in ppos:
        partner = f"partner {assignment.partner_officer_id}" if assignment.has_active_partnership else "no partner"
        lines.append(f"  {assignment.officer_name or assignment.officer_id} [{assignment.rank}] - {partner}")

    lines.append("On shift by rank group:")
    if not day.assignments:
        lines.append("  (none)")
    groups: Dict[str, List[str]] = {}
    for assignment in day.assignments:
        groups.setdefault(rank_group(assignment.rank), []).append(str(assignment.officer_name or assignment.officer_id))
    for group in RANK_GROUP_ORDER:
        if group in groups:
            lines.append(f"  {group} ({len(groups[group])}): {', '.join(groups[group])}")

    issues = validate_partnerships(day.assignments)
    lines.append("Issues:")
    if not issues:
        lines.append("  (none)")
    for issue in issues:
        lines.append(f"  {issue.kind}: {issue.message}")
    return lines


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Print the partnership and PPO picture for one date and shift type."
    )
    parser.add_argument("--date", required=True, help="ISO date (YYYY-MM-DD) to inspect.")
    parser.add_argument("--shift-type", type=int, required=True, help="Shift type id.")
    return parser.parse_args()


def main() -> None:
    init_database()
    args = parse_args()
    try:
        on_date = datetime.date.fromisoformat(args.date)
    except ValueError as exc:
        raise SystemExit(f"Invalid --date value: {exc}") from exc
    with SessionLocal() as session:
        try:
            lines = build_report(session, on_date, args.shift_type)
        except EngineError as exc:
            raise SystemExit(f"[report][error] {exc}") from exc
    for line in lines:
        print(line)


if __name__ == "__main__":
    main()
