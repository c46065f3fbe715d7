from __future__ import annotations

import copy
from typing import Any, Dict, List


DEFAULT_LEAVE_HOURS = 8.0

PTO_TYPES: List[Dict[str, str]] = [
    {"value": "vacation", "label": "Vacation"},
    {"value": "sick", "label": "Sick Leave"},
    {"value": "comp", "label": "Comp Time"},
    {"value": "holiday", "label": "Holiday"},
]

BASELINE_SETTINGS: Dict[str, Any] = {
    "name": "Department Defaults",
    "pto_balances_enabled": True,
    "enforce_sufficient_balance": True,
    "default_leave_hours": DEFAULT_LEAVE_HOURS,
    "pto_types": PTO_TYPES,
    "allow_ppo_pairs": False,
}


def build_default_settings() -> Dict[str, Any]:
    return copy.deepcopy(BASELINE_SETTINGS)
