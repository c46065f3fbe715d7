from __future__ import annotations

import copy
from typing import Any, Dict, List

from database import get_active_settings, upsert_settings
from settings_defaults import BASELINE_SETTINGS, DEFAULT_LEAVE_HOURS, build_default_settings


def load_active_settings(conn) -> Dict[str, Any]:
    """Return the active settings payload as a dict, filled out with defaults."""
    if conn is None:
        return _normalize_settings({})
    if callable(conn):
        with conn() as session:
            settings = get_active_settings(session)
            return _normalize_settings(settings.params_dict() if settings else {})
    settings = get_active_settings(conn)
    return _normalize_settings(settings.params_dict() if settings else {})


def _normalize_settings(settings: Dict) -> Dict[str, Any]:
    normalized = copy.deepcopy(settings) if isinstance(settings, dict) else {}
    for key, value in BASELINE_SETTINGS.items():
        if key == "name":
            continue
        normalized.setdefault(key, copy.deepcopy(value))
    try:
        hours = float(normalized.get("default_leave_hours"))
    except (TypeError, ValueError):
        hours = DEFAULT_LEAVE_HOURS
    normalized["default_leave_hours"] = hours if 0 < hours <= 24 else DEFAULT_LEAVE_HOURS
    if not isinstance(normalized.get("pto_types"), list) or not normalized["pto_types"]:
        normalized["pto_types"] = copy.deepcopy(BASELINE_SETTINGS["pto_types"])
    for flag in ("pto_balances_enabled", "enforce_sufficient_balance", "allow_ppo_pairs"):
        normalized[flag] = bool(normalized.get(flag))
    return normalized


def pto_type_values(settings: Dict[str, Any]) -> List[str]:
    values: List[str] = []
    for entry in settings.get("pto_types") or []:
        if isinstance(entry, dict) and entry.get("value"):
            values.append(str(entry["value"]).strip().lower())
        elif isinstance(entry, str) and entry.strip():
            values.append(entry.strip().lower())
    return values


def ensure_default_settings(session_factory) -> None:
    """Seed the baseline settings exactly once."""

    with session_factory() as session:
        if get_active_settings(session):
            return
        defaults = build_default_settings()
        name = defaults.get("name", "Department Defaults")
        params = {key: value for key, value in defaults.items() if key != "name"}
        upsert_settings(session, name, params, edited_by="system")
