from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from ranks import is_ppo_rank, rank_group, riding_partner_position  # noqa: E402
from shift_catalog import format_minutes, parse_time_label, span_hours, time_label, weekday_token  # noqa: E402


@pytest.mark.parametrize(
    "rank",
    ["PPO", "ppo", "Officer - PPO", "Probationary", "probationary officer", "On Probation"],
)
def test_ppo_ranks(rank):
    assert is_ppo_rank(rank)


@pytest.mark.parametrize("rank", ["Officer", "Sergeant", "", None, "Hoppo", "Support Officer"])
def test_non_ppo_ranks(rank):
    assert not is_ppo_rank(rank)


def test_rank_group_and_partner_position():
    assert rank_group("Probationary") == "PPO"
    assert rank_group("Sgt.") == "Supervisor"
    assert rank_group("Patrol Officer") == "Officer"
    assert riding_partner_position("PPO") == "Riding Partner (PPO)"
    assert riding_partner_position("Officer") == "Riding Partner"


@pytest.mark.parametrize(
    "value,expected",
    [("07:00", 420), ("7:30", 450), ("23:59:59", 1439), ("24:00", 1440), (datetime.time(6, 15), 375)],
)
def test_parse_time_label(value, expected):
    assert parse_time_label(value) == expected


@pytest.mark.parametrize("value", [None, "", "0700", "7am", "12:60", "25:00", "a:b", "1:2:3:4"])
def test_parse_time_label_rejects_garbage(value):
    assert parse_time_label(value) is None


def test_time_helpers():
    assert format_minutes(450) == "07:30"
    assert time_label(datetime.time(15, 0)) == "15:00"
    assert time_label(" 7am ") == "7am"
    assert span_hours("07:00", "15:30") == 8.5
    assert span_hours("22:00", "06:00") is None
    assert weekday_token(datetime.date(2024, 3, 4)) == "Mon"
