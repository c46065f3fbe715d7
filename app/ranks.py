from __future__ import annotations

import re
from typing import List, Set, Tuple


# Rank fields are free text typed by administrators, so classification is by
# keyword rather than by an enumerated list.
PPO_TOKENS: Set[str] = {"ppo"}
PPO_SUBSTRINGS: Tuple[str, ...] = ("probationary", "probation")

_SUPERVISOR_KEYWORDS: List[str] = ["sergeant", "sgt", "lieutenant", "lt", "captain", "chief"]

RANK_GROUP_ORDER: Tuple[str, ...] = ("Supervisor", "Officer", "PPO")

RIDING_PARTNER_POSITION = "Riding Partner"
RIDING_PARTNER_PPO_POSITION = "Riding Partner (PPO)"

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


def normalize_rank(rank) -> str:
    if rank is None:
        return ""
    return str(rank).strip().lower()


def rank_tokens(rank) -> Set[str]:
    label = normalize_rank(rank)
    return {token for token in _TOKEN_SPLIT.split(label) if token}


def is_ppo_rank(rank) -> bool:
    """Return True when the rank marks a probationary (peace) officer.

    Matches the exact token ``ppo`` (so "PPO", "Officer - PPO" and "ppo/2"
    qualify) or the substrings ``probationary``/``probation`` anywhere in the
    label, case-insensitively.
    """
    label = normalize_rank(rank)
    if not label:
        return False
    if rank_tokens(label) & PPO_TOKENS:
        return True
    return any(keyword in label for keyword in PPO_SUBSTRINGS)


def is_supervisor_rank(rank) -> bool:
    tokens = rank_tokens(rank)
    return any(keyword in tokens for keyword in _SUPERVISOR_KEYWORDS)


def rank_group(rank) -> str:
    if is_ppo_rank(rank):
        return "PPO"
    if is_supervisor_rank(rank):
        return "Supervisor"
    return "Officer"


def riding_partner_position(rank) -> str:
    return RIDING_PARTNER_PPO_POSITION if is_ppo_rank(rank) else RIDING_PARTNER_POSITION
