"""
Priority scoring: rank candidates for the next call.

Scores are additive: a punctuality band bonus, a linear fairness term for
time spent waiting since check-in, and fixed emergency/VIP bonuses.
Entries that are not physically present score a sentinel minimum and are
never selected.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Tuple

from .config import ScoringWeights
from .models import QueueEntry

SENTINEL = float("-inf")

ON_TIME = "on_time"
LATE = "late"
EARLY = "early"
WALK_IN = "walk_in"


def is_candidate(entry: QueueEntry, now: datetime) -> bool:
    return (
        entry.is_waiting
        and entry.is_present
        and entry.checked_in_at is not None
        and entry.appointment_date == now.date()
    )


def punctuality_band(entry: QueueEntry, weights: ScoringWeights) -> str:
    if entry.is_walk_in or entry.scheduled_start is None:
        return WALK_IN
    if entry.is_late:
        return LATE
    if entry.checked_in_at is None:
        return ON_TIME
    delta = (entry.checked_in_at - entry.scheduled_start).total_seconds() / 60
    if delta > weights.punctuality_window_minutes:
        return LATE
    if delta < -weights.punctuality_window_minutes:
        return EARLY
    return ON_TIME


def score(entry: QueueEntry, now: datetime, weights: ScoringWeights) -> float:
    if not is_candidate(entry, now):
        return SENTINEL

    band = punctuality_band(entry, weights)
    total = {
        ON_TIME: weights.on_time_bonus,
        LATE: weights.late_bonus,
        EARLY: weights.early_bonus,
        WALK_IN: weights.walk_in_bonus,
    }[band]

    waited = max(0.0, (now - entry.checked_in_at).total_seconds() / 60)
    total += waited * weights.fairness_per_minute
    if entry.is_emergency:
        total += weights.emergency_bonus
    if entry.is_vip:
        total += weights.vip_bonus
    return total


def sort_key(entry: QueueEntry, now: datetime, weights: ScoringWeights) -> Tuple[float, datetime, int]:
    # Ties: earliest scheduled time, then creation order.
    return (-score(entry, now, weights), entry.scheduled_start or datetime.max, entry.sequence)


def rank(entries: Iterable[QueueEntry], now: datetime, weights: ScoringWeights) -> List[QueueEntry]:
    return sorted(entries, key=lambda e: sort_key(e, now, weights))
