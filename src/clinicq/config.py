"""
Centralized queue defaults.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time
from typing import List


APPOINTMENT_TYPES: List[str] = [
    "consultation",
    "follow_up",
    "emergency",
    "procedure",
    "vaccination",
    "screening",
]
MODES: List[str] = ["fixed", "fluid", "hybrid"]


@dataclass
class ScoringWeights:
    on_time_bonus: float = 100.0
    late_bonus: float = 50.0  # walk-in equivalent
    early_bonus: float = 20.0  # gap-filler only
    walk_in_bonus: float = 50.0
    punctuality_window_minutes: int = 15
    fairness_per_minute: float = 0.5
    emergency_bonus: float = 500.0
    vip_bonus: float = 30.0


@dataclass
class QueueSettings:
    debounce_seconds: float = 2.0
    sweep_interval_seconds: float = 300.0
    cache_ttl_seconds: float = 30.0
    cache_maxsize: int = 4096
    ml_timeout_seconds: float = 2.0
    confidence_floor: float = 0.5
    fallback_wait_minutes: int = 15
    fallback_confidence: float = 0.3  # must stay below confidence_floor
    lateness_threshold_minutes: int = 10
    overrun_factor: float = 1.5
    duration_tolerance_minutes: int = 10
    waitlist_accept_window_minutes: int = 60
    early_accept_wait_minutes: int = 10
    cascade_size: int = 3
    returned_waitlist_priority: int = 0
    default_waitlist_priority: int = 10
    seen_event_ttl_seconds: float = 600.0
    weights: ScoringWeights = field(default_factory=ScoringWeights)


@dataclass
class SimulationConfig:
    day: date = date(2026, 1, 5)
    clinic_id: str = "clinic-1"
    seed: int = 42
    mode: str = "fixed"
    patients: int = 24
    slot_minutes: int = 20
    day_start: time = time(9, 0)
    grace_minutes: int = 10
    no_show_rate: float = 0.10
    cancel_rate: float = 0.05
    lateness_mean: float = -5.0  # minutes relative to slot start; negative is early
    lateness_std: float = 12.0
    walk_ins: int = 4
    service_mean: float = 18.0
    service_std: float = 5.0
    staff: int = 1
    waitlist_size: int = 3
    history_days: int = 30
    history_per_day: int = 40
    confirm_after_minutes: int = 5  # waitlist patients confirm, then arrive
    travel_minutes: int = 15
