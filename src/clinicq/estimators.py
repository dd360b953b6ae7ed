"""
Wait-time estimators and the fallback chain that combines them.

Chain order: remote ML model, rule-based formula, historical average, then a
constant default. An estimator is skipped when it raises, times out or
answers below the confidence floor. The chain itself never raises.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Sequence, Tuple

from cachetools import TTLCache

from .clock import Clock, timestamp_timer
from .config import QueueSettings
from .errors import EstimationUnavailable
from .models import EstimationResult, EstimationSource, HistoricalStats, QueueEntry, time_slot_label
from .predictor import Predictor

logger = logging.getLogger(__name__)

MIN_WAIT_MINUTES = 0
MAX_WAIT_MINUTES = 240

Estimate = Tuple[float, float, Dict[str, Any]]


@dataclass
class EstimationContext:
    entry: QueueEntry
    now: datetime
    patients_ahead: int
    average_service_minutes: float
    active_staff_count: int = 1
    buffer_minutes: int = 0
    current_delay_minutes: float = 0.0
    history: HistoricalStats = field(default_factory=HistoricalStats)
    ml_enabled: bool = False

    def features(self) -> Dict[str, Any]:
        return {
            "clinic_id": self.entry.clinic_id,
            "appointment_type": self.entry.appointment_type,
            "patients_ahead": self.patients_ahead,
            "queue_position": self.entry.queue_position,
            "average_service_minutes": self.average_service_minutes,
            "active_staff_count": self.active_staff_count,
            "current_delay_minutes": round(self.current_delay_minutes, 1),
            "hour": self.now.hour,
            "weekday": self.now.weekday(),
            "is_walk_in": self.entry.is_walk_in,
            "is_emergency": self.entry.is_emergency,
        }


class MlEstimator:
    source = EstimationSource.ML

    def __init__(self, predictor: Optional[Predictor], timeout: float):
        self.predictor = predictor
        self.timeout = timeout

    async def estimate(self, context: EstimationContext) -> Estimate:
        if self.predictor is None or not context.ml_enabled:
            raise EstimationUnavailable("ML predictor not enabled for this clinic")
        features = context.features()
        minutes, confidence = await asyncio.wait_for(self.predictor.predict(features), timeout=self.timeout)
        return minutes, confidence, features


class RuleBasedEstimator:
    """Patients ahead times service minutes, spread across active staff."""

    source = EstimationSource.RULE_BASED
    base_confidence = 0.6
    max_confidence = 0.85

    async def estimate(self, context: EstimationContext) -> Estimate:
        staff = max(1, context.active_staff_count)
        per_patient = context.average_service_minutes + context.buffer_minutes
        queue_minutes = context.patients_ahead * per_patient / staff
        delay = max(0.0, context.current_delay_minutes)
        minutes = queue_minutes + delay

        historical = _historical_average(context.history, context.entry, context.now)
        confidence = self.base_confidence
        if historical is not None:
            # Blend toward history when the clinic has some.
            minutes = 0.6 * minutes + 0.4 * historical
            confidence += 0.15
        if context.current_delay_minutes:
            confidence += 0.1
        confidence = min(confidence, self.max_confidence)
        features = {
            "patients_ahead": context.patients_ahead,
            "per_patient_minutes": per_patient,
            "active_staff_count": staff,
            "current_delay_minutes": delay,
            "historical_average": historical,
        }
        return minutes, confidence, features


class HistoricalAverageEstimator:
    source = EstimationSource.HISTORICAL
    confidence = 0.5

    async def estimate(self, context: EstimationContext) -> Estimate:
        average = _historical_average(context.history, context.entry, context.now)
        if average is None:
            raise EstimationUnavailable(f"No wait history for clinic {context.entry.clinic_id}")
        return average, self.confidence, {"historical_average": average, "samples": context.history.sample_size}


class ConstantFallbackEstimator:
    source = EstimationSource.FALLBACK

    def __init__(self, minutes: int, confidence: float):
        self.minutes = minutes
        self.confidence = confidence

    async def estimate(self, context: EstimationContext) -> Estimate:
        return float(self.minutes), self.confidence, {}


def _historical_average(history: HistoricalStats, entry: QueueEntry, now: datetime) -> Optional[float]:
    # Most specific first: appointment type, time of day, then clinic-wide.
    by_type = history.average_wait_by_type.get(entry.appointment_type)
    if by_type is not None:
        return by_type
    by_slot = history.average_wait_by_time_slot.get(time_slot_label(entry.slot_start or now))
    if by_slot is not None:
        return by_slot
    return history.average_wait


class EstimatorChain:
    def __init__(self, estimators: Sequence[Any], settings: QueueSettings, clock: Clock):
        self.estimators = list(estimators)
        self.settings = settings
        self.clock = clock
        self.fallback = ConstantFallbackEstimator(settings.fallback_wait_minutes, settings.fallback_confidence)

    @classmethod
    def default(cls, settings: QueueSettings, clock: Clock, predictor: Optional[Predictor] = None) -> "EstimatorChain":
        return cls(
            [
                MlEstimator(predictor, settings.ml_timeout_seconds),
                RuleBasedEstimator(),
                HistoricalAverageEstimator(),
            ],
            settings,
            clock,
        )

    async def estimate(self, context: EstimationContext) -> EstimationResult:
        entry_id = context.entry.entry_id
        for estimator in self.estimators:
            name = estimator.source.value
            try:
                minutes, confidence, features = await estimator.estimate(context)
            except EstimationUnavailable as exc:
                logger.debug("Estimator %s unavailable for %s: %s", name, entry_id, exc)
                continue
            except asyncio.TimeoutError:
                logger.warning("Estimator %s timed out for %s", name, entry_id)
                continue
            except Exception as exc:
                logger.warning("Estimator %s failed for %s: %s", name, entry_id, exc)
                continue
            if confidence < self.settings.confidence_floor:
                logger.warning(
                    "Estimator %s confidence %.2f below floor %.2f for %s",
                    name,
                    confidence,
                    self.settings.confidence_floor,
                    entry_id,
                )
                continue
            logger.debug("Estimator %s answered %.1f min for %s", name, minutes, entry_id)
            return self._result(estimator.source, minutes, confidence, features)

        logger.warning("All estimators failed for %s; using constant fallback", entry_id)
        minutes, confidence, features = await self.fallback.estimate(context)
        return self._result(self.fallback.source, minutes, confidence, features)

    def _result(
        self, source: EstimationSource, minutes: float, confidence: float, features: Dict[str, Any]
    ) -> EstimationResult:
        now = self.clock.now()
        clamped = int(round(min(MAX_WAIT_MINUTES, max(MIN_WAIT_MINUTES, minutes))))
        return EstimationResult(
            predicted_minutes=clamped,
            confidence=round(min(1.0, max(0.0, confidence)), 3),
            source=source,
            computed_at=now,
            expires_at=now + timedelta(seconds=self.settings.cache_ttl_seconds),
            features=features,
        )


class ResultCache:
    """Latest estimate per entry, dropped after the TTL."""

    def __init__(self, settings: QueueSettings, clock: Clock):
        self._cache: TTLCache = TTLCache(
            maxsize=settings.cache_maxsize,
            ttl=settings.cache_ttl_seconds,
            timer=timestamp_timer(clock),
        )

    def get(self, entry_id: str) -> Optional[EstimationResult]:
        return self._cache.get(entry_id)

    def put(self, entry_id: str, result: EstimationResult) -> None:
        self._cache[entry_id] = result

    def invalidate(self, entry_id: str) -> None:
        self._cache.pop(entry_id, None)

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._cache

    def __len__(self) -> int:
        return len(self._cache)
