"""
Shared fixtures: a frozen clock on a fixed clinic day, an in-memory
repository, a service factory and a few fake predictors.
"""

import asyncio
from datetime import date, datetime, timedelta

import pytest

from clinicq.clock import ManualClock
from clinicq.config import QueueSettings
from clinicq.errors import ExternalServiceError
from clinicq.models import ClinicQueueConfig, QueueEntry, QueueMode
from clinicq.notifications import LoggingNotificationSink
from clinicq.service import QueueService
from clinicq.store import InMemoryRepository
from clinicq.waitlist import GapManager, WaitlistManager

CLINIC = "clinic-a"
DAY = date(2026, 3, 2)


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute)


def make_entry(entry_id: str, start=None, minutes: int = 30, **kwargs) -> QueueEntry:
    """Booked entry at `start` (a datetime) or a walk-in when start is None."""
    return QueueEntry(
        entry_id=entry_id,
        clinic_id=kwargs.pop("clinic_id", CLINIC),
        patient_id=kwargs.pop("patient_id", f"patient-{entry_id}"),
        scheduled_start=start,
        scheduled_end=start + timedelta(minutes=minutes) if start is not None else None,
        appointment_date=DAY,
        is_walk_in=start is None,
        **kwargs,
    )


class StaticPredictor:
    def __init__(self, minutes: float = 12.0, confidence: float = 0.9):
        self.minutes = minutes
        self.confidence = confidence
        self.calls = []

    async def predict(self, features):
        self.calls.append(features)
        return self.minutes, self.confidence


class SlowPredictor:
    async def predict(self, features):
        await asyncio.sleep(5)
        return 1.0, 1.0


class FailingPredictor:
    async def predict(self, features):
        raise ExternalServiceError("predictor", "connection refused")


class FailingSink:
    def notify(self, patient_id, message):
        raise RuntimeError("sms gateway down")


@pytest.fixture
def clock():
    return ManualClock(at(8, 0))


@pytest.fixture
def settings():
    return QueueSettings()


@pytest.fixture
def clinic_config():
    return ClinicQueueConfig(clinic_id=CLINIC, mode=QueueMode.FIXED, allow_overflow=True)


@pytest.fixture
def repository(clinic_config):
    return InMemoryRepository([clinic_config])


@pytest.fixture
def sink():
    return LoggingNotificationSink()


@pytest.fixture
def make_service(repository, clock, settings, sink):
    """Factory so a test can pick the mode and predictor it needs."""

    def factory(mode: QueueMode = QueueMode.FIXED, predictor=None, **config_overrides):
        config = ClinicQueueConfig(clinic_id=CLINIC, mode=mode, allow_overflow=True, **config_overrides)
        repository.put_config(config)
        return QueueService(repository, clock=clock, settings=settings, predictor=predictor, notifier=sink)

    return factory


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def gaps(settings, clock):
    return GapManager(WaitlistManager(settings, clock), settings)
