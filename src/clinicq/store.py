"""
Persistence port, an in-memory repository, and the per-clinic queue view.
"""

from __future__ import annotations

import copy
import itertools
import logging
from datetime import date
from typing import Dict, Iterable, List, Optional, Protocol

from .clock import Clock
from .errors import ConflictError, NotFoundError
from .models import ClinicQueueConfig, HistoricalStats, QueueEntry

logger = logging.getLogger(__name__)


class QueueRepository(Protocol):
    async def load_today_entries(self, clinic_id: str, day: date) -> List[QueueEntry]: ...

    async def load_entry(self, entry_id: str) -> QueueEntry: ...

    async def save_entry(self, entry: QueueEntry) -> QueueEntry: ...

    async def load_clinic_config(self, clinic_id: str) -> ClinicQueueConfig: ...

    async def load_historical_averages(self, clinic_id: str, appointment_type: str) -> HistoricalStats: ...

    async def clinic_ids(self) -> List[str]: ...


class InMemoryRepository:
    """Repository keeping detached copies so stale writers are detected."""

    def __init__(
        self,
        configs: Optional[Iterable[ClinicQueueConfig]] = None,
        history: Optional[Dict[str, HistoricalStats]] = None,
    ):
        self._entries: Dict[str, QueueEntry] = {}
        self._configs: Dict[str, ClinicQueueConfig] = {c.clinic_id: c for c in configs or []}
        self._history: Dict[str, HistoricalStats] = dict(history or {})

    def put_config(self, config: ClinicQueueConfig) -> None:
        self._configs[config.clinic_id] = config

    def put_history(self, clinic_id: str, stats: HistoricalStats) -> None:
        self._history[clinic_id] = stats

    async def load_today_entries(self, clinic_id: str, day: date) -> List[QueueEntry]:
        return [
            copy.deepcopy(e)
            for e in self._entries.values()
            if e.clinic_id == clinic_id and e.appointment_date == day
        ]

    async def load_entry(self, entry_id: str) -> QueueEntry:
        try:
            return copy.deepcopy(self._entries[entry_id])
        except KeyError:
            raise NotFoundError(f"Entry {entry_id} not found", entry_id=entry_id) from None

    async def save_entry(self, entry: QueueEntry) -> QueueEntry:
        stored = self._entries.get(entry.entry_id)
        if stored is not None and stored.version != entry.version:
            logger.warning("Stale write rejected for entry %s", entry.entry_id)
            raise ConflictError(
                f"Entry {entry.entry_id} changed concurrently (v{stored.version} != v{entry.version})",
                entry_id=entry.entry_id,
            )
        entry.version += 1
        self._entries[entry.entry_id] = copy.deepcopy(entry)
        return entry

    async def load_clinic_config(self, clinic_id: str) -> ClinicQueueConfig:
        config = self._configs.get(clinic_id)
        if config is None:
            config = ClinicQueueConfig(clinic_id=clinic_id)
            self._configs[clinic_id] = config
        return config

    async def load_historical_averages(self, clinic_id: str, appointment_type: str) -> HistoricalStats:
        return self._history.get(clinic_id, HistoricalStats())

    async def clinic_ids(self) -> List[str]:
        ids = {e.clinic_id for e in self._entries.values()} | set(self._configs)
        return sorted(ids)


class QueueStore:
    """Repository-backed view of today's entries per clinic."""

    def __init__(self, repository: QueueRepository, clock: Clock):
        self.repository = repository
        self.clock = clock
        self._sequence = itertools.count(1)

    def next_sequence(self) -> int:
        return next(self._sequence)

    async def entries(self, clinic_id: str, day: Optional[date] = None) -> List[QueueEntry]:
        day = day or self.clock.now().date()
        return await self.repository.load_today_entries(clinic_id, day)

    async def entry(self, entry_id: str) -> QueueEntry:
        return await self.repository.load_entry(entry_id)

    async def save(self, entry: QueueEntry) -> QueueEntry:
        return await self.repository.save_entry(entry)

    async def config(self, clinic_id: str) -> ClinicQueueConfig:
        return await self.repository.load_clinic_config(clinic_id)

    async def history(self, clinic_id: str, appointment_type: str) -> HistoricalStats:
        return await self.repository.load_historical_averages(clinic_id, appointment_type)

    async def clinic_ids(self) -> List[str]:
        return await self.repository.clinic_ids()
