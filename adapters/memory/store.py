"""
In-memory DoseStore.

Reference adapter used by the demo and the test suite. Writes are serialized
by a single asyncio lock so every batch and event append is all-or-nothing,
and dose writes compare versions before applying. Failure and latency hooks
let tests exercise the sweeper's resilience paths.
"""

import asyncio
from collections import defaultdict
from collections.abc import Callable, Collection, Sequence
from datetime import datetime

import structlog

from doseguard.domain.events import DoseEvent
from doseguard.domain.grace_config import PatientGraceConfig
from doseguard.domain.models import (
    DoseStatus,
    FamilyNotification,
    MedicationCommand,
    NotificationRule,
    ScheduledDose,
)
from doseguard.errors import ConflictError, TransientStorageError
from doseguard.services.store import BatchWrite, DoseWrite, SweepStats

logger = structlog.get_logger(__name__)


class InMemoryDoseStore:
    """Dictionary-backed store implementing the DoseStore protocol."""

    def __init__(self) -> None:
        self.doses: dict[str, ScheduledDose] = {}
        self.medications: dict[str, MedicationCommand] = {}
        self.grace_configs: dict[str, PatientGraceConfig] = {}
        self.rules: dict[str, list[NotificationRule]] = defaultdict(list)
        self.events: dict[str, DoseEvent] = {}
        self.notifications: list[FamilyNotification] = []
        self.stats = SweepStats()
        self.committed_batches: list[str] = []
        self.dose_writes = 0
        self.duplicate_notifications_dropped = 0

        # Test hooks
        self.fail_commit_when: Callable[[BatchWrite], bool] | None = None
        self.commit_delay_seconds: float = 0.0
        self.failing_config_patients: set[str] = set()

        self._dedup_keys: set[str] = set()
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="in_memory_dose_store")

    # Seeding

    def add_dose(self, dose: ScheduledDose) -> ScheduledDose:
        self.doses[dose.id] = dose
        return dose

    def add_medication(self, medication: MedicationCommand) -> MedicationCommand:
        self.medications[medication.id] = medication
        return medication

    def set_grace_config(self, patient_id: str, config: PatientGraceConfig) -> None:
        self.grace_configs[patient_id] = config

    def add_rule(self, rule: NotificationRule) -> NotificationRule:
        self.rules[rule.patient_id].append(rule)
        return rule

    # Doses

    async def find_doses(
        self,
        start: datetime,
        end: datetime,
        statuses: Collection[DoseStatus] = (DoseStatus.SCHEDULED,),
        patient_id: str | None = None,
    ) -> list[ScheduledDose]:
        found = [
            dose
            for dose in self.doses.values()
            if start <= dose.scheduled_datetime <= end
            and dose.status in statuses
            and (patient_id is None or dose.patient_id == patient_id)
        ]
        return sorted(found, key=lambda d: (d.scheduled_datetime, d.id))

    async def get_dose(self, dose_id: str) -> ScheduledDose | None:
        return self.doses.get(dose_id)

    async def find_dose(
        self, command_id: str, scheduled_datetime: datetime
    ) -> ScheduledDose | None:
        return next(
            (
                dose
                for dose in self.doses.values()
                if dose.command_id == command_id and dose.scheduled_datetime == scheduled_datetime
            ),
            None,
        )

    async def recent_doses(
        self, command_id: str, patient_id: str, before: datetime, limit: int
    ) -> list[ScheduledDose]:
        found = [
            dose
            for dose in self.doses.values()
            if dose.command_id == command_id
            and dose.patient_id == patient_id
            and dose.scheduled_datetime <= before
        ]
        found.sort(key=lambda d: d.scheduled_datetime, reverse=True)
        return found[:limit]

    # Reference data

    async def get_medication(self, command_id: str) -> MedicationCommand | None:
        return self.medications.get(command_id)

    async def get_grace_config(self, patient_id: str) -> PatientGraceConfig | None:
        if patient_id in self.failing_config_patients:
            raise TransientStorageError("Grace config read failed", patient_id=patient_id)
        return self.grace_configs.get(patient_id)

    async def get_notification_rules(self, patient_id: str) -> list[NotificationRule]:
        return [rule for rule in self.rules.get(patient_id, []) if rule.is_active]

    # Writes

    async def commit_batch(self, write: BatchWrite) -> None:
        if self.commit_delay_seconds:
            await asyncio.sleep(self.commit_delay_seconds)

        async with self._lock:
            if self.fail_commit_when is not None and self.fail_commit_when(write):
                raise TransientStorageError("Batch commit failed", batch_id=write.batch_id)

            self._check_versions(write.dose_writes)
            for dose_write in write.dose_writes:
                self._apply(dose_write)

            for notification in write.notifications:
                if notification.dedup_key in self._dedup_keys:
                    self.duplicate_notifications_dropped += 1
                    continue
                self._dedup_keys.add(notification.dedup_key)
                self.notifications.append(notification)

            self.stats = SweepStats(
                doses_processed=self.stats.doses_processed + write.stats.doses_processed,
                doses_missed=self.stats.doses_missed + write.stats.doses_missed,
                annotations_written=(
                    self.stats.annotations_written + write.stats.annotations_written
                ),
                notifications_queued=(
                    self.stats.notifications_queued + write.stats.notifications_queued
                ),
            )
            self.committed_batches.append(write.batch_id)

        self.logger.debug(
            "batch_applied",
            batch_id=write.batch_id,
            dose_writes=len(write.dose_writes),
            notifications=len(write.notifications),
        )

    # Events

    async def get_event(self, event_id: str) -> DoseEvent | None:
        return self.events.get(event_id)

    async def find_events(
        self,
        *,
        command_id: str | None = None,
        dose_id: str | None = None,
        event_types: Collection[str] | None = None,
        recorded_since: datetime | None = None,
        limit: int | None = None,
    ) -> list[DoseEvent]:
        found = [
            event
            for event in self.events.values()
            if (command_id is None or event.command_id == command_id)
            and (dose_id is None or event.dose_id == dose_id)
            and (event_types is None or event.event_type in event_types)
            and (recorded_since is None or event.recorded_at >= recorded_since)
        ]
        # Insertion order breaks ties between events recorded at the same instant.
        found = list(reversed(found))
        found.sort(key=lambda e: e.recorded_at, reverse=True)
        return found[:limit] if limit is not None else found

    async def append_events(
        self, events: Sequence[DoseEvent], dose_write: DoseWrite | None = None
    ) -> None:
        async with self._lock:
            if dose_write is not None:
                self._check_versions((dose_write,))
            duplicate = next((e.id for e in events if e.id in self.events), None)
            if duplicate is not None:
                raise ConflictError("Event already recorded", event_id=duplicate)

            for event in events:
                self.events[event.id] = event
            if dose_write is not None:
                self._apply(dose_write)

    def _check_versions(self, writes: Sequence[DoseWrite]) -> None:
        for dose_write in writes:
            current = self.doses.get(dose_write.dose.id)
            if current is None or current.version != dose_write.expected_version:
                raise ConflictError(
                    "Dose changed since it was read",
                    dose_id=dose_write.dose.id,
                    expected_version=dose_write.expected_version,
                    current_version=current.version if current is not None else None,
                )

    def _apply(self, dose_write: DoseWrite) -> None:
        self.doses[dose_write.dose.id] = dose_write.dose
        self.dose_writes += 1
