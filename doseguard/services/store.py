"""
Storage collaborator contract.

Every multi-record write goes through a single atomic call (``commit_batch`` or
``append_events``) and dose writes carry the version they were read at so the
store can compare before writing.
"""

from collections.abc import Collection, Sequence
from datetime import datetime
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from doseguard.domain.events import DoseEvent
from doseguard.domain.grace_config import PatientGraceConfig
from doseguard.domain.models import (
    DoseStatus,
    FamilyNotification,
    MedicationCommand,
    NotificationRule,
    ScheduledDose,
)


class DoseWrite(BaseModel):
    """New dose state plus the version it replaces."""

    model_config = ConfigDict(frozen=True)

    dose: ScheduledDose
    expected_version: int


class SweepStats(BaseModel):
    """Counters committed together with the batch they describe."""

    model_config = ConfigDict(frozen=True)

    doses_processed: int = Field(default=0, ge=0)
    doses_missed: int = Field(default=0, ge=0)
    annotations_written: int = Field(default=0, ge=0)
    notifications_queued: int = Field(default=0, ge=0)


class BatchWrite(BaseModel):
    """Everything one sweep batch persists, applied all-or-nothing."""

    model_config = ConfigDict(frozen=True)

    batch_id: str
    dose_writes: tuple[DoseWrite, ...] = ()
    notifications: tuple[FamilyNotification, ...] = ()
    stats: SweepStats = Field(default_factory=SweepStats)


class DoseStore(Protocol):
    """Persistence operations used by the grace, sweep and event services."""

    async def find_doses(
        self,
        start: datetime,
        end: datetime,
        statuses: Collection[DoseStatus] = (DoseStatus.SCHEDULED,),
        patient_id: str | None = None,
    ) -> list[ScheduledDose]:
        """Doses with ``start <= scheduled_datetime <= end``, oldest first."""
        ...

    async def get_dose(self, dose_id: str) -> ScheduledDose | None: ...

    async def find_dose(
        self, command_id: str, scheduled_datetime: datetime
    ) -> ScheduledDose | None: ...

    async def recent_doses(
        self, command_id: str, patient_id: str, before: datetime, limit: int
    ) -> list[ScheduledDose]:
        """Doses scheduled at or before ``before``, newest first."""
        ...

    async def get_medication(self, command_id: str) -> MedicationCommand | None: ...

    async def get_grace_config(self, patient_id: str) -> PatientGraceConfig | None: ...

    async def get_notification_rules(self, patient_id: str) -> list[NotificationRule]:
        """Active rules only."""
        ...

    async def commit_batch(self, write: BatchWrite) -> None:
        """
        Apply a sweep batch atomically.

        Raises:
            ConflictError: a dose's stored version differs from ``expected_version``.
            TransientStorageError: the write failed and nothing was applied.
        """
        ...

    async def get_event(self, event_id: str) -> DoseEvent | None: ...

    async def find_events(
        self,
        *,
        command_id: str | None = None,
        dose_id: str | None = None,
        event_types: Collection[str] | None = None,
        recorded_since: datetime | None = None,
        limit: int | None = None,
    ) -> list[DoseEvent]:
        """Matching events, most recently recorded first."""
        ...

    async def append_events(
        self, events: Sequence[DoseEvent], dose_write: DoseWrite | None = None
    ) -> None:
        """Append events and apply an optional dose write atomically."""
        ...
