"""Shared fixtures for the dose tracking test suite."""

from collections.abc import Callable
from datetime import UTC, datetime

import pytest

from adapters.memory.store import InMemoryDoseStore
from doseguard.config import AppConfig, DoseActionConfig, SweepConfig
from doseguard.domain.models import MedicationCommand, ScheduledDose
from doseguard.services.dose_tracking import DoseTrackingService

# Wednesday, not a holiday
WEEKDAY_0800 = datetime(2024, 3, 13, 8, 0, tzinfo=UTC)

DoseFactory = Callable[..., ScheduledDose]


@pytest.fixture
def store() -> InMemoryDoseStore:
    return InMemoryDoseStore()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        environment="development",
        sweep=SweepConfig(batch_size=50, max_concurrent_batches=4, time_budget_seconds=30),
        actions=DoseActionConfig(),
    )


@pytest.fixture
def service(store: InMemoryDoseStore, app_config: AppConfig) -> DoseTrackingService:
    return DoseTrackingService(store, app_config)


@pytest.fixture
def lisinopril(store: InMemoryDoseStore) -> MedicationCommand:
    return store.add_medication(
        MedicationCommand(
            id="cmd-lisinopril",
            patient_id="patient-1",
            name="Lisinopril",
            dosage_amount="10 mg",
        )
    )


@pytest.fixture
def amoxicillin(store: InMemoryDoseStore) -> MedicationCommand:
    return store.add_medication(
        MedicationCommand(
            id="cmd-amoxicillin",
            patient_id="patient-1",
            name="Amoxicillin",
            dosage_amount="500 mg",
        )
    )


@pytest.fixture
def make_dose(store: InMemoryDoseStore) -> DoseFactory:
    """Create and store a scheduled dose; ids are derived from command and time."""

    def _make(
        command_id: str = "cmd-amoxicillin",
        scheduled: datetime = WEEKDAY_0800,
        patient_id: str = "patient-1",
        **fields: object,
    ) -> ScheduledDose:
        dose = ScheduledDose(
            id=fields.pop("id", None) or f"{command_id}@{scheduled.isoformat()}",
            command_id=command_id,
            patient_id=patient_id,
            scheduled_datetime=scheduled,
            **fields,
        )
        return store.add_dose(dose)

    return _make
