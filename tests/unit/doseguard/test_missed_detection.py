"""
Tests for the missed-dose sweeper.

Covers the grace boundary, idempotent re-sweeps, batch isolation, the soft
time budget and family notification decisions.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from adapters.memory.store import InMemoryDoseStore
from doseguard.config import AppConfig, SweepConfig
from doseguard.domain.models import (
    DoseStatus,
    MedicationCommand,
    MedicationType,
    MissedDoseSummary,
    MissedReason,
    NotificationRule,
    ScheduledDose,
    Severity,
)
from doseguard.errors import TransientStorageError
from doseguard.services.dose_tracking import DoseTrackingService
from doseguard.services.missed_detection import (
    notification_severity,
    partition_batches,
    split_patients,
)

WEDNESDAY_0800 = datetime(2024, 3, 13, 8, 0, tzinfo=UTC)

DoseFactory = Callable[..., ScheduledDose]


def _service(store: InMemoryDoseStore, **sweep: object) -> DoseTrackingService:
    return DoseTrackingService(store, AppConfig(sweep=SweepConfig(**sweep)))  # type: ignore[arg-type]


def _summary(dose_id: str, medication_type: MedicationType) -> MissedDoseSummary:
    return MissedDoseSummary(
        dose_id=dose_id,
        command_id="cmd-1",
        medication_name="Test",
        medication_type=medication_type,
        scheduled_datetime=WEDNESDAY_0800,
        grace_period_end=WEDNESDAY_0800 + timedelta(minutes=30),
    )


class TestPartitionBatches:
    def _doses(self, patients: list[str]) -> list[ScheduledDose]:
        return [
            ScheduledDose(
                id=f"dose-{i}",
                command_id="cmd-1",
                patient_id=patient,
                scheduled_datetime=WEDNESDAY_0800 + timedelta(minutes=i),
            )
            for i, patient in enumerate(patients)
        ]

    def test_fixed_size_batches(self) -> None:
        batches = partition_batches(self._doses(["p1"] * 3 + ["p2"] * 3 + ["p3"] * 3), 3)

        assert [len(b) for b in batches] == [3, 3, 3]

    def test_keeps_patient_doses_together(self) -> None:
        batches = partition_batches(self._doses(["p1", "p2", "p1", "p3", "p2"]), 3)

        assert [[d.patient_id for d in b] for b in batches] == [["p1", "p1"], ["p2", "p2", "p3"]]

    def test_oversized_patient_is_split(self) -> None:
        batches = partition_batches(self._doses(["p1"] * 5 + ["p2"]), 2)

        assert [len(b) for b in batches] == [2, 2, 1, 1]
        assert all(len(b) <= 2 for b in batches)

    def test_empty(self) -> None:
        assert partition_batches([], 50) == []

    def test_split_patients_names_only_patients_spanning_batches(self) -> None:
        batches = partition_batches(self._doses(["p1"] * 5 + ["p2"] + ["p3"] * 2), 2)

        assert split_patients(batches) == frozenset({"p1"})

    def test_no_split_patients_when_everyone_fits(self) -> None:
        batches = partition_batches(self._doses(["p1", "p2", "p1", "p3"]), 3)

        assert split_patients(batches) == frozenset()


class TestNotificationSeverity:
    def test_critical_wins(self) -> None:
        summaries = [_summary("d1", MedicationType.CRITICAL)]

        assert notification_severity(summaries) == Severity.CRITICAL

    def test_three_or_more_is_warning(self) -> None:
        summaries = [_summary(f"d{i}", MedicationType.STANDARD) for i in range(3)]

        assert notification_severity(summaries) == Severity.WARNING

    def test_otherwise_info(self) -> None:
        summaries = [_summary(f"d{i}", MedicationType.VITAMIN) for i in range(2)]

        assert notification_severity(summaries) == Severity.INFO


class TestSweepGraceBoundary:
    @pytest.mark.asyncio
    async def test_not_missed_inside_grace(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        dose = make_dose()

        result = await service.run_sweep(WEDNESDAY_0800.replace(minute=29))

        stored = store.doses[dose.id]
        assert result.processed == 1
        assert result.missed == 0
        assert result.annotations_written == 1
        assert stored.status == DoseStatus.SCHEDULED
        assert stored.grace is not None
        assert stored.grace.grace_period_minutes == 30
        assert stored.grace.grace_period_end == WEDNESDAY_0800 + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_missed_after_grace(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        dose = make_dose()
        now = WEDNESDAY_0800.replace(minute=31)

        result = await service.run_sweep(now)

        stored = store.doses[dose.id]
        assert result.missed == 1
        assert result.errors == ()
        assert stored.status == DoseStatus.MISSED
        assert stored.missed_at == now
        assert stored.missed_reason == MissedReason.AUTOMATIC_DETECTION
        assert stored.grace is not None
        assert stored.grace.applied_rules == ("default_morning", "type_standard")
        assert stored.version == dose.version + 1

    @pytest.mark.asyncio
    async def test_exactly_at_grace_end_is_not_missed(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        dose = make_dose()

        await service.run_sweep(WEDNESDAY_0800.replace(minute=30))

        assert store.doses[dose.id].status == DoseStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_doses_outside_lookback_are_ignored(
        self, service: DoseTrackingService, store: InMemoryDoseStore, make_dose: DoseFactory
    ) -> None:
        old = make_dose(scheduled=WEDNESDAY_0800 - timedelta(hours=25))
        future = make_dose(scheduled=WEDNESDAY_0800 + timedelta(hours=2))

        result = await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=1))

        assert result.processed == 0
        assert store.doses[old.id].status == DoseStatus.SCHEDULED
        assert store.doses[future.id].grace is None


class TestSweepIdempotency:
    @pytest.mark.asyncio
    async def test_second_sweep_is_a_no_op(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        dose = make_dose()
        store.add_rule(
            NotificationRule(
                id="rule-1",
                patient_id="patient-1",
                family_member_id="family-1",
                immediate_notification=True,
            )
        )
        now = WEDNESDAY_0800 + timedelta(minutes=31)

        first = await service.run_sweep(now)
        writes_after_first = store.dose_writes
        version_after_first = store.doses[dose.id].version

        second = await service.run_sweep(now + timedelta(minutes=15))

        assert first.missed == 1
        assert first.notifications_queued == 1
        assert second.processed == 0
        assert second.missed == 0
        assert second.notifications_queued == 0
        assert store.dose_writes == writes_after_first
        assert store.doses[dose.id].version == version_after_first
        assert len(store.notifications) == 1

    @pytest.mark.asyncio
    async def test_unchanged_annotation_is_not_rewritten(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        make_dose()

        first = await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=5))
        second = await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=20))

        assert first.annotations_written == 1
        assert second.annotations_written == 0
        assert store.dose_writes == 1

    @pytest.mark.asyncio
    async def test_stats_are_committed_with_batches(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        make_dose()
        make_dose(scheduled=WEDNESDAY_0800 + timedelta(minutes=20))

        await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=31))

        assert store.stats.doses_processed == 2
        assert store.stats.doses_missed == 1
        assert store.stats.annotations_written == 1


class TestSweepResilience:
    @pytest.mark.asyncio
    async def test_failed_batch_does_not_abort_others(
        self, store: InMemoryDoseStore, make_dose: DoseFactory
    ) -> None:
        service = _service(store, batch_size=2)
        for patient in ("patient-1", "patient-2", "patient-3"):
            make_dose(patient_id=patient, command_id=f"cmd-{patient}")
            make_dose(
                patient_id=patient,
                command_id=f"cmd-{patient}",
                scheduled=WEDNESDAY_0800 + timedelta(minutes=1),
            )
        store.fail_commit_when = lambda write: any(
            w.dose.patient_id == "patient-2" for w in write.dose_writes
        )

        result = await service.run_sweep(WEDNESDAY_0800 + timedelta(hours=1))

        assert result.batches_total == 3
        assert result.batches_completed == 2
        assert result.missed == 4
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.kind == TransientStorageError.kind
        assert error.batch_id is not None
        assert set(error.dose_ids) == {
            d.id for d in store.doses.values() if d.patient_id == "patient-2"
        }
        assert all(
            d.status == DoseStatus.SCHEDULED
            for d in store.doses.values()
            if d.patient_id == "patient-2"
        )

    @pytest.mark.asyncio
    async def test_time_budget_returns_partial_results(
        self, store: InMemoryDoseStore, make_dose: DoseFactory
    ) -> None:
        service = _service(
            store, batch_size=1, max_concurrent_batches=1, time_budget_seconds=0.25
        )
        for i in range(5):
            make_dose(patient_id=f"patient-{i}", command_id=f"cmd-{i}")
        store.commit_delay_seconds = 0.1

        result = await service.run_sweep(WEDNESDAY_0800 + timedelta(hours=1))

        missed_now = sum(1 for d in store.doses.values() if d.status == DoseStatus.MISSED)
        assert result.timed_out
        assert result.batches_total == 5
        assert 0 < result.batches_completed < 5
        assert result.missed == result.batches_completed == missed_now
        assert result.errors == ()

    @pytest.mark.asyncio
    async def test_query_failure_is_reported_not_raised(
        self, service: DoseTrackingService, store: InMemoryDoseStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def broken_find_doses(*args: object, **kwargs: object) -> list[ScheduledDose]:
            raise TransientStorageError("query timed out")

        monkeypatch.setattr(store, "find_doses", broken_find_doses)

        result = await service.run_sweep(WEDNESDAY_0800)

        assert result.processed == 0
        assert len(result.errors) == 1
        assert result.errors[0].batch_index is None
        assert result.errors[0].kind == "transient_storage_error"

    @pytest.mark.asyncio
    async def test_config_failure_still_marks_missed_with_defaults(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        dose = make_dose()
        store.failing_config_patients.add("patient-1")

        result = await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=31))

        assert result.errors == ()
        assert store.doses[dose.id].status == DoseStatus.MISSED


class TestFamilyNotifications:
    @pytest.mark.asyncio
    async def test_immediate_rule_queues_one_notification(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        dose = make_dose()
        store.add_rule(
            NotificationRule(
                id="rule-1",
                patient_id="patient-1",
                family_member_id="family-1",
                immediate_notification=True,
                methods=("sms", "email"),
            )
        )

        result = await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=31))

        assert result.notifications_queued == 1
        notification = store.notifications[0]
        assert notification.patient_id == "patient-1"
        assert notification.family_member_id == "family-1"
        assert notification.rule_id == "rule-1"
        assert notification.triggering_rule == "immediate"
        assert notification.severity == Severity.INFO
        assert notification.status == "pending"
        assert notification.method == "sms"
        assert [s.dose_id for s in notification.missed_dose_summaries] == [dose.id]
        assert notification.missed_dose_summaries[0].medication_name == "Amoxicillin"

    @pytest.mark.asyncio
    async def test_critical_only_rule(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        lisinopril: MedicationCommand,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        make_dose(command_id=lisinopril.id)
        make_dose(command_id=amoxicillin.id)
        store.add_rule(
            NotificationRule(
                id="rule-critical",
                patient_id="patient-1",
                family_member_id="family-1",
                critical_medications_only=True,
            )
        )

        await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=31))

        assert len(store.notifications) == 1
        notification = store.notifications[0]
        assert notification.triggering_rule == "critical_medication"
        assert notification.severity == Severity.CRITICAL
        assert len(notification.missed_dose_summaries) == 2

    @pytest.mark.asyncio
    async def test_critical_only_rule_ignores_standard_misses(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        make_dose()
        store.add_rule(
            NotificationRule(
                id="rule-critical",
                patient_id="patient-1",
                family_member_id="family-1",
                critical_medications_only=True,
            )
        )

        result = await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=31))

        assert result.missed == 1
        assert store.notifications == []

    @pytest.mark.asyncio
    async def test_consecutive_threshold_reached(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        make_dose(scheduled=WEDNESDAY_0800 - timedelta(days=2), status=DoseStatus.TAKEN)
        make_dose(scheduled=WEDNESDAY_0800 - timedelta(days=1), status=DoseStatus.MISSED)
        make_dose()
        store.add_rule(
            NotificationRule(
                id="rule-streak",
                patient_id="patient-1",
                family_member_id="family-1",
                consecutive_threshold=2,
            )
        )

        await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=31))

        assert len(store.notifications) == 1
        assert store.notifications[0].triggering_rule == "consecutive_threshold"

    @pytest.mark.asyncio
    async def test_taken_dose_breaks_the_streak(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        make_dose(scheduled=WEDNESDAY_0800 - timedelta(days=2), status=DoseStatus.MISSED)
        make_dose(scheduled=WEDNESDAY_0800 - timedelta(days=1), status=DoseStatus.TAKEN)
        make_dose()
        store.add_rule(
            NotificationRule(
                id="rule-streak",
                patient_id="patient-1",
                family_member_id="family-1",
                consecutive_threshold=2,
            )
        )

        await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=31))

        assert store.notifications == []

    @pytest.mark.asyncio
    async def test_three_misses_together_is_warning(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        for hour in (6, 7, 8):
            make_dose(scheduled=WEDNESDAY_0800.replace(hour=hour))
        store.add_rule(
            NotificationRule(
                id="rule-1",
                patient_id="patient-1",
                family_member_id="family-1",
                immediate_notification=True,
            )
        )

        await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=31))

        assert len(store.notifications) == 1
        assert store.notifications[0].severity == Severity.WARNING
        assert len(store.notifications[0].missed_dose_summaries) == 3

    @pytest.mark.asyncio
    async def test_inactive_rules_and_other_patients_ignored(
        self,
        service: DoseTrackingService,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        make_dose()
        store.add_rule(
            NotificationRule(
                id="rule-off",
                patient_id="patient-1",
                family_member_id="family-1",
                immediate_notification=True,
                is_active=False,
            )
        )
        store.add_rule(
            NotificationRule(
                id="rule-other",
                patient_id="patient-2",
                family_member_id="family-2",
                immediate_notification=True,
            )
        )

        await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=31))

        assert store.notifications == []

    @pytest.mark.asyncio
    async def test_patient_spanning_batches_gets_one_notification(
        self,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        service = _service(store, batch_size=2)
        doses = [make_dose(scheduled=WEDNESDAY_0800.replace(hour=hour)) for hour in (4, 5, 6, 7, 8)]
        store.add_rule(
            NotificationRule(
                id="rule-1",
                patient_id="patient-1",
                family_member_id="family-1",
                immediate_notification=True,
            )
        )

        result = await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=31))

        assert result.batches_total == 3
        assert result.missed == 5
        assert result.notifications_queued == 1
        assert result.errors == ()
        assert len(store.notifications) == 1
        notification = store.notifications[0]
        assert notification.severity == Severity.WARNING
        assert {s.dose_id for s in notification.missed_dose_summaries} == {d.id for d in doses}

    @pytest.mark.asyncio
    async def test_streak_across_batches_counts_every_miss(
        self,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        service = _service(store, batch_size=1)
        for hour in (6, 7, 8):
            make_dose(scheduled=WEDNESDAY_0800.replace(hour=hour))
        store.add_rule(
            NotificationRule(
                id="rule-streak",
                patient_id="patient-1",
                family_member_id="family-1",
                consecutive_threshold=3,
            )
        )

        await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=31))

        assert len(store.notifications) == 1
        assert store.notifications[0].triggering_rule == "consecutive_threshold"
        assert len(store.notifications[0].missed_dose_summaries) == 3

    @pytest.mark.asyncio
    async def test_failed_split_notification_is_reported(
        self,
        store: InMemoryDoseStore,
        amoxicillin: MedicationCommand,
        make_dose: DoseFactory,
    ) -> None:
        service = _service(store, batch_size=1)
        for hour in (7, 8):
            make_dose(scheduled=WEDNESDAY_0800.replace(hour=hour))
        store.add_rule(
            NotificationRule(
                id="rule-1",
                patient_id="patient-1",
                family_member_id="family-1",
                immediate_notification=True,
            )
        )
        store.fail_commit_when = lambda write: not write.dose_writes and bool(write.notifications)

        result = await service.run_sweep(WEDNESDAY_0800 + timedelta(minutes=31))

        assert result.missed == 2
        assert result.batches_completed == 2
        assert result.notifications_queued == 0
        assert len(result.errors) == 1
        assert result.errors[0].batch_index is None
        assert result.errors[0].kind == TransientStorageError.kind
        assert len(result.errors[0].dose_ids) == 2
        assert store.notifications == []


class TestPatientAndPeriodicSweeps:
    @pytest.mark.asyncio
    async def test_run_patient_only_touches_that_patient(
        self, service: DoseTrackingService, store: InMemoryDoseStore, make_dose: DoseFactory
    ) -> None:
        mine = make_dose(patient_id="patient-1")
        theirs = make_dose(patient_id="patient-2", command_id="cmd-other")

        result = await service.run_patient_sweep("patient-1", WEDNESDAY_0800 + timedelta(hours=1))

        assert result.processed == 1
        assert store.doses[mine.id].status == DoseStatus.MISSED
        assert store.doses[theirs.id].status == DoseStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_run_periodically_yields_each_sweep(self, store: InMemoryDoseStore) -> None:
        service = _service(store, interval_minutes=0.0005)

        results = [result async for result in service.run_continuous_sweeps(max_runs=2)]

        assert len(results) == 2
        assert all(r.errors == () for r in results)
