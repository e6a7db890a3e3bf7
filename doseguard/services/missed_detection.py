"""
Missed-dose sweep.

Key behaviours:
- Bounded lookback query, partitioned into fixed-size batches
- Each batch commits atomically and reports through a Result
- Batches run concurrently under a TaskGroup and a semaphore
- A soft time budget returns partial results instead of failing
- Family notification rules are evaluated per patient and queued, never sent
- Patients split across batches are evaluated once, after all batches finish
"""

import asyncio
import time
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator, Sequence
from datetime import UTC, datetime, timedelta

import structlog
from pydantic import BaseModel, ConfigDict, Field

from doseguard.config import SweepConfig
from doseguard.domain.grace_config import PatientGraceConfig
from doseguard.domain.models import (
    DoseStatus,
    FamilyNotification,
    MedicationCommand,
    MedicationType,
    MissedDoseSummary,
    MissedReason,
    NotificationRule,
    ScheduledDose,
    Severity,
)
from doseguard.errors import DoseTrackingError, TransientStorageError
from doseguard.result import Result
from doseguard.services.grace_period import GracePeriodCalculator
from doseguard.services.store import BatchWrite, DoseStore, DoseWrite, SweepStats

logger = structlog.get_logger(__name__)

WARNING_MISSED_COUNT = 3


class SweepError(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_index: int | None = Field(description="None when the failure is not tied to one batch")
    batch_id: str | None = None
    kind: str
    message: str
    dose_ids: tuple[str, ...] = ()


class SweepResult(BaseModel):
    """Aggregated outcome of one sweep. Errors are reported here, never raised."""

    model_config = ConfigDict(frozen=True)

    processed: int = 0
    missed: int = 0
    annotations_written: int = 0
    notifications_queued: int = 0
    errors: tuple[SweepError, ...] = ()
    batches_total: int = 0
    batches_completed: int = 0
    timed_out: bool = False
    duration_seconds: float = 0.0


def partition_batches(
    doses: Sequence[ScheduledDose], batch_size: int
) -> list[list[ScheduledDose]]:
    """
    Split doses into batches of at most ``batch_size``.

    A patient's doses stay in one batch whenever they fit so that notification
    rules see them together. A patient with more doses than a batch holds is
    split; see ``split_patients``. Patients are taken in order of first
    appearance.
    """
    by_patient: dict[str, list[ScheduledDose]] = defaultdict(list)
    for dose in doses:
        by_patient[dose.patient_id].append(dose)

    batches: list[list[ScheduledDose]] = []
    current: list[ScheduledDose] = []
    for group in by_patient.values():
        if len(group) > batch_size:
            if current:
                batches.append(current)
                current = []
            batches.extend(
                group[i : i + batch_size] for i in range(0, len(group), batch_size)
            )
            continue
        if len(current) + len(group) > batch_size:
            batches.append(current)
            current = []
        current.extend(group)
    if current:
        batches.append(current)
    return batches


def split_patients(batches: Sequence[Sequence[ScheduledDose]]) -> frozenset[str]:
    """Patients whose doses landed in more than one batch."""
    batch_counts: dict[str, int] = defaultdict(int)
    for batch in batches:
        for patient_id in {dose.patient_id for dose in batch}:
            batch_counts[patient_id] += 1
    return frozenset(patient_id for patient_id, count in batch_counts.items() if count > 1)


def notification_severity(summaries: Sequence[MissedDoseSummary]) -> Severity:
    if any(s.medication_type == MedicationType.CRITICAL for s in summaries):
        return Severity.CRITICAL
    if len(summaries) >= WARNING_MISSED_COUNT:
        return Severity.WARNING
    return Severity.INFO


class NotificationEvaluator:
    """Decides which family rules fire for a patient's newly missed doses."""

    def __init__(self, store: DoseStore, history_depth: int = 10) -> None:
        self.store = store
        self.history_depth = history_depth
        self.logger = logger.bind(component="notification_evaluator")

    async def consecutive_missed(
        self,
        command_id: str,
        patient_id: str,
        now: datetime,
        pending: dict[str, ScheduledDose] | None = None,
    ) -> int:
        """
        Count misses walking history newest first until a taken or skipped dose.

        ``pending`` holds dose states decided in this batch but not committed yet.
        Doses still scheduled neither count nor break the streak.
        """
        pending = pending or {}
        history = await self.store.recent_doses(
            command_id, patient_id, before=now, limit=self.history_depth
        )
        count = 0
        for stored in history:
            dose = pending.get(stored.id, stored)
            if dose.status == DoseStatus.MISSED:
                count += 1
            elif dose.status in (DoseStatus.TAKEN, DoseStatus.SKIPPED):
                break
        return count

    async def should_notify(
        self,
        rule: NotificationRule,
        summaries: Sequence[MissedDoseSummary],
        now: datetime,
        pending: dict[str, ScheduledDose],
    ) -> str | None:
        """Name of the first trigger the rule satisfies, or None."""
        if rule.immediate_notification:
            return "immediate"

        if rule.consecutive_threshold is not None:
            for command_id in dict.fromkeys(s.command_id for s in summaries):
                count = await self.consecutive_missed(command_id, rule.patient_id, now, pending)
                if count >= rule.consecutive_threshold:
                    return "consecutive_threshold"

        if rule.critical_medications_only and any(
            s.medication_type == MedicationType.CRITICAL for s in summaries
        ):
            return "critical_medication"

        return None

    async def evaluate(
        self,
        patient_id: str,
        summaries: Sequence[MissedDoseSummary],
        now: datetime,
        pending: dict[str, ScheduledDose],
    ) -> list[FamilyNotification]:
        if not summaries:
            return []

        rules = await self.store.get_notification_rules(patient_id)
        dose_key = ",".join(sorted(s.dose_id for s in summaries))
        severity = notification_severity(summaries)

        notifications = []
        for rule in rules:
            if not rule.is_active:
                continue
            trigger = await self.should_notify(rule, summaries, now, pending)
            if trigger is None:
                continue
            notifications.append(
                FamilyNotification(
                    id=f"notif_{uuid.uuid4().hex}",
                    dedup_key=f"{rule.id}:{dose_key}",
                    patient_id=patient_id,
                    family_member_id=rule.family_member_id,
                    rule_id=rule.id,
                    triggering_rule=trigger,
                    missed_dose_summaries=tuple(summaries),
                    severity=severity,
                    method=rule.methods[0] if rule.methods else "email",
                    created_at=now,
                )
            )
            self.logger.info(
                "family_notification_queued",
                patient_id=patient_id,
                rule_id=rule.id,
                trigger=trigger,
                severity=severity.value,
                missed_count=len(summaries),
            )
        return notifications


class _BatchOutcome(BaseModel):
    processed: int = 0
    missed: int = 0
    annotations_written: int = 0
    notifications_queued: int = 0
    # Misses of split patients, evaluated once all their batches are done
    deferred: dict[str, list[MissedDoseSummary]] = Field(default_factory=dict)


class MissedDoseSweeper:
    """
    Periodic job marking overdue scheduled doses as missed.

    Re-sweeping is idempotent: only doses still ``scheduled`` are queried, dose
    writes are version-checked and notifications carry a dedup key.
    """

    def __init__(
        self,
        store: DoseStore,
        calculator: GracePeriodCalculator,
        config: SweepConfig,
        evaluator: NotificationEvaluator | None = None,
    ) -> None:
        self.store = store
        self.calculator = calculator
        self.config = config
        self.evaluator = evaluator or NotificationEvaluator(store, config.history_depth)
        self.logger = logger.bind(component="missed_dose_sweeper")

    async def run(self, now: datetime | None = None) -> SweepResult:
        return await self._sweep(now or datetime.now(UTC), patient_id=None)

    async def run_patient(self, patient_id: str, now: datetime | None = None) -> SweepResult:
        """Same sweep restricted to one patient's doses."""
        return await self._sweep(now or datetime.now(UTC), patient_id=patient_id)

    async def run_periodically(self, max_runs: int | None = None) -> AsyncIterator[SweepResult]:
        """Yield a sweep result every ``interval_minutes`` until ``max_runs`` is reached."""
        interval = self.config.interval_minutes * 60
        self.logger.info("periodic_sweep_started", interval_minutes=self.config.interval_minutes)

        runs = 0
        while max_runs is None or runs < max_runs:
            cycle_start = time.perf_counter()
            try:
                result = await self.run()
            except Exception as e:
                self.logger.exception("unexpected_periodic_sweep_error", error=str(e))
                await asyncio.sleep(interval)
                continue

            yield result
            runs += 1
            if max_runs is not None and runs >= max_runs:
                return

            elapsed = time.perf_counter() - cycle_start
            sleep_time = max(0.0, interval - elapsed)
            if sleep_time > 0:
                await asyncio.sleep(sleep_time)
            else:
                self.logger.warning(
                    "sweep_slower_than_interval",
                    elapsed_seconds=round(elapsed, 3),
                    interval_seconds=interval,
                )

    async def _sweep(self, now: datetime, patient_id: str | None) -> SweepResult:
        start_time = time.perf_counter()
        window_start = now - timedelta(hours=self.config.lookback_hours)
        self.logger.info(
            "sweep_started",
            now=now.isoformat(),
            window_start=window_start.isoformat(),
            patient_id=patient_id,
        )

        try:
            doses = await self.store.find_doses(
                window_start, now, statuses=(DoseStatus.SCHEDULED,), patient_id=patient_id
            )
        except Exception as e:
            self.logger.exception("sweep_query_failed", error=str(e))
            return SweepResult(
                errors=(
                    SweepError(
                        batch_index=None,
                        kind=getattr(e, "kind", type(e).__name__),
                        message=str(e),
                    ),
                ),
                duration_seconds=round(time.perf_counter() - start_time, 3),
            )

        batches = partition_batches(doses, self.config.batch_size)
        deferred_patients = split_patients(batches)
        outcomes: dict[int, Result[_BatchOutcome, DoseTrackingError]] = {}
        semaphore = asyncio.Semaphore(self.config.max_concurrent_batches)

        async def worker(index: int, batch: list[ScheduledDose]) -> None:
            async with semaphore:
                outcomes[index] = await self._process_batch(
                    index, batch, now, deferred_patients
                )

        timed_out = False
        try:
            async with asyncio.timeout(self.config.time_budget_seconds):
                async with asyncio.TaskGroup() as task_group:
                    for index, batch in enumerate(batches):
                        task_group.create_task(worker(index, batch))
        except TimeoutError:
            timed_out = True
            self.logger.warning(
                "sweep_time_budget_exceeded",
                budget_seconds=self.config.time_budget_seconds,
                batches_completed=len(outcomes),
                batches_total=len(batches),
            )

        split_queued, split_errors = await self._notify_split_patients(outcomes, now)
        result = self._aggregate(
            batches, outcomes, timed_out, start_time, split_queued, split_errors
        )
        self.logger.info(
            "sweep_completed",
            processed=result.processed,
            missed=result.missed,
            notifications_queued=result.notifications_queued,
            errors=len(result.errors),
            batches_completed=result.batches_completed,
            batches_total=result.batches_total,
            timed_out=result.timed_out,
            duration_seconds=result.duration_seconds,
        )
        return result

    def _aggregate(
        self,
        batches: list[list[ScheduledDose]],
        outcomes: dict[int, Result[_BatchOutcome, DoseTrackingError]],
        timed_out: bool,
        start_time: float,
        split_queued: int = 0,
        split_errors: Sequence[SweepError] = (),
    ) -> SweepResult:
        totals = _BatchOutcome(notifications_queued=split_queued)
        errors: list[SweepError] = []
        completed = 0

        for index in sorted(outcomes):
            outcome = outcomes[index]
            if outcome.is_ok():
                value = outcome.unwrap()
                completed += 1
                totals = _BatchOutcome(
                    processed=totals.processed + value.processed,
                    missed=totals.missed + value.missed,
                    annotations_written=totals.annotations_written + value.annotations_written,
                    notifications_queued=totals.notifications_queued + value.notifications_queued,
                )
            else:
                error = outcome.unwrap_err()
                errors.append(
                    SweepError(
                        batch_index=index,
                        batch_id=error.context.get("batch_id"),
                        kind=error.kind,
                        message=error.message,
                        dose_ids=tuple(d.id for d in batches[index]),
                    )
                )
        errors.extend(split_errors)

        return SweepResult(
            processed=totals.processed,
            missed=totals.missed,
            annotations_written=totals.annotations_written,
            notifications_queued=totals.notifications_queued,
            errors=tuple(errors),
            batches_total=len(batches),
            batches_completed=completed,
            timed_out=timed_out,
            duration_seconds=round(time.perf_counter() - start_time, 3),
        )

    async def _notify_split_patients(
        self,
        outcomes: dict[int, Result[_BatchOutcome, DoseTrackingError]],
        now: datetime,
    ) -> tuple[int, list[SweepError]]:
        """
        Evaluate notification rules for patients whose doses spanned batches.

        Runs after every batch has committed so severity and consecutive counts
        cover all of the patient's misses in this sweep.
        """
        merged: dict[str, list[MissedDoseSummary]] = defaultdict(list)
        for index in sorted(outcomes):
            outcome = outcomes[index]
            if outcome.is_ok():
                for patient_id, summaries in outcome.unwrap().deferred.items():
                    merged[patient_id].extend(summaries)

        queued = 0
        errors: list[SweepError] = []
        for patient_id, missed in merged.items():
            batch_id = f"sweep_{now:%Y%m%dT%H%M%S}_notify_{patient_id}"
            try:
                # Misses are committed by now, so history already reflects them
                notifications = await self.evaluator.evaluate(patient_id, missed, now, {})
                if notifications:
                    await self.store.commit_batch(
                        BatchWrite(
                            batch_id=batch_id,
                            notifications=tuple(notifications),
                            stats=SweepStats(notifications_queued=len(notifications)),
                        )
                    )
                queued += len(notifications)
            except Exception as e:
                self.logger.warning(
                    "split_patient_notification_failed",
                    patient_id=patient_id,
                    batch_id=batch_id,
                    error=str(e),
                )
                errors.append(
                    SweepError(
                        batch_index=None,
                        batch_id=batch_id,
                        kind=getattr(e, "kind", type(e).__name__),
                        message=str(e),
                        dose_ids=tuple(s.dose_id for s in missed),
                    )
                )
        return queued, errors

    async def _process_batch(
        self,
        index: int,
        doses: list[ScheduledDose],
        now: datetime,
        deferred_patients: frozenset[str] = frozenset(),
    ) -> Result[_BatchOutcome, DoseTrackingError]:
        batch_id = f"sweep_{now:%Y%m%dT%H%M%S}_{index}"
        log = self.logger.bind(batch_id=batch_id, batch_size=len(doses))

        try:
            writes: list[DoseWrite] = []
            pending: dict[str, ScheduledDose] = {}
            missed_by_patient: dict[str, list[MissedDoseSummary]] = defaultdict(list)
            configs: dict[str, tuple[PatientGraceConfig, bool]] = {}
            medications: dict[str, MedicationCommand | None] = {}
            processed = 0
            annotations = 0

            for dose in doses:
                if dose.status != DoseStatus.SCHEDULED:
                    continue
                processed += 1

                if dose.patient_id not in configs:
                    configs[dose.patient_id] = await self.calculator.load_config(dose.patient_id)
                if dose.command_id not in medications:
                    medications[dose.command_id] = await self.calculator.load_medication(
                        dose.command_id
                    )
                medication = medications[dose.command_id]

                calculation = await self.calculator.resolve(
                    dose, medication=medication, config=configs[dose.patient_id]
                )
                annotation = calculation.to_annotation()

                if now > calculation.end:
                    updated = dose.evolve(
                        status=DoseStatus.MISSED,
                        missed_at=now,
                        missed_reason=MissedReason.AUTOMATIC_DETECTION,
                        grace=annotation,
                    )
                    writes.append(DoseWrite(dose=updated, expected_version=dose.version))
                    pending[updated.id] = updated
                    missed_by_patient[dose.patient_id].append(
                        MissedDoseSummary(
                            dose_id=dose.id,
                            command_id=dose.command_id,
                            medication_name=(
                                medication.name
                                if medication is not None
                                else dose.medication_name or "Unknown medication"
                            ),
                            medication_type=calculation.medication_type,
                            scheduled_datetime=dose.scheduled_datetime,
                            grace_period_end=calculation.end,
                            applied_rules=calculation.applied_rules,
                        )
                    )
                elif dose.grace != annotation:
                    writes.append(
                        DoseWrite(dose=dose.evolve(grace=annotation), expected_version=dose.version)
                    )
                    annotations += 1

            notifications: list[FamilyNotification] = []
            deferred: dict[str, list[MissedDoseSummary]] = {}
            for patient_id, summaries in missed_by_patient.items():
                if patient_id in deferred_patients:
                    deferred[patient_id] = summaries
                    continue
                notifications.extend(
                    await self.evaluator.evaluate(patient_id, summaries, now, pending)
                )

            stats = SweepStats(
                doses_processed=processed,
                doses_missed=len(pending),
                annotations_written=annotations,
                notifications_queued=len(notifications),
            )
            if processed:
                await self.store.commit_batch(
                    BatchWrite(
                        batch_id=batch_id,
                        dose_writes=tuple(writes),
                        notifications=tuple(notifications),
                        stats=stats,
                    )
                )

            log.info(
                "batch_committed",
                processed=processed,
                missed=len(pending),
                annotations_written=annotations,
                notifications_queued=len(notifications),
            )
            return Result.ok(
                _BatchOutcome(
                    processed=processed,
                    missed=len(pending),
                    annotations_written=annotations,
                    notifications_queued=len(notifications),
                    deferred=deferred,
                )
            )

        except DoseTrackingError as e:
            e.context.setdefault("batch_id", batch_id)
            log.warning("batch_failed", error=str(e), error_kind=e.kind)
            return Result.err(e)
        except Exception as e:
            log.exception("unexpected_batch_error", error=str(e))
            return Result.err(TransientStorageError(str(e), batch_id=batch_id))
