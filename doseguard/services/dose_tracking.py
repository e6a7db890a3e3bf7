"""
Dose tracking service: the single entry point for callers.

Wires the holiday calendar, classifiers, grace-period calculator, missed-dose
sweeper and event state machine around one store, and adds the read-side
operations (grace lookup, missed-dose statistics, undo history).
"""

import asyncio
from collections import Counter, defaultdict
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from doseguard.config import AppConfig
from doseguard.domain.models import (
    CorrectedAction,
    DoseStatus,
    MissedReason,
    SkipReason,
)
from doseguard.errors import NotFoundError
from doseguard.services.classifiers import MedicationTypeClassifier, TimeSlotClassifier
from doseguard.services.dose_events import (
    CorrectionResult,
    DoseEventStateMachine,
    MarkMissedResult,
    SkipResult,
    SnoozeResult,
    TakeRequest,
    TakeResult,
    UndoHistoryEntry,
    UndoResult,
)
from doseguard.services.grace_period import GracePeriodCalculator
from doseguard.services.holiday_calendar import HolidayCalendar
from doseguard.services.missed_detection import MissedDoseSweeper, SweepResult
from doseguard.services.store import DoseStore

logger = structlog.get_logger(__name__)


class GracePeriodStatus(BaseModel):
    """Grace window of one dose as shown by "time remaining" displays."""

    model_config = ConfigDict(frozen=True)

    dose_id: str
    status: DoseStatus
    grace_period_minutes: int
    grace_period_end: datetime
    applied_rules: tuple[str, ...]
    minutes_remaining: float
    is_overdue: bool
    source: str  # "stored" or "computed"


class MissedStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    patient_id: str
    days: int
    total_missed: int
    by_medication: dict[str, int]
    by_time_slot: dict[str, int]
    average_grace_minutes: float
    common_reasons: list[tuple[str, int]]


class DoseTrackingService:
    """
    Composition root for grace periods, missed-dose detection and dose events.

    Process-scoped collaborators (calendar, classifiers) are built once here
    and injected; nothing is cached at module level.
    """

    def __init__(
        self,
        store: DoseStore,
        config: AppConfig | None = None,
        holiday_calendar: HolidayCalendar | None = None,
        type_classifier: MedicationTypeClassifier | None = None,
    ) -> None:
        self.store = store
        self.config = config or AppConfig()
        self.logger = logger.bind(component="dose_tracking")

        self._init_grace_periods(holiday_calendar, type_classifier)
        self._init_sweeper()
        self._init_state_machine()

    def _init_grace_periods(
        self,
        holiday_calendar: HolidayCalendar | None,
        type_classifier: MedicationTypeClassifier | None,
    ) -> None:
        self.holiday_calendar = holiday_calendar or HolidayCalendar()
        self.slot_classifier = TimeSlotClassifier()
        self.type_classifier = type_classifier or MedicationTypeClassifier()
        self.calculator = GracePeriodCalculator(
            self.holiday_calendar,
            slot_classifier=self.slot_classifier,
            type_classifier=self.type_classifier,
            store=self.store,
        )
        self.logger.info("grace_period_calculator_initialized")

    def _init_sweeper(self) -> None:
        self.sweeper = MissedDoseSweeper(self.store, self.calculator, self.config.sweep)
        self.logger.info(
            "missed_dose_sweeper_initialized",
            batch_size=self.config.sweep.batch_size,
            interval_minutes=self.config.sweep.interval_minutes,
        )

    def _init_state_machine(self) -> None:
        self.state_machine = DoseEventStateMachine(
            self.store, self.calculator, self.config.actions
        )
        self.logger.info(
            "dose_event_state_machine_initialized",
            undo_window_seconds=self.config.actions.undo_window_seconds,
        )

    # Request path

    async def take(
        self,
        command_id: str,
        scheduled_datetime: datetime,
        actor_id: str,
        request: TakeRequest | None = None,
        now: datetime | None = None,
    ) -> TakeResult:
        return await self.state_machine.take(command_id, scheduled_datetime, actor_id, request, now)

    async def undo(
        self,
        original_event_id: str,
        reason: str,
        actor_id: str,
        corrected_action: CorrectedAction | None = None,
        now: datetime | None = None,
    ) -> UndoResult:
        return await self.state_machine.undo(
            original_event_id, reason, actor_id, corrected_action, now
        )

    async def correct(
        self,
        original_event_id: str,
        corrected_action: CorrectedAction,
        reason: str,
        actor_id: str,
        corrected_data: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> CorrectionResult:
        return await self.state_machine.correct(
            original_event_id, corrected_action, reason, actor_id, corrected_data, now
        )

    async def skip(
        self,
        command_id: str,
        scheduled_datetime: datetime,
        actor_id: str,
        reason: SkipReason,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> SkipResult:
        return await self.state_machine.skip(
            command_id, scheduled_datetime, actor_id, reason, notes, now
        )

    async def snooze(
        self,
        command_id: str,
        scheduled_datetime: datetime,
        actor_id: str,
        minutes: int,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> SnoozeResult:
        return await self.state_machine.snooze(
            command_id, scheduled_datetime, actor_id, minutes, reason, now
        )

    async def mark_missed(
        self,
        dose_id: str,
        actor_id: str,
        reason: MissedReason = MissedReason.MANUAL_MARK,
        now: datetime | None = None,
    ) -> MarkMissedResult:
        return await self.state_machine.mark_missed(dose_id, actor_id, reason, now)

    async def undo_history(self, command_id: str, limit: int = 10) -> list[UndoHistoryEntry]:
        return await self.state_machine.undo_history(command_id, limit)

    # Sweep

    async def run_sweep(self, now: datetime | None = None) -> SweepResult:
        return await self.sweeper.run(now)

    async def run_patient_sweep(self, patient_id: str, now: datetime | None = None) -> SweepResult:
        return await self.sweeper.run_patient(patient_id, now)

    async def run_continuous_sweeps(self, max_runs: int | None = None) -> AsyncIterator[SweepResult]:
        async for result in self.sweeper.run_periodically(max_runs=max_runs):
            yield result

    # Read side

    async def get_grace_period(
        self, dose_id: str, now: datetime | None = None
    ) -> GracePeriodStatus:
        """Stored annotation when present, otherwise computed on demand without writing."""
        now = now or datetime.now(UTC)
        dose = await self.store.get_dose(dose_id)
        if dose is None:
            raise NotFoundError("Scheduled dose not found", dose_id=dose_id)

        if dose.grace is not None:
            annotation, source = dose.grace, "stored"
        else:
            annotation, source = (await self.calculator.resolve(dose)).to_annotation(), "computed"

        return GracePeriodStatus(
            dose_id=dose.id,
            status=dose.status,
            grace_period_minutes=annotation.grace_period_minutes,
            grace_period_end=annotation.grace_period_end,
            applied_rules=annotation.applied_rules,
            minutes_remaining=round(annotation.minutes_remaining(now), 1),
            is_overdue=dose.status == DoseStatus.SCHEDULED and now > annotation.grace_period_end,
            source=source,
        )

    async def missed_stats(
        self, patient_id: str, days: int = 30, now: datetime | None = None
    ) -> MissedStats:
        """Missed-dose breakdown for a patient over the last ``days`` days."""
        now = now or datetime.now(UTC)
        doses = await self.store.find_doses(
            now - timedelta(days=days),
            now,
            statuses=(DoseStatus.MISSED,),
            patient_id=patient_id,
        )
        config, _ = await self.calculator.load_config(patient_id)

        by_medication: dict[str, int] = defaultdict(int)
        by_time_slot: dict[str, int] = defaultdict(int)
        reasons: Counter[str] = Counter()
        grace_minutes: list[int] = []

        for dose in doses:
            by_medication[dose.medication_name or dose.command_id] += 1
            by_time_slot[self.slot_classifier.classify(dose.scheduled_datetime, config)] += 1
            if dose.missed_reason is not None:
                reasons[dose.missed_reason.value] += 1
            if dose.grace is not None:
                grace_minutes.append(dose.grace.grace_period_minutes)

        return MissedStats(
            patient_id=patient_id,
            days=days,
            total_missed=len(doses),
            by_medication=dict(by_medication),
            by_time_slot=dict(by_time_slot),
            average_grace_minutes=(
                round(sum(grace_minutes) / len(grace_minutes), 1) if grace_minutes else 0.0
            ),
            common_reasons=reasons.most_common(3),
        )


async def main() -> None:
    """Run the periodic sweep against the in-memory store until interrupted."""
    from adapters.memory.store import InMemoryDoseStore
    from doseguard.config import load_config_from_env
    from doseguard.log_setup import configure_logging

    config = load_config_from_env()
    configure_logging(config.logging)
    service = DoseTrackingService(InMemoryDoseStore(), config)

    try:
        async for result in service.run_continuous_sweeps():
            print(
                f"Sweep: processed={result.processed} missed={result.missed} "
                f"errors={len(result.errors)} timed_out={result.timed_out}"
            )
    except KeyboardInterrupt:
        print("Sweep loop stopped by user")


if __name__ == "__main__":
    asyncio.run(main())
