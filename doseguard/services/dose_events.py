"""
Dose event state machine: take, undo, correct, skip, snooze and manual miss.

Transitions:
    scheduled -> taken | missed | skipped
    missed    -> taken (late) | skipped
    taken     -> scheduled via undo, only inside the undo window
    any       -> any via correction, a new compensating event

Each operation appends its events and the new dose state in one atomic store
call. Events are never edited or deleted.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from doseguard.config import DoseActionConfig
from doseguard.domain.events import (
    CorrectionEvent,
    CorrectionPayload,
    DoseEvent,
    SkipEvent,
    SkipPayload,
    SnoozeEvent,
    SnoozePayload,
    TakeEvent,
    TakePayload,
    UndoEvent,
    UndoPayload,
    new_correlation_id,
    new_event_id,
)
from doseguard.domain.models import (
    AdherenceImpact,
    AdherenceScore,
    Circumstances,
    CorrectedAction,
    DoseDetails,
    DoseStatus,
    DoseType,
    MissedReason,
    ScheduledDose,
    SkipReason,
    TimingCategory,
)
from doseguard.errors import (
    ConflictError,
    DuplicateSubmissionError,
    InvalidTransitionError,
    NotFoundError,
    UndoWindowExpired,
    ValidationError,
)
from doseguard.services.adherence import (
    AdherenceScorer,
    adherence_rate,
    classify_dose_type,
    classify_timing,
    minutes_from_scheduled,
)
from doseguard.services.grace_period import GracePeriodCalculator
from doseguard.services.store import DoseStore, DoseWrite

logger = structlog.get_logger(__name__)

IMPACT_HISTORY_DOSES = 30
MANUAL_MISSED_REASONS = (MissedReason.MANUAL_MARK, MissedReason.FAMILY_REPORT)


class TakeRequest(BaseModel):
    """Optional details reported with a take."""

    model_config = ConfigDict(frozen=True)

    taken_at: datetime | None = None
    dose_details: DoseDetails | None = None
    circumstances: Circumstances | None = None
    notes: str | None = None


class TakeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    dose_id: str
    adherence_score: int
    score: AdherenceScore
    timing_category: TimingCategory
    dose_type: DoseType
    minutes_from_scheduled: int
    undo_available_until: datetime


class UndoResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    undo_event_id: str
    original_event_id: str
    correction_event_id: str | None = None
    corrected_action: CorrectedAction | None = None
    dose_status: DoseStatus
    adherence_impact: AdherenceImpact


class CorrectionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    correction_event_id: str
    original_event_id: str
    corrected_action: CorrectedAction
    dose_status: DoseStatus
    adherence_impact: AdherenceImpact


class SkipResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    dose_id: str
    reason: SkipReason


class SnoozeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    dose_id: str
    snooze_minutes: int
    new_scheduled_time: datetime


class MarkMissedResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    dose_id: str
    missed_at: datetime
    missed_reason: MissedReason
    grace_period_minutes: int
    grace_period_end: datetime
    applied_rules: tuple[str, ...]


class UndoHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    original_event_id: str
    reason: str
    corrected_action: CorrectedAction | None
    recorded_at: datetime
    seconds_since_original: float | None


class DoseEventStateMachine:
    """Request-path operations on a single dose, guarded and audited."""

    def __init__(
        self,
        store: DoseStore,
        calculator: GracePeriodCalculator,
        config: DoseActionConfig,
        scorer: AdherenceScorer | None = None,
    ) -> None:
        self.store = store
        self.calculator = calculator
        self.config = config
        self.scorer = scorer or AdherenceScorer()
        self.logger = logger.bind(component="dose_event_state_machine")

    async def take(
        self,
        command_id: str,
        scheduled_datetime: datetime,
        actor_id: str,
        request: TakeRequest | None = None,
        now: datetime | None = None,
    ) -> TakeResult:
        """
        Record a dose as taken and score it.

        Raises:
            DuplicateSubmissionError: a matching take was recorded moments ago.
            InvalidTransitionError: the dose is already taken or skipped.
            NotFoundError: no dose exists for the command at that time.
        """
        now = now or datetime.now(UTC)
        request = request or TakeRequest()

        await self._check_duplicate_take(command_id, scheduled_datetime, now)
        dose = await self._require_dose(command_id, scheduled_datetime)
        self._require_status(dose, (DoseStatus.SCHEDULED, DoseStatus.MISSED), "take")

        medication = await self.store.get_medication(command_id)
        prescribed_dose = (
            medication.dosage_amount
            if medication is not None
            else (request.dose_details.prescribed_dose if request.dose_details else None) or ""
        )

        taken_at = request.taken_at or now
        minutes = minutes_from_scheduled(dose.scheduled_datetime, taken_at)
        timing = classify_timing(minutes)
        dose_type = classify_dose_type(request.dose_details, prescribed_dose)
        score = self.scorer.score(request.dose_details, prescribed_dose, minutes, request.circumstances)

        event = TakeEvent(
            id=new_event_id("take"),
            dose_id=dose.id,
            command_id=command_id,
            patient_id=dose.patient_id,
            scheduled_for=dose.scheduled_datetime,
            actual_timestamp=taken_at,
            recorded_at=now,
            correlation_id=new_correlation_id(),
            created_by=actor_id,
            payload=TakePayload(
                minutes_from_scheduled=minutes,
                timing_category=timing,
                dose_type=dose_type,
                prescribed_dose=prescribed_dose,
                dose_details=request.dose_details,
                circumstances=request.circumstances,
                notes=request.notes,
                score=score,
            ),
        )
        updated = dose.evolve(status=DoseStatus.TAKEN, taken_at=taken_at, skipped_at=None)
        await self.store.append_events([event], DoseWrite(dose=updated, expected_version=dose.version))

        self.logger.info(
            "dose_taken",
            dose_id=dose.id,
            event_id=event.id,
            actor_id=actor_id,
            timing_category=timing.value,
            minutes_from_scheduled=minutes,
            overall_score=round(score.overall_score, 1),
            late_after_missed=dose.status == DoseStatus.MISSED,
        )
        return TakeResult(
            event_id=event.id,
            dose_id=dose.id,
            adherence_score=round(score.overall_score),
            score=score,
            timing_category=timing,
            dose_type=dose_type,
            minutes_from_scheduled=minutes,
            undo_available_until=now + timedelta(seconds=self.config.undo_window_seconds),
        )

    async def undo(
        self,
        original_event_id: str,
        reason: str,
        actor_id: str,
        corrected_action: CorrectedAction | None = None,
        now: datetime | None = None,
    ) -> UndoResult:
        """
        Reverse a take recorded within the undo window.

        Raises:
            UndoWindowExpired: too late; carries ``expired_at`` and asks for a correction.
            ConflictError: the take was already undone.
            InvalidTransitionError: the original event is not a take, or the dose
                is no longer taken.
            NotFoundError: unknown event or dose.
        """
        now = now or datetime.now(UTC)
        self._require_reason(reason)

        original = await self._require_event(original_event_id)
        if not isinstance(original, TakeEvent):
            raise InvalidTransitionError(
                "Only take events can be undone",
                event_id=original_event_id,
                event_type=original.event_type,
            )

        expires_at = original.recorded_at.astimezone(UTC) + timedelta(
            seconds=self.config.undo_window_seconds
        )
        if now > expires_at:
            self.logger.info(
                "undo_window_expired",
                event_id=original_event_id,
                expired_at=expires_at.isoformat(),
                seconds_late=round((now - expires_at).total_seconds(), 1),
            )
            raise UndoWindowExpired(
                "Undo window has expired. Use a correction instead.",
                expired_at=expires_at,
                event_id=original_event_id,
            )

        previous_undos = await self.store.find_events(
            dose_id=original.dose_id, event_types=("undo",)
        )
        if any(e.payload.original_event_id == original.id for e in previous_undos):
            raise ConflictError("Take event has already been undone", event_id=original_event_id)

        dose = await self._require_dose_by_id(original.dose_id)
        # A correction may already have moved the dose off taken.
        self._require_status(dose, (DoseStatus.TAKEN,), "undo")
        impact = await self._estimate_impact(dose, now, -self.config.undo_adherence_penalty)

        common = self._event_fields(dose, actor_id, now, original.correlation_id)
        undo_event = UndoEvent(
            id=new_event_id("undo"),
            **common,
            payload=UndoPayload(
                original_event_id=original.id,
                reason=reason,
                corrected_action=corrected_action,
            ),
        )
        events: list[DoseEvent] = [undo_event]

        correction_event_id = None
        target = DoseStatus.SCHEDULED
        if corrected_action is not None:
            correction = CorrectionEvent(
                id=new_event_id("correction"),
                **common,
                payload=CorrectionPayload(
                    original_event_id=original.id,
                    corrected_action=corrected_action,
                    reason=reason,
                ),
            )
            events.append(correction)
            correction_event_id = correction.id
            target = corrected_action.to_status()

        updated = self._with_status(dose, target, now)
        await self.store.append_events(events, DoseWrite(dose=updated, expected_version=dose.version))

        self.logger.info(
            "dose_take_undone",
            dose_id=dose.id,
            original_event_id=original.id,
            undo_event_id=undo_event.id,
            actor_id=actor_id,
            dose_status=target.value,
            seconds_since_take=round((now - original.recorded_at).total_seconds(), 1),
        )
        return UndoResult(
            undo_event_id=undo_event.id,
            original_event_id=original.id,
            correction_event_id=correction_event_id,
            corrected_action=corrected_action,
            dose_status=target,
            adherence_impact=impact,
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
        """Append a compensating event and move the dose to ``corrected_action``."""
        now = now or datetime.now(UTC)
        self._require_reason(reason)

        original = await self._require_event(original_event_id)
        dose = await self._require_dose_by_id(original.dose_id)
        target = corrected_action.to_status()

        if dose.status != DoseStatus.TAKEN and target == DoseStatus.TAKEN:
            delta = self.config.undo_adherence_penalty
        elif dose.status == DoseStatus.TAKEN and target != DoseStatus.TAKEN:
            delta = -self.config.undo_adherence_penalty
        else:
            delta = 0.0
        impact = await self._estimate_impact(dose, now, delta)

        event = CorrectionEvent(
            id=new_event_id("correction"),
            **self._event_fields(dose, actor_id, now, original.correlation_id),
            payload=CorrectionPayload(
                original_event_id=original.id,
                corrected_action=corrected_action,
                reason=reason,
                corrected_data=corrected_data or {},
            ),
        )
        updated = self._with_status(dose, target, now)
        await self.store.append_events([event], DoseWrite(dose=updated, expected_version=dose.version))

        self.logger.info(
            "dose_event_corrected",
            dose_id=dose.id,
            original_event_id=original.id,
            correction_event_id=event.id,
            actor_id=actor_id,
            previous_status=dose.status.value,
            corrected_action=corrected_action.value,
        )
        return CorrectionResult(
            correction_event_id=event.id,
            original_event_id=original.id,
            corrected_action=corrected_action,
            dose_status=target,
            adherence_impact=impact,
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
        now = now or datetime.now(UTC)
        dose = await self._require_dose(command_id, scheduled_datetime)
        self._require_status(dose, (DoseStatus.SCHEDULED, DoseStatus.MISSED), "skip")

        event = SkipEvent(
            id=new_event_id("skip"),
            **self._event_fields(dose, actor_id, now, new_correlation_id()),
            payload=SkipPayload(reason=reason, notes=notes),
        )
        updated = dose.evolve(status=DoseStatus.SKIPPED, skipped_at=now)
        await self.store.append_events([event], DoseWrite(dose=updated, expected_version=dose.version))

        self.logger.info(
            "dose_skipped", dose_id=dose.id, event_id=event.id, actor_id=actor_id, reason=reason.value
        )
        return SkipResult(event_id=event.id, dose_id=dose.id, reason=reason)

    async def snooze(
        self,
        command_id: str,
        scheduled_datetime: datetime,
        actor_id: str,
        minutes: int,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> SnoozeResult:
        """
        Record intent to take the dose later.

        The dose keeps its status; re-materializing a follow-up dose at the new
        time belongs to the scheduler.
        """
        now = now or datetime.now(UTC)
        low, high = self.config.snooze_min_minutes, self.config.snooze_max_minutes
        if not low <= minutes <= high:
            raise ValidationError(
                f"Snooze minutes must be between {low} and {high}", minutes=minutes
            )

        dose = await self._require_dose(command_id, scheduled_datetime)
        self._require_status(dose, (DoseStatus.SCHEDULED,), "snooze")

        new_time = dose.scheduled_datetime.astimezone(UTC) + timedelta(minutes=minutes)
        event = SnoozeEvent(
            id=new_event_id("snooze"),
            **self._event_fields(dose, actor_id, now, new_correlation_id()),
            payload=SnoozePayload(snooze_minutes=minutes, new_scheduled_time=new_time, reason=reason),
        )
        updated = dose.evolve(snoozed_until=new_time)
        await self.store.append_events([event], DoseWrite(dose=updated, expected_version=dose.version))

        self.logger.info(
            "dose_snoozed",
            dose_id=dose.id,
            event_id=event.id,
            actor_id=actor_id,
            snooze_minutes=minutes,
            new_scheduled_time=new_time.isoformat(),
        )
        return SnoozeResult(
            event_id=event.id, dose_id=dose.id, snooze_minutes=minutes, new_scheduled_time=new_time
        )

    async def mark_missed(
        self,
        dose_id: str,
        actor_id: str,
        reason: MissedReason = MissedReason.MANUAL_MARK,
        now: datetime | None = None,
    ) -> MarkMissedResult:
        """Mark a scheduled dose missed by hand, keeping the grace audit trail."""
        now = now or datetime.now(UTC)
        if reason not in MANUAL_MISSED_REASONS:
            raise ValidationError(
                "Manual missed marking requires reason manual_mark or family_report",
                reason=reason.value,
            )

        dose = await self._require_dose_by_id(dose_id)
        self._require_status(dose, (DoseStatus.SCHEDULED,), "mark_missed")

        calculation = await self.calculator.resolve(dose)
        updated = dose.evolve(
            status=DoseStatus.MISSED,
            missed_at=now,
            missed_reason=reason,
            grace=calculation.to_annotation(),
        )
        await self.store.append_events([], DoseWrite(dose=updated, expected_version=dose.version))

        self.logger.info(
            "dose_marked_missed",
            dose_id=dose.id,
            actor_id=actor_id,
            reason=reason.value,
            grace_period_end=calculation.end.isoformat(),
            within_grace=now <= calculation.end,
        )
        return MarkMissedResult(
            dose_id=dose.id,
            missed_at=now,
            missed_reason=reason,
            grace_period_minutes=calculation.minutes,
            grace_period_end=calculation.end,
            applied_rules=calculation.applied_rules,
        )

    async def undo_history(self, command_id: str, limit: int = 10) -> list[UndoHistoryEntry]:
        """Undo and correction events for a medication, newest first."""
        events = await self.store.find_events(
            command_id=command_id, event_types=("undo", "correction"), limit=limit
        )
        entries = []
        for event in events:
            original = await self.store.get_event(event.payload.original_event_id)
            entries.append(
                UndoHistoryEntry(
                    event_id=event.id,
                    event_type=event.event_type,
                    original_event_id=event.payload.original_event_id,
                    reason=event.payload.reason,
                    corrected_action=event.payload.corrected_action,
                    recorded_at=event.recorded_at,
                    seconds_since_original=(
                        (event.recorded_at - original.recorded_at).total_seconds()
                        if original is not None
                        else None
                    ),
                )
            )
        return entries

    async def _check_duplicate_take(
        self, command_id: str, scheduled_datetime: datetime, now: datetime
    ) -> None:
        # Best-effort existence check; two takes racing within milliseconds can both pass.
        since = now - timedelta(seconds=self.config.duplicate_window_seconds)
        recent = await self.store.find_events(
            command_id=command_id, event_types=("take", "undo"), recorded_since=since
        )
        undone = {e.payload.original_event_id for e in recent if isinstance(e, UndoEvent)}
        match = timedelta(seconds=self.config.duplicate_match_seconds)
        requested = scheduled_datetime.astimezone(UTC)

        for event in recent:
            if not isinstance(event, TakeEvent) or event.id in undone:
                continue
            if abs(event.scheduled_for.astimezone(UTC) - requested) <= match:
                self.logger.warning(
                    "duplicate_take_rejected",
                    command_id=command_id,
                    existing_event_id=event.id,
                    existing_recorded_at=event.recorded_at.isoformat(),
                )
                raise DuplicateSubmissionError(
                    "Medication was already marked as taken recently",
                    existing_event_id=event.id,
                    recorded_at=event.recorded_at,
                )

    async def _estimate_impact(
        self, dose: ScheduledDose, now: datetime, delta: float
    ) -> AdherenceImpact:
        """Heuristic: recent adherence rate shifted by a fixed penalty. Not a recomputation."""
        try:
            history = await self.store.recent_doses(
                dose.command_id, dose.patient_id, before=now, limit=IMPACT_HISTORY_DOSES
            )
        except Exception as e:
            self.logger.warning("adherence_impact_unavailable", dose_id=dose.id, error=str(e))
            return AdherenceImpact(
                previous_score=0, new_score=0, streak_impact="Unable to calculate impact"
            )

        previous = adherence_rate(history)
        new = max(0.0, min(100.0, previous + delta))
        if delta < 0:
            streak = "Streak may be affected by undo action"
        elif delta > 0:
            streak = "Streak may improve after correction"
        else:
            streak = "No streak change expected"
        return AdherenceImpact(
            previous_score=round(previous), new_score=round(new), streak_impact=streak
        )

    @staticmethod
    def _with_status(dose: ScheduledDose, status: DoseStatus, now: datetime) -> ScheduledDose:
        if status == DoseStatus.SCHEDULED:
            return dose.evolve(
                status=status, taken_at=None, skipped_at=None, missed_at=None, missed_reason=None
            )
        if status == DoseStatus.TAKEN:
            return dose.evolve(status=status, taken_at=dose.taken_at or now, skipped_at=None)
        if status == DoseStatus.MISSED:
            return dose.evolve(
                status=status,
                missed_at=now,
                missed_reason=MissedReason.CORRECTION,
                taken_at=None,
                skipped_at=None,
            )
        return dose.evolve(status=status, skipped_at=now, taken_at=None)

    @staticmethod
    def _event_fields(
        dose: ScheduledDose, actor_id: str, now: datetime, correlation_id: str
    ) -> dict[str, Any]:
        return {
            "dose_id": dose.id,
            "command_id": dose.command_id,
            "patient_id": dose.patient_id,
            "scheduled_for": dose.scheduled_datetime,
            "actual_timestamp": now,
            "recorded_at": now,
            "correlation_id": correlation_id,
            "created_by": actor_id,
        }

    @staticmethod
    def _require_reason(reason: str) -> None:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required")

    @staticmethod
    def _require_status(
        dose: ScheduledDose, allowed: tuple[DoseStatus, ...], operation: str
    ) -> None:
        if dose.status not in allowed:
            raise InvalidTransitionError(
                f"Cannot {operation} a dose that is {dose.status.value}",
                dose_id=dose.id,
                current_status=dose.status.value,
                operation=operation,
            )

    async def _require_event(self, event_id: str) -> DoseEvent:
        event = await self.store.get_event(event_id)
        if event is None:
            raise NotFoundError("Dose event not found", event_id=event_id)
        return event

    async def _require_dose(self, command_id: str, scheduled_datetime: datetime) -> ScheduledDose:
        dose = await self.store.find_dose(command_id, scheduled_datetime)
        if dose is None:
            raise NotFoundError(
                "No scheduled dose for medication at that time",
                command_id=command_id,
                scheduled_datetime=scheduled_datetime,
            )
        return dose

    async def _require_dose_by_id(self, dose_id: str) -> ScheduledDose:
        dose = await self.store.get_dose(dose_id)
        if dose is None:
            raise NotFoundError("Scheduled dose not found", dose_id=dose_id)
        return dose
