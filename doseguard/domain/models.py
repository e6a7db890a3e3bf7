"""
Domain models for scheduled doses, medications and adherence.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation; records are immutable and state changes
produce new copies with a bumped version.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DoseStatus(str, Enum):
    SCHEDULED = "scheduled"
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"


class MedicationType(str, Enum):
    """Medication classes that drive grace-period tightening."""

    CRITICAL = "critical"
    STANDARD = "standard"
    VITAMIN = "vitamin"
    PRN = "prn"  # as-needed


class TimingCategory(str, Enum):
    EARLY = "early"
    ON_TIME = "on_time"
    LATE = "late"
    VERY_LATE = "very_late"


class DoseType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    ADJUSTED = "adjusted"


class CorrectedAction(str, Enum):
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"

    def to_status(self) -> DoseStatus:
        return DoseStatus(self.value)


class SkipReason(str, Enum):
    FORGOT = "forgot"
    FELT_SICK = "felt_sick"
    RAN_OUT = "ran_out"
    SIDE_EFFECTS = "side_effects"
    OTHER = "other"


class MissedReason(str, Enum):
    AUTOMATIC_DETECTION = "automatic_detection"
    MANUAL_MARK = "manual_mark"
    FAMILY_REPORT = "family_report"
    CORRECTION = "correction"


class Severity(str, Enum):
    """Family notification severity."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class MedicationCommand(BaseModel):
    """Standing prescription that scheduled doses are generated from. Read-only here."""

    model_config = ConfigDict(frozen=True)

    id: str
    patient_id: str
    name: str = Field(min_length=1)
    generic_name: str | None = None
    dosage_amount: str = Field(default="", description="Prescribed amount, e.g. '10 mg'")
    frequency: str = Field(default="daily")
    is_prn: bool = Field(default=False, description="Taken as needed")
    grace_period_override_minutes: int | None = Field(default=None, ge=0, le=480)


class GraceAnnotation(BaseModel):
    """Persisted result of the last grace-period calculation for a dose."""

    model_config = ConfigDict(frozen=True)

    grace_period_minutes: int = Field(ge=0)
    grace_period_end: datetime
    applied_rules: tuple[str, ...] = ()

    def minutes_remaining(self, now: datetime) -> float:
        remaining = self.grace_period_end.astimezone(UTC) - now.astimezone(UTC)
        return max(0.0, remaining.total_seconds() / 60)


class ScheduledDose(BaseModel):
    """One concrete instance of a medication due at a specific time."""

    model_config = ConfigDict(frozen=True)

    id: str
    command_id: str
    patient_id: str
    scheduled_datetime: datetime
    status: DoseStatus = DoseStatus.SCHEDULED
    medication_name: str | None = None

    grace: GraceAnnotation | None = None

    taken_at: datetime | None = None
    missed_at: datetime | None = None
    missed_reason: MissedReason | None = None
    skipped_at: datetime | None = None
    snoozed_until: datetime | None = None

    version: int = Field(default=1, ge=1)

    @field_validator("scheduled_datetime")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("scheduled_datetime must be timezone-aware")
        return v

    @model_validator(mode="after")
    def grace_end_not_before_schedule(self) -> "ScheduledDose":
        if self.grace is not None and self.grace.grace_period_end < self.scheduled_datetime:
            raise ValueError("grace_period_end must not precede scheduled_datetime")
        return self

    def evolve(self, **changes: Any) -> "ScheduledDose":
        """Return a copy with ``changes`` applied and the version bumped."""
        return self.model_copy(update={**changes, "version": self.version + 1})


class DoseDetails(BaseModel):
    """What the patient actually took, when it differs from the prescription."""

    model_config = ConfigDict(frozen=True)

    actual_dose: str | None = None
    prescribed_dose: str | None = None
    adjustment_reason: str | None = None


class Circumstances(BaseModel):
    """Context reported with a take."""

    model_config = ConfigDict(frozen=True)

    with_food: bool | None = None
    should_take_with_food: bool = False
    symptoms: tuple[str, ...] = ()
    side_effects: tuple[str, ...] = ()
    location: str | None = None
    assisted_by: str | None = None


class AdherenceScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    dose_accuracy: float = Field(ge=0.0, le=100.0)
    timing_accuracy: float = Field(ge=0.0, le=100.0)
    circumstance_compliance: float = Field(ge=0.0, le=100.0)
    overall_score: float = Field(ge=0.0, le=100.0)


class AdherenceImpact(BaseModel):
    """Approximate effect of an undo or correction on the adherence rate."""

    model_config = ConfigDict(frozen=True)

    previous_score: int
    new_score: int
    streak_impact: str
    is_estimate: bool = True


class NotificationRule(BaseModel):
    """Family member's missed-dose alerting preferences for one patient."""

    model_config = ConfigDict(frozen=True)

    id: str
    patient_id: str
    family_member_id: str
    is_active: bool = True
    immediate_notification: bool = False
    consecutive_threshold: int | None = Field(default=None, ge=1)
    critical_medications_only: bool = False
    methods: tuple[str, ...] = ("email",)


class MissedDoseSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    dose_id: str
    command_id: str
    medication_name: str
    medication_type: MedicationType
    scheduled_datetime: datetime
    grace_period_end: datetime
    applied_rules: tuple[str, ...] = ()


class FamilyNotification(BaseModel):
    """Queued notification record. Delivery belongs to an external worker."""

    model_config = ConfigDict(frozen=True)

    id: str
    dedup_key: str
    patient_id: str
    family_member_id: str
    rule_id: str
    triggering_rule: str
    missed_dose_summaries: tuple[MissedDoseSummary, ...]
    severity: Severity
    method: str
    status: str = "pending"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
