"""
Grace-period calculation with a full audit trail.

Rule order:
1. Time-slot default for the dose's local scheduled time
2. Per-medication override replaces the base
3. Medication-type rule tightens only (min)
4. Weekend, holiday and sick-day multipliers compose multiplicatively
5. Round half up, add to the scheduled time

Every step is recorded so caregivers can see why a dose was, or was not,
marked missed. The calculation never raises: configuration problems fall back
to system defaults and are logged.
"""

from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

import structlog
from pydantic import BaseModel, ConfigDict, Field

from doseguard.domain.grace_config import PatientGraceConfig, default_grace_config
from doseguard.domain.models import (
    GraceAnnotation,
    MedicationCommand,
    MedicationType,
    ScheduledDose,
)
from doseguard.errors import ConfigurationError
from doseguard.services.classifiers import MedicationTypeClassifier, TimeSlotClassifier
from doseguard.services.holiday_calendar import HolidayCalendar
from doseguard.services.store import DoseStore

logger = structlog.get_logger(__name__)


class GraceRuleDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_name: str
    rule_type: str
    value: float
    reason: str


class GracePeriodCalculation(BaseModel):
    """Outcome of one calculation, including why each minute is there."""

    model_config = ConfigDict(frozen=True)

    minutes: int = Field(ge=0)
    end: datetime
    applied_rules: tuple[str, ...]
    rule_details: tuple[GraceRuleDetail, ...]
    time_slot: str
    medication_type: MedicationType
    is_weekend: bool
    is_holiday: bool
    multiplier: float
    used_default_config: bool = False

    def to_annotation(self) -> GraceAnnotation:
        return GraceAnnotation(
            grace_period_minutes=self.minutes,
            grace_period_end=self.end,
            applied_rules=self.applied_rules,
        )


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _hour_based_minutes(hour: int) -> int:
    if 6 <= hour < 11:
        return 30
    if 11 <= hour < 17:
        return 45
    if 17 <= hour < 21:
        return 30
    return 60


class GracePeriodCalculator:
    """Combines slot, medication and calendar rules into a lateness window."""

    def __init__(
        self,
        holiday_calendar: HolidayCalendar,
        slot_classifier: TimeSlotClassifier | None = None,
        type_classifier: MedicationTypeClassifier | None = None,
        store: DoseStore | None = None,
    ) -> None:
        self.holiday_calendar = holiday_calendar
        self.slot_classifier = slot_classifier or TimeSlotClassifier()
        self.type_classifier = type_classifier or MedicationTypeClassifier()
        self.store = store
        self.logger = logger.bind(component="grace_period_calculator")

    def calculate(
        self,
        dose: ScheduledDose,
        medication: MedicationCommand | None,
        config: PatientGraceConfig,
        *,
        sick_day: bool = False,
        used_default_config: bool = False,
    ) -> GracePeriodCalculation:
        """Pure calculation for a dose under a given configuration."""
        local_scheduled = dose.scheduled_datetime.astimezone(config.tz)

        # Step 1: time-slot default
        slot = self.slot_classifier.classify(local_scheduled, config)
        minutes = config.default_grace_periods[slot]
        applied_rules = [f"default_{slot}"]
        details = [
            GraceRuleDetail(
                rule_name=f"Default {slot}",
                rule_type="time_slot_default",
                value=minutes,
                reason=f"Default grace period for {slot} medications",
            )
        ]

        # Step 2: per-medication override replaces the base
        override = config.override_for(dose.command_id)
        if override is not None:
            minutes = override.grace_period_minutes
            applied_rules.append("medication_override")
            details.append(
                GraceRuleDetail(
                    rule_name="Medication Override",
                    rule_type="medication_specific",
                    value=override.grace_period_minutes,
                    reason=override.reason,
                )
            )
        elif medication is not None and medication.grace_period_override_minutes is not None:
            minutes = medication.grace_period_override_minutes
            applied_rules.append("medication_override")
            details.append(
                GraceRuleDetail(
                    rule_name="Medication Override",
                    rule_type="medication_specific",
                    value=minutes,
                    reason="Grace period set on the prescription",
                )
            )

        # Step 3: type rule only ever tightens
        medication_type = (
            self.type_classifier.classify(medication)
            if medication is not None
            else MedicationType.STANDARD
        )
        type_rule = config.type_rule_for(medication_type)
        if type_rule is not None:
            minutes = min(minutes, type_rule.grace_period_minutes)
            applied_rules.append(f"type_{medication_type.value}")
            details.append(
                GraceRuleDetail(
                    rule_name=f"{medication_type.value} Medication",
                    rule_type="medication_type",
                    value=type_rule.grace_period_minutes,
                    reason=f"Grace period for {medication_type.value} medications",
                )
            )

        # Step 4: circumstance multipliers
        day = local_scheduled.date()
        is_weekend = self.holiday_calendar.is_weekend(day)
        is_holiday = self.holiday_calendar.is_holiday(day)
        multiplier = 1.0

        if is_weekend and config.weekend_multiplier != 1.0:
            multiplier *= config.weekend_multiplier
            applied_rules.append("weekend_multiplier")
            details.append(
                GraceRuleDetail(
                    rule_name="Weekend Extension",
                    rule_type="circumstance_multiplier",
                    value=config.weekend_multiplier,
                    reason="Extended grace period for weekends",
                )
            )

        if is_holiday and config.holiday_multiplier != 1.0:
            multiplier *= config.holiday_multiplier
            applied_rules.append("holiday_multiplier")
            details.append(
                GraceRuleDetail(
                    rule_name="Holiday Extension",
                    rule_type="circumstance_multiplier",
                    value=config.holiday_multiplier,
                    reason=(
                        f"Extended grace period for "
                        f"{self.holiday_calendar.holiday_name(day) or 'holidays'}"
                    ),
                )
            )

        if sick_day and config.sick_day_multiplier != 1.0:
            multiplier *= config.sick_day_multiplier
            applied_rules.append("sick_day_multiplier")
            details.append(
                GraceRuleDetail(
                    rule_name="Sick Day Extension",
                    rule_type="circumstance_multiplier",
                    value=config.sick_day_multiplier,
                    reason="Extended grace period while unwell",
                )
            )

        # Step 5: final minutes and end
        final_minutes = max(0, round_half_up(minutes * multiplier))
        end = dose.scheduled_datetime.astimezone(UTC) + timedelta(minutes=final_minutes)

        return GracePeriodCalculation(
            minutes=final_minutes,
            end=end,
            applied_rules=tuple(applied_rules),
            rule_details=tuple(details),
            time_slot=slot,
            medication_type=medication_type,
            is_weekend=is_weekend,
            is_holiday=is_holiday,
            multiplier=multiplier,
            used_default_config=used_default_config,
        )

    async def load_config(self, patient_id: str) -> tuple[PatientGraceConfig, bool]:
        """Patient config, or system defaults when missing or unreadable."""
        if self.store is None:
            return default_grace_config(patient_id), True
        try:
            config = await self.store.get_grace_config(patient_id)
        except Exception as e:
            self.logger.warning(
                "grace_config_load_failed_using_defaults",
                patient_id=patient_id,
                error=str(e),
                error_kind=getattr(e, "kind", type(e).__name__),
            )
            return default_grace_config(patient_id), True
        if config is None:
            self.logger.info("grace_config_missing_using_defaults", patient_id=patient_id)
            return default_grace_config(patient_id), True
        return config, False

    async def load_medication(self, command_id: str) -> MedicationCommand | None:
        if self.store is None:
            return None
        try:
            return await self.store.get_medication(command_id)
        except Exception as e:
            self.logger.warning(
                "medication_load_failed_using_standard_type",
                command_id=command_id,
                error=str(e),
            )
            return None

    async def resolve(
        self,
        dose: ScheduledDose,
        *,
        medication: MedicationCommand | None = None,
        config: tuple[PatientGraceConfig, bool] | None = None,
        sick_day: bool = False,
    ) -> GracePeriodCalculation:
        """
        Load inputs from the store and calculate, degrading instead of failing.

        Callers processing many doses pass ``medication`` and ``config`` (as
        returned by ``load_config``) to avoid reloading them per dose.
        """
        config, used_default = config or await self.load_config(dose.patient_id)
        if medication is None:
            medication = await self.load_medication(dose.command_id)

        try:
            return self.calculate(
                dose,
                medication,
                config,
                sick_day=sick_day,
                used_default_config=used_default,
            )
        except Exception as e:
            self.logger.warning(
                "grace_calculation_failed_using_defaults",
                dose_id=dose.id,
                patient_id=dose.patient_id,
                error=str(e),
                error_kind=ConfigurationError.kind,
            )

        try:
            return self.calculate(
                dose,
                medication,
                default_grace_config(dose.patient_id),
                sick_day=sick_day,
                used_default_config=True,
            )
        except Exception as e:
            self.logger.error("grace_default_calculation_failed", dose_id=dose.id, error=str(e))
            return self._hour_based_fallback(dose)

    def _hour_based_fallback(self, dose: ScheduledDose) -> GracePeriodCalculation:
        minutes = _hour_based_minutes(dose.scheduled_datetime.hour)
        return GracePeriodCalculation(
            minutes=minutes,
            end=dose.scheduled_datetime.astimezone(UTC) + timedelta(minutes=minutes),
            applied_rules=("system_fallback",),
            rule_details=(
                GraceRuleDetail(
                    rule_name="System Fallback",
                    rule_type="system_default",
                    value=minutes,
                    reason="Hour-of-day default used because rule evaluation failed",
                ),
            ),
            time_slot="unknown",
            medication_type=MedicationType.STANDARD,
            is_weekend=False,
            is_holiday=False,
            multiplier=1.0,
            used_default_config=True,
        )
