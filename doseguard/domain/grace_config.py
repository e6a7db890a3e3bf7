"""
Per-patient grace-period configuration.

Validation and normalization are separate operations: ``validate_grace_config``
only reports problems in a raw mapping, ``normalize_grace_config`` explicitly
repairs what can be repaired (clamping, filling missing slots) and builds the
model. Neither silently rewrites input while also reporting it as invalid.
"""

import re
from collections.abc import Mapping
from datetime import time
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from doseguard.domain.models import MedicationType
from doseguard.errors import InvalidTimeFormat

MIN_GRACE_MINUTES = 0
MAX_GRACE_MINUTES = 480
MIN_MULTIPLIER = 0.1
MAX_MULTIPLIER = 5.0

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_hhmm(value: str) -> time:
    """Parse a strict ``HH:MM`` 24-hour string."""
    match = _HHMM.match(value) if isinstance(value, str) else None
    if match is None:
        raise InvalidTimeFormat(f"Invalid time {value!r}: expected HH:MM", value=value)
    return time(int(match.group(1)), int(match.group(2)))


class TimeSlotWindow(BaseModel):
    """Inclusive HH:MM range. ``start > end`` means the range crosses midnight."""

    model_config = ConfigDict(frozen=True)

    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def check_format(cls, v: str) -> str:
        parse_hhmm(v)
        return v

    @property
    def start_time(self) -> time:
        return parse_hhmm(self.start)

    @property
    def end_time(self) -> time:
        return parse_hhmm(self.end)

    @property
    def is_overnight(self) -> bool:
        return self.start_time > self.end_time

    def contains(self, moment: time) -> bool:
        t = moment.replace(second=0, microsecond=0)
        if self.is_overnight:
            return t >= self.start_time or t <= self.end_time
        return self.start_time <= t <= self.end_time


class MedicationOverride(BaseModel):
    model_config = ConfigDict(frozen=True)

    medication_id: str
    grace_period_minutes: int = Field(ge=MIN_GRACE_MINUTES, le=MAX_GRACE_MINUTES)
    reason: str = "Medication-specific grace period"


class MedicationTypeRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    medication_type: MedicationType
    grace_period_minutes: int = Field(ge=MIN_GRACE_MINUTES, le=MAX_GRACE_MINUTES)


DEFAULT_TIME_SLOTS: dict[str, dict[str, str]] = {
    "morning": {"start": "06:00", "end": "10:00"},
    "noon": {"start": "11:00", "end": "14:00"},
    "evening": {"start": "17:00", "end": "20:00"},
    "bedtime": {"start": "21:00", "end": "23:59"},
}

DEFAULT_GRACE_PERIODS: dict[str, int] = {
    "morning": 30,
    "noon": 45,
    "evening": 30,
    "bedtime": 60,
}

DEFAULT_TYPE_RULES: dict[MedicationType, int] = {
    MedicationType.CRITICAL: 15,
    MedicationType.STANDARD: 30,
    MedicationType.VITAMIN: 120,
    MedicationType.PRN: 0,
}

FALLBACK_SLOT = "morning"


class PatientGraceConfig(BaseModel):
    """Grace-period rules owned by a patient or caregiver."""

    model_config = ConfigDict(frozen=True)

    patient_id: str | None = None
    default_grace_periods: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_GRACE_PERIODS)
    )
    # Insertion order is the classification order.
    time_slots: dict[str, TimeSlotWindow] = Field(
        default_factory=lambda: {
            name: TimeSlotWindow(**window) for name, window in DEFAULT_TIME_SLOTS.items()
        }
    )
    fallback_slot: str = FALLBACK_SLOT
    medication_overrides: tuple[MedicationOverride, ...] = ()
    medication_type_rules: tuple[MedicationTypeRule, ...] = Field(
        default_factory=lambda: tuple(
            MedicationTypeRule(medication_type=t, grace_period_minutes=m)
            for t, m in DEFAULT_TYPE_RULES.items()
        )
    )
    weekend_multiplier: float = Field(default=1.5, ge=MIN_MULTIPLIER, le=MAX_MULTIPLIER)
    holiday_multiplier: float = Field(default=2.0, ge=MIN_MULTIPLIER, le=MAX_MULTIPLIER)
    sick_day_multiplier: float = Field(default=3.0, ge=MIN_MULTIPLIER, le=MAX_MULTIPLIER)
    timezone: str = "UTC"

    @field_validator("default_grace_periods")
    @classmethod
    def check_minutes(cls, v: dict[str, int]) -> dict[str, int]:
        for slot, minutes in v.items():
            if not MIN_GRACE_MINUTES <= minutes <= MAX_GRACE_MINUTES:
                raise ValueError(
                    f"Invalid grace period for {slot}: must be between "
                    f"{MIN_GRACE_MINUTES} and {MAX_GRACE_MINUTES} minutes"
                )
        return v

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone {v!r}") from e
        return v

    @model_validator(mode="after")
    def every_slot_has_grace(self) -> "PatientGraceConfig":
        if not self.time_slots:
            raise ValueError("At least one time slot is required")
        missing = [s for s in self.time_slots if s not in self.default_grace_periods]
        if missing:
            raise ValueError(f"Missing default grace period for slots: {', '.join(missing)}")
        if self.fallback_slot not in self.time_slots:
            raise ValueError(f"Fallback slot {self.fallback_slot!r} is not a configured slot")
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def override_for(self, medication_id: str) -> MedicationOverride | None:
        return next(
            (o for o in self.medication_overrides if o.medication_id == medication_id), None
        )

    def type_rule_for(self, medication_type: MedicationType) -> MedicationTypeRule | None:
        return next(
            (r for r in self.medication_type_rules if r.medication_type == medication_type), None
        )


def default_grace_config(patient_id: str | None = None) -> PatientGraceConfig:
    """System defaults used when a patient has no stored configuration."""
    return PatientGraceConfig(patient_id=patient_id)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def validate_grace_config(raw: Mapping[str, Any]) -> list[str]:
    """Return human-readable problems with a raw configuration. Never mutates it."""
    errors: list[str] = []

    slots = raw.get("time_slots") or DEFAULT_TIME_SLOTS
    for name, window in slots.items():
        for bound in ("start", "end"):
            value = window.get(bound) if isinstance(window, Mapping) else None
            try:
                parse_hhmm(value)  # type: ignore[arg-type]
            except InvalidTimeFormat:
                errors.append(f"Invalid {bound} time for slot {name}: {value!r}")

    grace = raw.get("default_grace_periods")
    if not grace:
        errors.append("Default grace periods are required")
    else:
        for slot in slots:
            value = grace.get(slot)
            if not _is_number(value) or not MIN_GRACE_MINUTES <= value <= MAX_GRACE_MINUTES:
                errors.append(
                    f"Invalid grace period for {slot}: must be between "
                    f"{MIN_GRACE_MINUTES} and {MAX_GRACE_MINUTES} minutes"
                )

    known_types = {t.value for t in MedicationType}
    for index, rule in enumerate(raw.get("medication_type_rules") or [], start=1):
        if rule.get("medication_type") not in known_types:
            errors.append(f"Invalid medication type in rule {index}")
        minutes = rule.get("grace_period_minutes")
        if not _is_number(minutes) or not MIN_GRACE_MINUTES <= minutes <= MAX_GRACE_MINUTES:
            errors.append(f"Invalid grace period minutes in medication type rule {index}")

    for key, label in (
        ("weekend_multiplier", "Weekend"),
        ("holiday_multiplier", "Holiday"),
        ("sick_day_multiplier", "Sick day"),
    ):
        if key in raw:
            value = raw[key]
            if not _is_number(value) or not MIN_MULTIPLIER <= value <= MAX_MULTIPLIER:
                errors.append(
                    f"{label} multiplier must be between {MIN_MULTIPLIER} and {MAX_MULTIPLIER}"
                )

    fallback = raw.get("fallback_slot")
    if fallback is not None and fallback not in slots:
        errors.append(f"Fallback slot {fallback!r} is not a configured slot")

    return errors


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def normalize_grace_config(raw: Mapping[str, Any]) -> PatientGraceConfig:
    """
    Build a config from a raw mapping, repairing recoverable problems.

    Minutes are clamped to [0, 480], multipliers to [0.1, 5.0], slots without a
    grace value get the system default, and unknown type rules are dropped.
    Malformed time strings cannot be repaired and raise ``InvalidTimeFormat``.
    """
    slots_raw = raw.get("time_slots") or DEFAULT_TIME_SLOTS
    # Parse before building so the caller sees InvalidTimeFormat, not a wrapped error.
    for window in slots_raw.values():
        parse_hhmm(str(window.get("start", "")).strip())
        parse_hhmm(str(window.get("end", "")).strip())
    time_slots = {
        name: TimeSlotWindow(start=str(w["start"]).strip(), end=str(w["end"]).strip())
        for name, w in slots_raw.items()
    }

    grace_raw = raw.get("default_grace_periods") or {}
    default_grace: dict[str, int] = {}
    for slot in time_slots:
        value = grace_raw.get(slot)
        if not _is_number(value):
            value = DEFAULT_GRACE_PERIODS.get(slot, DEFAULT_GRACE_PERIODS[FALLBACK_SLOT])
        default_grace[slot] = int(_clamp(round(value), MIN_GRACE_MINUTES, MAX_GRACE_MINUTES))

    known_types = {t.value for t in MedicationType}
    type_rules = tuple(
        MedicationTypeRule(
            medication_type=MedicationType(rule["medication_type"]),
            grace_period_minutes=int(
                _clamp(round(rule["grace_period_minutes"]), MIN_GRACE_MINUTES, MAX_GRACE_MINUTES)
            ),
        )
        for rule in raw.get("medication_type_rules", [])
        if rule.get("medication_type") in known_types
        and _is_number(rule.get("grace_period_minutes"))
    )

    overrides = tuple(
        MedicationOverride(
            medication_id=o["medication_id"],
            grace_period_minutes=int(
                _clamp(round(o["grace_period_minutes"]), MIN_GRACE_MINUTES, MAX_GRACE_MINUTES)
            ),
            reason=o.get("reason") or "Medication-specific grace period",
        )
        for o in raw.get("medication_overrides", [])
        if _is_number(o.get("grace_period_minutes"))
    )

    def multiplier(key: str, default: float) -> float:
        value = raw.get(key, default)
        if not _is_number(value):
            return default
        return _clamp(float(value), MIN_MULTIPLIER, MAX_MULTIPLIER)

    fallback = raw.get("fallback_slot")
    if fallback not in time_slots:
        fallback = FALLBACK_SLOT if FALLBACK_SLOT in time_slots else next(iter(time_slots))

    data: dict[str, Any] = {
        "patient_id": raw.get("patient_id"),
        "default_grace_periods": default_grace,
        "time_slots": time_slots,
        "fallback_slot": fallback,
        "medication_overrides": overrides,
        "weekend_multiplier": multiplier("weekend_multiplier", 1.5),
        "holiday_multiplier": multiplier("holiday_multiplier", 2.0),
        "sick_day_multiplier": multiplier("sick_day_multiplier", 3.0),
        "timezone": raw.get("timezone") or "UTC",
    }
    if "medication_type_rules" in raw:
        data["medication_type_rules"] = type_rules
    return PatientGraceConfig(**data)
