"""
Adherence scoring for dose takes.

All functions are pure: the take operation computes a score at action time
and persists it with the event, so reads never need the original "now".
"""

import math
import re
from collections.abc import Iterable
from datetime import UTC, datetime

from doseguard.domain.models import (
    AdherenceScore,
    Circumstances,
    DoseDetails,
    DoseStatus,
    DoseType,
    ScheduledDose,
    TimingCategory,
)

_LEADING_NUMBER = re.compile(r"(\d+(?:\.\d+)?)")

UNPARSEABLE_DOSE_ACCURACY = 90.0
FOOD_PENALTY = 20.0
SYMPTOM_PENALTY = 10.0
ON_TIME_MINUTES = 30
LATE_MINUTES = 120


def minutes_from_scheduled(scheduled: datetime, actual: datetime) -> int:
    """Whole minutes between schedule and action, rounded toward earlier."""
    elapsed = actual.astimezone(UTC) - scheduled.astimezone(UTC)
    return math.floor(elapsed.total_seconds() / 60)


def classify_timing(minutes: int) -> TimingCategory:
    if minutes < -ON_TIME_MINUTES:
        return TimingCategory.EARLY
    if minutes <= ON_TIME_MINUTES:
        return TimingCategory.ON_TIME
    if minutes <= LATE_MINUTES:
        return TimingCategory.LATE
    return TimingCategory.VERY_LATE


def classify_dose_type(details: DoseDetails | None, prescribed_dose: str) -> DoseType:
    if details is None:
        return DoseType.FULL
    if details.adjustment_reason:
        return DoseType.ADJUSTED
    expected = details.prescribed_dose or prescribed_dose
    if details.actual_dose is not None and details.actual_dose != expected:
        return DoseType.PARTIAL
    return DoseType.FULL


def dose_accuracy(details: DoseDetails | None, prescribed_dose: str) -> float:
    if details is None or not details.actual_dose:
        return 100.0

    expected = details.prescribed_dose or prescribed_dose
    if details.actual_dose == expected:
        return 100.0

    prescribed_match = _LEADING_NUMBER.search(expected or "")
    actual_match = _LEADING_NUMBER.search(details.actual_dose)
    if prescribed_match is None or actual_match is None:
        return UNPARSEABLE_DOSE_ACCURACY

    prescribed = float(prescribed_match.group(1))
    if prescribed == 0:
        return UNPARSEABLE_DOSE_ACCURACY
    return min(100.0, float(actual_match.group(1)) / prescribed * 100)


def timing_accuracy(minutes: int | float) -> float:
    offset = abs(minutes)
    if offset <= 15:
        return 100.0
    if offset <= 30:
        return 90.0
    if offset <= 60:
        return 75.0
    if offset <= 120:
        return 50.0
    return 25.0


def circumstance_compliance(circumstances: Circumstances | None) -> float:
    if circumstances is None:
        return 100.0

    score = 100.0
    if circumstances.with_food is False and circumstances.should_take_with_food:
        score -= FOOD_PENALTY
    if circumstances.symptoms:
        score -= SYMPTOM_PENALTY
    return max(0.0, score)


def adherence_rate(doses: Iterable[ScheduledDose]) -> float:
    """Percentage of resolved doses that were taken. 0 when nothing resolved yet."""
    resolved = [d for d in doses if d.status != DoseStatus.SCHEDULED]
    if not resolved:
        return 0.0
    taken = sum(1 for d in resolved if d.status == DoseStatus.TAKEN)
    return taken / len(resolved) * 100


class AdherenceScorer:
    """Combines dose, timing and circumstance components into one score."""

    def score(
        self,
        dose_details: DoseDetails | None,
        prescribed_dose: str,
        minutes: int,
        circumstances: Circumstances | None,
    ) -> AdherenceScore:
        dose = dose_accuracy(dose_details, prescribed_dose)
        timing = timing_accuracy(minutes)
        compliance = circumstance_compliance(circumstances)
        return AdherenceScore(
            dose_accuracy=dose,
            timing_accuracy=timing,
            circumstance_compliance=compliance,
            overall_score=(dose + timing + compliance) / 3,
        )
