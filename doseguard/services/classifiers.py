"""
Leaf classifiers feeding the grace-period calculator.

- TimeSlotClassifier: wall-clock time -> configured daypart
- MedicationTypeClassifier: medication -> critical / standard / vitamin / prn
"""

from collections.abc import Iterable
from datetime import datetime, time

from doseguard.domain.grace_config import PatientGraceConfig
from doseguard.domain.models import MedicationCommand, MedicationType

CRITICAL_KEYWORDS: tuple[str, ...] = (
    "insulin",
    "metformin",
    "lisinopril",
    "atorvastatin",
    "metoprolol",
    "warfarin",
    "digoxin",
    "levothyroxine",
    "prednisone",
    "amlodipine",
    "losartan",
    "carvedilol",
    "enalapril",
    "furosemide",
    "spironolactone",
    "diltiazem",
    "verapamil",
    "propranolol",
    "atenolol",
    "bisoprolol",
)

VITAMIN_KEYWORDS: tuple[str, ...] = (
    "vitamin",
    "supplement",
    "calcium",
    "iron",
    "magnesium",
    "zinc",
    "multivitamin",
    "omega",
    "fish oil",
    "coq10",
    "biotin",
    "folic acid",
    "b12",
    "b6",
    "thiamine",
    "riboflavin",
    "niacin",
    "pantothenic",
)


class TimeSlotClassifier:
    """Map a moment to the first configured slot that contains it."""

    def classify(self, moment: datetime | time, config: PatientGraceConfig) -> str:
        if isinstance(moment, datetime):
            if moment.tzinfo is not None:
                moment = moment.astimezone(config.tz)
            moment = moment.time()

        for name, window in config.time_slots.items():
            if window.contains(moment):
                return name
        return config.fallback_slot


class MedicationTypeClassifier:
    """Ordered keyword rules; the first rule satisfied wins."""

    def __init__(
        self,
        critical_keywords: Iterable[str] = CRITICAL_KEYWORDS,
        vitamin_keywords: Iterable[str] = VITAMIN_KEYWORDS,
    ) -> None:
        self.critical_keywords = tuple(k.lower() for k in critical_keywords)
        self.vitamin_keywords = tuple(k.lower() for k in vitamin_keywords)

    def classify(self, medication: MedicationCommand) -> MedicationType:
        if medication.is_prn:
            return MedicationType.PRN

        names = (medication.name.lower(), (medication.generic_name or "").lower())

        if self._matches(names, self.critical_keywords):
            return MedicationType.CRITICAL
        if self._matches(names, self.vitamin_keywords):
            return MedicationType.VITAMIN
        return MedicationType.STANDARD

    @staticmethod
    def _matches(names: tuple[str, ...], keywords: tuple[str, ...]) -> bool:
        return any(keyword in name for keyword in keywords for name in names if name)
