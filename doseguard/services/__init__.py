"""
Dose tracking services.

This package contains the grace-period engine, the missed-dose sweeper, the
dose event state machine and the service that wires them together.
"""

from .adherence import AdherenceScorer
from .classifiers import MedicationTypeClassifier, TimeSlotClassifier
from .dose_events import DoseEventStateMachine, TakeRequest
from .dose_tracking import DoseTrackingService
from .grace_period import GracePeriodCalculation, GracePeriodCalculator
from .holiday_calendar import HolidayCalendar
from .missed_detection import MissedDoseSweeper, SweepResult
from .store import DoseStore

__all__ = [
    "AdherenceScorer",
    "DoseEventStateMachine",
    "DoseStore",
    "DoseTrackingService",
    "GracePeriodCalculation",
    "GracePeriodCalculator",
    "HolidayCalendar",
    "MedicationTypeClassifier",
    "MissedDoseSweeper",
    "SweepResult",
    "TakeRequest",
    "TimeSlotClassifier",
]
