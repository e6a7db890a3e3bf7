"""
Dose events: immutable, append-only audit facts.

The event model is a closed tagged union discriminated on ``event_type``. Each
variant carries a strongly-typed payload that is validated when the event is
built, so read sites never interpret loose documents.
"""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from doseguard.domain.models import (
    AdherenceScore,
    Circumstances,
    CorrectedAction,
    DoseDetails,
    DoseType,
    SkipReason,
    TimingCategory,
)


def new_event_id(event_type: str) -> str:
    return f"{event_type}_{uuid.uuid4().hex}"


def new_correlation_id() -> str:
    return f"corr_{uuid.uuid4().hex}"


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    dose_id: str
    command_id: str
    patient_id: str
    scheduled_for: datetime
    actual_timestamp: datetime = Field(description="When the action happened")
    recorded_at: datetime = Field(description="When the event was written")
    correlation_id: str
    created_by: str


class TakePayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    minutes_from_scheduled: int
    timing_category: TimingCategory
    dose_type: DoseType
    prescribed_dose: str
    dose_details: DoseDetails | None = None
    circumstances: Circumstances | None = None
    notes: str | None = None
    score: AdherenceScore


class UndoPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_event_id: str
    reason: str = Field(min_length=1)
    corrected_action: CorrectedAction | None = None


class SkipPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    reason: SkipReason
    notes: str | None = None


class SnoozePayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    snooze_minutes: int = Field(ge=1, le=480)
    new_scheduled_time: datetime
    reason: str | None = None


class CorrectionPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_event_id: str
    corrected_action: CorrectedAction
    reason: str = Field(min_length=1)
    corrected_data: dict[str, Any] = Field(default_factory=dict)


class TakeEvent(_EventBase):
    event_type: Literal["take"] = "take"
    payload: TakePayload


class UndoEvent(_EventBase):
    event_type: Literal["undo"] = "undo"
    payload: UndoPayload


class SkipEvent(_EventBase):
    event_type: Literal["skip"] = "skip"
    payload: SkipPayload


class SnoozeEvent(_EventBase):
    event_type: Literal["snooze"] = "snooze"
    payload: SnoozePayload

    @model_validator(mode="after")
    def new_time_matches_minutes(self) -> "SnoozeEvent":
        expected = self.scheduled_for.astimezone(UTC) + timedelta(
            minutes=self.payload.snooze_minutes
        )
        if self.payload.new_scheduled_time != expected:
            raise ValueError("new_scheduled_time must equal scheduled_for + snooze_minutes")
        return self


class CorrectionEvent(_EventBase):
    event_type: Literal["correction"] = "correction"
    payload: CorrectionPayload


DoseEvent = Annotated[
    TakeEvent | UndoEvent | SkipEvent | SnoozeEvent | CorrectionEvent,
    Field(discriminator="event_type"),
]

dose_event_adapter: TypeAdapter[DoseEvent] = TypeAdapter(DoseEvent)


def parse_event(data: dict[str, Any]) -> DoseEvent:
    """Rebuild a typed event from its serialized form."""
    return dose_event_adapter.validate_python(data)
