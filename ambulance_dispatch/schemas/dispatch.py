from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DispatchAction = Literal["assigned", "called_next", "no_more_drivers", "already_assigned", "not_found"]


class CandidatePayload(BaseModel):
    driver_id: int
    distance_km: float = Field(..., ge=0)


class DispatchRequest(BaseModel):
    candidates: list[CandidatePayload] = Field(default_factory=list)

    @field_validator("candidates")
    @classmethod
    def _unique_drivers(cls, value: list[CandidatePayload]) -> list[CandidatePayload]:
        seen: set[int] = set()
        for candidate in value:
            if candidate.driver_id in seen:
                raise ValueError(f"driver {candidate.driver_id} listed more than once")
            seen.add(candidate.driver_id)
        return value


class DispatchResult(BaseModel):
    action: DispatchAction
    booking_id: int | None = None
    entry_id: int | None = None
    driver_id: int | None = None
    execution_id: str | None = None
    notification_sent: bool | None = None
    message: str | None = None


class QueueEntryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    position: int
    driver_id: int
    status: str
    distance: float
    call_id: str | None = None
    response: str | None = None
    called_at: datetime | None = None
    responded_at: datetime | None = None


class QueueStatusResponse(BaseModel):
    booking_id: int
    booking_code: str
    status: str
    driver_id: int | None = None
    notification_sent: bool = False
    entries: list[QueueEntryView] = Field(default_factory=list)
