from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .classification import Classification

COMPLETED_STATUSES = frozenset({"completed", "success"})
# Provider statuses that end a call without a conversation.
FAILED_CALL_STATUSES = frozenset({"failed", "no-answer", "busy", "canceled", "cancelled", "error"})


class PlacedCall(BaseModel):
    execution_id: str
    status: str | None = None
    recipient_phone: str


class ExecutionRecord(BaseModel):
    execution_id: str
    status: str | None = None
    hangup_by: str | None = None
    transcript: str = ""
    duration_seconds: float = 0.0

    @property
    def is_terminal(self) -> bool:
        status = (self.status or "").lower()
        if status in COMPLETED_STATUSES:
            return self.hangup_by is not None
        return status in FAILED_CALL_STATUSES

    @property
    def failed(self) -> bool:
        return (self.status or "").lower() in FAILED_CALL_STATUSES


class CallCompletion(BaseModel):
    completed: bool
    transcript: str = ""
    duration_seconds: float = 0.0
    status: str | None = None
    classification: Classification | None = None
    abandoned: bool = False


class CallCompletionEvent(BaseModel):
    """Completion push from the voice provider; transcript shape varies."""

    model_config = ConfigDict(extra="allow")

    execution_id: str = Field(..., validation_alias=AliasChoices("execution_id", "executionId", "id"))
    status: str | None = None
    call_status: str | None = Field(default=None, validation_alias=AliasChoices("call_status", "callStatus"))
    conversation_data: Any = None
    extracted_data: Any = None
    transcript: Any = None
    summary: str | None = None

    @field_validator("execution_id")
    @classmethod
    def _ensure_not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("execution_id is required")
        return value.strip()

    def _reported_statuses(self) -> list[str]:
        return [value.lower() for value in (self.status, self.call_status) if value]

    @property
    def call_failed(self) -> bool:
        return any(value in FAILED_CALL_STATUSES for value in self._reported_statuses())

    @property
    def in_progress(self) -> bool:
        """A status was reported and none of them ends the call (ringing, in-progress, queued)."""
        statuses = self._reported_statuses()
        return bool(statuses) and not any(
            value in COMPLETED_STATUSES or value in FAILED_CALL_STATUSES for value in statuses
        )

    def transcript_payload(self) -> dict[str, Any]:
        return {
            "conversation_data": self.conversation_data,
            "extracted_data": self.extracted_data,
            "transcript": self.transcript,
            "summary": self.summary,
        }
