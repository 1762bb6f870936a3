from __future__ import annotations

from pydantic import BaseModel


class MessageResult(BaseModel):
    success: bool
    provider_message_id: str | None = None
    recipient_phone: str | None = None
    error: str | None = None
