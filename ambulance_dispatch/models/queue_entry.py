from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

QUEUE_PENDING = "pending"
QUEUE_CALLING = "calling"
QUEUE_ACCEPTED = "accepted"
QUEUE_REJECTED = "rejected"
QUEUE_NO_ANSWER = "no_answer"
QUEUE_UNCLEAR = "unclear"
QUEUE_CANCELLED = "cancelled"
QUEUE_FAILED = "failed"

OPEN_STATUSES = (QUEUE_PENDING, QUEUE_CALLING)
TERMINAL_STATUSES = (
    QUEUE_ACCEPTED, QUEUE_REJECTED, QUEUE_NO_ANSWER, QUEUE_UNCLEAR, QUEUE_CANCELLED, QUEUE_FAILED,
)


class QueueEntry(Base):
    __tablename__ = "driver_queue_entries"
    __table_args__ = (
        UniqueConstraint("booking_id", "position", name="uq_queue_booking_position"),
        UniqueConstraint("booking_id", "driver_id", name="uq_queue_booking_driver"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), nullable=False, index=True)
    driver_id: Mapped[int] = mapped_column(ForeignKey("drivers.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=QUEUE_PENDING)
    call_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    response: Mapped[str | None] = mapped_column(String(32), nullable=True)
    response_analysis: Mapped[str | None] = mapped_column(Text, nullable=True)
    distance: Mapped[float] = mapped_column(Float, nullable=False)
    called_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
