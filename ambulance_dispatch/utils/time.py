from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def remark_line(message: str, at: datetime | None = None) -> str:
    """Format one timestamped trace line for Booking.remarks."""
    stamp = (at or utcnow()).isoformat(timespec="seconds")
    return f"[{stamp}] {message}"
