from __future__ import annotations


class DispatchError(Exception):
    """Base class for errors raised by the dispatch engine."""


class BookingNotFoundError(DispatchError):
    def __init__(self, booking_id: int) -> None:
        super().__init__(f"Booking {booking_id} not found")
        self.booking_id = booking_id


class QueueAlreadyExistsError(DispatchError):
    def __init__(self, booking_id: int) -> None:
        super().__init__(f"Driver queue already exists for booking {booking_id}")
        self.booking_id = booking_id


class UnknownDriverError(DispatchError):
    def __init__(self, driver_ids: list[int]) -> None:
        super().__init__(f"Unknown driver ids: {', '.join(str(d) for d in driver_ids)}")
        self.driver_ids = driver_ids


class CallPlacementError(DispatchError):
    """The outbound call could not be placed (configuration, phone, provider rejection)."""


class VoiceProviderError(DispatchError):
    """The voice provider returned something unusable while polling."""
