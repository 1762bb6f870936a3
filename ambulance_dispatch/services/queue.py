from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Iterable

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from ambulance_dispatch.core.errors import BookingNotFoundError, QueueAlreadyExistsError, UnknownDriverError
from ambulance_dispatch.models.booking import BOOKING_ASSIGNED, BOOKING_NO_DRIVERS, Booking
from ambulance_dispatch.models.driver import Driver
from ambulance_dispatch.models.queue_entry import (
    OPEN_STATUSES,
    QUEUE_ACCEPTED,
    QUEUE_CALLING,
    QUEUE_CANCELLED,
    QUEUE_PENDING,
    TERMINAL_STATUSES,
    QueueEntry,
)
from ambulance_dispatch.services.db import db_session
from ambulance_dispatch.utils.time import remark_line, utcnow

ACCEPT_OK = "accepted"
ACCEPT_ENTRY_RESOLVED = "entry_resolved"
ACCEPT_BOOKING_ASSIGNED = "booking_assigned"


@dataclass(frozen=True)
class RankedCandidate:
    driver_id: int
    distance: float


class _AssignmentConflict(Exception):
    pass


class QueueRepository:
    """Queue entries and bookings behind conditional, single-transaction updates.

    Every public method opens its own session so concurrent workers (poll
    jobs, webhook requests) only ever coordinate through the database.
    """

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self.session_factory = session_factory

    def _session(self) -> AbstractContextManager[Session]:
        return db_session(self.session_factory)

    # reads

    def get_booking(self, booking_id: int) -> Booking | None:
        with self._session() as session:
            return session.get(Booking, booking_id)

    def get_driver(self, driver_id: int) -> Driver | None:
        with self._session() as session:
            return session.get(Driver, driver_id)

    def get_entry(self, entry_id: int) -> QueueEntry | None:
        with self._session() as session:
            return session.get(QueueEntry, entry_id)

    def list_entries(self, booking_id: int) -> list[QueueEntry]:
        stmt = select(QueueEntry).where(QueueEntry.booking_id == booking_id).order_by(QueueEntry.position)
        with self._session() as session:
            return list(session.scalars(stmt))

    def next_pending(self, booking_id: int) -> QueueEntry | None:
        stmt = (
            select(QueueEntry)
            .where(QueueEntry.booking_id == booking_id, QueueEntry.status == QUEUE_PENDING)
            .order_by(QueueEntry.position)
            .limit(1)
        )
        with self._session() as session:
            return session.scalars(stmt).first()

    def find_calling_entry(self, call_id: str) -> QueueEntry | None:
        stmt = select(QueueEntry).where(QueueEntry.call_id == call_id, QueueEntry.status == QUEUE_CALLING)
        with self._session() as session:
            return session.scalars(stmt).first()

    def in_flight_entries(self) -> list[QueueEntry]:
        stmt = (
            select(QueueEntry)
            .join(Booking, Booking.id == QueueEntry.booking_id)
            .where(
                QueueEntry.status == QUEUE_CALLING,
                QueueEntry.call_id.is_not(None),
                Booking.driver_id.is_(None),
            )
            .order_by(QueueEntry.booking_id, QueueEntry.position)
        )
        with self._session() as session:
            return list(session.scalars(stmt))

    def is_entry_terminal(self, entry_id: int) -> bool:
        stmt = select(QueueEntry.status).where(QueueEntry.id == entry_id)
        with self._session() as session:
            status = session.scalar(stmt)
        return status is None or status in TERMINAL_STATUSES

    def is_booking_assigned(self, booking_id: int) -> bool:
        stmt = select(Booking.driver_id).where(Booking.id == booking_id)
        with self._session() as session:
            return session.scalar(stmt) is not None

    # writes

    def create_queue(self, booking_id: int, candidates: Iterable[RankedCandidate]) -> list[QueueEntry]:
        candidates = list(candidates)
        with self._session() as session:
            if session.get(Booking, booking_id) is None:
                raise BookingNotFoundError(booking_id)

            existing = session.scalar(select(func.count(QueueEntry.id)).where(QueueEntry.booking_id == booking_id))
            if existing:
                raise QueueAlreadyExistsError(booking_id)

            driver_ids = [candidate.driver_id for candidate in candidates]
            known = set(session.scalars(select(Driver.id).where(Driver.id.in_(driver_ids)))) if driver_ids else set()
            missing = [driver_id for driver_id in driver_ids if driver_id not in known]
            if missing:
                raise UnknownDriverError(missing)

            entries = [
                QueueEntry(
                    booking_id=booking_id,
                    driver_id=candidate.driver_id,
                    position=position,
                    status=QUEUE_PENDING,
                    distance=candidate.distance,
                )
                for position, candidate in enumerate(candidates, start=1)
            ]
            session.add_all(entries)
            session.flush()

        logger.info("Created driver queue for booking {booking_id} with {count} entries", booking_id=booking_id, count=len(entries))
        return entries

    def mark_calling(self, entry_id: int) -> bool:
        stmt = (
            update(QueueEntry)
            .where(QueueEntry.id == entry_id, QueueEntry.status == QUEUE_PENDING)
            .values(status=QUEUE_CALLING, called_at=utcnow())
        )
        with self._session() as session:
            claimed = session.execute(stmt).rowcount == 1
        if not claimed:
            logger.info("Queue entry {entry_id} was not pending; not calling", entry_id=entry_id)
        return claimed

    def attach_call_id(self, entry_id: int, call_id: str) -> bool:
        stmt = (
            update(QueueEntry)
            .where(QueueEntry.id == entry_id, QueueEntry.status == QUEUE_CALLING, QueueEntry.call_id.is_(None))
            .values(call_id=call_id)
        )
        with self._session() as session:
            return session.execute(stmt).rowcount == 1

    def record_outcome(self, entry_id: int, status: str, response: str | None, analysis: str | None = None) -> bool:
        with self._session() as session:
            return self._record_outcome(session, entry_id, status, response, analysis)

    def cancel_others(self, booking_id: int, keep_entry_id: int) -> int:
        stmt = (
            update(QueueEntry)
            .where(
                QueueEntry.booking_id == booking_id,
                QueueEntry.id != keep_entry_id,
                QueueEntry.status.in_(OPEN_STATUSES),
            )
            .values(status=QUEUE_CANCELLED, response="superseded", responded_at=utcnow())
        )
        with self._session() as session:
            cancelled = session.execute(stmt).rowcount
        if cancelled:
            logger.info("Cancelled {count} other queue entries for booking {booking_id}", count=cancelled, booking_id=booking_id)
        return cancelled

    def finalize_assignment(self, booking_id: int, driver_id: int, distance: float | None) -> bool:
        with self._session() as session:
            return self._finalize_assignment(session, booking_id, driver_id, distance)

    def accept(
        self,
        *,
        entry_id: int,
        booking_id: int,
        driver_id: int,
        distance: float | None,
        response: str,
        analysis: str | None,
    ) -> str:
        """Record the acceptance and bind the driver in one transaction."""
        try:
            with self._session() as session:
                if not self._record_outcome(session, entry_id, QUEUE_ACCEPTED, response, analysis):
                    return ACCEPT_ENTRY_RESOLVED
                if not self._finalize_assignment(session, booking_id, driver_id, distance):
                    raise _AssignmentConflict()
        except _AssignmentConflict:
            logger.info("Booking {booking_id} already assigned; acceptance of entry {entry_id} rolled back", booking_id=booking_id, entry_id=entry_id)
            return ACCEPT_BOOKING_ASSIGNED
        return ACCEPT_OK

    def mark_no_drivers_available(self, booking_id: int, remark: str) -> bool:
        with self._session() as session:
            booking = session.get(Booking, booking_id, with_for_update=True)
            if booking is None or booking.driver_id is not None:
                return False
            booking.status = BOOKING_NO_DRIVERS
            booking.remarks = _append(booking.remarks, remark_line(remark))
        logger.warning("Booking {booking_id} has no drivers available", booking_id=booking_id)
        return True

    def append_remark(self, booking_id: int, message: str) -> None:
        with self._session() as session:
            booking = session.get(Booking, booking_id, with_for_update=True)
            if booking is not None:
                booking.remarks = _append(booking.remarks, remark_line(message))

    def mark_notification_sent(self, booking_id: int) -> None:
        stmt = update(Booking).where(Booking.id == booking_id).values(notification_sent=True, notification_sent_at=utcnow())
        with self._session() as session:
            session.execute(stmt)

    # guarded primitives shared by the public writes

    @staticmethod
    def _record_outcome(session: Session, entry_id: int, status: str, response: str | None, analysis: str | None) -> bool:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status!r} is not a terminal queue status")
        stmt = (
            update(QueueEntry)
            .where(QueueEntry.id == entry_id, QueueEntry.status.in_(OPEN_STATUSES))
            .values(status=status, response=response, response_analysis=analysis, responded_at=utcnow())
        )
        recorded = session.execute(stmt).rowcount == 1
        if not recorded:
            logger.info("Queue entry {entry_id} already resolved; ignoring {status}", entry_id=entry_id, status=status)
        return recorded

    @staticmethod
    def _finalize_assignment(session: Session, booking_id: int, driver_id: int, distance: float | None) -> bool:
        # The only statement in the code base that writes Booking.driver_id.
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id, Booking.driver_id.is_(None))
            .values(driver_id=driver_id, distance=distance, status=BOOKING_ASSIGNED)
        )
        return session.execute(stmt).rowcount == 1


def _append(existing: str | None, line: str) -> str:
    return f"{existing}\n{line}" if existing else line
