from __future__ import annotations

import json
import time
from functools import lru_cache
from typing import Any, Callable, Iterable

from loguru import logger

from ambulance_dispatch.core.config import AppConfig, get_settings
from ambulance_dispatch.core.errors import CallPlacementError
from ambulance_dispatch.models.booking import Booking
from ambulance_dispatch.models.driver import Driver
from ambulance_dispatch.models.queue_entry import (
    QUEUE_CANCELLED,
    QUEUE_FAILED,
    QUEUE_NO_ANSWER,
    QUEUE_REJECTED,
    QUEUE_UNCLEAR,
    QueueEntry,
)
from ambulance_dispatch.schemas.classification import Classification, Confidence, Verdict
from ambulance_dispatch.schemas.dispatch import DispatchResult
from ambulance_dispatch.schemas.messaging import MessageResult
from ambulance_dispatch.services.classifier import KeywordResponseClassifier, ResponseClassifier
from ambulance_dispatch.services.jobs import JobScheduler, get_scheduler
from ambulance_dispatch.services.messaging import MessagingClient, booking_message_fields, get_messaging_client
from ambulance_dispatch.services.queue import (
    ACCEPT_BOOKING_ASSIGNED,
    ACCEPT_ENTRY_RESOLVED,
    QueueRepository,
    RankedCandidate,
)
from ambulance_dispatch.services.transcripts import CallTranscriptRetriever
from ambulance_dispatch.services.voice import VoiceCallClient, get_voice_client
from ambulance_dispatch.utils.time import utcnow

# verdict -> (queue status, response tag); ACCEPTED goes through QueueRepository.accept
OUTCOMES: dict[Verdict, tuple[str, str]] = {
    Verdict.DECLINED: (QUEUE_REJECTED, "no"),
    Verdict.UNCLEAR: (QUEUE_UNCLEAR, "unclear"),
    Verdict.NO_RESPONSE: (QUEUE_NO_ANSWER, "no_response"),
}

TIMEOUT_CLASSIFICATION = Classification(
    verdict=Verdict.NO_RESPONSE,
    confidence=Confidence.HIGH,
    reason="Call timeout - likely not answered",
)


def rank_candidates(candidates: Iterable[RankedCandidate]) -> list[RankedCandidate]:
    """Nearest first; equal distances fall back to driver id."""
    return sorted(candidates, key=lambda candidate: (candidate.distance, candidate.driver_id))


class DispatchCoordinator:
    """Drives one booking's queue: call, interpret, then assign or move on.

    Holds no per-booking state of its own. Every decision re-reads the
    repository, so poll jobs and webhook requests on any worker can pick up
    a booking wherever it stands.
    """

    def __init__(
        self,
        *,
        repository: QueueRepository,
        voice_client: VoiceCallClient,
        retriever: CallTranscriptRetriever,
        classifier: ResponseClassifier,
        messenger: MessagingClient,
        scheduler: JobScheduler,
        advance_delay_seconds: float = 5.0,
        country_code: str = "91",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.voice_client = voice_client
        self.retriever = retriever
        self.classifier = classifier
        self.messenger = messenger
        self.scheduler = scheduler
        self.advance_delay_seconds = advance_delay_seconds
        self.country_code = country_code
        self.sleep = sleep

    def dispatch_booking(self, booking_id: int, candidates: Iterable[RankedCandidate]) -> DispatchResult:
        ranked = rank_candidates(candidates)
        self.repository.create_queue(booking_id, ranked)
        self.repository.append_remark(booking_id, f"Dispatch started with {len(ranked)} candidate driver(s)")
        return self.advance(booking_id)

    def advance(self, booking_id: int) -> DispatchResult:
        while True:
            if self.repository.is_booking_assigned(booking_id):
                logger.info("Booking {booking_id} already assigned; not calling anyone else", booking_id=booking_id)
                return DispatchResult(action="already_assigned", booking_id=booking_id)

            entry = self.repository.next_pending(booking_id)
            if entry is None:
                if not self.repository.mark_no_drivers_available(
                    booking_id, "All drivers in queue declined or unavailable"
                ):
                    return DispatchResult(action="already_assigned", booking_id=booking_id)
                return DispatchResult(
                    action="no_more_drivers",
                    booking_id=booking_id,
                    message="All drivers in queue have been tried",
                )

            if not self.repository.mark_calling(entry.id):
                # another worker claimed this entry first and owns the call
                return DispatchResult(
                    action="called_next",
                    booking_id=booking_id,
                    entry_id=entry.id,
                    driver_id=entry.driver_id,
                    message="Candidate already being called",
                )

            result = self._place_call(booking_id, entry)
            if result is not None:
                return result

    def _place_call(self, booking_id: int, entry: QueueEntry) -> DispatchResult | None:
        booking = self.repository.get_booking(booking_id)
        if booking is not None and booking.driver_id is not None:
            # accepted on another path after this entry was claimed
            self.repository.record_outcome(entry.id, QUEUE_CANCELLED, "superseded")
            return None
        current = self.repository.get_entry(entry.id)
        if current is None or current.is_terminal:
            return None

        driver = self.repository.get_driver(entry.driver_id)
        try:
            if booking is None or driver is None:
                raise CallPlacementError("Booking or driver record disappeared")
            placed = self.voice_client.place_call(
                recipient_phone=driver.phone,
                context=self._call_context(booking, driver, entry),
            )
        except CallPlacementError as exc:
            logger.warning(
                "Could not call driver {driver_id} for booking {booking_id}: {error}",
                driver_id=entry.driver_id,
                booking_id=booking_id,
                error=exc,
            )
            self.repository.record_outcome(entry.id, QUEUE_FAILED, "call_failed", json.dumps({"error": str(exc)}))
            self.repository.append_remark(booking_id, f"Call to queue position {entry.position} failed: {exc}")
            return None

        if not self.repository.attach_call_id(entry.id, placed.execution_id):
            logger.info(
                "Entry {entry_id} resolved while call {execution_id} was being placed",
                entry_id=entry.id,
                execution_id=placed.execution_id,
            )
            return None

        self.scheduler.submit(f"watch-call-{placed.execution_id}", self.watch_call, entry.id, placed.execution_id)
        logger.info(
            "Calling driver {driver_id} (position {position}) for booking {booking_id}",
            driver_id=entry.driver_id,
            position=entry.position,
            booking_id=booking_id,
        )
        return DispatchResult(
            action="called_next",
            booking_id=booking_id,
            entry_id=entry.id,
            driver_id=entry.driver_id,
            execution_id=placed.execution_id,
            message=f"Calling {driver.full_name}",
        )

    def watch_call(self, entry_id: int, execution_id: str) -> DispatchResult:
        """Poll-driven backstop for one call; the webhook normally gets there first."""
        completion = self.retriever.await_completion(
            execution_id,
            should_stop=lambda: self.repository.is_entry_terminal(entry_id),
        )
        if completion.abandoned:
            return DispatchResult(action="not_found", entry_id=entry_id, execution_id=execution_id)

        if completion.completed:
            classification = completion.classification or self.classifier.classify(completion.transcript)
        else:
            classification = TIMEOUT_CLASSIFICATION
        return self.resolve(
            entry_id,
            classification,
            source="poll",
            transcript=completion.transcript,
            timed_out=not completion.completed,
            advance_delay=self.advance_delay_seconds,
        )

    def resolve(
        self,
        entry_id: int,
        classification: Classification,
        *,
        source: str,
        transcript: str | None = None,
        timed_out: bool = False,
        advance_delay: float = 0.0,
    ) -> DispatchResult:
        entry = self.repository.get_entry(entry_id)
        if entry is None:
            return DispatchResult(action="not_found", entry_id=entry_id)

        analysis = _analysis_json(classification, source=source, transcript=transcript)
        logger.info(
            "Entry {entry_id} verdict {verdict} ({confidence}) via {source}: {reason}",
            entry_id=entry_id,
            verdict=classification.verdict.value,
            confidence=classification.confidence.value,
            source=source,
            reason=classification.reason,
        )

        # Must happen before acting on any verdict.
        if self.repository.is_booking_assigned(entry.booking_id):
            self.repository.record_outcome(entry.id, QUEUE_CANCELLED, "race", analysis)
            return DispatchResult(action="already_assigned", booking_id=entry.booking_id, entry_id=entry.id)

        if classification.verdict is Verdict.ACCEPTED:
            return self._accept(entry, analysis)

        status, response = OUTCOMES[classification.verdict]
        if timed_out:
            response = "timeout"
        if not self.repository.record_outcome(entry.id, status, response, analysis):
            return DispatchResult(
                action="not_found",
                booking_id=entry.booking_id,
                entry_id=entry.id,
                message="Queue entry already resolved",
            )

        if advance_delay > 0:
            self.sleep(advance_delay)
        return self.advance(entry.booking_id)

    def _accept(self, entry: QueueEntry, analysis: str) -> DispatchResult:
        outcome = self.repository.accept(
            entry_id=entry.id,
            booking_id=entry.booking_id,
            driver_id=entry.driver_id,
            distance=entry.distance,
            response="yes",
            analysis=analysis,
        )
        if outcome == ACCEPT_ENTRY_RESOLVED:
            return DispatchResult(
                action="not_found",
                booking_id=entry.booking_id,
                entry_id=entry.id,
                message="Queue entry already resolved",
            )
        if outcome == ACCEPT_BOOKING_ASSIGNED:
            self.repository.record_outcome(entry.id, QUEUE_CANCELLED, "race", analysis)
            return DispatchResult(action="already_assigned", booking_id=entry.booking_id, entry_id=entry.id)

        self.repository.cancel_others(entry.booking_id, entry.id)
        driver = self.repository.get_driver(entry.driver_id)
        name = driver.full_name if driver else f"#{entry.driver_id}"
        self.repository.append_remark(entry.booking_id, f"Driver {name} accepted (queue position {entry.position})")
        logger.info("Assigned driver {driver_id} to booking {booking_id}", driver_id=entry.driver_id, booking_id=entry.booking_id)

        notification_sent = self._notify_driver(entry.booking_id, driver)
        return DispatchResult(
            action="assigned",
            booking_id=entry.booking_id,
            entry_id=entry.id,
            driver_id=entry.driver_id,
            notification_sent=notification_sent,
            message=f"Driver {name} accepted",
        )

    def _notify_driver(self, booking_id: int, driver: Driver | None) -> bool:
        booking = self.repository.get_booking(booking_id)
        if booking is None or driver is None:
            return False
        try:
            result = self.messenger.send_message(driver.phone, booking_message_fields(booking, self.country_code))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Location message for booking {booking_id} raised", booking_id=booking_id)
            result = MessageResult(success=False, error=str(exc))

        if result.success:
            self.repository.mark_notification_sent(booking_id)
            return True

        logger.error("Location message for booking {booking_id} failed: {error}", booking_id=booking_id, error=result.error)
        self.repository.append_remark(booking_id, f"Location message to driver failed: {result.error}")
        return False

    def resume_in_flight(self) -> int:
        """Re-attach poll jobs to calls left in flight by a previous process."""
        entries = self.repository.in_flight_entries()
        for entry in entries:
            self.scheduler.submit(f"watch-call-{entry.call_id}", self.watch_call, entry.id, entry.call_id)
        if entries:
            logger.info("Resumed {count} in-flight driver calls", count=len(entries))
        return len(entries)

    def _call_context(self, booking: Booking, driver: Driver, entry: QueueEntry) -> dict[str, Any]:
        return {
            "alert_type": "Ambulance Alert",
            "driver_name": driver.full_name,
            "booking_id": booking.booking_code,
            "pickup_location": booking.address or "N/A",
            "nearest_hospital": booking.nearest_hospital or "N/A",
            "contact_phone": booking.phone_number or "N/A",
            "distance": f"{entry.distance:.1f} km",
            "timestamp": utcnow().isoformat(),
        }


def _analysis_json(classification: Classification, *, source: str, transcript: str | None) -> str:
    payload = classification.model_dump(mode="json")
    payload["source"] = source
    if transcript:
        payload["transcript"] = transcript
    return json.dumps(payload)


def build_coordinator(settings: AppConfig | None = None, repository: QueueRepository | None = None) -> DispatchCoordinator:
    settings = settings or get_settings()
    classifier = KeywordResponseClassifier()
    voice_client = get_voice_client()
    return DispatchCoordinator(
        repository=repository or QueueRepository(),
        voice_client=voice_client,
        retriever=CallTranscriptRetriever(
            voice_client=voice_client,
            classifier=classifier,
            max_wait_seconds=settings.call_max_wait_seconds,
            poll_interval_seconds=settings.call_poll_interval_seconds,
        ),
        classifier=classifier,
        messenger=get_messaging_client(),
        scheduler=get_scheduler(),
        advance_delay_seconds=settings.advance_delay_seconds,
        country_code=settings.phone_country_code,
    )


@lru_cache
def get_coordinator() -> DispatchCoordinator:
    return build_coordinator()
