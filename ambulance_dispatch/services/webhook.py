from __future__ import annotations

import httpx
from loguru import logger

from ambulance_dispatch.core.errors import VoiceProviderError
from ambulance_dispatch.schemas.classification import Classification, Confidence, Verdict
from ambulance_dispatch.schemas.dispatch import DispatchResult
from ambulance_dispatch.schemas.voice import CallCompletionEvent, ExecutionRecord
from ambulance_dispatch.services.dispatch import DispatchCoordinator
from ambulance_dispatch.services.transcripts import extract_transcript


class WebhookIngest:
    """Feeds provider completion pushes into the coordinator's decision path."""

    def __init__(self, coordinator: DispatchCoordinator) -> None:
        self.coordinator = coordinator

    @property
    def repository(self):
        return self.coordinator.repository

    def handle(self, event: CallCompletionEvent) -> DispatchResult:
        entry = self.repository.find_calling_entry(event.execution_id)
        if entry is None:
            # Unknown id, or the poller/another delivery already resolved it.
            logger.info("No calling queue entry for execution {execution_id}; ignoring", execution_id=event.execution_id)
            return DispatchResult(action="not_found", execution_id=event.execution_id)

        logger.info(
            "Webhook for execution {execution_id} status={status} call_status={call_status}",
            execution_id=event.execution_id,
            status=event.status,
            call_status=event.call_status,
        )

        if event.in_progress:
            return self._still_in_progress(entry.id, event.execution_id)

        if event.call_failed:
            transcript = ""
            classification = Classification(
                verdict=Verdict.NO_RESPONSE,
                confidence=Confidence.HIGH,
                reason=f"Call ended with status {event.call_status or event.status}",
            )
        else:
            transcript = extract_transcript(event.transcript_payload())
            if not transcript:
                record = self._fetch_execution(event.execution_id)
                if record is not None and not record.is_terminal:
                    return self._still_in_progress(entry.id, event.execution_id)
                transcript = "" if record is None or record.failed else record.transcript
            classification = self.coordinator.classifier.classify(transcript)

        result = self.coordinator.resolve(entry.id, classification, source="webhook", transcript=transcript)
        if result.execution_id is None and result.entry_id == entry.id:
            result.execution_id = event.execution_id
        return result

    @staticmethod
    def _still_in_progress(entry_id: int, execution_id: str) -> DispatchResult:
        # The poller stays on the call; only an ended call may resolve the entry.
        logger.info("Execution {execution_id} has not ended yet; leaving it to the poller", execution_id=execution_id)
        return DispatchResult(
            action="not_found",
            entry_id=entry_id,
            execution_id=execution_id,
            message="Call still in progress",
        )

    def _fetch_execution(self, execution_id: str) -> ExecutionRecord | None:
        try:
            return self.coordinator.voice_client.get_execution(execution_id)
        except (httpx.HTTPError, VoiceProviderError, ValueError) as exc:
            logger.warning("Could not fetch transcript for {execution_id}: {error}", execution_id=execution_id, error=exc)
            return None
