from __future__ import annotations

import json
import math
import time
from typing import TYPE_CHECKING, Any, Callable

import httpx
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from tenacity import Retrying, retry_if_result, stop_after_attempt, stop_after_delay, wait_fixed

from ambulance_dispatch.core.errors import VoiceProviderError
from ambulance_dispatch.schemas.voice import CallCompletion

if TYPE_CHECKING:
    from ambulance_dispatch.services.classifier import ResponseClassifier
    from ambulance_dispatch.services.voice import VoiceCallClient

# Checked in order; the first one yielding text wins.
TRANSCRIPT_FIELDS = (
    "driver_response",
    "transcript",
    "messages",
    "conversation_data",
    "extracted_data",
    "summary",
)
AGENT_ROLES = frozenset({"assistant", "agent", "bot", "system"})


def extract_transcript(payload: Any) -> str:
    """Pull the driver's side of the conversation out of a provider payload.

    Accepts a raw string (possibly JSON-encoded), an object carrying one of
    ``TRANSCRIPT_FIELDS`` or a list of messages. Message lists keep only the
    caller's turns, as ``user: <text>`` lines. Unknown shapes give ``""``.
    """
    if payload is None:
        return ""

    if isinstance(payload, str):
        text = payload.strip()
        if not text or text[0] not in "{[":
            return text
        try:
            parsed = json.loads(text)
        except ValueError:
            return text
        return extract_transcript(parsed) or text

    if isinstance(payload, list):
        return _join_messages(payload)

    if isinstance(payload, dict):
        for field in TRANSCRIPT_FIELDS:
            value = payload.get(field)
            if not value:
                continue
            text = extract_transcript(value)
            if text:
                return text
    return ""


def _join_messages(messages: list[Any]) -> str:
    lines: list[str] = []
    for item in messages:
        if isinstance(item, str):
            if item.strip():
                lines.append(item.strip())
            continue
        if not isinstance(item, dict):
            continue
        text = item.get("message") or item.get("content") or item.get("text")
        if not isinstance(text, str) or not text.strip():
            continue
        role = str(item.get("speaker") or item.get("role") or "").lower()
        if role in AGENT_ROLES:
            continue
        lines.append(f"user: {text.strip()}" if role else text.strip())
    return "\n".join(lines)


class CallTranscriptRetriever:
    """Polls the voice provider until a call finishes or the wait budget runs out."""

    def __init__(
        self,
        *,
        voice_client: VoiceCallClient,
        classifier: ResponseClassifier | None = None,
        max_wait_seconds: float = 120.0,
        poll_interval_seconds: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.voice_client = voice_client
        self.classifier = classifier
        self.max_wait_seconds = max_wait_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.sleep = sleep

    def await_completion(
        self,
        execution_id: str,
        max_wait_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> CallCompletion:
        max_wait = self.max_wait_seconds if max_wait_seconds is None else max_wait_seconds
        interval = self.poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        attempts = 1 if max_wait <= 0 or interval <= 0 else math.ceil(max_wait / interval) + 1

        logger.info(
            "Waiting for call {execution_id} (max {max_wait}s, every {interval}s)",
            execution_id=execution_id,
            max_wait=max_wait,
            interval=interval,
        )
        retryer = Retrying(
            stop=stop_after_attempt(attempts) | stop_after_delay(max_wait),
            wait=wait_fixed(interval),
            retry=retry_if_result(lambda outcome: outcome is None),
            retry_error_callback=lambda state: None,
            sleep=self.sleep,
        )
        completion = retryer(self._poll_once, execution_id, should_stop)
        if completion is None:
            logger.warning("Timed out waiting for call {execution_id}", execution_id=execution_id)
            return CallCompletion(completed=False)
        return completion

    def _poll_once(self, execution_id: str, should_stop: Callable[[], bool] | None) -> CallCompletion | None:
        if should_stop is not None:
            try:
                stop = should_stop()
            except SQLAlchemyError as exc:
                logger.warning(
                    "Checking queue state for call {execution_id} failed: {error}", execution_id=execution_id, error=exc
                )
                return None
            if stop:
                logger.info("Stopped polling call {execution_id}; resolved elsewhere", execution_id=execution_id)
                return CallCompletion(completed=False, abandoned=True)

        try:
            record = self.voice_client.get_execution(execution_id)
        except (httpx.HTTPError, VoiceProviderError, ValueError) as exc:
            logger.warning("Polling call {execution_id} failed: {error}", execution_id=execution_id, error=exc)
            return None

        if record is None or not record.is_terminal:
            return None

        transcript = "" if record.failed else record.transcript
        classification = self.classifier.classify(transcript) if self.classifier else None
        logger.info(
            "Call {execution_id} finished status={status} hangup_by={hangup_by} transcript_chars={chars}",
            execution_id=execution_id,
            status=record.status,
            hangup_by=record.hangup_by,
            chars=len(transcript),
        )
        return CallCompletion(
            completed=True,
            transcript=transcript,
            duration_seconds=record.duration_seconds,
            status=record.status,
            classification=classification,
        )
