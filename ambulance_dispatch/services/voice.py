from __future__ import annotations

from functools import lru_cache
from typing import Any

import httpx
from loguru import logger

from ambulance_dispatch.core.config import AppConfig, get_settings
from ambulance_dispatch.core.errors import CallPlacementError, VoiceProviderError
from ambulance_dispatch.schemas.voice import ExecutionRecord, PlacedCall
from ambulance_dispatch.services.transcripts import extract_transcript
from ambulance_dispatch.utils.phone import normalize_phone

EXECUTION_ID_FIELDS = ("execution_id", "id", "executionId", "uuid")


class VoiceCallClient:
    def __init__(self, settings: AppConfig | None = None, http_client: httpx.Client | None = None) -> None:
        self.settings = settings or get_settings()
        self.client = http_client or httpx.Client(timeout=self.settings.voice_http_timeout_seconds)

    @property
    def calls_url(self) -> str:
        return f"{self.settings.voice_api_base_url.rstrip('/')}{self.settings.voice_calls_path}"

    @property
    def executions_url(self) -> str:
        base = self.settings.voice_api_base_url.rstrip("/")
        return f"{base}/v2/agent/{self.settings.voice_driver_agent_id}/executions"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.voice_api_key}",
            "Content-Type": "application/json",
        }

    def place_call(self, *, recipient_phone: str | None, context: dict[str, Any]) -> PlacedCall:
        if not (self.settings.voice_api_base_url and self.settings.voice_api_key and self.settings.voice_driver_agent_id):
            raise CallPlacementError("Voice provider credentials not configured")

        phone = normalize_phone(recipient_phone, self.settings.phone_country_code)
        if not phone:
            raise CallPlacementError(f"Invalid phone number format: {recipient_phone!r}")

        payload: dict[str, Any] = {
            "agent_id": self.settings.voice_driver_agent_id,
            "recipient_phone_number": phone,
            "from_phone_number": self.settings.voice_from_number,
            "user_data": context,
        }
        if self.settings.voice_webhook_url:
            payload["webhook_url"] = self.settings.voice_webhook_url

        logger.info("Placing driver call to {phone}", phone=phone)
        try:
            response = self.client.post(self.calls_url, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise CallPlacementError(f"Voice provider request failed: {exc}") from exc

        data = _json_or_empty(response)
        if not isinstance(data, dict):
            data = {}
        if response.status_code >= 400:
            raise CallPlacementError(data.get("message") or f"Voice provider returned HTTP {response.status_code}")

        execution_id = data.get("execution_id") or data.get("id")
        if not execution_id:
            raise CallPlacementError("Voice provider response missing execution_id")

        logger.info("Call placed execution_id={execution_id}", execution_id=execution_id)
        return PlacedCall(execution_id=str(execution_id), status=data.get("status"), recipient_phone=phone)

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        if not (self.settings.voice_api_base_url and self.settings.voice_api_key and self.settings.voice_driver_agent_id):
            raise VoiceProviderError("Voice provider credentials not configured")

        response = self.client.get(self.executions_url, headers=self._headers())
        response.raise_for_status()
        executions = _executions_from(response.json())

        for execution in executions:
            if not isinstance(execution, dict):
                continue
            if any(execution.get(field) == execution_id for field in EXECUTION_ID_FIELDS):
                return ExecutionRecord(
                    execution_id=execution_id,
                    status=execution.get("status"),
                    hangup_by=execution.get("hangup_by"),
                    transcript=extract_transcript(execution),
                    duration_seconds=float(execution.get("duration_in_seconds") or 0),
                )

        logger.debug(
            "Execution {execution_id} not listed yet ({count} executions)",
            execution_id=execution_id,
            count=len(executions),
        )
        return None


def _json_or_empty(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


def _executions_from(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("executions", "data"):
            if isinstance(data.get(key), list):
                return data[key]
    logger.warning("Unexpected executions payload type {kind}", kind=type(data).__name__)
    return []


@lru_cache
def get_voice_client() -> VoiceCallClient:
    return VoiceCallClient()
