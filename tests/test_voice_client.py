from __future__ import annotations

import json

import httpx
import pytest

from ambulance_dispatch.core.config import AppConfig
from ambulance_dispatch.core.errors import CallPlacementError, VoiceProviderError
from ambulance_dispatch.services.voice import VoiceCallClient


def _settings(**overrides) -> AppConfig:
    values = {
        "VOICE_API_BASE_URL": "https://voice.test/",
        "VOICE_API_KEY": "key-123",
        "VOICE_DRIVER_AGENT_ID": "agent-1",
        "VOICE_FROM_NUMBER": "+911234567890",
    }
    values.update(overrides)
    return AppConfig(**values)


def _client(handler, **overrides) -> VoiceCallClient:
    return VoiceCallClient(settings=_settings(**overrides), http_client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_place_call_posts_normalized_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"execution_id": "exec-42", "status": "queued"})

    client = _client(handler, VOICE_WEBHOOK_URL="https://dispatch.test/voice/webhook")
    placed = client.place_call(recipient_phone="98765 43210", context={"booking_id": "BK-1"})

    assert placed.execution_id == "exec-42"
    assert placed.recipient_phone == "+919876543210"

    request = seen[0]
    body = json.loads(request.content)
    assert str(request.url) == "https://voice.test/call"
    assert request.headers["Authorization"] == "Bearer key-123"
    assert body["agent_id"] == "agent-1"
    assert body["recipient_phone_number"] == "+919876543210"
    assert body["from_phone_number"] == "+911234567890"
    assert body["user_data"] == {"booking_id": "BK-1"}
    assert body["webhook_url"] == "https://dispatch.test/voice/webhook"


def test_place_call_requires_credentials() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(CallPlacementError, match="credentials"):
        _client(handler, VOICE_API_KEY=None).place_call(recipient_phone="9876543210", context={})


def test_place_call_rejects_bad_phone() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(CallPlacementError, match="Invalid phone"):
        _client(handler).place_call(recipient_phone="12345", context={})


def test_place_call_surfaces_provider_rejection() -> None:
    client = _client(lambda request: httpx.Response(400, json={"message": "agent not found"}))

    with pytest.raises(CallPlacementError, match="agent not found"):
        client.place_call(recipient_phone="9876543210", context={})


def test_place_call_without_execution_id() -> None:
    client = _client(lambda request: httpx.Response(200, json={"status": "queued"}))

    with pytest.raises(CallPlacementError, match="missing execution_id"):
        client.place_call(recipient_phone="9876543210", context={})


def test_place_call_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(CallPlacementError, match="request failed"):
        _client(handler).place_call(recipient_phone="9876543210", context={})


def test_get_execution_finds_matching_record() -> None:
    seen: list[httpx.Request] = []
    executions = [
        {"id": "exec-1", "status": "in-progress"},
        {
            "id": "exec-2",
            "status": "completed",
            "hangup_by": "user",
            "duration_in_seconds": 31,
            "messages": [
                {"role": "assistant", "content": "Can you take the pickup?"},
                {"role": "user", "content": "Yes coming"},
            ],
        },
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=executions)

    record = _client(handler).get_execution("exec-2")

    assert seen[0].url.path == "/v2/agent/agent-1/executions"
    assert record.is_terminal
    assert record.transcript == "user: Yes coming"
    assert record.duration_seconds == 31


def test_get_execution_accepts_wrapped_payload() -> None:
    payload = {"data": [{"execution_id": "exec-7", "status": "completed", "transcript": "no"}]}
    record = _client(lambda request: httpx.Response(200, json=payload)).get_execution("exec-7")

    assert record.transcript == "no"
    assert not record.is_terminal


def test_get_execution_not_listed_yet() -> None:
    client = _client(lambda request: httpx.Response(200, json={"executions": []}))
    assert client.get_execution("exec-9") is None


def test_get_execution_http_error_propagates() -> None:
    client = _client(lambda request: httpx.Response(503))
    with pytest.raises(httpx.HTTPStatusError):
        client.get_execution("exec-1")


def test_get_execution_requires_credentials() -> None:
    client = _client(lambda request: httpx.Response(200, json=[]), VOICE_DRIVER_AGENT_ID=None)
    with pytest.raises(VoiceProviderError):
        client.get_execution("exec-1")
