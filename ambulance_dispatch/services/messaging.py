from __future__ import annotations

import re
from functools import lru_cache

import httpx
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ambulance_dispatch.core.config import AppConfig, get_settings
from ambulance_dispatch.models.booking import Booking
from ambulance_dispatch.schemas.messaging import MessageResult
from ambulance_dispatch.utils.phone import display_phone, messaging_phone

_COORDINATES = re.compile(r"Location:\s*([-\d.]+),\s*([-\d.]+)")


def format_location(booking: Booking) -> str:
    parts: list[str] = []
    if booking.address:
        parts.append(booking.address)
    city_info = " - ".join(part for part in (booking.city, booking.pincode) if part)
    if city_info:
        parts.append(city_info)
    if booking.remarks:
        match = _COORDINATES.search(booking.remarks)
        if match:
            lat, lng = match.groups()
            parts.append(f"https://maps.google.com/?q={lat},{lng}")
    return "\n".join(parts) or "Location not available"


def format_hospital(booking: Booking) -> str:
    parts: list[str] = []
    if booking.nearest_hospital:
        parts.append(booking.nearest_hospital)
    if booking.hospital_phone:
        parts.append(f"Phone: {booking.hospital_phone}")
    return "\n".join(parts) or "Hospital info not available"


def format_contact(booking: Booking, country_code: str = "91") -> str:
    return display_phone(booking.phone_number, country_code) or "Contact not available"


def booking_message_fields(booking: Booking, country_code: str = "91") -> list[str]:
    return [format_location(booking), format_hospital(booking), format_contact(booking, country_code)]


class MessagingClient:
    """Template message delivery (WhatsApp) to the assigned driver."""

    def __init__(self, settings: AppConfig | None = None, http_client: httpx.Client | None = None) -> None:
        self.settings = settings or get_settings()
        self.client = http_client or httpx.Client(timeout=self.settings.voice_http_timeout_seconds)

    def send_message(self, recipient_phone: str | None, fields: list[str]) -> MessageResult:
        if not self.settings.messaging_api_key:
            logger.error("Messaging API key not configured")
            return MessageResult(success=False, error="Messaging API key not configured")

        phone = messaging_phone(recipient_phone, self.settings.phone_country_code)
        if not phone:
            logger.error("Invalid phone number for messaging: {phone}", phone=recipient_phone)
            return MessageResult(success=False, error="Invalid phone number format")

        payload = {
            "messages": [
                {
                    "to": phone,
                    "content": {
                        "templateName": self.settings.messaging_template_name,
                        "language": "en",
                        "templateData": {"body": {"placeholders": fields}},
                    },
                }
            ]
        }
        try:
            response = self._post(payload)
        except httpx.HTTPError as exc:
            logger.warning("Messaging request to {phone} failed: {error}", phone=phone, error=exc)
            return MessageResult(success=False, recipient_phone=phone, error=str(exc))

        if response.status_code >= 400:
            logger.warning("Messaging provider returned HTTP {status}", status=response.status_code)
            return MessageResult(success=False, recipient_phone=phone, error=f"HTTP {response.status_code}")

        message_id = None
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            messages = data.get("messages")
            if isinstance(messages, list) and messages and isinstance(messages[0], dict):
                message_id = messages[0].get("messageId") or messages[0].get("id")
            message_id = message_id or data.get("messageId") or data.get("id")

        logger.info("Sent location message to {phone} id={message_id}", phone=phone, message_id=message_id)
        return MessageResult(success=True, provider_message_id=message_id, recipient_phone=phone)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _post(self, payload: dict) -> httpx.Response:
        return self.client.post(
            self.settings.messaging_api_url,
            json=payload,
            headers={
                "accept": "application/json",
                "content-type": "application/json",
                "Authorization": self.settings.messaging_api_key or "",
            },
        )


@lru_cache
def get_messaging_client() -> MessagingClient:
    return MessagingClient()
