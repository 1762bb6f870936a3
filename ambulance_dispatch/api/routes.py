from __future__ import annotations

import anyio
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError

from ambulance_dispatch.core.config import get_settings
from ambulance_dispatch.core.errors import BookingNotFoundError, QueueAlreadyExistsError, UnknownDriverError
from ambulance_dispatch.schemas import (
    CallCompletionEvent,
    DispatchRequest,
    DispatchResult,
    QueueEntryView,
    QueueStatusResponse,
)
from ambulance_dispatch.services.dispatch import DispatchCoordinator, get_coordinator
from ambulance_dispatch.services.queue import RankedCandidate
from ambulance_dispatch.services.webhook import WebhookIngest

router = APIRouter()


def _authorize(token: str | None) -> None:
    settings = get_settings()
    expected = settings.voice_webhook_token
    if expected and token != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token")


def _result(result: DispatchResult) -> JSONResponse:
    return JSONResponse(content=result.model_dump(mode="json", exclude_none=True))


@router.post("/bookings/{booking_id}/dispatch")
def dispatch_booking(
    booking_id: int,
    payload: DispatchRequest,
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    candidates = [RankedCandidate(driver_id=c.driver_id, distance=c.distance_km) for c in payload.candidates]
    try:
        result = coordinator.dispatch_booking(booking_id, candidates)
    except BookingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except QueueAlreadyExistsError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except UnknownDriverError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unhandled error dispatching booking {booking_id}", booking_id=booking_id)
        return JSONResponse(status_code=500, content={"status": "error", "message": str(exc)})

    logger.info("Dispatch for booking {booking_id}: {action}", booking_id=booking_id, action=result.action)
    return _result(result)


@router.post("/voice/webhook")
async def voice_webhook(
    request_raw: Request,
    coordinator: DispatchCoordinator = Depends(get_coordinator),
    x_webhook_token: str | None = Header(default=None, alias="x-webhook-token"),
):
    _authorize(x_webhook_token)

    try:
        body = await request_raw.json()
    except Exception:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")

    try:
        event = CallCompletionEvent.model_validate(body)
    except ValidationError as exc:
        logger.warning("Unrecognized voice webhook payload: {error}", error=exc)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors()) from exc

    try:
        # blocking database and provider calls run in the worker thread pool
        result = await anyio.to_thread.run_sync(WebhookIngest(coordinator).handle, event)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unhandled error for execution {execution_id}", execution_id=event.execution_id)
        return JSONResponse(status_code=500, content={"status": "error", "message": str(exc)})

    logger.info("Webhook {execution_id}: {action}", execution_id=event.execution_id, action=result.action)
    return _result(result)


@router.get("/bookings/{booking_id}/queue", response_model=QueueStatusResponse)
def booking_queue(booking_id: int, coordinator: DispatchCoordinator = Depends(get_coordinator)):
    repository = coordinator.repository
    booking = repository.get_booking(booking_id)
    if booking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Booking {booking_id} not found")
    return QueueStatusResponse(
        booking_id=booking.id,
        booking_code=booking.booking_code,
        status=booking.status,
        driver_id=booking.driver_id,
        notification_sent=booking.notification_sent,
        entries=[QueueEntryView.model_validate(entry) for entry in repository.list_entries(booking_id)],
    )


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
