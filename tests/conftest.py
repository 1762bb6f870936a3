import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from itertools import count  # noqa: E402
from typing import Any, Callable  # noqa: E402

import pytest  # noqa: E402

from ambulance_dispatch.core.errors import CallPlacementError, VoiceProviderError  # noqa: E402
from ambulance_dispatch.models.booking import Booking  # noqa: E402
from ambulance_dispatch.models.driver import Driver  # noqa: E402
from ambulance_dispatch.schemas.messaging import MessageResult  # noqa: E402
from ambulance_dispatch.schemas.voice import ExecutionRecord, PlacedCall  # noqa: E402
from ambulance_dispatch.services.classifier import KeywordResponseClassifier  # noqa: E402
from ambulance_dispatch.services.db import build_engine, init_db, make_session_factory  # noqa: E402
from ambulance_dispatch.services.dispatch import DispatchCoordinator  # noqa: E402
from ambulance_dispatch.services.queue import QueueRepository, RankedCandidate  # noqa: E402
from ambulance_dispatch.services.transcripts import CallTranscriptRetriever  # noqa: E402


class FakeVoiceClient:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.executions: dict[str, ExecutionRecord] = {}
        self.failing_phones: set[str] = set()
        self.fetch_errors = 0
        self._ids = count(1)

    def place_call(self, *, recipient_phone: str | None, context: dict[str, Any]) -> PlacedCall:
        if recipient_phone in self.failing_phones:
            raise CallPlacementError(f"Invalid phone number format: {recipient_phone!r}")
        execution_id = f"exec-{next(self._ids)}"
        self.calls.append({"phone": recipient_phone, "context": context, "execution_id": execution_id})
        return PlacedCall(execution_id=execution_id, recipient_phone=recipient_phone or "")

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        if self.fetch_errors:
            self.fetch_errors -= 1
            raise VoiceProviderError("provider unavailable")
        return self.executions.get(execution_id)

    def finish(self, execution_id: str, transcript: str, status: str = "completed") -> None:
        self.executions[execution_id] = ExecutionRecord(
            execution_id=execution_id,
            status=status,
            hangup_by="user",
            transcript=transcript,
            duration_seconds=12,
        )


class FakeMessenger:
    def __init__(self, success: bool = True) -> None:
        self.success = success
        self.sent: list[tuple[str | None, list[str]]] = []

    def send_message(self, recipient_phone: str | None, fields: list[str]) -> MessageResult:
        self.sent.append((recipient_phone, fields))
        if not self.success:
            return MessageResult(success=False, error="HTTP 500")
        return MessageResult(success=True, provider_message_id=f"msg-{len(self.sent)}", recipient_phone=recipient_phone)


class RecordingScheduler:
    def __init__(self) -> None:
        self.jobs: list[tuple[str, Callable[..., Any], tuple]] = []

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self.jobs.append((name, fn, args))

    def run_next(self) -> Any:
        name, fn, args = self.jobs.pop(0)
        return fn(*args)

    def shutdown(self, wait: bool = False) -> None:
        self.jobs.clear()


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory) -> QueueRepository:
    return QueueRepository(session_factory)


@pytest.fixture
def make_driver(session_factory):
    def _make(first_name: str, phone: str | None = "9876543210", **fields: Any) -> Driver:
        with session_factory() as session:
            driver = Driver(first_name=first_name, last_name=fields.pop("last_name", "Singh"), phone=phone, **fields)
            session.add(driver)
            session.commit()
            return driver

    return _make


@pytest.fixture
def make_booking(session_factory):
    codes = count(1)

    def _make(**fields: Any) -> Booking:
        defaults = {
            "booking_code": f"BK-{next(codes):04d}",
            "address": "12 MG Road",
            "city": "Pune",
            "pincode": "411001",
            "nearest_hospital": "City Hospital",
            "phone_number": "9123456789",
        }
        defaults.update(fields)
        with session_factory() as session:
            booking = Booking(**defaults)
            session.add(booking)
            session.commit()
            return booking

    return _make


@pytest.fixture
def voice() -> FakeVoiceClient:
    return FakeVoiceClient()


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def coordinator(repository, voice, messenger, scheduler, sleeps) -> DispatchCoordinator:
    classifier = KeywordResponseClassifier()
    retriever = CallTranscriptRetriever(
        voice_client=voice,
        classifier=classifier,
        max_wait_seconds=10,
        poll_interval_seconds=2,
        sleep=sleeps.append,
    )
    return DispatchCoordinator(
        repository=repository,
        voice_client=voice,
        retriever=retriever,
        classifier=classifier,
        messenger=messenger,
        scheduler=scheduler,
        advance_delay_seconds=0,
        sleep=sleeps.append,
    )


@pytest.fixture
def three_driver_booking(make_booking, make_driver):
    """A booking plus three candidates; positions follow distance."""
    booking = make_booking()
    near = make_driver("Asha", phone="9000000001")
    middle = make_driver("Bilal", phone="9000000002")
    far = make_driver("Chetan", phone="9000000003")
    candidates = [
        RankedCandidate(driver_id=far.id, distance=7.5),
        RankedCandidate(driver_id=near.id, distance=1.2),
        RankedCandidate(driver_id=middle.id, distance=3.4),
    ]
    return booking, [near, middle, far], candidates
