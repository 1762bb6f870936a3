from .classification import Classification, Confidence, Verdict
from .dispatch import (
    CandidatePayload,
    DispatchRequest,
    DispatchResult,
    QueueEntryView,
    QueueStatusResponse,
)
from .messaging import MessageResult
from .voice import CallCompletion, CallCompletionEvent, ExecutionRecord, PlacedCall

__all__ = [
    "Classification",
    "Confidence",
    "Verdict",
    "CandidatePayload",
    "DispatchRequest",
    "DispatchResult",
    "QueueEntryView",
    "QueueStatusResponse",
    "MessageResult",
    "CallCompletion",
    "CallCompletionEvent",
    "ExecutionRecord",
    "PlacedCall",
]
