from __future__ import annotations

from typing import Protocol

from ambulance_dispatch.schemas.classification import Classification, Confidence, Verdict

POSITIVE_KEYWORDS: tuple[str, ...] = (
    "yes",
    "yeah",
    "sure",
    "okay",
    "ok",
    "fine",
    "accept",
    "available",
    "i can",
    "i will",
    "i am available",
    "i'm available",
    "on my way",
    "coming",
    "reach",
    "confirm",
    "haan",
    "ha",
    "thik hai",
    "theek hai",
)

NEGATIVE_KEYWORDS: tuple[str, ...] = (
    "no",
    "not",
    "busy",
    "can't",
    "cannot",
    "unable",
    "unavailable",
    "not available",
    "occupied",
    "engaged",
    "sorry",
    "nahi",
    "nhi",
    "not possible",
    "won't",
    "will not",
    "refuse",
    "decline",
    "far",
    "too far",
    "another case",
    "other work",
)

# Speaker labels left in a transcript when somebody picked up but said nothing decisive.
CONVERSATION_MARKERS: tuple[str, ...] = ("user", "assistant")


class ResponseClassifier(Protocol):
    def classify(self, transcript: str | None) -> Classification: ...


class KeywordResponseClassifier:
    """Substring keyword vote over the driver's transcript."""

    def __init__(
        self,
        *,
        positive: tuple[str, ...] = POSITIVE_KEYWORDS,
        negative: tuple[str, ...] = NEGATIVE_KEYWORDS,
        markers: tuple[str, ...] = CONVERSATION_MARKERS,
    ) -> None:
        self.positive = positive
        self.negative = negative
        self.markers = markers

    def classify(self, transcript: str | None) -> Classification:
        if not transcript or not transcript.strip():
            return Classification(verdict=Verdict.NO_RESPONSE, confidence=Confidence.LOW, reason="Empty transcript")

        text = transcript.lower()
        positive_hits = [keyword for keyword in self.positive if keyword in text]
        negative_hits = [keyword for keyword in self.negative if keyword in text]

        if positive_hits and not negative_hits:
            return Classification(
                verdict=Verdict.ACCEPTED,
                confidence=Confidence.HIGH if len(positive_hits) >= 2 else Confidence.MEDIUM,
                reason=f"Found {len(positive_hits)} positive indicators",
                matched_keywords=positive_hits,
            )

        if negative_hits and not positive_hits:
            return Classification(
                verdict=Verdict.DECLINED,
                confidence=Confidence.HIGH if len(negative_hits) >= 2 else Confidence.MEDIUM,
                reason=f"Found {len(negative_hits)} negative indicators",
                matched_keywords=negative_hits,
            )

        if positive_hits and negative_hits:
            if len(negative_hits) > len(positive_hits):
                return Classification(
                    verdict=Verdict.DECLINED,
                    confidence=Confidence.MEDIUM,
                    reason="More negative indicators than positive",
                    matched_keywords=negative_hits,
                )
            # ties go to the driver accepting
            return Classification(
                verdict=Verdict.ACCEPTED,
                confidence=Confidence.MEDIUM,
                reason="At least as many positive indicators as negative",
                matched_keywords=positive_hits,
            )

        if any(marker in text for marker in self.markers):
            return Classification(
                verdict=Verdict.UNCLEAR,
                confidence=Confidence.LOW,
                reason="Conversation detected but no clear response",
            )

        return Classification(verdict=Verdict.NO_RESPONSE, confidence=Confidence.LOW, reason="No clear indicators found")
