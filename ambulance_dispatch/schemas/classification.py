from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class Verdict(str, Enum):
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    UNCLEAR = "UNCLEAR"
    NO_RESPONSE = "NO_RESPONSE"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Classification(BaseModel):
    verdict: Verdict
    confidence: Confidence
    reason: str
    matched_keywords: list[str] = Field(default_factory=list)
