"""Pydantic schemas for AI responses.

Field types are strict: a string where a number is expected is a shape
violation, not something to coerce.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class SafetyClassifierOutput(BaseModel):
    model_config = ConfigDict(extra="ignore", strict=True)

    # Optional: without it the gate decides from email_type and confidence
    decision: Literal["auto_reply", "needs_approval", "ignore"] | None = None
    email_type: Literal[
        "LEAD",
        "PORTAL",
        "BUSINESS_CONTACT",
        "LEGAL",
        "VENDOR",
        "NEWSLETTER",
        "BILLING",
        "SYSTEM",
        "SPAM",
        "UNKNOWN",
    ]
    confidence: float
    reason: str = ""


class QaReviewOutput(BaseModel):
    model_config = ConfigDict(extra="ignore", strict=True)

    verdict: str
    reason: str = ""
    score: float | None = None


class IntentEntities(BaseModel):
    model_config = ConfigDict(extra="ignore")

    property_url: str | None = None
    address: str | None = None
    city: str | None = None
    neighbourhood: str | None = None
    budget_max: float | None = None
    rooms_min: float | None = None
    size_min_sqm: float | None = None
    furnished: bool | None = None
    pets: bool | None = None
    wants_alternatives: bool = False
    refers_to_previous_property: bool = False


class IntentClassifierOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    intent: str
    confidence: float = Field(strict=True)
    reason: str = ""
    entities: IntentEntities = Field(default_factory=IntentEntities)
