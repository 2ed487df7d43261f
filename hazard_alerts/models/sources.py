"""Read-only inputs to condition evaluation, plus notification recipients."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from hazard_alerts.models.rule import HazardType, Severity


class HazardReport(BaseModel):
    """A citizen hazard report, scored upstream by the NLP pipeline."""

    id: str
    hazard_type: HazardType
    severity: Severity
    latitude: float
    longitude: float
    created_at: datetime
    confidence_score: Optional[float] = Field(default=None, ge=0, le=1)
    sentiment_score: Optional[float] = Field(default=None, ge=-1, le=1)
    status: str = "pending"                 # "pending" | "verified" | "rejected"


class SocialPost(BaseModel):
    id: str
    content: str = ""
    relevance_score: float = Field(ge=0, le=1)
    sentiment_score: Optional[float] = Field(default=None, ge=-1, le=1)
    created_at: datetime


class OfficialFeedEntry(BaseModel):
    """An entry from an official agency feed (e.g. INCOIS bulletins)."""

    id: str
    source: str
    feed_type: str
    valid_from: datetime
    created_at: datetime
    payload: dict = {}


class Recipient(BaseModel):
    id: str
    name: str
    role: str
    email: Optional[str] = None
    phone: Optional[str] = None
