"""Alert rules: operator-defined policies evaluated every engine cycle."""

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class HazardType(str, Enum):
    TSUNAMI = "tsunami"
    CYCLONE = "cyclone"
    FLOODING = "flooding"
    STORM_SURGE = "storm_surge"
    EROSION = "erosion"
    UNUSUAL_TIDES = "unusual_tides"
    COASTAL_DAMAGE = "coastal_damage"
    MARINE_POLLUTION = "marine_pollution"
    WEATHER_ANOMALY = "weather_anomaly"
    OTHER = "other"
    ANY = "any"     # Matches every hazard type in queries


class Operator(str, Enum):
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EQUALS = "equals"
    CONTAINS = "contains"           # Case-insensitive substring
    WITHIN_RADIUS = "within_radius"  # <=


class BoundingRegion(BaseModel):
    """Axis-aligned lat/lon box."""

    name: Optional[str] = None
    min_lat: float = Field(ge=-90, le=90)
    max_lat: float = Field(ge=-90, le=90)
    min_lon: float = Field(ge=-180, le=180)
    max_lon: float = Field(ge=-180, le=180)

    def contains(self, lat: float, lon: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon


class GeographicScope(BaseModel):
    """A point is in scope when any region contains it."""

    regions: List[BoundingRegion] = []

    def contains(self, lat: float, lon: float) -> bool:
        return any(r.contains(lat, lon) for r in self.regions)


# --- Conditions (discriminated on `type`) ---

class ReportCountCondition(BaseModel):
    type: Literal["report_count"] = "report_count"
    operator: Operator
    value: float
    time_window: Optional[int] = Field(default=None, gt=0)   # minutes


class SeverityThresholdCondition(BaseModel):
    """Counts high + critical reports."""

    type: Literal["severity_threshold"] = "severity_threshold"
    operator: Operator
    value: float
    time_window: Optional[int] = Field(default=None, gt=0)


class TimeWindowBurstCondition(BaseModel):
    """The `count` most recent reports arrived within `window_minutes`."""

    type: Literal["time_window_burst"] = "time_window_burst"
    count: int = Field(ge=1)
    window_minutes: float = Field(gt=0)


class LocationProximityCondition(BaseModel):
    type: Literal["location_proximity"] = "location_proximity"
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    radius_km: float = Field(gt=0)
    operator: Operator
    value: float
    time_window: Optional[int] = Field(default=None, gt=0)


class SocialActivityCondition(BaseModel):
    type: Literal["social_activity"] = "social_activity"
    operator: Operator
    value: float
    time_window: Optional[int] = Field(default=None, gt=0)
    min_relevance: float = Field(default=0.3, ge=0, le=1)


class OfficialDataPresenceCondition(BaseModel):
    type: Literal["official_data_presence"] = "official_data_presence"
    source: str
    feed_type: str
    freshness_window: int = Field(default=60, gt=0)


class ConfidenceThresholdCondition(BaseModel):
    """Average report confidence_score reaches `min_confidence`."""

    type: Literal["confidence_threshold"] = "confidence_threshold"
    min_confidence: float = Field(ge=0, le=1)
    time_window: Optional[int] = Field(default=None, gt=0)


class SentimentThresholdCondition(BaseModel):
    """|average sentiment_score| reaches `threshold`."""

    type: Literal["sentiment_threshold"] = "sentiment_threshold"
    threshold: float = Field(ge=0, le=1)
    time_window: Optional[int] = Field(default=None, gt=0)


Condition = Annotated[
    Union[
        ReportCountCondition,
        SeverityThresholdCondition,
        TimeWindowBurstCondition,
        LocationProximityCondition,
        SocialActivityCondition,
        OfficialDataPresenceCondition,
        ConfidenceThresholdCondition,
        SentimentThresholdCondition,
    ],
    Field(discriminator="type"),
]


# --- Actions ---

class ActionType(str, Enum):
    SEND_NOTIFICATION = "send_notification"
    CREATE_ALERT = "create_alert"
    ESCALATE = "escalate"
    AUTO_VERIFY = "auto_verify"
    SEND_SMS = "send_sms"
    SEND_EMAIL = "send_email"


PRIMARY_ACTIONS = frozenset({ActionType.SEND_NOTIFICATION, ActionType.CREATE_ALERT})


class Action(BaseModel):
    """Something to do once a rule fires."""

    type: ActionType
    target: List[str] = []                  # Recipient roles
    message: Optional[str] = None
    severity: Optional[Severity] = None     # Overrides the alert severity
    delay_minutes: Optional[float] = Field(default=None, ge=0)


class Rule(BaseModel):
    """A named, independently enabled alerting policy."""

    id: str
    name: str
    description: str = ""
    hazard_type: HazardType = HazardType.ANY
    conditions: List[Condition] = Field(min_length=1)   # AND-combined
    actions: List[Action] = []
    priority: Severity = Severity.MEDIUM
    time_window_minutes: int = Field(default=60, gt=0)
    cooldown_minutes: int = Field(default=60, ge=0)
    is_active: bool = True
    geographic_scope: Optional[GeographicScope] = None
    created_by: str = "system"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def target_roles(self) -> List[str]:
        """Union of action targets, in first-seen order."""
        roles: List[str] = []
        for action in self.actions:
            for role in action.target:
                if role not in roles:
                    roles.append(role)
        return roles
