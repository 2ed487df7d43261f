"""Hazard alert engine data models."""

from hazard_alerts.models.alert import Alert, NotificationTemplate, TriggerEvent
from hazard_alerts.models.dispatch import DispatchResult
from hazard_alerts.models.engine import (
    ConditionResult,
    CooldownKeyMode,
    CooldownState,
    CycleReport,
    EngineConfig,
    RuleEvaluation,
    RuleState,
)
from hazard_alerts.models.rule import (
    Action,
    ActionType,
    BoundingRegion,
    Condition,
    ConfidenceThresholdCondition,
    GeographicScope,
    HazardType,
    LocationProximityCondition,
    OfficialDataPresenceCondition,
    Operator,
    ReportCountCondition,
    Rule,
    SentimentThresholdCondition,
    Severity,
    SeverityThresholdCondition,
    SocialActivityCondition,
    TimeWindowBurstCondition,
)
from hazard_alerts.models.sources import (
    HazardReport,
    OfficialFeedEntry,
    Recipient,
    SocialPost,
)

__all__ = [
    "Action",
    "ActionType",
    "Alert",
    "BoundingRegion",
    "Condition",
    "ConditionResult",
    "ConfidenceThresholdCondition",
    "CooldownKeyMode",
    "CooldownState",
    "CycleReport",
    "DispatchResult",
    "EngineConfig",
    "GeographicScope",
    "HazardReport",
    "HazardType",
    "LocationProximityCondition",
    "NotificationTemplate",
    "OfficialDataPresenceCondition",
    "OfficialFeedEntry",
    "Operator",
    "Recipient",
    "ReportCountCondition",
    "Rule",
    "RuleEvaluation",
    "RuleState",
    "SentimentThresholdCondition",
    "Severity",
    "SeverityThresholdCondition",
    "SocialActivityCondition",
    "SocialPost",
    "TimeWindowBurstCondition",
    "TriggerEvent",
]
