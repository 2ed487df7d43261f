"""
Condition Evaluators — answer "is condition C true right now?".

Each evaluator reads through the DataStore and returns a ConditionResult
carrying the observed value, which the composer later interpolates into
the alert message. Evaluators hold no state, so evaluating the same
condition twice against the same data gives the same answer.

Failure policy:
- DataAccessError: the condition is not met (fail closed).
- ConditionEvaluationError: the condition is malformed; the caller fails
  the whole rule closed.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, get_args

from hazard_alerts.data.store import DataStore
from hazard_alerts.errors import ConditionEvaluationError, DataAccessError
from hazard_alerts.models.engine import ConditionResult
from hazard_alerts.models.rule import (
    Condition,
    ConfidenceThresholdCondition,
    GeographicScope,
    HazardType,
    LocationProximityCondition,
    OfficialDataPresenceCondition,
    Operator,
    ReportCountCondition,
    SentimentThresholdCondition,
    Severity,
    SeverityThresholdCondition,
    SocialActivityCondition,
    TimeWindowBurstCondition,
)

SEVERE = (Severity.HIGH, Severity.CRITICAL)


@dataclass(frozen=True)
class EvaluationContext:
    """Everything a condition needs besides its own config."""

    store: DataStore
    now: datetime
    hazard_type: HazardType = HazardType.ANY
    geo_scope: Optional[GeographicScope] = None
    default_window_minutes: int = 60

    def since(self, window_minutes: Optional[float]) -> datetime:
        minutes = window_minutes if window_minutes is not None else self.default_window_minutes
        return self.now - timedelta(minutes=minutes)


def compare(actual: Any, operator: Operator, expected: Any) -> bool:
    """Apply one of the shared comparison operators."""
    operator = Operator(operator)
    if operator == Operator.GREATER_THAN:
        return actual > expected
    if operator == Operator.LESS_THAN:
        return actual < expected
    if operator == Operator.EQUALS:
        return actual == expected
    if operator == Operator.CONTAINS:
        return str(expected).lower() in str(actual).lower()
    if operator == Operator.WITHIN_RADIUS:
        return actual <= expected
    raise ConditionEvaluationError(f"Unsupported operator: {operator}")


def _report_count(cond: ReportCountCondition, ctx: EvaluationContext) -> ConditionResult:
    count = ctx.store.query_report_count(
        ctx.hazard_type, ctx.since(cond.time_window), ctx.now, geo_scope=ctx.geo_scope
    )
    return ConditionResult(
        kind=cond.type,
        met=compare(count, cond.operator, cond.value),
        context={"report_count": count},
    )


def _severity_threshold(
    cond: SeverityThresholdCondition, ctx: EvaluationContext
) -> ConditionResult:
    severe = ctx.store.query_report_count(
        ctx.hazard_type,
        ctx.since(cond.time_window),
        ctx.now,
        geo_scope=ctx.geo_scope,
        severities=SEVERE,
    )
    return ConditionResult(
        kind=cond.type,
        met=compare(severe, cond.operator, cond.value),
        context={"severe_report_count": severe},
    )


def _time_window_burst(
    cond: TimeWindowBurstCondition, ctx: EvaluationContext
) -> ConditionResult:
    """
    True iff the `count` most recent reports span at most `window_minutes`.
    Detects acceleration rather than volume.
    """
    timestamps = ctx.store.query_recent_timestamps(
        ctx.hazard_type, cond.count, until=ctx.now, geo_scope=ctx.geo_scope
    )
    if len(timestamps) < cond.count:
        return ConditionResult(
            kind=cond.type, met=False, context={"burst_reports": len(timestamps)}
        )

    span_minutes = (timestamps[0] - timestamps[-1]).total_seconds() / 60.0
    return ConditionResult(
        kind=cond.type,
        met=compare(span_minutes, Operator.WITHIN_RADIUS, cond.window_minutes),
        context={"burst_reports": len(timestamps), "burst_span_minutes": round(span_minutes, 2)},
    )


def _location_proximity(
    cond: LocationProximityCondition, ctx: EvaluationContext
) -> ConditionResult:
    since = ctx.since(cond.time_window) if cond.time_window is not None else None
    reports = ctx.store.query_nearby(
        cond.lat,
        cond.lon,
        cond.radius_km,
        since=since,
        until=ctx.now,
        hazard_type=ctx.hazard_type,
    )
    return ConditionResult(
        kind=cond.type,
        met=compare(len(reports), cond.operator, cond.value),
        context={"nearby_report_count": len(reports)},
    )


def _social_activity(cond: SocialActivityCondition, ctx: EvaluationContext) -> ConditionResult:
    posts = ctx.store.query_social_activity(
        ctx.since(cond.time_window), cond.min_relevance, until=ctx.now
    )
    return ConditionResult(
        kind=cond.type,
        met=compare(posts, cond.operator, cond.value),
        context={"social_post_count": posts},
    )


def _official_data_presence(
    cond: OfficialDataPresenceCondition, ctx: EvaluationContext
) -> ConditionResult:
    fresh = ctx.store.query_feed_freshness(
        cond.source, cond.feed_type, ctx.since(cond.freshness_window), until=ctx.now
    )
    return ConditionResult(
        kind=cond.type,
        met=fresh,
        context={"official_feed": f"{cond.source}/{cond.feed_type}" if fresh else None},
    )


def _confidence_threshold(
    cond: ConfidenceThresholdCondition, ctx: EvaluationContext
) -> ConditionResult:
    average = ctx.store.query_average(
        "confidence_score",
        ctx.hazard_type,
        ctx.since(cond.time_window),
        until=ctx.now,
        geo_scope=ctx.geo_scope,
    )
    return ConditionResult(
        kind=cond.type,
        met=average >= cond.min_confidence,
        context={"avg_confidence": average},
    )


def _sentiment_threshold(
    cond: SentimentThresholdCondition, ctx: EvaluationContext
) -> ConditionResult:
    average = ctx.store.query_average(
        "sentiment_score",
        ctx.hazard_type,
        ctx.since(cond.time_window),
        until=ctx.now,
        geo_scope=ctx.geo_scope,
    )
    return ConditionResult(
        kind=cond.type,
        met=abs(average) >= cond.threshold,
        context={"sentiment_score": average},
    )


EVALUATORS: Dict[type, Callable[[Any, EvaluationContext], ConditionResult]] = {
    ReportCountCondition: _report_count,
    SeverityThresholdCondition: _severity_threshold,
    TimeWindowBurstCondition: _time_window_burst,
    LocationProximityCondition: _location_proximity,
    SocialActivityCondition: _social_activity,
    OfficialDataPresenceCondition: _official_data_presence,
    ConfidenceThresholdCondition: _confidence_threshold,
    SentimentThresholdCondition: _sentiment_threshold,
}

# Every member of the Condition union must have an evaluator.
_union_members = set(get_args(get_args(Condition)[0]))
if _union_members != set(EVALUATORS):
    raise RuntimeError(
        f"Condition evaluators out of sync: {sorted(c.__name__ for c in _union_members ^ set(EVALUATORS))}"
    )


def evaluate_condition(condition: Condition, ctx: EvaluationContext) -> ConditionResult:
    """
    Evaluate one condition. Data errors fail closed; a condition type with
    no evaluator raises ConditionEvaluationError.
    """
    evaluator = EVALUATORS.get(type(condition))
    if evaluator is None:
        raise ConditionEvaluationError(
            f"No evaluator for condition type: {getattr(condition, 'type', type(condition).__name__)}"
        )

    try:
        return evaluator(condition, ctx)
    except DataAccessError as e:
        return ConditionResult(kind=condition.type, met=False, error=str(e))
    except TypeError as e:
        # e.g. `contains` semantics applied to incomparable values
        raise ConditionEvaluationError(f"Malformed {condition.type} condition: {e}") from e
