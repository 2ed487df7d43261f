"""Engine configuration, cooldown state and per-cycle evaluation records."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from hazard_alerts.models.rule import Severity


class CooldownKeyMode(str, Enum):
    RULE = "rule"                   # One cooldown per rule id
    HAZARD_TYPE = "hazard_type"     # Shared by every rule on a hazard type


class EngineConfig(BaseModel):
    """Configuration for the Rule Engine."""

    evaluation_interval_seconds: float = Field(default=60, gt=0)
    rule_refresh_interval_seconds: float = Field(default=300, gt=0)
    rule_timeout_seconds: float = Field(default=10, gt=0)
    max_concurrent_evaluations: int = Field(default=4, ge=1)
    cooldown_key: CooldownKeyMode = CooldownKeyMode.RULE
    escalation_roles: List[str] = ["admin"]
    sms_severities: List[Severity] = [Severity.CRITICAL]


class CooldownState(BaseModel):
    """Last time a cooldown key fired."""

    key: str
    last_triggered_at: datetime


class RuleState(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    NOT_TRIGGERED = "not_triggered"
    TRIGGERED_IN_COOLDOWN = "triggered_in_cooldown"
    FIRED = "fired"


class ConditionResult(BaseModel):
    """Outcome of a single condition check."""

    kind: str
    met: bool
    context: dict = {}              # Observed values, e.g. {"report_count": 4}
    error: Optional[str] = None


class RuleEvaluation(BaseModel):
    """Where a rule ended up in one cycle, and why."""

    rule_id: str
    rule_name: str = ""
    state: RuleState = RuleState.IDLE
    evaluated_at: datetime
    condition_results: List[ConditionResult] = []
    conditions_met: bool = False
    trigger_data: dict = {}
    alert_id: Optional[str] = None
    error: Optional[str] = None


class CycleReport(BaseModel):
    """Summary of one evaluation cycle (the "last evaluation status")."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    rules_loaded: int = 0
    evaluations: List[RuleEvaluation] = []

    def count(self, state: RuleState) -> int:
        return sum(1 for e in self.evaluations if e.state == state)
