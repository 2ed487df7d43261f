"""
Alert Composer — turns a fired rule and its trigger data into an Alert.

Pure templating: the same rule, trigger and timestamp always produce the
same title, message and alert id.
"""

import hashlib
import re
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from hazard_alerts.models.alert import Alert, TriggerEvent
from hazard_alerts.models.rule import GeographicScope, HazardType, Rule, Severity

HAZARD_DISPLAY_NAMES: Dict[str, str] = {
    HazardType.TSUNAMI.value: "Tsunami",
    HazardType.CYCLONE.value: "Cyclone",
    HazardType.FLOODING.value: "Flooding",
    HazardType.STORM_SURGE.value: "Storm Surge",
    HazardType.EROSION.value: "Coastal Erosion",
    HazardType.UNUSUAL_TIDES.value: "Unusual Tides",
    HazardType.COASTAL_DAMAGE.value: "Coastal Damage",
    HazardType.MARINE_POLLUTION.value: "Marine Pollution",
    HazardType.WEATHER_ANOMALY.value: "Weather Anomaly",
    HazardType.OTHER.value: "Other Hazard",
    HazardType.ANY.value: "Hazard",
}

SEVERITY_DISPLAY_NAMES: Dict[str, str] = {
    Severity.LOW.value: "LOW",
    Severity.MEDIUM.value: "MEDIUM",
    Severity.HIGH.value: "HIGH",
    Severity.CRITICAL.value: "CRITICAL",
}

TITLE_TEMPLATE = "{severity} ALERT: {hazard} Detected"
MESSAGE_TEMPLATE = (
    "Multiple {hazard} reports detected in the last {window} minutes. "
    "Report count: {count}, Average confidence: {confidence:.1f}%. "
    "Please review and take appropriate action."
)

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def hazard_display_name(hazard_type: str) -> str:
    """Unknown identifiers are returned unchanged."""
    key = hazard_type.value if isinstance(hazard_type, HazardType) else str(hazard_type)
    return HAZARD_DISPLAY_NAMES.get(key, key)


def severity_display_name(severity: str) -> str:
    key = severity.value if isinstance(severity, Severity) else str(severity)
    return SEVERITY_DISPLAY_NAMES.get(key, key)


def render_template(template: str, variables: Dict[str, object]) -> str:
    """Fill {{name}} placeholders; unknown names are left as written."""

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return _PLACEHOLDER.sub(_sub, template)


def alert_id_for(rule_id: str, evaluated_at: datetime) -> str:
    digest = hashlib.sha256(f"{rule_id}|{evaluated_at.isoformat()}".encode()).hexdigest()
    return f"alert_{digest[:12]}"


class AlertComposer:
    """Builds Alert records from trigger events."""

    def title(self, rule: Rule, severity: Optional[Severity] = None) -> str:
        return TITLE_TEMPLATE.format(
            severity=severity_display_name(severity or rule.priority),
            hazard=hazard_display_name(rule.hazard_type),
        )

    def message(self, rule: Rule, trigger_data: dict) -> str:
        count = trigger_data.get("report_count") or 0
        confidence = trigger_data.get("avg_confidence") or 0.0
        return MESSAGE_TEMPLATE.format(
            hazard=hazard_display_name(rule.hazard_type),
            window=rule.time_window_minutes,
            count=count,
            confidence=confidence * 100,
        )

    def compose(self, rule: Rule, trigger: TriggerEvent) -> Alert:
        return Alert(
            id=alert_id_for(rule.id, trigger.evaluated_at),
            title=self.title(rule),
            message=self.message(rule, trigger.trigger_data),
            alert_type=rule.hazard_type.value,
            severity=rule.priority,
            target_roles=rule.target_roles,
            target_locations=rule.geographic_scope,
            created_at=trigger.evaluated_at,
            created_by=rule.id,
            rule_id=rule.id,
            trigger_data=dict(trigger.trigger_data),
        )

    def compose_manual(
        self,
        title: str,
        message: str,
        alert_type: str,
        severity: Severity,
        target_roles: List[str],
        target_locations: Optional[GeographicScope] = None,
        created_by: str = "operator",
        created_at: Optional[datetime] = None,
    ) -> Alert:
        """Operator-triggered alert, bypassing rule evaluation."""
        return Alert(
            id=f"alert_{uuid4().hex[:12]}",
            title=title,
            message=message,
            alert_type=alert_type,
            severity=severity,
            target_roles=target_roles,
            target_locations=target_locations,
            created_at=created_at or datetime.utcnow(),
            created_by=created_by,
        )
