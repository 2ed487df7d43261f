"""The notification record persisted when a rule fires."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from hazard_alerts.models.rule import GeographicScope, Severity


class TriggerEvent(BaseModel):
    """Ephemeral: a rule whose conditions all held at `evaluated_at`."""

    rule_id: str
    evaluated_at: datetime
    trigger_data: dict = {}                 # condition kind -> observed value


class Alert(BaseModel):
    """
    Immutable once created. `sent_at` is only ever written by the store,
    and only once.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    message: str
    alert_type: str                         # Hazard type, or "general"
    severity: Severity
    target_roles: List[str] = []
    target_locations: Optional[GeographicScope] = None
    created_at: datetime
    sent_at: Optional[datetime] = None
    created_by: str = "system"              # "system", an operator, or a rule id
    rule_id: Optional[str] = None
    trigger_data: dict = {}


class NotificationTemplate(BaseModel):
    """Per-channel message body with {{placeholders}}."""

    name: str                               # Usually an alert_type
    channel: str
    subject: Optional[str] = None
    body: str
