"""Outcome of running a fired rule's actions."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class DispatchResult(BaseModel):
    """What happened to each action of one alert."""

    alert_id: str
    persisted: bool = False                 # The alert record was written
    actions_completed: List[dict] = []
    actions_failed: List[dict] = []
    actions_scheduled: List[str] = []       # Delayed action types
    sent_at: Optional[datetime] = None
    success: bool = False
    error: Optional[str] = None
