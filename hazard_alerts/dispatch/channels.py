"""
Notification Channels — the delivery sinks (email, SMS, push, in-app).

Real providers live outside this service. A channel receives one
recipient and one rendered body per call and raises DeliveryError when it
cannot deliver.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol, Set

import structlog
from pydantic import BaseModel

from hazard_alerts.errors import DeliveryError
from hazard_alerts.models.alert import Alert
from hazard_alerts.models.sources import Recipient

logger = structlog.get_logger(__name__)


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    IN_APP = "in_app"


def address_for(channel: Channel, recipient: Recipient) -> Optional[str]:
    """Where a channel delivers to; None if the recipient cannot be reached on it."""
    if channel == Channel.EMAIL:
        return recipient.email
    if channel == Channel.SMS:
        return recipient.phone
    return recipient.id


class NotificationChannel(Protocol):
    def notify(self, channel: Channel, recipient: Recipient, alert: Alert, body: str) -> None:
        """Deliver `body` for `alert`. Raises DeliveryError on failure."""
        ...


class Delivery(BaseModel):
    channel: Channel
    recipient_id: str
    address: Optional[str] = None
    alert_id: str
    title: str
    body: str
    delivered_at: datetime


class LoggingChannel:
    """Default sink: records each delivery as a log event."""

    def notify(self, channel: Channel, recipient: Recipient, alert: Alert, body: str) -> None:
        logger.info(
            "notification_delivered",
            channel=channel.value,
            recipient_id=recipient.id,
            address=address_for(channel, recipient),
            alert_id=alert.id,
            title=alert.title,
        )


class RecordingChannel:
    """
    Keeps deliveries in memory. Channels listed in `failing` raise
    DeliveryError, standing in for a provider outage.
    """

    def __init__(self, failing: Optional[Set[Channel]] = None):
        self.deliveries: List[Delivery] = []
        self.failing: Set[Channel] = set(failing or ())

    def notify(self, channel: Channel, recipient: Recipient, alert: Alert, body: str) -> None:
        if channel in self.failing:
            raise DeliveryError(f"{channel.value} provider unavailable")
        self.deliveries.append(Delivery(
            channel=channel,
            recipient_id=recipient.id,
            address=address_for(channel, recipient),
            alert_id=alert.id,
            title=alert.title,
            body=body,
            delivered_at=datetime.utcnow(),
        ))

    def for_channel(self, channel: Channel) -> List[Delivery]:
        return [d for d in self.deliveries if d.channel == channel]
