"""
Notification Dispatcher — runs a fired rule's actions against a composed Alert.

Behavioral Contract:
- The alert is persisted before any action runs.
- Store writes and deliveries run in worker threads, off the event loop.
- Every ActionType has exactly one handler.
- Each action, and each delivery inside it, fails independently.
- Actions with a delay run later as asyncio tasks; cancel_pending() drops
  the ones that have not run yet.
- The alert is marked sent once a primary action (send_notification or
  create_alert) succeeds, or any action if the rule has no primary action.
"""

import asyncio
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import structlog

from hazard_alerts.composer.templates import render_template
from hazard_alerts.data.store import DataStore
from hazard_alerts.dispatch.channels import (
    Channel,
    LoggingChannel,
    NotificationChannel,
    address_for,
)
from hazard_alerts.errors import DataAccessError, DeliveryError, DispatchError
from hazard_alerts.models.alert import Alert
from hazard_alerts.models.dispatch import DispatchResult
from hazard_alerts.models.engine import EngineConfig
from hazard_alerts.models.rule import PRIMARY_ACTIONS, Action, ActionType, HazardType, Rule
from hazard_alerts.models.sources import Recipient

logger = structlog.get_logger(__name__)

DEFAULT_VERIFY_WINDOW_MINUTES = 60


class NotificationDispatcher:
    """Fans an alert out to the handlers configured on its rule."""

    def __init__(
        self,
        store: DataStore,
        channel: Optional[NotificationChannel] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.store = store
        self.channel = channel or LoggingChannel()
        self.config = config or EngineConfig()
        self._handlers: Dict[ActionType, Callable] = {}
        self._pending: Set[asyncio.Task] = set()
        self._register_default_handlers()

    def _register_default_handlers(self) -> None:
        self._handlers[ActionType.SEND_NOTIFICATION] = self._send_notification
        self._handlers[ActionType.CREATE_ALERT] = self._create_alert
        self._handlers[ActionType.ESCALATE] = self._escalate
        self._handlers[ActionType.AUTO_VERIFY] = self._auto_verify
        self._handlers[ActionType.SEND_SMS] = self._send_sms
        self._handlers[ActionType.SEND_EMAIL] = self._send_email

        missing = set(ActionType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for action types: {sorted(m.value for m in missing)}")

    @property
    def pending_count(self) -> int:
        """Delayed actions still waiting to run."""
        return sum(1 for t in self._pending if not t.done())

    async def dispatch(
        self,
        alert: Alert,
        actions: Sequence[Action],
        rule: Optional[Rule] = None,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """Persist the alert, run immediate actions and schedule delayed ones."""
        if now is None:
            now = datetime.utcnow()

        try:
            await asyncio.to_thread(self.store.persist_alert, alert)
        except DataAccessError as e:
            logger.error("alert_persist_failed", alert_id=alert.id, error=str(e))
            return DispatchResult(alert_id=alert.id, success=False, error=str(e))

        has_primary = any(a.type in PRIMARY_ACTIONS for a in actions)
        result = DispatchResult(alert_id=alert.id, persisted=True)

        for action in actions:
            if action.delay_minutes:
                self._schedule(action, alert, rule, has_primary)
                result.actions_scheduled.append(action.type.value)
                continue

            outcome = await asyncio.to_thread(self._run_action, action, alert, rule, now)
            if outcome["success"]:
                result.actions_completed.append(outcome)
            else:
                result.actions_failed.append(outcome)

        if any(self._counts_as_sent(o, has_primary) for o in result.actions_completed):
            result.sent_at = await asyncio.to_thread(self._mark_sent, alert.id, now)

        result.success = len(result.actions_failed) == 0
        logger.info(
            "alert_dispatched",
            alert_id=alert.id,
            rule_id=rule.id if rule else None,
            completed=len(result.actions_completed),
            failed=len(result.actions_failed),
            scheduled=len(result.actions_scheduled),
            sent=result.sent_at is not None,
        )
        return result

    async def cancel_pending(self) -> int:
        """Cancel delayed actions that have not run yet. Returns how many."""
        tasks = [t for t in self._pending if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("delayed_actions_cancelled", count=len(tasks))
        return len(tasks)

    # --- Internals ---

    @staticmethod
    def _counts_as_sent(outcome: dict, has_primary: bool) -> bool:
        return not has_primary or ActionType(outcome["action_type"]) in PRIMARY_ACTIONS

    def _mark_sent(self, alert_id: str, ts: datetime) -> Optional[datetime]:
        try:
            if self.store.mark_alert_sent(alert_id, ts):
                return ts
        except DataAccessError as e:
            logger.error("alert_mark_sent_failed", alert_id=alert_id, error=str(e))
        return None

    def _schedule(
        self, action: Action, alert: Alert, rule: Optional[Rule], has_primary: bool
    ) -> None:
        task = asyncio.get_running_loop().create_task(
            self._run_delayed(action, alert, rule, has_primary)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run_delayed(
        self, action: Action, alert: Alert, rule: Optional[Rule], has_primary: bool
    ) -> None:
        await asyncio.sleep(action.delay_minutes * 60)
        now = datetime.utcnow()
        outcome = await asyncio.to_thread(self._run_action, action, alert, rule, now)
        if outcome["success"] and self._counts_as_sent(outcome, has_primary):
            await asyncio.to_thread(self._mark_sent, alert.id, now)

    def _run_action(
        self, action: Action, alert: Alert, rule: Optional[Rule], now: datetime
    ) -> dict:
        """Run one action; never raises."""
        handler = self._handlers[action.type]
        start = time.monotonic()
        try:
            data = handler(action, self._effective_alert(alert, action), rule, now)
            return {
                "action_type": action.type.value,
                "success": True,
                "data": data,
                "duration": round(time.monotonic() - start, 3),
            }
        except Exception as e:
            logger.warning(
                "action_failed",
                action_type=action.type.value,
                alert_id=alert.id,
                error=str(e),
            )
            return {
                "action_type": action.type.value,
                "success": False,
                "error": str(e),
                "duration": round(time.monotonic() - start, 3),
            }

    @staticmethod
    def _effective_alert(alert: Alert, action: Action) -> Alert:
        """Apply per-action message/severity overrides without touching the stored alert."""
        updates = {}
        if action.message:
            updates["message"] = action.message
        if action.severity:
            updates["severity"] = action.severity
        return alert.model_copy(update=updates) if updates else alert

    def _render(self, alert: Alert, channel: Channel, recipient: Recipient) -> str:
        try:
            template = self.store.get_template(alert.alert_type, channel.value)
        except DataAccessError as e:
            logger.warning("template_lookup_failed", alert_type=alert.alert_type, error=str(e))
            template = None

        return render_template(template.body if template else alert.message, {
            "user_name": recipient.name,
            "alert_title": alert.title,
            "alert_message": alert.message,
            "severity": alert.severity.value,
            "alert_type": alert.alert_type,
        })

    def _deliver(
        self, roles: Iterable[str], channels: List[Channel], alert: Alert
    ) -> dict:
        """
        Deliver to every recipient holding one of `roles` on every channel.
        Raises DispatchError only if recipients existed and nothing got through.
        """
        roles = list(roles)
        try:
            recipients = self.store.list_recipients(roles)
        except DataAccessError as e:
            raise DispatchError(f"Recipient lookup failed: {e}") from e

        if not recipients:
            logger.warning("no_recipients", alert_id=alert.id, roles=roles)
            return {"recipients": 0, "delivered": 0, "failed": 0}

        delivered, failed = 0, 0
        for recipient in recipients:
            for channel in channels:
                if address_for(channel, recipient) is None:
                    continue
                try:
                    self.channel.notify(channel, recipient, alert, self._render(alert, channel, recipient))
                    delivered += 1
                except DeliveryError as e:
                    failed += 1
                    logger.warning(
                        "delivery_failed",
                        channel=channel.value,
                        recipient_id=recipient.id,
                        alert_id=alert.id,
                        error=str(e),
                    )

        if delivered == 0 and failed > 0:
            raise DispatchError(f"All {failed} deliveries failed for alert {alert.id}")
        return {"recipients": len(recipients), "delivered": delivered, "failed": failed}

    @staticmethod
    def _roles(action: Action, alert: Alert) -> List[str]:
        return action.target or alert.target_roles

    # --- Handlers ---

    def _send_notification(
        self, action: Action, alert: Alert, rule: Optional[Rule], now: datetime
    ) -> dict:
        channels = [Channel.EMAIL, Channel.PUSH, Channel.IN_APP]
        if alert.severity in self.config.sms_severities:
            channels.insert(1, Channel.SMS)
        return self._deliver(self._roles(action, alert), channels, alert)

    def _create_alert(
        self, action: Action, alert: Alert, rule: Optional[Rule], now: datetime
    ) -> dict:
        """Publish to the in-app alert feed of the target roles."""
        return self._deliver(self._roles(action, alert), [Channel.IN_APP], alert)

    def _escalate(
        self, action: Action, alert: Alert, rule: Optional[Rule], now: datetime
    ) -> dict:
        escalated = alert.model_copy(update={"title": f"ESCALATED: {alert.title}"})
        roles = action.target or self.config.escalation_roles
        return self._deliver(roles, [Channel.EMAIL, Channel.SMS], escalated)

    def _auto_verify(
        self, action: Action, alert: Alert, rule: Optional[Rule], now: datetime
    ) -> dict:
        if rule is not None:
            hazard_type, window = rule.hazard_type, rule.time_window_minutes
        else:
            window = DEFAULT_VERIFY_WINDOW_MINUTES
            try:
                hazard_type = HazardType(alert.alert_type)
            except ValueError:
                hazard_type = HazardType.ANY
        try:
            verified = self.store.mark_reports_verified(
                hazard_type, now - timedelta(minutes=window), now
            )
        except DataAccessError as e:
            raise DispatchError(f"Auto-verify failed: {e}") from e
        return {"verified_reports": verified}

    def _send_sms(
        self, action: Action, alert: Alert, rule: Optional[Rule], now: datetime
    ) -> dict:
        return self._deliver(self._roles(action, alert), [Channel.SMS], alert)

    def _send_email(
        self, action: Action, alert: Alert, rule: Optional[Rule], now: datetime
    ) -> dict:
        return self._deliver(self._roles(action, alert), [Channel.EMAIL], alert)


def manual_alert_actions(target_roles: List[str]) -> Tuple[Action, ...]:
    """Actions for an operator alert: notify the target roles right away."""
    return (Action(type=ActionType.SEND_NOTIFICATION, target=list(target_roles)),)
