"""Tests for the Notification Dispatcher."""

import asyncio
import time
from datetime import datetime, timedelta

import pytest

from hazard_alerts.data.store import SQLiteDataStore
from hazard_alerts.dispatch.channels import Channel, RecordingChannel
from hazard_alerts.dispatch.dispatcher import NotificationDispatcher, manual_alert_actions
from hazard_alerts.errors import DataAccessError
from hazard_alerts.models.alert import Alert, NotificationTemplate
from hazard_alerts.models.engine import EngineConfig
from hazard_alerts.models.rule import (
    Action,
    ActionType,
    HazardType,
    Operator,
    ReportCountCondition,
    Rule,
    Severity,
)
from hazard_alerts.models.sources import HazardReport, Recipient

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _make_alert(severity: Severity = Severity.HIGH, alert_id: str = "alert_1") -> Alert:
    return Alert(
        id=alert_id,
        title="HIGH ALERT: Flooding Detected",
        message="Multiple Flooding reports detected in the last 60 minutes.",
        alert_type="flooding",
        severity=severity,
        target_roles=["analyst"],
        created_at=NOW,
        created_by="flood_rule",
        rule_id="flood_rule",
    )


def _make_rule(**overrides) -> Rule:
    fields = dict(
        id="flood_rule",
        name="Flood reports",
        hazard_type=HazardType.FLOODING,
        conditions=[ReportCountCondition(operator=Operator.GREATER_THAN, value=2)],
        time_window_minutes=60,
    )
    fields.update(overrides)
    return Rule(**fields)


def _seed_recipients(store: SQLiteDataStore) -> None:
    store.add_recipient(Recipient(
        id="analyst_1", name="Asha", role="analyst", email="asha@example.org", phone="+910000000001",
    ))
    store.add_recipient(Recipient(id="analyst_2", name="Kiran", role="analyst", email="kiran@example.org"))
    store.add_recipient(Recipient(
        id="admin_1", name="Dev", role="admin", email="dev@example.org", phone="+910000000002",
    ))


class BrokenAlertsStore(SQLiteDataStore):
    def persist_alert(self, alert):
        raise DataAccessError("alerts: read-only database")


class SlowChannel(RecordingChannel):
    def notify(self, channel, recipient, alert, body):
        time.sleep(0.3)
        super().notify(channel, recipient, alert, body)


class TestDispatch:
    def setup_method(self):
        self.store = SQLiteDataStore()
        _seed_recipients(self.store)
        self.channel = RecordingChannel()
        self.dispatcher = NotificationDispatcher(self.store, channel=self.channel)

    def _dispatch(self, alert, actions, rule=None):
        return asyncio.run(self.dispatcher.dispatch(alert, actions, rule=rule, now=NOW))

    def test_alert_persisted_and_marked_sent(self):
        result = self._dispatch(_make_alert(), [
            Action(type=ActionType.SEND_NOTIFICATION, target=["analyst"]),
        ])
        assert result.success is True
        assert result.sent_at == NOW
        assert self.store.get_alert("alert_1").sent_at == NOW

    def test_send_notification_channels_by_severity(self):
        self._dispatch(_make_alert(Severity.HIGH), [
            Action(type=ActionType.SEND_NOTIFICATION, target=["analyst"]),
        ])
        assert len(self.channel.for_channel(Channel.EMAIL)) == 2
        assert len(self.channel.for_channel(Channel.PUSH)) == 2
        assert len(self.channel.for_channel(Channel.IN_APP)) == 2
        assert self.channel.for_channel(Channel.SMS) == []

    def test_critical_alert_adds_sms_where_reachable(self):
        self._dispatch(_make_alert(Severity.CRITICAL), [
            Action(type=ActionType.SEND_NOTIFICATION, target=["analyst"]),
        ])
        sms = self.channel.for_channel(Channel.SMS)
        assert [d.recipient_id for d in sms] == ["analyst_1"]

    def test_failing_channel_does_not_block_others(self):
        channel = RecordingChannel(failing={Channel.EMAIL})
        dispatcher = NotificationDispatcher(self.store, channel=channel)

        result = asyncio.run(dispatcher.dispatch(_make_alert(), [
            Action(type=ActionType.SEND_NOTIFICATION, target=["analyst"]),
        ], now=NOW))

        assert result.success is True
        assert result.actions_completed[0]["data"]["failed"] == 2
        assert len(channel.for_channel(Channel.PUSH)) == 2
        assert result.sent_at == NOW

    def test_failing_action_does_not_block_others(self):
        channel = RecordingChannel(failing={Channel.SMS})
        dispatcher = NotificationDispatcher(self.store, channel=channel)

        result = asyncio.run(dispatcher.dispatch(_make_alert(), [
            Action(type=ActionType.SEND_SMS, target=["admin"]),
            Action(type=ActionType.SEND_EMAIL, target=["admin"]),
        ], now=NOW))

        assert result.success is False
        assert [o["action_type"] for o in result.actions_failed] == ["send_sms"]
        assert [o["action_type"] for o in result.actions_completed] == ["send_email"]
        assert result.sent_at == NOW

    def test_no_recipients_is_not_a_failure(self):
        result = self._dispatch(_make_alert(), [
            Action(type=ActionType.SEND_NOTIFICATION, target=["coast_guard"]),
        ])
        assert result.success is True
        assert result.actions_completed[0]["data"]["recipients"] == 0

    def test_action_overrides_message_and_severity(self):
        self._dispatch(_make_alert(Severity.HIGH), [
            Action(
                type=ActionType.SEND_NOTIFICATION,
                target=["admin"],
                message="Flood gates closing.",
                severity=Severity.CRITICAL,
            ),
        ])
        assert self.channel.for_channel(Channel.SMS)[0].body == "Flood gates closing."
        assert self.store.get_alert("alert_1").message.startswith("Multiple Flooding")

    def test_store_template_is_rendered(self):
        self.store.save_template(NotificationTemplate(
            name="flooding", channel="email",
            body="Dear {{user_name}}, {{alert_title}} [{{severity}}]",
        ))
        self._dispatch(_make_alert(), [
            Action(type=ActionType.SEND_EMAIL, target=["admin"]),
        ])
        assert self.channel.deliveries[0].body == "Dear Dev, HIGH ALERT: Flooding Detected [high]"

    def test_persist_failure_runs_no_actions(self):
        dispatcher = NotificationDispatcher(BrokenAlertsStore(), channel=self.channel)
        result = asyncio.run(dispatcher.dispatch(_make_alert(), [
            Action(type=ActionType.SEND_NOTIFICATION, target=["analyst"]),
        ], now=NOW))

        assert result.success is False
        assert "read-only" in result.error
        assert result.persisted is False
        assert self.channel.deliveries == []

    def test_slow_delivery_does_not_block_event_loop(self):
        channel = SlowChannel()
        dispatcher = NotificationDispatcher(self.store, channel=channel)

        async def scenario():
            done = asyncio.Event()
            gaps = []

            async def ticker():
                last = time.monotonic()
                while not done.is_set():
                    await asyncio.sleep(0.01)
                    now = time.monotonic()
                    gaps.append(now - last)
                    last = now

            async def send():
                try:
                    return await dispatcher.dispatch(_make_alert(), [
                        Action(type=ActionType.SEND_EMAIL, target=["admin"]),
                    ], now=NOW)
                finally:
                    done.set()

            _, result = await asyncio.gather(ticker(), send())
            return result, gaps

        result, gaps = asyncio.run(scenario())

        assert result.success is True
        assert len(channel.deliveries) == 1
        assert max(gaps) < 0.25


class TestSentAt:
    def setup_method(self):
        self.store = SQLiteDataStore()
        _seed_recipients(self.store)
        self.dispatcher = NotificationDispatcher(self.store, channel=RecordingChannel())

    def test_secondary_actions_do_not_mark_sent_when_primary_exists(self):
        channel = RecordingChannel(failing={Channel.EMAIL, Channel.PUSH, Channel.IN_APP})
        dispatcher = NotificationDispatcher(self.store, channel=channel)

        result = asyncio.run(dispatcher.dispatch(_make_alert(), [
            Action(type=ActionType.CREATE_ALERT, target=["analyst"]),
            Action(type=ActionType.AUTO_VERIFY),
        ], now=NOW))

        assert [o["action_type"] for o in result.actions_completed] == ["auto_verify"]
        assert result.sent_at is None
        assert self.store.get_alert("alert_1").sent_at is None

    def test_secondary_action_marks_sent_without_primary(self):
        result = asyncio.run(self.dispatcher.dispatch(_make_alert(), [
            Action(type=ActionType.ESCALATE),
        ], now=NOW))
        assert result.sent_at == NOW

    def test_sent_at_only_set_once(self):
        asyncio.run(self.dispatcher.dispatch(_make_alert(), [
            Action(type=ActionType.SEND_NOTIFICATION, target=["analyst"]),
        ], now=NOW))
        assert self.store.mark_alert_sent("alert_1", NOW + timedelta(minutes=1)) is False
        assert self.store.get_alert("alert_1").sent_at == NOW


class TestHandlers:
    def setup_method(self):
        self.store = SQLiteDataStore()
        _seed_recipients(self.store)
        self.channel = RecordingChannel()
        self.dispatcher = NotificationDispatcher(
            self.store, channel=self.channel, config=EngineConfig(escalation_roles=["admin"]),
        )

    def test_every_action_type_has_a_handler(self):
        assert set(self.dispatcher._handlers) == set(ActionType)

    def test_escalate_goes_to_escalation_roles_by_email_and_sms(self):
        asyncio.run(self.dispatcher.dispatch(_make_alert(), [
            Action(type=ActionType.ESCALATE),
        ], now=NOW))

        assert {d.channel for d in self.channel.deliveries} == {Channel.EMAIL, Channel.SMS}
        assert {d.recipient_id for d in self.channel.deliveries} == {"admin_1"}
        assert all(d.title.startswith("ESCALATED: ") for d in self.channel.deliveries)

    def test_create_alert_publishes_in_app(self):
        asyncio.run(self.dispatcher.dispatch(_make_alert(), [
            Action(type=ActionType.CREATE_ALERT, target=["analyst"]),
        ], now=NOW))
        assert {d.channel for d in self.channel.deliveries} == {Channel.IN_APP}

    def test_auto_verify_marks_rule_window_reports(self):
        for i, minutes_ago in enumerate([10, 30, 90]):
            self.store.add_report(HazardReport(
                id=f"r{i}", hazard_type=HazardType.FLOODING, severity=Severity.HIGH,
                latitude=13.0, longitude=80.2, created_at=NOW - timedelta(minutes=minutes_ago),
            ))

        result = asyncio.run(self.dispatcher.dispatch(_make_alert(), [
            Action(type=ActionType.AUTO_VERIFY),
        ], rule=_make_rule(), now=NOW))

        assert result.actions_completed[0]["data"] == {"verified_reports": 2}
        assert self.store.get_report("r2").status == "pending"

    def test_manual_alert_actions(self):
        actions = manual_alert_actions(["official", "citizen"])
        assert len(actions) == 1
        assert actions[0].type == ActionType.SEND_NOTIFICATION
        assert actions[0].target == ["official", "citizen"]


class TestDelayedActions:
    def test_delayed_action_is_scheduled_not_run(self):
        store = SQLiteDataStore()
        _seed_recipients(store)
        channel = RecordingChannel()
        dispatcher = NotificationDispatcher(store, channel=channel)

        async def scenario():
            result = await dispatcher.dispatch(_make_alert(), [
                Action(type=ActionType.SEND_NOTIFICATION, target=["analyst"]),
                Action(type=ActionType.ESCALATE, delay_minutes=30),
            ], now=NOW)
            pending = dispatcher.pending_count
            cancelled = await dispatcher.cancel_pending()
            return result, pending, cancelled

        result, pending, cancelled = asyncio.run(scenario())

        assert result.actions_scheduled == ["escalate"]
        assert pending == 1
        assert cancelled == 1
        assert dispatcher.pending_count == 0
        assert not any(d.title.startswith("ESCALATED") for d in channel.deliveries)

    def test_zero_delay_runs_immediately(self):
        store = SQLiteDataStore()
        _seed_recipients(store)
        dispatcher = NotificationDispatcher(store, channel=RecordingChannel())

        result = asyncio.run(dispatcher.dispatch(_make_alert(), [
            Action(type=ActionType.ESCALATE, delay_minutes=0),
        ], now=NOW))
        assert result.actions_scheduled == []
        assert len(result.actions_completed) == 1


@pytest.mark.parametrize("severity,expect_sms", [
    (Severity.LOW, False),
    (Severity.CRITICAL, True),
])
def test_sms_severities_are_configurable(severity, expect_sms):
    store = SQLiteDataStore()
    _seed_recipients(store)
    channel = RecordingChannel()
    dispatcher = NotificationDispatcher(store, channel=channel)

    asyncio.run(dispatcher.dispatch(_make_alert(severity), [
        Action(type=ActionType.SEND_NOTIFICATION, target=["admin"]),
    ], now=NOW))
    assert bool(channel.for_channel(Channel.SMS)) is expect_sms
