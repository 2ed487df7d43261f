"""Tests for the Cooldown Tracker."""

import threading
from datetime import datetime, timedelta

from hazard_alerts.cooldown.tracker import CooldownTracker
from hazard_alerts.data.store import SQLiteDataStore
from hazard_alerts.errors import DataAccessError
from hazard_alerts.models.engine import CooldownKeyMode
from hazard_alerts.models.rule import HazardType, Operator, ReportCountCondition, Rule

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _make_rule(rule_id: str = "rule_1", hazard_type: HazardType = HazardType.TSUNAMI) -> Rule:
    return Rule(
        id=rule_id,
        name="Tsunami watch",
        hazard_type=hazard_type,
        conditions=[ReportCountCondition(operator=Operator.GREATER_THAN, value=3)],
    )


class WriteOnlyFailingStore(SQLiteDataStore):
    def persist_cooldown(self, key, ts):
        raise DataAccessError("cooldowns: disk full")


class TestCooldownTracker:
    def setup_method(self):
        self.tracker = CooldownTracker()

    def test_never_fired_is_not_suppressed(self):
        assert self.tracker.should_suppress("rule:r1", NOW, 60) is False
        assert self.tracker.last_fired("rule:r1") is None

    def test_suppressed_inside_window(self):
        self.tracker.record_fired("rule:r1", NOW)
        assert self.tracker.should_suppress("rule:r1", NOW + timedelta(minutes=30), 60) is True

    def test_boundary_is_inclusive_of_expiry(self):
        self.tracker.record_fired("rule:r1", NOW)
        assert self.tracker.should_suppress("rule:r1", NOW + timedelta(minutes=59, seconds=59), 60)
        assert not self.tracker.should_suppress("rule:r1", NOW + timedelta(minutes=60), 60)

    def test_zero_cooldown_never_suppresses(self):
        self.tracker.record_fired("rule:r1", NOW)
        assert self.tracker.should_suppress("rule:r1", NOW, 0) is False

    def test_keys_are_independent(self):
        self.tracker.record_fired("rule:r1", NOW)
        assert self.tracker.should_suppress("rule:r2", NOW, 60) is False

    def test_claim_is_check_and_set(self):
        assert self.tracker.claim("rule:r1", NOW, 60) is True
        assert self.tracker.claim("rule:r1", NOW + timedelta(minutes=1), 60) is False
        assert self.tracker.last_fired("rule:r1").last_triggered_at == NOW
        assert self.tracker.claim("rule:r1", NOW + timedelta(minutes=61), 60) is True

    def test_concurrent_claims_admit_exactly_one(self):
        winners = []
        barrier = threading.Barrier(8)

        def contend():
            barrier.wait()
            if self.tracker.claim("rule:r1", NOW, 60):
                winners.append(threading.get_ident())

        threads = [threading.Thread(target=contend) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1


class TestCooldownKeys:
    def test_rule_mode(self):
        tracker = CooldownTracker(key_mode=CooldownKeyMode.RULE)
        assert tracker.rule_key(_make_rule("r1")) == "rule:r1"

    def test_hazard_type_mode_shares_key(self):
        tracker = CooldownTracker(key_mode=CooldownKeyMode.HAZARD_TYPE)
        assert tracker.rule_key(_make_rule("r1")) == tracker.rule_key(_make_rule("r2"))
        assert tracker.rule_key(_make_rule("r3", HazardType.CYCLONE)) == "hazard_type:cyclone"


class TestCooldownPersistence:
    def test_state_survives_a_new_tracker(self):
        store = SQLiteDataStore()
        CooldownTracker(store).record_fired("rule:r1", NOW)

        fresh = CooldownTracker(store)
        assert fresh.should_suppress("rule:r1", NOW + timedelta(minutes=10), 60) is True

    def test_release_restores_previous_firing(self):
        store = SQLiteDataStore()
        tracker = CooldownTracker(store)
        assert tracker.claim("rule:r1", NOW, 60) is True

        retry = NOW + timedelta(minutes=61)
        assert tracker.claim("rule:r1", retry, 60) is True
        tracker.release("rule:r1", retry)

        assert tracker.last_fired("rule:r1").last_triggered_at == NOW
        assert store.read_cooldown("rule:r1") == NOW

    def test_release_of_first_claim_clears_key(self):
        store = SQLiteDataStore()
        tracker = CooldownTracker(store)
        tracker.claim("rule:r1", NOW, 60)
        tracker.release("rule:r1", NOW)

        assert tracker.claim("rule:r1", NOW + timedelta(minutes=1), 60) is True
        assert store.read_cooldown("rule:r1") == NOW + timedelta(minutes=1)

    def test_release_leaves_later_claim_alone(self):
        tracker = CooldownTracker()
        tracker.claim("rule:r1", NOW, 0)
        later = NOW + timedelta(minutes=5)
        tracker.claim("rule:r1", later, 0)

        tracker.release("rule:r1", NOW)
        assert tracker.last_fired("rule:r1").last_triggered_at == later

    def test_reset_clears_memory_and_store(self):
        store = SQLiteDataStore()
        tracker = CooldownTracker(store)
        tracker.record_fired("rule:r1", NOW)

        tracker.reset("rule:r1")
        assert tracker.should_suppress("rule:r1", NOW + timedelta(minutes=1), 60) is False
        assert store.read_cooldown("rule:r1") is None

    def test_persist_failure_keeps_in_memory_state(self):
        tracker = CooldownTracker(WriteOnlyFailingStore())
        assert tracker.claim("rule:r1", NOW, 60) is True
        assert tracker.claim("rule:r1", NOW + timedelta(minutes=5), 60) is False
