"""
Cooldown Tracker — keeps a fired rule quiet for its cooldown window.

In-memory state for fast lookups, backed by the store for durability
across restarts. A key may fire again once
`now - last_triggered_at >= cooldown_minutes`.
"""

import threading
from datetime import datetime, timedelta
from typing import Dict, Optional

import structlog

from hazard_alerts.data.store import DataStore
from hazard_alerts.errors import DataAccessError
from hazard_alerts.models.engine import CooldownKeyMode, CooldownState
from hazard_alerts.models.rule import Rule

logger = structlog.get_logger(__name__)


class CooldownTracker:
    """
    Single-writer cooldown bookkeeping. Safe for concurrent evaluation
    within one process; several engine processes need a shared store with
    an atomic check-and-set instead.
    """

    def __init__(
        self,
        store: Optional[DataStore] = None,
        key_mode: CooldownKeyMode = CooldownKeyMode.RULE,
    ):
        self.store = store
        self.key_mode = key_mode
        self._last_fired: Dict[str, datetime] = {}
        self._previous: Dict[str, Optional[datetime]] = {}   # Value before the last claim
        self._lock = threading.Lock()

    def rule_key(self, rule: Rule) -> str:
        """The cooldown key a rule is tracked under."""
        if self.key_mode == CooldownKeyMode.HAZARD_TYPE:
            return f"hazard_type:{rule.hazard_type.value}"
        return f"rule:{rule.id}"

    def _lookup(self, key: str) -> Optional[datetime]:
        """Cached value, falling back to the store on a miss. Caller holds the lock."""
        if key in self._last_fired:
            return self._last_fired[key]
        if self.store is None:
            return None
        try:
            ts = self.store.read_cooldown(key)
        except DataAccessError as e:
            logger.warning("cooldown_read_failed", key=key, error=str(e))
            return None
        if ts is not None:
            self._last_fired[key] = ts
        return ts

    def _suppressed(self, key: str, now: datetime, cooldown_minutes: float) -> bool:
        last = self._lookup(key)
        if last is None:
            return False
        return now - last < timedelta(minutes=cooldown_minutes)

    def should_suppress(self, key: str, now: datetime, cooldown_minutes: float) -> bool:
        """True while `key` is inside its cooldown window."""
        with self._lock:
            return self._suppressed(key, now, cooldown_minutes)

    def record_fired(self, key: str, ts: datetime) -> None:
        with self._lock:
            self._record(key, ts)

    def _record(self, key: str, ts: datetime) -> None:
        self._last_fired[key] = ts
        if self.store is None:
            return
        try:
            self.store.persist_cooldown(key, ts)
        except DataAccessError as e:
            # The in-memory value still applies for this process.
            logger.warning("cooldown_persist_failed", key=key, error=str(e))

    def claim(self, key: str, now: datetime, cooldown_minutes: float) -> bool:
        """
        Atomic check-and-set: record a firing at `now` unless the key is
        still cooling down. Returns True if the caller may fire.
        """
        with self._lock:
            if self._suppressed(key, now, cooldown_minutes):
                return False
            self._previous[key] = self._lookup(key)
            self._record(key, now)
            return True

    def release(self, key: str, claimed_at: datetime) -> None:
        """
        Undo a claim made at `claimed_at` whose alert was never recorded,
        restoring the previous firing time. A later claim is left alone.
        """
        with self._lock:
            if self._last_fired.get(key) != claimed_at:
                return
            previous = self._previous.pop(key, None)
            if previous is None:
                self._last_fired.pop(key, None)
            else:
                self._last_fired[key] = previous
            if self.store is None:
                return
            try:
                if previous is None:
                    self.store.clear_cooldown(key)
                else:
                    self.store.persist_cooldown(key, previous)
            except DataAccessError as e:
                logger.warning("cooldown_release_failed", key=key, error=str(e))

    def reset(self, key: str) -> None:
        """Forget a key so its next trigger fires immediately."""
        with self._lock:
            self._last_fired.pop(key, None)
            self._previous.pop(key, None)
            if self.store is None:
                return
            try:
                self.store.clear_cooldown(key)
            except DataAccessError as e:
                logger.warning("cooldown_clear_failed", key=key, error=str(e))

    def last_fired(self, key: str) -> Optional[CooldownState]:
        with self._lock:
            ts = self._lookup(key)
        return CooldownState(key=key, last_triggered_at=ts) if ts else None

