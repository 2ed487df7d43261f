"""
Data Access Layer — time-windowed reads over hazard reports, social posts
and official feeds, plus persistence for rules, alerts and cooldowns.

Behavioral Contract:
- Every query is bounded to [since, until] on the record's timestamp.
- HazardType.ANY disables the hazard-type filter.
- Any storage failure surfaces as DataAccessError; callers decide whether
  to fail closed.
- Alerts are immutable once persisted, except for sent_at, which is
  written at most once.
"""

import json
import math
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Protocol, Sequence

import structlog
from pydantic import ValidationError

from hazard_alerts.errors import DataAccessError
from hazard_alerts.models.alert import Alert, NotificationTemplate
from hazard_alerts.models.rule import GeographicScope, HazardType, Rule, Severity
from hazard_alerts.models.sources import (
    HazardReport,
    OfficialFeedEntry,
    Recipient,
    SocialPost,
)

logger = structlog.get_logger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"
EARTH_RADIUS_KM = 6371.0
AVERAGE_FIELDS = ("confidence_score", "sentiment_score")


def to_db_time(dt: datetime) -> str:
    """Fixed-width UTC timestamp so string order matches time order."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(_TS_FORMAT)


def from_db_time(value: str) -> datetime:
    return datetime.strptime(value, _TS_FORMAT)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


class DataStore(Protocol):
    """What the engine needs from the persisted store."""

    def query_report_count(
        self,
        hazard_type: HazardType,
        since: datetime,
        until: Optional[datetime] = None,
        geo_scope: Optional[GeographicScope] = None,
        severities: Optional[Sequence[Severity]] = None,
    ) -> int: ...

    def query_average(
        self,
        field: str,
        hazard_type: HazardType,
        since: datetime,
        until: Optional[datetime] = None,
        geo_scope: Optional[GeographicScope] = None,
    ) -> float: ...

    def query_recent_timestamps(
        self,
        hazard_type: HazardType,
        limit: int,
        until: Optional[datetime] = None,
        geo_scope: Optional[GeographicScope] = None,
    ) -> List[datetime]: ...

    def query_nearby(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        hazard_type: Optional[HazardType] = None,
    ) -> List[HazardReport]: ...

    def query_social_activity(
        self, since: datetime, min_relevance: float, until: Optional[datetime] = None
    ) -> int: ...

    def query_feed_freshness(
        self,
        source: str,
        feed_type: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> bool: ...

    def persist_alert(self, alert: Alert) -> str: ...

    def mark_alert_sent(self, alert_id: str, sent_at: datetime) -> bool: ...

    def get_alert(self, alert_id: str) -> Optional[Alert]: ...

    def list_alerts(self, limit: int = 50) -> List[Alert]: ...

    def list_active_rules(self) -> List[Rule]: ...

    def list_rules(self) -> List[Rule]: ...

    def get_rule(self, rule_id: str) -> Optional[Rule]: ...

    def save_rule(self, rule: Rule) -> Rule: ...

    def delete_rule(self, rule_id: str) -> bool: ...

    def persist_cooldown(self, key: str, ts: datetime) -> None: ...

    def read_cooldown(self, key: str) -> Optional[datetime]: ...

    def clear_cooldown(self, key: str) -> None: ...

    def mark_reports_verified(
        self, hazard_type: HazardType, since: datetime, until: datetime
    ) -> int: ...

    def list_recipients(self, roles: Iterable[str]) -> List[Recipient]: ...

    def get_template(self, name: str, channel: str) -> Optional[NotificationTemplate]: ...


class SQLiteDataStore:
    """
    SQLite-backed store. Prototype: SQLite. Production: the Postgres
    tables behind the dashboards.

    The connection is shared across worker threads; a lock serialises
    access to it.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS hazard_reports (
                    id TEXT PRIMARY KEY,
                    hazard_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    created_at TEXT NOT NULL,
                    confidence_score REAL,
                    sentiment_score REAL,
                    status TEXT NOT NULL DEFAULT 'pending'
                );
                CREATE INDEX IF NOT EXISTS idx_reports_type_created
                    ON hazard_reports(hazard_type, created_at);

                CREATE TABLE IF NOT EXISTS social_posts (
                    id TEXT PRIMARY KEY,
                    content TEXT NOT NULL DEFAULT '',
                    relevance_score REAL NOT NULL,
                    sentiment_score REAL,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_social_created ON social_posts(created_at);

                CREATE TABLE IF NOT EXISTS official_feeds (
                    id TEXT PRIMARY KEY,
                    source TEXT NOT NULL,
                    feed_type TEXT NOT NULL,
                    valid_from TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL DEFAULT '{}'
                );
                CREATE INDEX IF NOT EXISTS idx_feeds_source_type
                    ON official_feeds(source, feed_type, valid_from);

                CREATE TABLE IF NOT EXISTS alerts (
                    id TEXT PRIMARY KEY,
                    alert_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    rule_id TEXT,
                    created_at TEXT NOT NULL,
                    sent_at TEXT,
                    record_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_alerts_created ON alerts(created_at);

                CREATE TABLE IF NOT EXISTS alert_rules (
                    id TEXT PRIMARY KEY,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    rule_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS cooldowns (
                    key TEXT PRIMARY KEY,
                    last_triggered_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS recipients (
                    id TEXT PRIMARY KEY,
                    role TEXT NOT NULL,
                    record_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS notification_templates (
                    name TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    record_json TEXT NOT NULL,
                    PRIMARY KEY (name, channel)
                );
            """)
            self._conn.commit()

    # --- Low-level helpers ---

    def _fetch(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            with self._lock:
                return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise DataAccessError(f"Query failed: {e}") from e

    def _write(self, sql: str, params: tuple = ()) -> int:
        """Execute and commit a single statement; returns the rowcount."""
        try:
            with self._lock:
                cursor = self._conn.execute(sql, params)
                self._conn.commit()
                return cursor.rowcount
        except sqlite3.Error as e:
            raise DataAccessError(f"Write failed: {e}") from e

    @staticmethod
    def _window_clause(
        column: str, since: Optional[datetime], until: Optional[datetime]
    ) -> tuple:
        clauses, params = [], []
        if since is not None:
            clauses.append(f"{column} >= ?")
            params.append(to_db_time(since))
        if until is not None:
            clauses.append(f"{column} <= ?")
            params.append(to_db_time(until))
        return clauses, params

    def _report_filter(
        self,
        hazard_type: Optional[HazardType],
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> tuple:
        clauses, params = self._window_clause("created_at", since, until)
        if hazard_type is not None and HazardType(hazard_type) != HazardType.ANY:
            clauses.append("hazard_type = ?")
            params.append(HazardType(hazard_type).value)
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params

    @staticmethod
    def _row_to_report(row: sqlite3.Row) -> HazardReport:
        return HazardReport(
            id=row["id"],
            hazard_type=row["hazard_type"],
            severity=row["severity"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            created_at=from_db_time(row["created_at"]),
            confidence_score=row["confidence_score"],
            sentiment_score=row["sentiment_score"],
            status=row["status"],
        )

    # --- Condition queries ---

    def query_report_count(
        self,
        hazard_type: HazardType,
        since: datetime,
        until: Optional[datetime] = None,
        geo_scope: Optional[GeographicScope] = None,
        severities: Optional[Sequence[Severity]] = None,
    ) -> int:
        """Count reports in the window, optionally by severity and region."""
        where, params = self._report_filter(hazard_type, since, until)
        if severities:
            marks = ", ".join("?" for _ in severities)
            where += (" AND " if where else " WHERE ") + f"severity IN ({marks})"
            params.extend(Severity(s).value for s in severities)

        if geo_scope is None or not geo_scope.regions:
            rows = self._fetch(f"SELECT COUNT(*) AS cnt FROM hazard_reports{where}", tuple(params))
            return rows[0]["cnt"]

        rows = self._fetch(
            f"SELECT latitude, longitude FROM hazard_reports{where}", tuple(params)
        )
        return sum(1 for r in rows if geo_scope.contains(r["latitude"], r["longitude"]))

    def query_average(
        self,
        field: str,
        hazard_type: HazardType,
        since: datetime,
        until: Optional[datetime] = None,
        geo_scope: Optional[GeographicScope] = None,
    ) -> float:
        """Mean of a score column over in-window reports; missing scores count as 0."""
        if field not in AVERAGE_FIELDS:
            raise DataAccessError(f"Cannot average unknown field: {field}")
        where, params = self._report_filter(hazard_type, since, until)

        if geo_scope is not None and geo_scope.regions:
            rows = self._fetch(
                f"SELECT latitude, longitude, {field} AS score FROM hazard_reports{where}",
                tuple(params),
            )
            scores = [
                r["score"] or 0.0
                for r in rows
                if geo_scope.contains(r["latitude"], r["longitude"])
            ]
            return sum(scores) / len(scores) if scores else 0.0

        rows = self._fetch(
            f"SELECT COUNT(*) AS cnt, TOTAL({field}) AS total FROM hazard_reports{where}",
            tuple(params),
        )
        count = rows[0]["cnt"]
        if not count:
            return 0.0
        return rows[0]["total"] / count

    def query_recent_timestamps(
        self,
        hazard_type: HazardType,
        limit: int,
        until: Optional[datetime] = None,
        geo_scope: Optional[GeographicScope] = None,
    ) -> List[datetime]:
        """Newest first."""
        where, params = self._report_filter(hazard_type, None, until)

        if geo_scope is not None and geo_scope.regions:
            rows = self._fetch(
                f"SELECT created_at, latitude, longitude FROM hazard_reports{where} "
                "ORDER BY created_at DESC",
                tuple(params),
            )
            in_scope = [
                r for r in rows if geo_scope.contains(r["latitude"], r["longitude"])
            ]
            return [from_db_time(r["created_at"]) for r in in_scope[:limit]]

        rows = self._fetch(
            f"SELECT created_at FROM hazard_reports{where} ORDER BY created_at DESC LIMIT ?",
            tuple(params) + (limit,),
        )
        return [from_db_time(r["created_at"]) for r in rows]

    def query_nearby(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        hazard_type: Optional[HazardType] = None,
    ) -> List[HazardReport]:
        """Reports within `radius_km`, nearest first."""
        where, params = self._report_filter(hazard_type, since, until)
        rows = self._fetch(f"SELECT * FROM hazard_reports{where}", tuple(params))

        nearby = []
        for row in rows:
            distance = haversine_km(lat, lon, row["latitude"], row["longitude"])
            if distance <= radius_km:
                nearby.append((distance, self._row_to_report(row)))
        nearby.sort(key=lambda pair: pair[0])
        return [report for _, report in nearby]

    def query_social_activity(
        self, since: datetime, min_relevance: float, until: Optional[datetime] = None
    ) -> int:
        clauses, params = self._window_clause("created_at", since, until)
        clauses.append("relevance_score > ?")
        params.append(min_relevance)
        rows = self._fetch(
            "SELECT COUNT(*) AS cnt FROM social_posts WHERE " + " AND ".join(clauses),
            tuple(params),
        )
        return rows[0]["cnt"]

    def query_feed_freshness(
        self,
        source: str,
        feed_type: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> bool:
        clauses, params = self._window_clause("valid_from", since, until)
        rows = self._fetch(
            "SELECT id FROM official_feeds WHERE source = ? AND feed_type = ? AND "
            + " AND ".join(clauses)
            + " LIMIT 1",
            (source, feed_type, *params),
        )
        return len(rows) > 0

    def mark_reports_verified(
        self, hazard_type: HazardType, since: datetime, until: datetime
    ) -> int:
        """Auto-verify pending reports in the window. Returns how many changed."""
        where, params = self._report_filter(hazard_type, since, until)
        return self._write(
            f"UPDATE hazard_reports SET status = 'verified'{where} AND status = 'pending'",
            tuple(params),
        )

    # --- Alerts ---

    def persist_alert(self, alert: Alert) -> str:
        self._write(
            """
            INSERT INTO alerts (id, alert_type, severity, rule_id, created_at, sent_at, record_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                alert.id,
                alert.alert_type,
                alert.severity.value,
                alert.rule_id,
                to_db_time(alert.created_at),
                to_db_time(alert.sent_at) if alert.sent_at else None,
                alert.model_dump_json(),
            ),
        )
        return alert.id

    def mark_alert_sent(self, alert_id: str, sent_at: datetime) -> bool:
        """Set sent_at once. Returns False if it was already set or the alert is unknown."""
        changed = self._write(
            "UPDATE alerts SET sent_at = ? WHERE id = ? AND sent_at IS NULL",
            (to_db_time(sent_at), alert_id),
        )
        return changed == 1

    def _row_to_alert(self, row: sqlite3.Row) -> Alert:
        alert = Alert.model_validate_json(row["record_json"])
        if row["sent_at"]:
            alert = alert.model_copy(update={"sent_at": from_db_time(row["sent_at"])})
        return alert

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        rows = self._fetch("SELECT record_json, sent_at FROM alerts WHERE id = ?", (alert_id,))
        return self._row_to_alert(rows[0]) if rows else None

    def list_alerts(self, limit: int = 50) -> List[Alert]:
        """Alert history, newest first."""
        rows = self._fetch(
            "SELECT record_json, sent_at FROM alerts ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (limit,),
        )
        return [self._row_to_alert(r) for r in rows]

    # --- Rules ---

    def save_rule(self, rule: Rule) -> Rule:
        """Insert or replace a rule."""
        self._write(
            """
            INSERT INTO alert_rules (id, is_active, rule_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                is_active = excluded.is_active,
                rule_json = excluded.rule_json,
                updated_at = excluded.updated_at
            """,
            (
                rule.id,
                int(rule.is_active),
                rule.model_dump_json(),
                to_db_time(rule.updated_at or datetime.utcnow()),
            ),
        )
        return rule

    def _deserialize_rules(self, rows: List[sqlite3.Row]) -> List[Rule]:
        rules = []
        for row in rows:
            try:
                rules.append(Rule.model_validate_json(row["rule_json"]))
            except ValidationError as e:
                logger.warning(
                    "rule_invalid",
                    rule_id=row["id"],
                    errors=e.error_count(),
                    detail=str(e),
                )
        return rules

    def list_active_rules(self) -> List[Rule]:
        rows = self._fetch("SELECT id, rule_json FROM alert_rules WHERE is_active = 1 ORDER BY rowid")
        return self._deserialize_rules(rows)

    def list_rules(self) -> List[Rule]:
        rows = self._fetch("SELECT id, rule_json FROM alert_rules ORDER BY rowid")
        return self._deserialize_rules(rows)

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        rows = self._fetch("SELECT id, rule_json FROM alert_rules WHERE id = ?", (rule_id,))
        rules = self._deserialize_rules(rows)
        return rules[0] if rules else None

    def delete_rule(self, rule_id: str) -> bool:
        """Soft-disable: history may still reference the rule."""
        rule = self.get_rule(rule_id)
        if rule is None:
            return False
        self.save_rule(rule.model_copy(update={"is_active": False, "updated_at": datetime.utcnow()}))
        return True

    # --- Cooldowns ---

    def persist_cooldown(self, key: str, ts: datetime) -> None:
        self._write(
            """
            INSERT INTO cooldowns (key, last_triggered_at) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET last_triggered_at = excluded.last_triggered_at
            """,
            (key, to_db_time(ts)),
        )

    def read_cooldown(self, key: str) -> Optional[datetime]:
        rows = self._fetch("SELECT last_triggered_at FROM cooldowns WHERE key = ?", (key,))
        return from_db_time(rows[0]["last_triggered_at"]) if rows else None

    def clear_cooldown(self, key: str) -> None:
        self._write("DELETE FROM cooldowns WHERE key = ?", (key,))

    # --- Recipients and templates ---

    def list_recipients(self, roles: Iterable[str]) -> List[Recipient]:
        roles = list(roles)
        if not roles:
            return []
        marks = ", ".join("?" for _ in roles)
        rows = self._fetch(
            f"SELECT record_json FROM recipients WHERE role IN ({marks}) ORDER BY rowid",
            tuple(roles),
        )
        return [Recipient.model_validate_json(r["record_json"]) for r in rows]

    def get_template(self, name: str, channel: str) -> Optional[NotificationTemplate]:
        rows = self._fetch(
            "SELECT record_json FROM notification_templates WHERE name = ? AND channel = ?",
            (name, channel),
        )
        return NotificationTemplate.model_validate_json(rows[0]["record_json"]) if rows else None

    # --- Ingestion (upstream producers, seeding, tests) ---

    def add_report(self, report: HazardReport) -> None:
        self._write(
            """
            INSERT INTO hazard_reports (
                id, hazard_type, severity, latitude, longitude, created_at,
                confidence_score, sentiment_score, status
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                report.id,
                report.hazard_type.value,
                report.severity.value,
                report.latitude,
                report.longitude,
                to_db_time(report.created_at),
                report.confidence_score,
                report.sentiment_score,
                report.status,
            ),
        )

    def get_report(self, report_id: str) -> Optional[HazardReport]:
        rows = self._fetch("SELECT * FROM hazard_reports WHERE id = ?", (report_id,))
        return self._row_to_report(rows[0]) if rows else None

    def add_social_post(self, post: SocialPost) -> None:
        self._write(
            """
            INSERT INTO social_posts (id, content, relevance_score, sentiment_score, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                post.id,
                post.content,
                post.relevance_score,
                post.sentiment_score,
                to_db_time(post.created_at),
            ),
        )

    def add_feed_entry(self, entry: OfficialFeedEntry) -> None:
        self._write(
            """
            INSERT INTO official_feeds (id, source, feed_type, valid_from, created_at, payload_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.source,
                entry.feed_type,
                to_db_time(entry.valid_from),
                to_db_time(entry.created_at),
                json.dumps(entry.payload, default=str),
            ),
        )

    def add_recipient(self, recipient: Recipient) -> None:
        self._write(
            "INSERT OR REPLACE INTO recipients (id, role, record_json) VALUES (?, ?, ?)",
            (recipient.id, recipient.role, recipient.model_dump_json()),
        )

    def save_template(self, template: NotificationTemplate) -> None:
        self._write(
            "INSERT OR REPLACE INTO notification_templates (name, channel, record_json) VALUES (?, ?, ?)",
            (template.name, template.channel, template.model_dump_json()),
        )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
