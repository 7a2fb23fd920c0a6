"""SQLite store for the alert table, remediation audit log and operator state."""
import json
import sqlite3
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from models.alerts import Alert, RemediationAction
from models.enums import AlertState
from utils.errors import StoreConflict, StoreUnavailable

logger = logging.getLogger("mysqlwatch.db")


class Database:
    def __init__(self, db_path="data/mysqlwatch.db"):
        self.db_path = db_path
        self.conn = None
        self._lock = threading.Lock()

    def connect(self):
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"cannot create store directory for {self.db_path}: {e}") from e
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self._create_tables()
        except sqlite3.Error as e:
            self.conn = None
            raise StoreUnavailable(f"cannot open store {self.db_path}: {e}") from e
        return self

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.close()

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS alerts (
                alert_id TEXT PRIMARY KEY,
                rule_id TEXT NOT NULL,
                state TEXT NOT NULL,
                severity TEXT NOT NULL,
                opened_at TEXT NOT NULL,
                last_seen_at TEXT NOT NULL,
                resolved_at TEXT,
                occurrence_count INTEGER NOT NULL DEFAULT 1,
                acknowledged_at TEXT,
                last_notified_at TEXT,
                message TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_alerts_rule_state
                ON alerts(rule_id, state);

            CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_one_active
                ON alerts(rule_id) WHERE state IN ('OPEN', 'ACKNOWLEDGED');

            CREATE TABLE IF NOT EXISTS remediation_actions (
                action_id TEXT PRIMARY KEY,
                alert_id TEXT NOT NULL,
                rule_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                dry_run INTEGER NOT NULL DEFAULT 0,
                executed_at TEXT NOT NULL,
                outcome TEXT NOT NULL,
                reason TEXT,
                details TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_actions_executed
                ON remediation_actions(executed_at);

            CREATE TABLE IF NOT EXISTS disabled_kinds (
                kind TEXT PRIMARY KEY,
                disabled_at TEXT NOT NULL,
                reason TEXT
            );

            CREATE TABLE IF NOT EXISTS approvals (
                alert_id TEXT PRIMARY KEY,
                approved_at TEXT NOT NULL,
                approved_by TEXT
            );
        """)
        self.conn.commit()

    def _execute(self, sql, params=()):
        if self.conn is None:
            raise StoreUnavailable("store is not connected")
        with self._lock:
            try:
                cur = self.conn.execute(sql, params)
                self.conn.commit()
                return cur
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                raise StoreConflict(f"store write rejected: {e}") from e
            except sqlite3.Error as e:
                raise StoreUnavailable(f"store write failed: {e}") from e

    def _query(self, sql, params=()):
        if self.conn is None:
            raise StoreUnavailable("store is not connected")
        with self._lock:
            try:
                return [dict(r) for r in self.conn.execute(sql, params).fetchall()]
            except sqlite3.Error as e:
                raise StoreUnavailable(f"store read failed: {e}") from e

    def ping(self):
        self._query("SELECT 1")
        return True

    # --- Alerts ---

    def upsert_alert(self, alert: Alert):
        """Insert or update an alert row.

        An ACKNOWLEDGED row is never moved back to OPEN and a RESOLVED row is
        never touched again: another process may acknowledge or resolve between
        the agent's read and write. A second active alert for the same rule_id
        raises StoreConflict.
        """
        d = alert.to_dict()
        self._execute("""
            INSERT INTO alerts
            (alert_id, rule_id, state, severity, opened_at, last_seen_at, resolved_at,
             occurrence_count, acknowledged_at, last_notified_at, message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(alert_id) DO UPDATE SET
                state = CASE
                    WHEN alerts.state = 'ACKNOWLEDGED' AND excluded.state = 'OPEN'
                    THEN alerts.state ELSE excluded.state END,
                acknowledged_at = COALESCE(excluded.acknowledged_at, alerts.acknowledged_at),
                severity = excluded.severity,
                last_seen_at = excluded.last_seen_at,
                resolved_at = excluded.resolved_at,
                occurrence_count = excluded.occurrence_count,
                last_notified_at = excluded.last_notified_at,
                message = excluded.message
            WHERE alerts.state != 'RESOLVED'
        """, (
            d["alert_id"], d["rule_id"], d["state"], d["severity"], d["opened_at"],
            d["last_seen_at"], d["resolved_at"], d["occurrence_count"],
            d["acknowledged_at"], d["last_notified_at"], d["message"],
        ))
        logger.debug(f"Saved alert alert_id={alert.alert_id} state={alert.state.value}")

    def get_alert(self, alert_id):
        rows = self._query("SELECT * FROM alerts WHERE alert_id = ?", (alert_id,))
        return Alert.from_dict(rows[0]) if rows else None

    def get_active_alert(self, rule_id):
        """The OPEN or ACKNOWLEDGED alert for rule_id, whoever opened it."""
        rows = self._query("""
            SELECT * FROM alerts WHERE rule_id = ? AND state IN ('OPEN', 'ACKNOWLEDGED')
        """, (rule_id,))
        return Alert.from_dict(rows[0]) if rows else None

    def get_active_alerts(self):
        rows = self._query("""
            SELECT * FROM alerts WHERE state IN ('OPEN', 'ACKNOWLEDGED')
            ORDER BY opened_at
        """)
        return [Alert.from_dict(r) for r in rows]

    def get_alerts(self, states=None, limit=100):
        query = "SELECT * FROM alerts"
        params = []
        if states:
            query += f" WHERE state IN ({', '.join('?' for _ in states)})"
            params.extend(AlertState(s).value for s in states)
        query += " ORDER BY opened_at DESC LIMIT ?"
        params.append(limit)
        return [Alert.from_dict(r) for r in self._query(query, params)]

    # --- Remediation audit log ---

    def save_action(self, action: RemediationAction):
        d = action.to_dict()
        self._execute("""
            INSERT INTO remediation_actions
            (action_id, alert_id, rule_id, kind, dry_run, executed_at, outcome, reason, details)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            d["action_id"], d["alert_id"], d["rule_id"], d["kind"], int(d["dry_run"]),
            d["executed_at"], d["outcome"], d["reason"], json.dumps(d["details"], default=str),
        ))

    def get_recent_actions(self, limit=50, alert_id=None):
        query = "SELECT * FROM remediation_actions"
        params = []
        if alert_id:
            query += " WHERE alert_id = ?"
            params.append(alert_id)
        query += " ORDER BY executed_at DESC LIMIT ?"
        params.append(limit)
        return [RemediationAction.from_dict(r) for r in self._query(query, params)]

    def get_last_live_action_times(self):
        """Latest executed (non-dry-run, non-skipped) action time per rule_id."""
        rows = self._query("""
            SELECT rule_id, MAX(executed_at) AS last_at FROM remediation_actions
            WHERE dry_run = 0 AND kind != 'NOTIFY_ONLY' AND outcome != 'SKIPPED_GUARDRAIL'
            GROUP BY rule_id
        """)
        result = {}
        for r in rows:
            ts = datetime.fromisoformat(r["last_at"])
            if ts.tzinfo is None:
                ts = ts.replace(tzinfo=timezone.utc)
            result[r["rule_id"]] = ts
        return result

    def get_action_stats(self, days=7):
        rows = self._query("""
            SELECT outcome, COUNT(*) AS count FROM remediation_actions
            WHERE executed_at >= ?
            GROUP BY outcome
        """, (_days_ago(days),))
        return {r["outcome"]: r["count"] for r in rows}

    # --- Circuit breaker state ---

    def disable_kind(self, kind, reason=""):
        self._execute("""
            INSERT OR REPLACE INTO disabled_kinds (kind, disabled_at, reason)
            VALUES (?, ?, ?)
        """, (str(getattr(kind, "value", kind)), datetime.now(timezone.utc).isoformat(), reason))

    def enable_kind(self, kind):
        cur = self._execute("DELETE FROM disabled_kinds WHERE kind = ?", (str(getattr(kind, "value", kind)),))
        return cur.rowcount > 0

    def get_disabled_kinds(self):
        rows = self._query("SELECT * FROM disabled_kinds ORDER BY disabled_at")
        return {r["kind"]: r for r in rows}

    # --- Approvals ---

    def approve_alert(self, alert_id, approved_by=""):
        self._execute("""
            INSERT OR REPLACE INTO approvals (alert_id, approved_at, approved_by)
            VALUES (?, ?, ?)
        """, (alert_id, datetime.now(timezone.utc).isoformat(), approved_by))

    def is_approved(self, alert_id):
        return bool(self._query("SELECT 1 FROM approvals WHERE alert_id = ?", (alert_id,)))


def _days_ago(days):
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
