"""Dataclasses for rules, alerts and remediation audit records."""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from models.enums import ActionKind, ActionOutcome, AlertState, Comparator, Severity


def _parse_ts(value):
    if value is None or isinstance(value, datetime):
        return value
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _iso(ts):
    return ts.isoformat() if ts is not None else None


@dataclass
class Rule:
    rule_id: str
    metric_id: str
    comparator: Comparator = Comparator.GT
    threshold: float = 0.0
    consecutive_required: int = 1
    window_seconds: float = 60.0
    severity: Severity = Severity.WARN
    cool_down_cycles: Optional[int] = None
    description: str = ""
    enabled: bool = True

    def matches(self, value):
        return self.comparator.holds(value, self.threshold)

    @property
    def condition(self):
        return f"{self.metric_id} {self.comparator.symbol} {self.threshold:g}"


@dataclass
class Alert:
    alert_id: str
    rule_id: str
    state: AlertState = AlertState.OPEN
    severity: Severity = Severity.WARN
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_seen_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    resolved_at: Optional[datetime] = None
    occurrence_count: int = 1
    acknowledged_at: Optional[datetime] = None
    last_notified_at: Optional[datetime] = None
    message: str = ""

    @property
    def active(self):
        return self.state.active

    def to_dict(self):
        return {
            "alert_id": self.alert_id,
            "rule_id": self.rule_id,
            "state": self.state.value,
            "severity": self.severity.value,
            "opened_at": _iso(self.opened_at),
            "last_seen_at": _iso(self.last_seen_at),
            "resolved_at": _iso(self.resolved_at),
            "occurrence_count": self.occurrence_count,
            "acknowledged_at": _iso(self.acknowledged_at),
            "last_notified_at": _iso(self.last_notified_at),
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, d):
        """Reconstruct from a flat dict (e.g., DB row)."""
        return cls(
            alert_id=d["alert_id"],
            rule_id=d["rule_id"],
            state=AlertState(d.get("state", "OPEN")),
            severity=Severity(d.get("severity", "WARN")),
            opened_at=_parse_ts(d.get("opened_at")),
            last_seen_at=_parse_ts(d.get("last_seen_at")),
            resolved_at=_parse_ts(d.get("resolved_at")),
            occurrence_count=d.get("occurrence_count", 1),
            acknowledged_at=_parse_ts(d.get("acknowledged_at")),
            last_notified_at=_parse_ts(d.get("last_notified_at")),
            message=d.get("message") or "",
        )


@dataclass
class RemediationAction:
    action_id: str
    alert_id: str
    rule_id: str
    kind: ActionKind = ActionKind.NOTIFY_ONLY
    dry_run: bool = False
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    outcome: ActionOutcome = ActionOutcome.SUCCESS
    reason: str = ""
    details: dict = field(default_factory=dict)

    @property
    def live(self):
        """True when the action actually touched the database."""
        return (not self.dry_run
                and self.kind is not ActionKind.NOTIFY_ONLY
                and self.outcome is not ActionOutcome.SKIPPED_GUARDRAIL)

    def to_dict(self):
        return {
            "action_id": self.action_id,
            "alert_id": self.alert_id,
            "rule_id": self.rule_id,
            "kind": self.kind.value,
            "dry_run": self.dry_run,
            "executed_at": _iso(self.executed_at),
            "outcome": self.outcome.value,
            "reason": self.reason,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, d):
        details = d.get("details") or {}
        if isinstance(details, str):
            details = json.loads(details)
        return cls(
            action_id=d["action_id"],
            alert_id=d["alert_id"],
            rule_id=d["rule_id"],
            kind=ActionKind(d.get("kind", "NOTIFY_ONLY")),
            dry_run=bool(d.get("dry_run")),
            executed_at=_parse_ts(d.get("executed_at")),
            outcome=ActionOutcome(d.get("outcome", "SUCCESS")),
            reason=d.get("reason") or "",
            details=details,
        )
