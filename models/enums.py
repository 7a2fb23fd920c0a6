"""Enums for comparators, severity, alert state and remediation."""
import operator
from enum import Enum


class Comparator(str, Enum):
    GT = "GT"
    LT = "LT"
    GE = "GE"
    LE = "LE"
    EQ = "EQ"

    def holds(self, value, threshold):
        return _COMPARATOR_FUNCS[self](value, threshold)

    @property
    def symbol(self):
        return _COMPARATOR_SYMBOLS[self]


_COMPARATOR_FUNCS = {
    Comparator.GT: operator.gt,
    Comparator.LT: operator.lt,
    Comparator.GE: operator.ge,
    Comparator.LE: operator.le,
    Comparator.EQ: operator.eq,
}

_COMPARATOR_SYMBOLS = {
    Comparator.GT: ">",
    Comparator.LT: "<",
    Comparator.GE: ">=",
    Comparator.LE: "<=",
    Comparator.EQ: "==",
}


class Severity(str, Enum):
    WARN = "WARN"
    CRITICAL = "CRITICAL"

    @property
    def rank(self):
        return 1 if self is Severity.CRITICAL else 0


class AlertState(str, Enum):
    OPEN = "OPEN"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"

    @property
    def active(self):
        return self is not AlertState.RESOLVED


class Transition(str, Enum):
    """What an AlertManager operation did to an alert."""
    OPENED = "OPENED"
    UPDATED = "UPDATED"
    RENOTIFIED = "RENOTIFIED"
    DUPLICATE = "DUPLICATE"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    BUFFERED = "BUFFERED"


class ActionKind(str, Enum):
    KILL_CONNECTION = "KILL_CONNECTION"
    PURGE_BINARY_LOGS = "PURGE_BINARY_LOGS"
    RESTART_REPLICATION = "RESTART_REPLICATION"
    NOTIFY_ONLY = "NOTIFY_ONLY"


class ActionOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED_GUARDRAIL = "SKIPPED_GUARDRAIL"


class EventType(str, Enum):
    ALERT_OPENED = "ALERT_OPENED"
    ALERT_ACKNOWLEDGED = "ALERT_ACKNOWLEDGED"
    ALERT_RESOLVED = "ALERT_RESOLVED"
    REMEDIATION_EXECUTED = "REMEDIATION_EXECUTED"
