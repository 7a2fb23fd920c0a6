"""Data models."""
from models.enums import Comparator, Severity, AlertState, Transition, ActionKind, ActionOutcome, EventType
from models.metrics import MetricSample, Finding
from models.alerts import Rule, Alert, RemediationAction
from models.events import NotifierEvent
