"""Structured event handed to notification channels."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from models.enums import EventType, Severity


@dataclass
class NotifierEvent:
    type: EventType
    alert_id: str
    rule_id: str
    severity: Severity = Severity.WARN
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: dict = field(default_factory=dict)
    message: Optional[str] = None

    def to_dict(self):
        return {
            "type": self.type.value,
            "alert_id": self.alert_id,
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }

    def summary(self):
        text = self.message or self.details.get("message", "")
        return f"{self.type.value} {self.rule_id} ({self.alert_id}) {text}".strip()
