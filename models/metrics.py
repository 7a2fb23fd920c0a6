"""Dataclasses for metric samples and findings."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from models.enums import Severity


@dataclass(frozen=True)
class MetricSample:
    metric_id: str
    value: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    tags: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        # Frozen: copy tags so the caller's dict can't mutate the sample
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))
        object.__setattr__(self, "value", float(self.value))

    def to_dict(self):
        return {
            "metric_id": self.metric_id,
            "timestamp": self.timestamp.isoformat(),
            "value": self.value,
            "tags": dict(self.tags),
        }


@dataclass(frozen=True)
class Finding:
    finding_id: str
    rule_id: str
    triggered_at: datetime
    sample_window: Tuple[MetricSample, ...] = ()
    severity: Severity = Severity.WARN
    message: str = ""
    synthetic: bool = False

    @classmethod
    def for_window(cls, rule, samples, message=""):
        """Build a Finding whose id is stable for a given newest sample."""
        newest = samples[-1]
        return cls(
            finding_id=f"{rule.rule_id}@{newest.timestamp.isoformat()}",
            rule_id=rule.rule_id,
            triggered_at=newest.timestamp,
            sample_window=tuple(samples),
            severity=rule.severity,
            message=message,
        )

    @property
    def latest_value(self) -> Optional[float]:
        if not self.sample_window:
            return None
        return self.sample_window[-1].value

    def to_dict(self):
        return {
            "finding_id": self.finding_id,
            "rule_id": self.rule_id,
            "triggered_at": self.triggered_at.isoformat(),
            "severity": self.severity.value,
            "message": self.message,
            "synthetic": self.synthetic,
            "values": [s.value for s in self.sample_window],
        }
