"""MonitorAgent - pipeline from polled samples to alerts and remediation."""
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from models.enums import AlertState, Comparator
from models.metrics import Finding, MetricSample
from monitor.collector import unavailable_rule_id

logger = logging.getLogger("mysqlwatch.agent")

_NUDGE = {Comparator.GT: 1, Comparator.LT: -1}


class MonitorAgent:
    def __init__(self, collector, evaluator, alert_manager, remediation=None, rules=None, clock=None):
        self.collector = collector
        self.evaluator = evaluator
        self.alert_manager = alert_manager
        self.remediation = remediation
        self.rules = {r.rule_id: r for r in (rules or [])}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def poll(self, source):
        """Collect one sample and push it through evaluation and alerting."""
        result = self.collector.poll(source)
        self.handle_poll(result)
        return result

    def handle_poll(self, result):
        changes = []
        if result.finding is not None:
            changes.append(self._observe(result.finding))
        if not result.ok:
            return changes

        cycle_key = (result.sample.timestamp if result.sample else self._clock()).isoformat()
        self.alert_manager.observe_clear(unavailable_rule_id(result.metric_id), cycle_key)
        if result.sample is None:
            return changes

        for rule_id, finding in self.evaluator.evaluate(result.metric_id, result.sample).items():
            if finding is not None:
                changes.append(self._observe(finding))
            else:
                change = self.alert_manager.observe_clear(rule_id, cycle_key)
                if change is not None:
                    changes.append(change)
        return changes

    def _observe(self, finding):
        change = self.alert_manager.observe_finding(finding)
        self._maybe_remediate(change)
        return change

    def _maybe_remediate(self, change):
        if self.remediation is None or change.alert is None or not change.alert.active:
            return None
        if change.announces and change.alert.state is AlertState.OPEN:
            return self.remediation.attempt(change.alert)
        if self.remediation.awaiting_approval(change.alert):
            return self.remediation.attempt(change.alert)
        return None

    def tick(self):
        """Housekeeping between polls."""
        self.alert_manager.tick()
        self.alert_manager.sync_with_store()

    def simulate(self, rule_id):
        """Force a Finding for rule_id through alerting and remediation.

        Returns (AlertChange, RemediationAction or None).
        """
        rule = self.rules.get(rule_id)
        if rule is None:
            raise ValueError(f"unknown rule {rule_id!r}")
        source = self.collector.sources.get(rule.metric_id)
        interval = source.interval_seconds if source else 10
        value = rule.threshold + _NUDGE.get(rule.comparator, 0)
        now = self._clock()
        samples = [
            MetricSample(metric_id=rule.metric_id, value=value,
                         timestamp=now - timedelta(seconds=interval * i), tags={"simulated": "true"})
            for i in reversed(range(rule.consecutive_required))
        ]
        finding = replace(
            Finding.for_window(rule, samples),
            synthetic=True,
            message=f"simulated: {rule.condition} ({value:g})",
        )
        logger.info(f"Simulating finding rule_id={rule_id}")
        change = self.alert_manager.observe_finding(finding)
        action = self._maybe_remediate(change)
        return change, action
