"""Rule evaluation over the per-metric sample buffers."""
import logging
from collections import defaultdict

from models.metrics import Finding

logger = logging.getLogger("mysqlwatch.alerts.evaluator")


class Evaluator:
    def __init__(self, rules, buffers):
        self.buffers = buffers
        self._by_metric = defaultdict(list)
        for rule in rules:
            if rule.enabled:
                self._by_metric[rule.metric_id].append(rule)

    def rules_for(self, metric_id):
        return list(self._by_metric.get(metric_id, []))

    def _check_rule(self, rule, samples):
        if len(samples) < rule.consecutive_required:
            return None
        window = samples[-rule.consecutive_required:]
        if not all(rule.matches(s.value) for s in window):
            return None
        span = (window[-1].timestamp - window[0].timestamp).total_seconds()
        if span > rule.window_seconds:
            return None
        values = ", ".join(f"{s.value:g}" for s in window)
        message = (f"{rule.condition} for {rule.consecutive_required} consecutive samples "
                   f"[{values}] over {span:g}s")
        return Finding.for_window(rule, window, message=message)

    def evaluate(self, metric_id, new_sample=None):
        """Evaluate every rule bound to metric_id.

        Returns {rule_id: Finding or None}; None marks an evaluation cycle in
        which the rule's condition did not hold.
        """
        buffer = self.buffers.get(metric_id)
        if buffer is None:
            return {}
        rules = self._by_metric.get(metric_id, [])
        if not rules:
            return {}
        samples = buffer.latest(max(r.consecutive_required for r in rules))
        if new_sample is not None and samples and samples[-1] is not new_sample:
            logger.debug(f"metric_id={metric_id}: newer sample already buffered")

        results = {}
        for rule in rules:
            finding = self._check_rule(rule, samples)
            if finding:
                logger.info(f"Finding rule_id={rule.rule_id}: {finding.message}")
            results[rule.rule_id] = finding
        return results

    def test_rules(self, metric_id):
        """Current standing of each rule on a metric, for display."""
        buffer = self.buffers.get(metric_id)
        last = buffer.last() if buffer else None
        results = []
        for rule in self._by_metric.get(metric_id, []):
            results.append({
                "rule_id": rule.rule_id,
                "condition": rule.condition,
                "current_value": last.value if last else None,
                "matches": rule.matches(last.value) if last else False,
                "severity": rule.severity.value,
            })
        return results
