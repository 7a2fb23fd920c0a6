"""Alert rules loading and validation."""
import logging

from models.alerts import Rule
from models.enums import Comparator, Severity
from utils.errors import ConfigurationError

logger = logging.getLogger("mysqlwatch.alerts.rules")

_COMPARATOR_ALIASES = {">": "GT", "<": "LT", ">=": "GE", "<=": "LE", "==": "EQ"}


class RulesManager:
    """Parses the `rules` config list and checks each rule against its source.

    Any malformed rule is a ConfigurationError: the agent refuses to start
    rather than silently monitor less than the operator asked for.
    """

    def __init__(self, raw_rules, sources, disabled_metrics=None):
        self.sources = {s.metric_id: s for s in sources}
        self.disabled_metrics = set(disabled_metrics or ())
        self.rules = []
        self.skipped = []
        self._parse_rules(raw_rules or [])
        logger.info(f"Loaded {len(self.rules)} rules ({len(self.skipped)} skipped, source disabled)")

    @classmethod
    def from_config(cls, config, sources, disabled_metrics=None):
        return cls(config.get("rules", []), sources, disabled_metrics)

    def _parse_rules(self, raw_rules):
        seen = set()
        for r in raw_rules:
            rule_id = r.get("id") or r.get("rule_id")
            if not rule_id:
                raise ConfigurationError(f"rule without id: {r}")
            if rule_id in seen:
                raise ConfigurationError(f"duplicate rule id {rule_id}")
            seen.add(rule_id)

            metric_id = r.get("metric")
            if metric_id in self.disabled_metrics:
                logger.warning(f"Rule {rule_id} skipped: source {metric_id} is disabled")
                self.skipped.append(rule_id)
                continue
            source = self.sources.get(metric_id)
            if source is None:
                raise ConfigurationError(f"rule {rule_id} references unknown metric {metric_id!r}")

            raw_cmp = str(r.get("comparator", "")).upper()
            raw_cmp = _COMPARATOR_ALIASES.get(raw_cmp, raw_cmp)
            try:
                comparator = Comparator(raw_cmp)
            except ValueError:
                raise ConfigurationError(f"rule {rule_id}: invalid comparator {r.get('comparator')!r}") from None

            try:
                severity = Severity(str(r.get("severity", "WARN")).upper())
                threshold = float(r["threshold"])
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigurationError(f"rule {rule_id}: invalid threshold/severity ({e})") from None

            consecutive = r.get("consecutive_required", 1)
            if not isinstance(consecutive, int) or consecutive < 1:
                raise ConfigurationError(f"rule {rule_id}: consecutive_required must be an integer >= 1")

            window = r.get("window_seconds", source.interval_seconds * consecutive)
            minimum = source.interval_seconds * consecutive
            if window < minimum:
                raise ConfigurationError(
                    f"rule {rule_id}: window_seconds {window} < poll interval "
                    f"{source.interval_seconds}s x consecutive_required {consecutive} = {minimum}s"
                )

            cool_down = r.get("cool_down_cycles")
            if cool_down is not None and (not isinstance(cool_down, int) or cool_down < 1):
                raise ConfigurationError(f"rule {rule_id}: cool_down_cycles must be an integer >= 1")

            self.rules.append(Rule(
                rule_id=rule_id,
                metric_id=metric_id,
                comparator=comparator,
                threshold=threshold,
                consecutive_required=consecutive,
                window_seconds=float(window),
                severity=severity,
                cool_down_cycles=cool_down,
                description=r.get("description", ""),
                enabled=r.get("enabled", True),
            ))

    def get_enabled_rules(self):
        return [r for r in self.rules if r.enabled]

    def get_rule(self, rule_id):
        for r in self.rules:
            if r.rule_id == rule_id:
                return r
        return None

    def get_all_rules(self):
        return self.rules

    def rule_ids(self):
        return {r.rule_id for r in self.rules}
