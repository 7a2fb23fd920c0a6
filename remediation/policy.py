"""Remediation allow-list and guardrail settings."""
import logging
from dataclasses import dataclass, field
from typing import Optional

from models.enums import ActionKind
from utils.errors import ConfigurationError

logger = logging.getLogger("mysqlwatch.remediation.policy")

# Parameter name -> default, per kind. Unknown parameters are rejected.
KIND_PARAMS = {
    ActionKind.KILL_CONNECTION: {"idle_seconds": 600, "limit": 10},
    ActionKind.PURGE_BINARY_LOGS: {"retain_hours": 72},
    ActionKind.RESTART_REPLICATION: {},
    ActionKind.NOTIFY_ONLY: {},
}


@dataclass
class AllowListEntry:
    rule_id: str
    kind: ActionKind
    params: dict = field(default_factory=dict)
    dry_run: bool = False
    requires_approval: bool = False
    timeout_seconds: Optional[float] = None


@dataclass
class RemediationPolicy:
    entries: dict = field(default_factory=dict)
    dry_run: bool = True
    dry_run_kinds: frozenset = frozenset()
    rate_limit_seconds: float = 900
    action_timeout_seconds: float = 30
    breaker_max_failures: int = 3
    breaker_window_seconds: float = 3600

    def entry_for(self, rule_id):
        return self.entries.get(rule_id)

    def is_dry_run(self, entry):
        return self.dry_run or entry.dry_run or entry.kind in self.dry_run_kinds

    def timeout_for(self, entry):
        return entry.timeout_seconds or self.action_timeout_seconds

    @classmethod
    def from_config(cls, config, rule_ids):
        cfg = config.get("remediation", {})
        breaker = cfg.get("breaker", {})

        dry_run_kinds = frozenset(_kind(k, "dry_run_kinds") for k in cfg.get("dry_run_kinds") or [])
        entries = {}
        for rule_id, raw in (cfg.get("allow_list") or {}).items():
            if rule_id not in rule_ids:
                raise ConfigurationError(f"remediation allow-list references unknown rule {rule_id!r}")
            raw = raw or {}
            kind = _kind(raw.get("kind"), f"allow_list.{rule_id}")
            params = dict(KIND_PARAMS[kind])
            extra = set(raw.get("params") or {}) - set(params)
            if extra:
                raise ConfigurationError(f"allow_list.{rule_id}: unknown params {sorted(extra)} for {kind.value}")
            params.update(raw.get("params") or {})
            for name, value in params.items():
                if not isinstance(value, int) or value <= 0:
                    raise ConfigurationError(f"allow_list.{rule_id}: {name} must be a positive integer")
            entries[rule_id] = AllowListEntry(
                rule_id=rule_id,
                kind=kind,
                params=params,
                dry_run=bool(raw.get("dry_run", False)),
                requires_approval=bool(raw.get("requires_approval", False)),
                timeout_seconds=raw.get("timeout_seconds"),
            )

        policy = cls(
            entries=entries,
            dry_run=bool(cfg.get("dry_run", True)),
            dry_run_kinds=dry_run_kinds,
            rate_limit_seconds=cfg.get("rate_limit_seconds", 900),
            action_timeout_seconds=cfg.get("action_timeout_seconds", 30),
            breaker_max_failures=breaker.get("max_failures", 3),
            breaker_window_seconds=breaker.get("window_seconds", 3600),
        )
        if policy.breaker_max_failures < 1:
            raise ConfigurationError("remediation.breaker.max_failures must be >= 1")
        logger.info(f"Remediation allow-list: {len(entries)} rules "
                    f"(dry_run={'on' if policy.dry_run else 'off'})")
        return policy


def _kind(value, where):
    try:
        return ActionKind(str(value).upper())
    except ValueError:
        raise ConfigurationError(f"{where}: unknown remediation kind {value!r}") from None
