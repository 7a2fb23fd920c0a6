"""Remediation engine: allow-listed, guardrailed responses to open alerts."""
import time
import uuid
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timezone

from models.alerts import RemediationAction
from models.enums import ActionKind, ActionOutcome, EventType
from models.events import NotifierEvent
from remediation.guardrails import ActionRateLimit, CircuitBreaker
from utils.errors import GuardrailTripped, RemediationFailed, StoreUnavailable

logger = logging.getLogger("mysqlwatch.remediation.engine")


class RemediationEngine:
    """Maps alerts to remediation actions and records every attempt.

    Guardrails run in order: rate limit, circuit breaker, dry-run, approval.
    The engine reads alerts but never changes them; a failed action leaves
    the alert open until the metric itself recovers.
    """

    def __init__(self, policy, executor=None, store=None, notifier=None, clock=None, shutdown_event=None):
        self.policy = policy
        self.executor = executor
        self.store = store
        self.notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.shutdown_event = shutdown_event or threading.Event()
        self.rate_limit = ActionRateLimit(policy.rate_limit_seconds, clock=self._clock)
        self.breaker = CircuitBreaker(policy.breaker_max_failures, policy.breaker_window_seconds, clock=self._clock)
        self.force_dry_run = False
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="remediate")
        self._awaiting_approval = set()
        self._locks = {}
        self._locks_guard = threading.Lock()

    def restore(self):
        """Seed guardrails from the store after a restart."""
        if self.store is None:
            return
        self.rate_limit.load(self.store.get_last_live_action_times())
        self._sync_breaker()

    def _lock_for(self, key):
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def _sync_breaker(self):
        """The store is the source of truth for disabled kinds (CLI `enable`)."""
        if self.store is None:
            return
        try:
            disabled = self.store.get_disabled_kinds()
        except StoreUnavailable as e:
            logger.warning(f"Cannot read breaker state: {e}")
            return
        for kind in ActionKind:
            if kind.value in disabled and not self.breaker.is_open(kind):
                self.breaker.trip(kind, disabled[kind.value].get("reason") or "disabled")
            elif kind.value not in disabled and self.breaker.is_open(kind):
                self.breaker.reset(kind)

    # ── entry points ────────────────────────────────

    def attempt(self, alert):
        """Try the allow-listed action for an alert. Always returns an audit record."""
        entry = self.policy.entry_for(alert.rule_id)
        if entry is None or entry.kind is ActionKind.NOTIFY_ONLY:
            return self._record(alert, ActionKind.NOTIFY_ONLY, dry_run=False, outcome=ActionOutcome.SUCCESS,
                                reason="no automated remediation for this rule", notify=False)

        with self._lock_for(alert.rule_id):
            dry_run = self.force_dry_run or self.policy.is_dry_run(entry)
            try:
                if not dry_run:
                    self.rate_limit.check(alert.rule_id)
                self._sync_breaker()
                self.breaker.check(entry.kind)
                if dry_run:
                    return self._dry_run(alert, entry)
                self._check_approval(alert, entry)
            except GuardrailTripped as e:
                logger.info(f"Remediation skipped rule_id={alert.rule_id} alert_id={alert.alert_id}: {e}")
                return self._record(alert, entry.kind, dry_run=dry_run, outcome=ActionOutcome.SKIPPED_GUARDRAIL,
                                    reason=str(e), details={"guardrail": e.guardrail})
            return self._execute(alert, entry)

    def awaiting_approval(self, alert):
        """True if this alert was held for approval and has since been approved."""
        if alert.alert_id not in self._awaiting_approval or self.store is None:
            return False
        try:
            return self.store.is_approved(alert.alert_id)
        except StoreUnavailable:
            return False

    def enable(self, kind):
        """Re-enable a kind disabled by the circuit breaker."""
        self.breaker.reset(kind)
        if self.store is not None:
            self.store.enable_kind(kind)

    def shutdown(self):
        self.shutdown_event.set()
        self._pool.shutdown(wait=True)

    # ── guardrails ──────────────────────────────────

    def _check_approval(self, alert, entry):
        if not entry.requires_approval:
            return
        approved = False
        if self.store is not None:
            try:
                approved = self.store.is_approved(alert.alert_id)
            except StoreUnavailable:
                approved = False
        if approved:
            self._awaiting_approval.discard(alert.alert_id)
            return
        self._awaiting_approval.add(alert.alert_id)
        raise GuardrailTripped("approval", f"awaiting operator approval (approve {alert.alert_id})")

    # ── execution ───────────────────────────────────

    def _dry_run(self, alert, entry):
        plan = self.executor.describe(entry.kind, entry.params) if self.executor else []
        logger.info(f"[dry-run] {entry.kind.value} for rule_id={alert.rule_id} alert_id={alert.alert_id}: "
                    f"{'; '.join(plan) or 'no statements'}")
        return self._record(alert, entry.kind, dry_run=True, outcome=ActionOutcome.SUCCESS,
                            reason="dry-run", details={"plan": plan, "params": entry.params})

    def _execute(self, alert, entry):
        if self.shutdown_event.is_set():
            return self._record(alert, entry.kind, dry_run=False, outcome=ActionOutcome.FAILED,
                                reason="cancelled: agent shutting down")
        if self.executor is None:
            return self._record(alert, entry.kind, dry_run=False, outcome=ActionOutcome.FAILED,
                                reason="no database collaborator configured")

        self.rate_limit.record(alert.rule_id, self._clock())
        timeout = self.policy.timeout_for(entry)
        try:
            details = self._invoke(entry, timeout)
        except RemediationFailed as e:
            if self.breaker.record_failure(entry.kind) and self.store is not None:
                try:
                    self.store.disable_kind(entry.kind, self.breaker.tripped().get(entry.kind, ""))
                except StoreUnavailable as se:
                    logger.error(f"Cannot persist breaker state for {entry.kind.value}: {se}")
            logger.error(f"Remediation failed rule_id={alert.rule_id} alert_id={alert.alert_id} "
                         f"kind={entry.kind.value}: {e}")
            return self._record(alert, entry.kind, dry_run=False, outcome=ActionOutcome.FAILED, reason=str(e))

        return self._record(alert, entry.kind, dry_run=False, outcome=ActionOutcome.SUCCESS,
                            reason="executed", details=details)

    def _invoke(self, entry, timeout):
        """One call to the executor, bounded by timeout and by shutdown."""
        future = self._pool.submit(self.executor.execute, entry.kind, dict(entry.params))
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                raise RemediationFailed(f"timed out after {timeout}s")
            try:
                return future.result(timeout=min(remaining, 0.5))
            except FutureTimeout:
                if self.shutdown_event.is_set():
                    future.cancel()
                    raise RemediationFailed("cancelled: agent shutting down")
            except Exception as e:
                raise RemediationFailed(str(e)) from e

    def _record(self, alert, kind, dry_run, outcome, reason="", details=None, notify=True):
        action = RemediationAction(
            action_id=uuid.uuid4().hex[:12],
            alert_id=alert.alert_id,
            rule_id=alert.rule_id,
            kind=kind,
            dry_run=dry_run,
            executed_at=self._clock(),
            outcome=outcome,
            reason=reason,
            details=details or {},
        )
        if self.store is not None:
            try:
                self.store.save_action(action)
            except StoreUnavailable as e:
                logger.error(f"Cannot persist action_id={action.action_id}: {e}")
        logger.info(f"Remediation action_id={action.action_id} alert_id={alert.alert_id} "
                    f"kind={kind.value} outcome={outcome.value}{' (dry-run)' if dry_run else ''}")
        if notify and self.notifier is not None:
            self.notifier.emit(NotifierEvent(
                type=EventType.REMEDIATION_EXECUTED,
                alert_id=alert.alert_id,
                rule_id=alert.rule_id,
                severity=alert.severity,
                timestamp=action.executed_at,
                details={**action.to_dict(), "message": f"{kind.value} {outcome.value}: {reason}"},
            ))
        return action
