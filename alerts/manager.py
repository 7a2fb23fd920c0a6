"""Alert table owner: deduplication and lifecycle of alerts per rule_id.

State machine per rule_id:

    NONE --finding--> OPEN --finding--> OPEN (occurrence_count += 1)
    OPEN --operator ack--> ACKNOWLEDGED
    OPEN/ACKNOWLEDGED --cool_down cycles without finding--> RESOLVED

RESOLVED is terminal for an alert instance; the next finding opens a new
alert_id. Each rule_id has its own lock, so unrelated rules never wait on
each other. Every mutation is written to the store before it becomes visible
in memory; while the store is down findings queue in a bounded buffer.
"""
import uuid
import logging
import threading
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from models.alerts import Alert
from models.enums import AlertState, EventType, Severity, Transition
from models.events import NotifierEvent
from models.metrics import Finding
from utils.errors import AlertNotFound, AlertingDegraded, InvalidTransition, StoreConflict, StoreUnavailable

logger = logging.getLogger("mysqlwatch.alerts.manager")

DEGRADED_RULE_ID = "alerting_degraded"


@dataclass
class AlertChange:
    transition: Transition
    alert: Optional[Alert]
    finding: Optional[Finding] = None

    @property
    def announces(self):
        return self.transition in (Transition.OPENED, Transition.RENOTIFIED)


class _RuleState:
    def __init__(self):
        self.lock = threading.Lock()
        self.alert = None
        self.misses = 0
        self.last_finding_id = None
        self.last_clear_key = None
        self.persisted = True


class AlertManager:
    def __init__(self, store=None, notifier=None, rules=None, cool_down_cycles=3,
                 renotify_interval_seconds=1800, buffer_size=100, clock=None):
        self.store = store
        self.notifier = notifier
        self.rules = {r.rule_id: r for r in (rules or [])}
        self.cool_down_cycles = cool_down_cycles
        self.renotify_interval_seconds = renotify_interval_seconds
        self.buffer_size = buffer_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._states = {}
        self._states_lock = threading.Lock()
        self._pending = deque()
        self._pending_lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self.dropped_findings = 0

    @classmethod
    def from_config(cls, config, store=None, notifier=None, rules=None, clock=None):
        cfg = config.get("alerting", {})
        return cls(
            store=store,
            notifier=notifier,
            rules=rules,
            cool_down_cycles=cfg.get("cool_down_cycles", 3),
            renotify_interval_seconds=cfg.get("renotify_interval_seconds", 1800),
            buffer_size=cfg.get("buffer_size", 100),
            clock=clock,
        )

    # ── bookkeeping ─────────────────────────────────

    def _state(self, rule_id, create=True):
        with self._states_lock:
            state = self._states.get(rule_id)
            if state is None and create:
                state = self._states[rule_id] = _RuleState()
            return state

    def _cool_down_for(self, rule_id):
        rule = self.rules.get(rule_id)
        if rule is not None and rule.cool_down_cycles:
            return rule.cool_down_cycles
        return self.cool_down_cycles

    def _persist(self, alert):
        if self.store is not None:
            self.store.upsert_alert(alert)

    def _emit(self, event_type, alert, **details):
        if self.notifier is None:
            return
        details.setdefault("message", alert.message)
        details.setdefault("occurrence_count", alert.occurrence_count)
        self.notifier.emit(NotifierEvent(
            type=event_type,
            alert_id=alert.alert_id,
            rule_id=alert.rule_id,
            severity=alert.severity,
            timestamp=self._clock(),
            details=details,
        ))

    def restore(self):
        """Load active alerts from the store (agent restart)."""
        if self.store is None:
            return 0
        alerts = self.store.get_active_alerts()
        for alert in alerts:
            state = self._state(alert.rule_id)
            with state.lock:
                if state.alert is None or not state.alert.active:
                    state.alert = alert
        logger.info(f"Restored {len(alerts)} active alerts")
        return len(alerts)

    # ── findings ────────────────────────────────────

    def observe_finding(self, finding):
        """Apply a Finding: open, update or re-announce the rule's alert."""
        if not self._drain_pending():
            self._enqueue(finding)
            return AlertChange(Transition.BUFFERED, None, finding)
        try:
            return self._apply_finding(finding)
        except StoreUnavailable as e:
            logger.error(f"Alert store unavailable, buffering finding rule_id={finding.rule_id}: {e}")
            self._enqueue(finding)
            return AlertChange(Transition.BUFFERED, None, finding)

    def _sync_rule(self, state, rule_id):
        """Line the rule's in-memory alert up with the store.

        Other processes (CLI `simulate`, `ack`, `resolve`) write the same table,
        so the store decides which alert is active for rule_id. Caller holds
        state.lock.
        """
        if self.store is None:
            return
        stored = self.store.get_active_alert(rule_id)
        current = state.alert
        if current is not None and current.active:
            if stored is not None and stored.alert_id == current.alert_id:
                return
            closed = self.store.get_alert(current.alert_id)
            if closed is None:
                # never persisted; only this process knows about it
                return
            logger.info(f"Alert alert_id={current.alert_id} was closed by another process")
            state.alert = closed if not closed.active else replace(
                current, state=AlertState.RESOLVED, resolved_at=self._clock())
            self._reset(state)
        if stored is not None and (state.alert is None or not state.alert.active):
            logger.info(f"Adopted alert alert_id={stored.alert_id} for rule_id={rule_id} from the store")
            state.alert = stored
            self._reset(state)

    @staticmethod
    def _reset(state):
        state.misses = 0
        state.last_finding_id = None
        state.last_clear_key = None

    def _apply_finding(self, finding):
        state = self._state(finding.rule_id)
        with state.lock:
            self._sync_rule(state, finding.rule_id)
            current = state.alert
            if current is not None and current.active and finding.finding_id == state.last_finding_id:
                logger.debug(f"Duplicate finding {finding.finding_id} ignored")
                return AlertChange(Transition.DUPLICATE, current, finding)

            now = self._clock()
            alert, transition = self._next_alert(current, finding, now)
            try:
                self._persist(alert)
            except StoreConflict as e:
                # another process opened one between our read and write
                logger.info(f"Alert for rule_id={finding.rule_id} opened elsewhere, adopting it: {e}")
                self._sync_rule(state, finding.rule_id)
                alert, transition = self._next_alert(state.alert, finding, now)
                self._persist(alert)
            state.alert = alert
            state.misses = 0
            state.last_finding_id = finding.finding_id
            state.last_clear_key = None
            state.persisted = True

        if transition is Transition.OPENED:
            logger.warning(f"Alert opened rule_id={alert.rule_id} alert_id={alert.alert_id}: {alert.message}")
            self._emit(EventType.ALERT_OPENED, alert)
        elif transition is Transition.RENOTIFIED:
            logger.warning(f"Alert still open rule_id={alert.rule_id} alert_id={alert.alert_id} "
                           f"occurrences={alert.occurrence_count}")
            self._emit(EventType.ALERT_OPENED, alert, renotify=True)
        return AlertChange(transition, alert, finding)

    def _next_alert(self, current, finding, now):
        if current is None or not current.active:
            alert = Alert(
                alert_id=uuid.uuid4().hex[:12],
                rule_id=finding.rule_id,
                state=AlertState.OPEN,
                severity=finding.severity,
                opened_at=finding.triggered_at,
                last_seen_at=finding.triggered_at,
                occurrence_count=1,
                last_notified_at=now,
                message=finding.message,
            )
            return alert, Transition.OPENED

        severity = max(current.severity, finding.severity, key=lambda s: s.rank)
        alert = replace(
            current,
            occurrence_count=current.occurrence_count + 1,
            last_seen_at=finding.triggered_at,
            severity=severity,
            message=finding.message or current.message,
        )
        if current.state is AlertState.OPEN and self._renotify_due(current, now):
            return replace(alert, last_notified_at=now), Transition.RENOTIFIED
        return alert, Transition.UPDATED

    def _renotify_due(self, alert, now):
        if not self.renotify_interval_seconds:
            return False
        if alert.last_notified_at is None:
            return True
        return (now - alert.last_notified_at).total_seconds() >= self.renotify_interval_seconds

    # ── clears / resolution ─────────────────────────

    def observe_clear(self, rule_id, cycle_key=None):
        """Record an evaluation cycle in which rule_id produced no Finding.

        cycle_key identifies the cycle (e.g. the sample timestamp) so the same
        cycle delivered twice counts once.
        """
        self._drain_pending()
        return self._clear(rule_id, cycle_key)

    def _clear(self, rule_id, cycle_key=None):
        state = self._state(rule_id, create=False)
        if state is None:
            return None
        with state.lock:
            current = state.alert
            if current is None or not current.active:
                return None
            if cycle_key is not None and cycle_key == state.last_clear_key:
                return None
            state.last_clear_key = cycle_key
            state.misses += 1
            if state.misses < self._cool_down_for(rule_id):
                return None
            alert = replace(current, state=AlertState.RESOLVED, resolved_at=self._clock())
            try:
                self._persist(alert)
            except StoreUnavailable as e:
                logger.error(f"Cannot resolve alert_id={current.alert_id}, store unavailable: {e}")
                return None
            state.alert = alert
            state.misses = 0
            state.last_finding_id = None
            state.persisted = True

        logger.info(f"Alert resolved rule_id={rule_id} alert_id={alert.alert_id}")
        self._emit(EventType.ALERT_RESOLVED, alert)
        return AlertChange(Transition.RESOLVED, alert)

    # ── store outage handling ───────────────────────

    def _enqueue(self, finding):
        with self._pending_lock:
            self._pending.append(finding)
            dropped = None
            if len(self._pending) > self.buffer_size:
                dropped = self._pending.popleft()
                self.dropped_findings += 1
        if dropped is not None:
            self._raise_degraded(AlertingDegraded(
                f"finding buffer full ({self.buffer_size}); dropped {dropped.finding_id}, "
                f"{self.dropped_findings} dropped in total"
            ))

    def _raise_degraded(self, error):
        message = str(error)
        logger.error(f"Alerting degraded: {message}")
        state = self._state(DEGRADED_RULE_ID)
        now = self._clock()
        with state.lock:
            current = state.alert
            if current is None or not current.active:
                alert = Alert(
                    alert_id=uuid.uuid4().hex[:12],
                    rule_id=DEGRADED_RULE_ID,
                    severity=Severity.CRITICAL,
                    opened_at=now,
                    last_seen_at=now,
                    last_notified_at=now,
                    message=message,
                )
                opened = True
            else:
                alert = replace(current, occurrence_count=current.occurrence_count + 1,
                                last_seen_at=now, message=message)
                opened = False
            state.alert = alert
            state.misses = 0
            try:
                self._persist(alert)
                state.persisted = True
            except StoreUnavailable:
                state.persisted = False
        if opened:
            self._emit(EventType.ALERT_OPENED, alert, dropped_findings=self.dropped_findings)

    def _drain_pending(self):
        """Replay buffered findings in order. False if the store is still down.

        One drainer at a time, so a buffered finding is never applied twice.
        """
        with self._drain_lock:
            while True:
                with self._pending_lock:
                    if not self._pending:
                        return True
                    finding = self._pending[0]
                try:
                    self._apply_finding(finding)
                except StoreUnavailable:
                    return False
                with self._pending_lock:
                    if self._pending and self._pending[0] is finding:
                        self._pending.popleft()
                logger.info(f"Replayed buffered finding {finding.finding_id}")

    @property
    def pending_count(self):
        with self._pending_lock:
            return len(self._pending)

    def tick(self):
        """Periodic housekeeping: replay the buffer, count a degraded-alert cycle."""
        if not self._drain_pending():
            return None
        state = self._state(DEGRADED_RULE_ID, create=False)
        if state is None:
            return None
        with state.lock:
            alert = state.alert
            unsaved = alert is not None and alert.active and not state.persisted
            if unsaved:
                try:
                    self._persist(alert)
                    state.persisted = True
                except StoreConflict:
                    # another process already reports the degradation
                    state.alert = self.store.get_active_alert(DEGRADED_RULE_ID) or alert
                    state.persisted = True
                except StoreUnavailable:
                    return None
        return self._clear(DEGRADED_RULE_ID, cycle_key=self._clock().isoformat())

    # ── operator actions ────────────────────────────

    def _locate(self, alert_id):
        with self._states_lock:
            states = list(self._states.values())
        for state in states:
            alert = state.alert
            if alert is not None and alert.alert_id == alert_id:
                return state
        if self.store is not None:
            stored = self.store.get_alert(alert_id)
            if stored is not None:
                if not stored.active:
                    raise InvalidTransition(f"alert {alert_id} is already resolved")
                state = self._state(stored.rule_id)
                with state.lock:
                    if state.alert is None or not state.alert.active:
                        state.alert = stored
                return state
        raise AlertNotFound(f"no alert {alert_id}")

    def acknowledge(self, alert_id):
        state = self._locate(alert_id)
        with state.lock:
            current = state.alert
            if current is None or current.alert_id != alert_id or not current.active:
                raise InvalidTransition(f"alert {alert_id} is not active")
            if current.state is AlertState.ACKNOWLEDGED:
                return AlertChange(Transition.DUPLICATE, current)
            alert = replace(current, state=AlertState.ACKNOWLEDGED, acknowledged_at=self._clock())
            self._persist(alert)
            state.alert = alert
        logger.info(f"Alert acknowledged rule_id={alert.rule_id} alert_id={alert_id}")
        self._emit(EventType.ALERT_ACKNOWLEDGED, alert)
        return AlertChange(Transition.ACKNOWLEDGED, alert)

    def resolve(self, alert_id):
        """Operator-initiated resolution."""
        state = self._locate(alert_id)
        with state.lock:
            current = state.alert
            if current is None or current.alert_id != alert_id or not current.active:
                raise InvalidTransition(f"alert {alert_id} is not active")
            alert = replace(current, state=AlertState.RESOLVED, resolved_at=self._clock())
            self._persist(alert)
            state.alert = alert
            state.misses = 0
            state.last_finding_id = None
        logger.info(f"Alert resolved by operator rule_id={alert.rule_id} alert_id={alert_id}")
        self._emit(EventType.ALERT_RESOLVED, alert, operator=True)
        return AlertChange(Transition.RESOLVED, alert)

    def sync_with_store(self):
        """Pick up acknowledgements and resolutions written by another process."""
        if self.store is None:
            return []
        with self._states_lock:
            states = list(self._states.values())
        changes = []
        for state in states:
            with state.lock:
                current = state.alert
                if current is None or not current.active:
                    continue
                try:
                    stored = self.store.get_alert(current.alert_id)
                except StoreUnavailable as e:
                    logger.warning(f"Cannot sync alerts with the store: {e}")
                    return changes
                if stored is None:
                    continue
                if stored.state is AlertState.RESOLVED:
                    state.alert = stored
                    self._reset(state)
                    changes.append(AlertChange(Transition.RESOLVED, stored))
                elif stored.state is AlertState.ACKNOWLEDGED and current.state is AlertState.OPEN:
                    state.alert = replace(current, state=AlertState.ACKNOWLEDGED,
                                          acknowledged_at=stored.acknowledged_at or self._clock())
                    changes.append(AlertChange(Transition.ACKNOWLEDGED, state.alert))
        for change in changes:
            if change.transition is Transition.RESOLVED:
                logger.info(f"Alert resolved externally alert_id={change.alert.alert_id}")
                self._emit(EventType.ALERT_RESOLVED, change.alert, operator=True)
            else:
                logger.info(f"Alert acknowledged externally alert_id={change.alert.alert_id}")
                self._emit(EventType.ALERT_ACKNOWLEDGED, change.alert)
        return changes

    # ── queries ─────────────────────────────────────

    def get_alert(self, alert_id):
        with self._states_lock:
            states = list(self._states.values())
        for state in states:
            alert = state.alert
            if alert is not None and alert.alert_id == alert_id:
                return alert
        return None

    def alert_for_rule(self, rule_id):
        state = self._state(rule_id, create=False)
        if state is None or state.alert is None or not state.alert.active:
            return None
        return state.alert

    def active_alerts(self):
        with self._states_lock:
            states = list(self._states.values())
        return [s.alert for s in states if s.alert is not None and s.alert.active]

    def misses(self, rule_id):
        state = self._state(rule_id, create=False)
        return state.misses if state else 0

    @property
    def degraded(self):
        return self.alert_for_rule(DEGRADED_RULE_ID) is not None
