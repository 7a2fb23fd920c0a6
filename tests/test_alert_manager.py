"""Tests for the alert table: dedup, lifecycle, persistence and store outages."""
import time
import threading
import pytest

from alerts.manager import AlertManager, DEGRADED_RULE_ID
from alerts.evaluator import Evaluator
from models.alerts import Rule
from models.enums import AlertState, EventType, Severity, Transition
from models.metrics import Finding
from monitor.buffer import SampleBuffer
from utils.errors import AlertNotFound, InvalidTransition
from conftest import FlakyStore, make_samples


def _finding(rule_id, clock, n=0, severity=Severity.WARN):
    return Finding(
        finding_id=f"{rule_id}@{n}",
        rule_id=rule_id,
        triggered_at=clock(),
        severity=severity,
        message=f"{rule_id} breached ({n})",
    )


@pytest.fixture
def manager(temp_db, notifier, clock):
    return AlertManager(store=temp_db, notifier=notifier, cool_down_cycles=3,
                        renotify_interval_seconds=1800, buffer_size=3, clock=clock)


# ── Open / dedup ────────────────────────────────────────

def test_first_finding_opens_alert(manager, temp_db, notifier, clock):
    change = manager.observe_finding(_finding("conn_high", clock))

    assert change.transition is Transition.OPENED
    assert change.announces
    alert = change.alert
    assert alert.state is AlertState.OPEN
    assert alert.occurrence_count == 1
    assert temp_db.get_alert(alert.alert_id).state is AlertState.OPEN
    [event] = notifier.of_type(EventType.ALERT_OPENED)
    assert event.alert_id == alert.alert_id


def test_repeat_findings_update_one_alert(manager, notifier, clock):
    first = manager.observe_finding(_finding("conn_high", clock, 0)).alert
    clock.advance(10)
    change = manager.observe_finding(_finding("conn_high", clock, 1))

    assert change.transition is Transition.UPDATED
    assert change.alert.alert_id == first.alert_id
    assert change.alert.occurrence_count == 2
    assert len(notifier.of_type(EventType.ALERT_OPENED)) == 1
    assert len(manager.active_alerts()) == 1


def test_same_finding_twice_is_idempotent(manager, clock):
    finding = _finding("conn_high", clock)
    manager.observe_finding(finding)
    change = manager.observe_finding(finding)

    assert change.transition is Transition.DUPLICATE
    assert change.alert.occurrence_count == 1


def test_severity_escalates_never_downgrades(manager, clock):
    manager.observe_finding(_finding("disk_low", clock, 0, Severity.WARN))
    up = manager.observe_finding(_finding("disk_low", clock, 1, Severity.CRITICAL))
    assert up.alert.severity is Severity.CRITICAL
    again = manager.observe_finding(_finding("disk_low", clock, 2, Severity.WARN))
    assert again.alert.severity is Severity.CRITICAL


def test_renotify_after_interval(manager, notifier, clock):
    manager.observe_finding(_finding("conn_high", clock, 0))
    clock.advance(600)
    assert manager.observe_finding(_finding("conn_high", clock, 1)).transition is Transition.UPDATED
    clock.advance(1200)
    change = manager.observe_finding(_finding("conn_high", clock, 2))

    assert change.transition is Transition.RENOTIFIED
    events = notifier.of_type(EventType.ALERT_OPENED)
    assert len(events) == 2
    assert events[-1].details["renotify"] is True


def test_concurrent_findings_same_rule_count_once_each(manager, clock):
    barrier = threading.Barrier(8)

    def worker(n):
        barrier.wait()
        manager.observe_finding(_finding("conn_high", clock, n))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    [alert] = manager.active_alerts()
    assert alert.occurrence_count == 8


# ── Resolution ──────────────────────────────────────────

def test_scenario_b_resolves_after_cool_down(temp_db, notifier, clock, lag_rule):
    buffer = SampleBuffer("replication_lag_seconds", 10)
    evaluator = Evaluator([lag_rule], {"replication_lag_seconds": buffer})
    manager = AlertManager(store=temp_db, notifier=notifier, rules=[lag_rule], cool_down_cycles=3, clock=clock)

    samples = make_samples("replication_lag_seconds", [70, 75, 80, 90, 95, 10, 5, 8])
    transitions = []
    for s in samples:
        buffer.append(s)
        finding = evaluator.evaluate(s.metric_id, s)["replication_lag_high"]
        if finding is not None:
            transitions.append(manager.observe_finding(finding).transition)
        else:
            change = manager.observe_clear("replication_lag_high", s.timestamp.isoformat())
            transitions.append(change.transition if change else None)

    assert transitions == [None] * 4 + [Transition.OPENED, None, None, Transition.RESOLVED]
    [stored] = temp_db.get_alerts()
    assert stored.state is AlertState.RESOLVED
    assert stored.resolved_at is not None
    assert len(notifier.of_type(EventType.ALERT_RESOLVED)) == 1


def test_finding_resets_cool_down(manager, clock):
    manager.observe_finding(_finding("conn_high", clock, 0))
    manager.observe_clear("conn_high", "c1")
    manager.observe_clear("conn_high", "c2")
    manager.observe_finding(_finding("conn_high", clock, 1))
    assert manager.misses("conn_high") == 0
    manager.observe_clear("conn_high", "c3")
    manager.observe_clear("conn_high", "c4")
    assert manager.alert_for_rule("conn_high") is not None


def test_same_cycle_counted_once(manager, clock):
    manager.observe_finding(_finding("conn_high", clock))
    for _ in range(5):
        manager.observe_clear("conn_high", "same-cycle")
    assert manager.misses("conn_high") == 1
    assert manager.alert_for_rule("conn_high") is not None


def test_rule_cool_down_overrides_default(temp_db, clock):
    rule = Rule(rule_id="conn_high", metric_id="threads_connected", cool_down_cycles=1)
    manager = AlertManager(store=temp_db, rules=[rule], cool_down_cycles=5, clock=clock)
    manager.observe_finding(_finding("conn_high", clock))
    change = manager.observe_clear("conn_high", "c1")
    assert change.transition is Transition.RESOLVED


def test_finding_after_resolution_opens_new_alert(manager, clock):
    first = manager.observe_finding(_finding("conn_high", clock, 0)).alert
    for i in range(3):
        manager.observe_clear("conn_high", f"c{i}")
    clock.advance(60)
    change = manager.observe_finding(_finding("conn_high", clock, 1))

    assert change.transition is Transition.OPENED
    assert change.alert.alert_id != first.alert_id


def test_clear_without_alert_is_noop(manager):
    assert manager.observe_clear("never_fired", "c1") is None


# ── Operator actions ────────────────────────────────────

def test_acknowledge_stops_renotify(manager, notifier, clock):
    alert = manager.observe_finding(_finding("conn_high", clock, 0)).alert
    change = manager.acknowledge(alert.alert_id)
    assert change.alert.state is AlertState.ACKNOWLEDGED
    assert notifier.of_type(EventType.ALERT_ACKNOWLEDGED)

    clock.advance(3600)
    later = manager.observe_finding(_finding("conn_high", clock, 1))
    assert later.transition is Transition.UPDATED
    assert later.alert.state is AlertState.ACKNOWLEDGED


def test_acknowledged_alert_still_resolves(manager, clock):
    alert = manager.observe_finding(_finding("conn_high", clock)).alert
    manager.acknowledge(alert.alert_id)
    for i in range(3):
        manager.observe_clear("conn_high", f"c{i}")
    assert manager.alert_for_rule("conn_high") is None


def test_acknowledge_unknown_alert(manager):
    with pytest.raises(AlertNotFound):
        manager.acknowledge("nope")


def test_operator_resolve(manager, temp_db, clock):
    alert = manager.observe_finding(_finding("conn_high", clock)).alert
    manager.resolve(alert.alert_id)
    assert temp_db.get_alert(alert.alert_id).state is AlertState.RESOLVED
    with pytest.raises(InvalidTransition):
        manager.resolve(alert.alert_id)


def test_acknowledgement_from_another_process(temp_db, notifier, clock):
    agent = AlertManager(store=temp_db, notifier=notifier, clock=clock)
    cli = AlertManager(store=temp_db, clock=clock)

    alert = agent.observe_finding(_finding("conn_high", clock, 0)).alert
    cli.acknowledge(alert.alert_id)

    # agent's next write must not undo the acknowledgement
    agent.observe_finding(_finding("conn_high", clock, 1))
    assert temp_db.get_alert(alert.alert_id).state is AlertState.ACKNOWLEDGED

    [change] = agent.sync_with_store()
    assert change.alert.state is AlertState.ACKNOWLEDGED
    assert agent.alert_for_rule("conn_high").state is AlertState.ACKNOWLEDGED


def test_finding_joins_alert_opened_by_another_process(temp_db, clock):
    agent = AlertManager(store=temp_db, clock=clock)
    cli = AlertManager(store=temp_db, clock=clock)

    opened = cli.observe_finding(_finding("too_many_connections", clock, 0)).alert
    clock.advance(10)
    change = agent.observe_finding(_finding("too_many_connections", clock, 1))

    assert change.transition is Transition.UPDATED
    assert change.alert.alert_id == opened.alert_id
    assert change.alert.occurrence_count == 2
    assert [a.alert_id for a in temp_db.get_active_alerts()] == [opened.alert_id]


class _StaleFirstRead:
    """Store whose first active-alert lookup misses a row another process is writing."""

    def __init__(self, db):
        self.db = db
        self.stale = True

    def get_active_alert(self, rule_id):
        if self.stale:
            self.stale = False
            return None
        return self.db.get_active_alert(rule_id)

    def __getattr__(self, name):
        return getattr(self.db, name)


def test_open_race_with_another_process_keeps_one_alert(temp_db, clock):
    agent = AlertManager(store=_StaleFirstRead(temp_db), clock=clock)
    cli = AlertManager(store=temp_db, clock=clock)

    opened = cli.observe_finding(_finding("conn_high", clock, 0)).alert
    change = agent.observe_finding(_finding("conn_high", clock, 1))

    assert change.alert.alert_id == opened.alert_id
    assert change.alert.occurrence_count == 2
    assert len(temp_db.get_active_alerts()) == 1


def test_resolve_from_another_process_is_final(temp_db, notifier, clock):
    agent = AlertManager(store=temp_db, notifier=notifier, clock=clock)
    cli = AlertManager(store=temp_db, clock=clock)

    first = agent.observe_finding(_finding("conn_high", clock, 0)).alert
    cli.resolve(first.alert_id)
    clock.advance(10)
    change = agent.observe_finding(_finding("conn_high", clock, 1))

    assert change.transition is Transition.OPENED
    assert change.alert.alert_id != first.alert_id
    assert temp_db.get_alert(first.alert_id).state is AlertState.RESOLVED
    assert temp_db.get_alert(first.alert_id).occurrence_count == 1
    assert [a.alert_id for a in temp_db.get_active_alerts()] == [change.alert.alert_id]


def test_sync_picks_up_resolution_from_another_process(temp_db, notifier, clock):
    agent = AlertManager(store=temp_db, notifier=notifier, clock=clock)
    cli = AlertManager(store=temp_db, clock=clock)

    alert = agent.observe_finding(_finding("conn_high", clock, 0)).alert
    cli.resolve(alert.alert_id)

    [change] = agent.sync_with_store()
    assert change.transition is Transition.RESOLVED
    assert agent.alert_for_rule("conn_high") is None
    assert notifier.of_type(EventType.ALERT_RESOLVED)[-1].alert_id == alert.alert_id
    assert agent.sync_with_store() == []


def test_restore_active_alerts(temp_db, clock):
    first = AlertManager(store=temp_db, clock=clock)
    alert = first.observe_finding(_finding("conn_high", clock, 0)).alert

    restarted = AlertManager(store=temp_db, clock=clock)
    assert restarted.restore() == 1
    change = restarted.observe_finding(_finding("conn_high", clock, 1))
    assert change.alert.alert_id == alert.alert_id
    assert change.alert.occurrence_count == 2


# ── Store outage ────────────────────────────────────────

def test_store_outage_buffers_findings(temp_db, notifier, clock):
    store = FlakyStore(temp_db)
    manager = AlertManager(store=store, notifier=notifier, buffer_size=10, clock=clock)

    store.down = True
    change = manager.observe_finding(_finding("conn_high", clock, 0))
    assert change.transition is Transition.BUFFERED
    assert manager.alert_for_rule("conn_high") is None
    assert manager.pending_count == 1
    assert notifier.events == []

    store.down = False
    manager.tick()
    assert manager.pending_count == 0
    alert = manager.alert_for_rule("conn_high")
    assert alert is not None
    assert temp_db.get_alert(alert.alert_id) is not None


def test_buffer_overflow_raises_degraded_alert(temp_db, notifier, clock, caplog):
    store = FlakyStore(temp_db)
    manager = AlertManager(store=store, notifier=notifier, buffer_size=2, cool_down_cycles=2, clock=clock)

    store.down = True
    for n in range(3):
        manager.observe_finding(_finding("conn_high", clock, n))

    assert manager.pending_count == 2
    assert manager.dropped_findings == 1
    assert "finding buffer full (2); dropped conn_high@0" in caplog.text
    degraded = manager.alert_for_rule(DEGRADED_RULE_ID)
    assert degraded is not None
    assert degraded.severity is Severity.CRITICAL
    assert [e.rule_id for e in notifier.of_type(EventType.ALERT_OPENED)] == [DEGRADED_RULE_ID]

    # a further overflow updates the same degraded alert
    manager.observe_finding(_finding("conn_high", clock, 3))
    assert manager.alert_for_rule(DEGRADED_RULE_ID).alert_id == degraded.alert_id
    assert len(notifier.of_type(EventType.ALERT_OPENED)) == 1

    store.down = False
    manager.tick()
    assert temp_db.get_alert(degraded.alert_id) is not None
    assert manager.alert_for_rule("conn_high").occurrence_count == 2
    clock.advance(10)
    manager.tick()
    assert manager.alert_for_rule(DEGRADED_RULE_ID) is None


class _GatedStore(FlakyStore):
    """Holds the first alert write until `release` is set."""

    def __init__(self, db):
        super().__init__(db)
        self.entered = threading.Event()
        self.release = threading.Event()

    def upsert_alert(self, alert):
        if not self.down and not self.release.is_set():
            self.entered.set()
            self.release.wait(5)
        return super().upsert_alert(alert)


def test_concurrent_replay_applies_each_buffered_finding_once(temp_db, clock):
    store = _GatedStore(temp_db)
    manager = AlertManager(store=store, buffer_size=10, clock=clock)

    store.down = True
    first = _finding("conn_high", clock, 0)
    clock.advance(10)
    second = _finding("conn_high", clock, 1)
    manager.observe_finding(first)
    manager.observe_finding(second)
    assert manager.pending_count == 2

    store.down = False
    a = threading.Thread(target=manager.tick)
    a.start()
    assert store.entered.wait(5)
    b = threading.Thread(target=manager.tick)
    b.start()
    time.sleep(0.1)
    store.release.set()
    a.join(5)
    b.join(5)

    alert = manager.alert_for_rule("conn_high")
    assert manager.pending_count == 0
    assert alert.occurrence_count == 2
    assert alert.last_seen_at == second.triggered_at
