"""Tests for the remediation engine and its guardrails."""
import threading
import pytest

from models.alerts import Alert
from models.enums import ActionKind, ActionOutcome, EventType
from remediation.engine import RemediationEngine
from remediation.executor import ActionExecutor, DEFAULT_COMMANDS
from remediation.guardrails import ActionRateLimit, CircuitBreaker
from remediation.policy import AllowListEntry, RemediationPolicy
from utils.errors import CollaboratorError, GuardrailTripped

RULE = "too_many_connections"
KILL_SELECT = DEFAULT_COMMANDS[ActionKind.KILL_CONNECTION]["select"]


def _alert(alert_id="a1", rule_id=RULE):
    return Alert(alert_id=alert_id, rule_id=rule_id)


def _policy(dry_run=False, requires_approval=False, timeout_seconds=None, **kwargs):
    entry = AllowListEntry(
        rule_id=RULE,
        kind=ActionKind.KILL_CONNECTION,
        params={"idle_seconds": 600, "limit": 10},
        requires_approval=requires_approval,
        timeout_seconds=timeout_seconds,
    )
    return RemediationPolicy(entries={RULE: entry}, dry_run=dry_run, **kwargs)


class SlowExecutor:
    """Blocks in execute() until released."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def describe(self, kind, params):
        return []

    def execute(self, kind, params):
        self.started.set()
        self.release.wait(10)
        return {}


@pytest.fixture
def client(fake_client):
    fake_client.rows[KILL_SELECT] = [{"ID": 11}, {"ID": 12}]
    return fake_client


@pytest.fixture
def make_engine(client, temp_db, notifier, clock):
    engines = []

    def _make(policy=None, executor=None, **kwargs):
        engine = RemediationEngine(
            policy or _policy(),
            executor or ActionExecutor(client),
            store=temp_db,
            notifier=notifier,
            clock=clock,
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.shutdown()


# ── Execution ───────────────────────────────────────────

def test_live_action_kills_idle_connections(make_engine, client, temp_db, notifier):
    action = make_engine().attempt(_alert())

    assert action.outcome is ActionOutcome.SUCCESS
    assert action.kind is ActionKind.KILL_CONNECTION
    assert not action.dry_run
    assert action.details["killed"] == [11, 12]
    assert [params["id"] for _, params in client.executed] == [11, 12]
    assert temp_db.get_recent_actions()[0].action_id == action.action_id
    [event] = notifier.of_type(EventType.REMEDIATION_EXECUTED)
    assert event.alert_id == "a1"


def test_unlisted_rule_is_notify_only(make_engine, client, temp_db, notifier):
    action = make_engine().attempt(_alert(rule_id="disk_free_low"))

    assert action.kind is ActionKind.NOTIFY_ONLY
    assert action.outcome is ActionOutcome.SUCCESS
    assert client.executed == []
    assert notifier.of_type(EventType.REMEDIATION_EXECUTED) == []
    assert temp_db.get_recent_actions()[0].kind is ActionKind.NOTIFY_ONLY


def test_failure_is_recorded_and_alert_untouched(make_engine, client):
    client.fail_execute = CollaboratorError("Access denied; you need the PROCESS privilege", code=1227)
    alert = _alert()
    action = make_engine().attempt(alert)

    assert action.outcome is ActionOutcome.FAILED
    assert "PROCESS privilege" in action.reason
    assert alert.active


# ── Guardrails ──────────────────────────────────────────

def test_scenario_c_rate_limit_per_condition(make_engine, clock):
    engine = make_engine(_policy(rate_limit_seconds=900))
    first = engine.attempt(_alert("a1"))
    clock.advance(300)
    second = engine.attempt(_alert("a2"))

    assert first.outcome is ActionOutcome.SUCCESS
    assert second.outcome is ActionOutcome.SKIPPED_GUARDRAIL
    assert second.details["guardrail"] == "rate_limit"

    clock.advance(900)
    assert engine.attempt(_alert("a3")).outcome is ActionOutcome.SUCCESS


def test_rate_limit_survives_restart(make_engine, clock):
    make_engine().attempt(_alert("a1"))
    clock.advance(60)
    restarted = make_engine()
    restarted.restore()
    assert restarted.attempt(_alert("a2")).outcome is ActionOutcome.SKIPPED_GUARDRAIL


def test_breaker_trips_after_k_failures(make_engine, client, temp_db):
    client.fail_execute = CollaboratorError("Lost connection to MySQL server", code=2013)
    engine = make_engine(_policy(rate_limit_seconds=0, breaker_max_failures=3))

    outcomes = [engine.attempt(_alert(f"a{i}")).outcome for i in range(3)]
    assert outcomes == [ActionOutcome.FAILED] * 3
    fourth = engine.attempt(_alert("a3"))
    assert fourth.outcome is ActionOutcome.SKIPPED_GUARDRAIL
    assert fourth.details["guardrail"] == "circuit_breaker"
    assert "KILL_CONNECTION" in temp_db.get_disabled_kinds()

    # stays tripped across a restart until an operator re-enables it
    restarted = make_engine(_policy(rate_limit_seconds=0))
    restarted.restore()
    assert restarted.attempt(_alert("a4")).outcome is ActionOutcome.SKIPPED_GUARDRAIL

    client.fail_execute = None
    restarted.enable(ActionKind.KILL_CONNECTION)
    assert restarted.attempt(_alert("a5")).outcome is ActionOutcome.SUCCESS


def test_enable_from_another_process_resets_breaker(make_engine, client, temp_db):
    client.fail_execute = CollaboratorError("boom")
    engine = make_engine(_policy(rate_limit_seconds=0, breaker_max_failures=1))
    engine.attempt(_alert("a1"))
    assert engine.breaker.is_open(ActionKind.KILL_CONNECTION)

    client.fail_execute = None
    temp_db.enable_kind(ActionKind.KILL_CONNECTION)
    assert engine.attempt(_alert("a2")).outcome is ActionOutcome.SUCCESS


def test_rate_limit_checked_before_breaker(make_engine, client, clock):
    client.fail_execute = CollaboratorError("boom")
    engine = make_engine(_policy(breaker_max_failures=1))
    engine.attempt(_alert("a1"))
    clock.advance(10)
    skipped = engine.attempt(_alert("a2"))
    assert skipped.details["guardrail"] == "rate_limit"


def test_dry_run_describes_without_executing(make_engine, client):
    engine = make_engine(_policy(dry_run=True))
    first = engine.attempt(_alert("a1"))
    second = engine.attempt(_alert("a2"))

    assert first.dry_run
    assert first.outcome is ActionOutcome.SUCCESS
    assert any("PROCESSLIST" in stmt for stmt in first.details["plan"])
    assert second.outcome is ActionOutcome.SUCCESS
    assert client.executed == []


def test_force_dry_run_overrides_live_policy(make_engine, client):
    engine = make_engine()
    engine.force_dry_run = True
    assert engine.attempt(_alert()).dry_run
    assert client.executed == []


def test_approval_required(make_engine, client, temp_db):
    engine = make_engine(_policy(requires_approval=True))
    alert = _alert()

    held = engine.attempt(alert)
    assert held.outcome is ActionOutcome.SKIPPED_GUARDRAIL
    assert held.details["guardrail"] == "approval"
    assert client.executed == []
    assert not engine.awaiting_approval(alert)

    temp_db.approve_alert(alert.alert_id, "dba")
    assert engine.awaiting_approval(alert)
    assert engine.attempt(alert).outcome is ActionOutcome.SUCCESS
    assert not engine.awaiting_approval(alert)


# ── Timeout / cancellation ──────────────────────────────

def test_action_times_out(make_engine):
    slow = SlowExecutor()
    engine = make_engine(_policy(timeout_seconds=0.2), executor=slow)
    try:
        action = engine.attempt(_alert())
    finally:
        slow.release.set()
    assert action.outcome is ActionOutcome.FAILED
    assert "timed out" in action.reason


def test_shutdown_cancels_in_flight_action(make_engine):
    slow = SlowExecutor()
    shutdown = threading.Event()
    engine = make_engine(_policy(timeout_seconds=30), executor=slow, shutdown_event=shutdown)
    result = {}

    worker = threading.Thread(target=lambda: result.setdefault("action", engine.attempt(_alert())))
    worker.start()
    assert slow.started.wait(5)
    shutdown.set()
    worker.join(5)
    slow.release.set()

    assert result["action"].outcome is ActionOutcome.FAILED
    assert "cancelled" in result["action"].reason


def test_no_action_after_shutdown(make_engine, client):
    engine = make_engine()
    engine.shutdown_event.set()
    action = engine.attempt(_alert())
    assert action.outcome is ActionOutcome.FAILED
    assert client.executed == []


# ── Guardrail primitives ────────────────────────────────

def test_rate_limit_keys_are_independent(clock):
    limit = ActionRateLimit(900, clock=clock)
    limit.record("a")
    limit.check("b")
    with pytest.raises(GuardrailTripped) as exc:
        limit.check("a")
    assert exc.value.guardrail == "rate_limit"


def test_breaker_window_forgets_old_failures(clock):
    breaker = CircuitBreaker(max_failures=2, window_seconds=60, clock=clock)
    assert breaker.record_failure("KILL") is False
    clock.advance(120)
    assert breaker.record_failure("KILL") is False
    assert breaker.record_failure("KILL") is True
    with pytest.raises(GuardrailTripped):
        breaker.check("KILL")
    breaker.reset("KILL")
    breaker.check("KILL")
