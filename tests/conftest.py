"""Shared test fixtures."""
import os
import sys
import pytest
import tempfile
from datetime import datetime, timedelta, timezone

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.database import Database
from models.enums import Comparator, Severity
from models.alerts import Rule
from models.metrics import MetricSample
from utils.errors import CollaboratorError, SourceUnavailable, StoreUnavailable

T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock; call it to read, advance() to move."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeClient:
    """Stands in for MySQLClient: canned rows per query, records executed statements."""

    def __init__(self, rows=None):
        self.rows = dict(rows or {})
        self.executed = []
        self.fail_queries = set()
        self.fail_execute = None

    def query(self, sql, params=None, timeout=None):
        if sql in self.fail_queries:
            raise CollaboratorError("Lost connection to MySQL server", statement=sql, code=2013)
        result = self.rows.get(sql, [])
        if callable(result):
            return result(params)
        return list(result)

    def execute(self, sql, params=None, timeout=None):
        if self.fail_execute is not None:
            raise self.fail_execute
        self.executed.append((sql, dict(params) if params else None))
        return 1

    def ping(self):
        return {"reachable": True, "latency_ms": 1, "version": "8.0.36"}


class FlakyStore:
    """Wraps a Database; raises StoreUnavailable on alert reads and writes while `down`."""

    def __init__(self, db):
        self.db = db
        self.down = False

    def upsert_alert(self, alert):
        if self.down:
            raise StoreUnavailable("database is locked")
        return self.db.upsert_alert(alert)

    def get_active_alert(self, rule_id):
        if self.down:
            raise StoreUnavailable("database is locked")
        return self.db.get_active_alert(rule_id)

    def __getattr__(self, name):
        return getattr(self.db, name)


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)
        return 1

    def of_type(self, event_type):
        return [e for e in self.events if e.type is event_type]


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    db = Database(db_path)
    db.connect()
    yield db
    db.close()
    os.unlink(db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def lag_rule():
    return Rule(
        rule_id="replication_lag_high",
        metric_id="replication_lag_seconds",
        comparator=Comparator.GT,
        threshold=60,
        consecutive_required=5,
        window_seconds=60,
        severity=Severity.CRITICAL,
    )


def make_samples(metric_id, values, start=T0, interval=10):
    """Samples at a fixed interval starting at `start`."""
    return [
        MetricSample(metric_id=metric_id, value=v, timestamp=start + timedelta(seconds=i * interval))
        for i, v in enumerate(values)
    ]


class StubSource:
    """A MetricSource whose value or failure is set by the test."""

    def __init__(self, metric_id="threads_connected", interval_seconds=10, clock=None):
        self.metric_id = metric_id
        self.interval_seconds = interval_seconds
        self.fail = False
        self.value = 10
        self._clock = clock or FakeClock()

    def sample(self):
        if self.fail:
            raise SourceUnavailable(self.metric_id, "Can't connect to MySQL server")
        return MetricSample(self.metric_id, self.value, self._clock())

    def describe(self):
        return "stub"
