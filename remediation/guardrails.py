"""Remediation guardrails: per-condition rate limit and per-kind circuit breaker."""
import logging
import threading
from collections import deque
from datetime import datetime, timezone

from utils.errors import GuardrailTripped

logger = logging.getLogger("mysqlwatch.remediation.guardrails")


def _utcnow():
    return datetime.now(timezone.utc)


class ActionRateLimit:
    """At most one live action per key within window_seconds, thread-safe."""

    def __init__(self, window_seconds=900, clock=None):
        self.window_seconds = window_seconds
        self._clock = clock or _utcnow
        self._last = {}
        self._lock = threading.Lock()

    def check(self, key):
        with self._lock:
            last = self._last.get(key)
        if last is None:
            return
        elapsed = (self._clock() - last).total_seconds()
        if elapsed < self.window_seconds:
            raise GuardrailTripped(
                "rate_limit",
                f"last action for {key} ran {int(elapsed)}s ago (limit: one per {self.window_seconds}s)",
            )

    def record(self, key, when=None):
        with self._lock:
            self._last[key] = when or self._clock()

    def load(self, last_times):
        """Seed from the audit log so a restart doesn't reopen the window."""
        with self._lock:
            for key, when in last_times.items():
                if key not in self._last or when > self._last[key]:
                    self._last[key] = when


class CircuitBreaker:
    """Disables an action kind after max_failures failures within window_seconds.

    A tripped kind stays disabled until reset() (operator `enable <kind>`).
    """

    def __init__(self, max_failures=3, window_seconds=3600, clock=None):
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self._clock = clock or _utcnow
        self._failures = {}
        self._tripped = {}
        self._lock = threading.Lock()

    def _prune(self, kind, now):
        history = self._failures.setdefault(kind, deque())
        while history and (now - history[0]).total_seconds() > self.window_seconds:
            history.popleft()
        return history

    def check(self, kind):
        with self._lock:
            reason = self._tripped.get(kind)
        if reason is not None:
            raise GuardrailTripped("circuit_breaker", f"{_name(kind)} disabled: {reason}")

    def record_failure(self, kind):
        """Count a failure; returns True if this failure tripped the breaker."""
        now = self._clock()
        with self._lock:
            history = self._prune(kind, now)
            history.append(now)
            if kind in self._tripped or len(history) < self.max_failures:
                return False
            self._tripped[kind] = f"{len(history)} failures within {self.window_seconds}s"
        logger.critical(f"Circuit breaker tripped for {_name(kind)}: {self._tripped[kind]}")
        return True

    def is_open(self, kind):
        with self._lock:
            return kind in self._tripped

    def trip(self, kind, reason):
        with self._lock:
            self._tripped[kind] = reason

    def reset(self, kind):
        with self._lock:
            self._tripped.pop(kind, None)
            self._failures.pop(kind, None)
        logger.info(f"Circuit breaker reset for {_name(kind)}")

    def tripped(self):
        with self._lock:
            return dict(self._tripped)


def _name(kind):
    return getattr(kind, "value", str(kind))
