"""Collector: polls metric sources into per-metric ring buffers."""
import math
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from models.enums import Severity
from models.metrics import Finding, MetricSample
from monitor.buffer import SampleBuffer
from utils.errors import SourceUnavailable

logger = logging.getLogger("mysqlwatch.collector")

UNAVAILABLE_SUFFIX = ".unavailable"


def unavailable_rule_id(metric_id):
    return f"{metric_id}{UNAVAILABLE_SUFFIX}"


@dataclass
class PollResult:
    metric_id: str
    sample: Optional[MetricSample] = None
    error: Optional[str] = None
    failures: int = 0
    finding: Optional[Finding] = None

    @property
    def ok(self):
        return self.error is None


class Collector:
    """Polls sources, isolating failures per source.

    After `failure_threshold` consecutive failures a source yields a synthetic
    "metric unavailable" Finding on each further failing poll, so a broken
    check alerts through the same path as any domain rule.
    """

    def __init__(self, sources, rules=None, failure_threshold=3, buffer_margin=2, clock=None):
        self.sources = {s.metric_id: s for s in sources}
        self.failure_threshold = failure_threshold
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._failures = {metric_id: 0 for metric_id in self.sources}
        self._failure_lock = threading.Lock()
        self.buffers = {
            metric_id: SampleBuffer(metric_id, self._capacity(source, rules or [], buffer_margin))
            for metric_id, source in self.sources.items()
        }

    @staticmethod
    def _capacity(source, rules, margin):
        bound = [r for r in rules if r.metric_id == source.metric_id]
        if not bound:
            return 1 + margin
        by_window = max(math.ceil(r.window_seconds / source.interval_seconds) for r in bound)
        by_count = max(r.consecutive_required for r in bound)
        return max(by_window, by_count) + margin

    def buffer(self, metric_id):
        return self.buffers[metric_id]

    def failures(self, metric_id):
        with self._failure_lock:
            return self._failures.get(metric_id, 0)

    def poll(self, source):
        """Sample one source. Never raises."""
        metric_id = source.metric_id
        try:
            sample = source.sample()
        except SourceUnavailable as e:
            return self._record_failure(metric_id, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error polling metric_id={metric_id}")
            return self._record_failure(metric_id, f"{type(e).__name__}: {e}")

        with self._failure_lock:
            previous = self._failures.get(metric_id, 0)
            self._failures[metric_id] = 0
        if previous >= self.failure_threshold:
            logger.info(f"Source recovered metric_id={metric_id} after {previous} failures")

        if sample is None:
            return PollResult(metric_id)
        self.buffers[metric_id].append(sample)
        logger.debug(f"Sample metric_id={metric_id} value={sample.value}")
        return PollResult(metric_id, sample=sample)

    def _record_failure(self, metric_id, error):
        with self._failure_lock:
            self._failures[metric_id] = self._failures.get(metric_id, 0) + 1
            count = self._failures[metric_id]
        logger.warning(f"Poll failed metric_id={metric_id} ({count} consecutive): {error}")

        finding = None
        if count >= self.failure_threshold:
            now = self._clock()
            rule_id = unavailable_rule_id(metric_id)
            finding = Finding(
                finding_id=f"{rule_id}@{now.isoformat()}",
                rule_id=rule_id,
                triggered_at=now,
                severity=Severity.CRITICAL,
                message=f"metric {metric_id} unavailable for {count} polls: {error}",
                synthetic=True,
            )
        return PollResult(metric_id, error=error, failures=count, finding=finding)

    def poll_all(self):
        """Poll every source once, sequentially (used by `run --once` and `sources --check`)."""
        return [self.poll(source) for source in self.sources.values()]
