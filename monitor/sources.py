"""Metric sources: declarative {query, parser} checks behind one interface."""
import shutil
import logging
import threading
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from models.metrics import MetricSample
from monitor.parsers import get_parser, REQUIRED_OPTIONS
from utils.errors import CollaboratorError, ConfigurationError, SourceUnavailable

logger = logging.getLogger("mysqlwatch.sources")

DEFAULT_INTERVAL = 10
DEFAULT_TIMEOUT = 5


@runtime_checkable
class MetricSource(Protocol):
    metric_id: str
    interval_seconds: float

    def sample(self) -> Optional[MetricSample]: ...


class SqlMetricSource:
    """Runs a read-only diagnostic query and reduces the rows to a value.

    mode="delta" turns a cumulative server counter into the increase since the
    previous poll; the first poll (and any counter reset) only primes.
    """

    def __init__(self, metric_id, client, query, parser="scalar", options=None,
                 interval_seconds=DEFAULT_INTERVAL, timeout_seconds=DEFAULT_TIMEOUT,
                 mode="gauge", tags=None, clock=None):
        self.metric_id = metric_id
        self.client = client
        self.query = query
        self.parser_name = parser
        self.parser = get_parser(parser)
        self.options = options or {}
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self.mode = mode
        self.tags = tags or {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._previous = None
        self._lock = threading.Lock()

    def _read(self):
        try:
            rows = self.client.query(self.query, timeout=self.timeout_seconds)
        except CollaboratorError as e:
            raise SourceUnavailable(self.metric_id, str(e)) from e
        try:
            value = self.parser(rows, self.options)
        except (ValueError, TypeError, KeyError) as e:
            raise SourceUnavailable(self.metric_id, f"unparseable result: {e}") from e
        if value is None:
            raise SourceUnavailable(self.metric_id, "query returned no value")
        return value

    def sample(self):
        value = self._read()
        now = self._clock()
        if self.mode == "delta":
            with self._lock:
                previous, self._previous = self._previous, value
            if previous is None or value < previous:
                logger.debug(f"{self.metric_id}: counter primed at {value}")
                return None
            value = value - previous
        return MetricSample(metric_id=self.metric_id, value=value, timestamp=now, tags=self.tags)

    def describe(self):
        return f"{self.parser_name}: {self.query}"


class DiskFreeSource:
    """Free space percentage of a local filesystem path."""

    def __init__(self, metric_id, path, interval_seconds=DEFAULT_INTERVAL, tags=None, clock=None):
        self.metric_id = metric_id
        self.path = path
        self.interval_seconds = interval_seconds
        self.timeout_seconds = DEFAULT_TIMEOUT
        self.tags = tags or {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def sample(self):
        try:
            usage = shutil.disk_usage(self.path)
        except OSError as e:
            raise SourceUnavailable(self.metric_id, f"disk_usage({self.path}) failed: {e}") from e
        if usage.total == 0:
            raise SourceUnavailable(self.metric_id, f"{self.path} reports zero size")
        pct = usage.free / usage.total * 100
        return MetricSample(metric_id=self.metric_id, value=pct, timestamp=self._clock(), tags=self.tags)

    def describe(self):
        return f"disk free %: {self.path}"


def build_sources(config, client, clock=None):
    """Create enabled sources from the `sources` config list.

    Returns (sources, disabled_metric_ids).
    """
    collector_cfg = config.get("collector", {})
    default_interval = collector_cfg.get("default_interval_seconds", DEFAULT_INTERVAL)
    default_timeout = collector_cfg.get("default_timeout_seconds", DEFAULT_TIMEOUT)

    sources = []
    disabled = set()
    seen = set()
    for raw in config.get("sources") or []:
        metric_id = raw.get("metric_id")
        if not metric_id:
            raise ConfigurationError(f"source without metric_id: {raw}")
        if metric_id in seen:
            raise ConfigurationError(f"duplicate source for metric_id {metric_id}")
        seen.add(metric_id)

        interval = raw.get("interval_seconds", default_interval)
        if not isinstance(interval, (int, float)) or interval <= 0:
            raise ConfigurationError(f"source {metric_id}: interval_seconds must be > 0")

        if not raw.get("enabled", True):
            disabled.add(metric_id)
            continue

        kind = raw.get("kind", "sql")
        if kind == "sql":
            parser = raw.get("parser", "scalar")
            if get_parser(parser) is None:
                raise ConfigurationError(f"source {metric_id}: unknown parser {parser!r}")
            options = raw.get("options") or {}
            missing = [o for o in REQUIRED_OPTIONS.get(parser, ()) if o not in options]
            if missing:
                raise ConfigurationError(f"source {metric_id}: parser {parser} needs options {missing}")
            if not raw.get("query"):
                raise ConfigurationError(f"source {metric_id}: missing query")
            mode = raw.get("mode", "gauge")
            if mode not in ("gauge", "delta"):
                raise ConfigurationError(f"source {metric_id}: mode must be gauge or delta")
            sources.append(SqlMetricSource(
                metric_id=metric_id,
                client=client,
                query=raw["query"],
                parser=parser,
                options=options,
                interval_seconds=interval,
                timeout_seconds=raw.get("timeout_seconds", default_timeout),
                mode=mode,
                tags=raw.get("tags"),
                clock=clock,
            ))
        elif kind == "disk":
            if not raw.get("path"):
                raise ConfigurationError(f"source {metric_id}: disk source needs path")
            sources.append(DiskFreeSource(metric_id, raw["path"], interval_seconds=interval,
                                          tags=raw.get("tags"), clock=clock))
        else:
            raise ConfigurationError(f"source {metric_id}: unknown kind {kind!r}")

    logger.info(f"Configured {len(sources)} sources ({len(disabled)} disabled)")
    return sources, disabled
