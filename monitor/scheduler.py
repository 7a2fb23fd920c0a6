"""Background scheduler: per-source polling on a bounded worker pool."""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import schedule

logger = logging.getLogger("mysqlwatch.scheduler")


class AgentScheduler:
    """Drives the agent: each source on its own interval, one poll in flight per source."""

    def __init__(self, agent, sources, housekeeping_interval=10, shutdown_event=None):
        self.agent = agent
        self.sources = list(sources)
        self.housekeeping_interval = housekeeping_interval
        self._scheduler = schedule.Scheduler()
        self._executor = None
        self._inflight = {}
        self._inflight_lock = threading.Lock()
        self._thread = None
        self._stop = shutdown_event or threading.Event()

    @property
    def running(self):
        return self._thread is not None and not self._stop.is_set()

    def start(self):
        """Start background polling."""
        if self._thread is not None:
            return
        self._executor = ThreadPoolExecutor(max_workers=max(1, len(self.sources)), thread_name_prefix="poll")
        for source in self.sources:
            self._scheduler.every(source.interval_seconds).seconds.do(self._dispatch, source)
        self._scheduler.every(self.housekeeping_interval).seconds.do(self._housekeeping)

        self._thread = threading.Thread(target=self._run_loop, name="scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started ({len(self.sources)} sources)")

    def stop(self, timeout=10):
        """Stop polling; in-flight polls finish within their own timeouts."""
        self._stop.set()
        self._scheduler.clear()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        if self._executor:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
        logger.info("Scheduler stopped")

    def wait(self):
        """Block until stop() is called or the shutdown event is set."""
        while not self._stop.wait(1):
            pass

    def _run_loop(self):
        # Do an initial poll immediately
        for source in self.sources:
            self._dispatch(source)
        while not self._stop.is_set():
            self._scheduler.run_pending()
            self._stop.wait(0.2)

    def _dispatch(self, source):
        if self._stop.is_set():
            return
        with self._inflight_lock:
            previous = self._inflight.get(source.metric_id)
            if previous is not None and not previous.done():
                logger.warning(f"Poll for metric_id={source.metric_id} still running, skipping this interval")
                return
            try:
                self._inflight[source.metric_id] = self._executor.submit(self._poll, source)
            except RuntimeError:
                # executor already shut down
                return

    def _poll(self, source):
        try:
            self.agent.poll(source)
        except Exception:
            logger.exception(f"Pipeline error for metric_id={source.metric_id}")

    def _housekeeping(self):
        try:
            self.agent.tick()
        except Exception:
            logger.exception("Housekeeping error")
