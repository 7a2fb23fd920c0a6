"""Bounded per-metric sample buffer."""
import threading
from collections import deque


class SampleBuffer:
    """Thread-safe ring buffer; the oldest samples fall off when full."""

    def __init__(self, metric_id, capacity):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.metric_id = metric_id
        self.capacity = capacity
        self._samples = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, sample):
        with self._lock:
            self._samples.append(sample)

    def latest(self, n):
        """Return up to n most recent samples, oldest first."""
        with self._lock:
            if n >= len(self._samples):
                return list(self._samples)
            return list(self._samples)[-n:]

    def last(self):
        with self._lock:
            return self._samples[-1] if self._samples else None

    def __len__(self):
        with self._lock:
            return len(self._samples)
