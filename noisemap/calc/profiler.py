from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

import psutil

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfileSample:
    elapsed: float
    metrics: dict[str, float] = field(default_factory=dict)


def process_memory_mb() -> float:
    return psutil.Process().memory_info().rss / 1024 ** 2


class ProfilerTask:
    """Daemon thread publishing metric samples on a queue at a fixed interval.

    Metrics are read-only callables; the consumer of ``channel`` decides what
    to do with the samples.
    """

    def __init__(self, interval: float = 1.0, channel: queue.Queue | None = None):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.interval = interval
        self.channel: queue.Queue = channel if channel is not None else queue.Queue()
        self._metrics: dict[str, Callable[[], float]] = {"memory_mb": process_memory_mb}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._started = 0.0

    def add_metric(self, name: str, read: Callable[[], float]) -> None:
        self._metrics[name] = read

    def sample(self) -> ProfileSample:
        values = {name: float(read()) for name, read in self._metrics.items()}
        return ProfileSample(elapsed=time.perf_counter() - self._started, metrics=values)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.channel.put(self.sample())

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._started = time.perf_counter()
        self._thread = threading.Thread(target=self._run, name="noisemap-profiler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join()
        self._thread = None
        # Last sample so short runs still report.
        self.channel.put(self.sample())
        logger.debug("Profiler stopped")

    def __enter__(self) -> ProfilerTask:
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
