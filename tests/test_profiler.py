import queue
import time

import pytest

from noisemap.calc.profiler import ProfilerTask, process_memory_mb


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        ProfilerTask(interval=0.0)


def test_memory_metric():
    assert process_memory_mb() > 0.0


def test_samples_are_published():
    channel = queue.Queue()
    counter = {"n": 0}
    with ProfilerTask(interval=0.01, channel=channel) as profiler:
        profiler.add_metric("items", lambda: counter["n"])
        counter["n"] = 5
        time.sleep(0.05)
    samples = []
    while not channel.empty():
        samples.append(channel.get_nowait())
    assert samples
    assert samples[-1].metrics["items"] == 5.0
    assert "memory_mb" in samples[-1].metrics
    elapsed = [s.elapsed for s in samples]
    assert elapsed == sorted(elapsed)


def test_stop_without_start_is_noop():
    channel = queue.Queue()
    ProfilerTask(channel=channel).stop()
    assert channel.empty()
