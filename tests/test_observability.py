"""Tests for the in-process metrics collector."""

import threading

from observability import Metrics


def test_counter_concurrent_increments():
    m = Metrics()
    barrier = threading.Barrier(8)

    def bump():
        barrier.wait()
        for _ in range(2000):
            m.counter("imports.completed")

    workers = [threading.Thread(target=bump) for _ in range(8)]
    for w in workers:
        w.start()
    for w in workers:
        w.join()

    assert m.count("imports.completed") == 16000


def test_timer_records_on_error():
    m = Metrics()
    try:
        with m.timer("applier.apply"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert m.summary()["timers"]["applier.apply"]["count"] == 1


def test_reset_clears_everything():
    m = Metrics()
    m.counter("analysis.proposals", 3)
    with m.timer("analysis.run"):
        pass
    m.reset()
    assert m.summary() == {"counters": {}, "timers": {}}
