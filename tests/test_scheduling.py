from __future__ import annotations

import logging
import threading

from darkeye.scheduling import PeriodicWorker, start_timer


def test_start_timer_fires_once():
    fired = threading.Event()
    timer = start_timer(0.01, fired.set)

    assert fired.wait(5)
    assert timer.daemon


def test_cancelled_timer_never_fires():
    fired = threading.Event()
    timer = start_timer(0.2, fired.set)
    timer.cancel()

    assert not fired.wait(0.4)


def test_worker_runs_immediately_and_repeats():
    calls = []
    enough = threading.Event()

    def job():
        calls.append(1)
        if len(calls) >= 3:
            enough.set()

    worker = PeriodicWorker("test_worker", 0.05, job, run_immediately=True)
    worker.start()
    try:
        assert enough.wait(5)
    finally:
        worker.stop()

    assert not worker.running


def test_worker_reads_callable_interval_each_cycle():
    seen = []
    done = threading.Event()

    def interval():
        seen.append(1)
        if len(seen) >= 2:
            done.set()
        return 0.05

    worker = PeriodicWorker("test_interval", interval, lambda: None)
    worker.start()
    try:
        assert done.wait(5)
    finally:
        worker.stop()


def test_worker_survives_job_errors(caplog):
    caplog.set_level(logging.ERROR, logger="test_errors")
    calls = []
    done = threading.Event()

    def job():
        calls.append(1)
        if len(calls) >= 2:
            done.set()
        raise RuntimeError("boom")

    worker = PeriodicWorker("test_errors", 0.05, job, run_immediately=True)
    worker.start()
    try:
        assert done.wait(5)
    finally:
        worker.stop()

    assert "periodic job failed" in caplog.text


def test_start_twice_keeps_one_thread():
    worker = PeriodicWorker("test_double", 10, lambda: None)
    worker.start()
    worker.start()
    try:
        names = [t.name for t in threading.enumerate() if t.name == "test_double"]
        assert names == ["test_double"]
    finally:
        worker.stop()
