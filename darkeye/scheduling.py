"""Cancellable one-shot timers and periodic worker threads."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol, Union


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def start_timer(seconds: float, callback: Callable[[], None]) -> threading.Timer:
    """Start a daemon ``threading.Timer`` and return it as a cancel handle."""

    timer = threading.Timer(max(0.0, float(seconds)), callback)
    timer.daemon = True
    timer.start()
    return timer


class PeriodicWorker:
    """Run ``job`` every ``interval`` seconds on a daemon thread.

    ``interval`` may be a callable; it is evaluated before every wait so a
    changed setting applies from the next cycle on.
    """

    def __init__(
        self,
        name: str,
        interval: Union[float, Callable[[], float]],
        job: Callable[[], object],
        *,
        run_immediately: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self._interval = interval
        self._job = job
        self._run_immediately = run_immediately
        self._log = logger or logging.getLogger(name)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop = threading.Event()
            self._thread = threading.Thread(target=self._run, args=(self._stop,), name=self.name, daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _next_interval(self) -> float:
        value = self._interval() if callable(self._interval) else self._interval
        return max(0.05, float(value))

    def _run(self, stop: threading.Event) -> None:
        if self._run_immediately and not stop.is_set():
            self._tick()
        while not stop.wait(self._next_interval()):
            self._tick()

    def _tick(self) -> None:
        try:
            self._job()
        except Exception:
            self._log.exception("%s: periodic job failed", self.name)
