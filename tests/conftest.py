from __future__ import annotations

import pytest


class FakeCapture:
    """Stands in for SubprocessCapture; tests raise exit events by hand."""

    def __init__(self, args, *, name, stdin=False, fail=False):
        self.args = list(args)
        self.name = name
        self.stdin = stdin
        self.fail = fail
        self.callbacks = []
        self.started = False
        self.killed = False
        self.exited = False
        self.stdin_closed = False
        self.written = []

    def on_exit(self, callback):
        self.callbacks.append(callback)

    def start(self):
        if self.killed or self.fail:
            return False
        self.started = True
        return True

    def kill(self):
        self.killed = True

    @property
    def running(self):
        return self.started and not self.killed and not self.exited

    def write(self, data):
        if not self.running:
            return False
        self.written.append(bytes(data))
        return True

    def close_stdin(self):
        self.stdin_closed = True

    def emit(self, event="error", message="exited with rc=1"):
        self.exited = True
        for callback in list(self.callbacks):
            callback(event, message)


class Spawner:
    def __init__(self):
        self.processes = []
        self.fail = False

    def __call__(self, args, *, name, stdin=False):
        proc = FakeCapture(args, name=name, stdin=stdin, fail=self.fail)
        self.processes.append(proc)
        return proc

    def named(self, name):
        return [p for p in self.processes if p.name == name]

    def alive(self):
        return [p for p in self.processes if p.running]


class FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True

    def fire(self):
        # Fires even when cancelled, like a threading.Timer that already left its wait.
        self.fired = True
        self.callback()


class TimerQueue:
    def __init__(self):
        self.timers = []

    def __call__(self, delay, callback):
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def fire_pending(self):
        for timer in self.pending():
            timer.fire()


@pytest.fixture
def spawner():
    return Spawner()


@pytest.fixture
def timers():
    return TimerQueue()
