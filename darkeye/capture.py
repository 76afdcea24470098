#!/usr/bin/env python3
"""
CaptureProcess: one external ffmpeg (or relay) process plus its exit events.

- start() spawns the process and returns immediately
- a watcher thread drains stderr and reports the exit as an event:
    "error"  abnormal exit (non-zero return code) or spawn failure
    "end"    graceful exit (return code 0, e.g. the source closed the stream)
- kill() shuts the process down and suppresses any further exit event

Supervisors only talk to the CaptureProcess protocol, so tests can drive
them with fakes that raise synthetic exit events.
"""

from __future__ import annotations

import collections
import logging
import subprocess
import threading
from typing import Callable, Optional, Protocol

EVENT_ERROR = "error"
EVENT_END = "end"

ExitCallback = Callable[[str, Optional[str]], None]


class CaptureProcess(Protocol):
    name: str
    args: list[str]

    def on_exit(self, callback: ExitCallback) -> None: ...

    def start(self) -> bool: ...

    def kill(self) -> None: ...

    @property
    def running(self) -> bool: ...


SpawnFactory = Callable[..., CaptureProcess]


class SubprocessCapture:
    """``subprocess.Popen`` backed CaptureProcess."""

    STDERR_TAIL_LINES = 20

    def __init__(
        self,
        args: list[str],
        *,
        name: str,
        stdin: bool = False,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.name = name
        self.args = list(args)
        self._want_stdin = stdin
        self._popen = popen
        self._callbacks: list[ExitCallback] = []
        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None
        self._killed = False
        self._exited = threading.Event()
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=self.STDERR_TAIL_LINES)
        self._log = logging.getLogger("capture")

    def on_exit(self, callback: ExitCallback) -> None:
        with self._lock:
            self._callbacks.append(callback)

    @property
    def pid(self) -> Optional[int]:
        proc = self._proc
        return proc.pid if proc is not None else None

    @property
    def returncode(self) -> Optional[int]:
        proc = self._proc
        return proc.returncode if proc is not None else None

    @property
    def running(self) -> bool:
        proc = self._proc
        return proc is not None and not self._exited.is_set() and proc.poll() is None

    def start(self) -> bool:
        """Spawn the process; a spawn failure is reported as an "error" event."""
        with self._lock:
            if self._proc is not None or self._killed:
                return self._proc is not None
        try:
            proc = self._popen(
                self.args,
                stdin=subprocess.PIPE if self._want_stdin else subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                bufsize=0,
                start_new_session=True,
            )
        except OSError as exc:
            self._log.error("[%s] failed to launch %s: %s", self.name, self.args[0], exc)
            threading.Thread(
                target=self._emit, args=(EVENT_ERROR, f"spawn failed: {exc}"), daemon=True
            ).start()
            return False

        with self._lock:
            self._proc = proc
        self._log.info("[%s] started pid=%s: %s", self.name, proc.pid, " ".join(self.args))
        threading.Thread(target=self._watch, args=(proc,), name=f"capture-{self.name}", daemon=True).start()
        return True

    def write(self, data: bytes) -> bool:
        proc = self._proc
        if proc is None or proc.stdin is None or self._exited.is_set():
            return False
        try:
            proc.stdin.write(data)
        except (BrokenPipeError, OSError, ValueError) as e:
            self._log.debug("[%s] stdin write failed: %r", self.name, e)
            return False
        return True

    def close_stdin(self) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None:
            return
        try:
            proc.stdin.close()
        except OSError as e:
            self._log.debug("[%s] stdin close error: %r", self.name, e)

    def kill(self) -> None:
        """
        Stop the process robustly and suppress its exit event.
        - Close stdin to signal EOF.
        - SIGTERM with timeout; if still alive, SIGKILL with explicit error logging.
        """
        with self._lock:
            self._killed = True
            proc = self._proc
        if proc is None:
            return

        self.close_stdin()
        rc = proc.poll()
        if rc is not None:
            self._log.debug("[%s] already exited rc=%s", self.name, rc)
            return
        try:
            proc.terminate()
            try:
                rc = proc.wait(timeout=1.5)
                self._log.info("[%s] terminated with rc=%s", self.name, rc)
            except subprocess.TimeoutExpired:
                self._log.warning("[%s] did not exit after SIGTERM; sending SIGKILL", self.name)
                try:
                    proc.kill()
                except OSError as e:
                    self._log.exception("[%s] kill() raised; process may remain: %r", self.name, e)
                else:
                    try:
                        rc = proc.wait(timeout=1.0)
                        self._log.info("[%s] killed; rc=%s", self.name, rc)
                    except subprocess.TimeoutExpired:
                        self._log.error("[%s] still not reaped after SIGKILL; zombie risk", self.name)
        except OSError as e:
            self._log.exception("[%s] error during termination: %r", self.name, e)

    def wait(self, timeout: float | None = None) -> bool:
        return self._exited.wait(timeout)

    def _watch(self, proc: subprocess.Popen) -> None:
        stream = proc.stderr
        if stream is not None:
            try:
                for raw in iter(stream.readline, b""):
                    line = raw.decode("utf-8", errors="replace").rstrip()
                    if line:
                        self._stderr_tail.append(line)
                        self._log.debug("[%s] %s", self.name, line)
            except (OSError, ValueError) as e:
                self._log.debug("[%s] stderr read ended: %r", self.name, e)
            finally:
                stream.close()
        rc = proc.wait()
        if rc == 0:
            self._emit(EVENT_END, None)
        else:
            detail = self._stderr_tail[-1] if self._stderr_tail else "no diagnostics"
            self._emit(EVENT_ERROR, f"exited with rc={rc}: {detail}")

    def _emit(self, event: str, message: Optional[str]) -> None:
        self._exited.set()
        with self._lock:
            if self._killed:
                return
            callbacks = list(self._callbacks)
        if event == EVENT_ERROR:
            self._log.warning("[%s] %s", self.name, message)
        else:
            self._log.info("[%s] stream ended", self.name)
        for callback in callbacks:
            try:
                callback(event, message)
            except Exception:
                self._log.exception("[%s] exit callback failed", self.name)
