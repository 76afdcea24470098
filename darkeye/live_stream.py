#!/usr/bin/env python3
"""
Live stream controller (on-demand HLS transcodes).

Why this file exists:
- Browsers cannot play the relay's RTSP output directly, and we don't want
  an HLS transcode per camera running 24/7.
- Viewers send a heartbeat every few seconds while the player is open.
  The first heartbeat starts the transcode; a sweep every few seconds stops
  any session that has not been heartbeated for the idle timeout. Missing
  heartbeats are the only stop signal a viewer sends.
- Cameras registered as recorder-controlled never get a transcode: their
  recorder already keeps the relay source live. Registering tears down any
  session that is running for that camera.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from darkeye import ffmpeg_io
from darkeye.capture import CaptureProcess, SpawnFactory, SubprocessCapture
from darkeye.scheduling import PeriodicWorker

DEFAULT_IDLE_TIMEOUT = 20.0
DEFAULT_SWEEP_INTERVAL = 5.0


@dataclass
class StreamSession:
    camera_id: str
    source_url: str
    output_dir: Path
    process: CaptureProcess
    started_at: float
    last_heartbeat: float
    running: bool = field(default=False)


class LiveStreamController:
    def __init__(
        self,
        hls_root: Path | str,
        *,
        spawn: SpawnFactory = SubprocessCapture,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        ffmpeg_binary: str = "ffmpeg",
        ffmpeg_loglevel: str = "error",
    ):
        self.hls_root = Path(hls_root)
        self._spawn = spawn
        self.idle_timeout = float(idle_timeout)
        self._clock = clock
        self._binary = ffmpeg_binary
        self._loglevel = ffmpeg_loglevel
        self._lock = threading.Lock()
        self._sessions: dict[str, StreamSession] = {}
        self._recorder_controlled: set[str] = set()
        self._sweeper = PeriodicWorker("live_sweep", sweep_interval, self.sweep_idle)
        self._log = logging.getLogger("live_stream")

    def playlist_path(self, camera_id: str) -> Path:
        return self.hls_root / camera_id / ffmpeg_io.HLS_PLAYLIST

    # --- Viewer side ---
    def heartbeat(self, camera_id: str, source_url: str) -> bool:
        """Record viewer interest; returns True when an HLS session is live."""
        now = self._clock()
        with self._lock:
            if camera_id in self._recorder_controlled:
                return False
            session = self._sessions.get(camera_id)
            if session is not None:
                session.last_heartbeat = now
                return True
            output_dir = self.hls_root / camera_id
            args = ffmpeg_io.live_hls_command(
                source_url, str(output_dir), binary=self._binary, loglevel=self._loglevel
            )
            proc = self._spawn(args, name=f"{camera_id}:live")
            session = StreamSession(
                camera_id=camera_id,
                source_url=source_url,
                output_dir=output_dir,
                process=proc,
                started_at=now,
                last_heartbeat=now,
            )
            proc.on_exit(partial(self._on_exit, camera_id, proc))
            self._sessions[camera_id] = session

        try:
            self._prepare_output_dir(output_dir)
        except OSError as exc:
            self._log.error("[%s] cannot prepare HLS directory %s: %s", camera_id, output_dir, exc)
            self._discard(camera_id, proc)
            return False

        started = proc.start()
        with self._lock:
            if self._sessions.get(camera_id) is session:
                session.running = bool(started)
        if started:
            self._log.info("[%s] live transcode started", camera_id)
        return bool(started)

    def sweep_idle(self, now: Optional[float] = None) -> list[str]:
        """Stop every session whose last heartbeat is older than the idle timeout."""
        if now is None:
            now = self._clock()
        with self._lock:
            expired = [
                s for s in self._sessions.values() if now - s.last_heartbeat > self.idle_timeout
            ]
            for session in expired:
                del self._sessions[session.camera_id]
        for session in expired:
            self._log.info(
                "[%s] no heartbeat for %.0fs; stopping live transcode",
                session.camera_id, now - session.last_heartbeat,
            )
            session.process.kill()
        return [s.camera_id for s in expired]

    # --- Recorder exclusivity ---
    def register_recorder(self, camera_id: str) -> None:
        with self._lock:
            self._recorder_controlled.add(camera_id)
        self.stop_stream(camera_id)

    def unregister_recorder(self, camera_id: str) -> None:
        with self._lock:
            self._recorder_controlled.discard(camera_id)

    def is_recorder_controlled(self, camera_id: str) -> bool:
        with self._lock:
            return camera_id in self._recorder_controlled

    # --- Control ---
    def stop_stream(self, camera_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(camera_id, None)
        if session is None:
            return False
        session.process.kill()
        self._log.info("[%s] live transcode stopped", camera_id)
        return True

    def stop_all(self) -> None:
        with self._lock:
            ids = list(self._sessions)
        for camera_id in ids:
            self.stop_stream(camera_id)

    def start(self) -> None:
        self._sweeper.start()

    def stop(self) -> None:
        self._sweeper.stop()
        self.stop_all()

    def status(self) -> dict:
        now = self._clock()
        with self._lock:
            return {
                "idle_timeout_sec": self.idle_timeout,
                "recorder_controlled": sorted(self._recorder_controlled),
                "sessions": {
                    s.camera_id: {
                        "running": s.running,
                        "idle_sec": round(now - s.last_heartbeat, 1),
                        "uptime_sec": round(now - s.started_at, 1),
                    }
                    for s in self._sessions.values()
                },
            }

    # --- Internals ---
    def _prepare_output_dir(self, output_dir: Path) -> None:
        output_dir.mkdir(parents=True, exist_ok=True)
        # clean stale files
        for fn in os.listdir(output_dir):
            if fn.endswith((".m3u8", ".ts")):
                os.remove(os.path.join(output_dir, fn))

    def _discard(self, camera_id: str, proc: CaptureProcess) -> None:
        with self._lock:
            session = self._sessions.get(camera_id)
            if session is not None and session.process is proc:
                del self._sessions[camera_id]

    def _on_exit(self, camera_id: str, proc: CaptureProcess, event: str, message: Optional[str]) -> None:
        self._discard(camera_id, proc)
        self._log.info("[%s] live transcode %s: %s", camera_id, event, message or "stream closed")
