#!/usr/bin/env python3
"""
Recorder: keeps one camera's capture processes alive.

Each camera owns up to two tracks, supervised independently:
- "main"       continuous recording (stream copy or re-encode), skipped
               when the record mode is "none"
- "timelapse"  one frame every N seconds, keyframe-aligned segments

A track that exits while recording is still wanted is restarted after a
fixed backoff, with its command rebuilt from the current settings. The
pending restart is a cancellable timer; a newer exit or stop() always
cancels the previous one so a track never runs twice.
"""

from __future__ import annotations

import logging
import threading
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from darkeye import ffmpeg_io
from darkeye.capture import CaptureProcess, SpawnFactory, SubprocessCapture
from darkeye.models import RECORD_MODE_ENCODE, CameraConfig, Settings
from darkeye.scheduling import TimerFactory, TimerHandle, start_timer
from darkeye.store import StoreError

TRACK_MAIN = "main"
TRACK_TIMELAPSE = "timelapse"

DEFAULT_RESTART_BACKOFF = 5.0


class _Track:
    def __init__(self, label: str, args: list[str]):
        self.label = label
        self.args = args
        self.process: Optional[CaptureProcess] = None
        self.started = False
        self.timer: Optional[TimerHandle] = None
        self.restart_token = 0
        self.restarts = 0

    def cancel_timer(self) -> None:
        self.restart_token += 1
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class Recorder:
    def __init__(
        self,
        camera: CameraConfig,
        *,
        settings_loader: Callable[[], Settings],
        spawn: SpawnFactory = SubprocessCapture,
        timer_factory: TimerFactory = start_timer,
        restart_backoff: float = DEFAULT_RESTART_BACKOFF,
        relay_host: str = ffmpeg_io.RELAY_HOST,
        relay_port: int = ffmpeg_io.RELAY_RTSP_PORT,
        ffmpeg_binary: str = "ffmpeg",
        ffmpeg_loglevel: str = "error",
    ):
        self.camera = camera
        self._settings_loader = settings_loader
        self._spawn = spawn
        self._timer_factory = timer_factory
        self._backoff = float(restart_backoff)
        self._source = ffmpeg_io.relay_url(camera.id, host=relay_host, port=relay_port)
        self._binary = ffmpeg_binary
        self._loglevel = ffmpeg_loglevel
        self._lock = threading.Lock()
        self._should_record = False
        self._tracks: dict[str, _Track] = {}
        self._log = logging.getLogger("recorder")

    @property
    def camera_id(self) -> str:
        return self.camera.id

    @property
    def should_record(self) -> bool:
        with self._lock:
            return self._should_record

    @property
    def is_recording(self) -> bool:
        """True only while some track has a successfully started process."""
        with self._lock:
            return any(t.started for t in self._tracks.values())

    def track_args(self, label: str) -> Optional[list[str]]:
        with self._lock:
            track = self._tracks.get(label)
            return list(track.args) if track else None

    # --- Lifecycle ---
    def start(self) -> None:
        """Spawn every configured track; returns without waiting on them."""
        self.stop()
        try:
            settings = self._settings_loader()
        except StoreError as exc:
            self._log.error("[%s] cannot read settings; not recording: %s", self.camera_id, exc)
            return
        try:
            commands = self._track_commands(settings)
        except OSError as exc:
            self._log.error(
                "[%s] cannot prepare output directory %s: %s",
                self.camera_id, self._camera_dir(settings), exc,
            )
            return

        tracks = [_Track(label, args) for label, args in commands.items()]
        with self._lock:
            self._should_record = True
            self._tracks = {t.label: t for t in tracks}

        if not tracks:
            self._log.info("[%s] recording and timelapse disabled; live view only", self.camera_id)
            return
        for track in tracks:
            self._launch(track)

    def stop(self) -> None:
        """Cancel pending restarts and terminate every track process."""
        with self._lock:
            self._should_record = False
            victims = []
            for track in self._tracks.values():
                track.cancel_timer()
                if track.process is not None:
                    victims.append(track.process)
                track.process = None
                track.started = False
        for proc in victims:
            proc.kill()
        if victims:
            self._log.info("[%s] recording stopped", self.camera_id)

    def status(self) -> dict:
        with self._lock:
            return {
                "camera_id": self.camera_id,
                "should_record": self._should_record,
                "recording": any(t.started for t in self._tracks.values()),
                "tracks": {
                    label: {
                        "running": t.started,
                        "restart_pending": t.timer is not None,
                        "restarts": t.restarts,
                    }
                    for label, t in self._tracks.items()
                },
            }

    # --- Internals ---
    def _camera_dir(self, settings: Settings) -> Path:
        return Path(settings.storage_path) / self.camera_id

    def _track_commands(self, settings: Settings) -> dict[str, list[str]]:
        """Build the argv of every wanted track, creating its output directory."""
        camera = self.camera
        camera_dir = self._camera_dir(settings)
        camera_dir.mkdir(parents=True, exist_ok=True)
        commands: dict[str, list[str]] = {}
        if camera.records_video:
            commands[TRACK_MAIN] = ffmpeg_io.recording_command(
                self._source,
                str(camera_dir),
                segment_minutes=camera.segment_duration,
                encode=camera.record_mode == RECORD_MODE_ENCODE,
                binary=self._binary,
                loglevel=self._loglevel,
            )
        if camera.timelapse_active:
            timelapse_dir = camera_dir / ffmpeg_io.TIMELAPSE_DIRNAME
            timelapse_dir.mkdir(parents=True, exist_ok=True)
            commands[TRACK_TIMELAPSE] = ffmpeg_io.timelapse_command(
                self._source,
                str(timelapse_dir),
                interval_seconds=camera.timelapse_interval,
                segment_minutes=camera.timelapse_duration,
                binary=self._binary,
                loglevel=self._loglevel,
            )
        return commands

    def _launch(self, track: _Track) -> None:
        with self._lock:
            if not self._should_record or self._tracks.get(track.label) is not track:
                return
            track.cancel_timer()
            proc = self._spawn(track.args, name=f"{self.camera_id}:{track.label}")
            proc.on_exit(partial(self._on_exit, track, proc))
            track.process = proc
            track.started = False
        # stop() between here and start() kills the handle first; start() then no-ops.
        started = proc.start()
        with self._lock:
            if track.process is proc:
                track.started = bool(started)

    def _schedule_restart(self, track: _Track) -> None:
        # Caller holds self._lock.
        track.cancel_timer()
        token = track.restart_token
        track.timer = self._timer_factory(self._backoff, partial(self._restart_due, track, token))

    def _on_exit(self, track: _Track, proc: CaptureProcess, event: str, message: Optional[str]) -> None:
        with self._lock:
            if track.process is not proc:
                return
            track.process = None
            track.started = False
            if not self._should_record:
                return
            self._schedule_restart(track)
        self._log.warning(
            "[%s] %s %s (%s); restarting in %.0fs",
            self.camera_id, track.label, event, message or "no details", self._backoff,
        )

    def _restart_due(self, track: _Track, token: int) -> None:
        with self._lock:
            if not self._should_record or track.restart_token != token:
                return
            track.timer = None
        # Settings may have moved the storage root since the last launch.
        try:
            args = self._track_commands(self._settings_loader()).get(track.label)
        except (StoreError, OSError) as exc:
            with self._lock:
                if not self._should_record or self._tracks.get(track.label) is not track:
                    return
                self._schedule_restart(track)
            self._log.error(
                "[%s] cannot prepare %s restart: %s; retrying in %.0fs",
                self.camera_id, track.label, exc, self._backoff,
            )
            return
        with self._lock:
            if not self._should_record or track.restart_token != token:
                return
            if args is not None:
                track.args = args
            track.restarts += 1
        self._log.info("[%s] restarting %s", self.camera_id, track.label)
        self._launch(track)
