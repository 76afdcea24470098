#!/usr/bin/env python3
"""
Relay publisher: owns the MediaMTX configuration file and process.

The relay republishes every camera at rtsp://127.0.0.1:8554/live/<id> and
pulls the upstream source only while someone reads that path. MediaMTX is
not reconfigured in place: every change rewrites the whole file and
restarts the process.
"""

from __future__ import annotations

import logging
import os
import threading
from functools import partial
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import yaml

from darkeye.capture import CaptureProcess, SpawnFactory, SubprocessCapture
from darkeye.ffmpeg_io import with_credentials
from darkeye.models import CameraConfig
from darkeye.scheduling import TimerFactory, TimerHandle, start_timer
from darkeye.store import StoreError

DEFAULT_RESTART_DELAY = 1.0


def render_config(
    cameras: Iterable[CameraConfig],
    *,
    rtsp_port: int = 8554,
    webrtc_port: int = 8889,
) -> dict[str, Any]:
    """Build the MediaMTX configuration for ``cameras``."""
    paths: dict[str, Any] = {}
    for camera in cameras:
        paths[f"live/{camera.id}"] = {
            "source": with_credentials(camera.url, camera.username, camera.password),
            "sourceOnDemand": True,
            "sourceProtocol": "tcp",
        }
    if not paths:
        # No cameras: one catch-all path that runs nothing.
        paths["all"] = {"runOnDemand": ""}
    return {
        "rtspAddress": f":{rtsp_port}",
        "protocols": ["tcp"],
        "webrtcAddress": f":{webrtc_port}",
        "webrtcICEHostNAT1To1IPs": ["127.0.0.1"],
        "paths": paths,
    }


class RelayPublisher:
    def __init__(
        self,
        config_path: Path | str,
        camera_source: Callable[[], list[CameraConfig]],
        *,
        binary: str = "mediamtx",
        spawn: SpawnFactory = SubprocessCapture,
        timer_factory: TimerFactory = start_timer,
        restart_delay: float = DEFAULT_RESTART_DELAY,
        rtsp_port: int = 8554,
        webrtc_port: int = 8889,
    ):
        self.config_path = Path(config_path)
        self._camera_source = camera_source
        self._binary = binary
        self._spawn = spawn
        self._timer_factory = timer_factory
        self._restart_delay = float(restart_delay)
        self._rtsp_port = rtsp_port
        self._webrtc_port = webrtc_port
        self._lock = threading.Lock()
        # Serializes config writes and process control across callers.
        self._control = threading.RLock()
        self._start_token = 0
        self._process: Optional[CaptureProcess] = None
        self._pending_start: Optional[TimerHandle] = None
        self._log = logging.getLogger("relay")

    @property
    def running(self) -> bool:
        with self._lock:
            proc = self._process
        return proc is not None and proc.running

    def render_config(self, cameras: Iterable[CameraConfig]) -> dict[str, Any]:
        return render_config(cameras, rtsp_port=self._rtsp_port, webrtc_port=self._webrtc_port)

    def update_config(self, cameras: Optional[Iterable[CameraConfig]] = None) -> Path:
        """Rewrite the whole configuration file atomically."""
        if cameras is None:
            cameras = self._camera_source()
        data = self.render_config(cameras)
        path = self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        with self._lock:
            try:
                with open(tmp_path, "w", encoding="utf-8") as handle:
                    yaml.safe_dump(data, handle, default_flow_style=False, sort_keys=False)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_path, path)
            except OSError:
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass
                raise
        self._log.info("Relay config written to %s (%d paths)", path, len(data["paths"]))
        return path

    def publish(self) -> bool:
        """Regenerate the config from the store and restart the relay.

        Failures are logged; an already written config is kept as-is.
        """
        with self._control:
            try:
                self.update_config()
            except (OSError, StoreError) as exc:
                self._log.error("Relay config update failed: %s", exc)
                return False
            self.restart()
        return True

    # --- Process control ---
    def start(self) -> None:
        with self._control:
            with self._lock:
                self._pending_start = None
                # A handle that is still starting counts as present.
                if self._process is not None:
                    return
                proc = self._spawn([self._binary, str(self.config_path)], name="relay")
                self._process = proc
            proc.on_exit(partial(self._exited, proc))
            proc.start()

    def stop(self) -> None:
        with self._control:
            with self._lock:
                pending = self._pending_start
                self._pending_start = None
                self._start_token += 1
                proc = self._process
                self._process = None
            if pending is not None:
                pending.cancel()
            if proc is not None:
                self._log.info("Stopping relay")
                proc.kill()

    def restart(self) -> None:
        with self._control:
            with self._lock:
                idle = self._process is None and self._pending_start is None
            if idle:
                self.start()
                return
            self._log.info("Restarting relay to apply config")
            self.stop()
            with self._lock:
                token = self._start_token
                # Give the old process a moment to release its ports.
                self._pending_start = self._timer_factory(
                    self._restart_delay, partial(self._delayed_start, token)
                )

    def _delayed_start(self, token: int) -> None:
        with self._control:
            with self._lock:
                if token != self._start_token:
                    return
            self.start()

    def _exited(self, proc: CaptureProcess, event: str, message: Optional[str]) -> None:
        with self._lock:
            if self._process is proc:
                self._process = None
        self._log.warning("Relay %s: %s", event, message or "exited")
