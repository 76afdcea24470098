#!/usr/bin/env python3
"""
Camera manager: the entry point for camera add/update/delete/startup.

Owns the registry of per-camera recorders. Starting a camera always stops
the previous recorder for that id first, so there is never more than one.
When the relay config has to change, the relay is restarted and the new
recorder is only launched after a settle delay, giving the relay time to
bind the new source path. That delayed launch is a cancellable timer, so
a stop() issued while it is pending wins.

Calls for one camera id are serialized on a per-id lock, so a slow
teardown of one camera never holds up another.
"""

from __future__ import annotations

import logging
import threading
from functools import partial
from typing import Callable, Optional

from darkeye.live_stream import LiveStreamController
from darkeye.models import CameraConfig
from darkeye.recorder import Recorder
from darkeye.relay import RelayPublisher
from darkeye.scheduling import TimerFactory, TimerHandle, start_timer
from darkeye.store import CameraStore

DEFAULT_SETTLE_DELAY = 3.0

RecorderFactory = Callable[[CameraConfig], Recorder]


class CameraManager:
    def __init__(
        self,
        store: CameraStore,
        relay: RelayPublisher,
        *,
        recorder_factory: Optional[RecorderFactory] = None,
        live_streams: Optional[LiveStreamController] = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        timer_factory: TimerFactory = start_timer,
    ):
        self._store = store
        self._relay = relay
        self._recorder_factory = recorder_factory or (
            lambda camera: Recorder(camera, settings_loader=store.load_settings)
        )
        self._live = live_streams
        self._settle_delay = float(settle_delay)
        self._timer_factory = timer_factory
        # Guards the registry and pending timers only; never held across process work.
        self._lock = threading.Lock()
        self._camera_locks: dict[str, threading.RLock] = {}
        self._recorders: dict[str, Recorder] = {}
        self._pending: dict[str, tuple[int, TimerHandle]] = {}
        self._token = 0
        self._log = logging.getLogger("camera_manager")

    # --- Startup ---
    def init(self) -> int:
        """Publish the relay config once, then start every recording camera.

        Store errors propagate: without the camera list nothing can run.
        """
        cameras = self._store.list_cameras()
        self._log.info("Loading %d cameras", len(cameras))
        self._relay.publish()
        started = 0
        for camera in cameras:
            if camera.record_enabled:
                self.start_camera(camera, regenerate_relay=False)
                started += 1
        return started

    # --- Lifecycle ---
    def start_camera(self, camera: CameraConfig, regenerate_relay: bool = True) -> None:
        with self._camera_lock(camera.id):
            self.stop_camera(camera.id)
            self._log.info("Starting camera %s (%s)", camera.name, camera.id)
            if not regenerate_relay:
                self._launch(camera, None)
                return
            self._relay.publish()
            with self._lock:
                self._token += 1
                token = self._token
                timer = self._timer_factory(self._settle_delay, partial(self._launch, camera, token))
                self._pending[camera.id] = (token, timer)

    def stop_camera(self, camera_id: str, regenerate_relay: bool = False) -> None:
        with self._camera_lock(camera_id):
            with self._lock:
                pending = self._pending.pop(camera_id, None)
                recorder = self._recorders.pop(camera_id, None)
            if pending is not None:
                pending[1].cancel()
            if recorder is not None:
                self._log.info("Stopping camera %s", camera_id)
                recorder.stop()
                if self._live is not None:
                    self._live.unregister_recorder(camera_id)
            if regenerate_relay:
                self._relay.publish()

    def restart_camera(self, camera_id: str) -> bool:
        """Reload ``camera_id`` from the store and apply it.

        Returns False when the camera no longer exists (its recorder is
        stopped and the relay regenerated without it).
        """
        camera = self._store.get_camera(camera_id)
        with self._camera_lock(camera_id):
            if camera is None:
                self.stop_camera(camera_id, regenerate_relay=True)
                return False
            self.stop_camera(camera_id)
            if camera.record_enabled:
                self.start_camera(camera, regenerate_relay=True)
            else:
                # Recording off, but the relay path stays for live view.
                self._relay.publish()
        return True

    def stop_all(self) -> None:
        with self._lock:
            ids = set(self._recorders) | set(self._pending)
        for camera_id in ids:
            self.stop_camera(camera_id)

    # --- Queries ---
    def get_recorder(self, camera_id: str) -> Optional[Recorder]:
        with self._lock:
            return self._recorders.get(camera_id)

    def is_recording(self, camera_id: str) -> bool:
        recorder = self.get_recorder(camera_id)
        return recorder is not None and recorder.is_recording

    def is_pending(self, camera_id: str) -> bool:
        with self._lock:
            return camera_id in self._pending

    def status(self) -> dict:
        with self._lock:
            recorders = dict(self._recorders)
            pending = sorted(self._pending)
        return {
            "cameras": {cid: rec.status() for cid, rec in recorders.items()},
            "pending_start": pending,
        }

    # --- Internals ---
    def _camera_lock(self, camera_id: str) -> threading.RLock:
        with self._lock:
            lock = self._camera_locks.get(camera_id)
            if lock is None:
                lock = self._camera_locks[camera_id] = threading.RLock()
            return lock

    def _launch(self, camera: CameraConfig, token: Optional[int]) -> None:
        with self._camera_lock(camera.id):
            with self._lock:
                if token is not None:
                    pending = self._pending.get(camera.id)
                    if pending is None or pending[0] != token:
                        return
                    del self._pending[camera.id]
                recorder = self._recorder_factory(camera)
                self._recorders[camera.id] = recorder
            recorder.start()
            if self._live is not None and camera.records_video and recorder.should_record:
                self._live.register_recorder(camera.id)
