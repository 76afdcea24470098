"""Periodic preview stills: one frame per camera from the relay."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from darkeye import ffmpeg_io
from darkeye.capture import CaptureProcess, SpawnFactory, SubprocessCapture
from darkeye.scheduling import PeriodicWorker
from darkeye.store import CameraStore

log = logging.getLogger("thumbnails")

DEFAULT_INTERVAL_SEC = 60.0


class ThumbnailRefresher:
    def __init__(
        self,
        store: CameraStore,
        *,
        spawn: SpawnFactory = SubprocessCapture,
        interval: float = DEFAULT_INTERVAL_SEC,
        relay_host: str = ffmpeg_io.RELAY_HOST,
        relay_port: int = ffmpeg_io.RELAY_RTSP_PORT,
        ffmpeg_binary: str = "ffmpeg",
        ffmpeg_loglevel: str = "error",
    ) -> None:
        self._store = store
        self._spawn = spawn
        self._relay_host = relay_host
        self._relay_port = relay_port
        self._binary = ffmpeg_binary
        self._loglevel = ffmpeg_loglevel
        self._lock = threading.Lock()
        self._inflight: dict[str, CaptureProcess] = {}
        self._worker = PeriodicWorker("thumbnails", interval, self.run_once, run_immediately=True, logger=log)

    @staticmethod
    def thumbnail_path(storage_root: Path | str, camera_id: str) -> Path:
        return Path(storage_root) / camera_id / ffmpeg_io.THUMBNAIL_FILENAME

    def run_once(self) -> list[str]:
        """Start a grab for every camera that has none in flight."""
        root = Path(self._store.load_settings().storage_path)
        launched: list[str] = []
        for camera in self._store.list_cameras():
            with self._lock:
                previous = self._inflight.get(camera.id)
                if previous is not None and previous.running:
                    continue
            target = self.thumbnail_path(root, camera.id)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                log.debug("[%s] cannot create %s: %s", camera.id, target.parent, exc)
                continue
            source = ffmpeg_io.relay_url(camera.id, host=self._relay_host, port=self._relay_port)
            args = ffmpeg_io.thumbnail_command(source, str(target), binary=self._binary, loglevel=self._loglevel)
            proc = self._spawn(args, name=f"{camera.id}:thumbnail")
            proc.on_exit(lambda event, message, cid=camera.id, p=proc: self._finished(cid, p))
            with self._lock:
                self._inflight[camera.id] = proc
            if proc.start():
                launched.append(camera.id)
        return launched

    def start(self) -> None:
        self._worker.start()

    def stop(self) -> None:
        self._worker.stop()
        with self._lock:
            procs = list(self._inflight.values())
            self._inflight.clear()
        for proc in procs:
            proc.kill()

    def _finished(self, camera_id: str, proc: Optional[CaptureProcess]) -> None:
        # Failures are retried by the next round.
        with self._lock:
            if self._inflight.get(camera_id) is proc:
                del self._inflight[camera_id]
