"""Talk-back sessions: operator audio to a camera speaker.

The browser posts raw s16le mono PCM at 8 kHz; an ffmpeg bridge encodes it
to G.711 mu-law and sends it over RTP to the camera's backchannel.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional

from darkeye import ffmpeg_io
from darkeye.capture import SubprocessCapture

log = logging.getLogger("talk")


@dataclass
class TalkSession:
    camera_id: str
    process: SubprocessCapture
    started_at: float


class TalkManager:
    def __init__(
        self,
        *,
        spawn: Callable[..., SubprocessCapture] = SubprocessCapture,
        sample_rate: int = 8000,
        ffmpeg_binary: str = "ffmpeg",
        ffmpeg_loglevel: str = "error",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._spawn = spawn
        self._sample_rate = int(sample_rate)
        self._binary = ffmpeg_binary
        self._loglevel = ffmpeg_loglevel
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, TalkSession] = {}

    def start_talk(self, camera_id: str, rtsp_url: str, username: str = "", password: str = "") -> dict:
        self.stop_talk(camera_id)
        url = ffmpeg_io.with_credentials(rtsp_url, username, password)
        args = ffmpeg_io.talk_command(
            url, sample_rate=self._sample_rate, binary=self._binary, loglevel=self._loglevel
        )
        proc = self._spawn(args, name=f"{camera_id}:talk", stdin=True)
        proc.on_exit(partial(self._on_exit, camera_id, proc))
        session = TalkSession(camera_id=camera_id, process=proc, started_at=self._clock())
        with self._lock:
            self._sessions[camera_id] = session
        log.info("[%s] starting talk session", camera_id)
        if not proc.start():
            self._discard(camera_id, proc)
            return {"success": False, "session_id": camera_id}
        return {"success": True, "session_id": camera_id}

    def send_audio(self, camera_id: str, data: bytes) -> bool:
        with self._lock:
            session = self._sessions.get(camera_id)
        if session is None or not data:
            return False
        ok = session.process.write(data)
        if not ok:
            log.warning("[%s] failed to send audio", camera_id)
        return ok

    def stop_talk(self, camera_id: str) -> dict:
        with self._lock:
            session = self._sessions.pop(camera_id, None)
        if session is not None:
            log.info("[%s] stopping talk session", camera_id)
            session.process.close_stdin()
            session.process.kill()
        return {"success": True}

    def is_active(self, camera_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(camera_id)
        return session is not None and session.process.running

    def active_sessions(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

    def stop_all(self) -> None:
        for camera_id in self.active_sessions():
            self.stop_talk(camera_id)

    def _discard(self, camera_id: str, proc: SubprocessCapture) -> None:
        with self._lock:
            session = self._sessions.get(camera_id)
            if session is not None and session.process is proc:
                del self._sessions[camera_id]

    def _on_exit(self, camera_id: str, proc: SubprocessCapture, event: str, message: Optional[str]) -> None:
        self._discard(camera_id, proc)
        log.info("[%s] talk bridge closed (%s): %s", camera_id, event, message or "ok")
