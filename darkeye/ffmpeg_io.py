"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

import math
import os
from urllib.parse import quote

DEFAULT_SAMPLE_FORMAT = "s16le"
SEGMENT_FILENAME = "%Y-%m-%d_%H-%M-%S.mkv"
TIMELAPSE_DIRNAME = "timelapse"
THUMBNAIL_FILENAME = "thumbnail.jpg"
HLS_PLAYLIST = "index.m3u8"

RELAY_HOST = "127.0.0.1"
RELAY_RTSP_PORT = 8554


def relay_url(camera_id: str, *, host: str = RELAY_HOST, port: int = RELAY_RTSP_PORT) -> str:
    """Return the relay endpoint that republishes ``camera_id``."""

    return f"rtsp://{host}:{port}/live/{camera_id}"


def with_credentials(url: str, username: str | None, password: str | None) -> str:
    """Embed URL-quoted credentials into an ``rtsp://`` locator.

    Locators that already carry a userinfo part, non-RTSP locators and
    cameras without both a username and a password are returned unchanged.
    """

    if not url or not username or not password:
        return url
    if not url.startswith("rtsp://") or "@" in url:
        return url
    userinfo = f"{quote(username, safe='')}:{quote(password, safe='')}@"
    return "rtsp://" + userinfo + url[len("rtsp://"):]


def timelapse_gop(segment_seconds: float, interval_seconds: float) -> int:
    """Frames per keyframe so every timelapse segment starts on a keyframe.

    One frame is sampled every ``interval_seconds``; a segment therefore
    holds ``segment_seconds / interval_seconds`` frames.
    """

    if interval_seconds <= 0:
        return 1
    return max(1, math.floor(segment_seconds / interval_seconds))


def _base(binary: str, loglevel: str) -> list[str]:
    return [binary, "-hide_banner", "-loglevel", loglevel, "-y"]


def rtsp_input_args(url: str, *, media_types: str | None = None, low_delay: bool = False) -> list[str]:
    args = ["-rtsp_transport", "tcp", "-fflags", "nobuffer"]
    if low_delay:
        args += ["-flags", "low_delay"]
    if media_types:
        args += ["-allowed_media_types", media_types]
    return args + ["-i", url]


def pcm_pipe_input_args(
    sample_rate: int,
    channels: int,
    *,
    sample_format: str = DEFAULT_SAMPLE_FORMAT,
) -> list[str]:
    """Return input arguments for piping PCM frames into ffmpeg.

    ffmpeg treats options appearing before ``-i`` as applying to that input,
    so the format, rate and channel count are emitted ahead of ``pipe:0``.
    """

    return [
        "-f",
        sample_format,
        "-ar",
        str(sample_rate),
        "-ac",
        str(channels),
        "-i",
        "pipe:0",
    ]


def _segment_output_args(segment_seconds: int, pattern: str) -> list[str]:
    return [
        "-f", "segment",
        "-segment_time", str(segment_seconds),
        "-strftime", "1",
        "-reset_timestamps", "1",
        pattern,
    ]


def recording_command(
    source_url: str,
    output_dir: str,
    *,
    segment_minutes: int,
    encode: bool,
    binary: str = "ffmpeg",
    loglevel: str = "error",
) -> list[str]:
    """Continuous recording into fixed-length strftime-named segments."""

    if encode:
        codec = ["-c:v", "libx264", "-preset", "superfast", "-crf", "23", "-c:a", "aac", "-b:a", "128k"]
    else:
        codec = ["-c", "copy"]
    return (
        _base(binary, loglevel)
        + rtsp_input_args(source_url, media_types="video+audio")
        + codec
        + _segment_output_args(int(segment_minutes) * 60, os.path.join(output_dir, SEGMENT_FILENAME))
    )


def timelapse_command(
    source_url: str,
    output_dir: str,
    *,
    interval_seconds: int,
    segment_minutes: int,
    binary: str = "ffmpeg",
    loglevel: str = "error",
) -> list[str]:
    """Sample one frame every ``interval_seconds`` into keyframe-aligned segments."""

    segment_seconds = int(segment_minutes) * 60
    gop = timelapse_gop(segment_seconds, interval_seconds)
    return (
        _base(binary, loglevel)
        + rtsp_input_args(source_url, media_types="video")
        + [
            "-vf", f"fps=1/{interval_seconds}",
            "-c:v", "libx264",
            "-preset", "ultrafast",
            "-crf", "28",
            "-g", str(gop),
            "-sc_threshold", "0",
            "-an",
        ]
        + _segment_output_args(segment_seconds, os.path.join(output_dir, SEGMENT_FILENAME))
    )


def live_hls_command(
    source_url: str,
    output_dir: str,
    *,
    hls_time: int = 2,
    list_size: int = 3,
    gop: int = 60,
    binary: str = "ffmpeg",
    loglevel: str = "error",
) -> list[str]:
    """Low-latency browser-playable HLS with a short self-pruning window."""

    return (
        _base(binary, loglevel)
        + rtsp_input_args(source_url, low_delay=True)
        + [
            "-c:v", "libx264",
            "-preset", "ultrafast",
            "-tune", "zerolatency",
            "-pix_fmt", "yuv420p",
            "-g", str(gop),
            "-sc_threshold", "0",
            "-c:a", "aac",
            "-f", "hls",
            "-hls_time", str(hls_time),
            "-hls_list_size", str(list_size),
            "-hls_flags", "delete_segments",
            "-start_number", "0",
            os.path.join(output_dir, HLS_PLAYLIST),
        ]
    )


def talk_command(
    backchannel_url: str,
    *,
    sample_rate: int = 8000,
    binary: str = "ffmpeg",
    loglevel: str = "error",
) -> list[str]:
    """Bridge 16-bit PCM on stdin to a camera's G.711 RTP backchannel."""

    return (
        _base(binary, loglevel)
        + pcm_pipe_input_args(sample_rate, 1)
        + [
            "-c:a", "pcm_mulaw",
            "-ar", str(sample_rate),
            "-ac", "1",
            "-f", "rtp",
            "-rtsp_transport", "tcp",
            backchannel_url,
        ]
    )


def thumbnail_command(
    source_url: str,
    output_path: str,
    *,
    binary: str = "ffmpeg",
    loglevel: str = "error",
) -> list[str]:
    return (
        _base(binary, loglevel)
        + rtsp_input_args(source_url, media_types="video")
        + ["-frames:v", "1", "-q:v", "5", "-update", "1", output_path]
    )
