"""Camera and settings records shared by every DarkEye component."""

from __future__ import annotations

import secrets
import string
from dataclasses import asdict, dataclass
from typing import Any, Mapping

SOURCE_RTSP = "rtsp"
SOURCE_ONVIF = "onvif"
SOURCE_USB = "usb"
SOURCE_KINDS = (SOURCE_RTSP, SOURCE_ONVIF, SOURCE_USB)

RECORD_MODE_NONE = "none"
RECORD_MODE_RAW = "raw"
RECORD_MODE_ENCODE = "encode"
RECORD_MODES = (RECORD_MODE_NONE, RECORD_MODE_RAW, RECORD_MODE_ENCODE)

CAMERA_ID_LENGTH = 5
MASKED_PASSWORD = "********"
_CAMERA_ID_ALPHABET = string.ascii_uppercase + string.digits


def new_camera_id() -> str:
    return "".join(secrets.choice(_CAMERA_ID_ALPHABET) for _ in range(CAMERA_ID_LENGTH))


def _coerce_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return default


def _coerce_int(value: object, default: int) -> int:
    try:
        return int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _coerce_float(value: object, default: float) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(slots=True)
class CameraConfig:
    """A camera record as stored in the database.

    ``segment_duration`` and ``timelapse_duration`` are minutes,
    ``timelapse_interval`` is seconds between sampled frames.
    """

    id: str
    name: str
    url: str
    kind: str = SOURCE_RTSP
    substream_url: str | None = None
    username: str = ""
    password: str = ""
    record_enabled: bool = True
    record_mode: str = RECORD_MODE_RAW
    segment_duration: int = 15
    timelapse_enabled: bool = False
    timelapse_interval: int = 5
    timelapse_duration: int = 60
    ptz_enabled: bool = False
    onvif_service_url: str | None = None
    audio_output_supported: bool = False

    @property
    def records_video(self) -> bool:
        return self.record_mode != RECORD_MODE_NONE

    @property
    def timelapse_active(self) -> bool:
        return self.timelapse_enabled and self.timelapse_interval > 0 and self.timelapse_duration > 0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CameraConfig":
        kind = str(data.get("kind") or data.get("type") or SOURCE_RTSP).lower()
        if kind not in SOURCE_KINDS:
            raise ValueError(f"unknown camera type {kind!r}")
        mode = str(data.get("record_mode") or RECORD_MODE_RAW).lower()
        if mode not in RECORD_MODES:
            raise ValueError(f"unknown record mode {mode!r}")
        camera_id = str(data.get("id") or "").strip()
        if not camera_id:
            raise ValueError("camera id is required")
        return cls(
            id=camera_id,
            name=str(data.get("name") or camera_id),
            url=str(data.get("url") or ""),
            kind=kind,
            substream_url=_optional_str(data.get("substream_url")),
            username=str(data.get("username") or ""),
            password=str(data.get("password") or ""),
            record_enabled=_coerce_bool(data.get("record_enabled"), True),
            record_mode=mode,
            segment_duration=max(1, _coerce_int(data.get("segment_duration"), 15)),
            timelapse_enabled=_coerce_bool(data.get("timelapse_enabled")),
            timelapse_interval=max(1, _coerce_int(data.get("timelapse_interval"), 5)),
            timelapse_duration=max(1, _coerce_int(data.get("timelapse_duration"), 60)),
            ptz_enabled=_coerce_bool(data.get("ptz_enabled")),
            onvif_service_url=_optional_str(data.get("onvif_service_url")),
            audio_output_supported=_coerce_bool(data.get("audio_output_supported")),
        )

    def to_dict(self, *, include_secrets: bool = True) -> dict[str, Any]:
        payload = asdict(self)
        if not include_secrets:
            payload["password"] = MASKED_PASSWORD if self.password else ""
        return payload


@dataclass(slots=True)
class Settings:
    """Operator settings, reloaded from the store before each operation."""

    storage_path: str
    max_storage_gb: float = 500.0
    retention_hours: float = 72.0
    cleanup_interval_min: float = 60.0

    KEYS = ("storage_path", "max_storage_gb", "retention_hours", "cleanup_interval_min")

    @property
    def max_storage_bytes(self) -> int:
        if self.max_storage_gb <= 0:
            return 0
        return int(self.max_storage_gb * 1024 ** 3)

    @property
    def retention_seconds(self) -> float:
        return max(0.0, self.retention_hours * 3600.0)

    @property
    def cleanup_interval_seconds(self) -> float:
        return max(0.0, self.cleanup_interval_min * 60.0)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], defaults: "Settings") -> "Settings":
        storage_path = _optional_str(data.get("storage_path")) or defaults.storage_path
        return cls(
            storage_path=storage_path,
            max_storage_gb=_coerce_float(data.get("max_storage_gb"), defaults.max_storage_gb),
            retention_hours=_coerce_float(data.get("retention_hours"), defaults.retention_hours),
            cleanup_interval_min=_coerce_float(
                data.get("cleanup_interval_min"), defaults.cleanup_interval_min
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {key: getattr(self, key) for key in self.KEYS}
