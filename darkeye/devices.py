"""Device discovery and PTZ/backchannel control through an injected client.

The protocol client itself is external; this module only validates what a
camera is allowed to do and turns client failures into ``DeviceResult``
values. Nothing here retries.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from darkeye.models import SOURCE_ONVIF, CameraConfig

log = logging.getLogger("devices")

DISCOVERY_ATTEMPTS = 3
DISCOVERY_PAUSE_SEC = 1.0


class DeviceControlError(RuntimeError):
    """Raised by a device client when a device call fails."""


class DeviceClient(Protocol):
    def discover(self) -> list[dict[str, Any]]: ...

    def get_profiles(self, address: str, username: str, password: str) -> list[dict[str, Any]]: ...

    def move(self, address: str, username: str, password: str, velocity: dict[str, float]) -> None: ...

    def stop(self, address: str, username: str, password: str) -> None: ...

    def get_audio_backchannel_info(self, address: str, username: str, password: str) -> dict[str, Any]: ...


class UnavailableDeviceClient:
    """Client used when no device protocol backend is installed."""

    def _fail(self, *_args: Any, **_kwargs: Any) -> Any:
        raise DeviceControlError("device control is not configured on this server")

    discover = _fail
    get_profiles = _fail
    move = _fail
    stop = _fail
    get_audio_backchannel_info = _fail


@dataclass
class DeviceResult:
    ok: bool
    data: Any = None
    error: Optional[str] = None
    # Refused before any device call was made.
    rejected: bool = False


def _call(operation: str, fn: Callable[..., Any], *args: Any) -> DeviceResult:
    try:
        return DeviceResult(ok=True, data=fn(*args))
    except Exception as exc:  # any client failure becomes a result
        log.warning("%s failed: %s", operation, exc)
        return DeviceResult(ok=False, error=str(exc) or exc.__class__.__name__)


def discover_devices(
    client: DeviceClient,
    *,
    attempts: int = DISCOVERY_ATTEMPTS,
    pause: float = DISCOVERY_PAUSE_SEC,
    sleep: Callable[[float], None] = time.sleep,
) -> DeviceResult:
    """Probe several times and merge the answers by service address.

    Discovery is UDP multicast; single probes routinely miss devices.
    """
    found: dict[str, dict[str, Any]] = {}
    last_error: Optional[str] = None
    failures = 0
    for attempt in range(attempts):
        log.info("Discovery attempt %d/%d", attempt + 1, attempts)
        result = _call("discover", client.discover)
        if result.ok:
            for device in result.data or []:
                address = str(device.get("address") or device.get("xaddr") or "")
                if address and address not in found:
                    found[address] = {
                        "address": address,
                        "name": device.get("name") or device.get("hardware") or "Unknown Device",
                    }
        else:
            failures += 1
            last_error = result.error
        if attempt < attempts - 1:
            sleep(pause)
    if failures == attempts:
        return DeviceResult(ok=False, error=last_error)
    log.info("Found %d unique devices after %d attempts", len(found), attempts)
    return DeviceResult(ok=True, data=list(found.values()))


def list_profiles(client: DeviceClient, address: str, username: str, password: str) -> DeviceResult:
    return _call("get_profiles", client.get_profiles, address, username, password)


def _clamp(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(-1.0, min(1.0, number))


def ptz_command(
    client: DeviceClient,
    camera: CameraConfig,
    action: str,
    velocity: Optional[dict[str, Any]] = None,
) -> DeviceResult:
    """Run a PTZ "move" or "stop"; stop is always allowed so a move can be halted."""
    if action not in ("move", "stop"):
        return DeviceResult(ok=False, error=f"unknown PTZ action {action!r}", rejected=True)
    if action != "stop" and not camera.ptz_enabled:
        return DeviceResult(ok=False, error="PTZ not enabled for this camera", rejected=True)
    address = camera.onvif_service_url
    if not address:
        return DeviceResult(ok=False, error="No ONVIF URL configured", rejected=True)
    if action == "stop":
        return _call("ptz stop", client.stop, address, camera.username, camera.password)
    velocity = velocity or {}
    speed = {axis: _clamp(velocity.get(axis, 0.0)) for axis in ("x", "y", "z")}
    return _call("ptz move", client.move, address, camera.username, camera.password, speed)


def audio_backchannel(client: DeviceClient, camera: CameraConfig) -> DeviceResult:
    """Look up the talk-back endpoint; data is ``{"supported": bool, "rtsp_url": str | None}``."""
    if camera.kind != SOURCE_ONVIF or not camera.onvif_service_url:
        return DeviceResult(ok=False, error="Only ONVIF cameras support talk", rejected=True)
    result = _call(
        "get_audio_backchannel_info",
        client.get_audio_backchannel_info,
        camera.onvif_service_url,
        camera.username,
        camera.password,
    )
    if not result.ok:
        return result
    info = result.data or {}
    rtsp_url = info.get("rtsp_url") or info.get("url")
    return DeviceResult(ok=True, data={"supported": bool(info.get("supported")), "rtsp_url": rtsp_url})
