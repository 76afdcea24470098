#!/usr/bin/env python3
"""
DarkEye control server: wires the supervisors together and exposes them
over a small aiohttp JSON API.

Handlers stay thin. Anything that touches the database, the filesystem or
a subprocess runs in the default executor so the event loop never blocks
on a process teardown.
"""

from __future__ import annotations

import argparse
import asyncio
import functools
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from aiohttp import web

from darkeye import devices, ffmpeg_io
from darkeye.camera_manager import CameraManager
from darkeye.config import reload_cfg
from darkeye.live_stream import LiveStreamController
from darkeye.models import MASKED_PASSWORD, SOURCE_ONVIF, CameraConfig, Settings, new_camera_id
from darkeye.recorder import Recorder
from darkeye.relay import RelayPublisher
from darkeye.retention import RetentionEngine
from darkeye.store import CameraStore, StoreError
from darkeye.talk import TalkManager
from darkeye.thumbnails import ThumbnailRefresher

log = logging.getLogger("server")

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
RECORDING_EXTENSIONS = (".mkv", ".mp4")
TALK_AUDIO_MAX_BYTES = 1024 * 1024


@dataclass
class Services:
    store: CameraStore
    relay: RelayPublisher
    cameras: CameraManager
    live: LiveStreamController
    retention: RetentionEngine
    talk: TalkManager
    devices: devices.DeviceClient
    thumbnails: Optional[ThumbnailRefresher] = None

    def start(self) -> None:
        self.cameras.init()
        self.live.start()
        self.retention.start()
        if self.thumbnails is not None:
            self.thumbnails.start()

    def stop(self) -> None:
        if self.thumbnails is not None:
            self.thumbnails.stop()
        self.retention.stop()
        self.talk.stop_all()
        self.live.stop()
        self.cameras.stop_all()
        self.relay.stop()


def build_services(
    cfg: dict[str, Any],
    *,
    device_client: Optional[devices.DeviceClient] = None,
) -> Services:
    paths = cfg["paths"]
    ffmpeg_cfg = cfg["ffmpeg"]
    relay_cfg = cfg["relay"]
    retention_cfg = cfg["retention"]

    defaults = Settings(
        storage_path=str(paths["recordings_dir"]),
        max_storage_gb=float(retention_cfg["max_storage_gb"]),
        retention_hours=float(retention_cfg["retention_hours"]),
        cleanup_interval_min=float(retention_cfg["cleanup_interval_min"]),
    )
    store = CameraStore(paths["db_path"], settings_defaults=defaults)
    ffmpeg_opts = {"ffmpeg_binary": ffmpeg_cfg["binary"], "ffmpeg_loglevel": ffmpeg_cfg["loglevel"]}
    relay_addr = {"relay_host": relay_cfg["host"], "relay_port": int(relay_cfg["rtsp_port"])}

    relay = RelayPublisher(
        paths["relay_config"],
        store.list_cameras,
        binary=relay_cfg["binary"],
        restart_delay=float(relay_cfg["restart_delay_sec"]),
        rtsp_port=int(relay_cfg["rtsp_port"]),
        webrtc_port=int(relay_cfg["webrtc_port"]),
    )
    live = LiveStreamController(
        paths["hls_dir"],
        idle_timeout=float(cfg["live"]["idle_timeout_sec"]),
        sweep_interval=float(cfg["live"]["sweep_interval_sec"]),
        **ffmpeg_opts,
    )

    def _recorder(camera: CameraConfig) -> Recorder:
        return Recorder(
            camera,
            settings_loader=store.load_settings,
            restart_backoff=float(cfg["recorder"]["restart_backoff_sec"]),
            **relay_addr,
            **ffmpeg_opts,
        )

    cameras = CameraManager(
        store,
        relay,
        recorder_factory=_recorder,
        live_streams=live,
        settle_delay=float(relay_cfg["settle_delay_sec"]),
    )
    thumbnails = None
    if cfg["thumbnails"].get("enabled", True):
        thumbnails = ThumbnailRefresher(
            store, interval=float(cfg["thumbnails"]["interval_sec"]), **relay_addr, **ffmpeg_opts
        )
    return Services(
        store=store,
        relay=relay,
        cameras=cameras,
        live=live,
        retention=RetentionEngine(store.load_settings),
        talk=TalkManager(sample_rate=int(cfg["talk"]["sample_rate"]), **ffmpeg_opts),
        devices=device_client or devices.UnavailableDeviceClient(),
        thumbnails=thumbnails,
    )


SERVICES_KEY: web.AppKey[Services] = web.AppKey("services", Services)


def _json_error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(reason="Invalid JSON body")
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(reason="Expected a JSON object")
    return data


def _host_of(address: Optional[str]) -> str:
    if not address:
        return ""
    if not re.match(r"^[a-z]+://", address):
        address = f"http://{address}"
    return urlparse(address).hostname or ""


def _list_recordings(camera_dir: Path) -> list[dict[str, Any]]:
    results: list[dict[str, Any]] = []
    for folder, prefix, kind in (
        (camera_dir, "", "normal"),
        (camera_dir / ffmpeg_io.TIMELAPSE_DIRNAME, f"{ffmpeg_io.TIMELAPSE_DIRNAME}/", "timelapse"),
    ):
        if not folder.is_dir():
            continue
        for entry in sorted(folder.iterdir()):
            if not entry.is_file() or not entry.name.endswith(RECORDING_EXTENSIONS):
                continue
            st = entry.stat()
            results.append(
                {"name": prefix + entry.name, "size": st.st_size, "mtime": st.st_mtime, "type": kind}
            )
    return results


def _check_writable(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    probe = path / ".test_write"
    probe.write_text("ok", encoding="utf-8")
    probe.unlink()


def build_app(services: Services, *, manage_lifecycle: bool = False) -> web.Application:
    app = web.Application(client_max_size=TALK_AUDIO_MAX_BYTES)
    app[SERVICES_KEY] = services

    async def _blocking(fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    async def _camera_or_404(request: web.Request) -> CameraConfig:
        camera_id = request.match_info["camera_id"]
        camera = await _blocking(services.store.get_camera, camera_id)
        if camera is None:
            raise web.HTTPNotFound(
                text='{"error": "Camera not found"}', content_type="application/json"
            )
        return camera

    def _camera_payload(camera: CameraConfig) -> dict[str, Any]:
        payload = camera.to_dict(include_secrets=False)
        payload["type"] = payload.pop("kind")
        payload["is_recording"] = services.cameras.is_recording(camera.id)
        return payload

    # --- Health / status ---
    async def healthz(_: web.Request) -> web.Response:
        return web.json_response({"ok": True})

    async def status_api(_: web.Request) -> web.Response:
        return web.json_response(
            {
                "cameras": services.cameras.status(),
                "live": services.live.status(),
                "relay_running": services.relay.running,
                "talk_sessions": services.talk.active_sessions(),
            }
        )

    # --- Cameras ---
    async def cameras_list(_: web.Request) -> web.Response:
        cameras = await _blocking(services.store.list_cameras)
        return web.json_response([_camera_payload(c) for c in cameras])

    async def camera_get(request: web.Request) -> web.Response:
        camera = await _camera_or_404(request)
        return web.json_response(_camera_payload(camera))

    async def camera_create(request: web.Request) -> web.Response:
        data = await _read_json(request)
        data["id"] = new_camera_id()
        try:
            camera = CameraConfig.from_mapping(data)
        except ValueError as exc:
            return _json_error(str(exc), 400)
        if not camera.url:
            return _json_error("url is required", 400)
        await _blocking(services.store.save_camera, camera)
        if camera.record_enabled:
            await _blocking(services.cameras.start_camera, camera)
        else:
            await _blocking(services.relay.publish)
        return web.json_response(_camera_payload(camera), status=201)

    async def camera_update(request: web.Request) -> web.Response:
        current = await _camera_or_404(request)
        data = await _read_json(request)
        if data.get("password") == MASKED_PASSWORD:
            data.pop("password")
        if "type" in data:
            data["kind"] = data.pop("type")
        merged = current.to_dict()
        merged.update(data)
        merged["id"] = current.id
        try:
            camera = CameraConfig.from_mapping(merged)
        except ValueError as exc:
            return _json_error(str(exc), 400)
        await _blocking(services.store.save_camera, camera)
        await _blocking(services.cameras.restart_camera, camera.id)
        return web.json_response(_camera_payload(camera))

    async def camera_delete(request: web.Request) -> web.Response:
        camera = await _camera_or_404(request)
        await _blocking(services.store.delete_camera, camera.id)
        await _blocking(services.talk.stop_talk, camera.id)
        await _blocking(services.live.stop_stream, camera.id)
        await _blocking(services.cameras.stop_camera, camera.id, True)
        return web.json_response({"success": True})

    async def camera_stream_url(request: web.Request) -> web.Response:
        camera = await _camera_or_404(request)
        if camera.kind != SOURCE_ONVIF or not camera.onvif_service_url:
            return web.json_response({"url": camera.url})
        result = await _blocking(
            devices.list_profiles,
            services.devices,
            camera.onvif_service_url,
            camera.username,
            camera.password,
        )
        if not result.ok:
            return _json_error(result.error or "profile lookup failed", 502)
        urls = [p.get("url") for p in result.data or [] if p.get("url")]
        if not urls:
            return _json_error("device reported no stream profiles", 502)
        camera.url = urls[0]
        await _blocking(services.store.save_camera, camera)
        await _blocking(services.cameras.restart_camera, camera.id)
        return web.json_response({"url": camera.url})

    # --- Live view ---
    async def live_heartbeat(request: web.Request) -> web.Response:
        camera = await _camera_or_404(request)
        source = ffmpeg_io.with_credentials(
            camera.substream_url or camera.url, camera.username, camera.password
        )
        active = await _blocking(services.live.heartbeat, camera.id, source)
        payload: dict[str, Any] = {
            "success": True,
            "hls_active": bool(active),
            "recorder_controlled": services.live.is_recorder_controlled(camera.id),
        }
        if active:
            payload["playlist"] = f"/hls/{camera.id}/{ffmpeg_io.HLS_PLAYLIST}"
        return web.json_response(payload)

    async def hls_file(request: web.Request) -> web.StreamResponse:
        camera_id = request.match_info["camera_id"]
        name = request.match_info["name"]
        if not _SAFE_NAME.match(camera_id) or not _SAFE_NAME.match(name):
            raise web.HTTPNotFound()
        path = services.live.hls_root / camera_id / name
        if not path.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(path, headers={"Cache-Control": "no-cache"})

    # --- Devices ---
    async def discover(_: web.Request) -> web.Response:
        result = await _blocking(devices.discover_devices, services.devices)
        if not result.ok:
            return _json_error(result.error or "discovery failed", 502)
        cameras = await _blocking(services.store.list_cameras)
        known = {_host_of(c.onvif_service_url) for c in cameras} - {""}
        found = [dict(d, existing=_host_of(d["address"]) in known) for d in result.data]
        return web.json_response(found)

    async def profiles(request: web.Request) -> web.Response:
        data = await _read_json(request)
        address = str(data.get("url") or data.get("address") or "")
        if not address:
            return _json_error("url is required", 400)
        result = await _blocking(
            devices.list_profiles,
            services.devices,
            address,
            str(data.get("username") or ""),
            str(data.get("password") or ""),
        )
        if not result.ok:
            return _json_error(f"Connection failed: {result.error}", 502)
        return web.json_response(result.data)

    async def ptz(request: web.Request) -> web.Response:
        camera = await _camera_or_404(request)
        data = await _read_json(request)
        action = str(data.get("action") or "")
        velocity = {axis: data.get(axis, 0.0) for axis in ("x", "y", "z")}
        result = await _blocking(devices.ptz_command, services.devices, camera, action, velocity)
        if not result.ok:
            return _json_error(result.error or "PTZ failed", 400 if result.rejected else 502)
        return web.json_response({"success": True})

    # --- Settings ---
    async def settings_get(_: web.Request) -> web.Response:
        settings = await _blocking(services.store.load_settings)
        return web.json_response(settings.to_dict())

    async def settings_update(request: web.Request) -> web.Response:
        data = await _read_json(request)
        values = {k: v for k, v in data.items() if k in Settings.KEYS and v not in (None, "")}
        for key in ("max_storage_gb", "retention_hours", "cleanup_interval_min"):
            if key not in values:
                continue
            try:
                if float(values[key]) < 0:
                    raise ValueError
            except (TypeError, ValueError):
                return _json_error(f"{key} must be a non-negative number", 400)
        settings = await _blocking(services.store.update_settings, values)
        # Interval changes only apply to a freshly started timer.
        await _blocking(services.retention.restart)
        return web.json_response({"success": True, "settings": settings.to_dict()})

    async def check_path(request: web.Request) -> web.Response:
        data = await _read_json(request)
        raw = str(data.get("path") or "").strip()
        if not raw:
            return _json_error("path is required", 400)
        try:
            await _blocking(_check_writable, Path(raw))
        except OSError as exc:
            return _json_error(f"Invalid path: {exc}", 400)
        return web.json_response({"success": True, "message": "Path is valid"})

    # --- Recordings ---
    async def _camera_dir(camera_id: str) -> Path:
        settings = await _blocking(services.store.load_settings)
        return Path(settings.storage_path) / camera_id

    async def recordings_list(request: web.Request) -> web.Response:
        camera_id = request.match_info["camera_id"]
        if not _SAFE_NAME.match(camera_id):
            raise web.HTTPNotFound()
        camera_dir = await _camera_dir(camera_id)
        try:
            entries = await _blocking(_list_recordings, camera_dir)
        except OSError as exc:
            log.error("Error listing recordings in %s: %s", camera_dir, exc)
            entries = []
        return web.json_response(entries)

    async def recording_file(request: web.Request) -> web.StreamResponse:
        camera_id = request.match_info["camera_id"]
        if not _SAFE_NAME.match(camera_id):
            raise web.HTTPNotFound()
        camera_dir = (await _camera_dir(camera_id)).resolve()
        path = (camera_dir / request.match_info["name"]).resolve()
        if camera_dir not in path.parents or not path.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(path)

    async def latest_recording(request: web.Request) -> web.Response:
        camera = await _camera_or_404(request)
        camera_dir = await _camera_dir(camera.id)
        entries = await _blocking(_list_recordings, camera_dir)
        normal = [e for e in entries if e["type"] == "normal"]
        if not normal:
            return web.json_response(None)
        newest = max(normal, key=lambda e: e["mtime"])
        return web.json_response({"name": newest["name"], "mtime": newest["mtime"]})

    async def thumbnail(request: web.Request) -> web.StreamResponse:
        camera = await _camera_or_404(request)
        settings = await _blocking(services.store.load_settings)
        path = ThumbnailRefresher.thumbnail_path(settings.storage_path, camera.id)
        if not path.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(path, headers={"Cache-Control": "no-store"})

    async def retention_run(_: web.Request) -> web.Response:
        report = await _blocking(services.retention.run_cycle)
        return web.json_response(report.to_dict())

    # --- Talk ---
    async def audio_support(request: web.Request) -> web.Response:
        camera = await _camera_or_404(request)
        result = await _blocking(devices.audio_backchannel, services.devices, camera)
        if not result.ok:
            return web.json_response({"supported": False, "reason": result.error})
        return web.json_response(result.data)

    async def talk_start(request: web.Request) -> web.Response:
        camera = await _camera_or_404(request)
        result = await _blocking(devices.audio_backchannel, services.devices, camera)
        if not result.ok:
            return _json_error(result.error or "backchannel lookup failed", 400 if result.rejected else 502)
        if not result.data["supported"] or not result.data["rtsp_url"]:
            return _json_error("Camera does not support audio talk", 400)
        outcome = await _blocking(
            services.talk.start_talk,
            camera.id,
            result.data["rtsp_url"],
            camera.username,
            camera.password,
        )
        return web.json_response(outcome, status=200 if outcome["success"] else 502)

    async def talk_stop(request: web.Request) -> web.Response:
        camera_id = request.match_info["camera_id"]
        return web.json_response(await _blocking(services.talk.stop_talk, camera_id))

    async def talk_audio(request: web.Request) -> web.Response:
        camera_id = request.match_info["camera_id"]
        if not services.talk.is_active(camera_id):
            return _json_error("No active talk session", 400)
        body = await request.read()
        ok = await _blocking(services.talk.send_audio, camera_id, body)
        return web.json_response({"success": ok})

    app.router.add_get("/healthz", healthz)
    app.router.add_get("/api/status", status_api)
    app.router.add_get("/api/cameras", cameras_list)
    app.router.add_post("/api/cameras", camera_create)
    app.router.add_post("/api/cameras/discover", discover)
    app.router.add_get("/api/cameras/{camera_id}", camera_get)
    app.router.add_put("/api/cameras/{camera_id}", camera_update)
    app.router.add_delete("/api/cameras/{camera_id}", camera_delete)
    app.router.add_post("/api/cameras/{camera_id}/stream-url", camera_stream_url)
    app.router.add_post("/api/cameras/{camera_id}/live/heartbeat", live_heartbeat)
    app.router.add_post("/api/cameras/{camera_id}/ptz", ptz)
    app.router.add_get("/api/cameras/{camera_id}/latest-recording", latest_recording)
    app.router.add_get("/api/cameras/{camera_id}/thumbnail", thumbnail)
    app.router.add_get("/api/cameras/{camera_id}/audio-support", audio_support)
    app.router.add_post("/api/cameras/{camera_id}/talk/start", talk_start)
    app.router.add_post("/api/cameras/{camera_id}/talk/stop", talk_stop)
    app.router.add_post("/api/cameras/{camera_id}/talk/audio", talk_audio)
    app.router.add_post("/api/onvif/profiles", profiles)
    app.router.add_get("/api/settings", settings_get)
    app.router.add_post("/api/settings", settings_update)
    app.router.add_post("/api/settings/check-path", check_path)
    app.router.add_get("/api/recordings/{camera_id}", recordings_list)
    app.router.add_post("/api/retention/run", retention_run)
    app.router.add_get("/recordings/{camera_id}/{name:.+}", recording_file)
    app.router.add_get("/hls/{camera_id}/{name}", hls_file)

    if manage_lifecycle:

        async def _start_services(_: web.Application) -> None:
            await _blocking(services.start)

        async def _stop_services(_: web.Application) -> None:
            await _blocking(services.stop)

        app.on_startup.append(_start_services)
        app.on_cleanup.append(_stop_services)

    return app


def _check_binaries(cfg: dict[str, Any]) -> None:
    for label, binary in (("ffmpeg", cfg["ffmpeg"]["binary"]), ("relay", cfg["relay"]["binary"])):
        if not shutil.which(binary) and not os.path.isfile(binary):
            log.warning("%s binary %r not found; processes will fail to start", label, binary)


def cli_main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="DarkEye NVR control server.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default=None, help="Python logging level (default: from config).")
    args = parser.parse_args(argv)

    cfg = reload_cfg()
    level_name = args.log_level or cfg["logging"].get("level", "INFO")
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    if cfg["logging"].get("dev_mode"):
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    _check_binaries(cfg)
    try:
        services = build_services(cfg)
    except StoreError as exc:
        log.error("Unable to open camera database: %s", exc)
        return 1

    host = args.host or cfg["web_server"]["listen_host"]
    port = args.port or int(cfg["web_server"]["listen_port"])
    log.info("Starting DarkEye on %s:%s", host, port)
    web.run_app(
        build_app(services, manage_lifecycle=True),
        host=host,
        port=port,
        access_log=logging.getLogger("aiohttp.access") if args.access_log else None,
        print=None,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
