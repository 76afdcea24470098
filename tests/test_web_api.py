from __future__ import annotations

import os
import time

import pytest

from darkeye import server
from darkeye.camera_manager import CameraManager
from darkeye.live_stream import LiveStreamController
from darkeye.models import CameraConfig, Settings
from darkeye.recorder import Recorder
from darkeye.relay import RelayPublisher
from darkeye.retention import RetentionEngine
from darkeye.store import CameraStore
from darkeye.talk import TalkManager


class DummyDevices:
    def __init__(self):
        self.moves = []

    def discover(self):
        return [{"address": "http://10.0.0.5/onvif/device_service", "name": "Porch"}]

    def get_profiles(self, address, username, password):
        return [{"token": "main", "url": "rtsp://10.0.0.5/profile1"}]

    def move(self, address, username, password, velocity):
        self.moves.append(velocity)

    def stop(self, address, username, password):
        self.moves.append("stop")

    def get_audio_backchannel_info(self, address, username, password):
        return {"supported": True, "rtsp_url": "rtsp://10.0.0.5/backchannel"}


@pytest.fixture
def services(tmp_path, spawner, timers):
    store = CameraStore(tmp_path / "darkeye.db", settings_defaults=Settings(storage_path=str(tmp_path / "rec")))
    relay = RelayPublisher(tmp_path / "mediamtx.yml", store.list_cameras, spawn=spawner, timer_factory=timers)
    live = LiveStreamController(tmp_path / "hls", spawn=spawner)
    cameras = CameraManager(
        store,
        relay,
        recorder_factory=lambda cam: Recorder(
            cam, settings_loader=store.load_settings, spawn=spawner, timer_factory=timers
        ),
        live_streams=live,
        timer_factory=timers,
    )
    return server.Services(
        store=store,
        relay=relay,
        cameras=cameras,
        live=live,
        retention=RetentionEngine(store.load_settings),
        talk=TalkManager(spawn=spawner),
        devices=DummyDevices(),
    )


@pytest.fixture
async def client(aiohttp_client, services):
    return await aiohttp_client(server.build_app(services))


def _save(services, **overrides):
    fields = dict(id="CAM1", name="Porch", url="rtsp://10.0.0.5/stream1", username="admin", password="pw")
    fields.update(overrides)
    camera = CameraConfig(**fields)
    services.store.save_camera(camera)
    return camera


@pytest.mark.asyncio
async def test_healthz(client):
    response = await client.get("/healthz")
    assert response.status == 200
    assert await response.json() == {"ok": True}


@pytest.mark.asyncio
async def test_create_camera_starts_after_settle(client, services, timers, spawner):
    response = await client.post("/api/cameras", json={"name": "Porch", "url": "rtsp://10.0.0.5/s", "type": "rtsp"})

    assert response.status == 201
    payload = await response.json()
    assert len(payload["id"]) == 5
    assert payload["type"] == "rtsp"
    assert services.cameras.is_pending(payload["id"])

    timers.fire_pending()

    assert services.cameras.is_recording(payload["id"])
    assert services.live.is_recorder_controlled(payload["id"])
    assert any(p.name == f"{payload['id']}:main" for p in spawner.processes)


@pytest.mark.asyncio
async def test_create_camera_validates_input(client):
    response = await client.post("/api/cameras", json={"name": "NoUrl"})
    assert response.status == 400

    response = await client.post("/api/cameras", json={"name": "x", "url": "rtsp://a", "type": "webcam"})
    assert response.status == 400


@pytest.mark.asyncio
async def test_list_masks_passwords(client, services):
    _save(services)

    response = await client.get("/api/cameras")

    [camera] = await response.json()
    assert camera["password"] == "********"
    assert camera["is_recording"] is False


@pytest.mark.asyncio
async def test_unknown_camera_is_404(client):
    response = await client.get("/api/cameras/NOPE1")

    assert response.status == 404
    assert await response.json() == {"error": "Camera not found"}


@pytest.mark.asyncio
async def test_update_keeps_password_when_masked(client, services, timers):
    _save(services)

    response = await client.put(
        "/api/cameras/CAM1", json={"name": "Garage", "password": "********", "segment_duration": 5}
    )

    assert response.status == 200
    stored = services.store.get_camera("CAM1")
    assert stored.name == "Garage"
    assert stored.password == "pw"
    assert stored.segment_duration == 5
    assert services.cameras.is_pending("CAM1")


@pytest.mark.asyncio
async def test_update_disabling_recording_stops_camera(client, services):
    camera = _save(services)
    services.cameras.start_camera(camera, regenerate_relay=False)
    assert services.cameras.is_recording("CAM1")

    response = await client.put("/api/cameras/CAM1", json={"record_enabled": False})

    assert response.status == 200
    assert not services.cameras.is_recording("CAM1")
    assert not services.live.is_recorder_controlled("CAM1")


@pytest.mark.asyncio
async def test_delete_camera(client, services):
    camera = _save(services)
    services.cameras.start_camera(camera, regenerate_relay=False)

    response = await client.delete("/api/cameras/CAM1")

    assert response.status == 200
    assert services.store.get_camera("CAM1") is None
    assert services.cameras.get_recorder("CAM1") is None


@pytest.mark.asyncio
async def test_heartbeat_starts_live_session_with_substream(client, services, spawner):
    _save(services, record_enabled=False, substream_url="rtsp://10.0.0.5/stream2")

    response = await client.post("/api/cameras/CAM1/live/heartbeat")

    payload = await response.json()
    assert payload["hls_active"] is True
    assert payload["playlist"] == "/hls/CAM1/index.m3u8"
    live = [p for p in spawner.processes if p.name == "CAM1:live"]
    assert "rtsp://admin:pw@10.0.0.5/stream2" in live[0].args


@pytest.mark.asyncio
async def test_heartbeat_for_recording_camera_is_suppressed(client, services, spawner):
    camera = _save(services)
    services.cameras.start_camera(camera, regenerate_relay=False)

    payload = await (await client.post("/api/cameras/CAM1/live/heartbeat")).json()

    assert payload["hls_active"] is False
    assert payload["recorder_controlled"] is True
    assert not any(p.name == "CAM1:live" for p in spawner.processes)


@pytest.mark.asyncio
async def test_ptz_routes(client, services):
    _save(services, kind="onvif", ptz_enabled=True, onvif_service_url="http://10.0.0.5/onvif")
    _save(services, id="CAM2", ptz_enabled=False, onvif_service_url="http://10.0.0.6/onvif")

    ok = await client.post("/api/cameras/CAM1/ptz", json={"action": "move", "x": 2})
    rejected = await client.post("/api/cameras/CAM2/ptz", json={"action": "move", "x": 0.5})

    assert ok.status == 200
    assert services.devices.moves == [{"x": 1.0, "y": 0.0, "z": 0.0}]
    assert rejected.status == 400


@pytest.mark.asyncio
async def test_talk_lifecycle(client, services, spawner):
    _save(services, kind="onvif", onvif_service_url="http://10.0.0.5/onvif")

    support = await (await client.get("/api/cameras/CAM1/audio-support")).json()
    assert support == {"supported": True, "rtsp_url": "rtsp://10.0.0.5/backchannel"}

    started = await client.post("/api/cameras/CAM1/talk/start")
    assert (await started.json()) == {"success": True, "session_id": "CAM1"}

    sent = await client.post("/api/cameras/CAM1/talk/audio", data=b"\x00\x01" * 80)
    assert (await sent.json()) == {"success": True}
    talk = [p for p in spawner.processes if p.name == "CAM1:talk"][0]
    assert talk.written == [b"\x00\x01" * 80]

    stopped = await client.post("/api/cameras/CAM1/talk/stop")
    assert (await stopped.json()) == {"success": True}
    assert (await client.post("/api/cameras/CAM1/talk/audio", data=b"\x00")).status == 400


@pytest.mark.asyncio
async def test_talk_rejected_for_rtsp_camera(client, services):
    _save(services)

    response = await client.post("/api/cameras/CAM1/talk/start")

    assert response.status == 400
    assert (await response.json())["error"] == "Only ONVIF cameras support talk"


@pytest.mark.asyncio
async def test_discover_flags_existing_cameras(client, services):
    _save(services, kind="onvif", onvif_service_url="http://10.0.0.5/onvif/device_service")

    response = await client.post("/api/cameras/discover")

    assert await response.json() == [
        {"address": "http://10.0.0.5/onvif/device_service", "name": "Porch", "existing": True}
    ]


@pytest.mark.asyncio
async def test_settings_roundtrip(client, services):
    response = await client.post("/api/settings", json={"retention_hours": 24, "max_storage_gb": 10})

    payload = await response.json()
    assert payload["success"] is True
    assert payload["settings"]["retention_hours"] == 24.0
    assert services.store.load_settings().max_storage_gb == 10.0
    assert services.retention.running
    services.retention.stop()

    current = await (await client.get("/api/settings")).json()
    assert current["retention_hours"] == 24.0


@pytest.mark.asyncio
async def test_settings_rejects_negative_values(client):
    response = await client.post("/api/settings", json={"retention_hours": -1})
    assert response.status == 400


@pytest.mark.asyncio
async def test_check_path(client, tmp_path):
    ok = await client.post("/api/settings/check-path", json={"path": str(tmp_path / "new")})
    assert ok.status == 200
    assert (tmp_path / "new").is_dir()

    missing = await client.post("/api/settings/check-path", json={})
    assert missing.status == 400


@pytest.mark.asyncio
async def test_recordings_listing_and_download(client, services, tmp_path):
    camera_dir = tmp_path / "rec" / "CAM1"
    (camera_dir / "timelapse").mkdir(parents=True)
    (camera_dir / "2024-01-01_10-00-00.mkv").write_bytes(b"a" * 10)
    (camera_dir / "timelapse" / "2024-01-01_10-00-00.mkv").write_bytes(b"b" * 5)
    (camera_dir / "thumbnail.jpg").write_bytes(b"jpg")
    _save(services)

    entries = await (await client.get("/api/recordings/CAM1")).json()
    assert [(e["name"], e["type"]) for e in entries] == [
        ("2024-01-01_10-00-00.mkv", "normal"),
        ("timelapse/2024-01-01_10-00-00.mkv", "timelapse"),
    ]

    download = await client.get("/recordings/CAM1/timelapse/2024-01-01_10-00-00.mkv")
    assert download.status == 200
    assert await download.read() == b"b" * 5

    latest = await (await client.get("/api/cameras/CAM1/latest-recording")).json()
    assert latest["name"] == "2024-01-01_10-00-00.mkv"

    thumb = await client.get("/api/cameras/CAM1/thumbnail")
    assert thumb.status == 200


@pytest.mark.asyncio
async def test_recording_download_blocks_traversal(client, tmp_path):
    (tmp_path / "secret.txt").write_text("nope")

    response = await client.get("/recordings/CAM1/..%2F..%2Fsecret.txt")

    assert response.status == 404


@pytest.mark.asyncio
async def test_retention_run_endpoint(client, tmp_path):
    old = tmp_path / "rec" / "CAM1" / "old.mkv"
    old.parent.mkdir(parents=True)
    old.write_bytes(b"x")
    stamp = time.time() - 100 * 3600
    os.utime(old, (stamp, stamp))

    payload = await (await client.post("/api/retention/run")).json()

    assert payload["deleted_by_age"] == [str(old)]
    assert not old.exists()


@pytest.mark.asyncio
async def test_status_endpoint(client, services):
    payload = await (await client.get("/api/status")).json()

    assert payload["cameras"] == {"cameras": {}, "pending_start": []}
    assert payload["relay_running"] is False
    assert payload["talk_sessions"] == []
