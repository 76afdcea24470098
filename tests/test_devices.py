from __future__ import annotations

import pytest

from darkeye.devices import (
    DeviceControlError,
    UnavailableDeviceClient,
    audio_backchannel,
    discover_devices,
    list_profiles,
    ptz_command,
)
from darkeye.models import CameraConfig


class DummyClient:
    def __init__(self, discoveries=None):
        self.discoveries = list(discoveries or [])
        self.calls = []

    def discover(self):
        self.calls.append(("discover",))
        item = self.discoveries.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get_profiles(self, address, username, password):
        self.calls.append(("get_profiles", address, username, password))
        return [{"token": "main", "name": "MainStream"}]

    def move(self, address, username, password, velocity):
        self.calls.append(("move", address, velocity))

    def stop(self, address, username, password):
        self.calls.append(("stop", address))

    def get_audio_backchannel_info(self, address, username, password):
        self.calls.append(("backchannel", address))
        return {"supported": True, "rtsp_url": "rtsp://10.0.0.5/backchannel"}


def _camera(**overrides):
    fields = dict(
        id="CAM1",
        name="Porch",
        url="rtsp://10.0.0.5/stream1",
        kind="onvif",
        username="admin",
        password="pw",
        ptz_enabled=True,
        onvif_service_url="http://10.0.0.5/onvif/device_service",
    )
    fields.update(overrides)
    return CameraConfig(**fields)


def test_discovery_merges_attempts_by_address():
    client = DummyClient(
        [
            [{"address": "http://10.0.0.5/onvif", "name": "Porch"}],
            DeviceControlError("timeout"),
            [{"xaddr": "http://10.0.0.6/onvif"}, {"address": "http://10.0.0.5/onvif", "name": "dup"}],
        ]
    )
    pauses = []

    result = discover_devices(client, attempts=3, pause=1.0, sleep=pauses.append)

    assert result.ok
    assert result.data == [
        {"address": "http://10.0.0.5/onvif", "name": "Porch"},
        {"address": "http://10.0.0.6/onvif", "name": "Unknown Device"},
    ]
    assert pauses == [1.0, 1.0]


def test_discovery_fails_only_when_every_attempt_fails():
    client = DummyClient([DeviceControlError("no route")] * 2)

    result = discover_devices(client, attempts=2, sleep=lambda _s: None)

    assert not result.ok
    assert result.error == "no route"


def test_ptz_move_clamps_velocity():
    client = DummyClient()

    result = ptz_command(client, _camera(), "move", {"x": 3, "y": -0.5, "z": "junk"})

    assert result.ok
    assert client.calls == [
        ("move", "http://10.0.0.5/onvif/device_service", {"x": 1.0, "y": -0.5, "z": 0.0})
    ]


def test_ptz_move_rejected_when_disabled():
    client = DummyClient()

    result = ptz_command(client, _camera(ptz_enabled=False), "move", {"x": 0.5})

    assert not result.ok and result.rejected
    assert client.calls == []


def test_ptz_stop_allowed_when_disabled():
    client = DummyClient()

    assert ptz_command(client, _camera(ptz_enabled=False), "stop").ok
    assert client.calls == [("stop", "http://10.0.0.5/onvif/device_service")]


@pytest.mark.parametrize(
    ("camera", "action"),
    [
        (_camera(onvif_service_url=None), "move"),
        (_camera(), "zoom"),
    ],
)
def test_ptz_rejections(camera, action):
    result = ptz_command(DummyClient(), camera, action)
    assert result.rejected
    assert not result.ok
    assert result.error


def test_ptz_client_failure_is_not_a_rejection():
    result = ptz_command(UnavailableDeviceClient(), _camera(), "move", {"x": 0.1})

    assert not result.ok
    assert not result.rejected
    assert "not configured" in result.error


def test_audio_backchannel_for_onvif_camera():
    result = audio_backchannel(DummyClient(), _camera())

    assert result.ok
    assert result.data == {"supported": True, "rtsp_url": "rtsp://10.0.0.5/backchannel"}


def test_audio_backchannel_rejects_plain_rtsp():
    result = audio_backchannel(DummyClient(), _camera(kind="rtsp"))

    assert result.rejected
    assert result.error == "Only ONVIF cameras support talk"


def test_list_profiles_passes_credentials():
    client = DummyClient()

    result = list_profiles(client, "http://10.0.0.5/onvif", "admin", "pw")

    assert result.ok
    assert client.calls == [("get_profiles", "http://10.0.0.5/onvif", "admin", "pw")]
