"""Tests for LED indicator control against a fake ESP32 HTTP device."""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import web

from conftest import wait_until
from led_control import LedControlConfig, LedController, LedDevice, LedIndicatorConfig
from speaker_mute import SpeakerMuteConfig, SpeakerMuteController
from telemetry_client import FaderUpdate


class FakeLedDevice:
    def __init__(self):
        self.calls = []
        self._runner = None
        self.port = None

    async def start(self):
        app = web.Application()
        for endpoint in ("/color", "/animation", "/on", "/off", "/toggle"):
            app.router.add_post(endpoint, self._command)
        app.router.add_get("/status", self._status)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "127.0.0.1", 0)
        await site.start()
        self.port = self._runner.addresses[0][1]

    async def stop(self):
        await self._runner.cleanup()

    async def _command(self, request):
        self.calls.append((request.path, dict(request.query)))
        return web.Response(text="ok")

    async def _status(self, request):
        return web.json_response({"on": False, "color": [0, 0, 0]})

    def paths(self):
        return [path for path, _ in self.calls]


@pytest_asyncio.fixture
async def device():
    device = FakeLedDevice()
    await device.start()
    yield device
    await device.stop()


def make_controller(device, **indicator):
    led = LedDevice(name="Studio door", ip_address="127.0.0.1", port=device.port, id="led-1")
    settings = dict(enabled=True, device_ids=["led-1"])
    settings.update(indicator)
    return LedController(LedControlConfig(devices=[led], speaker_mute_indicator=LedIndicatorConfig(**settings)))


class TestLedController:
    @pytest.mark.asyncio
    async def test_turn_on_sets_color_then_on(self, device):
        controller = make_controller(device, on_color=(0, 255, 0), animation="pulse")
        await controller.start()
        await controller.turn_on_indicator()
        await controller.stop()

        assert device.calls == [
            ("/color", {"r": "0", "g": "255", "b": "0"}),
            ("/animation", {"mode": "pulse"}),
            ("/on", {}),
        ]

    @pytest.mark.asyncio
    async def test_off_delay_cancelled_by_on(self, device):
        controller = make_controller(device, off_delay_ms=100)
        await controller.start()
        await controller.turn_off_indicator()
        assert device.paths() == []
        await controller.turn_on_indicator()
        await asyncio.sleep(0.2)
        await controller.stop()
        assert "/off" not in device.paths()

    @pytest.mark.asyncio
    async def test_off_delay_fires(self, device):
        controller = make_controller(device, off_delay_ms=50)
        await controller.start()
        await controller.turn_off_indicator()
        await wait_until(lambda: device.paths() == ["/off"])
        await controller.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_off(self, device):
        controller = make_controller(device, off_delay_ms=100)
        await controller.start()
        await controller.turn_off_indicator()
        await controller.stop()
        await asyncio.sleep(0.2)
        assert device.paths() == []

    @pytest.mark.asyncio
    async def test_disabled_indicator_sends_nothing(self, device):
        controller = make_controller(device, enabled=False)
        await controller.turn_on_indicator()
        await controller.stop()
        assert device.calls == []

    @pytest.mark.asyncio
    async def test_status_check(self, device):
        controller = make_controller(device)
        assert await controller.test_device(controller.config.devices[0])
        offline = LedDevice(name="gone", ip_address="127.0.0.1", port=1)
        assert not await controller.test_device(offline)
        await controller.stop()

    @pytest.mark.asyncio
    async def test_follows_speaker_mute(self, device):
        controller = make_controller(device)
        await controller.start()
        speaker_mute = SpeakerMuteController(SpeakerMuteConfig(enabled=True, trigger_channels=[1]))
        controller.follow(speaker_mute)

        speaker_mute.handle_fader_update(FaderUpdate(channel=1, value=90, timestamp=0))
        await wait_until(lambda: "/on" in device.paths())
        speaker_mute.handle_fader_update(FaderUpdate(channel=1, value=0, timestamp=0))
        await wait_until(lambda: "/off" in device.paths())
        await controller.stop()

    def test_remove_device_drops_indicator_reference(self, device):
        controller = make_controller(device)
        controller.remove_device("led-1")
        assert controller.config.devices == []
        assert controller.config.speaker_mute_indicator.device_ids == []

    def test_config_from_legacy_dict(self):
        config = LedControlConfig.from_dict({
            "devices": [{"id": "led-9", "name": "Desk", "ipAddress": "10.0.0.5", "port": 80, "enabled": True}],
            "speakerMuteIndicator": {"enabled": True, "deviceIds": ["led-9"],
                                     "onColor": {"r": 255, "g": 0, "b": 0}, "offDelay": 500,
                                     "animation": "blink"},
        })
        assert config.devices[0].ip_address == "10.0.0.5"
        assert config.speaker_mute_indicator.on_color == (255, 0, 0)
        assert config.speaker_mute_indicator.off_delay_ms == 500
