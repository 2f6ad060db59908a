#!/usr/bin/env python3
"""
LED Indicator Control

Drives ESP32 LED strips over their small HTTP API to show the speaker mute
("mic live") state. Each device exposes POST /color, /animation, /on, /off
and /toggle plus GET /status.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from observers import Unsubscribe

logger = logging.getLogger(__name__)

STATUS_TIMEOUT = 3.0
COMMAND_TIMEOUT = 5.0
ANIMATIONS = ("solid", "pulse", "blink", "chase", "rainbow")


@dataclass
class LedDevice:
    name: str
    ip_address: str
    port: int = 80
    enabled: bool = True
    type: str = "esp32"
    description: str = ""
    id: str = field(default_factory=lambda: f"led-{uuid.uuid4().hex[:12]}")

    @property
    def base_url(self) -> str:
        return f"http://{self.ip_address}:{self.port}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedDevice":
        device = cls(
            name=data.get("name", ""),
            ip_address=data.get("ip_address", data.get("ipAddress", "")),
            port=int(data.get("port", 80)),
            enabled=data.get("enabled", True),
            type=data.get("type", "esp32"),
            description=data.get("description", ""),
        )
        if data.get("id"):
            device.id = data["id"]
        return device


@dataclass
class LedIndicatorConfig:
    """Which devices show the speaker mute state, and how."""
    enabled: bool = False
    device_ids: List[str] = field(default_factory=list)
    on_color: Tuple[int, int, int] = (255, 0, 0)
    off_delay_ms: int = 0  # 0 = off immediately
    animation: str = "solid"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedIndicatorConfig":
        color = data.get("on_color", data.get("onColor", (255, 0, 0)))
        if isinstance(color, dict):
            color = (color.get("r", 0), color.get("g", 0), color.get("b", 0))
        animation = data.get("animation", "solid")
        if animation not in ANIMATIONS:
            raise ValueError(f"Unknown LED animation: {animation}")
        return cls(
            enabled=data.get("enabled", False),
            device_ids=list(data.get("device_ids", data.get("deviceIds", []))),
            on_color=tuple(int(c) for c in color),
            off_delay_ms=int(data.get("off_delay_ms", data.get("offDelay", 0))),
            animation=animation,
        )


@dataclass
class LedControlConfig:
    devices: List[LedDevice] = field(default_factory=list)
    speaker_mute_indicator: LedIndicatorConfig = field(default_factory=LedIndicatorConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedControlConfig":
        indicator = data.get("speaker_mute_indicator", data.get("speakerMuteIndicator", {}))
        return cls(
            devices=[LedDevice.from_dict(d) for d in data.get("devices", [])],
            speaker_mute_indicator=LedIndicatorConfig.from_dict(indicator or {}),
        )


class LedController:
    """HTTP client for LED devices plus the speaker-mute indicator logic."""

    def __init__(self, config: Optional[LedControlConfig] = None):
        self.config = config or LedControlConfig()
        self._session: Optional[aiohttp.ClientSession] = None
        self._off_timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: set = set()
        self._unsubscribe: Optional[Unsubscribe] = None

    async def start(self):
        if self._session is None:
            self._session = aiohttp.ClientSession()
        logger.info(f"💡 LED control started with {len(self.config.devices)} device(s)")

    async def stop(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        for handle in self._off_timers.values():
            handle.cancel()
        self._off_timers.clear()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("💡 LED control stopped")

    def follow(self, speaker_mute):
        """Mirror a SpeakerMuteController's state on the indicator LEDs."""
        if self._unsubscribe:
            self._unsubscribe()
        self._unsubscribe = speaker_mute.on_change(self._on_speaker_mute)

    def _on_speaker_mute(self, muted: bool):
        self._spawn(self.turn_on_indicator() if muted else self.turn_off_indicator())

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def add_device(self, device: LedDevice) -> LedDevice:
        self.config.devices.append(device)
        return device

    def remove_device(self, device_id: str):
        self.config.devices = [d for d in self.config.devices if d.id != device_id]
        indicator = self.config.speaker_mute_indicator
        indicator.device_ids = [i for i in indicator.device_ids if i != device_id]

    def get_enabled_devices(self) -> List[LedDevice]:
        return [d for d in self.config.devices if d.enabled]

    def get_indicator_devices(self) -> List[LedDevice]:
        indicator = self.config.speaker_mute_indicator
        if not indicator.enabled:
            return []
        return [d for d in self.config.devices if d.enabled and d.id in indicator.device_ids]

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def send_command(self, device: LedDevice, endpoint: str,
                           params: Optional[Dict[str, Any]] = None) -> bool:
        """POST an endpoint such as "/on" with optional query parameters."""
        session = await self._ensure_session()
        url = f"{device.base_url}{endpoint}"
        query = {key: str(value) for key, value in (params or {}).items()}
        try:
            async with session.post(url, params=query,
                                    timeout=aiohttp.ClientTimeout(total=COMMAND_TIMEOUT)) as response:
                if response.status >= 400:
                    logger.warning(f"⚠️ LED {device.name} rejected {endpoint}: HTTP {response.status}")
                    return False
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ Failed to send {endpoint} to {device.name}: {e}")
            return False

    async def get_device_status(self, device: LedDevice) -> Optional[Dict[str, Any]]:
        session = await self._ensure_session()
        try:
            async with session.get(f"{device.base_url}/status",
                                   timeout=aiohttp.ClientTimeout(total=STATUS_TIMEOUT)) as response:
                if response.status == 200:
                    return await response.json(content_type=None)
                return None
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"❌ Failed to get status for {device.name}: {e}")
            return None

    async def test_device(self, device: LedDevice) -> bool:
        status = await self.get_device_status(device)
        if status is not None:
            logger.info(f"✅ LED device {device.name} responded: {status}")
            return True
        return False

    # ------------------------------------------------------------------
    # Indicator
    # ------------------------------------------------------------------

    async def turn_on_indicator(self):
        indicator = self.config.speaker_mute_indicator
        if not indicator.enabled:
            return
        devices = self.get_indicator_devices()
        logger.info(f"🚥 Turning ON speaker mute indicator for {len(devices)} device(s)")

        for device in devices:
            handle = self._off_timers.pop(device.id, None)
            if handle:
                handle.cancel()

        await asyncio.gather(*(self._light(device) for device in devices))

    async def _light(self, device: LedDevice) -> bool:
        indicator = self.config.speaker_mute_indicator
        r, g, b = indicator.on_color
        await self.send_command(device, "/color", {"r": r, "g": g, "b": b})
        if indicator.animation != "solid":
            await self.send_command(device, "/animation", {"mode": indicator.animation})
        return await self.send_command(device, "/on")

    async def turn_off_indicator(self):
        indicator = self.config.speaker_mute_indicator
        if not indicator.enabled:
            return
        devices = self.get_indicator_devices()
        delay = indicator.off_delay_ms
        logger.info(f"🚥 Turning OFF speaker mute indicator for {len(devices)} device(s) (delay: {delay}ms)")

        loop = asyncio.get_running_loop()
        immediate = []
        for device in devices:
            existing = self._off_timers.pop(device.id, None)
            if existing:
                existing.cancel()
            if delay > 0:
                self._off_timers[device.id] = loop.call_later(delay / 1000, self._delayed_off, device)
            else:
                immediate.append(self.send_command(device, "/off"))
        if immediate:
            await asyncio.gather(*immediate)

    def _delayed_off(self, device: LedDevice):
        self._off_timers.pop(device.id, None)
        self._spawn(self.send_command(device, "/off"))

    async def toggle_indicator(self):
        """Flip the indicator LEDs, for testing the wiring."""
        await asyncio.gather(*(self.send_command(d, "/toggle") for d in self.get_indicator_devices()))
