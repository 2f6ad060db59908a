#!/usr/bin/env python3
"""
Mixer Telemetry Client

Keeps a WebSocket session to the OSC bridge, decodes what the bridge relays
from the X-Air mixer (faders, mutes, meters, channel names, mixer status) and
fans the typed events out to independent observers.

The session reconnects at a fixed interval for as long as the client is
running; observers registered once keep receiving events across reconnects.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.asyncio.client import ClientConnection

from observers import Subject, Unsubscribe

logger = logging.getLogger(__name__)

FADER_ADDRESS = re.compile(r"^/ch/(\d+)/mix/fader$")
MUTE_ADDRESS = re.compile(r"^/ch/(\d+)/mix/on$")
NAME_ADDRESS = re.compile(r"^/ch/(\d+)/config/name$")


class BridgeNotConnectedError(ConnectionError):
    """The bridge WebSocket is not open."""


class MixerModel(Enum):
    """Supported Behringer X-Air models."""
    X_AIR_16 = "X-Air 16"
    X_AIR_18 = "X-Air 18"

    @property
    def channel_count(self) -> int:
        return 12 if self is MixerModel.X_AIR_16 else 16

    @classmethod
    def from_name(cls, name: str) -> "MixerModel":
        normalized = name.strip().lower().replace("_", " ").replace("-", " ")
        for model in cls:
            if model.value.lower().replace("-", " ") == normalized:
                return model
        # Accept bare model numbers such as "XR18" or "18"
        digits = re.sub(r"\D", "", normalized)
        if digits == "16":
            return cls.X_AIR_16
        if digits == "18":
            return cls.X_AIR_18
        raise ValueError(f"Unknown mixer model: {name}")


@dataclass
class TelemetryConfig:
    """Bridge connection settings."""
    url: str = "ws://localhost:8080"
    reconnect_interval: float = 3.0  # Fixed delay between reconnect attempts
    connect_timeout: float = 5.0
    ping_interval: Optional[float] = 20.0
    subscribe_meters: bool = True
    subscribe_dynamics: bool = True


@dataclass
class MixerChannel:
    """Latest known state of one input channel."""
    channel: int
    fader: float = 0.0  # 0-100 %
    muted: bool = False
    vu_level_db: float = -90.0
    name: Optional[str] = None
    color: Optional[int] = None


@dataclass
class FaderUpdate:
    channel: int
    value: float  # 0-100 %
    timestamp: int


@dataclass
class MuteUpdate:
    channel: int
    muted: bool
    timestamp: int


@dataclass
class ChannelNameUpdate:
    """Names reported by the mixer. ``bulk`` is set for all-channel-names."""
    names: Dict[int, str]
    bulk: bool = False


@dataclass
class MixerStatus:
    validated: bool
    message: str
    model: Optional[str] = None


@dataclass
class MeterFrame:
    """One meter snapshot from the bridge."""
    kind: str  # "vu" or "dynamics"
    levels: List[float]
    timestamp: int
    buses: List[float] = field(default_factory=list)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _unwrap_arg(value: Any) -> Any:
    """OSC args arrive either bare or as {type, value} objects."""
    if isinstance(value, dict) and "value" in value:
        return value["value"]
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class MixerTelemetryClient:
    """
    WebSocket client for the mixer bridge.

    Usage:
        client = MixerTelemetryClient(TelemetryConfig(url="ws://localhost:8080"))
        unsubscribe = client.on_fader_update(lambda update: ...)
        await client.connect("192.168.1.10", MixerModel.X_AIR_18)
        ...
        await client.disconnect()
    """

    def __init__(self, config: Optional[TelemetryConfig] = None):
        self.config = config or TelemetryConfig()
        self.mixer_address: Optional[str] = None
        self.mixer_port: int = 10024
        self.model: MixerModel = MixerModel.X_AIR_18

        self._ws: Optional[ClientConnection] = None
        self._connected = False
        self._mixer_validated = False
        self._should_run = False
        self._session_task: Optional[asyncio.Task] = None
        self._opened = asyncio.Event()

        self.channels: Dict[int, MixerChannel] = {}

        self._fader_subject: Subject[FaderUpdate] = Subject("fader")
        self._mute_subject: Subject[MuteUpdate] = Subject("mute")
        self._name_subject: Subject[ChannelNameUpdate] = Subject("channel-name")
        self._mixer_status_subject: Subject[MixerStatus] = Subject("mixer-status")
        self._status_subject: Subject[bool] = Subject("connection-status")
        self._meter_subject: Subject[MeterFrame] = Subject("meters")
        self._message_subject: Subject[Dict[str, Any]] = Subject("message")

    @property
    def is_connected(self) -> bool:
        return self._connected and self._ws is not None

    @property
    def is_mixer_validated(self) -> bool:
        return self._mixer_validated

    @property
    def max_channels(self) -> int:
        return self.model.channel_count

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_fader_update(self, callback: Callable[[FaderUpdate], Any]) -> Unsubscribe:
        return self._fader_subject.subscribe(callback)

    def on_mute_update(self, callback: Callable[[MuteUpdate], Any]) -> Unsubscribe:
        return self._mute_subject.subscribe(callback)

    def on_channel_name_update(self, callback: Callable[[ChannelNameUpdate], Any]) -> Unsubscribe:
        return self._name_subject.subscribe(callback)

    def on_mixer_status(self, callback: Callable[[MixerStatus], Any]) -> Unsubscribe:
        """Mixer validation results, separate from raw socket connectivity."""
        return self._mixer_status_subject.subscribe(callback)

    def on_status_change(self, callback: Callable[[bool], Any]) -> Unsubscribe:
        """Bridge socket open (True) / lost (False)."""
        return self._status_subject.subscribe(callback)

    def on_meters(self, callback: Callable[[MeterFrame], Any]) -> Unsubscribe:
        return self._meter_subject.subscribe(callback)

    def on_message(self, callback: Callable[[Dict[str, Any]], Any]) -> Unsubscribe:
        """Every decoded JSON object from the bridge, after typed dispatch."""
        return self._message_subject.subscribe(callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, address: str, model: MixerModel = MixerModel.X_AIR_18) -> bool:
        """
        Start the bridge session for a mixer.

        Args:
            address: Mixer IP, optionally with ``:port`` (default 10024).
            model: Mixer model, bounds the channel range.

        Returns:
            True if the bridge socket opened within ``connect_timeout``. The
            session keeps retrying in the background either way.
        """
        host, _, port = address.partition(":")
        self.mixer_address = host
        self.mixer_port = int(port) if port else 10024
        self.model = model

        if self._session_task and not self._session_task.done():
            # Already running: just point the bridge at the (new) mixer
            if self.is_connected:
                await self._send_mixer_address()
            return self.is_connected

        logger.info(f"🎛️ Initializing {model.value} connection to {self.mixer_address}:{self.mixer_port}")
        self._should_run = True
        self._opened.clear()
        self._session_task = asyncio.create_task(self._session_loop())

        try:
            await asyncio.wait_for(self._opened.wait(), timeout=self.config.connect_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ Bridge at {self.config.url} not reachable yet, retrying every "
                           f"{self.config.reconnect_interval}s")
            return False

    async def disconnect(self):
        """Stop reconnecting, close the socket and drop every observer."""
        self._should_run = False

        if self._session_task:
            self._session_task.cancel()
            try:
                await self._session_task
            except asyncio.CancelledError:
                pass
            self._session_task = None

        await self._close_socket()

        was_connected = self._connected
        self._connected = False
        self._mixer_validated = False
        if was_connected:
            self._status_subject.notify(False)

        for subject in (self._fader_subject, self._mute_subject, self._name_subject,
                        self._mixer_status_subject, self._status_subject,
                        self._meter_subject, self._message_subject):
            subject.clear()
        logger.info("🛑 Telemetry client disconnected")

    async def _session_loop(self):
        """Connect, read until the socket drops, wait, repeat."""
        while self._should_run:
            try:
                logger.info(f"🌉 Connecting to OSC bridge at {self.config.url}")
                async with websockets.connect(
                    self.config.url,
                    open_timeout=self.config.connect_timeout,
                    ping_interval=self.config.ping_interval,
                    close_timeout=2,
                ) as ws:
                    self._ws = ws
                    await self._handle_open()
                    async for raw in ws:
                        self._handle_raw(raw)
                logger.warning("❌ OSC bridge connection closed")

            except asyncio.CancelledError:
                raise
            except websockets.ConnectionClosed as e:
                logger.warning(f"❌ OSC bridge connection lost: {e}")
            except (OSError, asyncio.TimeoutError, websockets.InvalidHandshake) as e:
                logger.error(f"❌ OSC bridge connection error: {e}")
            except Exception as e:
                logger.error(f"❌ Unexpected bridge session error: {e}", exc_info=True)
            finally:
                self._ws = None
                self._handle_transport_loss()

            if self._should_run:
                logger.info(f"🔄 Reconnecting to OSC bridge in {self.config.reconnect_interval}s...")
                await asyncio.sleep(self.config.reconnect_interval)

    async def _handle_open(self):
        logger.info("✅ Connected to OSC bridge")
        self._connected = True

        await self._send_mixer_address()
        await self._subscribe_channels()
        if self.config.subscribe_meters:
            await self._send({"type": "subscribe_meters"})
        if self.config.subscribe_dynamics:
            await self._send({"type": "subscribe_dynamics"})

        self._opened.set()
        self._status_subject.notify(True)

    def _handle_transport_loss(self):
        was_connected = self._connected
        self._connected = False
        self._mixer_validated = False
        self._opened.clear()
        if was_connected:
            self._status_subject.notify(False)

    async def _close_socket(self):
        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing bridge socket: {e}")
            self._ws = None

    async def _send_mixer_address(self):
        if self.mixer_address:
            logger.info(f"🔄 Updating bridge mixer address to {self.mixer_address}:{self.mixer_port}")
            await self._send({
                "type": "update_mixer_ip",
                "mixerIP": self.mixer_address,
                "mixerPort": self.mixer_port,
            })

    async def _subscribe_channels(self):
        logger.info(f"🎚️ Subscribing to {self.max_channels} fader channels and mute states")
        for channel in range(1, self.max_channels + 1):
            padded = f"{channel:02d}"
            await self._send({"type": "subscribe", "address": f"/ch/{padded}/mix/fader"})
            await self._send({"type": "subscribe", "address": f"/ch/{padded}/mix/on"})

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, message: Dict[str, Any]):
        """Send a JSON message to the bridge or raise BridgeNotConnectedError."""
        if not self.is_connected:
            raise BridgeNotConnectedError("Bridge not connected")
        await self._send(message)

    async def _send(self, message: Dict[str, Any]):
        if self._ws is None:
            raise BridgeNotConnectedError("Bridge not connected")
        await self._ws.send(json.dumps(message))

    async def send_osc(self, address: str, args: Optional[List[Any]] = None) -> bool:
        """Relay an OSC message to the mixer. Returns False if not connected."""
        try:
            await self.send({"type": "osc", "address": address, "args": args or []})
            return True
        except (BridgeNotConnectedError, websockets.ConnectionClosed) as e:
            logger.warning(f"⚠️ Cannot send OSC {address}: {e}")
            return False

    async def validate_mixer(self) -> bool:
        """Ask the bridge to confirm a responding mixer. Result arrives via on_mixer_status."""
        try:
            await self.send({"type": "validate_mixer"})
            return True
        except (BridgeNotConnectedError, websockets.ConnectionClosed) as e:
            logger.warning(f"⚠️ Cannot validate mixer: {e}")
            return False

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _handle_raw(self, raw):
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"⚠️ Discarding non-JSON bridge frame: {e}")
            return

        if not isinstance(message, dict):
            logger.warning(f"⚠️ Discarding bridge frame that is not an object: {message!r}")
            return

        try:
            self._dispatch(message)
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            logger.warning(f"⚠️ Discarding malformed {message.get('type')} message: {e}")
            return

        self._message_subject.notify(message)

    def _dispatch(self, message: Dict[str, Any]):
        msg_type = message.get("type")

        if msg_type == "osc":
            self._handle_osc(message)
        elif msg_type == "mixer_status":
            self._handle_mixer_status(message)
        elif msg_type == "channel-name":
            self._handle_channel_names({int(message["channel"]): str(message["name"])}, bulk=False)
        elif msg_type == "all-channel-names":
            names = {int(entry["channel"]): str(entry["name"]) for entry in message.get("channels", [])}
            self._handle_channel_names(names, bulk=True)
        elif msg_type == "vu_meters":
            self._handle_meters("vu", message.get("data"), message)
        elif msg_type == "dynamics_meters":
            self._handle_meters("dynamics", message.get("channels", message.get("data")), message)
        elif msg_type == "status":
            pass  # bridge heartbeat
        else:
            logger.debug(f"Unhandled bridge message type: {msg_type}")

    def _valid_channel(self, channel: int) -> bool:
        if 1 <= channel <= self.max_channels:
            return True
        logger.warning(f"⚠️ Channel {channel} outside 1..{self.max_channels} for {self.model.value}, ignored")
        return False

    def _channel(self, channel: int) -> MixerChannel:
        state = self.channels.get(channel)
        if state is None:
            state = MixerChannel(channel=channel)
            self.channels[channel] = state
        return state

    def _handle_osc(self, message: Dict[str, Any]):
        address = message.get("address") or ""
        args = message.get("args") or []
        timestamp = message.get("timestamp") or _now_ms()

        match = FADER_ADDRESS.match(address)
        if match:
            channel = int(match.group(1))
            if not args or not self._valid_channel(channel):
                return
            raw_value = _unwrap_arg(args[0])
            if not _is_number(raw_value):
                logger.warning(f"⚠️ Invalid fader value for channel {channel}: {raw_value!r}")
                return
            value = max(0.0, min(100.0, float(raw_value) * 100))
            self._channel(channel).fader = value
            self._fader_subject.notify(FaderUpdate(channel=channel, value=value, timestamp=timestamp))
            return

        match = MUTE_ADDRESS.match(address)
        if match:
            channel = int(match.group(1))
            if not args or not self._valid_channel(channel):
                return
            raw_value = _unwrap_arg(args[0])
            if not isinstance(raw_value, (int, float, bool)):
                logger.warning(f"⚠️ Invalid mute value for channel {channel}: {raw_value!r}")
                return
            # /mix/on: 1 = channel on, 0 = muted
            muted = raw_value == 0 or raw_value is False
            self._channel(channel).muted = muted
            logger.info(f"🔇 Channel {channel}: {'MUTED' if muted else 'UNMUTED'}")
            self._mute_subject.notify(MuteUpdate(channel=channel, muted=muted, timestamp=timestamp))
            return

        match = NAME_ADDRESS.match(address)
        if match:
            channel = int(match.group(1))
            if args:
                self._handle_channel_names({channel: str(_unwrap_arg(args[0]))}, bulk=False)

    def _handle_mixer_status(self, message: Dict[str, Any]):
        connected = bool(message.get("connected", False))
        reported_model = message.get("model")
        text = message.get("message") or "Unknown status"

        validated = connected
        if connected and reported_model:
            try:
                validated = MixerModel.from_name(str(reported_model)) is self.model
            except ValueError:
                validated = False
            if not validated:
                text = f"Expected {self.model.value}, mixer reports {reported_model}"

        self._mixer_validated = validated
        logger.info(f"🎛️ Mixer status: {'Valid' if validated else 'Invalid'} - {text}")
        self._mixer_status_subject.notify(MixerStatus(validated=validated, message=text, model=reported_model))

    def _handle_channel_names(self, names: Dict[int, str], bulk: bool):
        accepted = {ch: name for ch, name in names.items() if self._valid_channel(ch)}
        if not accepted:
            return
        for channel, name in accepted.items():
            self._channel(channel).name = name
        self._name_subject.notify(ChannelNameUpdate(names=accepted, bulk=bulk))

    def _handle_meters(self, kind: str, payload: Any, message: Dict[str, Any]):
        buses: List[float] = []
        if isinstance(payload, dict):
            buses = [float(v) for v in payload.get("buses", [])]
            payload = payload.get("channels", [])
        if not isinstance(payload, list):
            raise ValueError(f"{kind} meter payload is not a list")

        levels = [float(v) for v in payload]
        if kind == "vu":
            for index, level in enumerate(levels[:self.max_channels]):
                self._channel(index + 1).vu_level_db = level

        frame = MeterFrame(
            kind=kind,
            levels=levels,
            timestamp=message.get("timestamp") or _now_ms(),
            buses=buses or [float(v) for v in message.get("buses", [])],
        )
        self._meter_subject.notify(frame)
