#!/usr/bin/env python3
"""
Speaker Mute Controller

Mutes the studio speakers while any microphone fader is open. The speakers
are either a bus (``/bus/N/mix/on``) or a mute group (``/config/mute/N``);
the OSC command goes out through the bridge only when the muted state
actually changes.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from observers import Subject, Unsubscribe
from telemetry_client import FaderUpdate, MixerTelemetryClient

logger = logging.getLogger(__name__)

MUTE_TYPES = ("bus", "mute_group")


def _first(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """First non-null value among several spellings of a key."""
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return default


@dataclass
class SpeakerMuteConfig:
    enabled: bool = False
    trigger_channels: List[int] = field(default_factory=list)
    mute_type: str = "bus"  # "bus" or "mute_group"
    bus_number: int = 1
    mute_group_number: int = 1
    threshold: float = 10.0  # fader % at or above which a mic counts as open
    description: str = "Mute main speakers when mics are open"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpeakerMuteConfig":
        defaults = cls()
        mute_type = data.get("mute_type", data.get("muteType", defaults.mute_type))
        if mute_type == "muteGroup":
            mute_type = "mute_group"
        return cls(
            enabled=data.get("enabled", defaults.enabled),
            trigger_channels=[int(ch) for ch in data.get("trigger_channels", data.get("triggerChannels", []))],
            mute_type=mute_type,
            bus_number=int(_first(data, "bus_number", "busNumber", default=defaults.bus_number)),
            mute_group_number=int(_first(data, "mute_group_number", "muteGroupNumber",
                                         default=defaults.mute_group_number)),
            threshold=float(data.get("threshold", defaults.threshold)),
            description=data.get("description", defaults.description),
        )

    def osc_command(self, mute: bool) -> Dict[str, Any]:
        """OSC address and args that mute or unmute the speakers."""
        if self.mute_type == "bus":
            # /mix/on: 0 = off (muted)
            return {"address": f"/bus/{self.bus_number}/mix/on", "args": [{"type": "i", "value": 0 if mute else 1}]}
        return {"address": f"/config/mute/{self.mute_group_number}", "args": [{"type": "i", "value": 1 if mute else 0}]}


class SpeakerMuteController:
    """Follows the trigger faders and keeps the speaker mute in step."""

    def __init__(self, config: Optional[SpeakerMuteConfig] = None, client: Optional[MixerTelemetryClient] = None):
        self.config = config or SpeakerMuteConfig()
        self.client = client
        self.is_muted = False
        self.fader_levels: Dict[int, float] = {}

        self._change_subject: Subject[bool] = Subject("speaker-mute")
        self._sends: Set[asyncio.Task] = set()
        self._unsubscribers: List[Unsubscribe] = []

    def attach(self, client: MixerTelemetryClient):
        self.detach()
        self.client = client
        self._unsubscribers = [
            client.on_fader_update(self.handle_fader_update),
            client.on_status_change(self._on_connection_change),
        ]

    def detach(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def on_change(self, callback: Callable[[bool], Any]) -> Unsubscribe:
        """Muted flag changes (e.g. for the LED indicator)."""
        return self._change_subject.subscribe(callback)

    def update_config(self, config: SpeakerMuteConfig):
        self.config = config
        if config.enabled:
            logger.info(f"🔇 Speaker mute enabled for channels: {', '.join(map(str, config.trigger_channels))}")
        self.evaluate()

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "is_muted": self.is_muted,
            "trigger_channels": list(self.config.trigger_channels),
        }

    def handle_fader_update(self, update: FaderUpdate):
        self.fader_levels[update.channel] = update.value
        if update.channel in self.config.trigger_channels:
            self.evaluate()

    def _on_connection_change(self, connected: bool):
        if not connected:
            self.fader_levels.clear()

    def evaluate(self) -> bool:
        """Recompute the muted state; returns True if it changed."""
        if not self.config.enabled:
            should_mute = False
        else:
            should_mute = any(
                self.fader_levels.get(channel, 0.0) >= self.config.threshold
                for channel in self.config.trigger_channels
            )

        if should_mute == self.is_muted:
            return False

        self.is_muted = should_mute
        if should_mute:
            logger.info("🔇 Muting speakers - mic channels active")
        else:
            logger.info("🔊 Unmuting speakers - no mic channels active")
        self._send(should_mute)
        self._change_subject.notify(should_mute)
        return True

    def _send(self, mute: bool):
        if self.client is None:
            return
        command = self.config.osc_command(mute)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(f"❌ No event loop to send speaker command: {command['address']}")
            return
        task = loop.create_task(self.client.send_osc(command["address"], command["args"]))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)
        logger.info(f"🔇 Sent speaker {'mute' if mute else 'unmute'} command: {command['address']}")

    async def stop(self):
        self.detach()
        if self._sends:
            await asyncio.gather(*list(self._sends), return_exceptions=True)
        self._change_subject.clear()
