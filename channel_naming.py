#!/usr/bin/env python3
"""
Channel Naming

Local registry of channel names and colors, kept in step with the mixer:
names set here are pushed to the mixer, names reported by the mixer update
the registry (keeping any local color).
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Set

import websockets

from observers import Subject, Unsubscribe
from settings_store import CHANNEL_NAMES, SettingsStore
from telemetry_client import BridgeNotConnectedError, ChannelNameUpdate, MixerTelemetryClient

logger = logging.getLogger(__name__)

MAX_COLOR = 15


@dataclass
class ChannelName:
    channel: int
    name: str
    color: Optional[int] = None  # X-Air color index 0-15

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChannelName":
        color = data.get("color")
        return cls(channel=int(data["channel"]), name=str(data["name"]),
                   color=int(color) if color is not None else None)


def default_name(channel: int) -> str:
    return f"Ch {channel}"


class ChannelNameRegistry:
    def __init__(self, store: Optional[SettingsStore] = None, client: Optional[MixerTelemetryClient] = None):
        self.store = store
        self.client = client
        self.names: Dict[int, ChannelName] = {}
        self._change_subject: Subject[Dict[int, ChannelName]] = Subject("channel-names")
        self._unsubscribers: List[Unsubscribe] = []
        self._tasks: Set[asyncio.Task] = set()
        self.load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self):
        if self.store is None:
            return
        entries = self.store.load(CHANNEL_NAMES, default=[]) or []
        names = {}
        for entry in entries:
            try:
                item = ChannelName.from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"🏷️ Skipping invalid stored channel name {entry!r}: {e}")
                continue
            names[item.channel] = item
        self.names = names
        if names:
            logger.info(f"🏷️ Loaded {len(names)} channel names")

    def _save(self):
        if self.store is not None:
            self.store.save(CHANNEL_NAMES, self.export_channel_names())
        self._change_subject.notify(self.get_all())

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach(self, client: MixerTelemetryClient):
        self.detach()
        self.client = client
        self._unsubscribers = [
            client.on_channel_name_update(self.handle_update),
            client.on_status_change(self._on_connection_change),
        ]

    def detach(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def stop(self):
        self.detach()
        for task in list(self._tasks):
            task.cancel()
        self._change_subject.clear()

    def on_change(self, callback: Callable[[Dict[int, ChannelName]], Any]) -> Unsubscribe:
        return self._change_subject.subscribe(callback)

    def _on_connection_change(self, connected: bool):
        if connected and self.names:
            task = asyncio.get_running_loop().create_task(self.sync_all_to_mixer())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_channel_name(self, channel: int) -> str:
        entry = self.names.get(channel)
        return entry.name if entry else default_name(channel)

    def get_channel_color(self, channel: int) -> Optional[int]:
        entry = self.names.get(channel)
        return entry.color if entry else None

    def get_all(self) -> Dict[int, ChannelName]:
        return dict(self.names)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _check(self, channel: int, color: Optional[int] = None):
        max_channels = self.client.max_channels if self.client else 16
        if not 1 <= channel <= max_channels:
            raise ValueError(f"Channel {channel} outside 1..{max_channels}")
        if color is not None and not 0 <= color <= MAX_COLOR:
            raise ValueError(f"Color {color} outside 0..{MAX_COLOR}")

    async def set_channel_name(self, channel: int, name: str, color: Optional[int] = None):
        self._check(channel, color)
        self.names[channel] = ChannelName(channel=channel, name=name, color=color)
        self._save()
        await self._send_name(channel, name)
        if color is not None:
            await self._send_color(channel, color)
        logger.info(f"🏷️ Set channel {channel} name: {name!r}{f' with color {color}' if color is not None else ''}")

    async def clear_channel_name(self, channel: int):
        self._check(channel)
        self.names.pop(channel, None)
        self._save()
        await self._send_name(channel, default_name(channel))
        logger.info(f"🏷️ Cleared channel {channel} name")

    def clear_all(self):
        """Forget every local name. The mixer keeps what it has."""
        self.names.clear()
        self._save()
        logger.info("🏷️ Cleared all channel names")

    async def import_channel_names(self, entries: List[ChannelName]):
        for entry in entries:
            self._check(entry.channel, entry.color)
        for entry in entries:
            self.names[entry.channel] = entry
        self._save()
        await self.sync_all_to_mixer()
        logger.info(f"🏷️ Imported {len(entries)} channel names")

    def export_channel_names(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for _, entry in sorted(self.names.items())]

    def handle_update(self, update: ChannelNameUpdate):
        """Names reported by the mixer replace local names but keep colors."""
        for channel, name in update.names.items():
            existing = self.names.get(channel)
            self.names[channel] = ChannelName(channel=channel, name=name,
                                              color=existing.color if existing else None)
        self._save()
        if update.bulk:
            logger.info(f"🏷️ Received {len(update.names)} channel names from mixer")
        else:
            for channel, name in update.names.items():
                logger.info(f"🏷️ Received channel {channel} name from mixer: {name!r}")

    # ------------------------------------------------------------------
    # Mixer
    # ------------------------------------------------------------------

    async def sync_all_to_mixer(self):
        if not (self.client and self.client.is_connected):
            return
        for entry in list(self.names.values()):
            await self._send_name(entry.channel, entry.name)
            if entry.color is not None:
                await self._send_color(entry.channel, entry.color)
        logger.info(f"🏷️ Synced {len(self.names)} channel names to mixer")

    async def request_from_mixer(self) -> bool:
        if not (self.client and self.client.is_connected):
            logger.warning("🏷️ Cannot sync from mixer: bridge not connected")
            return False
        try:
            await self.client.send({"type": "get-channel-names", "oscCommand": "get-all-channel-names"})
            logger.info("🏷️ Requested channel names from mixer")
            return True
        except (BridgeNotConnectedError, websockets.ConnectionClosed) as e:
            logger.error(f"🏷️ Failed to request channel names from mixer: {e}")
            return False

    async def _send_name(self, channel: int, name: str):
        if not (self.client and self.client.is_connected):
            logger.warning("🏷️ Cannot send to mixer: bridge not connected")
            return
        address = f"/ch/{channel:02d}/config/name"
        try:
            await self.client.send({
                "type": "set-channel-name",
                "channel": channel,
                "name": name,
                "oscCommand": address,
                "value": name,
            })
        except (BridgeNotConnectedError, websockets.ConnectionClosed) as e:
            logger.error(f"🏷️ Failed to send channel name to mixer: {e}")

    async def _send_color(self, channel: int, color: int):
        if self.client:
            await self.client.send_osc(f"/ch/{channel:02d}/config/color", [{"type": "i", "value": color}])
