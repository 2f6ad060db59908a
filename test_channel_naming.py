"""Tests for the channel name registry."""

import pytest

from channel_naming import ChannelName, ChannelNameRegistry
from conftest import wait_until
from settings_store import SettingsStore
from telemetry_client import ChannelNameUpdate


@pytest.fixture
def store(tmp_path):
    return SettingsStore(str(tmp_path))


class TestRegistry:
    """Local names, persistence and mixer reports."""

    def test_default_name(self, store):
        registry = ChannelNameRegistry(store)
        assert registry.get_channel_name(4) == "Ch 4"
        assert registry.get_channel_color(4) is None

    @pytest.mark.asyncio
    async def test_set_persists_and_notifies(self, store):
        registry = ChannelNameRegistry(store)
        seen = []
        registry.on_change(seen.append)
        await registry.set_channel_name(2, "Host", color=3)

        assert registry.get_channel_name(2) == "Host"
        assert seen[-1][2].color == 3
        assert ChannelNameRegistry(store).get_channel_name(2) == "Host"

    @pytest.mark.asyncio
    async def test_invalid_color_rejected(self, store):
        registry = ChannelNameRegistry(store)
        with pytest.raises(ValueError):
            await registry.set_channel_name(1, "Mic", color=16)
        with pytest.raises(ValueError):
            await registry.set_channel_name(17, "Mic")

    def test_mixer_report_keeps_local_color(self, store):
        registry = ChannelNameRegistry(store)
        registry.names[1] = ChannelName(channel=1, name="Old", color=5)
        registry.handle_update(ChannelNameUpdate(names={1: "Guest", 2: "Phone"}, bulk=True))
        assert registry.get_channel_name(1) == "Guest"
        assert registry.get_channel_color(1) == 5
        assert registry.get_channel_color(2) is None

    def test_export(self, store):
        registry = ChannelNameRegistry(store)
        registry.names[3] = ChannelName(channel=3, name="C")
        registry.names[1] = ChannelName(channel=1, name="A", color=2)
        assert registry.export_channel_names() == [
            {"channel": 1, "name": "A", "color": 2},
            {"channel": 3, "name": "C", "color": None},
        ]


class TestMixerSync:
    """Names travel to and from the mixer through the bridge."""

    @pytest.mark.asyncio
    async def test_set_sends_name_and_color(self, connected_client, bridge, store):
        registry = ChannelNameRegistry(store, connected_client)
        await registry.set_channel_name(5, "Guitar", color=4)

        named = await bridge.wait_for("set-channel-name")
        assert named[0]["name"] == "Guitar"
        assert named[0]["oscCommand"] == "/ch/05/config/name"
        osc = await bridge.wait_for("osc")
        assert osc[0]["address"] == "/ch/05/config/color"
        assert osc[0]["args"] == [{"type": "i", "value": 4}]

    @pytest.mark.asyncio
    async def test_clear_resets_mixer_name(self, connected_client, bridge, store):
        registry = ChannelNameRegistry(store, connected_client)
        await registry.set_channel_name(5, "Guitar")
        await registry.clear_channel_name(5)
        named = await bridge.wait_for("set-channel-name", count=2)
        assert named[-1]["name"] == "Ch 5"
        assert registry.get_channel_name(5) == "Ch 5"

    @pytest.mark.asyncio
    async def test_sync_on_connect_and_bridge_reports(self, client, bridge, store):
        store.save("channel-names", [
            {"channel": 1, "name": "Host", "color": None},
            {"channel": 2, "name": "Guest", "color": 6},
        ])
        registry = ChannelNameRegistry(store)
        registry.attach(client)
        await client.connect("192.168.1.10")

        named = await bridge.wait_for("set-channel-name", count=2)
        assert [m["name"] for m in named] == ["Host", "Guest"]
        colors = await bridge.wait_for("osc")
        assert [(m["address"], m["args"]) for m in colors] == [("/ch/02/config/color", [{"type": "i", "value": 6}])]

        await bridge.broadcast({"type": "channel-name", "channel": 1, "name": "Presenter"})
        await wait_until(lambda: registry.get_channel_name(1) == "Presenter")

        assert await registry.request_from_mixer()
        await bridge.wait_for("get-channel-names")
        await registry.stop()
