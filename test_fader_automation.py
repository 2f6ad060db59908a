"""Tests for the fader hysteresis state machine and mute edges."""

import asyncio

import pytest

from conftest import wait_until
from fader_automation import FaderAutomationEngine, FaderMapping, TriggerPhase


class RecordingDispatcher:
    def __init__(self):
        self.commands = []

    async def send_command(self, command):
        self.commands.append(command)
        return True


def fire_sequence(engine, channel, values):
    fired = []
    for value in values:
        fired.extend(event.command for event in engine.process_fader(channel, value))
    return fired


class TestHysteresis:
    """Rising and falling thresholds around the trigger level."""

    def make_engine(self, **overrides):
        params = dict(channel=3, threshold=50, command="PLAYER 1 PLAY")
        params.update(overrides)
        return FaderAutomationEngine([FaderMapping(**params)])

    def test_documented_scenario_fires_twice(self):
        engine = self.make_engine(rising_margin=2, falling_margin=5)
        events = []
        for value in [0, 40, 49, 51, 60, 47, 44, 52]:
            events.append(len(engine.process_fader(3, value)))
        assert events == [0, 0, 0, 1, 0, 0, 0, 1]

    def test_first_sample_above_threshold_does_not_fire(self):
        engine = self.make_engine()
        assert fire_sequence(engine, 3, [80, 90]) == []
        assert engine.get_state(3).phase is TriggerPhase.IDLE

    def test_dead_zone_does_not_rearm(self):
        engine = self.make_engine()
        assert fire_sequence(engine, 3, [0, 55]) == ["PLAYER 1 PLAY"]
        # 46 stays above the release level of 45
        assert fire_sequence(engine, 3, [46, 49, 52]) == []
        assert engine.get_state(3).phase is TriggerPhase.TRIGGERED

    def test_release_below_rearm_level_allows_refire(self):
        engine = self.make_engine()
        fire_sequence(engine, 3, [0, 55])
        # 44 releases (< 45) and also re-arms (< 48)
        assert fire_sequence(engine, 3, [44, 50]) == ["PLAYER 1 PLAY"]

    def test_oscillation_around_threshold_fires_once(self):
        engine = self.make_engine()
        values = [0] + [49.5, 50.5] * 20
        assert fire_sequence(engine, 3, values) == ["PLAYER 1 PLAY"]

    def test_exact_threshold_fires(self):
        engine = self.make_engine()
        assert fire_sequence(engine, 3, [10, 50]) == ["PLAYER 1 PLAY"]

    def test_unmapped_and_disabled_channels_are_ignored(self):
        engine = self.make_engine(enabled=False)
        assert fire_sequence(engine, 3, [0, 100]) == []
        assert fire_sequence(engine, 4, [0, 100]) == []
        assert engine.get_state(4) is None

    def test_stereo_pair_follows_primary_fader_only(self):
        engine = self.make_engine(is_stereo=True)
        assert engine.is_channel_mapped(4)
        assert fire_sequence(engine, 4, [0, 100]) == []
        assert fire_sequence(engine, 3, [0, 100]) == ["PLAYER 1 PLAY"]

    def test_set_mappings_resets_state(self):
        engine = self.make_engine()
        fire_sequence(engine, 3, [0, 60])
        engine.set_mappings([FaderMapping(channel=3, threshold=50, command="PLAYER 2 PLAY")])
        assert engine.get_state(3) is None
        assert fire_sequence(engine, 3, [60]) == []

    def test_suppressed_while_muted(self):
        engine = self.make_engine(suppress_while_muted=True)
        engine.process_mute(3, True)
        assert fire_sequence(engine, 3, [0, 60]) == []
        assert engine.get_state(3).phase is TriggerPhase.TRIGGERED

    def test_mappings_on_one_channel_use_their_own_thresholds(self):
        low = FaderMapping(channel=3, threshold=30, command="LOW")
        high = FaderMapping(channel=3, threshold=80, command="HIGH")
        engine = FaderAutomationEngine([low, high])
        assert fire_sequence(engine, 3, [0, 35]) == ["LOW"]
        assert fire_sequence(engine, 3, [85]) == ["HIGH"]
        assert engine.get_state(3, low.id).phase is TriggerPhase.TRIGGERED
        # 70 releases HIGH (< 75) but stays above LOW's release level
        assert fire_sequence(engine, 3, [70, 60, 90]) == ["HIGH"]


class TestFadeDown:
    """The fade-down edge fires once when the fader closes past its level."""

    def make_engine(self):
        return FaderAutomationEngine([FaderMapping(
            channel=1, threshold=50, command="PLAYER 1 PLAY",
            fade_down_threshold=10, fade_down_command="PLAYER 1 STOP",
        )])

    def test_open_then_close(self):
        engine = self.make_engine()
        assert fire_sequence(engine, 1, [0, 60, 30, 5, 0]) == ["PLAYER 1 PLAY", "PLAYER 1 STOP"]

    def test_first_sample_below_level_does_not_fire(self):
        engine = self.make_engine()
        assert fire_sequence(engine, 1, [5, 0]) == []

    def test_small_moves_do_not_refire(self):
        engine = self.make_engine()
        assert fire_sequence(engine, 1, [20, 9, 8, 9.5]) == ["PLAYER 1 STOP"]
        assert fire_sequence(engine, 1, [12, 9]) == ["PLAYER 1 STOP"]

    def test_reason(self):
        engine = self.make_engine()
        engine.process_fader(1, 20)
        assert [e.reason for e in engine.process_fader(1, 0)] == ["fader_down"]


class TestMuteEdges:
    """Mute and unmute commands fire on flips only."""

    def make_engine(self, **overrides):
        params = dict(channel=1, threshold=50, command="PLAYER 1 PLAY",
                      mute_command="PLAYER 1 STOP", unmute_command="PLAYER 1 PLAY")
        params.update(overrides)
        return FaderAutomationEngine([FaderMapping(**params)])

    def test_first_report_only_records_state(self):
        engine = self.make_engine()
        assert engine.process_mute(1, False) == []
        assert engine.mute_states[1] is False

    def test_mute_flip_fires_commands(self):
        engine = self.make_engine()
        engine.process_mute(1, False)
        assert [e.command for e in engine.process_mute(1, True)] == ["PLAYER 1 STOP"]
        assert engine.process_mute(1, True) == []
        assert [e.reason for e in engine.process_mute(1, False)] == ["unmute"]

    def test_stereo_partner_mute_fires(self):
        engine = self.make_engine(channel=5, is_stereo=True)
        engine.process_mute(6, False)
        assert [e.command for e in engine.process_mute(6, True)] == ["PLAYER 1 STOP"]

    def test_unmapped_channel_keeps_no_state(self):
        engine = self.make_engine()
        assert engine.process_mute(9, True) == []
        assert engine.process_mute(9, False) == []
        assert 9 not in engine.mute_states

    @pytest.mark.asyncio
    async def test_reconnect_does_not_replay_unmute(self, connected_client, bridge):
        dispatcher = RecordingDispatcher()
        engine = FaderAutomationEngine(
            [FaderMapping(channel=2, threshold=50, command="PLAYER 2 PLAY", unmute_command="PLAYER 2 PLAY")],
            dispatcher,
        )
        engine.attach(connected_client)
        unmuted = {"type": "osc", "address": "/ch/02/mix/on", "args": [1]}

        await bridge.broadcast(unmuted)
        await wait_until(lambda: 2 in engine.mute_states)

        await bridge.drop_connections()
        await bridge.wait_for("subscribe_dynamics", count=2, timeout=5.0)
        await bridge.broadcast(unmuted)
        await wait_until(lambda: 2 in engine.mute_states)
        await engine.wait_for_deliveries()
        assert dispatcher.commands == []
        engine.detach()


class TestDelivery:
    """Triggers are handed to the dispatcher without blocking."""

    @pytest.mark.asyncio
    async def test_commands_reach_dispatcher(self):
        dispatcher = RecordingDispatcher()
        engine = FaderAutomationEngine(
            [FaderMapping(channel=3, threshold=50, command="PLAYER 1 PLAY")], dispatcher
        )
        seen = []
        engine.on_trigger(seen.append)
        fire_sequence(engine, 3, [0, 40, 49, 51, 60, 47, 44, 52])
        await engine.wait_for_deliveries()
        assert dispatcher.commands == ["PLAYER 1 PLAY", "PLAYER 1 PLAY"]
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_failing_dispatcher_does_not_break_engine(self):
        class Broken:
            async def send_command(self, command):
                raise RuntimeError("boom")

        engine = FaderAutomationEngine([FaderMapping(channel=1, threshold=50, command="GO")], Broken())
        fire_sequence(engine, 1, [0, 60])
        await engine.wait_for_deliveries()
        await asyncio.sleep(0)
        assert engine.get_state(1).phase is TriggerPhase.TRIGGERED

    @pytest.mark.asyncio
    async def test_fader_updates_from_bridge_trigger(self, connected_client, bridge):
        dispatcher = RecordingDispatcher()
        engine = FaderAutomationEngine([FaderMapping(channel=2, threshold=50, command="GO")], dispatcher)
        engine.attach(connected_client)

        for value in (0.1, 0.7):
            await bridge.broadcast({"type": "osc", "address": "/ch/02/mix/fader", "args": [value]})
        await wait_until(lambda: dispatcher.commands == ["GO"])
