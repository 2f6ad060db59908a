"""Tests for peak-hold meters."""

import asyncio

import pytest

from conftest import FakeClock
from telemetry_client import MeterFrame
from vu_meter_state import MeterBank, MeterConfig, PeakHoldMeter


class TestNormalization:
    """dB to display position."""

    def test_range_maps_onto_0_100(self):
        meter = PeakHoldMeter()
        assert meter.normalize(-60) == 0
        assert meter.normalize(0) == 100
        assert meter.normalize(-30) == pytest.approx(50)

    def test_values_outside_range_are_clamped(self):
        meter = PeakHoldMeter()
        assert meter.normalize(-90) == 0
        assert meter.normalize(6) == 100

    def test_invalid_range_rejected(self):
        with pytest.raises(ValueError):
            PeakHoldMeter(MeterConfig(min_db=0, max_db=-10))


class TestPeakHold:
    """Peak marker hold and decay driven by the watchdog tick."""

    def test_higher_sample_replaces_peak(self):
        clock = FakeClock(0)
        meter = PeakHoldMeter(clock=clock)
        meter.update(-20)
        meter.update(-30)
        assert meter.peak_db == -20
        meter.update(-10)
        assert meter.peak_db == -10
        assert meter.position == pytest.approx(meter.normalize(-10))

    def test_peak_hidden_after_hold_and_dropped_after_transition(self):
        clock = FakeClock(0)
        meter = PeakHoldMeter(clock=clock)
        meter.update(-6)

        clock.advance(1999)
        meter.tick()
        assert meter.showing_peak

        clock.advance(1)
        meter.tick()
        assert not meter.showing_peak
        assert meter.peak_db == -6

        clock.advance(199)
        meter.tick()
        assert meter.peak_db == -6

        clock.advance(1)
        meter.tick()
        assert meter.peak_db == MeterConfig().floor_db
        assert meter.peak_position == 0

    def test_reset_drops_everything(self):
        meter = PeakHoldMeter(clock=FakeClock(0))
        meter.update(-3)
        meter.reset()
        assert meter.peak_db == meter.config.floor_db
        assert meter.level_db == meter.config.floor_db


class TestMeterBank:
    """A bank of meters fed from telemetry frames."""

    def test_frame_feeds_each_index(self):
        bank = MeterBank(clock=FakeClock(0))
        bank.handle_frame(MeterFrame(kind="vu", levels=[-90, -30, -6], timestamp=0))
        snapshot = bank.snapshot()
        assert [s["index"] for s in snapshot] == [0, 1, 2]
        assert snapshot[1]["level"] == pytest.approx(50)
        assert snapshot[2]["showing_peak"]

    def test_dynamics_frames_ignored(self):
        bank = MeterBank(clock=FakeClock(0))
        bank.handle_frame(MeterFrame(kind="dynamics", levels=[-6], timestamp=0))
        assert bank.snapshot() == []

    @pytest.mark.asyncio
    async def test_timers_release_peak(self):
        config = MeterConfig(hold_ms=20, transition_ms=10, watchdog_ms=1000)
        meter = PeakHoldMeter(config)
        meter.update(-6)
        await asyncio.sleep(0.1)
        assert meter.peak_db == config.floor_db
        assert not meter.showing_peak

    @pytest.mark.asyncio
    async def test_stop_cancels_watchdog(self):
        bank = MeterBank(MeterConfig(watchdog_ms=10))
        bank.start()
        bank.handle_frame(MeterFrame(kind="vu", levels=[-6], timestamp=0))
        await bank.stop()
        assert bank.meter(0)._hold_handle is None
