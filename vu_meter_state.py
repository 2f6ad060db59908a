#!/usr/bin/env python3
"""
VU meter peak-hold state.

Each PeakHoldMeter turns raw dB samples into a 0-100 display position and
keeps a peak marker that is held for a while and then dropped back to the
floor. A watchdog tick forces the drop if no timer fired (e.g. the telemetry
stream stalled or the timers were never scheduled).
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from telemetry_client import MeterFrame

logger = logging.getLogger(__name__)


@dataclass
class MeterConfig:
    """Display range and peak timing for a meter."""
    min_db: float = -60.0
    max_db: float = 0.0
    floor_db: float = -90.0
    hold_ms: float = 2000.0
    transition_ms: float = 200.0
    watchdog_ms: float = 100.0


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class PeakHoldMeter:
    """
    Peak-hold state for a single meter.

    States of the peak marker:
    - FLOOR: no peak held
    - HOLDING: peak visible, hold timer running
    - RELEASING: hold expired, peak drops to floor after transition_ms
    """

    def __init__(self, config: Optional[MeterConfig] = None, clock: Callable[[], float] = _monotonic_ms):
        self.config = config or MeterConfig()
        if self.config.max_db <= self.config.min_db:
            raise ValueError("max_db must be greater than min_db")
        self.clock = clock

        self.level_db = self.config.floor_db
        self.peak_db = self.config.floor_db
        self.showing_peak = False
        self.peak_updated_at: Optional[float] = None

        self._hold_handle: Optional[asyncio.TimerHandle] = None
        self._release_handle: Optional[asyncio.TimerHandle] = None

    def normalize(self, db: float) -> float:
        """Clamped linear map of [min_db, max_db] onto [0, 100]."""
        span = self.config.max_db - self.config.min_db
        return max(0.0, min(100.0, (db - self.config.min_db) / span * 100.0))

    @property
    def position(self) -> float:
        return self.normalize(self.level_db)

    @property
    def peak_position(self) -> float:
        return self.normalize(self.peak_db)

    def update(self, level_db: float):
        """Feed a new sample. A sample above the held peak replaces it."""
        self.level_db = level_db
        if self.normalize(level_db) > self.normalize(self.peak_db):
            self.peak_db = level_db
            self.showing_peak = True
            self.peak_updated_at = self.clock()
            self._schedule_hold()

    def tick(self):
        """Watchdog check: decay the peak from elapsed time alone."""
        if self.peak_updated_at is None:
            return
        elapsed = self.clock() - self.peak_updated_at
        if self.showing_peak and elapsed >= self.config.hold_ms:
            self.showing_peak = False
        if elapsed >= self.config.hold_ms + self.config.transition_ms:
            self._drop_to_floor()

    def reset(self):
        self.cancel_timers()
        self.level_db = self.config.floor_db
        self._drop_to_floor()

    def cancel_timers(self):
        for handle in (self._hold_handle, self._release_handle):
            if handle:
                handle.cancel()
        self._hold_handle = None
        self._release_handle = None

    def _schedule_hold(self):
        self.cancel_timers()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop: the watchdog tick handles decay
        self._hold_handle = loop.call_later(self.config.hold_ms / 1000, self._on_hold_expired)

    def _on_hold_expired(self):
        self._hold_handle = None
        self.showing_peak = False
        loop = asyncio.get_running_loop()
        self._release_handle = loop.call_later(self.config.transition_ms / 1000, self._on_release)

    def _on_release(self):
        self._release_handle = None
        self._drop_to_floor()

    def _drop_to_floor(self):
        self.showing_peak = False
        self.peak_db = self.config.floor_db
        self.peak_updated_at = None


class MeterBank:
    """One PeakHoldMeter per meter index, fed from vu_meters frames."""

    def __init__(self, config: Optional[MeterConfig] = None, clock: Callable[[], float] = _monotonic_ms):
        self.config = config or MeterConfig()
        self.clock = clock
        self.meters: Dict[int, PeakHoldMeter] = {}
        self._watchdog_task: Optional[asyncio.Task] = None

    def meter(self, index: int) -> PeakHoldMeter:
        meter = self.meters.get(index)
        if meter is None:
            meter = PeakHoldMeter(self.config, self.clock)
            self.meters[index] = meter
        return meter

    def handle_frame(self, frame: MeterFrame):
        if frame.kind != "vu":
            return
        for index, level in enumerate(frame.levels):
            self.meter(index).update(level)

    def snapshot(self) -> List[Dict[str, float]]:
        return [
            {
                "index": index,
                "level": meter.position,
                "peak": meter.peak_position,
                "showing_peak": meter.showing_peak,
            }
            for index, meter in sorted(self.meters.items())
        ]

    def tick(self):
        for meter in self.meters.values():
            meter.tick()

    def start(self):
        if self._watchdog_task is None or self._watchdog_task.done():
            self._watchdog_task = asyncio.create_task(self._watchdog_loop())

    async def stop(self):
        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None
        for meter in self.meters.values():
            meter.cancel_timers()

    async def _watchdog_loop(self):
        interval = self.config.watchdog_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.tick()
