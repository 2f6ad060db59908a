#!/usr/bin/env python3
"""
Silence Detection Engine

Polls the most recent meter levels every 100 ms and raises an alarm when the
monitored signal stays at or below the silence threshold for the configured
duration. Polling runs on its own cadence, so the alarm still fires when the
meter stream itself goes quiet.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from observers import Subject, Unsubscribe
from telemetry_client import MeterFrame, MixerTelemetryClient

logger = logging.getLogger(__name__)

SILENT_DB = -90.0
MAIN_LEFT_INDEX = 36
MAIN_RIGHT_INDEX = 37
BUS_COUNT = 6
CHANNEL_COUNT = 16
MONITOR_TARGETS = ("main", "bus", "channels")


@dataclass
class SilenceDetectionConfig:
    enabled: bool = False
    threshold_db: float = -60.0  # at or below counts as silence
    duration_ms: int = 5000
    monitor: str = "main"  # "main", "bus" or "channels"
    bus_number: Optional[int] = None  # 1-6 when monitoring a bus
    channel_numbers: List[int] = field(default_factory=list)
    poll_interval_ms: int = 100

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SilenceDetectionConfig":
        defaults = cls()
        return cls(
            enabled=data.get("enabled", defaults.enabled),
            threshold_db=float(data.get("threshold_db", data.get("threshold", defaults.threshold_db))),
            duration_ms=int(data.get("duration_ms", data.get("duration", defaults.duration_ms))),
            monitor=data.get("monitor", data.get("monitorChannels", defaults.monitor)),
            bus_number=data.get("bus_number", data.get("busNumber")),
            channel_numbers=list(data.get("channel_numbers", data.get("channelNumbers", [])) or []),
            poll_interval_ms=int(data.get("poll_interval_ms", defaults.poll_interval_ms)),
        )


@dataclass
class AlarmState:
    active: bool = False
    silence_duration_ms: float = 0
    last_audio_timestamp: float = 0
    triggered_at: Optional[float] = None


def _now_ms() -> float:
    return time.time() * 1000


class SilenceDetector:
    """
    Sustained-silence alarm for a main mix, bus or channel set.

    ``on_config_saved`` is called with every applied config so the caller can
    persist it.
    """

    def __init__(
        self,
        config: Optional[SilenceDetectionConfig] = None,
        clock: Callable[[], float] = _now_ms,
        on_config_saved: Optional[Callable[[SilenceDetectionConfig], None]] = None,
    ):
        self.config = config or SilenceDetectionConfig()
        self.clock = clock
        self.on_config_saved = on_config_saved
        self.alarm_state = AlarmState(last_audio_timestamp=self.clock())

        self.main_levels: List[float] = [SILENT_DB, SILENT_DB]
        self.bus_levels: List[float] = [SILENT_DB] * BUS_COUNT
        self.channel_levels: List[float] = [SILENT_DB] * CHANNEL_COUNT

        self._alarm_subject: Subject[AlarmState] = Subject("silence-alarm")
        self._poll_task: Optional[asyncio.Task] = None
        self._unsubscribe_meters: Optional[Unsubscribe] = None

    @property
    def is_running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def attach(self, client: MixerTelemetryClient):
        self.detach()
        self._unsubscribe_meters = client.on_meters(self.handle_meter_frame)

    def detach(self):
        if self._unsubscribe_meters:
            self._unsubscribe_meters()
            self._unsubscribe_meters = None

    def on_alarm_change(self, callback: Callable[[AlarmState], Any]) -> Unsubscribe:
        """Subscribe to alarm changes; the current state is delivered immediately."""
        unsubscribe = self._alarm_subject.subscribe(callback)
        callback(self.get_alarm_state())
        return unsubscribe

    def get_alarm_state(self) -> AlarmState:
        return replace(self.alarm_state)

    def get_config(self) -> SilenceDetectionConfig:
        return replace(self.config, channel_numbers=list(self.config.channel_numbers))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        if self.is_running:
            return
        logger.info("🔇 Starting silence detection monitoring")
        self.alarm_state.last_audio_timestamp = self.clock()
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self):
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
            logger.info("🔇 Stopped silence detection monitoring")
        self._clear_alarm()

    async def apply_config(self, config: SilenceDetectionConfig):
        """Store a new config and restart monitoring with it."""
        self.config = config
        if self.on_config_saved:
            self.on_config_saved(config)
        await self.stop()
        if config.enabled:
            self.start()

    async def _poll_loop(self):
        interval = self.config.poll_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.check_silence()

    # ------------------------------------------------------------------
    # Levels
    # ------------------------------------------------------------------

    def handle_meter_frame(self, frame: MeterFrame):
        if frame.kind != "vu":
            return
        self.update_levels(frame.levels, frame.buses or None)

    def update_levels(self, channels: List[float], buses: Optional[List[float]] = None):
        """Buffer the latest meter levels; the poll loop reads them."""
        if not self.config.enabled:
            return
        if len(channels) > MAIN_RIGHT_INDEX:
            self.main_levels = [channels[MAIN_LEFT_INDEX], channels[MAIN_RIGHT_INDEX]]
        if len(channels) >= CHANNEL_COUNT:
            self.channel_levels = list(channels[:CHANNEL_COUNT])
        if buses:
            self.bus_levels = list(buses[:BUS_COUNT])

    def monitored_level(self) -> float:
        monitor = self.config.monitor
        if monitor == "main":
            return max(self.main_levels)
        if monitor == "bus":
            bus = self.config.bus_number
            if bus and 1 <= bus <= len(self.bus_levels):
                return self.bus_levels[bus - 1]
            return SILENT_DB
        if monitor == "channels":
            levels = [
                self.channel_levels[ch - 1]
                for ch in self.config.channel_numbers
                if 1 <= ch <= len(self.channel_levels)
            ]
            return max(levels) if levels else SILENT_DB
        return SILENT_DB

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def check_silence(self, now: Optional[float] = None):
        """One poll: compare the monitored level with the threshold."""
        if not self.config.enabled:
            return
        now = self.clock() if now is None else now
        state = self.alarm_state

        if self.monitored_level() > self.config.threshold_db:
            state.last_audio_timestamp = now
            state.silence_duration_ms = 0
            if state.active:
                state.active = False
                state.triggered_at = None
                logger.info("🔊 Audio detected, silence alarm cleared")
                self._notify()
            return

        state.silence_duration_ms = now - state.last_audio_timestamp
        if not state.active and state.silence_duration_ms >= self.config.duration_ms:
            state.active = True
            state.triggered_at = now
            logger.warning(f"🔇 SILENCE ALARM TRIGGERED! No audio for {state.silence_duration_ms:.0f} ms")
            self._notify()

    def acknowledge_alarm(self):
        """Clear the alarm now; it re-arms after another full silent duration."""
        if not self.alarm_state.active:
            return
        self.alarm_state.active = False
        self.alarm_state.triggered_at = None
        self.alarm_state.silence_duration_ms = 0
        self.alarm_state.last_audio_timestamp = self.clock()
        logger.info("🔕 Silence alarm acknowledged")
        self._notify()

    def _clear_alarm(self):
        if self.alarm_state.active:
            self.alarm_state.active = False
            self.alarm_state.triggered_at = None
            self._notify()

    def _notify(self):
        self._alarm_subject.notify(self.get_alarm_state())
