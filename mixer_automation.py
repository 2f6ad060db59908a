#!/usr/bin/env python3
"""
Mixer Automation Service

Wires the telemetry client to the automation components (fader triggers,
speaker mute, silence alarm, meters, scenes, channel names, LEDs) and runs
them on one event loop until interrupted.
"""

import argparse
import asyncio
import logging
import signal
from typing import Any, Dict, List, Optional, Set

from channel_naming import ChannelNameRegistry
from config_loader import (
    ConfigLoader,
    MixerAutomationConfig,
    create_example_config,
    validate_fader_mapping,
    validate_silence_config,
    validate_speaker_mute,
)
from fader_automation import FaderAutomationEngine, FaderMapping, TriggerEvent
from led_control import LedControlConfig, LedController
from radio_dispatcher import RadioCommandDispatcher, RadioSoftwareConfig
from scene_control import SceneController
from settings_store import FADER_MAPPINGS, LED_CONTROL, SILENCE_DETECTION, SPEAKER_MUTE, SettingsStore
from silence_detector import AlarmState, SilenceDetectionConfig, SilenceDetector
from speaker_mute import SpeakerMuteConfig, SpeakerMuteController
from telemetry_client import MeterFrame, MixerStatus, MixerTelemetryClient
from vu_meter_state import MeterBank

logger = logging.getLogger(__name__)


class MixerAutomationApp:
    """Owns every component and their start/stop order."""

    def __init__(self, config: MixerAutomationConfig, store: Optional[SettingsStore] = None):
        self.config = config
        self.store = store or SettingsStore(config.storage.settings_dir)
        max_channels = config.mixer.model.channel_count

        self.client = MixerTelemetryClient(config.bridge)
        self.client.model = config.mixer.model
        self.dispatcher = RadioCommandDispatcher(config.radio, self.client)
        self.engine = FaderAutomationEngine(self._load_fader_mappings(max_channels), self.dispatcher)
        self.speaker_mute = SpeakerMuteController(self._load_speaker_mute(max_channels), self.client)
        self.leds = LedController(LedControlConfig.from_dict(self.store.load(LED_CONTROL, default={}) or {}))
        self.silence = SilenceDetector(
            self._load_silence(max_channels),
            on_config_saved=lambda cfg: self.store.save(SILENCE_DETECTION, cfg.to_dict()),
        )
        self.meters = MeterBank(config.meters)
        self.scenes = SceneController(self.client, timeout=config.automation.scene_timeout)
        self.channel_names = ChannelNameRegistry(self.store, self.client)

        self._stop_event = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    # ------------------------------------------------------------------
    # Persisted settings
    # ------------------------------------------------------------------

    def _load_fader_mappings(self, max_channels: int) -> List[FaderMapping]:
        stored = self.store.load(FADER_MAPPINGS, default=None)
        if stored is None:
            return list(self.config.automation.fader_mappings)

        mappings = []
        for entry in stored:
            try:
                mappings.append(validate_fader_mapping(FaderMapping.from_dict(entry), max_channels))
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"❌ Skipping invalid stored fader mapping {entry!r}: {e}")
        return mappings

    def _load_speaker_mute(self, max_channels: int) -> SpeakerMuteConfig:
        stored = self.store.load(SPEAKER_MUTE, default=None)
        if stored is None:
            return self.config.speaker_mute
        try:
            return validate_speaker_mute(SpeakerMuteConfig.from_dict(stored), max_channels)
        except (TypeError, ValueError) as e:
            logger.error(f"❌ Invalid stored speaker mute settings, using config file: {e}")
            return self.config.speaker_mute

    def _load_silence(self, max_channels: int) -> SilenceDetectionConfig:
        stored = self.store.load(SILENCE_DETECTION, default=None)
        if stored is None:
            return self.config.silence
        try:
            return validate_silence_config(SilenceDetectionConfig.from_dict(stored), max_channels)
        except (TypeError, ValueError) as e:
            logger.error(f"❌ Invalid stored silence detection settings, using config file: {e}")
            return self.config.silence

    def save_fader_mappings(self, mappings: List[FaderMapping]):
        """Validate, persist and activate a new mapping set. Raises ValueError."""
        max_channels = self.client.max_channels
        for mapping in mappings:
            validate_fader_mapping(mapping, max_channels)
        self.store.save(FADER_MAPPINGS, [m.to_dict() for m in mappings])
        self.engine.set_mappings(mappings)

    def save_speaker_mute(self, config: SpeakerMuteConfig):
        validate_speaker_mute(config, self.client.max_channels)
        self.store.save(SPEAKER_MUTE, config.to_dict())
        self.speaker_mute.update_config(config)

    def save_led_config(self, config: LedControlConfig):
        self.store.save(LED_CONTROL, config.to_dict())
        self.leds.config = config

    async def save_silence_config(self, config: SilenceDetectionConfig):
        validate_silence_config(config, self.client.max_channels)
        await self.silence.apply_config(config)

    async def save_radio_config(self, config: RadioSoftwareConfig):
        await self.dispatcher.update_config(config)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        if self._running:
            return
        self._running = True
        logger.info("🚀 Starting mixer automation")

        await self.dispatcher.start()
        await self.leds.start()

        self.engine.attach(self.client)
        self.engine.on_trigger(self._on_trigger)
        self.speaker_mute.attach(self.client)
        self.leds.follow(self.speaker_mute)
        self.silence.attach(self.client)
        self.silence.on_alarm_change(self._on_alarm)
        self.client.on_meters(self.meters.handle_frame)
        if self.config.logging.show_meter_debug:
            self.client.on_meters(self._log_meter_frame)
        self.meters.start()
        self.scenes.start()
        self.channel_names.attach(self.client)
        self.client.on_status_change(self._on_connection_change)
        self.client.on_mixer_status(self._on_mixer_status)

        if self.silence.config.enabled:
            self.silence.start()

        mixer = self.config.mixer
        if mixer.address:
            await self.client.connect(mixer.address, mixer.model)
        else:
            logger.warning("⚠️ No mixer address configured (mixer.address); not connecting to the bridge")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        logger.info("🛑 Stopping mixer automation")

        self.engine.detach()
        await self.engine.wait_for_deliveries()
        await self.silence.stop()
        self.silence.detach()
        await self.meters.stop()
        await self.scenes.stop()
        await self.speaker_mute.stop()
        await self.channel_names.stop()
        await self.leds.stop()
        for task in list(self._tasks):
            task.cancel()
        await self.dispatcher.stop()
        await self.client.disconnect()
        logger.info("✅ Mixer automation stopped")

    def request_stop(self):
        self._stop_event.set()

    async def run_forever(self):
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Signal handlers are not available on every platform
                pass

        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()
            for sig in installed:
                loop.remove_signal_handler(sig)

    def status(self) -> Dict[str, Any]:
        return {
            "bridge_connected": self.client.is_connected,
            "mixer_validated": self.client.is_mixer_validated,
            "fader_mappings": len(self.engine.mappings),
            "speaker_mute": self.speaker_mute.get_status(),
            "silence_alarm": self.silence.get_alarm_state().active,
            "current_scene": self.scenes.current_scene_id,
        }

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_trigger(self, event: TriggerEvent):
        logger.info(f"🎯 Channel {event.channel} {event.reason}: {event.command}")

    def _on_alarm(self, state: AlarmState):
        if state.active:
            logger.warning(f"🚨 Silence alarm active ({state.silence_duration_ms:.0f} ms)")

    def _on_connection_change(self, connected: bool):
        if connected and self.config.mixer.validate_on_connect:
            task = asyncio.get_running_loop().create_task(self.client.validate_mixer())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _log_meter_frame(self, frame: MeterFrame):
        peak = max(frame.levels, default=None)
        logger.debug(f"📊 {frame.kind} meters: {len(frame.levels)} levels, peak {peak} dB")

    def _on_mixer_status(self, status: MixerStatus):
        if not status.validated:
            logger.warning(f"⚠️ Mixer not validated: {status.message}")


def setup_logging(level: str, fmt: Optional[str] = None):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=fmt or "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def main():
    parser = argparse.ArgumentParser(description="X-Air mixer automation service")
    parser.add_argument("--config", "-c", help="Config file path (default: search standard locations)")
    parser.add_argument("--preset", "-p", help="Preset to apply on top of the config")
    parser.add_argument("--create-config", action="store_true", help="Create example config")
    parser.add_argument("--log-level", help="Override logging.level from the config")
    args = parser.parse_args()

    if args.create_config:
        setup_logging(args.log_level or "INFO")
        create_example_config(args.config or "config.yaml")
        return

    missing_config = None
    try:
        config = ConfigLoader.load(args.config, args.preset)
    except FileNotFoundError as e:
        missing_config = e
        config = MixerAutomationConfig()
    except ValueError as e:
        setup_logging(args.log_level or "INFO")
        logger.error(f"❌ Configuration error: {e}")
        return

    setup_logging(args.log_level or config.logging.level, config.logging.format)
    if missing_config:
        logger.warning(f"⚠️ {missing_config}; running with defaults")
        logger.info("💡 Create one with: mixer-automation --create-config")

    app = MixerAutomationApp(config)
    await app.run_forever()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
