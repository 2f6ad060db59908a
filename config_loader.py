#!/usr/bin/env python3
"""
Configuration Loader for Mixer Automation
Loads YAML configuration and creates the component dataclass configurations.
"""

import logging
import os
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from fader_automation import DEFAULT_FALLING_MARGIN, DEFAULT_RISING_MARGIN, FaderMapping
from radio_dispatcher import RadioSoftwareConfig
from scene_control import DEFAULT_SCENE_TIMEOUT
from silence_detector import BUS_COUNT, MONITOR_TARGETS, SilenceDetectionConfig
from speaker_mute import MUTE_TYPES, SpeakerMuteConfig
from telemetry_client import MixerModel, TelemetryConfig
from vu_meter_state import MeterConfig

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class MixerConfig:
    """Which mixer the bridge should talk to."""
    address: str = ""  # "ip[:port]"; empty = do not connect
    model: MixerModel = MixerModel.X_AIR_18
    validate_on_connect: bool = True


@dataclass
class AutomationConfig:
    rising_margin: float = DEFAULT_RISING_MARGIN
    falling_margin: float = DEFAULT_FALLING_MARGIN
    scene_timeout: float = DEFAULT_SCENE_TIMEOUT
    fader_mappings: List[FaderMapping] = field(default_factory=list)  # seed when nothing is stored


@dataclass
class StorageConfig:
    settings_dir: str = "~/.mixer-automation/settings"


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    show_meter_debug: bool = False


@dataclass
class MixerAutomationConfig:
    """Complete mixer automation configuration."""
    bridge: TelemetryConfig = field(default_factory=TelemetryConfig)
    mixer: MixerConfig = field(default_factory=MixerConfig)
    radio: RadioSoftwareConfig = field(default_factory=RadioSoftwareConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    meters: MeterConfig = field(default_factory=MeterConfig)
    silence: SilenceDetectionConfig = field(default_factory=SilenceDetectionConfig)
    speaker_mute: SpeakerMuteConfig = field(default_factory=SpeakerMuteConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    _raw_config: Dict[str, Any] = field(default_factory=dict)


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def validate_fader_mapping(mapping: FaderMapping, max_channels: int) -> FaderMapping:
    """Raise ValueError unless the mapping is usable on a mixer with ``max_channels`` inputs."""
    if not 1 <= mapping.channel <= max_channels:
        raise ValueError(f"Fader mapping channel {mapping.channel} outside 1..{max_channels}")
    if mapping.is_stereo and mapping.channel + 1 > max_channels:
        raise ValueError(f"Stereo mapping on channel {mapping.channel} has no partner channel")
    if not 0 <= mapping.threshold <= 100:
        raise ValueError(f"Fader threshold {mapping.threshold} outside 0..100")
    validate_margins(mapping.rising_margin, mapping.falling_margin)
    if (mapping.fade_down_threshold is None) != (not mapping.fade_down_command):
        raise ValueError(
            f"Fader mapping on channel {mapping.channel} needs both fade_down_threshold and fade_down_command"
        )
    if mapping.fade_down_threshold is not None and not 0 <= mapping.fade_down_threshold <= 100:
        raise ValueError(f"Fade down threshold {mapping.fade_down_threshold} outside 0..100")
    if not (mapping.command or mapping.mute_command or mapping.unmute_command or mapping.fade_down_command):
        raise ValueError(f"Fader mapping on channel {mapping.channel} has no command")
    return mapping


def validate_margins(rising: float, falling: float):
    if rising < 0 or falling < 0:
        raise ValueError(f"Hysteresis margins must be non-negative (rising={rising}, falling={falling})")
    if falling <= rising:
        raise ValueError(f"Falling margin ({falling}) must be larger than rising margin ({rising})")


def validate_silence_config(config: SilenceDetectionConfig, max_channels: int) -> SilenceDetectionConfig:
    if config.threshold_db > 0:
        raise ValueError(f"Silence threshold must be <= 0 dB, got {config.threshold_db}")
    if config.duration_ms <= 0:
        raise ValueError(f"Silence duration must be positive, got {config.duration_ms}")
    if config.monitor not in MONITOR_TARGETS:
        raise ValueError(f"Silence monitor must be one of {MONITOR_TARGETS}, got {config.monitor!r}")
    if config.monitor == "bus" and not (config.bus_number and 1 <= config.bus_number <= BUS_COUNT):
        raise ValueError(f"Silence bus number must be 1..{BUS_COUNT}, got {config.bus_number}")
    for channel in config.channel_numbers:
        if not 1 <= channel <= max_channels:
            raise ValueError(f"Silence channel {channel} outside 1..{max_channels}")
    return config


def validate_speaker_mute(config: SpeakerMuteConfig, max_channels: int) -> SpeakerMuteConfig:
    if config.mute_type not in MUTE_TYPES:
        raise ValueError(f"Speaker mute type must be one of {MUTE_TYPES}, got {config.mute_type!r}")
    if not 1 <= config.bus_number <= BUS_COUNT:
        raise ValueError(f"Speaker mute bus must be 1..{BUS_COUNT}, got {config.bus_number}")
    if not 1 <= config.mute_group_number <= 4:
        raise ValueError(f"Mute group must be 1..4, got {config.mute_group_number}")
    if not 0 <= config.threshold <= 100:
        raise ValueError(f"Speaker mute threshold {config.threshold} outside 0..100")
    for channel in config.trigger_channels:
        if not 1 <= channel <= max_channels:
            raise ValueError(f"Speaker mute channel {channel} outside 1..{max_channels}")
    return config


def validate_scene_timeout(timeout: float) -> float:
    if timeout <= 0:
        raise ValueError(f"Scene timeout must be positive, got {timeout}")
    return timeout


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge two dictionaries, with override values taking precedence.

    Args:
        base: Base dictionary
        override: Override dictionary with values to merge in

    Returns:
        Merged dictionary
    """
    result = deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = deepcopy(value)

    return result


class ConfigLoader:
    """Loads and validates configuration from YAML files."""

    DEFAULT_CONFIG_PATHS = [
        "config.yaml",
        "config/config.yaml",
        os.path.expanduser("~/.mixer-automation/config.yaml"),
        "/etc/mixer-automation/config.yaml",
    ]

    PRESET_DIRS = [
        "presets",
        "config/presets",
        os.path.expanduser("~/.mixer-automation/presets"),
        "/etc/mixer-automation/presets",
    ]

    PRESET_ENV = "MIXER_AUTOMATION_PRESET"

    @classmethod
    def load(cls, config_path: Optional[str] = None, preset: Optional[str] = None) -> MixerAutomationConfig:
        """
        Load configuration from YAML file with optional preset overrides.

        Args:
            config_path: Path to config file. If None, searches default locations.
            preset: Name of preset to apply (without .yaml extension).
                   Can also be set via MIXER_AUTOMATION_PRESET environment variable.

        Returns:
            MixerAutomationConfig: Complete configuration object

        Raises:
            FileNotFoundError: If no config file is found
            ValueError: If configuration is invalid
        """
        if preset is None:
            preset = os.environ.get(cls.PRESET_ENV)

        if config_path:
            config_file = Path(config_path)
            if not config_file.exists():
                raise FileNotFoundError(f"Config file not found: {config_path}")
        else:
            config_file = cls._find_config_file()
            if not config_file:
                raise FileNotFoundError(
                    f"No config file found in default locations: {cls.DEFAULT_CONFIG_PATHS}"
                )

        try:
            with open(config_file, "r") as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file: {e}")

        if not isinstance(config_data, dict):
            raise ValueError(f"Config file {config_file} must contain a mapping at the top level")

        if preset:
            preset_data = cls._load_preset(preset)
            config_data = deep_merge(config_data, preset_data)
            logger.info(f"🎛️ Applied preset '{preset}'")

        logger.info(f"📄 Loaded configuration from {config_file}")
        return cls.from_dict(config_data)

    @classmethod
    def _find_config_file(cls) -> Optional[Path]:
        """Find the first available config file from default paths."""
        for path in cls.DEFAULT_CONFIG_PATHS:
            config_file = Path(path)
            if config_file.exists():
                return config_file
        return None

    @classmethod
    def _find_preset_file(cls, preset_name: str) -> Path:
        preset_filename = f"{preset_name}.yaml"

        for preset_dir in cls.PRESET_DIRS:
            preset_path = Path(preset_dir) / preset_filename
            if preset_path.exists():
                return preset_path

        raise FileNotFoundError(
            f"Preset '{preset_name}' not found in any preset directory: {cls.PRESET_DIRS}"
        )

    @classmethod
    def _load_preset(cls, preset_name: str) -> Dict[str, Any]:
        preset_file = cls._find_preset_file(preset_name)

        try:
            with open(preset_file, "r") as f:
                preset_data = yaml.safe_load(f) or {}
            return preset_data
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in preset file '{preset_file}': {e}")

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> MixerAutomationConfig:
        """Create and validate configuration objects from loaded YAML data."""
        bridge_data = config_data.get("bridge", {}) or {}
        mixer_data = config_data.get("mixer", {}) or {}
        radio_data = config_data.get("radio", {}) or {}
        automation_data = config_data.get("automation", {}) or {}
        meters_data = config_data.get("meters", {}) or {}
        silence_data = config_data.get("silence", {}) or {}
        speaker_data = config_data.get("speaker_mute", {}) or {}
        storage_data = config_data.get("storage", {}) or {}
        logging_data = config_data.get("logging", {}) or {}

        bridge_defaults = TelemetryConfig()
        bridge_config = TelemetryConfig(
            url=bridge_data.get("url", bridge_defaults.url),
            reconnect_interval=float(bridge_data.get("reconnect_interval", bridge_defaults.reconnect_interval)),
            connect_timeout=float(bridge_data.get("connect_timeout", bridge_defaults.connect_timeout)),
            ping_interval=bridge_data.get("ping_interval", bridge_defaults.ping_interval),
            subscribe_meters=bridge_data.get("subscribe_meters", bridge_defaults.subscribe_meters),
            subscribe_dynamics=bridge_data.get("subscribe_dynamics", bridge_defaults.subscribe_dynamics),
        )
        if bridge_config.reconnect_interval <= 0:
            raise ValueError(f"bridge.reconnect_interval must be positive, got {bridge_config.reconnect_interval}")

        mixer_config = MixerConfig(
            address=str(mixer_data.get("address", "")),
            model=MixerModel.from_name(str(mixer_data.get("model", MixerModel.X_AIR_18.value))),
            validate_on_connect=mixer_data.get("validate_on_connect", True),
        )
        max_channels = mixer_config.model.channel_count

        radio_defaults = RadioSoftwareConfig()
        radio_config = RadioSoftwareConfig(
            enabled=radio_data.get("enabled", radio_defaults.enabled),
            type=radio_data.get("type", radio_defaults.type),
            host=radio_data.get("host", radio_defaults.host),
            port=int(radio_data.get("port", radio_defaults.port)),
            username=radio_data.get("username", radio_defaults.username) or "",
            password=radio_data.get("password", radio_defaults.password) or "",
            prefer_bridge=radio_data.get("prefer_bridge", radio_defaults.prefer_bridge),
            timeout=float(radio_data.get("timeout", radio_defaults.timeout)),
        )

        rising = float(automation_data.get("rising_margin", DEFAULT_RISING_MARGIN))
        falling = float(automation_data.get("falling_margin", DEFAULT_FALLING_MARGIN))
        validate_margins(rising, falling)
        mappings = []
        for entry in automation_data.get("fader_mappings", []) or []:
            entry = dict(entry)
            entry.setdefault("rising_margin", rising)
            entry.setdefault("falling_margin", falling)
            try:
                mapping = FaderMapping.from_dict(entry)
            except (KeyError, TypeError) as e:
                raise ValueError(f"Invalid fader mapping {entry!r}: {e}")
            mappings.append(validate_fader_mapping(mapping, max_channels))
        automation_config = AutomationConfig(
            rising_margin=rising,
            falling_margin=falling,
            scene_timeout=validate_scene_timeout(float(automation_data.get("scene_timeout", DEFAULT_SCENE_TIMEOUT))),
            fader_mappings=mappings,
        )

        meter_defaults = MeterConfig()
        meter_config = MeterConfig(
            min_db=float(meters_data.get("min_db", meter_defaults.min_db)),
            max_db=float(meters_data.get("max_db", meter_defaults.max_db)),
            floor_db=float(meters_data.get("floor_db", meter_defaults.floor_db)),
            hold_ms=float(meters_data.get("hold_ms", meter_defaults.hold_ms)),
            transition_ms=float(meters_data.get("transition_ms", meter_defaults.transition_ms)),
            watchdog_ms=float(meters_data.get("watchdog_ms", meter_defaults.watchdog_ms)),
        )
        if meter_config.max_db <= meter_config.min_db:
            raise ValueError("meters.max_db must be above meters.min_db")

        silence_config = validate_silence_config(SilenceDetectionConfig.from_dict(silence_data), max_channels)
        speaker_config = validate_speaker_mute(SpeakerMuteConfig.from_dict(speaker_data), max_channels)

        storage_config = StorageConfig(
            settings_dir=storage_data.get("settings_dir", StorageConfig().settings_dir),
        )

        logging_defaults = LoggingConfig()
        logging_config = LoggingConfig(
            level=str(logging_data.get("level", logging_defaults.level)).upper(),
            format=logging_data.get("format", logging_defaults.format),
            show_meter_debug=logging_data.get("show_meter_debug", logging_defaults.show_meter_debug),
        )
        if logging_config.level not in LOG_LEVELS:
            raise ValueError(f"logging.level must be one of {LOG_LEVELS}, got {logging_config.level}")

        return MixerAutomationConfig(
            bridge=bridge_config,
            mixer=mixer_config,
            radio=radio_config,
            automation=automation_config,
            meters=meter_config,
            silence=silence_config,
            speaker_mute=speaker_config,
            storage=storage_config,
            logging=logging_config,
            _raw_config=config_data,
        )

    @classmethod
    def create_example_config(cls, output_path: str = "config.yaml"):
        """Create an example configuration file."""
        example_config = {
            "bridge": {
                "url": "ws://localhost:8080",
                "reconnect_interval": 3.0,
            },
            "mixer": {
                "address": "192.168.1.10",
                "model": "X-Air 18",
            },
            "radio": {
                "enabled": True,
                "type": "mairlist",
                "host": "localhost",
                "port": 9300,
                "username": "admin",
                "password": "your_mairlist_password_here",
            },
            "automation": {
                "rising_margin": 2.0,
                "falling_margin": 5.0,
                "fader_mappings": [
                    {"channel": 1, "threshold": 50, "command": "PLAYER 1 PLAY",
                     "fade_down_threshold": 10, "fade_down_command": "PLAYER 1 STOP",
                     "description": "Start player 1 when the jingle fader opens, stop it when closed"},
                ],
            },
            "silence": {
                "enabled": False,
                "threshold_db": -60,
                "duration_ms": 5000,
                "monitor": "main",
            },
            "speaker_mute": {
                "enabled": False,
                "trigger_channels": [1, 2],
                "mute_type": "bus",
                "bus_number": 1,
                "threshold": 10,
            },
            "storage": {
                "settings_dir": "~/.mixer-automation/settings",
            },
            "logging": {
                "level": "INFO",
            },
        }

        with open(output_path, "w") as f:
            yaml.dump(example_config, f, default_flow_style=False, indent=2, sort_keys=False)

        logger.info(f"✅ Example config created: {output_path}")


# Convenience functions
def load_config(config_path: Optional[str] = None, preset: Optional[str] = None) -> MixerAutomationConfig:
    """Load configuration from YAML file with optional preset overrides."""
    return ConfigLoader.load(config_path, preset)


def create_example_config(output_path: str = "config.yaml"):
    """Create an example configuration file."""
    ConfigLoader.create_example_config(output_path)


if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "create-example":
        output_path = sys.argv[2] if len(sys.argv) > 2 else "config.yaml"
        create_example_config(output_path)
        print(f"✅ Example config created: {output_path}")
    else:
        try:
            config = load_config()
            print("✅ Configuration loaded successfully!")
            print(f"   - Bridge: {config.bridge.url}")
            print(f"   - Mixer: {config.mixer.model.value} at {config.mixer.address or '(not set)'}")
            print(f"   - Radio: {config.radio.type} {'enabled' if config.radio.enabled else 'disabled'}")
            print(f"   - Fader mappings: {len(config.automation.fader_mappings)}")
        except Exception as e:
            print(f"❌ Error loading config: {e}")
            print("\n💡 To create an example config file, run:")
            print("   python config_loader.py create-example")
