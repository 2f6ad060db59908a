#!/usr/bin/env python3
"""
Settings Store

Persists each settings blob (fader mappings, silence detection, speaker mute,
channel names, LED control) in its own JSON file so one corrupt blob cannot
take the others down. Files carry a schema version; older versions are
migrated on load and written back.
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

FADER_MAPPINGS = "fader-mappings"
SILENCE_DETECTION = "silence-detection"
SPEAKER_MUTE = "speaker-mute"
CHANNEL_NAMES = "channel-names"
LED_CONTROL = "led-control"

KEYS = (FADER_MAPPINGS, SILENCE_DETECTION, SPEAKER_MUTE, CHANNEL_NAMES, LED_CONTROL)

Migration = Callable[[Any], Any]


def _camel_to_snake(name: str) -> str:
    out = []
    for char in name:
        if char.isupper():
            out.append("_")
            out.append(char.lower())
        else:
            out.append(char)
    return "".join(out)


def _snake_keys(data: Any) -> Any:
    if isinstance(data, dict):
        return {_camel_to_snake(k): _snake_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_snake_keys(v) for v in data]
    return data


def _migrate_fader_mappings_v0(data: Any) -> Any:
    """
    v0 stored camelCase mappings without hysteresis margins.

    ``listenToMute`` meant: unmute plays ``command``, mute sends the fade-down
    command, and the fade-up is skipped while muted. A fade-down command
    without a threshold only ever fired on mute.
    """
    mappings = _snake_keys(data or [])
    for mapping in mappings:
        mapping.pop("trigger_type", None)
        mapping.setdefault("rising_margin", 2.0)
        mapping.setdefault("falling_margin", 5.0)

        fade_down_command = mapping.get("fade_down_command") or None
        if mapping.pop("listen_to_mute", False):
            mapping["suppress_while_muted"] = True
            mapping.setdefault("unmute_command", mapping.get("command") or None)
            mapping.setdefault("mute_command", fade_down_command)
        if not mapping.get("fade_down_threshold") or not fade_down_command:
            mapping.pop("fade_down_threshold", None)
            mapping.pop("fade_down_command", None)
    return mappings


def _migrate_speaker_mute_v0(data: Any) -> Any:
    data = _snake_keys(data or {})
    if data.get("mute_type") == "muteGroup":
        data["mute_type"] = "mute_group"
    return data


def _migrate_silence_v0(data: Any) -> Any:
    data = _snake_keys(data or {})
    renames = {"threshold": "threshold_db", "duration": "duration_ms", "monitor_channels": "monitor"}
    return {renames.get(k, k): v for k, v in data.items()}


# key -> (current version, {from_version: migration})
SCHEMAS: Dict[str, Tuple[int, Dict[int, Migration]]] = {
    FADER_MAPPINGS: (1, {0: _migrate_fader_mappings_v0}),
    SILENCE_DETECTION: (1, {0: _migrate_silence_v0}),
    SPEAKER_MUTE: (1, {0: _migrate_speaker_mute_v0}),
    CHANNEL_NAMES: (1, {0: _snake_keys}),
    LED_CONTROL: (1, {0: _snake_keys}),
}


class SettingsStore:
    """Keyed JSON blobs under one directory."""

    def __init__(self, settings_dir: str = "~/.mixer-automation/settings"):
        self.settings_dir = Path(os.path.expanduser(settings_dir))
        self.schemas: Dict[str, Tuple[int, Dict[int, Migration]]] = {
            key: (version, dict(migrations)) for key, (version, migrations) in SCHEMAS.items()
        }

    def path_for(self, key: str) -> Path:
        return self.settings_dir / f"{key}.json"

    def current_version(self, key: str) -> int:
        return self.schemas.get(key, (1, {}))[0]

    def register_migration(self, key: str, from_version: int, migration: Migration, to_version: Optional[int] = None):
        """Add a migration step; ``to_version`` bumps the current version for the key."""
        version, migrations = self.schemas.get(key, (1, {}))
        migrations[from_version] = migration
        self.schemas[key] = (max(version, to_version or from_version + 1), migrations)

    def load(self, key: str, default: Any = None) -> Any:
        """
        Load a blob, migrating it to the current schema if needed.

        Returns ``default`` if the file is missing, unreadable or a migration
        fails.
        """
        path = self.path_for(key)
        if not path.exists():
            return default

        try:
            with open(path, "r") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"❌ Corrupt settings file {path}, using defaults: {e}")
            return default

        if isinstance(raw, dict) and "schema_version" in raw and "data" in raw:
            version = int(raw["schema_version"])
            data = raw["data"]
        else:
            version = 0
            data = raw

        target, migrations = self.schemas.get(key, (1, {}))
        if version > target:
            logger.warning(f"⚠️ {key} has schema v{version}, newer than supported v{target}; loading as-is")
            return data

        migrated = version < target
        try:
            while version < target:
                step = migrations.get(version)
                if step is not None:
                    data = step(data)
                version += 1
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.error(f"❌ Failed to migrate {key} from v{version}, using defaults: {e}")
            return default

        if migrated:
            logger.info(f"📦 Migrated {key} to schema v{target}")
            self.save(key, data)
        return data

    def save(self, key: str, data: Any) -> bool:
        path = self.path_for(key)
        payload = {
            "schema_version": self.current_version(key),
            "saved_at": datetime.now().isoformat(),
            "data": data,
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            with open(tmp_path, "w") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, path)
            logger.debug(f"💾 Saved {key} to {path}")
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"❌ Failed to save {key}: {e}")
            return False

    def delete(self, key: str):
        path = self.path_for(key)
        if path.exists():
            path.unlink()
