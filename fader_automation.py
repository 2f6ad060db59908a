#!/usr/bin/env python3
"""
Fader Mapping / Automation Engine

Turns fader moves into one-shot radio automation commands.

Each enabled mapping runs its own two-state machine on its fader:
- IDLE: waiting. A value below ``threshold - rising_margin`` arms it; an
  armed mapping that reaches ``threshold`` fires the command and goes to
  TRIGGERED.
- TRIGGERED: command already fired. Only a value below
  ``threshold - falling_margin`` returns it to IDLE (no command on the way
  down).

A mapping may also carry a fade-down edge: the fader crossing
``fade_down_threshold`` downwards fires ``fade_down_command`` once (e.g. to
stop the player when the fader is pulled closed).

Mute flips fire their own commands, independent of the fader phase.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from observers import Subject, Unsubscribe
from telemetry_client import FaderUpdate, MixerTelemetryClient, MuteUpdate

logger = logging.getLogger(__name__)

DEFAULT_RISING_MARGIN = 2.0
DEFAULT_FALLING_MARGIN = 5.0


class TriggerPhase(Enum):
    IDLE = "idle"
    TRIGGERED = "triggered"


@dataclass
class FaderMapping:
    """User-authored link between a fader and an automation command."""
    channel: int
    threshold: float
    command: str
    rising_margin: float = DEFAULT_RISING_MARGIN
    falling_margin: float = DEFAULT_FALLING_MARGIN
    enabled: bool = True
    is_stereo: bool = False  # pairs channel with channel + 1
    mute_command: Optional[str] = None
    unmute_command: Optional[str] = None
    suppress_while_muted: bool = False
    fade_down_threshold: Optional[float] = None
    fade_down_command: Optional[str] = None
    description: str = ""
    id: str = field(default_factory=lambda: f"fader-{uuid.uuid4().hex[:12]}")

    @property
    def rearm_level(self) -> float:
        return self.threshold - self.rising_margin

    @property
    def release_level(self) -> float:
        return self.threshold - self.falling_margin

    @property
    def has_fade_down(self) -> bool:
        return self.fade_down_threshold is not None and bool(self.fade_down_command)

    def covers(self, channel: int) -> bool:
        """Channel belongs to this mapping (either side of a stereo pair)."""
        if self.is_stereo:
            return channel in (self.channel, self.channel + 1)
        return channel == self.channel

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FaderMapping":
        fade_down_threshold = data.get("fade_down_threshold")
        mapping = cls(
            channel=int(data["channel"]),
            threshold=float(data["threshold"]),
            command=data.get("command", ""),
            rising_margin=float(data.get("rising_margin", DEFAULT_RISING_MARGIN)),
            falling_margin=float(data.get("falling_margin", DEFAULT_FALLING_MARGIN)),
            enabled=data.get("enabled", True),
            is_stereo=data.get("is_stereo", False),
            mute_command=data.get("mute_command"),
            unmute_command=data.get("unmute_command"),
            suppress_while_muted=data.get("suppress_while_muted", False),
            fade_down_threshold=float(fade_down_threshold) if fade_down_threshold is not None else None,
            fade_down_command=data.get("fade_down_command"),
            description=data.get("description", ""),
        )
        if data.get("id"):
            mapping.id = data["id"]
        return mapping


@dataclass
class TriggerState:
    """Hysteresis state of one mapping on its fader."""
    mapping_id: str
    channel: int
    phase: TriggerPhase = TriggerPhase.IDLE
    last_value: Optional[float] = None
    armed: bool = False
    last_triggered_at: Optional[float] = None


@dataclass
class TriggerEvent:
    """A command the engine decided to fire."""
    channel: int
    command: str
    reason: str  # "fader_up", "fader_down", "mute" or "unmute"
    mapping_id: str
    timestamp: float = field(default_factory=time.time)


class FaderAutomationEngine:
    """
    Applies fader mappings to telemetry and hands commands to the dispatcher.

    The dispatcher only needs an async ``send_command(command)`` method.
    Deliveries run as fire-and-forget tasks; their outcome never feeds back
    into the trigger states.
    """

    def __init__(self, mappings: Optional[List[FaderMapping]] = None, dispatcher=None):
        self.dispatcher = dispatcher
        self.mappings: List[FaderMapping] = []
        self.states: Dict[str, TriggerState] = {}  # by mapping id
        self.mute_states: Dict[int, bool] = {}  # by channel
        self._trigger_subject: Subject[TriggerEvent] = Subject("fader-trigger")
        self._deliveries: Set[asyncio.Task] = set()
        self._unsubscribers: List[Unsubscribe] = []
        self.set_mappings(mappings or [])

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach(self, client: MixerTelemetryClient):
        """Subscribe to fader, mute and connection events of a telemetry client."""
        self.detach()
        self._unsubscribers = [
            client.on_fader_update(self.handle_fader_update),
            client.on_mute_update(self.handle_mute_update),
            client.on_status_change(self._on_connection_change),
        ]

    def detach(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def on_trigger(self, callback: Callable[[TriggerEvent], Any]) -> Unsubscribe:
        return self._trigger_subject.subscribe(callback)

    def set_mappings(self, mappings: List[FaderMapping]):
        """Replace the mapping set; all trigger states start over."""
        self.mappings = list(mappings)
        self.reset()
        active = sum(1 for m in self.mappings if m.enabled)
        logger.info(f"🎚️ Loaded {active} active fader mappings ({len(self.mappings)} total)")

    def reset(self):
        self.states.clear()
        self.mute_states.clear()

    def _on_connection_change(self, connected: bool):
        if not connected:
            logger.info("🎚️ Connection lost, resetting fader trigger states")
            self.reset()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_state(self, channel: int, mapping_id: Optional[str] = None) -> Optional[TriggerState]:
        """State of a mapping on ``channel`` (the first one unless ``mapping_id`` is given)."""
        for state in self.states.values():
            if state.channel == channel and (mapping_id is None or state.mapping_id == mapping_id):
                return state
        return None

    def mappings_for_fader(self, channel: int) -> List[FaderMapping]:
        # Stereo pairs follow the primary fader only
        return [m for m in self.mappings if m.enabled and m.channel == channel]

    def mappings_for_mute(self, channel: int) -> List[FaderMapping]:
        return [m for m in self.mappings if m.enabled and m.covers(channel)]

    def is_channel_mapped(self, channel: int) -> bool:
        return any(m.covers(channel) for m in self.mappings if m.enabled)

    def is_muted(self, mapping: FaderMapping) -> bool:
        channels = (mapping.channel, mapping.channel + 1) if mapping.is_stereo else (mapping.channel,)
        return any(self.mute_states.get(ch, False) for ch in channels)

    # ------------------------------------------------------------------
    # Telemetry handlers
    # ------------------------------------------------------------------

    def handle_fader_update(self, update: FaderUpdate):
        self.process_fader(update.channel, update.value)

    def handle_mute_update(self, update: MuteUpdate):
        self.process_mute(update.channel, update.muted)

    def process_fader(self, channel: int, value: float) -> List[TriggerEvent]:
        """Run one fader sample through the hysteresis machine of every mapping on it."""
        fired: List[TriggerEvent] = []
        for mapping in self.mappings_for_fader(channel):
            state = self.states.get(mapping.id)
            if state is None:
                state = TriggerState(mapping_id=mapping.id, channel=channel)
                self.states[mapping.id] = state
            fired.extend(self._step(mapping, state, value))
        return fired

    def _step(self, mapping: FaderMapping, state: TriggerState, value: float) -> List[TriggerEvent]:
        fired: List[TriggerEvent] = []
        channel = mapping.channel
        previous = state.last_value

        if state.phase is TriggerPhase.IDLE:
            if value < mapping.rearm_level:
                state.armed = True
            elif value >= mapping.threshold and state.armed:
                state.phase = TriggerPhase.TRIGGERED
                state.armed = False
                state.last_triggered_at = time.time()
                if mapping.suppress_while_muted and self.is_muted(mapping):
                    logger.info(f"⏸️ Fade UP ignored for channel {channel} (muted)")
                else:
                    logger.info(f"🎚️ Triggering fade UP mapping for channel {channel}: {mapping.command}")
                    fired.append(self._fire(channel, mapping.command, "fader_up", mapping))
        else:
            if value < mapping.release_level:
                state.phase = TriggerPhase.IDLE
                state.armed = value < mapping.rearm_level
                logger.debug(f"🎚️ Channel {channel} released at {value:.1f}%")

        if (mapping.has_fade_down and previous is not None
                and previous >= mapping.fade_down_threshold > value):
            logger.info(f"🎚️ Triggering fade DOWN mapping for channel {channel}: {mapping.fade_down_command}")
            fired.append(self._fire(channel, mapping.fade_down_command, "fader_down", mapping))

        state.last_value = value
        return fired

    def process_mute(self, channel: int, muted: bool) -> List[TriggerEvent]:
        """Fire mute/unmute commands on a mute flip."""
        mappings = self.mappings_for_mute(channel)
        if not mappings:
            return []

        previous = self.mute_states.get(channel)
        self.mute_states[channel] = muted
        # The first report only records the state
        if previous is None or previous == muted:
            return []

        fired: List[TriggerEvent] = []
        for mapping in mappings:
            command = mapping.mute_command if muted else mapping.unmute_command
            if command:
                fired.append(self._fire(channel, command, "mute" if muted else "unmute", mapping))
        return fired

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _fire(self, channel: int, command: str, reason: str, mapping: FaderMapping) -> TriggerEvent:
        event = TriggerEvent(channel=channel, command=command, reason=reason, mapping_id=mapping.id)
        self._trigger_subject.notify(event)
        if self.dispatcher is not None:
            self._deliver(event)
        return event

    def _deliver(self, event: TriggerEvent):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(f"❌ No event loop to deliver command: {event.command}")
            return
        task = loop.create_task(self.dispatcher.send_command(event.command))
        self._deliveries.add(task)
        task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task):
        self._deliveries.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"❌ Failed to execute radio command: {error}")
        elif not task.result():
            logger.warning(f"⚠️ Radio command not delivered: {task.result()}")

    async def wait_for_deliveries(self):
        """Wait for in-flight deliveries (used on shutdown)."""
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
