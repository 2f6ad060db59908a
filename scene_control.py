#!/usr/bin/env python3
"""
Scene Control Protocol

Loads and saves mixer scenes over the shared bridge WebSocket. A load or save
completes only when the bridge confirms the same scene id; other traffic on
the socket is ignored for that purpose. The scene list and current scene are
cached and replayed to new subscribers.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Set

import websockets

from correlation import PendingRequests
from observers import Subject, Unsubscribe
from telemetry_client import BridgeNotConnectedError, MixerTelemetryClient

logger = logging.getLogger(__name__)

MIN_SCENE_ID = 0
MAX_SCENE_ID = 63
DEFAULT_SCENE_TIMEOUT = 5.0


@dataclass
class Scene:
    id: int
    name: str
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Scene":
        return cls(
            id=int(data["id"]),
            name=str(data.get("name", "")),
            description=data.get("description"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def validate_scene_id(scene_id: int) -> int:
    if not isinstance(scene_id, int) or isinstance(scene_id, bool):
        raise ValueError(f"Scene id must be an integer, got {scene_id!r}")
    if not MIN_SCENE_ID <= scene_id <= MAX_SCENE_ID:
        raise ValueError(f"Scene id {scene_id} outside {MIN_SCENE_ID}..{MAX_SCENE_ID}")
    return scene_id


class SceneController:
    """Scene load/save requests and the client-side scene cache."""

    def __init__(self, client: MixerTelemetryClient, timeout: float = DEFAULT_SCENE_TIMEOUT):
        self.client = client
        self.timeout = timeout
        self.scenes: List[Scene] = []
        self.current_scene_id: Optional[int] = None

        self._pending = PendingRequests("scenes")
        self._scenes_subject: Subject[List[Scene]] = Subject("scene-list", replay_last=True)
        self._current_subject: Subject[int] = Subject("current-scene", replay_last=True)
        self._scenes_subject.remember([])
        self._unsubscribers: List[Unsubscribe] = []
        self._refresh_tasks: Set[asyncio.Task] = set()

    def start(self):
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self.client.on_message(self.handle_message),
            self.client.on_status_change(self._on_connection_change),
        ]

    async def stop(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        for task in list(self._refresh_tasks):
            task.cancel()
        self._pending.reject_all(BridgeNotConnectedError("Scene controller stopped"))
        self._scenes_subject.clear()
        self._current_subject.clear()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_scenes_update(self, callback: Callable[[List[Scene]], Any]) -> Unsubscribe:
        """Scene list changes; the cached list is delivered immediately."""
        return self._scenes_subject.subscribe(callback)

    def on_current_scene_change(self, callback: Callable[[int], Any]) -> Unsubscribe:
        """Current scene changes; delivered immediately if a scene is known."""
        return self._current_subject.subscribe(callback)

    def get_scenes(self) -> List[Scene]:
        return list(self.scenes)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def refresh(self) -> bool:
        """Ask the bridge for the scene list; the answer arrives asynchronously."""
        try:
            await self.client.send({"type": "get_scene_list"})
            return True
        except (BridgeNotConnectedError, websockets.ConnectionClosed) as e:
            logger.warning(f"🎬 Cannot request scene list: {e}")
            return False

    async def load_scene(self, scene_id: int) -> Dict[str, Any]:
        """
        Recall a scene on the mixer.

        Raises:
            ValueError: scene id outside 0..63.
            BridgeNotConnectedError: bridge socket is closed.
            RequestTimeoutError: no scene_loaded for this id in time.
        """
        validate_scene_id(scene_id)
        logger.info(f"🎬 Loading scene {scene_id}")
        return await self._request(
            f"load:{scene_id}",
            {"type": "load_scene", "sceneId": scene_id},
            "scene_loaded",
            scene_id,
        )

    async def save_scene(self, scene_id: int, name: Optional[str] = None) -> Dict[str, Any]:
        """Store the current mixer state in a scene slot. Raises like load_scene."""
        validate_scene_id(scene_id)
        logger.info(f"🎬 Saving scene {scene_id}{f' as {name!r}' if name else ''}")
        message: Dict[str, Any] = {"type": "save_scene", "sceneId": scene_id}
        if name is not None:
            message["name"] = name
        return await self._request(f"save:{scene_id}", message, "scene_saved", scene_id)

    async def _request(self, request_id: str, message: Dict[str, Any], response_type: str, scene_id: int):
        if not self.client.is_connected:
            raise BridgeNotConnectedError("Bridge not connected")

        if request_id in self._pending:
            logger.info(f"🎬 {request_id} already pending, waiting for the same response")
            return await self._pending.get(request_id).future

        future = self._pending.expect(
            request_id,
            response_type,
            timeout=self.timeout,
            matcher=lambda response: response.get("sceneId") == scene_id,
        )
        try:
            await self.client.send(message)
        except (BridgeNotConnectedError, websockets.ConnectionClosed):
            self._pending.discard(request_id)
            raise
        return await future

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_message(self, message: Dict[str, Any]):
        msg_type = message.get("type")

        if msg_type == "scene_list":
            scenes = []
            for entry in message.get("scenes") or []:
                try:
                    scenes.append(Scene.from_dict(entry))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"🎬 Ignoring malformed scene entry {entry!r}: {e}")
            self.scenes = scenes
            self._scenes_subject.notify(self.get_scenes())

        elif msg_type == "current_scene":
            self._set_current(message.get("sceneId"))

        elif msg_type == "scene_loaded":
            logger.info(f"🎬 Scene {message.get('sceneId')} loaded successfully")
            self._set_current(message.get("sceneId"))

        elif msg_type == "scene_saved":
            logger.info(f"🎬 Scene {message.get('sceneId')} saved successfully")

        self._pending.resolve(message)

        if msg_type == "scene_saved":
            self._schedule_refresh()

    def _set_current(self, scene_id: Any):
        if not isinstance(scene_id, int) or isinstance(scene_id, bool):
            logger.warning(f"🎬 Ignoring current scene without a valid id: {scene_id!r}")
            return
        self.current_scene_id = scene_id
        self._current_subject.notify(scene_id)

    def _schedule_refresh(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.refresh())
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    def _on_connection_change(self, connected: bool):
        if connected:
            self._schedule_refresh()
