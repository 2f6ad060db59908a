#!/usr/bin/env python3
"""
Radio Command Dispatcher

Delivers automation commands (e.g. "PLAYER 1 PLAY") to mAirList-style radio
automation software.

Two delivery paths:
- Relay: the command travels over the bridge WebSocket with a request id and
  the bridge reports the HTTP outcome in a radio_command_result message.
- Direct: POST /execute with HTTP Basic auth, used when the bridge is down.

A direct request whose response is lost after it was sent is reported as
UNCONFIRMED rather than DELIVERED or FAILED. Commands are never retried.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp
import websockets

from correlation import PendingRequests, RequestTimeoutError
from observers import Unsubscribe
from telemetry_client import BridgeNotConnectedError, MixerTelemetryClient

logger = logging.getLogger(__name__)

STATUS_COMMAND = "STATUS"


class DeliveryStatus(Enum):
    DELIVERED = "delivered"
    UNCONFIRMED = "unconfirmed"  # sent, but the response could not be read
    FAILED = "failed"


class DeliveryPath(Enum):
    BRIDGE = "bridge"
    DIRECT = "direct"
    NONE = "none"


@dataclass
class DeliveryResult:
    """Outcome of one command delivery."""
    status: DeliveryStatus
    path: DeliveryPath
    command: str
    status_code: Optional[int] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is not DeliveryStatus.FAILED

    @property
    def auth_failed(self) -> bool:
        return self.status_code == 401

    def __bool__(self) -> bool:
        return self.ok


@dataclass
class RadioSoftwareConfig:
    """Radio automation endpoint."""
    enabled: bool = False
    type: str = "mairlist"
    host: str = "localhost"
    port: int = 9300
    username: str = ""
    password: str = ""
    prefer_bridge: bool = True
    timeout: float = 5.0  # seconds, for both relay and direct requests

    def to_bridge_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.pop("prefer_bridge", None)
        payload.pop("timeout", None)
        return payload


class RadioCommandDispatcher:
    """Sends radio automation commands through the bridge or directly over HTTP."""

    def __init__(self, config: RadioSoftwareConfig, client: Optional[MixerTelemetryClient] = None):
        self.config = config
        self.client = client
        self._session: Optional[aiohttp.ClientSession] = None
        self._pending = PendingRequests("radio-commands")
        self._unsubscribers: List[Unsubscribe] = []
        self._config_task: Optional[asyncio.Task] = None

    async def start(self):
        """Open the HTTP session and listen for relay results."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
        if self.client and not self._unsubscribers:
            self._unsubscribers = [
                self.client.on_message(self._pending.resolve),
                self.client.on_status_change(self._on_bridge_status),
            ]
            if self.client.is_connected:
                await self.push_config()

    async def stop(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        if self._config_task:
            self._config_task.cancel()
            self._config_task = None
        self._pending.reject_all(BridgeNotConnectedError("Dispatcher stopped"))
        if self._session:
            await self._session.close()
            self._session = None

    async def update_config(self, config: RadioSoftwareConfig):
        self.config = config
        logger.info(f"📻 Radio software config updated: {config.type} at {config.host}:{config.port}")
        await self.push_config()

    async def push_config(self):
        """Tell the bridge where the radio software lives so it can relay commands."""
        if not (self.client and self.client.is_connected and self.config.enabled):
            return
        try:
            await self.client.send({"type": "radio_config", "config": self.config.to_bridge_payload()})
            logger.info("📻 Sent radio config to bridge server")
        except (BridgeNotConnectedError, websockets.ConnectionClosed) as e:
            logger.warning(f"⚠️ Could not send radio config to bridge: {e}")

    def _on_bridge_status(self, connected: bool):
        if connected:
            self._config_task = asyncio.create_task(self.push_config())

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def send_command(self, command: str) -> DeliveryResult:
        """
        Deliver a command to the radio software.

        Args:
            command: Automation command text, e.g. "PLAYER 1 PLAY".

        Returns:
            DeliveryResult; falsy only when delivery failed.
        """
        if not self.config.enabled:
            logger.warning(f"⚠️ Radio software not configured, cannot execute command: {command}")
            return DeliveryResult(DeliveryStatus.FAILED, DeliveryPath.NONE, command,
                                  detail="radio software disabled")

        if self.config.prefer_bridge and self.client and self.client.is_connected:
            result = await self._send_via_bridge(command)
        else:
            result = await self._send_direct(command)

        if result.status is DeliveryStatus.DELIVERED:
            logger.info(f"✅ Radio command delivered via {result.path.value}: {command}")
        elif result.status is DeliveryStatus.UNCONFIRMED:
            logger.warning(f"⚠️ Radio command sent via {result.path.value}, response unreadable: {command}")
        else:
            logger.error(f"❌ Radio command failed via {result.path.value}: {command} - {result.detail}")
        return result

    async def test_connection(self) -> DeliveryResult:
        """Check reachability with the no-op STATUS command."""
        logger.info(f"🧪 Testing radio software connection at {self.config.host}:{self.config.port}")
        return await self.send_command(STATUS_COMMAND)

    async def _send_via_bridge(self, command: str) -> DeliveryResult:
        request_id = uuid.uuid4().hex
        future = self._pending.expect(
            request_id,
            "radio_command_result",
            timeout=self.config.timeout,
            matcher=lambda message: message.get("requestId") == request_id,
        )

        try:
            await self.client.send({"type": "radio_command", "requestId": request_id, "command": command})
            logger.info(f"🌐 Sent command to bridge: {command}")
        except (BridgeNotConnectedError, websockets.ConnectionClosed) as e:
            self._pending.discard(request_id)
            logger.warning(f"⚠️ Bridge relay unavailable ({e}), sending directly")
            return await self._send_direct(command)

        try:
            response = await future
        except RequestTimeoutError:
            return DeliveryResult(DeliveryStatus.FAILED, DeliveryPath.BRIDGE, command,
                                  detail=f"no result from bridge within {self.config.timeout:.1f}s")
        except BridgeNotConnectedError as e:
            return DeliveryResult(DeliveryStatus.FAILED, DeliveryPath.BRIDGE, command, detail=str(e))

        status_code = response.get("statusCode")
        if response.get("success"):
            return DeliveryResult(DeliveryStatus.DELIVERED, DeliveryPath.BRIDGE, command,
                                  status_code=status_code, detail=str(response.get("response", "")))
        if status_code == 401:
            return DeliveryResult(DeliveryStatus.FAILED, DeliveryPath.BRIDGE, command,
                                  status_code=401, detail="authentication failed")
        return DeliveryResult(DeliveryStatus.FAILED, DeliveryPath.BRIDGE, command,
                              status_code=status_code, detail=str(response.get("error", "unknown error")))

    async def _send_direct(self, command: str) -> DeliveryResult:
        host = self.config.host or "localhost"
        port = self.config.port or 9300
        username = self.config.username
        password = self.config.password

        if not username or not password:
            return DeliveryResult(DeliveryStatus.FAILED, DeliveryPath.DIRECT, command,
                                  detail="missing username or password")

        url = f"http://{host}:{port}/execute"
        logger.info(f"📻 Sending {self.config.type} command: {command} to {host}:{port}")

        if self._session is None:
            self._session = aiohttp.ClientSession()

        try:
            async with self._session.post(
                url,
                data={"command": command},
                auth=aiohttp.BasicAuth(username, password),
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            ) as response:
                body = await response.text()
                if response.status == 401:
                    return DeliveryResult(DeliveryStatus.FAILED, DeliveryPath.DIRECT, command,
                                          status_code=401, detail="authentication failed")
                if 200 <= response.status < 300:
                    return DeliveryResult(DeliveryStatus.DELIVERED, DeliveryPath.DIRECT, command,
                                          status_code=response.status, detail=body[:200])
                return DeliveryResult(DeliveryStatus.FAILED, DeliveryPath.DIRECT, command,
                                      status_code=response.status, detail=f"HTTP {response.status}")

        except (aiohttp.ServerDisconnectedError, aiohttp.ClientPayloadError) as e:
            # The request went out but no readable response came back
            return DeliveryResult(DeliveryStatus.UNCONFIRMED, DeliveryPath.DIRECT, command,
                                  detail=f"response lost: {e}")
        except asyncio.TimeoutError:
            return DeliveryResult(DeliveryStatus.FAILED, DeliveryPath.DIRECT, command,
                                  detail=f"timeout after {self.config.timeout:.1f}s")
        except aiohttp.ClientError as e:
            return DeliveryResult(DeliveryStatus.FAILED, DeliveryPath.DIRECT, command, detail=str(e))
