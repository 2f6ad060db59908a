"""
Shared fixtures for the test suite.

A real WebSocket server on localhost stands in for the OSC bridge so the
telemetry client is exercised over an actual socket.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from websockets.asyncio.server import ServerConnection, serve

from telemetry_client import MixerModel, MixerTelemetryClient, TelemetryConfig

Responder = Callable[[Dict[str, Any]], List[Dict[str, Any]]]


# ---------------------------------------------------------------------------
# Fake bridge
# ---------------------------------------------------------------------------


class FakeBridge:
    """Records what clients send and answers selected message types."""

    def __init__(self):
        self.received: List[Dict[str, Any]] = []
        self.connections: List[ServerConnection] = []
        self.connection_count = 0
        self.responders: Dict[str, Responder] = {}
        self._server = None
        self.port: Optional[int] = None

    @property
    def url(self) -> str:
        return f"ws://127.0.0.1:{self.port}"

    async def start(self):
        self._server = await serve(self._handler, "127.0.0.1", 0)
        self.port = list(self._server.sockets)[0].getsockname()[1]

    async def stop(self):
        if self._server:
            self._server.close()
            await self._server.wait_closed()

    def respond(self, msg_type: str, responder: Responder):
        self.responders[msg_type] = responder

    async def _handler(self, ws: ServerConnection):
        self.connections.append(ws)
        self.connection_count += 1
        try:
            async for raw in ws:
                message = json.loads(raw)
                self.received.append(message)
                responder = self.responders.get(message.get("type"))
                if responder:
                    for reply in responder(message):
                        await ws.send(json.dumps(reply))
        finally:
            self.connections.remove(ws)

    async def broadcast(self, message: Any):
        payload = message if isinstance(message, str) else json.dumps(message)
        for ws in list(self.connections):
            await ws.send(payload)

    async def drop_connections(self):
        for ws in list(self.connections):
            await ws.close()

    def sent_of_type(self, msg_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.received if m.get("type") == msg_type]

    async def wait_for(self, msg_type: str, count: int = 1, timeout: float = 2.0) -> List[Dict[str, Any]]:
        """Wait until at least ``count`` messages of a type have arrived."""
        await wait_until(lambda: len(self.sent_of_type(msg_type)) >= count, timeout)
        return self.sent_of_type(msg_type)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float):
        self.now += ms


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def bridge():
    bridge = FakeBridge()
    await bridge.start()
    yield bridge
    await bridge.stop()


@pytest.fixture
def bridge_config(bridge) -> TelemetryConfig:
    return TelemetryConfig(
        url=bridge.url,
        reconnect_interval=0.1,
        connect_timeout=2.0,
        ping_interval=None,
    )


@pytest_asyncio.fixture
async def client(bridge_config):
    client = MixerTelemetryClient(bridge_config)
    yield client
    await client.disconnect()


@pytest_asyncio.fixture
async def connected_client(client, bridge):
    assert await client.connect("192.168.1.10", MixerModel.X_AIR_18)
    await bridge.wait_for("subscribe_dynamics")
    return client


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1_000_000.0)
