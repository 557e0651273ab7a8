"""
Shared fakes for the test suite: a manual clock, a sleep that advances it,
a scripted aiohttp session and a scripted websocket connector.
"""

import asyncio
import json
import random
from typing import Any, List, Optional

import aiohttp
import pytest
from websockets.exceptions import ConnectionClosedOK

from polyfeed.utils.logger import log_config, LogLevel


@pytest.fixture(autouse=True, scope="session")
def quiet_logging():
    log_config.setup_logging(LogLevel.SILENT)


class FakeClock:
    """Milliseconds clock that only moves when told to"""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class FakeSleep:
    """Records requested sleeps and advances ``clock`` (ms) by the same amount"""

    def __init__(self, clock: Optional[FakeClock] = None, scale: float = 1000.0):
        self.clock = clock
        self.scale = scale
        self.calls: List[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.now += seconds * self.scale
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def rng():
    return random.Random(42)


# ---------------------------------------------------------------------------
# aiohttp session
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status: int, body: Any):
        self.status = status
        if isinstance(body, str):
            body = body.encode("utf-8")
        self._body = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")

    async def read(self) -> bytes:
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """
    Replays scripted responses in order. Each script entry is either a
    ``(status, body)`` tuple or an exception instance to raise. The last
    entry repeats once the script is exhausted.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.requests: List[tuple] = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.requests.append((method, url))
        entry = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(entry, BaseException):
            raise entry
        status, body = entry
        return FakeResponse(status, body)

    async def close(self):
        self.closed = True


@pytest.fixture
def connection_error():
    return aiohttp.ClientConnectionError("connection reset")


# ---------------------------------------------------------------------------
# websocket connector
# ---------------------------------------------------------------------------

class FakeWebSocket:
    """
    Yields scripted frames from ``recv``; an exception in the script is raised
    instead. Once the script runs out, ``recv`` blocks until closed.
    """

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.sent: List[str] = []
        self.closed = asyncio.Event()

    async def recv(self):
        if self.frames:
            frame = self.frames.pop(0)
            if isinstance(frame, BaseException):
                raise frame
            return frame
        await self.closed.wait()
        raise ConnectionClosedOK(None, None)

    async def send(self, message: str):
        self.sent.append(message)

    async def close(self):
        self.closed.set()

    def sent_json(self) -> List[Any]:
        return [json.loads(message) for message in self.sent if message.startswith("{")]


class FakeConnector:
    """Hands out the scripted sockets in order, one per connect"""

    def __init__(self, *sockets: FakeWebSocket):
        self.sockets = list(sockets)
        self.calls: List[dict] = []
        self.connected = asyncio.Event()

    def __call__(self, url, **kwargs):
        self.calls.append({'url': url, **kwargs})
        connector = self

        class _Context:
            async def __aenter__(self):
                if not connector.sockets:
                    # Nothing left to hand out: park until cancelled
                    await asyncio.Event().wait()
                ws = connector.sockets.pop(0)
                connector.connected.set()
                return ws

            async def __aexit__(self, exc_type, exc, tb):
                return False

        return _Context()
