"""
Market Feed WebSocket Client
============================

Streaming connection to the venue's public market channel.

- Instruments are sharded across connections (``max_instruments_per_connection``)
- Each connection subscribes its full tracked set on open and sends only
  incremental subscribe/unsubscribe frames afterwards
- Silence beyond ``stale_ms`` marks the connection stale; beyond ``dead_ms``
  the connection is dropped and re-established
- Reconnects back off exponentially with jitter, up to a cap
"""

import asyncio
import json
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .messages import TEXT_PING, FeedEvent, Ping, decode_frame
from ..utils.config import FeedConfig, VenueConfig
from ..utils.errors import FeedError, ValidationError
from ..utils.logger import get_logger


class ConnectionState(Enum):
    OFF = "off"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STALE = "stale"
    DISCONNECTED = "disconnected"
    BACKOFF = "backoff"


@dataclass(frozen=True)
class ConnectionStatus:
    """Emitted on every connection state transition"""
    connection_id: str
    state: ConnectionState
    instrument_ids: Tuple[str, ...]
    detail: Optional[str] = None


@dataclass
class FeedHandlers:
    on_update: Callable[[FeedEvent], None]
    on_status: Optional[Callable[[ConnectionStatus], None]] = None


def next_backoff_delay(failures: int,
                       base_ms: float,
                       cap_ms: float,
                       jitter_ms: float,
                       rng: random.Random) -> float:
    """
    Reconnect delay in ms after ``failures`` consecutive drops.

    ``min(cap, base * 2**(failures - 1) + jitter)`` with jitter bounded by
    ``base``, so the delay never shrinks between consecutive failures.
    """
    failures = max(1, failures)
    jitter = rng.uniform(0, min(jitter_ms, base_ms))
    return min(cap_ms, base_ms * (2 ** (failures - 1)) + jitter)


def _unique(ids: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    result = []
    for instrument_id in ids:
        if instrument_id and instrument_id not in seen:
            seen.add(instrument_id)
            result.append(instrument_id)
    return result


class FeedConnection:
    """
    One WebSocket connection and the instrument set it tracks.

    The receive loop runs in its own task; handlers are called from it in
    the order frames arrive.
    """

    def __init__(self,
                 connection_id: str,
                 url: str,
                 handlers: FeedHandlers,
                 config: Optional[FeedConfig] = None,
                 connector: Callable[..., Any] = websockets.connect,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.connection_id = connection_id
        self.url = url
        self.handlers = handlers
        self.config = config or FeedConfig()
        self.logger = get_logger('feed_client')

        self._connector = connector
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock

        # Connection state
        self.tracked: Set[str] = set()
        self.state = ConnectionState.OFF
        self.failures = 0
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._last_frame_at = 0.0

        self.stats = {
            'connects': 0,
            'drops': 0,
            'frames': 0,
            'events': 0,
            'dropped_frames': 0,
            'pongs': 0,
        }

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self.state in (ConnectionState.CONNECTED, ConnectionState.STALE)

    def start(self, instrument_ids: Iterable[str] = ()):
        """Track ``instrument_ids`` and start the connect/receive loop"""
        self.tracked.update(_unique(instrument_ids))
        if self._task is None or self._task.done():
            self._closing = False
            self._task = asyncio.create_task(self._run(), name=f"feed-{self.connection_id}")

    async def subscribe(self, instrument_ids: Iterable[str]) -> List[str]:
        """Add instruments; returns the ids that were not already tracked"""
        added = [i for i in _unique(instrument_ids) if i not in self.tracked]
        if not added:
            return []
        self.tracked.update(added)
        await self._send_operation(added, "subscribe")
        return added

    async def unsubscribe(self, instrument_ids: Iterable[str]) -> List[str]:
        """Drop instruments; returns the ids that were tracked"""
        removed = [i for i in _unique(instrument_ids) if i in self.tracked]
        if not removed:
            return []
        self.tracked.difference_update(removed)
        await self._send_operation(removed, "unsubscribe")
        return removed

    async def close(self):
        """Stop reconnecting and close the socket"""
        self._closing = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except (ConnectionClosed, OSError) as e:
                self.logger.debug(f"[{self.connection_id}] close: {e!r}")
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._set_state(ConnectionState.OFF)

    async def _run(self):
        """Connect, receive until the connection drops, back off, repeat"""
        while not self._closing:
            self._set_state(ConnectionState.CONNECTING)
            reason = "closed by server"
            try:
                async with self._connector(
                    self.url,
                    ping_interval=self.config.ping_interval_s,
                    ping_timeout=self.config.ping_timeout_s,
                    close_timeout=self.config.ping_timeout_s,
                    open_timeout=self.config.open_timeout_s,
                ) as ws:
                    self._ws = ws
                    self.stats['connects'] += 1
                    self._last_frame_at = self._clock()
                    self._set_state(ConnectionState.CONNECTED)
                    await self._send_full_subscribe(ws)
                    await self._receive_loop(ws)
            except (ConnectionClosed, WebSocketException, OSError, asyncio.TimeoutError, FeedError) as e:
                reason = repr(e)
            except Exception as e:
                # Anything else still goes through drop + backoff
                self.logger.exception(f"[{self.connection_id}] Receive loop failed: {e!r}")
                reason = repr(e)
            finally:
                self._ws = None

            if self._closing:
                break

            self.failures += 1
            self.stats['drops'] += 1
            self.logger.warning(f"[{self.connection_id}] Feed connection lost ({reason}), failure #{self.failures}")
            self._set_state(ConnectionState.DISCONNECTED, reason)

            delay_ms = next_backoff_delay(
                self.failures,
                self.config.reconnect_base_ms,
                self.config.reconnect_max_ms,
                self.config.reconnect_jitter_ms,
                self._rng,
            )
            self._set_state(ConnectionState.BACKOFF, f"reconnect in {delay_ms:.0f}ms")
            await self._sleep(delay_ms / 1000.0)

        self._set_state(ConnectionState.OFF)

    async def _receive_loop(self, ws):
        stale_s = self.config.stale_ms / 1000.0
        dead_s = self.config.dead_ms / 1000.0

        while True:
            silent_s = self._clock() - self._last_frame_at
            timeout = stale_s if self.state is not ConnectionState.STALE else max(0.001, dead_s - silent_s)
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
            except asyncio.TimeoutError:
                silent_s = self._clock() - self._last_frame_at
                if silent_s >= dead_s:
                    raise FeedError(f"No frames for {silent_s:.1f}s", {'connection_id': self.connection_id})
                if self.state is not ConnectionState.STALE:
                    self.logger.info(f"[{self.connection_id}] Feed silent for {silent_s:.1f}s")
                    self._set_state(ConnectionState.STALE, f"silent {silent_s:.1f}s")
                continue

            self._last_frame_at = self._clock()
            self.stats['frames'] += 1
            if self.state is ConnectionState.STALE:
                self._set_state(ConnectionState.CONNECTED)
            await self._handle_frame(ws, raw)

    async def _handle_frame(self, ws, raw):
        try:
            events = decode_frame(raw)
        except ValidationError as e:
            self.stats['dropped_frames'] += 1
            self.logger.warning(f"[{self.connection_id}] Dropping frame: {e}")
            return

        for event in events:
            if isinstance(event, Ping):
                await self._pong(ws, event)
                continue

            # First data frame proves the connection healthy
            self.failures = 0
            self.stats['events'] += 1
            try:
                self.handlers.on_update(event)
            except Exception as e:
                self.logger.error(f"[{self.connection_id}] Update handler failed: {e}")

    async def _pong(self, ws, ping: Ping):
        if ping.kind == TEXT_PING:
            await ws.send("PONG")
        else:
            reply: Dict[str, Any] = {'type': 'pong'}
            if ping.id is not None:
                reply['id'] = ping.id
            await ws.send(json.dumps(reply))
        self.stats['pongs'] += 1

    async def _send_full_subscribe(self, ws):
        if not self.tracked:
            return
        await ws.send(json.dumps({
            'type': 'market',
            'assets_ids': sorted(self.tracked),
            'custom_feature_enabled': True,
        }))
        self.logger.info(f"[{self.connection_id}] Subscribed to {len(self.tracked)} instruments")

    async def _send_operation(self, instrument_ids: List[str], operation: str):
        ws = self._ws
        if ws is None:
            # Picked up by the full subscribe on the next open
            return
        try:
            await ws.send(json.dumps({'assets_ids': instrument_ids, 'operation': operation}))
        except (ConnectionClosed, OSError) as e:
            self.logger.debug(f"[{self.connection_id}] {operation} deferred to reconnect: {e!r}")

    def _set_state(self, state: ConnectionState, detail: Optional[str] = None):
        if state is self.state and detail is None:
            return
        self.state = state
        if self.handlers.on_status is None:
            return
        status = ConnectionStatus(self.connection_id, state, tuple(sorted(self.tracked)), detail)
        try:
            self.handlers.on_status(status)
        except Exception as e:
            self.logger.error(f"[{self.connection_id}] Status handler failed: {e}")

    def get_connection_stats(self) -> Dict:
        return {
            **self.stats,
            'connection_id': self.connection_id,
            'state': self.state.value,
            'instruments': len(self.tracked),
            'failures': self.failures,
        }


class FeedHandle:
    """Control surface returned by ``FeedClient.connect``"""

    def __init__(self, client: "FeedClient", handlers: FeedHandlers, connections: List[FeedConnection]):
        self._client = client
        self._handlers = handlers
        self.connections = connections

    @property
    def instrument_ids(self) -> Set[str]:
        return set().union(*(connection.tracked for connection in self.connections))

    async def subscribe(self, instrument_ids: Iterable[str]) -> List[str]:
        """Track more instruments, filling existing shards before opening new ones"""
        tracked = self.instrument_ids
        pending = [i for i in _unique(instrument_ids) if i not in tracked]
        added: List[str] = []
        limit = self._client.config.max_instruments_per_connection

        for connection in self.connections:
            room = limit - len(connection.tracked)
            if room <= 0 or not pending:
                continue
            batch, pending = pending[:room], pending[room:]
            added.extend(await connection.subscribe(batch))

        while pending:
            batch, pending = pending[:limit], pending[limit:]
            connection = self._client.open_connection(self._handlers, batch)
            self.connections.append(connection)
            added.extend(batch)
        return added

    async def unsubscribe(self, instrument_ids: Iterable[str]) -> List[str]:
        ids = _unique(instrument_ids)
        removed: List[str] = []
        for connection in self.connections:
            removed.extend(await connection.unsubscribe([i for i in ids if i in connection.tracked]))
        return removed

    async def close(self):
        await asyncio.gather(*(connection.close() for connection in self.connections))

    def get_connection_stats(self) -> List[Dict]:
        return [connection.get_connection_stats() for connection in self.connections]


class FeedClient:
    """
    Opens sharded feed connections for a set of instruments.

    Connector, sleep, RNG and clock are injectable for tests.
    """

    def __init__(self,
                 config: Optional[FeedConfig] = None,
                 url: Optional[str] = None,
                 connector: Callable[..., Any] = websockets.connect,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or FeedConfig()
        self.url = url or VenueConfig().clob_ws_base
        self._connector = connector
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock
        self._next_id = 0
        self.logger = get_logger('feed_client')

    def open_connection(self, handlers: FeedHandlers, instrument_ids: Iterable[str]) -> FeedConnection:
        connection = FeedConnection(
            connection_id=f"feed-{self._next_id}",
            url=self.url,
            handlers=handlers,
            config=self.config,
            connector=self._connector,
            sleep=self._sleep,
            rng=self._rng,
            clock=self._clock,
        )
        self._next_id += 1
        connection.start(instrument_ids)
        return connection

    async def connect(self, instrument_ids: Iterable[str], handlers: FeedHandlers) -> FeedHandle:
        """Start streaming ``instrument_ids``; one connection per shard"""
        ids = _unique(instrument_ids)
        limit = self.config.max_instruments_per_connection
        shards = [ids[i:i + limit] for i in range(0, len(ids), limit)] or [[]]

        connections = [self.open_connection(handlers, shard) for shard in shards]
        self.logger.info(f"Streaming {len(ids)} instruments over {len(connections)} connection(s) to {self.url}")
        return FeedHandle(self, handlers, connections)
