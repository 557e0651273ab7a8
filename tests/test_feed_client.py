"""
Feed client tests: reconnect backoff, subscription diffing, keepalives,
silence detection and sharding.
"""

import asyncio
import json
import random

from websockets.exceptions import ConnectionClosedError

from conftest import FakeConnector, FakeSleep, FakeWebSocket
from polyfeed.data_ingestion.feed_client import (
    ConnectionState,
    FeedClient,
    FeedConnection,
    FeedHandlers,
    next_backoff_delay,
)
from polyfeed.data_ingestion.messages import LastTrade
from polyfeed.utils.config import FeedConfig


async def until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


def dropped():
    return ConnectionClosedError(None, None)


class Recorder:
    def __init__(self):
        self.updates = []
        self.statuses = []

    def handlers(self):
        return FeedHandlers(on_update=self.updates.append, on_status=self.statuses.append)

    def states(self):
        return [status.state for status in self.statuses]


def make_connection(connector, config=None, sleep=None, recorder=None):
    recorder = recorder or Recorder()
    connection = FeedConnection(
        "feed-test",
        "wss://example.test/ws/market",
        recorder.handlers(),
        config or FeedConfig(),
        connector=connector,
        sleep=sleep or FakeSleep(),
        rng=random.Random(5),
    )
    return connection, recorder


class TestBackoff:

    def test_delays_never_shrink_and_respect_cap(self):
        rng = random.Random(11)
        delays = [next_backoff_delay(n, 500, 30_000, 200, rng) for n in range(1, 12)]
        assert delays == sorted(delays)
        assert 500 <= delays[0] <= 700
        assert max(delays) == 30_000

    def test_jitter_bounded_by_base(self):
        rng = random.Random(2)
        for _ in range(200):
            assert next_backoff_delay(1, 100, 30_000, 5_000, rng) <= 200

    async def test_consecutive_drops_back_off_monotonically(self):
        sockets = [FakeWebSocket([dropped()]), FakeWebSocket([dropped()]), FakeWebSocket([dropped()]), FakeWebSocket()]
        connector = FakeConnector(*sockets)
        sleep = FakeSleep()
        connection, recorder = make_connection(connector, sleep=sleep)

        connection.start(["a"])
        await until(lambda: len(connector.calls) == 4)

        assert len(sleep.calls) == 3
        assert sleep.calls[0] <= sleep.calls[1] <= sleep.calls[2]
        assert connection.failures == 3
        assert ConnectionState.BACKOFF in recorder.states()
        for ws in sockets[:3]:
            assert ws.sent_json()[0]["assets_ids"] == ["a"]

        await connection.close()
        assert connection.state is ConnectionState.OFF

    async def test_first_data_frame_resets_failures(self):
        frame = json.dumps({"event_type": "last_trade_price", "asset_id": "a", "price": "0.4"})
        sockets = [FakeWebSocket([dropped()]), FakeWebSocket([frame, dropped()]), FakeWebSocket()]
        connector = FakeConnector(*sockets)
        sleep = FakeSleep()
        connection, recorder = make_connection(connector, sleep=sleep)

        connection.start(["a"])
        await until(lambda: len(connector.calls) == 3)

        # both drops were the first failure in a row
        assert 0.5 <= sleep.calls[0] <= 0.7
        assert 0.5 <= sleep.calls[1] <= 0.7
        assert recorder.updates == [LastTrade("a", 0.4)]
        await connection.close()


class TestSubscriptions:

    async def test_full_subscribe_then_incremental_diffs(self):
        ws = FakeWebSocket()
        connector = FakeConnector(ws)
        connection, _ = make_connection(connector)

        connection.start(["b", "a"])
        await until(lambda: connection.is_connected and ws.sent)

        assert await connection.subscribe(["b", "c"]) == ["c"]
        assert await connection.subscribe(["c"]) == []
        assert await connection.unsubscribe(["a", "z"]) == ["a"]

        first, second, third = ws.sent_json()
        assert first == {"type": "market", "assets_ids": ["a", "b"], "custom_feature_enabled": True}
        assert second == {"assets_ids": ["c"], "operation": "subscribe"}
        assert third == {"assets_ids": ["a"], "operation": "unsubscribe"}
        assert connection.tracked == {"b", "c"}
        await connection.close()

    async def test_reconnect_resubscribes_tracked_set(self):
        first, second = FakeWebSocket(), FakeWebSocket()
        connector = FakeConnector(first, second)
        connection, _ = make_connection(connector)

        connection.start(["a"])
        await until(lambda: connection.is_connected)
        await connection.subscribe(["b"])
        await first.close()

        await until(lambda: second.sent)
        assert second.sent_json()[0]["assets_ids"] == ["a", "b"]
        await connection.close()

    async def test_subscribe_while_disconnected_is_deferred(self):
        connector = FakeConnector()
        connection, _ = make_connection(connector)
        connection.start([])

        assert await connection.subscribe(["x"]) == ["x"]
        assert connection.tracked == {"x"}
        await connection.close()


class TestFrames:

    async def test_pings_are_answered(self):
        ws = FakeWebSocket(["PING", '{"type": "ping", "id": 9}'])
        connection, recorder = make_connection(FakeConnector(ws))

        connection.start(["a"])
        await until(lambda: connection.stats["pongs"] == 2)

        assert "PONG" in ws.sent
        assert {"type": "pong", "id": 9} in ws.sent_json()
        assert recorder.updates == []
        await connection.close()

    async def test_updates_delivered_in_wire_order(self):
        frames = [
            json.dumps([
                {"event_type": "last_trade_price", "asset_id": "a", "price": "0.1"},
                {"event_type": "last_trade_price", "asset_id": "b", "price": "0.2"},
            ]),
            "not json at all",
            json.dumps({"event_type": "last_trade_price", "asset_id": "a", "price": "0.3"}),
        ]
        connection, recorder = make_connection(FakeConnector(FakeWebSocket(frames)))

        connection.start(["a", "b"])
        await until(lambda: len(recorder.updates) == 3)

        assert [u.price for u in recorder.updates] == [0.1, 0.2, 0.3]
        assert connection.stats["dropped_frames"] == 1
        await connection.close()

    async def test_deeply_nested_frame_is_dropped_and_stream_continues(self):
        frames = [
            "[" * 200_000 + "]" * 200_000,
            json.dumps({"event_type": "last_trade_price", "asset_id": "a", "price": "0.4"}),
        ]
        connection, recorder = make_connection(FakeConnector(FakeWebSocket(frames)))

        connection.start(["a"])
        await until(lambda: len(recorder.updates) == 1)

        assert recorder.updates == [LastTrade("a", 0.4)]
        assert connection.stats["dropped_frames"] == 1
        assert connection.state is ConnectionState.CONNECTED
        assert not connection._task.done()
        await connection.close()

    async def test_unexpected_receive_error_reconnects(self):
        first, second = FakeWebSocket([RuntimeError("boom")]), FakeWebSocket()
        connector = FakeConnector(first, second)
        sleep = FakeSleep()
        connection, recorder = make_connection(connector, sleep=sleep)

        connection.start(["a"])
        await until(lambda: len(connector.calls) == 2 and second.sent)

        assert ConnectionState.DISCONNECTED in recorder.states()
        assert connection.stats["drops"] == 1
        assert len(sleep.calls) == 1
        assert second.sent_json()[0]["assets_ids"] == ["a"]
        await connection.close()

    async def test_silence_marks_stale_then_reconnects(self):
        silent, fresh = FakeWebSocket(), FakeWebSocket()
        connector = FakeConnector(silent, fresh)
        config = FeedConfig(stale_ms=20, dead_ms=60)
        connection, recorder = make_connection(connector, config=config)

        connection.start(["a"])
        await until(lambda: len(connector.calls) == 2)

        states = recorder.states()
        assert states.index(ConnectionState.STALE) < states.index(ConnectionState.DISCONNECTED)
        assert connection.stats["drops"] == 1
        await connection.close()


class TestFeedClient:

    async def test_connect_shards_and_fills(self):
        client = FeedClient(FeedConfig(max_instruments_per_connection=2), "wss://example.test/ws",
                            connector=FakeConnector(), sleep=FakeSleep())
        recorder = Recorder()

        handle = await client.connect(["a", "b", "c", "d", "e", "a"], recorder.handlers())
        assert [sorted(c.tracked) for c in handle.connections] == [["a", "b"], ["c", "d"], ["e"]]

        assert await handle.subscribe(["f", "a"]) == ["f"]
        assert len(handle.connections) == 3
        assert await handle.subscribe(["g", "h", "i"]) == ["g", "h", "i"]
        assert len(handle.connections) == 5
        assert handle.instrument_ids == set("abcdefghi")

        assert sorted(await handle.unsubscribe(["a", "g", "zz"])) == ["a", "g"]
        assert "a" not in handle.instrument_ids

        await handle.close()
        assert all(c.state is ConnectionState.OFF for c in handle.connections)
