"""
Feed decoding tests, covering both historical price_change shapes.
"""

import json

import pytest

from polyfeed.data_ingestion.messages import (
    TEXT_PING,
    BestBidAsk,
    BookSnapshot,
    LastTrade,
    Ping,
    PriceChange,
    PriceChangeShape,
    Side,
    TickSizeChange,
    decode_frame,
)
from polyfeed.utils.errors import ValidationError


class TestPriceChange:

    def test_flat_shape(self):
        frame = json.dumps({
            "event_type": "price_change",
            "asset_id": "tok-1",
            "changes": [
                {"price": "0.52", "size": "100", "side": "BUY"},
                {"price": "0.55", "size": "0", "side": "SELL"},
            ],
            "sequence": 7,
            "hash": "h7",
            "timestamp": "1700000000000",
        })

        events = decode_frame(frame)

        assert len(events) == 1
        event = events[0]
        assert isinstance(event, PriceChange)
        assert event.instrument_id == "tok-1"
        assert event.sequence == 7
        assert event.hash == "h7"
        assert [(c.side, c.price, c.size) for c in event.changes] == [
            (Side.BUY, 0.52, 100.0),
            (Side.SELL, 0.55, 0.0),
        ]

    def test_nested_shape_groups_per_asset_in_wire_order(self):
        frame = json.dumps({
            "event_type": "price_change",
            "market": "0xcond",
            "price_changes": [
                {"asset_id": "b", "price": "0.40", "size": "10", "side": "BUY", "hash": "hb",
                 "best_bid": "0.40", "best_ask": "0.42"},
                {"asset_id": "a", "price": "0.60", "size": "5", "side": "SELL", "hash": "ha1"},
                {"asset_id": "a", "price": "0.61", "size": "7", "side": "SELL", "hash": "ha2",
                 "best_bid": "0.58", "best_ask": "0.60"},
            ],
            "timestamp": 1700000000,
        })

        events = decode_frame(frame)

        assert [e.instrument_id for e in events] == ["b", "a"]
        b, a = events
        assert b.best_bid == 0.40 and b.best_ask == 0.42
        assert len(a.changes) == 2
        assert a.hash == "ha2"
        assert a.best_ask == 0.60
        assert a.timestamp == 1700000000

    def test_quote_only_shape(self):
        events = decode_frame(json.dumps({"event_type": "price_change", "asset_id": "x", "best_bid": 0.1}))
        assert events == [PriceChange(instrument_id="x", best_bid=0.1)]

    def test_every_shape_has_a_decoder(self):
        from polyfeed.data_ingestion.messages import _PRICE_CHANGE_DECODERS
        assert set(_PRICE_CHANGE_DECODERS) == set(PriceChangeShape)

    def test_malformed_change_entries_are_skipped(self):
        frame = json.dumps({
            "event_type": "price_change",
            "asset_id": "tok",
            "changes": ["garbage", {"price": "abc", "size": "1"}, {"price": "0.3", "size": "2", "side": "sell"}],
        })
        (event,) = decode_frame(frame)
        assert event.changes[0].side is Side.SELL
        assert len(event.changes) == 1


class TestOtherEvents:

    def test_book(self):
        frame = json.dumps({
            "event_type": "book",
            "asset_id": "tok",
            "bids": [{"price": "0.48", "size": "30"}, {"price": "0.47", "size": "0"}],
            "asks": [["0.52", "25"]],
            "hash": "abc",
        })
        (event,) = decode_frame(frame)
        assert isinstance(event, BookSnapshot)
        assert event.bids == ((0.48, 30.0),)
        assert event.asks == ((0.52, 25.0),)
        assert event.hash == "abc"

    def test_best_bid_ask_and_trade(self):
        frame = json.dumps([
            {"event_type": "best_bid_ask", "asset_id": "t", "best_bid": "0.3", "best_ask": "0.35"},
            {"event_type": "last_trade_price", "asset_id": "t", "price": "0.33", "size": "12", "side": "BUY"},
            {"event_type": "tick_size_change", "asset_id": "t", "new_tick_size": "0.001"},
        ])
        bbo, trade, tick = decode_frame(frame)
        assert bbo == BestBidAsk("t", 0.3, 0.35)
        assert isinstance(trade, LastTrade) and trade.price == 0.33 and trade.side is Side.BUY
        assert tick == TickSizeChange("t", 0.001)

    def test_pings(self):
        assert decode_frame("PING") == [Ping(TEXT_PING)]
        assert decode_frame("PONG") == []
        assert decode_frame(b'{"type": "ping", "id": 3}') == [Ping("ping", 3)]

    def test_unknown_type_decodes_to_nothing(self):
        assert decode_frame('{"event_type": "something_new", "asset_id": "t"}') == []

    def test_unparseable_frame_raises(self):
        with pytest.raises(ValidationError):
            decode_frame("{not json")

    def test_scalar_frame_raises(self):
        with pytest.raises(ValidationError):
            decode_frame("42")

    def test_deeply_nested_frame_raises_validation_error(self):
        with pytest.raises(ValidationError):
            decode_frame("[" * 200_000 + "]" * 200_000)

    def test_malformed_event_in_batch_keeps_siblings(self):
        frame = json.dumps([
            {"event_type": "last_trade_price", "asset_id": "a", "price": "0.4"},
            {"event_type": "book", "asset_id": "b", "bids": "oops"},
            {"event_type": "last_trade_price", "asset_id": "c", "price": "0.6"},
        ])

        events = decode_frame(frame)

        assert [(e.instrument_id, e.price) for e in events] == [("a", 0.4), ("c", 0.6)]

    def test_malformed_single_event_raises(self):
        with pytest.raises(ValidationError):
            decode_frame(json.dumps({"event_type": "book", "asset_id": "b", "bids": "oops"}))
