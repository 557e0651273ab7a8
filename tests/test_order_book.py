"""
Order book tests: level maintenance, gap detection and export round trip.
"""

import pytest

from polyfeed.data_ingestion.messages import LevelChange, PriceChange, Side
from polyfeed.data_ingestion.order_book import OrderBook, OrderBookState, PriceLevel
from polyfeed.utils.errors import GapDetected


def diff(sequence=None, changes=(), hash=None, prev_hash=None, timestamp=None):
    return PriceChange(
        instrument_id="tok",
        changes=tuple(LevelChange(side, price, size) for side, price, size in changes),
        sequence=sequence,
        hash=hash,
        prev_hash=prev_hash,
        timestamp=timestamp,
    )


@pytest.fixture
def baseline():
    return OrderBookState.from_levels(
        [(0.48, 100.0), (0.47, 50.0)],
        [(0.52, 80.0), (0.53, 40.0)],
        sequence=5,
        hash="h5",
        timestamp=1000.0,
    )


class TestOrderBookState:

    def test_from_levels_sorts_and_dedupes(self):
        state = OrderBookState.from_levels(
            [(0.4, 1.0), (0.5, 2.0), (0.4, 3.0), (0.45, 0.0)],
            [(0.7, 1.0), (0.6, 2.0)],
        )
        assert state.bids == (PriceLevel(0.5, 2.0), PriceLevel(0.4, 3.0))
        assert state.asks == (PriceLevel(0.6, 2.0), PriceLevel(0.7, 1.0))

    def test_from_payload_accepts_venue_shape(self):
        state = OrderBookState.from_payload({
            "bids": [{"price": "0.48", "size": "100"}, {"price": "0.49", "size": "10"}],
            "asks": [{"price": "0.52", "size": "80"}],
            "tick_size": "0.01",
            "min_order_size": "5",
            "hash": "abc",
        })
        assert state.best_bid() == 0.49
        assert state.best_ask() == 0.52
        assert state.tick_size == 0.01
        assert state.min_order_size == 5.0
        assert state.hash == "abc"

    def test_metrics(self, baseline):
        assert baseline.midprice() == pytest.approx(0.50)
        assert baseline.spread() == pytest.approx(0.04)
        assert baseline.depth() == pytest.approx(270.0)

    def test_export_round_trip(self, baseline):
        restored = OrderBookState.from_dict(baseline.to_dict())

        assert set(restored.bids) == set(baseline.bids)
        assert set(restored.asks) == set(baseline.asks)
        assert restored.sequence == baseline.sequence
        assert restored.hash == baseline.hash


class TestOrderBook:

    def test_sequential_diffs_apply(self, baseline):
        book = OrderBook.from_state("tok", baseline)

        assert book.apply(diff(6, [(Side.BUY, 0.49, 20.0)]))
        assert book.apply(diff(7, [(Side.SELL, 0.52, 0.0)]))

        assert book.best_bid() == 0.49
        assert book.best_ask() == 0.53
        assert book.sequence == 7

    def test_sequence_gap_raises_and_leaves_book(self, baseline):
        book = OrderBook.from_state("tok", baseline)

        with pytest.raises(GapDetected) as exc_info:
            book.apply(diff(8, [(Side.BUY, 0.49, 20.0)]))

        assert exc_info.value.instrument_id == "tok"
        assert book.best_bid() == 0.48
        assert book.sequence == 5
        assert book.stats["gaps"] == 1

    def test_prev_hash_mismatch_raises(self, baseline):
        book = OrderBook.from_state("tok", baseline)
        assert book.apply(diff(prev_hash="h5", hash="h6"))
        with pytest.raises(GapDetected):
            book.apply(diff(prev_hash="h5", hash="h7"))

    def test_duplicate_hash_is_skipped(self, baseline):
        book = OrderBook.from_state("tok", baseline)
        assert book.apply(diff(hash="h5", changes=[(Side.BUY, 0.1, 1.0)])) is False
        assert book.stats["duplicates"] == 1
        assert 0.1 not in book.bids.sizes

    def test_timestamp_reorder_raises(self, baseline):
        book = OrderBook.from_state("tok", baseline)
        book.apply(diff(timestamp=1001.0))
        with pytest.raises(GapDetected):
            book.apply(diff(timestamp=999.0))

    def test_levels_stay_sorted_without_resort(self):
        book = OrderBook("tok")
        for price in (0.3, 0.1, 0.5, 0.2, 0.4):
            book.apply(diff(changes=[(Side.BUY, price, 1.0), (Side.SELL, price + 0.5, 1.0)]))
        book.apply(diff(changes=[(Side.BUY, 0.5, 0.0)]))

        snapshot = book.snapshot()
        assert [level.price for level in snapshot.bids] == [0.4, 0.3, 0.2, 0.1]
        assert [level.price for level in snapshot.asks] == sorted(level.price for level in snapshot.asks)
        assert not book.is_crossed()

    def test_snapshot_depth(self, baseline):
        book = OrderBook.from_state("tok", baseline)
        snapshot = book.snapshot(depth=1)
        assert len(snapshot.bids) == 1 and len(snapshot.asks) == 1
        assert snapshot.sequence == 5

    def test_covers(self, baseline):
        book = OrderBook.from_state("tok", baseline)
        assert book.covers(diff(4))
        assert book.covers(diff(5))
        assert not book.covers(diff(6))
        assert book.covers(diff(hash="h5"))
