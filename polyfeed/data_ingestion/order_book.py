"""
Order Book Implementation
=========================

Maintains a per-instrument price ladder with sequencing, hash chaining and
timestamp ordering checks. Two views:

- ``OrderBook``: the mutable working book owned by the synchronizer. Each side
  is a price -> size dict plus a bisect-maintained sorted price list, so
  level updates never re-sort the ladder.
- ``OrderBookState``: an immutable snapshot handed to the state store,
  renderers and exporters.
"""

import time
from bisect import bisect_left, insort
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .messages import BookSnapshot, PriceChange, Side
from .parsers import as_number, normalize_levels
from ..utils.errors import GapDetected


@dataclass(frozen=True)
class PriceLevel:
    """Individual price level in order book"""
    price: float
    size: float

    def to_list(self) -> List[float]:
        return [self.price, self.size]


@dataclass(frozen=True)
class OrderBookState:
    """Complete order book snapshot at a point in time"""
    bids: Tuple[PriceLevel, ...] = ()
    asks: Tuple[PriceLevel, ...] = ()
    tick_size: Optional[float] = None
    min_order_size: Optional[float] = None
    sequence: Optional[int] = None
    hash: Optional[str] = None
    timestamp: Optional[float] = None
    last_updated: float = field(default_factory=time.time)

    @classmethod
    def from_levels(cls,
                    bids: Iterable[Tuple[float, float]],
                    asks: Iterable[Tuple[float, float]],
                    **kwargs) -> "OrderBookState":
        """Build a state from unsorted (price, size) pairs; later duplicates win, size 0 drops"""
        bid_map: Dict[float, float] = {}
        ask_map: Dict[float, float] = {}
        for price, size in bids:
            bid_map[price] = size
        for price, size in asks:
            ask_map[price] = size
        return cls(
            bids=tuple(PriceLevel(p, s) for p, s in sorted(bid_map.items(), reverse=True) if s > 0),
            asks=tuple(PriceLevel(p, s) for p, s in sorted(ask_map.items()) if s > 0),
            **kwargs
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "OrderBookState":
        """
        Normalize a REST ``GET /book`` response.
        Format: {'bids': [[price, size]] | [{'price','size'}], 'asks': ..., 'tick_size', 'min_order_size', 'hash', 'timestamp'}
        """
        bids = payload.get('bids')
        if bids is None:
            bids = payload.get('buys')
        asks = payload.get('asks')
        if asks is None:
            asks = payload.get('sells')
        sequence = as_number(payload.get('sequence', payload.get('seq')))
        book_hash = payload.get('hash')
        return cls.from_levels(
            normalize_levels(bids or []),
            normalize_levels(asks or []),
            tick_size=as_number(payload.get('tick_size')),
            min_order_size=as_number(payload.get('min_order_size')),
            sequence=int(sequence) if sequence is not None else None,
            hash=book_hash if isinstance(book_hash, str) else None,
            timestamp=as_number(payload.get('timestamp')),
        )

    @classmethod
    def from_snapshot(cls, snapshot: BookSnapshot) -> "OrderBookState":
        """Build from a decoded full-book feed frame"""
        return cls.from_levels(
            snapshot.bids,
            snapshot.asks,
            tick_size=snapshot.tick_size,
            sequence=snapshot.sequence,
            hash=snapshot.hash,
            timestamp=snapshot.timestamp,
        )

    def best_bid(self) -> Optional[float]:
        return self.bids[0].price if self.bids else None

    def best_ask(self) -> Optional[float]:
        return self.asks[0].price if self.asks else None

    def midprice(self) -> Optional[float]:
        """Calculate midprice from best bid/ask"""
        if not self.bids or not self.asks:
            return None
        return (self.bids[0].price + self.asks[0].price) / 2.0

    def spread(self) -> Optional[float]:
        """Calculate bid-ask spread"""
        if not self.bids or not self.asks:
            return None
        return self.asks[0].price - self.bids[0].price

    def depth(self) -> float:
        """Total resting size on both sides"""
        return sum(level.size for level in self.bids) + sum(level.size for level in self.asks)

    def top(self, levels: int) -> "OrderBookState":
        """The same book truncated to ``levels`` per side"""
        return OrderBookState(
            bids=self.bids[:levels],
            asks=self.asks[:levels],
            tick_size=self.tick_size,
            min_order_size=self.min_order_size,
            sequence=self.sequence,
            hash=self.hash,
            timestamp=self.timestamp,
            last_updated=self.last_updated,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'bids': [level.to_list() for level in self.bids],
            'asks': [level.to_list() for level in self.asks],
            'tick_size': self.tick_size,
            'min_order_size': self.min_order_size,
            'sequence': self.sequence,
            'hash': self.hash,
            'timestamp': self.timestamp,
            'last_updated': self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderBookState":
        """Inverse of ``to_dict``"""
        return cls.from_levels(
            [(float(p), float(s)) for p, s in data.get('bids', [])],
            [(float(p), float(s)) for p, s in data.get('asks', [])],
            tick_size=data.get('tick_size'),
            min_order_size=data.get('min_order_size'),
            sequence=data.get('sequence'),
            hash=data.get('hash'),
            timestamp=data.get('timestamp'),
            last_updated=data.get('last_updated', time.time()),
        )


class _BookSide:
    """One side of the ladder: price -> size with a sorted price index"""

    def __init__(self, descending: bool):
        self.descending = descending
        self.sizes: Dict[float, float] = {}
        self._prices: List[float] = []  # always ascending

    def __len__(self) -> int:
        return len(self.sizes)

    def set(self, price: float, size: float):
        if size <= 0:
            if self.sizes.pop(price, None) is not None:
                index = bisect_left(self._prices, price)
                del self._prices[index]
            return
        if price not in self.sizes:
            insort(self._prices, price)
        self.sizes[price] = size

    def best(self) -> Optional[float]:
        if not self._prices:
            return None
        return self._prices[-1] if self.descending else self._prices[0]

    def levels(self, limit: Optional[int] = None) -> Tuple[PriceLevel, ...]:
        prices = reversed(self._prices) if self.descending else iter(self._prices)
        result = []
        for price in prices:
            if limit is not None and len(result) >= limit:
                break
            result.append(PriceLevel(price, self.sizes[price]))
        return tuple(result)

    def clear(self):
        self.sizes.clear()
        self._prices.clear()


class OrderBook:
    """
    Working order book for one instrument.

    Continuity rules, checked per diff on whichever marker the diff carries
    (sequence first, then previous hash, then timestamp):
    1. sequence must be exactly last sequence + 1
    2. prev_hash must equal the hash of the last applied state
    3. timestamp must not go backwards
    A violation raises GapDetected and leaves the book untouched.
    """

    def __init__(self, instrument_id: str):
        self.instrument_id = instrument_id
        self.bids = _BookSide(descending=True)
        self.asks = _BookSide(descending=False)
        self.tick_size: Optional[float] = None
        self.min_order_size: Optional[float] = None

        # Sequencing markers
        self.sequence: Optional[int] = None
        self.hash: Optional[str] = None
        self.timestamp: Optional[float] = None
        self.last_updated: float = 0.0

        self.stats = {
            'total_updates': 0,
            'duplicates': 0,
            'gaps': 0,
            'snapshot_count': 0
        }

    @classmethod
    def from_state(cls, instrument_id: str, state: OrderBookState) -> "OrderBook":
        book = cls(instrument_id)
        book.load(state)
        return book

    def load(self, state: OrderBookState):
        """Replace the whole ladder with a baseline"""
        self.bids.clear()
        self.asks.clear()
        for level in state.bids:
            self.bids.set(level.price, level.size)
        for level in state.asks:
            self.asks.set(level.price, level.size)
        self.tick_size = state.tick_size
        self.min_order_size = state.min_order_size
        self.sequence = state.sequence
        self.hash = state.hash
        self.timestamp = state.timestamp
        self.last_updated = time.time()
        self.stats['snapshot_count'] += 1

    def covers(self, diff: PriceChange) -> bool:
        """True if ``diff`` is already reflected in this book (older than the baseline)"""
        if diff.sequence is not None and self.sequence is not None:
            return diff.sequence <= self.sequence
        if diff.hash is not None and diff.hash == self.hash:
            return True
        if diff.timestamp is not None and self.timestamp is not None:
            return diff.timestamp < self.timestamp
        return False

    def _check_continuity(self, diff: PriceChange) -> bool:
        if diff.sequence is not None:
            if self.sequence is not None and diff.sequence != self.sequence + 1:
                raise GapDetected(self.instrument_id, f"sequence gap {self.sequence}->{diff.sequence}")
            return True

        if diff.prev_hash is not None:
            if self.hash is not None and diff.prev_hash != self.hash:
                raise GapDetected(self.instrument_id, f"hash mismatch {self.hash}!={diff.prev_hash}")
            return True

        if diff.hash is not None and diff.hash == self.hash:
            return False

        if diff.timestamp is not None and self.timestamp is not None and diff.timestamp < self.timestamp:
            raise GapDetected(self.instrument_id, f"timestamp reorder {self.timestamp}->{diff.timestamp}")
        return True

    def apply(self, diff: PriceChange) -> bool:
        """
        Apply an incremental update.

        Returns False for a duplicate that was skipped.

        Raises:
            GapDetected: the diff does not continue this book
        """
        try:
            fresh = self._check_continuity(diff)
        except GapDetected:
            self.stats['gaps'] += 1
            raise

        if not fresh:
            self.stats['duplicates'] += 1
            return False

        for change in diff.changes:
            side = self.bids if change.side is Side.BUY else self.asks
            side.set(change.price, change.size)

        if diff.sequence is not None:
            self.sequence = diff.sequence
        if diff.hash is not None:
            self.hash = diff.hash
        if diff.timestamp is not None:
            self.timestamp = max(diff.timestamp, self.timestamp or diff.timestamp)
        self.last_updated = time.time()
        self.stats['total_updates'] += 1
        return True

    def best_bid(self) -> Optional[float]:
        return self.bids.best()

    def best_ask(self) -> Optional[float]:
        return self.asks.best()

    def is_crossed(self) -> bool:
        best_bid, best_ask = self.best_bid(), self.best_ask()
        return best_bid is not None and best_ask is not None and best_bid >= best_ask

    def snapshot(self, depth: Optional[int] = None) -> OrderBookState:
        """Immutable copy of the current ladder, optionally truncated per side"""
        return OrderBookState(
            bids=self.bids.levels(depth),
            asks=self.asks.levels(depth),
            tick_size=self.tick_size,
            min_order_size=self.min_order_size,
            sequence=self.sequence,
            hash=self.hash,
            timestamp=self.timestamp,
            last_updated=self.last_updated,
        )

    def get_statistics(self) -> Dict:
        return {
            **self.stats,
            'current_levels': {'bids': len(self.bids), 'asks': len(self.asks)},
            'sequence': self.sequence,
            'hash': self.hash,
            'best_bid': self.best_bid(),
            'best_ask': self.best_ask(),
        }
