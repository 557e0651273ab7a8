"""
Per-instrument market state and the metrics derived from it.

``MarketState`` is an immutable snapshot; the store replaces it wholesale on
every mutation. Derived values (midpoint, spread, depth, staleness, health)
are functions of a snapshot and are never stored.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..data_ingestion.api import Instrument
from ..data_ingestion.feed_client import ConnectionState
from ..data_ingestion.order_book import OrderBookState


class SyncStatus(Enum):
    """Order book synchronization state of one instrument"""
    IDLE = "idle"
    LOADING = "loading"
    SYNCED = "synced"
    RESYNCING = "resyncing"
    NO_ORDERBOOK = "no_orderbook"


@dataclass(frozen=True)
class MarketState:
    instrument_id: str
    market_id: Optional[str] = None
    outcome: Optional[str] = None
    question: Optional[str] = None
    tick_size: Optional[float] = None

    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    last_trade: Optional[float] = None
    last_trade_prev: Optional[float] = None
    orderbook: Optional[OrderBookState] = None
    volume_24h: Optional[float] = None
    # Last REST /midpoint quote, shown when the book gives no midpoint
    rest_midpoint: Optional[float] = None
    history: Tuple[Tuple[float, float], ...] = ()

    no_orderbook: bool = False
    loading: bool = False
    sync_status: SyncStatus = SyncStatus.IDLE
    ws_status: ConnectionState = ConnectionState.OFF

    # Wall-clock seconds, 0 = never
    last_ws_at: float = 0.0
    last_rest_at: float = 0.0
    last_no_orderbook_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def for_instrument(cls, instrument: Instrument, volume_24h: Optional[float] = None) -> "MarketState":
        return cls(
            instrument_id=instrument.instrument_id,
            market_id=instrument.market_id,
            outcome=instrument.outcome,
            question=instrument.question,
            tick_size=instrument.tick_size,
            volume_24h=volume_24h,
            updated_at=time.time(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instrument_id': self.instrument_id,
            'market_id': self.market_id,
            'outcome': self.outcome,
            'question': self.question,
            'tick_size': self.tick_size,
            'best_bid': self.best_bid,
            'best_ask': self.best_ask,
            'midpoint': current_midpoint(self),
            'rest_midpoint': self.rest_midpoint,
            'last_trade': self.last_trade,
            'last_trade_prev': self.last_trade_prev,
            'orderbook': self.orderbook.to_dict() if self.orderbook is not None else None,
            'volume_24h': self.volume_24h,
            'history': [list(point) for point in self.history],
            'no_orderbook': self.no_orderbook,
            'loading': self.loading,
            'sync_status': self.sync_status.value,
            'ws_status': self.ws_status.value,
            'last_ws_at': self.last_ws_at,
            'last_rest_at': self.last_rest_at,
            'updated_at': self.updated_at,
            'health': health_score(self).to_dict(),
        }


def midpoint(best_bid: Optional[float], best_ask: Optional[float]) -> Optional[float]:
    """(bid + ask) / 2, or None when either side is missing"""
    if best_bid is None or best_ask is None:
        return None
    return (best_bid + best_ask) / 2.0


def current_midpoint(state: MarketState) -> Optional[float]:
    """Midpoint of the live quotes, falling back to the last REST midpoint"""
    value = midpoint(state.best_bid, state.best_ask)
    return value if value is not None else state.rest_midpoint


def spread(state: MarketState) -> Optional[float]:
    if state.best_bid is None or state.best_ask is None:
        return None
    return state.best_ask - state.best_bid


def depth(state: MarketState) -> float:
    return state.orderbook.depth() if state.orderbook is not None else 0.0


def staleness(state: MarketState, now: Optional[float] = None) -> Optional[float]:
    """Seconds since the last update from either source; None if never updated"""
    last = max(state.last_ws_at, state.last_rest_at)
    if not last:
        return None
    return max(0.0, (now if now is not None else time.time()) - last)


@dataclass(frozen=True)
class HealthScore:
    score: int
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {'score': self.score, 'label': self.label}


# (threshold, points), checked in order
SPREAD_BANDS = ((0.01, 35), (0.03, 25), (0.05, 15), (0.1, 5))
DEPTH_BANDS = ((10_000, 35), (5_000, 25), (1_000, 15), (100, 5))
VOLUME_BANDS = ((100_000, 30), (10_000, 20), (1_000, 10), (100, 5))
GRADES = ((80, "A"), (60, "B"), (40, "C"), (20, "D"))


def compute_health(spread_value: Optional[float],
                   depth_value: float,
                   volume: Optional[float],
                   no_orderbook: bool = False) -> HealthScore:
    """
    Score liquidity 0-100 from spread, depth and 24h volume.

    Spread scores when at or below a band; depth and volume score when
    strictly above one. An instrument without an order book is always N/A.
    """
    if no_orderbook:
        return HealthScore(0, "N/A")

    score = 0
    if spread_value is not None:
        score += next((points for limit, points in SPREAD_BANDS if spread_value <= limit), 0)
    score += next((points for limit, points in DEPTH_BANDS if depth_value > limit), 0)
    score += next((points for limit, points in VOLUME_BANDS if (volume or 0) > limit), 0)

    label = next((grade for floor, grade in GRADES if score >= floor), "F")
    return HealthScore(score, label)


def health_score(state: MarketState) -> HealthScore:
    return compute_health(spread(state), depth(state), state.volume_24h, state.no_orderbook)
