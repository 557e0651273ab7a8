"""
Market State Store
==================

Single-writer, read-many map of instrument id -> MarketState.

Every mutation replaces the instrument's frozen snapshot and emits a
MarketChange to the registered listeners, plus one per derived field it moved
(quotes refreshed from a book, a book dropped with no_orderbook). Readers
always see a complete snapshot, never a half-applied update.
"""

import json
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .market_state import MarketState, SyncStatus
from ..data_ingestion.api import Instrument
from ..data_ingestion.feed_client import ConnectionState
from ..data_ingestion.order_book import OrderBookState
from ..utils.logger import get_logger


@dataclass(frozen=True)
class MarketChange:
    instrument_id: str
    field: str
    previous_value: Any
    new_value: Any


Listener = Callable[[MarketChange], None]


class MarketStateStore:
    """
    Per-instrument state with change notification.

    Mutators are called only from the synchronizer task. Listener errors are
    logged and never reach the writer.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._states: Dict[str, MarketState] = {}
        self._listeners: List[Listener] = []
        self._clock = clock
        self.logger = get_logger('market_store')

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def __contains__(self, instrument_id: str) -> bool:
        return instrument_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def get(self, instrument_id: str) -> Optional[MarketState]:
        return self._states.get(instrument_id)

    def ids(self) -> List[str]:
        return list(self._states)

    def snapshot(self) -> Dict[str, MarketState]:
        return dict(self._states)

    def to_json(self, indent: Optional[int] = None) -> str:
        """Whole store as JSON, keyed by instrument id"""
        return json.dumps(
            {instrument_id: state.to_dict() for instrument_id, state in self._states.items()},
            indent=indent,
        )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, change: MarketChange):
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                self.logger.error(f"State listener failed on {change.field} for {change.instrument_id}: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def register(self, instruments: Iterable[Instrument], volumes: Optional[Dict[str, float]] = None) -> List[str]:
        """Create state for unseen instruments; returns the ids added"""
        volumes = volumes or {}
        added = []
        for instrument in instruments:
            if instrument.instrument_id in self._states:
                continue
            state = MarketState.for_instrument(instrument, volumes.get(instrument.market_id))
            self._states[instrument.instrument_id] = state
            added.append(instrument.instrument_id)
            self._emit(MarketChange(instrument.instrument_id, 'registered', None, state))
        return added

    def evict(self, instrument_id: str) -> Optional[MarketState]:
        state = self._states.pop(instrument_id, None)
        if state is not None:
            self._emit(MarketChange(instrument_id, 'evicted', state, None))
        return state

    def clear(self):
        for instrument_id in list(self._states):
            self.evict(instrument_id)

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    def _update(self,
                instrument_id: str,
                field: str,
                value: Any,
                announce: Tuple[str, ...] = (),
                **extra) -> Optional[MarketState]:
        """
        Replace one field (plus bookkeeping fields) and emit the change.

        Fields named in ``announce`` are among ``extra`` and get their own
        change when their value actually moved.
        """
        state = self._states.get(instrument_id)
        if state is None:
            return None
        previous = getattr(state, field)
        updated = replace(state, **{field: value}, updated_at=self._clock(), **extra)
        self._states[instrument_id] = updated
        self._emit(MarketChange(instrument_id, field, previous, value))
        for name in announce:
            before, after = getattr(state, name), getattr(updated, name)
            if before != after:
                self._emit(MarketChange(instrument_id, name, before, after))
        return updated

    def set_best_bid(self, instrument_id: str, price: Optional[float]) -> Optional[MarketState]:
        return self._update(instrument_id, 'best_bid', price)

    def set_best_ask(self, instrument_id: str, price: Optional[float]) -> Optional[MarketState]:
        return self._update(instrument_id, 'best_ask', price)

    def set_last_trade(self, instrument_id: str, price: float) -> Optional[MarketState]:
        state = self._states.get(instrument_id)
        if state is None:
            return None
        return self._update(instrument_id, 'last_trade', price, last_trade_prev=state.last_trade)

    def set_orderbook(self, instrument_id: str, book: Optional[OrderBookState]) -> Optional[MarketState]:
        """Store a book snapshot; a present book also refreshes best bid/ask"""
        if book is None:
            return self._update(instrument_id, 'orderbook', None)
        return self._update(instrument_id, 'orderbook', book, ('best_bid', 'best_ask'),
                            best_bid=book.best_bid(), best_ask=book.best_ask())

    def set_no_orderbook(self, instrument_id: str, flag: bool) -> Optional[MarketState]:
        if flag:
            return self._update(instrument_id, 'no_orderbook', True, ('orderbook',),
                                orderbook=None, last_no_orderbook_at=self._clock())
        return self._update(instrument_id, 'no_orderbook', False)

    def set_loading(self, instrument_id: str, loading: bool) -> Optional[MarketState]:
        return self._update(instrument_id, 'loading', loading)

    def set_sync_status(self, instrument_id: str, status: SyncStatus) -> Optional[MarketState]:
        return self._update(instrument_id, 'sync_status', status)

    def set_ws_status(self, instrument_id: str, status: ConnectionState) -> Optional[MarketState]:
        return self._update(instrument_id, 'ws_status', status)

    def set_rest_midpoint(self, instrument_id: str, price: Optional[float]) -> Optional[MarketState]:
        return self._update(instrument_id, 'rest_midpoint', price, last_rest_at=self._clock())

    def set_history(self, instrument_id: str, points: Iterable[Tuple[float, float]]) -> Optional[MarketState]:
        return self._update(instrument_id, 'history', tuple(points), last_rest_at=self._clock())

    def touch_ws(self, instrument_id: str) -> Optional[MarketState]:
        return self._update(instrument_id, 'last_ws_at', self._clock())

    def touch_rest(self, instrument_id: str) -> Optional[MarketState]:
        return self._update(instrument_id, 'last_rest_at', self._clock())
