"""
Order Book Synchronizer
=======================

Reconciles REST order book baselines with streaming diffs, per instrument.

All store mutations happen in one consumer task that drains a single
asyncio.Queue. Feed handlers and baseline tasks only enqueue, so updates are
applied in wire order for feed frames and completion order for REST results.

Lifecycle of one instrument:
    idle -> loading -> synced
    synced -(gap)-> resyncing -> synced
    synced -(feed unhealthy for reconcile_ms)-> resyncing -> synced
    loading -(venue has no book)-> no_orderbook -(full book frame)-> synced
    no_orderbook -(no_orderbook_cooldown_ms)-> loading

Resync baselines of one instrument start at least ``resync_cooldown_ms`` apart.
"""

import asyncio
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from .api import Instrument, MarketDataApi
from .feed_client import ConnectionState, ConnectionStatus, FeedHandlers
from .http_client import backoff_delay_ms
from .messages import BestBidAsk, BookSnapshot, LastTrade, PriceChange, TickSizeChange
from .order_book import OrderBook, OrderBookState
from ..state.market_state import MarketState, SyncStatus
from ..state.store import MarketStateStore
from ..utils.config import HttpConfig, SyncConfig
from ..utils.errors import GapDetected, MarketFeedError, ValidationError, get_error_info
from ..utils.logger import get_logger


@dataclass(frozen=True)
class BaselineResult:
    """Outcome of one baseline load, delivered through the queue"""
    instrument_id: str
    generation: int
    book: Optional[OrderBookState] = None
    no_orderbook: bool = False
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class HistoryResult:
    instrument_id: str
    points: Tuple[Tuple[float, float], ...]


@dataclass(frozen=True)
class MidpointResult:
    instrument_id: str
    price: float


@dataclass(frozen=True)
class MaintenanceTick:
    """Asks the consumer to run the reconcile / re-probe pass"""


@dataclass
class _InstrumentSync:
    """Synchronizer-private bookkeeping for one instrument"""
    instrument_id: str
    pending: Deque[PriceChange]
    book: Optional[OrderBook] = None
    task: Optional[asyncio.Task] = None
    generation: int = 0
    history_task: Optional[asyncio.Task] = field(default=None, repr=False)
    midpoint_task: Optional[asyncio.Task] = field(default=None, repr=False)
    # Clock seconds; resync = when the last resync baseline starts
    last_resync_at: float = 0.0
    last_reconcile_at: float = 0.0

    @property
    def loading(self) -> bool:
        return self.task is not None and not self.task.done()

    def background(self) -> List[asyncio.Task]:
        tasks = (self.task, self.history_task, self.midpoint_task)
        return [task for task in tasks if task is not None and not task.done()]


class OrderBookSynchronizer:
    """
    Single writer for order book state.

    Baseline failures are retried with exponential backoff; once
    ``resync_max_attempts`` is exhausted the instrument degrades to
    ``no_orderbook`` rather than failing the pipeline.

    ``clock`` must be the store's clock: feed and REST timestamps on
    MarketState are compared against it.
    """

    def __init__(self,
                 api: MarketDataApi,
                 store: MarketStateStore,
                 config: Optional[SyncConfig] = None,
                 http_config: Optional[HttpConfig] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.time):
        self.api = api
        self.store = store
        self.config = config or SyncConfig()
        self.http_config = http_config or HttpConfig()
        self.queue: asyncio.Queue = asyncio.Queue()
        self.logger = get_logger('synchronizer')

        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock
        self._syncs: Dict[str, _InstrumentSync] = {}

        self.stats = {
            'events': 0,
            'diffs_applied': 0,
            'diffs_buffered': 0,
            'diffs_dropped': 0,
            'duplicates': 0,
            'snapshots': 0,
            'baselines': 0,
            'resyncs': 0,
            'resyncs_deferred': 0,
            'reconciles': 0,
            'reprobes': 0,
            'no_orderbook': 0,
            'baseline_errors': 0,
        }

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def handlers(self) -> FeedHandlers:
        """Feed callbacks that enqueue events for the consumer task"""
        return FeedHandlers(on_update=self.queue.put_nowait, on_status=self.queue.put_nowait)

    def track(self, instruments: Iterable[Instrument], volumes: Optional[Dict[str, float]] = None) -> List[str]:
        """Register instruments in the store and request their baselines"""
        added = self.store.register(instruments, volumes)
        for instrument_id in added:
            self._syncs[instrument_id] = _InstrumentSync(
                instrument_id, deque(maxlen=self.config.pending_limit)
            )
            self._spawn_baseline(instrument_id, SyncStatus.LOADING)
        return added

    async def untrack(self, instrument_ids: Iterable[str]):
        for instrument_id in list(instrument_ids):
            sync = self._syncs.pop(instrument_id, None)
            if sync is None:
                continue
            await self._cancel(*sync.background())
            self.store.evict(instrument_id)

    def request_history(self, instrument_id: str, interval: Optional[str] = None, fidelity: Optional[int] = None):
        """Fetch price history in the background; the result arrives via the queue"""
        sync = self._syncs.get(instrument_id)
        if sync is None or (sync.history_task is not None and not sync.history_task.done()):
            return
        sync.history_task = asyncio.create_task(self._load_history(instrument_id, interval, fidelity))

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def run(self):
        """Consume the queue until cancelled"""
        self.logger.info("Synchronizer started")
        try:
            while True:
                item = await self.queue.get()
                try:
                    self.apply(item)
                except Exception as e:
                    self.logger.error(f"Failed to apply {type(item).__name__}: {get_error_info(e)}")
                finally:
                    self.queue.task_done()
        finally:
            self.logger.info("Synchronizer stopped")

    async def maintain(self):
        """Enqueue a maintenance tick every ``maintenance_interval_ms`` until cancelled"""
        while True:
            await self._sleep(self.config.maintenance_interval_ms / 1000.0)
            self.queue.put_nowait(MaintenanceTick())

    async def drain(self):
        """Wait for in-flight baselines and apply everything queued"""
        while True:
            tasks = [task for sync in self._syncs.values() for task in sync.background()]
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            if self.queue.empty() and not tasks:
                return
            while not self.queue.empty():
                self.apply(self.queue.get_nowait())
                self.queue.task_done()

    async def stop(self):
        await self._cancel(*(task for sync in self._syncs.values() for task in sync.background()))

    def apply(self, item: Any):
        """Apply one queued item; the only place store state changes"""
        self.stats['events'] += 1
        if isinstance(item, PriceChange):
            self._on_price_change(item)
        elif isinstance(item, BookSnapshot):
            self._on_snapshot(item)
        elif isinstance(item, BestBidAsk):
            self._on_best_bid_ask(item)
        elif isinstance(item, LastTrade):
            self._on_last_trade(item)
        elif isinstance(item, TickSizeChange):
            self._on_tick_size(item)
        elif isinstance(item, BaselineResult):
            self._on_baseline(item)
        elif isinstance(item, HistoryResult):
            self.store.set_history(item.instrument_id, item.points)
        elif isinstance(item, MidpointResult):
            self.store.set_rest_midpoint(item.instrument_id, item.price)
        elif isinstance(item, MaintenanceTick):
            self.reconcile()
        elif isinstance(item, ConnectionStatus):
            self._on_connection_status(item)
        else:
            self.logger.debug(f"Ignoring {type(item).__name__}")

    # ------------------------------------------------------------------
    # Feed events
    # ------------------------------------------------------------------

    def _on_price_change(self, diff: PriceChange):
        sync = self._syncs.get(diff.instrument_id)
        if sync is None:
            return
        self.store.touch_ws(diff.instrument_id)

        # Held for replay onto the baseline, also while a live book is refreshed
        if sync.loading:
            if len(sync.pending) == sync.pending.maxlen:
                self.stats['diffs_dropped'] += 1
            sync.pending.append(diff)
            self.stats['diffs_buffered'] += 1

        if sync.book is None:
            self._apply_quote(diff)
            return

        try:
            applied = sync.book.apply(diff)
        except GapDetected as e:
            self.logger.warning(f"Gap on {diff.instrument_id}: {e.reason}, resyncing")
            self._resync(sync)
            return

        if not applied:
            self.stats['duplicates'] += 1
            return
        self.stats['diffs_applied'] += 1
        self._publish(sync)
        if not diff.changes:
            self._apply_quote(diff)

    def _on_snapshot(self, snapshot: BookSnapshot):
        sync = self._syncs.get(snapshot.instrument_id)
        if sync is None:
            return
        self.stats['snapshots'] += 1

        # A full book supersedes any baseline still in flight and everything buffered
        if sync.loading:
            sync.generation += 1
            sync.task.cancel()
            sync.task = None
        sync.pending.clear()

        sync.book = OrderBook.from_state(snapshot.instrument_id, OrderBookState.from_snapshot(snapshot))
        self.store.touch_ws(snapshot.instrument_id)
        self._mark_synced(sync)

    def _on_best_bid_ask(self, event: BestBidAsk):
        if event.instrument_id not in self._syncs:
            return
        self.store.touch_ws(event.instrument_id)
        if event.best_bid is not None:
            self.store.set_best_bid(event.instrument_id, event.best_bid)
        if event.best_ask is not None:
            self.store.set_best_ask(event.instrument_id, event.best_ask)

    def _on_last_trade(self, event: LastTrade):
        if event.instrument_id not in self._syncs:
            return
        self.store.touch_ws(event.instrument_id)
        self.store.set_last_trade(event.instrument_id, event.price)

    def _on_tick_size(self, event: TickSizeChange):
        sync = self._syncs.get(event.instrument_id)
        if sync is None or sync.book is None or event.tick_size is None:
            return
        sync.book.tick_size = event.tick_size
        self._publish(sync)

    def _on_connection_status(self, status: ConnectionStatus):
        for instrument_id in status.instrument_ids:
            if instrument_id in self._syncs:
                self.store.set_ws_status(instrument_id, status.state)

    def _apply_quote(self, diff: PriceChange):
        if diff.best_bid is not None:
            self.store.set_best_bid(diff.instrument_id, diff.best_bid)
        if diff.best_ask is not None:
            self.store.set_best_ask(diff.instrument_id, diff.best_ask)

    # ------------------------------------------------------------------
    # Baselines
    # ------------------------------------------------------------------

    def _on_baseline(self, result: BaselineResult):
        sync = self._syncs.get(result.instrument_id)
        if sync is None or result.generation != sync.generation:
            # Superseded by a newer baseline or a full book frame
            return
        sync.task = None
        self.store.set_loading(result.instrument_id, False)
        self.store.touch_rest(result.instrument_id)

        if result.no_orderbook:
            sync.book = None
            sync.pending.clear()
            self.stats['no_orderbook'] += 1
            if result.error is not None:
                self.stats['baseline_errors'] += 1
                self.logger.warning(f"Baseline for {result.instrument_id} failed, degrading to no orderbook: {result.error}")
            else:
                self.logger.debug(f"{result.instrument_id} has no orderbook")
            self.store.set_no_orderbook(result.instrument_id, True)
            self.store.set_sync_status(result.instrument_id, SyncStatus.NO_ORDERBOOK)
            return

        book = OrderBook.from_state(result.instrument_id, result.book)
        pending, sync.pending = list(sync.pending), deque(maxlen=self.config.pending_limit)
        for diff in pending:
            if book.covers(diff):
                continue
            try:
                book.apply(diff)
            except GapDetected as e:
                self.logger.warning(f"Buffered diff does not continue baseline for {result.instrument_id}: {e.reason}")
                sync.book = None
                self._resync(sync)
                return

        sync.book = book
        self.stats['baselines'] += 1
        self._mark_synced(sync)

    def _mark_synced(self, sync: _InstrumentSync):
        state = self.store.get(sync.instrument_id)
        if state is not None:
            if state.no_orderbook:
                self.store.set_no_orderbook(sync.instrument_id, False)
            if state.loading:
                self.store.set_loading(sync.instrument_id, False)
        self._publish(sync)
        self.store.set_sync_status(sync.instrument_id, SyncStatus.SYNCED)

    def _publish(self, sync: _InstrumentSync):
        self.store.set_orderbook(sync.instrument_id, sync.book.snapshot(self.config.orderbook_depth))

    def _resync(self, sync: _InstrumentSync):
        self.stats['resyncs'] += 1
        sync.book = None
        sync.pending.clear()
        self.store.set_orderbook(sync.instrument_id, None)

        now = self._clock()
        delay_ms = self.config.resync_delay_ms
        if sync.last_resync_at:
            remaining_ms = self.config.resync_cooldown_ms - (now - sync.last_resync_at) * 1000.0
            if remaining_ms > delay_ms:
                self.stats['resyncs_deferred'] += 1
                self.logger.info(f"Resync of {sync.instrument_id} deferred {remaining_ms:.0f}ms (cooldown)")
                delay_ms = remaining_ms
        sync.last_resync_at = now + delay_ms / 1000.0
        self._spawn_baseline(sync.instrument_id, SyncStatus.RESYNCING, delay_ms)

    def _spawn_baseline(self, instrument_id: str, status: SyncStatus, delay_ms: float = 0):
        sync = self._syncs[instrument_id]
        if sync.loading:
            sync.task.cancel()
        sync.generation += 1
        self.store.set_loading(instrument_id, True)
        self.store.set_sync_status(instrument_id, status)
        sync.task = asyncio.create_task(
            self.load_baseline(instrument_id, sync.generation, delay_ms),
            name=f"baseline-{instrument_id}",
        )

    async def load_baseline(self, instrument_id: str, generation: int, delay_ms: float = 0):
        """
        Fetch one baseline and enqueue the result.

        Transient failures are retried with backoff up to ``resync_max_attempts``
        attempts; the final failure is reported as a soft no-orderbook result.
        """
        try:
            if delay_ms:
                await self._sleep(delay_ms / 1000.0)

            attempt = 0
            while True:
                try:
                    payload = await self.api.get_orderbook(instrument_id, allow_no_orderbook=True)
                    if payload is not None and not isinstance(payload, dict):
                        raise ValidationError(f"Unexpected book payload for {instrument_id}",
                                              {'type': type(payload).__name__})
                except MarketFeedError as e:
                    attempt += 1
                    if attempt >= self.config.resync_max_attempts:
                        result = BaselineResult(instrument_id, generation, no_orderbook=True, error=e)
                        break
                    delay = backoff_delay_ms(attempt - 1, self.http_config.backoff_base_ms,
                                             self.http_config.backoff_jitter_ms, self._rng)
                    self.logger.debug(f"Baseline for {instrument_id} failed ({e}), retry in {delay:.0f}ms")
                    await self._sleep(delay / 1000.0)
                    continue

                if payload is None:
                    result = BaselineResult(instrument_id, generation, no_orderbook=True)
                else:
                    result = BaselineResult(instrument_id, generation, book=OrderBookState.from_payload(payload))
                break

            self.queue.put_nowait(result)
        except asyncio.CancelledError:
            sync = self._syncs.get(instrument_id)
            if sync is None or sync.generation == generation:
                self.store.set_loading(instrument_id, False)
            raise
        except Exception as e:
            # Every baseline ends in a result; loading never stays set
            self.logger.exception(f"Baseline for {instrument_id} crashed: {e!r}")
            self.queue.put_nowait(BaselineResult(instrument_id, generation, no_orderbook=True, error=e))

    async def _load_history(self, instrument_id: str, interval: Optional[str], fidelity: Optional[int]):
        try:
            points = await self.api.get_price_history(instrument_id, interval, fidelity)
        except MarketFeedError as e:
            self.logger.warning(f"Price history for {instrument_id} unavailable: {e}")
            return
        self.queue.put_nowait(HistoryResult(instrument_id, tuple(points)))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reconcile(self) -> List[str]:
        """
        One maintenance pass over idle instruments; returns the ids refreshed.

        - ``no_orderbook`` instruments are re-probed once
          ``no_orderbook_cooldown_ms`` has passed since they were flagged
        - instruments whose feed is unhealthy (connection not ``connected``,
          or silent for ``ws_stale_ms``) get a REST baseline and midpoint at
          most every ``reconcile_ms``
        """
        now = self._clock()
        refreshed = []
        for sync in list(self._syncs.values()):
            if sync.loading:
                continue
            state = self.store.get(sync.instrument_id)
            if state is None:
                continue

            if state.no_orderbook:
                if (now - state.last_no_orderbook_at) * 1000.0 < self.config.no_orderbook_cooldown_ms:
                    continue
                self.stats['reprobes'] += 1
                self.logger.debug(f"Re-probing {sync.instrument_id} for an orderbook")
                self._spawn_baseline(sync.instrument_id, SyncStatus.LOADING)
            else:
                if self._feed_healthy(state, now):
                    continue
                last_rest = max(state.last_rest_at, sync.last_reconcile_at)
                if (now - last_rest) * 1000.0 < self.config.reconcile_ms:
                    continue
                self.stats['reconciles'] += 1
                self.logger.info(f"Feed unhealthy for {sync.instrument_id}, refreshing over REST")
                self._spawn_baseline(sync.instrument_id, SyncStatus.RESYNCING)

            sync.last_reconcile_at = now
            self._spawn_midpoint(sync)
            refreshed.append(sync.instrument_id)
        return refreshed

    def _feed_healthy(self, state: MarketState, now: float) -> bool:
        if state.ws_status is not ConnectionState.CONNECTED or not state.last_ws_at:
            return False
        return (now - state.last_ws_at) * 1000.0 < self.config.ws_stale_ms

    def _spawn_midpoint(self, sync: _InstrumentSync):
        if sync.midpoint_task is not None and not sync.midpoint_task.done():
            return
        sync.midpoint_task = asyncio.create_task(self._load_midpoint(sync.instrument_id))

    async def _load_midpoint(self, instrument_id: str):
        try:
            price = await self.api.get_midpoint(instrument_id)
        except MarketFeedError as e:
            self.logger.debug(f"Midpoint for {instrument_id} unavailable: {e}")
            return
        if price is not None:
            self.queue.put_nowait(MidpointResult(instrument_id, price))

    async def _cancel(self, *tasks: Optional[asyncio.Task]):
        live = [task for task in tasks if task is not None and not task.done()]
        for task in live:
            task.cancel()
        if live:
            await asyncio.gather(*live, return_exceptions=True)

    def get_statistics(self) -> Dict:
        return {
            **self.stats,
            'instruments': len(self._syncs),
            'loading': sum(1 for sync in self._syncs.values() if sync.loading),
            'synced': sum(1 for sync in self._syncs.values() if sync.book is not None),
        }
