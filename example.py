"""
polyfeed Example
================

Wires the complete ingestion pipeline and streams live market data.
This example shows how to:
1. Discover active markets
2. Load order book baselines and price history
3. Stream feed updates into the state store
4. Print a liquidity summary and export the store as JSON
"""

import asyncio
import time

from polyfeed.data_ingestion.api import MarketDataApi
from polyfeed.data_ingestion.feed_client import FeedClient
from polyfeed.data_ingestion.http_client import HttpClient
from polyfeed.data_ingestion.rate_limiter import RateLimiter
from polyfeed.data_ingestion.synchronizer import OrderBookSynchronizer
from polyfeed.state.market_state import current_midpoint, health_score, spread
from polyfeed.state.store import MarketStateStore
from polyfeed.utils.config import Config
from polyfeed.utils.errors import FatalInitError
from polyfeed.utils.logger import setup_development_logging


def print_summary(store: MarketStateStore, limit: int = 10):
    """Print one line per instrument: quotes, spread and health grade"""
    print(f"\n📊 MARKET SUMMARY ({len(store)} instruments)")
    print("=" * 72)
    for state in list(store.snapshot().values())[:limit]:
        mid = current_midpoint(state)
        width = spread(state)
        health = health_score(state)
        label = (state.question or state.instrument_id)[:32]
        print(f"{label:<32} {state.outcome or '':<6} "
              f"mid={mid if mid is None else f'{mid:.3f}'} "
              f"spread={width if width is None else f'{width:.3f}'} "
              f"{health.label:>3} ({health.score}) {state.sync_status.value}")


async def run(duration_s: float = 30.0, market_limit: int = 5):
    config = Config.from_env()

    # Instances are created once here and injected everywhere else
    limiter = RateLimiter()
    async with HttpClient(limiter, config.http) as http:
        api = MarketDataApi(http, config)
        store = MarketStateStore()
        synchronizer = OrderBookSynchronizer(api, store, config.sync, config.http)
        feed = FeedClient(config.feed, config.venue.clob_ws_base)

        print("🔍 Discovering markets...")
        markets = await api.discover(limit=market_limit)
        instruments = [instrument for market in markets for instrument in market.instruments()]
        volumes = {market.market_id: market.volume_24h for market in markets if market.volume_24h is not None}
        print(f"Found {len(markets)} markets / {len(instruments)} instruments")

        consumer = asyncio.create_task(synchronizer.run())
        maintenance = asyncio.create_task(synchronizer.maintain())
        synchronizer.track(instruments, volumes)
        for instrument in instruments:
            synchronizer.request_history(instrument.instrument_id)

        handle = await feed.connect([i.instrument_id for i in instruments], synchronizer.handlers())

        started = time.time()
        try:
            while time.time() - started < duration_s:
                await asyncio.sleep(5)
                print_summary(store)
        finally:
            await handle.close()
            await synchronizer.stop()
            maintenance.cancel()
            consumer.cancel()
            await asyncio.gather(maintenance, consumer, return_exceptions=True)

        print(f"\n🔌 Feed connections: {handle.get_connection_stats()}")
        print(f"🔄 Synchronizer: {synchronizer.get_statistics()}")
        print(f"🌐 HTTP: {http.stats}")
        return store.to_json(indent=2)


def main():
    """Main demonstration function"""
    print("🚀 polyfeed Market Data Demonstration")
    print("=" * 60)

    setup_development_logging()

    try:
        exported = asyncio.run(run())
        print(f"\n✅ Exported {len(exported)} bytes of market state")
    except FatalInitError as e:
        print(f"\n❌ Venue unreachable: {e}")
    except KeyboardInterrupt:
        print("\n👋 Stopped")


if __name__ == "__main__":
    main()
