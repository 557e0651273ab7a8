"""
polyfeed
========

Real-time market data ingestion for the Polymarket CLOB.

Keeps a locally consistent per-instrument view (best bid/ask, order book
ladder, last trade) from a rate-limited REST API and a streaming feed.

Project Structure:
- polyfeed/data_ingestion: rate limiting, REST client, feed client, order book sync
- polyfeed/state: market state snapshots, derived metrics and the state store
- polyfeed/utils: configuration, logging and error types
"""

__version__ = "0.1.0"

from .utils.config import Config
from .data_ingestion.rate_limiter import RateLimiter
from .data_ingestion.http_client import HttpClient
from .data_ingestion.api import MarketDataApi
from .data_ingestion.feed_client import FeedClient
from .data_ingestion.synchronizer import OrderBookSynchronizer
from .state.store import MarketStateStore

__all__ = [
    "Config",
    "RateLimiter",
    "HttpClient",
    "MarketDataApi",
    "FeedClient",
    "OrderBookSynchronizer",
    "MarketStateStore"
]
