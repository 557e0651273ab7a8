"""
Data Ingestion Module
=====================

Market data ingestion for the venue's REST and streaming APIs:
- Per-endpoint rate limiting with fixed windows
- Retrying JSON client with no-orderbook classification
- Sharded WebSocket feed with reconnect backoff
- Order book maintenance with sequence/hash/timestamp gap detection
"""

from .rate_limiter import RateLimiter, RateLimitRule, RateLimitTable
from .http_client import HttpClient, is_no_orderbook_error
from .api import Instrument, Market, MarketDataApi
from .order_book import OrderBook, OrderBookState, PriceLevel
from .feed_client import ConnectionState, FeedClient, FeedHandle, FeedHandlers
from .synchronizer import OrderBookSynchronizer

__all__ = [
    'RateLimiter',
    'RateLimitRule',
    'RateLimitTable',
    'HttpClient',
    'is_no_orderbook_error',
    'Instrument',
    'Market',
    'MarketDataApi',
    'OrderBook',
    'OrderBookState',
    'PriceLevel',
    'ConnectionState',
    'FeedClient',
    'FeedHandle',
    'FeedHandlers',
    'OrderBookSynchronizer'
]
