"""
Market Feed Configuration
"""

import os
from typing import Any, Dict, List
from pydantic import BaseModel, Field
from dotenv import load_dotenv

from .errors import ConfigError

# Load environment variables
load_dotenv()


class EndpointLimit(BaseModel):
    """Request budget for one host + path prefix"""
    host: str
    path: str
    limit: int = Field(gt=0)


class HostLimit(BaseModel):
    """Request budget shared by every path of a host"""
    host: str
    limit: int = Field(gt=0)


def _default_endpoint_limits() -> List[EndpointLimit]:
    clob = "clob.polymarket.com"
    gamma = "gamma-api.polymarket.com"
    data = "data-api.polymarket.com"
    return [
        EndpointLimit(host=clob, path="/book", limit=1500),
        EndpointLimit(host=clob, path="/books", limit=500),
        EndpointLimit(host=clob, path="/price", limit=1500),
        EndpointLimit(host=clob, path="/prices", limit=500),
        EndpointLimit(host=clob, path="/midpoint", limit=1500),
        EndpointLimit(host=clob, path="/prices-history", limit=1000),
        EndpointLimit(host=clob, path="/price_history", limit=1000),
        EndpointLimit(host=clob, path="/data/trades", limit=500),
        EndpointLimit(host=gamma, path="/events", limit=500),
        EndpointLimit(host=gamma, path="/markets", limit=300),
        EndpointLimit(host=data, path="/positions", limit=150),
        EndpointLimit(host=data, path="/trades", limit=200),
        EndpointLimit(host=data, path="/closed-positions", limit=150),
    ]


def _default_host_limits() -> List[HostLimit]:
    return [
        HostLimit(host="clob.polymarket.com", limit=9000),
        HostLimit(host="gamma-api.polymarket.com", limit=4000),
        HostLimit(host="data-api.polymarket.com", limit=1000),
    ]


class VenueConfig(BaseModel):
    """Venue endpoint configuration"""
    gamma_base: str = Field(default="https://gamma-api.polymarket.com", description="Market discovery API")
    clob_rest_base: str = Field(default="https://clob.polymarket.com", description="Order book REST API")
    clob_ws_base: str = Field(default="wss://ws-subscriptions-clob.polymarket.com/ws/market", description="Market data WebSocket")
    data_api_base: str = Field(default="https://data-api.polymarket.com", description="Trades/holders API")


class HttpConfig(BaseModel):
    """REST client configuration"""
    timeout_ms: int = Field(default=10_000, gt=0, description="Per-attempt timeout")
    retries: int = Field(default=3, ge=0, description="Retries after the first attempt on 429/5xx/network errors")
    backoff_base_ms: int = Field(default=200, ge=0, description="Retry backoff base, doubled per attempt")
    backoff_jitter_ms: int = Field(default=100, ge=0, description="Upper bound of random jitter added to backoff")
    window_ms: int = Field(default=10_000, gt=0, description="Rate-limit window shared by the venue budgets")
    default_limit: int = Field(default=50, gt=0, description="Conservative budget for unmatched hosts/paths")
    endpoint_limits: List[EndpointLimit] = Field(default_factory=_default_endpoint_limits)
    host_limits: List[HostLimit] = Field(default_factory=_default_host_limits)
    user_agent: str = Field(default="polyfeed/0.1", description="User-Agent header")


class FeedConfig(BaseModel):
    """Streaming feed configuration"""
    stale_ms: int = Field(default=15_000, gt=0, description="Silence after which a connection is annotated stale")
    dead_ms: int = Field(default=30_000, gt=0, description="Silence after which a connection is force-reconnected")
    reconnect_base_ms: int = Field(default=500, gt=0, description="First reconnect delay")
    reconnect_max_ms: int = Field(default=30_000, gt=0, description="Reconnect delay cap")
    reconnect_jitter_ms: int = Field(default=200, ge=0, description="Random jitter added to reconnect delay")
    ping_interval_s: float = Field(default=20.0, gt=0, description="Protocol-level ping interval")
    ping_timeout_s: float = Field(default=10.0, gt=0, description="Protocol-level pong timeout")
    open_timeout_s: float = Field(default=10.0, gt=0, description="Handshake timeout")
    max_instruments_per_connection: int = Field(default=100, gt=0, description="Instrument shard size")


class SyncConfig(BaseModel):
    """Order book synchronization configuration"""
    resync_delay_ms: int = Field(default=1_200, ge=0, description="Pause before requesting a fresh baseline")
    resync_cooldown_ms: int = Field(default=15_000, ge=0, description="Minimum spacing between resync baselines of one instrument")
    reconcile_ms: int = Field(default=60_000, gt=0, description="REST refresh interval while the feed is unhealthy")
    no_orderbook_cooldown_ms: int = Field(default=30_000, gt=0, description="Re-probe interval for instruments without a book")
    ws_stale_ms: int = Field(default=15_000, gt=0, description="Feed silence after which an instrument counts as unhealthy")
    maintenance_interval_ms: int = Field(default=3_000, gt=0, description="How often reconcile and re-probe checks run")
    resync_max_attempts: int = Field(default=3, gt=0, description="Baseline attempts before degrading to no-orderbook")
    pending_limit: int = Field(default=500, gt=0, description="Diffs buffered per instrument while a baseline loads")
    orderbook_depth: int = Field(default=10, gt=0, description="Levels per side exposed in snapshots")


class HistoryConfig(BaseModel):
    """Price history configuration"""
    interval: str = Field(default="1d", description="History interval")
    fidelity: int = Field(default=30, gt=0, description="History resolution in minutes")


class Config:
    """Main configuration class"""

    def __init__(self,
                 venue: VenueConfig = None,
                 http: HttpConfig = None,
                 feed: FeedConfig = None,
                 sync: SyncConfig = None,
                 history: HistoryConfig = None):
        self.venue = venue or VenueConfig()
        self.http = http or HttpConfig()
        self.feed = feed or FeedConfig()
        self.sync = sync or SyncConfig()
        self.history = history or HistoryConfig()

    @classmethod
    def from_env(cls) -> "Config":
        """Build configuration, overriding defaults with POLYFEED_* variables"""
        try:
            venue = VenueConfig(**_env_overrides("VENUE", VenueConfig))
            http = HttpConfig(**_env_overrides("HTTP", HttpConfig))
            feed = FeedConfig(**_env_overrides("FEED", FeedConfig))
            sync = SyncConfig(**_env_overrides("SYNC", SyncConfig))
            history = HistoryConfig(**_env_overrides("HISTORY", HistoryConfig))
        except ValueError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
        return cls(venue=venue, http=http, feed=feed, sync=sync, history=history)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary"""
        return {
            "venue": self.venue.model_dump(),
            "http": self.http.model_dump(),
            "feed": self.feed.model_dump(),
            "sync": self.sync.model_dump(),
            "history": self.history.model_dump()
        }


def _env_overrides(section: str, model: type) -> Dict[str, str]:
    # e.g. POLYFEED_FEED_STALE_MS=20000; pydantic coerces the strings
    overrides = {}
    for name, field in model.model_fields.items():
        if field.annotation not in (str, int, float):
            continue
        value = os.getenv(f"POLYFEED_{section}_{name.upper()}")
        if value is not None:
            overrides[name] = value
    return overrides
