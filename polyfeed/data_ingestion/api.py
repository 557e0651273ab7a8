"""
Venue REST API
==============

Thin wrappers over HttpClient for the endpoints the feed needs:
order book baselines, price history, midpoints and market discovery.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from .http_client import HttpClient, is_no_orderbook_error, with_query
from .parsers import as_number, as_str_list, extract_history, extract_midpoint, parse_maybe_json_array
from ..utils.config import Config
from ..utils.errors import FatalInitError, HttpError, MarketFeedError
from ..utils.logger import get_logger


@dataclass(frozen=True)
class Instrument:
    """One tradable outcome token; immutable after discovery"""
    instrument_id: str
    market_id: str
    outcome: Optional[str] = None
    question: Optional[str] = None
    tick_size: Optional[float] = None


@dataclass(frozen=True)
class Market:
    """A discovered market with N outcomes, one instrument per outcome"""
    market_id: str
    condition_id: str
    token_ids: Tuple[str, ...]
    outcomes: Tuple[str, ...]
    question: Optional[str] = None
    slug: Optional[str] = None
    event_id: Optional[str] = None
    event_title: Optional[str] = None
    volume_24h: Optional[float] = None
    price_change_24h: Optional[float] = None
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None

    def instruments(self) -> List[Instrument]:
        return [
            Instrument(
                instrument_id=token_id,
                market_id=self.market_id,
                outcome=self.outcomes[index] if index < len(self.outcomes) else None,
                question=self.question,
            )
            for index, token_id in enumerate(self.token_ids)
        ]


def default_outcomes(count: int) -> List[str]:
    if count == 2:
        return ["YES", "NO"]
    return [f"OUTCOME_{index + 1}" for index in range(count)]


def _extract_token_ids(market: Dict[str, Any]) -> List[str]:
    direct = parse_maybe_json_array(market.get('clobTokenIds') or market.get('clob_token_ids'))
    if direct:
        return as_str_list(direct)
    tokens = market.get('tokens')
    if isinstance(tokens, list):
        return as_str_list(
            token.get('token_id') or token.get('id') for token in tokens if isinstance(token, dict)
        )
    return []


def _extract_outcomes(market: Dict[str, Any]) -> List[str]:
    direct = parse_maybe_json_array(market.get('outcomes') or market.get('outcome'))
    if direct:
        return as_str_list(direct)
    tokens = market.get('tokens')
    if isinstance(tokens, list):
        return as_str_list(token.get('outcome') for token in tokens if isinstance(token, dict))
    return []


def normalize_market(market: Dict[str, Any], event: Optional[Dict[str, Any]] = None) -> Optional[Market]:
    """Normalize a gamma market record; None if it has no condition id or tokens"""
    event = event or {}
    condition_id = market.get('conditionId') or market.get('condition_id') or market.get('conditionID')
    token_ids = _extract_token_ids(market)
    if not condition_id or not token_ids:
        return None

    outcomes = _extract_outcomes(market) or default_outcomes(len(token_ids))
    market_id = market.get('id') or market.get('marketId') or market.get('market_id') or condition_id

    return Market(
        market_id=str(market_id),
        condition_id=str(condition_id),
        token_ids=tuple(token_ids),
        outcomes=tuple(outcomes),
        question=market.get('question') or market.get('title') or event.get('title'),
        slug=market.get('slug') or event.get('slug'),
        event_id=str(event['id']) if event.get('id') is not None else market.get('eventId'),
        event_title=event.get('title'),
        volume_24h=as_number(market.get('volume24hr', market.get('volume24h', market.get('volumeUSD')))),
        price_change_24h=as_number(market.get('priceChange24hr', market.get('price_change_24hr'))),
        best_bid=as_number(market.get('bestBid', market.get('best_bid'))),
        best_ask=as_number(market.get('bestAsk', market.get('best_ask'))),
    )


def _as_list(payload: Any, *keys: str) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


def history_frame(points: List[Tuple[float, float]]) -> pd.DataFrame:
    """Price history points as a DataFrame indexed by UTC timestamp"""
    if not points:
        return pd.DataFrame(columns=['price'], dtype=float)
    df = pd.DataFrame(points, columns=['t', 'price'])
    df['t'] = pd.to_datetime(df['t'], unit='s', utc=True)
    df.set_index('t', inplace=True)
    return df.sort_index()


class MarketDataApi:
    """
    Venue endpoints used by the synchronizer and by discovery.

    - Order book baselines (``/book``) with no-orderbook classification
    - Price history with fallback path
    - Midpoint quotes
    - Market discovery from the gamma API
    """

    def __init__(self, http: HttpClient, config: Optional[Config] = None):
        self.http = http
        self.config = config or Config()
        self.logger = get_logger('market_api')

    async def get_orderbook(self, instrument_id: str, allow_no_orderbook: bool = False) -> Optional[Dict[str, Any]]:
        """
        Fetch the REST order book for one instrument.

        Returns None instead of raising when the venue reports that the
        instrument has no order book and ``allow_no_orderbook`` is set.
        """
        url = with_query(f"{self.config.venue.clob_rest_base}/book", {'token_id': instrument_id})
        try:
            return await self.http.fetch_json(url)
        except HttpError as e:
            if allow_no_orderbook and is_no_orderbook_error(e):
                self.logger.debug(f"No orderbook for {instrument_id}")
                return None
            raise

    async def get_midpoint(self, instrument_id: str) -> Optional[float]:
        url = with_query(f"{self.config.venue.clob_rest_base}/midpoint", {'token_id': instrument_id})
        return extract_midpoint(await self.http.fetch_json(url))

    async def get_price_history(self,
                                instrument_id: str,
                                interval: Optional[str] = None,
                                fidelity: Optional[int] = None) -> List[Tuple[float, float]]:
        """Price history as [(t, p)], trying ``/prices-history`` then ``/price_history``"""
        params = {
            'market': instrument_id,
            'interval': interval or self.config.history.interval,
            'fidelity': fidelity or self.config.history.fidelity,
        }
        base = self.config.venue.clob_rest_base
        try:
            payload = await self.http.fetch_json(with_query(f"{base}/prices-history", params))
        except HttpError as e:
            self.logger.debug(f"prices-history failed for {instrument_id} ({e.status}), trying price_history")
            payload = await self.http.fetch_json(with_query(f"{base}/price_history", params))
        return extract_history(payload)

    async def fetch_events(self, limit: int = 10, offset: int = 0) -> List[Dict[str, Any]]:
        url = with_query(f"{self.config.venue.gamma_base}/events", {
            'limit': limit, 'offset': offset, 'closed': False, 'active': True,
            'order': 'id', 'ascending': False,
        })
        return _as_list(await self.http.fetch_json(url), 'events', 'data')

    async def fetch_markets(self, limit: int = 10, offset: int = 0) -> List[Dict[str, Any]]:
        url = with_query(f"{self.config.venue.gamma_base}/markets", {
            'limit': limit, 'offset': offset, 'closed': False, 'active': True,
            'order': 'id', 'ascending': False,
        })
        return _as_list(await self.http.fetch_json(url), 'markets', 'data')

    async def discover(self, limit: int = 50) -> List[Market]:
        """
        Discover active markets, deduplicated by condition id.

        Events are tried first; plain markets are the fallback.

        Raises:
            FatalInitError: neither endpoint could be reached
        """
        markets: List[Market] = []
        seen = set()
        failures = []

        def add(market: Optional[Market]):
            if market is not None and market.condition_id not in seen:
                seen.add(market.condition_id)
                markets.append(market)

        try:
            for event in await self.fetch_events(limit):
                for raw in _as_list(event.get('markets')) if isinstance(event, dict) else []:
                    add(normalize_market(raw, event))
        except MarketFeedError as e:
            failures.append(e)
            self.logger.warning(f"Event discovery failed: {e}")

        if markets:
            return markets

        try:
            for raw in await self.fetch_markets(limit):
                add(normalize_market(raw))
        except MarketFeedError as e:
            failures.append(e)
            self.logger.warning(f"Market discovery failed: {e}")

        if len(failures) == 2:
            raise FatalInitError("Venue unreachable: market discovery failed", {
                'errors': [str(failure) for failure in failures],
            })
        return markets
