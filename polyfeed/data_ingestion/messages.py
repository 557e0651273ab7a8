"""
Feed Message Decoding
=====================

Turns raw WebSocket frames into a closed set of event variants:

    BookSnapshot | BestBidAsk | LastTrade | PriceChange | TickSizeChange | Ping

Raw frames are validated with lenient pydantic models (unknown fields are
ignored, field aliases accepted). ``price_change`` frames exist in two
historical shapes which both decode to ``PriceChange``:

- flat:   {"event_type": "price_change", "asset_id": "...", "changes": [{"price", "size", "side"}], "sequence"?, "hash"?}
- nested: {"event_type": "price_change", "market": "...", "price_changes": [{"asset_id", "price", "size", "side", "hash", "best_bid", "best_ask"}]}

A third, change-less form carries only a best bid/ask delta.
"""

import json
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaError

from .parsers import as_number, normalize_levels
from ..utils.errors import ValidationError
from ..utils.logger import get_logger

logger = get_logger('messages')


class Side(Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, value: Any) -> "Side":
        text = str(value or "").upper()
        return cls.SELL if text in ("SELL", "ASK", "ASKS") else cls.BUY


@dataclass(frozen=True)
class LevelChange:
    side: Side
    price: float
    size: float


@dataclass(frozen=True)
class BookSnapshot:
    instrument_id: str
    bids: Tuple[Tuple[float, float], ...]
    asks: Tuple[Tuple[float, float], ...]
    tick_size: Optional[float] = None
    sequence: Optional[int] = None
    hash: Optional[str] = None
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class BestBidAsk:
    instrument_id: str
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class LastTrade:
    instrument_id: str
    price: float
    size: Optional[float] = None
    side: Optional[Side] = None
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class PriceChange:
    instrument_id: str
    changes: Tuple[LevelChange, ...] = ()
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    sequence: Optional[int] = None
    hash: Optional[str] = None
    prev_hash: Optional[str] = None
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class TickSizeChange:
    instrument_id: str
    tick_size: Optional[float] = None
    timestamp: Optional[float] = None


TEXT_PING = "text"


@dataclass(frozen=True)
class Ping:
    """Application-level keepalive that must be answered; ``kind`` is TEXT_PING for bare PING frames"""
    kind: str
    id: Any = None


FeedEvent = Union[BookSnapshot, BestBidAsk, LastTrade, PriceChange, TickSizeChange, Ping]


# ---------------------------------------------------------------------------
# Raw frame schemas
# ---------------------------------------------------------------------------

def _number(value: Any) -> Optional[float]:
    return as_number(value)


def _integer(value: Any) -> Optional[int]:
    number = as_number(value)
    return int(number) if number is not None else None


def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class _Frame(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class RawLevelChange(_Frame):
    asset_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("asset_id", "token_id"))
    price: Optional[float] = Field(default=None, validation_alias=AliasChoices("price", "p"))
    size: Optional[float] = Field(default=None, validation_alias=AliasChoices("size", "quantity", "amount", "s"))
    side: Optional[str] = Field(default=None, validation_alias=AliasChoices("side", "action"))
    hash: Optional[str] = None
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    sequence: Optional[int] = Field(default=None, validation_alias=AliasChoices("sequence", "seq"))
    timestamp: Optional[float] = Field(default=None, validation_alias=AliasChoices("timestamp", "ts"))

    @field_validator("price", "size", "best_bid", "best_ask", "timestamp", mode="before")
    @classmethod
    def coerce_number(cls, value: Any) -> Optional[float]:
        return _number(value)

    @field_validator("sequence", mode="before")
    @classmethod
    def coerce_integer(cls, value: Any) -> Optional[int]:
        return _integer(value)

    @field_validator("asset_id", "side", "hash", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Optional[str]:
        return _text(value)


class RawEvent(_Frame):
    event_type: str = Field(default="", validation_alias=AliasChoices("event_type", "type"))
    asset_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("asset_id", "token_id"))
    market: Optional[str] = None
    bids: Optional[list] = Field(default=None, validation_alias=AliasChoices("bids", "buys"))
    asks: Optional[list] = Field(default=None, validation_alias=AliasChoices("asks", "sells"))
    changes: Optional[list] = None
    price_changes: Optional[list] = None
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    price: Optional[float] = None
    size: Optional[float] = None
    side: Optional[str] = None
    tick_size: Optional[float] = Field(default=None, validation_alias=AliasChoices("new_tick_size", "tick_size"))
    hash: Optional[str] = None
    prev_hash: Optional[str] = Field(default=None, validation_alias=AliasChoices("prev_hash", "previous_hash", "prevHash"))
    sequence: Optional[int] = Field(default=None, validation_alias=AliasChoices("sequence", "seq"))
    timestamp: Optional[float] = Field(default=None, validation_alias=AliasChoices("timestamp", "ts", "time"))
    id: Any = None

    @field_validator("best_bid", "best_ask", "price", "size", "tick_size", "timestamp", mode="before")
    @classmethod
    def coerce_number(cls, value: Any) -> Optional[float]:
        return _number(value)

    @field_validator("sequence", mode="before")
    @classmethod
    def coerce_integer(cls, value: Any) -> Optional[int]:
        return _integer(value)

    @field_validator("asset_id", "market", "side", "hash", "prev_hash", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Optional[str]:
        return _text(value)

    @field_validator("event_type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> str:
        return str(value or "").lower()


def _raw_changes(items: Optional[list]) -> List[RawLevelChange]:
    """Validate change entries one by one; malformed entries are skipped"""
    changes = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        try:
            changes.append(RawLevelChange.model_validate(item))
        except SchemaError:
            continue
    return changes


# ---------------------------------------------------------------------------
# Decoders per event type
# ---------------------------------------------------------------------------

class PriceChangeShape(Enum):
    FLAT = "flat"
    NESTED = "nested"
    QUOTE_ONLY = "quote_only"


def price_change_shape(event: RawEvent) -> PriceChangeShape:
    if event.price_changes:
        return PriceChangeShape.NESTED
    if event.changes:
        return PriceChangeShape.FLAT
    return PriceChangeShape.QUOTE_ONLY


def _decode_flat(event: RawEvent) -> List[FeedEvent]:
    if not event.asset_id:
        return []
    changes = tuple(
        LevelChange(Side.parse(change.side), change.price, change.size or 0.0)
        for change in _raw_changes(event.changes)
        if change.price is not None
    )
    return [PriceChange(
        instrument_id=event.asset_id,
        changes=changes,
        best_bid=event.best_bid,
        best_ask=event.best_ask,
        sequence=event.sequence,
        hash=event.hash,
        prev_hash=event.prev_hash,
        timestamp=event.timestamp,
    )]


def _decode_nested(event: RawEvent) -> List[FeedEvent]:
    # One PriceChange per asset, in the order assets first appear on the wire
    grouped: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for change in _raw_changes(event.price_changes):
        asset_id = change.asset_id or event.asset_id
        if not asset_id or change.price is None:
            continue
        entry = grouped.setdefault(asset_id, {
            'changes': [], 'best_bid': event.best_bid, 'best_ask': event.best_ask,
            'hash': event.hash, 'sequence': event.sequence, 'timestamp': event.timestamp,
        })
        entry['changes'].append(LevelChange(Side.parse(change.side), change.price, change.size or 0.0))
        if change.best_bid is not None:
            entry['best_bid'] = change.best_bid
        if change.best_ask is not None:
            entry['best_ask'] = change.best_ask
        if change.hash is not None:
            entry['hash'] = change.hash
        if change.sequence is not None:
            entry['sequence'] = change.sequence
        if change.timestamp is not None:
            entry['timestamp'] = change.timestamp

    return [
        PriceChange(
            instrument_id=asset_id,
            changes=tuple(entry['changes']),
            best_bid=entry['best_bid'],
            best_ask=entry['best_ask'],
            sequence=entry['sequence'],
            hash=entry['hash'],
            prev_hash=event.prev_hash,
            timestamp=entry['timestamp'],
        )
        for asset_id, entry in grouped.items()
    ]


def _decode_quote_only(event: RawEvent) -> List[FeedEvent]:
    if not event.asset_id or (event.best_bid is None and event.best_ask is None):
        return []
    return [PriceChange(
        instrument_id=event.asset_id,
        best_bid=event.best_bid,
        best_ask=event.best_ask,
        sequence=event.sequence,
        hash=event.hash,
        prev_hash=event.prev_hash,
        timestamp=event.timestamp,
    )]


_PRICE_CHANGE_DECODERS: Dict[PriceChangeShape, Callable[[RawEvent], List[FeedEvent]]] = {
    PriceChangeShape.FLAT: _decode_flat,
    PriceChangeShape.NESTED: _decode_nested,
    PriceChangeShape.QUOTE_ONLY: _decode_quote_only,
}


def _decode_price_change(event: RawEvent) -> List[FeedEvent]:
    return _PRICE_CHANGE_DECODERS[price_change_shape(event)](event)


def _decode_book(event: RawEvent) -> List[FeedEvent]:
    if not event.asset_id:
        return []
    return [BookSnapshot(
        instrument_id=event.asset_id,
        bids=tuple(normalize_levels(event.bids or [])),
        asks=tuple(normalize_levels(event.asks or [])),
        tick_size=event.tick_size,
        sequence=event.sequence,
        hash=event.hash,
        timestamp=event.timestamp,
    )]


def _decode_best_bid_ask(event: RawEvent) -> List[FeedEvent]:
    if not event.asset_id:
        return []
    return [BestBidAsk(event.asset_id, event.best_bid, event.best_ask, event.timestamp)]


def _decode_last_trade(event: RawEvent) -> List[FeedEvent]:
    if not event.asset_id or event.price is None:
        return []
    side = Side.parse(event.side) if event.side else None
    return [LastTrade(event.asset_id, event.price, event.size, side, event.timestamp)]


def _decode_tick_size(event: RawEvent) -> List[FeedEvent]:
    if not event.asset_id:
        return []
    return [TickSizeChange(event.asset_id, event.tick_size, event.timestamp)]


def _decode_ping(event: RawEvent) -> List[FeedEvent]:
    return [Ping(event.event_type, event.id)]


EVENT_DECODERS: Dict[str, Callable[[RawEvent], List[FeedEvent]]] = {
    "book": _decode_book,
    "best_bid_ask": _decode_best_bid_ask,
    "last_trade_price": _decode_last_trade,
    "price_change": _decode_price_change,
    "tick_size_change": _decode_tick_size,
    "ping": _decode_ping,
    "heartbeat": _decode_ping,
}


def decode_event(data: Dict[str, Any]) -> List[FeedEvent]:
    """Decode one JSON object; unknown event types yield no events"""
    try:
        event = RawEvent.model_validate(data)
    except SchemaError as e:
        raise ValidationError(f"Malformed feed event: {e.error_count()} error(s)", {'data': str(data)[:200]}) from e

    decoder = EVENT_DECODERS.get(event.event_type)
    if decoder is None:
        return []
    return decoder(event)


def decode_frame(raw: Union[str, bytes]) -> List[FeedEvent]:
    """
    Decode a WebSocket frame into events, in wire order.

    A malformed object inside an array frame is logged and skipped; its
    siblings are still decoded.

    Raises:
        ValidationError: the frame is not JSON or not an object/array of objects
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    text = raw.strip()
    if text.upper() in ("PING", "PONG"):
        return [Ping(TEXT_PING)] if text.upper() == "PING" else []
    if not text:
        return []

    try:
        data = json.loads(text)
    except (ValueError, RecursionError) as e:
        raise ValidationError(f"Unparseable feed frame: {e}", {'frame': text[:200]}) from e

    if isinstance(data, dict):
        return decode_event(data)
    if isinstance(data, list):
        events: List[FeedEvent] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            try:
                events.extend(decode_event(item))
            except ValidationError as e:
                logger.warning(f"Skipping event in batch: {e}")
        return events
    raise ValidationError("Feed frame is neither an object nor an array", {'frame': text[:200]})
