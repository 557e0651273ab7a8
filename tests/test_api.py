"""
Venue API tests: market normalization, discovery and history fallback.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from polyfeed.data_ingestion.api import MarketDataApi, default_outcomes, history_frame, normalize_market
from polyfeed.data_ingestion.parsers import as_number, extract_history, normalize_levels
from polyfeed.utils.errors import FatalInitError, HttpError, NetworkError


def make_api(**fetch_kwargs):
    http = Mock()
    http.fetch_json = AsyncMock(**fetch_kwargs)
    return MarketDataApi(http), http


class TestNormalizeMarket:

    def test_json_encoded_arrays(self):
        market = normalize_market({
            "id": "42",
            "conditionId": "0xabc",
            "question": "Will it rain?",
            "clobTokenIds": '["111", "222"]',
            "outcomes": '["Yes", "No"]',
            "volume24hr": "1234.5",
            "bestBid": 0.4,
        })
        assert market.market_id == "42"
        assert market.token_ids == ("111", "222")
        assert market.outcomes == ("Yes", "No")
        assert market.volume_24h == 1234.5
        assert [i.outcome for i in market.instruments()] == ["Yes", "No"]
        assert market.instruments()[0].question == "Will it rain?"

    def test_nested_tokens_and_event_fallbacks(self):
        market = normalize_market(
            {"condition_id": "0xdef", "tokens": [{"token_id": "1", "outcome": "A"},
                                                 {"token_id": "2", "outcome": "B"},
                                                 {"token_id": "3", "outcome": "C"}]},
            {"id": 7, "title": "Election", "slug": "election"},
        )
        assert market.token_ids == ("1", "2", "3")
        assert market.outcomes == ("A", "B", "C")
        assert market.question == "Election"
        assert market.event_id == "7"
        assert market.market_id == "0xdef"

    def test_missing_tokens_is_skipped(self):
        assert normalize_market({"conditionId": "0x1"}) is None
        assert normalize_market({"clobTokenIds": ["1"]}) is None

    def test_default_outcomes(self):
        assert default_outcomes(2) == ["YES", "NO"]
        assert default_outcomes(3) == ["OUTCOME_1", "OUTCOME_2", "OUTCOME_3"]


class TestParsers:

    def test_as_number(self):
        assert as_number("0.5") == 0.5
        assert as_number(3) == 3.0
        assert as_number("nan") is None
        assert as_number(True) is None
        assert as_number("x") is None

    def test_normalize_levels_drops_empty(self):
        assert normalize_levels([["0.5", "10"], {"price": "0.4", "size": "0"}, {"p": "0.3", "s": "2"}, "junk"]) == \
            [(0.5, 10.0), (0.3, 2.0)]

    def test_extract_history(self):
        assert extract_history({"history": [{"t": 1, "p": "0.5"}, {"t": 2}]}) == [(1.0, 0.5)]
        assert extract_history([{"timestamp": 3, "price": 0.6}]) == [(3.0, 0.6)]


class TestMarketDataApi:

    async def test_get_orderbook_no_orderbook(self):
        error = HttpError(404, "u", {"error": "No orderbook exists for the requested token id"}, "HTTP 404")
        api, _ = make_api(side_effect=error)

        assert await api.get_orderbook("1", allow_no_orderbook=True) is None
        with pytest.raises(HttpError):
            await api.get_orderbook("1")

    async def test_get_orderbook_other_404_raises(self):
        api, _ = make_api(side_effect=HttpError(404, "u", {"error": "market not found"}, "HTTP 404"))
        with pytest.raises(HttpError):
            await api.get_orderbook("1", allow_no_orderbook=True)

    async def test_history_falls_back(self):
        api, http = make_api(side_effect=[
            HttpError(404, "u", "not found", "HTTP 404"),
            {"history": [{"t": 10, "p": 0.3}]},
        ])

        points = await api.get_price_history("1")

        assert points == [(10.0, 0.3)]
        first_url, second_url = (call.args[0] for call in http.fetch_json.await_args_list)
        assert "/prices-history?" in first_url
        assert "/price_history?" in second_url
        assert "interval=1d" in first_url and "fidelity=30" in first_url

    async def test_get_midpoint(self):
        api, _ = make_api(return_value={"mid": "0.515"})
        assert await api.get_midpoint("1") == 0.515

    async def test_discover_dedupes_by_condition(self):
        event = {
            "id": 1,
            "title": "E",
            "markets": [
                {"conditionId": "0xa", "clobTokenIds": ["1", "2"]},
                {"conditionId": "0xa", "clobTokenIds": ["1", "2"]},
                {"conditionId": "0xb", "clobTokenIds": ["3", "4"]},
            ],
        }
        api, http = make_api(return_value=[event])

        markets = await api.discover(limit=5)

        assert [m.condition_id for m in markets] == ["0xa", "0xb"]
        assert http.fetch_json.await_count == 1

    async def test_discover_falls_back_to_markets(self):
        api, _ = make_api(side_effect=[
            NetworkError("down"),
            {"data": [{"conditionId": "0xc", "clobTokenIds": ["5", "6"]}]},
        ])
        markets = await api.discover()
        assert [m.condition_id for m in markets] == ["0xc"]

    async def test_discover_fails_when_venue_unreachable(self):
        api, _ = make_api(side_effect=NetworkError("down"))
        with pytest.raises(FatalInitError):
            await api.discover()


def test_history_frame():
    df = history_frame([(1700000060.0, 0.6), (1700000000.0, 0.5)])
    assert list(df["price"]) == [0.5, 0.6]
    assert str(df.index.tz) == "UTC"
    assert history_frame([]).empty
