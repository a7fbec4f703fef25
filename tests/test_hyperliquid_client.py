"""
Unit tests for the Hyperliquid API client.

Tests cover:
- Response parsing helpers
- Retry on rate limiting, transport errors and undecodable bodies
- Price fallback to metaAndAssetCtxs
- Enrichment lookups and leaderboard fallback
"""

import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from liqhunter.api.hyperliquid import (
    FALLBACK_WHALES,
    HyperliquidClient,
    all_time_pnl_from_portfolio,
    earliest_fill_time,
    parse_account_state,
    parse_mids,
    parse_mids_from_asset_ctxs,
)

from conftest import WHALE


class FakeResponse:
    """Minimal aiohttp response usable as an async context manager."""

    def __init__(self, status=200, payload=None):
        self.status = status
        self._payload = payload

    async def json(self, content_type="application/json"):
        return self._payload

    async def text(self):
        return str(self._payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return False


class UndecodableResponse(FakeResponse):
    """200 response whose body is not JSON."""

    async def json(self, content_type="application/json"):
        raise json.JSONDecodeError("Expecting value", "<html>", 0)


def fake_session(post=(), get=()):
    session = MagicMock()
    session.closed = False
    session.post = MagicMock(side_effect=list(post))
    session.get = MagicMock(side_effect=list(get))
    return session


@pytest.fixture
def fast_cfg(cfg):
    cfg.retry_backoff_sec = 0
    cfg.max_retries = 2
    return cfg


CLEARINGHOUSE = {
    "assetPositions": [
        {"position": {"coin": "BTC", "szi": "-12.5", "entryPx": "96000", "liquidationPx": "99000",
                      "leverage": {"type": "isolated", "value": 25}, "marginUsed": "48000",
                      "unrealizedPnl": "-1200.5"}},
        {"position": {"coin": "ETH", "szi": "100", "entryPx": "3000", "liquidationPx": None,
                      "leverage": {"type": "cross", "value": 3}}},
        {"position": {"coin": "SOL", "szi": "0", "entryPx": "150"}},
        {"position": {"coin": "DOGE", "szi": "not a number"}},
        {"type": "oneWay"},
    ],
    "marginSummary": {"accountValue": "2500000.0"},
}


class TestParsing:

    def test_parse_mids(self):
        assert parse_mids({"BTC": "95000.5", "ETH": "3000", "BAD": "x", "ZERO": "0"}) == {
            "BTC": 95000.5, "ETH": 3000.0,
        }
        assert parse_mids(None) == {}

    def test_parse_mids_from_asset_ctxs(self):
        response = [
            {"universe": [{"name": "BTC"}, {"name": "ETH"}, {"name": "DEAD"}]},
            [{"midPx": "95000"}, {"midPx": "3000"}, {"midPx": None}],
        ]
        assert parse_mids_from_asset_ctxs(response) == {"BTC": 95000.0, "ETH": 3000.0}
        assert parse_mids_from_asset_ctxs({"oops": 1}) == {}

    def test_parse_account_state(self):
        account = parse_account_state(WHALE, CLEARINGHOUSE)

        assert account.account_value == 2_500_000
        assert [p.instrument for p in account.positions] == ["BTC", "ETH"]

        btc = account.positions[0]
        assert btc.size == -12.5
        assert btc.liquidation_price == 99_000
        assert btc.leverage == 25
        assert btc.leverage_type == "isolated"
        assert btc.unrealized_pnl == -1200.5

        assert account.positions[1].liquidation_price is None

    def test_earliest_fill_time(self):
        fills = [{"time": 1_700_000_500_000}, {"time": 1_690_000_000_000}, {"time": None}, "junk"]
        assert earliest_fill_time(fills, 1_800_000_000_000) == 1_690_000_000_000
        assert earliest_fill_time([], 1_800_000_000_000) == 1_800_000_000_000

    def test_all_time_pnl(self):
        response = [
            ["day", {"pnlHistory": [[1, "5"]]}],
            ["allTime", {"pnlHistory": [[1, "100"], [2, "2500000.5"]]}],
        ]
        assert all_time_pnl_from_portfolio(response) == 2_500_000.5

    @pytest.mark.parametrize("response", [None, {}, [], [["allTime", {"pnlHistory": []}]], [["week", {}]]])
    def test_all_time_pnl_missing(self, response):
        assert all_time_pnl_from_portfolio(response) is None


class TestRequest:

    @pytest.mark.asyncio
    async def test_retries_after_rate_limit(self, fast_cfg):
        session = fake_session(post=[FakeResponse(429), FakeResponse(200, {"BTC": "1"})])
        client = HyperliquidClient(fast_cfg, session=session)

        assert await client._request({"type": "allMids"}) == {"BTC": "1"}
        assert session.post.call_count == 2

    @pytest.mark.asyncio
    async def test_retries_transport_errors_then_gives_up(self, fast_cfg):
        session = fake_session(post=[aiohttp.ClientConnectionError("reset")] * 3)
        client = HyperliquidClient(fast_cfg, session=session)

        assert await client._request({"type": "allMids"}) is None
        assert session.post.call_count == 3

    @pytest.mark.asyncio
    async def test_undecodable_body_retried(self, fast_cfg):
        session = fake_session(post=[UndecodableResponse(), FakeResponse(200, {"BTC": "1"})])
        client = HyperliquidClient(fast_cfg, session=session)

        assert await client._request({"type": "allMids"}) == {"BTC": "1"}
        assert session.post.call_count == 2

    @pytest.mark.asyncio
    async def test_undecodable_body_gives_up(self, fast_cfg):
        session = fake_session(post=[UndecodableResponse() for _ in range(3)])
        client = HyperliquidClient(fast_cfg, session=session)

        assert await client.get_account_state(WHALE) is None
        assert session.post.call_count == 3

    @pytest.mark.asyncio
    async def test_http_error_not_retried(self, fast_cfg):
        session = fake_session(post=[FakeResponse(500, "internal")])
        client = HyperliquidClient(fast_cfg, session=session)

        assert await client._request({"type": "allMids"}) is None
        assert session.post.call_count == 1

    @pytest.mark.asyncio
    async def test_borrowed_session_not_closed(self, fast_cfg):
        session = fake_session()
        session.close = AsyncMock()
        client = HyperliquidClient(fast_cfg, session=session)

        await client.close()
        session.close.assert_not_awaited()


class TestEndpoints:

    @pytest.mark.asyncio
    async def test_prices_fall_back_to_asset_ctxs(self, fast_cfg):
        client = HyperliquidClient(fast_cfg, session=fake_session())
        client._request = AsyncMock(side_effect=[
            None,
            [{"universe": [{"name": "BTC"}]}, [{"midPx": "95000"}]],
        ])

        assert await client.get_all_mark_prices() == {"BTC": 95000.0}

    @pytest.mark.asyncio
    async def test_instrument_list_skips_delisted(self, fast_cfg):
        client = HyperliquidClient(fast_cfg, session=fake_session())
        client._request = AsyncMock(return_value={"universe": [
            {"name": "BTC"}, {"name": "LUNA", "isDelisted": True}, {"name": "PUMP"},
        ]})

        assert await client.get_instrument_list() == ["BTC", "PUMP"]

    @pytest.mark.asyncio
    async def test_account_state_failure(self, fast_cfg):
        client = HyperliquidClient(fast_cfg, session=fake_session())
        client._request = AsyncMock(return_value=None)

        assert await client.get_account_state(WHALE) is None

    @pytest.mark.asyncio
    async def test_earliest_activity(self, fast_cfg):
        client = HyperliquidClient(fast_cfg, session=fake_session())
        client._request = AsyncMock(return_value=[{"time": 1_600_000_000_000}])
        assert await client.get_earliest_activity_time(WHALE) == 1_600_000_000_000

        client._request = AsyncMock(return_value=None)
        assert await client.get_earliest_activity_time(WHALE) is None

    @pytest.mark.asyncio
    async def test_no_fills_means_brand_new(self, fast_cfg):
        client = HyperliquidClient(fast_cfg, session=fake_session())
        client._request = AsyncMock(return_value=[])

        earliest = await client.get_earliest_activity_time(WHALE)
        payload = client._request.await_args.args[0]
        assert earliest == payload["endTime"]

    @pytest.mark.asyncio
    async def test_leaderboard(self, fast_cfg):
        rows = {"leaderboardRows": [{"ethAddress": "0xABC"}, {"ethAddress": None}, {"name": "x"}]}
        session = fake_session(get=[FakeResponse(200, rows)])
        client = HyperliquidClient(fast_cfg, session=session)

        assert await client.get_leaderboard_addresses() == ["0xabc"]

    @pytest.mark.asyncio
    async def test_leaderboard_fallback(self, fast_cfg):
        session = fake_session(get=[aiohttp.ClientConnectionError("dns")])
        client = HyperliquidClient(fast_cfg, session=session)

        assert await client.get_leaderboard_addresses() == FALLBACK_WHALES
