"""Unit tests for the price cache and supervised loops."""

import asyncio

import pytest

from liqhunter.core.market_data import MarketDataCache
from liqhunter.core.tasks import run_periodic, wait_for_stop


class TestMarketDataCache:

    def test_replace_and_age(self, clock):
        cache = MarketDataCache(clock=clock)
        assert cache.age_sec is None
        assert not cache

        assert cache.replace({"BTC": 95_000.0})
        clock.advance(4)

        assert cache.get("BTC") == 95_000.0
        assert cache.age_sec == 4

    def test_empty_snapshot_keeps_prices(self, clock):
        cache = MarketDataCache(clock=clock)
        cache.replace({"BTC": 95_000.0})

        assert cache.replace({}) is False
        assert cache.get("BTC") == 95_000.0

    def test_replace_drops_unlisted_instruments(self, clock):
        cache = MarketDataCache(clock=clock)
        cache.replace({"BTC": 95_000.0, "LUNA": 0.1})
        cache.replace({"BTC": 96_000.0})

        assert cache.get("LUNA") is None
        assert len(cache) == 1

    def test_merge_is_incremental(self, clock):
        cache = MarketDataCache(clock=clock)
        cache.replace({"BTC": 95_000.0, "ETH": 3_000.0})
        cache.merge({"ETH": 3_100.0})

        assert cache.snapshot() == {"BTC": 95_000.0, "ETH": 3_100.0}
        assert cache.merge_count == 1

    def test_snapshot_is_a_copy(self, clock):
        cache = MarketDataCache(clock=clock)
        cache.replace({"BTC": 95_000.0})
        cache.snapshot()["BTC"] = 1.0
        assert cache.get("BTC") == 95_000.0


class TestPeriodic:

    @pytest.mark.asyncio
    async def test_wait_for_stop(self):
        stop = asyncio.Event()
        assert await wait_for_stop(stop, 0.01) is False
        stop.set()
        assert await wait_for_stop(stop, 10) is True

    @pytest.mark.asyncio
    async def test_errors_do_not_kill_the_loop(self):
        stop = asyncio.Event()
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("transient")
            if calls == 3:
                stop.set()

        await asyncio.wait_for(run_periodic("flaky", 0.001, flaky, stop, run_immediately=True), timeout=5)

        assert calls == 3

    @pytest.mark.asyncio
    async def test_stop_before_first_tick(self):
        stop = asyncio.Event()
        stop.set()
        called = False

        async def fn():
            nonlocal called
            called = True

        await run_periodic("idle", 60, fn, stop)
        assert not called
