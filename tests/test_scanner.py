"""
Unit tests for the position scanner.

Tests cover:
- Full scan replaces the tracked set and sorts by danger
- Price fallback and abort paths keep the previous snapshot
- Per-address carry-over when a fetch fails
- Immediate scan merge semantics
- Cached wallet facts survive rescans and merges
"""

import pytest

from liqhunter.core.enrichment import WalletEnrichment
from liqhunter.core.market_data import MarketDataCache
from liqhunter.core.registry import AddressRegistry
from liqhunter.core.scanner import PositionScanner
from liqhunter.models import DangerLevel

from conftest import OTHER, WHALE, make_account, make_client, make_raw

PRICES = {"BTC": 95_000.0, "ETH": 3_000.0}


def build(cfg, clock, accounts, prices=PRICES, enrich=False):
    client = make_client(prices, accounts)
    registry = AddressRegistry(cfg, clock=clock)
    registry.import_addresses(list(accounts))
    enrichment = WalletEnrichment(client, cfg, clock=clock) if enrich else None
    scanner = PositionScanner(
        client, MarketDataCache(clock=clock), registry, cfg=cfg, enrichment=enrichment, clock=clock,
    )
    return scanner, client


class TestFullScan:

    @pytest.mark.asyncio
    async def test_tracks_qualifying_positions_sorted(self, cfg, clock):
        accounts = {
            WHALE: make_account(WHALE, make_raw("BTC", liq=88_000)),
            OTHER: make_account(OTHER, make_raw("ETH", mark=3_000, liq=2_950)),
        }
        scanner, _ = build(cfg, clock, accounts)

        positions = await scanner.full_scan()

        assert [p.instrument for p in positions] == ["ETH", "BTC"]
        assert positions[0].danger_level == DangerLevel.CRITICAL
        assert positions[1].danger_level == DangerLevel.WARNING
        assert len(scanner) == 2
        assert scanner.scans_completed == 1

    @pytest.mark.asyncio
    async def test_replaces_wholesale(self, cfg, clock):
        accounts = {WHALE: make_account(WHALE, make_raw("BTC"))}
        scanner, _ = build(cfg, clock, accounts)
        await scanner.full_scan()

        accounts[WHALE] = make_account(WHALE, make_raw("ETH", mark=3_000, liq=2_900))
        await scanner.full_scan()

        assert not scanner.is_tracked(WHALE, "BTC")
        assert scanner.is_tracked(WHALE, "ETH")

    @pytest.mark.asyncio
    async def test_falls_back_to_cached_prices(self, cfg, clock):
        accounts = {WHALE: make_account(WHALE, make_raw("BTC"))}
        scanner, client = build(cfg, clock, accounts, prices={})
        scanner.market_data.replace(PRICES)

        positions = await scanner.full_scan()

        assert len(positions) == 1
        assert client.get_all_mark_prices.await_count == 1

    @pytest.mark.asyncio
    async def test_no_prices_keeps_previous_snapshot(self, cfg, clock):
        accounts = {WHALE: make_account(WHALE, make_raw("BTC"))}
        scanner, client = build(cfg, clock, accounts, prices={})

        assert await scanner.full_scan() is None
        assert scanner.scans_aborted == 1
        client.get_account_state.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_all_fetches_failed_keeps_previous_snapshot(self, cfg, clock):
        accounts = {WHALE: make_account(WHALE, make_raw("BTC"))}
        scanner, _ = build(cfg, clock, accounts)
        await scanner.full_scan()

        accounts[WHALE] = None
        assert await scanner.full_scan() is None

        assert scanner.is_tracked(WHALE, "BTC")
        assert scanner.scans_aborted == 1
        assert scanner.scans_completed == 1

    @pytest.mark.asyncio
    async def test_failed_address_carries_previous_entries(self, cfg, clock):
        accounts = {
            WHALE: make_account(WHALE, make_raw("BTC")),
            OTHER: make_account(OTHER, make_raw("ETH", mark=3_000, liq=2_900)),
        }
        scanner, _ = build(cfg, clock, accounts)
        await scanner.full_scan()

        accounts[WHALE] = None
        accounts[OTHER] = make_account(OTHER)
        await scanner.full_scan()

        assert scanner.is_tracked(WHALE, "BTC")
        assert not scanner.is_tracked(OTHER, "ETH")

    @pytest.mark.asyncio
    async def test_raising_fetch_counts_as_failure(self, cfg, clock):
        accounts = {WHALE: make_account(WHALE, make_raw("BTC"))}
        scanner, client = build(cfg, clock, accounts)
        client.get_account_state.side_effect = RuntimeError("boom")

        assert await scanner.full_scan() is None
        assert scanner.fetch_failures == 1

    @pytest.mark.asyncio
    async def test_batches_every_address(self, cfg, clock):
        cfg.scan_batch_size = 3
        accounts = {f"0x{i:040x}": make_account(f"0x{i:040x}") for i in range(7)}
        scanner, client = build(cfg, clock, accounts)

        assert await scanner.full_scan() == []
        assert client.get_account_state.await_count == 7


class TestImmediateScan:

    @pytest.mark.asyncio
    async def test_scan_address_does_not_mutate(self, cfg, clock):
        accounts = {WHALE: make_account(WHALE, make_raw("BTC"))}
        scanner, _ = build(cfg, clock, accounts)
        scanner.market_data.replace(PRICES)

        positions = await scanner.scan_address(WHALE)

        assert len(positions) == 1
        assert len(scanner) == 0
        assert scanner.immediate_scans == 1

    @pytest.mark.asyncio
    async def test_scan_address_failure(self, cfg, clock):
        scanner, _ = build(cfg, clock, {WHALE: None})
        scanner.market_data.replace(PRICES)

        assert await scanner.scan_address(WHALE) is None
        assert scanner.fetch_failures == 1

    @pytest.mark.asyncio
    async def test_merge_reports_only_new_keys(self, cfg, clock):
        accounts = {WHALE: make_account(WHALE, make_raw("BTC"))}
        scanner, _ = build(cfg, clock, accounts)
        await scanner.full_scan()

        accounts[WHALE] = make_account(
            WHALE, make_raw("BTC"), make_raw("ETH", mark=3_000, liq=2_900),
        )
        positions = await scanner.scan_address(WHALE)
        new = scanner.merge_address(WHALE, positions)

        assert [p.instrument for p in new] == ["ETH"]
        assert scanner.merge_address(WHALE, positions) == []

    @pytest.mark.asyncio
    async def test_merge_drops_positions_no_longer_qualifying(self, cfg, clock):
        accounts = {
            WHALE: make_account(WHALE, make_raw("BTC")),
            OTHER: make_account(OTHER, make_raw("BTC")),
        }
        scanner, _ = build(cfg, clock, accounts)
        await scanner.full_scan()

        scanner.merge_address(WHALE, [])

        assert not scanner.is_tracked(WHALE, "BTC")
        assert scanner.is_tracked(OTHER, "BTC")


class TestCachedEnrichment:

    @pytest.mark.asyncio
    async def test_enrichment_survives_rescan(self, cfg, clock):
        accounts = {WHALE: make_account(WHALE, make_raw("BTC"))}
        scanner, client = build(cfg, clock, accounts, enrich=True)
        client.get_earliest_activity_time.return_value = int((clock() - 400 * 86_400) * 1000)
        client.get_all_time_realized_pnl.return_value = 3_000_000.0

        positions = await scanner.full_scan()
        assert positions[0].wallet_age_days is None

        await scanner.enrichment.warm(WHALE)
        assert scanner.reapply_enrichment({WHALE}) == 1

        positions = await scanner.full_scan()
        assert positions[0].wallet_age_days == 400
        assert positions[0].all_time_pnl == 3_000_000.0
        assert client.get_all_time_realized_pnl.await_count == 1

    @pytest.mark.asyncio
    async def test_merge_applies_cached_facts(self, cfg, clock):
        accounts = {WHALE: make_account(WHALE, make_raw("BTC"))}
        scanner, client = build(cfg, clock, accounts, enrich=True)
        client.get_earliest_activity_time.return_value = int((clock() - 10 * 86_400) * 1000)
        client.get_all_time_realized_pnl.return_value = -50_000.0
        await scanner.enrichment.warm(WHALE)

        new = scanner.merge_address(WHALE, await scanner.scan_address(WHALE))

        assert new[0].wallet_age_days == 10
        assert scanner.tracked_positions()[0].all_time_pnl == -50_000.0
