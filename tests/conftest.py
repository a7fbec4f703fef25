"""Pytest configuration and fixtures."""

from typing import Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from liqhunter.config import Config
from liqhunter.models import AccountSnapshot, RawPosition

WHALE = "0x1111111111111111111111111111111111111111"
OTHER = "0x2222222222222222222222222222222222222222"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_raw(
    instrument: str = "BTC",
    notional: float = 10_000_000,
    mark: float = 95_000,
    liq: Optional[float] = 92_000,
    long: bool = True,
    entry: float = None,
    leverage: float = 20,
    upnl: float = 0.0,
) -> RawPosition:
    """Raw position sized to a target notional at the given mark."""
    size = notional / mark
    return RawPosition(
        instrument=instrument,
        size=size if long else -size,
        entry_price=entry if entry is not None else mark,
        liquidation_price=liq,
        leverage=leverage,
        leverage_type="cross",
        margin_used=notional / leverage,
        unrealized_pnl=upnl,
    )


def make_account(address: str, *positions: RawPosition, account_value: float = 1_000_000) -> AccountSnapshot:
    return AccountSnapshot(address=address, positions=tuple(positions), account_value=account_value)


def make_client(prices: Dict[str, float] = None, accounts: Dict[str, Optional[AccountSnapshot]] = None):
    """Exchange client fake backed by dicts."""
    accounts = accounts if accounts is not None else {}
    client = MagicMock()
    client.get_all_mark_prices = AsyncMock(return_value=dict(prices or {}))
    client.get_instrument_list = AsyncMock(return_value=["BTC", "ETH"])
    client.get_account_state = AsyncMock(side_effect=lambda addr: accounts.get(addr))
    client.get_earliest_activity_time = AsyncMock(return_value=None)
    client.get_all_time_realized_pnl = AsyncMock(return_value=None)
    client.get_leaderboard_addresses = AsyncMock(return_value=[])
    client.close = AsyncMock()
    return client


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cfg() -> Config:
    """Default thresholds with fast timings for tests."""
    return Config(
        scan_batch_delay_sec=0,
        startup_discovery_wait_sec=0,
        reconnect_base_sec=1.0,
        reconnect_max_sec=10.0,
        telegram_bot_token=None,
        telegram_chat_id=None,
    )
