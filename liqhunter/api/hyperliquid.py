"""
Hyperliquid API Client

Single responsibility: communicate with the Hyperliquid REST API.

Serves as the market data, position and enrichment source for the pipeline.
Every public method is best effort: network failures and undecodable bodies
are retried a bounded number of times and then reported as None (or an empty
collection), never raised.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp

from ..config import Config, config as default_config
from ..models import AccountSnapshot, RawPosition

logger = logging.getLogger(__name__)

# Used when the leaderboard endpoint is unavailable
FALLBACK_WHALES = [
    "0x7b7b908c076b9784487180de92e7161c2982734e",
    "0x5815d1b07f8f7cb01f6cb98e6a49d8f96de1b8ef",
    "0x816ac2c03f7c295393f33de3c21f0dcda4ed6aa5",
    "0x6e9f683ad7f8b7d4c91fa3227af772e1e8c6d7e4",
]


class HyperliquidClient:
    """
    Async client for Hyperliquid API.

    Handles:
    - Mark prices and the instrument universe
    - Account state (positions) for a single address
    - Enrichment lookups (earliest fill, all-time PnL)
    - Leaderboard import
    - Concurrency cap, timeouts, rate limiting and retries
    """

    def __init__(self, cfg: Config = None, session: aiohttp.ClientSession = None):
        self.cfg = cfg or default_config
        self.url = self.cfg.api_url
        self._session: Optional[aiohttp.ClientSession] = session
        self._owns_session = session is None
        self._semaphore = asyncio.Semaphore(self.cfg.max_concurrent_requests)
        self._timeout = aiohttp.ClientTimeout(total=self.cfg.request_timeout_sec)

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Create session if needed."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    @property
    def session(self) -> Optional[aiohttp.ClientSession]:
        return self._session

    async def close(self):
        """Close the HTTP session."""
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    async def _request(self, payload: dict, retries: int = None) -> Optional[Any]:
        """
        POST to the info endpoint with retry logic.

        Args:
            payload: JSON payload to send
            retries: Number of retries (default from config)

        Returns:
            JSON response or None on failure
        """
        session = await self._ensure_session()
        retries = retries if retries is not None else self.cfg.max_retries

        for attempt in range(retries + 1):
            try:
                async with self._semaphore:
                    async with session.post(
                        self.url,
                        json=payload,
                        headers={"Content-Type": "application/json"},
                        timeout=self._timeout,
                    ) as response:
                        if response.status == 429:
                            backoff = self.cfg.retry_backoff_sec * (2 ** attempt)
                            logger.warning(f"Rate limited on {payload.get('type')}, backing off {backoff}s")
                            await asyncio.sleep(backoff)
                            continue

                        if response.status != 200:
                            logger.error(f"API error {response.status} for {payload.get('type')}: {await response.text()}")
                            return None

                        return await response.json()

            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                logger.warning(f"Request error for {payload.get('type')} (attempt {attempt + 1}): {e!r}")
                if attempt < retries:
                    await asyncio.sleep(self.cfg.retry_backoff_sec * (attempt + 1))
                continue

        logger.debug(f"Giving up on {payload.get('type')} after {retries + 1} attempts")
        return None

    # -------------------------------------------------------------------------
    # Market Data
    # -------------------------------------------------------------------------

    async def get_all_mark_prices(self) -> Dict[str, float]:
        """
        Get current mid prices for all perp instruments.

        Falls back to metaAndAssetCtxs when allMids comes back empty.

        Returns:
            Dict mapping instrument symbol to price (empty on failure)
        """
        prices = parse_mids(await self._request({"type": "allMids"}))
        if prices:
            return prices

        prices = parse_mids_from_asset_ctxs(await self._request({"type": "metaAndAssetCtxs"}))
        if prices:
            logger.info(f"allMids recovered from metaAndAssetCtxs ({len(prices)} instruments)")
        return prices

    async def get_instrument_list(self) -> List[str]:
        """Get the names of all listed perp instruments."""
        response = await self._request({"type": "meta"})
        if not isinstance(response, dict):
            return []

        names = []
        for asset in response.get("universe", []):
            if not isinstance(asset, dict) or asset.get("isDelisted"):
                continue
            name = asset.get("name")
            if name:
                names.append(name)
        return names

    # -------------------------------------------------------------------------
    # Positions
    # -------------------------------------------------------------------------

    async def get_account_state(self, address: str) -> Optional[AccountSnapshot]:
        """
        Get all open positions and the account value for one address.

        Args:
            address: Wallet address (0x...)

        Returns:
            AccountSnapshot, or None if the request failed
        """
        response = await self._request({"type": "clearinghouseState", "user": address})
        if not isinstance(response, dict):
            return None
        return parse_account_state(address, response)

    # -------------------------------------------------------------------------
    # Enrichment
    # -------------------------------------------------------------------------

    async def get_earliest_activity_time(self, address: str) -> Optional[int]:
        """
        Timestamp (ms) of the earliest fill on record for an address.

        An address with no fills at all is brand new, so "now" is returned.
        None means the lookup failed.
        """
        now_ms = int(time.time() * 1000)
        response = await self._request({
            "type": "userFillsByTime",
            "user": address,
            "startTime": 0,
            "endTime": now_ms,
        })
        if not isinstance(response, list):
            return None
        return earliest_fill_time(response, now_ms)

    async def get_all_time_realized_pnl(self, address: str) -> Optional[float]:
        """All-time PnL from the portfolio endpoint, or None if unavailable."""
        response = await self._request({"type": "portfolio", "user": address})
        return all_time_pnl_from_portfolio(response)

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    async def get_leaderboard_addresses(self) -> List[str]:
        """
        Addresses from the public leaderboard.

        Falls back to a short curated list when the leaderboard is unreachable.
        """
        session = await self._ensure_session()
        try:
            async with session.get(
                self.cfg.leaderboard_url,
                timeout=aiohttp.ClientTimeout(total=30),
            ) as response:
                if response.status != 200:
                    raise aiohttp.ClientResponseError(
                        response.request_info, response.history, status=response.status
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Leaderboard fetch failed: {e!r}, using {len(FALLBACK_WHALES)} known whales")
            return list(FALLBACK_WHALES)

        rows = data.get("leaderboardRows", []) if isinstance(data, dict) else []
        addresses = []
        for row in rows:
            addr = row.get("ethAddress") if isinstance(row, dict) else None
            if isinstance(addr, str) and addr.startswith("0x"):
                addresses.append(addr.lower())
        return addresses


# =============================================================================
# Response parsing
# =============================================================================

def parse_mids(response: Any) -> Dict[str, float]:
    """Parse an allMids response: {"BTC": "95000.5", ...}."""
    if not isinstance(response, dict):
        return {}

    prices = {}
    for instrument, price_str in response.items():
        try:
            price = float(price_str)
        except (ValueError, TypeError):
            continue
        if price > 0:
            prices[instrument] = price
    return prices


def parse_mids_from_asset_ctxs(response: Any) -> Dict[str, float]:
    """Parse metaAndAssetCtxs: [{"universe": [...]}, [{"midPx": ...}, ...]]."""
    if not isinstance(response, list) or len(response) < 2:
        return {}

    universe = (response[0] or {}).get("universe", []) if isinstance(response[0], dict) else []
    ctxs = response[1] if isinstance(response[1], list) else []

    prices = {}
    for asset, ctx in zip(universe, ctxs):
        try:
            name = asset.get("name")
            mid = ctx.get("midPx")
            if name and mid:
                prices[name] = float(mid)
        except (AttributeError, ValueError, TypeError):
            continue
    return prices


def parse_account_state(address: str, response: dict) -> AccountSnapshot:
    """Parse a clearinghouseState response into an AccountSnapshot."""
    positions = []

    for item in response.get("assetPositions", []) or []:
        pos_data = item.get("position", {}) if isinstance(item, dict) else {}
        if not pos_data:
            continue

        try:
            size = float(pos_data.get("szi", 0))
            if size == 0:
                continue

            # Liquidation price may be missing or None
            liq_px = pos_data.get("liquidationPx")
            liquidation_price = float(liq_px) if liq_px else None

            leverage_info = pos_data.get("leverage", {})
            if isinstance(leverage_info, dict):
                leverage = float(leverage_info.get("value", 1.0))
                leverage_type = leverage_info.get("type", "cross")
            else:
                leverage = float(leverage_info) if leverage_info else 1.0
                leverage_type = "cross"

            positions.append(RawPosition(
                instrument=pos_data["coin"],
                size=size,
                entry_price=float(pos_data.get("entryPx") or 0),
                liquidation_price=liquidation_price,
                leverage=leverage,
                leverage_type=leverage_type,
                margin_used=float(pos_data.get("marginUsed") or 0),
                unrealized_pnl=float(pos_data.get("unrealizedPnl") or 0),
            ))

        except (ValueError, TypeError, KeyError) as e:
            logger.debug(f"Error parsing position for {address}: {e}")
            continue

    margin_summary = response.get("marginSummary") or {}
    try:
        account_value = float(margin_summary.get("accountValue", 0))
    except (ValueError, TypeError):
        account_value = 0.0

    return AccountSnapshot(
        address=address,
        positions=tuple(positions),
        account_value=account_value,
    )


def earliest_fill_time(fills: List[dict], now_ms: int) -> int:
    """Earliest fill timestamp in ms; now_ms when there are no fills."""
    earliest = now_ms
    for fill in fills:
        t = fill.get("time") if isinstance(fill, dict) else None
        if isinstance(t, (int, float)) and 0 < t < earliest:
            earliest = int(t)
    return earliest


def all_time_pnl_from_portfolio(response: Any) -> Optional[float]:
    """
    Extract the latest all-time PnL from a portfolio response.

    The response is a list of [period, {"pnlHistory": [[ts, pnl], ...]}] pairs.
    """
    if not isinstance(response, list):
        return None

    for entry in response:
        try:
            period, data = entry
        except (TypeError, ValueError):
            continue
        if period not in ("allTime", "perpAllTime") or not isinstance(data, dict):
            continue
        history = data.get("pnlHistory") or []
        if not history:
            continue
        try:
            return float(history[-1][1] or 0)
        except (IndexError, TypeError, ValueError):
            return None
    return None
