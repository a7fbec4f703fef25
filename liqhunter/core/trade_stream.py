"""
Trade Stream Listener
=====================

Maintains one WebSocket connection to the Hyperliquid feed and turns it into
pipeline events.

Subscriptions:
- trades (per instrument): address discovery
- allMids: pushed price updates, merged into the market data cache
- userFills for the HLP vault: liquidation feed

Discovery rules:
- notional >= discovery threshold ($100K): register both counterparties
  (volume accumulates)
- notional >= immediate-check threshold ($500K): also request an
  out-of-band scan of each counterparty for that instrument

Failure handling:
- malformed messages are logged at DEBUG and dropped
- connection loss reconnects with exponential backoff (reset once a session
  is subscribed)
- a watchdog closes the socket when no trade has arrived for the idle window,
  even if the socket still reports itself open
"""

import asyncio
import json
import logging
import math
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import aiohttp

from ..config import Config, config as default_config
from ..models import TradeEvent
from .market_data import MarketDataCache
from .registry import AddressRegistry
from .tasks import wait_for_stop

logger = logging.getLogger(__name__)


# =============================================================================
# Backoff
# =============================================================================

class Backoff:
    """Exponential reconnect delay: base, 2*base, 4*base ... capped at cap."""

    def __init__(self, base: float, cap: float):
        self.base = base
        self.cap = cap
        self._current = base
        self.attempts = 0

    def next_delay(self) -> float:
        delay = self._current
        self._current = min(self._current * 2, self.cap)
        self.attempts += 1
        return delay

    def reset(self):
        self._current = self.base
        self.attempts = 0


# =============================================================================
# Message parsing
# =============================================================================

def parse_trade(raw: dict) -> TradeEvent:
    """
    Parse one element of a trades message.

    Raises:
        KeyError, TypeError, ValueError on malformed input
    """
    instrument = raw["coin"]
    if not isinstance(instrument, str) or not instrument:
        raise ValueError(f"bad instrument {instrument!r}")

    price = float(raw["px"])
    size = float(raw["sz"])
    if not (math.isfinite(price) and math.isfinite(size)) or price <= 0:
        raise ValueError(f"bad price/size {price}/{size}")

    users = raw.get("users") or []
    counterparties = tuple(
        u.lower() for u in users
        if isinstance(u, str) and u.startswith("0x")
    )

    time_ms = raw.get("time")
    return TradeEvent(
        instrument=instrument,
        price=price,
        size=size,
        counterparties=counterparties,
        side=raw.get("side"),
        time_ms=int(time_ms) if time_ms is not None else None,
        trade_hash=raw.get("hash"),
    )


def parse_trades(items: Any) -> List[TradeEvent]:
    """Parse a trades payload, dropping malformed entries."""
    if not isinstance(items, list):
        return []

    trades = []
    for raw in items:
        try:
            trades.append(parse_trade(raw))
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Dropping malformed trade {raw!r}: {e}")
    return trades


def parse_pushed_mids(data: Any) -> Dict[str, float]:
    """Parse an allMids push: {"mids": {"BTC": "95000.0", ...}}."""
    mids = data.get("mids") if isinstance(data, dict) else None
    if not isinstance(mids, dict):
        return {}

    prices = {}
    for instrument, px in mids.items():
        try:
            price = float(px)
        except (TypeError, ValueError):
            continue
        if math.isfinite(price) and price > 0:
            prices[instrument] = price
    return prices


# =============================================================================
# Listener
# =============================================================================

class TradeStreamListener:
    """
    WebSocket consumer feeding the registry, the price cache and the
    liquidation feed.

    Args:
        registry: Address registry to register discovered counterparties in
        market_data: Price cache for pushed mids
        request_scan: Called with (address, instrument) for very large trades
        on_fills: Called with the fills list of each HLP userFills message
        on_address_seen: Called with (address, notional) for each discovery
        cfg: Thresholds, URLs and timings
        session: Shared aiohttp session (created if omitted)
        clock: Time source (injectable for tests)
    """

    def __init__(
        self,
        registry: AddressRegistry,
        market_data: MarketDataCache,
        request_scan: Callable[[str, str], Any],
        on_fills: Optional[Callable[[List[dict]], Any]] = None,
        on_address_seen: Optional[Callable[[str, float], Any]] = None,
        cfg: Config = None,
        session: aiohttp.ClientSession = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg or default_config
        self.registry = registry
        self.market_data = market_data
        self.request_scan = request_scan
        self.on_fills = on_fills
        self.on_address_seen = on_address_seen
        self._session = session
        self._owns_session = session is None
        self._clock = clock

        self.backoff = Backoff(self.cfg.reconnect_base_sec, self.cfg.reconnect_max_sec)
        self._instruments: List[str] = []
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

        # Stats
        self.connected = False
        self.reconnects = 0
        self.watchdog_trips = 0
        self.trades_received = 0
        self.whale_trades = 0
        self.immediate_scans_requested = 0
        self.messages_dropped = 0
        self._last_trade_at: Optional[float] = None

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def set_instruments(self, instruments: Sequence[str]):
        """Instruments to subscribe to on the next (re)connect."""
        self._instruments = list(instruments)

    @property
    def instruments(self) -> List[str]:
        """Subscribed instruments; majors when the instrument list is unknown."""
        if self._instruments:
            return list(self._instruments)
        return sorted(self.cfg.major_instruments)

    def seconds_since_last_trade(self) -> Optional[float]:
        if self._last_trade_at is None:
            return None
        return self._clock() - self._last_trade_at

    def stats(self) -> Dict[str, Any]:
        since = self.seconds_since_last_trade()
        return {
            "connected": self.connected,
            "reconnects": self.reconnects,
            "watchdog_trips": self.watchdog_trips,
            "trades_received": self.trades_received,
            "whale_trades": self.whale_trades,
            "immediate_scans_requested": self.immediate_scans_requested,
            "messages_dropped": self.messages_dropped,
            "seconds_since_last_trade": round(since, 1) if since is not None else None,
            "subscribed_instruments": len(self.instruments),
        }

    # -------------------------------------------------------------------------
    # Message handling (synchronous: no await between read and mutation)
    # -------------------------------------------------------------------------

    def handle_message(self, raw: str):
        """Dispatch one text frame. Never raises on bad input."""
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError as e:
            self.messages_dropped += 1
            logger.debug(f"Dropping non-JSON message: {e}")
            return

        if not isinstance(msg, dict):
            self.messages_dropped += 1
            return

        try:
            self._dispatch(msg.get("channel"), msg.get("data"))
        except Exception as e:
            self.messages_dropped += 1
            logger.exception(f"Dropping {msg.get('channel')!r} message after handler error: {e}")

    def _dispatch(self, channel: Any, data: Any):
        if channel == "trades":
            self._last_trade_at = self._clock()
            trades = parse_trades(data)
            if isinstance(data, list):
                self.messages_dropped += len(data) - len(trades)
            self.handle_trades(trades)

        elif channel == "allMids":
            self.market_data.merge(parse_pushed_mids(data))

        elif channel == "userFills":
            if not isinstance(data, dict) or data.get("isSnapshot"):
                return
            fills = data.get("fills")
            if isinstance(fills, list) and self.on_fills:
                self.on_fills(fills)

        elif channel == "error":
            logger.warning(f"Stream error message: {data}")

    def handle_trades(self, trades: Iterable[TradeEvent]):
        for trade in trades:
            self.trades_received += 1
            self.handle_trade(trade)

    def handle_trade(self, trade: TradeEvent):
        """Apply the discovery rules to one trade."""
        notional = trade.notional_usd
        if notional < self.cfg.discovery_trade_usd:
            return

        self.whale_trades += 1
        immediate = notional >= self.cfg.immediate_check_trade_usd

        for address in trade.counterparties:
            is_new = self.registry.register(address, notional)
            if is_new:
                logger.debug(f"Discovered {address[:10]} via {trade.instrument} trade ${notional:,.0f}")
            if self.on_address_seen:
                self.on_address_seen(address, notional)
            if immediate:
                self.immediate_scans_requested += 1
                self.request_scan(address, trade.instrument)

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _subscriptions(self) -> List[dict]:
        subs = [{"type": "trades", "coin": coin} for coin in self.instruments]
        subs.append({"type": "allMids"})
        subs.append({"type": "userFills", "user": self.cfg.hlp_vault_address})
        return subs

    async def _subscribe(self, ws: aiohttp.ClientWebSocketResponse):
        subs = self._subscriptions()
        for sub in subs:
            await ws.send_json({"method": "subscribe", "subscription": sub})
        logger.info(f"Subscribed to {len(subs)} channels ({len(self.instruments)} instruments)")

    async def run(self, stop: asyncio.Event):
        """Connect, consume and reconnect until stop is set."""
        while not stop.is_set():
            try:
                await self._listen_once(stop)
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                logger.warning(f"Stream connection error: {e!r}")
            except Exception as e:
                logger.exception(f"Stream session failed: {e!r}")

            if stop.is_set():
                break

            delay = self.backoff.next_delay()
            self.reconnects += 1
            logger.warning(f"Stream disconnected, reconnecting in {delay:.0f}s (attempt {self.backoff.attempts})")
            if await wait_for_stop(stop, delay):
                break

        logger.info("Trade stream stopped")

    async def _listen_once(self, stop: asyncio.Event):
        """One WebSocket session: connect, subscribe, read until closed."""
        session = await self._ensure_session()

        async with session.ws_connect(
            self.cfg.ws_url,
            heartbeat=self.cfg.stream_heartbeat_sec,
        ) as ws:
            self._ws = ws
            logger.info(f"Connected to {self.cfg.ws_url}")
            await self._subscribe(ws)
            self.connected = True
            self.backoff.reset()
            # Idle timer starts at connect, not at the last trade of the previous session
            self._last_trade_at = self._clock()

            watchdog = asyncio.create_task(self._watchdog(ws, stop))
            try:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        self.handle_message(msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        logger.warning(f"Stream error: {ws.exception()!r}")
                        break
            finally:
                watchdog.cancel()
                self.connected = False
                self._ws = None

    async def _watchdog(self, ws: aiohttp.ClientWebSocketResponse, stop: asyncio.Event):
        """Close the socket on stop, or when no trade arrives within the idle window."""
        while not ws.closed:
            stopped = await wait_for_stop(stop, self.cfg.stream_watchdog_interval_sec)
            if stopped:
                await ws.close()
                return

            idle = self.seconds_since_last_trade()
            if idle is not None and idle > self.cfg.stream_idle_timeout_sec:
                self.watchdog_trips += 1
                logger.warning(f"No trades for {idle:.0f}s, forcing reconnect")
                await ws.close()
                return

    async def close(self):
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None
