"""
Address Registry

Set of addresses worth scanning, with recency and cumulative-volume
metadata. Add-only from both the trade stream and the leaderboard import;
size is bounded by eviction.

Eviction rule (runs when size exceeds max_addresses):
    keep the top keep_fraction * max_addresses by cumulative volume, plus
    every address seen within the retention window regardless of rank.
"""

import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

from ..config import Config, config as default_config
from ..models import TrackedAddress

logger = logging.getLogger(__name__)


class AddressRegistry:
    """
    In-memory address registry.

    All methods are synchronous, so each call is atomic on the event loop.
    """

    def __init__(self, cfg: Config = None, clock: Callable[[], float] = time.time):
        self.cfg = cfg or default_config
        self._clock = clock
        self._addresses: Dict[str, TrackedAddress] = {}
        self.evicted_total = 0

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def register(self, address: str, volume_usd: float = 0.0, seen_at: float = None) -> bool:
        """
        Register a trade sighting for an address.

        Volume accumulates and last_seen_at only moves forward, so repeated
        sightings (including after a stream reconnect) never reset state.

        Args:
            address: Wallet address (0x...)
            volume_usd: Notional of the sighted trade
            seen_at: Sighting time (default: now)

        Returns:
            True if the address was new
        """
        address = address.lower()
        seen_at = self._clock() if seen_at is None else seen_at
        entry = self._addresses.get(address)

        if entry is None:
            self._addresses[address] = TrackedAddress(
                address=address,
                last_seen_at=seen_at,
                cumulative_volume_usd=max(volume_usd, 0.0),
                first_seen_at=seen_at,
                trade_count=1 if volume_usd > 0 else 0,
            )
            return True

        entry.cumulative_volume_usd += max(volume_usd, 0.0)
        if volume_usd > 0:
            entry.trade_count += 1
        if seen_at > entry.last_seen_at:
            entry.last_seen_at = seen_at
        if not entry.first_seen_at:
            entry.first_seen_at = seen_at
        return False

    def import_addresses(self, addresses: Iterable[str], volumes: Dict[str, float] = None) -> int:
        """
        Add addresses without marking them active (leaderboard, persisted store).

        Known addresses are left untouched.

        Returns:
            Number of new addresses added
        """
        volumes = volumes or {}
        added = 0
        for address in addresses:
            if not address:
                continue
            address = address.lower()
            if address in self._addresses:
                continue
            self._addresses[address] = TrackedAddress(
                address=address,
                last_seen_at=0.0,
                cumulative_volume_usd=max(volumes.get(address, 0.0), 0.0),
            )
            added += 1
        return added

    def evict_if_over_capacity(self) -> int:
        """
        Apply the eviction rule if the registry is over capacity.

        Returns:
            Number of addresses evicted
        """
        max_addresses = self.cfg.max_addresses
        if len(self._addresses) <= max_addresses:
            return 0

        now = self._clock()
        keep_count = int(max_addresses * self.cfg.registry_keep_fraction)
        by_volume = sorted(
            self._addresses.values(),
            key=lambda a: a.cumulative_volume_usd,
            reverse=True,
        )
        keep = {a.address for a in by_volume[:keep_count]}
        keep.update(
            a.address for a in self._addresses.values()
            if a.last_seen_at and now - a.last_seen_at <= self.cfg.registry_retention_sec
        )

        before = len(self._addresses)
        self._addresses = {addr: a for addr, a in self._addresses.items() if addr in keep}
        evicted = before - len(self._addresses)
        self.evicted_total += evicted

        logger.info(f"Registry eviction: {before} -> {len(self._addresses)} addresses ({evicted} evicted)")
        return evicted

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, address: str) -> Optional[TrackedAddress]:
        return self._addresses.get(address.lower())

    def all(self) -> List[TrackedAddress]:
        return list(self._addresses.values())

    def addresses_to_scan(self, limit: int = None) -> List[str]:
        """
        Addresses for a full scan, most recently active first, then by volume.

        Args:
            limit: Maximum number of addresses (default from config)
        """
        limit = self.cfg.max_addresses_to_scan if limit is None else limit
        ordered = sorted(
            self._addresses.values(),
            key=lambda a: (a.last_seen_at, a.cumulative_volume_usd),
            reverse=True,
        )
        return [a.address for a in ordered[:limit]]

    def active_count(self, window_sec: float = None) -> int:
        """Addresses seen in a trade within the window (default: retention)."""
        window_sec = self.cfg.registry_retention_sec if window_sec is None else window_sec
        now = self._clock()
        return sum(1 for a in self._addresses.values() if a.last_seen_at and now - a.last_seen_at <= window_sec)

    def __contains__(self, address: str) -> bool:
        return address.lower() in self._addresses

    def __len__(self) -> int:
        return len(self._addresses)
