"""
Alert Deduplicator

Per (address, instrument, platform) cooldown. Platforms are independent, so a
Telegram alert does not suppress a log alert for the same position.
"""

import logging
import time
from typing import Callable, Dict, Tuple

from ..config import Config, config as default_config

logger = logging.getLogger(__name__)

AlertKey = Tuple[str, str, str]

DEFAULT_PLATFORM = "telegram"


class AlertDeduplicator:
    """
    Cooldown bookkeeping for alerts.

    should_alert() is a single synchronous check-and-claim, so two racing
    scans of the same position can never both be told to alert.
    """

    def __init__(
        self,
        cooldown_sec: float = None,
        cfg: Config = None,
        clock: Callable[[], float] = time.time,
    ):
        cfg = cfg or default_config
        self.cooldown_sec = cfg.alert_cooldown_sec if cooldown_sec is None else cooldown_sec
        self._clock = clock
        self._last_sent: Dict[AlertKey, float] = {}
        self.allowed = 0
        self.suppressed = 0

    @staticmethod
    def _key(address: str, instrument: str, platform: str) -> AlertKey:
        return (address.lower(), instrument, platform)

    def in_cooldown(self, address: str, instrument: str, platform: str = DEFAULT_PLATFORM) -> bool:
        last = self._last_sent.get(self._key(address, instrument, platform))
        return last is not None and self._clock() - last < self.cooldown_sec

    def should_alert(self, address: str, instrument: str, platform: str = DEFAULT_PLATFORM) -> bool:
        """
        Check the cooldown and, if clear, claim the slot.

        Returns:
            True if the caller may send (the send is recorded immediately),
            False if the key is in cooldown
        """
        key = self._key(address, instrument, platform)
        now = self._clock()
        last = self._last_sent.get(key)

        if last is not None and now - last < self.cooldown_sec:
            remaining = int(self.cooldown_sec - (now - last))
            logger.debug(f"Alert {address[:10]}/{instrument}/{platform} in cooldown ({remaining}s remaining)")
            self.suppressed += 1
            return False

        self._last_sent[key] = now
        self.allowed += 1
        return True

    def mark_alerted(self, address: str, instrument: str, platform: str = DEFAULT_PLATFORM):
        """Record a send that bypassed should_alert (e.g. a startup baseline)."""
        self._last_sent[self._key(address, instrument, platform)] = self._clock()

    def prune(self) -> int:
        """Forget keys whose cooldown has elapsed. Returns the number removed."""
        now = self._clock()
        expired = [k for k, t in self._last_sent.items() if now - t >= self.cooldown_sec]
        for k in expired:
            del self._last_sent[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._last_sent)
