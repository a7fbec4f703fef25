"""
Telegram Sink
=============

Delivers liquidation risk alerts to a Telegram chat.

Per-key cooldowns belong to the pipeline's AlertDeduplicator; this sink only
renders, reserves a slot in a global sliding-window send limit and posts. The Bot API
call is a blocking requests.post, so it runs in a worker thread.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

import requests

from ..config import Config, config as default_config
from .base import AlertPayload, NotificationSink, format_alert_html

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org/bot{token}/sendMessage"
SEND_TIMEOUT_SEC = 10
RATE_WINDOW_SEC = 60
TRUNCATION_MARKER = "\n... (truncated)"


@dataclass
class AlertConfig:
    """Bot credentials and delivery limits."""
    bot_token: str
    chat_id: str
    max_message_length: int = 4000
    max_alerts_per_minute: int = 20


class TelegramSink(NotificationSink):
    """Telegram delivery with a global per-minute cap."""

    platform = "telegram"

    def __init__(self, config: AlertConfig, clock=time.time):
        if not config.bot_token:
            raise ValueError("TELEGRAM_BOT_TOKEN is required")
        if not config.chat_id:
            raise ValueError("TELEGRAM_CHAT_ID is required")

        self.config = config
        self._clock = clock
        self._recent_sends: Deque[float] = deque()
        self._window_lock = threading.Lock()
        self.sent = 0
        self.failed = 0
        self.rate_limited = 0

    @classmethod
    def from_env(cls, cfg: Config = None) -> Optional["TelegramSink"]:
        """Sink built from configured credentials, or None when they are missing."""
        cfg = cfg or default_config
        if not cfg.telegram_configured:
            logger.warning("Telegram disabled: TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID must both be set")
            return None
        return cls(AlertConfig(bot_token=cfg.telegram_bot_token, chat_id=cfg.telegram_chat_id))

    def _reserve_slot(self) -> bool:
        """Claim a slot in the send window. Every attempt counts, delivered or not."""
        with self._window_lock:
            now = self._clock()
            while self._recent_sends and now - self._recent_sends[0] >= RATE_WINDOW_SEC:
                self._recent_sends.popleft()
            if len(self._recent_sends) >= self.config.max_alerts_per_minute:
                return False
            self._recent_sends.append(now)
            return True

    def _fit(self, text: str) -> str:
        limit = self.config.max_message_length
        if len(text) <= limit:
            return text
        return text[:limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER

    def send_message(self, text: str) -> Optional[int]:
        """
        Post an HTML message (blocking).

        Returns:
            Telegram message_id, or None if the message was not delivered
        """
        if not self._reserve_slot():
            self.rate_limited += 1
            logger.warning(f"Telegram send cap reached ({self.config.max_alerts_per_minute}/min), dropping alert")
            return None

        body = {
            "chat_id": self.config.chat_id,
            "text": self._fit(text),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }

        # The URL embeds the bot token: log exception types and status codes only
        try:
            response = requests.post(
                TELEGRAM_API.format(token=self.config.bot_token), json=body, timeout=SEND_TIMEOUT_SEC,
            )
            response.raise_for_status()
            message_id = response.json().get("result", {}).get("message_id")
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            level = logging.WARNING if status == 429 else logging.ERROR
            logger.log(level, f"Telegram rejected alert (HTTP {status})")
            return None
        except requests.exceptions.RequestException as e:
            logger.error(f"Telegram delivery failed: {type(e).__name__}")
            return None
        except ValueError:
            logger.error("Telegram returned a non-JSON body")
            return None

        logger.info(f"Telegram alert delivered (message_id={message_id})")
        return message_id

    async def send(self, payload: AlertPayload) -> bool:
        message_id = await asyncio.to_thread(self.send_message, format_alert_html(payload))
        if message_id is None:
            self.failed += 1
            return False
        self.sent += 1
        return True
