"""
Notification Sinks
==================

The pipeline hands accepted alerts to one or more NotificationSink objects.
Delivery is best effort: a sink logs its own failures and reports them as
False, it never raises into the pipeline.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..models import (
    TAG_DEGEN_WHALE,
    TAG_FRESH_WALLET,
    TAG_VAULT_ATTACK,
    DangerLevel,
    Direction,
    EvaluatedPosition,
)

logger = logging.getLogger(__name__)

HYPURRSCAN_URL = "https://hypurrscan.io/address/{address}"


@dataclass(frozen=True)
class AlertPayload:
    """One alert to deliver."""
    position: EvaluatedPosition
    reason: str = "new_position"  # "new_position", "manual" or "test"
    trigger_instrument: Optional[str] = None

    @property
    def is_escalated(self) -> bool:
        return TAG_VAULT_ATTACK in self.position.tags

    @property
    def address_url(self) -> str:
        return HYPURRSCAN_URL.format(address=self.position.address)


class NotificationSink:
    """Base class for alert delivery channels."""

    platform = "base"

    async def send(self, payload: AlertPayload) -> bool:
        """Deliver an alert. Returns True on success."""
        raise NotImplementedError

    async def close(self):
        pass


class LoggingSink(NotificationSink):
    """Writes alerts to the log. Used for --dry-run and as a local audit trail."""

    platform = "log"

    async def send(self, payload: AlertPayload) -> bool:
        p = payload.position
        logger.info(
            f"[ALERT] {p.instrument} {p.direction.value} {p.danger_level.value} | "
            f"{format_usd(p.notional_usd)} | {p.distance_pct:.2f}% to liq @ {format_price(p.liq_price)} | "
            f"{p.short_address}" + (f" | {','.join(sorted(p.tags))}" if p.tags else "")
        )
        return True


# =============================================================================
# Formatting
# =============================================================================

def format_price(p: float) -> str:
    if p >= 1000:
        return f"${p:,.0f}"
    elif p >= 1:
        return f"${p:.2f}"
    else:
        return f"${p:.6f}"


def format_usd(value: float) -> str:
    value = abs(value)
    if value >= 1_000_000:
        return f"${value / 1_000_000:.2f}M"
    return f"${value / 1_000:.0f}K"


def format_wallet_age(days: Optional[int]) -> str:
    if days is None:
        return "unknown"
    if days == 0:
        return "BRAND NEW (<1 day)"
    if days < 30:
        return f"{days} days"
    if days < 365:
        return f"{days // 30} months"
    return f"{days / 365:.1f} years"


def format_alert_html(payload: AlertPayload) -> str:
    """Telegram HTML body for an alert."""
    p = payload.position
    lines: List[str] = []

    if TAG_VAULT_ATTACK in p.tags:
        lines += ["🚨🚨🚨 <b>HYPERVAULT ATTACK ALERT</b> 🚨🚨🚨", ""]
    elif TAG_DEGEN_WHALE in p.tags:
        lines += ["🎰 <b>DEGEN WHALE SPOTTED</b> 🎰", ""]
    elif TAG_FRESH_WALLET in p.tags:
        lines += ["👶 <b>FRESH WALLET ALERT</b>", "<i>Possible insider or exploit activity</i>", ""]

    danger_icon = "💀" if p.danger_level == DangerLevel.CRITICAL else "⚠️"
    side_icon = "🟢" if p.direction == Direction.LONG else "🔴"
    lines.append(f"{danger_icon} <b>{p.instrument} {p.direction.value}</b> {side_icon} {p.danger_level.value}")
    lines.append("━━━━━━━━━━━━━━━━")

    if p.all_time_pnl is not None:
        if p.is_profitable_whale:
            lines.append(f"👑 Historically winning whale (all-time <b>+{format_usd(p.all_time_pnl)}</b>)")
        else:
            lines.append(f"🎲 Historically losing whale (all-time <b>-{format_usd(p.all_time_pnl)}</b>)")
        lines.append("")

    lines.append(f"💎 Size: <b>{format_usd(p.notional_usd)}</b>")
    lines.append(f"⚡ Leverage: <b>{p.leverage:g}x</b>")
    lines.append(f"🎯 Distance to Liq: <b>{p.distance_pct:.2f}%</b>")
    lines.append("")
    lines.append(f"📊 Entry: <code>{format_price(p.entry_price)}</code>")
    lines.append(f"📍 Mark: <code>{format_price(p.mark_price)}</code>")
    lines.append(f"💀 Liquidation: <code>{format_price(p.liq_price)}</code>")

    if p.account_value is not None:
        lines.append("")
        lines.append(f"🏦 Account value: {format_usd(p.account_value)} ({p.total_position_count} positions)")

    if p.wallet_age_days is not None:
        lines.append(f"🕐 Wallet age: {format_wallet_age(p.wallet_age_days)}")

    lines.append("")
    lines.append(f"<a href=\"{payload.address_url}\">{p.short_address} on Hypurrscan</a>")
    lines.append(f"#Hyperliquid #{p.instrument} #WhaleAlert")
    return "\n".join(lines)
