"""
Position Evaluator
==================

Pure risk classification: raw position + mark price (+ optional account
snapshot) -> EvaluatedPosition or None. No I/O, no clock.

Algorithm:
1. Reject if mark or liquidation price is unknown, or notional is below
   the minimum position size.
2. distance = (mark - liq) / mark for longs, (liq - mark) / mark for shorts.
   Reject if negative or beyond the maximum tracked distance. Classification
   rules may relax the maximum (e.g. large bets on illiquid instruments).
3. Danger level: <= critical -> CRITICAL, <= warning -> WARNING, else WATCH.
4. With an account snapshot, attach wallet-level context (account value,
   total uPnL, sibling positions). Context never changes the distance math.

Enrichment (wallet age, all-time PnL) is applied afterwards with
apply_enrichment(), so evaluation itself stays deterministic.
"""

import dataclasses
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

from ..config import Config, config as default_config
from ..models import (
    AccountSnapshot,
    DangerLevel,
    Direction,
    EvaluatedPosition,
    RawPosition,
    SiblingPosition,
    TAG_DEGEN_WHALE,
    TAG_FRESH_WALLET,
    TAG_VAULT_ATTACK,
)


# =============================================================================
# Classification rules
# =============================================================================

class ClassificationRule:
    """
    Pluggable heuristic applied during evaluation.

    A rule can widen the maximum tracked distance for a position and attach
    tags to it. The base rule does neither.
    """

    name = "base"

    def max_distance(self, instrument: str, notional_usd: float) -> Optional[float]:
        """Relaxed maximum distance for this position, or None."""
        return None

    def tags(self, instrument: str, notional_usd: float) -> FrozenSet[str]:
        return frozenset()


class VaultAttackRule(ClassificationRule):
    """
    Large bets on non-major instruments.

    These can be attempts to push an illiquid market into the liquidity
    vault, so they are tracked further from liquidation and labelled.
    This is a heuristic label only.
    """

    name = "vault_attack"

    def __init__(self, cfg: Config = None):
        self.cfg = cfg or default_config

    def _applies(self, instrument: str, notional_usd: float) -> bool:
        return not self.cfg.is_major(instrument) and notional_usd >= self.cfg.vault_attack_min_usd

    def max_distance(self, instrument: str, notional_usd: float) -> Optional[float]:
        if self._applies(instrument, notional_usd):
            return self.cfg.relaxed_max_distance
        return None

    def tags(self, instrument: str, notional_usd: float) -> FrozenSet[str]:
        if not self._applies(instrument, notional_usd):
            return frozenset()
        if notional_usd >= self.cfg.vault_attack_escalation_usd:
            return frozenset({TAG_VAULT_ATTACK, TAG_DEGEN_WHALE})
        return frozenset({TAG_DEGEN_WHALE})


def default_rules(cfg: Config = None) -> List[ClassificationRule]:
    return [VaultAttackRule(cfg)]


# =============================================================================
# Evaluation
# =============================================================================

def classify_danger(distance: float, cfg: Config = None) -> DangerLevel:
    """Map a distance fraction to a danger level. Boundaries are inclusive."""
    cfg = cfg or default_config
    if distance <= cfg.critical_distance:
        return DangerLevel.CRITICAL
    if distance <= cfg.warning_distance:
        return DangerLevel.WARNING
    return DangerLevel.WATCH


def distance_to_liquidation(direction: Direction, mark_price: float, liq_price: float) -> float:
    if direction == Direction.LONG:
        return (mark_price - liq_price) / mark_price
    return (liq_price - mark_price) / mark_price


def evaluate_position(
    address: str,
    raw: RawPosition,
    mark_price: Optional[float],
    account: Optional[AccountSnapshot] = None,
    mark_prices: Optional[Dict[str, float]] = None,
    cfg: Config = None,
    rules: Sequence[ClassificationRule] = None,
) -> Optional[EvaluatedPosition]:
    """
    Classify one raw position.

    Args:
        address: Owner of the position
        raw: Exchange-reported position
        mark_price: Current mark price for raw.instrument
        account: Full account snapshot for wallet context (optional)
        mark_prices: Prices used to value sibling positions (optional,
            falls back to sibling entry prices)
        cfg: Thresholds (default: global config)
        rules: Classification rules (default: VaultAttackRule)

    Returns:
        EvaluatedPosition, or None if the position does not qualify
    """
    cfg = cfg or default_config
    rules = default_rules(cfg) if rules is None else rules

    if not mark_price or mark_price <= 0:
        return None
    if raw.liquidation_price is None or raw.liquidation_price <= 0 or raw.size == 0:
        return None

    notional = abs(raw.size) * mark_price
    if notional < cfg.min_position_usd:
        return None

    direction = raw.direction
    distance = distance_to_liquidation(direction, mark_price, raw.liquidation_price)
    if distance < 0:
        return None

    max_distance = cfg.max_distance
    tags = set()
    for rule in rules:
        relaxed = rule.max_distance(raw.instrument, notional)
        if relaxed is not None and relaxed > max_distance:
            max_distance = relaxed
        tags.update(rule.tags(raw.instrument, notional))

    if distance > max_distance:
        return None

    context = {}
    if account is not None:
        context = _wallet_context(raw, account, mark_prices or {})

    return EvaluatedPosition(
        address=address.lower(),
        instrument=raw.instrument,
        direction=direction,
        size=raw.size,
        notional_usd=notional,
        entry_price=raw.entry_price,
        mark_price=mark_price,
        liq_price=raw.liquidation_price,
        distance_to_liq=distance,
        danger_level=classify_danger(distance, cfg),
        leverage=raw.leverage,
        margin_used=raw.margin_used,
        unrealized_pnl=raw.unrealized_pnl,
        tags=frozenset(tags),
        **context,
    )


def _wallet_context(raw: RawPosition, account: AccountSnapshot, mark_prices: Dict[str, float]) -> dict:
    siblings = []
    for other in account.positions:
        if other.instrument == raw.instrument:
            continue
        price = mark_prices.get(other.instrument) or other.entry_price
        siblings.append(SiblingPosition(
            instrument=other.instrument,
            direction=other.direction,
            notional_usd=abs(other.size) * price,
            unrealized_pnl=other.unrealized_pnl,
            leverage=other.leverage,
        ))

    return {
        "account_value": account.account_value,
        "total_unrealized_pnl": sum(p.unrealized_pnl for p in account.positions),
        "sibling_positions": tuple(siblings),
    }


def evaluate_account(
    account: AccountSnapshot,
    mark_prices: Dict[str, float],
    cfg: Config = None,
    rules: Sequence[ClassificationRule] = None,
) -> List[EvaluatedPosition]:
    """Evaluate every position in an account snapshot."""
    cfg = cfg or default_config
    rules = default_rules(cfg) if rules is None else rules

    results = []
    for raw in account.positions:
        evaluated = evaluate_position(
            account.address,
            raw,
            mark_prices.get(raw.instrument),
            account=account,
            mark_prices=mark_prices,
            cfg=cfg,
            rules=rules,
        )
        if evaluated is not None:
            results.append(evaluated)
    return results


def apply_enrichment(
    position: EvaluatedPosition,
    wallet_age_days: Optional[int],
    all_time_pnl: Optional[float],
    cfg: Config = None,
) -> EvaluatedPosition:
    """Attach best-effort wallet facts. Unknown values stay None."""
    cfg = cfg or default_config
    tags = set(position.tags)
    if wallet_age_days is not None and wallet_age_days == 0:
        tags.add(TAG_FRESH_WALLET)

    return dataclasses.replace(
        position,
        wallet_age_days=wallet_age_days,
        all_time_pnl=all_time_pnl,
        is_new_address=wallet_age_days is not None and wallet_age_days < cfg.new_wallet_days,
        tags=frozenset(tags),
    )


def sort_by_danger(positions: Iterable[EvaluatedPosition]) -> List[EvaluatedPosition]:
    """Most dangerous first (ascending distance to liquidation)."""
    return sorted(positions, key=lambda p: (p.distance_to_liq, -p.notional_usd))
