"""Competitor price → candidate price/ratio.

Everything here is pure: the same inputs always give the same candidate and
the same ``was_capped`` flag.

Offsets are applied in one fixed order, amount first and then percentage::

    candidate_price = (competitor_price + sign * offset_amount) * (1 + sign * offset_pct / 100)

``sign`` is -1 for an UNDERCUT on a BUY rule and +1 for an UNDERCUT on a SELL
rule; OVERCUT flips it; MATCH uses +1.  In ratio mode the candidate price is
expressed as a percentage of the market reference price (or of the competitor
price when no reference is available).
"""

from __future__ import annotations

from dataclasses import dataclass

from .models import AssetOverride, OffsetDirection, PricingRule, TradeType


@dataclass(frozen=True)
class EffectiveConfig:
    ad_numbers: tuple[str, ...]
    offset_amount: float
    offset_pct: float
    max_ceiling: float | None
    min_floor: float | None
    max_ratio_ceiling: float | None
    min_ratio_floor: float | None


@dataclass(frozen=True)
class Candidate:
    price: float
    ratio: float | None
    raw_price: float
    raw_ratio: float | None
    was_capped: bool

    @property
    def value(self) -> float:
        """The quantity that gets pushed: ratio in ratio mode, price otherwise."""
        return self.ratio if self.ratio is not None else self.price


def _pick(override_value, rule_value):
    return rule_value if override_value is None else override_value


def resolve_asset_config(rule: PricingRule, asset: str) -> EffectiveConfig:
    override = rule.asset_config.get(asset) or AssetOverride()
    return merge_override(rule, override)


def merge_override(rule: PricingRule, override: AssetOverride | None) -> EffectiveConfig:
    override = override or AssetOverride()
    return EffectiveConfig(
        ad_numbers=override.ad_numbers or rule.ad_numbers,
        offset_amount=float(_pick(override.offset_amount, rule.offset_amount) or 0.0),
        offset_pct=float(_pick(override.offset_pct, rule.offset_pct) or 0.0),
        max_ceiling=_pick(override.max_ceiling, rule.max_ceiling),
        min_floor=_pick(override.min_floor, rule.min_floor),
        max_ratio_ceiling=_pick(override.max_ratio_ceiling, rule.max_ratio_ceiling),
        min_ratio_floor=_pick(override.min_ratio_floor, rule.min_ratio_floor),
    )


def offset_sign(direction: OffsetDirection, trade_type: TradeType) -> int:
    if direction == OffsetDirection.MATCH:
        return 1
    undercut = -1 if trade_type == TradeType.BUY else 1
    return undercut if direction == OffsetDirection.UNDERCUT else -undercut


def clamp(value: float, lower: float | None, upper: float | None) -> tuple[float, bool]:
    clamped = value
    if upper is not None and clamped > upper:
        clamped = upper
    if lower is not None and clamped < lower:
        clamped = lower
    return clamped, clamped != value


def calculate(
    competitor_price: float,
    rule: PricingRule,
    asset_override: AssetOverride | None = None,
    market_reference_price: float | None = None,
) -> Candidate:
    config = merge_override(rule, asset_override)
    sign = offset_sign(rule.offset_direction, rule.trade_type)

    raw_price = (competitor_price + sign * config.offset_amount) * (1 + sign * config.offset_pct / 100.0)

    if not rule.is_ratio_mode:
        price, capped = clamp(raw_price, config.min_floor, config.max_ceiling)
        return Candidate(price=price, ratio=None, raw_price=raw_price, raw_ratio=None, was_capped=capped)

    reference = market_reference_price if market_reference_price and market_reference_price > 0 else competitor_price
    raw_ratio = raw_price / reference * 100.0
    ratio, capped = clamp(raw_ratio, config.min_ratio_floor, config.max_ratio_ceiling)
    return Candidate(
        price=ratio / 100.0 * reference,
        ratio=ratio,
        raw_price=raw_price,
        raw_ratio=raw_ratio,
        was_capped=capped,
    )
