"""Ordered safety checks applied around the price calculation.

The chain runs in two halves because the market has to be observed in the
middle:

1. active hours, 2. manual-edit cooldown  (before observing the market)
3. merchant availability, 4. online-only, 5. deviation, 6. rate of change

Every check is synchronous and pure; counter changes are returned to the
engine rather than written here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time as clock_time, timedelta, timezone
from enum import Enum
from zoneinfo import ZoneInfo

from .models import PricingRule, SkipReason
from .observer import Observation
from .state import RuleRunState


class PriceSource(str, Enum):
    COMPETITOR = "competitor"
    RESTING = "resting"


@dataclass(frozen=True)
class MerchantCheck:
    source: PriceSource | None
    skip_reason: SkipReason | None = None
    count_error: bool = False


@dataclass(frozen=True)
class DeviationCheck:
    deviation_pct: float | None
    exceeded: bool
    consecutive_deviations: int
    auto_pause: bool


def parse_clock(value: str) -> clock_time:
    parts = [int(part) for part in value.strip().split(":")]
    if len(parts) not in (2, 3):
        raise ValueError(f"Expected HH:MM or HH:MM:SS, got {value!r}")
    return clock_time(*parts)


def within_active_hours(rule: PricingRule, local_now: datetime) -> bool:
    if not rule.active_hours_start or not rule.active_hours_end:
        return True
    start = parse_clock(rule.active_hours_start)
    end = parse_clock(rule.active_hours_end)
    current = local_now.time().replace(microsecond=0, tzinfo=None)
    if start <= end:
        return start <= current <= end
    # Overnight window, e.g. 22:00 → 06:00.
    return current >= start or current <= end


def cooldown_active(rule: PricingRule, state: RuleRunState, now: datetime) -> bool:
    if rule.manual_override_cooldown_minutes <= 0 or state.last_manual_edit_at is None:
        return False
    cooldown_end = state.last_manual_edit_at + timedelta(minutes=rule.manual_override_cooldown_minutes)
    return now < cooldown_end


def check_merchant(rule: PricingRule, observation: Observation) -> MerchantCheck:
    if observation.found:
        return MerchantCheck(source=PriceSource.COMPETITOR)
    if rule.pause_if_no_merchant_found:
        return MerchantCheck(source=None, skip_reason=SkipReason.NO_MERCHANT, count_error=True)
    resting = rule.resting_ratio if rule.is_ratio_mode else rule.resting_price
    if resting is not None:
        return MerchantCheck(source=PriceSource.RESTING)
    return MerchantCheck(source=None, skip_reason=SkipReason.NO_MERCHANT)


def check_online(rule: PricingRule, observation: Observation) -> SkipReason | None:
    if rule.only_counter_when_online and observation.found and not observation.online:
        return SkipReason.MERCHANT_OFFLINE
    return None


def deviation_pct(candidate_price: float, market_reference_price: float | None) -> float | None:
    if not market_reference_price or market_reference_price <= 0:
        return None
    return (candidate_price - market_reference_price) / market_reference_price * 100.0


def check_deviation(
    rule: PricingRule,
    state: RuleRunState,
    candidate_price: float,
    market_reference_price: float | None,
) -> DeviationCheck:
    deviation = deviation_pct(candidate_price, market_reference_price)
    if deviation is None or abs(deviation) <= rule.max_deviation_from_market_pct:
        return DeviationCheck(deviation, exceeded=False, consecutive_deviations=0, auto_pause=False)

    consecutive = state.consecutive_deviations + 1
    return DeviationCheck(
        deviation,
        exceeded=True,
        consecutive_deviations=consecutive,
        auto_pause=consecutive >= rule.auto_pause_after_deviations,
    )


def rate_limit(value: float, last_applied: float | None, max_step: float | None) -> tuple[float, bool]:
    """Move from ``last_applied`` toward ``value`` by at most ``max_step``."""
    if last_applied is None or not max_step or max_step <= 0:
        return value, False
    delta = value - last_applied
    if abs(delta) <= max_step:
        return value, False
    direction = 1 if delta > 0 else -1
    return last_applied + direction * max_step, True


class GuardChain:
    def __init__(self, tz_name: str) -> None:
        self.tz = ZoneInfo(tz_name)

    def before_observation(self, rule: PricingRule, state: RuleRunState, now: datetime) -> SkipReason | None:
        if not within_active_hours(rule, now.astimezone(self.tz)):
            return SkipReason.OUTSIDE_ACTIVE_HOURS
        if cooldown_active(rule, state, now):
            return SkipReason.MANUAL_COOLDOWN
        return None

    def after_observation(self, rule: PricingRule, observation: Observation) -> MerchantCheck:
        merchant = check_merchant(rule, observation)
        if merchant.skip_reason is not None:
            return merchant
        offline = check_online(rule, observation)
        if offline is not None:
            return MerchantCheck(source=None, skip_reason=offline)
        return merchant

    @staticmethod
    def check_deviation(
        rule: PricingRule,
        state: RuleRunState,
        candidate_price: float,
        market_reference_price: float | None,
    ) -> DeviationCheck:
        return check_deviation(rule, state, candidate_price, market_reference_price)

    @staticmethod
    def limit_step(rule: PricingRule, last_applied: float | None, value: float) -> tuple[float, bool]:
        if rule.is_ratio_mode:
            return rate_limit(value, last_applied, rule.max_ratio_change_per_cycle)
        return rate_limit(value, last_applied, rule.max_price_change_per_cycle)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
