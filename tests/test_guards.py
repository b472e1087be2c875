from datetime import datetime, timedelta, timezone

import pytest

from ad_pricer.guards import (
    GuardChain,
    PriceSource,
    check_deviation,
    check_merchant,
    cooldown_active,
    parse_clock,
    rate_limit,
    within_active_hours,
)
from ad_pricer.models import PriceType, PricingRule, SkipReason, TradeType
from ad_pricer.observer import Observation
from ad_pricer.state import RuleRunState


def _rule(**overrides) -> PricingRule:
    values = {
        "id": "r1",
        "name": "test",
        "asset": "USDT",
        "fiat": "INR",
        "trade_type": TradeType.BUY,
        "price_type": PriceType.FIXED,
        "target_merchant": "AlphaDesk",
    }
    values.update(overrides)
    return PricingRule(**values)


def _local(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, 5, hour, minute)


def test_rate_limit_caps_step():
    assert rate_limit(103.0, 100.0, 0.5) == (100.5, True)
    assert rate_limit(99.0, 100.0, 0.5) == (99.5, True)


def test_rate_limit_passes_small_moves_and_first_push():
    assert rate_limit(100.3, 100.0, 0.5) == (100.3, False)
    assert rate_limit(103.0, None, 0.5) == (103.0, False)
    assert rate_limit(103.0, 100.0, None) == (103.0, False)


def test_active_hours_inclusive_window():
    rule = _rule(active_hours_start="09:00", active_hours_end="18:00")

    assert within_active_hours(rule, _local(9, 0))
    assert within_active_hours(rule, _local(18, 0))
    assert not within_active_hours(rule, _local(18, 1))
    assert not within_active_hours(rule, _local(8, 59))


def test_active_hours_overnight_window():
    rule = _rule(active_hours_start="22:00", active_hours_end="06:00")

    assert within_active_hours(rule, _local(23, 30))
    assert within_active_hours(rule, _local(5, 0))
    assert not within_active_hours(rule, _local(12, 0))


def test_no_active_hours_means_always_on():
    assert within_active_hours(_rule(), _local(3, 0))


def test_parse_clock_rejects_garbage():
    assert parse_clock("07:30:15").second == 15
    with pytest.raises(ValueError):
        parse_clock("7")


def test_cooldown_window():
    now = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
    rule = _rule(manual_override_cooldown_minutes=10)

    assert cooldown_active(rule, RuleRunState(last_manual_edit_at=now - timedelta(minutes=5)), now)
    assert not cooldown_active(rule, RuleRunState(last_manual_edit_at=now - timedelta(minutes=10)), now)
    assert not cooldown_active(rule, RuleRunState(), now)
    assert not cooldown_active(_rule(manual_override_cooldown_minutes=0), RuleRunState(last_manual_edit_at=now), now)


def test_guard_chain_uses_rule_timezone():
    chain = GuardChain("Asia/Kolkata")
    rule = _rule(active_hours_start="09:00", active_hours_end="18:00")

    # 05:00 UTC is 10:30 in Kolkata.
    assert chain.before_observation(rule, RuleRunState(), datetime(2026, 1, 5, 5, 0, tzinfo=timezone.utc)) is None
    # 14:00 UTC is 19:30 in Kolkata.
    skip = chain.before_observation(rule, RuleRunState(), datetime(2026, 1, 5, 14, 0, tzinfo=timezone.utc))
    assert skip == SkipReason.OUTSIDE_ACTIVE_HOURS


def test_active_hours_checked_before_cooldown():
    chain = GuardChain("UTC")
    now = datetime(2026, 1, 5, 20, 0, tzinfo=timezone.utc)
    rule = _rule(active_hours_start="09:00", active_hours_end="18:00")
    state = RuleRunState(last_manual_edit_at=now)

    assert chain.before_observation(rule, state, now) == SkipReason.OUTSIDE_ACTIVE_HOURS


def test_merchant_missing_uses_resting_value():
    observation = Observation(asset="USDT")

    assert check_merchant(_rule(resting_price=95.0), observation).source == PriceSource.RESTING
    plain = check_merchant(_rule(), observation)
    assert plain.skip_reason == SkipReason.NO_MERCHANT
    assert plain.count_error is False


def test_merchant_missing_counts_error_when_required():
    check = check_merchant(_rule(pause_if_no_merchant_found=True, resting_price=95.0), Observation(asset="USDT"))

    assert check.skip_reason == SkipReason.NO_MERCHANT
    assert check.count_error is True


def test_offline_merchant_skipped_only_when_configured():
    chain = GuardChain("UTC")
    observation = Observation(asset="USDT", merchant="AlphaDesk", competitor_price=100.0, online=False)

    assert chain.after_observation(_rule(), observation).source == PriceSource.COMPETITOR
    offline = chain.after_observation(_rule(only_counter_when_online=True), observation)
    assert offline.skip_reason == SkipReason.MERCHANT_OFFLINE


def test_deviation_counts_towards_auto_pause():
    rule = _rule(max_deviation_from_market_pct=5.0, auto_pause_after_deviations=3)

    first = check_deviation(rule, RuleRunState(consecutive_deviations=0), 110.0, 100.0)
    third = check_deviation(rule, RuleRunState(consecutive_deviations=2), 110.0, 100.0)

    assert first.exceeded and not first.auto_pause
    assert first.deviation_pct == pytest.approx(10.0)
    assert third.consecutive_deviations == 3
    assert third.auto_pause


def test_deviation_within_band_or_without_reference():
    rule = _rule(max_deviation_from_market_pct=5.0)

    assert not check_deviation(rule, RuleRunState(), 104.0, 100.0).exceeded
    no_reference = check_deviation(rule, RuleRunState(), 150.0, None)
    assert no_reference.deviation_pct is None
    assert not no_reference.exceeded
