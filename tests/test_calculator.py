import pytest

from ad_pricer.calculator import calculate, clamp, merge_override, offset_sign, resolve_asset_config
from ad_pricer.models import AssetOverride, OffsetDirection, PriceType, PricingRule, TradeType


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


def test_undercut_below_floor_is_clamped_and_flagged():
    rule = _rule(offset_direction=OffsetDirection.UNDERCUT, offset_amount=0.01, min_floor=80.0)

    candidate = calculate(80.005, rule)

    assert candidate.raw_price == pytest.approx(79.995)
    assert candidate.price == 80.0
    assert candidate.was_capped is True


def test_same_inputs_give_same_candidate():
    rule = _rule(offset_amount=0.25, offset_pct=0.1, max_ceiling=100.0)

    assert calculate(95.5, rule) == calculate(95.5, rule)


def test_amount_then_percentage_order():
    rule = _rule(trade_type=TradeType.SELL, offset_direction=OffsetDirection.UNDERCUT, offset_amount=1.0, offset_pct=10.0)

    candidate = calculate(100.0, rule)

    # SELL undercut moves up: (100 + 1) * 1.1
    assert candidate.price == pytest.approx(111.1)
    assert candidate.was_capped is False


@pytest.mark.parametrize(
    "direction, trade_type, expected",
    [
        (OffsetDirection.UNDERCUT, TradeType.BUY, -1),
        (OffsetDirection.UNDERCUT, TradeType.SELL, 1),
        (OffsetDirection.OVERCUT, TradeType.BUY, 1),
        (OffsetDirection.OVERCUT, TradeType.SELL, -1),
        (OffsetDirection.MATCH, TradeType.BUY, 1),
    ],
)
def test_offset_sign(direction, trade_type, expected):
    assert offset_sign(direction, trade_type) == expected


def test_match_with_zero_offsets_returns_competitor_price():
    rule = _rule(offset_direction=OffsetDirection.MATCH)

    assert calculate(88.4, rule).price == pytest.approx(88.4)


def test_ceiling_clamp():
    rule = _rule(trade_type=TradeType.SELL, offset_amount=0.5, max_ceiling=90.0)

    candidate = calculate(89.9, rule)

    assert candidate.price == 90.0
    assert candidate.was_capped is True


def test_ratio_mode_uses_market_reference():
    rule = _rule(price_type=PriceType.FLOATING, offset_direction=OffsetDirection.MATCH)

    candidate = calculate(101.0, rule, market_reference_price=100.0)

    assert candidate.ratio == pytest.approx(101.0)
    assert candidate.value == pytest.approx(101.0)
    assert candidate.price == pytest.approx(101.0)


def test_ratio_mode_clamps_ratio_bounds():
    rule = _rule(price_type=PriceType.FLOATING, offset_direction=OffsetDirection.MATCH, max_ratio_ceiling=100.5)

    candidate = calculate(102.0, rule, market_reference_price=100.0)

    assert candidate.ratio == 100.5
    assert candidate.raw_ratio == pytest.approx(102.0)
    assert candidate.was_capped is True
    assert candidate.price == pytest.approx(100.5)


def test_ratio_mode_falls_back_to_competitor_price_without_reference():
    rule = _rule(price_type=PriceType.FLOATING, offset_direction=OffsetDirection.MATCH)

    assert calculate(90.0, rule).ratio == pytest.approx(100.0)


def test_asset_override_wins_over_rule_values():
    rule = _rule(
        offset_amount=0.01,
        min_floor=50.0,
        ad_numbers=("AD1",),
        asset_config={"BTC": AssetOverride(ad_numbers=("AD-BTC",), offset_amount=5.0)},
    )

    config = resolve_asset_config(rule, "BTC")

    assert config.ad_numbers == ("AD-BTC",)
    assert config.offset_amount == 5.0
    assert config.min_floor == 50.0
    assert resolve_asset_config(rule, "USDT").ad_numbers == ("AD1",)


def test_override_without_ads_keeps_rule_ads():
    rule = _rule(ad_numbers=("AD1", "AD2"))

    assert merge_override(rule, AssetOverride(offset_pct=1.0)).ad_numbers == ("AD1", "AD2")


def test_clamp_reports_change_only_when_bounded():
    assert clamp(10.0, 5.0, 20.0) == (10.0, False)
    assert clamp(3.0, 5.0, None) == (5.0, True)
    assert clamp(30.0, None, 20.0) == (20.0, True)
