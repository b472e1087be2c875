from dataclasses import dataclass
from pathlib import Path

import yaml

from .settings import settings


@dataclass
class RuleDefaults:
    max_deviation_from_market_pct: float
    auto_pause_after_deviations: int
    manual_override_cooldown_minutes: int
    check_interval_seconds: int
    max_price_change_per_cycle: float | None
    max_ratio_change_per_cycle: float | None
    only_counter_when_online: bool
    pause_if_no_merchant_found: bool


def load_rule_defaults(file_path: Path | None = None) -> RuleDefaults:
    file_path = Path(file_path or settings.rule_defaults_path)
    if not file_path.exists():
        return RuleDefaults(
            max_deviation_from_market_pct=settings.default_max_deviation_from_market_pct,
            auto_pause_after_deviations=settings.default_auto_pause_after_deviations,
            manual_override_cooldown_minutes=settings.default_manual_override_cooldown_minutes,
            check_interval_seconds=settings.default_check_interval_seconds,
            max_price_change_per_cycle=None,
            max_ratio_change_per_cycle=None,
            only_counter_when_online=False,
            pause_if_no_merchant_found=False,
        )

    raw = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
    guards = raw.get("guards", {})
    limits = raw.get("rate_limits", {})
    behaviour = raw.get("behaviour", {})

    def optional_float(value):
        return None if value is None else float(value)

    return RuleDefaults(
        max_deviation_from_market_pct=float(
            guards.get("max_deviation_from_market_pct", settings.default_max_deviation_from_market_pct)
        ),
        auto_pause_after_deviations=int(
            guards.get("auto_pause_after_deviations", settings.default_auto_pause_after_deviations)
        ),
        manual_override_cooldown_minutes=int(
            guards.get("manual_override_cooldown_minutes", settings.default_manual_override_cooldown_minutes)
        ),
        check_interval_seconds=int(raw.get("check_interval_seconds", settings.default_check_interval_seconds)),
        max_price_change_per_cycle=optional_float(limits.get("max_price_change_per_cycle")),
        max_ratio_change_per_cycle=optional_float(limits.get("max_ratio_change_per_cycle")),
        only_counter_when_online=bool(behaviour.get("only_counter_when_online", False)),
        pause_if_no_merchant_found=bool(behaviour.get("pause_if_no_merchant_found", False)),
    )
