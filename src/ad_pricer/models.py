"""Pricing rule and execution-log types.

A ``PricingRule`` is operator configuration.  The mutable per-rule run-state
lives in :class:`ad_pricer.state.RuleRunState` and is only written by the
engine while it holds the rule's single-flight lock.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any

from .state import RuleRunState


class TradeType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class PriceType(str, Enum):
    FIXED = "FIXED"
    FLOATING = "FLOATING"


class OffsetDirection(str, Enum):
    UNDERCUT = "UNDERCUT"
    OVERCUT = "OVERCUT"
    MATCH = "MATCH"


class CycleStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


class SkipReason(str, Enum):
    OUTSIDE_ACTIVE_HOURS = "outside_active_hours"
    MANUAL_COOLDOWN = "manual_cooldown"
    NO_MERCHANT = "no_merchant"
    MERCHANT_OFFLINE = "merchant_offline"
    DEVIATION_EXCEEDED = "deviation_exceeded"
    NO_ADS = "no_ads"
    NO_CHANGE = "no_change"
    EXCLUDED = "excluded"


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    VENUE_REST = "venue_rest"
    VENUE_REJECTED = "venue_rejected"
    MERCHANT_NOT_FOUND = "merchant_not_found"
    DEVIATION = "deviation"


@dataclass(frozen=True)
class AssetOverride:
    """Per-asset override block.  ``None`` means "use the rule-level value"."""

    ad_numbers: tuple[str, ...] = ()
    offset_amount: float | None = None
    offset_pct: float | None = None
    max_ceiling: float | None = None
    min_floor: float | None = None
    max_ratio_ceiling: float | None = None
    min_ratio_floor: float | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "AssetOverride":
        def opt(key: str) -> float | None:
            value = raw.get(key)
            return None if value is None else float(value)

        return cls(
            ad_numbers=tuple(str(no) for no in raw.get("ad_numbers") or ()),
            offset_amount=opt("offset_amount"),
            offset_pct=opt("offset_pct"),
            max_ceiling=opt("max_ceiling"),
            min_floor=opt("min_floor"),
            max_ratio_ceiling=opt("max_ratio_ceiling"),
            min_ratio_floor=opt("min_ratio_floor"),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["ad_numbers"] = list(self.ad_numbers)
        return data


@dataclass(frozen=True)
class PricingRule:
    id: str
    name: str
    asset: str
    fiat: str
    trade_type: TradeType
    price_type: PriceType
    target_merchant: str
    is_active: bool = False
    assets: tuple[str, ...] = ()
    asset_config: dict[str, AssetOverride] = field(default_factory=dict)
    fallback_merchants: tuple[str, ...] = ()
    ad_numbers: tuple[str, ...] = ()

    offset_direction: OffsetDirection = OffsetDirection.UNDERCUT
    offset_amount: float = 0.0
    offset_pct: float = 0.0

    max_ceiling: float | None = None
    min_floor: float | None = None
    max_ratio_ceiling: float | None = None
    min_ratio_floor: float | None = None
    max_deviation_from_market_pct: float = 5.0
    max_price_change_per_cycle: float | None = None
    max_ratio_change_per_cycle: float | None = None

    auto_pause_after_deviations: int = 3
    manual_override_cooldown_minutes: int = 10
    only_counter_when_online: bool = False
    pause_if_no_merchant_found: bool = False
    active_hours_start: str | None = None
    active_hours_end: str | None = None
    resting_price: float | None = None
    resting_ratio: float | None = None
    check_interval_seconds: int = 60

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def effective_assets(self) -> tuple[str, ...]:
        return self.assets or (self.asset,)

    @property
    def is_ratio_mode(self) -> bool:
        return self.price_type == PriceType.FLOATING

    def merchant_chain(self) -> list[str]:
        return [name for name in (self.target_merchant, *self.fallback_merchants) if name]

    def with_changes(self, **changes: Any) -> "PricingRule":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        for key in ("assets", "fallback_merchants", "ad_numbers"):
            data[key] = list(data[key])
        for key in ("trade_type", "price_type", "offset_direction"):
            data[key] = data[key].value
        data["asset_config"] = {asset: override.to_dict() for asset, override in self.asset_config.items()}
        for key in ("created_at", "updated_at"):
            data[key] = data[key].isoformat() if data[key] else None
        return data


CONFIG_FIELDS: frozenset[str] = frozenset(
    f.name for f in fields(PricingRule) if f.name not in {"id", "created_at", "updated_at"}
)


@dataclass(frozen=True)
class RuleSnapshot:
    """Configuration and run-state read together at cycle start."""

    rule: PricingRule
    state: RuleRunState


@dataclass
class PricingLog:
    rule_id: str
    status: CycleStatus
    ad_number: str | None = None
    asset: str | None = None
    competitor_merchant: str | None = None
    competitor_price: float | None = None
    market_reference_price: float | None = None
    deviation_from_market_pct: float | None = None
    calculated_price: float | None = None
    calculated_ratio: float | None = None
    applied_price: float | None = None
    applied_ratio: float | None = None
    was_capped: bool = False
    was_rate_limited: bool = False
    skipped_reason: SkipReason | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["skipped_reason"] = self.skipped_reason.value if self.skipped_reason else None
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        return data
