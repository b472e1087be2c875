from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class RuleRunState:
    last_checked_at: datetime | None = None
    last_competitor_price: float | None = None
    last_applied_price: float | None = None
    last_applied_ratio: float | None = None
    last_matched_merchant: str | None = None
    last_error: str | None = None
    last_error_kind: str | None = None
    consecutive_errors: int = 0
    consecutive_deviations: int = 0
    last_manual_edit_at: datetime | None = None
    asset_last_applied: dict[str, float] = field(default_factory=dict)

    def last_applied_for(self, asset: str, ratio_mode: bool, primary: bool) -> float | None:
        if primary:
            return self.last_applied_ratio if ratio_mode else self.last_applied_price
        return self.asset_last_applied.get(asset_state_key(asset, ratio_mode))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("last_checked_at", "last_manual_edit_at"):
            value = data[key]
            data[key] = value.isoformat() if value else None
        return data


def asset_state_key(asset: str, ratio_mode: bool) -> str:
    return f"{asset}:{'ratio' if ratio_mode else 'price'}"


RUN_STATE_FIELDS: frozenset[str] = frozenset(f.name for f in fields(RuleRunState))


COUNTER_FIELDS: frozenset[str] = frozenset({"consecutive_errors", "consecutive_deviations"})


class StateUpdate:
    """Run-state changes accumulated over one cycle and written once at the end.

    Counters are recorded as operations (``"increment"`` or ``"reset"``) rather
    than absolute values, so the store applies them against the row as it is at
    commit time and an operator reset made mid-cycle is not overwritten.
    """

    def __init__(self) -> None:
        self.fields: dict[str, Any] = {}
        self.counters: dict[str, str] = {}

    def set(self, **changes: Any) -> None:
        unknown = set(changes) - RUN_STATE_FIELDS
        if unknown:
            raise KeyError(f"Not run-state fields: {sorted(unknown)}")
        if set(changes) & COUNTER_FIELDS:
            raise KeyError("Counters change through increment() or reset()")
        self.fields.update(changes)

    def increment(self, counter: str) -> None:
        self._counter(counter, "increment")

    def reset(self, counter: str) -> None:
        self._counter(counter, "reset")

    def _counter(self, counter: str, op: str) -> None:
        if counter not in COUNTER_FIELDS:
            raise KeyError(f"Not a counter: {counter}")
        self.counters[counter] = op

    def mark_error(self, message: str, kind: str) -> None:
        self.set(last_error=message, last_error_kind=kind)
        self.increment("consecutive_errors")

    def clear_error(self) -> None:
        self.set(last_error=None, last_error_kind=None)
        self.reset("consecutive_errors")
