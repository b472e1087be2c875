from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from loguru import logger

from .db import get_connection
from .models import (
    CONFIG_FIELDS,
    AssetOverride,
    ErrorKind,
    OffsetDirection,
    PriceType,
    PricingRule,
    RuleSnapshot,
    TradeType,
)
from .state import COUNTER_FIELDS, RUN_STATE_FIELDS, RuleRunState, StateUpdate


class RuleNotFound(KeyError):
    pass


_JSON_COLUMNS = {
    "assets": "assets_json",
    "asset_config": "asset_config_json",
    "fallback_merchants": "fallback_merchants_json",
    "ad_numbers": "ad_numbers_json",
    "asset_last_applied": "asset_last_applied_json",
}
_BOOL_COLUMNS = {"is_active", "only_counter_when_online", "pause_if_no_merchant_found"}
_DATETIME_COLUMNS = {"last_checked_at", "last_manual_edit_at", "created_at", "updated_at"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _encode(column: str, value: Any) -> Any:
    if column == "asset_last_applied":
        return json.dumps(dict(value or {}))
    if column == "asset_config":
        return json.dumps({asset: override.to_dict() for asset, override in (value or {}).items()})
    if column in _JSON_COLUMNS:
        return json.dumps(list(value or ()))
    if column in _BOOL_COLUMNS:
        return 1 if value else 0
    if column in _DATETIME_COLUMNS:
        return _to_iso(value)
    if isinstance(value, (TradeType, PriceType, OffsetDirection)):
        return value.value
    return value


def _column_name(column: str) -> str:
    return _JSON_COLUMNS.get(column, column)


def _row_to_rule(row: sqlite3.Row) -> PricingRule:
    raw_config = json.loads(row["asset_config_json"] or "{}")
    return PricingRule(
        id=row["id"],
        name=row["name"],
        is_active=bool(row["is_active"]),
        asset=row["asset"],
        assets=tuple(json.loads(row["assets_json"] or "[]")),
        asset_config={asset: AssetOverride.from_dict(cfg) for asset, cfg in raw_config.items()},
        fiat=row["fiat"],
        trade_type=TradeType(row["trade_type"]),
        price_type=PriceType(row["price_type"]),
        target_merchant=row["target_merchant"],
        fallback_merchants=tuple(json.loads(row["fallback_merchants_json"] or "[]")),
        ad_numbers=tuple(json.loads(row["ad_numbers_json"] or "[]")),
        offset_direction=OffsetDirection(row["offset_direction"]),
        offset_amount=float(row["offset_amount"] or 0.0),
        offset_pct=float(row["offset_pct"] or 0.0),
        max_ceiling=row["max_ceiling"],
        min_floor=row["min_floor"],
        max_ratio_ceiling=row["max_ratio_ceiling"],
        min_ratio_floor=row["min_ratio_floor"],
        max_deviation_from_market_pct=float(row["max_deviation_from_market_pct"]),
        max_price_change_per_cycle=row["max_price_change_per_cycle"],
        max_ratio_change_per_cycle=row["max_ratio_change_per_cycle"],
        auto_pause_after_deviations=int(row["auto_pause_after_deviations"]),
        manual_override_cooldown_minutes=int(row["manual_override_cooldown_minutes"] or 0),
        only_counter_when_online=bool(row["only_counter_when_online"]),
        pause_if_no_merchant_found=bool(row["pause_if_no_merchant_found"]),
        active_hours_start=row["active_hours_start"],
        active_hours_end=row["active_hours_end"],
        resting_price=row["resting_price"],
        resting_ratio=row["resting_ratio"],
        check_interval_seconds=int(row["check_interval_seconds"]),
        created_at=_parse_iso(row["created_at"]),
        updated_at=_parse_iso(row["updated_at"]),
    )


def _row_to_state(row: sqlite3.Row) -> RuleRunState:
    return RuleRunState(
        last_checked_at=_parse_iso(row["last_checked_at"]),
        last_competitor_price=row["last_competitor_price"],
        last_applied_price=row["last_applied_price"],
        last_applied_ratio=row["last_applied_ratio"],
        last_matched_merchant=row["last_matched_merchant"],
        last_error=row["last_error"],
        last_error_kind=row["last_error_kind"],
        consecutive_errors=int(row["consecutive_errors"] or 0),
        consecutive_deviations=int(row["consecutive_deviations"] or 0),
        last_manual_edit_at=_parse_iso(row["last_manual_edit_at"]),
        asset_last_applied=json.loads(row["asset_last_applied_json"] or "{}"),
    )


class RuleStore:
    """CRUD over ``ad_pricing_rules`` plus the automation exclusion list.

    Configuration and run-state share a row but are written through separate
    methods, so an operator edit never clears engine state.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path
        self._write_lock = threading.Lock()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = get_connection(self.db_path)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    # ── Configuration ────────────────────────────────────────────

    def create_rule(self, rule: PricingRule) -> PricingRule:
        now = _utcnow()
        rule = rule.with_changes(id=rule.id or str(uuid.uuid4()), created_at=now, updated_at=now)
        values = {_column_name(name): _encode(name, getattr(rule, name)) for name in CONFIG_FIELDS}
        values["id"] = rule.id
        values["created_at"] = _to_iso(now)
        values["updated_at"] = _to_iso(now)
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        with self._write_lock, self._connect() as conn:
            conn.execute(
                f"INSERT INTO ad_pricing_rules ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )
        logger.info("Created pricing rule {} ({})", rule.id, rule.name)
        return rule

    def update_config(self, rule_id: str, **changes: Any) -> PricingRule:
        unknown = set(changes) - CONFIG_FIELDS
        if unknown:
            raise ValueError(f"Not configuration fields: {sorted(unknown)}")
        if changes:
            values = {_column_name(name): _encode(name, value) for name, value in changes.items()}
            values["updated_at"] = _to_iso(_utcnow())
            self._update(rule_id, values)
        return self.get_rule(rule_id)

    def delete_rule(self, rule_id: str) -> None:
        with self._write_lock, self._connect() as conn:
            cursor = conn.execute("DELETE FROM ad_pricing_rules WHERE id = ?", (rule_id,))
            if cursor.rowcount == 0:
                raise RuleNotFound(rule_id)
            conn.execute("DELETE FROM ad_pricing_logs WHERE rule_id = ?", (rule_id,))
        logger.info("Deleted pricing rule {} and its logs", rule_id)

    def get_rule(self, rule_id: str) -> PricingRule:
        return _row_to_rule(self._fetch_row(rule_id))

    def get_state(self, rule_id: str) -> RuleRunState:
        return _row_to_state(self._fetch_row(rule_id))

    def get_snapshot(self, rule_id: str) -> RuleSnapshot:
        row = self._fetch_row(rule_id)
        return RuleSnapshot(rule=_row_to_rule(row), state=_row_to_state(row))

    def list_rules(self, active_only: bool = False) -> list[PricingRule]:
        return [snapshot.rule for snapshot in self.list_snapshots(active_only=active_only)]

    def list_snapshots(self, active_only: bool = False) -> list[RuleSnapshot]:
        query = "SELECT * FROM ad_pricing_rules"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [RuleSnapshot(rule=_row_to_rule(row), state=_row_to_state(row)) for row in rows]

    # ── Run-state ────────────────────────────────────────────────

    def update_run_state(self, rule_id: str, fields: dict[str, Any]) -> None:
        unknown = set(fields) - RUN_STATE_FIELDS
        if unknown:
            raise ValueError(f"Not run-state fields: {sorted(unknown)}")
        if fields:
            self._update(rule_id, {_column_name(name): _encode(name, value) for name, value in fields.items()})

    def commit_cycle(
        self,
        rule_id: str,
        update: StateUpdate,
        pause_after_deviations: int | None = None,
    ) -> tuple[RuleSnapshot, bool]:
        """Write one cycle's run-state and return the stored row plus whether it auto-paused.

        Counters are applied as SQL deltas against the current row and the
        auto-pause threshold is compared with the stored streak, all inside one
        transaction, so a reset that lands while the cycle runs is kept.
        """
        unknown = set(update.fields) - RUN_STATE_FIELDS
        if unknown:
            raise ValueError(f"Not run-state fields: {sorted(unknown)}")
        assignments = [f"{_column_name(name)} = ?" for name in update.fields]
        params = [_encode(name, value) for name, value in update.fields.items()]
        for counter, op in update.counters.items():
            if counter not in COUNTER_FIELDS:
                raise ValueError(f"Not a counter: {counter}")
            assignments.append(f"{counter} = {counter} + 1" if op == "increment" else f"{counter} = 0")

        auto_paused = False
        with self._write_lock, self._connect() as conn:
            if assignments:
                cursor = conn.execute(
                    f"UPDATE ad_pricing_rules SET {', '.join(assignments)} WHERE id = ?",
                    (*params, rule_id),
                )
                if cursor.rowcount == 0:
                    raise RuleNotFound(rule_id)
            row = conn.execute("SELECT * FROM ad_pricing_rules WHERE id = ?", (rule_id,)).fetchone()
            if row is None:
                raise RuleNotFound(rule_id)
            deviations = int(row["consecutive_deviations"] or 0)
            if (
                pause_after_deviations is not None
                and update.counters.get("consecutive_deviations") == "increment"
                and row["is_active"]
                and deviations >= pause_after_deviations
            ):
                conn.execute(
                    "UPDATE ad_pricing_rules SET is_active = 0, last_error = ?, last_error_kind = ?, "
                    "updated_at = ? WHERE id = ?",
                    (
                        f"Auto-paused after {deviations} consecutive market deviations",
                        ErrorKind.DEVIATION.value,
                        _to_iso(_utcnow()),
                        rule_id,
                    ),
                )
                row = conn.execute("SELECT * FROM ad_pricing_rules WHERE id = ?", (rule_id,)).fetchone()
                auto_paused = True
        if auto_paused:
            logger.warning("Rule {} auto-paused after {} consecutive market deviations", rule_id, deviations)
        return RuleSnapshot(rule=_row_to_rule(row), state=_row_to_state(row)), auto_paused

    def set_active(self, rule_id: str, active: bool) -> None:
        self._update(rule_id, {"is_active": 1 if active else 0, "updated_at": _to_iso(_utcnow())})
        logger.info("Rule {} is_active={}", rule_id, active)

    def reset_counters(self, rule_id: str) -> None:
        self._update(
            rule_id,
            {
                "consecutive_errors": 0,
                "consecutive_deviations": 0,
                "last_error": None,
                "last_error_kind": None,
                "is_active": 1,
                "updated_at": _to_iso(_utcnow()),
            },
        )
        logger.info("Rule {} counters reset and re-enabled", rule_id)

    def record_manual_edit(self, rule_id: str, at: datetime | None = None) -> None:
        self._update(rule_id, {"last_manual_edit_at": _to_iso(at or _utcnow())})

    # ── Exclusions ───────────────────────────────────────────────

    def list_exclusions(self) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT adv_no FROM ad_automation_exclusions").fetchall()
        return {row["adv_no"] for row in rows}

    def add_exclusion(self, ad_number: str) -> None:
        with self._write_lock, self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO ad_automation_exclusions (adv_no, created_at) VALUES (?, ?)",
                (ad_number, _to_iso(_utcnow())),
            )

    def remove_exclusion(self, ad_number: str) -> None:
        with self._write_lock, self._connect() as conn:
            conn.execute("DELETE FROM ad_automation_exclusions WHERE adv_no = ?", (ad_number,))

    # ── Internals ────────────────────────────────────────────────

    def _fetch_row(self, rule_id: str) -> sqlite3.Row:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM ad_pricing_rules WHERE id = ?", (rule_id,)).fetchone()
        if row is None:
            raise RuleNotFound(rule_id)
        return row

    def _update(self, rule_id: str, values: dict[str, Any]) -> None:
        assignments = ", ".join(f"{column} = ?" for column in values)
        with self._write_lock, self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE ad_pricing_rules SET {assignments} WHERE id = ?",
                (*values.values(), rule_id),
            )
            if cursor.rowcount == 0:
                raise RuleNotFound(rule_id)
