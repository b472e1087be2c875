from __future__ import annotations

import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from .db import get_connection
from .models import CycleStatus, PricingLog, SkipReason


_LOG_COLUMNS = (
    "rule_id",
    "ad_number",
    "asset",
    "competitor_merchant",
    "competitor_price",
    "market_reference_price",
    "deviation_from_market_pct",
    "calculated_price",
    "calculated_ratio",
    "applied_price",
    "applied_ratio",
    "was_capped",
    "was_rate_limited",
    "skipped_reason",
    "status",
    "error_message",
    "created_at",
)


def _row_to_log(row: sqlite3.Row) -> PricingLog:
    return PricingLog(
        id=row["id"],
        rule_id=row["rule_id"],
        ad_number=row["ad_number"],
        asset=row["asset"],
        competitor_merchant=row["competitor_merchant"],
        competitor_price=row["competitor_price"],
        market_reference_price=row["market_reference_price"],
        deviation_from_market_pct=row["deviation_from_market_pct"],
        calculated_price=row["calculated_price"],
        calculated_ratio=row["calculated_ratio"],
        applied_price=row["applied_price"],
        applied_ratio=row["applied_ratio"],
        was_capped=bool(row["was_capped"]),
        was_rate_limited=bool(row["was_rate_limited"]),
        skipped_reason=SkipReason(row["skipped_reason"]) if row["skipped_reason"] else None,
        status=CycleStatus(row["status"]),
        error_message=row["error_message"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class PricingLogSink:
    """Append-only execution log.  Rows are never updated once written."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()

    def append_log(self, entry: PricingLog) -> PricingLog:
        entry = replace(entry, created_at=entry.created_at or datetime.now(timezone.utc))
        values = entry.to_dict()
        values["was_capped"] = 1 if entry.was_capped else 0
        values["was_rate_limited"] = 1 if entry.was_rate_limited else 0
        columns = ", ".join(_LOG_COLUMNS)
        placeholders = ", ".join("?" for _ in _LOG_COLUMNS)
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                with conn:
                    cursor = conn.execute(
                        f"INSERT INTO ad_pricing_logs ({columns}) VALUES ({placeholders})",
                        tuple(values[column] for column in _LOG_COLUMNS),
                    )
            finally:
                conn.close()
        return replace(entry, id=cursor.lastrowid)

    def query_logs(self, rule_id: str | None = None, limit: int = 100) -> list[PricingLog]:
        query = "SELECT * FROM ad_pricing_logs"
        params: list[object] = []
        if rule_id:
            query += " WHERE rule_id = ?"
            params.append(rule_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, int(limit)))
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [_row_to_log(row) for row in rows]
