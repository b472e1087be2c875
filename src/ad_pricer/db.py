import sqlite3
from pathlib import Path

from .settings import settings


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ad_pricing_rules (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 0,
    asset TEXT NOT NULL,
    assets_json TEXT NOT NULL DEFAULT '[]',
    asset_config_json TEXT NOT NULL DEFAULT '{}',
    fiat TEXT NOT NULL,
    trade_type TEXT NOT NULL,
    price_type TEXT NOT NULL,
    target_merchant TEXT NOT NULL,
    fallback_merchants_json TEXT NOT NULL DEFAULT '[]',
    ad_numbers_json TEXT NOT NULL DEFAULT '[]',
    offset_direction TEXT NOT NULL,
    offset_amount REAL NOT NULL DEFAULT 0,
    offset_pct REAL NOT NULL DEFAULT 0,
    max_ceiling REAL,
    min_floor REAL,
    max_ratio_ceiling REAL,
    min_ratio_floor REAL,
    max_deviation_from_market_pct REAL NOT NULL,
    max_price_change_per_cycle REAL,
    max_ratio_change_per_cycle REAL,
    auto_pause_after_deviations INTEGER NOT NULL,
    manual_override_cooldown_minutes INTEGER NOT NULL DEFAULT 0,
    only_counter_when_online INTEGER NOT NULL DEFAULT 0,
    pause_if_no_merchant_found INTEGER NOT NULL DEFAULT 0,
    active_hours_start TEXT,
    active_hours_end TEXT,
    resting_price REAL,
    resting_ratio REAL,
    check_interval_seconds INTEGER NOT NULL,
    last_checked_at TEXT,
    last_competitor_price REAL,
    last_applied_price REAL,
    last_applied_ratio REAL,
    last_matched_merchant TEXT,
    last_error TEXT,
    consecutive_errors INTEGER NOT NULL DEFAULT 0,
    consecutive_deviations INTEGER NOT NULL DEFAULT 0,
    last_manual_edit_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ad_pricing_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_id TEXT NOT NULL,
    ad_number TEXT,
    asset TEXT,
    competitor_merchant TEXT,
    competitor_price REAL,
    market_reference_price REAL,
    deviation_from_market_pct REAL,
    calculated_price REAL,
    calculated_ratio REAL,
    applied_price REAL,
    applied_ratio REAL,
    was_capped INTEGER NOT NULL DEFAULT 0,
    was_rate_limited INTEGER NOT NULL DEFAULT 0,
    skipped_reason TEXT,
    status TEXT NOT NULL,
    error_message TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ad_pricing_logs_rule ON ad_pricing_logs(rule_id, id);

CREATE TABLE IF NOT EXISTS ad_automation_exclusions (
    adv_no TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
);
"""


def get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    path = Path(db_path or settings.db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def initialize_database(db_path: Path | None = None) -> None:
    conn = get_connection(db_path)
    try:
        with conn:
            conn.executescript(SCHEMA_SQL)
            _ensure_column(conn, "ad_pricing_rules", "last_error_kind", "TEXT")
            _ensure_column(conn, "ad_pricing_rules", "asset_last_applied_json", "TEXT NOT NULL DEFAULT '{}'")
    finally:
        conn.close()


def _ensure_column(conn: sqlite3.Connection, table_name: str, column_name: str, column_type: str) -> None:
    info = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    existing = {row[1] for row in info}
    if column_name in existing:
        return
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type}")
