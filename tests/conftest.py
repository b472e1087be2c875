from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable

import pytest

from ad_pricer.applier import Applier
from ad_pricer.db import initialize_database
from ad_pricer.engine import PricingEngine
from ad_pricer.models import OffsetDirection, PriceType, PricingRule, TradeType
from ad_pricer.pricing_log import PricingLogSink
from ad_pricer.rule_store import RuleStore
from ad_pricer.venue_client import Listing, VenueError


# 12:00 in Asia/Kolkata.
NOW = datetime(2026, 1, 5, 6, 30, tzinfo=timezone.utc)


class FakeVenue:
    """In-memory stand-in for ``VenueClient`` that records every update."""

    def __init__(self) -> None:
        self.listings: dict[tuple[str, str], Listing] = {}
        self.references: dict[str, float | None] = {}
        self.updates: list[tuple[str, float | None, float | None]] = []
        self.fail_with: VenueError | None = None
        self.reject_ads: dict[str, VenueError] = {}
        self.reference_calls: list[tuple[str, tuple[str, ...]]] = []
        self.on_lookup: Callable[[], None] | None = None
        self.delay = 0.0

    def add_listing(self, merchant: str, price: float, asset: str = "USDT", online: bool = True) -> None:
        self.listings[(merchant.lower(), asset)] = Listing(merchant=merchant, price=price, online=online)

    def get_listing(self, merchant, asset, fiat, trade_type, deadline=None):
        if self.fail_with is not None:
            raise self.fail_with
        if self.on_lookup is not None:
            self.on_lookup()
        return self.listings.get((merchant.lower(), asset))

    def get_market_reference(self, asset, fiat, trade_type, exclude_ads=(), deadline=None):
        if self.fail_with is not None:
            raise self.fail_with
        if self.delay:
            time.sleep(self.delay)
        self.reference_calls.append((asset, tuple(exclude_ads)))
        return self.references.get(asset)

    def set_ad_price(self, ad_number, price=None, ratio=None, deadline=None):
        if ad_number in self.reject_ads:
            raise self.reject_ads[ad_number]
        self.updates.append((ad_number, price, ratio))
        return {"success": True}


class RecordingAlerts:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []

    def send(self, event_type: str, message: str, metadata: dict) -> None:
        self.events.append((event_type, message, metadata))

    @property
    def event_types(self) -> list[str]:
        return [event[0] for event in self.events]


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "ad_pricer.sqlite3"
    initialize_database(path)
    return path


@pytest.fixture
def store(db_path):
    return RuleStore(db_path)


@pytest.fixture
def log_sink(db_path):
    return PricingLogSink(db_path)


@pytest.fixture
def venue():
    return FakeVenue()


@pytest.fixture
def alerts():
    return RecordingAlerts()


@pytest.fixture
def engine(store, log_sink, venue, alerts):
    return PricingEngine(
        store,
        log_sink,
        venue,
        alerts=alerts,
        applier=Applier(venue, delay_seconds=0),
        clock=lambda: NOW,
    )


@pytest.fixture
def make_rule(store):
    def _make_rule(**overrides) -> PricingRule:
        values = {
            "id": "",
            "name": "USDT/INR buy follower",
            "is_active": True,
            "asset": "USDT",
            "fiat": "INR",
            "trade_type": TradeType.BUY,
            "price_type": PriceType.FIXED,
            "target_merchant": "AlphaDesk",
            "ad_numbers": ("AD1",),
            "offset_direction": OffsetDirection.UNDERCUT,
            "offset_amount": 0.01,
            "offset_pct": 0.0,
            "max_deviation_from_market_pct": 5.0,
            "auto_pause_after_deviations": 3,
            "manual_override_cooldown_minutes": 10,
            "check_interval_seconds": 60,
        }
        values.update(overrides)
        return store.create_rule(PricingRule(**values))

    return _make_rule
