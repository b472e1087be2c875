from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from .alerts import AlertRouter, classify_alert
from .db import initialize_database
from .engine import PricingEngine
from .models import AssetOverride, OffsetDirection, PriceType, PricingRule, RuleSnapshot, TradeType
from .pricing_log import PricingLogSink
from .rule_defaults import load_rule_defaults
from .rule_store import RuleNotFound, RuleStore
from .scheduler import PricingScheduler
from .venue_client import VenueClient, VenueError


CLOCK_PATTERN = r"^\d{2}:\d{2}(:\d{2})?$"


class AssetOverridePayload(BaseModel):
    ad_numbers: list[str] = Field(default_factory=list)
    offset_amount: float | None = None
    offset_pct: float | None = None
    max_ceiling: float | None = Field(default=None, gt=0)
    min_floor: float | None = Field(default=None, gt=0)
    max_ratio_ceiling: float | None = Field(default=None, gt=0)
    min_ratio_floor: float | None = Field(default=None, gt=0)

    def to_override(self) -> AssetOverride:
        return AssetOverride.from_dict(self.model_dump())


class RuleConfigPayload(BaseModel):
    """Every editable field; ``None`` leaves the field alone on PATCH."""

    name: str | None = Field(default=None, min_length=1)
    is_active: bool | None = None
    asset: str | None = Field(default=None, min_length=1)
    assets: list[str] | None = None
    asset_config: dict[str, AssetOverridePayload] | None = None
    fiat: str | None = Field(default=None, min_length=1)
    trade_type: TradeType | None = None
    price_type: PriceType | None = None
    target_merchant: str | None = Field(default=None, min_length=1)
    fallback_merchants: list[str] | None = None
    ad_numbers: list[str] | None = None
    offset_direction: OffsetDirection | None = None
    offset_amount: float | None = Field(default=None, ge=0)
    offset_pct: float | None = Field(default=None, ge=0, le=100)
    max_ceiling: float | None = Field(default=None, gt=0)
    min_floor: float | None = Field(default=None, gt=0)
    max_ratio_ceiling: float | None = Field(default=None, gt=0)
    min_ratio_floor: float | None = Field(default=None, gt=0)
    max_deviation_from_market_pct: float | None = Field(default=None, gt=0, le=100)
    max_price_change_per_cycle: float | None = Field(default=None, gt=0)
    max_ratio_change_per_cycle: float | None = Field(default=None, gt=0)
    auto_pause_after_deviations: int | None = Field(default=None, ge=1)
    manual_override_cooldown_minutes: int | None = Field(default=None, ge=0)
    only_counter_when_online: bool | None = None
    pause_if_no_merchant_found: bool | None = None
    active_hours_start: str | None = Field(default=None, pattern=CLOCK_PATTERN)
    active_hours_end: str | None = Field(default=None, pattern=CLOCK_PATTERN)
    resting_price: float | None = Field(default=None, gt=0)
    resting_ratio: float | None = Field(default=None, gt=0)
    check_interval_seconds: int | None = Field(default=None, ge=5, le=86400)

    def changes(self, exclude_unset: bool = True) -> dict[str, Any]:
        changes = self.model_dump(exclude_unset=exclude_unset)
        if "asset_config" in changes:
            changes["asset_config"] = {
                asset: override.to_override() for asset, override in (self.asset_config or {}).items()
            }
        for key in ("assets", "fallback_merchants", "ad_numbers"):
            if key in changes:
                changes[key] = tuple(changes[key] or ())
        return changes


class RuleCreatePayload(RuleConfigPayload):
    name: str = Field(..., min_length=1)
    asset: str = Field(..., min_length=1)
    fiat: str = Field(..., min_length=1)
    trade_type: TradeType
    price_type: PriceType = PriceType.FIXED
    target_merchant: str = Field(..., min_length=1)
    is_active: bool = False


class ActivePayload(BaseModel):
    active: bool


class ManualEditPayload(BaseModel):
    at: datetime | None = None


class ExclusionPayload(BaseModel):
    ad_number: str = Field(..., min_length=1)


class PricingController:
    def __init__(
        self,
        store: RuleStore | None = None,
        log_sink: PricingLogSink | None = None,
        venue: VenueClient | None = None,
        engine: PricingEngine | None = None,
        scheduler: PricingScheduler | None = None,
    ) -> None:
        self.store = store or RuleStore()
        self.log_sink = log_sink or PricingLogSink(self.store.db_path)
        self.venue = venue or VenueClient()
        self.engine = engine or PricingEngine(self.store, self.log_sink, self.venue, alerts=AlertRouter())
        self.scheduler = scheduler or PricingScheduler(self.engine, self.store)

    def start(self) -> None:
        initialize_database(self.store.db_path)
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()

    def describe(self, snapshot: RuleSnapshot) -> dict[str, Any]:
        level = classify_alert(snapshot.rule, snapshot.state)
        return {
            **snapshot.rule.to_dict(),
            "state": snapshot.state.to_dict(),
            "alert": level.value if level else None,
            "run_status": self.scheduler.status(snapshot.rule.id, snapshot.rule.is_active),
        }

    def list_rules(self) -> list[dict[str, Any]]:
        return [self.describe(snapshot) for snapshot in self.store.list_snapshots()]

    def get_rule(self, rule_id: str) -> dict[str, Any]:
        return self.describe(self._snapshot(rule_id))

    def create_rule(self, payload: RuleCreatePayload) -> dict[str, Any]:
        defaults = load_rule_defaults()
        values = {
            "max_deviation_from_market_pct": defaults.max_deviation_from_market_pct,
            "auto_pause_after_deviations": defaults.auto_pause_after_deviations,
            "manual_override_cooldown_minutes": defaults.manual_override_cooldown_minutes,
            "check_interval_seconds": defaults.check_interval_seconds,
            "max_price_change_per_cycle": defaults.max_price_change_per_cycle,
            "max_ratio_change_per_cycle": defaults.max_ratio_change_per_cycle,
            "only_counter_when_online": defaults.only_counter_when_online,
            "pause_if_no_merchant_found": defaults.pause_if_no_merchant_found,
        }
        values.update(
            {key: value for key, value in payload.changes(exclude_unset=False).items() if value is not None}
        )
        rule = self.store.create_rule(PricingRule(id="", **values))
        self.scheduler.sync_jobs()
        return self.get_rule(rule.id)

    def update_rule(self, rule_id: str, payload: RuleConfigPayload) -> dict[str, Any]:
        try:
            self.store.update_config(rule_id, **payload.changes())
        except RuleNotFound:
            raise HTTPException(status_code=404, detail="Rule not found")
        self.scheduler.sync_jobs()
        return self.get_rule(rule_id)

    def delete_rule(self, rule_id: str) -> dict[str, Any]:
        try:
            self.store.delete_rule(rule_id)
        except RuleNotFound:
            raise HTTPException(status_code=404, detail="Rule not found")
        self.scheduler.sync_jobs()
        return {"ok": True}

    def trigger(self, rule_id: str) -> JSONResponse:
        result = self.scheduler.trigger(rule_id)
        if result.accepted:
            return JSONResponse({"accepted": True}, status_code=202)
        if result.reason == "not_found":
            raise HTTPException(status_code=404, detail="Rule not found")
        return JSONResponse({"accepted": False, "reason": result.reason}, status_code=409)

    def reset(self, rule_id: str) -> dict[str, Any]:
        self._call(self.store.reset_counters, rule_id)
        self.scheduler.sync_jobs()
        return self.get_rule(rule_id)

    def set_active(self, rule_id: str, active: bool) -> dict[str, Any]:
        self._call(self.store.set_active, rule_id, active)
        self.scheduler.sync_jobs()
        return self.get_rule(rule_id)

    def record_manual_edit(self, rule_id: str, at: datetime | None) -> dict[str, Any]:
        when = at or datetime.now(timezone.utc)
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        self._call(self.store.record_manual_edit, rule_id, when)
        logger.info("Manual edit recorded for rule {} at {}", rule_id, when.isoformat())
        return self.get_rule(rule_id)

    def logs(self, rule_id: str | None, limit: int) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.log_sink.query_logs(rule_id=rule_id, limit=limit)]

    def alerts(self) -> list[dict[str, Any]]:
        return [rule for rule in self.list_rules() if rule["alert"]]

    def search_merchant(self, nickname: str, asset: str, fiat: str, trade_type: TradeType) -> dict[str, Any]:
        try:
            listing = self.venue.get_listing(nickname, asset, fiat, trade_type)
        except VenueError as exc:
            logger.warning("Merchant search for {} failed [{}]: {}", nickname, exc.kind.value, exc)
            raise HTTPException(status_code=502, detail=str(exc))
        if listing is None:
            raise HTTPException(status_code=404, detail=f"No {asset}/{fiat} listing from {nickname}")
        return asdict(listing)

    def _snapshot(self, rule_id: str) -> RuleSnapshot:
        try:
            return self.store.get_snapshot(rule_id)
        except RuleNotFound:
            raise HTTPException(status_code=404, detail="Rule not found")

    @staticmethod
    def _call(func, *args):
        try:
            return func(*args)
        except RuleNotFound:
            raise HTTPException(status_code=404, detail="Rule not found")


controller = PricingController()


app = FastAPI(title="Ad Pricer API", version="1.0.0")


@app.on_event("startup")
def on_startup() -> None:
    controller.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    controller.stop()


@app.get("/rules")
def get_rules() -> list[dict[str, Any]]:
    return controller.list_rules()


@app.post("/rules", status_code=201)
def post_rule(payload: RuleCreatePayload) -> dict[str, Any]:
    return controller.create_rule(payload)


@app.get("/rules/{rule_id}")
def get_rule(rule_id: str) -> dict[str, Any]:
    return controller.get_rule(rule_id)


@app.patch("/rules/{rule_id}")
def patch_rule(rule_id: str, payload: RuleConfigPayload) -> dict[str, Any]:
    return controller.update_rule(rule_id, payload)


@app.delete("/rules/{rule_id}")
def delete_rule(rule_id: str) -> dict[str, Any]:
    return controller.delete_rule(rule_id)


@app.post("/rules/{rule_id}/trigger")
def post_trigger(rule_id: str) -> JSONResponse:
    return controller.trigger(rule_id)


@app.post("/rules/{rule_id}/reset")
def post_reset(rule_id: str) -> dict[str, Any]:
    return controller.reset(rule_id)


@app.post("/rules/{rule_id}/active")
def post_active(rule_id: str, payload: ActivePayload) -> dict[str, Any]:
    return controller.set_active(rule_id, payload.active)


@app.post("/rules/{rule_id}/manual-edit")
def post_manual_edit(rule_id: str, payload: ManualEditPayload) -> dict[str, Any]:
    return controller.record_manual_edit(rule_id, payload.at)


@app.get("/logs")
def get_logs(
    rule_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[dict[str, Any]]:
    return controller.logs(rule_id=rule_id, limit=limit)


@app.get("/alerts")
def get_alerts() -> list[dict[str, Any]]:
    return controller.alerts()


@app.get("/merchants/search")
def get_merchant(
    asset: str = Query(..., min_length=1),
    fiat: str = Query(..., min_length=1),
    trade_type: TradeType = Query(...),
    nickname: str = Query(..., min_length=1),
) -> dict[str, Any]:
    return controller.search_merchant(nickname, asset, fiat, trade_type)


@app.get("/exclusions")
def get_exclusions() -> list[str]:
    return sorted(controller.store.list_exclusions())


@app.post("/exclusions", status_code=201)
def post_exclusion(payload: ExclusionPayload) -> dict[str, Any]:
    controller.store.add_exclusion(payload.ad_number)
    return {"ok": True, "ad_number": payload.ad_number}


@app.delete("/exclusions/{ad_number}")
def delete_exclusion(ad_number: str) -> dict[str, Any]:
    controller.store.remove_exclusion(ad_number)
    return {"ok": True}


@app.get("/healthz")
def healthz() -> JSONResponse:
    return JSONResponse({"ok": True, "time": datetime.now(timezone.utc).isoformat()})
