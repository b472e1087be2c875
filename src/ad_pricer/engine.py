from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable

from loguru import logger

from .alerts import AlertRouter, classify_alert
from .applier import Applier
from .calculator import Candidate, EffectiveConfig, calculate, clamp, resolve_asset_config
from .deadline import CycleDeadline
from .guards import GuardChain, PriceSource, utcnow
from .models import CycleStatus, ErrorKind, PricingLog, PricingRule, RuleSnapshot, SkipReason
from .observer import MarketObserver, Observation
from .pricing_log import PricingLogSink
from .rule_store import RuleStore
from .settings import settings
from .state import RuleRunState, StateUpdate, asset_state_key
from .venue_client import VenueClient, VenueError


@dataclass
class AssetOutcome:
    asset: str
    logs: list[PricingLog] = field(default_factory=list)
    observation: Observation | None = None
    applied: float | None = None
    healthy: bool = False
    deviation_checked: bool = False
    deviated: bool = False
    problem: str | None = None
    problem_kind: ErrorKind | None = None
    counts_as_error: bool = False


@dataclass
class CycleReport:
    rule_id: str
    status: CycleStatus
    logs: list[PricingLog] = field(default_factory=list)
    auto_paused: bool = False
    skipped_reason: SkipReason | None = None


class PricingEngine:
    """Runs one evaluation cycle for one rule.

    The caller must hold the rule's single-flight lock; every run-state write
    for the rule happens here, once, at the end of the cycle.
    """

    def __init__(
        self,
        store: RuleStore,
        log_sink: PricingLogSink,
        venue: VenueClient,
        alerts: AlertRouter | None = None,
        applier: Applier | None = None,
        clock: Callable[[], datetime] = utcnow,
        cycle_timeout_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.log_sink = log_sink
        self.observer = MarketObserver(venue)
        self.applier = applier or Applier(venue)
        self.alerts = alerts or AlertRouter()
        self.guards = GuardChain(settings.timezone)
        self._clock = clock
        self.cycle_timeout_seconds = cycle_timeout_seconds or settings.cycle_timeout_seconds

    def run_cycle(self, rule_id: str) -> CycleReport:
        snapshot = self.store.get_snapshot(rule_id)
        rule, state = snapshot.rule, snapshot.state
        if not rule.is_active:
            logger.debug("Rule {} is inactive; nothing to do", rule_id)
            return CycleReport(rule_id=rule_id, status=CycleStatus.SKIPPED)

        with logger.contextualize(rule=rule_id):
            try:
                return self._run(rule, state)
            except Exception as exc:
                logger.exception("Rule {} cycle crashed: {}", rule_id, exc)
                update = StateUpdate()
                update.set(last_checked_at=self._clock())
                update.mark_error(str(exc), ErrorKind.TRANSIENT.value)
                self.store.commit_cycle(rule_id, update)
                log = self.log_sink.append_log(
                    PricingLog(rule_id=rule_id, status=CycleStatus.ERROR, asset=rule.asset, error_message=str(exc))
                )
                return CycleReport(rule_id=rule_id, status=CycleStatus.ERROR, logs=[log])

    def _run(self, rule: PricingRule, state: RuleRunState) -> CycleReport:
        now = self._clock()
        deadline = CycleDeadline(self.cycle_timeout_seconds)
        update = StateUpdate()
        update.set(last_checked_at=now)

        skip = self.guards.before_observation(rule, state, now)
        if skip is not None:
            logger.info("Rule {} skipped: {}", rule.id, skip.value)
            logs = [
                self.log_sink.append_log(
                    PricingLog(rule_id=rule.id, asset=asset, status=CycleStatus.SKIPPED, skipped_reason=skip)
                )
                for asset in rule.effective_assets
            ]
            self.store.update_run_state(rule.id, update.fields)
            return CycleReport(rule_id=rule.id, status=CycleStatus.SKIPPED, logs=logs, skipped_reason=skip)

        excluded = self.store.list_exclusions()
        own_ads = set(rule.ad_numbers)
        for override in rule.asset_config.values():
            own_ads.update(override.ad_numbers)

        outcomes = [
            self._run_asset(rule, state, asset, own_ads, excluded, deadline)
            for asset in rule.effective_assets
        ]
        return self._finish(rule, state, update, outcomes)

    # ── Per-asset sub-cycle ──────────────────────────────────────

    def _run_asset(
        self,
        rule: PricingRule,
        state: RuleRunState,
        asset: str,
        own_ads: set[str],
        excluded: set[str],
        deadline: CycleDeadline,
    ) -> AssetOutcome:
        outcome = AssetOutcome(asset=asset)
        base = PricingLog(rule_id=rule.id, asset=asset, status=CycleStatus.SKIPPED)
        config = resolve_asset_config(rule, asset)
        if not config.ad_numbers:
            outcome.logs.append(self.log_sink.append_log(replace(base, skipped_reason=SkipReason.NO_ADS)))
            return outcome

        try:
            deadline.check("observing market")
            observation = self.observer.observe(rule, asset, own_ads=own_ads, deadline=deadline)
        except VenueError as exc:
            return self._fail(outcome, base, exc)
        outcome.observation = observation
        base = replace(
            base,
            competitor_merchant=observation.merchant,
            competitor_price=observation.competitor_price,
            market_reference_price=observation.market_reference_price,
        )

        merchant = self.guards.after_observation(rule, observation)
        if merchant.skip_reason is not None:
            if merchant.count_error:
                outcome.problem = f"No merchant found for {asset} among {', '.join(rule.merchant_chain())}"
                outcome.problem_kind = ErrorKind.MERCHANT_NOT_FOUND
                outcome.counts_as_error = True
            logger.info("Rule {} [{}] skipped: {}", rule.id, asset, merchant.skip_reason.value)
            outcome.logs.append(self.log_sink.append_log(replace(base, skipped_reason=merchant.skip_reason)))
            return outcome

        if merchant.source == PriceSource.COMPETITOR:
            candidate = calculate(
                observation.competitor_price,
                rule,
                rule.asset_config.get(asset),
                observation.market_reference_price,
            )
        else:
            candidate = self._resting_candidate(rule, config, observation.market_reference_price)
            logger.info("Rule {} [{}] using resting value {}", rule.id, asset, candidate.value)

        base = replace(
            base,
            calculated_price=None if rule.is_ratio_mode else candidate.price,
            calculated_ratio=candidate.ratio,
            was_capped=candidate.was_capped,
        )

        deviation = self.guards.check_deviation(rule, state, candidate.price, observation.market_reference_price)
        if deviation.deviation_pct is not None:
            outcome.deviation_checked = True
            base = replace(base, deviation_from_market_pct=deviation.deviation_pct)
            if deviation.exceeded:
                outcome.deviated = True
                outcome.problem = (
                    f"Market deviation {deviation.deviation_pct:.2f}% exceeds "
                    f"{rule.max_deviation_from_market_pct:.2f}% for {asset}"
                )
                outcome.problem_kind = ErrorKind.DEVIATION
                logger.warning("Rule {} [{}]: {}", rule.id, asset, outcome.problem)
                outcome.logs.append(
                    self.log_sink.append_log(replace(base, skipped_reason=SkipReason.DEVIATION_EXCEEDED))
                )
                return outcome

        primary = asset == self._primary_asset(rule)
        last_applied = state.last_applied_for(asset, rule.is_ratio_mode, primary)
        value, was_rate_limited = self.guards.limit_step(rule, last_applied, candidate.value)
        if rule.is_ratio_mode:
            lower, upper = config.min_ratio_floor, config.max_ratio_ceiling
            max_step = rule.max_ratio_change_per_cycle
        else:
            lower, upper = config.min_floor, config.max_ceiling
            max_step = rule.max_price_change_per_cycle
        value, capped = clamp(value, lower, upper)
        base = replace(base, was_rate_limited=was_rate_limited, was_capped=base.was_capped or capped)

        results = self.applier.apply(
            config.ad_numbers,
            value,
            rule.is_ratio_mode,
            last_applied,
            excluded,
            deadline=deadline,
            lower=lower,
            upper=upper,
            max_step=max_step,
        )
        for result in results:
            if result.ok:
                outcome.applied = result.applied
                outcome.healthy = True
                entry = replace(
                    base,
                    ad_number=result.ad_number,
                    status=CycleStatus.SUCCESS,
                    applied_price=None if rule.is_ratio_mode else result.applied,
                    applied_ratio=result.applied if rule.is_ratio_mode else None,
                )
            elif result.error is not None:
                outcome.problem = str(result.error)
                outcome.problem_kind = result.error.kind
                outcome.counts_as_error = True
                entry = replace(
                    base, ad_number=result.ad_number, status=CycleStatus.ERROR, error_message=str(result.error)
                )
            else:
                if result.skipped_reason == SkipReason.NO_CHANGE:
                    outcome.healthy = True
                entry = replace(base, ad_number=result.ad_number, skipped_reason=result.skipped_reason)
            outcome.logs.append(self.log_sink.append_log(entry))
        return outcome

    def _fail(self, outcome: AssetOutcome, base: PricingLog, exc: VenueError) -> AssetOutcome:
        logger.warning("Rule {} [{}] venue error [{}]: {}", base.rule_id, outcome.asset, exc.kind.value, exc)
        outcome.problem = str(exc)
        outcome.problem_kind = exc.kind
        outcome.counts_as_error = True
        outcome.logs.append(
            self.log_sink.append_log(replace(base, status=CycleStatus.ERROR, error_message=str(exc)))
        )
        return outcome

    @staticmethod
    def _resting_candidate(
        rule: PricingRule,
        config: EffectiveConfig,
        market_reference_price: float | None,
    ) -> Candidate:
        if rule.is_ratio_mode:
            ratio, capped = clamp(float(rule.resting_ratio), config.min_ratio_floor, config.max_ratio_ceiling)
            price = ratio / 100.0 * market_reference_price if market_reference_price else 0.0
            return Candidate(
                price=price, ratio=ratio, raw_price=price, raw_ratio=float(rule.resting_ratio), was_capped=capped
            )
        price, capped = clamp(float(rule.resting_price), config.min_floor, config.max_ceiling)
        return Candidate(price=price, ratio=None, raw_price=float(rule.resting_price), raw_ratio=None, was_capped=capped)

    @staticmethod
    def _primary_asset(rule: PricingRule) -> str:
        assets = rule.effective_assets
        return rule.asset if rule.asset in assets else assets[0]

    # ── State write-back ─────────────────────────────────────────

    def _finish(
        self,
        rule: PricingRule,
        state: RuleRunState,
        update: StateUpdate,
        outcomes: list[AssetOutcome],
    ) -> CycleReport:
        logs = [log for outcome in outcomes for log in outcome.logs]
        primary = self._primary_asset(rule)

        observed = [o.observation for o in outcomes if o.observation is not None and o.observation.found]
        observed.sort(key=lambda obs: obs.asset != primary)
        if observed:
            update.set(
                last_competitor_price=observed[0].competitor_price,
                last_matched_merchant=observed[0].merchant,
            )

        asset_last_applied = dict(state.asset_last_applied)
        for outcome in outcomes:
            if outcome.applied is None:
                continue
            if outcome.asset == primary:
                field_name = "last_applied_ratio" if rule.is_ratio_mode else "last_applied_price"
                update.set(**{field_name: outcome.applied})
            else:
                asset_last_applied[asset_state_key(outcome.asset, rule.is_ratio_mode)] = outcome.applied
        if asset_last_applied != state.asset_last_applied:
            update.set(asset_last_applied=asset_last_applied)

        if any(o.deviated for o in outcomes):
            update.increment("consecutive_deviations")
        elif any(o.deviation_checked for o in outcomes):
            update.reset("consecutive_deviations")

        problems = [o for o in outcomes if o.problem]
        if problems:
            last = problems[-1]
            update.set(last_error=last.problem, last_error_kind=last.problem_kind.value)
        if any(o.counts_as_error for o in problems):
            update.increment("consecutive_errors")
        elif any(o.healthy for o in outcomes):
            # A deviation on another asset keeps last_error, not the error streak.
            if problems:
                update.reset("consecutive_errors")
            else:
                update.clear_error()

        after, auto_paused = self.store.commit_cycle(
            rule.id, update, pause_after_deviations=rule.auto_pause_after_deviations
        )
        self._notify(rule, state, after, auto_paused)

        if any(log.status == CycleStatus.ERROR for log in logs):
            status = CycleStatus.ERROR
        elif any(log.status == CycleStatus.SUCCESS for log in logs):
            status = CycleStatus.SUCCESS
        else:
            status = CycleStatus.SKIPPED
        logger.info("Rule {} cycle finished: {} ({} log rows)", rule.id, status.value, len(logs))
        return CycleReport(rule_id=rule.id, status=status, logs=logs, auto_paused=auto_paused)

    def _notify(self, rule: PricingRule, before: RuleRunState, after: RuleSnapshot, auto_paused: bool) -> None:
        after_rule, after_state = after.rule, after.state
        metadata = {"rule_id": rule.id, "rule_name": rule.name, **after_state.to_dict()}
        if auto_paused:
            self.alerts.send("auto_pause", after_state.last_error or "Rule auto-paused", metadata)
            return
        level_before = classify_alert(rule, before)
        level_after = classify_alert(after_rule, after_state)
        if level_after is not None and level_after != level_before:
            self.alerts.send(
                "rule_alerting",
                f"Rule {rule.name} is now {level_after.value}: {after_state.last_error or 'check counters'}",
                {**metadata, "level": level_after.value},
            )
