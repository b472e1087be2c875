from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor as ManualPool
from dataclasses import dataclass, field

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .engine import CycleReport, PricingEngine
from .rule_store import RuleNotFound, RuleStore
from .settings import settings


SYNC_JOB_ID = "rule_sync"


def _job_id(rule_id: str) -> str:
    return f"rule:{rule_id}"


class SingleFlight:
    """At most one holder per key; acquisition never blocks."""

    def __init__(self) -> None:
        self._held: set[str] = set()
        self._guard = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        with self._guard:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: str) -> None:
        with self._guard:
            self._held.discard(key)

    def is_held(self, key: str) -> bool:
        with self._guard:
            return key in self._held


@dataclass(frozen=True)
class TriggerResult:
    accepted: bool
    reason: str | None = None
    future: Future | None = field(default=None, compare=False, repr=False)


class PricingScheduler:
    """One interval job per active rule plus a pool for manual triggers.

    Scheduled ticks that find their rule running are dropped, and manual
    triggers for a running rule are rejected.  Nothing is queued.
    """

    def __init__(
        self,
        engine: PricingEngine,
        store: RuleStore,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.scheduler = scheduler or BackgroundScheduler(
            timezone=settings.timezone,
            executors={"default": ThreadPoolExecutor(settings.worker_pool_size)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 30},
        )
        self.manual_pool = ManualPool(max_workers=settings.worker_pool_size, thread_name_prefix="manual-trigger")
        self.single_flight = SingleFlight()
        self._intervals: dict[str, int] = {}
        self._sync_lock = threading.Lock()

    def start(self) -> None:
        self.sync_jobs()
        self.scheduler.add_job(
            self.sync_jobs,
            trigger=IntervalTrigger(seconds=settings.rule_sync_interval_seconds),
            id=SYNC_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "Scheduler started with {} rule job(s); resync every {}s",
            len(self._intervals),
            settings.rule_sync_interval_seconds,
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.manual_pool.shutdown(wait=False)
        logger.info("Scheduler stopped")

    def sync_jobs(self) -> None:
        """Reconcile interval jobs with the rule store."""
        with self._sync_lock:
            wanted = {rule.id: rule.check_interval_seconds for rule in self.store.list_rules(active_only=True)}

            for rule_id in list(self._intervals):
                if rule_id not in wanted:
                    self._remove_job(rule_id)

            for rule_id, interval in wanted.items():
                current = self._intervals.get(rule_id)
                if current == interval:
                    continue
                trigger = IntervalTrigger(seconds=interval)
                if current is None:
                    self.scheduler.add_job(
                        self._scheduled_tick,
                        trigger=trigger,
                        args=[rule_id],
                        id=_job_id(rule_id),
                        replace_existing=True,
                    )
                    logger.info("Scheduled rule {} every {}s", rule_id, interval)
                else:
                    self.scheduler.reschedule_job(_job_id(rule_id), trigger=trigger)
                    logger.info("Rescheduled rule {} from {}s to {}s", rule_id, current, interval)
                self._intervals[rule_id] = interval

    def _remove_job(self, rule_id: str) -> None:
        self._intervals.pop(rule_id, None)
        try:
            self.scheduler.remove_job(_job_id(rule_id))
        except JobLookupError:
            pass
        logger.info("Unscheduled rule {}", rule_id)

    def _scheduled_tick(self, rule_id: str) -> CycleReport | None:
        if not self.single_flight.try_acquire(rule_id):
            logger.info("Rule {} still running; dropping scheduled tick", rule_id)
            return None
        return self._run_locked(rule_id)

    def trigger(self, rule_id: str) -> TriggerResult:
        try:
            rule = self.store.get_rule(rule_id)
        except RuleNotFound:
            return TriggerResult(accepted=False, reason="not_found")
        if not rule.is_active:
            return TriggerResult(accepted=False, reason="inactive")
        if not self.single_flight.try_acquire(rule_id):
            logger.info("Manual trigger for rule {} rejected: already running", rule_id)
            return TriggerResult(accepted=False, reason="already_running")

        try:
            future = self.manual_pool.submit(self._run_locked, rule_id)
        except RuntimeError:
            self.single_flight.release(rule_id)
            raise
        logger.info("Manual trigger for rule {} accepted", rule_id)
        return TriggerResult(accepted=True, future=future)

    def status(self, rule_id: str, is_active: bool) -> str:
        if not is_active:
            return "disabled"
        return "running" if self.single_flight.is_held(rule_id) else "idle"

    def _run_locked(self, rule_id: str) -> CycleReport | None:
        """Run one cycle; the caller has already acquired ``rule_id``."""
        try:
            return self.engine.run_cycle(rule_id)
        except RuleNotFound:
            logger.warning("Rule {} disappeared; removing its job", rule_id)
            with self._sync_lock:
                self._remove_job(rule_id)
            return None
        finally:
            self.single_flight.release(rule_id)
