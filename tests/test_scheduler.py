import threading

import pytest

from ad_pricer.engine import CycleReport
from ad_pricer.models import CycleStatus
from ad_pricer.scheduler import PricingScheduler, SingleFlight


class BlockingEngine:
    """Engine whose cycles wait until the test releases them."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls: list[str] = []

    def run_cycle(self, rule_id: str) -> CycleReport:
        self.calls.append(rule_id)
        self.started.set()
        self.release.wait(timeout=5)
        return CycleReport(rule_id=rule_id, status=CycleStatus.SUCCESS)


@pytest.fixture
def blocking_engine():
    return BlockingEngine()


@pytest.fixture
def scheduler(blocking_engine, store):
    pricing_scheduler = PricingScheduler(blocking_engine, store)
    yield pricing_scheduler
    blocking_engine.release.set()
    pricing_scheduler.manual_pool.shutdown(wait=True)


def test_single_flight_is_exclusive_per_key():
    flight = SingleFlight()

    assert flight.try_acquire("a")
    assert not flight.try_acquire("a")
    assert flight.try_acquire("b")
    flight.release("a")
    assert flight.try_acquire("a")


def test_manual_trigger_rejected_while_running(scheduler, blocking_engine, make_rule):
    rule = make_rule()

    first = scheduler.trigger(rule.id)
    assert first.accepted
    assert blocking_engine.started.wait(timeout=5)

    second = scheduler.trigger(rule.id)
    assert not second.accepted
    assert second.reason == "already_running"
    assert scheduler.status(rule.id, True) == "running"

    blocking_engine.release.set()
    report = first.future.result(timeout=5)

    assert report.status == CycleStatus.SUCCESS
    assert blocking_engine.calls == [rule.id]
    assert scheduler.status(rule.id, True) == "idle"
    assert scheduler.trigger(rule.id).accepted


def test_scheduled_tick_dropped_while_running(scheduler, blocking_engine, make_rule):
    rule = make_rule()
    scheduler.single_flight.try_acquire(rule.id)

    assert scheduler._scheduled_tick(rule.id) is None
    assert blocking_engine.calls == []

    scheduler.single_flight.release(rule.id)
    blocking_engine.release.set()
    assert scheduler._scheduled_tick(rule.id).status == CycleStatus.SUCCESS
    assert not scheduler.single_flight.is_held(rule.id)


def test_trigger_reports_missing_and_inactive_rules(scheduler, make_rule):
    paused = make_rule(is_active=False)

    assert scheduler.trigger("missing").reason == "not_found"
    assert scheduler.trigger(paused.id).reason == "inactive"
    assert scheduler.status(paused.id, False) == "disabled"


def test_lock_released_when_cycle_raises(store, make_rule):
    class ExplodingEngine:
        def run_cycle(self, rule_id):
            raise RuntimeError("boom")

    pricing_scheduler = PricingScheduler(ExplodingEngine(), store)
    rule = make_rule()
    try:
        result = pricing_scheduler.trigger(rule.id)
        with pytest.raises(RuntimeError):
            result.future.result(timeout=5)
        assert not pricing_scheduler.single_flight.is_held(rule.id)
    finally:
        pricing_scheduler.manual_pool.shutdown(wait=True)


def test_sync_jobs_follows_active_rules(scheduler, store, make_rule):
    active = make_rule(check_interval_seconds=30)
    make_rule(is_active=False)

    scheduler.sync_jobs()
    assert scheduler.scheduler.get_job(f"rule:{active.id}") is not None
    assert len(scheduler.scheduler.get_jobs()) == 1

    store.set_active(active.id, False)
    scheduler.sync_jobs()
    assert scheduler.scheduler.get_job(f"rule:{active.id}") is None
