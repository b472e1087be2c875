from datetime import datetime, timezone

import pytest

from ad_pricer.models import AssetOverride, CycleStatus, PricingLog
from ad_pricer.rule_store import RuleNotFound
from ad_pricer.state import StateUpdate


def test_create_and_read_back(store, make_rule):
    rule = make_rule(
        assets=("USDT", "BTC"),
        fallback_merchants=("BetaTrade",),
        asset_config={"BTC": AssetOverride(ad_numbers=("AD-BTC",), max_ceiling=6_000_000.0)},
    )

    loaded = store.get_rule(rule.id)

    assert loaded.name == rule.name
    assert loaded.assets == ("USDT", "BTC")
    assert loaded.fallback_merchants == ("BetaTrade",)
    assert loaded.asset_config["BTC"].ad_numbers == ("AD-BTC",)
    assert loaded.asset_config["BTC"].max_ceiling == 6_000_000.0
    assert loaded.created_at is not None


def test_config_edit_keeps_run_state(store, make_rule):
    rule = make_rule()
    store.update_run_state(
        rule.id,
        {"last_applied_price": 99.5, "consecutive_errors": 2, "last_error": "timed out"},
    )

    updated = store.update_config(rule.id, offset_amount=0.5, min_floor=90.0)

    assert updated.offset_amount == 0.5
    state = store.get_state(rule.id)
    assert state.last_applied_price == 99.5
    assert state.consecutive_errors == 2
    assert state.last_error == "timed out"


def test_config_and_run_state_writes_are_separate(store, make_rule):
    rule = make_rule()

    with pytest.raises(ValueError):
        store.update_config(rule.id, consecutive_errors=0)
    with pytest.raises(ValueError):
        store.update_run_state(rule.id, {"offset_amount": 1.0})


def test_reset_counters_reenables_rule(store, make_rule):
    rule = make_rule(is_active=False)
    store.update_run_state(
        rule.id,
        {"consecutive_errors": 4, "consecutive_deviations": 3, "last_error": "x", "last_error_kind": "deviation"},
    )

    store.reset_counters(rule.id)

    snapshot = store.get_snapshot(rule.id)
    assert snapshot.rule.is_active is True
    assert snapshot.state.consecutive_errors == 0
    assert snapshot.state.consecutive_deviations == 0
    assert snapshot.state.last_error_kind is None


def test_delete_removes_logs(store, log_sink, make_rule):
    rule = make_rule()
    other = make_rule(name="other")
    log_sink.append_log(PricingLog(rule_id=rule.id, status=CycleStatus.SUCCESS))
    log_sink.append_log(PricingLog(rule_id=other.id, status=CycleStatus.SUCCESS))

    store.delete_rule(rule.id)

    with pytest.raises(RuleNotFound):
        store.get_rule(rule.id)
    assert log_sink.query_logs(rule.id) == []
    assert len(log_sink.query_logs(other.id)) == 1


def test_missing_rule_raises(store):
    with pytest.raises(RuleNotFound):
        store.set_active("missing", True)
    with pytest.raises(RuleNotFound):
        store.delete_rule("missing")


def test_list_rules_active_only(store, make_rule):
    active = make_rule()
    make_rule(is_active=False)

    assert [rule.id for rule in store.list_rules(active_only=True)] == [active.id]
    assert len(store.list_rules()) == 2


def test_manual_edit_timestamp(store, make_rule):
    rule = make_rule()
    at = datetime(2026, 1, 5, 6, 0, tzinfo=timezone.utc)

    store.record_manual_edit(rule.id, at)

    assert store.get_state(rule.id).last_manual_edit_at == at


def test_exclusions(store):
    store.add_exclusion("AD1")
    store.add_exclusion("AD1")
    store.add_exclusion("AD2")
    assert store.list_exclusions() == {"AD1", "AD2"}

    store.remove_exclusion("AD1")
    assert store.list_exclusions() == {"AD2"}


def test_logs_newest_first_and_limited(log_sink):
    for index in range(5):
        log_sink.append_log(PricingLog(rule_id="r1", status=CycleStatus.SKIPPED, ad_number=f"AD{index}"))

    logs = log_sink.query_logs("r1", limit=2)

    assert [log.ad_number for log in logs] == ["AD4", "AD3"]
    assert all(log.id is not None and log.created_at is not None for log in logs)


def test_commit_cycle_applies_counter_deltas(store, make_rule):
    rule = make_rule(auto_pause_after_deviations=3)
    store.update_run_state(rule.id, {"consecutive_errors": 5, "consecutive_deviations": 1})
    update = StateUpdate()
    update.set(last_competitor_price=101.0)
    update.increment("consecutive_deviations")
    update.clear_error()

    after, auto_paused = store.commit_cycle(rule.id, update, pause_after_deviations=3)

    assert auto_paused is False
    assert after.state.consecutive_deviations == 2
    assert after.state.consecutive_errors == 0
    assert after.state.last_competitor_price == 101.0


def test_commit_cycle_pauses_on_stored_streak(store, make_rule):
    rule = make_rule(auto_pause_after_deviations=2)
    store.update_run_state(rule.id, {"consecutive_deviations": 1})
    update = StateUpdate()
    update.increment("consecutive_deviations")

    after, auto_paused = store.commit_cycle(rule.id, update, pause_after_deviations=2)

    assert auto_paused is True
    assert after.rule.is_active is False
    assert after.state.last_error == "Auto-paused after 2 consecutive market deviations"
    assert after.state.last_error_kind == "deviation"


def test_counters_only_change_through_operations():
    update = StateUpdate()

    with pytest.raises(KeyError):
        update.set(consecutive_errors=3)
    with pytest.raises(KeyError):
        update.increment("last_error")


def test_commit_cycle_unknown_rule(store):
    update = StateUpdate()
    update.increment("consecutive_errors")

    with pytest.raises(RuleNotFound):
        store.commit_cycle("missing", update)
