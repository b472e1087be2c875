from __future__ import annotations

import argparse
import sys

import uvicorn
from loguru import logger

from .db import initialize_database
from .engine import PricingEngine
from .logging_config import configure_logging
from .models import CycleStatus
from .pricing_log import PricingLogSink
from .rule_store import RuleNotFound, RuleStore
from .settings import settings
from .venue_client import VenueClient


def run_service() -> None:
    initialize_database()
    logger.info(
        "Ad pricer starting in {} mode on {}:{} (timezone {})",
        settings.venue_mode,
        settings.api_host,
        settings.api_port,
        settings.timezone,
    )
    uvicorn.run(
        "ad_pricer.api:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


def run_once(rule_id: str | None = None) -> int:
    """Run a single cycle for one rule, or for every active rule, then exit."""
    initialize_database()
    store = RuleStore()
    engine = PricingEngine(store, PricingLogSink(), VenueClient())

    if rule_id:
        rule_ids = [rule_id]
    else:
        rule_ids = [rule.id for rule in store.list_rules(active_only=True)]
    if not rule_ids:
        logger.info("No active rules to run")
        return 0

    failures = 0
    for current in rule_ids:
        try:
            report = engine.run_cycle(current)
        except RuleNotFound:
            logger.error("Rule {} does not exist", current)
            failures += 1
            continue
        logger.info("Rule {}: {} ({} log rows)", current, report.status.value, len(report.logs))
        if report.status == CycleStatus.ERROR:
            failures += 1
    return 1 if failures else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ad-pricer", description="Competitor-following P2P ad pricing engine")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the scheduler and HTTP control surface")
    once = sub.add_parser("run-once", help="Run one cycle and exit")
    once.add_argument("--rule-id", default=None, help="Only run this rule (default: every active rule)")
    sub.add_parser("init-db", help="Create or migrate the SQLite schema")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings.log_level)

    if args.command == "run-once":
        return run_once(args.rule_id)
    if args.command == "init-db":
        initialize_database()
        logger.info("Database ready at {}", settings.db_path)
        return 0
    run_service()
    return 0


if __name__ == "__main__":
    sys.exit(main())
