from __future__ import annotations

from enum import Enum

import requests
from loguru import logger

from .models import ErrorKind, PricingRule
from .settings import settings
from .state import RuleRunState


class AlertLevel(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


_ALERTING_ERROR_KINDS = {
    ErrorKind.MERCHANT_NOT_FOUND.value,
    ErrorKind.DEVIATION.value,
    ErrorKind.VENUE_REST.value,
}


def is_auto_paused(rule: PricingRule, state: RuleRunState) -> bool:
    return not rule.is_active and state.consecutive_deviations >= rule.auto_pause_after_deviations


def classify_alert(rule: PricingRule, state: RuleRunState) -> AlertLevel | None:
    """Read-only alert tier for a rule.  Never mutates anything."""
    if (
        is_auto_paused(rule, state)
        or state.consecutive_deviations >= rule.auto_pause_after_deviations
        or state.consecutive_errors > 10
    ):
        return AlertLevel.CRITICAL
    if (
        state.last_error_kind in _ALERTING_ERROR_KINDS
        or state.consecutive_errors > 3
        or state.consecutive_deviations > 2
    ):
        return AlertLevel.WARNING
    return None


class AlertRouter:
    def __init__(self) -> None:
        self.webhook_url = settings.alert_webhook_url.strip()
        self.timeout = settings.alert_webhook_timeout_seconds
        self.allowed_event_types = {
            item.strip()
            for item in settings.alert_event_types_csv.split(",")
            if item.strip()
        }

    def should_send(self, event_type: str) -> bool:
        if not self.webhook_url:
            return False
        return event_type in self.allowed_event_types

    def send(self, event_type: str, message: str, metadata: dict) -> None:
        if not self.should_send(event_type):
            return

        payload = {
            "event_type": event_type,
            "message": message,
            "metadata": metadata,
        }
        try:
            requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Alert webhook delivery failed for {}: {}", event_type, exc)
