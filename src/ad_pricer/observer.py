from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

from loguru import logger

from .models import PricingRule
from .venue_client import VenueClient

if TYPE_CHECKING:
    from .deadline import CycleDeadline


@dataclass(frozen=True)
class Observation:
    asset: str
    merchant: str | None = None
    competitor_price: float | None = None
    online: bool = False
    market_reference_price: float | None = None

    @property
    def found(self) -> bool:
        return self.merchant is not None and self.competitor_price is not None


class MarketObserver:
    """Read-only view of the venue for one rule and asset.

    Venue failures propagate as ``VenueError``; the engine decides how they
    count against the rule.
    """

    def __init__(self, venue: VenueClient) -> None:
        self.venue = venue

    def observe(
        self,
        rule: PricingRule,
        asset: str,
        own_ads: Iterable[str] = (),
        deadline: CycleDeadline | None = None,
    ) -> Observation:
        reference = self.venue.get_market_reference(
            asset, rule.fiat, rule.trade_type, exclude_ads=tuple(own_ads), deadline=deadline
        )

        for nickname in rule.merchant_chain():
            listing = self.venue.get_listing(nickname, asset, rule.fiat, rule.trade_type, deadline=deadline)
            if listing is None or listing.price <= 0:
                continue
            if nickname != rule.target_merchant:
                logger.info("Rule {} [{}]: target {} absent, using fallback {}", rule.id, asset, rule.target_merchant, nickname)
            return Observation(
                asset=asset,
                merchant=listing.merchant,
                competitor_price=listing.price,
                online=listing.online,
                market_reference_price=reference,
            )

        logger.info("Rule {} [{}]: no merchant in chain {} has a live listing", rule.id, asset, rule.merchant_chain())
        return Observation(asset=asset, market_reference_price=reference)
