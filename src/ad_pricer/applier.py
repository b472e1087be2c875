from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterable

from loguru import logger

from .deadline import CycleTimeout
from .models import SkipReason
from .settings import settings
from .venue_client import VenueClient, VenueError

if TYPE_CHECKING:
    from .deadline import CycleDeadline


def _decimals(ratio_mode: bool) -> int:
    return settings.ratio_decimals if ratio_mode else settings.price_decimals


def _floor_to(value: float, decimals: int) -> float:
    scale = 10**decimals
    # Absorb float noise in the product before truncating.
    return math.floor(round(value * scale, 6)) / scale


def _ceil_to(value: float, decimals: int) -> float:
    scale = 10**decimals
    return math.ceil(round(value * scale, 6)) / scale


@dataclass(frozen=True)
class AdResult:
    ad_number: str
    applied: float | None = None
    skipped_reason: SkipReason | None = None
    error: VenueError | None = None

    @property
    def ok(self) -> bool:
        return self.applied is not None


class Applier:
    def __init__(
        self,
        venue: VenueClient,
        delay_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.venue = venue
        self.delay_seconds = settings.apply_delay_seconds if delay_seconds is None else delay_seconds
        self._sleep = sleep

    @staticmethod
    def round_value(value: float, ratio_mode: bool) -> float:
        return round(value, _decimals(ratio_mode))

    @staticmethod
    def quantize(
        value: float,
        ratio_mode: bool,
        last_applied: float | None = None,
        lower: float | None = None,
        upper: float | None = None,
        max_step: float | None = None,
    ) -> float:
        """Round to the venue's precision without leaving the step or the bounds.

        Nearest rounding is the default. When that lands past ``last_applied``
        plus or minus ``max_step`` it rounds back toward ``last_applied``, and
        past a bound it rounds inward. Bounds win over the step.
        """
        decimals = _decimals(ratio_mode)
        rounded = round(value, decimals)
        if max_step and max_step > 0 and last_applied is not None:
            if rounded > last_applied + max_step:
                rounded = _floor_to(last_applied + max_step, decimals)
            elif rounded < last_applied - max_step:
                rounded = _ceil_to(last_applied - max_step, decimals)
        if upper is not None and rounded > upper:
            rounded = _floor_to(upper, decimals)
        if lower is not None and rounded < lower:
            rounded = _ceil_to(lower, decimals)
        return rounded

    def apply(
        self,
        ad_numbers: Iterable[str],
        value: float,
        ratio_mode: bool,
        last_applied: float | None,
        excluded: set[str],
        deadline: CycleDeadline | None = None,
        lower: float | None = None,
        upper: float | None = None,
        max_step: float | None = None,
    ) -> list[AdResult]:
        rounded = self.quantize(value, ratio_mode, last_applied, lower=lower, upper=upper, max_step=max_step)
        unchanged = last_applied is not None and rounded == self.round_value(last_applied, ratio_mode)
        pending = list(ad_numbers)
        results: list[AdResult] = []
        called_venue = False

        for index, ad_number in enumerate(pending):
            if ad_number in excluded:
                results.append(AdResult(ad_number, skipped_reason=SkipReason.EXCLUDED))
                continue
            if unchanged:
                results.append(AdResult(ad_number, skipped_reason=SkipReason.NO_CHANGE))
                continue

            if called_venue and self.delay_seconds > 0:
                self._sleep(self.delay_seconds)
            try:
                if deadline is not None:
                    deadline.check(f"updating ad {ad_number}")
                called_venue = True
                if ratio_mode:
                    self.venue.set_ad_price(ad_number, ratio=rounded, deadline=deadline)
                else:
                    self.venue.set_ad_price(ad_number, price=rounded, deadline=deadline)
            except CycleTimeout as exc:
                logger.warning("Stopping ad updates at {}: {}", ad_number, exc)
                results.extend(AdResult(no, error=exc) for no in pending[index:] if no not in excluded)
                break
            except VenueError as exc:
                logger.warning("Ad {} update failed [{}]: {}", ad_number, exc.kind.value, exc)
                results.append(AdResult(ad_number, error=exc))
                continue
            results.append(AdResult(ad_number, applied=rounded))
            logger.info("Ad {} set to {}{}", ad_number, rounded, "%" if ratio_mode else "")

        return results
