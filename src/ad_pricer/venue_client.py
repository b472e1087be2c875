from __future__ import annotations

import re
import statistics
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterable

import requests
from loguru import logger

from .models import ErrorKind, TradeType
from .settings import settings

if TYPE_CHECKING:
    from .deadline import CycleDeadline


_REST_PATTERN = re.compile(r"\b(rest|resting|break|maintenance)\b", re.IGNORECASE)
_TRANSIENT_PATTERN = re.compile(r"\b(timeout|timed out|429|rate limit\w*|too many requests)\b", re.IGNORECASE)


class VenueError(RuntimeError):
    def __init__(self, message: str, kind: ErrorKind = ErrorKind.TRANSIENT) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


@dataclass(frozen=True)
class Listing:
    merchant: str
    price: float
    online: bool
    ad_number: str = ""


class VenueClient:
    """P2P venue access: listing search, market reference and ad updates.

    Search results are cached per (asset, fiat, side) for a few seconds so a
    cycle walking a merchant chain issues a single paged search.
    """

    def __init__(self, session: requests.Session | None = None) -> None:
        self.session = session or requests.Session()
        self._search_cache: dict[tuple[str, str, str], tuple[float, list[dict]]] = {}
        self._cache_lock = threading.Lock()

    # ── Queries ──────────────────────────────────────────────────

    def get_listing(
        self,
        merchant: str,
        asset: str,
        fiat: str,
        trade_type: TradeType,
        deadline: CycleDeadline | None = None,
    ) -> Listing | None:
        wanted = merchant.strip().lower()
        for item in self.search_listings(asset, fiat, trade_type, deadline=deadline):
            listing = self._parse_listing(item)
            if listing and listing.merchant.lower() == wanted:
                return listing
        return None

    def get_market_reference(
        self,
        asset: str,
        fiat: str,
        trade_type: TradeType,
        exclude_ads: Iterable[str] = (),
        deadline: CycleDeadline | None = None,
    ) -> float | None:
        """Median of the top-N listing prices, ignoring the caller's own ads."""
        excluded = set(exclude_ads)
        prices: list[float] = []
        for item in self.search_listings(asset, fiat, trade_type, deadline=deadline):
            listing = self._parse_listing(item)
            if listing is None or listing.ad_number in excluded or listing.price <= 0:
                continue
            prices.append(listing.price)
            if len(prices) >= settings.market_reference_top_n:
                break
        if not prices:
            return None
        return float(statistics.median(prices))

    def search_listings(
        self,
        asset: str,
        fiat: str,
        trade_type: TradeType,
        deadline: CycleDeadline | None = None,
    ) -> list[dict]:
        side = self.search_side(trade_type)
        key = (asset.upper(), fiat.upper(), side)
        with self._cache_lock:
            cached = self._search_cache.get(key)
            if cached and (time.monotonic() - cached[0]) < settings.venue_search_cache_seconds:
                return cached[1]

        rows: list[dict] = []
        page_size = settings.venue_search_rows_per_page
        for page in range(1, settings.venue_search_max_pages + 1):
            payload = {
                "asset": key[0],
                "fiat": key[1],
                "tradeType": side,
                "page": page,
                "rows": page_size,
                "publisherType": None,
                "payTypes": [],
            }
            body = self._call_with_retry(self._post_json, settings.venue_search_url, payload, deadline=deadline)
            items = body.get("data") or []
            rows.extend(item for item in items if isinstance(item, dict))
            if len(items) < page_size:
                break

        with self._cache_lock:
            self._search_cache[key] = (time.monotonic(), rows)
        return rows

    @staticmethod
    def search_side(trade_type: TradeType) -> str:
        # A BUY ad competes with other buyers, listed on the venue's SELL page.
        return "SELL" if trade_type == TradeType.BUY else "BUY"

    # ── Updates ──────────────────────────────────────────────────

    def set_ad_price(
        self,
        ad_number: str,
        price: float | None = None,
        ratio: float | None = None,
        deadline: CycleDeadline | None = None,
    ) -> dict:
        if (price is None) == (ratio is None):
            raise ValueError("Exactly one of price or ratio must be given")

        ad_data: dict[str, Any] = {"advNo": ad_number}
        if price is not None:
            ad_data.update(price=price, priceType=1)
        else:
            ad_data.update(priceFloatingRatio=ratio, priceType=2)

        if settings.venue_mode != "live":
            logger.info("[dry-run] would update ad {} with {}", ad_number, ad_data)
            return {"success": True, "dry_run": True}

        body = self._call_with_retry(
            self._post_json,
            settings.venue_update_url,
            {"action": "updateAd", "adData": ad_data},
            deadline=deadline,
            headers={"Authorization": f"Bearer {settings.venue_api_key}"},
        )
        if not body.get("success", False):
            message = str(body.get("error") or body.get("message") or "Update failed")
            raise VenueError(f"Ad {ad_number} update rejected: {message}", kind=self._classify_error(message))
        return body

    # ── Internals ────────────────────────────────────────────────

    def _post_json(self, url: str, payload: dict, timeout: float, headers: dict | None = None) -> dict:
        try:
            response = self.session.post(url, json=payload, headers=headers, timeout=timeout)
        except requests.RequestException as exc:
            raise VenueError(f"Venue request failed: {exc}", kind=ErrorKind.TRANSIENT) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise VenueError(f"Venue returned HTTP {response.status_code}", kind=ErrorKind.TRANSIENT)
        if response.status_code >= 400:
            raise VenueError(
                f"Venue returned HTTP {response.status_code}: {response.text[:200]}",
                kind=self._classify_error(f"{response.status_code} {response.text}"),
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise VenueError("Venue returned a non-JSON body", kind=ErrorKind.TRANSIENT) from exc
        return body if isinstance(body, dict) else {"data": body}

    def _call_with_retry(
        self,
        func: Callable[..., dict],
        *args: Any,
        deadline: CycleDeadline | None = None,
        **kwargs: Any,
    ) -> dict:
        last_exc: VenueError | None = None

        for attempt in range(1, settings.venue_max_retries + 1):
            timeout = settings.venue_request_timeout_seconds
            if deadline is not None:
                deadline.check("venue call")
                timeout = deadline.request_timeout(timeout)
            try:
                return func(*args, timeout=timeout, **kwargs)
            except VenueError as exc:
                last_exc = exc
                logger.warning(
                    "Venue call failed [{}] attempt {}/{}: {}",
                    exc.kind.value,
                    attempt,
                    settings.venue_max_retries,
                    exc,
                )
                if not exc.retryable or attempt >= settings.venue_max_retries:
                    break

                delay = settings.venue_retry_base_delay_seconds * (2 ** (attempt - 1))
                if deadline is not None:
                    delay = min(delay, deadline.remaining())
                time.sleep(delay)

        assert last_exc is not None
        raise last_exc

    @staticmethod
    def _classify_error(text: str) -> ErrorKind:
        if _REST_PATTERN.search(text):
            return ErrorKind.VENUE_REST
        if _TRANSIENT_PATTERN.search(text):
            return ErrorKind.TRANSIENT
        return ErrorKind.VENUE_REJECTED

    @staticmethod
    def _parse_listing(item: dict) -> Listing | None:
        adv = item.get("adv") or {}
        advertiser = item.get("advertiser") or {}
        nickname = advertiser.get("nickName")
        if not nickname:
            return None
        try:
            price = float(adv.get("price") or 0.0)
        except (TypeError, ValueError):
            return None
        if "isOnline" in advertiser:
            online = bool(advertiser["isOnline"])
        else:
            online = advertiser.get("userType") == "merchant"
        return Listing(merchant=str(nickname), price=price, online=online, ad_number=str(adv.get("advNo") or ""))
