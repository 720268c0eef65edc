import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import date, timedelta
from typing import Any

import httpx
from pydantic import ValidationError

from aggregator.exceptions.custom import NotFound, RateLimited, SourceUnavailable
from aggregator.mappers.destination import city_state_code, normalize_city_name
from aggregator.mappers.filters import build_inventory_filters, listing_matches
from aggregator.mappers.partner_mapper import DEFAULT_CURRENCY, map_partner_hotel, map_partner_rates
from aggregator.schemas.listing import Listing, ListingSource, RateQuote
from aggregator.schemas.partner import PartnerAmount, PartnerRatesResponse
from aggregator.schemas.search import SearchQuery

logger = logging.getLogger(__name__)

RATES_PATH = "/hotels/rates"
HOTEL_PATH = "/data/hotel"
HEALTH_PATH = "/health"

GUEST_NATIONALITY = "BR"
DEFAULT_COUNTRY_CODE = "BR"
DEFAULT_CHILD_AGE = 10
SEARCH_RADIUS_KM = 10
# Provider hard limit per rate request
PROVIDER_MAX_LIMIT = 200
# Default search deadline relative to the per-call timeout
SEARCH_DEADLINE_FACTOR = 1.2


def _stay_dates(check_in: date | None, check_out: date | None) -> tuple[date, date]:
    if check_in and check_out:
        return check_in, check_out
    tomorrow = date.today() + timedelta(days=1)
    return tomorrow, tomorrow + timedelta(days=1)


def _occupancies(adults: int, children: int) -> list[dict]:
    return [{"adults": adults, "children": [DEFAULT_CHILD_AGE] * children}]


class PartnerInventoryAdapter:
    """Client for the third-party lodging provider (rates search + hotel detail)."""

    source = ListingSource.partner

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        max_retries: int = 2,
        backoff_base: float = 1.0,
        detail_concurrency: int = 5,
        result_cap: int = 50,
        search_deadline: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "X-API-Key": api_key,
            "Content-Type": "application/json",
            "User-Agent": "HospedeFacil/1.0",
        }
        self._timeout = timeout
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._detail_concurrency = detail_concurrency
        self._result_cap = min(result_cap, PROVIDER_MAX_LIMIT)
        self._search_deadline = search_deadline or timeout * SEARCH_DEADLINE_FACTOR
        self._sleep = sleep

    async def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> dict:
        """Send a request, retrying rate-limited responses with exponential backoff."""
        url = f"{self._base_url}{path}"
        attempt = 0
        while True:
            try:
                resp = await self._client.request(
                    method, url, params=params, json=json,
                    headers=self._headers, timeout=self._timeout,
                )
            except httpx.TimeoutException as exc:
                raise SourceUnavailable(self.source, f"timeout calling {path}") from exc
            except httpx.HTTPError as exc:
                raise SourceUnavailable(self.source, f"transport error calling {path}: {exc}") from exc

            if resp.status_code == 429:
                if attempt >= self._max_retries:
                    raise RateLimited(self.source, attempts=attempt + 1)
                delay = self._backoff_base * 2 ** attempt
                logger.warning(
                    "Partner rate limited on %s, retrying in %.1fs (%d/%d)",
                    path, delay, attempt + 1, self._max_retries,
                )
                await self._sleep(delay)
                attempt += 1
                continue

            if resp.status_code >= 400:
                raise SourceUnavailable(
                    self.source,
                    f"HTTP {resp.status_code} from {path}",
                    status_code=resp.status_code,
                )

            try:
                return resp.json()
            except ValueError as exc:
                raise SourceUnavailable(self.source, f"invalid JSON from {path}") from exc

    def _search_body(self, query: SearchQuery) -> dict:
        check_in, check_out = _stay_dates(query.check_in, query.check_out)
        body: dict[str, Any] = {
            "checkin": check_in.isoformat(),
            "checkout": check_out.isoformat(),
            "currency": DEFAULT_CURRENCY,
            "guestNationality": GUEST_NATIONALITY,
            "occupancies": _occupancies(query.adults, query.children),
            "limit": self._result_cap,
        }
        if query.destination:
            body["cityName"] = normalize_city_name(query.destination)
            body["countryCode"] = DEFAULT_COUNTRY_CODE
            state = city_state_code(query.destination)
            if state:
                body["stateCode"] = state
        if query.has_coordinates:
            body["latitude"] = query.latitude
            body["longitude"] = query.longitude
            body["radius"] = query.radius_km or SEARCH_RADIUS_KM
        return body

    async def _fetch_hotel(self, hotel_id: str) -> dict:
        payload = await self._request("GET", HOTEL_PATH, params={"hotelId": hotel_id})
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise SourceUnavailable(self.source, f"no detail payload for hotel {hotel_id}")
        return data

    def _parse_rates(self, payload: Any) -> PartnerRatesResponse:
        try:
            return PartnerRatesResponse.model_validate(payload)
        except ValidationError as exc:
            raise SourceUnavailable(self.source, f"malformed rates payload: {exc}") from exc

    async def search(self, query: SearchQuery) -> list[Listing]:
        """Rate search, then hotel details for each candidate.

        Detail calls share one deadline, kept inside the engine's per-source
        timeout; whatever has not finished by then is cancelled and dropped.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._search_deadline

        payload = await self._request("POST", RATES_PATH, json=self._search_body(query))
        rates = self._parse_rates(payload)
        hotels = [h for h in rates.data if h.roomTypes][: self._result_cap]
        logger.info("Partner rates returned %d hotels", len(hotels))
        if not hotels:
            return []

        semaphore = asyncio.Semaphore(self._detail_concurrency)

        async def _detail(hotel_id: str, rate: PartnerAmount | None) -> Listing:
            async with semaphore:
                raw = await asyncio.wait_for(self._fetch_hotel(hotel_id), self._timeout)
            return map_partner_hotel(raw, hotel_id=hotel_id, rate=rate)

        tasks = [asyncio.create_task(_detail(h.hotelId, h.min_rate())) for h in hotels]
        try:
            _, pending = await asyncio.wait(tasks, timeout=max(deadline - loop.time(), 0))
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        if pending:
            logger.warning("Partner search deadline hit, cancelling %d detail calls", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

        filters = build_inventory_filters(query)
        listings: list[Listing] = []
        for hotel, task in zip(hotels, tasks):
            if task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                logger.warning("Dropping partner hotel %s, detail failed: %r", hotel.hotelId, error)
                continue
            listing = task.result()
            # Provider filtering is coarse; re-apply everything except destination
            if listing_matches(listing, filters, check_destination=False):
                listings.append(listing)
        logger.info("Partner search yielded %d listings", len(listings))
        return listings

    async def get_detail(self, listing_id: str) -> Listing:
        external_id = listing_id.partition("_")[2]
        try:
            raw = await self._fetch_hotel(external_id)
        except SourceUnavailable as exc:
            if exc.status_code == 404:
                raise NotFound(listing_id) from exc
            raise
        try:
            return map_partner_hotel(raw, hotel_id=external_id)
        except (ValueError, TypeError) as exc:
            raise SourceUnavailable(self.source, f"malformed hotel record {external_id}: {exc}") from exc

    async def get_availability(
        self,
        listing_id: str,
        check_in: date,
        check_out: date,
        adults: int = 2,
        children: int = 0,
    ) -> list[RateQuote]:
        external_id = listing_id.partition("_")[2]
        body = {
            "hotelIds": [external_id],
            "checkin": check_in.isoformat(),
            "checkout": check_out.isoformat(),
            "currency": DEFAULT_CURRENCY,
            "guestNationality": GUEST_NATIONALITY,
            "occupancies": _occupancies(adults, children),
        }
        payload = await self._request("POST", RATES_PATH, json=body)
        rates = self._parse_rates(payload)
        try:
            return map_partner_rates(listing_id, rates, check_in, check_out)
        except (ValueError, TypeError) as exc:
            raise SourceUnavailable(self.source, f"malformed rates for {listing_id}: {exc}") from exc

    async def ping(self) -> bool:
        try:
            await self._request("GET", HEALTH_PATH)
            return True
        except SourceUnavailable as exc:
            logger.warning("Partner health check failed: %s", exc)
            return False
