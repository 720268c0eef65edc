import json
import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from aggregator.exceptions.custom import NotFound, SourceUnavailable
from aggregator.mappers.cancellation import is_refundable
from aggregator.mappers.filters import build_inventory_filters, listing_matches
from aggregator.schemas.listing import Listing, ListingSource, RateQuote
from aggregator.schemas.search import InventoryFilters, SearchQuery

logger = logging.getLogger(__name__)

LOCAL_TAX_RATE = Decimal("0.05")
BLOCKING_STATUSES = frozenset({"confirmed", "in_progress"})


def _free_cancellation_until(listing: Listing, check_in: date) -> datetime | None:
    full_refund = [r.before_hours for r in listing.cancellation_policy.rules if r.refund_percentage > 50]
    if not full_refund:
        return None
    start = datetime.combine(check_in, time.min, tzinfo=timezone.utc)
    return start - timedelta(hours=min(full_refund))


class StoredBooking(BaseModel):
    listing_id: str
    check_in: date
    check_out: date
    status: str = "confirmed"

    def overlaps(self, check_in: date, check_out: date) -> bool:
        return self.check_in < check_out and check_in < self.check_out


class InventoryStore(Protocol):
    """First-party inventory storage, consumed as an external collaborator."""

    async def search(self, filters: InventoryFilters) -> list[Listing]: ...

    async def get_by_id(self, listing_id: str) -> Listing | None: ...

    async def get_availability(
        self, listing_id: str, check_in: date, check_out: date, guests: int
    ) -> list[RateQuote]: ...


class InMemoryInventoryStore:
    """Inventory store held in memory, optionally seeded from a JSON file."""

    def __init__(
        self,
        listings: list[Listing] | None = None,
        bookings: list[StoredBooking] | None = None,
    ) -> None:
        self._listings: dict[str, Listing] = {l.id: l for l in listings or []}
        self._bookings = list(bookings or [])

    @classmethod
    def from_file(cls, path: str) -> "InMemoryInventoryStore":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        listings = [Listing(**item) for item in data.get("listings", [])]
        bookings = [StoredBooking(**item) for item in data.get("bookings", [])]
        logger.info("Loaded %d local listings and %d bookings from %s", len(listings), len(bookings), path)
        return cls(listings, bookings)

    def add_listing(self, listing: Listing) -> None:
        self._listings[listing.id] = listing

    def add_booking(self, booking: StoredBooking) -> None:
        self._bookings.append(booking)

    def _is_booked(self, listing_id: str, check_in: date, check_out: date) -> bool:
        return any(
            b.listing_id == listing_id
            and b.status.lower() in BLOCKING_STATUSES
            and b.overlaps(check_in, check_out)
            for b in self._bookings
        )

    async def search(self, filters: InventoryFilters) -> list[Listing]:
        results = [l for l in self._listings.values() if listing_matches(l, filters)]
        if filters.check_in and filters.check_out:
            results = [
                l for l in results
                if not self._is_booked(l.id, filters.check_in, filters.check_out)
            ]
        if filters.limit is not None:
            results = results[: filters.limit]
        return results

    async def get_by_id(self, listing_id: str) -> Listing | None:
        return self._listings.get(listing_id)

    async def get_availability(
        self, listing_id: str, check_in: date, check_out: date, guests: int
    ) -> list[RateQuote]:
        listing = self._listings.get(listing_id)
        if listing is None:
            return []

        nights = (check_out - check_in).days
        subtotal = listing.base_price_per_night * nights
        taxes = (subtotal * LOCAL_TAX_RATE).quantize(Decimal("0.01"))
        refundable = is_refundable(listing.cancellation_policy, check_in)
        available = (
            guests <= listing.accommodates
            and not self._is_booked(listing_id, check_in, check_out)
        )
        return [RateQuote(
            listing_id=listing_id,
            source=ListingSource.local,
            check_in=check_in,
            check_out=check_out,
            available=available,
            base_price=listing.base_price_per_night,
            taxes=taxes,
            total_price=subtotal + taxes,
            currency=listing.currency,
            rate_id=f"local_rate_{listing.external_id}_{check_in.isoformat()}_{check_out.isoformat()}",
            rate_type="standard" if refundable else "non_refundable",
            description=listing.cancellation_policy.description,
            free_cancellation_until=_free_cancellation_until(listing, check_in) if refundable else None,
        )]


class LocalInventoryAdapter:
    source = ListingSource.local

    def __init__(self, store: InventoryStore):
        self._store = store

    async def search(self, query: SearchQuery) -> list[Listing]:
        filters = build_inventory_filters(query)
        try:
            listings = await self._store.search(filters)
        except Exception as exc:
            raise SourceUnavailable(self.source, f"inventory store error: {exc}") from exc
        logger.info("Local inventory returned %d listings", len(listings))
        return listings

    async def get_detail(self, listing_id: str) -> Listing:
        try:
            listing = await self._store.get_by_id(listing_id)
        except Exception as exc:
            raise SourceUnavailable(self.source, f"inventory store error: {exc}") from exc
        if listing is None:
            raise NotFound(listing_id)
        return listing

    async def get_availability(
        self,
        listing_id: str,
        check_in: date,
        check_out: date,
        adults: int = 2,
        children: int = 0,
    ) -> list[RateQuote]:
        await self.get_detail(listing_id)
        try:
            return await self._store.get_availability(listing_id, check_in, check_out, adults + children)
        except Exception as exc:
            raise SourceUnavailable(self.source, f"inventory store error: {exc}") from exc

    async def ping(self) -> bool:
        try:
            await self._store.get_by_id("local_healthcheck")
            return True
        except Exception:
            return False
