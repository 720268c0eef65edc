"""Raw partner provider records → canonical Listing / RateQuote values.

The provider schema is loose: fields go missing and the same concept shows up
under several names. Every field has a default so a sparse record still yields
a Listing instead of being dropped.

Defaults:
  - accommodates: 2 (largest room occupancy otherwise)
  - bedrooms: 1 per room, or king/queen bed count when larger; 1 without rooms
  - bathrooms: ceil(0.8 * bedrooms)
  - beds: total bed quantity, at least 1
  - base price: cheapest offer from the rate search, else 150.00
  - currency: offer currency, else BRL
  - rating / review count: 0
  - coordinates: unknown (None); radius filters never exclude such a listing
  - amenities / images: empty
  - cancellation: moderate
  - markup: 15%
"""

import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from aggregator.schemas.listing import (
    CancellationRule,
    Coordinates,
    FlexiblePolicy,
    Listing,
    ListingImage,
    ListingSource,
    Location,
    ModeratePolicy,
    RateQuote,
    StrictPolicy,
    make_listing_id,
)
from aggregator.schemas.partner import PartnerAmount, PartnerRatesResponse

logger = logging.getLogger(__name__)

DEFAULT_OCCUPANCY = 2
DEFAULT_BEDROOMS = 1
DEFAULT_BASE_PRICE = Decimal("150.00")
DEFAULT_CURRENCY = "BRL"
DEFAULT_COUNTRY = "BR"
DEFAULT_MARKUP = Decimal("15")
BATHROOMS_PER_BEDROOM = 0.8

_PROPERTY_TYPES = {"hotel", "apartment", "house", "resort", "villa", "hostel", "pousada"}
_POLICIES = {
    "flexible": FlexiblePolicy,
    "moderate": ModeratePolicy,
    "strict": StrictPolicy,
}


def _first(raw: dict, *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _bed_entries(room: dict) -> list[dict]:
    beds = _as_list(room.get("bedTypes")) or _as_list(room.get("bed_configurations"))
    return [b for b in beds if isinstance(b, dict)]


def _bed_quantity(bed: dict) -> int:
    qty = _as_int(_first(bed, "quantity", "count"))
    return qty if qty and qty > 0 else 1


def _accommodates(rooms: list[dict]) -> int:
    occupancies = [
        occ
        for occ in (_as_int(_first(r, "maxOccupancy", "max_occupancy")) for r in rooms)
        if occ and occ > 0
    ]
    return max(occupancies, default=DEFAULT_OCCUPANCY)


def _bedrooms(rooms: list[dict]) -> int:
    if not rooms:
        return DEFAULT_BEDROOMS
    total = 0
    for room in rooms:
        large_beds = 0
        for bed in _bed_entries(room):
            bed_type = str(_first(bed, "bedType", "type") or "").lower()
            if "king" in bed_type or "queen" in bed_type:
                large_beds += _bed_quantity(bed)
        total += max(large_beds, 1)
    return total


def _beds(rooms: list[dict]) -> int:
    total = sum(_bed_quantity(bed) for room in rooms for bed in _bed_entries(room))
    return max(total, 1)


def _amenities(raw: dict) -> frozenset[str]:
    facilities = _as_list(raw.get("hotelFacilities")) or _as_list(raw.get("amenities"))
    names: set[str] = set()
    for item in facilities:
        if isinstance(item, str):
            name = item
        elif isinstance(item, dict):
            name = item.get("name") or ""
        else:
            continue
        name = name.strip()
        if name:
            names.add(name)
    return frozenset(names)


def _images(raw: dict, name: str) -> tuple[ListingImage, ...]:
    entries = _as_list(raw.get("hotelImages")) or _as_list(raw.get("images"))
    images: list[ListingImage] = []
    for index, img in enumerate(entries):
        if not isinstance(img, dict):
            continue
        url = _first(img, "url", "urlHd")
        if not url:
            continue
        order = _as_int(img.get("order"))
        images.append(ListingImage(
            url=url,
            alt=_first(img, "caption", "title") or name,
            order=order if order is not None else index,
            is_main=bool(img.get("defaultImage")),
        ))
    if not images:
        main_photo = _first(raw, "main_photo", "thumbnail")
        if main_photo:
            images.append(ListingImage(url=main_photo, alt=name, is_main=True))
    return tuple(images)


def _location(raw: dict) -> Location:
    loc = _as_dict(raw.get("location"))
    lat = _as_float(_first(loc, "latitude")) if loc else None
    lng = _as_float(_first(loc, "longitude")) if loc else None
    if lat is None:
        lat = _as_float(raw.get("latitude"))
    if lng is None:
        lng = _as_float(raw.get("longitude"))
    return Location(
        address=str(raw.get("address") or ""),
        city=str(raw.get("city") or ""),
        state=str(raw.get("state") or ""),
        country=str(_first(raw, "country", "countryCode") or DEFAULT_COUNTRY),
        zip_code=str(_first(raw, "zip", "postal_code") or ""),
        coordinates=Coordinates(lat=lat, lng=lng) if lat is not None and lng is not None else None,
    )


def _cancellation_policy(raw: dict) -> FlexiblePolicy | ModeratePolicy | StrictPolicy:
    cancellation = _as_dict(_as_dict(raw.get("policies")).get("cancellation"))
    policy_cls = _POLICIES.get(str(cancellation.get("type") or "").lower(), ModeratePolicy)

    rules: list[CancellationRule] = []
    for rule in _as_list(cancellation.get("rules")):
        if not isinstance(rule, dict):
            continue
        hours = _as_int(rule.get("hours_before"))
        penalty = _as_int(rule.get("penalty_percentage"))
        if hours is None or hours < 0 or penalty is None:
            continue
        rules.append(CancellationRule(
            before_hours=hours,
            refund_percentage=min(max(100 - penalty, 0), 100),
        ))

    overrides: dict[str, Any] = {}
    if rules:
        overrides["rules"] = tuple(rules)
    if cancellation.get("description"):
        overrides["description"] = str(cancellation["description"])
    return policy_cls(**overrides)


def _rating(raw: dict) -> float:
    rating = _as_float(_first(raw, "starRating", "rating", "star_rating"))
    if rating is None:
        return 0.0
    return min(max(rating, 0.0), 5.0)


def map_partner_hotel(
    raw: dict,
    hotel_id: str | None = None,
    rate: PartnerAmount | None = None,
) -> Listing:
    """Map a partner hotel detail record to a canonical Listing."""
    external_id = str(_first(raw, "id", "hotelId") or hotel_id or "")
    if not external_id:
        raise ValueError("partner record has no hotel id")

    name = str(_first(raw, "name", "hotelName") or f"Hotel {external_id}")
    rooms = [r for r in _as_list(raw.get("rooms")) if isinstance(r, dict)]
    bedrooms = _bedrooms(rooms)

    base_price = DEFAULT_BASE_PRICE
    if rate and rate.amount and rate.amount > 0:
        base_price = _as_decimal(rate.amount) or DEFAULT_BASE_PRICE
    currency = (rate.currency if rate and rate.currency else None) or str(
        raw.get("currency") or DEFAULT_CURRENCY
    )

    property_type = str(raw.get("property_type") or "hotel").lower()
    if property_type not in _PROPERTY_TYPES:
        property_type = "hotel"

    review_count = _as_int(_first(raw, "review_count", "reviewCount")) or 0

    return Listing(
        id=make_listing_id(ListingSource.partner, external_id),
        source=ListingSource.partner,
        external_id=external_id,
        name=name,
        description=str(_first(raw, "hotelDescription", "description") or ""),
        property_type=property_type,
        location=_location(raw),
        accommodates=_accommodates(rooms),
        bedrooms=bedrooms,
        bathrooms=max(math.ceil(bedrooms * BATHROOMS_PER_BEDROOM), 1),
        beds=_beds(rooms),
        base_price_per_night=base_price,
        currency=currency.upper(),
        rating=_rating(raw),
        review_count=max(review_count, 0),
        amenities=_amenities(raw),
        instant_bookable=True,
        images=_images(raw, name),
        cancellation_policy=_cancellation_policy(raw),
        partner_markup=_as_decimal(raw.get("supplierMarkup")) or DEFAULT_MARKUP,
    )


def map_partner_rates(
    listing_id: str,
    response: PartnerRatesResponse,
    check_in: date,
    check_out: date,
) -> list[RateQuote]:
    """Flatten a rate-search response for one hotel into RateQuotes."""
    quotes: list[RateQuote] = []
    for hotel in response.data:
        for rt_index, room_type in enumerate(hotel.roomTypes):
            offer = room_type.offerRetailRate
            for rate_index, rate in enumerate(room_type.rates):
                total_entry = rate.retailRate.total[0] if rate.retailRate and rate.retailRate.total else None
                taxes_entry = (
                    rate.retailRate.taxesAndFees[0]
                    if rate.retailRate and rate.retailRate.taxesAndFees
                    else None
                )
                amount = (total_entry.amount if total_entry else None) or (offer.amount if offer else None)
                if not amount or amount <= 0:
                    logger.debug("Skipping partner rate without price for %s", listing_id)
                    continue
                currency = (
                    (total_entry.currency if total_entry else None)
                    or (offer.currency if offer else None)
                    or DEFAULT_CURRENCY
                )
                refundable = bool(
                    rate.cancellationPolicies and rate.cancellationPolicies.refundableTag == "RFN"
                )
                price = _as_decimal(amount)
                free_until = None
                if refundable:
                    free_until = datetime.combine(check_in, time.min, tzinfo=timezone.utc) - timedelta(hours=24)
                quotes.append(RateQuote(
                    listing_id=listing_id,
                    source=ListingSource.partner,
                    check_in=check_in,
                    check_out=check_out,
                    available=True,
                    base_price=price,
                    taxes=_as_decimal(taxes_entry.amount if taxes_entry else None) or Decimal("0"),
                    total_price=price,
                    currency=currency.upper(),
                    rate_id=rate.rateId or f"{hotel.hotelId}_{rt_index}_{rate_index}",
                    rate_type="standard" if refundable else "non_refundable",
                    description=rate.name,
                    free_cancellation_until=free_until,
                ))
    return quotes
