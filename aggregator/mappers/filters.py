import math

from aggregator.mappers.destination import strip_accents
from aggregator.schemas.listing import Listing
from aggregator.schemas.search import InventoryFilters, SearchQuery

_EARTH_RADIUS_KM = 6371.0
DEFAULT_RADIUS_KM = 50.0


def build_inventory_filters(query: SearchQuery, limit: int | None = None) -> InventoryFilters:
    return InventoryFilters(
        destination=query.destination,
        latitude=query.latitude,
        longitude=query.longitude,
        radius_km=query.radius_km,
        check_in=query.check_in,
        check_out=query.check_out,
        guests=query.guests,
        min_price=query.min_price,
        max_price=query.max_price,
        min_bedrooms=query.min_bedrooms,
        min_bathrooms=query.min_bathrooms,
        amenities=frozenset(a.strip().lower() for a in query.amenities if a.strip()),
        property_types=frozenset(t.strip().lower() for t in query.property_types if t.strip()),
        instant_bookable_only=query.instant_bookable_only,
        min_rating=query.min_rating,
        limit=limit,
    )


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return _EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _fold(text: str) -> str:
    return strip_accents(text).casefold()


def matches_destination(listing: Listing, destination: str) -> bool:
    needle = _fold(destination.strip())
    if not needle:
        return True
    loc = listing.location
    return any(needle in _fold(field) for field in (loc.city, loc.state, listing.name))


def listing_matches(
    listing: Listing,
    filters: InventoryFilters,
    check_destination: bool = True,
) -> bool:
    """Apply every non-date filter to a single listing."""
    if check_destination and filters.destination and not matches_destination(listing, filters.destination):
        return False

    if listing.accommodates < filters.guests:
        return False

    price = float(listing.base_price_per_night)
    if filters.min_price is not None and price < filters.min_price:
        return False
    if filters.max_price is not None and price > filters.max_price:
        return False

    if filters.min_bedrooms is not None and listing.bedrooms < filters.min_bedrooms:
        return False
    if filters.min_bathrooms is not None and listing.bathrooms < filters.min_bathrooms:
        return False

    if filters.amenities:
        available = {a.lower() for a in listing.amenities}
        if not filters.amenities <= available:
            return False

    if filters.property_types and listing.property_type.lower() not in filters.property_types:
        return False

    if filters.instant_bookable_only and not listing.instant_bookable:
        return False

    if filters.min_rating is not None and listing.rating < filters.min_rating:
        return False

    coords = listing.location.coordinates
    # Listings without known coordinates stay in radius searches
    if filters.latitude is not None and filters.longitude is not None and coords is not None:
        distance = haversine_km(filters.latitude, filters.longitude, coords.lat, coords.lng)
        if distance > (filters.radius_km or DEFAULT_RADIUS_KM):
            return False

    return True
