from collections.abc import Callable, Sequence
from decimal import Decimal

from aggregator.schemas.listing import Listing
from aggregator.schemas.search import SortKey, SortOrder


def _base_price(listing: Listing) -> Decimal:
    return listing.base_price_per_night


def sort_listings(
    listings: Sequence[Listing],
    sort_by: SortKey,
    sort_order: SortOrder = SortOrder.asc,
    price_of: Callable[[Listing], Decimal] = _base_price,
) -> list[Listing]:
    """Globally order a merged result set.

    Ties are always broken by ascending id so repeated calls page identically.
    SortKey.none keeps merge order untouched.
    """
    if sort_by == SortKey.none:
        return list(listings)

    if sort_by == SortKey.price:
        value = price_of
    elif sort_by == SortKey.rating:
        value = lambda l: l.rating  # noqa: E731
    else:
        value = lambda l: l.review_count  # noqa: E731

    if sort_order == SortOrder.desc:
        return sorted(listings, key=lambda l: (-value(l), l.id))
    return sorted(listings, key=lambda l: (value(l), l.id))


def page_bounds(page: int, page_size: int) -> tuple[int, int]:
    start = (page - 1) * page_size
    return start, start + page_size


def paginate(listings: Sequence[Listing], page: int, page_size: int) -> tuple[list[Listing], bool]:
    """Slice one page out of the full set; returns (page, has_next)."""
    start, end = page_bounds(page, page_size)
    return list(listings[start:end]), end < len(listings)


def total_pages(total: int, page_size: int) -> int:
    return -(-total // page_size)
