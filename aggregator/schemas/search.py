from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from aggregator.exceptions.custom import InvalidQuery
from aggregator.schemas.listing import Listing, ListingSource

MAX_PAGE_SIZE = 50


class SortKey(StrEnum):
    price = "price"
    rating = "rating"
    popularity = "popularity"
    none = "none"


class SortOrder(StrEnum):
    asc = "asc"
    desc = "desc"


class SearchQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    destination: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    radius_km: float | None = Field(default=None, gt=0)

    check_in: date | None = None
    check_out: date | None = None

    adults: int = Field(default=2, ge=1)
    children: int = Field(default=0, ge=0)

    min_price: float | None = Field(default=None, ge=0)
    max_price: float | None = Field(default=None, ge=0)
    min_bedrooms: int | None = Field(default=None, ge=0)
    min_bathrooms: int | None = Field(default=None, ge=0)
    amenities: frozenset[str] = frozenset()
    property_types: frozenset[str] = frozenset()
    instant_bookable_only: bool = False
    min_rating: float | None = Field(default=None, ge=0, le=5)

    include_local: bool = True
    include_partner: bool = True

    sort_by: SortKey = SortKey.none
    sort_order: SortOrder = SortOrder.asc

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=MAX_PAGE_SIZE)

    request_id: str | None = None

    @field_validator("sort_by", mode="before")
    @classmethod
    def _unknown_sort_keeps_merge_order(cls, value: Any) -> Any:
        if value is None:
            return SortKey.none
        if isinstance(value, str) and not isinstance(value, SortKey):
            key = value.strip().lower()
            return key if key in SortKey.__members__ else SortKey.none
        return value

    @model_validator(mode="after")
    def _check_ranges(self) -> SearchQuery:
        if (self.check_in is None) != (self.check_out is None):
            raise ValueError("check_in and check_out must be provided together")
        if self.check_in and self.check_out and self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        if (
            self.min_price is not None
            and self.max_price is not None
            and self.min_price > self.max_price
        ):
            raise ValueError("min_price must not exceed max_price")
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be provided together")
        return self

    @property
    def guests(self) -> int:
        return self.adults + self.children

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


def parse_search_query(data: dict[str, Any]) -> SearchQuery:
    """Build a SearchQuery, converting validation failures to InvalidQuery."""
    try:
        return SearchQuery(**data)
    except ValidationError as exc:
        raise InvalidQuery(_describe(exc)) from exc


class SourceError(BaseModel):
    source: ListingSource
    error: str
    message: str


class AggregatedResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    search_id: str
    listings: tuple[Listing, ...] = ()
    local_count: int = 0
    partner_count: int = 0
    errors: tuple[SourceError, ...] = ()
    created_at: datetime

    @property
    def total_count(self) -> int:
        return len(self.listings)


class SearchResponse(BaseModel):
    listings: list[Listing]
    total_count: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    per_source_counts: dict[str, int]
    search_id: str
    search_time_ms: int
    cached: bool = False
    errors: list[SourceError] = []


class SearchRequest(BaseModel):
    """Loose request body; validated into a SearchQuery by the router."""

    destination: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    radius_km: float | None = None
    check_in: date | None = None
    check_out: date | None = None
    adults: int = 2
    children: int = 0
    min_price: float | None = None
    max_price: float | None = None
    min_bedrooms: int | None = None
    min_bathrooms: int | None = None
    amenities: list[str] = []
    property_types: list[str] = []
    instant_bookable_only: bool = False
    min_rating: float | None = None
    include_local: bool = True
    include_partner: bool = True
    sort_by: str | None = "none"
    sort_order: str = "asc"
    page: int = 1
    page_size: int | None = None
    request_id: str | None = None

    def to_query(self, default_page_size: int = 20) -> SearchQuery:
        data = self.model_dump()
        if data["page_size"] is None:
            data["page_size"] = default_page_size
        return parse_search_query(data)


class InventoryFilters(BaseModel):
    """Filters pushed down to an inventory source."""

    model_config = ConfigDict(frozen=True)

    destination: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    radius_km: float | None = None
    check_in: date | None = None
    check_out: date | None = None
    guests: int = 1
    min_price: float | None = None
    max_price: float | None = None
    min_bedrooms: int | None = None
    min_bathrooms: int | None = None
    amenities: frozenset[str] = frozenset()
    property_types: frozenset[str] = frozenset()
    instant_bookable_only: bool = False
    min_rating: float | None = None
    limit: int | None = None
