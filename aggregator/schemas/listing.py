from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ListingSource(StrEnum):
    local = "local"
    partner = "partner"


def source_of(listing_id: str) -> ListingSource | None:
    """Return the source encoded in a listing id prefix, or None."""
    prefix, sep, rest = listing_id.partition("_")
    if not sep or not rest:
        return None
    try:
        return ListingSource(prefix)
    except ValueError:
        return None


def make_listing_id(source: ListingSource, external_id: str) -> str:
    return f"{source.value}_{external_id}"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class Coordinates(_Frozen):
    lat: float = 0.0
    lng: float = 0.0


class Location(_Frozen):
    address: str = ""
    city: str = ""
    state: str = ""
    country: str = "BR"
    zip_code: str = ""
    coordinates: Coordinates | None = None


class ListingImage(_Frozen):
    url: str
    alt: str = ""
    order: int = 0
    is_main: bool = False


class CancellationRule(_Frozen):
    before_hours: int = Field(ge=0)
    refund_percentage: int = Field(ge=0, le=100)


class FlexiblePolicy(_Frozen):
    type: Literal["flexible"] = "flexible"
    description: str = "Full refund up to 24 hours before check-in"
    rules: tuple[CancellationRule, ...] = (
        CancellationRule(before_hours=24, refund_percentage=100),
    )


class ModeratePolicy(_Frozen):
    type: Literal["moderate"] = "moderate"
    description: str = "Full refund up to 5 days before check-in"
    rules: tuple[CancellationRule, ...] = (
        CancellationRule(before_hours=120, refund_percentage=100),
        CancellationRule(before_hours=24, refund_percentage=50),
    )


class StrictPolicy(_Frozen):
    type: Literal["strict"] = "strict"
    description: str = "50% refund up to 7 days before check-in"
    rules: tuple[CancellationRule, ...] = (
        CancellationRule(before_hours=168, refund_percentage=50),
    )


CancellationPolicy = Annotated[
    FlexiblePolicy | ModeratePolicy | StrictPolicy,
    Field(discriminator="type"),
]


class Listing(_Frozen):
    id: str
    source: ListingSource
    external_id: str
    name: str
    description: str = ""
    property_type: str = "hotel"
    location: Location = Location()
    accommodates: int = Field(default=2, ge=1)
    bedrooms: int = Field(default=1, ge=0)
    bathrooms: int = Field(default=1, ge=0)
    beds: int = Field(default=1, ge=0)
    base_price_per_night: Decimal = Field(ge=0)
    currency: str = "BRL"
    rating: float = Field(default=0.0, ge=0, le=5)
    review_count: int = Field(default=0, ge=0)
    amenities: frozenset[str] = frozenset()
    instant_bookable: bool = False
    images: tuple[ListingImage, ...] = ()
    cancellation_policy: CancellationPolicy = ModeratePolicy()
    partner_markup: Decimal | None = None

    # Presentation-time only; never set on cached values
    display_price_per_night: Decimal | None = None
    applied_markup: Decimal | None = None

    @model_validator(mode="after")
    def _id_matches_source(self) -> Listing:
        if source_of(self.id) is not self.source:
            raise ValueError(f"listing id {self.id!r} does not belong to source {self.source}")
        return self


class RateQuote(_Frozen):
    listing_id: str
    source: ListingSource
    check_in: date
    check_out: date
    available: bool = True
    base_price: Decimal
    taxes: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    total_price: Decimal
    currency: str = "BRL"
    rate_id: str
    rate_type: Literal["standard", "non_refundable"] = "standard"
    description: str | None = None
    minimum_stay: int = 1
    free_cancellation_until: datetime | None = None
