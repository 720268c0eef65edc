import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum

from pydantic import BaseModel, Field

from aggregator.schemas.listing import Listing, ListingSource
from aggregator.schemas.search import SearchQuery

logger = logging.getLogger(__name__)


class DemandLevel(StrEnum):
    low = "low"
    medium = "medium"
    high = "high"


DEMAND_FACTORS = {
    DemandLevel.low: Decimal("0.9"),
    DemandLevel.medium: Decimal("1.0"),
    DemandLevel.high: Decimal("1.2"),
}
PEAK_SEASON_FACTOR = Decimal("1.15")
QUALITY_FACTOR = Decimal("1.05")
QUALITY_RATING_THRESHOLD = 4.5
COMPETITION_WEIGHT = Decimal("0.1")

# ISO 4217 minor units for currencies that don't use 2 decimals
_MINOR_UNITS = {
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0, "KMF": 0,
    "KRW": 0, "PYG": 0, "RWF": 0, "UGX": 0, "VND": 0, "VUV": 0, "XAF": 0,
    "XOF": 0, "XPF": 0,
    "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
}


def minor_units(currency: str) -> int:
    return _MINOR_UNITS.get(currency.upper(), 2)


def round_to_currency(amount: Decimal, currency: str) -> Decimal:
    exponent = Decimal(1).scaleb(-minor_units(currency))
    return amount.quantize(exponent, rounding=ROUND_HALF_UP)


class MarketSignals(BaseModel):
    demand: DemandLevel = DemandLevel.medium
    peak_season: bool = False
    competition: float = Field(default=0.0, ge=0, le=1)


def compute_markup(base_markup: Decimal, signals: MarketSignals, rating: float) -> Decimal:
    """Dynamic markup percentage, rounded to 2 decimals."""
    markup = base_markup * DEMAND_FACTORS[signals.demand]
    if signals.peak_season:
        markup *= PEAK_SEASON_FACTOR
    markup *= Decimal(1) - Decimal(str(signals.competition)) * COMPETITION_WEIGHT
    if rating > QUALITY_RATING_THRESHOLD:
        markup *= QUALITY_FACTOR
    return markup.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class PricingAdjuster:
    """Presentation-time price adjustment for partner listings.

    Returned listings are copies; the canonical cached Listing is never touched.
    """

    def __init__(
        self,
        base_markup: Decimal = Decimal("15"),
        demand: DemandLevel = DemandLevel.medium,
        competition: float = 0.3,
        peak_months: frozenset[int] = frozenset({12, 1, 2, 7}),
    ):
        self._base_markup = base_markup
        self._demand = demand
        self._competition = competition
        self._peak_months = peak_months

    def signals_for(self, query: SearchQuery | None = None, today: date | None = None) -> MarketSignals:
        reference = query.check_in if query and query.check_in else (today or date.today())
        return MarketSignals(
            demand=self._demand,
            peak_season=reference.month in self._peak_months,
            competition=self._competition,
        )

    def markup_for(self, listing: Listing, signals: MarketSignals) -> Decimal:
        base = listing.partner_markup if listing.partner_markup is not None else self._base_markup
        return compute_markup(base, signals, listing.rating)

    def display_price(self, listing: Listing, signals: MarketSignals) -> Decimal:
        if listing.source != ListingSource.partner:
            return listing.base_price_per_night
        markup = self.markup_for(listing, signals)
        price = listing.base_price_per_night * (Decimal(1) + markup / Decimal(100))
        return round_to_currency(price, listing.currency)

    def adjust(self, listing: Listing, signals: MarketSignals) -> Listing:
        if listing.source != ListingSource.partner:
            return listing.model_copy(update={"display_price_per_night": listing.base_price_per_night})
        markup = self.markup_for(listing, signals)
        return listing.model_copy(update={
            "display_price_per_night": self.display_price(listing, signals),
            "applied_markup": markup,
        })

    def adjust_all(self, listings: list[Listing], signals: MarketSignals) -> list[Listing]:
        return [self.adjust(listing, signals) for listing in listings]
