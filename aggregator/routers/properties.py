from datetime import date

from fastapi import APIRouter

from aggregator.dependencies import EngineDep
from aggregator.schemas.listing import Listing, RateQuote

router = APIRouter(prefix="/properties")


@router.get("/{listing_id}", response_model=Listing)
async def get_property(listing_id: str, engine: EngineDep) -> Listing:
    return await engine.get_detail(listing_id)


@router.get("/{listing_id}/availability", response_model=list[RateQuote])
async def get_availability(
    listing_id: str,
    check_in: date,
    check_out: date,
    engine: EngineDep,
    adults: int = 2,
    children: int = 0,
) -> list[RateQuote]:
    return await engine.get_availability(listing_id, check_in, check_out, adults, children)
