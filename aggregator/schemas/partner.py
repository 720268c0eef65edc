from pydantic import BaseModel, ConfigDict


class PartnerAmount(BaseModel):
    amount: float | None = None
    currency: str | None = None


class PartnerRateTotal(BaseModel):
    amount: float | None = None
    currency: str | None = None


class PartnerRetailRate(BaseModel):
    total: list[PartnerRateTotal] = []
    taxesAndFees: list[PartnerRateTotal] | None = None


class PartnerCancellationPolicies(BaseModel):
    refundableTag: str | None = None


class PartnerRate(BaseModel):
    model_config = ConfigDict(extra="allow")

    rateId: str | None = None
    name: str | None = None
    retailRate: PartnerRetailRate | None = None
    cancellationPolicies: PartnerCancellationPolicies | None = None


class PartnerRoomType(BaseModel):
    model_config = ConfigDict(extra="allow")

    roomTypeId: str | None = None
    offerId: str | None = None
    rates: list[PartnerRate] = []
    offerRetailRate: PartnerAmount | None = None


class PartnerHotelRates(BaseModel):
    hotelId: str
    roomTypes: list[PartnerRoomType] = []

    def min_rate(self) -> PartnerAmount | None:
        """Cheapest positive offer across room types."""
        offers = [
            rt.offerRetailRate
            for rt in self.roomTypes
            if rt.offerRetailRate and rt.offerRetailRate.amount and rt.offerRetailRate.amount > 0
        ]
        if not offers:
            return None
        return min(offers, key=lambda o: o.amount)


class PartnerRatesResponse(BaseModel):
    data: list[PartnerHotelRates] = []
