import asyncio
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
import respx
from httpx import Response

from aggregator.cache import CacheClass, MemoryCacheBackend, ResultCache
from aggregator.coalescer import RequestCoalescer
from aggregator.exceptions.custom import AggregationFailed, InvalidQuery, NotFound, SourceUnavailable
from aggregator.mappers.signature import build_query_signature
from aggregator.schemas.listing import ListingSource, RateQuote
from aggregator.schemas.search import SearchQuery, SearchRequest, SortKey, SortOrder
from aggregator.services.aggregation import AggregationEngine
from aggregator.services.local_inventory import LocalInventoryAdapter
from aggregator.services.partner import PartnerInventoryAdapter
from aggregator.services.pricing import PricingAdjuster

TTLS = {CacheClass.search: 600, CacheClass.detail: 3600, CacheClass.availability: 300}


@pytest.fixture
def local():
    adapter = AsyncMock(spec=LocalInventoryAdapter)
    adapter.source = ListingSource.local
    adapter.search.return_value = []
    adapter.ping.return_value = True
    return adapter


@pytest.fixture
def partner():
    adapter = AsyncMock(spec=PartnerInventoryAdapter)
    adapter.source = ListingSource.partner
    adapter.search.return_value = []
    adapter.ping.return_value = True
    return adapter


@pytest.fixture
def pricing():
    # No peak season and no competition: partner markup is exactly 15%
    return PricingAdjuster(base_markup=Decimal("15"), competition=0.0, peak_months=frozenset())


@pytest.fixture
def engine(local, partner, pricing):
    return AggregationEngine(
        local,
        partner,
        ResultCache(MemoryCacheBackend(), TTLS),
        RequestCoalescer(grace_seconds=0),
        pricing,
        adapter_timeout=0.5,
    )


@pytest.fixture
def salvador(make_listing, local, partner):
    local.search.return_value = [
        make_listing(f"s{i}", base_price_per_night=Decimal(200 + i * 10)) for i in range(3)
    ]
    partner.search.return_value = [
        make_listing(f"p{i}", ListingSource.partner, base_price_per_night=Decimal(150 + i * 20))
        for i in range(4)
    ]


@pytest.mark.asyncio
async def test_salvador_first_page(engine, salvador):
    response = await engine.search(SearchQuery(destination="Salvador", page=1, page_size=5))

    assert response.total_count == 7
    assert len(response.listings) == 5
    assert response.has_next is True
    assert response.total_pages == 2
    assert response.per_source_counts == {"local": 3, "partner": 4}
    assert response.total_count == sum(response.per_source_counts.values())
    assert response.errors == []


@pytest.mark.asyncio
async def test_pages_come_from_one_cached_set(engine, salvador, local, partner):
    first = await engine.search(SearchQuery(destination="Salvador", page=1, page_size=5))
    await engine.cache.drain()
    second = await engine.search(SearchQuery(destination="Salvador", page=2, page_size=5))

    assert second.cached is True
    assert second.search_id == first.search_id
    assert len(second.listings) == 2
    assert second.has_next is False
    assert {l.id for l in first.listings}.isdisjoint({l.id for l in second.listings})
    assert len({l.id for l in first.listings + second.listings}) == 7
    local.search.assert_awaited_once()
    partner.search.assert_awaited_once()


@pytest.mark.asyncio
async def test_no_sort_keeps_local_then_partner_order(engine, salvador):
    response = await engine.search(SearchQuery(destination="Salvador", page_size=10))
    assert [l.id for l in response.listings] == [
        "local_s0", "local_s1", "local_s2",
        "partner_p0", "partner_p1", "partner_p2", "partner_p3",
    ]


@pytest.mark.asyncio
async def test_unsupported_sort_key_keeps_merge_order(engine, salvador):
    query = SearchRequest(destination="Salvador", sort_by="relevance", page_size=10).to_query()
    response = await engine.search(query)
    assert [l.id for l in response.listings] == [
        "local_s0", "local_s1", "local_s2",
        "partner_p0", "partner_p1", "partner_p2", "partner_p3",
    ]


@pytest.mark.asyncio
async def test_price_sort_is_ascending_on_displayed_price(engine, salvador):
    query = dict(destination="Salvador", sort_by=SortKey.price, page_size=3)
    pages = [await engine.search(SearchQuery(page=p, **query)) for p in (1, 2, 3)]
    shown = [l for page in pages for l in page.listings]

    prices = [l.display_price_per_night for l in shown]
    assert len(shown) == 7
    assert prices == sorted(prices)
    # partner_p2 has base 190 but is shown at 218.50, after local_s1 at 210
    ids = [l.id for l in shown]
    assert ids.index("local_s1") < ids.index("partner_p2")


@pytest.mark.asyncio
async def test_price_sort_descending(engine, salvador):
    response = await engine.search(
        SearchQuery(destination="Salvador", sort_by=SortKey.price, sort_order=SortOrder.desc, page_size=10)
    )
    prices = [l.display_price_per_night for l in response.listings]
    assert prices == sorted(prices, reverse=True)


@pytest.mark.asyncio
async def test_equal_prices_break_ties_by_id(engine, make_listing, local, partner):
    local.search.return_value = [make_listing(i, base_price_per_night=Decimal("100")) for i in ("c", "a", "b")]

    query = SearchQuery(destination="Recife", sort_by=SortKey.price, include_partner=False, page_size=2)
    first = await engine.search(query)
    second = await engine.search(SearchQuery(page=2, **query.model_dump(exclude={"page"})))

    assert [l.id for l in first.listings + second.listings] == ["local_a", "local_b", "local_c"]


@pytest.mark.asyncio
async def test_markup_only_on_returned_partner_listings(engine, salvador):
    query = SearchQuery(destination="Salvador", page_size=10)
    response = await engine.search(query)

    partner_listing = next(l for l in response.listings if l.source == ListingSource.partner)
    local_listing = next(l for l in response.listings if l.source == ListingSource.local)
    assert partner_listing.applied_markup == Decimal("15.00")
    assert partner_listing.display_price_per_night == (
        partner_listing.base_price_per_night * Decimal("1.15")
    ).quantize(Decimal("0.01"))
    assert local_listing.applied_markup is None
    assert local_listing.display_price_per_night == local_listing.base_price_per_night

    await engine.cache.drain()
    cached = await engine.cache.get(build_query_signature(query), CacheClass.search)
    assert all(l.display_price_per_night is None for l in cached.listings)


@pytest.mark.asyncio
async def test_concurrent_identical_searches_fan_out_once(engine, make_listing, local, partner):
    async def slow_local(query):
        await asyncio.sleep(0.05)
        return [make_listing("1")]

    async def slow_partner(query):
        await asyncio.sleep(0.05)
        return [make_listing("1", ListingSource.partner)]

    local.search.side_effect = slow_local
    partner.search.side_effect = slow_partner

    responses = await asyncio.gather(
        *[engine.search(SearchQuery(destination="Natal", page=1 + i % 2, page_size=1)) for i in range(20)]
    )

    assert local.search.await_count == 1
    assert partner.search.await_count == 1
    assert len({r.search_id for r in responses}) == 1
    assert all(r.total_count == 2 for r in responses)


@pytest.mark.asyncio
async def test_one_source_failing_degrades(engine, make_listing, local, partner):
    local.search.return_value = [make_listing("1"), make_listing("2")]
    partner.search.side_effect = SourceUnavailable("partner", "HTTP 500 from /hotels/rates", status_code=500)

    response = await engine.search(SearchQuery(destination="Salvador"))

    assert response.total_count == 2
    assert response.per_source_counts == {"local": 2, "partner": 0}
    assert len(response.errors) == 1
    assert response.errors[0].source == ListingSource.partner
    assert response.errors[0].error == "SourceUnavailable"


@pytest.mark.asyncio
async def test_slow_source_times_out(engine, make_listing, local, partner):
    async def hang(query):
        await asyncio.sleep(5)

    local.search.return_value = [make_listing("1")]
    partner.search.side_effect = hang

    response = await engine.search(SearchQuery(destination="Salvador"))

    assert [l.id for l in response.listings] == ["local_1"]
    assert response.errors[0].message == "search timed out"


@pytest.mark.asyncio
async def test_unexpected_adapter_exception_is_captured(engine, make_listing, local, partner):
    local.search.side_effect = KeyError("boom")
    partner.search.return_value = [make_listing("1", ListingSource.partner)]

    response = await engine.search(SearchQuery(destination="Salvador"))

    assert response.per_source_counts == {"local": 0, "partner": 1}
    assert response.errors[0].source == ListingSource.local


@pytest.mark.asyncio
async def test_both_failing_raises_and_caches_nothing(engine, local, partner):
    local.search.side_effect = SourceUnavailable("local", "db down")
    partner.search.side_effect = SourceUnavailable("partner", "timeout")

    with pytest.raises(AggregationFailed) as exc_info:
        await engine.search(SearchQuery(destination="Salvador"))

    assert {e.source for e in exc_info.value.errors} == {"local", "partner"}
    await engine.cache.drain()
    assert (await engine.cache.stats()).size == 0


@pytest.mark.asyncio
async def test_only_enabled_sources_are_called(engine, local, partner):
    await engine.search(SearchQuery(destination="Salvador", include_partner=False))
    local.search.assert_awaited_once()
    partner.search.assert_not_awaited()


@pytest.mark.asyncio
async def test_single_enabled_source_failing_raises(engine, local, partner):
    local.search.side_effect = SourceUnavailable("local", "db down")
    with pytest.raises(AggregationFailed):
        await engine.search(SearchQuery(destination="Salvador", include_partner=False))


@pytest.mark.asyncio
async def test_no_sources_is_invalid(engine):
    with pytest.raises(InvalidQuery):
        await engine.search(SearchQuery(include_local=False, include_partner=False))


@pytest.mark.asyncio
async def test_page_past_end_is_empty(engine, salvador):
    response = await engine.search(SearchQuery(destination="Salvador", page=9, page_size=5))
    assert response.listings == []
    assert response.has_next is False
    assert response.total_count == 7


@pytest.mark.asyncio
async def test_page_size_capped_by_engine(local, partner, pricing, salvador):
    engine = AggregationEngine(
        local, partner, ResultCache(MemoryCacheBackend(), TTLS), RequestCoalescer(0), pricing,
        max_page_size=4,
    )
    response = await engine.search(SearchQuery(destination="Salvador", page_size=50))
    assert response.page_size == 4
    assert len(response.listings) == 4


@pytest.mark.asyncio
async def test_get_detail_routes_by_prefix_and_caches(engine, make_listing, local, partner):
    partner.get_detail.return_value = make_listing("h1", ListingSource.partner)

    first = await engine.get_detail("partner_h1")
    await engine.cache.drain()
    second = await engine.get_detail("partner_h1")

    assert first.id == second.id == "partner_h1"
    assert first.display_price_per_night is not None
    partner.get_detail.assert_awaited_once_with("partner_h1")
    local.get_detail.assert_not_awaited()


@pytest.mark.asyncio
async def test_get_detail_unknown_prefix(engine):
    with pytest.raises(NotFound):
        await engine.get_detail("airbnb_1")


@pytest.mark.asyncio
async def test_get_detail_source_down(engine, partner):
    partner.get_detail.side_effect = SourceUnavailable("partner", "HTTP 502", status_code=502)
    with pytest.raises(AggregationFailed):
        await engine.get_detail("partner_h1")


@pytest.mark.asyncio
async def test_get_availability_validates_and_caches(engine, local):
    quote = RateQuote(
        listing_id="local_1",
        source=ListingSource.local,
        check_in=date(2030, 3, 1),
        check_out=date(2030, 3, 3),
        base_price=Decimal("100"),
        total_price=Decimal("210"),
        rate_id="local_rate_1",
    )
    local.get_availability.return_value = [quote]

    with pytest.raises(InvalidQuery):
        await engine.get_availability("local_1", date(2030, 3, 3), date(2030, 3, 1))

    assert await engine.get_availability("local_1", date(2030, 3, 1), date(2030, 3, 3)) == [quote]
    await engine.cache.drain()
    assert await engine.get_availability("local_1", date(2030, 3, 1), date(2030, 3, 3)) == [quote]
    # Different party size is a different cache entry
    await engine.get_availability("local_1", date(2030, 3, 1), date(2030, 3, 3), adults=4)

    assert local.get_availability.await_count == 2


@pytest.mark.asyncio
async def test_health(engine, partner):
    status = await engine.health()
    assert status.status == "healthy"

    partner.ping.return_value = False
    status = await engine.health()
    assert status.status == "degraded"
    assert status.components["partner"] is False
    assert status.cache.backend == "MemoryCacheBackend"


@pytest.mark.asyncio
async def test_warm_up_populates_cache(engine, salvador, local, partner):
    warmed = await engine.warm_up([SearchQuery(destination="Salvador"), SearchQuery(destination="Recife")])
    await engine.cache.drain()

    assert warmed == 2
    response = await engine.search(SearchQuery(destination="Salvador"))
    assert response.cached is True


@pytest.mark.asyncio
async def test_warm_up_reports_failures(engine, local, partner):
    local.search.side_effect = SourceUnavailable("local", "db down")
    partner.search.side_effect = SourceUnavailable("partner", "down")

    assert await engine.warm_up([SearchQuery(destination="Salvador")]) == 0


@pytest.mark.asyncio
async def test_invalidate_searches(engine, salvador, local):
    await engine.search(SearchQuery(destination="Salvador"))
    await engine.cache.drain()

    assert await engine.invalidate_searches() == 1
    await engine.search(SearchQuery(destination="Salvador"))
    assert local.search.await_count == 2


PARTNER_URL = "https://partner.test/v3.0"


def _partner_with_hanging_details(hanging: set[str], **kwargs) -> PartnerInventoryAdapter:
    adapter = PartnerInventoryAdapter(httpx.AsyncClient(), PARTNER_URL, "test-key", max_retries=0, **kwargs)

    async def fetch_hotel(hotel_id):
        if hotel_id in hanging:
            await asyncio.sleep(30)
        return {"id": hotel_id, "name": f"Hotel {hotel_id}", "city": "Salvador"}

    adapter._fetch_hotel = fetch_hotel
    return adapter


def _mock_rates(*hotel_ids: str) -> None:
    respx.post(f"{PARTNER_URL}/hotels/rates").mock(return_value=Response(200, json={
        "data": [
            {"hotelId": h, "roomTypes": [{"offerRetailRate": {"amount": 300, "currency": "BRL"}}]}
            for h in hotel_ids
        ]
    }))


@respx.mock
@pytest.mark.asyncio
async def test_timed_out_detail_calls_drop_only_those_listings(make_listing, local, pricing):
    local.search.return_value = [make_listing(f"s{i}") for i in range(3)]
    _mock_rates("h1", "h2", "h3", "h4", "h5")
    partner = _partner_with_hanging_details({"h2", "h4"}, timeout=0.05)
    engine = AggregationEngine(
        local, partner, ResultCache(MemoryCacheBackend(), TTLS), RequestCoalescer(0), pricing,
        adapter_timeout=0.5,
    )

    response = await engine.search(SearchQuery(destination="Salvador", page_size=10))

    assert response.per_source_counts == {"local": 3, "partner": 3}
    assert [l.id for l in response.listings] == [
        "local_s0", "local_s1", "local_s2",
        "partner_h1", "partner_h3", "partner_h5",
    ]
    assert response.errors == []


@respx.mock
@pytest.mark.asyncio
async def test_queued_slow_detail_batches_do_not_lose_partner_source(local, pricing):
    # Two batches of hanging calls take longer than the engine's per-source timeout
    _mock_rates(*[f"h{i}" for i in range(1, 9)])
    partner = _partner_with_hanging_details(
        {f"h{i}" for i in range(3, 9)}, timeout=0.15, detail_concurrency=5
    )
    engine = AggregationEngine(
        local, partner, ResultCache(MemoryCacheBackend(), TTLS), RequestCoalescer(0), pricing,
        adapter_timeout=0.25,
    )

    response = await engine.search(SearchQuery(destination="Salvador", page_size=10))

    assert response.per_source_counts["partner"] == 2
    assert [l.id for l in response.listings] == ["partner_h1", "partner_h2"]
    assert response.errors == []


@respx.mock
@pytest.mark.asyncio
async def test_malformed_partner_availability_is_aggregation_failed(local, pricing):
    respx.post(f"{PARTNER_URL}/hotels/rates").mock(
        return_value=Response(200, json={"data": [{"hotelId": "h1", "roomTypes": "oops"}]})
    )
    partner = PartnerInventoryAdapter(httpx.AsyncClient(), PARTNER_URL, "test-key", max_retries=0)
    engine = AggregationEngine(
        local, partner, ResultCache(MemoryCacheBackend(), TTLS), RequestCoalescer(0), pricing,
    )

    with pytest.raises(AggregationFailed) as exc_info:
        await engine.get_availability("partner_h1", date(2030, 3, 1), date(2030, 3, 3))

    assert exc_info.value.errors[0].source == "partner"
