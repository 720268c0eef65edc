import asyncio
import logging
import time
import uuid
from collections.abc import Iterable
from datetime import date, datetime, timezone
from typing import Protocol

from aggregator.cache import CacheClass, ResultCache
from aggregator.coalescer import RequestCoalescer
from aggregator.exceptions.custom import AggregationFailed, InvalidQuery, NotFound, SourceUnavailable
from aggregator.mappers.ranking import paginate, sort_listings, total_pages
from aggregator.mappers.signature import build_query_signature
from aggregator.schemas.health import HealthStatus
from aggregator.schemas.listing import Listing, ListingSource, RateQuote, source_of
from aggregator.schemas.search import AggregatedResult, SearchQuery, SearchResponse, SourceError
from aggregator.services.pricing import PricingAdjuster

logger = logging.getLogger(__name__)


class InventoryAdapter(Protocol):
    source: ListingSource

    async def search(self, query: SearchQuery) -> list[Listing]: ...

    async def get_detail(self, listing_id: str) -> Listing: ...

    async def get_availability(
        self, listing_id: str, check_in: date, check_out: date, adults: int = 2, children: int = 0
    ) -> list[RateQuote]: ...

    async def ping(self) -> bool: ...


def _as_source_error(source: ListingSource, exc: BaseException) -> SourceUnavailable:
    if isinstance(exc, SourceUnavailable):
        return exc
    if isinstance(exc, TimeoutError):
        return SourceUnavailable(source, "search timed out")
    return SourceUnavailable(source, f"{type(exc).__name__}: {exc}")


class AggregationEngine:
    """Fans a search out to every enabled source and serves pages over the merged set.

    The merged, sorted set is what gets cached and coalesced; pages are views
    over it, and partner markup is applied to the returned page only.
    """

    def __init__(
        self,
        local: InventoryAdapter,
        partner: InventoryAdapter,
        cache: ResultCache,
        coalescer: RequestCoalescer,
        pricing: PricingAdjuster,
        adapter_timeout: float = 20.0,
        max_page_size: int = 50,
    ):
        self._adapters = {ListingSource.local: local, ListingSource.partner: partner}
        self._cache = cache
        self._coalescer = coalescer
        self._pricing = pricing
        self._adapter_timeout = adapter_timeout
        self._max_page_size = max_page_size

    @property
    def cache(self) -> ResultCache:
        return self._cache

    async def search(self, query: SearchQuery) -> SearchResponse:
        started = time.perf_counter()
        if not (query.include_local or query.include_partner):
            raise InvalidQuery("at least one inventory source must be included")

        page_size = min(query.page_size, self._max_page_size)
        signature = build_query_signature(query)

        result = await self._cache.get(signature, CacheClass.search)
        cached = result is not None
        if result is None:
            result = await self._coalescer.run(
                signature, lambda: self._fan_out_and_merge(query, signature)
            )

        page, has_next = paginate(result.listings, query.page, page_size)
        signals = self._pricing.signals_for(query)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Search %s page %d: %d of %d listings (cached=%s, %dms)",
            result.search_id, query.page, len(page), result.total_count, cached, elapsed_ms,
        )
        return SearchResponse(
            listings=self._pricing.adjust_all(page, signals),
            total_count=result.total_count,
            page=query.page,
            page_size=page_size,
            total_pages=total_pages(result.total_count, page_size),
            has_next=has_next,
            per_source_counts={
                ListingSource.local.value: result.local_count,
                ListingSource.partner.value: result.partner_count,
            },
            search_id=result.search_id,
            search_time_ms=elapsed_ms,
            cached=cached,
            errors=list(result.errors),
        )

    async def _search_source(self, source: ListingSource, query: SearchQuery) -> list[Listing]:
        return await asyncio.wait_for(self._adapters[source].search(query), self._adapter_timeout)

    async def _fan_out_and_merge(self, query: SearchQuery, signature: str) -> AggregatedResult:
        sources = [
            source
            for source, enabled in (
                (ListingSource.local, query.include_local),
                (ListingSource.partner, query.include_partner),
            )
            if enabled
        ]
        results = await asyncio.gather(
            *[self._search_source(source, query) for source in sources],
            return_exceptions=True,
        )

        merged: list[Listing] = []
        seen: set[str] = set()
        counts = {ListingSource.local: 0, ListingSource.partner: 0}
        failures: list[SourceUnavailable] = []
        for source, outcome in zip(sources, results):
            if isinstance(outcome, BaseException):
                error = _as_source_error(source, outcome)
                logger.warning("Source %s failed for search %s: %s", source, signature[:12], error.message)
                failures.append(error)
                continue
            for listing in outcome:
                if listing.id in seen:
                    continue
                seen.add(listing.id)
                merged.append(listing)
                counts[source] += 1

        if failures and len(failures) == len(sources):
            raise AggregationFailed(failures)

        signals = self._pricing.signals_for(query)
        ordered = sort_listings(
            merged,
            query.sort_by,
            query.sort_order,
            price_of=lambda listing: self._pricing.display_price(listing, signals),
        )
        result = AggregatedResult(
            search_id=uuid.uuid4().hex,
            listings=tuple(ordered),
            local_count=counts[ListingSource.local],
            partner_count=counts[ListingSource.partner],
            errors=tuple(
                SourceError(source=e.source, error=type(e).__name__, message=e.message)
                for e in failures
            ),
            created_at=datetime.now(timezone.utc),
        )
        self._cache.put(signature, CacheClass.search, result)
        return result

    def _adapter_for(self, listing_id: str) -> InventoryAdapter:
        source = source_of(listing_id)
        if source is None:
            raise NotFound(listing_id)
        return self._adapters[source]

    async def get_detail(self, listing_id: str) -> Listing:
        adapter = self._adapter_for(listing_id)
        listing = await self._cache.get(listing_id, CacheClass.detail)
        if listing is None:
            try:
                listing = await asyncio.wait_for(adapter.get_detail(listing_id), self._adapter_timeout)
            except TimeoutError as exc:
                raise AggregationFailed([_as_source_error(adapter.source, exc)]) from exc
            except SourceUnavailable as exc:
                raise AggregationFailed([exc]) from exc
            self._cache.put(listing_id, CacheClass.detail, listing)
        return self._pricing.adjust(listing, self._pricing.signals_for())

    async def get_availability(
        self,
        listing_id: str,
        check_in: date,
        check_out: date,
        adults: int = 2,
        children: int = 0,
    ) -> list[RateQuote]:
        if check_out <= check_in:
            raise InvalidQuery("check_out must be after check_in")
        if adults < 1 or children < 0:
            raise InvalidQuery("adults must be at least 1 and children non-negative")

        adapter = self._adapter_for(listing_id)
        key = f"{listing_id}:{check_in.isoformat()}:{check_out.isoformat()}:{adults + children}"
        quotes = await self._cache.get(key, CacheClass.availability)
        if quotes is not None:
            return quotes

        try:
            quotes = await asyncio.wait_for(
                adapter.get_availability(listing_id, check_in, check_out, adults, children),
                self._adapter_timeout,
            )
        except TimeoutError as exc:
            raise AggregationFailed([_as_source_error(adapter.source, exc)]) from exc
        except SourceUnavailable as exc:
            raise AggregationFailed([exc]) from exc
        self._cache.put(key, CacheClass.availability, quotes)
        return quotes

    async def invalidate_searches(self) -> int:
        removed = await self._cache.invalidate_class(CacheClass.search)
        logger.info("Invalidated %d cached searches", removed)
        return removed

    async def health(self) -> HealthStatus:
        local_ok, partner_ok, cache_ok = await asyncio.gather(
            self._adapters[ListingSource.local].ping(),
            self._adapters[ListingSource.partner].ping(),
            self._cache.ping(),
        )
        sources = {
            ListingSource.local.value: local_ok,
            ListingSource.partner.value: partner_ok,
            "cache": cache_ok,
        }
        return HealthStatus(
            status="healthy" if all(sources.values()) else "degraded",
            components=sources,
            cache=await self._cache.stats(),
            in_flight=self._coalescer.in_flight(),
        )

    async def warm_up(self, queries: Iterable[SearchQuery]) -> int:
        """Populate the search cache for common queries; returns how many succeeded."""
        queries = list(queries)
        results = await asyncio.gather(*[self.search(q) for q in queries], return_exceptions=True)
        warmed = 0
        for query, result in zip(queries, results):
            if isinstance(result, BaseException):
                logger.warning("Cache warm-up failed for %s: %s", query.destination, result)
            else:
                warmed += 1
        logger.info("Cache warm-up finished: %d/%d queries", warmed, len(queries))
        return warmed
