import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from decimal import Decimal

import httpx
import redis.asyncio as redis
from fastapi import FastAPI

from aggregator.cache import CacheClass, MemoryCacheBackend, RedisCacheBackend, ResultCache
from aggregator.coalescer import RequestCoalescer
from aggregator.config import Settings
from aggregator.exceptions.custom import AggregationFailed, InvalidQuery, NotFound
from aggregator.exceptions.handlers import (
    aggregation_failed_handler,
    invalid_query_handler,
    not_found_handler,
)
from aggregator.routers.health import router as health_router
from aggregator.routers.properties import router as properties_router
from aggregator.routers.search import router as search_router
from aggregator.schemas.search import SearchQuery
from aggregator.services.aggregation import AggregationEngine
from aggregator.services.local_inventory import InMemoryInventoryStore, LocalInventoryAdapter
from aggregator.services.partner import PartnerInventoryAdapter
from aggregator.services.pricing import DemandLevel, PricingAdjuster

logger = logging.getLogger(__name__)


def build_cache(settings: Settings, redis_client: redis.Redis | None = None) -> ResultCache:
    if redis_client is not None:
        backend = RedisCacheBackend(redis_client, prefix=settings.cache_key_prefix)
    else:
        backend = MemoryCacheBackend(max_entries=settings.cache_max_entries)
    return ResultCache(
        backend,
        ttls={
            CacheClass.search: settings.cache_ttl_search,
            CacheClass.detail: settings.cache_ttl_detail,
            CacheClass.availability: settings.cache_ttl_availability,
        },
        op_timeout=settings.cache_op_timeout,
    )


def build_engine(
    settings: Settings,
    client: httpx.AsyncClient,
    redis_client: redis.Redis | None = None,
) -> AggregationEngine:
    if settings.local_inventory_file:
        store = InMemoryInventoryStore.from_file(settings.local_inventory_file)
    else:
        store = InMemoryInventoryStore()

    partner = PartnerInventoryAdapter(
        client,
        settings.partner_base_url,
        settings.partner_api_key,
        timeout=settings.partner_timeout,
        max_retries=settings.partner_max_retries,
        backoff_base=settings.partner_backoff_base,
        detail_concurrency=settings.partner_detail_concurrency,
        result_cap=settings.partner_result_cap,
        search_deadline=min(settings.partner_search_deadline, settings.adapter_timeout * 0.9),
    )
    pricing = PricingAdjuster(
        base_markup=Decimal(str(settings.pricing_base_markup)),
        demand=DemandLevel(settings.pricing_demand_level),
        competition=settings.pricing_competition,
        peak_months=frozenset(settings.pricing_peak_months),
    )
    return AggregationEngine(
        LocalInventoryAdapter(store),
        partner,
        build_cache(settings, redis_client),
        RequestCoalescer(grace_seconds=settings.coalesce_grace_seconds),
        pricing,
        adapter_timeout=settings.adapter_timeout,
        max_page_size=settings.max_page_size,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    redis_client: redis.Redis | None = None
    if settings.cache_backend == "redis":
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        logger.info("Using Redis cache backend at %s", settings.redis_url)

    async with httpx.AsyncClient(timeout=settings.partner_timeout) as client:
        engine = build_engine(settings, client, redis_client)
        app.state.settings = settings
        app.state.engine = engine

        warm_up: asyncio.Task | None = None
        if settings.warm_up_destinations:
            warm_up = asyncio.create_task(engine.warm_up(
                SearchQuery(destination=d, page_size=settings.default_page_size)
                for d in settings.warm_up_destinations
            ))

        try:
            yield
        finally:
            if warm_up is not None and not warm_up.done():
                warm_up.cancel()
            await engine.cache.drain()
            if redis_client is not None:
                await redis_client.aclose()


app = FastAPI(title="HospedeFacil Inventory Aggregator", lifespan=lifespan)

app.add_exception_handler(AggregationFailed, aggregation_failed_handler)
app.add_exception_handler(InvalidQuery, invalid_query_handler)
app.add_exception_handler(NotFound, not_found_handler)

app.include_router(search_router)
app.include_router(properties_router)
app.include_router(health_router)
