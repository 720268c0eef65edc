from fastapi import APIRouter

from aggregator.dependencies import EngineDep
from aggregator.schemas.health import HealthStatus

router = APIRouter()


@router.get("/health", response_model=HealthStatus)
async def health(engine: EngineDep) -> HealthStatus:
    return await engine.health()


@router.delete("/cache/search")
async def invalidate_search_cache(engine: EngineDep) -> dict:
    removed = await engine.invalidate_searches()
    return {"invalidated": removed}
