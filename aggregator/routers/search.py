from fastapi import APIRouter

from aggregator.dependencies import EngineDep, SettingsDep
from aggregator.schemas.search import SearchRequest, SearchResponse

router = APIRouter()


@router.post("/search", response_model=SearchResponse)
async def search(request: SearchRequest, engine: EngineDep, settings: SettingsDep) -> SearchResponse:
    query = request.to_query(default_page_size=settings.default_page_size)
    return await engine.search(query)
