import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from .custom import AggregationFailed, InvalidQuery, NotFound

logger = logging.getLogger(__name__)


async def aggregation_failed_handler(_request: Request, exc: AggregationFailed) -> JSONResponse:
    logger.error("Aggregation failed: %s", exc.message)
    return JSONResponse(
        status_code=503,
        content={
            "detail": "Inventory temporarily unavailable",
            "sources": [e.source for e in exc.errors],
        },
    )


async def invalid_query_handler(_request: Request, exc: InvalidQuery) -> JSONResponse:
    logger.info("Invalid query: %s", exc.message)
    return JSONResponse(
        status_code=422,
        content={"detail": exc.message},
    )


async def not_found_handler(_request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"detail": exc.message},
    )
