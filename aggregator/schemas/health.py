from typing import Literal

from pydantic import BaseModel

from aggregator.cache import CacheStats


class HealthStatus(BaseModel):
    status: Literal["healthy", "degraded"]
    components: dict[str, bool]
    cache: CacheStats
    in_flight: int = 0
