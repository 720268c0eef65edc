from typing import Annotated

from fastapi import Depends, Request

from aggregator.config import Settings
from aggregator.services.aggregation import AggregationEngine


def get_engine(request: Request) -> AggregationEngine:
    return request.app.state.engine


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


EngineDep = Annotated[AggregationEngine, Depends(get_engine)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
