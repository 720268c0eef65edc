from decimal import Decimal
from pathlib import Path

import httpx
import pytest
from httpx import ASGITransport

from aggregator.schemas.listing import Listing, ListingSource, make_listing_id

FIXTURES = Path(__file__).parent / "fixtures"
PARTNER_BASE_URL = "https://partner.test/v3.0"


@pytest.fixture
def mock_env(monkeypatch):
    monkeypatch.setenv("PARTNER_API_KEY", "test-key")
    monkeypatch.setenv("PARTNER_BASE_URL", PARTNER_BASE_URL)
    monkeypatch.setenv("PARTNER_MAX_RETRIES", "0")
    monkeypatch.setenv("CACHE_BACKEND", "memory")
    monkeypatch.setenv("LOCAL_INVENTORY_FILE", str(FIXTURES / "local_inventory.json"))
    monkeypatch.setenv("COALESCE_GRACE_SECONDS", "0")


@pytest.fixture
async def client(mock_env):
    from aggregator.main import app, lifespan

    async with lifespan(app):
        async with httpx.AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as c:
            yield c


@pytest.fixture
def make_listing():
    def _make(external_id: str = "1", source: ListingSource = ListingSource.local, **overrides) -> Listing:
        data = {
            "id": make_listing_id(source, external_id),
            "source": source,
            "external_id": external_id,
            "name": f"Listing {external_id}",
            "base_price_per_night": Decimal("100.00"),
        }
        data.update(overrides)
        return Listing(**data)

    return _make
