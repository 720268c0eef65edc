import hashlib
import json

from aggregator.schemas.search import SearchQuery

# Fields that never change which listings are returned or their order
_EXCLUDED = {"page", "page_size", "request_id"}


def canonical_query(query: SearchQuery) -> dict:
    data = query.model_dump(mode="json", exclude=_EXCLUDED)
    if data.get("destination") is not None:
        data["destination"] = " ".join(data["destination"].split()).casefold() or None
    data["amenities"] = sorted({a.strip().lower() for a in query.amenities if a.strip()})
    data["property_types"] = sorted({t.strip().lower() for t in query.property_types if t.strip()})
    return data


def build_query_signature(query: SearchQuery) -> str:
    """Stable hash used both as the search cache key and the coalescing key."""
    payload = json.dumps(canonical_query(query), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
