# services/cache/keys.py
"""
Cache key derivation.

Keys depend only on the normalized request parameters, never on time or
caller identity, so the same logical request always maps to the same entry.
Pagination parameters are ignored: every page of a search shares one entry.
"""

import hashlib
import json
from enum import Enum
from typing import Any, Mapping

PAGINATION_PARAMS = frozenset({"page", "limit", "offset", "cursor"})


class CacheClass(str, Enum):
    SEARCH = "search"
    STATS = "stats"
    AI = "ai"


def stats_key(page_id: str, country: str = "ALL") -> str:
    country = (country or "ALL").strip().upper() or "ALL"
    return f"advertiser:{page_id.strip()}:{country}"


def stats_prefix(page_id: str) -> str:
    return f"advertiser:{page_id.strip()}:"


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_normalize(v) for v in value]
        # Multi-select filters (languages, media types) are order-insensitive.
        if all(isinstance(v, str) for v in items):
            return sorted(items)
        return items
    return value


def search_key(params: Mapping[str, Any]) -> str:
    normalized = {
        key: _normalize(value)
        for key, value in params.items()
        if key not in PAGINATION_PARAMS and value is not None
    }
    canonical = json.dumps(normalized, sort_keys=True, separators=(",", ":"), default=str)
    return "search:" + hashlib.md5(canonical.encode("utf-8")).hexdigest()


def scrape_key(url: str, render_js: bool = False) -> str:
    return search_key({"url": url, "renderJs": render_js})


def ai_key(idea: str) -> str:
    return f"ai:{idea.strip().lower()}"
