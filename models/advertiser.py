# models/advertiser.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CamelModel(BaseModel):
    """
    Base for every structure handed to external collaborators.

    Python code uses snake_case attributes; ``to_dict()`` emits the camelCase
    keys the route handlers and the frontend expect.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class AdvertiserStats(CamelModel):
    """Normalized statistics for a single advertiser page."""

    page_id: str
    advertiser_name: str = "Unknown"
    total_active_ads: int = Field(default=0, ge=0)
    last_updated: str = Field(default_factory=_utc_now_iso)

    @field_validator("page_id", "advertiser_name", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v


class AdvertiserStatsResult(CamelModel):
    """
    Outcome of ``get_advertiser_stats``.

    ``error_code`` mirrors :attr:`core.exceptions.ScraperException.code` so a
    caller can tell ``JOB_CANCELLED`` (stale, ignore) from a real failure.
    """

    success: bool
    stats: Optional[AdvertiserStats] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    cached: bool = False
    execution_time_ms: float = 0.0

    @property
    def cancelled(self) -> bool:
        return self.error_code == "JOB_CANCELLED"


class ScrapeResult(CamelModel):
    """Outcome of a raw page scrape."""

    success: bool
    url: str
    html: Optional[str] = None
    rendered: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    cached: bool = False
    execution_time_ms: float = 0.0
