# models/jobs.py
"""
Typed job payloads.

Each :class:`JobType` has exactly one payload model; the queue refuses a
payload that does not match the declared type.
"""

from enum import Enum
from typing import Dict, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobType(str, Enum):
    STATS_FETCH = "advertiser-stats"
    SCRAPE = "scraping"


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    SETTLED = "settled"


class StatsFetchPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    page_id: str = Field(..., min_length=1)
    country: str = "ALL"
    user_id: Optional[str] = None

    @field_validator("page_id")
    @classmethod
    def _strip_page_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("page_id must not be blank")
        return v

    @field_validator("country")
    @classmethod
    def _normalize_country(cls, v: str) -> str:
        return (v or "ALL").strip().upper() or "ALL"


class ScrapePayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1)
    render_js: bool = False
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = None
    user_id: Optional[str] = None


JobPayload = Union[StatsFetchPayload, ScrapePayload]

PAYLOAD_TYPES: Dict[JobType, Type[BaseModel]] = {
    JobType.STATS_FETCH: StatsFetchPayload,
    JobType.SCRAPE: ScrapePayload,
}
