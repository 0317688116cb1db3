# models/request.py
from typing import Dict, Optional

from pydantic import Field, HttpUrl

from .advertiser import CamelModel


class ScrapeRequest(CamelModel):
    url: HttpUrl
    render_js: bool = False
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0, le=120)
    user_id: Optional[str] = None
    priority: Optional[int] = Field(default=None, ge=0)
    use_cache: bool = True
