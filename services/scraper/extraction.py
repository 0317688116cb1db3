# services/scraper/extraction.py
"""
Pull advertiser statistics out of an Ad Library results page.

The page ships its data as Relay payloads inside ``<script>`` tags, either
as plain JSON or as JSON embedded in a JavaScript string (quotes escaped
with backslashes). The patterns below accept both forms.
"""

import re
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlencode

from bs4 import BeautifulSoup
from loguru import logger

from models.advertiser import AdvertiserStats

AD_LIBRARY_URL = "https://www.facebook.com/ads/library/"

# Ordered from most to least specific.
COUNT_PATTERNS = [
    ("escaped", re.compile(
        r'\\?"search_results_connection\\?":\s*\{[^}]*\\?"count\\?":\s*(\d+)', re.I)),
    ("ad_library_main", re.compile(
        r'\\?"ad_library_main\\?":\s*\{[^}]*\\?"search_results_connection\\?":\s*\{[^}]*\\?"count\\?":\s*(\d+)',
        re.I)),
    ("preloader", re.compile(
        r"AdLibraryFoundationRootQueryRelayPreloader[\s\S]*?search_results_connection[\s\S]*?count[^:]*:\s*(\d+)",
        re.I)),
]

FALLBACK_COUNT_PATTERN = re.compile(
    r'(?:ads?|library|active)[^}]*"count":\s*(\d+)|"count":\s*(\d+)[^}]*(?:ads?|library|active)',
    re.I,
)

NAME_PATTERNS = [
    ("escaped", re.compile(r'\\?"page_name\\?":\s*\\?"([^"\\]+)\\?"', re.I)),
    ("page_name", re.compile(r'"page_name":\s*"([^"]+)"', re.I)),
    ("alt", re.compile(r'"name":\s*"([^"]+)"[^}]*"id":\s*"\d+"', re.I)),
]

RELAY_MARKERS = (
    "RelayPrefetchedStreamCache",
    "AdLibraryFoundationRootQueryRelayPreloader",
    "search_results_connection",
    "ad_library_main",
    "collated_results",
)


@dataclass
class ScriptContent:
    content: str
    type: str
    size: int


def build_ad_library_url(page_id: str, country: str = "ALL", base_url: str = AD_LIBRARY_URL) -> str:
    params = {
        "active_status": "active",
        "ad_type": "all",
        "country": country,
        "is_targeted_country": "false",
        "media_type": "all",
        "search_type": "page",
        "view_all_page_id": page_id,
    }
    return f"{base_url}?{urlencode(params)}"


def detect_script_type(content: str) -> str:
    if "RelayPrefetchedStreamCache" in content and "search_results_connection" in content:
        return "facebook_relay_ads"
    if "AdLibraryFoundationRootQueryRelayPreloader" in content:
        return "facebook_relay_preloader"
    if "__INITIAL_DATA__" in content or "initialData" in content:
        return "initial_data"
    if "ads" in content and "count" in content:
        return "ads_data"
    return "unknown"


def extract_scripts(html: str) -> List[ScriptContent]:
    """Return inline scripts likely to carry Ad Library data, Relay payloads first."""
    soup = BeautifulSoup(html, "html.parser")
    relay: List[ScriptContent] = []
    other: List[ScriptContent] = []
    for tag in soup.find_all("script"):
        text = (tag.string or tag.get_text() or "").strip()
        if len(text) <= 50:
            continue
        script = ScriptContent(content=text, type=detect_script_type(text), size=len(text))
        if tag.has_attr("data-sjs") or any(marker in text for marker in RELAY_MARKERS):
            relay.append(script)
        elif script.type != "unknown":
            other.append(script)
    logger.debug(f"Extracted {len(relay)} relay and {len(other)} other script tags")
    return relay + other


def extract_active_ads_count(html: str) -> Optional[int]:
    """Return the active ad count, or None when the page carries no recognizable count."""
    for name, pattern in COUNT_PATTERNS:
        match = pattern.search(html)
        if match:
            count = int(match.group(1))
            logger.debug(f"Direct extraction found count: {count} via {name} pattern")
            return count

    # The loose pattern is only trusted inside script bodies, never in visible markup.
    for script in extract_scripts(html):
        match = FALLBACK_COUNT_PATTERN.search(script.content)
        if match:
            count = int(match.group(1) or match.group(2))
            logger.debug(f"Direct extraction found count: {count} via fallback pattern")
            return count

    logger.debug("No direct count pattern found in HTML")
    return None


def _unescape(value: str) -> str:
    return value.replace('\\"', '"').replace("\\\\", "\\").strip()


def extract_advertiser_name(html: str) -> Optional[str]:
    for name, pattern in NAME_PATTERNS:
        match = pattern.search(html)
        if match:
            advertiser = _unescape(match.group(1))
            if advertiser:
                logger.debug(f"Found advertiser name ({name}): {advertiser}")
                return advertiser
    return None


def parse_advertiser_stats(html: str, page_id: str) -> Optional[AdvertiserStats]:
    count = extract_active_ads_count(html)
    if count is None:
        return None
    return AdvertiserStats(
        page_id=page_id,
        advertiser_name=extract_advertiser_name(html) or "Unknown",
        total_active_ads=count,
    )
