from .advertiser import AdvertiserStats, AdvertiserStatsResult, ScrapeResult
from .jobs import JobType, ScrapePayload, StatsFetchPayload
from .request import ScrapeRequest
from .telemetry import (
    BrowserPoolStats,
    CacheStats,
    ConnectionPoolStats,
    PerformanceStats,
    QueueStats,
)

__all__ = [
    'AdvertiserStats', 'AdvertiserStatsResult', 'ScrapeResult',
    'JobType', 'ScrapePayload', 'StatsFetchPayload', 'ScrapeRequest',
    'BrowserPoolStats', 'CacheStats', 'ConnectionPoolStats', 'PerformanceStats', 'QueueStats',
]
