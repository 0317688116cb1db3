# models/telemetry.py
from .advertiser import CamelModel


class ConnectionPoolStats(CamelModel):
    active_requests: int = 0
    completed_requests: int = 0
    failed_requests: int = 0
    avg_response_time: float = 0.0     # milliseconds
    queue_size: int = 0


class BrowserPoolStats(CamelModel):
    total: int = 0
    in_use: int = 0
    available: int = 0
    max_browsers: int = 0


class QueueStats(CamelModel):
    queued: int = 0
    active: int = 0
    concurrency_limit: int = 0


class CacheStats(CamelModel):
    keys: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0               # percent, two decimals
    memory_usage_mb: float = 0.0
    remote_connected: bool = False


class PerformanceStats(CamelModel):
    """
    Aggregate view consumed by the monitoring/admin routes.

    ``batch_queue_size`` is the number of jobs waiting in the job queue;
    requests are not grouped into batches.
    """

    cache_hit_rate: float = 0.0
    cache_size: int = 0
    active_connections: int = 0
    queued_requests: int = 0
    batch_queue_size: int = 0
    avg_response_time: float = 0.0     # milliseconds
    total_requests: int = 0
    errors: int = 0
