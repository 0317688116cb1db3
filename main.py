import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from prometheus_client import make_asgi_app

from core.config import settings
from core.exceptions import PoolClosedError, ScraperException, ValidationError
from core.logging import configure_logging
from models.request import ScrapeRequest
from services.runtime import ScraperRuntime
from services.scraper.scraper import AdvertiserStatsScraper

# Prometheus metrics endpoint
metrics_app = make_asgi_app()


# ------------------------------------------------------------------
# FastAPI App Lifecycle
# ------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)
    logger.info("Initializing application...")
    runtime = ScraperRuntime.create(settings)
    await runtime.start()
    app.state.runtime = runtime
    app.state.scraper = runtime.scraper
    try:
        yield
    finally:
        logger.info("Shutting down application...")
        app.state.scraper = None
        await runtime.shutdown()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Ad Library advertiser statistics service",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_HOSTS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.ALLOWED_HOSTS,
)


@app.middleware("http")
async def add_timing_header(request: Request, call_next):
    start_time = time.perf_counter()
    response = await call_next(request)
    process_time = time.perf_counter() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ValidationError(errors=jsonable_encoder(exc.errors())).to_dict(),
    )


@app.exception_handler(ScraperException)
async def scraper_exception_handler(request: Request, exc: ScraperException):
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "INTERNAL_SERVER_ERROR",
                "message": "An unexpected error occurred",
                "status": 500,
            }
        },
    )


app.mount("/metrics", metrics_app)


def get_scraper(request: Request) -> AdvertiserStatsScraper:
    scraper = getattr(request.app.state, "scraper", None)
    if scraper is None:
        raise PoolClosedError("Scraper is not running")
    return scraper


# ------------------------------------------------------------------
# Service info
# ------------------------------------------------------------------
@app.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": time.time()}


@app.get("/")
async def root():
    return {
        "name": settings.PROJECT_NAME,
        "version": "1.0.0",
        "description": "Ad Library advertiser statistics service",
        "docs_url": "/docs",
        "health_check": "/health",
    }


# ------------------------------------------------------------------
# Scraping
# ------------------------------------------------------------------
@app.get("/api/v1/advertisers/{page_id}/stats")
async def advertiser_stats(
    page_id: str,
    country: str = Query(settings.DEFAULT_COUNTRY, min_length=2, max_length=3),
    user_id: Optional[str] = Query(None, alias="userId"),
    priority: Optional[int] = Query(None, ge=0),
    scraper: AdvertiserStatsScraper = Depends(get_scraper),
):
    logger.info(f"Processing stats request for page: {page_id} ({country})")
    result = await scraper.get_advertiser_stats(page_id, country, user_id=user_id, priority=priority)
    return result.to_dict()


@app.post("/api/v1/scrape")
async def scrape_url(request: ScrapeRequest, scraper: AdvertiserStatsScraper = Depends(get_scraper)):
    logger.info(f"Processing scrape request for URL: {request.url}")
    result = await scraper.scrape_page(
        str(request.url),
        request.render_js,
        headers=request.headers,
        timeout=request.timeout,
        user_id=request.user_id,
        priority=request.priority,
        use_cache=request.use_cache,
    )
    return result.to_dict()


@app.post("/api/v1/users/{user_id}/cancel")
async def cancel_user_jobs(user_id: str, scraper: AdvertiserStatsScraper = Depends(get_scraper)):
    cancelled = scraper.cancel_for_user(user_id)
    return {"userId": user_id, "cancelled": cancelled}


# ------------------------------------------------------------------
# Monitoring & admin
# ------------------------------------------------------------------
@app.get("/api/v1/monitoring/performance")
async def performance_stats(scraper: AdvertiserStatsScraper = Depends(get_scraper)):
    return scraper.get_performance_stats().to_dict()


@app.get("/api/v1/monitoring/pool")
async def pool_stats(scraper: AdvertiserStatsScraper = Depends(get_scraper)):
    return scraper.get_pool_stats().to_dict()


@app.get("/api/v1/monitoring/queue")
async def queue_stats(scraper: AdvertiserStatsScraper = Depends(get_scraper)):
    return scraper.get_queue_stats().to_dict()


@app.get("/api/v1/monitoring/cache")
async def cache_stats(scraper: AdvertiserStatsScraper = Depends(get_scraper)):
    return scraper.get_cache_stats().to_dict()


@app.get("/api/v1/monitoring/connections")
async def connection_stats(scraper: AdvertiserStatsScraper = Depends(get_scraper)):
    return scraper.get_connection_stats().to_dict()


@app.post("/api/v1/admin/cache/clear")
async def clear_cache(scraper: AdvertiserStatsScraper = Depends(get_scraper)):
    await scraper.clear_cache()
    return {"success": True, "message": "Cache cleared"}


@app.post("/api/v1/admin/metrics/reset")
async def reset_metrics(scraper: AdvertiserStatsScraper = Depends(get_scraper)):
    scraper.reset_metrics()
    return {"success": True, "message": "Metrics reset"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=settings.WORKERS,
        log_level=settings.LOG_LEVEL.lower(),
    )
