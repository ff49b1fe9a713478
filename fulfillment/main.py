"""
Guest Upsell Fulfillment - FastAPI Application
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import httpx
import structlog

from fulfillment import __version__
from fulfillment.cache import CacheStore
from fulfillment.config import settings
from fulfillment.api import orders
from fulfillment.providers.registry import ProviderRegistry
from fulfillment.webhooks import providers as provider_webhooks

logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting fulfillment API", version=__version__)

    app.state.cache = CacheStore.from_url(settings.redis_url)
    app.state.http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    app.state.providers = ProviderRegistry.from_settings(
        app.state.cache,
        http_client=app.state.http_client,
    )

    yield

    await app.state.http_client.aclose()
    await app.state.cache.close()
    logger.info("Shutting down fulfillment API")


# Create FastAPI application
app = FastAPI(
    title="Guest Upsell Fulfillment",
    description="Dispatches guest upsell orders to ride, food and grocery providers",
    version=__version__,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoints
@app.get("/health")
async def health():
    """Basic health check"""
    return {"status": "healthy", "service": "fulfillment", "version": __version__}


@app.get("/health/ready")
async def ready(request: Request):
    """Readiness check with dependency verification"""
    checks = {}

    # Check Redis
    try:
        await request.app.state.cache.ping()
        checks["redis"] = "ok"
    except Exception as e:
        checks["redis"] = f"failed: {str(e)}"

    all_ok = all(v == "ok" for v in checks.values())

    return {
        "status": "ready" if all_ok else "not_ready",
        "checks": checks,
    }


# Include API routers
app.include_router(orders.router, tags=["Orders"])

# Include webhook routers
app.include_router(provider_webhooks.router, prefix="/webhooks", tags=["Webhooks"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fulfillment.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_debug,
    )
