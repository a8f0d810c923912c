"""
Storefront Settlement API
FastAPI application entry point

- Reservation sweeper runs from the lifespan with heartbeat metrics
- Rate limiting with SlowAPI
- Error sanitization middleware plus one StorefrontError -> HTTP mapping
- Health endpoint with reservation stats
- Gateway HTTP clients, Redis and the job dispatcher closed on shutdown
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from storefront.api.routes import admin, checkout, orders, webhooks
from storefront.core.config import settings
from storefront.core.error_handler import ErrorSanitizationMiddleware, register_exception_handlers
from storefront.core.rate_limit import limiter, rate_limit_exceeded_handler
from storefront.core.redis_client import close_redis, get_redis
from storefront.services.container import Services, build_services
from storefront.services.dispatch import ArqTaskDispatcher, InlineTaskDispatcher

logger = logging.getLogger(__name__)

ServicesFactory = Callable[[], Awaitable[Services]]


async def build_services_from_settings() -> Services:
    if settings.STORAGE_BACKEND == "postgres" and settings.ENVIRONMENT == "development":
        from storefront.core.database import create_tables
        await create_tables()

    redis_client = await get_redis()
    if settings.WEBHOOK_PROCESSING_MODE == "queue":
        dispatcher = await ArqTaskDispatcher.connect(settings.ARQ_REDIS_URL or settings.REDIS_URL)
        logger.info("Webhook processing via arq queue")
    else:
        dispatcher = InlineTaskDispatcher(max_tries=settings.JOB_MAX_TRIES)
        logger.info("Webhook processing inline")
    return build_services(settings, dispatcher, redis_client=redis_client)


def create_app(
    services_factory: Optional[ServicesFactory] = None,
    run_sweeper: Optional[bool] = None,
) -> FastAPI:
    """
    Build the application. Tests pass their own services_factory (in-memory
    store, mocked gateways) and usually run_sweeper=False.
    """
    factory = services_factory or build_services_from_settings
    sweeper_enabled = settings.RESERVATION_SWEEP_ENABLED if run_sweeper is None else run_sweeper

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = await factory()
        app.state.services = services

        sweeper_task = None
        if sweeper_enabled:
            sweeper_task = asyncio.create_task(
                services.sweeper.run_forever(settings.RESERVATION_SWEEP_INTERVAL_SECONDS)
            )
            logger.info("Reservation sweeper ENABLED")
        else:
            logger.info("Reservation sweeper DISABLED via config")

        yield

        if sweeper_task and not sweeper_task.done():
            sweeper_task.cancel()
            try:
                await sweeper_task
            except asyncio.CancelledError:
                logger.info("Reservation sweeper cancelled")

        await services.close()
        await close_redis()
        logger.info("Storefront services closed")

    app = FastAPI(
        lifespan=lifespan,
        title=f"{settings.APP_NAME} API",
        description="Checkout, payment settlement and stock reservation.",
        version="1.0.0",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url=None,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    register_exception_handlers(app)

    app.add_middleware(ErrorSanitizationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(checkout.router, prefix="/api", tags=["Checkout"])
    app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
    app.include_router(orders.router, prefix="/api", tags=["Orders"])
    app.include_router(admin.router, prefix="/api", tags=["Admin"])

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Returns 503 if the store is unreachable."""
        health_status = {
            "status": "healthy",
            "storage": settings.STORAGE_BACKEND,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        services: Services = request.app.state.services
        try:
            health_status["reservations"] = await services.sweeper.reservation_stats()
        except Exception as e:
            logger.error(f"Health check could not read reservation stats: {e}")
            health_status["status"] = "unhealthy"
            health_status["reservations"] = {"sweeper": dict(services.sweeper.heartbeat)}
            return JSONResponse(status_code=503, content=health_status)
        return health_status

    return app


app = create_app()
