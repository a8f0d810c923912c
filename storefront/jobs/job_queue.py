"""
Job Queue Configuration

arq worker for deferred settlement work. Start with:

    arq storefront.jobs.job_queue.WorkerSettings
"""
import logging
from urllib.parse import urlparse

from arq.connections import RedisSettings

from storefront.core.config import settings
from storefront.core.redis_client import close_redis, get_redis

from storefront.jobs.tasks import (
    process_payment_webhook,
    process_queued_refund,
    send_order_email,
)

logger = logging.getLogger(__name__)


def parse_redis_url(url: str) -> RedisSettings:
    """Parse Redis URL into ARQ RedisSettings."""
    if not url:
        # Default to localhost
        return RedisSettings()

    # Parse redis://host:port/db or redis://:password@host:port/db
    parsed = urlparse(url)

    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        password=parsed.password,
        database=int(parsed.path.lstrip("/") or 0) if parsed.path else 0,
        ssl=parsed.scheme == "rediss",
    )


async def startup(ctx: dict) -> None:
    from storefront.services.container import build_services
    from storefront.services.dispatch import ArqTaskDispatcher

    # Jobs queued from inside a job reuse the worker's own pool
    dispatcher = ArqTaskDispatcher(ctx["redis"])
    ctx["services"] = build_services(settings, dispatcher, redis_client=await get_redis())
    logger.info("Settlement worker started")


async def shutdown(ctx: dict) -> None:
    services = ctx.get("services")
    if services is not None:
        # The arq pool belongs to the worker
        await services.gateways.close()
        await services.store.close()
    await close_redis()
    logger.info("Settlement worker stopped")


class WorkerSettings:
    """ARQ Worker configuration."""

    functions = [
        process_payment_webhook,
        process_queued_refund,
        send_order_email,
    ]

    on_startup = startup
    on_shutdown = shutdown

    # Redis connection
    redis_settings = parse_redis_url(settings.ARQ_REDIS_URL or settings.REDIS_URL)

    # Worker settings
    max_jobs = 10
    job_timeout = 300  # 5 minutes
    keep_result = 3600  # 1 hour

    # Retry settings
    max_tries = settings.JOB_MAX_TRIES
    retry_delay = settings.JOB_RETRY_DELAY_SECONDS
