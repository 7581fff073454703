"""
Prefect Workflow Orchestration - Reservation Maintenance

Scheduled housekeeping for the reservation ledger:
- release abandoned cart holds
- cancel unpaid online orders past their payment window
- retry commits flagged commit_failed
- purge expired webhook dedup records

The API process runs the same sweep in-process; this flow is for
deployments that disable it (RESERVATION_SWEEP_ENABLED=false) and schedule
housekeeping centrally instead.
"""

from datetime import datetime, timedelta
from typing import Optional

from prefect import flow, task, get_run_logger

from src.config import get_settings
from src.database.connection import close_database, get_session_factory, init_database
from src.events.publisher import KafkaEventPublisher, LogEventPublisher
from src.serving.api.dependencies import ServiceContainer, build_container
from src.serving.cache import close_redis, init_redis
from src.storage.redis_events import RedisWebhookEventStore
from src.storage.sql import SqlRepository

settings = get_settings()


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="release_expired_cart_holds",
    description="Release cart lines past their reservation TTL",
    retries=3,
    retry_delay_seconds=10,
)
async def release_expired_cart_holds(container: ServiceContainer, now: datetime) -> dict:
    logger = get_run_logger()
    report = await container.sweeper.sweep_cart_items(now)
    logger.info(f"Released {report.cart_items_released} cart lines ({report.units_released} units)")
    return report.as_dict()


@task(
    name="expire_unpaid_orders",
    description="Cancel unpaid online orders older than the order TTL",
    retries=3,
    retry_delay_seconds=10,
)
async def expire_unpaid_orders(container: ServiceContainer, now: datetime) -> dict:
    logger = get_run_logger()
    report = await container.sweeper.expire_orders(now)
    logger.info(f"Expired {report.orders_expired} unpaid orders")
    return report.as_dict()


@task(
    name="reconcile_commit_failures",
    description="Retry ledger commits for paid orders flagged commit_failed",
    retries=2,
    retry_delay_seconds=30,
)
async def reconcile_commit_failures(container: ServiceContainer) -> dict:
    logger = get_run_logger()
    report = await container.reconciler.run_once()
    if report.still_failing:
        logger.warning(f"{report.still_failing} paid orders still cannot commit")
    return report.as_dict()


@task(
    name="purge_webhook_events",
    description="Delete webhook dedup records older than the dedup TTL",
    retries=2,
    retry_delay_seconds=30,
)
async def purge_webhook_events(container: ServiceContainer, now: datetime) -> dict:
    logger = get_run_logger()
    purged = await container.webhooks.purge_expired(now)
    logger.info(f"Purged {purged} webhook dedup records")
    return {"purged": purged}


# =============================================================================
# FLOWS
# =============================================================================

async def _open_container() -> ServiceContainer:
    await init_database()
    repository = SqlRepository(get_session_factory())
    events = None
    if settings.webhooks.dedup_backend == "redis":
        client = await init_redis()
        events = RedisWebhookEventStore(client, ttl=timedelta(hours=settings.webhooks.dedup_ttl_hours))
    publisher = KafkaEventPublisher() if settings.kafka.enabled else LogEventPublisher()
    await publisher.start()
    return build_container(settings, repository, publisher, events=events)


async def _close_container(container: ServiceContainer) -> None:
    await container.publisher.stop()
    await container.repository.close()
    if settings.webhooks.dedup_backend == "redis":
        await close_redis()
    await close_database()


@flow(
    name="reservation_maintenance",
    description="Release expired holds, expire unpaid orders, reconcile and purge",
    validate_parameters=False,
)
async def reservation_maintenance(
    container: Optional[ServiceContainer] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    One maintenance pass.

    Args:
        container: Pre-built services; opened from settings when omitted
        now: Reference time (defaults to current UTC)
    """
    logger = get_run_logger()
    owns_container = container is None
    if owns_container:
        container = await _open_container()
    now = now or datetime.utcnow()

    try:
        results = {
            "run_at": now.isoformat(),
            "cart_holds": await release_expired_cart_holds(container, now),
            "orders": await expire_unpaid_orders(container, now),
            "reconciliation": await reconcile_commit_failures(container),
            "webhook_events": await purge_webhook_events(container, now),
        }
    finally:
        if owns_container:
            await _close_container(container)

    logger.info(f"Reservation maintenance complete: {results}")
    return results


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

if __name__ == "__main__":
    import asyncio

    asyncio.run(reservation_maintenance())
