"""
FastAPI Production Application

Main entry point for the Checkout Inventory Core API.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI
import structlog

from src.config import get_settings
from src.config.logging import configure_logging
from src.database.connection import close_database, get_session_factory, init_database
from src.events.publisher import EventPublisher, KafkaEventPublisher, LogEventPublisher
from src.serving.api.dependencies import build_container
from src.serving.api.main import create_api_app
from src.serving.cache import close_redis, init_redis
from src.storage.base import Repository, WebhookEventStore
from src.storage.memory import MemoryRepository
from src.storage.redis_events import RedisWebhookEventStore
from src.storage.sql import SqlRepository

settings = get_settings()
logger = structlog.get_logger(__name__)


async def _open_repository() -> Repository:
    if settings.storage_backend == "memory":
        logger.warning("memory_storage_selected", detail="state is lost on restart")
        return MemoryRepository()
    await init_database()
    return SqlRepository(get_session_factory())


async def _open_event_store() -> Optional[WebhookEventStore]:
    if settings.webhooks.dedup_backend != "redis":
        return None
    client = await init_redis()
    return RedisWebhookEventStore(client, ttl=timedelta(hours=settings.webhooks.dedup_ttl_hours))


def _build_publisher() -> EventPublisher:
    if settings.kafka.enabled:
        return KafkaEventPublisher(maxsize=settings.kafka.queue_size)
    return LogEventPublisher()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()
    logger.info("starting", app=settings.app_name, env=settings.app_env, storage=settings.storage_backend)

    repository = await _open_repository()
    events = await _open_event_store()
    publisher = _build_publisher()
    await publisher.start()

    container = build_container(settings, repository, publisher, events=events)
    app.state.container = container

    stop = asyncio.Event()
    sweeper_task = None
    if settings.reservation.sweep_enabled:
        sweeper_task = asyncio.create_task(
            container.sweeper.run_forever(settings.reservation.sweep_interval_seconds, stop),
            name="reservation-sweeper",
        )

    try:
        yield
    finally:
        logger.info("shutting_down")
        stop.set()
        if sweeper_task is not None:
            await sweeper_task
        await publisher.stop()
        await repository.close()
        if events is not None:
            await close_redis()
        if settings.storage_backend == "sql":
            await close_database()


app = create_api_app(settings=settings, lifespan=lifespan)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
