"""
Outbound Event Channel

Order and inventory notifications (order placed/paid/cancelled/refunded,
low stock) for downstream consumers such as email and SMS dispatch.

Publishing never blocks the caller: events go onto a bounded in-process
queue and a background pump forwards them. When the queue is full the event
is dropped and counted.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from src.common.metrics import EVENTS_PUBLISHED
from src.config import get_settings
from src.storage.base import new_id, utcnow

logger = structlog.get_logger(__name__)


# =============================================================================
# EVENT MODELS
# =============================================================================

class EventType:
    ORDER_PLACED = "order.placed"
    ORDER_PAID = "order.paid"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_REFUNDED = "order.refunded"
    ORDER_COMMIT_FAILED = "order.commit_failed"
    LOW_STOCK = "inventory.low_stock"


@dataclass
class OutboundEvent:
    event_type: str
    payload: Dict[str, Any]
    key: Optional[str] = None
    event_id: str = field(default_factory=new_id)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


# =============================================================================
# PUBLISHERS
# =============================================================================

class EventPublisher(ABC):
    """Fire-and-forget outbound channel"""

    @abstractmethod
    def publish(self, event: OutboundEvent) -> bool:
        """Hand off an event; returns False when it was dropped."""
        ...

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


class QueueEventPublisher(EventPublisher):
    """
    Bounded asyncio.Queue channel.

    On its own it only buffers, which is what tests and single-process
    development need; KafkaEventPublisher adds the forwarding pump.
    """

    def __init__(self, maxsize: int = 10000):
        self._queue: "asyncio.Queue[OutboundEvent]" = asyncio.Queue(maxsize=maxsize)

    def publish(self, event: OutboundEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            EVENTS_PUBLISHED.labels(event_type=event.event_type, status="dropped").inc()
            logger.warning("event_dropped", event_type=event.event_type, key=event.key)
            return False
        EVENTS_PUBLISHED.labels(event_type=event.event_type, status="queued").inc()
        return True

    def drain(self) -> List[OutboundEvent]:
        """Remove and return everything currently buffered."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class LogEventPublisher(EventPublisher):
    """Writes events to the log only; used when no broker is configured."""

    def publish(self, event: OutboundEvent) -> bool:
        EVENTS_PUBLISHED.labels(event_type=event.event_type, status="logged").inc()
        logger.info("event_emitted", event_type=event.event_type, key=event.key, payload=event.payload)
        return True


class KafkaEventPublisher(QueueEventPublisher):
    """
    Queue channel forwarded to Kafka by a background task.

    Order events go to KAFKA_TOPIC_ORDER_EVENTS and inventory alerts to
    KAFKA_TOPIC_INVENTORY_EVENTS, keyed by order or variant id.
    """

    def __init__(self, maxsize: Optional[int] = None):
        settings = get_settings()
        super().__init__(maxsize or settings.kafka.queue_size)
        self._config = settings.kafka
        self._producer: Optional[AIOKafkaProducer] = None
        self._pump: Optional[asyncio.Task] = None

    def _topic_for(self, event: OutboundEvent) -> str:
        if event.event_type.startswith("inventory."):
            return self._config.topic_inventory_events
        return self._config.topic_order_events

    async def _create_producer(self) -> AIOKafkaProducer:
        return AIOKafkaProducer(
            bootstrap_servers=self._config.bootstrap_servers,
            client_id=self._config.client_id,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
            acks="all",
            enable_idempotence=True,
        )

    async def _forward(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._producer.send_and_wait(
                    self._topic_for(event),
                    value=event.to_dict(),
                    key=event.key,
                )
                EVENTS_PUBLISHED.labels(event_type=event.event_type, status="sent").inc()
            except KafkaError as e:
                EVENTS_PUBLISHED.labels(event_type=event.event_type, status="failed").inc()
                logger.error("event_send_failed", event_type=event.event_type, key=event.key, error=str(e))
            finally:
                self._queue.task_done()

    async def start(self) -> None:
        logger.info("event_publisher_starting", bootstrap_servers=self._config.bootstrap_servers)
        self._producer = await self._create_producer()
        await self._producer.start()
        self._pump = asyncio.create_task(self._forward(), name="kafka-event-pump")

    async def stop(self, timeout: float = 5.0) -> None:
        if self._pump is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("event_publisher_unflushed", pending=self.pending)
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
        logger.info("event_publisher_stopped")
