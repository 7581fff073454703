"""
Outbound Events Module
"""
from .publisher import (
    EventPublisher,
    EventType,
    KafkaEventPublisher,
    LogEventPublisher,
    OutboundEvent,
    QueueEventPublisher,
)

__all__ = [
    "EventPublisher",
    "EventType",
    "KafkaEventPublisher",
    "LogEventPublisher",
    "OutboundEvent",
    "QueueEventPublisher",
]
