"""
Redis Webhook Event Store

Dedup records for webhook deliveries kept in Redis instead of SQL:

    SET payment-webhook:{provider}:{event_id} <json> NX EX <ttl>

The NX set is the atomic claim; the key's TTL is the retention window so
purging is a no-op.
"""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, Tuple

import structlog
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from src.common.errors import TransientStorageError
from src.storage.base import WebhookEvent, WebhookEventStore, WebhookStatus

logger = structlog.get_logger(__name__)

KEY_PREFIX = "payment-webhook"


def event_key(provider: str, event_id: str) -> str:
    return f"{KEY_PREFIX}:{provider}:{event_id}"


def _dump(event: WebhookEvent) -> str:
    return json.dumps({
        "provider": event.provider,
        "event_id": event.event_id,
        "event_type": event.event_type,
        "payload_hash": event.payload_hash,
        "status": event.status.value,
        "result": event.result,
        "received_at": event.received_at.isoformat(),
        "expires_at": event.expires_at.isoformat() if event.expires_at else None,
    })


def _load(raw: Any) -> WebhookEvent:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    data = json.loads(raw)
    return WebhookEvent(
        provider=data["provider"],
        event_id=data["event_id"],
        event_type=data["event_type"],
        payload_hash=data["payload_hash"],
        status=WebhookStatus(data["status"]),
        result=data.get("result"),
        received_at=datetime.fromisoformat(data["received_at"]),
        expires_at=datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None,
    )


class RedisWebhookEventStore(WebhookEventStore):
    """WebhookEventStore backed by redis.asyncio"""

    def __init__(self, client: Redis, ttl: timedelta):
        self._client = client
        self._ttl_seconds = int(ttl.total_seconds())

    async def _call(self, coro):
        try:
            return await coro
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("redis_unavailable", error=str(e))
            raise TransientStorageError("dedup store unavailable") from e

    async def insert_if_absent(self, event: WebhookEvent) -> Tuple[bool, WebhookEvent]:
        key = event_key(event.provider, event.event_id)
        claimed = await self._call(self._client.set(key, _dump(event), nx=True, ex=self._ttl_seconds))
        if claimed:
            return True, event
        raw = await self._call(self._client.get(key))
        if raw is None:
            # Expired or discarded between SET and GET; claim again
            claimed = await self._call(self._client.set(key, _dump(event), nx=True, ex=self._ttl_seconds))
            if claimed:
                return True, event
            raw = await self._call(self._client.get(key))
            if raw is None:
                raise TransientStorageError("could not claim webhook event", event_id=event.event_id)
        return False, _load(raw)

    async def mark_processed(self, provider: str, event_id: str, result: Dict[str, Any]) -> None:
        key = event_key(provider, event_id)
        raw = await self._call(self._client.get(key))
        if raw is None:
            return
        event = _load(raw)
        event.status = WebhookStatus.PROCESSED
        event.result = result
        await self._call(self._client.set(key, _dump(event), xx=True, keepttl=True))

    async def discard(self, provider: str, event_id: str) -> None:
        await self._call(self._client.delete(event_key(provider, event_id)))

    async def purge_before(self, cutoff: datetime) -> int:
        return 0
