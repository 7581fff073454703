"""
Webhook Idempotency Gate

    RECEIVED -> signature invalid -> REJECTED (401, or 400 for a bad header)
    RECEIVED -> valid, new id     -> PROCESSING -> APPLIED (200)
    RECEIVED -> valid, known id   -> DUPLICATE (200, cached result, no effect)
    RECEIVED -> valid, no effect  -> IGNORED (200, nothing claimed)

The claim on a provider event id is an atomic insert-if-absent in the
WebhookEventStore, so concurrent deliveries of one event run its side effects
once. If applying the event raises, the claim is dropped so the provider's
next retry can run it.
"""

import hashlib
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import structlog

from src.common.errors import (
    CorruptedPayload,
    MalformedSignatureHeader,
    RecordNotFound,
    SignatureMismatch,
    TransientStorageError,
    UnknownProvider,
)
from src.common.metrics import DOUBLE_PROCESSING, WEBHOOK_DELIVERIES, WEBHOOK_PROCESSING_TIME
from src.common.retry import RetryPolicy, retry_async
from src.events.publisher import EventPublisher, EventType, OutboundEvent
from src.inventory.commit import CommitStatus, InventoryCommitter, order_event_payload
from src.payments.parsers import PARSERS, PaymentEvent, PaymentEventKind
from src.payments.signatures import SignatureVerifier
from src.storage.base import (
    FinalizeOutcome,
    OrderStore,
    PaymentStatus,
    WebhookEvent,
    WebhookEventStore,
    utcnow,
)

logger = structlog.get_logger(__name__)

PAYMENT_FAILED_REASON = "payment_failed"


class WebhookState(str, Enum):
    REJECTED = "rejected"
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass
class WebhookOutcome:
    status_code: int
    state: WebhookState
    result: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {"status": self.state.value, "result": self.result}


def payload_digest(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


class WebhookIdempotencyGate:
    """
    Verify, deduplicate and apply payment provider webhooks.

    Args:
        verifiers: Signature verifier per provider name
        events: Dedup record store
        orders: Order store (refunds)
        committer: Ledger commit/release
        publisher: Outbound event channel
        policy: Retry budget for transient storage errors
        dedup_ttl: How long an event id stays claimed
    """

    def __init__(
        self,
        verifiers: Mapping[str, SignatureVerifier],
        events: WebhookEventStore,
        orders: OrderStore,
        committer: InventoryCommitter,
        publisher: EventPublisher,
        policy: RetryPolicy,
        dedup_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.verifiers = dict(verifiers)
        self.events = events
        self.orders = orders
        self.committer = committer
        self.publisher = publisher
        self.policy = policy
        self.dedup_ttl = dedup_ttl
        self.clock = clock

    async def handle(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        """
        Process one delivery.

        Raises:
            UnknownProvider: no verifier registered for ``provider``
            CorruptedPayload: signature valid but the body is not a usable event
            RecordNotFound: the referenced order does not exist (claim dropped)
            TransientStorageError: storage unavailable after retries (claim dropped)
        """
        verifier = self.verifiers.get(provider)
        parser = PARSERS.get(provider)
        if verifier is None or parser is None:
            raise UnknownProvider(provider=provider)

        try:
            verifier.verify(raw_body, headers)
        except (MalformedSignatureHeader, SignatureMismatch) as e:
            WEBHOOK_DELIVERIES.labels(provider=provider, outcome="rejected").inc()
            logger.warning(
                "webhook_signature_rejected",
                security_event=True,
                provider=provider,
                reason=e.message,
                body_bytes=len(raw_body),
            )
            return WebhookOutcome(e.status_code, WebhookState.REJECTED, {"message": e.message})

        try:
            event = parser(json.loads(raw_body))
        except (ValueError, KeyError, TypeError) as e:
            WEBHOOK_DELIVERIES.labels(provider=provider, outcome="corrupted").inc()
            logger.error("webhook_payload_corrupted", provider=provider, error=str(e))
            raise CorruptedPayload(provider=provider) from e

        if event.kind == PaymentEventKind.IGNORED or not event.order_id:
            return self._acknowledge(event)

        digest = payload_digest(raw_body)
        now = self.clock()
        claimed, record = await retry_async(
            lambda: self.events.insert_if_absent(WebhookEvent(
                provider=provider,
                event_id=event.event_id,
                event_type=event.event_type,
                payload_hash=digest,
                received_at=now,
                expires_at=now + self.dedup_ttl,
            )),
            name="webhook_claim",
            policy=self.policy,
            retry_on=(TransientStorageError,),
        )

        log = logger.bind(provider=provider, event_id=event.event_id, event_type=event.event_type)
        if not claimed:
            if record.payload_hash != digest:
                log.warning("webhook_payload_changed", security_event=True)
            WEBHOOK_DELIVERIES.labels(provider=provider, outcome="duplicate").inc()
            log.info("webhook_duplicate", first_received_at=record.received_at.isoformat(), status=record.status.value)
            return WebhookOutcome(200, WebhookState.DUPLICATE, record.result or {"status": record.status.value})

        started = time.perf_counter()
        try:
            result = await self._apply(event)
        except Exception as e:
            await self._release_claim(event)
            WEBHOOK_DELIVERIES.labels(provider=provider, outcome="failed").inc()
            log.error("webhook_processing_failed", error=str(e), error_type=type(e).__name__)
            raise

        await retry_async(
            lambda: self.events.mark_processed(provider, event.event_id, result),
            name="webhook_mark_processed",
            policy=self.policy,
            retry_on=(TransientStorageError,),
        )
        WEBHOOK_PROCESSING_TIME.labels(provider=provider).observe(time.perf_counter() - started)
        WEBHOOK_DELIVERIES.labels(provider=provider, outcome="applied").inc()
        log.info("webhook_applied", **result)
        return WebhookOutcome(200, WebhookState.APPLIED, result)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete dedup records older than the dedup TTL."""
        cutoff = (now or self.clock()) - self.dedup_ttl
        purged = await self.events.purge_before(cutoff)
        if purged:
            logger.info("webhook_events_purged", purged=purged, cutoff=cutoff.isoformat())
        return purged

    async def _release_claim(self, event: PaymentEvent) -> None:
        try:
            await self.events.discard(event.provider, event.event_id)
        except TransientStorageError as e:
            # The claim now lingers until its TTL; redeliveries report duplicate
            logger.error(
                "webhook_claim_release_failed",
                provider=event.provider,
                event_id=event.event_id,
                error=str(e),
            )

    def _acknowledge(self, event: PaymentEvent) -> WebhookOutcome:
        """Accept an event with no effect here. No claim is taken for it."""
        WEBHOOK_DELIVERIES.labels(provider=event.provider, outcome="ignored").inc()
        result: Dict[str, Any] = {"action": "ignored"}
        if event.kind != PaymentEventKind.IGNORED:
            logger.warning("webhook_without_order_reference", provider=event.provider, event_id=event.event_id)
            result["reason"] = "order_reference_missing"
        else:
            logger.debug("webhook_ignored", provider=event.provider, event_id=event.event_id, event_type=event.event_type)
        return WebhookOutcome(200, WebhookState.IGNORED, result)

    async def _apply(self, event: PaymentEvent) -> Dict[str, Any]:
        if event.kind == PaymentEventKind.SUCCEEDED:
            commit = await self.committer.commit(event.order_id, event.payment_reference)
            if commit.status == CommitStatus.NOT_FOUND:
                raise RecordNotFound("Order not found", order_id=event.order_id)
            if commit.status == CommitStatus.NOOP:
                DOUBLE_PROCESSING.labels(provider=event.provider).inc()
                logger.warning(
                    "payment_already_applied",
                    provider=event.provider,
                    event_id=event.event_id,
                    order_id=event.order_id,
                )
            return {"action": "commit", **commit.as_dict()}

        if event.kind == PaymentEventKind.FAILED:
            release = await self.committer.release(event.order_id, PAYMENT_FAILED_REASON, PaymentStatus.FAILED)
            if release.status == CommitStatus.NOT_FOUND:
                raise RecordNotFound("Order not found", order_id=event.order_id)
            return {"action": "release", **release.as_dict()}

        outcome, order = await retry_async(
            lambda: self.orders.mark_refunded(event.order_id),
            name="mark_refunded",
            policy=self.policy,
            retry_on=(TransientStorageError,),
        )
        if outcome == FinalizeOutcome.NOT_FOUND:
            raise RecordNotFound("Order not found", order_id=event.order_id)
        if outcome == FinalizeOutcome.APPLIED:
            self.publisher.publish(OutboundEvent(
                EventType.ORDER_REFUNDED, order_event_payload(order), key=order.order_id,
            ))
        return {
            "action": "refund",
            "status": outcome.value,
            "order_id": order.order_id,
            "payment_status": order.payment_status.value,
        }
