"""
Unit Tests - Webhook Idempotency Gate
"""
import asyncio
import json
import pytest
import time
from datetime import timedelta

from src.common.errors import CorruptedPayload, RecordNotFound, TransientStorageError, UnknownProvider
from src.events.publisher import EventType
from src.payments.webhooks import WebhookState
from src.serving.api.dependencies import build_container
from src.storage.base import InventoryState, OrderStatus, PaymentStatus, utcnow
from src.storage.memory import MemoryRepository
from tests.support import VARIANT_ID, place, seed


def stripe_body(order_id, event_type="payment_intent.succeeded", event_id="evt_pi_123", intent="pi_123") -> bytes:
    obj = {"id": intent, "object": "payment_intent", "metadata": {"orderId": order_id}}
    if event_type == "charge.refunded":
        obj = {"id": "ch_1", "object": "charge", "payment_intent": intent, "metadata": {"orderId": order_id}}
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def razorpay_body(order_id, event="payment.captured", payment_id="pay_1") -> bytes:
    return json.dumps({
        "event": event,
        "payload": {"payment": {"entity": {"id": payment_id, "amount": 99800, "notes": {"order_id": order_id}}}},
    }).encode()


def stripe_headers(container, body, timestamp=None):
    return {"Stripe-Signature": container.webhooks.verifiers["stripe"].sign(body, timestamp=timestamp)}


def razorpay_headers(container, body):
    return {"X-Razorpay-Signature": container.webhooks.verifiers["razorpay"].sign(body)}


class CommitOutageRepository(MemoryRepository):
    """Ledger commits fail while ``down`` is set"""

    down = True

    async def commit_order_atomic(self, order_id, payment_reference):
        if self.down:
            raise TransientStorageError("database unavailable")
        return await super().commit_order_atomic(order_id, payment_reference)


class TestIdempotency:
    """Duplicate and concurrent deliveries"""

    async def test_redelivered_event_commits_once(self, container, repo, publisher):
        order = await place(container)
        publisher.drain()
        body = stripe_body(order.order_id)

        outcomes = [
            await container.webhooks.handle("stripe", body, stripe_headers(container, body))
            for _ in range(3)
        ]

        assert [o.state for o in outcomes] == [WebhookState.APPLIED, WebhookState.DUPLICATE, WebhookState.DUPLICATE]
        assert all(o.status_code == 200 for o in outcomes)
        assert outcomes[1].result == outcomes[0].result
        assert outcomes[0].result["action"] == "commit"
        record = await repo.get_inventory(VARIANT_ID)
        assert (record.stock_qty, record.reserved_qty) == (18, 0)
        assert [e.event_type for e in publisher.drain()] == [EventType.ORDER_PAID]

    async def test_concurrent_deliveries_apply_once(self, test_settings, yielding_repo, publisher, policy):
        container = build_container(test_settings, yielding_repo, publisher, policy=policy)
        order = await place(container)
        body = stripe_body(order.order_id)
        headers = stripe_headers(container, body)

        outcomes = await asyncio.gather(*(container.webhooks.handle("stripe", body, headers) for _ in range(3)))

        states = sorted(o.state.value for o in outcomes)
        assert states == ["applied", "duplicate", "duplicate"]
        record = await yielding_repo.get_inventory(VARIANT_ID)
        assert (record.stock_qty, record.reserved_qty) == (18, 0)

    async def test_changed_payload_under_known_id_is_duplicate(self, container, repo):
        order = await place(container)
        body = stripe_body(order.order_id)
        await container.webhooks.handle("stripe", body, stripe_headers(container, body))

        tampered = stripe_body(order.order_id, intent="pi_other")
        outcome = await container.webhooks.handle("stripe", tampered, stripe_headers(container, tampered))

        assert outcome.state == WebhookState.DUPLICATE
        assert (await repo.get_order(order.order_id)).payment_reference == "pi_123"

    async def test_purge_drops_records_older_than_ttl(self, container):
        order = await place(container)
        body = stripe_body(order.order_id)
        await container.webhooks.handle("stripe", body, stripe_headers(container, body))

        assert await container.webhooks.purge_expired(now=utcnow()) == 0
        assert await container.webhooks.purge_expired(now=utcnow() + timedelta(hours=25)) == 1


class TestVerification:
    """Signature failures never reach the ledger"""

    async def test_bad_signature_is_rejected(self, container, repo):
        order = await place(container)
        body = stripe_body(order.order_id)
        headers = {"Stripe-Signature": f"t={int(time.time())},v1={'0' * 64}"}

        outcome = await container.webhooks.handle("stripe", body, headers)

        assert outcome.status_code == 401
        assert outcome.state == WebhookState.REJECTED
        assert (await repo.get_order(order.order_id)).payment_status == PaymentStatus.PENDING
        # Nothing was claimed: a correctly signed retry still applies
        applied = await container.webhooks.handle("stripe", body, stripe_headers(container, body))
        assert applied.state == WebhookState.APPLIED

    async def test_missing_header_is_malformed(self, container):
        outcome = await container.webhooks.handle("stripe", b"{}", {})

        assert outcome.status_code == 400

    async def test_stale_timestamp_is_rejected(self, container):
        order = await place(container)
        body = stripe_body(order.order_id)

        outcome = await container.webhooks.handle(
            "stripe", body, stripe_headers(container, body, timestamp=int(time.time()) - 3600),
        )

        assert outcome.status_code == 401

    async def test_unknown_provider(self, container):
        with pytest.raises(UnknownProvider):
            await container.webhooks.handle("paypal", b"{}", {})

    @pytest.mark.parametrize("body", [b"not json", b'{"id": "evt_1"}', b'{"id": "evt_1", "type": "x", "data": []}'])
    async def test_signed_garbage_is_corrupted(self, container, body):
        with pytest.raises(CorruptedPayload):
            await container.webhooks.handle("stripe", body, stripe_headers(container, body))


class TestProcessingFailures:
    """Claims are dropped when applying the event fails"""

    async def test_unknown_order_releases_claim(self, container):
        body = stripe_body("no-such-order")
        headers = stripe_headers(container, body)

        with pytest.raises(RecordNotFound):
            await container.webhooks.handle("stripe", body, headers)
        with pytest.raises(RecordNotFound):
            await container.webhooks.handle("stripe", body, headers)

    async def test_storage_outage_allows_provider_retry(self, test_settings, publisher, policy):
        repo = CommitOutageRepository()
        await seed(repo)
        container = build_container(test_settings, repo, publisher, policy=policy)
        order = await place(container)
        body = stripe_body(order.order_id)

        with pytest.raises(TransientStorageError):
            await container.webhooks.handle("stripe", body, stripe_headers(container, body))

        repo.down = False
        outcome = await container.webhooks.handle("stripe", body, stripe_headers(container, body))

        assert outcome.state == WebhookState.APPLIED
        assert (await repo.get_inventory(VARIANT_ID)).stock_qty == 18


class TestPaymentOutcomes:
    """Failure, refund and provider variants"""

    async def test_payment_failure_releases_hold(self, container, repo):
        order = await place(container)
        body = stripe_body(order.order_id, event_type="payment_intent.payment_failed", event_id="evt_fail")

        outcome = await container.webhooks.handle("stripe", body, stripe_headers(container, body))

        assert outcome.result["action"] == "release"
        updated = await repo.get_order(order.order_id)
        assert updated.payment_status == PaymentStatus.FAILED
        assert updated.order_status == OrderStatus.CANCELLED
        assert (await repo.get_inventory(VARIANT_ID)).available_qty == 20

    async def test_success_after_release_is_acknowledged_not_applied(self, container, repo):
        order = await place(container)
        await container.checkout.cancel("user-1", order.order_id)
        body = stripe_body(order.order_id)

        outcome = await container.webhooks.handle("stripe", body, stripe_headers(container, body))

        assert outcome.status_code == 200
        assert outcome.result["status"] == "rejected"
        record = await repo.get_inventory(VARIANT_ID)
        assert (record.stock_qty, record.reserved_qty) == (20, 0)

    async def test_refund_marks_order_refunded(self, container, repo, publisher):
        order = await place(container)
        paid = stripe_body(order.order_id)
        await container.webhooks.handle("stripe", paid, stripe_headers(container, paid))
        publisher.drain()
        refund = stripe_body(order.order_id, event_type="charge.refunded", event_id="evt_refund")

        outcome = await container.webhooks.handle("stripe", refund, stripe_headers(container, refund))

        assert outcome.result == {
            "action": "refund",
            "status": "applied",
            "order_id": order.order_id,
            "payment_status": "refunded",
        }
        assert [e.event_type for e in publisher.drain()] == [EventType.ORDER_REFUNDED]
        # Refunds do not restock
        assert (await repo.get_inventory(VARIANT_ID)).stock_qty == 18

    async def test_irrelevant_event_is_ignored(self, container, repo):
        order = await place(container)
        body = stripe_body(order.order_id, event_type="customer.created", event_id="evt_cust")

        outcome = await container.webhooks.handle("stripe", body, stripe_headers(container, body))

        assert outcome.state == WebhookState.IGNORED
        assert outcome.result == {"action": "ignored"}
        assert (await repo.get_order(order.order_id)).inventory_state == InventoryState.HELD
        # No dedup record was kept for it
        assert await container.webhooks.purge_expired(now=utcnow() + timedelta(hours=25)) == 0

    async def test_razorpay_capture_commits(self, container, repo):
        order = await place(container, method="razorpay")
        body = razorpay_body(order.order_id)

        outcome = await container.webhooks.handle("razorpay", body, razorpay_headers(container, body))
        again = await container.webhooks.handle("razorpay", body, razorpay_headers(container, body))

        assert outcome.state == WebhookState.APPLIED
        assert again.state == WebhookState.DUPLICATE
        updated = await repo.get_order(order.order_id)
        assert updated.payment_status == PaymentStatus.PAID
        assert updated.payment_reference == "pay_1"
        assert (await repo.get_inventory(VARIANT_ID)).stock_qty == 18

    async def test_razorpay_authorized_then_captured_commits(self, container, repo):
        order = await place(container, method="razorpay")
        authorized = razorpay_body(order.order_id, event="payment.authorized")
        captured = razorpay_body(order.order_id, event="payment.captured")

        first = await container.webhooks.handle("razorpay", authorized, razorpay_headers(container, authorized))
        second = await container.webhooks.handle("razorpay", captured, razorpay_headers(container, captured))

        assert first.state == WebhookState.IGNORED
        assert second.state == WebhookState.APPLIED
        updated = await repo.get_order(order.order_id)
        assert updated.payment_status == PaymentStatus.PAID
        assert updated.inventory_state == InventoryState.COMMITTED

    async def test_razorpay_captured_and_order_paid_commit_once(self, container, repo):
        order = await place(container, method="razorpay")
        captured = razorpay_body(order.order_id, event="payment.captured")
        paid = razorpay_body(order.order_id, event="order.paid")

        first = await container.webhooks.handle("razorpay", captured, razorpay_headers(container, captured))
        second = await container.webhooks.handle("razorpay", paid, razorpay_headers(container, paid))

        assert first.result["status"] == "applied"
        assert second.result["status"] == "noop"
        assert (await repo.get_inventory(VARIANT_ID)).stock_qty == 18

    async def test_notification_failure_after_commit_keeps_claim(self, container, repo, monkeypatch):
        order = await place(container)
        body = stripe_body(order.order_id)

        async def unavailable(variant_id):
            raise TransientStorageError("replica down")

        monkeypatch.setattr(repo, "get_inventory", unavailable)
        first = await container.webhooks.handle("stripe", body, stripe_headers(container, body))
        again = await container.webhooks.handle("stripe", body, stripe_headers(container, body))

        assert first.state == WebhookState.APPLIED
        assert again.state == WebhookState.DUPLICATE
        assert (await repo.get_order(order.order_id)).payment_status == PaymentStatus.PAID
