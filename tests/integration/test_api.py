"""
Integration Tests - HTTP API

The app runs over a pre-built in-memory container; no lifespan, no network.
"""
import json
import pytest

from fastapi.testclient import TestClient

from src.config.settings import SecuritySettings
from src.serving.api.dependencies import build_container
from src.serving.api.main import create_api_app

from tests.support import ADDRESS_ID, USER_ID, VARIANT_ID

USER = {"X-User-Id": USER_ID}
OTHER_USER = {"X-User-Id": "user-2"}
ADMIN = {"X-User-Id": "ops-1", "X-User-Role": "admin"}

pytestmark = pytest.mark.integration


def add_item(client, quantity=2, headers=USER):
    return client.post(
        "/cart/items",
        json={"productVariantId": VARIANT_ID, "quantity": quantity},
        headers=headers,
    )


def checkout(client, method="stripe"):
    add_item(client)
    return client.post(
        "/orders",
        json={"shippingAddressId": ADDRESS_ID, "billingAddressId": ADDRESS_ID, "paymentMethod": method},
        headers=USER,
    )


def stripe_delivery(container, order_id, event_id="evt_1", event_type="payment_intent.succeeded"):
    body = json.dumps({
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": "pi_1", "metadata": {"orderId": order_id}}},
    }).encode()
    signature = container.webhooks.verifiers["stripe"].sign(body)
    return body, {"Stripe-Signature": signature, "Content-Type": "application/json"}


class TestCartEndpoints:
    """Cart edits move reservations"""

    def test_add_item(self, client):
        response = add_item(client, quantity=3)

        assert response.status_code == 200
        data = response.json()
        assert data["userId"] == USER_ID
        assert data["items"][0]["productVariantId"] == VARIANT_ID
        assert data["items"][0]["quantity"] == 3
        assert data["items"][0]["expiresAt"]

        inventory = client.get(f"/inventory/{VARIANT_ID}").json()
        assert inventory["reservedQty"] == 3
        assert inventory["availableQty"] == 17

    def test_insufficient_stock(self, client):
        response = add_item(client, quantity=21)

        assert response.status_code == 400
        assert response.json() == {"message": "insufficient stock"}

    def test_unknown_variant(self, client):
        response = client.post("/cart/items", json={"productVariantId": "nope", "quantity": 1}, headers=USER)

        assert response.status_code == 404

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_invalid_quantity(self, client, quantity):
        assert add_item(client, quantity=quantity).status_code == 400

    def test_quantity_beyond_range(self, client):
        response = add_item(client, quantity=10**20)

        assert response.status_code == 400
        assert client.get(f"/inventory/{VARIANT_ID}").json()["reservedQty"] == 0

    def test_malformed_body(self, client):
        response = client.post("/cart/items", json={"quantity": "many"}, headers=USER)

        assert response.status_code == 400
        assert response.json()["message"] == "invalid request"

    def test_requires_user(self, client):
        assert client.get("/cart").status_code == 401

    def test_update_and_remove(self, client):
        item_id = add_item(client).json()["items"][0]["itemId"]

        updated = client.patch(f"/cart/items/{item_id}", json={"quantity": 5}, headers=USER)
        assert updated.json()["items"][0]["quantity"] == 5

        removed = client.delete(f"/cart/items/{item_id}", headers=USER)
        assert removed.json()["items"] == []
        assert client.get(f"/inventory/{VARIANT_ID}").json()["reservedQty"] == 0

    def test_other_users_item_not_found(self, client):
        item_id = add_item(client).json()["items"][0]["itemId"]

        response = client.delete(f"/cart/items/{item_id}", headers=OTHER_USER)

        assert response.status_code == 404


class TestOrderEndpoints:

    def test_checkout(self, client):
        response = checkout(client)

        assert response.status_code == 201
        order = response.json()
        assert order["orderNumber"] == "ORD-000001"
        assert order["paymentStatus"] == "pending"
        assert order["inventoryState"] == "held"
        assert order["grandTotal"] == "998.00"
        assert client.get("/cart", headers=USER).json()["items"] == []
        assert client.get(f"/inventory/{VARIANT_ID}").json()["reservedQty"] == 2

    def test_empty_cart(self, client):
        response = client.post(
            "/orders",
            json={"shippingAddressId": ADDRESS_ID, "billingAddressId": ADDRESS_ID, "paymentMethod": "stripe"},
            headers=USER,
        )

        assert response.status_code == 400
        assert response.json() == {"message": "Cart is empty"}

    def test_lookup_is_owner_only(self, client):
        order_id = checkout(client).json()["orderId"]

        assert client.get(f"/orders/{order_id}", headers=USER).status_code == 200
        assert client.get(f"/orders/{order_id}", headers=OTHER_USER).status_code == 404

    def test_cancel_releases_hold(self, client):
        order_id = checkout(client).json()["orderId"]

        response = client.post(f"/orders/{order_id}/cancel", headers=USER)

        assert response.status_code == 200
        assert response.json()["orderStatus"] == "cancelled"
        assert client.get(f"/inventory/{VARIANT_ID}").json()["availableQty"] == 20

    def test_paid_order_cannot_cancel(self, client, container):
        order_id = checkout(client).json()["orderId"]
        body, headers = stripe_delivery(container, order_id)
        client.post("/webhooks/stripe", content=body, headers=headers)

        response = client.post(f"/orders/{order_id}/cancel", headers=USER)

        assert response.status_code == 409

    def test_fulfilment_requires_admin(self, client):
        order_id = checkout(client, method="cod").json()["orderId"]

        assert client.post(f"/orders/{order_id}/ship", headers=USER).status_code == 403
        assert client.post(f"/orders/{order_id}/ship", headers=ADMIN).json()["orderStatus"] == "shipped"
        delivered = client.post(f"/orders/{order_id}/deliver", headers=ADMIN).json()
        assert delivered["paymentStatus"] == "paid"
        assert delivered["inventoryState"] == "committed"


class TestWebhookEndpoints:
    """Signature check and dedup over HTTP"""

    def test_payment_commits_once(self, client, container):
        order_id = checkout(client).json()["orderId"]
        body, headers = stripe_delivery(container, order_id)

        first = client.post("/webhooks/stripe", content=body, headers=headers)
        second = client.post("/webhooks/stripe", content=body, headers=headers)

        assert first.status_code == 200
        assert first.json()["status"] == "applied"
        assert second.json()["status"] == "duplicate"
        assert second.json()["result"] == first.json()["result"]
        inventory = client.get(f"/inventory/{VARIANT_ID}").json()
        assert (inventory["stockQty"], inventory["reservedQty"]) == (18, 0)

    def test_bad_signature(self, client, container):
        order_id = checkout(client).json()["orderId"]
        body, headers = stripe_delivery(container, order_id)
        tampered = body.replace(b"pi_1", b"pi_2")

        response = client.post("/webhooks/stripe", content=tampered, headers=headers)

        assert response.status_code == 401
        assert client.get(f"/orders/{order_id}", headers=USER).json()["paymentStatus"] == "pending"

    def test_missing_signature_header(self, client):
        response = client.post("/webhooks/stripe", content=b"{}")

        assert response.status_code == 400

    def test_unknown_provider(self, client):
        assert client.post("/webhooks/paypal", content=b"{}").status_code == 404

    def test_unknown_order(self, client, container):
        body, headers = stripe_delivery(container, "missing-order")

        assert client.post("/webhooks/stripe", content=body, headers=headers).status_code == 404

    def test_not_rate_limited(self, client, container):
        order_id = checkout(client).json()["orderId"]
        body, headers = stripe_delivery(container, order_id)

        codes = {client.post("/webhooks/stripe", content=body, headers=headers).status_code for _ in range(20)}

        assert codes == {200}


class TestInventoryEndpoints:

    def test_unknown_record(self, client):
        assert client.get("/inventory/nope").status_code == 404

    def test_set_stock(self, client):
        response = client.put(f"/inventory/{VARIANT_ID}", json={"stockQty": 50}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["availableQty"] == 50

    def test_set_stock_below_reserved(self, client):
        add_item(client, quantity=5)

        response = client.put(f"/inventory/{VARIANT_ID}", json={"stockQty": 4}, headers=ADMIN)

        assert response.status_code == 409

    def test_set_stock_beyond_range(self, client):
        response = client.put(f"/inventory/{VARIANT_ID}", json={"stockQty": 10**20}, headers=ADMIN)

        assert response.status_code == 400

    def test_set_stock_requires_admin(self, client):
        assert client.put(f"/inventory/{VARIANT_ID}", json={"stockQty": 5}, headers=USER).status_code == 403

    def test_set_stock_unknown_variant(self, client):
        assert client.put("/inventory/nope", json={"stockQty": 5}, headers=ADMIN).status_code == 404


class TestHealthEndpoints:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["checks"]["storage"]["backend"] == "memory"

    def test_liveness_and_readiness(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}
        assert client.get("/health/ready").json() == {"status": "ready"}

    def test_metrics(self, client):
        add_item(client, quantity=50)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "reservation" in response.text

    def test_request_id_echoed(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestRateLimit:
    """Shoppers are limited by user id"""

    @pytest.fixture
    def limited_client(self, test_settings, repo, publisher, policy):
        settings = test_settings.model_copy(update={"security": SecuritySettings(rate_limit_requests=3)})
        return TestClient(create_api_app(build_container(settings, repo, publisher, policy=policy)))

    def test_limit_per_user(self, limited_client):
        codes = [limited_client.get("/cart", headers=USER).status_code for _ in range(4)]

        assert codes == [200, 200, 200, 429]
        assert limited_client.get("/cart", headers=OTHER_USER).status_code == 200

    def test_webhooks_exempt(self, limited_client):
        codes = {limited_client.post("/webhooks/paypal", content=b"{}").status_code for _ in range(5)}

        assert codes == {404}
