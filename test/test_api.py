"""Tests for the HTTP API."""
import httpx
import pytest
from fastapi.testclient import TestClient

from _helper import STORE_ID
from orderflow.main import create_app


@pytest.fixture
def api_client(settings, receiver):
    http = httpx.AsyncClient(transport=httpx.MockTransport(receiver.handler))
    with TestClient(create_app(settings, http=http)) as client:
        yield client


def drain(client: TestClient) -> int:
    return client.portal.call(client.app.state.engine.worker.drain)


def create_order(client: TestClient, quantity: int = 3, unit_price: str = "10.00") -> dict:
    response = client.post(
        "/orders",
        json={"store_id": STORE_ID, "items": [{"title": "Widget", "quantity": quantity, "unit_price": unit_price}]},
    )
    assert response.status_code == 201
    return response.json()


class TestHealth:
    def test_health(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_metrics(self, api_client):
        create_order(api_client)
        response = api_client.get("/metrics")
        assert response.status_code == 200
        assert "order_transitions_total" in response.text


class TestOrders:
    def test_create_and_get(self, api_client):
        order = create_order(api_client)
        assert order["total"] == "30.00"
        response = api_client.get(f"/orders/{order['id']}")
        assert response.status_code == 200
        assert response.json()["number"] == order["number"]

    def test_unknown_order_is_404(self, api_client):
        response = api_client.get("/orders/missing")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_over_fulfillment_is_422(self, api_client):
        order = create_order(api_client)
        item_id = order["items"][0]["id"]
        url = f"/orders/{order['id']}/fulfillments"
        assert api_client.post(url, json={"items": [{"order_item_id": item_id, "quantity": 3}]}).status_code == 201

        response = api_client.post(url, json={"items": [{"order_item_id": item_id, "quantity": 1}]})
        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "insufficient_quantity"
        assert body["remaining"] == "0"
        assert body["orderItemId"] == item_id

    def test_backward_status_is_409(self, api_client):
        order = create_order(api_client)
        assert api_client.post(f"/orders/{order['id']}/status", json={"status": "shipped"}).status_code == 200
        response = api_client.post(f"/orders/{order['id']}/status", json={"status": "processing"})
        assert response.status_code == 409
        assert response.json()["current"] == "shipped"

    def test_refund_flow(self, api_client):
        order = create_order(api_client, quantity=1, unit_price="100.00")
        api_client.post(f"/orders/{order['id']}/pay")
        url = f"/orders/{order['id']}/refunds"
        assert api_client.post(url, json={"amount": "40.00"}).status_code == 201
        assert api_client.post(url, json={"amount": "70.00"}).status_code == 422
        ledger = api_client.get(f"/orders/{order['id']}/ledger").json()
        assert ledger["remainingRefundable"] == "60.00"

    def test_refund_before_payment_is_409(self, api_client):
        order = create_order(api_client)
        response = api_client.post(f"/orders/{order['id']}/refunds", json={"amount": "5.00"})
        assert response.status_code == 409
        assert response.json()["entity"] == "payment"
        assert api_client.post(f"/orders/{order['id']}/pay").status_code == 200

    def test_cancel_without_body(self, api_client):
        order = create_order(api_client)
        response = api_client.post(f"/orders/{order['id']}/cancel")
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        response = api_client.post(f"/orders/{order['id']}/pay")
        assert response.status_code == 409
        assert response.json()["error"] == "order_not_editable"

    def test_return_workflow(self, api_client):
        order = create_order(api_client, quantity=5)
        api_client.post(f"/orders/{order['id']}/pay")
        item_id = order["items"][0]["id"]
        base = f"/orders/{order['id']}/returns"
        ret = api_client.post(base, json={"items": [{"order_item_id": item_id, "quantity": 2}]}).json()
        api_client.post(f"{base}/{ret['id']}/receive", json={"received": {item_id: 1}})
        response = api_client.post(f"{base}/{ret['id']}/complete", json={"refund_amount": "10.00"})
        assert response.status_code == 200
        assert response.json()["refund_amount"] == "10.00"
        ledger = api_client.get(f"/orders/{order['id']}/ledger").json()
        assert ledger["items"][0]["returnedQuantity"] == 1

    def test_order_edit_actions(self, api_client):
        order = create_order(api_client)
        item_id = order["items"][0]["id"]
        base = f"/orders/{order['id']}/edits"
        edit = api_client.post(
            base, json={"changes": [{"action": "update_quantity", "order_item_id": item_id, "quantity": 4}]}
        ).json()
        assert api_client.post(f"{base}/{edit['id']}/request").status_code == 200
        assert api_client.post(f"{base}/{edit['id']}/confirm").json()["status"] == "confirmed"
        assert api_client.get(f"/orders/{order['id']}").json()["total"] == "40.00"


class TestWebhooks:
    def create_webhook(self, client, host="shop.example", events=("order.*",)):
        response = client.post(
            "/webhooks",
            json={"store_id": STORE_ID, "url": f"https://{host}/hook", "events": list(events), "name": host},
        )
        assert response.status_code == 201
        return response.json()

    def test_create_returns_secret_once(self, api_client):
        webhook = self.create_webhook(api_client)
        assert webhook["secret"]
        listed = api_client.get("/webhooks", params={"store_id": STORE_ID}).json()
        assert [w["id"] for w in listed] == [webhook["id"]]
        assert "secret" not in listed[0]

    def test_rejects_non_http_url(self, api_client):
        response = api_client.post(
            "/webhooks", json={"store_id": STORE_ID, "url": "ftp://x.example", "events": ["*"]}
        )
        assert response.status_code == 422

    def test_update_and_delete(self, api_client):
        webhook = self.create_webhook(api_client)
        response = api_client.patch(f"/webhooks/{webhook['id']}", json={"is_active": False})
        assert response.json()["is_active"] is False
        assert api_client.delete(f"/webhooks/{webhook['id']}").status_code == 204
        assert api_client.get(f"/webhooks/{webhook['id']}").status_code == 404

    def test_patch_can_clear_name(self, api_client):
        webhook = self.create_webhook(api_client)
        response = api_client.patch(f"/webhooks/{webhook['id']}", json={"name": None})
        assert response.status_code == 200
        assert response.json()["name"] is None

        response = api_client.patch(f"/webhooks/{webhook['id']}", json={"url": None})
        assert response.status_code == 422
        response = api_client.patch(f"/webhooks/{webhook['id']}", json={"url": "http://a:notaport/hook"})
        assert response.status_code == 422

    def test_test_endpoint(self, api_client, receiver):
        webhook = self.create_webhook(api_client)
        body = api_client.post(f"/webhooks/{webhook['id']}/test").json()
        assert body["success"] is True
        assert body["statusCode"] == 200

        receiver.unreachable.add("shop.example")
        body = api_client.post(f"/webhooks/{webhook['id']}/test").json()
        assert body["success"] is False
        assert "Connection refused" in body["error"]

    def test_lifecycle_event_is_delivered_and_logged(self, api_client, receiver):
        webhook = self.create_webhook(api_client, events=["order.cancelled"])
        order = create_order(api_client)
        api_client.post(f"/orders/{order['id']}/cancel", json={"reason": "fraud"})
        drain(api_client)

        (request,) = receiver.requests
        assert request.headers["X-Webhook-Event"] == "order.cancelled"
        logs = api_client.get(f"/webhooks/{webhook['id']}/logs").json()["logs"]
        assert logs[0]["status"] == "success"

        response = api_client.post(f"/webhooks/logs/{logs[0]['id']}/retry")
        assert response.json()["success"] is True
        assert len(api_client.get(f"/webhooks/{webhook['id']}/logs").json()["logs"]) == 2


class TestEvents:
    def test_publish_external_event(self, api_client, receiver):
        TestWebhooks().create_webhook(api_client, host="catalog.example", events=["product.*"])
        response = api_client.post(
            "/events/publish", json={"store_id": STORE_ID, "event": "product.updated", "payload": {"sku": "A-1"}}
        )
        assert response.status_code == 202
        drain(api_client)
        assert receiver.requests[0].headers["X-Webhook-Event"] == "product.updated"

    def test_lifecycle_events_cannot_be_published(self, api_client):
        response = api_client.post("/events/publish", json={"store_id": STORE_ID, "event": "order.cancelled"})
        assert response.status_code == 422


class TestAdmin:
    def test_dlq_empty(self, api_client):
        assert api_client.get("/admin/dlq").json() == {"count": 0, "jobs": []}
        assert api_client.post("/admin/dlq/replay").json() == {"status": "ok", "replayed": 0}
