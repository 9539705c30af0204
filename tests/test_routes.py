import json

from fastapi.testclient import TestClient

from services.cart_service.cart_manager import CartReservationManager
from services.cart_service.cart_repository import ReservationStore
from services.checkout_service.payment_gateway import sign_payload
from services.main import app
from shared.errors import ConflictError
from tests.conftest import WEBHOOK_SECRET


def webhook_request(call):
    raw = json.dumps(
        {
            "event": "charge.success",
            "data": {"reference": call["reference"], "amount": call["amount"], "metadata": call["metadata"]},
        }
    ).encode()
    headers = {"x-paystack-signature": sign_payload(raw, WEBHOOK_SECRET), "Content-Type": "application/json"}
    return raw, headers


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_cart_endpoints(client, auth_header, make_customer, make_product, stock):
    user_id = make_customer()
    product_id = make_product(name="Dashiki", price=30.0, count_in_stock=4)
    headers = auth_header(user_id)

    created = client.post(
        f"/users/{user_id}/cart",
        json={"productId": product_id, "quantity": 2, "selectedSize": "M"},
        headers=headers,
    )
    assert created.status_code == 201
    line = created.json()
    assert line["held_quantity"] == 2
    assert line["selected_size"] == "M"
    assert stock(product_id) == (2, 2)

    cart = client.get(f"/users/{user_id}/cart", headers=headers).json()
    assert cart["item_count"] == 1
    assert cart["total_amount"] == 60.0
    assert client.get(f"/users/{user_id}/cart/count", headers=headers).json()["count"] == 1
    assert client.get(f"/users/{user_id}/cart/{line['id']}", headers=headers).json()["product_name"] == "Dashiki"

    updated = client.put(f"/users/{user_id}/cart/{line['id']}", json={"quantity": 3}, headers=headers)
    assert updated.status_code == 200
    assert updated.json()["quantity"] == 3
    assert stock(product_id) == (1, 3)

    assert client.delete(f"/users/{user_id}/cart/{line['id']}", headers=headers).status_code == 204
    assert stock(product_id) == (4, 0)
    assert client.get(f"/users/{user_id}/cart/{line['id']}", headers=headers).status_code == 404


def test_cart_errors_use_the_error_body(client, auth_header, make_customer, make_product):
    user_id = make_customer()
    product_id = make_product(name="Buba", count_in_stock=1)

    response = client.post(
        f"/users/{user_id}/cart", json={"productId": product_id, "quantity": 3}, headers=auth_header(user_id)
    )
    assert response.status_code == 400
    assert response.json() == {
        "type": "InsufficientStock",
        "message": "Buba: Only 1 left in stock",
        "details": {"product_id": product_id, "requested": 3, "remaining": 1},
    }

    missing = client.post("/users/nobody/cart", json={"productId": product_id}, headers=auth_header("nobody"))
    assert missing.status_code == 404


def test_put_zero_removes_the_line(client, auth_header, make_customer, make_product, stock):
    user_id = make_customer()
    product_id = make_product(count_in_stock=3)
    headers = auth_header(user_id)
    line = client.post(f"/users/{user_id}/cart", json={"productId": product_id}, headers=headers).json()

    response = client.put(f"/users/{user_id}/cart/{line['id']}", json={"quantity": 0}, headers=headers)

    assert response.status_code == 204
    assert stock(product_id) == (3, 0)


def test_cart_routes_require_the_cart_owner(client, auth_header, make_customer, make_product, stock):
    owner = make_customer()
    intruder = make_customer(email="eve@example.com", name="Eve")
    product_id = make_product(count_in_stock=3)
    line = client.post(f"/users/{owner}/cart", json={"productId": product_id}, headers=auth_header(owner)).json()

    assert client.get(f"/users/{owner}/cart").status_code == 401
    assert client.post(f"/users/{owner}/cart", json={"productId": product_id}).status_code == 401
    assert client.get(f"/users/{owner}/cart", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401

    denied = client.delete(f"/users/{owner}/cart/{line['id']}", headers=auth_header(intruder))
    assert denied.status_code == 403
    assert denied.json()["type"] == "Forbidden"
    assert client.put(
        f"/users/{owner}/cart/{line['id']}", json={"quantity": 3}, headers=auth_header(intruder)
    ).status_code == 403
    assert stock(product_id) == (2, 1)

    assert client.get(f"/users/{owner}/cart", headers=auth_header(intruder, is_admin=True)).status_code == 200


def test_checkout_requires_a_bearer_token(client, make_product):
    product_id = make_product()

    response = client.post("/checkout", json={"cartItems": [{"productId": product_id, "quantity": 1}]})

    assert response.status_code == 401


def test_checkout_and_webhook_end_to_end(client, auth_header, gateway, notifier, make_customer, make_product, stock):
    user_id = make_customer()
    product_id = make_product(price=12.5, count_in_stock=5)
    headers = auth_header(user_id)
    line = client.post(f"/users/{user_id}/cart", json={"productId": product_id, "quantity": 2}, headers=headers).json()

    response = client.post(
        "/checkout",
        json={"cartItems": [{"productId": product_id, "quantity": 2, "reservationId": line["id"]}]},
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["authorization_url"].endswith(body["reference"])
    assert stock(product_id) == (3, 2)

    raw, webhook_headers = webhook_request(gateway.initialized[0])

    ack = client.post("/checkout/webhook", content=raw, headers=webhook_headers)
    assert ack.status_code == 200
    assert ack.json()["outcome"] == "processed"
    order_id = ack.json()["order_id"]
    assert stock(product_id) == (3, 0)
    assert len(notifier.sent) == 1

    again = client.post("/checkout/webhook", content=raw, headers=webhook_headers)
    assert again.status_code == 200
    assert again.json()["outcome"] == "duplicate"

    order = client.get(f"/orders/{order_id}", headers=headers).json()
    assert order["payment_id"] == gateway.initialized[0]["reference"]
    assert order["total_price"] == 25.0
    assert client.get(f"/users/{user_id}/cart/count", headers=headers).json()["count"] == 0


def test_checkout_posted_twice_without_line_ids_holds_once(
    client, auth_header, gateway, make_customer, make_product, stock
):
    user_id = make_customer()
    product_id = make_product(price=20.0, count_in_stock=2)
    headers = auth_header(user_id)
    client.post(f"/users/{user_id}/cart", json={"productId": product_id, "quantity": 2}, headers=headers)
    checkout_body = {"cartItems": [{"productId": product_id, "quantity": 2}]}

    first = client.post("/checkout", json=checkout_body, headers=headers)
    second = client.post("/checkout", json=checkout_body, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 200
    assert stock(product_id) == (0, 2)
    assert client.get(f"/users/{user_id}/cart/count", headers=headers).json()["count"] == 1

    raw, webhook_headers = webhook_request(gateway.initialized[1])
    ack = client.post("/checkout/webhook", content=raw, headers=webhook_headers)
    assert ack.json()["outcome"] == "processed"
    assert stock(product_id) == (0, 0)
    assert client.get(f"/users/{user_id}/cart/count", headers=headers).json()["count"] == 0


def test_webhook_with_bad_signature_is_401(client):
    raw = b'{"event": "charge.success", "data": {}}'

    response = client.post("/checkout/webhook", content=raw, headers={"x-paystack-signature": "bogus"})

    assert response.status_code == 401
    assert response.json()["type"] == "Unauthorized"


def test_webhook_that_keeps_conflicting_is_a_500(
    client, auth_header, gateway, make_customer, make_product, monkeypatch, stock
):
    user_id = make_customer()
    product_id = make_product(count_in_stock=3)
    headers = auth_header(user_id)
    client.post(f"/users/{user_id}/cart", json={"productId": product_id}, headers=headers)
    client.post("/checkout", json={"cartItems": [{"productId": product_id, "quantity": 1}]}, headers=headers)

    def conflict(self, reservation):
        raise ConflictError("changed concurrently")

    monkeypatch.setattr(ReservationStore, "mark_processed", conflict)
    raw, webhook_headers = webhook_request(gateway.initialized[0])

    response = client.post("/checkout/webhook", content=raw, headers=webhook_headers)

    assert response.status_code == 500
    assert response.json()["type"] == "MaterializationFailed"
    assert stock(product_id) == (2, 1)


def test_unexpected_errors_render_as_internal_error(client, auth_header, make_customer, monkeypatch):
    user_id = make_customer()

    def broken(self, user_id):
        raise RuntimeError("driver exploded")

    monkeypatch.setattr(CartReservationManager, "get_cart", broken)
    lenient = TestClient(app, raise_server_exceptions=False)

    response = lenient.get(f"/users/{user_id}/cart", headers=auth_header(user_id))

    assert response.status_code == 500
    assert response.json() == {"type": "InternalError", "message": "Internal server error"}


def test_verify_is_rate_limited(client):
    for _ in range(3):
        response = client.get("/checkout/verify", params={"reference": "ORDER-1-1"})
        assert response.status_code == 200
        assert response.json() == {"status": "success", "message": "Transaction verified successfully"}

    limited = client.get("/checkout/verify", params={"reference": "ORDER-1-1"})
    assert limited.status_code == 429

    # A different client address has its own window
    other = client.get(
        "/checkout/verify", params={"reference": "ORDER-1-1"}, headers={"X-Forwarded-For": "203.0.113.9"}
    )
    assert other.status_code == 200


def test_verify_without_reference_is_400(client):
    assert client.get("/checkout/verify").status_code == 400


def test_orders_are_grouped_by_lifecycle(client, auth_header, materializer, make_customer, make_product):
    from services.order_service.materializer import MaterializationRequest

    user_id = make_customer()
    product_id = make_product(count_in_stock=10)
    order_ids = []
    for n in range(3):
        result = materializer.materialize(
            MaterializationRequest(
                user_id=user_id,
                payment_id=f"ORDER-{n}-0",
                items=[{"product_id": product_id, "quantity": 1}],
            )
        )
        order_ids.append(result.order_id)

    admin = auth_header("admin-1", is_admin=True)
    customer = auth_header(user_id)
    assert client.put(f"/orders/{order_ids[1]}/status", json={"status": "delivered"}, headers=admin).status_code == 200
    cancelled = client.put(f"/orders/{order_ids[2]}/status", json={"status": "cancelled"}, headers=admin)
    assert cancelled.json()["status_history"] == ["processed", "cancelled"]
    assert client.put(f"/orders/{order_ids[0]}/status", json={"status": "lost"}, headers=admin).status_code == 400

    grouped = client.get(f"/orders/user/{user_id}", headers=customer).json()
    assert grouped["total"] == 3
    assert [o["id"] for o in grouped["active"]] == [order_ids[0]]
    assert [o["id"] for o in grouped["completed"]] == [order_ids[1]]
    assert [o["id"] for o in grouped["cancelled"]] == [order_ids[2]]

    assert client.get("/orders/count", headers=admin).json() == {"count": 3}
    assert client.get("/orders/missing", headers=customer).status_code == 404


def test_order_routes_enforce_ownership_and_admin(client, auth_header, materializer, make_customer, make_product):
    from services.order_service.materializer import MaterializationRequest

    user_id = make_customer()
    other = make_customer(email="eve@example.com", name="Eve")
    product_id = make_product(count_in_stock=2)
    order_id = materializer.materialize(
        MaterializationRequest(user_id=user_id, payment_id="ORDER-9-9", items=[{"product_id": product_id, "quantity": 1}])
    ).order_id

    # The owner cannot move their own order through its lifecycle
    update = client.put(f"/orders/{order_id}/status", json={"status": "delivered"}, headers=auth_header(user_id))
    assert update.status_code == 403
    assert update.json()["type"] == "Forbidden"
    assert client.put(f"/orders/{order_id}/status", json={"status": "delivered"}).status_code == 401

    assert client.get(f"/orders/{order_id}", headers=auth_header(user_id)).status_code == 200
    assert client.get(f"/orders/{order_id}", headers=auth_header(other)).status_code == 404
    assert client.get(f"/orders/{order_id}", headers=auth_header(other, is_admin=True)).status_code == 200
    assert client.get(f"/orders/user/{user_id}", headers=auth_header(other)).status_code == 403
    assert client.get("/orders/count", headers=auth_header(user_id)).status_code == 403
