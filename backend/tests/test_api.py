import json

from pymongo.errors import PyMongoError

from paystack import GatewayUnavailable
from reconciliation import sign_payload
from storage import OrderStore


def generate_link(client, admin_headers, product, quantity=2):
    response = client.post(
        "/api/payments/generate-link",
        json={"productId": str(product["_id"]), "quantity": quantity},
        headers=admin_headers,
    )
    assert response.status_code == 200, response.get_json()
    return response.get_json()["data"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_login_rejects_bad_password(client, app):
    response = client.post(
        "/api/auth/login", json={"email": "admin@nevellines.com", "password": "wrong"}
    )
    assert response.status_code == 401
    assert response.get_json()["success"] is False


def test_admin_routes_require_token(client):
    assert client.get("/api/payments/links").status_code == 401
    assert client.post("/api/payments/generate-link", json={}).status_code == 401


def test_admin_routes_require_admin_role(client, app, db):
    from flask_jwt_extended import create_access_token

    db.users.insert_one({"email": "shopper@example.com", "role": "customer"})
    with app.app_context():
        token = create_access_token(identity="shopper@example.com")
    response = client.get(
        "/api/payments/links", headers={"Authorization": f"Bearer {token}"}
    )
    assert response.status_code == 403


def test_me(client, admin_headers):
    response = client.get("/api/auth/me", headers=admin_headers)
    assert response.get_json()["user"]["role"] == "admin"


def test_generate_link_and_verify_flow(client, admin_headers, make_product, gateway, db):
    product = make_product(price=5000, quantity=10)
    data = generate_link(client, admin_headers, product)

    assert data["amount"] == 10000.0
    assert data["paymentUrl"].startswith("https://checkout.paystack.com/")
    assert data["customerEmail"] == "Not provided"

    gateway.set_result(data["reference"], "success")
    response = client.get(f"/api/payments/verify/{data['reference']}")

    assert response.status_code == 200
    body = response.get_json()
    assert body["data"]["status"] == "success"
    assert body["message"] == "Payment verified successfully"
    assert db.orders.count_documents({"payment_reference": data["reference"]}) == 1
    assert db.products.find_one({"_id": product["_id"]})["quantity"] == 8


def test_generate_link_validation_error(client, admin_headers):
    response = client.post(
        "/api/payments/generate-link", json={"customAmount": "0.10"}, headers=admin_headers
    )
    assert response.status_code == 400
    assert "Minimum amount" in response.get_json()["error"]


def test_generate_link_gateway_failure(client, admin_headers, gateway, db):
    gateway.initialize_error = GatewayUnavailable("Cannot connect to Paystack API")
    response = client.post(
        "/api/payments/generate-link", json={"customAmount": 1000}, headers=admin_headers
    )
    assert response.status_code == 503
    assert response.get_json()["retryable"] is True
    assert db.payment_links.count_documents({}) == 0


def test_verify_rejects_malformed_reference(client, gateway):
    response = client.get("/api/payments/verify/bad%20ref")
    assert response.status_code == 400
    assert gateway.verify_calls == []


def test_list_links_runs_sweep_and_serializes(client, admin_headers, make_product, db):
    product = make_product()
    data = generate_link(client, admin_headers, product, quantity=1)
    db.payment_links.update_one(
        {"reference": data["reference"]},
        {"$set": {"expires_at": db.payment_links.find_one()["created_at"].replace(year=2000)}},
    )

    response = client.get("/api/payments/links?status=all", headers=admin_headers)

    assert response.status_code == 200
    payload = response.get_json()["data"]
    assert payload["reconciliation"]["expired"] == 1
    link = payload["paymentLinks"][0]
    assert link["status"] == "expired"
    assert link["isExpired"] is True
    assert link["timeRemaining"] == 0
    assert link["timeRemainingFormatted"] == "Expired"
    assert payload["pagination"]["totalItems"] == 1


def test_link_status_and_delete(client, admin_headers, make_product):
    data = generate_link(client, admin_headers, make_product())
    reference = data["reference"]

    response = client.patch(
        f"/api/payments/links/{reference}/status", json={"status": "bogus"}, headers=admin_headers
    )
    assert response.status_code == 400

    response = client.patch(
        f"/api/payments/links/{reference}/status", json={"status": "failed"}, headers=admin_headers
    )
    assert response.get_json()["data"]["status"] == "failed"

    assert client.delete(f"/api/payments/links/{reference}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/payments/links/{reference}", headers=admin_headers).status_code == 404


def test_track_link_view(client, admin_headers, make_product):
    data = generate_link(client, admin_headers, make_product())
    response = client.post(f"/api/payments/link/track/{data['reference']}")
    assert response.get_json()["data"]["viewCount"] == 1
    assert client.post("/api/payments/link/track/PAY-0-NOPE").status_code == 404


def test_webhook_requires_valid_signature(client, admin_headers, make_product, gateway, db):
    data = generate_link(client, admin_headers, make_product())
    gateway.set_result(data["reference"], "success")
    body = json.dumps({"event": "charge.success", "data": {"reference": data["reference"]}})

    response = client.post(
        "/api/payments/webhook/paystack",
        data=body,
        content_type="application/json",
        headers={"x-paystack-signature": "0" * 128},
    )
    assert response.status_code == 400
    assert db.orders.count_documents({}) == 0

    response = client.post(
        "/api/payments/webhook/paystack",
        data=body,
        content_type="application/json",
        headers={
            "x-paystack-signature": sign_payload("sk_test_webhook_secret", body.encode("utf-8"))
        },
    )
    assert response.status_code == 200
    assert response.get_json()["event"] == "charge.success"
    assert db.orders.count_documents({"payment_reference": data["reference"]}) == 1


def test_webhook_unknown_event_acknowledged(client):
    body = json.dumps({"event": "subscription.create", "data": {}}).encode("utf-8")
    response = client.post(
        "/api/payments/webhook/paystack",
        data=body,
        content_type="application/json",
        headers={"x-paystack-signature": sign_payload("sk_test_webhook_secret", body)},
    )
    assert response.status_code == 200
    assert response.get_json()["event"] == "ignored"


def test_store_order_and_cancel_routes(client, admin_headers, make_product, db):
    product = make_product(price=2500, quantity=2)
    response = client.post(
        "/api/orders",
        json={
            "customerName": "Ada Obi",
            "customerEmail": "ada@example.com",
            "customerPhone": "08000000000",
            "paymentMethod": "cash_on_delivery",
            "items": [{"productId": str(product["_id"]), "quantity": 2}],
        },
    )
    assert response.status_code == 201
    order = response.get_json()["data"]
    assert order["total"] == 5000.0
    assert order["items"][0]["lineTotal"] == 5000.0

    fetched = client.get(f"/api/orders/order/{order['orderNumber']}")
    assert fetched.get_json()["order"]["id"] == order["id"]
    mine = client.get("/api/orders/customer/ADA@example.com").get_json()["orders"]
    assert [entry["orderNumber"] for entry in mine] == [order["orderNumber"]]

    response = client.patch(f"/api/orders/cancel/{order['id']}")
    assert response.status_code == 200
    assert response.get_json()["order"]["status"] == "cancelled"
    assert db.products.find_one({"_id": product["_id"]})["quantity"] == 2
    assert client.patch(f"/api/orders/cancel/{order['id']}").status_code == 400


def test_admin_order_listing_and_status(client, admin_headers, make_product):
    product = make_product(price=1000, quantity=5)
    created = client.post(
        "/api/orders",
        json={
            "customerName": "Bola",
            "customerEmail": "bola@example.com",
            "customerPhone": "0801",
            "paymentMethod": "paystack",
            "items": [{"productId": str(product["_id"]), "quantity": 1}],
        },
    ).get_json()["data"]

    listing = client.get("/api/orders?search=bola", headers=admin_headers).get_json()["data"]
    assert listing["pagination"]["totalItems"] == 1

    response = client.patch(
        f"/api/orders/{created['id']}/status",
        json={"status": "completed", "paymentStatus": "paid"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.get_json()["order"]["paymentStatus"] == "paid"
    cancel = client.patch(f"/api/orders/admin/cancel/{created['id']}", headers=admin_headers)
    assert cancel.status_code == 400


def test_product_admin_routes(client, admin_headers):
    response = client.post(
        "/api/products",
        json={"name": "Kaftan", "price": 27000, "quantity": 0},
        headers=admin_headers,
    )
    assert response.status_code == 201
    product = response.get_json()["product"]
    assert product["inStock"] is False
    assert product["badge"] == "SOLD OUT"

    response = client.put(
        f"/api/products/{product['id']}", json={"quantity": 4}, headers=admin_headers
    )
    updated = response.get_json()["product"]
    assert updated["inStock"] is True
    assert updated["badge"] is None
    assert client.get(f"/api/products/{product['id']}").status_code == 200
    assert len(client.get("/api/products").get_json()["products"]) == 1


def test_settings_round_trip(client, admin_headers):
    response = client.put(
        "/api/settings",
        json={"shipping": {"default_shipping_fee": 1500, "free_shipping_threshold": 50000}},
        headers=admin_headers,
    )
    assert response.status_code == 200
    settings = client.get("/api/settings").get_json()["settings"]
    assert settings["shipping"]["default_shipping_fee"] == 1500
    assert settings["currency"]["code"] == "NGN"


def test_gateway_transactions_proxy(client, admin_headers):
    response = client.get("/api/payments/transactions?perPage=5", headers=admin_headers)
    assert response.status_code == 200
    assert response.get_json()["meta"] == {"page": 1}
    response = client.get("/api/payments/transaction/42", headers=admin_headers)
    assert response.get_json()["data"] == {"id": "42"}


def place_order(client, product, quantity, email="ada@example.com"):
    response = client.post(
        "/api/orders",
        json={
            "customerName": "Ada Obi",
            "customerEmail": email,
            "customerPhone": "08000000000",
            "paymentMethod": "bank_transfer",
            "items": [{"productId": str(product["_id"]), "quantity": quantity}],
        },
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["data"]


def test_webhook_rejects_non_ascii_signature(client, admin_headers, make_product, gateway, db):
    data = generate_link(client, admin_headers, make_product())
    gateway.set_result(data["reference"], "success")
    body = json.dumps({"event": "charge.success", "data": {"reference": data["reference"]}})

    response = client.post(
        "/api/payments/webhook/paystack",
        data=body,
        content_type="application/json",
        headers={"x-paystack-signature": "éabc"},
    )

    assert response.status_code == 400
    assert response.get_json()["success"] is False
    assert db.orders.count_documents({}) == 0


def test_status_route_cancel_restores_stock(client, admin_headers, make_product, db):
    product = make_product(price=1000, quantity=2)
    order = place_order(client, product, 2)
    assert db.products.find_one({"_id": product["_id"]})["quantity"] == 0

    response = client.patch(
        f"/api/orders/{order['id']}/status", json={"status": "cancelled"}, headers=admin_headers
    )
    assert response.status_code == 200
    assert response.get_json()["order"]["status"] == "cancelled"
    assert db.products.find_one({"_id": product["_id"]})["quantity"] == 2

    response = client.patch(
        f"/api/orders/{order['id']}/status", json={"status": "processing"}, headers=admin_headers
    )
    assert response.status_code == 400
    assert db.products.find_one({"_id": product["_id"]})["quantity"] == 2


def test_status_route_keeps_paid_orders_paid(client, admin_headers, make_product, db):
    order = place_order(client, make_product(quantity=3), 1)
    client.patch(
        f"/api/orders/{order['id']}/status", json={"paymentStatus": "paid"}, headers=admin_headers
    )

    response = client.patch(
        f"/api/orders/{order['id']}/status", json={"paymentStatus": "failed"}, headers=admin_headers
    )

    assert response.status_code == 400
    assert db.orders.find_one({"order_number": order["orderNumber"]})["payment_status"] == "paid"


def test_product_stock_route(client, admin_headers, make_product):
    product = make_product(quantity=3, badge="NEW")
    url = f"/api/products/{product['_id']}/stock"

    response = client.patch(url, json={"quantity": 5}, headers=admin_headers)
    assert response.status_code == 200
    assert response.get_json()["product"]["quantity"] == 5

    response = client.patch(url, json={"quantity": 2, "operation": "increment"}, headers=admin_headers)
    assert response.get_json()["product"]["quantity"] == 7

    response = client.patch(url, json={"quantity": 10, "operation": "decrement"}, headers=admin_headers)
    sold_out = response.get_json()["product"]
    assert sold_out["quantity"] == 0
    assert sold_out["inStock"] is False
    assert sold_out["badge"] == "SOLD OUT"

    response = client.patch(url, json={"quantity": 4, "operation": "set"}, headers=admin_headers)
    restocked = response.get_json()["product"]
    assert restocked["inStock"] is True
    assert restocked["badge"] is None

    assert client.patch(url, json={"quantity": -1}, headers=admin_headers).status_code == 400
    assert (
        client.patch(url, json={"quantity": 1, "operation": "double"}, headers=admin_headers).status_code
        == 400
    )
    missing = "/api/products/64b7f0c2a1b2c3d4e5f60718/stock"
    assert client.patch(missing, json={"quantity": 1}, headers=admin_headers).status_code == 404
    assert client.patch(url, json={"quantity": 1}).status_code == 401


def test_delete_product_route(client, admin_headers, make_product, db):
    product = make_product()
    url = f"/api/products/{product['_id']}"

    response = client.delete(url, headers=admin_headers)
    assert response.status_code == 200
    assert response.get_json()["message"] == "Product deleted successfully"
    assert db.products.count_documents({}) == 0
    assert client.delete(url, headers=admin_headers).status_code == 404


def test_order_stats(client, admin_headers, make_product):
    product = make_product(price=1000, quantity=10)
    earned = place_order(client, product, 3)
    place_order(client, product, 1, email="bola@example.com")
    dropped = place_order(client, product, 2)

    client.patch(
        f"/api/orders/{earned['id']}/status",
        json={"status": "completed", "paymentStatus": "paid"},
        headers=admin_headers,
    )
    client.patch(f"/api/orders/admin/cancel/{dropped['id']}", headers=admin_headers)

    assert client.get("/api/orders/admin/stats").status_code == 401
    response = client.get("/api/orders/admin/stats", headers=admin_headers)
    assert response.status_code == 200
    stats = response.get_json()["stats"]
    assert stats["totalOrders"] == 3
    assert stats["pendingOrders"] == 1
    assert stats["completedOrders"] == 1
    assert stats["cancelledOrders"] == 1
    assert stats["totalRevenue"] == 3000.0
    assert stats["monthlyRevenue"] == 3000.0
    assert stats["dailyOrders"] == 3
    top = stats["topCustomers"][0]
    assert top["customerEmail"] == "ada@example.com"
    assert top["totalOrders"] == 2
    assert top["totalSpent"] == 5000.0
    assert len(stats["recentOrders"]) == 3


def test_database_errors_return_json(client, mocker):
    mocker.patch.object(OrderStore, "find", side_effect=PyMongoError("connection refused"))

    response = client.get("/api/orders/order/ORD-1-AAAAAA")

    assert response.status_code == 500
    body = response.get_json()
    assert body["success"] is False
    assert "Database error" in body["error"]
