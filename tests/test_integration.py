import asyncio
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import TestingSessionLocal, auth_header

from marketplace import orders, settings
from marketplace.binance_service import generate_signature
from marketplace.errors import Conflict, InsufficientStock, PaymentProviderError
from marketplace.models import Category, Order, OrderItem, Product, SellerEarning, Transaction, User

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
def signed_webhook(monkeypatch):
    monkeypatch.setattr(settings, "BINANCE_SECRET_KEY", WEBHOOK_SECRET)

    def sign(payload, timestamp=None, secret=WEBHOOK_SECRET):
        body = json.dumps(payload)
        timestamp = str(timestamp or int(time.time() * 1000))
        nonce = "n0nce"
        headers = {
            "Content-Type": "application/json",
            "BinancePay-Timestamp": timestamp,
            "BinancePay-Nonce": nonce,
            "BinancePay-Signature": generate_signature(timestamp, nonce, body, secret),
        }
        return body, headers
    return sign


def test_full_order_payment_lifecycle_integration(client, signed_webhook):
    """
    1. Register + login a buyer
    2. Create an order (API -> DB)
    3. Submit a payment proof
    4. Binance Pay webhook PAY_SUCCESS -> order processing, transaction verified
    """
    db = TestingSessionLocal()
    category = Category(name="Lifecycle", description="")
    db.add(category)
    db.commit()
    product = Product(name="Netflix 1 month", price=15, stock=4, category_id=category.id, is_active=True)
    db.add(product)
    db.commit()
    product_id = product.id
    db.close()

    # --- 1. REGISTER + LOGIN ---
    client.post("/auth/register", json={"email": "flow@marketplace.io", "password": "pw"})
    token = client.post("/auth/login", json={"email": "flow@marketplace.io", "password": "pw"}).json()["token"]
    headers = {"Authorization": f"Bearer {token}"}

    # --- 2. CREATE ORDER ---
    created = client.post(
        "/orders",
        json={
            "items": [{"product_id": product_id, "quantity": 1}],
            "contact_name": "Flow",
            "contact_email": "flow@marketplace.io",
        },
        headers=headers
    )
    assert created.status_code == 201
    order_id = created.json()["order_id"]

    # --- 3. PAYMENT PROOF ---
    proof = client.post(f"/orders/{order_id}/payment-proof",
                        json={"payment_proof": "receipt.png", "binance_txid": "BN-42"}, headers=headers)
    assert proof.status_code == 200

    # --- 4. WEBHOOK ---
    body, webhook_headers = signed_webhook({
        "bizType": "PAY",
        "bizStatus": "PAY_SUCCESS",
        "data": json.dumps({"merchantTradeNo": f"ORDER_{order_id}_1700000000000", "transactionId": "BN-42"}),
    })
    response = client.post("/payments/webhook", content=body, headers=webhook_headers)

    assert response.status_code == 200
    assert response.json() == {"returnCode": "SUCCESS", "returnMessage": None}

    # Verify database state after webhook
    db = TestingSessionLocal()
    order = db.get(Order, order_id)
    assert order.status == "processing"
    latest = db.query(Transaction).filter_by(order_id=order_id).order_by(Transaction.id.desc()).first()
    assert latest.status == "verified"
    assert db.get(Product, product_id).stock == 3
    db.close()

    status = client.get(f"/payments/{order_id}/status", headers=headers)
    assert status.json()["transaction"]["status"] == "verified"


def test_webhook_invalid_signature(client, db, buyer, make_product, signed_webhook):
    order = orders.create_order(db, buyer, [orders.LineItem(make_product().id, 1)],
                                orders.Contact(name="A", email="a@marketplace.io"))
    payload = {"bizStatus": "PAY_SUCCESS", "data": {"merchantTradeNo": f"ORDER_{order.id}_1"}}
    body, headers = signed_webhook(payload, secret="not-the-merchant-secret")

    response = client.post("/payments/webhook", content=body, headers=headers)

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid signature"
    db.expire_all()
    assert db.get(Order, order.id).status == "pending"


def test_webhook_missing_headers(client, signed_webhook):
    response = client.post("/payments/webhook", content=json.dumps({"bizStatus": "PAY_SUCCESS"}))

    assert response.status_code == 401


def test_webhook_stale_timestamp(client, signed_webhook):
    stale = int(time.time() * 1000) - (settings.WEBHOOK_TOLERANCE_SECONDS + 60) * 1000
    body, headers = signed_webhook({"bizStatus": "PAY_SUCCESS", "data": {}}, timestamp=stale)

    response = client.post("/payments/webhook", content=body, headers=headers)

    assert response.status_code == 401
    assert response.json()["detail"] == "Webhook timestamp outside tolerance"


@pytest.mark.parametrize("trade_no", ["ORDER_abc_1", "12_1", "ORDER__1", None, "ORDER_1"])
def test_webhook_malformed_trade_number_fails_closed(client, signed_webhook, trade_no):
    body, headers = signed_webhook({"bizStatus": "PAY_SUCCESS", "data": {"merchantTradeNo": trade_no}})

    response = client.post("/payments/webhook", content=body, headers=headers)

    assert response.status_code == 400


def test_webhook_unknown_order(client, signed_webhook):
    body, headers = signed_webhook({"bizStatus": "PAY_SUCCESS", "data": {"merchantTradeNo": "ORDER_404_1"}})

    assert client.post("/payments/webhook", content=body, headers=headers).status_code == 404


def test_webhook_reconciles_outside_the_event_loop(client, signed_webhook, mocker):
    threads = []

    def record(db, event):
        try:
            asyncio.get_running_loop()
            threads.append("event loop")
        except RuntimeError:
            threads.append("worker")

    mocker.patch("marketplace.main.handle_webhook", side_effect=record)
    body, headers = signed_webhook({"bizStatus": "PAY_SUCCESS", "data": {"merchantTradeNo": "ORDER_1_1"}})

    response = client.post("/payments/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert threads == ["worker"]


def test_create_payment_integrity_on_provider_error(client, db, buyer, make_product, mocker):
    """If Binance Pay fails, the order keeps no prepay id."""
    order = orders.create_order(db, buyer, [orders.LineItem(make_product().id, 1)],
                                orders.Contact(name="A", email="a@marketplace.io"))
    mocker.patch("marketplace.binance_service.create_order",
                 side_effect=PaymentProviderError("Payment provider unavailable, try again"))

    response = client.post("/payments/create", json={"order_id": order.id}, headers=auth_header(buyer))

    assert response.status_code == 502
    db.expire_all()
    assert db.get(Order, order.id).binance_txid is None


def _run_concurrently(*calls):
    barrier = threading.Barrier(len(calls))

    def run(call):
        barrier.wait()
        try:
            return call()
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(run, calls))


def test_concurrent_orders_cannot_oversell(db, buyer, make_product):
    product = make_product(price="10.00", stock=2)
    buyer_id, product_id = buyer.id, product.id

    def place():
        session = TestingSessionLocal()
        try:
            actor = session.get(User, buyer_id)
            order = orders.create_order(session, actor, [orders.LineItem(product_id, 2)],
                                        orders.Contact(name="Race", email="race@marketplace.io"))
            return order.id
        finally:
            session.close()

    results = _run_concurrently(place, place)

    successes = [r for r in results if isinstance(r, int)]
    failures = [r for r in results if isinstance(r, InsufficientStock)]
    assert len(successes) == 1
    assert len(failures) == 1
    db.expire_all()
    assert db.get(Product, product_id).stock == 0
    assert db.query(Order).count() == 1
    assert db.query(OrderItem).count() == 1


def test_concurrent_claims_have_one_winner(db, buyer, seller, other_seller, make_product):
    order = orders.create_order(db, buyer, [orders.LineItem(make_product().id, 1)],
                                orders.Contact(name="A", email="a@marketplace.io"))
    order_id = order.id

    def claim(seller_id):
        def call():
            session = TestingSessionLocal()
            try:
                actor = session.get(User, seller_id)
                return orders.update_status(session, actor, order_id, "processing").seller_id
            finally:
                session.close()
        return call

    results = _run_concurrently(claim(seller.id), claim(other_seller.id))

    winners = [r for r in results if isinstance(r, int)]
    conflicts = [r for r in results if isinstance(r, Conflict)]
    assert len(winners) == 1
    assert len(conflicts) == 1
    db.expire_all()
    claimed = db.get(Order, order_id)
    assert claimed.status == "processing"
    assert claimed.seller_id == winners[0]


def test_soft_deleted_product_stays_on_order_history(client, db, buyer, superuser, make_product):
    product = make_product(name="Retired Course")
    order = orders.create_order(db, buyer, [orders.LineItem(product.id, 1)],
                                orders.Contact(name="A", email="a@marketplace.io"))

    client.delete(f"/products/{product.id}", headers=auth_header(superuser))

    listed = client.get("/products").json()["products"]
    assert product.id not in [p["id"] for p in listed]
    history = client.get(f"/orders/{order.id}", headers=auth_header(buyer)).json()["order"]
    assert history["items"][0]["product_id"] == product.id
    assert history["items"][0]["product_name"] == "Retired Course"


def test_ledger_reconciles_with_earnings(client, db, buyer, seller, superuser, make_product):
    headers = auth_header(superuser)
    first = orders.create_order(db, buyer, [orders.LineItem(make_product().id, 1)],
                                orders.Contact(name="A", email="a@marketplace.io"))
    second = orders.create_order(db, buyer, [orders.LineItem(make_product(name="B").id, 1)],
                                 orders.Contact(name="A", email="a@marketplace.io"))

    client.post(f"/admin/sellers/{seller.id}/sales", json={"order_id": first.id, "amount": 12.3}, headers=headers)
    client.post(f"/admin/sellers/{seller.id}/sales", json={"order_id": second.id, "amount": 0.1}, headers=headers)
    client.put(f"/admin/sellers/{seller.id}/earnings", json={"amount": 0.2, "operation": "add"}, headers=headers)
    client.put(f"/admin/sellers/{seller.id}/earnings", json={"amount": 50, "operation": "set"}, headers=headers)
    client.put(f"/admin/sellers/{seller.id}/earnings", json={"amount": -7.5, "operation": "add"}, headers=headers)

    db.expire_all()
    entries = db.query(SellerEarning).filter_by(seller_id=seller.id).all()
    assert len(entries) == 5
    assert sum(e.amount for e in entries) == db.get(User, seller.id).earnings
    assert db.get(User, seller.id).earnings == 42.5
