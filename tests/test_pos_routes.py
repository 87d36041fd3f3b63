from datetime import datetime, timedelta

import pytest

import routes.pos as pos_routes
from db import db
from services.mpesa_events import PaymentFlowError


@pytest.fixture
def catalog():
    db.categories.insert_one({"name": "Laundry", "icon": "shirt", "color": "#3B82F6", "active": True})
    wash = db.services.insert_one({
        "name": "Wash & Fold", "category": "Laundry", "price": "From Ksh 150", "active": True,
    }).inserted_id
    db.services.insert_one({"name": "Old Service", "category": "Laundry", "price": "90", "active": False})
    return {"wash": str(wash)}


def _cart(catalog, **overrides):
    body = {
        "customer": {"name": "Jane Wanjiku", "phone": "0712345678"},
        "items": [
            {"serviceId": catalog["wash"], "serviceName": "tampered", "price": "1", "quantity": 4},
            {"serviceName": "Custom stain removal", "price": "200", "quantity": 1},
        ],
        "pickDropAmount": 100,
        "discount": 50,
    }
    body.update(overrides)
    return body


class TestQuote:
    def test_catalog_price_wins_over_client(self, admin_client, catalog):
        body = admin_client.post("/api/pos/quote", json=_cart(catalog)).get_json()
        assert body["items"][0]["serviceName"] == "Wash & Fold"
        assert body["subtotal"] == 800
        assert body["finalTotal"] == 850

    def test_partial_payment(self, admin_client, catalog):
        body = admin_client.post(
            "/api/pos/quote", json=_cart(catalog, paymentStatus="partial", partialAmount=300),
        ).get_json()
        assert body["partialAmount"] == 300
        assert body["remainingAmount"] == 550

    def test_promo_code_locked_in(self, admin_client, catalog):
        now = datetime.utcnow()
        db.promotions.insert_one({
            "title": "Ten off", "promoCode": "TEN", "discount": 10, "discountType": "percentage",
            "startDate": now - timedelta(days=1), "endDate": now + timedelta(days=1),
            "status": "active", "usageCount": 0, "usageLimit": 0, "minOrderAmount": 0, "maxDiscount": 0,
        })
        body = admin_client.post("/api/pos/quote", json=_cart(catalog, promoCode="TEN")).get_json()
        assert body["promotion"]["lockedIn"] is True
        assert body["promoDiscount"] == 80
        assert body["finalTotal"] == 770

    def test_unknown_promo_code(self, admin_client, catalog):
        resp = admin_client.post("/api/pos/quote", json=_cart(catalog, promoCode="NOPE"))
        assert resp.status_code == 404

    def test_empty_cart(self, admin_client):
        assert admin_client.post("/api/pos/quote", json={"items": []}).status_code == 400


class TestCheckout:
    def test_cash_checkout_creates_order(self, admin_client, catalog):
        resp = admin_client.post("/api/pos/checkout", json=_cart(catalog))
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["stkPush"] is None
        order = db.orders.find_one({})
        assert order["totalAmount"] == 850
        assert order["paymentMethod"] == "cash"

    def test_mpesa_checkout_pushes_stk(self, admin_client, catalog, monkeypatch):
        calls = []

        def fake_initiate(order_id, phone, amount, payment_type):
            calls.append((phone, amount, payment_type))
            return {"checkoutRequestId": "ws_CO_1", "message": "STK push sent"}

        monkeypatch.setattr(pos_routes, "initiate_stk_payment", fake_initiate)
        body = admin_client.post(
            "/api/pos/checkout",
            json=_cart(catalog, paymentMethod="mpesa_stk", mpesaPhone="0700111222"),
        ).get_json()
        assert body["stkPush"]["ok"] is True
        assert calls == [("0700111222", 850, "full")]

    def test_partial_stk_charges_partial_amount(self, admin_client, catalog, monkeypatch):
        calls = []
        monkeypatch.setattr(
            pos_routes, "initiate_stk_payment",
            lambda order_id, phone, amount, payment_type: calls.append(amount) or {"checkoutRequestId": "x"},
        )
        admin_client.post("/api/pos/checkout", json=_cart(
            catalog, paymentMethod="mpesa_stk", paymentStatus="partial", partialAmount=300, paymentType="partial",
        ))
        assert calls == [300]

    def test_stk_failure_keeps_order(self, admin_client, catalog, monkeypatch):
        def failing(*args):
            raise PaymentFlowError("M-Pesa callback URL is not configured (must be https)", 500)

        monkeypatch.setattr(pos_routes, "initiate_stk_payment", failing)
        resp = admin_client.post("/api/pos/checkout", json=_cart(catalog, paymentMethod="mpesa_stk"))
        assert resp.status_code == 201
        assert resp.get_json()["stkPush"]["ok"] is False
        assert db.orders.count_documents({}) == 1


class TestPosCatalog:
    def test_groups_active_services(self, admin_client, catalog):
        body = admin_client.get("/api/pos/catalog").get_json()
        assert len(body["categories"]) == 1
        group = body["categories"][0]
        assert group["color"] == "#3B82F6"
        assert [s["name"] for s in group["services"]] == ["Wash & Fold"]
        assert group["services"][0]["numericPrice"] == 150
