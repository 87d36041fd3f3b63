"""
Pytest fixtures.

The app talks to an in-memory mongomock database and every outbound HTTP call
(SMS gateway, Daraja) goes through FakeHTTP.
"""
import json
from datetime import datetime
from unittest import mock

import mongomock
import pytest
import requests

# db.py connects at import time
_mongo_patch = mock.patch("pymongo.mongo_client.MongoClient", mongomock.MongoClient)
_mongo_patch.start()

from app import app as flask_app  # noqa: E402
from db import db  # noqa: E402
from services.mpesa_service import mpesa_service  # noqa: E402


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or (json.dumps(payload) if payload is not None else "")
        self.reason = "OK" if status_code < 400 else "Error"

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} {self.reason}")


class FakeHTTP:
    """Records calls and answers by the first registered URL fragment that matches."""

    def __init__(self):
        self.calls = []
        self.routes = []

    def respond(self, fragment, status_code=200, payload=None, text="", exc=None):
        self.routes.insert(0, (fragment, FakeResponse(status_code, payload, text), exc))

    def _answer(self, method, url, kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        for fragment, resp, exc in self.routes:
            if fragment in url:
                if exc is not None:
                    raise exc
                return resp
        return FakeResponse(200, {"status": "success"})

    def post(self, url, **kwargs):
        return self._answer("POST", url, kwargs)

    def get(self, url, **kwargs):
        return self._answer("GET", url, kwargs)

    def calls_to(self, fragment):
        return [c for c in self.calls if fragment in c["url"]]


@pytest.fixture(autouse=True)
def clean_db():
    for name in db.list_collection_names():
        db.drop_collection(name)
    yield


@pytest.fixture(autouse=True)
def fake_http(monkeypatch):
    http = FakeHTTP()
    monkeypatch.setattr(requests, "post", http.post)
    monkeypatch.setattr(requests, "get", http.get)
    return http


@pytest.fixture
def mpesa_configured(monkeypatch, fake_http):
    monkeypatch.setattr(mpesa_service, "consumer_key", "test-consumer-key")
    monkeypatch.setattr(mpesa_service, "consumer_secret", "test-consumer-secret")
    monkeypatch.setattr(mpesa_service, "passkey", "test-passkey-0000")
    monkeypatch.setattr(mpesa_service, "short_code", "174379")
    monkeypatch.setattr(mpesa_service, "environment", "sandbox")
    fake_http.respond("/oauth/v1/generate", payload={"access_token": "tok-123", "expires_in": "3599"})
    return mpesa_service


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True)
    return flask_app


def _login(client, role):
    user_id = db.users.insert_one({
        "username": f"{role}-user",
        "name": f"Test {role.title()}",
        "role": role,
        "status": "active",
    }).inserted_id
    with client.session_transaction() as sess:
        sess["user_id"] = str(user_id)
        sess["role"] = role
    return client


@pytest.fixture
def admin_client(app):
    return _login(app.test_client(), "admin")


@pytest.fixture
def manager_client(app):
    return _login(app.test_client(), "manager")


@pytest.fixture
def anon_client(app):
    return app.test_client()


@pytest.fixture
def make_order():
    """Insert an order document directly, bypassing SMS and promotions."""
    counter = {"n": 0}

    def _make(total=1000, phone="0712345678", name="Jane Wanjiku", **overrides):
        counter["n"] += 1
        now = datetime.utcnow()
        doc = {
            "orderNumber": f"ORD-{100000 + counter['n']}-001",
            "customer": {"name": name, "phone": phone, "email": "", "address": ""},
            "services": [{"serviceId": None, "serviceName": "Wash & Fold", "quantity": 1, "price": str(total)}],
            "location": "main-branch",
            "totalAmount": float(total),
            "pickDropAmount": 0.0,
            "discount": 0.0,
            "remainingBalance": float(total),
            "partialPayments": [],
            "paymentStatus": "unpaid",
            "paymentMethod": "cash",
            "laundryStatus": "to-be-picked",
            "status": "pending",
            "promoCode": "",
            "promoDiscount": 0.0,
            "createdAt": now,
            "updatedAt": now,
        }
        doc.update(overrides)
        doc["_id"] = db.orders.insert_one(doc).inserted_id
        return doc

    return _make


@pytest.fixture
def make_transaction():
    counter = {"n": 0}

    def _make(amount=1000, **overrides):
        counter["n"] += 1
        now = datetime.utcnow()
        doc = {
            "transactionId": f"QK{counter['n']:08d}",
            "mpesaReceiptNumber": f"QK{counter['n']:08d}",
            "transactionDate": now,
            "phoneNumber": "254712345678",
            "amountPaid": float(amount),
            "transactionType": "Pay Bill",
            "billRefNumber": "TILL_PAYMENT",
            "customerName": "John Otieno",
            "isConnectedToOrder": False,
            "connectedOrderId": None,
            "confirmationStatus": "pending",
            "pendingOrderId": None,
            "notes": "",
            "createdAt": now,
            "updatedAt": now,
        }
        doc.update(overrides)
        doc["_id"] = db.mpesa_transactions.insert_one(doc).inserted_id
        return doc

    return _make
