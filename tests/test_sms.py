import pytest
import requests

from db import db
from services.sms_service import SMSError, SMSService, notify, notify_payment, sms_service


@pytest.fixture
def gateway(monkeypatch):
    monkeypatch.setattr(sms_service, "user_id", "econuru")
    monkeypatch.setattr(sms_service, "password", "secret")
    return sms_service


class TestFormatPhone:
    @pytest.mark.parametrize("raw,expected", [
        ("0712345678", "+254712345678"),
        ("254712345678", "+254712345678"),
        ("+254712345678", "+254712345678"),
        ("712345678", "+254712345678"),
        ("0712 345 678", "+254712345678"),
    ])
    def test_kenyan_numbers(self, raw, expected):
        assert SMSService.format_phone(raw) == expected


class TestSendSms:
    def test_gateway_payload(self, gateway, fake_http):
        gateway.send_sms("0712345678", "Hello")
        call = fake_http.calls_to(gateway.api_url)[-1]
        data = call["data"]
        assert data["mobile"] == "+254712345678"
        assert data["msg"] == "Hello"
        assert data["sendMethod"] == "quick"
        assert data["msgType"] == "text"
        assert data["duplicatecheck"] == "true"
        assert data["output"] == "json"

    def test_http_error_raises(self, gateway, fake_http):
        fake_http.respond(gateway.api_url, status_code=500, payload={"status": "error"})
        with pytest.raises(SMSError):
            gateway.send_sms("0712345678", "Hello")

    def test_network_error_raises(self, gateway, fake_http):
        fake_http.respond(gateway.api_url, exc=requests.ConnectionError("down"))
        with pytest.raises(SMSError):
            gateway.send_sms("0712345678", "Hello")


class TestTemplates:
    def test_status_symbols(self):
        order = {"orderNumber": "ORD-1"}
        assert sms_service.status_update_text(order, "delivered").startswith("✓")
        assert sms_service.status_update_text(order, "cancelled").startswith("X")
        assert sms_service.status_update_text(order, "in-progress").startswith(">>")

    def test_partial_payment_shows_balance(self):
        order = {"orderNumber": "ORD-1", "customer": {"name": "Jane"}, "remainingBalance": 400}
        text = sms_service.payment_confirmation_text(order, 600, False, "QK123")
        assert "Remaining Balance: Ksh 400" in text
        assert "Payment Received" in text

    def test_full_payment(self):
        order = {"orderNumber": "ORD-1", "customer": {"name": "Jane"}}
        text = sms_service.payment_confirmation_text(order, 1000, True, "QK123")
        assert "Payment Status: PAID" in text


class TestNotify:
    def test_gateway_failure_is_reported(self, fake_http):
        fake_http.respond(sms_service.api_url, status_code=502)
        ok, status = notify(sms_service.send_sms, "0712345678", "hi")
        assert ok is False
        assert status.startswith("error:")

    def test_payment_sms_skipped_without_phone(self):
        assert notify_payment({"customer": {}}, 100, True, "QK1") == (False, "skipped")


class TestSmsRoutes:
    def test_config_hides_secrets(self, admin_client, gateway):
        body = admin_client.get("/api/sms").get_json()
        assert body["configured"] is True
        assert body["config"]["password"] == "Configured"

    def test_send_test_message(self, admin_client, gateway, fake_http):
        resp = admin_client.post("/api/sms", json={"mobile": "0712345678", "type": "test"})
        assert resp.status_code == 200
        assert "test message" in fake_http.calls_to(gateway.api_url)[-1]["data"]["msg"]

    def test_not_configured(self, admin_client, monkeypatch):
        monkeypatch.setattr(sms_service, "user_id", "")
        resp = admin_client.post("/api/sms", json={"mobile": "0712345678", "message": "hi"})
        assert resp.status_code == 503

    def test_broadcast_to_new_customers(self, admin_client, gateway, fake_http):
        db.customers.insert_many([
            {"name": "A", "phone": "0711111111", "status": "new"},
            {"name": "B", "phone": "0722222222", "status": "active"},
        ])
        body = admin_client.post("/api/sms/broadcast", json={"audience": "new", "message": "20% off"}).get_json()
        assert body["total"] == 1
        assert body["sent"] == 1
        assert body["failed"] == 0

    def test_broadcast_specific_requires_ids(self, admin_client):
        resp = admin_client.post("/api/sms/broadcast", json={"audience": "specific", "message": "hi"})
        assert resp.status_code == 400
