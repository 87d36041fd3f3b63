from datetime import datetime, timedelta

import pytest

from db import db
from services.order_service import (
    OrderError,
    create_order,
    delete_order,
    get_order,
    list_orders,
    orders_for_period,
    update_order,
)
from services.sms_service import sms_service


def _payload(**overrides):
    data = {
        "customer": {"name": "Jane Wanjiku", "phone": "0712345678", "email": "jane@example.com"},
        "services": [{"serviceId": "svc1", "serviceName": "Wash & Fold", "quantity": 2, "price": "500"}],
        "totalAmount": 1000,
        "pickDropAmount": 200,
    }
    data.update(overrides)
    return data


def _active_promo(code="SAVE10", discount=10, discount_type="percentage", **overrides):
    now = datetime.utcnow()
    doc = {
        "title": "Ten off",
        "promoCode": code,
        "discount": discount,
        "discountType": discount_type,
        "startDate": now - timedelta(days=1),
        "endDate": now + timedelta(days=5),
        "status": "active",
        "usageCount": 0,
        "usageLimit": 0,
        "minOrderAmount": 0,
        "maxDiscount": 0,
    }
    doc.update(overrides)
    doc["_id"] = db.promotions.insert_one(doc).inserted_id
    return doc


class TestCreateOrder:
    def test_defaults_and_remaining_balance(self):
        order = create_order(_payload())
        assert order["orderNumber"].startswith("ORD-")
        assert order["paymentStatus"] == "unpaid"
        assert order["paymentMethod"] == "cash"
        assert order["laundryStatus"] == "to-be-picked"
        assert order["status"] == "pending"
        assert order["location"] == "main-branch"
        assert order["remainingBalance"] == 1000
        assert order["services"][0]["quantity"] == 2
        assert db.orders.count_documents({}) == 1

    def test_requires_phone_and_services(self):
        with pytest.raises(OrderError) as exc:
            create_order(_payload(services=[]))
        assert exc.value.status == 400
        with pytest.raises(OrderError):
            create_order(_payload(customer={"name": "No Phone"}))

    def test_unknown_enum_values_fall_back(self):
        order = create_order(_payload(paymentMethod="bitcoin", status="weird", paymentStatus="maybe"))
        assert order["paymentMethod"] == "cash"
        assert order["status"] == "pending"
        assert order["paymentStatus"] == "unpaid"

    def test_new_customer_created_then_incremented(self):
        create_order(_payload())
        cust = db.customers.find_one({"phone": "0712345678"})
        assert cust["status"] == "new"
        assert cust["totalOrders"] == 1
        assert cust["totalSpent"] == 1000

        create_order(_payload(totalAmount=500))
        cust = db.customers.find_one({"phone": "0712345678"})
        assert cust["totalOrders"] == 2
        assert cust["totalSpent"] == 1500

    def test_sends_booking_and_admin_sms(self, fake_http):
        order = create_order(_payload())
        sms_calls = fake_http.calls_to(sms_service.api_url)
        assert len(sms_calls) == 2
        assert sms_calls[0]["data"]["mobile"] == "+254712345678"
        assert order["smsStatus"] == "sent"
        assert db.orders.find_one({"_id": order["_id"]})["smsStatus"] == "sent"

    def test_sms_failure_does_not_fail_order(self, fake_http):
        fake_http.respond(sms_service.api_url, status_code=500)
        order = create_order(_payload())
        assert order["smsStatus"].startswith("error:")
        assert db.orders.count_documents({}) == 1

    def test_promo_code_applied_and_counted(self):
        promo = _active_promo()
        order = create_order(_payload(promoCode="save10"))
        assert order["promoCode"] == "SAVE10"
        assert order["promoDiscount"] == 100
        assert order["promotionDetails"]["promotionId"] == str(promo["_id"])
        assert db.promotions.find_one({"_id": promo["_id"]})["usageCount"] == 1

    def test_unknown_promo_code_is_dropped(self):
        order = create_order(_payload(promoCode="NOPE"))
        assert order["promoCode"] == ""
        assert order["promoDiscount"] == 0

    def test_locked_in_promotion_honored_after_delete(self):
        details = {
            "promotionId": "64b000000000000000000000",
            "promoCode": "GONE",
            "discount": 50,
            "discountType": "fixed",
            "calculatedDiscount": 50,
            "lockedIn": True,
        }
        order = create_order(_payload(promotionDetails=details))
        assert order["promoCode"] == "GONE"
        assert order["promoDiscount"] == 50


class TestGetAndDelete:
    def test_invalid_id(self):
        with pytest.raises(OrderError) as exc:
            get_order("not-an-id")
        assert exc.value.status == 400

    def test_missing_order(self):
        with pytest.raises(OrderError) as exc:
            get_order("64b000000000000000000000")
        assert exc.value.status == 404

    def test_delete(self, make_order):
        order = make_order()
        deleted = delete_order(str(order["_id"]))
        assert deleted["orderNumber"] == order["orderNumber"]
        assert db.orders.count_documents({}) == 0


class TestUpdateOrder:
    def test_amount_change_recalculates_payment(self, make_order, make_transaction):
        order = make_order(total=1000)
        make_transaction(
            amount=600,
            isConnectedToOrder=True,
            connectedOrderId=order["_id"],
            confirmationStatus="confirmed",
        )
        updated, recalculated = update_order(str(order["_id"]), {"totalAmount": 600})
        assert recalculated is True
        assert updated["paymentStatus"] == "paid"
        assert updated["remainingBalance"] == 0

    def test_non_amount_change_skips_recalculation(self, make_order):
        order = make_order()
        updated, recalculated = update_order(str(order["_id"]), {"notes": "Handle with care"})
        assert recalculated is False
        assert updated["notes"] == "Handle with care"

    def test_status_change_sends_sms(self, make_order, fake_http):
        order = make_order()
        update_order(str(order["_id"]), {"status": "ready"})
        calls = fake_http.calls_to(sms_service.api_url)
        assert len(calls) == 1
        assert order["orderNumber"] in calls[0]["data"]["msg"]

    def test_same_status_sends_nothing(self, make_order, fake_http):
        order = make_order(status="ready")
        update_order(str(order["_id"]), {"status": "ready"})
        assert fake_http.calls_to(sms_service.api_url) == []

    def test_laundry_ready_sends_delivery_notice(self, make_order, fake_http):
        order = make_order()
        update_order(str(order["_id"]), {"laundryStatus": "ready"})
        assert len(fake_http.calls_to(sms_service.api_url)) == 1

    def test_invalid_status_rejected(self, make_order):
        order = make_order()
        with pytest.raises(OrderError) as exc:
            update_order(str(order["_id"]), {"status": "lost"})
        assert exc.value.status == 400

    def test_unknown_fields_ignored(self, make_order):
        order = make_order()
        updated, _ = update_order(str(order["_id"]), {"orderNumber": "HACKED"})
        assert updated["orderNumber"] == order["orderNumber"]


class TestListOrders:
    def test_search_filter_and_pagination(self, make_order):
        make_order(name="Alice Njeri", phone="0711000001")
        make_order(name="Bob Kamau", phone="0711000002", status="ready")
        make_order(name="Alice Mwangi", phone="0711000003", paymentStatus="paid")

        result = list_orders(search="alice")
        assert result["pagination"]["total"] == 2

        result = list_orders(status="ready")
        assert [o["customer"]["name"] for o in result["orders"]] == ["Bob Kamau"]

        result = list_orders(payment_status="paid")
        assert result["orders"][0]["paymentStatusColor"]

        result = list_orders(limit=2, page=2)
        assert len(result["orders"]) == 1
        assert result["pagination"]["pages"] == 2

    def test_sort_by_total(self, make_order):
        make_order(total=300)
        make_order(total=900)
        make_order(total=600)
        result = list_orders(sort_by="totalAmount", sort_order="asc")
        assert [o["totalAmount"] for o in result["orders"]] == [300, 600, 900]


class TestOrdersForPeriod:
    def test_periods(self, make_order):
        now = datetime(2024, 6, 15, 12, 0)
        make_order(createdAt=now - timedelta(hours=2))
        make_order(createdAt=now - timedelta(days=3))
        make_order(createdAt=now - timedelta(days=10))
        make_order(createdAt=now - timedelta(days=40))

        assert len(orders_for_period("today", now=now)) == 1
        assert len(orders_for_period("week", now=now)) == 2
        assert len(orders_for_period("month", now=now)) == 3
        assert len(orders_for_period("all", now=now)) == 4
