from datetime import datetime

from db import db
from routes.payments import payment_from_order, payment_stats


class TestPaymentFlattening:
    def test_stk_details_win(self):
        order = {
            "_id": "o1",
            "orderNumber": "ORD-1",
            "customer": {"name": "Jane", "phone": "0712345678"},
            "totalAmount": 1000,
            "paymentStatus": "paid",
            "mpesaPayment": {"mpesaReceiptNumber": "QK1", "amountPaid": 1000, "phoneNumber": "254712345678"},
            "c2bPayment": {"transactionId": "C2B1"},
        }
        p = payment_from_order(order)
        assert p["paymentMethod"] == "mpesa_stk"
        assert p["mpesaReceiptNumber"] == "QK1"

    def test_c2b_fallback(self):
        order = {
            "_id": "o1",
            "totalAmount": 500,
            "c2bPayment": {"transactionId": "C2B1", "amountPaid": 500},
        }
        p = payment_from_order(order)
        assert p["paymentMethod"] == "mpesa_c2b"
        assert p["mpesaReceiptNumber"] == "C2B1"
        assert p["customerName"] == "Unknown Customer"

    def test_stats(self):
        now = datetime(2024, 6, 15, 12)
        payments = [
            {"paymentStatus": "paid", "totalAmount": 1000, "transactionDate": datetime(2024, 6, 15, 9)},
            {"paymentStatus": "paid", "totalAmount": 500, "transactionDate": datetime(2024, 6, 14, 9)},
            {"paymentStatus": "partial", "totalAmount": 800},
            {"paymentStatus": "pending", "totalAmount": 300},
        ]
        stats = payment_stats(payments, now=now)
        assert stats["totalAmount"] == 1500
        assert stats["todayPayments"] == 1
        assert stats["todayAmount"] == 1000
        assert stats["partialOrders"] == 1
        assert stats["pendingOrders"] == 1


class TestPaymentRoutes:
    def test_manager_is_forbidden(self, manager_client):
        assert manager_client.get("/api/admin/payments").status_code == 403

    def test_list(self, admin_client, make_order, make_transaction):
        order = make_order(total=1000)
        make_transaction(amount=1000, isConnectedToOrder=True, connectedOrderId=order["_id"])
        make_transaction(amount=250)
        body = admin_client.get("/api/admin/payments").get_json()
        assert len(body["payments"]) == 1
        statuses = sorted(t["paymentStatus"] for t in body["mpesaTransactions"])
        assert statuses == ["paid", "unconnected"]

    def test_export_with_no_orders(self, admin_client):
        assert admin_client.get("/api/admin/payments/export.csv").status_code == 404

    def test_export(self, admin_client, make_order):
        make_order()
        resp = admin_client.get("/api/admin/payments/export.csv")
        assert resp.mimetype == "text/csv"
        assert resp.get_data(as_text=True).startswith('"Order Number","Customer Name"')

    def test_pending_and_confirm(self, admin_client, make_order, make_transaction):
        order = make_order(total=1000)
        txn = make_transaction(amount=1000, pendingOrderId=order["_id"])
        body = admin_client.get("/api/admin/payments/pending").get_json()
        assert body["counts"]["pending"] == 1
        assert body["pendingTransactions"][0]["order"]["orderNumber"] == order["orderNumber"]

        resp = admin_client.post("/api/admin/payments/confirm", json={
            "transactionId": str(txn["_id"]),
            "confirmedCustomerName": "Jane Wanjiku",
        })
        assert resp.get_json()["ok"] is True
        assert db.orders.find_one({"_id": order["_id"]})["paymentStatus"] == "paid"
        assert db.mpesa_transactions.find_one({"_id": txn["_id"]})["isConnectedToOrder"] is True

    def test_confirm_requires_name(self, admin_client, make_transaction):
        txn = make_transaction()
        resp = admin_client.post("/api/admin/payments/confirm", json={"transactionId": str(txn["_id"])})
        assert resp.status_code == 400

    def test_reject(self, admin_client, make_order, make_transaction):
        order = make_order()
        txn = make_transaction(pendingOrderId=order["_id"])
        resp = admin_client.post("/api/admin/payments/reject", json={
            "transactionId": str(txn["_id"]),
            "rejectionReason": "Wrong customer",
        })
        assert resp.get_json()["ok"] is True
        assert db.mpesa_transactions.find_one({"_id": txn["_id"]})["confirmationStatus"] == "rejected"


class TestTransactionRoutes:
    def test_filter_and_stats(self, admin_client, make_order, make_transaction):
        order = make_order()
        make_transaction(amount=1000, isConnectedToOrder=True, connectedOrderId=order["_id"])
        make_transaction(amount=300)
        body = admin_client.get("/api/admin/mpesa-transactions?filter=unconnected").get_json()
        assert len(body["transactions"]) == 1
        assert body["stats"]["unconnectedAmount"] == 300
        assert body["stats"]["total"] == 2

        body = admin_client.get("/api/admin/mpesa-transactions?filter=connected").get_json()
        assert body["transactions"][0]["connectedOrder"]["orderNumber"] == order["orderNumber"]

    def test_record_manual(self, admin_client):
        resp = admin_client.post("/api/admin/mpesa-transactions", json={"transactionId": "QKMANUAL1", "amountPaid": 700})
        assert resp.status_code == 201
        resp = admin_client.post("/api/admin/mpesa-transactions", json={"transactionId": "QKMANUAL1", "amountPaid": 700})
        assert resp.status_code == 400

    def test_connect_and_disconnect(self, admin_client, make_order, make_transaction):
        order = make_order(total=1000)
        txn = make_transaction(amount=1000)
        resp = admin_client.post("/api/admin/mpesa-transactions/connect", json={
            "transactionId": txn["transactionId"],
            "orderId": str(order["_id"]),
        })
        assert resp.get_json()["ok"] is True
        assert db.orders.find_one({"_id": order["_id"]})["paymentStatus"] == "paid"

        resp = admin_client.post("/api/admin/mpesa-transactions/disconnect", json={"transactionId": txn["transactionId"]})
        assert resp.get_json()["ok"] is True
        assert db.orders.find_one({"_id": order["_id"]})["paymentStatus"] == "unpaid"

    def test_connect_unknown_transaction(self, admin_client, make_order):
        order = make_order()
        resp = admin_client.post("/api/admin/mpesa-transactions/connect", json={
            "transactionId": "NOPE",
            "orderId": str(order["_id"]),
        })
        assert resp.status_code == 404
