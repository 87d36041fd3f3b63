from __future__ import annotations

import csv
import io
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import Blueprint, Response, jsonify, request

from config_constants import RECONCILE_ROLES
from db import db
from login import get_current_identity, role_required
from services.activity_audit import audit_action
from services.payment_audit import list_payment_audit_logs
from services.reconciliation import (
    ReconciliationError,
    confirm_pending,
    connect_transaction,
    disconnect_transaction,
    list_pending_confirmations,
    record_manual_transaction,
    reject_pending,
)
from services.utils import as_float, as_int, serialize

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/api/admin")

orders_col = db["orders"]
mpesa_txn_col = db["mpesa_transactions"]

PAYMENT_CSV_HEADERS = [
    "Order Number",
    "Customer Name",
    "Customer Phone",
    "Customer Email",
    "Payment Method",
    "Payment Status",
    "Total Amount (KES)",
    "Amount Paid (KES)",
    "M-Pesa Receipt",
    "Transaction Date",
    "Payment Phone",
    "Order Created",
    "Last Updated",
]


def payment_from_order(order: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten an order's payment details: STK details first, then top-level fields, then C2B."""
    method = order.get("paymentMethod") or "cash"
    receipt = None
    when = None
    phone = None
    paid = order.get("amountPaid")
    stk = order.get("mpesaPayment") or {}
    c2b = order.get("c2bPayment") or {}
    total = as_float(order.get("totalAmount"))

    if stk.get("mpesaReceiptNumber"):
        method = "mpesa_stk"
        receipt, when, phone = stk.get("mpesaReceiptNumber"), stk.get("transactionDate"), stk.get("phoneNumber")
        paid = stk.get("amountPaid") or total
    elif order.get("mpesaReceiptNumber"):
        method = "mpesa_stk"
        receipt, when, phone = order.get("mpesaReceiptNumber"), order.get("transactionDate"), order.get("phoneNumber")
        paid = order.get("amountPaid") or total
    elif c2b.get("transactionId"):
        method = "mpesa_c2b"
        receipt = c2b.get("mpesaReceiptNumber") or c2b.get("transactionId")
        when, phone = c2b.get("transactionDate"), c2b.get("phoneNumber")
        paid = c2b.get("amountPaid") or total

    customer = order.get("customer") or {}
    return {
        "_id": order["_id"],
        "orderNumber": order.get("orderNumber"),
        "customerName": customer.get("name") or "Unknown Customer",
        "customerPhone": customer.get("phone") or phone or "N/A",
        "customerEmail": customer.get("email") or "",
        "paymentMethod": method,
        "paymentStatus": order.get("paymentStatus") or "unpaid",
        "totalAmount": total,
        "amountPaid": as_float(paid),
        "mpesaReceiptNumber": receipt,
        "transactionDate": when or order.get("updatedAt"),
        "phoneNumber": phone,
        "createdAt": order.get("createdAt"),
        "updatedAt": order.get("updatedAt"),
    }


def payment_stats(payments: List[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    paid = [p for p in payments if p["paymentStatus"] == "paid"]
    today = [
        p for p in paid
        if isinstance(p.get("transactionDate") or p.get("updatedAt"), datetime)
        and (p.get("transactionDate") or p.get("updatedAt")) >= today_start
    ]
    return {
        "totalPayments": len(payments),
        "totalAmount": sum(p["totalAmount"] for p in paid),
        "paidOrders": len(paid),
        "pendingOrders": sum(1 for p in payments if p["paymentStatus"] == "pending"),
        "partialOrders": sum(1 for p in payments if p["paymentStatus"] == "partial"),
        "todayPayments": len(today),
        "todayAmount": sum(p["totalAmount"] for p in today),
    }


def _fmt_dt(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if isinstance(value, datetime) else (str(value) if value else "")


def payments_to_csv(payments: List[Dict[str, Any]]) -> str:
    out = io.StringIO()
    writer = csv.writer(out, quoting=csv.QUOTE_ALL)
    writer.writerow(PAYMENT_CSV_HEADERS)
    for p in payments:
        writer.writerow([
            p.get("orderNumber") or "",
            p.get("customerName") or "",
            p.get("customerPhone") or "",
            p.get("customerEmail") or "",
            p.get("paymentMethod") or "",
            p.get("paymentStatus") or "",
            f"{p['totalAmount']:.2f}",
            f"{p['amountPaid']:.2f}",
            p.get("mpesaReceiptNumber") or "",
            _fmt_dt(p.get("transactionDate")),
            p.get("phoneNumber") or "",
            _fmt_dt(p.get("createdAt")),
            _fmt_dt(p.get("updatedAt")),
        ])
    return out.getvalue()


def _transaction_record(txn: Dict[str, Any], order: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "_id": txn["_id"],
        "transactionId": txn.get("transactionId"),
        "orderNumber": (order or {}).get("orderNumber") or "Unconnected",
        "customerName": txn.get("customerName"),
        "customerPhone": txn.get("phoneNumber"),
        "paymentMethod": "mpesa_stk" if txn.get("transactionType") == "STK_PUSH" else "mpesa_c2b",
        "paymentStatus": "paid" if txn.get("isConnectedToOrder") else "unconnected",
        "totalAmount": as_float((order or {}).get("totalAmount")) or as_float(txn.get("amountPaid")),
        "amountPaid": as_float(txn.get("amountPaid")),
        "mpesaReceiptNumber": txn.get("mpesaReceiptNumber"),
        "transactionDate": txn.get("transactionDate"),
        "isConnectedToOrder": bool(txn.get("isConnectedToOrder")),
        "connectedOrderId": txn.get("connectedOrderId"),
        "notes": txn.get("notes"),
    }


def _orders_by_id(txns: List[Dict[str, Any]]) -> Dict[Any, Dict[str, Any]]:
    ids = [t["connectedOrderId"] for t in txns if t.get("connectedOrderId")]
    if not ids:
        return {}
    return {o["_id"]: o for o in orders_col.find({"_id": {"$in": ids}})}


def _error(e: ReconciliationError):
    return jsonify(ok=False, message=e.message), e.status


# ---------------------------
# Payments overview
# ---------------------------
@payments_bp.route("/payments", methods=["GET"])
@role_required(*RECONCILE_ROLES)
def list_payments():
    payments = [payment_from_order(o) for o in orders_col.find({}).sort("updatedAt", -1)]
    txns = list(mpesa_txn_col.find({}).sort("transactionDate", -1))
    orders = _orders_by_id(txns)
    records = [_transaction_record(t, orders.get(t.get("connectedOrderId"))) for t in txns]
    return jsonify(
        ok=True,
        payments=serialize(payments),
        mpesaTransactions=serialize(records),
        stats=payment_stats(payments),
    )


@payments_bp.route("/payments/export.csv", methods=["GET"])
@role_required(*RECONCILE_ROLES)
def export_payments_csv():
    orders = list(orders_col.find({}).sort("createdAt", -1))
    if not orders:
        return jsonify(ok=False, message="No orders found to export"), 404
    body = payments_to_csv([payment_from_order(o) for o in orders])
    filename = f"payments_{datetime.utcnow().strftime('%Y-%m-%d')}.csv"
    return Response(body, mimetype="text/csv", headers={"Content-Disposition": f"attachment; filename={filename}"})


@payments_bp.route("/payments/audit-log", methods=["GET"])
@role_required(*RECONCILE_ROLES)
def payment_audit_log():
    logs = list_payment_audit_logs(
        order_id=request.args.get("orderId") or None,
        transaction_id=request.args.get("transactionId") or None,
        limit=as_int(request.args.get("limit"), 100),
    )
    return jsonify(ok=True, logs=serialize(logs))


# ---------------------------
# Pending confirmations
# ---------------------------
@payments_bp.route("/payments/pending", methods=["GET"])
@role_required(*RECONCILE_ROLES)
def pending_payments():
    return jsonify(ok=True, **list_pending_confirmations())


@payments_bp.route("/payments/confirm", methods=["POST"])
@role_required(*RECONCILE_ROLES)
@audit_action("payment.confirmed", "Confirmed pending payment", entity_type="mpesa_transaction", entity_id_from="transactionId")
def confirm_payment():
    body = request.get_json(silent=True) or {}
    try:
        result = confirm_pending(
            body.get("transactionId"),
            body.get("confirmedCustomerName") or "",
            body.get("confirmationNotes") or "",
            admin=get_current_identity(),
        )
    except ReconciliationError as e:
        return _error(e)
    return jsonify(result)


@payments_bp.route("/payments/reject", methods=["POST"])
@role_required(*RECONCILE_ROLES)
@audit_action("payment.rejected", "Rejected pending payment", entity_type="mpesa_transaction", entity_id_from="transactionId")
def reject_payment():
    body = request.get_json(silent=True) or {}
    try:
        result = reject_pending(body.get("transactionId"), body.get("rejectionReason") or "", admin=get_current_identity())
    except ReconciliationError as e:
        return _error(e)
    return jsonify(result)


# ---------------------------
# M-Pesa transactions
# ---------------------------
@payments_bp.route("/mpesa-transactions", methods=["GET"])
@role_required(*RECONCILE_ROLES)
def list_transactions():
    flt = request.args.get("filter") or "all"
    query: Dict[str, Any] = {}
    if flt == "unconnected":
        query["isConnectedToOrder"] = False
    elif flt == "connected":
        query["isConnectedToOrder"] = True

    txns = list(mpesa_txn_col.find(query).sort("transactionDate", -1))
    orders = _orders_by_id(txns)
    rows = []
    for t in txns:
        row = serialize(t)
        o = orders.get(t.get("connectedOrderId"))
        row["connectedOrder"] = serialize({
            "_id": o["_id"],
            "orderNumber": o.get("orderNumber"),
            "customer": o.get("customer"),
            "paymentStatus": o.get("paymentStatus"),
        }) if o else None
        rows.append(row)

    all_txns = list(mpesa_txn_col.find({}, {"isConnectedToOrder": 1, "amountPaid": 1}))
    unconnected = [t for t in all_txns if not t.get("isConnectedToOrder")]
    stats = {
        "total": len(all_txns),
        "unconnected": len(unconnected),
        "connected": len(all_txns) - len(unconnected),
        "totalAmount": sum(as_float(t.get("amountPaid")) for t in all_txns),
        "unconnectedAmount": sum(as_float(t.get("amountPaid")) for t in unconnected),
    }
    pending_orders = orders_col.find(
        {"paymentStatus": {"$in": ["unpaid", "pending", "partial"]}},
        {"orderNumber": 1, "customer": 1, "totalAmount": 1, "remainingBalance": 1, "paymentStatus": 1, "createdAt": 1},
    ).sort("createdAt", -1).limit(20)
    return jsonify(ok=True, transactions=rows, stats=stats, pendingOrders=serialize(list(pending_orders)))


@payments_bp.route("/mpesa-transactions", methods=["POST"])
@role_required(*RECONCILE_ROLES)
@audit_action("mpesa.transaction_recorded", "Recorded manual M-Pesa transaction", entity_type="mpesa_transaction", entity_id_from="transactionId")
def add_transaction():
    body = request.get_json(silent=True) or {}
    try:
        txn = record_manual_transaction(body, admin=get_current_identity())
    except ReconciliationError as e:
        return _error(e)
    return jsonify(ok=True, transaction=txn, message="Transaction recorded"), 201


@payments_bp.route("/mpesa-transactions/connect", methods=["POST"])
@role_required(*RECONCILE_ROLES)
@audit_action("mpesa.transaction_connected", "Connected M-Pesa transaction", entity_type="mpesa_transaction", entity_id_from="transactionId")
def connect():
    body = request.get_json(silent=True) or {}
    try:
        result = connect_transaction(body.get("transactionId"), body.get("orderId"), admin=get_current_identity())
    except ReconciliationError as e:
        return _error(e)
    return jsonify(serialize(result))


@payments_bp.route("/mpesa-transactions/disconnect", methods=["POST"])
@role_required(*RECONCILE_ROLES)
@audit_action("mpesa.transaction_disconnected", "Disconnected M-Pesa transaction", entity_type="mpesa_transaction", entity_id_from="transactionId")
def disconnect():
    body = request.get_json(silent=True) or {}
    try:
        result = disconnect_transaction(body.get("transactionId"), admin=get_current_identity())
    except ReconciliationError as e:
        return _error(e)
    return jsonify(serialize(result))
