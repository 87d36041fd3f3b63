"""
Order <-> M-Pesa transaction reconciliation.

Every function here works on plain Mongo documents and commits with single
document updates; there are no multi-document transactions.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from db import db
from services.payment_audit import log_payment_action
from services.sms_service import notify_payment
from services.utils import as_float, parse_iso_datetime, safe_object_id, serialize

logger = logging.getLogger(__name__)

orders_col = db["orders"]
mpesa_txn_col = db["mpesa_transactions"]


class ReconciliationError(Exception):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def ensure_transaction_indexes() -> None:
    try:
        mpesa_txn_col.create_index([("transactionId", 1)], unique=True)
        mpesa_txn_col.create_index([("isConnectedToOrder", 1), ("amountPaid", 1)])
        mpesa_txn_col.create_index([("connectedOrderId", 1)])
        mpesa_txn_col.create_index([("confirmationStatus", 1), ("pendingOrderId", 1)])
        mpesa_txn_col.create_index([("transactionDate", -1)])
    except Exception:
        logger.warning("Could not create mpesa_transactions indexes", exc_info=True)


# ---------------------------
# Balance math
# ---------------------------
def balance_after_payment(order: Dict[str, Any], amount: float) -> Tuple[float, str]:
    """(new remaining balance, payment status) after applying `amount` to the order."""
    total = as_float(order.get("totalAmount"))
    current = as_float(order.get("remainingBalance")) or total
    remaining = max(0.0, current - as_float(amount))
    return remaining, ("paid" if remaining == 0 else "partial")


def status_from_paid(total: float, paid: float) -> str:
    if paid >= total:
        return "paid"
    if paid > 0:
        return "partial"
    return "unpaid"


def payment_method_for(txn: Dict[str, Any]) -> str:
    return "mpesa_stk" if txn.get("transactionType") == "STK_PUSH" else "mpesa_c2b"


def payment_record(txn: Dict[str, Any], method: Optional[str] = None) -> Dict[str, Any]:
    return {
        "amount": as_float(txn.get("amountPaid")),
        "date": datetime.utcnow(),
        "mpesaReceiptNumber": txn.get("mpesaReceiptNumber"),
        "phoneNumber": txn.get("phoneNumber"),
        "method": method or payment_method_for(txn),
    }


def payment_snapshot(txn: Dict[str, Any]) -> Dict[str, Any]:
    keys = (
        "transactionId", "mpesaReceiptNumber", "transactionDate", "phoneNumber", "amountPaid",
        "transactionType", "billRefNumber", "thirdPartyTransID", "orgAccountBalance",
        "customerName", "paymentCompletedAt",
    )
    return {k: txn.get(k) for k in keys}


def _append_note(existing: Optional[str], note: str) -> str:
    return f"{existing or ''} {note}".strip()


def _connected_by(admin: Optional[Dict[str, Any]]) -> str:
    return (admin or {}).get("name") or (admin or {}).get("user_id") or "admin"


def _find_order(order_id) -> Dict[str, Any]:
    oid = safe_object_id(order_id)
    order = orders_col.find_one({"_id": oid}) if oid else None
    if not order:
        raise ReconciliationError("Order not found", 404)
    return order


def _find_transaction(transaction_id) -> Dict[str, Any]:
    txn = mpesa_txn_col.find_one({"transactionId": transaction_id})
    if not txn:
        oid = safe_object_id(transaction_id)
        txn = mpesa_txn_col.find_one({"_id": oid}) if oid else None
    if not txn:
        raise ReconciliationError("Transaction not found", 404)
    return txn


# ---------------------------
# Recalculation
# ---------------------------
def recalculate_order_payment(order: Dict[str, Any]) -> Dict[str, Any]:
    """
    Re-derive payment status and balance from the transactions connected to
    the order. Writes only when something changed.
    """
    connected = mpesa_txn_col.find({"connectedOrderId": order["_id"], "isConnectedToOrder": True})
    total_paid = sum(as_float(t.get("amountPaid")) for t in connected)
    total = as_float(order.get("totalAmount"))
    remaining = max(0.0, total - total_paid)
    status = status_from_paid(total, total_paid)

    changed = status != order.get("paymentStatus") or remaining != as_float(order.get("remainingBalance"))
    if changed:
        orders_col.update_one(
            {"_id": order["_id"]},
            {"$set": {"paymentStatus": status, "remainingBalance": remaining, "updatedAt": datetime.utcnow()}},
        )
        logger.info(
            "Order %s payment recalculated: %s -> %s (paid %.2f of %.2f)",
            order.get("orderNumber"), order.get("paymentStatus"), status, total_paid, total,
        )
    return {
        "updated": changed,
        "orderNumber": order.get("orderNumber"),
        "totalPaid": total_paid,
        "remainingBalance": remaining,
        "previousStatus": order.get("paymentStatus"),
        "paymentStatus": status,
    }


def recalculate_all_orders() -> Dict[str, Any]:
    updated = []
    errors = []
    total = 0
    for order in orders_col.find({}):
        total += 1
        try:
            result = recalculate_order_payment(order)
        except Exception as e:
            logger.exception("Recalculation failed for order %s", order.get("orderNumber"))
            errors.append({"orderNumber": order.get("orderNumber"), "error": str(e)})
            continue
        if result["updated"]:
            updated.append(result)
    return {"totalOrders": total, "updatedCount": len(updated), "updated": updated, "errors": errors}


# ---------------------------
# Matching by amount
# ---------------------------
def find_unconnected_by_amount(amount: float) -> List[Dict[str, Any]]:
    return list(
        mpesa_txn_col.find({"amountPaid": as_float(amount), "isConnectedToOrder": False})
        .sort("transactionDate", -1)
    )


def _candidate(txn: Dict[str, Any]) -> Dict[str, Any]:
    return serialize({
        "id": txn.get("transactionId"),
        "_id": txn.get("_id"),
        "mpesaReceiptNumber": txn.get("mpesaReceiptNumber"),
        "customerName": txn.get("customerName"),
        "phoneNumber": txn.get("phoneNumber"),
        "amountPaid": txn.get("amountPaid"),
        "transactionDate": txn.get("transactionDate"),
        "transactionType": txn.get("transactionType"),
        "notes": txn.get("notes"),
    })


def connect_by_amount(order_id, payment_amount, admin: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Look for unconnected transactions of exactly `payment_amount`.
    One match is connected automatically; several are returned for manual selection.
    """
    amount = as_float(payment_amount)
    if not order_id or amount <= 0:
        raise ReconciliationError("Order ID and payment amount are required", 400)
    order = _find_order(order_id)

    matches = find_unconnected_by_amount(amount)
    if not matches:
        return {
            "ok": False,
            "message": f"No unconnected M-Pesa transactions found with amount KES {amount:,.0f}",
            "transactions": [],
        }
    if len(matches) > 1:
        return {
            "ok": False,
            "multipleMatches": True,
            "message": f"Found {len(matches)} unconnected transactions with amount KES {amount:,.0f}. Please select one manually.",
            "transactions": [_candidate(t) for t in matches],
        }

    txn = matches[0]
    total = as_float(order.get("totalAmount"))
    paid = as_float(txn.get("amountPaid"))
    # only an exact match of the order total counts as fully paid
    status = "paid" if paid == total else "partial"
    remaining = max(0.0, total - paid)
    method = payment_method_for(txn)
    now = datetime.utcnow()

    orders_col.update_one(
        {"_id": order["_id"]},
        {
            "$set": {
                "paymentStatus": status,
                "paymentMethod": method,
                "remainingBalance": remaining,
                "mpesaReceiptNumber": txn.get("mpesaReceiptNumber"),
                "transactionDate": txn.get("transactionDate"),
                "phoneNumber": txn.get("phoneNumber"),
                "amountPaid": paid,
                "paymentCompletedAt": txn.get("paymentCompletedAt") or now,
                "mpesaPayment": payment_snapshot(txn),
                "updatedAt": now,
            },
            "$push": {"partialPayments": payment_record(txn, method)},
        },
    )
    mpesa_txn_col.update_one(
        {"_id": txn["_id"]},
        {"$set": {
            "isConnectedToOrder": True,
            "connectedOrderId": order["_id"],
            "connectedAt": now,
            "connectedBy": _connected_by(admin),
            "confirmationStatus": "confirmed",
            "notes": _append_note(
                txn.get("notes"),
                f"Connected to order {order.get('orderNumber')} via amount search (KES {amount:,.0f}).",
            ),
        }},
    )
    log_payment_action(
        "manual_link", txn.get("transactionId"), order.get("orderNumber"), paid, admin=admin,
        customer_name=txn.get("customerName") or "", phone_number=txn.get("phoneNumber") or "",
        notes="Connected via amount search", previous_status=order.get("paymentStatus") or "unpaid",
        new_status=status, metadata={"expectedAmount": total, "actualAmount": paid, "source": "manual"},
    )
    logger.info("Transaction %s auto-connected to order %s (%s)", txn.get("transactionId"), order.get("orderNumber"), status)

    if status == "paid":
        message = f"Payment of KES {paid:,.0f} found and connected - Order marked as PAID"
    elif paid > total:
        message = f"Overpayment of KES {paid:,.0f} found and connected (expected KES {total:,.0f}) - Order marked as PARTIAL"
    else:
        message = f"Partial payment of KES {paid:,.0f} found and connected (KES {total - paid:,.0f} remaining)"
    return {
        "ok": True,
        "autoConnected": True,
        "message": message,
        "paymentStatus": status,
        "isExactPayment": paid == total,
        "isPartialPayment": paid < total,
        "isOverPayment": paid > total,
        "transaction": _candidate(txn),
    }


# ---------------------------
# Manual connect / reconnect / disconnect
# ---------------------------
def _remove_payment_from_order(order: Dict[str, Any], txn: Dict[str, Any]) -> Dict[str, Any]:
    """Drop the transaction's payment record and re-derive status from what is left."""
    amount = as_float(txn.get("amountPaid"))
    receipt = txn.get("mpesaReceiptNumber")
    kept = []
    removed = False
    for p in order.get("partialPayments") or []:
        if not removed and p.get("mpesaReceiptNumber") == receipt and as_float(p.get("amount")) == amount:
            removed = True
            continue
        kept.append(p)

    total = as_float(order.get("totalAmount"))
    total_paid = sum(as_float(p.get("amount")) for p in kept)
    status = status_from_paid(total, total_paid)
    remaining = max(0.0, total - total_paid)
    orders_col.update_one(
        {"_id": order["_id"]},
        {"$set": {
            "partialPayments": kept,
            "paymentStatus": status,
            "remainingBalance": remaining,
            "updatedAt": datetime.utcnow(),
        }},
    )
    return {"orderNumber": order.get("orderNumber"), "oldStatus": order.get("paymentStatus"), "newStatus": status, "newBalance": remaining}


def connect_transaction(transaction_id, order_id, admin: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    if not transaction_id or not order_id:
        raise ReconciliationError("Transaction ID and Order ID are required", 400)
    txn = _find_transaction(transaction_id)
    order = _find_order(order_id)

    reconnecting = bool(txn.get("isConnectedToOrder"))
    previous_order_id = txn.get("connectedOrderId")
    if reconnecting and previous_order_id == order["_id"]:
        raise ReconciliationError("Transaction is already connected to this order", 400)
    if not reconnecting and order.get("paymentStatus") == "paid":
        raise ReconciliationError("Order is already marked as paid", 400)

    previous = None
    if reconnecting and previous_order_id and previous_order_id != order["_id"]:
        prev_order = orders_col.find_one({"_id": previous_order_id})
        if prev_order:
            previous = _remove_payment_from_order(prev_order, txn)
            logger.info("Payment %s removed from order %s", txn.get("transactionId"), prev_order.get("orderNumber"))

    current_remaining = as_float(order.get("remainingBalance")) or as_float(order.get("totalAmount"))
    amount = as_float(txn.get("amountPaid"))
    remaining, status = balance_after_payment(order, amount)
    method = payment_method_for(txn)
    now = datetime.utcnow()

    orders_col.update_one(
        {"_id": order["_id"]},
        {
            "$set": {
                "paymentStatus": status,
                "paymentMethod": method,
                "remainingBalance": remaining,
                "c2bPayment": payment_snapshot(txn),
                "updatedAt": now,
            },
            "$push": {"partialPayments": payment_record(txn, method)},
        },
    )
    mpesa_txn_col.update_one(
        {"_id": txn["_id"]},
        {"$set": {
            "isConnectedToOrder": True,
            "connectedOrderId": order["_id"],
            "connectedAt": now,
            "connectedBy": _connected_by(admin),
            "confirmationStatus": "confirmed",
            "notes": _append_note(txn.get("notes"), f"Connected to order {order.get('orderNumber')} by admin."),
        }},
    )
    log_payment_action(
        "manual_link", txn.get("transactionId"), order.get("orderNumber"), amount, admin=admin,
        customer_name=txn.get("customerName") or "", phone_number=txn.get("phoneNumber") or "",
        notes="Reconnected" if reconnecting else "Connected", previous_status=order.get("paymentStatus") or "unpaid",
        new_status=status, metadata={"expectedAmount": current_remaining, "actualAmount": amount, "source": "manual"},
    )

    verb = "reconnected" if reconnecting else "connected"
    if status == "paid":
        message = f"Transaction {txn.get('transactionId')} {verb} to order {order.get('orderNumber')} - Order fully paid"
    else:
        message = (
            f"Transaction {txn.get('transactionId')} {verb} as partial payment (KES {amount:,.0f}) "
            f"to order {order.get('orderNumber')}. Remaining balance: KES {remaining:,.0f}"
        )
    return {
        "ok": True,
        "message": message,
        "isExactPayment": remaining == 0 and amount == current_remaining,
        "isPartialPayment": remaining > 0,
        "isOverPayment": amount > current_remaining,
        "amountPaid": amount,
        "remainingBalance": remaining,
        "currentRemainingBalance": current_remaining,
        "paymentStatus": status,
        "previousOrder": previous,
    }


def disconnect_transaction(transaction_id, admin: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    txn = _find_transaction(transaction_id)
    if not txn.get("isConnectedToOrder"):
        raise ReconciliationError("Transaction is not connected to an order", 400)

    order = orders_col.find_one({"_id": txn.get("connectedOrderId")})
    mpesa_txn_col.update_one(
        {"_id": txn["_id"]},
        {"$set": {
            "isConnectedToOrder": False,
            "connectedOrderId": None,
            "connectedAt": None,
            "connectedBy": None,
            "confirmationStatus": "pending",
            "notes": _append_note(txn.get("notes"), "Disconnected by admin."),
        }},
    )
    result: Dict[str, Any] = {"ok": True, "message": f"Transaction {txn.get('transactionId')} disconnected"}
    if order:
        _remove_payment_from_order(order, txn)
        recalculated = recalculate_order_payment(orders_col.find_one({"_id": order["_id"]}))
        result["order"] = recalculated
        log_payment_action(
            "manual_unlink", txn.get("transactionId"), order.get("orderNumber"), as_float(txn.get("amountPaid")),
            admin=admin, customer_name=txn.get("customerName") or "", phone_number=txn.get("phoneNumber") or "",
            previous_status=order.get("paymentStatus") or "", new_status=recalculated["paymentStatus"],
            metadata={"source": "manual"},
        )
    return result


# ---------------------------
# Pending confirmations
# ---------------------------
def list_pending_confirmations() -> Dict[str, Any]:
    pending = list(
        mpesa_txn_col.find({"confirmationStatus": "pending", "pendingOrderId": {"$ne": None}})
        .sort("transactionDate", -1)
    )
    order_ids = [t["pendingOrderId"] for t in pending if t.get("pendingOrderId")]
    orders = {o["_id"]: o for o in orders_col.find({"_id": {"$in": order_ids}})} if order_ids else {}

    pending_out = []
    for t in pending:
        o = orders.get(t.get("pendingOrderId"))
        row = serialize(t)
        row["order"] = serialize({
            "_id": o["_id"],
            "orderNumber": o.get("orderNumber"),
            "customer": o.get("customer"),
            "totalAmount": o.get("totalAmount"),
            "paymentStatus": o.get("paymentStatus"),
        }) if o else None
        pending_out.append(row)

    unmatched = list(
        mpesa_txn_col.find({"isConnectedToOrder": False, "pendingOrderId": None, "confirmationStatus": {"$ne": "rejected"}})
        .sort("transactionDate", -1)
        .limit(100)
    )
    return {
        "pendingTransactions": pending_out,
        "unmatchedTransactions": [serialize(t) for t in unmatched],
        "counts": {"pending": len(pending_out), "unmatched": len(unmatched)},
    }


def confirm_pending(transaction_id, confirmed_customer_name: str, confirmation_notes: str = "", admin: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    if not transaction_id or not (confirmed_customer_name or "").strip():
        raise ReconciliationError("Transaction ID and customer name are required", 400)
    oid = safe_object_id(transaction_id)
    txn = mpesa_txn_col.find_one({"_id": oid}) if oid else None
    if not txn:
        raise ReconciliationError("Transaction not found", 404)
    if txn.get("confirmationStatus") != "pending":
        raise ReconciliationError("Transaction is not pending confirmation", 400)
    if txn.get("isConnectedToOrder"):
        raise ReconciliationError("Transaction is already connected to an order", 400)

    order = orders_col.find_one({"_id": txn.get("pendingOrderId")}) if txn.get("pendingOrderId") else None
    if not order:
        raise ReconciliationError("Order not found", 404)

    total = as_float(order.get("totalAmount"))
    amount = as_float(txn.get("amountPaid"))
    new_total_paid = as_float(order.get("amountPaid")) + amount
    status = "paid" if new_total_paid >= total else "partial"
    remaining = max(0.0, total - new_total_paid)
    now = datetime.utcnow()

    mpesa_txn_col.update_one(
        {"_id": txn["_id"]},
        {"$set": {
            "confirmationStatus": "confirmed",
            "isConnectedToOrder": True,
            "connectedOrderId": order["_id"],
            "connectedAt": now,
            "connectedBy": _connected_by(admin),
            "confirmedCustomerName": confirmed_customer_name.strip(),
            "confirmedBy": _connected_by(admin),
            "confirmationNotes": confirmation_notes or "",
            "confirmedAt": now,
        }},
    )
    orders_col.update_one(
        {"_id": order["_id"]},
        {
            "$set": {
                "paymentStatus": status,
                "paymentMethod": payment_method_for(txn),
                "amountPaid": new_total_paid,
                "remainingBalance": remaining,
                "mpesaReceiptNumber": txn.get("mpesaReceiptNumber"),
                "transactionDate": txn.get("transactionDate"),
                "phoneNumber": txn.get("phoneNumber"),
                "paymentCompletedAt": now,
                "mpesaPayment.mpesaReceiptNumber": txn.get("mpesaReceiptNumber"),
                "mpesaPayment.transactionDate": txn.get("transactionDate"),
                "mpesaPayment.phoneNumber": txn.get("phoneNumber"),
                "mpesaPayment.amountPaid": new_total_paid,
                "mpesaPayment.paymentCompletedAt": now,
                "updatedAt": now,
            },
            "$push": {"partialPayments": payment_record(txn)},
        },
    )
    log_payment_action(
        "manual_confirm", txn.get("mpesaReceiptNumber"), order.get("orderNumber"), amount, admin=admin,
        customer_name=confirmed_customer_name.strip(), phone_number=txn.get("phoneNumber") or "",
        notes=confirmation_notes or "", previous_status="pending", new_status=status,
        metadata={"expectedAmount": total, "actualAmount": amount, "source": "stkpush"},
    )
    notify_payment({**order, "remainingBalance": remaining}, new_total_paid, status == "paid", txn.get("mpesaReceiptNumber"))

    return {
        "ok": True,
        "message": "Transaction confirmed successfully",
        "paymentStatus": status,
        "amountPaid": new_total_paid,
        "transaction": serialize({
            "id": txn["_id"],
            "mpesaReceiptNumber": txn.get("mpesaReceiptNumber"),
            "amount": amount,
            "confirmedCustomerName": confirmed_customer_name.strip(),
        }),
    }


def reject_pending(transaction_id, rejection_reason: str, admin: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    if not transaction_id or not (rejection_reason or "").strip():
        raise ReconciliationError("Transaction ID and rejection reason are required", 400)
    oid = safe_object_id(transaction_id)
    txn = mpesa_txn_col.find_one({"_id": oid}) if oid else None
    if not txn:
        raise ReconciliationError("Transaction not found", 404)
    if txn.get("confirmationStatus") != "pending":
        raise ReconciliationError("Transaction is not pending confirmation", 400)

    order = orders_col.find_one({"_id": txn.get("pendingOrderId")}) if txn.get("pendingOrderId") else None
    mpesa_txn_col.update_one(
        {"_id": txn["_id"]},
        {"$set": {
            "confirmationStatus": "rejected",
            "pendingOrderId": None,
            "confirmedBy": _connected_by(admin),
            "confirmationNotes": rejection_reason.strip(),
            "confirmedAt": datetime.utcnow(),
            "notes": _append_note(txn.get("notes"), f"Rejected: {rejection_reason.strip()}"),
        }},
    )
    log_payment_action(
        "manual_reject", txn.get("mpesaReceiptNumber"), (order or {}).get("orderNumber"), as_float(txn.get("amountPaid")),
        admin=admin, customer_name=txn.get("customerName") or "", phone_number=txn.get("phoneNumber") or "",
        notes=rejection_reason.strip(), previous_status="pending", new_status="rejected",
        metadata={"source": "manual"},
    )
    return {"ok": True, "message": "Transaction rejected"}


def record_manual_transaction(data: Dict[str, Any], admin: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Store a transaction keyed in by an admin (e.g. from a paper M-Pesa statement)."""
    transaction_id = (data.get("transactionId") or data.get("mpesaReceiptNumber") or "").strip()
    amount = as_float(data.get("amountPaid"))
    if not transaction_id or amount <= 0:
        raise ReconciliationError("Transaction ID and a positive amount are required", 400)
    if mpesa_txn_col.find_one({"transactionId": transaction_id}):
        raise ReconciliationError("Transaction already exists", 400)

    now = datetime.utcnow()
    doc = {
        "transactionId": transaction_id,
        "mpesaReceiptNumber": (data.get("mpesaReceiptNumber") or transaction_id).strip(),
        "transactionDate": parse_iso_datetime(data.get("transactionDate")) or now,
        "phoneNumber": (data.get("phoneNumber") or "").strip(),
        "amountPaid": amount,
        "transactionType": data.get("transactionType") or "C2B",
        "billRefNumber": data.get("billRefNumber") or "",
        "customerName": (data.get("customerName") or "").strip(),
        "paymentCompletedAt": now,
        "isConnectedToOrder": False,
        "connectedOrderId": None,
        "confirmationStatus": "pending",
        "pendingOrderId": None,
        "notes": _append_note(data.get("notes"), f"Recorded manually by {_connected_by(admin)}."),
        "createdAt": now,
        "updatedAt": now,
    }
    res = mpesa_txn_col.insert_one(doc)
    doc["_id"] = res.inserted_id
    return serialize(doc)
