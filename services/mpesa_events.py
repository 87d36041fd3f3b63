"""
M-Pesa payment flows: STK initiation, status polling, the STK callback and
the C2B validation/confirmation webhooks.

Webhook handlers never raise to Safaricom; the routes acknowledge regardless.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId

from config_constants import (
    C2B_MIN_AMOUNT,
    C2B_SMART_MATCH_HOURS,
    MPESA_CALLBACK_URL,
    STK_DEFINITIVE_FAILURE_CODES,
    STK_PENDING_CODE,
    STK_RECENT_MINUTES,
)
from db import db
from services.mpesa_service import mpesa_service
from services.payment_audit import log_payment_action
from services.reconciliation import balance_after_payment
from services.sms_service import notify_payment
from services.utils import as_float, safe_object_id, serialize

logger = logging.getLogger(__name__)

orders_col = db["orders"]
customers_col = db["customers"]
mpesa_txn_col = db["mpesa_transactions"]


class PaymentFlowError(Exception):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def parse_mpesa_timestamp(raw) -> Optional[datetime]:
    """YYYYMMDDHHMMSS as sent by Safaricom (may arrive as an int)."""
    text = str(raw or "").strip()
    if len(text) < 14:
        return None
    try:
        return datetime.strptime(text[:14], "%Y%m%d%H%M%S")
    except ValueError:
        return None


def _order_status_view(order: Dict[str, Any], payment_status: Optional[str] = None) -> Dict[str, Any]:
    return serialize({
        "_id": order["_id"],
        "orderNumber": order.get("orderNumber"),
        "paymentStatus": payment_status or order.get("paymentStatus"),
        "checkoutRequestId": order.get("checkoutRequestId"),
        "phoneNumber": order.get("phoneNumber"),
        "mpesaReceiptNumber": order.get("mpesaReceiptNumber"),
        "amountPaid": order.get("amountPaid"),
        "remainingBalance": order.get("remainingBalance"),
        "resultCode": order.get("resultCode"),
        "resultDescription": order.get("resultDescription"),
        "paymentInitiatedAt": order.get("paymentInitiatedAt"),
        "paymentCompletedAt": order.get("paymentCompletedAt"),
    })


# ---------------------------
# STK push
# ---------------------------
def initiate_stk_payment(order_id, phone_number: str, amount, payment_type: str = "full",
                         callback_url: str = MPESA_CALLBACK_URL) -> Dict[str, Any]:
    if not order_id or not phone_number or amount in (None, ""):
        raise PaymentFlowError("Order ID, phone number, and amount are required", 400)
    amount_f = as_float(amount)
    if amount_f <= 0:
        raise PaymentFlowError("Amount must be greater than zero", 400)

    oid = safe_object_id(order_id)
    order = orders_col.find_one({"_id": oid}) if oid else None
    if not order:
        raise PaymentFlowError("Order not found", 404)
    if order.get("paymentStatus") == "paid":
        raise PaymentFlowError("Order is already paid", 400)
    if not callback_url or not callback_url.startswith("https://"):
        logger.error("MPESA_CALLBACK_URL is missing or not https: %r", callback_url)
        raise PaymentFlowError("M-Pesa callback URL is not configured (must be https)", 500)

    result = mpesa_service.initiate_stk_push(phone_number, amount_f, str(order["_id"]), callback_url)
    if not result.get("success"):
        logger.warning("STK push failed for order %s: %s", order.get("orderNumber"), result.get("error"))
        raise PaymentFlowError(result.get("error") or "Failed to initiate payment", 400)

    now = datetime.utcnow()
    orders_col.update_one(
        {"_id": order["_id"]},
        {"$set": {
            "paymentStatus": "pending",
            "paymentMethod": "mpesa_stk",
            "checkoutRequestId": result.get("checkoutRequestId"),
            "phoneNumber": phone_number,
            "paymentInitiatedAt": now,
            "pendingMpesaPayment": {
                "checkoutRequestId": result.get("checkoutRequestId"),
                "merchantRequestId": result.get("merchantRequestId"),
                "amount": amount_f,
                "phoneNumber": phone_number,
                "paymentType": payment_type if payment_type in ("full", "partial") else "full",
                "initiatedAt": now,
                "status": "pending",
            },
            "updatedAt": now,
        }},
    )
    return {
        "checkoutRequestId": result.get("checkoutRequestId"),
        "merchantRequestId": result.get("merchantRequestId"),
        "customerMessage": result.get("customerMessage"),
        "responseDescription": result.get("responseDescription"),
    }


def decide_poll_outcome(query: Dict[str, Any], very_recent: bool) -> Tuple[Optional[str], bool]:
    """
    Map a Daraja STK query response to (new payment status or None, is_pending).
    None means leave the stored status alone.
    """
    if query.get("success") is False:
        return ("pending", True) if very_recent else (None, False)
    if query.get("isPending") or str(query.get("resultCode")) == STK_PENDING_CODE:
        return "pending", True
    code = query.get("ResultCode")
    if code is None:
        return None, False
    code = str(code)
    if code == "0":
        return "paid", False
    if code == STK_PENDING_CODE:
        return "pending", True
    if code in STK_DEFINITIVE_FAILURE_CODES and not very_recent:
        return "failed", False
    return None, False


def poll_payment_status(checkout_request_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    if not checkout_request_id:
        raise PaymentFlowError("Checkout request ID is required", 400)
    order = orders_col.find_one({"checkoutRequestId": checkout_request_id})
    if not order:
        raise PaymentFlowError("Order not found", 404)

    if order.get("paymentStatus") in ("paid", "failed"):
        return {"order": _order_status_view(order)}

    now = now or datetime.utcnow()
    initiated = order.get("paymentInitiatedAt") or order.get("createdAt") or now
    very_recent = (now - initiated) < timedelta(minutes=STK_RECENT_MINUTES)

    query = mpesa_service.query_stk_status(checkout_request_id)
    status, is_pending = decide_poll_outcome(query, very_recent)

    if query.get("success") is False:
        if is_pending:
            return {
                "order": _order_status_view(order, "pending"),
                "isPending": True,
                "message": "Transaction is still being processed. Please wait...",
            }
        return {
            "order": _order_status_view(order),
            "error": "Failed to query M-Pesa status",
            "mpesaError": query.get("error"),
        }

    if is_pending:
        return {
            "order": _order_status_view(order, "pending"),
            "isPending": True,
            "message": query.get("resultDesc") or "Transaction is still being processed",
        }

    if status in ("paid", "failed"):
        orders_col.update_one(
            {"_id": order["_id"]},
            {"$set": {
                "paymentStatus": status,
                "resultCode": str(query.get("ResultCode")),
                "resultDescription": query.get("ResultDesc"),
                "paymentCompletedAt": now,
                "updatedAt": now,
            }},
        )
        logger.info("Order %s marked %s from STK query", order.get("orderNumber"), status)
        order = orders_col.find_one({"_id": order["_id"]})

    return {"order": _order_status_view(order), "mpesaResponse": query}


# ---------------------------
# STK callback
# ---------------------------
def _callback_metadata(stk: Dict[str, Any]) -> Dict[str, Any]:
    items = ((stk.get("CallbackMetadata") or {}).get("Item")) or []
    return {i.get("Name"): i.get("Value") for i in items if isinstance(i, dict)}


def handle_stk_callback(body: Dict[str, Any]) -> Dict[str, Any]:
    stk = ((body or {}).get("Body") or {}).get("stkCallback")
    if not stk:
        return {"success": False, "message": "Invalid callback format"}

    checkout_id = stk.get("CheckoutRequestID")
    result_code = stk.get("ResultCode")
    result_desc = stk.get("ResultDesc")

    order = orders_col.find_one({"$or": [
        {"checkoutRequestId": checkout_id},
        {"mpesaPayment.checkoutRequestId": checkout_id},
        {"pendingMpesaPayment.checkoutRequestId": checkout_id},
    ]})
    if not order:
        logger.warning("STK callback for unknown checkout %s", checkout_id)
        return {"success": False, "message": "Order not found"}

    now = datetime.utcnow()
    if str(result_code) != "0":
        orders_col.update_one(
            {"_id": order["_id"]},
            {"$set": {
                "paymentStatus": "failed",
                "paymentMethod": "mpesa_stk",
                "resultCode": str(result_code),
                "resultDescription": result_desc,
                "paymentCompletedAt": now,
                "mpesaPayment.resultCode": str(result_code),
                "mpesaPayment.resultDescription": result_desc,
                "pendingMpesaPayment.status": "failed",
                "updatedAt": now,
            }},
        )
        logger.info("STK payment failed for order %s: %s", order.get("orderNumber"), result_desc)
        return {"success": True, "message": "Callback processed successfully"}

    meta = _callback_metadata(stk)
    receipt = str(meta.get("MpesaReceiptNumber") or "")
    paid_at = parse_mpesa_timestamp(meta.get("TransactionDate")) or now
    phone = str(meta.get("PhoneNumber") or "Unknown")
    amount = as_float(meta.get("Amount"))

    if receipt and mpesa_txn_col.find_one({"mpesaReceiptNumber": receipt}):
        logger.info("Duplicate STK callback for receipt %s ignored", receipt)
        return {"success": True, "message": "Duplicate transaction ignored"}

    pending = order.get("pendingMpesaPayment") or {}
    requested = as_float(pending.get("amount")) or as_float(order.get("totalAmount"))
    payment_type = pending.get("paymentType") or "full"
    requested_phone = pending.get("phoneNumber") or "Unknown"
    customer_name = (order.get("customer") or {}).get("name") or "STK Push Customer"
    total = as_float(order.get("totalAmount"))
    current_remaining = as_float(order.get("remainingBalance")) or total

    txn = {
        "transactionId": receipt,
        "mpesaReceiptNumber": receipt,
        "transactionDate": paid_at,
        "phoneNumber": phone,
        "amountPaid": amount,
        "transactionType": "STK_PUSH",
        "billRefNumber": order.get("orderNumber"),
        "customerName": customer_name,
        "paymentCompletedAt": now,
        "createdAt": now,
        "updatedAt": now,
    }

    if amount != requested:
        txn.update({
            "confirmationStatus": "pending",
            "pendingOrderId": None,
            "isConnectedToOrder": False,
            "connectedOrderId": None,
            "notes": (
                f"STK Push AMOUNT MISMATCH for order {order.get('orderNumber')}. Requested: {requested_phone}, "
                f"Paid: {phone}. Expected: KES {requested:,.0f}, Received: KES {amount:,.0f}, "
                f"Order Total: KES {total:,.0f}, Remaining: KES {current_remaining:,.0f}. Requires manual connection."
            ),
        })
        mpesa_txn_col.insert_one(txn)
        orders_col.update_one(
            {"_id": order["_id"]},
            {"$set": {
                "resultCode": str(result_code),
                "resultDescription": result_desc,
                "mpesaPayment.resultCode": str(result_code),
                "mpesaPayment.resultDescription": result_desc,
                "pendingMpesaPayment.status": "failed",
                "updatedAt": now,
            }},
        )
        logger.warning("STK amount mismatch on order %s: expected %s got %s", order.get("orderNumber"), requested, amount)
        return {"success": True, "message": "Callback processed successfully"}

    remaining, status = balance_after_payment(order, amount)
    fully_paid = status == "paid"
    txn.update({
        "confirmationStatus": "confirmed",
        "pendingOrderId": order["_id"],
        "isConnectedToOrder": True,
        "connectedOrderId": order["_id"],
        "connectedAt": now,
        "connectedBy": "SYSTEM",
        "confirmedBy": "SYSTEM",
        "confirmedCustomerName": customer_name,
        "confirmedAt": now,
        "notes": (
            f"AUTO-CONFIRMED: STK Push exact amount match for order {order.get('orderNumber')}. "
            f"Payment type: {payment_type}. Amount: KES {amount:,.0f}. "
            + ("Order fully paid." if fully_paid else f"Remaining balance: KES {remaining:,.0f}")
        ),
    })
    mpesa_txn_col.insert_one(txn)

    update_set = {
        "remainingBalance": remaining,
        "paymentStatus": status,
        "paymentMethod": "mpesa_stk",
        "resultCode": str(result_code),
        "resultDescription": result_desc,
        "paymentCompletedAt": now,
        "mpesaPayment.checkoutRequestId": checkout_id,
        "mpesaPayment.mpesaReceiptNumber": receipt,
        "mpesaPayment.transactionDate": paid_at,
        "mpesaPayment.phoneNumber": phone,
        "mpesaPayment.amountPaid": amount,
        "mpesaPayment.resultCode": str(result_code),
        "mpesaPayment.resultDescription": result_desc,
        "mpesaPayment.paymentCompletedAt": now,
        "pendingMpesaPayment.status": "completed",
        "updatedAt": now,
    }
    if fully_paid:
        update_set.update({
            "amountPaid": total,
            "mpesaReceiptNumber": receipt,
            "transactionDate": paid_at,
            "phoneNumber": phone,
        })
    orders_col.update_one(
        {"_id": order["_id"]},
        {"$set": update_set, "$push": {"partialPayments": {
            "amount": amount,
            "date": paid_at,
            "mpesaReceiptNumber": receipt,
            "phoneNumber": phone,
            "method": "mpesa_stk",
        }}},
    )
    log_payment_action(
        "auto_confirm_payment", receipt, order.get("orderNumber"), amount,
        customer_name=customer_name, phone_number=phone,
        notes=f"STK Push payment confirmed. Requested: {requested_phone}, Paid: {phone}",
        previous_status="pending", new_status=status,
        metadata={"expectedAmount": requested, "actualAmount": amount, "paymentType": payment_type, "source": "stkpush"},
    )
    notify_payment({**order, "remainingBalance": remaining}, amount, fully_paid, receipt)
    logger.info("STK payment %s applied to order %s (%s)", receipt, order.get("orderNumber"), status)
    return {"success": True, "message": "Callback processed successfully"}


# ---------------------------
# C2B
# ---------------------------
def _c2b_field(payload: Dict[str, Any], name: str):
    """Safaricom sends PascalCase; some proxies forward camelCase."""
    if name in payload:
        return payload[name]
    camel = name[0].lower() + name[1:]
    if camel in payload:
        return payload[camel]
    return payload.get(name.lower())


def local_phone(msisdn) -> str:
    """2547XXXXXXXX -> 07XXXXXXXX. Hashed MSISDNs are returned unchanged."""
    raw = str(msisdn or "")
    if not raw or "e" in raw.lower() or len(raw) >= 20:
        return raw or "Unknown"
    digits = re.sub(r"\D", "", raw)
    if digits.startswith("254"):
        return "0" + digits[3:]
    if digits and not digits.startswith("0"):
        return "0" + digits
    return digits


def _find_order_by_bill_ref(bill_ref: str) -> Optional[Dict[str, Any]]:
    conditions: List[Dict[str, Any]] = [{"orderNumber": bill_ref}]
    if ObjectId.is_valid(bill_ref):
        conditions.append({"_id": ObjectId(bill_ref)})
    return orders_col.find_one({"$or": conditions})


def validate_c2b(payload: Dict[str, Any]) -> Dict[str, str]:
    try:
        amount = float(str(_c2b_field(payload, "TransAmount")))
    except (TypeError, ValueError):
        amount = float("nan")
    msisdn = str(_c2b_field(payload, "MSISDN") or "")
    bill_ref = str(_c2b_field(payload, "BillRefNumber") or "").strip()

    if amount != amount or amount <= 0:
        return {"ResultCode": "C2B00013", "ResultDesc": "Invalid Amount"}
    if amount < C2B_MIN_AMOUNT:
        return {"ResultCode": "C2B00013", "ResultDesc": f"Minimum amount is KES {C2B_MIN_AMOUNT}"}
    if len(msisdn) < 10:
        return {"ResultCode": "C2B00011", "ResultDesc": "Invalid MSISDN"}

    if bill_ref:
        order = _find_order_by_bill_ref(bill_ref)
        if order and order.get("paymentStatus") == "paid":
            return {"ResultCode": "C2B00016", "ResultDesc": "Order already paid"}
    return {"ResultCode": "0", "ResultDesc": "Accepted"}


def _apply_c2b_to_order(order: Dict[str, Any], c2b: Dict[str, Any], source_note: str) -> str:
    amount = c2b["amount"]
    remaining, status = balance_after_payment(order, amount)
    fully_paid = status == "paid"
    now = datetime.utcnow()

    snapshot = {
        "transactionId": c2b["transId"],
        "mpesaReceiptNumber": c2b["transId"],
        "transactionDate": c2b["date"],
        "phoneNumber": c2b["phone"],
        "amountPaid": amount,
        "transactionType": c2b["type"],
        "billRefNumber": c2b["billRef"] or "TILL_PAYMENT",
        "thirdPartyTransID": c2b["thirdParty"],
        "orgAccountBalance": c2b["balance"],
        "customerName": c2b["name"],
        "paymentCompletedAt": now,
    }
    update_set = {
        "remainingBalance": remaining,
        "paymentStatus": status,
        "paymentMethod": "mpesa_c2b",
        "c2bPayment": snapshot,
        "updatedAt": now,
    }
    if fully_paid:
        update_set.update({
            "amountPaid": as_float(order.get("totalAmount")),
            "mpesaReceiptNumber": c2b["transId"],
            "transactionDate": c2b["date"],
            "phoneNumber": c2b["phone"],
        })
    orders_col.update_one(
        {"_id": order["_id"]},
        {"$set": update_set, "$push": {"partialPayments": {
            "amount": amount,
            "date": c2b["date"],
            "mpesaReceiptNumber": c2b["transId"],
            "phoneNumber": c2b["phone"],
            "method": "mpesa_c2b",
        }}},
    )

    if not mpesa_txn_col.find_one({"transactionId": c2b["transId"]}):
        customer_name = c2b["name"] or (order.get("customer") or {}).get("name") or "Unknown Customer"
        mpesa_txn_col.insert_one({
            **snapshot,
            "customerName": customer_name,
            "isConnectedToOrder": True,
            "connectedOrderId": order["_id"],
            "connectedAt": now,
            "connectedBy": "SYSTEM",
            "confirmationStatus": "confirmed",
            "pendingOrderId": order["_id"],
            "confirmedBy": "SYSTEM",
            "confirmedCustomerName": customer_name,
            "confirmedAt": now,
            "notes": (
                f"AUTO-CONFIRMED: {source_note} matched to order {order.get('orderNumber')}. Amount: KES {amount:,.0f}. "
                + ("Order fully paid." if fully_paid else f"Remaining balance: KES {remaining:,.0f}")
            ),
            "createdAt": now,
            "updatedAt": now,
        })
    notify_payment({**order, "remainingBalance": remaining}, amount, fully_paid, c2b["transId"])
    return status


def _upsert_payment_customer(c2b: Dict[str, Any], order_updated: bool) -> None:
    msisdn = c2b["msisdn"]
    customer = customers_col.find_one({"$or": [
        {"phone": msisdn},
        {"phone": c2b["localPhone"]},
        {"phone": f"+{msisdn}"},
    ]}) if msisdn else None
    if customer:
        customers_col.update_one(
            {"_id": customer["_id"]},
            {"$set": {
                "lastPaymentDate": c2b["date"],
                "lastPaymentAmount": c2b["amount"],
                "lastTransactionId": c2b["transId"],
            }},
        )
        return
    if not c2b["name"]:
        return
    now = datetime.utcnow()
    customers_col.insert_one({
        "name": c2b["name"],
        "phone": c2b["localPhone"],
        "email": "",
        "address": "",
        "status": "new",
        "preferences": [],
        "createdViaPayment": True,
        "lastPaymentDate": c2b["date"],
        "lastPaymentAmount": c2b["amount"],
        "lastTransactionId": c2b["transId"],
        "totalOrders": 1 if order_updated else 0,
        "totalSpent": 0,
        "createdAt": now,
        "updatedAt": now,
    })


def smart_match_orders(amount: float, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Recent open orders whose total or outstanding balance equals the paid amount."""
    now = now or datetime.utcnow()
    since = now - timedelta(hours=C2B_SMART_MATCH_HOURS)
    return list(orders_col.find({
        "$or": [{"totalAmount": amount}, {"remainingBalance": amount}],
        "paymentStatus": {"$in": ["unpaid", "pending", "partial"]},
        "createdAt": {"$gte": since},
        "paymentMethod": {"$ne": "mpesa_c2b"},
    }).sort("createdAt", -1))


def handle_c2b_confirmation(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply a confirmed C2B payment. Returns a summary of what happened; the
    route always answers Safaricom with success.
    """
    names = [_c2b_field(payload, k) for k in ("FirstName", "MiddleName", "LastName")]
    msisdn = str(_c2b_field(payload, "MSISDN") or "")
    c2b = {
        "transId": str(_c2b_field(payload, "TransID") or ""),
        "type": _c2b_field(payload, "TransactionType") or "Pay Bill",
        "amount": as_float(_c2b_field(payload, "TransAmount")),
        "billRef": str(_c2b_field(payload, "BillRefNumber") or "").strip(),
        "thirdParty": _c2b_field(payload, "ThirdPartyTransID"),
        "balance": _c2b_field(payload, "OrgAccountBalance"),
        "msisdn": msisdn,
        "phone": msisdn or "Unknown",
        "localPhone": local_phone(msisdn),
        "name": " ".join(n for n in names if n).strip(),
        "date": parse_mpesa_timestamp(_c2b_field(payload, "TransTime")) or datetime.utcnow(),
    }
    summary: Dict[str, Any] = {"transactionId": c2b["transId"], "orderUpdated": False, "matchedBy": None}

    if not c2b["transId"]:
        logger.warning("C2B confirmation without TransID ignored")
        return summary
    if mpesa_txn_col.find_one({"transactionId": c2b["transId"]}):
        logger.info("C2B %s already recorded; confirmation replay ignored", c2b["transId"])
        summary["duplicate"] = True
        return summary

    order = _find_order_by_bill_ref(c2b["billRef"]) if c2b["billRef"] else None
    if order:
        summary["paymentStatus"] = _apply_c2b_to_order(order, c2b, "C2B payment")
        summary.update({"orderUpdated": True, "matchedBy": "billRef", "orderNumber": order.get("orderNumber")})
    elif not c2b["billRef"]:
        matches = smart_match_orders(c2b["amount"])
        if len(matches) == 1:
            order = matches[0]
            summary["paymentStatus"] = _apply_c2b_to_order(order, c2b, "Till payment (smart match)")
            summary.update({"orderUpdated": True, "matchedBy": "amount", "orderNumber": order.get("orderNumber")})
            log_payment_action(
                "auto_match", c2b["transId"], order.get("orderNumber"), c2b["amount"],
                customer_name=c2b["name"], phone_number=c2b["phone"],
                notes="C2B till payment matched by amount within the last hours",
                previous_status=order.get("paymentStatus") or "unpaid", new_status=summary["paymentStatus"],
                metadata={"expectedAmount": as_float(order.get("totalAmount")), "actualAmount": c2b["amount"], "source": "c2b"},
            )
        elif matches:
            summary["candidates"] = len(matches)

    try:
        _upsert_payment_customer(c2b, summary["orderUpdated"])
    except Exception:
        logger.exception("Customer upsert failed for C2B %s", c2b["transId"])

    if not summary["orderUpdated"] and not mpesa_txn_col.find_one({"transactionId": c2b["transId"]}):
        now = datetime.utcnow()
        reason = (
            f"bill reference {c2b['billRef']} did not match any order" if c2b["billRef"]
            else f"{summary.get('candidates', 0)} candidate orders for this amount"
        )
        mpesa_txn_col.insert_one({
            "transactionId": c2b["transId"],
            "mpesaReceiptNumber": c2b["transId"],
            "transactionDate": c2b["date"],
            "phoneNumber": c2b["phone"],
            "amountPaid": c2b["amount"],
            "transactionType": c2b["type"],
            "billRefNumber": c2b["billRef"] or "TILL_PAYMENT",
            "thirdPartyTransID": c2b["thirdParty"],
            "orgAccountBalance": c2b["balance"],
            "customerName": c2b["name"] or "Unknown Customer",
            "paymentCompletedAt": now,
            "isConnectedToOrder": False,
            "connectedOrderId": None,
            "confirmationStatus": "pending",
            "pendingOrderId": None,
            "notes": f"Unmatched C2B payment ({reason}). Requires manual connection.",
            "createdAt": now,
            "updatedAt": now,
        })
        summary["storedUnmatched"] = True
        logger.info("C2B %s stored as unmatched (%s)", c2b["transId"], reason)
    return summary
