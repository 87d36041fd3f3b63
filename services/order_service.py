from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from config_constants import (
    DEFAULT_LOCATION,
    LAUNDRY_STATUSES,
    ORDER_STATUSES,
    PAYMENT_METHODS,
    PAYMENT_STATUSES,
)
from db import db
from services.order_pricing import generate_order_number, payment_status_color, status_color
from services.promotion_service import apply_code, apply_locked_in, update_promotion_statuses
from services.reconciliation import recalculate_order_payment
from services.sms_service import notify, sms_service
from services.utils import as_float, as_int, regex_contains, safe_object_id, serialize

logger = logging.getLogger(__name__)

orders_col = db["orders"]
customers_col = db["customers"]

# Fields an admin may change through PATCH /api/orders/<id>
UPDATABLE_FIELDS = (
    "customer", "services", "location", "totalAmount", "pickDropAmount", "discount",
    "partialAmount", "remainingAmount", "remainingBalance", "paymentStatus", "paymentMethod",
    "laundryStatus", "status", "pickupDate", "pickupTime", "notes", "promoCode",
    "promoDiscount", "promotionDetails",
)
AMOUNT_FIELDS = ("totalAmount", "discount", "pickDropAmount")
NUMERIC_FIELDS = ("totalAmount", "pickDropAmount", "discount", "partialAmount", "remainingAmount", "remainingBalance", "promoDiscount")


class OrderError(Exception):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def ensure_order_indexes() -> None:
    try:
        orders_col.create_index([("orderNumber", 1)], unique=True)
        orders_col.create_index([("customer.phone", 1)])
        orders_col.create_index([("createdAt", -1)])
        orders_col.create_index([("paymentStatus", 1), ("createdAt", -1)])
        orders_col.create_index([("checkoutRequestId", 1)])
        customers_col.create_index([("phone", 1)], unique=True)
    except Exception:
        logger.warning("Could not create order indexes", exc_info=True)


def _clean_services(raw: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "serviceId": s.get("serviceId"),
            "serviceName": s.get("serviceName") or s.get("name") or "",
            "quantity": max(1, as_int(s.get("quantity"), 1)),
            "price": str(s.get("price") if s.get("price") is not None else "0"),
        }
        for s in raw
    ]


def _promotion_fields(data: Dict[str, Any], order_total: float) -> Dict[str, Any]:
    details = data.get("promotionDetails")
    code = (data.get("promoCode") or "").strip()
    if (details and details.get("lockedIn")) or code:
        update_promotion_statuses()
    if details and details.get("lockedIn"):
        return apply_locked_in(details)
    if code:
        return apply_code(code, order_total)
    return {}


def with_colors(order: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize(order)
    out["statusColor"] = status_color(order.get("status"))
    out["paymentStatusColor"] = payment_status_color(order.get("paymentStatus"))
    return out


def upsert_customer_stats(order: Dict[str, Any]) -> None:
    """Keep the customer card in step with a newly created order."""
    customer = order.get("customer") or {}
    phone = customer.get("phone")
    if not phone:
        return
    now = datetime.utcnow()
    existing = customers_col.find_one({"phone": phone})
    if existing:
        customers_col.update_one(
            {"_id": existing["_id"]},
            {
                "$inc": {"totalOrders": 1, "totalSpent": as_float(order.get("totalAmount"))},
                "$set": {"lastOrder": now, "updatedAt": now},
            },
        )
        return
    customers_col.insert_one({
        "name": customer.get("name") or customer.get("email") or phone,
        "phone": phone,
        "email": customer.get("email") or "",
        "address": customer.get("address") or "",
        "status": "new",
        "preferences": [],
        "notes": "",
        "totalOrders": 1,
        "totalSpent": as_float(order.get("totalAmount")),
        "lastOrder": now,
        "createdAt": now,
        "updatedAt": now,
    })


def create_order(data: Dict[str, Any]) -> Dict[str, Any]:
    customer = data.get("customer") or {}
    services = data.get("services") or []
    if not customer.get("phone") or not services:
        raise OrderError("Customer phone and at least one service are required", 400)

    total = as_float(data.get("totalAmount"))
    promo = _promotion_fields(data, total)
    now = datetime.utcnow()

    payment_status = data.get("paymentStatus") if data.get("paymentStatus") in PAYMENT_STATUSES else "unpaid"
    order: Dict[str, Any] = {
        "orderNumber": generate_order_number(),
        "customer": {
            "name": customer.get("name") or "",
            "phone": str(customer.get("phone")).strip(),
            "email": customer.get("email") or "",
            "address": customer.get("address") or "",
        },
        "services": _clean_services(services),
        "location": data.get("location") or DEFAULT_LOCATION,
        "totalAmount": total,
        "pickDropAmount": as_float(data.get("pickDropAmount")),
        "discount": as_float(data.get("discount")),
        "partialAmount": as_float(data.get("partialAmount")),
        "remainingAmount": as_float(data.get("remainingAmount")),
        "remainingBalance": total,
        "partialPayments": [],
        "paymentStatus": payment_status,
        "paymentMethod": data.get("paymentMethod") if data.get("paymentMethod") in PAYMENT_METHODS else "cash",
        "laundryStatus": data.get("laundryStatus") if data.get("laundryStatus") in LAUNDRY_STATUSES else "to-be-picked",
        "status": data.get("status") if data.get("status") in ORDER_STATUSES else "pending",
        "pickupDate": data.get("pickupDate") or "",
        "pickupTime": data.get("pickupTime") or "",
        "notes": data.get("notes") or "",
        "promoCode": promo.get("promoCode") or "",
        "promoDiscount": as_float(promo.get("promoDiscount")),
        "createdAt": now,
        "updatedAt": now,
    }
    if promo.get("promotionDetails"):
        order["promotionDetails"] = promo["promotionDetails"]

    res = orders_col.insert_one(order)
    order["_id"] = res.inserted_id
    logger.info("Order %s created for %s (Ksh %.2f)", order["orderNumber"], order["customer"]["phone"], total)

    try:
        upsert_customer_stats(order)
    except Exception:
        logger.exception("Customer stats update failed for order %s", order["orderNumber"])

    _, sms_status = notify(sms_service.send_booking_confirmation, order, label="booking confirmation SMS")
    notify(sms_service.send_admin_new_order_notification, order, label="admin new-order SMS")
    orders_col.update_one({"_id": order["_id"]}, {"$set": {"smsStatus": sms_status}})
    order["smsStatus"] = sms_status
    return order


def get_order(order_id) -> Dict[str, Any]:
    oid = safe_object_id(order_id)
    if not oid:
        raise OrderError("Invalid order ID", 400)
    order = orders_col.find_one({"_id": oid})
    if not order:
        raise OrderError("Order not found", 404)
    return order


def _normalise_update(data: Dict[str, Any]) -> Dict[str, Any]:
    update = {k: data[k] for k in UPDATABLE_FIELDS if k in data}
    for k in NUMERIC_FIELDS:
        if k in update:
            update[k] = as_float(update[k])
    if "services" in update:
        update["services"] = _clean_services(update["services"] or [])
    for field, allowed in (
        ("status", ORDER_STATUSES),
        ("laundryStatus", LAUNDRY_STATUSES),
        ("paymentStatus", PAYMENT_STATUSES),
        ("paymentMethod", PAYMENT_METHODS),
    ):
        if field in update and update[field] not in allowed:
            raise OrderError(f"Invalid {field}: {update[field]}", 400)
    return update


def update_order(order_id, data: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Apply an admin edit. Returns (updated order, whether payment was recalculated)."""
    existing = get_order(order_id)
    update = _normalise_update(data or {})

    details = update.get("promotionDetails")
    if details and details.get("lockedIn"):
        update_promotion_statuses()
        update.update(apply_locked_in(details))

    if not update:
        return existing, False

    update["updatedAt"] = datetime.utcnow()
    orders_col.update_one({"_id": existing["_id"]}, {"$set": update})
    order = orders_col.find_one({"_id": existing["_id"]})

    amount_changed = any(as_float(existing.get(k)) != as_float(order.get(k)) for k in AMOUNT_FIELDS)
    if amount_changed:
        logger.info("Order %s amounts changed; recalculating payment status", order.get("orderNumber"))
        recalculate_order_payment(order)
        order = orders_col.find_one({"_id": existing["_id"]})

    new_status = update.get("status")
    if new_status and new_status != existing.get("status"):
        notify(sms_service.send_order_status_update, order, new_status, label="order status SMS")
    new_laundry = update.get("laundryStatus")
    if new_laundry == "ready" and existing.get("laundryStatus") != "ready":
        notify(sms_service.send_delivery_notification, order, label="delivery notification SMS")

    return order, amount_changed


def delete_order(order_id) -> Dict[str, Any]:
    order = get_order(order_id)
    orders_col.delete_one({"_id": order["_id"]})
    logger.info("Order %s deleted", order.get("orderNumber"))
    return order


def list_orders(
    search: str = "",
    status: str = "",
    payment_status: str = "",
    sort_by: str = "createdAt",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if search:
        rx = regex_contains(search)
        query["$or"] = [
            {"orderNumber": rx},
            {"customer.name": rx},
            {"customer.phone": rx},
            {"customer.email": rx},
        ]
    if status and status != "all":
        query["status"] = status
    if payment_status and payment_status != "all":
        query["paymentStatus"] = payment_status

    sort_fields = {
        "orderNumber": "orderNumber",
        "customerName": "customer.name",
        "totalAmount": "totalAmount",
        "status": "status",
        "createdAt": "createdAt",
    }
    sort_key = sort_fields.get(sort_by, "createdAt")
    direction = 1 if sort_order == "asc" else -1
    page = max(1, page)
    limit = max(1, min(limit, 200))

    total = orders_col.count_documents(query)
    cursor = orders_col.find(query).sort(sort_key, direction).skip((page - 1) * limit).limit(limit)
    return {
        "orders": [with_colors(o) for o in cursor],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


def orders_for_period(period: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Orders for the CSV export: today, last 7 days, this calendar month, or all."""
    now = now or datetime.utcnow()
    query: Dict[str, Any] = {}
    if period == "today":
        query["createdAt"] = {"$gte": now.replace(hour=0, minute=0, second=0, microsecond=0)}
    elif period == "week":
        query["createdAt"] = {"$gte": now - timedelta(days=7)}
    elif period == "month":
        query["createdAt"] = {"$gte": now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)}
    return list(orders_col.find(query).sort("createdAt", -1))
