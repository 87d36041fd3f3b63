from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from flask import Blueprint, jsonify, request

from db import db
from login import admin_required
from services.activity_audit import audit_action
from services.mpesa_events import PaymentFlowError, initiate_stk_payment
from services.order_pricing import build_quote, parse_price
from services.order_service import OrderError, create_order, with_colors
from services.promotion_service import PromotionError, lock_in
from services.utils import as_float, as_int, safe_object_id, serialize

logger = logging.getLogger(__name__)

pos_bp = Blueprint("pos", __name__, url_prefix="/api/pos")

services_col = db["services"]
categories_col = db["categories"]


def _cart_items(raw: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Resolve cart lines; a known serviceId wins over the client-supplied name and price."""
    ids = [safe_object_id(i.get("serviceId")) for i in raw]
    known = {s["_id"]: s for s in services_col.find({"_id": {"$in": [i for i in ids if i]}})} if any(ids) else {}
    items = []
    for line, oid in zip(raw, ids):
        svc = known.get(oid) if oid else None
        items.append({
            "serviceId": str(oid) if svc else line.get("serviceId"),
            "serviceName": (svc or {}).get("name") or line.get("serviceName") or line.get("name") or "",
            "quantity": max(1, as_int(line.get("quantity"), 1)),
            "price": str((svc or {}).get("price") if svc else line.get("price", "0")),
        })
    return items


def _resolve_promotion(body: Dict[str, Any], subtotal: float) -> Optional[Dict[str, Any]]:
    details = body.get("promotionDetails")
    if details and details.get("lockedIn"):
        return details
    code = (body.get("promoCode") or "").strip()
    if code:
        return lock_in(code, subtotal)
    return None


def _quote_from_body(body: Dict[str, Any]):
    items = _cart_items(body.get("items") or [])
    subtotal = sum(parse_price(i["price"]) * i["quantity"] for i in items)
    promotion = _resolve_promotion(body, subtotal)
    quote = build_quote(
        items,
        pick_drop=as_float(body.get("pickDropAmount")),
        discount=as_float(body.get("discount")),
        promo_discount=as_float((promotion or {}).get("calculatedDiscount")),
        payment_status=body.get("paymentStatus") or "unpaid",
        partial_amount=as_float(body.get("partialAmount")),
    )
    return items, promotion, quote


@pos_bp.route("/quote", methods=["POST"])
@admin_required
def quote():
    body = request.get_json(silent=True) or {}
    if not body.get("items"):
        return jsonify(ok=False, message="Cart is empty"), 400
    try:
        items, promotion, q = _quote_from_body(body)
    except PromotionError as e:
        return jsonify(ok=False, message=e.message), e.status
    return jsonify(ok=True, items=items, promotion=promotion, **q)


@pos_bp.route("/checkout", methods=["POST"])
@admin_required
@audit_action("pos.checkout", "POS checkout", entity_type="order")
def checkout():
    body = request.get_json(silent=True) or {}
    if not body.get("items"):
        return jsonify(ok=False, message="Cart is empty"), 400
    try:
        items, promotion, q = _quote_from_body(body)
    except PromotionError as e:
        return jsonify(ok=False, message=e.message), e.status

    payment_method = body.get("paymentMethod") or "cash"
    order_data = {
        "customer": body.get("customer") or {},
        "services": items,
        "location": body.get("location"),
        "totalAmount": q["finalTotal"],
        "pickDropAmount": q["pickDropAmount"],
        "discount": q["discount"],
        "partialAmount": q["partialAmount"],
        "remainingAmount": q["remainingAmount"],
        "paymentStatus": q["paymentStatus"],
        "paymentMethod": payment_method,
        "pickupDate": body.get("pickupDate"),
        "pickupTime": body.get("pickupTime"),
        "notes": body.get("notes"),
        "promotionDetails": promotion,
    }
    try:
        order = create_order(order_data)
    except OrderError as e:
        return jsonify(ok=False, message=e.message), e.status

    stk = None
    phone = (body.get("mpesaPhone") or (body.get("customer") or {}).get("phone") or "").strip()
    if payment_method == "mpesa_stk" and phone:
        payment_type = body.get("paymentType") or "full"
        amount = q["partialAmount"] if payment_type == "partial" and q["partialAmount"] > 0 else q["finalTotal"]
        try:
            stk = {"ok": True, **initiate_stk_payment(str(order["_id"]), phone, amount, payment_type)}
        except PaymentFlowError as e:
            logger.warning("Checkout STK push failed for order %s: %s", order.get("orderNumber"), e.message)
            stk = {"ok": False, "message": e.message}

    return jsonify(ok=True, order=with_colors(order), quote=q, stkPush=stk), 201


@pos_bp.route("/catalog", methods=["GET"])
@admin_required
def catalog():
    categories = {c.get("name"): c for c in categories_col.find({"active": {"$ne": False}})}
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for s in services_col.find({"active": True}).sort("name", 1):
        row = serialize(s)
        row["numericPrice"] = parse_price(s.get("price"))
        grouped.setdefault(s.get("category") or "uncategorized", []).append(row)

    out = []
    for name, services in grouped.items():
        cat = categories.get(name) or {}
        out.append({
            "category": name,
            "icon": cat.get("icon"),
            "color": cat.get("color"),
            "services": services,
        })
    return jsonify(ok=True, categories=out)
