from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Tuple

from flask import Blueprint, jsonify, request
from pymongo.errors import DuplicateKeyError

from login import admin_required, get_current_identity
from services.activity_audit import audit_action
from services.promotion_service import (
    PromotionError,
    code_query,
    calculate_discount,
    find_active_promotion,
    increment_usage,
    lock_in,
    promotions_col,
    update_promotion_statuses,
)
from services.utils import as_float, as_int, parse_iso_datetime, safe_object_id, serialize

logger = logging.getLogger(__name__)

promotions_bp = Blueprint("promotions", __name__, url_prefix="/api/promotions")

DISCOUNT_TYPES = ("percentage", "fixed")
PROMOTION_STATUSES = ("scheduled", "active", "expired", "paused")


def _promotion_from_body(body: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
    """Validate a create/update payload. Returns (document fields, error message)."""
    title = (body.get("title") or "").strip()
    code = (body.get("promoCode") or "").strip().upper()
    if not title or not code:
        return {}, "Title and promo code are required"
    discount_type = body.get("discountType") or "percentage"
    if discount_type not in DISCOUNT_TYPES:
        return {}, "discountType must be percentage or fixed"
    discount = as_float(body.get("discount"))
    if discount <= 0:
        return {}, "Discount must be greater than zero"
    if discount_type == "percentage" and discount > 100:
        return {}, "Percentage discount cannot exceed 100"
    start = parse_iso_datetime(body.get("startDate"))
    end = parse_iso_datetime(body.get("endDate"))
    if not start or not end:
        return {}, "Valid start and end dates are required"
    if end <= start:
        return {}, "End date must be after start date"
    status = body.get("status") or "scheduled"
    if status not in PROMOTION_STATUSES:
        return {}, f"status must be one of: {', '.join(PROMOTION_STATUSES)}"

    return {
        "title": title,
        "promoCode": code,
        "description": (body.get("description") or "").strip(),
        "discount": discount,
        "discountType": discount_type,
        "startDate": start,
        "endDate": end,
        "status": status,
        "usageLimit": max(0, as_int(body.get("usageLimit"))),
        "minOrderAmount": max(0.0, as_float(body.get("minOrderAmount"))),
        "maxDiscount": max(0.0, as_float(body.get("maxDiscount"))),
        "bannerImage": body.get("bannerImage") or "",
    }, ""


def _code_taken(code: str, exclude_id=None) -> bool:
    query = code_query(code)
    if exclude_id:
        query["_id"] = {"$ne": exclude_id}
    return promotions_col.count_documents(query, limit=1) > 0


@promotions_bp.route("", methods=["GET"])
@admin_required
def list_promotions():
    update_promotion_statuses()
    query: Dict[str, Any] = {}
    status = request.args.get("status")
    if status and status != "all":
        query["status"] = status
    promos = [serialize(p) for p in promotions_col.find(query).sort("createdAt", -1)]
    return jsonify(ok=True, promotions=promos)


@promotions_bp.route("/validate", methods=["GET"])
@admin_required
def validate_promotion():
    code = request.args.get("code") or ""
    amount = as_float(request.args.get("orderAmount"))
    try:
        promo = find_active_promotion(code)
    except PromotionError as e:
        return jsonify(ok=False, message=e.message), e.status
    return jsonify(
        ok=True,
        promotion={
            "_id": str(promo["_id"]),
            "title": promo.get("title"),
            "promoCode": promo.get("promoCode"),
            "discount": as_float(promo.get("discount")),
            "discountType": promo.get("discountType"),
            "minOrderAmount": as_float(promo.get("minOrderAmount")),
            "maxDiscount": as_float(promo.get("maxDiscount")),
            "endDate": serialize(promo.get("endDate")),
        },
        calculatedDiscount=calculate_discount(promo, amount) if amount else None,
    )


@promotions_bp.route("/lock-in", methods=["POST"])
@admin_required
def lock_in_promotion():
    body = request.get_json(silent=True) or {}
    try:
        details = lock_in(body.get("promoCode") or "", as_float(body.get("orderAmount")))
    except PromotionError as e:
        return jsonify(ok=False, message=e.message), e.status
    return jsonify(ok=True, message="Promotion locked in", lockedInPromotion=details)


@promotions_bp.route("/use", methods=["POST"])
@admin_required
@audit_action("promotion.used", "Recorded promotion use", entity_type="promotion", entity_id_from="promotionId")
def use_promotion():
    body = request.get_json(silent=True) or {}
    if body.get("promotionId"):
        oid = safe_object_id(body["promotionId"])
        promo = promotions_col.find_one({"_id": oid}) if oid else None
        if not promo:
            return jsonify(ok=False, message="Promotion not found"), 404
        try:
            promo = find_active_promotion(promo.get("promoCode") or "")
        except PromotionError as e:
            return jsonify(ok=False, message=e.message), e.status
    elif body.get("promoCode"):
        try:
            promo = find_active_promotion(body["promoCode"])
        except PromotionError as e:
            return jsonify(ok=False, message=e.message), e.status
    else:
        return jsonify(ok=False, message="Promotion ID or promo code is required"), 400

    increment_usage(promo["_id"])
    updated = promotions_col.find_one({"_id": promo["_id"]}) or promo
    return jsonify(
        ok=True,
        message="Promotion usage updated successfully",
        promotion={
            "_id": str(updated["_id"]),
            "promoCode": updated.get("promoCode"),
            "usageCount": as_int(updated.get("usageCount")),
            "usageLimit": as_int(updated.get("usageLimit")),
            "status": updated.get("status"),
        },
    )


@promotions_bp.route("", methods=["POST"])
@admin_required
@audit_action("promotion.created", "Created promotion", entity_type="promotion")
def create_promotion():
    fields, error = _promotion_from_body(request.get_json(silent=True) or {})
    if error:
        return jsonify(ok=False, message=error), 400
    if _code_taken(fields["promoCode"]):
        return jsonify(ok=False, message="Promo code already exists"), 400

    now = datetime.utcnow()
    doc = {
        **fields,
        "usageCount": 0,
        "createdBy": get_current_identity().get("user_id"),
        "createdAt": now,
        "updatedAt": now,
    }
    try:
        doc["_id"] = promotions_col.insert_one(doc).inserted_id
    except DuplicateKeyError:
        return jsonify(ok=False, message="Promo code already exists"), 400
    logger.info("Promotion %s created (%s)", doc["promoCode"], doc["status"])
    update_promotion_statuses()
    return jsonify(ok=True, promotion=serialize(promotions_col.find_one({"_id": doc["_id"]}) or doc)), 201


@promotions_bp.route("/<promotion_id>", methods=["PUT"])
@admin_required
@audit_action("promotion.updated", "Updated promotion", entity_type="promotion", entity_id_from="promotion_id")
def update_promotion(promotion_id):
    oid = safe_object_id(promotion_id)
    if not oid:
        return jsonify(ok=False, message="Invalid promotion ID"), 400
    if not promotions_col.find_one({"_id": oid}):
        return jsonify(ok=False, message="Promotion not found"), 404

    fields, error = _promotion_from_body(request.get_json(silent=True) or {})
    if error:
        return jsonify(ok=False, message=error), 400
    if _code_taken(fields["promoCode"], exclude_id=oid):
        return jsonify(ok=False, message="Promo code already exists"), 400
    if not fields["bannerImage"]:
        fields.pop("bannerImage")

    promotions_col.update_one(
        {"_id": oid},
        {"$set": {**fields, "updatedBy": get_current_identity().get("user_id"), "updatedAt": datetime.utcnow()}},
    )
    return jsonify(ok=True, promotion=serialize(promotions_col.find_one({"_id": oid})))


@promotions_bp.route("/<promotion_id>", methods=["DELETE"])
@admin_required
@audit_action("promotion.deleted", "Deleted promotion", entity_type="promotion", entity_id_from="promotion_id")
def delete_promotion(promotion_id):
    oid = safe_object_id(promotion_id)
    if not oid:
        return jsonify(ok=False, message="Invalid promotion ID"), 400
    res = promotions_col.delete_one({"_id": oid})
    if not res.deleted_count:
        return jsonify(ok=False, message="Promotion not found"), 404
    return jsonify(ok=True, message="Promotion deleted successfully")
