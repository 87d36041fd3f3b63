from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo import ReturnDocument

from db import db
from services.utils import as_float, as_int, safe_object_id

logger = logging.getLogger(__name__)

promotions_col = db["promotions"]


class PromotionError(Exception):
    """Raised when a promo code cannot be applied. `status` is the HTTP code to answer with."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def ensure_promotion_indexes() -> None:
    try:
        promotions_col.create_index([("promoCode", 1)], unique=True)
        promotions_col.create_index([("status", 1), ("startDate", 1), ("endDate", 1)])
    except Exception:
        logger.warning("Could not create promotions indexes", exc_info=True)


def code_query(code: str) -> Dict[str, Any]:
    return {"promoCode": {"$regex": f"^{re.escape(code.strip())}$", "$options": "i"}}


def update_promotion_statuses(now: Optional[datetime] = None) -> int:
    """
    Move promotions along scheduled -> active -> expired.
    Returns the number of promotions whose status changed.
    """
    now = now or datetime.utcnow()
    changed = 0
    for promo in promotions_col.find({"status": {"$in": ["scheduled", "active"]}}):
        status = promo.get("status")
        usage_limit = as_int(promo.get("usageLimit"))
        new_status = status
        if usage_limit and as_int(promo.get("usageCount")) >= usage_limit:
            new_status = "expired"
        elif status == "scheduled" and promo.get("startDate") and now >= promo["startDate"]:
            new_status = "active"
        if new_status == "active" and promo.get("endDate") and now >= promo["endDate"]:
            new_status = "expired"
        if new_status != status:
            promotions_col.update_one({"_id": promo["_id"]}, {"$set": {"status": new_status, "updatedAt": now}})
            changed += 1
    if changed:
        logger.info("Promotion statuses updated: %d", changed)
    return changed


def calculate_discount(promo: Dict[str, Any], order_amount: float) -> float:
    if order_amount < as_float(promo.get("minOrderAmount")):
        return 0.0
    discount = as_float(promo.get("discount"))
    max_discount = as_float(promo.get("maxDiscount"))
    if promo.get("discountType") == "percentage":
        value = float(round(order_amount * discount / 100))
    else:
        value = discount
    if max_discount > 0:
        value = min(value, max_discount)
    return value


def find_active_promotion(code: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Case-insensitive exact lookup of a running promotion; raises PromotionError."""
    if not code or not code.strip():
        raise PromotionError("Promo code is required", 400)
    now = now or datetime.utcnow()
    update_promotion_statuses(now)
    promo = promotions_col.find_one({
        **code_query(code),
        "status": "active",
        "startDate": {"$lte": now},
        "endDate": {"$gte": now},
    })
    if not promo:
        raise PromotionError("Invalid or expired promo code", 404)
    usage_limit = as_int(promo.get("usageLimit"))
    if usage_limit and as_int(promo.get("usageCount")) >= usage_limit:
        promotions_col.update_one({"_id": promo["_id"]}, {"$set": {"status": "expired"}})
        raise PromotionError("Promo code usage limit exceeded", 400)
    return promo


def increment_usage(promotion_id) -> bool:
    oid = safe_object_id(promotion_id)
    if not oid:
        return False
    promo = promotions_col.find_one_and_update(
        {"_id": oid},
        {"$inc": {"usageCount": 1}, "$set": {"updatedAt": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not promo:
        return False
    usage_limit = as_int(promo.get("usageLimit"))
    if usage_limit and as_int(promo.get("usageCount")) >= usage_limit and promo.get("status") != "expired":
        promotions_col.update_one({"_id": oid}, {"$set": {"status": "expired"}})
        logger.info("Promotion %s reached its usage limit", promo.get("promoCode"))
    return True


def lock_in(code: str, order_amount: float) -> Dict[str, Any]:
    promo = find_active_promotion(code)
    min_amount = as_float(promo.get("minOrderAmount"))
    if order_amount < min_amount:
        raise PromotionError(f"Minimum order amount is Ksh {min_amount:,.0f}", 400)
    return {
        "promotionId": str(promo["_id"]),
        "promoCode": promo.get("promoCode"),
        "discount": as_float(promo.get("discount")),
        "discountType": promo.get("discountType"),
        "minOrderAmount": min_amount,
        "maxDiscount": as_float(promo.get("maxDiscount")),
        "appliedAt": datetime.utcnow().isoformat() + "Z",
        "lockedIn": True,
        "calculatedDiscount": calculate_discount(promo, order_amount),
    }


def apply_locked_in(details: Dict[str, Any]) -> Dict[str, Any]:
    """
    Honor a locked-in promotion even if it has since expired or been deleted.
    Returns the order fields to store.
    """
    if details.get("promotionId") and promotions_col.find_one({"_id": safe_object_id(details["promotionId"])}):
        increment_usage(details["promotionId"])
    else:
        logger.info("Locked-in promotion %s no longer exists; honoring stored discount", details.get("promoCode"))
    return {
        "promoCode": details.get("promoCode"),
        "promoDiscount": as_float(details.get("calculatedDiscount")),
        "promotionDetails": details,
    }


def apply_code(code: str, order_total: float) -> Dict[str, Any]:
    """
    Apply a regular promo code to an order total at creation time.
    Codes that no longer qualify are dropped silently. A valid code counts as
    used even when the order is below its minimum amount.
    """
    try:
        promo = find_active_promotion(code)
    except PromotionError as e:
        logger.info("Promo code %s not applied: %s", code, e.message)
        return {}
    discount = calculate_discount(promo, order_total)
    increment_usage(promo["_id"])
    return {
        "promoCode": promo.get("promoCode"),
        "promoDiscount": discount,
        "promotionDetails": {
            "promotionId": str(promo["_id"]),
            "promoCode": promo.get("promoCode"),
            "discount": as_float(promo.get("discount")),
            "discountType": promo.get("discountType"),
            "calculatedDiscount": discount,
        },
    }
