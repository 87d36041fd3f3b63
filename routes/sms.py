from __future__ import annotations

import logging
from typing import Any, Dict, List

from flask import Blueprint, jsonify, request

from config_constants import BUSINESS_NAME
from db import db
from login import admin_required
from services.activity_audit import audit_action
from services.sms_service import SMSError, notify, sms_service
from services.utils import safe_object_id

logger = logging.getLogger(__name__)

sms_bp = Blueprint("sms", __name__, url_prefix="/api/sms")

customers_col = db["customers"]

TEST_MESSAGE = "This is a test message from {business}. Your SMS integration is working."


@sms_bp.route("", methods=["GET"])
@admin_required
def sms_config():
    return jsonify(ok=True, configured=sms_service.is_configured, config=sms_service.config_summary())


@sms_bp.route("", methods=["POST"])
@admin_required
@audit_action("sms.sent", "Sent SMS", entity_type="sms")
def send_sms():
    body = request.get_json(silent=True) or {}
    mobile = (body.get("mobile") or "").strip()
    msg_type = body.get("type") or "custom"
    if not mobile:
        return jsonify(ok=False, message="Mobile number is required"), 400
    if msg_type == "test":
        message = TEST_MESSAGE.format(business=BUSINESS_NAME)
    else:
        message = (body.get("message") or "").strip()
        if not message:
            return jsonify(ok=False, message="Message is required"), 400
    if not sms_service.is_configured:
        return jsonify(ok=False, message="SMS gateway is not configured"), 503

    try:
        data = sms_service.send_sms(mobile, message)
    except SMSError as e:
        logger.warning("SMS to %s failed: %s", mobile, e)
        return jsonify(ok=False, message=str(e)), 502
    return jsonify(ok=True, message="SMS sent successfully", data=data)


def _broadcast_audience(audience: str, customer_ids: List[str]) -> List[Dict[str, Any]]:
    if audience == "specific":
        oids = [o for o in (safe_object_id(i) for i in customer_ids) if o]
        return list(customers_col.find({"_id": {"$in": oids}})) if oids else []
    if audience == "new":
        return list(customers_col.find({"status": "new"}))
    return list(customers_col.find({"status": {"$ne": "inactive"}}))


@sms_bp.route("/broadcast", methods=["POST"])
@admin_required
@audit_action("sms.broadcast", "Broadcast SMS", entity_type="sms")
def broadcast():
    body = request.get_json(silent=True) or {}
    audience = body.get("audience") or "all"
    message = (body.get("message") or "").strip()
    if audience not in ("all", "new", "specific"):
        return jsonify(ok=False, message="audience must be all, new or specific"), 400
    if not message:
        return jsonify(ok=False, message="Message is required"), 400
    if audience == "specific" and not body.get("customerIds"):
        return jsonify(ok=False, message="customerIds are required for a specific audience"), 400

    recipients = [c for c in _broadcast_audience(audience, body.get("customerIds") or []) if c.get("phone")]
    sent = 0
    failures = []
    for c in recipients:
        ok, status = notify(sms_service.send_special_offer, c, message, label="broadcast SMS")
        if ok:
            sent += 1
        else:
            failures.append({"customerId": str(c["_id"]), "phone": c.get("phone"), "status": status})

    logger.info("SMS broadcast to %s: %d sent, %d failed", audience, sent, len(failures))
    return jsonify(ok=True, total=len(recipients), sent=sent, failed=len(failures), failures=failures)
