from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from config_constants import RECONCILE_ROLES
from login import admin_required, role_required
from services.activity_audit import audit_action
from services.mpesa_events import (
    PaymentFlowError,
    handle_c2b_confirmation,
    handle_stk_callback,
    initiate_stk_payment,
    poll_payment_status,
    validate_c2b,
)
from services.mpesa_service import mpesa_service

logger = logging.getLogger(__name__)

mpesa_bp = Blueprint("mpesa", __name__, url_prefix="/api/mpesa")


@mpesa_bp.route("/initiate", methods=["POST"])
@admin_required
@audit_action("mpesa.stk_initiated", "Initiated STK push", entity_type="order", entity_id_from="orderId")
def initiate():
    body = request.get_json(silent=True) or {}
    try:
        result = initiate_stk_payment(
            body.get("orderId"),
            (body.get("phoneNumber") or "").strip(),
            body.get("amount"),
            body.get("paymentType") or "full",
        )
    except PaymentFlowError as e:
        return jsonify(ok=False, message=e.message), e.status
    return jsonify(ok=True, message="STK push sent. Ask the customer to enter their M-Pesa PIN.", **result)


@mpesa_bp.route("/status/<checkout_request_id>", methods=["GET"])
@admin_required
def payment_status(checkout_request_id):
    try:
        result = poll_payment_status(checkout_request_id)
    except PaymentFlowError as e:
        return jsonify(ok=False, message=e.message), e.status
    return jsonify(ok=True, **result)


@mpesa_bp.route("/callback", methods=["GET"])
def callback_probe():
    return jsonify(ok=True, message="M-Pesa callback endpoint is reachable")


@mpesa_bp.route("/callback", methods=["POST"])
def stk_callback():
    body = request.get_json(silent=True) or {}
    try:
        result = handle_stk_callback(body)
    except Exception:
        logger.exception("STK callback processing failed")
        result = {"success": False, "message": "Callback received"}
    return jsonify(result), 200


@mpesa_bp.route("/c2b/validation", methods=["POST"])
def c2b_validation():
    payload = request.get_json(silent=True) or {}
    try:
        result = validate_c2b(payload)
    except Exception:
        logger.exception("C2B validation failed; accepting payment")
        result = {"ResultCode": "0", "ResultDesc": "Accepted"}
    logger.info("C2B validation %s for %s: %s", payload.get("TransID"), payload.get("BillRefNumber"), result["ResultCode"])
    return jsonify(result), 200


@mpesa_bp.route("/c2b/confirmation", methods=["POST"])
def c2b_confirmation():
    payload = request.get_json(silent=True) or {}
    try:
        summary = handle_c2b_confirmation(payload)
        logger.info("C2B confirmation processed: %s", summary)
    except Exception:
        logger.exception("C2B confirmation processing failed for %s", payload.get("TransID"))
    return jsonify(ResultCode="0", ResultDesc="Success"), 200


@mpesa_bp.route("/c2b/register", methods=["POST"])
@role_required(*RECONCILE_ROLES)
@audit_action("mpesa.c2b_registered", "Registered C2B URLs", entity_type="mpesa")
def c2b_register():
    body = request.get_json(silent=True) or {}
    kwargs = {}
    if body.get("confirmationUrl"):
        kwargs["confirmation_url"] = body["confirmationUrl"]
    if body.get("validationUrl"):
        kwargs["validation_url"] = body["validationUrl"]
    if body.get("responseType") in ("Completed", "Cancelled"):
        kwargs["response_type"] = body["responseType"]
    result = mpesa_service.register_c2b_urls(**kwargs)
    if not result.get("success"):
        return jsonify(ok=False, message=result.get("error") or "C2B URL registration failed", details=result), 400
    return jsonify(ok=True, **result)
