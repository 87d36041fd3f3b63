from __future__ import annotations

import logging
from datetime import datetime

from flask import Blueprint, Response, jsonify, request

from config_constants import RECONCILE_ROLES
from login import admin_required, get_current_identity, role_required
from services.activity_audit import audit_action
from services.order_pricing import orders_to_csv
from services.order_service import (
    OrderError,
    create_order,
    delete_order,
    get_order,
    list_orders,
    orders_for_period,
    update_order,
    with_colors,
)
from services.receipt_pdf import build_receipt_pdf
from services.reconciliation import ReconciliationError, connect_by_amount, recalculate_all_orders
from services.utils import as_int

logger = logging.getLogger(__name__)

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")
admin_orders_bp = Blueprint("admin_orders", __name__, url_prefix="/api/admin/orders")


@orders_bp.route("", methods=["GET"])
@admin_required
def list_orders_route():
    result = list_orders(
        search=(request.args.get("search") or "").strip(),
        status=request.args.get("status") or "",
        payment_status=request.args.get("paymentStatus") or "",
        sort_by=request.args.get("sortBy") or "createdAt",
        sort_order=request.args.get("sortOrder") or "desc",
        page=as_int(request.args.get("page"), 1),
        limit=as_int(request.args.get("limit"), 20),
    )
    return jsonify(ok=True, **result)


@orders_bp.route("", methods=["POST"])
@admin_required
@audit_action("order.created", "Created order", entity_type="order")
def create_order_route():
    data = request.get_json(silent=True) or {}
    try:
        order = create_order(data)
    except OrderError as e:
        return jsonify(ok=False, message=e.message), e.status
    return jsonify(ok=True, order=with_colors(order), message="Order created successfully"), 201


@orders_bp.route("/<order_id>", methods=["GET"])
@admin_required
def get_order_route(order_id):
    try:
        order = get_order(order_id)
    except OrderError as e:
        return jsonify(ok=False, message=e.message), e.status
    return jsonify(ok=True, order=with_colors(order))


@orders_bp.route("/<order_id>", methods=["PATCH", "PUT"])
@admin_required
@audit_action("order.updated", "Updated order", entity_type="order", entity_id_from="order_id")
def update_order_route(order_id):
    data = request.get_json(silent=True) or {}
    try:
        order, recalculated = update_order(order_id, data)
    except OrderError as e:
        return jsonify(ok=False, message=e.message), e.status
    return jsonify(
        ok=True,
        order=with_colors(order),
        message="Order updated successfully",
        paymentRecalculated=recalculated,
    )


@orders_bp.route("/<order_id>", methods=["DELETE"])
@admin_required
@audit_action("order.deleted", "Deleted order", entity_type="order", entity_id_from="order_id")
def delete_order_route(order_id):
    try:
        order = delete_order(order_id)
    except OrderError as e:
        return jsonify(ok=False, message=e.message), e.status
    return jsonify(ok=True, message=f"Order {order.get('orderNumber')} deleted successfully")


@orders_bp.route("/export.csv", methods=["GET"])
@admin_required
def export_orders_csv():
    period = request.args.get("period") or "all"
    if period not in ("today", "week", "month", "all"):
        return jsonify(ok=False, message="period must be today, week, month or all"), 400
    orders = orders_for_period(period)
    filename = f"orders_{period}_{datetime.utcnow().strftime('%Y-%m-%d')}.csv"
    return Response(
        orders_to_csv(orders),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@orders_bp.route("/<order_id>/receipt.pdf", methods=["GET"])
@admin_required
def order_receipt_pdf(order_id):
    try:
        order = get_order(order_id)
    except OrderError as e:
        return jsonify(ok=False, message=e.message), e.status
    pdf_bytes = build_receipt_pdf(order)
    return Response(
        pdf_bytes,
        mimetype="application/pdf",
        headers={"Content-Disposition": f"inline; filename=receipt_{order.get('orderNumber', order_id)}.pdf"},
    )


# ---------------------------
# Payment reconciliation on orders
# ---------------------------
@admin_orders_bp.route("/connect-payment", methods=["POST"])
@role_required(*RECONCILE_ROLES)
@audit_action("payment.connected_by_amount", "Connected payment by amount", entity_type="order", entity_id_from="orderId")
def connect_payment():
    body = request.get_json(silent=True) or {}
    try:
        result = connect_by_amount(body.get("orderId"), body.get("paymentAmount"), admin=get_current_identity())
    except ReconciliationError as e:
        return jsonify(ok=False, message=e.message), e.status
    return jsonify(result)


@admin_orders_bp.route("/recalculate-payments", methods=["POST"])
@role_required(*RECONCILE_ROLES)
@audit_action("payment.recalculated", "Recalculated order payments", entity_type="order")
def recalculate_payments():
    result = recalculate_all_orders()
    logger.info("Payment recalculation: %d of %d orders updated", result["updatedCount"], result["totalOrders"])
    return jsonify(
        ok=True,
        message=f"Recalculated payment status for {result['totalOrders']} orders",
        **result,
    )
