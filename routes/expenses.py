from __future__ import annotations

import csv
import io
import logging
from datetime import datetime, timedelta
from typing import Any, Dict

from flask import Blueprint, Response, jsonify, request

from db import db
from login import admin_required, get_current_identity
from services.activity_audit import audit_action
from services.utils import as_float, parse_iso_datetime, safe_object_id, serialize

logger = logging.getLogger(__name__)

expenses_bp = Blueprint("expenses", __name__, url_prefix="/api/expenses")

expenses_col = db["expenses"]

EXPENSE_CSV_HEADERS = ["Title", "Amount (Ksh)", "Date", "Category", "Created By", "Notes"]


def ensure_expense_indexes() -> None:
    try:
        expenses_col.create_index([("date", -1)])
        expenses_col.create_index([("category", 1), ("date", -1)])
    except Exception:
        logger.warning("Could not create expenses indexes", exc_info=True)


def _date_range_query(start_raw, end_raw) -> Dict[str, Any]:
    """End dates are inclusive of the whole day."""
    window: Dict[str, Any] = {}
    start = parse_iso_datetime(start_raw)
    end = parse_iso_datetime(end_raw)
    if start:
        window["$gte"] = start
    if end:
        if len(str(end_raw).strip()) <= 10:
            end = end + timedelta(days=1) - timedelta(microseconds=1)
        window["$lte"] = end
    return {"date": window} if window else {}


def _expense_from_body(body: Dict[str, Any]):
    title = (body.get("title") or "").strip()
    category = (body.get("category") or "").strip()
    amount = as_float(body.get("amount"))
    date = parse_iso_datetime(body.get("date"))
    if not title or not category or not body.get("date"):
        return None, "Title, amount, date, and category are required"
    if amount <= 0:
        return None, "Amount must be greater than zero"
    if not date:
        return None, "Invalid date"
    return {
        "title": title,
        "category": category,
        "amount": amount,
        "date": date,
        "notes": (body.get("notes") or "").strip(),
    }, ""


@expenses_bp.route("", methods=["GET"])
@admin_required
def list_expenses():
    query = _date_range_query(request.args.get("startDate"), request.args.get("endDate"))
    category = request.args.get("category")
    if category and category != "all":
        query["category"] = category
    expenses = list(expenses_col.find(query).sort("date", -1))
    return jsonify(
        ok=True,
        expenses=[serialize(e) for e in expenses],
        total=sum(as_float(e.get("amount")) for e in expenses),
    )


@expenses_bp.route("", methods=["POST"])
@admin_required
@audit_action("expense.created", "Created expense", entity_type="expense")
def create_expense():
    fields, error = _expense_from_body(request.get_json(silent=True) or {})
    if error:
        return jsonify(ok=False, message=error), 400
    if expenses_col.find_one({"title": fields["title"], "date": fields["date"], "amount": fields["amount"]}):
        return jsonify(ok=False, message="Duplicate expense entry"), 400

    ident = get_current_identity()
    now = datetime.utcnow()
    doc = {
        **fields,
        "createdBy": {"userId": ident.get("user_id"), "name": ident.get("name"), "role": ident.get("role")},
        "createdAt": now,
        "updatedAt": now,
    }
    doc["_id"] = expenses_col.insert_one(doc).inserted_id
    logger.info("Expense %s recorded: %.2f (%s)", doc["title"], doc["amount"], doc["category"])
    return jsonify(ok=True, expense=serialize(doc), message="Expense added successfully"), 201


@expenses_bp.route("/<expense_id>", methods=["PUT"])
@admin_required
@audit_action("expense.updated", "Updated expense", entity_type="expense", entity_id_from="expense_id")
def update_expense(expense_id):
    oid = safe_object_id(expense_id)
    if not oid:
        return jsonify(ok=False, message="Invalid expense ID"), 400
    if not expenses_col.find_one({"_id": oid}):
        return jsonify(ok=False, message="Expense not found"), 404
    fields, error = _expense_from_body(request.get_json(silent=True) or {})
    if error:
        return jsonify(ok=False, message=error), 400
    expenses_col.update_one({"_id": oid}, {"$set": {**fields, "updatedAt": datetime.utcnow()}})
    return jsonify(ok=True, expense=serialize(expenses_col.find_one({"_id": oid})), message="Expense updated successfully")


@expenses_bp.route("/<expense_id>", methods=["DELETE"])
@admin_required
@audit_action("expense.deleted", "Deleted expense", entity_type="expense", entity_id_from="expense_id")
def delete_expense(expense_id):
    oid = safe_object_id(expense_id)
    if not oid:
        return jsonify(ok=False, message="Invalid expense ID"), 400
    res = expenses_col.delete_one({"_id": oid})
    if not res.deleted_count:
        return jsonify(ok=False, message="Expense not found"), 404
    return jsonify(ok=True, message="Expense deleted successfully")


@expenses_bp.route("/export.csv", methods=["GET"])
@admin_required
def export_expenses_csv():
    start_raw = request.args.get("startDate")
    end_raw = request.args.get("endDate")
    if not start_raw or not end_raw:
        return jsonify(ok=False, message="Start date and end date are required"), 400
    expenses = list(expenses_col.find(_date_range_query(start_raw, end_raw)).sort("date", -1))
    if not expenses:
        return jsonify(ok=False, message="No expenses found for the selected date range"), 404

    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(EXPENSE_CSV_HEADERS)
    for e in expenses:
        date = e.get("date")
        w.writerow([
            e.get("title", ""),
            f"{as_float(e.get('amount')):,.2f}",
            date.strftime("%b %d, %Y") if isinstance(date, datetime) else "",
            e.get("category", ""),
            (e.get("createdBy") or {}).get("name") or "N/A",
            e.get("notes", ""),
        ])
    filename = f"expenses_{start_raw[:10]}_to_{end_raw[:10]}.csv"
    return Response(buf.getvalue(), mimetype="text/csv", headers={"Content-Disposition": f"attachment; filename={filename}"})
