from __future__ import annotations

import csv
import io
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import Blueprint, Response, jsonify, request
from pymongo.errors import DuplicateKeyError

from config_constants import CUSTOMER_STATUSES
from db import db
from login import admin_required
from services.activity_audit import audit_action
from services.utils import as_float, regex_contains, safe_object_id, serialize

logger = logging.getLogger(__name__)

clients_bp = Blueprint("clients", __name__, url_prefix="/api/customers")

customers_col = db["customers"]
orders_col = db["orders"]

_HASH_RE = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)
_PHONE_RE = re.compile(r"^\d{10,15}$")


def clean_phone(raw) -> str:
    return re.sub(r"\s+", "", str(raw or ""))


def is_valid_phone(raw) -> bool:
    """Rejects hashed MSISDNs and the placeholder values some payment records carry."""
    cleaned = clean_phone(raw)
    if not cleaned or _HASH_RE.match(cleaned) or cleaned in ("Data Error", "Unknown"):
        return False
    return bool(_PHONE_RE.match(cleaned))


def _duplicate(phone: str, email: str, exclude_id=None) -> Optional[Dict[str, Any]]:
    conditions: List[Dict[str, Any]] = [{"phone": phone}]
    if email:
        conditions.append({"email": email})
    query: Dict[str, Any] = {"$or": conditions}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    return customers_col.find_one(query)


def _month_key(dt) -> Optional[str]:
    return dt.strftime("%Y-%m") if isinstance(dt, datetime) else None


def build_client_overview() -> List[Dict[str, Any]]:
    """Customer cards merged with order stats by phone; order-only phones show up as new clients."""
    stats: Dict[str, Dict[str, Any]] = {}
    for o in orders_col.find({}, {"customer": 1, "totalAmount": 1, "createdAt": 1}):
        cust = o.get("customer") or {}
        phone = cust.get("phone")
        if not phone:
            continue
        row = stats.setdefault(phone, {
            "name": cust.get("name") or "",
            "email": cust.get("email") or "",
            "address": cust.get("address") or "",
            "totalOrders": 0,
            "totalSpent": 0.0,
            "lastOrder": None,
            "monthlySpent": {},
        })
        amount = as_float(o.get("totalAmount"))
        row["totalOrders"] += 1
        row["totalSpent"] += amount
        created = o.get("createdAt")
        if isinstance(created, datetime) and (row["lastOrder"] is None or created > row["lastOrder"]):
            row["lastOrder"] = created
        key = _month_key(created)
        if key:
            row["monthlySpent"][key] = row["monthlySpent"].get(key, 0.0) + amount

    cards = []
    seen = set()
    for c in customers_col.find({}).sort("createdAt", -1):
        phone = c.get("phone") or ""
        seen.add(phone)
        s = stats.get(phone, {})
        cards.append({
            "_id": c["_id"],
            "clientNo": phone[-6:],
            "name": c.get("name") or s.get("name") or "",
            "phone": phone,
            "email": c.get("email") or s.get("email") or "",
            "address": c.get("address") or s.get("address") or "",
            "status": c.get("status") or "active",
            "totalOrders": s.get("totalOrders", 0),
            "totalSpent": s.get("totalSpent", 0.0),
            "lastOrder": s.get("lastOrder") or c.get("lastOrder"),
            "monthlySpent": s.get("monthlySpent", {}),
            "createdAt": c.get("createdAt"),
        })
    for phone, s in stats.items():
        if phone in seen:
            continue
        cards.append({
            "_id": None,
            "clientNo": phone[-6:],
            "name": s["name"],
            "phone": phone,
            "email": s["email"],
            "address": s["address"],
            "status": "new",
            "totalOrders": s["totalOrders"],
            "totalSpent": s["totalSpent"],
            "lastOrder": s["lastOrder"],
            "monthlySpent": s["monthlySpent"],
            "createdAt": None,
        })
    return cards


def bulk_import_customers(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    imported = 0
    errors = []
    for idx, row in enumerate(rows, start=1):
        name = (row.get("name") or "").strip()
        phone = re.sub(r"[\s\-()]", "", str(row.get("phone") or ""))
        email = (row.get("email") or "").strip()
        if not name or not phone:
            errors.append({"row": idx, "error": "Name and phone are required", "data": row})
            continue
        dup = customers_col.find_one({
            "phone": phone,
            "name": {"$regex": f"^{re.escape(name)}$", "$options": "i"},
        })
        if dup:
            errors.append({"row": idx, "error": "Customer with this name and phone already exists", "data": row})
            continue
        if email and customers_col.find_one({"email": email}):
            errors.append({"row": idx, "error": "Customer with this email already exists", "data": row})
            continue
        now = datetime.utcnow()
        try:
            customers_col.insert_one({
                "name": name,
                "phone": phone,
                "email": email,
                "address": (row.get("address") or "").strip(),
                "status": row.get("status") if row.get("status") in CUSTOMER_STATUSES else "active",
                "preferences": [],
                "notes": row.get("notes") or "",
                "totalOrders": 0,
                "totalSpent": 0,
                "createdAt": now,
                "updatedAt": now,
            })
        except DuplicateKeyError:
            errors.append({"row": idx, "error": "Customer with this phone number already exists", "data": row})
            continue
        imported += 1
    return {"total": len(rows), "imported": imported, "skipped": len(rows) - imported, "errors": errors}


def sync_customers_from_orders() -> int:
    """Rebuild totals from orders; phones without a customer record get one."""
    stats: Dict[str, Dict[str, Any]] = {}
    for o in orders_col.find({}):
        cust = o.get("customer") or {}
        phone = cust.get("phone")
        if not phone:
            continue
        row = stats.setdefault(phone, {"customer": cust, "totalOrders": 0, "totalSpent": 0.0, "lastOrder": None})
        row["totalOrders"] += 1
        row["totalSpent"] += as_float(o.get("totalAmount"))
        created = o.get("createdAt")
        if isinstance(created, datetime) and (row["lastOrder"] is None or created > row["lastOrder"]):
            row["lastOrder"] = created

    now = datetime.utcnow()
    for phone, s in stats.items():
        fields = {"totalOrders": s["totalOrders"], "totalSpent": s["totalSpent"], "lastOrder": s["lastOrder"], "updatedAt": now}
        existing = customers_col.find_one({"phone": phone})
        if existing:
            customers_col.update_one({"_id": existing["_id"]}, {"$set": fields})
            continue
        cust = s["customer"]
        customers_col.insert_one({
            "name": cust.get("name") or cust.get("email") or phone,
            "phone": phone,
            "email": cust.get("email") or "",
            "address": cust.get("address") or "",
            "status": "active",
            "preferences": [],
            "createdAt": now,
            **fields,
        })
    total = customers_col.count_documents({})
    logger.info("Customer sync complete: %d phones from orders, %d customers", len(stats), total)
    return total


# ---------------------------
# Routes
# ---------------------------
@clients_bp.route("", methods=["GET"])
@admin_required
def list_customers():
    search = (request.args.get("search") or "").strip()
    phone = (request.args.get("phone") or "").strip()
    query: Dict[str, Any] = {}
    if search:
        rx = regex_contains(search)
        query = {"$or": [{"name": rx}, {"phone": rx}]}
    elif phone:
        query = {"phone": phone}
    cursor = customers_col.find(query).sort("createdAt", -1)
    if search:
        cursor = cursor.limit(20)
    return jsonify(ok=True, customers=[serialize(c) for c in cursor])


@clients_bp.route("/overview", methods=["GET"])
@admin_required
def customers_overview():
    return jsonify(ok=True, clients=serialize(build_client_overview()))


@clients_bp.route("", methods=["POST"])
@admin_required
@audit_action("customer.created", "Created customer", entity_type="customer")
def create_customer():
    body = request.get_json(silent=True) or {}
    if not is_valid_phone(body.get("phone")):
        return jsonify(ok=False, message="Invalid phone number. Client not created."), 400
    phone = clean_phone(body.get("phone"))
    email = (body.get("email") or "").strip()
    if _duplicate(phone, email):
        return jsonify(ok=False, message="Customer with this phone number or email already exists"), 400

    now = datetime.utcnow()
    doc = {
        "name": (body.get("name") or "").strip(),
        "phone": phone,
        "email": email,
        "address": (body.get("address") or "").strip(),
        "status": "active",
        "preferences": [],
        "notes": "",
        "totalOrders": 0,
        "totalSpent": 0,
        "createdAt": now,
        "updatedAt": now,
    }
    doc["_id"] = customers_col.insert_one(doc).inserted_id
    return jsonify(ok=True, customer=serialize(doc)), 201


@clients_bp.route("/<customer_id>", methods=["GET"])
@admin_required
def get_customer(customer_id):
    oid = safe_object_id(customer_id)
    if not oid:
        return jsonify(ok=False, message="Invalid customer ID"), 400
    customer = customers_col.find_one({"_id": oid})
    if not customer:
        return jsonify(ok=False, message="Customer not found"), 404
    return jsonify(ok=True, customer=serialize(customer))


@clients_bp.route("/<customer_id>", methods=["PUT"])
@admin_required
@audit_action("customer.updated", "Updated customer", entity_type="customer", entity_id_from="customer_id")
def update_customer(customer_id):
    oid = safe_object_id(customer_id)
    if not oid:
        return jsonify(ok=False, message="Invalid customer ID"), 400
    if not customers_col.find_one({"_id": oid}):
        return jsonify(ok=False, message="Customer not found"), 404

    body = request.get_json(silent=True) or {}
    if not is_valid_phone(body.get("phone")):
        return jsonify(ok=False, message="Invalid phone number. Client not updated."), 400
    phone = clean_phone(body.get("phone"))
    email = (body.get("email") or "").strip()
    if _duplicate(phone, email, exclude_id=oid):
        return jsonify(ok=False, message="Another customer with this phone number or email already exists"), 400

    update: Dict[str, Any] = {
        "name": (body.get("name") or "").strip(),
        "phone": phone,
        "email": email,
        "address": (body.get("address") or "").strip(),
        "updatedAt": datetime.utcnow(),
    }
    if "status" in body:
        if body["status"] not in CUSTOMER_STATUSES:
            return jsonify(ok=False, message="Invalid status"), 400
        update["status"] = body["status"]
    if "notes" in body:
        update["notes"] = body.get("notes") or ""
    if "preferences" in body:
        update["preferences"] = list(body.get("preferences") or [])

    customers_col.update_one({"_id": oid}, {"$set": update})
    return jsonify(ok=True, customer=serialize(customers_col.find_one({"_id": oid})))


@clients_bp.route("/<customer_id>", methods=["DELETE"])
@admin_required
@audit_action("customer.deleted", "Deleted customer", entity_type="customer", entity_id_from="customer_id")
def delete_customer(customer_id):
    oid = safe_object_id(customer_id)
    if not oid:
        return jsonify(ok=False, message="Invalid customer ID"), 400
    res = customers_col.delete_one({"_id": oid})
    if not res.deleted_count:
        return jsonify(ok=False, message="Customer not found"), 404
    return jsonify(ok=True, message="Customer deleted successfully")


@clients_bp.route("/bulk-import", methods=["POST"])
@admin_required
@audit_action("customer.bulk_imported", "Bulk imported customers", entity_type="customer")
def bulk_import():
    body = request.get_json(silent=True) or {}
    rows = body.get("customers")
    if not isinstance(rows, list) or not rows:
        return jsonify(ok=False, message="No customers provided"), 400
    result = bulk_import_customers(rows)
    return jsonify(ok=True, **result)


@clients_bp.route("/sync", methods=["POST"])
@admin_required
def sync_customers():
    total = sync_customers_from_orders()
    return jsonify(ok=True, message="Customers synced from orders", totalCustomers=total)


@clients_bp.route("/export.csv", methods=["GET"])
@admin_required
def export_customers_csv():
    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow(["Name", "Phone", "Email", "Address", "Status", "Total Orders", "Total Spent", "Last Order", "Created"])
    for c in customers_col.find({}).sort("createdAt", -1):
        last = c.get("lastOrder")
        created = c.get("createdAt")
        writer.writerow([
            c.get("name", ""),
            c.get("phone", ""),
            c.get("email", ""),
            c.get("address", ""),
            c.get("status", "active"),
            c.get("totalOrders", 0),
            c.get("totalSpent", 0),
            last.strftime("%Y-%m-%d") if isinstance(last, datetime) else "",
            created.strftime("%Y-%m-%d") if isinstance(created, datetime) else "",
        ])
    filename = f"customers_{datetime.utcnow().strftime('%Y%m%d')}.csv"
    return Response(
        out.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
