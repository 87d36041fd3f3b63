from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict

from flask import Blueprint, jsonify, request
from pymongo.errors import DuplicateKeyError

from config_constants import DEFAULT_SERVICE_IMAGE
from db import db
from login import admin_required
from services.activity_audit import audit_action
from services.utils import as_int, regex_contains, safe_object_id, serialize

logger = logging.getLogger(__name__)

catalog_bp = Blueprint("catalog", __name__, url_prefix="/api")

services_col = db["services"]
categories_col = db["categories"]

_COLOR_RE = re.compile(r"^#[0-9A-F]{6}$", re.IGNORECASE)
SERVICE_SORT_FIELDS = ("name", "category", "price", "createdAt", "updatedAt")
SERVICE_FIELDS = ("name", "description", "category", "price", "unit", "turnaround", "turnaroundUnit", "image", "features", "active", "featured")
CATEGORY_FIELDS = ("name", "description", "icon", "color", "active")


def ensure_catalog_indexes() -> None:
    try:
        services_col.create_index([("name", 1)], unique=True)
        services_col.create_index([("category", 1), ("active", 1)])
        categories_col.create_index([("name", 1)], unique=True)
    except Exception:
        logger.warning("Could not create catalog indexes", exc_info=True)


def _strip(value):
    return value.strip() if isinstance(value, str) else value


def _category_exists(name: str) -> bool:
    return categories_col.count_documents({"name": name}, limit=1) > 0


# ---------------------------
# Services
# ---------------------------
@catalog_bp.route("/services", methods=["GET"])
@admin_required
def list_services():
    page = max(1, as_int(request.args.get("page"), 1))
    limit = max(1, min(as_int(request.args.get("limit"), 20), 200))
    category = request.args.get("category")
    status = request.args.get("status")
    search = (request.args.get("search") or "").strip()
    sort_by = request.args.get("sortBy") or "createdAt"
    sort_dir = 1 if request.args.get("sortOrder") == "asc" else -1

    query: Dict[str, Any] = {}
    if category and category != "all":
        query["category"] = category
    if status == "active":
        query["active"] = True
    elif status == "inactive":
        query["active"] = False
    elif status == "featured":
        query["featured"] = True
    if search:
        rx = regex_contains(search)
        query["$or"] = [{"name": rx}, {"description": rx}, {"features": rx}]

    total = services_col.count_documents(query)
    cursor = (
        services_col.find(query)
        .sort(sort_by if sort_by in SERVICE_SORT_FIELDS else "createdAt", sort_dir)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return jsonify(
        ok=True,
        services=[serialize(s) for s in cursor],
        pagination={"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    )


@catalog_bp.route("/services", methods=["POST"])
@admin_required
@audit_action("service.created", "Created service", entity_type="service")
def create_service():
    body = {k: _strip(v) for k, v in (request.get_json(silent=True) or {}).items()}
    required = ("name", "description", "category", "price", "turnaround")
    if any(not body.get(k) for k in required):
        return jsonify(ok=False, message="Name, description, category, price, and turnaround are required"), 400
    if not _category_exists(body["category"]):
        return jsonify(ok=False, message=f"Unknown category: {body['category']}"), 400
    if services_col.find_one({"name": body["name"]}):
        return jsonify(ok=False, message="Service with this name already exists"), 400

    now = datetime.utcnow()
    doc = {
        "name": body["name"],
        "description": body["description"],
        "category": body["category"],
        "price": str(body["price"]),
        "unit": body.get("unit") or "",
        "turnaround": str(body["turnaround"]),
        "turnaroundUnit": body.get("turnaroundUnit") or "",
        "features": [f.strip() for f in body.get("features") or [] if isinstance(f, str) and f.strip()],
        "image": body.get("image") or DEFAULT_SERVICE_IMAGE,
        "active": bool(body.get("active", True)),
        "featured": bool(body.get("featured", False)),
        "createdAt": now,
        "updatedAt": now,
    }
    try:
        doc["_id"] = services_col.insert_one(doc).inserted_id
    except DuplicateKeyError:
        return jsonify(ok=False, message="Service with this name already exists"), 400
    return jsonify(ok=True, service=serialize(doc), message="Service created successfully"), 201


@catalog_bp.route("/services/bulk-update", methods=["PUT"])
@admin_required
@audit_action("service.bulk_updated", "Bulk updated services", entity_type="service")
def bulk_update_services():
    body = request.get_json(silent=True) or {}
    category = body.get("category")
    active = body.get("active")
    if not category or not isinstance(active, bool):
        return jsonify(ok=False, message="Category and active status are required"), 400
    res = services_col.update_many({"category": category}, {"$set": {"active": active, "updatedAt": datetime.utcnow()}})
    return jsonify(
        ok=True,
        message=f'Updated {res.modified_count} services in category "{category}"',
        modifiedCount=res.modified_count,
    )


@catalog_bp.route("/services/<service_id>", methods=["GET"])
@admin_required
def get_service(service_id):
    oid = safe_object_id(service_id)
    if not oid:
        return jsonify(ok=False, message="Invalid service ID"), 400
    svc = services_col.find_one({"_id": oid})
    if not svc:
        return jsonify(ok=False, message="Service not found"), 404
    return jsonify(ok=True, service=serialize(svc))


@catalog_bp.route("/services/<service_id>", methods=["PUT"])
@admin_required
@audit_action("service.updated", "Updated service", entity_type="service", entity_id_from="service_id")
def update_service(service_id):
    oid = safe_object_id(service_id)
    if not oid:
        return jsonify(ok=False, message="Invalid service ID"), 400
    if not services_col.find_one({"_id": oid}):
        return jsonify(ok=False, message="Service not found"), 404

    body = request.get_json(silent=True) or {}
    update = {k: _strip(body[k]) for k in SERVICE_FIELDS if k in body}
    if "name" in update:
        if not update["name"]:
            return jsonify(ok=False, message="Name cannot be empty"), 400
        if services_col.find_one({"name": update["name"], "_id": {"$ne": oid}}):
            return jsonify(ok=False, message="Service with this name already exists"), 400
    if "category" in update and not _category_exists(update["category"]):
        return jsonify(ok=False, message=f"Unknown category: {update['category']}"), 400
    for k in ("price", "turnaround"):
        if k in update:
            update[k] = str(update[k])
    update["updatedAt"] = datetime.utcnow()

    services_col.update_one({"_id": oid}, {"$set": update})
    return jsonify(ok=True, service=serialize(services_col.find_one({"_id": oid})), message="Service updated successfully")


@catalog_bp.route("/services/<service_id>", methods=["DELETE"])
@admin_required
@audit_action("service.deleted", "Deleted service", entity_type="service", entity_id_from="service_id")
def delete_service(service_id):
    oid = safe_object_id(service_id)
    if not oid:
        return jsonify(ok=False, message="Invalid service ID"), 400
    res = services_col.delete_one({"_id": oid})
    if not res.deleted_count:
        return jsonify(ok=False, message="Service not found"), 404
    return jsonify(ok=True, message="Service deleted successfully")


# ---------------------------
# Categories
# ---------------------------
@catalog_bp.route("/categories", methods=["GET"])
@admin_required
def list_categories():
    query: Dict[str, Any] = {}
    if request.args.get("active") == "true":
        query["active"] = True
    cats = [serialize(c) for c in categories_col.find(query).sort("name", 1)]
    counts: Dict[str, int] = {}
    for s in services_col.find({}, {"category": 1}):
        counts[s.get("category")] = counts.get(s.get("category"), 0) + 1
    for c in cats:
        c["serviceCount"] = counts.get(c.get("name"), 0)
    return jsonify(ok=True, categories=cats)


@catalog_bp.route("/categories", methods=["POST"])
@admin_required
@audit_action("category.created", "Created category", entity_type="category")
def create_category():
    body = {k: _strip(v) for k, v in (request.get_json(silent=True) or {}).items()}
    if any(not body.get(k) for k in ("name", "description", "icon", "color")):
        return jsonify(ok=False, message="Name, description, icon, and color are required"), 400
    if not _COLOR_RE.match(body["color"]):
        return jsonify(ok=False, message="Color must be a valid hex color (e.g. #3B82F6)"), 400
    if categories_col.find_one({"name": body["name"]}):
        return jsonify(ok=False, message="Category with this name already exists"), 400

    now = datetime.utcnow()
    doc = {
        "name": body["name"],
        "description": body["description"],
        "icon": body["icon"],
        "color": body["color"],
        "active": bool(body.get("active", True)),
        "createdAt": now,
        "updatedAt": now,
    }
    doc["_id"] = categories_col.insert_one(doc).inserted_id
    return jsonify(ok=True, category=serialize(doc), message="Category created successfully"), 201


@catalog_bp.route("/categories/<category_id>", methods=["PUT"])
@admin_required
@audit_action("category.updated", "Updated category", entity_type="category", entity_id_from="category_id")
def update_category(category_id):
    oid = safe_object_id(category_id)
    if not oid:
        return jsonify(ok=False, message="Invalid category ID"), 400
    existing = categories_col.find_one({"_id": oid})
    if not existing:
        return jsonify(ok=False, message="Category not found"), 404

    body = request.get_json(silent=True) or {}
    update = {k: _strip(body[k]) for k in CATEGORY_FIELDS if k in body}
    if "color" in update and not _COLOR_RE.match(update["color"] or ""):
        return jsonify(ok=False, message="Color must be a valid hex color (e.g. #3B82F6)"), 400
    if "name" in update:
        if not update["name"]:
            return jsonify(ok=False, message="Name cannot be empty"), 400
        if categories_col.find_one({"name": update["name"], "_id": {"$ne": oid}}):
            return jsonify(ok=False, message="Category with this name already exists"), 400
    update["updatedAt"] = datetime.utcnow()

    categories_col.update_one({"_id": oid}, {"$set": update})
    if update.get("name") and update["name"] != existing.get("name"):
        # services reference categories by name
        services_col.update_many({"category": existing.get("name")}, {"$set": {"category": update["name"]}})
    return jsonify(ok=True, category=serialize(categories_col.find_one({"_id": oid})), message="Category updated successfully")


@catalog_bp.route("/categories/<category_id>", methods=["DELETE"])
@admin_required
@audit_action("category.deleted", "Deleted category", entity_type="category", entity_id_from="category_id")
def delete_category(category_id):
    oid = safe_object_id(category_id)
    if not oid:
        return jsonify(ok=False, message="Invalid category ID"), 400
    res = categories_col.delete_one({"_id": oid})
    if not res.deleted_count:
        return jsonify(ok=False, message="Category not found"), 404
    return jsonify(ok=True, message="Category deleted successfully")
