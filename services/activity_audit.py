from __future__ import annotations

import logging
from datetime import datetime
from functools import wraps
from typing import Any, Dict, Optional, Tuple

from flask import g, request as flask_request

from db import db
from login import get_current_identity, _parse_device, _client_ip

logger = logging.getLogger(__name__)

activity_logs_col = db["activity_logs"]

# Keys copied from request bodies into the log; never payment secrets or phone lists
META_ALLOWLIST = {
    "amount",
    "paymentAmount",
    "status",
    "paymentStatus",
    "laundryStatus",
    "orderId",
    "transactionId",
    "promoCode",
    "category",
    "name",
    "title",
    "type",
    "audience",
}

# (entity_type, label, path keywords), first match wins
ENTITY_MAP = [
    ("mpesa_transaction", "M-Pesa Transaction", ["mpesa-transactions"]),
    ("payment", "Payment", ["payment", "payments", "mpesa"]),
    ("order", "Order", ["order", "orders", "pos"]),
    ("customer", "Customer", ["customer", "customers"]),
    ("service", "Service", ["service", "services"]),
    ("category", "Category", ["category", "categories"]),
    ("promotion", "Promotion", ["promotion", "promotions"]),
    ("expense", "Expense", ["expense", "expenses"]),
    ("sms", "SMS", ["sms"]),
]

VERB_MAP = [
    ("reject", "rejected"),
    ("confirm", "confirmed"),
    ("disconnect", "disconnected"),
    ("connect", "connected"),
    ("recalculate", "recalculated"),
    ("checkout", "created"),
    ("delete", "deleted"),
    ("import", "imported"),
    ("sync", "synced"),
    ("broadcast", "sent"),
    ("initiate", "initiated"),
    ("lock-in", "locked"),
    ("bulk-update", "updated"),
]

METHOD_VERBS = {"POST": "created", "PUT": "updated", "PATCH": "updated", "DELETE": "deleted"}


def ensure_activity_log_indexes() -> None:
    try:
        activity_logs_col.create_index([("user_id", 1), ("timestamp", -1)])
        activity_logs_col.create_index([("day", 1), ("user_id", 1)])
        activity_logs_col.create_index([("action", 1), ("timestamp", -1)])
    except Exception:
        logger.warning("Could not create activity_logs indexes", exc_info=True)


def _date_key(ts: datetime) -> Tuple[str, str]:
    return ts.strftime("%Y-%m-%d"), ts.strftime("%Y-%m")


def _safe_meta_from_request(req) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if req.is_json:
        data = req.get_json(silent=True) or {}
    elif req.form:
        data = req.form.to_dict()
    if not isinstance(data, dict):
        return {}
    return {k: data[k] for k in META_ALLOWLIST if data.get(k) not in (None, "")}


def log_activity(
    action: str,
    action_label: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
    req=None,
) -> Optional[str]:
    """
    Writes an activity log for the signed-in admin. Avoid sensitive payloads in meta.
    """
    ident = get_current_identity()
    if not ident.get("is_authenticated"):
        return None

    req_obj = req or flask_request
    timestamp = datetime.utcnow()
    day, month = _date_key(timestamp)
    user_agent = req_obj.headers.get("User-Agent") if req_obj else None

    doc = {
        "user_id": str(ident.get("user_id") or ""),
        "username": ident.get("name") or "",
        "role": ident.get("role") or "",
        "action": action,
        "action_label": action_label,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "meta": meta or {},
        "ip": _client_ip(req_obj) if req_obj else None,
        "user_agent": user_agent,
        "device": _parse_device(user_agent),
        "timestamp": timestamp,
        "day": day,
        "month": month,
    }

    try:
        res = activity_logs_col.insert_one(doc)
    except Exception:
        logger.exception("Failed to write activity log %s", action)
        return None
    g.activity_logged = True
    return str(res.inserted_id)


def resolve_action_for_request(req) -> Tuple[str, str, Optional[str]]:
    path = (req.path or "").lower()

    entity_type = None
    entity_label = "Record"
    for ent, label, keys in ENTITY_MAP:
        if any(k in path for k in keys):
            entity_type = ent
            entity_label = label
            break

    verb = METHOD_VERBS.get(req.method, "updated")
    for key, out in VERB_MAP:
        if key in path:
            verb = out
            break

    if entity_type:
        return f"{entity_type}.{verb}", f"{verb.capitalize()} {entity_label}", entity_type

    endpoint = (req.endpoint or "").lower()
    if endpoint:
        return f"mutation.{endpoint.replace('.', '_')}", f"Updated via {endpoint}", None
    return "mutation.request", "Updated Record", None


def _reports_failure(response) -> bool:
    """JSON bodies with `ok: false` are refusals even when answered with 200."""
    if response is None or not getattr(response, "is_json", False):
        return False
    data = response.get_json(silent=True)
    return isinstance(data, dict) and data.get("ok") is False


def should_log_request(req, response) -> bool:
    if getattr(g, "activity_logged", False):
        return False
    if req.method in ("GET", "HEAD", "OPTIONS"):
        return False
    if response is not None and response.status_code >= 400:
        return False
    if _reports_failure(response):
        return False
    if not req.endpoint or req.endpoint.startswith("static"):
        return False
    if req.endpoint.startswith("login."):
        return False
    # gateway webhooks are unauthenticated
    path = req.path or ""
    if path.startswith("/api/mpesa/callback") or "/c2b/" in path:
        return False
    return True


def audit_request(req, response) -> None:
    if not should_log_request(req, response):
        return
    action, label, entity_type = resolve_action_for_request(req)
    entity_id = None
    for key, val in (req.view_args or {}).items():
        if key.endswith("_id") or key in ("id", "code"):
            entity_id = str(val)
            break
    meta = _safe_meta_from_request(req)
    log_activity(
        action=action,
        action_label=label,
        entity_type=entity_type,
        entity_id=entity_id,
        meta={**meta, "path": req.path, "method": req.method},
        req=req,
    )


def audit_action(action: str, label: str, entity_type: Optional[str] = None, entity_id_from: Optional[str] = None):
    """
    Decorator for explicit audit logging on high-value actions.
    Only successful responses are logged.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            resp = fn(*args, **kwargs)
            body = resp[0] if isinstance(resp, tuple) else resp
            status = resp[1] if isinstance(resp, tuple) and len(resp) > 1 else getattr(resp, "status_code", 200)
            if flask_request.method in ("GET", "HEAD", "OPTIONS") or status >= 400:
                return resp
            if _reports_failure(body):
                return resp
            if getattr(g, "activity_logged", False):
                return resp
            entity_id = None
            if entity_id_from:
                entity_id = kwargs.get(entity_id_from)
                if entity_id is None:
                    body = flask_request.get_json(silent=True) or {}
                    entity_id = body.get(entity_id_from) if isinstance(body, dict) else None
            meta = _safe_meta_from_request(flask_request)
            log_activity(
                action=action,
                action_label=label,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id else None,
                meta={**meta, "path": flask_request.path, "method": flask_request.method},
                req=flask_request,
            )
            return resp
        return wrapper
    return decorator
