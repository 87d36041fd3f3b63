from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from db import db

logger = logging.getLogger(__name__)

payment_audit_col = db["payment_audit_logs"]

PAYMENT_AUDIT_ACTIONS = (
    "auto_match",
    "auto_confirm_payment",
    "manual_confirm",
    "manual_reject",
    "manual_link",
    "manual_unlink",
)


def ensure_payment_audit_indexes() -> None:
    try:
        payment_audit_col.create_index([("transactionId", 1)])
        payment_audit_col.create_index([("orderId", 1)])
        payment_audit_col.create_index([("action", 1), ("timestamp", -1)])
    except Exception:
        logger.warning("Could not create payment_audit_logs indexes", exc_info=True)


def log_payment_action(
    action: str,
    transaction_id: Optional[str],
    order_id: Optional[str],
    amount: float,
    admin: Optional[Dict[str, Any]] = None,
    customer_name: str = "",
    phone_number: str = "",
    notes: str = "",
    previous_status: str = "",
    new_status: str = "",
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """
    Record a reconciliation decision. `admin` is the identity dict of the
    acting user; automatic matches are attributed to SYSTEM.
    """
    if action not in PAYMENT_AUDIT_ACTIONS:
        raise ValueError(f"Unknown payment audit action: {action}")

    admin = admin or {}
    doc = {
        "action": action,
        "transactionId": transaction_id,
        "orderId": order_id,
        "adminUserId": admin.get("user_id") or "SYSTEM",
        "adminUserName": admin.get("name") or "SYSTEM",
        "customerName": customer_name,
        "amount": float(amount or 0),
        "phoneNumber": phone_number,
        "notes": notes,
        "previousStatus": previous_status,
        "newStatus": new_status,
        "timestamp": datetime.utcnow(),
        "metadata": metadata or {},
    }
    try:
        res = payment_audit_col.insert_one(doc)
    except Exception:
        logger.exception("Failed to write payment audit log (%s, %s)", action, transaction_id)
        return None
    return str(res.inserted_id)


def list_payment_audit_logs(
    order_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if order_id:
        query["orderId"] = order_id
    if transaction_id:
        query["transactionId"] = transaction_id
    rows = list(payment_audit_col.find(query).sort("timestamp", -1).limit(limit))
    for r in rows:
        r["_id"] = str(r["_id"])
    return rows
