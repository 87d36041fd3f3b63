from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from db import db

logger = logging.getLogger(__name__)

login_logs_col = db["login_logs"]
users_col = db["users"]


def ensure_login_log_indexes() -> None:
    try:
        login_logs_col.create_index([("user_id", 1), ("timestamp", -1)])
        login_logs_col.create_index([("username", 1), ("timestamp", -1)])
        login_logs_col.create_index([("ip", 1), ("timestamp", -1)])
    except Exception:
        logger.warning("Could not create login_logs indexes", exc_info=True)


def ensure_user_indexes() -> None:
    try:
        users_col.create_index([("username", 1)], unique=True)
        users_col.create_index([("role", 1)])
    except Exception:
        logger.warning("Could not create users indexes", exc_info=True)


def record_login(
    username: str,
    user_id: Optional[str],
    role: Optional[str],
    ip: str,
    device: Dict[str, Any],
    success: bool,
) -> None:
    try:
        login_logs_col.insert_one({
            "user_id": user_id,
            "username": username,
            "role": role,
            "ip": ip,
            "device": device,
            "success": bool(success),
            "timestamp": datetime.utcnow(),
        })
    except Exception:
        logger.exception("Failed to write login log for %s", username)


def get_login_logs_for_user(user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    if not user_id:
        return []
    rows = list(
        login_logs_col.find({"user_id": str(user_id)})
        .sort("timestamp", -1)
        .limit(limit)
    )
    for r in rows:
        r["_id"] = str(r.get("_id"))
    return rows
