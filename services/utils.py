from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional

from bson import ObjectId


def safe_object_id(raw) -> Optional[ObjectId]:
    if isinstance(raw, ObjectId):
        return raw
    if not raw or not ObjectId.is_valid(str(raw)):
        return None
    return ObjectId(str(raw))


def as_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def as_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def serialize(value: Any) -> Any:
    """Make a Mongo document JSON-safe (ObjectId -> str, datetime -> ISO)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat() + "Z" if value.tzinfo is None else value.isoformat()
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


def _to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.replace(tzinfo=None) - dt.utcoffset()


def parse_iso_datetime(raw) -> Optional[datetime]:
    if isinstance(raw, datetime):
        return _to_naive_utc(raw)
    if not raw:
        return None
    text = str(raw).strip().replace("Z", "+00:00")
    try:
        return _to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    try:
        return datetime.strptime(text[:10], "%Y-%m-%d")
    except ValueError:
        return None


def regex_contains(term: str) -> dict:
    return {"$regex": re.escape(term), "$options": "i"}
