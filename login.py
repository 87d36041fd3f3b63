from __future__ import annotations

import logging
from datetime import datetime
from functools import wraps

import bcrypt as bcrypt_lib
from bson.objectid import ObjectId
from flask import Blueprint, request, jsonify, session
from flask_bcrypt import Bcrypt
from flask_login import login_user, logout_user, current_user
from user_agents import parse as ua_parse

from config_constants import ADMIN_ROLES
from db import db
from user_model import User
from services.login_audit import ensure_login_log_indexes, ensure_user_indexes, record_login, get_login_logs_for_user

logger = logging.getLogger(__name__)

login_bp = Blueprint('login', __name__, url_prefix="/api/auth")
bcrypt = Bcrypt()

users_col = db.users


# ---------------------------
# Utilities
# ---------------------------
def _parse_device(user_agent: str | None) -> dict:
    ua = user_agent or ""
    try:
        parsed = ua_parse(ua)
        return {
            "browser": parsed.browser.family,
            "os": parsed.os.family,
            "is_mobile": bool(parsed.is_mobile),
            "is_tablet": bool(parsed.is_tablet),
            "is_pc": bool(parsed.is_pc),
            "raw": ua,
        }
    except Exception:
        logger.debug("user agent parse failed, falling back to string matching", exc_info=True)

    ua_lc = ua.lower()
    browser = "Unknown"
    if "edg" in ua_lc:
        browser = "Edge"
    elif "chrome" in ua_lc and "safari" in ua_lc:
        browser = "Chrome"
    elif "safari" in ua_lc:
        browser = "Safari"
    elif "firefox" in ua_lc:
        browser = "Firefox"

    os_name = "Unknown"
    if "windows" in ua_lc:
        os_name = "Windows"
    elif "android" in ua_lc:
        os_name = "Android"
    elif "iphone" in ua_lc or "ipad" in ua_lc:
        os_name = "iOS"
    elif "mac os" in ua_lc or "macintosh" in ua_lc:
        os_name = "macOS"
    elif "linux" in ua_lc:
        os_name = "Linux"

    is_mobile = "mobi" in ua_lc or "android" in ua_lc or "iphone" in ua_lc
    is_tablet = "ipad" in ua_lc or "tablet" in ua_lc
    return {
        "browser": browser,
        "os": os_name,
        "is_mobile": bool(is_mobile),
        "is_tablet": bool(is_tablet),
        "is_pc": not (is_mobile or is_tablet),
        "raw": ua,
    }


def _client_ip(req) -> str:
    return req.headers.get('X-Forwarded-For', '').split(',')[0].strip() or (req.remote_addr or "")


def get_current_identity() -> dict:
    if getattr(current_user, "is_authenticated", False):
        return {
            "is_authenticated": True,
            "role": (getattr(current_user, "role", "") or "").lower(),
            "user_id": str(getattr(current_user, "id", "") or ""),
            "name": getattr(current_user, "name", "") or getattr(current_user, "username", "") or "Admin",
        }

    role = (session.get("role") or "").lower().strip()
    user_id = str(session.get("user_id") or "")
    if not role or not user_id:
        return {"is_authenticated": False}

    user_doc = users_col.find_one({"_id": ObjectId(user_id)}) if ObjectId.is_valid(user_id) else users_col.find_one({"_id": user_id})
    name = (user_doc or {}).get("name") or (user_doc or {}).get("username") or "Admin"

    return {
        "is_authenticated": True,
        "role": role,
        "user_id": user_id,
        "name": name,
    }


def role_required(*roles):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            ident = get_current_identity()
            if not ident.get("is_authenticated"):
                return jsonify(ok=False, message="Unauthorized"), 401
            if roles and ident.get("role") not in roles:
                return jsonify(ok=False, message="Forbidden"), 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator


admin_required = role_required(*ADMIN_ROLES)


def _check_password(password: str, stored_hash) -> bool:
    if not stored_hash or not str(stored_hash).startswith("$2"):
        return False
    try:
        return bcrypt_lib.checkpw(password.encode("utf-8"), str(stored_hash).encode("utf-8"))
    except ValueError:
        logger.warning("Malformed password hash on user record")
        return False


@login_bp.record_once
def on_load(state):
    bcrypt.init_app(state.app)
    ensure_login_log_indexes()
    ensure_user_indexes()


# ---------------------------
# Login / logout
# ---------------------------
@login_bp.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or request.form.to_dict()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    ip = _client_ip(request)
    device = _parse_device(request.headers.get('User-Agent'))

    user_data = users_col.find_one({"username": username}) if username else None
    if not user_data:
        record_login(username=username, user_id=None, role=None, ip=ip, device=device, success=False)
        return jsonify(ok=False, message="Invalid username or password."), 401

    role = (user_data.get('role') or '').lower()
    status_val = str(user_data.get('status') or '').strip().lower()
    if status_val in ('inactive', 'disabled') or role not in ADMIN_ROLES:
        record_login(username=username, user_id=str(user_data['_id']), role=role, ip=ip, device=device, success=False)
        return jsonify(ok=False, message="Your account is not allowed to access the admin area."), 403

    if not _check_password(password, user_data.get('password')):
        record_login(username=username, user_id=str(user_data['_id']), role=role, ip=ip, device=device, success=False)
        return jsonify(ok=False, message="Invalid username or password."), 401

    session.permanent = True
    session['user_id'] = str(user_data['_id'])
    session['role'] = role
    login_user(User(user_data), remember=True)

    users_col.update_one({"_id": user_data["_id"]}, {"$set": {"lastLogin": datetime.utcnow()}})
    record_login(username=username, user_id=str(user_data['_id']), role=role, ip=ip, device=device, success=True)
    logger.info("Admin %s logged in", username)

    return jsonify(ok=True, user={
        "id": str(user_data['_id']),
        "username": user_data.get('username'),
        "name": user_data.get('name'),
        "role": role,
    })


@login_bp.route('/logout', methods=['POST'])
def logout():
    logout_user()
    session.clear()
    return jsonify(ok=True)


@login_bp.route('/me', methods=['GET'])
@admin_required
def me():
    return jsonify(ok=True, user=get_current_identity())


@login_bp.route('/login-logs', methods=['GET'])
@admin_required
def my_login_logs():
    ident = get_current_identity()
    logs = get_login_logs_for_user(ident.get("user_id"))
    return jsonify(ok=True, logs=logs)
