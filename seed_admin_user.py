# seed_admin_user.py
import logging
import os
from datetime import datetime

from flask_bcrypt import Bcrypt

from db import db

logger = logging.getLogger(__name__)

bcrypt = Bcrypt()
users_col = db["users"]


def build_admin_user(username: str, password: str, name: str, role: str = "superadmin") -> dict:
    now = datetime.utcnow()
    return {
        "username": username,
        "password": bcrypt.generate_password_hash(password).decode("utf-8"),
        "role": role,
        "name": name,
        "phone": os.environ.get("ADMIN_PHONE", ""),
        "email": os.environ.get("ADMIN_EMAIL", ""),
        "status": "active",
        "updatedAt": now,
    }


def seed_admin_user() -> str:
    username = os.environ.get("ADMIN_USERNAME", "admin")
    password = os.environ.get("ADMIN_PASSWORD")
    if not password:
        raise SystemExit("ADMIN_PASSWORD must be set")
    user_data = build_admin_user(
        username,
        password,
        os.environ.get("ADMIN_NAME", "Administrator"),
        os.environ.get("ADMIN_ROLE", "superadmin"),
    )
    users_col.update_one(
        {"username": username},
        {"$set": user_data, "$setOnInsert": {"createdAt": user_data["updatedAt"]}},
        upsert=True,
    )
    return username


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    logger.info("Admin user %s inserted/updated", seed_admin_user())
