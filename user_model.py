import logging
from datetime import datetime

import bson
from bson.errors import InvalidId
from flask_login import UserMixin

from db import users_collection

logger = logging.getLogger(__name__)


class User(UserMixin):
    def __init__(self, user_data):
        self.id = str(user_data['_id'])
        self.username = user_data.get('username')
        self.role = (user_data.get('role') or '').lower()
        self.name = user_data.get('name')
        self.email = user_data.get('email')
        self.phone = user_data.get('phone')
        self.status = user_data.get('status')
        self.created_at = self._convert_to_datetime(user_data.get('createdAt'))

    def _convert_to_datetime(self, value):
        """
        Attempts to convert a value to a datetime object.
        If it's already a datetime or cannot be converted, it returns the original value.
        """
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value)
            except ValueError:
                return value
        return value

    def __repr__(self):
        return f"<User {self.username}, {self.role}>"


def get_user_by_id(user_id):
    try:
        user_data = users_collection.find_one({'_id': bson.ObjectId(user_id)})
    except (InvalidId, TypeError):
        logger.warning("Invalid user id %r", user_id)
        return None
    if user_data:
        return User(user_data)
    logger.info("User with ID %s not found.", user_id)
    return None
