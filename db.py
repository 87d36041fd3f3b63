import logging

from pymongo.mongo_client import MongoClient
from pymongo.server_api import ServerApi

from config_constants import MONGODB_URI, MONGODB_DB

logger = logging.getLogger(__name__)

# Connect using Server API version 1
client = MongoClient(MONGODB_URI, server_api=ServerApi('1'))

# Select the database
db = client[MONGODB_DB]

# Collections
users_collection = db['users']


def ping_database() -> bool:
    try:
        client.admin.command('ping')
        logger.info("Connected to MongoDB (%s)", MONGODB_DB)
        return True
    except Exception as e:
        logger.error("MongoDB connection failed: %s", e)
        return False
