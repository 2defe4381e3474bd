"""
Database helpers

MongoDB access for the marketplace API. The client is created lazily so the
app can be imported (and tested) without a running server; routes receive
the database through the `get_db` dependency.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

load_dotenv()

logger = logging.getLogger(__name__)

MONGODB_URI = os.getenv("MONGODB_URI", "mongodb://localhost:27017")
DB_NAME = os.getenv("DB_NAME", "tut_marketplace")

# Collection names
USERS = "users"
PRODUCTS = "products"
MESSAGES = "messages"
REACTIVATION_REQUESTS = "reactivationRequests"
VERIFICATION_REQUESTS = "verificationRequests"
ANALYTICS_EVENTS = "analytics_events"
VERIFICATION_BUCKET = "verification_images"

_client: Optional[MongoClient] = None
db: Optional[Database] = None


def connect() -> Database:
    global _client, db
    if db is None:
        _client = MongoClient(MONGODB_URI, tz_aware=True, serverSelectionTimeoutMS=5000)
        db = _client[DB_NAME]
        logger.info("MongoDB client created for database %s", DB_NAME)
    return db


def close():
    global _client, db
    if _client is not None:
        _client.close()
    _client = None
    db = None


def get_db() -> Database:
    return connect()


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with createdAt/updatedAt and return its id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude_none=False)
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict.setdefault("createdAt", now)
    data_dict.setdefault("updatedAt", now)
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def ensure_indexes(database: Database):
    """Create the indexes the API relies on. Safe to call repeatedly."""
    try:
        database[USERS].create_index([("email", ASCENDING)], unique=True)
        database[PRODUCTS].create_index([("sellerId", ASCENDING)])
        database[PRODUCTS].create_index([("category", ASCENDING)])
        database[PRODUCTS].create_index([("sellerCampus", ASCENDING)])
        database[PRODUCTS].create_index([("createdAt", DESCENDING)])
        database[MESSAGES].create_index([("conversationId", ASCENDING), ("createdAt", ASCENDING)])
        # At most one pending request per user
        for name in (REACTIVATION_REQUESTS, VERIFICATION_REQUESTS):
            database[name].create_index(
                [("userId", ASCENDING), ("status", ASCENDING)],
                unique=True,
                partialFilterExpression={"status": "pending"},
                name="one_pending_per_user",
            )
        logger.info("Database indexes ensured")
    except PyMongoError as e:
        logger.warning("Could not create indexes: %s", e)
