"""
MongoDB connection helpers.

`db` is None when DATABASE_URL is not set; callers report the database as
unavailable in that case.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import MongoClient

from config import DATABASE_URL, DATABASE_NAME

client: Optional[MongoClient] = MongoClient(DATABASE_URL, tz_aware=True) if DATABASE_URL else None
db = client[DATABASE_NAME] if client is not None else None


def create_document(collection_name: str, data: Dict[str, Any], database=None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not configured")
    now = datetime.now(timezone.utc)
    doc = {**data, "created_at": now, "updated_at": now}
    res = target[collection_name].insert_one(doc)
    return str(res.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None,
                  database=None) -> List[Dict[str, Any]]:
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not configured")
    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
