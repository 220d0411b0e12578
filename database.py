"""
MongoDB access helpers.

Collections are named after the lowercased schema class (User -> "user").
References between documents are stored as hex id strings; ``_id`` stays an
ObjectId and is exposed as ``id`` by ``to_dict``.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from errors import NotFoundError, UnavailableError

log = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
DATABASE_TIMEOUT_MS = int(os.getenv("DATABASE_TIMEOUT_MS", "5000"))

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=DATABASE_TIMEOUT_MS)
    db = client[DATABASE_NAME]


def get_db():
    if db is None:
        raise UnavailableError("Database not configured")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to naive UTC, which is what pymongo hands back."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_oid(value: Any, what: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(str(value)):
        raise NotFoundError(f"{what} not found")
    return ObjectId(str(value))


def find_by_id(database, collection_name: str, value: Any, what: str) -> Dict[str, Any]:
    doc = database[collection_name].find_one({"_id": parse_oid(value, what)})
    if not doc:
        raise NotFoundError(f"{what} not found")
    return doc


def to_dict(doc):
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> Dict[str, Any]:
    """Insert with timestamps and return the stored document (with ``_id``)."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    doc["_id"] = database[collection_name].insert_one(doc).inserted_id
    return doc


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None,
                  sort: Optional[List] = None, skip: int = 0, limit: int = 0) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return [to_dict(d) for d in cursor]


def ensure_indexes(database) -> None:
    database["shop"].create_index("shop_name", unique=True)
    database["shop"].create_index("owner_id")
    database["product"].create_index([("shop_id", ASCENDING), ("is_active", ASCENDING)])
    database["coupon"].create_index([("shop_id", ASCENDING), ("code", ASCENDING)], unique=True)
    database["coupon"].create_index([("is_active", ASCENDING), ("end_date", ASCENDING)])
    database["order"].create_index([("buyer_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("shop_id", ASCENDING), ("created_at", DESCENDING)])
    database["complaint"].create_index("order_id", unique=True)
    database["complaint"].create_index("order_code")
    database["complaint"].create_index(
        [("shop_id", ASCENDING), ("status", ASCENDING), ("type", ASCENDING), ("created_at", DESCENDING)]
    )
    database["sellerverification"].create_index("seller_id", unique=True)
    database["sellerverification"].create_index("status")
    database["review"].create_index(
        [("product_id", ASCENDING), ("order_id", ASCENDING), ("buyer_id", ASCENDING)], unique=True
    )
    database["review"].create_index("shop_id")
    log.info("Indexes ensured on %s", getattr(database, "name", "database"))
