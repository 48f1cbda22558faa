"""
MongoDB access helpers.

Collections are named after the lowercase of the entity (User -> "user",
CartItem -> "cartitem"). Documents are stamped with createdAt/updatedAt and
serialized with `_id` renamed to `id`.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from fastapi import Request
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

from config import Settings
from errors import ApiError, ErrorCode
from listing import ListQuery


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes, so store them that way too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db(request: Request) -> Database:
    return request.app.state.db


def connect(settings: Settings) -> MongoClient:
    client = MongoClient(settings.database_url, serverSelectionTimeoutMS=10000)
    client.admin.command("ping")
    return client


def ensure_indexes(db: Database) -> None:
    db["user"].create_index("email", unique=True)
    db["book"].create_index("isbn", unique=True)
    db["cart"].create_index("user_id", unique=True)
    db["coupon"].create_index("code", unique=True)
    db["favorite"].create_index([("user_id", ASCENDING), ("book_id", ASCENDING)], unique=True)
    db["cartitem"].create_index("cart_id")
    db["comment"].create_index("review_id")
    db["review"].create_index("book_id")


def oid(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise ApiError(ErrorCode.INVALID_OBJECT_ID)
    return ObjectId(value)


def to_bson(value: Any) -> Any:
    """BSON has no plain date type; widen dates to midnight datetimes."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, dict):
        return {k: to_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_bson(v) for v in value]
    return value


def serialize(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            out["id" if key == "_id" else key] = serialize(item)
        return out
    return value


def create_document(db: Database, collection_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    now = utcnow()
    doc = to_bson(dict(data))
    doc["createdAt"] = now
    doc["updatedAt"] = now
    inserted_id = db[collection_name].insert_one(doc).inserted_id
    return db[collection_name].find_one({"_id": inserted_id})


def update_document(db: Database, collection_name: str, _id: ObjectId,
                    changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    update = to_bson(dict(changes))
    update["updatedAt"] = utcnow()
    return db[collection_name].find_one_and_update(
        {"_id": _id}, {"$set": update}, return_document=ReturnDocument.AFTER
    )


def get_documents(db: Database, collection_name: str, filter_dict: Dict[str, Any],
                  query: ListQuery) -> Tuple[List[Dict[str, Any]], int]:
    collection = db[collection_name]
    total = collection.count_documents(filter_dict)
    cursor = (
        collection.find(filter_dict)
        .sort(query.mongo_sort)
        .skip(query.offset)
        .limit(query.size)
    )
    return list(cursor), total
