"""
MongoDB access helpers.

`db` is the module-level handle used by the running app; it is None when
DATABASE_URL / DATABASE_NAME are not configured. Helpers take the database
explicitly so services can be built over any handle (tests use mongomock).
"""

from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog
from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import settings

logger = structlog.get_logger(__name__)

client = None
db = None

if settings.database_url and settings.database_name:
    client = MongoClient(settings.database_url)
    db = client[settings.database_name]


def utcnow() -> datetime:
    # naive UTC, matching what pymongo hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def oid(id_str: Any, label: str = "id") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not ObjectId.is_valid(str(id_str)):
        raise HTTPException(status_code=400, detail=f"Invalid {label} format")
    return ObjectId(str(id_str))


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if database is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    if isinstance(data, dict):
        data["_id"] = result.inserted_id
    return str(result.inserted_id)


def to_public_doc(value: Any) -> Any:
    """Make a document JSON friendly: `_id` becomes `id`, ObjectIds become strings."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [to_public_doc(v) for v in value]
    if isinstance(value, dict):
        d = {}
        for k, v in value.items():
            if k == "_id":
                d["id"] = str(v)
            else:
                d[k] = to_public_doc(v)
        return d
    return value


def ensure_indexes(database) -> None:
    if database is None:
        return
    try:
        database["user"].create_index("email", unique=True)
        database["coupon"].create_index("code", unique=True)
        database["coupon"].create_index([("status", ASCENDING), ("is_active", ASCENDING)])
        database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        database["order"].create_index("order_status")
        database["order"].create_index("tracking_number")
        database["product"].create_index("sku", unique=True, sparse=True)
        database["product"].create_index([("price", ASCENDING), ("rating", DESCENDING)])
        database["cart"].create_index("user_id", unique=True)
        database["wishlist"].create_index("share_token", unique=True, sparse=True)
        database["notification"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        database["gamificationprofile"].create_index("user_id", unique=True)
    except Exception as e:
        logger.warning("index_setup_failed", error=str(e))
