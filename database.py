"""
Database helpers

MongoDB access for the coupons backend. The connection is built once from
DATABASE_URL / DATABASE_NAME; `db` stays None when either is missing so the
app can still boot and report its state on /test.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import settings
from errors import InternalError, ValidationError

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.database_url and settings.database_name:
    client = MongoClient(settings.database_url, tz_aware=True)
    db = client[settings.database_name]


def get_db() -> Database:
    """FastAPI dependency returning the active database handle."""
    if db is None:
        raise InternalError("Database is not configured")
    return db


def ensure_indexes(database: Database) -> None:
    database["coupon"].create_index([("code", ASCENDING)], unique=True)
    database["coupon"].create_index([("issuer", ASCENDING)])
    database["coupon"].create_index([("partner", ASCENDING)])
    database["coupon"].create_index([("stage", ASCENDING)])
    database["wallet"].create_index([("vendor", ASCENDING)], unique=True)
    database["wallet"].create_index([("vendor_type", ASCENDING)])
    database["wallet"].create_index([("status", ASCENDING)])
    logger.info("Indexes ensured on %s", database.name)


def to_object_id(value: Union[str, ObjectId], label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}")


def serialize_document(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy a raw document replacing `_id` with a string `id`."""
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    return out


def create_document(collection_name: str, data: Union[BaseModel, dict], database: Optional[Database] = None) -> str:
    target = database if database is not None else get_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude={"id"})
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict.setdefault("created_at", now)
    data_dict.setdefault("updated_at", now)
    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)

