"""
MongoDB access helpers.

`db` is None until DATABASE_URL and DATABASE_NAME are both set. Helpers look
the handle up at call time so it can be swapped out (tests do this).
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import structlog
from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient

import config
from errors import ServiceError, ValidationError

logger = structlog.get_logger(__name__)

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]
    logger.info("database.configured", database=config.DATABASE_NAME)


def utcnow() -> datetime:
    # the store hands back naive UTC, so everything is kept in that form
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def collection(name: str):
    if db is None:
        raise ServiceError("Database not configured")
    return db[name]


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = collection(collection_name).insert_one(data_dict)
    return str(result.inserted_id)


def parse_object_id(value: Any, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(str(value)):
        raise ValidationError(f"Invalid {label}")
    return ObjectId(str(value))


def parse_object_id_or_none(value: Any) -> Optional[ObjectId]:
    try:
        return parse_object_id(value)
    except ValidationError:
        return None


def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
        elif isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc
