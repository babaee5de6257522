"""
Database helpers

MongoDB connection plus the small document helpers shared by the services.
Collections are named after the lowercase schema class (Book -> "book").
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, List, Union

from bson import ObjectId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from errors import Unexpected, ValidationError

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "online_bookstore")

_client = None
db = None

if DATABASE_URL:
    _client = MongoClient(DATABASE_URL, tz_aware=True)
    db = _client[DATABASE_NAME]


def get_db():
    if db is None:
        raise Unexpected("Database not configured")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, dict], database=None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    target = database if database is not None else db
    if target is None:
        raise Unexpected("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def parse_object_id(value: Any, label: str = "id") -> ObjectId:
    """Validate an id coming from a path or body before it reaches a query."""
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {label}")
    return ObjectId(value)


def serialize_document(doc: Any) -> Any:
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, list):
        return [serialize_document(item) for item in doc]
    if not isinstance(doc, dict):
        return doc
    out = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = str(value)
        else:
            out[key] = serialize_document(value)
    return out


def populate(database, docs: List[dict], ref_field: str, collection_name: str,
             fields: List[str], as_field: str) -> List[dict]:
    """Embed the referenced documents (restricted to ``fields``) under ``as_field``."""
    ids = {str(doc[ref_field]) for doc in docs if ObjectId.is_valid(str(doc.get(ref_field) or ""))}
    projection = {field: 1 for field in fields}
    found = {
        str(ref["_id"]): ref
        for ref in database[collection_name].find({"_id": {"$in": [ObjectId(i) for i in ids]}}, projection)
    }
    for doc in docs:
        doc[as_field] = found.get(str(doc.get(ref_field)))
    return docs


def ensure_indexes(database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["order"].create_index([("confirmation_code", ASCENDING)], unique=True)
    database["lending"].create_index([("status", ASCENDING), ("due_date", ASCENDING)])
    logger.info("Indexes ensured on %s", database.name)
