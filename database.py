"""
Document store access

The MongoClient is created once per process by the app lifespan and the
resulting Database handle is passed to every component at construction.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

import structlog
from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Settings
from errors import StoreFailure, ValidationError

logger = structlog.get_logger(component="database")


def connect(settings: Settings) -> Tuple[MongoClient, Database]:
    if not settings.DATABASE_URL or not settings.DATABASE_NAME:
        raise RuntimeError("DATABASE_URL and DATABASE_NAME must be set")
    timeout = settings.DB_TIMEOUT_MS
    client = MongoClient(
        settings.DATABASE_URL,
        serverSelectionTimeoutMS=timeout,
        connectTimeoutMS=timeout,
        socketTimeoutMS=timeout,
    )
    db = client[settings.DATABASE_NAME]
    logger.info("database_connected", database=settings.DATABASE_NAME)
    return client, db


def ensure_indexes(db: Database) -> None:
    with store_guard("ensure_indexes"):
        db["users"].create_index("email", unique=True)
        db["products"].create_index([("isFeatured", -1), ("timestamp", -1)])
        db["products"].create_index("status")
        db["reviews"].create_index([("productId", 1), ("createdAt", -1)])
        db["payments"].create_index("userEmail")


@contextmanager
def store_guard(operation: str):
    try:
        yield
    except PyMongoError as e:
        logger.error("store_failure", operation=operation, error=str(e))
        raise StoreFailure(f"Document store error during {operation}") from e


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: str) -> ObjectId:
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise ValidationError("Invalid ID")
    return ObjectId(id_str)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    for k, v in list(out.items()):
        if isinstance(v, datetime):
            out[k] = v.isoformat()
        elif isinstance(v, ObjectId):
            out[k] = str(v)
    return out


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    with store_guard(f"insert:{collection_name}"):
        result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)
