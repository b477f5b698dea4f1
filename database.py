"""
MongoDB access helpers.

`db` is the process-wide database handle (None when DATABASE_URL is not set).
Service code receives the handle explicitly so a different database can be
swapped in.
"""
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import ConflictError, NotFoundError, RemoteError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "marketplace")

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: Union[str, ObjectId]) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not ObjectId.is_valid(id_str):
        raise NotFoundError("Invalid id")
    return ObjectId(id_str)


def to_dict(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy a document, exposing `_id` as a string `id`."""
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


@contextmanager
def translate_errors(action: str):
    """Map driver errors onto the marketplace taxonomy."""
    try:
        yield
    except DuplicateKeyError as e:
        raise ConflictError(f"{action}: already exists") from e
    except PyMongoError as e:
        logger.error("%s failed: %s", action, e)
        raise RemoteError(f"{action} failed") from e


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="json")
    else:
        data_dict = dict(data)
    stamp = now()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp
    with translate_errors(f"insert into {collection_name}"):
        result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict[str, Any]]:
    with translate_errors(f"read {collection_name}"):
        cursor = database[collection_name].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)


def ensure_indexes(database: Database) -> None:
    """Uniqueness constraints the services rely on."""
    database["cartitem"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    database["credential"].create_index("email", unique=True)
    database["product"].create_index("seller_id")
    database["order"].create_index("buyer_id")
    database["order"].create_index("seller_id")
    database["orderitem"].create_index("order_id")
    database["checkoutlog"].create_index("state")


def get_db() -> Database:
    if db is None:
        raise RemoteError("Database not configured")
    return db
