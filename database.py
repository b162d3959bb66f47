"""
MongoDB access shared by every collection.

The client is created at import time when DATABASE_URL and DATABASE_NAME are set.
Routes receive the database through the ``get_db`` dependency so tests can swap
in another one.
"""

import math
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import settings
from errors import NotFoundError, StorageError
from logging_config import get_logger

logger = get_logger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.database_url and settings.database_name:
    client = MongoClient(settings.database_url, serverSelectionTimeoutMS=5000)
    db = client[settings.database_name]


def get_db() -> Database:
    if db is None:
        raise StorageError("Database is not configured", operation="connect")
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def storage_errors(operation: str):
    """Translate driver failures into StorageError.

    Duplicate key violations pass through untouched; callers map them onto
    domain conflicts.
    """
    try:
        yield
    except DuplicateKeyError:
        raise
    except PyMongoError as e:
        logger.error("storage operation failed", operation=operation, error=str(e))
        raise StorageError(f"Storage failure during {operation}: {e}", operation=operation) from e


def session_kwargs(session) -> Dict[str, Any]:
    return {"session": session} if session is not None else {}


def to_object_id(value: Union[str, ObjectId], entity: str) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFoundError(entity, str(value))


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="python")
    else:
        data_dict = dict(data)
    stamp = now()
    data_dict["created_at"] = stamp
    data_dict["updated_at"] = stamp
    with storage_errors(f"insert {collection_name}"):
        result = database[collection_name].insert_one(data_dict, **session_kwargs(session))
    return str(result.inserted_id)


def clamp_limit(limit: Optional[int]) -> int:
    if not limit or limit < 1:
        return settings.default_page_limit
    return min(limit, settings.max_page_limit)


def paginate(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    page: int = 1,
    limit: Optional[int] = None,
    sort: Optional[Sequence[Tuple[str, int]]] = None,
) -> Dict[str, Any]:
    """Offset/limit page over a collection, shaped like schemas.Page."""
    filter_dict = filter_dict or {}
    page = max(page or 1, 1)
    limit = clamp_limit(limit)
    skip = (page - 1) * limit

    with storage_errors(f"paginate {collection_name}"):
        collection = database[collection_name]
        cursor = collection.find(filter_dict)
        if sort:
            cursor = cursor.sort(list(sort))
        docs = list(cursor.skip(skip).limit(limit))
        total_docs = collection.count_documents(filter_dict)

    has_next = page * limit < total_docs
    return {
        "payload": [serialize(d) for d in docs],
        "total_docs": total_docs,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total_docs / limit) if total_docs else 0,
        "has_prev_page": page > 1,
        "has_next_page": has_next,
        "prev_page": page - 1 if page > 1 else None,
        "next_page": page + 1 if has_next else None,
    }


def ensure_indexes(database: Database) -> None:
    with storage_errors("create indexes"):
        database["cart"].create_index([("owner_id", ASCENDING)], unique=True)
        database["user"].create_index([("email", ASCENDING)], unique=True)
        database["order"].create_index([("owner_id", ASCENDING)])
        database["session"].create_index([("token", ASCENDING)], unique=True)
    logger.info("indexes ensured", database=database.name)
