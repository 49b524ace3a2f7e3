"""
MongoDB access helpers.

The app holds a single database handle on ``app.state.db``; handlers receive it
through the ``get_db`` dependency so tests can swap in an in-process store.
"""
import logging
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from starlette.requests import HTTPConnection

from config import Config

logger = logging.getLogger(__name__)


def connect(url: Optional[str] = None, name: Optional[str] = None) -> Database:
    # MongoClient connects lazily, so this never blocks on an unreachable server
    client = MongoClient(url or Config.DATABASE_URL)
    return client[name or Config.DATABASE_NAME]


def ensure_indexes(db: Database) -> None:
    """Create the indexes the app relies on (email uniqueness)."""
    db["user"].create_index([("email", ASCENDING)], unique=True)
    logger.info("Indexes verified on database %s", db.name)


def get_db(conn: HTTPConnection) -> Database:
    return conn.app.state.db


def to_collection_name(model_cls: Any) -> str:
    return model_cls.__name__.lower()


def to_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    out = {**doc}
    _id = out.pop("_id", None)
    if _id is not None:
        out["id"] = str(_id)
    out.pop("password", None)
    return out


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> Dict[str, Any]:
    """Insert a document and return it including its generated ``_id``."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    result = db[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def get_documents(db: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  sort: Optional[list] = None, projection: Optional[dict] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    return list(cursor)
