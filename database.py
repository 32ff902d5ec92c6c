"""
MongoDB access for the store API.

`Store` owns the client and its lifecycle; request handlers reach the
database through the `get_db` dependency, never through a module global.
Documents are plain dicts; `serialize_doc` turns them into JSON-ready dicts.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from fastapi import Request
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import NotFound

logger = logging.getLogger(__name__)


class Store:
    """Holds one MongoClient and the database the app works against."""

    def __init__(self, url: str, name: str, client: Optional[MongoClient] = None):
        self.url = url
        self.name = name
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> MongoClient:
        if self._client is None:
            raise RuntimeError("Store is not connected")
        return self._client

    @property
    def db(self) -> Database:
        return self.client[self.name]

    @property
    def connected(self) -> bool:
        return self._client is not None

    def connect(self) -> Database:
        if self._client is None:
            self._client = MongoClient(self.url, serverSelectionTimeoutMS=5000)
            self._owns_client = True
            logger.info("Connected to MongoDB database %s", self.name)
        return self.db

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            logger.info("Closed MongoDB connection")
        if self._owns_client:
            self._client = None

    def ensure_indexes(self) -> None:
        db = self.db
        db["user"].create_index([("email", ASCENDING)], unique=True)
        db["cart"].create_index([("user", ASCENDING)], unique=True)
        db["order"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
        db["order"].create_index([("status", ASCENDING)])
        db["message"].create_index([("user", ASCENDING)])
        db["message"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
        db["admin_activity"].create_index([("created_at", DESCENDING)])


def get_db(request: Request) -> Database:
    return request.app.state.store.db


# Utils
def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: Any, what: str = "Resource") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise NotFound(f"{what} {id_str} not found")
    return ObjectId(id_str)


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif k == "password_hash":
            continue
        else:
            out[k] = _serialize_value(v)
    return out


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    stamp = now_utc()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return [serialize_doc(d) for d in cursor]
