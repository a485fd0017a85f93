"""
Database access helpers

One pymongo client per process. Request handlers receive the database
through the ``get_db`` dependency so tests can swap it out.

Identifier fields (userId, schoolId, orderId, category ...) exist in the
collections both as plain strings and as ObjectIds, so every lookup by one
of them goes through ``match_id``.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

import config

logger = logging.getLogger(__name__)

client = MongoClient(config.DATABASE_URL)
db = client[config.DATABASE_NAME]


def get_db():
    return db


def utcnow() -> datetime:
    # stored naive, as pymongo hands them back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id format")


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if value is not None and ObjectId.is_valid(str(value)):
        return ObjectId(str(value))
    return None


def match_id(value: Any) -> Dict[str, list]:
    """Filter matching an id stored either as string or as ObjectId."""
    values: List[Any] = [str(value)]
    object_id = to_object_id(value)
    if object_id is not None:
        values.append(object_id)
    return {"$in": values}


def match_ids(values: Iterable[Any]) -> Dict[str, list]:
    variants: List[Any] = []
    for value in values:
        variants.extend(match_id(value)["$in"])
    return {"$in": variants}


def serialize(doc):
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, dict):
        return {k: serialize(v) for k, v in doc.items()}
    if isinstance(doc, list):
        return [serialize(v) for v in doc]
    return doc


def create_document(db, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    now = utcnow()
    doc = {**data, "createdAt": now, "updatedAt": now}
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def stamped(update: dict) -> dict:
    update = dict(update)
    update["$set"] = {**update.get("$set", {}), "updatedAt": utcnow()}
    return update


# -----------------------------
# populate (reference -> subdocument)
# -----------------------------

def _walk(node, parts, fn):
    if isinstance(node, list):
        for item in node:
            _walk(item, parts, fn)
        return
    if not isinstance(node, dict):
        return
    key = parts[0]
    if len(parts) == 1:
        if key in node:
            fn(node, key)
    else:
        _walk(node.get(key), parts[1:], fn)


def populate(db, docs: List[dict], path: str, collection_name: str, fields: str) -> List[dict]:
    """Replace the reference at ``path`` with the referenced document's ``fields``.

    ``path`` may cross embedded lists (``orderItems.books.bookId``). Missing
    references become ``None``.
    """
    parts = path.split(".")
    refs: List[Any] = []
    _walk(docs, parts, lambda node, key: refs.append(node[key]))
    ids = {to_object_id(r) for r in refs if not isinstance(r, dict)}
    ids.discard(None)
    found: Dict[str, dict] = {}
    if ids:
        projection = {f: 1 for f in fields.split()}
        for ref_doc in db[collection_name].find({"_id": {"$in": list(ids)}}, projection):
            found[str(ref_doc["_id"])] = ref_doc

    def replace(node, key):
        if not isinstance(node[key], dict):
            node[key] = found.get(str(node[key]))

    _walk(docs, parts, replace)
    return docs


def ensure_indexes(db):
    db["users"].create_index([("username", ASCENDING)], unique=True)
    db["users"].create_index([("email", ASCENDING)], unique=True)
    db["zones"].create_index([("name", ASCENDING)], unique=True)
    db["attendances"].create_index([("userId", ASCENDING), ("date", ASCENDING)], unique=True)
    logger.info("Database indexes ensured")
