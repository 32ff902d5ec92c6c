"""
Customer messages to the store and admin replies.

A message starts as ``new``; replying stores the reply text, who replied and
when, and moves it to ``replied``.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, now_utc, oid, serialize_doc
from errors import NotFound
from schemas import Message, MessageCreateRequest, MessageReplyRequest

logger = logging.getLogger(__name__)


def _with_authors(db: Database, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = {m["user"] for m in messages if isinstance(m.get("user"), str)}
    authors = {}
    if ids:
        for u in db["user"].find({"_id": {"$in": [oid(i) for i in ids]}}, {"name": 1, "email": 1}):
            authors[str(u["_id"])] = {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")}
    out = []
    for m in messages:
        data = serialize_doc(m)
        data["user"] = authors.get(m["user"], {"id": m["user"]})
        out.append(data)
    return out


def send_message(db: Database, user: Dict[str, Any], req: MessageCreateRequest) -> Dict[str, Any]:
    if req.order_reference:
        order = db["order"].find_one({"_id": oid(req.order_reference, "Order"), "user": str(user["_id"])})
        if not order:
            raise NotFound("Order not found")
    message = Message(user=str(user["_id"]), **req.model_dump())
    message_id = create_document(db, "message", message)
    logger.info("Message %s from user %s (%s)", message_id, user["_id"], req.category)
    return serialize_doc(db["message"].find_one({"_id": oid(message_id)}))


def list_user_messages(db: Database, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    cursor = db["message"].find({"user": str(user["_id"]), "deleted_at": None}).sort("created_at", DESCENDING)
    return [serialize_doc(m) for m in cursor]


def list_messages(db: Database, status: Optional[str] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"deleted_at": None}
    if status:
        query["status"] = status
    return _with_authors(db, list(db["message"].find(query).sort("created_at", DESCENDING)))


def reply_to_message(
    db: Database, message_id: str, req: MessageReplyRequest, admin: Dict[str, Any]
) -> Dict[str, Any]:
    _id = oid(message_id, "Message")
    stamp = now_utc()
    result = db["message"].update_one(
        {"_id": _id, "deleted_at": None},
        {
            "$set": {
                "reply": req.reply.strip(),
                "status": "replied",
                "replied_by": str(admin["_id"]),
                "replied_at": stamp,
                "updated_at": stamp,
            }
        },
    )
    if result.matched_count == 0:
        raise NotFound("Message not found")
    logger.info("Message %s replied by %s", message_id, admin["_id"])
    return _with_authors(db, [db["message"].find_one({"_id": _id})])[0]
