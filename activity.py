"""
Audit trail of admin writes, stored in the ``admin_activity`` collection.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, oid, serialize_doc
from schemas import AdminActivity

logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 100


def record(
    db: Database,
    admin: Dict[str, Any],
    action: str,
    entity_type: str,
    entity_id: Any,
    changes: Optional[Dict[str, Any]] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> str:
    entry = AdminActivity(
        admin=str(admin["_id"]),
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        details={"changes": changes} if changes else {},
        ip=ip,
        user_agent=user_agent,
    )
    logger.info("Admin %s: %s %s %s", entry.admin, action, entity_type, entry.entity_id)
    return create_document(db, "admin_activity", entry)


def list_activity(
    db: Database, entity_type: Optional[str] = None, limit: int = DEFAULT_LOG_LIMIT
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if entity_type:
        query["entity_type"] = entity_type
    logs = list(db["admin_activity"].find(query).sort("created_at", DESCENDING).limit(limit))
    admin_ids = {entry["admin"] for entry in logs}
    admins = {}
    if admin_ids:
        for u in db["user"].find({"_id": {"$in": [oid(i) for i in admin_ids]}}, {"name": 1, "email": 1}):
            admins[str(u["_id"])] = {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")}
    out = []
    for entry in logs:
        data = serialize_doc(entry)
        data["admin"] = admins.get(entry["admin"], {"id": entry["admin"]})
        out.append(data)
    return out
