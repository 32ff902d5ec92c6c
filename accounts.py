import logging
from typing import Any, Dict, List

from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import get_product
from config import Settings
from database import create_document, get_documents, now_utc, oid, serialize_doc
from errors import AuthenticationError, Conflict, NotFound, ValidationError
from schemas import (
    AdminUserUpdateRequest,
    ChangePasswordRequest,
    LoginRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    User,
)
from security import create_token, hash_password, verify_password

logger = logging.getLogger(__name__)


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role", "user"),
    }


def register(db: Database, req: RegisterRequest, settings: Settings) -> Dict[str, Any]:
    email = req.email.lower()
    if db["user"].find_one({"email": email}):
        raise Conflict("Email already registered")
    user = User(
        name=req.name.strip(),
        email=email,
        password_hash=hash_password(req.password),
        phone=req.phone,
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise Conflict("Email already registered")
    created = db["user"].find_one({"_id": oid(user_id)})
    logger.info("Registered user %s", user_id)
    return {"token": create_token(created, settings), "user": public_user(created)}


def login(db: Database, req: LoginRequest, settings: Settings) -> Dict[str, Any]:
    user = db["user"].find_one({"email": req.email.lower(), "deleted_at": None})
    if not user or not verify_password(req.password, user.get("password_hash", "")):
        raise AuthenticationError("Invalid credentials")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": now_utc()}})
    return {"token": create_token(user, settings), "user": public_user(user)}


def profile(db: Database, user: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize_doc(user)
    ids = [oid(pid) for pid in user.get("wishlist") or []]
    data["wishlist"] = [serialize_doc(p) for p in db["product"].find({"_id": {"$in": ids}})] if ids else []
    return data


def _apply_user_updates(db: Database, user_id: Any, updates: Dict[str, Any]) -> Dict[str, Any]:
    if not updates:
        raise ValidationError("No valid fields to update")
    if "email" in updates:
        updates["email"] = updates["email"].lower()
        clash = db["user"].find_one({"email": updates["email"], "_id": {"$ne": user_id}})
        if clash:
            raise Conflict("Email already registered")
    updates["updated_at"] = now_utc()
    result = db["user"].update_one({"_id": user_id}, {"$set": updates})
    if result.matched_count == 0:
        raise NotFound("User not found")
    return serialize_doc(db["user"].find_one({"_id": user_id}))


def update_profile(db: Database, user: Dict[str, Any], req: ProfileUpdateRequest) -> Dict[str, Any]:
    return _apply_user_updates(db, user["_id"], req.model_dump(exclude_unset=True, exclude_none=True))


def change_password(db: Database, user: Dict[str, Any], req: ChangePasswordRequest) -> None:
    if not verify_password(req.current_password, user.get("password_hash", "")):
        raise ValidationError("Current password is incorrect")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(req.new_password), "updated_at": now_utc()}},
    )
    logger.info("Password changed for user %s", user["_id"])


def add_to_wishlist(db: Database, user: Dict[str, Any], product_id: str) -> List[str]:
    get_product(db, product_id)
    db["user"].update_one({"_id": user["_id"]}, {"$addToSet": {"wishlist": product_id}})
    return db["user"].find_one({"_id": user["_id"]}).get("wishlist", [])


def remove_from_wishlist(db: Database, user: Dict[str, Any], product_id: str) -> List[str]:
    db["user"].update_one({"_id": user["_id"]}, {"$pull": {"wishlist": product_id}})
    return db["user"].find_one({"_id": user["_id"]}).get("wishlist", [])


# Admin
def list_users(db: Database) -> List[Dict[str, Any]]:
    return get_documents(db, "user", {"role": "user", "deleted_at": None})


def get_user(db: Database, user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": oid(user_id, "User")})
    if not user:
        raise NotFound("User not found")
    data = serialize_doc(user)
    orders = db["order"].find({"user": user_id}, {"total_amount": 1, "status": 1, "created_at": 1})
    data["recent_orders"] = [serialize_doc(o) for o in orders.sort("created_at", DESCENDING).limit(5)]
    data["order_count"] = db["order"].count_documents({"user": user_id})
    return data


def admin_update_user(db: Database, user_id: str, req: AdminUserUpdateRequest) -> Dict[str, Any]:
    updates = req.model_dump(exclude_unset=True, exclude_none=True)
    updated = _apply_user_updates(db, oid(user_id, "User"), updates)
    logger.info("Admin updated user %s: %s", user_id, sorted(k for k in updates if k != "updated_at"))
    return updated
