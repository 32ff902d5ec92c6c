from datetime import timedelta
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import Depends, Header, Request
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

from config import Settings
from database import get_db, now_utc
from errors import AuthenticationError, PermissionDenied

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_token(user: Dict[str, Any], settings: Settings) -> str:
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", "user"),
        "exp": now_utc() + timedelta(hours=settings.jwt_expire_hours),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise AuthenticationError("Invalid token")


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin"


def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    token = authorization.replace("Bearer ", "").strip()
    payload = decode_token(token, request.app.state.settings)
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise AuthenticationError("Invalid token payload")
    user = db["user"].find_one({"_id": ObjectId(user_id), "deleted_at": None})
    if not user:
        raise AuthenticationError("Invalid token user")
    return user


def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if not is_admin(user):
        raise PermissionDenied("Admin access required")
    return user
