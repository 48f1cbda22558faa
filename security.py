from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from bson import ObjectId
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.database import Database

from config import Settings, get_settings
from database import get_db
from errors import ApiError, ErrorCode

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"

security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return password_ctx.verify(password, hashed)


def create_access_token(user: dict, settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "is_admin": bool(user.get("is_admin", False)),
        "type": ACCESS,
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_expires_min),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM)


def create_refresh_token(user: dict, settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "type": REFRESH,
        "iat": now,
        "exp": now + timedelta(days=settings.jwt_refresh_expires_days),
    }
    return jwt.encode(payload, settings.jwt_refresh_secret, algorithm=ALGORITHM)


def issue_tokens(user: dict, settings: Settings) -> dict:
    return {
        "accessToken": create_access_token(user, settings),
        "refreshToken": create_refresh_token(user, settings),
    }


def decode_token(token: str, secret: str, token_type: str) -> dict:
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise ApiError(ErrorCode.UNAUTHORIZED, "Token expired")
    except jwt.InvalidTokenError:
        raise ApiError(ErrorCode.UNAUTHORIZED, "Invalid token")
    if payload.get("type") != token_type or not payload.get("sub"):
        raise ApiError(ErrorCode.UNAUTHORIZED, "Invalid token")
    return payload


def load_user(db: Database, user_id: str) -> Optional[dict]:
    if not ObjectId.is_valid(user_id):
        return None
    return db["user"].find_one({"_id": ObjectId(user_id)})


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict:
    if credentials is None or not credentials.credentials:
        raise ApiError(ErrorCode.UNAUTHORIZED)
    payload = decode_token(credentials.credentials, settings.jwt_secret, ACCESS)
    user = load_user(db, payload["sub"])
    if not user:
        raise ApiError(ErrorCode.UNAUTHORIZED, "User not found")
    return user


def get_active_user(user: dict = Depends(get_current_user)) -> dict:
    if not user.get("is_active", True):
        raise ApiError(ErrorCode.FORBIDDEN, "Your account has been deactivated. Contact support.")
    return user


def require_admin(user: dict = Depends(get_active_user)) -> dict:
    if not user.get("is_admin"):
        raise ApiError(ErrorCode.FORBIDDEN, "Access denied. Admin only.")
    return user
