import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from bson import ObjectId
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from database import get_db
from errors import ForbiddenError, NotVerifiedError

log = logging.getLogger(__name__)

# Tokens are issued by the identity service; this core only verifies them.
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
JWT_ALGORITHM = "HS256"
security = HTTPBearer()


def create_token(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", "user"),
        "exp": now + timedelta(minutes=JWT_EXPIRES_MIN),
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security),
                     db=Depends(get_db)) -> dict:
    payload = decode_token(credentials.credentials)
    uid = payload.get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": ObjectId(uid)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


class AuthorizationContext:
    """Capabilities of the calling user, resolved once per request."""

    def __init__(self, user_id: str, role: str = "user", shop_id: Optional[str] = None,
                 is_verified: bool = False, verification_status: str = "unverified"):
        self.user_id = user_id
        self.role = role
        self.shop_id = shop_id
        self.is_verified = is_verified
        self.verification_status = verification_status

    @classmethod
    def from_user(cls, user: dict) -> "AuthorizationContext":
        return cls(
            user_id=str(user["_id"]),
            role=user.get("role", "user"),
            shop_id=user.get("store_id"),
            is_verified=bool(user.get("is_verified")),
            verification_status=user.get("verification_status") or "unverified",
        )

    def is_admin(self) -> bool:
        return self.role == "admin"

    def is_owner_of(self, shop_id) -> bool:
        return self.shop_id is not None and self.shop_id == str(shop_id)

    def is_verified_seller(self) -> bool:
        return self.shop_id is not None and self.is_verified

    def require_admin(self) -> None:
        if not self.is_admin():
            raise ForbiddenError("Access denied. Admin only.")

    def require_shop(self) -> str:
        if self.shop_id is None:
            raise ForbiddenError("You need to create a shop first to perform this action", code="NO_SHOP")
        return self.shop_id

    def require_owner(self, shop_id, message: str = "Access denied") -> None:
        if not self.is_owner_of(shop_id):
            raise ForbiddenError(message)

    def require_verified_seller(self) -> str:
        shop_id = self.require_shop()
        if not self.is_verified:
            log.warning("Unverified seller attempted restricted action: user=%s status=%s",
                        self.user_id, self.verification_status)
            raise NotVerifiedError(self.verification_status)
        return shop_id


def get_auth_context(user: dict = Depends(get_current_user)) -> AuthorizationContext:
    return AuthorizationContext.from_user(user)
