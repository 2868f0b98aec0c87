# auth.py — Authentication for MBEE
# Features:
# - bcrypt password hashing
# - JWT access tokens with JTI for revocation (logout)
# - Bearer token or HTTP Basic on every protected route
# - Account lockout: 5 failed logins within 15 minutes archives a non-admin user

import os
import uuid
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends
from fastapi.security import (
    HTTPBearer, HTTPAuthorizationCredentials, HTTPBasic, HTTPBasicCredentials,
)
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import AuthorizationError
from models import User, RevokedToken, utcnow

logger = logging.getLogger("mbee.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

bearer_scheme = HTTPBearer(auto_error=False)
basic_scheme = HTTPBasic(auto_error=False)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserLogin(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentUser(BaseModel):
    id: str
    admin: bool = False
    email: str = ""
    fname: str = ""
    preferred_name: str = ""
    lname: str = ""
    provider: str = "local"
    token_id: Optional[str] = None
    token_expires: Optional[datetime] = None

    @property
    def username(self) -> str:
        return self.id


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password, token and login handling"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise AuthorizationError("Token expired.", "warn")
        except JWTError:
            raise AuthorizationError("Invalid token.", "warn")

    @staticmethod
    def _recent_failures(user: User, now: datetime) -> list:
        cutoff = now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        recent = []
        for stamp in user.failed_logins or []:
            try:
                when = datetime.fromisoformat(stamp)
            except (TypeError, ValueError):
                continue
            if when > cutoff:
                recent.append(stamp)
        return recent

    @staticmethod
    async def record_failed_login(user: User, db: AsyncSession) -> None:
        """Store a failed attempt; lock (archive) non-admin users past the limit."""
        now = datetime.now(timezone.utc)
        failures = AuthService._recent_failures(user, now) + [now.isoformat()]
        user.failed_logins = failures

        if len(failures) >= MAX_LOGIN_ATTEMPTS and not user.admin:
            user.archived = True
            user.archived_on = now
            user.archived_by = user.id
            logger.warning("Account [%s] locked after %d failed login attempts", user.id, len(failures))

        await db.commit()

    @staticmethod
    async def authenticate_user(username: str, password: str, db: AsyncSession) -> User:
        user = await db.get(User, username)
        if not user or user.archived:
            raise AuthorizationError("Invalid username or password.", "warn")

        if not AuthService.verify_password(password, user.password_hash):
            await AuthService.record_failed_login(user, db)
            raise AuthorizationError("Invalid username or password.", "warn")

        if user.failed_logins:
            user.failed_logins = []
            await db.commit()

        logger.info("User [%s] authenticated", user.id)
        return user

    @staticmethod
    async def is_token_revoked(jti: str, db: AsyncSession) -> bool:
        return await db.get(RevokedToken, jti) is not None

    @staticmethod
    async def revoke_token(jti: str, username: str, expires_at: datetime, db: AsyncSession) -> None:
        db.add(RevokedToken(jti=jti, username=username, expires_at=expires_at, revoked_at=utcnow()))
        await db.commit()


def _current_user_from(user: User, payload: Optional[Dict[str, Any]] = None) -> CurrentUser:
    expires = None
    if payload and payload.get("exp"):
        expires = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
    return CurrentUser(
        id=user.id,
        admin=bool(user.admin),
        email=user.email or "",
        fname=user.fname or "",
        preferred_name=user.preferred_name or "",
        lname=user.lname or "",
        provider=user.provider or "local",
        token_id=payload.get("jti") if payload else None,
        token_expires=expires,
    )


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    basic: Optional[HTTPBasicCredentials] = Depends(basic_scheme),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    if basic is not None:
        user = await AuthService.authenticate_user(basic.username, basic.password, db)
        return _current_user_from(user)

    if bearer is None:
        raise AuthorizationError("No valid authentication method provided.", "warn")

    payload = AuthService.verify_token(bearer.credentials)
    if payload.get("type") != "access":
        raise AuthorizationError("Invalid token type.", "warn")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise AuthorizationError("Token has been revoked.", "warn")

    username = payload.get("sub")
    if not username:
        raise AuthorizationError("Invalid token.", "warn")

    user = await db.get(User, username)
    if not user or user.archived:
        raise AuthorizationError("User not found or archived.", "warn")

    return _current_user_from(user, payload)
