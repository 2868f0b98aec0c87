# routers/auth.py — Login / logout with token revocation
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.security import HTTPBasicCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserLogin, TokenResponse, CurrentUser, get_current_user,
    basic_scheme, ACCESS_TOKEN_EXPIRE_MINUTES,
)
from database import get_db_session
from errors import AuthorizationError
from models import utcnow
from routers.users import _user_to_out

logger = logging.getLogger("mbee.auth")

router = APIRouter(prefix="/api", tags=["Authentication"])


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: Optional[UserLogin] = None,
    basic: Optional[HTTPBasicCredentials] = Depends(basic_scheme),
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate with a JSON body or HTTP Basic and receive an access token"""
    if basic is not None:
        username, password = basic.username, basic.password
    elif credentials is not None:
        username, password = credentials.username, credentials.password
    else:
        raise AuthorizationError("No valid authentication method provided.", "warn")

    user = await AuthService.authenticate_user(username, password, db)
    access_token = AuthService.create_access_token({"sub": user.id, "admin": bool(user.admin)})

    return TokenResponse(
        access_token=access_token,
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=_user_to_out(user),
    )


@router.post("/logout")
async def logout(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Logout and revoke the current token"""
    if user.token_id:
        await AuthService.revoke_token(user.token_id, user.id, user.token_expires or utcnow(), db)
    logger.info("User [%s] logged out", user.id)
    return {"status": "logged_out", "message": "Session terminated"}
