# routers/users.py — User management
import logging
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import permissions
import validators
from auth import get_current_user, AuthService, CurrentUser
from database import get_db_session, DEFAULT_ORG_ID
from errors import AuthorizationError, DataFormatError, NotFoundError, OperationError, PermissionDeniedError
from models import User, Organization, Project, utcnow
from scopes import QueryOptions, apply_common_update, check_body_id, check_unique, public_extension, stamp_created
from webhook_dispatch import emit_event

logger = logging.getLogger("mbee.users")

router = APIRouter(prefix="/api/users", tags=["Users"])


# --- Schemas ---

class UserIn(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None
    fname: Optional[str] = None
    preferred_name: Optional[str] = None
    lname: Optional[str] = None
    email: Optional[str] = None
    admin: Optional[bool] = None
    provider: Optional[str] = None
    custom: Optional[dict] = None
    archived: Optional[bool] = None


class PasswordUpdate(BaseModel):
    old_password: str
    password: str
    confirm_password: str


# --- Helpers ---

def _user_to_out(u: User) -> dict:
    out = {
        "username": u.id,
        "fname": u.fname or "",
        "preferred_name": u.preferred_name or "",
        "lname": u.lname or "",
        "email": u.email or "",
        "admin": bool(u.admin),
        "provider": u.provider or "local",
    }
    out.update(public_extension(u))
    return out


def _validate_profile(item: UserIn) -> None:
    validators.validate_email(item.email)
    for field in ("fname", "preferred_name", "lname"):
        validators.validate_person_name(field, getattr(item, field))
    if item.custom is not None:
        validators.validate_custom(item.custom)


async def _get_user_or_404(username: str, db: AsyncSession, archived: bool = True) -> User:
    target = await db.get(User, username)
    if target is None or (target.archived and not archived):
        raise NotFoundError(f"User [{username}] not found.", "warn")
    return target


async def _create_users(items: List[UserIn], user: CurrentUser, db: AsyncSession) -> List[User]:
    permissions.create_user(user)
    if not items:
        raise DataFormatError("No users provided.", "warn")

    for item in items:
        if item.username is None:
            raise DataFormatError("Username is required to create a user.", "warn")
        validators.validate_username(item.username)
        _validate_profile(item)
        if (item.provider or "local") == "local":
            validators.validate_password(item.password)
    usernames = check_unique([i.username for i in items], "users")

    result = await db.execute(select(User.id).where(User.id.in_(usernames)))
    existing = result.scalars().all()
    if existing:
        raise PermissionDeniedError(
            f"Users with the following usernames already exist [{', '.join(sorted(existing))}].", "warn"
        )

    created = []
    for item in items:
        new_user = User(
            id=item.username,
            password_hash=AuthService.hash_password(item.password) if item.password else None,
            fname=item.fname or "",
            preferred_name=item.preferred_name or "",
            lname=item.lname or "",
            email=item.email or "",
            admin=bool(item.admin),
            provider=item.provider or "local",
            custom=item.custom or {},
            archived=bool(item.archived),
            failed_logins=[],
        )
        stamp_created(new_user, user.id)
        db.add(new_user)
        created.append(new_user)

    # New users join the default org
    org = await db.get(Organization, DEFAULT_ORG_ID)
    if org is not None:
        perms = dict(org.permissions or {})
        for new_user in created:
            perms[new_user.id] = ["read", "write"]
        org.permissions = perms

    await db.commit()
    logger.info("%s created %d user(s)", user.id, len(created))
    return created


async def _update_users(items: List[UserIn], user: CurrentUser, db: AsyncSession) -> List[User]:
    if not items:
        raise DataFormatError("No users provided.", "warn")
    if any(i.username is None for i in items):
        raise DataFormatError("Username is required to update a user.", "warn")
    usernames = check_unique([i.username for i in items], "users")

    result = await db.execute(select(User).where(User.id.in_(usernames)))
    found = {u.id: u for u in result.scalars().all()}
    missing = [u for u in usernames if u not in found]
    if missing:
        raise NotFoundError(f"The following users were not found: [{', '.join(missing)}].", "warn")

    for item in items:
        target = found[item.username]
        permissions.update_user(user, target)
        if item.password is not None or item.provider is not None:
            raise DataFormatError("Users cannot update [password, provider] through this route.", "warn")
        if target.archived and item.archived is not False:
            raise OperationError(
                f"User [{target.id}] is archived. Archived objects cannot be modified.", "warn"
            )
        if item.admin is not None and not user.admin:
            raise PermissionDeniedError("User does not have permission to update the admin field.", "warn")
        if item.archived and target.id == user.id:
            raise OperationError("User cannot archive themselves.", "warn")
        _validate_profile(item)

        for field in ("fname", "preferred_name", "lname", "email", "admin"):
            value = getattr(item, field)
            if value is not None:
                setattr(target, field, value)
        apply_common_update(target, item.model_dump(), user.id)

    await db.commit()
    return [found[u] for u in usernames]


async def _remove_from_permissions(usernames: List[str], db: AsyncSession) -> None:
    for model in (Organization, Project):
        result = await db.execute(select(model))
        for record in result.scalars().all():
            perms = record.permissions or {}
            if any(u in perms for u in usernames):
                record.permissions = {k: v for k, v in perms.items() if k not in usernames}


async def _delete_users(usernames: List[str], user: CurrentUser, db: AsyncSession) -> List[str]:
    permissions.delete_user(user)
    if not usernames or not all(isinstance(u, str) for u in usernames):
        raise DataFormatError("Request body must be an array of usernames.", "warn")
    if user.id in usernames:
        raise PermissionDeniedError("User cannot delete themselves.", "warn")
    usernames = check_unique(usernames, "users")

    result = await db.execute(select(User).where(User.id.in_(usernames)))
    found = result.scalars().all()
    if not found:
        raise NotFoundError("No users found.", "warn")

    deleted = [u.id for u in found]
    for target in found:
        await db.delete(target)
    await _remove_from_permissions(deleted, db)
    await db.commit()
    logger.info("%s deleted user(s) [%s]", user.id, ", ".join(deleted))
    return deleted


# --- Endpoints ---

@router.get("")
async def list_users(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
    usernames: Optional[str] = Query(default=None),
):
    """Find all users, or the users named in ?usernames=a,b"""
    permissions.read_user(user)
    stmt = select(User)
    if usernames:
        stmt = stmt.where(User.id.in_([u.strip() for u in usernames.split(",") if u.strip()]))
    result = await db.execute(options.apply(stmt, User))
    return [options.select(_user_to_out(u), "username") for u in result.scalars().all()]


@router.post("")
async def create_users(
    background_tasks: BackgroundTasks,
    items: List[UserIn] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    created = await _create_users(items, user, db)
    out = [_user_to_out(u) for u in created]
    await emit_event(db, background_tasks, "users-created", out)
    return out


@router.patch("")
async def update_users(
    background_tasks: BackgroundTasks,
    items: List[UserIn] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    updated = await _update_users(items, user, db)
    out = [_user_to_out(u) for u in updated]
    await emit_event(db, background_tasks, "users-updated", out)
    return out


@router.delete("")
async def delete_users(
    background_tasks: BackgroundTasks,
    usernames: List[str] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    deleted = await _delete_users(usernames, user, db)
    await emit_event(db, background_tasks, "users-deleted", deleted)
    return deleted


@router.get("/whoami")
async def whoami(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """The currently authenticated user"""
    return _user_to_out(await _get_user_or_404(user.id, db))


@router.get("/{username}")
async def get_user(
    username: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
):
    permissions.read_user(user)
    target = await _get_user_or_404(username, db, archived=options.archived)
    return options.select(_user_to_out(target), "username")


@router.post("/{username}")
async def create_user(
    username: str,
    background_tasks: BackgroundTasks,
    item: UserIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(username, item.username)
    item.username = username
    created = await _create_users([item], user, db)
    out = _user_to_out(created[0])
    await emit_event(db, background_tasks, "users-created", [out])
    return out


@router.patch("/{username}")
async def update_user(
    username: str,
    background_tasks: BackgroundTasks,
    item: UserIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(username, item.username)
    item.username = username
    updated = await _update_users([item], user, db)
    out = _user_to_out(updated[0])
    await emit_event(db, background_tasks, "users-updated", [out])
    return out


@router.delete("/{username}")
async def delete_user(
    username: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    deleted = await _delete_users([username], user, db)
    await emit_event(db, background_tasks, "users-deleted", deleted)
    return deleted[0]


@router.patch("/{username}/password")
async def update_password(
    username: str,
    body: PasswordUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Change a local user's own password"""
    if username != user.id:
        raise PermissionDeniedError("Cannot change another user's password.", "warn")
    target = await _get_user_or_404(username, db, archived=False)
    if target.provider != "local":
        raise OperationError("Password can only be changed for local users.", "warn")
    if body.password != body.confirm_password:
        raise DataFormatError("Password and confirmation password do not match.", "warn")
    if not AuthService.verify_password(body.old_password, target.password_hash):
        raise AuthorizationError("Old password is incorrect.", "warn")
    validators.validate_password(body.password)

    target.password_hash = AuthService.hash_password(body.password)
    target.last_modified_by = user.id
    target.updated_on = utcnow()
    await db.commit()
    return _user_to_out(target)
