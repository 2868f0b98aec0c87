# routers/organizations.py — Organization management
import logging
from typing import Optional, List, Dict

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import permissions
import validators
from auth import get_current_user, CurrentUser
from cascades import delete_orgs
from database import get_db_session, DEFAULT_ORG_ID
from errors import DataFormatError, NotFoundError, OperationError, PermissionDeniedError
from models import Organization, Project, User
from scopes import (
    QueryOptions, apply_common_update, check_body_id, check_unique, load_org,
    public_extension, public_permissions, stamp_created, update_permissions,
)
from webhook_dispatch import emit_event

logger = logging.getLogger("mbee.orgs")

router = APIRouter(prefix="/api/orgs", tags=["Organizations"])


# --- Schemas ---

class OrgIn(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    custom: Optional[dict] = None
    archived: Optional[bool] = None
    permissions: Optional[Dict[str, str]] = None


# --- Helpers ---

def _org_to_out(org: Organization) -> dict:
    out = {
        "id": org.id,
        "name": org.name,
        "permissions": public_permissions(org.permissions),
    }
    out.update(public_extension(org))
    return out


async def _check_users_exist(usernames: List[str], db: AsyncSession) -> None:
    if not usernames:
        return
    result = await db.execute(select(User.id).where(User.id.in_(usernames)))
    found = set(result.scalars().all())
    missing = [u for u in usernames if u not in found]
    if missing:
        raise NotFoundError(f"The following users were not found: [{', '.join(missing)}].", "warn")


async def _remove_from_projects(org_id: str, usernames: List[str], db: AsyncSession) -> None:
    """Users removed from an org lose access to all of its projects."""
    if not usernames:
        return
    result = await db.execute(select(Project).where(Project.org == org_id))
    for project in result.scalars().all():
        perms = project.permissions or {}
        if any(u in perms for u in usernames):
            project.permissions = {k: v for k, v in perms.items() if k not in usernames}


async def _create_orgs(items: List[OrgIn], user: CurrentUser, db: AsyncSession) -> List[Organization]:
    permissions.create_org(user)
    if not items:
        raise DataFormatError("No orgs provided.", "warn")
    for item in items:
        if item.id is None or item.name is None:
            raise DataFormatError("Org id and name are required.", "warn")
        validators.validate_org_id(item.id)
        if item.custom is not None:
            validators.validate_custom(item.custom)
    ids = check_unique([i.id for i in items], "orgs")

    result = await db.execute(select(Organization.id).where(Organization.id.in_(ids)))
    existing = result.scalars().all()
    if existing:
        raise PermissionDeniedError(
            f"Orgs with the following IDs already exist [{', '.join(sorted(existing))}].", "warn"
        )

    created = []
    for item in items:
        perms, _ = update_permissions({}, item.permissions or {}, requester="")
        await _check_users_exist(list(perms), db)
        perms[user.id] = ["read", "write", "admin"]
        org = Organization(
            id=item.id,
            name=item.name,
            permissions=perms,
            custom=item.custom or {},
            archived=bool(item.archived),
        )
        stamp_created(org, user.id)
        db.add(org)
        created.append(org)

    await db.commit()
    logger.info("%s created org(s) [%s]", user.id, ", ".join(ids))
    return created


async def _update_orgs(items: List[OrgIn], user: CurrentUser, db: AsyncSession) -> List[Organization]:
    if not items:
        raise DataFormatError("No orgs provided.", "warn")
    if any(i.id is None for i in items):
        raise DataFormatError("Org id is required to update an org.", "warn")
    ids = check_unique([i.id for i in items], "orgs")

    result = await db.execute(select(Organization).where(Organization.id.in_(ids)))
    found = {o.id: o for o in result.scalars().all()}
    missing = [i for i in ids if i not in found]
    if missing:
        raise NotFoundError(f"The following orgs were not found: [{', '.join(missing)}].", "warn")

    for item in items:
        org = found[item.id]
        permissions.update_org(user, org)
        if org.archived and item.archived is not False:
            raise OperationError(f"Org [{org.id}] is archived. Archived objects cannot be modified.", "warn")
        if item.archived and org.id == DEFAULT_ORG_ID:
            raise OperationError("The default org cannot be archived.", "warn")
        if item.custom is not None:
            validators.validate_custom(item.custom)

        if item.name is not None:
            org.name = item.name
        if item.permissions is not None:
            perms, removed = update_permissions(org.permissions, item.permissions, user.id)
            await _check_users_exist([u for u in item.permissions if u not in removed], db)
            org.permissions = perms
            await _remove_from_projects(org.id, removed, db)
        apply_common_update(org, item.model_dump(), user.id)

    await db.commit()
    return [found[i] for i in ids]


async def _delete_orgs(ids: List[str], user: CurrentUser, db: AsyncSession) -> List[str]:
    permissions.delete_org(user)
    if not ids or not all(isinstance(i, str) for i in ids):
        raise DataFormatError("Request body must be an array of org ids.", "warn")
    if DEFAULT_ORG_ID in ids:
        raise PermissionDeniedError("The default organization cannot be deleted.", "warn")
    ids = check_unique(ids, "orgs")

    result = await db.execute(select(Organization.id).where(Organization.id.in_(ids)))
    found = list(result.scalars().all())
    if not found:
        raise NotFoundError(f"The following orgs were not found: [{', '.join(ids)}].", "warn")

    await delete_orgs(db, found)
    await db.commit()
    logger.info("%s deleted org(s) [%s]", user.id, ", ".join(found))
    return found


# --- Endpoints ---

@router.get("")
async def list_orgs(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
    ids: Optional[str] = Query(default=None),
):
    """Find every org the user can read, optionally limited to ?ids=a,b"""
    stmt = select(Organization)
    if ids:
        stmt = stmt.where(Organization.id.in_([i.strip() for i in ids.split(",") if i.strip()]))
    result = await db.execute(options.apply(stmt, Organization, paginate=False))
    readable = [org for org in result.scalars().all() if permissions.allowed(permissions.read_org, user, org)]
    return [options.select(_org_to_out(org)) for org in options.page(readable)]


@router.post("")
async def create_orgs(
    background_tasks: BackgroundTasks,
    items: List[OrgIn] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    out = [_org_to_out(o) for o in await _create_orgs(items, user, db)]
    await emit_event(db, background_tasks, "orgs-created", out)
    return out


@router.patch("")
async def update_orgs(
    background_tasks: BackgroundTasks,
    items: List[OrgIn] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    out = [_org_to_out(o) for o in await _update_orgs(items, user, db)]
    await emit_event(db, background_tasks, "orgs-updated", out)
    return out


@router.delete("")
async def delete_orgs_bulk(
    background_tasks: BackgroundTasks,
    ids: List[str] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    deleted = await _delete_orgs(ids, user, db)
    await emit_event(db, background_tasks, "orgs-deleted", deleted)
    return deleted


@router.get("/{orgid}")
async def get_org(
    orgid: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
):
    org = await load_org(db, orgid, archived=options.archived)
    permissions.read_org(user, org)
    return options.select(_org_to_out(org))


@router.post("/{orgid}")
async def create_org(
    orgid: str,
    background_tasks: BackgroundTasks,
    item: OrgIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(orgid, item.id)
    item.id = orgid
    out = _org_to_out((await _create_orgs([item], user, db))[0])
    await emit_event(db, background_tasks, "orgs-created", [out])
    return out


@router.put("/{orgid}")
async def create_or_replace_org(
    orgid: str,
    background_tasks: BackgroundTasks,
    item: OrgIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create the org, or replace the fields of an existing one"""
    check_body_id(orgid, item.id)
    item.id = orgid
    existing = await db.get(Organization, orgid)
    if existing is None:
        out = _org_to_out((await _create_orgs([item], user, db))[0])
        await emit_event(db, background_tasks, "orgs-created", [out])
        return out

    # Replacing requires the same rights as deleting
    permissions.delete_org(user)
    if item.name is None:
        raise DataFormatError("Org name is required.", "warn")
    if item.archived and orgid == DEFAULT_ORG_ID:
        raise OperationError("The default org cannot be archived.", "warn")
    if item.custom is not None:
        validators.validate_custom(item.custom)
    existing.name = item.name
    existing.custom = item.custom or {}
    if item.permissions is not None:
        existing.permissions, removed = update_permissions(existing.permissions, item.permissions, user.id)
        await _remove_from_projects(orgid, removed, db)
    apply_common_update(existing, {"archived": bool(item.archived)}, user.id)
    await db.commit()

    out = _org_to_out(existing)
    await emit_event(db, background_tasks, "orgs-replaced", [out])
    return out


@router.patch("/{orgid}")
async def update_org(
    orgid: str,
    background_tasks: BackgroundTasks,
    item: OrgIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(orgid, item.id)
    item.id = orgid
    out = _org_to_out((await _update_orgs([item], user, db))[0])
    await emit_event(db, background_tasks, "orgs-updated", [out])
    return out


@router.delete("/{orgid}")
async def delete_org(
    orgid: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    deleted = await _delete_orgs([orgid], user, db)
    await emit_event(db, background_tasks, "orgs-deleted", deleted)
    return deleted[0]
