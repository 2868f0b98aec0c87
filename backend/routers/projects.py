# routers/projects.py — Project management
# A new project always gets a 'master' branch holding the root elements
# model / __mbee__ / holding_bin / undefined.
import logging
from typing import Optional, List, Dict

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import permissions
import validators
from auth import get_current_user, CurrentUser
from cascades import delete_projects
from database import get_db_session
from errors import DataFormatError, NotFoundError, OperationError, PermissionDeniedError
from identifiers import create_id, leaf_id
from models import Organization, Project, Branch, Element, ROOT_ELEMENTS, MASTER_BRANCH
from scopes import (
    QueryOptions, apply_common_update, check_body_id, check_unique, load_org, load_project,
    public_extension, public_permissions, stamp_created, update_permissions,
)
from webhook_dispatch import emit_event

logger = logging.getLogger("mbee.projects")

router = APIRouter(prefix="/api", tags=["Projects"])

# Parents of the root elements; 'model' is the top of the tree
_ROOT_PARENTS = {
    "model": None,
    "__mbee__": "model",
    "holding_bin": "__mbee__",
    "undefined": "__mbee__",
}


# --- Schemas ---

class ProjectIn(BaseModel):
    id: Optional[str] = None
    org: Optional[str] = None
    name: Optional[str] = None
    visibility: Optional[str] = None
    custom: Optional[dict] = None
    archived: Optional[bool] = None
    permissions: Optional[Dict[str, str]] = None


# --- Helpers ---

def _project_to_out(project: Project) -> dict:
    out = {
        "id": leaf_id(project.id),
        "org": project.org,
        "name": project.name,
        "permissions": public_permissions(project.permissions),
        "visibility": project.visibility,
    }
    out.update(public_extension(project))
    return out


def _check_org_members(org: Organization, usernames: List[str]) -> None:
    outsiders = [u for u in usernames if u not in (org.permissions or {})]
    if outsiders:
        raise DataFormatError(
            f"User(s) [{', '.join(outsiders)}] are not members of the org [{org.id}].", "warn"
        )


def _root_elements(project_id: str, username: str) -> List[Element]:
    branch_id = create_id(project_id, MASTER_BRANCH)
    elements = []
    for elem_id, name in ROOT_ELEMENTS.items():
        parent = _ROOT_PARENTS[elem_id]
        element = Element(
            id=create_id(branch_id, elem_id),
            project=project_id,
            branch=branch_id,
            name=name,
            parent=create_id(branch_id, parent) if parent else None,
            custom={},
            archived=False,
        )
        stamp_created(element, username)
        elements.append(element)
    return elements


async def _create_projects(
    org: Organization, items: List[ProjectIn], user: CurrentUser, db: AsyncSession,
) -> List[Project]:
    permissions.create_project(user, org)
    if not items:
        raise DataFormatError("No projects provided.", "warn")

    for item in items:
        if item.id is None or item.name is None:
            raise DataFormatError("Project id and name are required.", "warn")
        if item.org is not None and item.org != org.id:
            raise DataFormatError("Project org does not match the org in the params.", "warn")
        validators.validate_project_id(create_id(org.id, item.id))
        validators.validate_visibility(item.visibility or "private")
        if item.custom is not None:
            validators.validate_custom(item.custom)
    ids = check_unique([create_id(org.id, i.id) for i in items], "projects")

    result = await db.execute(select(Project.id).where(Project.id.in_(ids)))
    existing = result.scalars().all()
    if existing:
        raise PermissionDeniedError(
            f"Projects with the following IDs already exist [{', '.join(sorted(leaf_id(e) for e in existing))}].",
            "warn",
        )

    created = []
    for item in items:
        project_id = create_id(org.id, item.id)
        perms, _ = update_permissions({}, item.permissions or {}, requester="")
        _check_org_members(org, list(perms))
        perms[user.id] = ["read", "write", "admin"]

        project = Project(
            id=project_id,
            org=org.id,
            name=item.name,
            visibility=item.visibility or "private",
            permissions=perms,
            custom=item.custom or {},
            archived=bool(item.archived),
        )
        stamp_created(project, user.id)
        db.add(project)

        master = Branch(
            id=create_id(project_id, MASTER_BRANCH),
            project=project_id,
            name="Master",
            source=None,
            tag=False,
            custom={},
            archived=False,
        )
        stamp_created(master, user.id)
        db.add(master)
        db.add_all(_root_elements(project_id, user.id))
        created.append(project)

    await db.commit()
    logger.info("%s created project(s) [%s]", user.id, ", ".join(ids))
    return created


async def _update_projects(
    org: Organization, items: List[ProjectIn], user: CurrentUser, db: AsyncSession,
) -> List[Project]:
    if not items:
        raise DataFormatError("No projects provided.", "warn")
    if any(i.id is None for i in items):
        raise DataFormatError("Project id is required to update a project.", "warn")
    ids = check_unique([create_id(org.id, i.id) for i in items], "projects")

    result = await db.execute(select(Project).where(Project.id.in_(ids)))
    found = {p.id: p for p in result.scalars().all()}
    missing = [leaf_id(i) for i in ids if i not in found]
    if missing:
        raise NotFoundError(f"The following projects were not found: [{', '.join(missing)}].", "warn")

    for item in items:
        project = found[create_id(org.id, item.id)]
        permissions.update_project(user, org, project)
        if project.archived and item.archived is not False:
            raise OperationError(
                f"Project [{leaf_id(project.id)}] is archived. Archived objects cannot be modified.", "warn"
            )
        if item.org is not None:
            project.org = item.org
        if item.name is not None:
            project.name = item.name
        if item.visibility is not None:
            project.visibility = validators.validate_visibility(item.visibility)
        if item.custom is not None:
            validators.validate_custom(item.custom)
        if item.permissions is not None:
            perms, removed = update_permissions(project.permissions, item.permissions, user.id)
            _check_org_members(org, [u for u in item.permissions if u not in removed])
            project.permissions = perms
        apply_common_update(project, item.model_dump(), user.id)

    await db.commit()
    return [found[i] for i in ids]


async def _delete_projects(org_id: str, ids: List[str], user: CurrentUser, db: AsyncSession) -> List[str]:
    permissions.delete_project(user)
    if not ids or not all(isinstance(i, str) for i in ids):
        raise DataFormatError("Request body must be an array of project ids.", "warn")
    full_ids = check_unique([create_id(org_id, i) for i in ids], "projects")

    result = await db.execute(select(Project.id).where(Project.id.in_(full_ids)))
    found = list(result.scalars().all())
    if not found:
        raise NotFoundError(f"The following projects were not found: [{', '.join(ids)}].", "warn")

    await delete_projects(db, found)
    await db.commit()
    logger.info("%s deleted project(s) [%s]", user.id, ", ".join(found))
    return [leaf_id(p) for p in found]


# --- Endpoints ---

@router.get("/projects")
async def list_all_projects(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
):
    """Every project the user can read, across all orgs"""
    orgs_result = await db.execute(select(Organization))
    orgs = {o.id: o for o in orgs_result.scalars().all()}

    result = await db.execute(options.apply(select(Project), Project, paginate=False))
    readable = []
    for project in result.scalars().all():
        org = orgs.get(project.org)
        if org is None or (org.archived and not options.archived):
            continue
        if permissions.allowed(permissions.read_project, user, org, project):
            readable.append(project)
    return [options.select(_project_to_out(p)) for p in options.page(readable)]


@router.get("/orgs/{orgid}/projects")
async def list_projects(
    orgid: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
    ids: Optional[str] = Query(default=None),
):
    org = await load_org(db, orgid, archived=options.archived)
    permissions.read_org(user, org)

    stmt = select(Project).where(Project.org == orgid)
    if ids:
        stmt = stmt.where(Project.id.in_([create_id(orgid, i.strip()) for i in ids.split(",") if i.strip()]))
    result = await db.execute(options.apply(stmt, Project, paginate=False))
    readable = [p for p in result.scalars().all() if permissions.allowed(permissions.read_project, user, org, p)]
    return [options.select(_project_to_out(p)) for p in options.page(readable)]


@router.post("/orgs/{orgid}/projects")
async def create_projects(
    orgid: str,
    background_tasks: BackgroundTasks,
    items: List[ProjectIn] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org = await load_org(db, orgid)
    out = [_project_to_out(p) for p in await _create_projects(org, items, user, db)]
    await emit_event(db, background_tasks, "projects-created", out)
    return out


@router.patch("/orgs/{orgid}/projects")
async def update_projects(
    orgid: str,
    background_tasks: BackgroundTasks,
    items: List[ProjectIn] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org = await load_org(db, orgid)
    out = [_project_to_out(p) for p in await _update_projects(org, items, user, db)]
    await emit_event(db, background_tasks, "projects-updated", out)
    return out


@router.delete("/orgs/{orgid}/projects")
async def delete_projects_bulk(
    orgid: str,
    background_tasks: BackgroundTasks,
    ids: List[str] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await load_org(db, orgid, archived=True)
    deleted = await _delete_projects(orgid, ids, user, db)
    await emit_event(db, background_tasks, "projects-deleted", deleted)
    return deleted


@router.get("/orgs/{orgid}/projects/{projectid}")
async def get_project(
    orgid: str,
    projectid: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
):
    org, project = await load_project(db, orgid, projectid, archived=options.archived)
    permissions.read_project(user, org, project)
    return options.select(_project_to_out(project))


@router.post("/orgs/{orgid}/projects/{projectid}")
async def create_project(
    orgid: str,
    projectid: str,
    background_tasks: BackgroundTasks,
    item: ProjectIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(projectid, item.id)
    item.id = projectid
    org = await load_org(db, orgid)
    out = _project_to_out((await _create_projects(org, [item], user, db))[0])
    await emit_event(db, background_tasks, "projects-created", [out])
    return out


@router.put("/orgs/{orgid}/projects/{projectid}")
async def create_or_replace_project(
    orgid: str,
    projectid: str,
    background_tasks: BackgroundTasks,
    item: ProjectIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create the project, or replace the fields of an existing one"""
    check_body_id(projectid, item.id)
    item.id = projectid
    org = await load_org(db, orgid)
    existing = await db.get(Project, create_id(orgid, projectid))
    if existing is None:
        out = _project_to_out((await _create_projects(org, [item], user, db))[0])
        await emit_event(db, background_tasks, "projects-created", [out])
        return out

    permissions.update_project(user, org, existing)
    if item.name is None:
        raise DataFormatError("Project name is required.", "warn")
    if item.org is not None:
        existing.org = item.org
    if item.custom is not None:
        validators.validate_custom(item.custom)
    existing.name = item.name
    existing.visibility = validators.validate_visibility(item.visibility or "private")
    existing.custom = item.custom or {}
    if item.permissions is not None:
        perms, removed = update_permissions(existing.permissions, item.permissions, user.id)
        _check_org_members(org, [u for u in item.permissions if u not in removed])
        existing.permissions = perms
    apply_common_update(existing, {"archived": bool(item.archived)}, user.id)
    await db.commit()

    out = _project_to_out(existing)
    await emit_event(db, background_tasks, "projects-replaced", [out])
    return out


@router.patch("/orgs/{orgid}/projects/{projectid}")
async def update_project(
    orgid: str,
    projectid: str,
    background_tasks: BackgroundTasks,
    item: ProjectIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(projectid, item.id)
    item.id = projectid
    org = await load_org(db, orgid)
    out = _project_to_out((await _update_projects(org, [item], user, db))[0])
    await emit_event(db, background_tasks, "projects-updated", [out])
    return out


@router.delete("/orgs/{orgid}/projects/{projectid}")
async def delete_project(
    orgid: str,
    projectid: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await load_org(db, orgid, archived=True)
    deleted = await _delete_projects(orgid, [projectid], user, db)
    await emit_event(db, background_tasks, "projects-deleted", deleted)
    return deleted[0]
