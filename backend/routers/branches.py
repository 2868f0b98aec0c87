# routers/branches.py — Branch management
# Creating a branch copies every element and artifact of its source branch.
import logging
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query
from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

import permissions
import validators
from auth import get_current_user, CurrentUser
from cascades import delete_branch_contents
from database import get_db_session
from errors import DataFormatError, NotFoundError, OperationError, PermissionDeniedError
from identifiers import ID_DELIMITER, create_id, leaf_id, parse_id
from models import Organization, Project, Branch, Element, Artifact, MASTER_BRANCH
from scopes import (
    QueryOptions, apply_common_update, check_body_id, check_unique, load_project,
    public_extension, stamp_created,
)
from webhook_dispatch import emit_event

logger = logging.getLogger("mbee.branches")

router = APIRouter(prefix="/api/orgs/{orgid}/projects/{projectid}/branches", tags=["Branches"])


# --- Schemas ---

class BranchIn(BaseModel):
    id: Optional[str] = None
    project: Optional[str] = None
    name: Optional[str] = None
    source: Optional[str] = None
    tag: Optional[bool] = None
    custom: Optional[dict] = None
    archived: Optional[bool] = None


# --- Helpers ---

def _branch_to_out(branch: Branch) -> dict:
    org_id, project_id = parse_id(branch.id)[:2]
    out = {
        "id": leaf_id(branch.id),
        "org": org_id,
        "project": project_id,
        "name": branch.name,
        "source": leaf_id(branch.source) if branch.source else None,
        "tag": bool(branch.tag),
    }
    out.update(public_extension(branch))
    return out


def _remap(uid: Optional[str], source_id: str, branch_id: str) -> Optional[str]:
    """Move an id from the source branch into the new branch; other ids are kept."""
    prefix = source_id + ID_DELIMITER
    if uid and uid.startswith(prefix):
        return branch_id + uid[len(source_id):]
    return uid


async def _copy_branch(source: Branch, branch: Branch, username: str, db: AsyncSession) -> int:
    result = await db.execute(select(Element).where(Element.branch == source.id))
    copies = []
    for element in result.scalars().all():
        copy = Element(
            id=_remap(element.id, source.id, branch.id),
            project=element.project,
            branch=branch.id,
            name=element.name,
            type=element.type,
            documentation=element.documentation,
            parent=_remap(element.parent, source.id, branch.id),
            source=_remap(element.source, source.id, branch.id),
            target=_remap(element.target, source.id, branch.id),
            artifact=_remap(element.artifact, source.id, branch.id),
            custom=dict(element.custom or {}),
            archived=bool(element.archived),
            archived_on=element.archived_on,
            archived_by=element.archived_by,
        )
        copy.created_by = username
        copy.last_modified_by = username
        copies.append(copy)

    result = await db.execute(select(Artifact).where(Artifact.branch == source.id))
    for artifact in result.scalars().all():
        copy = Artifact(
            id=_remap(artifact.id, source.id, branch.id),
            project=artifact.project,
            branch=branch.id,
            filename=artifact.filename,
            location=artifact.location,
            description=artifact.description,
            size=artifact.size,
            strategy=artifact.strategy,
            custom=dict(artifact.custom or {}),
            archived=bool(artifact.archived),
        )
        copy.created_by = username
        copy.last_modified_by = username
        copies.append(copy)

    db.add_all(copies)
    return len(copies)


async def _create_branches(
    org: Organization, project: Project, items: List[BranchIn], user: CurrentUser, db: AsyncSession,
) -> List[Branch]:
    permissions.create_branch(user, org, project)
    if not items:
        raise DataFormatError("No branches provided.", "warn")

    for item in items:
        if item.id is None:
            raise DataFormatError("Branch id is required.", "warn")
        if item.project is not None and item.project != leaf_id(project.id):
            raise DataFormatError("Branch project does not match the project in the params.", "warn")
        validators.validate_branch_id(create_id(project.id, item.id))
        if item.custom is not None:
            validators.validate_custom(item.custom)
    ids = check_unique([create_id(project.id, i.id) for i in items], "branches")

    result = await db.execute(select(Branch.id).where(Branch.id.in_(ids)))
    existing = result.scalars().all()
    if existing:
        raise PermissionDeniedError(
            f"Branches with the following IDs already exist [{', '.join(sorted(leaf_id(e) for e in existing))}].",
            "warn",
        )

    created = []
    for item in items:
        source_id = create_id(project.id, item.source or MASTER_BRANCH)
        source = await db.get(Branch, source_id)
        if source is None:
            raise NotFoundError(f"The source branch [{leaf_id(source_id)}] was not found.", "warn")

        branch = Branch(
            id=create_id(project.id, item.id),
            project=project.id,
            name=item.name or "",
            source=source.id,
            tag=bool(item.tag),
            custom=item.custom or {},
            archived=bool(item.archived),
        )
        stamp_created(branch, user.id)
        db.add(branch)
        copied = await _copy_branch(source, branch, user.id, db)
        logger.info("Branch [%s] created from [%s] with %d record(s)", branch.id, source.id, copied)
        created.append(branch)

    await db.commit()
    return created


async def _update_branches(
    org: Organization, project: Project, items: List[BranchIn], user: CurrentUser, db: AsyncSession,
) -> List[Branch]:
    permissions.update_branch(user, org, project)
    if not items:
        raise DataFormatError("No branches provided.", "warn")
    if any(i.id is None for i in items):
        raise DataFormatError("Branch id is required to update a branch.", "warn")
    ids = check_unique([create_id(project.id, i.id) for i in items], "branches")

    result = await db.execute(select(Branch).where(Branch.id.in_(ids)))
    found = {b.id: b for b in result.scalars().all()}
    missing = [leaf_id(i) for i in ids if i not in found]
    if missing:
        raise NotFoundError(f"The following branches were not found: [{', '.join(missing)}].", "warn")

    for item in items:
        branch = found[create_id(project.id, item.id)]
        if branch.archived and item.archived is not False:
            raise OperationError(
                f"Branch [{leaf_id(branch.id)}] is archived. It must first be unarchived before performing this operation.",
                "warn",
            )
        if item.archived and leaf_id(branch.id) == MASTER_BRANCH:
            raise OperationError("User cannot archive the master branch.", "warn")
        if item.source is not None or item.tag is not None:
            raise DataFormatError("Branch fields [source, tag] cannot be updated.", "warn")
        if item.project is not None:
            branch.project = create_id(org.id, item.project)
        if item.name is not None:
            branch.name = item.name
        if item.custom is not None:
            validators.validate_custom(item.custom)
        apply_common_update(branch, item.model_dump(), user.id)

    await db.commit()
    return [found[i] for i in ids]


async def _delete_branches(
    org: Organization, project: Project, ids: List[str], user: CurrentUser, db: AsyncSession,
) -> List[str]:
    permissions.delete_branch(user, org, project)
    if not ids or not all(isinstance(i, str) for i in ids):
        raise DataFormatError("Request body must be an array of branch ids.", "warn")
    if MASTER_BRANCH in ids:
        raise OperationError("User cannot delete the master branch.", "warn")
    full_ids = check_unique([create_id(project.id, i) for i in ids], "branches")

    result = await db.execute(select(Branch.id).where(Branch.id.in_(full_ids)))
    found = list(result.scalars().all())
    if not found:
        raise NotFoundError(f"The following branches were not found: [{', '.join(ids)}].", "warn")

    await delete_branch_contents(db, found)
    await db.execute(delete(Branch).where(Branch.id.in_(found)))
    await db.commit()
    logger.info("%s deleted branch(es) [%s]", user.id, ", ".join(found))
    return [leaf_id(b) for b in found]


# --- Endpoints ---

@router.get("")
async def list_branches(
    orgid: str,
    projectid: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
    ids: Optional[str] = Query(default=None),
    tag: Optional[bool] = Query(default=None),
):
    org, project = await load_project(db, orgid, projectid, archived=options.archived)
    permissions.read_branch(user, org, project)

    stmt = select(Branch).where(Branch.project == project.id)
    if ids:
        stmt = stmt.where(Branch.id.in_([create_id(project.id, i.strip()) for i in ids.split(",") if i.strip()]))
    if tag is not None:
        stmt = stmt.where(Branch.tag == tag)
    result = await db.execute(options.apply(stmt, Branch))
    return [options.select(_branch_to_out(b)) for b in result.scalars().all()]


@router.post("")
async def create_branches(
    orgid: str,
    projectid: str,
    background_tasks: BackgroundTasks,
    items: List[BranchIn] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org, project = await load_project(db, orgid, projectid)
    out = [_branch_to_out(b) for b in await _create_branches(org, project, items, user, db)]
    await emit_event(db, background_tasks, "branches-created", out)
    return out


@router.patch("")
async def update_branches(
    orgid: str,
    projectid: str,
    background_tasks: BackgroundTasks,
    items: List[BranchIn] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org, project = await load_project(db, orgid, projectid)
    out = [_branch_to_out(b) for b in await _update_branches(org, project, items, user, db)]
    await emit_event(db, background_tasks, "branches-updated", out)
    return out


@router.delete("")
async def delete_branches(
    orgid: str,
    projectid: str,
    background_tasks: BackgroundTasks,
    ids: List[str] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org, project = await load_project(db, orgid, projectid)
    deleted = await _delete_branches(org, project, ids, user, db)
    await emit_event(db, background_tasks, "branches-deleted", deleted)
    return deleted


@router.get("/{branchid}")
async def get_branch(
    orgid: str,
    projectid: str,
    branchid: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
):
    org, project = await load_project(db, orgid, projectid, archived=options.archived)
    permissions.read_branch(user, org, project)
    branch = await db.get(Branch, create_id(project.id, branchid))
    if branch is None or (branch.archived and not options.archived):
        raise NotFoundError(f"Branch [{branchid}] not found.", "warn")
    return options.select(_branch_to_out(branch))


@router.post("/{branchid}")
async def create_branch(
    orgid: str,
    projectid: str,
    branchid: str,
    background_tasks: BackgroundTasks,
    item: BranchIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(branchid, item.id)
    item.id = branchid
    org, project = await load_project(db, orgid, projectid)
    out = _branch_to_out((await _create_branches(org, project, [item], user, db))[0])
    await emit_event(db, background_tasks, "branches-created", [out])
    return out


@router.patch("/{branchid}")
async def update_branch(
    orgid: str,
    projectid: str,
    branchid: str,
    background_tasks: BackgroundTasks,
    item: BranchIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(branchid, item.id)
    item.id = branchid
    org, project = await load_project(db, orgid, projectid)
    out = _branch_to_out((await _update_branches(org, project, [item], user, db))[0])
    await emit_event(db, background_tasks, "branches-updated", [out])
    return out


@router.delete("/{branchid}")
async def delete_branch(
    orgid: str,
    projectid: str,
    branchid: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org, project = await load_project(db, orgid, projectid)
    deleted = await _delete_branches(org, project, [branchid], user, db)
    await emit_event(db, background_tasks, "branches-deleted", deleted)
    return deleted[0]
