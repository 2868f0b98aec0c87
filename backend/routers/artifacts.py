# routers/artifacts.py — Artifact records and their blobs
# Artifact records live on a branch and point at a blob (location + filename)
# kept by a storage strategy. Blobs themselves are addressed per project.
import logging
import mimetypes
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

import permissions
import validators
from artifact_storage import get_strategy
from artifact_storage.base import validate_blob_meta
from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import DataFormatError, NotFoundError, OperationError, PermissionDeniedError
from identifiers import create_id, leaf_id, parse_id
from models import Organization, Project, Branch, Element, Artifact
from scopes import (
    QueryOptions, apply_common_update, check_body_id, check_unique, load_branch, load_project,
    public_extension, stamp_created,
)
from webhook_dispatch import emit_event

logger = logging.getLogger("mbee.artifacts")

router = APIRouter(prefix="/api/orgs/{orgid}/projects/{projectid}", tags=["Artifacts"])


# --- Schemas ---

class ArtifactIn(BaseModel):
    id: Optional[str] = None
    project: Optional[str] = None
    branch: Optional[str] = None
    filename: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    size: Optional[int] = None
    strategy: Optional[str] = None
    custom: Optional[dict] = None
    archived: Optional[bool] = None


# --- Helpers ---

def _artifact_to_out(artifact: Artifact) -> dict:
    org_id, project_id, branch_id = parse_id(artifact.id)[:3]
    out = {
        "id": leaf_id(artifact.id),
        "org": org_id,
        "project": project_id,
        "branch": branch_id,
        "filename": artifact.filename,
        "location": artifact.location,
        "description": artifact.description,
        "size": artifact.size,
        "strategy": artifact.strategy,
    }
    out.update(public_extension(artifact))
    return out


def _blob_meta(org: Organization, project: Project, location: str, filename: str) -> dict:
    return {"org": org.id, "project": leaf_id(project.id), "location": location, "filename": filename}


def _check_writable(branch: Branch) -> None:
    if branch.tag:
        raise OperationError(
            f"[{leaf_id(branch.id)}] is a tag and does not allow artifacts to be created, "
            "updated, or deleted.", "warn"
        )


def _check_blob_fields(item: ArtifactIn) -> None:
    if item.location is not None:
        validators.validate_artifact_location(item.location)
    if item.filename is not None:
        validators.validate_artifact_filename(item.filename)


async def _create_artifacts(
    org: Organization, project: Project, branch: Branch, items: List[ArtifactIn],
    user: CurrentUser, db: AsyncSession,
) -> List[Artifact]:
    permissions.create_artifact(user, org, project, branch)
    _check_writable(branch)
    if not items:
        raise DataFormatError("No artifacts provided.", "warn")

    for item in items:
        if item.id is None:
            raise DataFormatError("Artifact id is required.", "warn")
        validators.validate_artifact_id(create_id(branch.id, item.id))
        if item.project is not None:
            validators.ensure_unchanged("project", leaf_id(project.id), item.project)
        if item.branch is not None:
            validators.ensure_unchanged("branch", leaf_id(branch.id), item.branch)
        _check_blob_fields(item)
        if item.custom is not None:
            validators.validate_custom(item.custom)
    ids = check_unique([create_id(branch.id, i.id) for i in items], "artifacts")

    result = await db.execute(select(Artifact.id).where(Artifact.id.in_(ids)))
    existing = result.scalars().all()
    if existing:
        raise PermissionDeniedError(
            f"Artifacts with the following IDs already exist [{', '.join(sorted(leaf_id(e) for e in existing))}].",
            "warn",
        )

    created = []
    for item in items:
        strategy = get_strategy(item.strategy)
        artifact = Artifact(
            id=create_id(branch.id, item.id),
            project=project.id,
            branch=branch.id,
            filename=item.filename,
            location=item.location,
            description=item.description or "",
            size=item.size,
            strategy=strategy.name,
            custom=item.custom or {},
            archived=bool(item.archived),
        )
        stamp_created(artifact, user.id)
        created.append(artifact)

    db.add_all(created)
    await db.commit()
    logger.info("%s created %d artifact(s) on [%s]", user.id, len(created), branch.id)
    return created


async def _update_artifacts(
    org: Organization, project: Project, branch: Branch, items: List[ArtifactIn],
    user: CurrentUser, db: AsyncSession,
) -> List[Artifact]:
    permissions.update_artifact(user, org, project, branch)
    _check_writable(branch)
    if not items:
        raise DataFormatError("No artifacts provided.", "warn")
    if any(i.id is None for i in items):
        raise DataFormatError("Artifact id is required to update an artifact.", "warn")
    ids = check_unique([create_id(branch.id, i.id) for i in items], "artifacts")

    result = await db.execute(select(Artifact).where(Artifact.id.in_(ids)))
    found = {a.id: a for a in result.scalars().all()}
    missing = [leaf_id(i) for i in ids if i not in found]
    if missing:
        raise NotFoundError(f"The following artifacts were not found: [{', '.join(missing)}].", "warn")

    for item in items:
        artifact = found[create_id(branch.id, item.id)]
        if artifact.archived and item.archived is not False:
            raise OperationError(
                f"Artifact [{item.id}] is archived. It must first be unarchived before performing this operation.",
                "warn",
            )
        if item.project is not None:
            artifact.project = create_id(org.id, item.project)
        if item.branch is not None:
            artifact.branch = create_id(project.id, item.branch)
        if item.strategy is not None:
            artifact.strategy = item.strategy
        _check_blob_fields(item)
        if item.custom is not None:
            validators.validate_custom(item.custom)

        for field in ("filename", "location", "description", "size"):
            value = getattr(item, field)
            if value is not None:
                setattr(artifact, field, value)
        apply_common_update(artifact, item.model_dump(), user.id)

    await db.commit()
    return [found[i] for i in ids]


async def _delete_artifacts(
    org: Organization, project: Project, branch: Branch, ids: List[str],
    user: CurrentUser, db: AsyncSession,
) -> List[str]:
    permissions.delete_artifact(user, org, project, branch)
    _check_writable(branch)
    if not ids or not all(isinstance(i, str) for i in ids):
        raise DataFormatError("Request body must be an array of artifact ids.", "warn")
    full_ids = check_unique([create_id(branch.id, i) for i in ids], "artifacts")

    result = await db.execute(select(Artifact).where(Artifact.id.in_(full_ids)))
    found = list(result.scalars().all())
    if not found:
        raise NotFoundError(f"The following artifacts were not found: [{', '.join(ids)}].", "warn")

    deleted = [a.id for a in found]
    for artifact in found:
        await db.delete(artifact)
    # Elements keep no dangling artifact references
    await db.execute(update(Element).where(Element.artifact.in_(deleted)).values(artifact=None))
    await db.commit()
    return [leaf_id(a) for a in deleted]


async def _read_body(request: Request) -> bytes:
    data = await request.body()
    if not data:
        raise DataFormatError("Request body must contain the blob data.", "warn")
    return data


# --- Artifact endpoints ---

@router.get("/branches/{branchid}/artifacts")
async def list_artifacts(
    orgid: str,
    projectid: str,
    branchid: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
    ids: Optional[str] = Query(default=None),
    location: Optional[str] = Query(default=None),
    filename: Optional[str] = Query(default=None),
):
    org, project, branch = await load_branch(db, orgid, projectid, branchid, archived=options.archived)
    permissions.read_artifact(user, org, project, branch)

    stmt = select(Artifact).where(Artifact.branch == branch.id)
    if ids:
        stmt = stmt.where(Artifact.id.in_([create_id(branch.id, i.strip()) for i in ids.split(",") if i.strip()]))
    if location is not None:
        stmt = stmt.where(Artifact.location == location)
    if filename is not None:
        stmt = stmt.where(Artifact.filename == filename)
    result = await db.execute(options.apply(stmt, Artifact))
    return [options.select(_artifact_to_out(a)) for a in result.scalars().all()]


@router.post("/branches/{branchid}/artifacts")
async def create_artifacts(
    orgid: str,
    projectid: str,
    branchid: str,
    background_tasks: BackgroundTasks,
    items: List[ArtifactIn] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org, project, branch = await load_branch(db, orgid, projectid, branchid)
    out = [_artifact_to_out(a) for a in await _create_artifacts(org, project, branch, items, user, db)]
    await emit_event(db, background_tasks, "artifacts-created", out)
    return out


@router.patch("/branches/{branchid}/artifacts")
async def update_artifacts(
    orgid: str,
    projectid: str,
    branchid: str,
    background_tasks: BackgroundTasks,
    items: List[ArtifactIn] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org, project, branch = await load_branch(db, orgid, projectid, branchid)
    out = [_artifact_to_out(a) for a in await _update_artifacts(org, project, branch, items, user, db)]
    await emit_event(db, background_tasks, "artifacts-updated", out)
    return out


@router.delete("/branches/{branchid}/artifacts")
async def delete_artifacts(
    orgid: str,
    projectid: str,
    branchid: str,
    background_tasks: BackgroundTasks,
    ids: List[str] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org, project, branch = await load_branch(db, orgid, projectid, branchid)
    deleted = await _delete_artifacts(org, project, branch, ids, user, db)
    await emit_event(db, background_tasks, "artifacts-deleted", deleted)
    return deleted


@router.get("/branches/{branchid}/artifacts/{artifactid}")
async def get_artifact(
    orgid: str,
    projectid: str,
    branchid: str,
    artifactid: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
):
    org, project, branch = await load_branch(db, orgid, projectid, branchid, archived=options.archived)
    permissions.read_artifact(user, org, project, branch)
    artifact = await db.get(Artifact, create_id(branch.id, artifactid))
    if artifact is None or (artifact.archived and not options.archived):
        raise NotFoundError(f"Artifact [{artifactid}] not found.", "warn")
    return options.select(_artifact_to_out(artifact))


@router.post("/branches/{branchid}/artifacts/{artifactid}")
async def create_artifact(
    orgid: str,
    projectid: str,
    branchid: str,
    artifactid: str,
    background_tasks: BackgroundTasks,
    item: ArtifactIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(artifactid, item.id)
    item.id = artifactid
    org, project, branch = await load_branch(db, orgid, projectid, branchid)
    out = _artifact_to_out((await _create_artifacts(org, project, branch, [item], user, db))[0])
    await emit_event(db, background_tasks, "artifacts-created", [out])
    return out


@router.patch("/branches/{branchid}/artifacts/{artifactid}")
async def update_artifact(
    orgid: str,
    projectid: str,
    branchid: str,
    artifactid: str,
    background_tasks: BackgroundTasks,
    item: ArtifactIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(artifactid, item.id)
    item.id = artifactid
    org, project, branch = await load_branch(db, orgid, projectid, branchid)
    out = _artifact_to_out((await _update_artifacts(org, project, branch, [item], user, db))[0])
    await emit_event(db, background_tasks, "artifacts-updated", [out])
    return out


@router.delete("/branches/{branchid}/artifacts/{artifactid}")
async def delete_artifact(
    orgid: str,
    projectid: str,
    branchid: str,
    artifactid: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org, project, branch = await load_branch(db, orgid, projectid, branchid)
    deleted = await _delete_artifacts(org, project, branch, [artifactid], user, db)
    await emit_event(db, background_tasks, "artifacts-deleted", deleted)
    return deleted[0]


@router.get("/branches/{branchid}/artifacts/{artifactid}/blob")
async def get_artifact_blob(
    orgid: str,
    projectid: str,
    branchid: str,
    artifactid: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Download the blob an artifact points at"""
    org, project, branch = await load_branch(db, orgid, projectid, branchid)
    permissions.read_artifact(user, org, project, branch)
    artifact = await db.get(Artifact, create_id(branch.id, artifactid))
    if artifact is None or artifact.archived:
        raise NotFoundError(f"Artifact [{artifactid}] not found.", "warn")
    if not artifact.location or not artifact.filename:
        raise NotFoundError(f"Artifact [{artifactid}] has no blob.", "warn")

    data = await get_strategy(artifact.strategy).get_blob(org.id, project.id, artifact.location, artifact.filename)
    media_type = mimetypes.guess_type(artifact.filename)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)


# --- Blob endpoints ---

@router.get("/artifacts/list")
async def list_blobs(
    orgid: str,
    projectid: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Every blob stored for the project"""
    org, project = await load_project(db, orgid, projectid)
    permissions.read_blob(user, org, project)
    return await get_strategy().list_blobs(org.id, project.id)


@router.get("/artifacts/blob")
async def get_blob(
    orgid: str,
    projectid: str,
    location: str = Query(...),
    filename: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org, project = await load_project(db, orgid, projectid)
    permissions.read_blob(user, org, project)
    validate_blob_meta(location, filename)
    data = await get_strategy().get_blob(org.id, project.id, location, filename)
    media_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)


@router.post("/artifacts/blob")
async def post_blob(
    orgid: str,
    projectid: str,
    request: Request,
    location: str = Query(...),
    filename: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Store a new blob from the raw request body"""
    org, project = await load_project(db, orgid, projectid)
    permissions.create_blob(user, org, project)
    validate_blob_meta(location, filename)
    data = await _read_body(request)
    await get_strategy().post_blob(org.id, project.id, location, filename, data)
    logger.info("%s stored blob %s/%s in [%s] (%d bytes)", user.id, location, filename, project.id, len(data))
    return _blob_meta(org, project, location, filename)


@router.delete("/artifacts/blob")
async def delete_blob(
    orgid: str,
    projectid: str,
    location: str = Query(...),
    filename: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org, project = await load_project(db, orgid, projectid)
    permissions.delete_blob(user, org, project)
    validate_blob_meta(location, filename)
    await get_strategy().delete_blob(org.id, project.id, location, filename)
    return _blob_meta(org, project, location, filename)
