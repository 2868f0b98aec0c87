# routers/elements.py — Element management
# Elements form a tree through `parent` (rooted at 'model') and a graph
# through `source` / `target`. Relationships may point into another internal
# project of the same org via source_namespace / target_namespace.
import gzip
import json
import logging
from typing import Dict, Iterable, List, Optional, Set

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query, Request
from pydantic import BaseModel, TypeAdapter, ValidationError as PydanticValidationError
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

import permissions
import validators
from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import DataFormatError, NotFoundError, OperationError, PermissionDeniedError
from identifiers import create_id, leaf_id, parent_id, parse_id
from models import Organization, Project, Branch, Element, Artifact, ROOT_ELEMENTS, MASTER_BRANCH
from scopes import (
    QueryOptions, apply_common_update, check_body_id, check_unique, load_branch,
    public_extension, stamp_created,
)
from webhook_dispatch import emit_event

logger = logging.getLogger("mbee.elements")

router = APIRouter(
    prefix="/api/orgs/{orgid}/projects/{projectid}/branches/{branchid}/elements",
    tags=["Elements"],
)


# --- Schemas ---

class Namespace(BaseModel):
    org: Optional[str] = None
    project: str
    branch: Optional[str] = None


class ElementIn(BaseModel):
    id: Optional[str] = None
    project: Optional[str] = None
    branch: Optional[str] = None
    name: Optional[str] = None
    type: Optional[str] = None
    documentation: Optional[str] = None
    parent: Optional[str] = None
    source: Optional[str] = None
    target: Optional[str] = None
    source_namespace: Optional[Namespace] = None
    target_namespace: Optional[Namespace] = None
    artifact: Optional[str] = None
    custom: Optional[dict] = None
    archived: Optional[bool] = None


_element_list = TypeAdapter(List[ElementIn])


class Scope:
    """The org / project / branch an element request runs in."""

    def __init__(self, org: Organization, project: Project, branch: Branch):
        self.org = org
        self.project = project
        self.branch = branch

    def element_id(self, leaf: str) -> str:
        return create_id(self.branch.id, leaf)


# --- Helpers ---

def _namespace_of(uid: Optional[str], branch_id: str) -> Optional[dict]:
    if not uid or parent_id(uid) == branch_id:
        return None
    org_id, project_id, branch = parse_id(uid)[:3]
    return {"org": org_id, "project": project_id, "branch": branch}


def _element_to_out(element: Element) -> dict:
    org_id, project_id, branch_id = parse_id(element.id)[:3]
    branch_full = parent_id(element.id)
    out = {
        "id": leaf_id(element.id),
        "org": org_id,
        "project": project_id,
        "branch": branch_id,
        "name": element.name,
        "type": element.type,
        "documentation": element.documentation,
        "parent": leaf_id(element.parent) if element.parent else None,
        "source": leaf_id(element.source) if element.source else None,
        "target": leaf_id(element.target) if element.target else None,
        "artifact": leaf_id(element.artifact) if element.artifact else None,
    }
    source_ns = _namespace_of(element.source, branch_full)
    target_ns = _namespace_of(element.target, branch_full)
    if source_ns:
        out["source_namespace"] = source_ns
    if target_ns:
        out["target_namespace"] = target_ns
    out.update(public_extension(element))
    return out


async def _parse_items(request: Request) -> List[ElementIn]:
    """Read a JSON array body, gunzipping it first for application/gzip."""
    raw = await request.body()
    try:
        if request.headers.get("content-type", "").startswith("application/gzip"):
            raw = gzip.decompress(raw)
        data = json.loads(raw or b"null")
    except (OSError, EOFError, ValueError):
        raise DataFormatError("Could not parse the request body.", "warn")

    if not isinstance(data, list):
        raise DataFormatError("Request body must be an array of elements.", "warn")
    try:
        return _element_list.validate_python(data)
    except PydanticValidationError as e:
        raise DataFormatError(f"Invalid element data: {e.errors()[0].get('msg', 'bad field')}.", "warn")


def _check_writable(scope: Scope) -> None:
    if scope.branch.tag:
        raise OperationError(
            f"[{leaf_id(scope.branch.id)}] is a tag and does not allow elements to be created, "
            "updated, or deleted.", "warn"
        )


async def _existing_ids(db: AsyncSession, ids: Iterable[str]) -> Set[str]:
    ids = list(ids)
    if not ids:
        return set()
    result = await db.execute(select(Element.id).where(Element.id.in_(ids)))
    return set(result.scalars().all())


async def _resolve_reference(
    db: AsyncSession, scope: Scope, ref: str, namespace: Optional[Namespace],
) -> str:
    """Full id of a source/target, following a namespace into another project."""
    if namespace is None:
        return scope.element_id(ref)
    if namespace.org not in (None, scope.org.id):
        raise DataFormatError(f"Cannot reference elements outside of the org [{scope.org.id}].", "warn")

    branch = namespace.branch or MASTER_BRANCH
    if namespace.project == leaf_id(scope.project.id):
        return create_id(scope.project.id, branch, ref)

    other = await db.get(Project, create_id(scope.org.id, namespace.project))
    if other is None:
        raise NotFoundError(f"The project [{namespace.project}] was not found.", "warn")
    if other.visibility != "internal":
        raise PermissionDeniedError(
            f"The project [{namespace.project}] is not an internal project. "
            "Elements cannot reference elements in private projects.", "warn"
        )
    return create_id(other.id, branch, ref)


async def _resolve_relationship(db: AsyncSession, scope: Scope, item: ElementIn) -> tuple:
    if (item.source is None) != (item.target is None):
        raise DataFormatError("Element source and target must be provided together.", "warn")
    if item.source is None:
        return None, None
    source = await _resolve_reference(db, scope, item.source, item.source_namespace)
    target = await _resolve_reference(db, scope, item.target, item.target_namespace)
    return source, target


async def _check_references_exist(db: AsyncSession, refs: Dict[str, str], pending: Set[str]) -> None:
    """refs maps full id -> label for the error message."""
    wanted = [r for r in refs if r not in pending]
    found = await _existing_ids(db, wanted)
    missing = [refs[r] for r in wanted if r not in found]
    if missing:
        raise NotFoundError(f"The following referenced elements were not found: [{', '.join(missing)}].", "warn")


async def _parent_of(db: AsyncSession, uid: str, pending: Dict[str, Optional[str]]) -> Optional[str]:
    if uid in pending:
        return pending[uid]
    element = await db.get(Element, uid)
    return element.parent if element else None


async def _check_no_cycles(db: AsyncSession, pending: Dict[str, Optional[str]]) -> None:
    """Reject parent changes that would put an element under its own subtree."""
    for element_id, new_parent in pending.items():
        seen = set()
        current = new_parent
        while current is not None and current not in seen:
            if current == element_id:
                raise DataFormatError(
                    f"A circular reference exists in the model: element [{leaf_id(element_id)}] "
                    "cannot be moved under its own subtree.", "warn"
                )
            seen.add(current)
            current = await _parent_of(db, current, pending)


async def collect_subtree(db: AsyncSession, root_ids: List[str], include_archived: bool = True) -> List[str]:
    """Ids of the given elements and all of their descendants, breadth first."""
    ordered = list(root_ids)
    seen = set(root_ids)
    frontier = list(root_ids)
    while frontier:
        stmt = select(Element.id).where(Element.parent.in_(frontier))
        if not include_archived:
            stmt = stmt.where(Element.archived == False)  # noqa: E712
        result = await db.execute(stmt)
        frontier = [uid for uid in result.scalars().all() if uid not in seen]
        seen.update(frontier)
        ordered.extend(frontier)
    return ordered


def _validate_item(scope: Scope, item: ElementIn) -> None:
    if item.project is not None and item.project != leaf_id(scope.project.id):
        validators.ensure_unchanged("project", leaf_id(scope.project.id), item.project)
    if item.branch is not None and item.branch != leaf_id(scope.branch.id):
        validators.ensure_unchanged("branch", leaf_id(scope.branch.id), item.branch)
    if item.custom is not None:
        validators.validate_custom(item.custom)


async def _create_elements(
    scope: Scope, items: List[ElementIn], user: CurrentUser, db: AsyncSession,
    preserved: Optional[Dict[str, Element]] = None,
) -> List[Element]:
    permissions.create_element(user, scope.org, scope.project, scope.branch)
    _check_writable(scope)
    if not items:
        raise DataFormatError("No elements provided.", "warn")

    for item in items:
        if item.id is None:
            raise DataFormatError("Element id is required.", "warn")
        validators.validate_element_id(scope.element_id(item.id))
        _validate_item(scope, item)
    ids = check_unique([scope.element_id(i.id) for i in items], "elements")

    existing = await _existing_ids(db, ids)
    if existing:
        raise PermissionDeniedError(
            f"Elements with the following IDs already exist [{', '.join(sorted(leaf_id(e) for e in existing))}].",
            "warn",
        )

    pending = set(ids)
    refs: Dict[str, str] = {}
    parents: Dict[str, Optional[str]] = {}
    created = []
    for item in items:
        element_id = scope.element_id(item.id)
        parent = scope.element_id(item.parent or "model")
        if parent == element_id:
            raise DataFormatError(f"Element [{item.id}] cannot be its own parent.", "warn")
        parents[element_id] = parent
        refs[parent] = item.parent or "model"
        source, target = await _resolve_relationship(db, scope, item)
        if source:
            refs[source] = item.source
            refs[target] = item.target
        artifact = None
        if item.artifact:
            artifact = scope.element_id(item.artifact)
            if await db.get(Artifact, artifact) is None:
                raise NotFoundError(f"The artifact [{item.artifact}] was not found.", "warn")

        element = Element(
            id=element_id,
            project=scope.project.id,
            branch=scope.branch.id,
            name=item.name or "",
            type=item.type or "",
            documentation=item.documentation or "",
            parent=parent,
            source=source,
            target=target,
            artifact=artifact,
            custom=item.custom or {},
            archived=bool(item.archived),
        )
        stamp_created(element, user.id)
        previous = (preserved or {}).get(element_id)
        if previous is not None:
            element.created_by = previous.created_by
            element.created_on = previous.created_on
        created.append(element)

    await _check_references_exist(db, refs, pending)
    await _check_no_cycles(db, parents)
    db.add_all(created)
    await db.commit()
    logger.info("%s created %d element(s) on [%s]", user.id, len(created), scope.branch.id)
    return created


async def _update_elements(
    scope: Scope, items: List[ElementIn], user: CurrentUser, db: AsyncSession,
) -> List[Element]:
    permissions.update_element(user, scope.org, scope.project, scope.branch)
    _check_writable(scope)
    if not items:
        raise DataFormatError("No elements provided.", "warn")
    if any(i.id is None for i in items):
        raise DataFormatError("Element id is required to update an element.", "warn")
    ids = check_unique([scope.element_id(i.id) for i in items], "elements")

    result = await db.execute(select(Element).where(Element.id.in_(ids)))
    found = {e.id: e for e in result.scalars().all()}
    missing = [leaf_id(i) for i in ids if i not in found]
    if missing:
        raise NotFoundError(f"The following elements were not found: [{', '.join(missing)}].", "warn")

    parent_changes: Dict[str, Optional[str]] = {}
    refs: Dict[str, str] = {}
    for item in items:
        element = found[scope.element_id(item.id)]
        _validate_item(scope, item)
        if element.archived and item.archived is not False:
            raise OperationError(
                f"Element [{item.id}] is archived. It must first be unarchived before performing this operation.",
                "warn",
            )

        if item.parent is not None:
            if leaf_id(element.id) in ROOT_ELEMENTS:
                raise OperationError(f"The parent of the root element [{item.id}] cannot be changed.", "warn")
            parent = scope.element_id(item.parent)
            if parent == element.id:
                raise DataFormatError(f"Element [{item.id}] cannot be its own parent.", "warn")
            refs[parent] = item.parent
            parent_changes[element.id] = parent

        if item.source is not None or item.target is not None:
            source = element.source
            target = element.target
            if item.source is not None:
                source = await _resolve_reference(db, scope, item.source, item.source_namespace)
                refs[source] = item.source
            if item.target is not None:
                target = await _resolve_reference(db, scope, item.target, item.target_namespace)
                refs[target] = item.target
            if source is None or target is None:
                raise DataFormatError("Element source and target must be provided together.", "warn")
            element.source, element.target = source, target

        if item.artifact is not None:
            artifact = scope.element_id(item.artifact) if item.artifact else None
            if artifact and await db.get(Artifact, artifact) is None:
                raise NotFoundError(f"The artifact [{item.artifact}] was not found.", "warn")
            element.artifact = artifact

        for field in ("name", "type", "documentation"):
            value = getattr(item, field)
            if value is not None:
                setattr(element, field, value)
        apply_common_update(element, item.model_dump(), user.id)

    await _check_references_exist(db, refs, set(found))
    await _check_no_cycles(db, parent_changes)
    for element_id, parent in parent_changes.items():
        found[element_id].parent = parent

    await db.commit()
    return [found[i] for i in ids]


async def _replace_elements(
    scope: Scope, items: List[ElementIn], user: CurrentUser, db: AsyncSession,
) -> List[Element]:
    """PUT: create missing elements and replace existing ones wholesale."""
    permissions.update_element(user, scope.org, scope.project, scope.branch)
    _check_writable(scope)
    if any(i.id is None for i in items):
        raise DataFormatError("Element id is required.", "warn")
    ids = check_unique([scope.element_id(i.id) for i in items], "elements")

    if any(leaf_id(i) in ROOT_ELEMENTS for i in ids):
        raise PermissionDeniedError("Root elements cannot be replaced.", "warn")

    result = await db.execute(select(Element).where(Element.id.in_(ids)))
    preserved = {e.id: e for e in result.scalars().all()}
    for element in preserved.values():
        await db.delete(element)
    await db.flush()
    return await _create_elements(scope, items, user, db, preserved)


async def _delete_elements(
    scope: Scope, ids: List[str], user: CurrentUser, db: AsyncSession,
) -> List[str]:
    permissions.delete_element(user, scope.org, scope.project, scope.branch)
    _check_writable(scope)
    if not ids or not all(isinstance(i, str) for i in ids):
        raise DataFormatError("Request body must be an array of element ids.", "warn")
    root = [i for i in ids if i in ROOT_ELEMENTS]
    if root:
        raise PermissionDeniedError(f"User cannot delete the root elements [{', '.join(root)}].", "warn")
    full_ids = check_unique([scope.element_id(i) for i in ids], "elements")

    existing = await _existing_ids(db, full_ids)
    found = [i for i in full_ids if i in existing]
    if not found:
        raise NotFoundError(f"The following elements were not found: [{', '.join(ids)}].", "warn")

    doomed = await collect_subtree(db, found)
    await db.execute(delete(Element).where(Element.id.in_(doomed)))

    # Relationships that pointed at a deleted element now point at 'undefined'
    undefined = scope.element_id("undefined")
    await db.execute(update(Element).where(Element.source.in_(doomed)).values(source=undefined))
    await db.execute(update(Element).where(Element.target.in_(doomed)).values(target=undefined))

    await db.commit()
    logger.info("%s deleted %d element(s) on [%s]", user.id, len(doomed), scope.branch.id)
    return [leaf_id(i) for i in doomed]


async def _load_scope(db: AsyncSession, orgid: str, projectid: str, branchid: str, archived: bool = False) -> Scope:
    org, project, branch = await load_branch(db, orgid, projectid, branchid, archived)
    return Scope(org, project, branch)


# --- Endpoints ---

@router.get("")
async def list_elements(
    orgid: str,
    projectid: str,
    branchid: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
    ids: Optional[str] = Query(default=None),
    subtree: bool = Query(default=False),
    parent: Optional[str] = Query(default=None),
    type: Optional[str] = Query(default=None),
    name: Optional[str] = Query(default=None),
):
    scope = await _load_scope(db, orgid, projectid, branchid, archived=options.archived)
    permissions.read_element(user, scope.org, scope.project, scope.branch)

    stmt = select(Element).where(Element.branch == scope.branch.id)
    if ids:
        wanted = [scope.element_id(i.strip()) for i in ids.split(",") if i.strip()]
        if subtree:
            wanted = await collect_subtree(db, wanted, include_archived=options.archived)
        stmt = stmt.where(Element.id.in_(wanted))
    if parent is not None:
        stmt = stmt.where(Element.parent == scope.element_id(parent))
    if type is not None:
        stmt = stmt.where(Element.type == type)
    if name is not None:
        stmt = stmt.where(Element.name == name)
    result = await db.execute(options.apply(stmt, Element))
    return [options.select(_element_to_out(e)) for e in result.scalars().all()]


@router.post("")
async def create_elements(
    orgid: str,
    projectid: str,
    branchid: str,
    request: Request,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create elements from a JSON (or gzipped JSON) array"""
    scope = await _load_scope(db, orgid, projectid, branchid)
    items = await _parse_items(request)
    out = [_element_to_out(e) for e in await _create_elements(scope, items, user, db)]
    await emit_event(db, background_tasks, "elements-created", out)
    return out


@router.patch("")
async def update_elements(
    orgid: str,
    projectid: str,
    branchid: str,
    request: Request,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    scope = await _load_scope(db, orgid, projectid, branchid)
    items = await _parse_items(request)
    out = [_element_to_out(e) for e in await _update_elements(scope, items, user, db)]
    await emit_event(db, background_tasks, "elements-updated", out)
    return out


@router.put("")
async def create_or_replace_elements(
    orgid: str,
    projectid: str,
    branchid: str,
    request: Request,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    scope = await _load_scope(db, orgid, projectid, branchid)
    items = await _parse_items(request)
    out = [_element_to_out(e) for e in await _replace_elements(scope, items, user, db)]
    await emit_event(db, background_tasks, "elements-replaced", out)
    return out


@router.delete("")
async def delete_elements(
    orgid: str,
    projectid: str,
    branchid: str,
    background_tasks: BackgroundTasks,
    ids: List[str] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    scope = await _load_scope(db, orgid, projectid, branchid)
    deleted = await _delete_elements(scope, ids, user, db)
    await emit_event(db, background_tasks, "elements-deleted", deleted)
    return deleted


@router.get("/search")
async def search_elements(
    orgid: str,
    projectid: str,
    branchid: str,
    query: str = Query(..., min_length=1),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
):
    """Case-insensitive search over element names and documentation"""
    scope = await _load_scope(db, orgid, projectid, branchid, archived=options.archived)
    permissions.read_element(user, scope.org, scope.project, scope.branch)

    pattern = f"%{query}%"
    stmt = select(Element).where(
        Element.branch == scope.branch.id,
        or_(Element.name.ilike(pattern), Element.documentation.ilike(pattern)),
    )
    result = await db.execute(options.apply(stmt, Element))
    return [options.select(_element_to_out(e)) for e in result.scalars().all()]


@router.get("/{elementid}")
async def get_element(
    orgid: str,
    projectid: str,
    branchid: str,
    elementid: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
    subtree: bool = Query(default=False),
):
    """One element, or with ?subtree=true the element and all of its descendants"""
    scope = await _load_scope(db, orgid, projectid, branchid, archived=options.archived)
    permissions.read_element(user, scope.org, scope.project, scope.branch)

    element = await db.get(Element, scope.element_id(elementid))
    if element is None or (element.archived and not options.archived):
        raise NotFoundError(f"Element [{elementid}] not found.", "warn")
    if not subtree:
        return options.select(_element_to_out(element))

    ids = await collect_subtree(db, [element.id], include_archived=options.archived)
    result = await db.execute(options.apply(select(Element).where(Element.id.in_(ids)), Element))
    return [options.select(_element_to_out(e)) for e in result.scalars().all()]


@router.post("/{elementid}")
async def create_element(
    orgid: str,
    projectid: str,
    branchid: str,
    elementid: str,
    background_tasks: BackgroundTasks,
    item: ElementIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(elementid, item.id)
    item.id = elementid
    scope = await _load_scope(db, orgid, projectid, branchid)
    out = _element_to_out((await _create_elements(scope, [item], user, db))[0])
    await emit_event(db, background_tasks, "elements-created", [out])
    return out


@router.put("/{elementid}")
async def create_or_replace_element(
    orgid: str,
    projectid: str,
    branchid: str,
    elementid: str,
    background_tasks: BackgroundTasks,
    item: ElementIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(elementid, item.id)
    item.id = elementid
    scope = await _load_scope(db, orgid, projectid, branchid)
    out = _element_to_out((await _replace_elements(scope, [item], user, db))[0])
    await emit_event(db, background_tasks, "elements-replaced", [out])
    return out


@router.patch("/{elementid}")
async def update_element(
    orgid: str,
    projectid: str,
    branchid: str,
    elementid: str,
    background_tasks: BackgroundTasks,
    item: ElementIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(elementid, item.id)
    item.id = elementid
    scope = await _load_scope(db, orgid, projectid, branchid)
    out = _element_to_out((await _update_elements(scope, [item], user, db))[0])
    await emit_event(db, background_tasks, "elements-updated", [out])
    return out


@router.delete("/{elementid}")
async def delete_element(
    orgid: str,
    projectid: str,
    branchid: str,
    elementid: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    scope = await _load_scope(db, orgid, projectid, branchid)
    deleted = await _delete_elements(scope, [elementid], user, db)
    await emit_event(db, background_tasks, "elements-deleted", deleted)
    return deleted
