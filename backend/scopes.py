# scopes.py — Shared helpers for the MBEE routers
# - find-and-validate lookups for org / project / branch scopes
# - common query options (archived, limit, skip, sort, fields)
# - public-data rendering of the extension fields
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fastapi import Query
from sqlalchemy.ext.asyncio import AsyncSession

from errors import DataFormatError, NotFoundError, PermissionDeniedError
from identifiers import create_id, leaf_id
from models import Organization, Project, Branch, utcnow
from permissions import highest_role, roles_for_level
from validators import validate_permission_level

logger = logging.getLogger("mbee.scopes")

_MODEL_NAMES = {
    Organization: "Organization",
    Project: "Project",
    Branch: "Branch",
}


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================
# LOOKUPS
# ============================================================

async def find_and_validate(db: AsyncSession, model, uid: str, archived: bool = False):
    """Load an org/project/branch, rejecting missing or (unless allowed) archived records."""
    name = _MODEL_NAMES.get(model, model.__name__)
    record = await db.get(model, uid)
    if record is None:
        logger.debug("Find query on %s failed", uid)
        raise NotFoundError(f"The {name} [{leaf_id(uid)}] was not found.", "warn")
    if record.archived and not archived:
        raise PermissionDeniedError(
            f"The {name} [{leaf_id(uid)}] is archived. "
            "It must first be unarchived before performing this operation.", "warn"
        )
    return record


async def load_org(db: AsyncSession, orgid: str, archived: bool = False) -> Organization:
    return await find_and_validate(db, Organization, orgid, archived)


async def load_project(
    db: AsyncSession, orgid: str, projectid: str, archived: bool = False,
) -> Tuple[Organization, Project]:
    org = await load_org(db, orgid, archived)
    project = await find_and_validate(db, Project, create_id(orgid, projectid), archived)
    return org, project


async def load_branch(
    db: AsyncSession, orgid: str, projectid: str, branchid: str, archived: bool = False,
) -> Tuple[Organization, Project, Branch]:
    org, project = await load_project(db, orgid, projectid, archived)
    branch = await find_and_validate(db, Branch, create_id(orgid, projectid, branchid), archived)
    return org, project, branch


# ============================================================
# QUERY OPTIONS
# ============================================================

_SORT_ALIASES = {"username": "id"}


class QueryOptions:
    """Common list options, used as a FastAPI dependency: Depends(QueryOptions)."""

    def __init__(
        self,
        archived: bool = Query(default=False),
        limit: int = Query(default=0, ge=0),
        skip: int = Query(default=0, ge=0),
        sort: Optional[str] = Query(default=None),
        fields: Optional[str] = Query(default=None),
    ):
        self.archived = archived
        self.limit = limit
        self.skip = skip
        self.sort = sort
        self.fields = [f.strip() for f in fields.split(",") if f.strip()] if fields else []

    def apply(self, stmt, model, paginate: bool = True):
        if not self.archived:
            stmt = stmt.where(model.archived == False)  # noqa: E712

        if self.sort:
            descending = self.sort.startswith("-")
            key = self.sort.lstrip("-")
            key = _SORT_ALIASES.get(key, key)
            if key not in model.__table__.columns:
                raise DataFormatError(f"Invalid sort field [{self.sort}].", "warn")
            column = getattr(model, key)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        else:
            stmt = stmt.order_by(model.id.asc())

        if paginate:
            if self.skip:
                stmt = stmt.offset(self.skip)
            if self.limit:
                stmt = stmt.limit(self.limit)
        return stmt

    def page(self, records: List[Any]) -> List[Any]:
        """skip/limit for lists that are filtered after the query runs."""
        end = self.skip + self.limit if self.limit else None
        return records[self.skip:end]

    def select(self, data: Dict[str, Any], id_key: str = "id") -> Dict[str, Any]:
        """Trim public data down to the requested fields (the id is always kept)."""
        if not self.fields:
            return data
        return {k: v for k, v in data.items() if k == id_key or k in self.fields}


# ============================================================
# PUBLIC DATA
# ============================================================

def public_permissions(permissions: Optional[Dict[str, list]]) -> Dict[str, str]:
    return {
        username: role
        for username, role in ((u, highest_role(r)) for u, r in (permissions or {}).items())
        if role
    }


def public_extension(record) -> Dict[str, Any]:
    return {
        "custom": record.custom or {},
        "created_on": iso(record.created_on),
        "created_by": record.created_by,
        "updated_on": iso(record.updated_on),
        "last_modified_by": record.last_modified_by,
        "archived": bool(record.archived),
        "archived_on": iso(record.archived_on),
        "archived_by": record.archived_by,
    }


# ============================================================
# WRITE HELPERS
# ============================================================

def check_unique(ids: Iterable[str], kind: str) -> List[str]:
    ids = list(ids)
    duplicates = sorted({leaf_id(i) for i in ids if ids.count(i) > 1})
    if duplicates:
        raise DataFormatError(f"Multiple objects with the same ID [{', '.join(duplicates)}] exist in the {kind} request.", "warn")
    return ids


def check_body_id(url_id: str, body_id: Optional[str]) -> None:
    if body_id is not None and body_id != url_id:
        raise DataFormatError("ID in the body does not match ID in the params.", "warn")


def stamp_created(record, username: str) -> None:
    record.created_by = username
    record.last_modified_by = username
    if record.archived:
        record.archived_by = username
        record.archived_on = utcnow()


def apply_common_update(record, changes: Dict[str, Any], username: str) -> None:
    """Apply custom (shallow merge) and archived changes and stamp the modifier."""
    if changes.get("custom") is not None:
        merged = dict(record.custom or {})
        merged.update(changes["custom"])
        record.custom = merged

    if changes.get("archived") is not None and bool(changes["archived"]) != bool(record.archived):
        record.archived = bool(changes["archived"])
        record.archived_on = utcnow() if record.archived else None
        record.archived_by = username if record.archived else None

    record.last_modified_by = username
    record.updated_on = utcnow()


def update_permissions(current: Optional[Dict[str, list]], changes: Any, requester: str) -> Tuple[Dict[str, list], List[str]]:
    """Apply {username: level} changes to a permissions map.

    Returns the new map and the usernames whose access was removed. Roles are
    stored cascaded: 'write' becomes ['read', 'write'].
    """
    if not isinstance(changes, dict):
        raise DataFormatError("Permissions must be an object.", "warn")

    updated = dict(current or {})
    removed = []
    for username, level in changes.items():
        validate_permission_level(level)
        if username == requester:
            raise PermissionDeniedError("User cannot update their own permissions.", "warn")
        if level == "remove_all":
            if username in updated:
                del updated[username]
                removed.append(username)
        else:
            updated[username] = roles_for_level(level)
    return updated, removed
