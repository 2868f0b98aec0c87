# permissions.py — Permission evaluator for MBEE actions
# Pure functions over already-fetched records: each check returns None when
# the action is allowed and raises PermissionDeniedError otherwise.
#
# Global admins may do anything. For everyone else the scopes are walked
# outside-in (org -> project) and the role is looked up in the scope's
# permissions map, keyed by username:
#   read   internal project -> org membership, private project -> 'read'
#   write  org membership + 'write' on the owning project
#   admin  'admin' on the scope itself
# Deleting users, orgs and projects is restricted to global admins.

from typing import Any, Callable, Optional

from errors import PermissionDeniedError
from identifiers import leaf_id


def _roles(scope: Any, username: str) -> list:
    return (getattr(scope, "permissions", None) or {}).get(username) or []


def _is_member(scope: Any, username: str) -> bool:
    return username in (getattr(scope, "permissions", None) or {})


def _deny(message: str) -> None:
    raise PermissionDeniedError(message, "warn")


def _require_org_member(user, org, action: str) -> None:
    if not _is_member(org, user.id):
        _deny(f"User does not have permission to {action} in the org [{org.id}].")


def _require_project_role(user, project, role: str, action: str) -> None:
    if role not in _roles(project, user.id):
        _deny(f"User does not have permission to {action} in the project [{leaf_id(project.id)}].")


def _require_project_read(user, org, project, action: str) -> None:
    if project.visibility == "internal":
        _require_org_member(user, org, action)
        return
    _require_project_role(user, project, "read", action)


def _require_project_write(user, org, project, action: str) -> None:
    _require_org_member(user, org, action)
    _require_project_role(user, project, "write", action)


def allowed(check: Callable[..., None], *args) -> bool:
    """Boolean form of any check, used to filter listings."""
    try:
        check(*args)
    except PermissionDeniedError:
        return False
    return True


# ============================================================
# USERS
# ============================================================

def create_user(user) -> None:
    if not user.admin:
        _deny("User does not have permissions to create users.")


def read_user(user) -> None:
    return None


def update_user(user, user_to_update) -> None:
    if not user.admin and user.id != user_to_update.id:
        _deny("User does not have permission to update other users.")


def delete_user(user) -> None:
    if not user.admin:
        _deny("User does not have permission to delete users.")


# ============================================================
# ORGANIZATIONS
# ============================================================

def create_org(user) -> None:
    if not user.admin:
        _deny("User does not have permissions to create orgs.")


def read_org(user, org) -> None:
    if user.admin:
        return
    if not _is_member(org, user.id):
        _deny(f"User does not have permission to find the org [{org.id}].")


def update_org(user, org) -> None:
    if user.admin:
        return
    if "admin" not in _roles(org, user.id):
        _deny(f"User does not have permission to update the org [{org.id}].")


def delete_org(user) -> None:
    if not user.admin:
        _deny("User does not have permission to delete orgs.")


# ============================================================
# PROJECTS
# ============================================================

def create_project(user, org) -> None:
    if user.admin:
        return
    if "write" not in _roles(org, user.id):
        _deny(f"User does not have permission to create projects in the org [{org.id}].")


def read_project(user, org, project) -> None:
    if user.admin:
        return
    _require_project_read(user, org, project, "find projects")


def update_project(user, org, project) -> None:
    if user.admin:
        return
    _require_org_member(user, org, "update projects")
    _require_project_role(user, project, "admin", "update projects")


def delete_project(user, org=None, project=None) -> None:
    if not user.admin:
        _deny("User does not have permission to delete projects.")


# ============================================================
# BRANCHES
# ============================================================

def create_branch(user, org, project, branch=None) -> None:
    if user.admin:
        return
    _require_project_write(user, org, project, "create branches")


def read_branch(user, org, project, branch=None) -> None:
    if user.admin:
        return
    _require_project_read(user, org, project, "find branches")


def update_branch(user, org, project, branch=None) -> None:
    if user.admin:
        return
    _require_project_write(user, org, project, "update branches")


def delete_branch(user, org, project, branch=None) -> None:
    if user.admin:
        return
    _require_project_write(user, org, project, "delete branches")


# ============================================================
# ELEMENTS
# ============================================================

def create_element(user, org, project, branch=None) -> None:
    if user.admin:
        return
    _require_project_write(user, org, project, "create items")


def read_element(user, org, project, branch=None) -> None:
    if user.admin:
        return
    _require_project_read(user, org, project, "find items")


def update_element(user, org, project, branch=None) -> None:
    if user.admin:
        return
    _require_project_write(user, org, project, "update items")


def delete_element(user, org, project, branch=None) -> None:
    if user.admin:
        return
    _require_project_write(user, org, project, "delete items")


# ============================================================
# ARTIFACTS & BLOBS
# ============================================================

def create_artifact(user, org, project, branch=None) -> None:
    if user.admin:
        return
    _require_project_write(user, org, project, "create artifacts")


def read_artifact(user, org, project, branch=None) -> None:
    if user.admin:
        return
    _require_project_read(user, org, project, "find artifacts")


def update_artifact(user, org, project, branch=None) -> None:
    if user.admin:
        return
    _require_project_write(user, org, project, "update artifacts")


def delete_artifact(user, org, project, branch=None) -> None:
    if user.admin:
        return
    _require_project_write(user, org, project, "delete artifacts")


def create_blob(user, org, project) -> None:
    if user.admin:
        return
    _require_project_write(user, org, project, "create blobs")


def read_blob(user, org, project) -> None:
    if user.admin:
        return
    _require_project_read(user, org, project, "get blobs")


def delete_blob(user, org, project) -> None:
    if user.admin:
        return
    _require_project_write(user, org, project, "delete blobs")


# ============================================================
# WEBHOOKS
# ============================================================

def _require_webhook_admin(user, org, project, action: str) -> None:
    if user.admin:
        return
    if org is None:
        _deny(f"User does not have permission to {action} system-wide webhooks.")
    if project is None:
        if "admin" not in _roles(org, user.id):
            _deny(f"User does not have permission to {action} webhooks on the org [{org.id}].")
        return
    _require_org_member(user, org, f"{action} webhooks")
    _require_project_role(user, project, "admin", f"{action} webhooks")


def create_webhook(user, org=None, project=None, branch=None) -> None:
    _require_webhook_admin(user, org, project, "create")


def read_webhook(user, org=None, project=None, branch=None) -> None:
    if user.admin:
        return
    if org is None:
        _deny("User does not have permission to find system-wide webhooks.")
    if project is None:
        read_org(user, org)
        return
    _require_project_read(user, org, project, "find webhooks")


def update_webhook(user, org=None, project=None, branch=None) -> None:
    _require_webhook_admin(user, org, project, "update")


def delete_webhook(user, org=None, project=None, branch=None) -> None:
    _require_webhook_admin(user, org, project, "delete")


def highest_role(roles: Optional[list]) -> Optional[str]:
    """The strongest role in a cascading role list ('admin' > 'write' > 'read')."""
    for role in ("admin", "write", "read"):
        if role in (roles or []):
            return role
    return None


def roles_for_level(level: str) -> list:
    """Expand a single permission level into its cascading role list."""
    return {
        "read": ["read"],
        "write": ["read", "write"],
        "admin": ["read", "write", "admin"],
    }.get(level, [])
