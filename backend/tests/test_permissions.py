# tests/test_permissions.py — Permission evaluator
from types import SimpleNamespace

import pytest

import permissions
from errors import PermissionDeniedError


def _user(username, admin=False):
    return SimpleNamespace(id=username, admin=admin)


ADMIN = _user("root", admin=True)
READER = _user("reader")
WRITER = _user("writer")
OWNER = _user("owner")
OUTSIDER = _user("outsider")

ORG = SimpleNamespace(
    id="org1",
    permissions={
        "reader": ["read"],
        "writer": ["read", "write"],
        "owner": ["read", "write", "admin"],
    },
)


def _project(visibility="private"):
    return SimpleNamespace(
        id="org1:proj1",
        visibility=visibility,
        permissions={"writer": ["read", "write"], "owner": ["read", "write", "admin"]},
    )


def test_admin_short_circuits_every_check():
    project = _project()
    permissions.create_org(ADMIN)
    permissions.delete_org(ADMIN)
    permissions.update_project(ADMIN, ORG, project)
    permissions.delete_element(ADMIN, ORG, project)
    permissions.delete_webhook(ADMIN)


def test_only_admins_manage_users_and_delete_scopes():
    for check in (permissions.create_user, permissions.delete_user, permissions.create_org,
                  permissions.delete_org, permissions.delete_project):
        with pytest.raises(PermissionDeniedError):
            check(OWNER)


def test_users_update_only_themselves():
    permissions.update_user(READER, READER)
    with pytest.raises(PermissionDeniedError):
        permissions.update_user(READER, WRITER)


def test_read_org_requires_membership():
    permissions.read_org(READER, ORG)
    with pytest.raises(PermissionDeniedError):
        permissions.read_org(OUTSIDER, ORG)


def test_update_org_requires_org_admin():
    permissions.update_org(OWNER, ORG)
    with pytest.raises(PermissionDeniedError):
        permissions.update_org(WRITER, ORG)


def test_create_project_requires_org_write():
    permissions.create_project(WRITER, ORG)
    with pytest.raises(PermissionDeniedError):
        permissions.create_project(READER, ORG)


@pytest.mark.parametrize(
    "visibility,user,can_read",
    [
        ("private", READER, False),
        ("private", WRITER, True),
        ("private", OUTSIDER, False),
        ("internal", READER, True),
        ("internal", WRITER, True),
        ("internal", OUTSIDER, False),
    ],
)
def test_project_read_visibility_matrix(visibility, user, can_read):
    project = _project(visibility)
    assert permissions.allowed(permissions.read_project, user, ORG, project) is can_read
    assert permissions.allowed(permissions.read_element, user, ORG, project) is can_read


def test_element_writes_need_project_write():
    project = _project("internal")
    permissions.create_element(WRITER, ORG, project)
    with pytest.raises(PermissionDeniedError):
        permissions.create_element(READER, ORG, project)


def test_write_also_needs_org_membership():
    project = _project()
    project.permissions["outsider"] = ["read", "write"]
    with pytest.raises(PermissionDeniedError):
        permissions.update_branch(OUTSIDER, ORG, project)


def test_update_project_requires_project_admin():
    project = _project()
    permissions.update_project(OWNER, ORG, project)
    with pytest.raises(PermissionDeniedError):
        permissions.update_project(WRITER, ORG, project)


def test_blob_permissions_follow_project_roles():
    project = _project()
    permissions.create_blob(WRITER, ORG, project)
    permissions.read_blob(WRITER, ORG, project)
    with pytest.raises(PermissionDeniedError):
        permissions.delete_blob(READER, ORG, project)


def test_system_webhooks_are_admin_only():
    with pytest.raises(PermissionDeniedError):
        permissions.read_webhook(OWNER)
    with pytest.raises(PermissionDeniedError):
        permissions.create_webhook(OWNER)


def test_allowed_returns_bool():
    assert permissions.allowed(permissions.read_org, READER, ORG) is True
    assert permissions.allowed(permissions.read_org, OUTSIDER, ORG) is False


def test_role_helpers():
    assert permissions.highest_role(["read", "write"]) == "write"
    assert permissions.highest_role([]) is None
    assert permissions.roles_for_level("admin") == ["read", "write", "admin"]
    assert permissions.roles_for_level("remove_all") == []
