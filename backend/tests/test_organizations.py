# tests/test_organizations.py — Organization router tests
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers


@pytest.mark.asyncio
async def test_default_org_is_seeded(client: AsyncClient, admin_user, test_user):
    resp = await client.get("/api/orgs/default", headers=get_auth_headers(test_user))
    assert resp.status_code == 200
    data = resp.json()
    assert data["permissions"]["admin"] == "admin"
    assert data["permissions"]["testuser"] == "write"


@pytest.mark.asyncio
async def test_create_org(client: AsyncClient, admin_user, test_user):
    resp = await client.post(
        "/api/orgs/avionics",
        json={"name": "Avionics", "permissions": {"testuser": "read"}, "custom": {"site": "B12"}},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["id"] == "avionics"
    assert data["permissions"] == {"testuser": "read", "admin": "admin"}
    assert data["custom"] == {"site": "B12"}
    assert data["created_by"] == "admin"


@pytest.mark.asyncio
async def test_create_org_validation(client: AsyncClient, admin_user):
    headers = get_auth_headers(admin_user)
    resp = await client.post("/api/orgs/Bad_Org", json={"name": "Bad"}, headers=headers)
    assert resp.status_code == 400

    resp = await client.post("/api/orgs/ok-org", json={"name": "Ok", "permissions": {"ghost": "read"}}, headers=headers)
    assert resp.status_code == 404

    resp = await client.post(
        "/api/orgs", json=[{"id": "dup", "name": "A"}, {"id": "dup", "name": "B"}], headers=headers
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_duplicate_org_is_forbidden(client: AsyncClient, admin_user, test_org):
    resp = await client.post("/api/orgs/testorg", json={"name": "Again"}, headers=get_auth_headers(admin_user))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_non_admin_cannot_create_org(client: AsyncClient, test_user):
    resp = await client.post("/api/orgs/mine", json={"name": "Mine"}, headers=get_auth_headers(test_user))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_list_only_member_orgs(client: AsyncClient, admin_user, test_org, other_user):
    resp = await client.get("/api/orgs", headers=get_auth_headers(other_user))
    assert resp.status_code == 200
    assert [o["id"] for o in resp.json()] == ["default"]

    resp = await client.get("/api/orgs", headers=get_auth_headers(admin_user))
    assert {o["id"] for o in resp.json()} == {"default", "testorg"}


@pytest.mark.asyncio
async def test_list_paginates_after_permission_filter(client: AsyncClient, admin_user, test_org, test_user):
    resp = await client.post("/api/orgs/aaorg", json={"name": "Hidden"}, headers=get_auth_headers(admin_user))
    assert resp.status_code == 200

    headers = get_auth_headers(test_user)
    resp = await client.get("/api/orgs?limit=1", headers=headers)
    assert [o["id"] for o in resp.json()] == ["default"]
    resp = await client.get("/api/orgs?limit=1&skip=1", headers=headers)
    assert [o["id"] for o in resp.json()] == ["testorg"]
    resp = await client.get("/api/orgs?skip=2", headers=headers)
    assert resp.json() == []


@pytest.mark.asyncio
async def test_non_member_cannot_read_org(client: AsyncClient, test_org, other_user):
    resp = await client.get("/api/orgs/testorg", headers=get_auth_headers(other_user))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_update_org_name_and_permissions(client: AsyncClient, admin_user, test_org, other_user):
    resp = await client.patch(
        "/api/orgs/testorg",
        json={"name": "Renamed", "permissions": {"otheruser": "admin"}},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["name"] == "Renamed"
    assert data["permissions"]["otheruser"] == "admin"

    # otheruser is now an org admin and may update it
    resp = await client.patch("/api/orgs/testorg", json={"name": "Again"}, headers=get_auth_headers(other_user))
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_org_writer_cannot_update_org(client: AsyncClient, test_org, test_user):
    resp = await client.patch("/api/orgs/testorg", json={"name": "Mine"}, headers=get_auth_headers(test_user))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_cannot_change_own_permissions(client: AsyncClient, admin_user, test_org):
    resp = await client.patch(
        "/api/orgs/testorg", json={"permissions": {"admin": "read"}}, headers=get_auth_headers(admin_user)
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_removing_org_member_removes_project_access(client: AsyncClient, admin_user, test_project):
    headers = get_auth_headers(admin_user)
    resp = await client.patch("/api/orgs/testorg", json={"permissions": {"testuser": "remove_all"}}, headers=headers)
    assert resp.status_code == 200
    assert "testuser" not in resp.json()["permissions"]

    project = (await client.get("/api/orgs/testorg/projects/testproj", headers=headers)).json()
    assert "testuser" not in project["permissions"]


@pytest.mark.asyncio
async def test_default_org_is_protected(client: AsyncClient, admin_user):
    headers = get_auth_headers(admin_user)
    resp = await client.patch("/api/orgs/default", json={"archived": True}, headers=headers)
    assert resp.status_code == 403
    resp = await client.delete("/api/orgs/default", headers=headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_put_replaces_org(client: AsyncClient, admin_user, test_org):
    headers = get_auth_headers(admin_user)
    resp = await client.patch("/api/orgs/testorg", json={"custom": {"a": 1, "b": 2}}, headers=headers)
    assert resp.json()["custom"] == {"a": 1, "b": 2}

    resp = await client.put("/api/orgs/testorg", json={"name": "Replaced", "custom": {"c": 3}}, headers=headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["name"] == "Replaced"
    assert data["custom"] == {"c": 3}

    resp = await client.put("/api/orgs/fresh", json={"name": "Fresh"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["id"] == "fresh"


@pytest.mark.asyncio
async def test_custom_is_shallow_merged(client: AsyncClient, admin_user, test_org):
    headers = get_auth_headers(admin_user)
    await client.patch("/api/orgs/testorg", json={"custom": {"a": {"x": 1}, "b": 2}}, headers=headers)
    resp = await client.patch("/api/orgs/testorg", json={"custom": {"a": {"y": 2}}}, headers=headers)
    assert resp.json()["custom"] == {"a": {"y": 2}, "b": 2}


@pytest.mark.asyncio
async def test_archived_org_hidden_and_frozen(client: AsyncClient, admin_user, test_org):
    headers = get_auth_headers(admin_user)
    resp = await client.patch("/api/orgs/testorg", json={"archived": True}, headers=headers)
    assert resp.status_code == 200

    resp = await client.get("/api/orgs/testorg", headers=headers)
    assert resp.status_code == 403
    resp = await client.get("/api/orgs/testorg?archived=true", headers=headers)
    assert resp.status_code == 200

    resp = await client.patch("/api/orgs/testorg", json={"name": "Frozen"}, headers=headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_delete_org_cascades(client: AsyncClient, admin_user, test_project):
    headers = get_auth_headers(admin_user)
    resp = await client.delete("/api/orgs/testorg", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == "testorg"

    resp = await client.get("/api/orgs/testorg", headers=headers)
    assert resp.status_code == 404
    resp = await client.get("/api/projects", headers=headers)
    assert resp.json() == []
