# tests/test_elements.py — Element router tests
import gzip
import json

import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers

PROJECT = "/api/orgs/testorg/projects/testproj"
ELEMENTS = f"{PROJECT}/branches/master/elements"


async def _create(client, headers, elements, url=ELEMENTS):
    resp = await client.post(url, json=elements, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_create_element_defaults(client: AsyncClient, test_project, test_user):
    resp = await client.post(f"{ELEMENTS}/block1", json={"name": "Block"}, headers=get_auth_headers(test_user))
    assert resp.status_code == 200
    data = resp.json()
    assert data["id"] == "block1"
    assert data["org"] == "testorg"
    assert data["project"] == "testproj"
    assert data["branch"] == "master"
    assert data["parent"] == "model"
    assert data["source"] is None and data["target"] is None
    assert data["documentation"] == ""
    assert data["created_by"] == "testuser"


@pytest.mark.asyncio
async def test_bulk_create_with_parents_in_same_request(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    data = await _create(client, headers, [
        {"id": "child1", "parent": "parent1"},
        {"id": "parent1", "name": "Parent"},
    ])
    assert [e["id"] for e in data] == ["child1", "parent1"]

    resp = await client.get(f"{ELEMENTS}?parent=parent1", headers=headers)
    assert [e["id"] for e in resp.json()] == ["child1"]


@pytest.mark.asyncio
async def test_gzip_body(client: AsyncClient, test_project, test_user):
    headers = dict(get_auth_headers(test_user), **{"Content-Type": "application/gzip"})
    payload = gzip.compress(json.dumps([{"id": "zip1", "name": "Zipped"}, {"id": "zip2"}]).encode())
    resp = await client.post(ELEMENTS, content=payload, headers=headers)
    assert resp.status_code == 200
    assert [e["id"] for e in resp.json()] == ["zip1", "zip2"]

    resp = await client.post(ELEMENTS, content=b"not gzip at all", headers=headers)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_create_validation(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    resp = await client.post(f"{ELEMENTS}/orphan", json={"parent": "missing"}, headers=headers)
    assert resp.status_code == 404

    resp = await client.post(f"{ELEMENTS}/rel1", json={"source": "model"}, headers=headers)
    assert resp.status_code == 400

    resp = await client.post(f"{ELEMENTS}/Bad", json={}, headers=headers)
    assert resp.status_code == 400

    resp = await client.post(f"{ELEMENTS}/model", json={}, headers=headers)
    assert resp.status_code == 403

    resp = await client.post(f"{ELEMENTS}/self1", json={"parent": "self1"}, headers=headers)
    assert resp.status_code == 400

    resp = await client.post(ELEMENTS, json={"id": "x1"}, headers=headers)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_relationship_and_repoint_on_delete(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    await _create(client, headers, [
        {"id": "a1"},
        {"id": "b1"},
        {"id": "rel1", "source": "a1", "target": "b1", "type": "Association"},
    ])

    resp = await client.delete(f"{ELEMENTS}/b1", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == ["b1"]

    rel = (await client.get(f"{ELEMENTS}/rel1", headers=headers)).json()
    assert rel["source"] == "a1"
    assert rel["target"] == "undefined"


@pytest.mark.asyncio
async def test_delete_cascades_to_subtree(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    await _create(client, headers, [
        {"id": "top"},
        {"id": "mid", "parent": "top"},
        {"id": "leaf", "parent": "mid"},
        {"id": "keep"},
    ])

    resp = await client.request("DELETE", ELEMENTS, json=["top"], headers=headers)
    assert resp.status_code == 200
    assert sorted(resp.json()) == ["leaf", "mid", "top"]

    resp = await client.get(ELEMENTS, headers=headers)
    ids = {e["id"] for e in resp.json()}
    assert "keep" in ids
    assert not ids & {"top", "mid", "leaf"}


@pytest.mark.asyncio
async def test_root_elements_cannot_be_deleted(client: AsyncClient, admin_user, test_project):
    for root in ("model", "__mbee__", "holding_bin", "undefined"):
        resp = await client.delete(f"{ELEMENTS}/{root}", headers=get_auth_headers(admin_user))
        assert resp.status_code == 403


@pytest.mark.asyncio
async def test_subtree(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    await _create(client, headers, [
        {"id": "sys"},
        {"id": "sub1", "parent": "sys"},
        {"id": "sub2", "parent": "sub1"},
        {"id": "other"},
    ])

    resp = await client.get(f"{ELEMENTS}/sys?subtree=true", headers=headers)
    assert resp.status_code == 200
    assert sorted(e["id"] for e in resp.json()) == ["sub1", "sub2", "sys"]

    resp = await client.get(f"{ELEMENTS}?ids=sub1&subtree=true", headers=headers)
    assert sorted(e["id"] for e in resp.json()) == ["sub1", "sub2"]


@pytest.mark.asyncio
async def test_search(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    await _create(client, headers, [
        {"id": "eng", "name": "Engine Block"},
        {"id": "doc1", "name": "Other", "documentation": "Feeds the engine"},
        {"id": "wing", "name": "Wing"},
    ])

    resp = await client.get(f"{ELEMENTS}/search?query=engine", headers=headers)
    assert resp.status_code == 200
    assert sorted(e["id"] for e in resp.json()) == ["doc1", "eng"]

    resp = await client.get(f"{ELEMENTS}/search?query=engine&fields=name", headers=headers)
    assert all(set(e) == {"id", "name"} for e in resp.json())


@pytest.mark.asyncio
async def test_update_element(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    await _create(client, headers, [{"id": "a1", "custom": {"mass": 5}}, {"id": "b1"}])

    resp = await client.patch(
        f"{ELEMENTS}/a1",
        json={"name": "Renamed", "parent": "b1", "documentation": "Docs", "custom": {"unit": "kg"}},
        headers=headers,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["name"] == "Renamed"
    assert data["parent"] == "b1"
    assert data["custom"] == {"mass": 5, "unit": "kg"}

    resp = await client.patch(ELEMENTS, json=[{"id": "a1", "type": "Block"}, {"id": "b1", "type": "Part"}], headers=headers)
    assert [e["type"] for e in resp.json()] == ["Block", "Part"]


@pytest.mark.asyncio
async def test_move_under_own_descendant_rejected(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    await _create(client, headers, [
        {"id": "top"},
        {"id": "mid", "parent": "top"},
        {"id": "low", "parent": "mid"},
    ])
    resp = await client.patch(f"{ELEMENTS}/top", json={"parent": "low"}, headers=headers)
    assert resp.status_code == 400

    resp = await client.patch(f"{ELEMENTS}/top", json={"parent": "top"}, headers=headers)
    assert resp.status_code == 400

    resp = await client.patch(f"{ELEMENTS}/model", json={"parent": "top"}, headers=headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_project_and_branch_immutable(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    await _create(client, headers, [{"id": "a1"}])
    resp = await client.patch(f"{ELEMENTS}/a1", json={"branch": "dev"}, headers=headers)
    assert resp.status_code == 400
    resp = await client.patch(f"{ELEMENTS}/a1", json={"project": "elsewhere"}, headers=headers)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_put_replaces_element(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    await _create(client, headers, [{"id": "a1", "name": "Old", "documentation": "Old docs", "custom": {"k": 1}}])

    resp = await client.put(f"{ELEMENTS}/a1", json={"name": "New"}, headers=headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["name"] == "New"
    assert data["documentation"] == ""
    assert data["custom"] == {}
    assert data["created_by"] == "testuser"

    resp = await client.put(ELEMENTS, json=[{"id": "a1", "name": "Again"}, {"id": "b1", "name": "Fresh"}], headers=headers)
    assert resp.status_code == 200
    assert [e["name"] for e in resp.json()] == ["Again", "Fresh"]


@pytest.mark.asyncio
async def test_put_cannot_create_cycle(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    await _create(client, headers, [{"id": "aa"}, {"id": "bb", "parent": "aa"}])

    resp = await client.put(f"{ELEMENTS}/aa", json={"parent": "bb"}, headers=headers)
    assert resp.status_code == 400
    resp = await client.put(ELEMENTS, json=[{"id": "aa", "parent": "bb"}, {"id": "bb", "parent": "aa"}], headers=headers)
    assert resp.status_code == 400

    resp = await client.get(f"{ELEMENTS}/aa", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["parent"] == "model"
    resp = await client.get(f"{ELEMENTS}/bb", headers=headers)
    assert resp.json()["parent"] == "aa"


@pytest.mark.asyncio
async def test_bulk_create_rejects_cycle(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    resp = await client.post(ELEMENTS, json=[{"id": "xx", "parent": "yy"}, {"id": "yy", "parent": "xx"}], headers=headers)
    assert resp.status_code == 400

    resp = await client.get(f"{ELEMENTS}/xx", headers=headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_tag_branch_is_read_only(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    await _create(client, headers, [{"id": "a1"}])
    await client.post(f"{PROJECT}/branches/v1", json={"name": "Release", "tag": True}, headers=headers)
    tag = f"{PROJECT}/branches/v1/elements"

    resp = await client.get(f"{tag}/a1", headers=headers)
    assert resp.status_code == 200
    resp = await client.post(f"{tag}/b1", json={}, headers=headers)
    assert resp.status_code == 403
    resp = await client.patch(f"{tag}/a1", json={"name": "x"}, headers=headers)
    assert resp.status_code == 403
    resp = await client.delete(f"{tag}/a1", headers=headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_cross_project_relationship(client: AsyncClient, admin_user, test_project, test_user):
    admin = get_auth_headers(admin_user)
    await client.post(
        "/api/orgs/testorg/projects/library",
        json={"name": "Library", "visibility": "internal"},
        headers=admin,
    )
    await client.post(
        "/api/orgs/testorg/projects/library/branches/master/elements/bolt", json={"name": "Bolt"}, headers=admin
    )
    await client.post("/api/orgs/testorg/projects/secret", json={"name": "Secret"}, headers=admin)

    headers = get_auth_headers(test_user)
    await _create(client, headers, [{"id": "frame"}])
    resp = await client.post(
        f"{ELEMENTS}/uses",
        json={"source": "frame", "target": "bolt", "target_namespace": {"org": "testorg", "project": "library"}},
        headers=headers,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["target"] == "bolt"
    assert data["target_namespace"] == {"org": "testorg", "project": "library", "branch": "master"}
    assert "source_namespace" not in data

    resp = await client.post(
        f"{ELEMENTS}/leaks",
        json={"source": "frame", "target": "model", "target_namespace": {"project": "secret"}},
        headers=headers,
    )
    assert resp.status_code == 403

    resp = await client.post(
        f"{ELEMENTS}/abroad",
        json={"source": "frame", "target": "model", "target_namespace": {"org": "default", "project": "x1"}},
        headers=headers,
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_reader_cannot_write_elements(client: AsyncClient, admin_user, test_project, other_user):
    admin = get_auth_headers(admin_user)
    await client.patch("/api/orgs/testorg", json={"permissions": {"otheruser": "read"}}, headers=admin)
    await client.patch(
        "/api/orgs/testorg/projects/testproj", json={"permissions": {"otheruser": "read"}}, headers=admin
    )
    other = get_auth_headers(other_user)

    resp = await client.get(ELEMENTS, headers=other)
    assert resp.status_code == 200
    resp = await client.post(f"{ELEMENTS}/mine", json={}, headers=other)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_archived_elements_hidden(client: AsyncClient, test_project, test_user):
    headers = get_auth_headers(test_user)
    await _create(client, headers, [{"id": "old1"}])
    resp = await client.patch(f"{ELEMENTS}/old1", json={"archived": True}, headers=headers)
    assert resp.json()["archived"] is True

    resp = await client.get(f"{ELEMENTS}/old1", headers=headers)
    assert resp.status_code == 404
    resp = await client.get(f"{ELEMENTS}/old1?archived=true", headers=headers)
    assert resp.status_code == 200
    resp = await client.patch(f"{ELEMENTS}/old1", json={"name": "x"}, headers=headers)
    assert resp.status_code == 403
