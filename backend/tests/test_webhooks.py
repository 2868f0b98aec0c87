# tests/test_webhooks.py — Webhook router and trigger tests
import base64

import pytest
from httpx import AsyncClient

import webhook_dispatch
from events import bus
from tests.conftest import get_auth_headers

WEBHOOKS = "/api/webhooks"

OUTGOING = {
    "name": "Notify CI",
    "type": "Outgoing",
    "triggers": ["orgs-created"],
    "response": {"url": "https://ci.example.com/hooks/mbee"},
}

INCOMING = {
    "name": "Sync from CI",
    "type": "Incoming",
    "triggers": ["model-synced"],
    "token": "secret",
    "token_location": "body.token",
}


@pytest.fixture
def sent(monkeypatch):
    """Capture outgoing webhook requests instead of sending them."""
    calls = []

    async def fake_send(webhook_id, response, data=None):
        calls.append({"id": webhook_id, "url": response["url"], "data": data})
        return 200

    monkeypatch.setattr(webhook_dispatch, "send_request", fake_send)
    return calls


async def _create(client, headers, body):
    resp = await client.post(WEBHOOKS, json=[body], headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()[0]


@pytest.mark.asyncio
async def test_create_outgoing_webhook(client: AsyncClient, admin_user):
    data = await _create(client, get_auth_headers(admin_user), OUTGOING)
    assert data["type"] == "Outgoing"
    assert data["reference"] == ""
    assert data["response"] == {
        "url": "https://ci.example.com/hooks/mbee",
        "method": "POST",
        "headers": {"Content-Type": "application/json"},
    }
    assert "token" not in data
    assert data["created_by"] == "admin"


@pytest.mark.asyncio
async def test_create_incoming_webhook(client: AsyncClient, admin_user):
    data = await _create(client, get_auth_headers(admin_user), INCOMING)
    assert data["token_location"] == "body.token"
    assert base64.urlsafe_b64decode(data["encoded_id"]).decode() == data["id"]
    assert data["url"] == f"/api/webhooks/trigger/{data['encoded_id']}"
    assert "token" not in data
    assert "response" not in data


@pytest.mark.asyncio
async def test_create_webhook_validation(client: AsyncClient, admin_user):
    headers = get_auth_headers(admin_user)
    bad = [
        dict(OUTGOING, type="Sideways"),
        dict(OUTGOING, response=None),
        dict(OUTGOING, token="secret"),
        dict(INCOMING, token_location=None),
        dict(INCOMING, response={"url": "https://x.example.com"}),
        dict(OUTGOING, response={"url": "https://x.example.com", "method": "FETCH"}),
        dict(OUTGOING, response={"url": "https://x.example.com", "color": "blue"}),
        dict(OUTGOING, reference="Not An Id"),
        dict(OUTGOING, id="custom-id"),
    ]
    for body in bad:
        resp = await client.post(WEBHOOKS, json=[body], headers=headers)
        assert resp.status_code == 400, body

    resp = await client.post(WEBHOOKS, json=[dict(OUTGOING, reference="ghostorg")], headers=headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_webhook_permissions(client: AsyncClient, admin_user, test_project, test_user):
    headers = get_auth_headers(test_user)
    resp = await client.post(WEBHOOKS, json=[OUTGOING], headers=headers)
    assert resp.status_code == 403
    resp = await client.post(WEBHOOKS, json=[dict(OUTGOING, reference="testorg")], headers=headers)
    assert resp.status_code == 403
    resp = await client.post(WEBHOOKS, json=[dict(OUTGOING, reference="testorg:testproj")], headers=headers)
    assert resp.status_code == 403

    await client.patch(
        "/api/orgs/testorg/projects/testproj",
        json={"permissions": {"testuser": "admin"}},
        headers=get_auth_headers(admin_user),
    )
    resp = await client.post(WEBHOOKS, json=[dict(OUTGOING, reference="testorg:testproj")], headers=headers)
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_list_filters_by_readable_reference(client: AsyncClient, admin_user, test_org, test_user, other_user):
    admin = get_auth_headers(admin_user)
    system = await _create(client, admin, OUTGOING)
    org_hook = await _create(client, admin, dict(OUTGOING, reference="testorg"))

    resp = await client.get(WEBHOOKS, headers=admin)
    assert {w["id"] for w in resp.json()} == {system["id"], org_hook["id"]}

    resp = await client.get(WEBHOOKS, headers=get_auth_headers(test_user))
    assert [w["id"] for w in resp.json()] == [org_hook["id"]]

    resp = await client.get(WEBHOOKS, headers=get_auth_headers(other_user))
    assert resp.json() == []

    resp = await client.get(f"{WEBHOOKS}?reference=testorg", headers=admin)
    assert [w["id"] for w in resp.json()] == [org_hook["id"]]

    resp = await client.get(f"{WEBHOOKS}/{system['id']}", headers=get_auth_headers(test_user))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_list_paginates_after_permission_filter(client: AsyncClient, admin_user, test_org, test_user):
    admin = get_auth_headers(admin_user)
    for name in ("First", "Second", "Third"):
        await _create(client, admin, dict(OUTGOING, name=name))
    org_hook = await _create(client, admin, dict(OUTGOING, reference="testorg"))

    resp = await client.get(f"{WEBHOOKS}?limit=1", headers=get_auth_headers(test_user))
    assert [w["id"] for w in resp.json()] == [org_hook["id"]]
    resp = await client.get(f"{WEBHOOKS}?limit=2", headers=admin)
    assert len(resp.json()) == 2


@pytest.mark.asyncio
async def test_update_webhook(client: AsyncClient, admin_user):
    headers = get_auth_headers(admin_user)
    hook = await _create(client, headers, OUTGOING)
    url = f"{WEBHOOKS}/{hook['id']}"

    resp = await client.patch(url, json={"name": "Renamed", "triggers": ["projects-created"]}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["name"] == "Renamed"
    assert resp.json()["triggers"] == ["projects-created"]

    resp = await client.patch(url, json={"type": "Incoming"}, headers=headers)
    assert resp.status_code == 400
    resp = await client.patch(url, json={"reference": "default"}, headers=headers)
    assert resp.status_code == 400
    resp = await client.patch(url, json={"token": "secret"}, headers=headers)
    assert resp.status_code == 400
    resp = await client.patch(url, json={"id": "other"}, headers=headers)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_delete_webhooks(client: AsyncClient, admin_user):
    headers = get_auth_headers(admin_user)
    first = await _create(client, headers, OUTGOING)
    second = await _create(client, headers, INCOMING)

    resp = await client.delete(f"{WEBHOOKS}/{first['id']}", headers=headers)
    assert resp.json() == first["id"]
    resp = await client.request("DELETE", WEBHOOKS, json=[second["id"]], headers=headers)
    assert resp.json() == [second["id"]]

    resp = await client.get(WEBHOOKS, headers=headers)
    assert resp.json() == []
    resp = await client.delete(f"{WEBHOOKS}/{first['id']}", headers=headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_outgoing_webhook_fires_on_event(client: AsyncClient, admin_user, sent):
    headers = get_auth_headers(admin_user)
    hook = await _create(client, headers, OUTGOING)

    resp = await client.post("/api/orgs/avionics", json={"name": "Avionics"}, headers=headers)
    assert resp.status_code == 200

    assert len(sent) == 1
    assert sent[0]["id"] == hook["id"]
    assert sent[0]["url"] == "https://ci.example.com/hooks/mbee"
    assert [o["id"] for o in sent[0]["data"]] == ["avionics"]


@pytest.mark.asyncio
async def test_trigger_incoming_webhook(client: AsyncClient, admin_user, sent):
    headers = get_auth_headers(admin_user)
    incoming = await _create(client, headers, INCOMING)
    outgoing = await _create(client, headers, dict(OUTGOING, triggers=["model-synced"]))

    received = []
    bus.on("model-synced", received.append)
    try:
        resp = await client.post(incoming["url"], json={"token": "admin:secret", "commit": "abc123"})
    finally:
        bus.off("model-synced", received.append)

    assert resp.status_code == 200
    assert resp.json() == {"triggered": ["model-synced"]}
    assert received == [{"token": "admin:secret", "commit": "abc123"}]
    assert [s["id"] for s in sent] == [outgoing["id"]]


@pytest.mark.asyncio
async def test_trigger_from_header(client: AsyncClient, admin_user):
    hook = await _create(client, get_auth_headers(admin_user), dict(INCOMING, token_location="headers.x-mbee-token"))
    resp = await client.post(hook["url"], headers={"X-MBEE-Token": "admin:secret"})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_trigger_rejections(client: AsyncClient, admin_user):
    headers = get_auth_headers(admin_user)
    hook = await _create(client, headers, INCOMING)

    resp = await client.post(hook["url"], json={"token": "secret"})
    assert resp.status_code == 401
    resp = await client.post(hook["url"], json={})
    assert resp.status_code == 401

    resp = await client.post(f"{WEBHOOKS}/trigger/not-base64!")
    assert resp.status_code == 400
    missing = base64.urlsafe_b64encode(b"no-such-webhook").decode()
    resp = await client.post(f"{WEBHOOKS}/trigger/{missing}", json={})
    assert resp.status_code == 404

    await client.patch(f"{WEBHOOKS}/{hook['id']}", json={"archived": True}, headers=headers)
    resp = await client.post(hook["url"], json={"token": "admin:secret"})
    assert resp.status_code == 403
