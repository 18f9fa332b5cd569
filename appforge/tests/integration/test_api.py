from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from appforge.apps.api.main import create_app
from appforge.tests.utils.auth import auth_headers, create_test_tenant, signup_test_user


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_health_uses_success_envelope() -> None:
    async with _client() as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})

    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_missing_or_unknown_app_header() -> None:
    async with _client() as client:
        missing = await client.get("/v1/data/tasks")
        unknown = await client.get("/v1/data/tasks", headers={"X-App-Id": "app-missing"})

    assert missing.status_code == 422
    assert missing.json()["error"]["code"] == "VALIDATION_ERROR"
    assert unknown.status_code == 404
    assert unknown.json()["error"] == {"code": "NOT_FOUND", "message": "App not found"}


@pytest.mark.asyncio
async def test_signup_signin_and_me() -> None:
    tenant_id = await create_test_tenant()
    credentials = {"email": "kim@appforge.dev", "password": "kim-password"}

    async with _client() as client:
        signup = await client.post("/v1/auth/signup", json=credentials, headers=auth_headers(tenant_id))
        signin = await client.post("/v1/auth/signin", json=credentials, headers=auth_headers(tenant_id))
        token = signin.json()["data"]["token"]
        me = await client.get("/v1/auth/me", headers=auth_headers(tenant_id, token))
        duplicate = await client.post("/v1/auth/signup", json=credentials, headers=auth_headers(tenant_id))

    assert signup.status_code == 201
    assert signup.json()["data"]["user"]["role"] == "admin"
    assert signin.status_code == 200
    assert me.status_code == 200
    assert me.json()["data"]["email"] == "kim@appforge.dev"
    assert "password_hash" not in me.json()["data"]
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "CONFLICT"


@pytest.mark.asyncio
async def test_auth_errors_map_to_401() -> None:
    tenant_id = await create_test_tenant()
    other_tenant = await create_test_tenant()
    _, foreign_token = await signup_test_user(tenant_id=other_tenant)
    await signup_test_user(tenant_id=tenant_id, email="lee@appforge.dev")

    async with _client() as client:
        anonymous = await client.get("/v1/auth/me", headers=auth_headers(tenant_id))
        wrong_password = await client.post(
            "/v1/auth/signin",
            json={"email": "lee@appforge.dev", "password": "nope-nope"},
            headers=auth_headers(tenant_id),
        )
        garbage = await client.get("/v1/auth/me", headers=auth_headers(tenant_id, "not.a.jwt"))
        foreign = await client.get("/v1/auth/me", headers=auth_headers(tenant_id, foreign_token))
        malformed = await client.get(
            "/v1/auth/me", headers={"X-App-Id": tenant_id, "Authorization": "Token abc"}
        )

    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["code"] == "AUTH_REQUIRED"
    for response in (wrong_password, garbage, foreign, malformed):
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_INVALID"


@pytest.mark.asyncio
async def test_item_crud_over_http() -> None:
    tenant_id = await create_test_tenant()
    _, token = await signup_test_user(tenant_id=tenant_id)
    headers = auth_headers(tenant_id, token)

    async with _client() as client:
        created = await client.post(
            "/v1/data/tasks", json={"data": {"title": "Write docs", "status": "todo"}}, headers=headers
        )
        item_id = created.json()["data"]["id"]
        await client.post("/v1/data/tasks", json={"data": {"title": "Ship", "status": "done"}}, headers=headers)
        filtered = await client.get("/v1/data/tasks", params={"status": "todo"}, headers=headers)
        patched = await client.patch(
            f"/v1/data/tasks/{item_id}", json={"data": {"status": "done"}}, headers=headers
        )
        count = await client.get("/v1/data/tasks/count", headers=headers)
        deleted = await client.delete(f"/v1/data/tasks/{item_id}", headers=headers)
        missing = await client.get(f"/v1/data/tasks/{item_id}", headers=headers)

    assert created.status_code == 201
    listing = filtered.json()["data"]
    assert [item["data"]["title"] for item in listing["items"]] == ["Write docs"]
    assert listing["hasMore"] is False
    assert patched.json()["data"]["data"] == {"title": "Write docs", "status": "done"}
    assert count.json()["data"] == {"count": 2}
    assert deleted.json()["data"] == {"deleted": True, "id": item_id}
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_profile_update_requires_a_valid_avatar_url() -> None:
    tenant_id = await create_test_tenant()
    _, token = await signup_test_user(tenant_id=tenant_id)
    headers = auth_headers(tenant_id, token)

    async with _client() as client:
        rejected = await client.patch("/v1/auth/me", json={"avatar_url": "not a url"}, headers=headers)
        accepted = await client.patch(
            "/v1/auth/me", json={"avatar_url": "https://cdn.appforge.dev/a.png"}, headers=headers
        )

    assert rejected.status_code == 422
    assert rejected.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert accepted.status_code == 200
    assert accepted.json()["data"]["avatar_url"] == "https://cdn.appforge.dev/a.png"


@pytest.mark.asyncio
async def test_empty_data_object_is_rejected_on_create_and_update() -> None:
    tenant_id = await create_test_tenant()
    _, token = await signup_test_user(tenant_id=tenant_id)
    headers = auth_headers(tenant_id, token)

    async with _client() as client:
        empty_create = await client.post("/v1/data/tasks", json={"data": {}}, headers=headers)
        created = await client.post("/v1/data/tasks", json={"data": {"title": "Keep"}}, headers=headers)
        item_id = created.json()["data"]["id"]
        empty_update = await client.patch(f"/v1/data/tasks/{item_id}", json={"data": {}}, headers=headers)
        count = await client.get("/v1/data/tasks/count", headers=headers)

    assert empty_create.status_code == 422
    assert empty_create.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert empty_update.status_code == 422
    assert count.json()["data"] == {"count": 1}


@pytest.mark.asyncio
async def test_guest_can_write_open_collection() -> None:
    tenant_id = await create_test_tenant()

    async with _client() as client:
        created = await client.post(
            "/v1/data/guestbook", json={"data": {"msg": "hi"}}, headers=auth_headers(tenant_id)
        )

    assert created.status_code == 201
    assert created.json()["data"]["owner_id"] is None


@pytest.mark.asyncio
async def test_schema_violations_return_422_with_details() -> None:
    tenant_id = await create_test_tenant()
    _, admin_token = await signup_test_user(tenant_id=tenant_id)
    headers = auth_headers(tenant_id, admin_token)
    schema = {
        "schema": [
            {"name": "title", "type": "text", "required": True, "maxLength": 10},
            {"name": "priority", "type": "number", "min": 1, "max": 5},
        ],
        "settings": {"ownerWriteOnly": True},
    }

    async with _client() as client:
        put = await client.put("/v1/data/_collections/tasks", json=schema, headers=headers)
        bad = await client.post("/v1/data/tasks", json={"data": {"priority": 9}}, headers=headers)
        not_object = await client.post("/v1/data/tasks", json={"data": [1, 2]}, headers=headers)
        listed = await client.get("/v1/data/_collections", headers=headers)

    assert put.status_code == 200
    collection = put.json()["data"]
    assert collection["schema"][0]["maxLength"] == 10
    assert collection["settings"]["ownerWriteOnly"] is True

    assert bad.status_code == 422
    error = bad.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert {v["field"] for v in error["details"]["violations"]} == {"title", "priority"}
    assert not_object.status_code == 422
    assert [c["name"] for c in listed.json()["data"]] == ["tasks"]


@pytest.mark.asyncio
async def test_admin_only_data_routes_reject_users() -> None:
    tenant_id = await create_test_tenant()
    await signup_test_user(tenant_id=tenant_id)
    _, user_token = await signup_test_user(tenant_id=tenant_id)
    headers = auth_headers(tenant_id, user_token)

    async with _client() as client:
        put = await client.put("/v1/data/_collections/tasks", json={"schema": []}, headers=headers)
        bulk = await client.post("/v1/data/tasks/_bulk-delete", json={"ids": ["x"]}, headers=headers)
        stats = await client.get("/v1/data/_stats", headers=headers)
        anonymous_collections = await client.get("/v1/data/_collections", headers=auth_headers(tenant_id))

    for response in (put, bulk, stats):
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"
    assert anonymous_collections.status_code == 401


@pytest.mark.asyncio
async def test_bulk_routes_for_admin() -> None:
    tenant_id = await create_test_tenant()
    _, token = await signup_test_user(tenant_id=tenant_id)
    headers = auth_headers(tenant_id, token)

    async with _client() as client:
        ids = []
        for index in range(3):
            created = await client.post("/v1/data/events", json={"data": {"i": index}}, headers=headers)
            ids.append(created.json()["data"]["id"])
        archived = await client.post("/v1/data/events/_bulk-archive", json={"ids": ids[:2]}, headers=headers)
        again = await client.post("/v1/data/events/_bulk-archive", json={"ids": ids[:2]}, headers=headers)
        deleted = await client.post("/v1/data/events/_bulk-delete", json={"ids": ids}, headers=headers)
        empty = await client.post("/v1/data/events/_bulk-delete", json={"ids": []}, headers=headers)

    assert archived.json()["data"] == {"archived": 2}
    assert again.json()["data"] == {"archived": 0}
    assert deleted.json()["data"] == {"deleted": 3}
    assert empty.status_code == 422
