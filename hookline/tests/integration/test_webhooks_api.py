from __future__ import annotations

from httpx import ASGITransport, AsyncClient

from hookline.apps.api.main import create_app
from hookline.domain.events import WEBHOOK_EVENT_TYPES
from hookline.services.webhooks import executor as executor_module
from hookline.tests.utils.fakes import Subscriber
from hookline.tests.utils.webhooks import create_delivery, load_destination


TENANT_HEADERS = {"X-Tenant-Id": "tenant-a", "X-Actor-Id": "user-1"}


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


async def _register(client: AsyncClient, **overrides) -> dict:
    body = {
        "name": "deploys",
        "url": "https://example.com/hook",
        "event_types": ["deployment.succeeded"],
        "headers": {"Authorization": "Bearer abc"},
    }
    body.update(overrides)
    response = await client.post("/v1/webhooks", json=body, headers=TENANT_HEADERS)
    assert response.status_code == 201, response.text
    return response.json()["data"]


async def test_health_is_public() -> None:
    async with _client() as client:
        bare = await client.get("/health")
        versioned = await client.get("/v1/health")
    assert bare.json() == {"status": "ok"}
    assert versioned.json()["data"] == {"status": "ok"}


async def test_requests_without_tenant_are_unauthorized() -> None:
    async with _client() as client:
        response = await client.get("/v1/webhooks")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


async def test_event_catalog() -> None:
    async with _client() as client:
        response = await client.get("/v1/webhooks/events", headers=TENANT_HEADERS)
    payload = response.json()
    assert response.status_code == 200
    assert payload["data"]["items"] == list(WEBHOOK_EVENT_TYPES)
    assert payload["data"]["test_event_type"] == "test.ping"
    assert payload["meta"]["api_version"] == "v1"


async def test_register_returns_secret_once_and_redacts_headers() -> None:
    async with _client() as client:
        created = await _register(client)
        webhook_id = created["webhook"]["id"]
        assert len(created["secret"]) == 64
        assert created["webhook"]["headers"] == {"Authorization": "***"}
        assert created["webhook"]["created_by"] == "user-1"

        fetched = await client.get(f"/v1/webhooks/{webhook_id}", headers=TENANT_HEADERS)
        listed = await client.get("/v1/webhooks", headers=TENANT_HEADERS)

    assert "secret" not in fetched.json()["data"]
    assert fetched.json()["data"]["headers"] == {"Authorization": "***"}
    assert [item["id"] for item in listed.json()["data"]["items"]] == [webhook_id]
    assert "Bearer abc" not in listed.text


async def test_register_rejects_plain_http() -> None:
    async with _client() as client:
        response = await client.post(
            "/v1/webhooks",
            json={"name": "x", "url": "http://example.com/hook", "event_types": ["deployment.failed"]},
            headers=TENANT_HEADERS,
        )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "WEBHOOK_VALIDATION_ERROR"


async def test_register_enforces_tenant_limit(settings) -> None:
    async with _client() as client:
        for index in range(settings.webhook_max_per_tenant):
            await _register(client, name=f"hook-{index}")
        response = await client.post(
            "/v1/webhooks",
            json={"name": "extra", "url": "https://example.com/x", "event_types": ["agent.error"]},
            headers=TENANT_HEADERS,
        )
    assert response.status_code == 409
    body = response.json()["error"]
    assert body["code"] == "WEBHOOK_LIMIT_REACHED"
    assert body["details"] == {"limit": settings.webhook_max_per_tenant}


async def test_other_tenants_cannot_see_webhooks() -> None:
    async with _client() as client:
        created = await _register(client)
        response = await client.get(
            f"/v1/webhooks/{created['webhook']['id']}",
            headers={"X-Tenant-Id": "tenant-b"},
        )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "WEBHOOK_NOT_FOUND"


async def test_patch_applies_only_sent_fields() -> None:
    async with _client() as client:
        created = await _register(client)
        webhook_id = created["webhook"]["id"]
        renamed = await client.patch(
            f"/v1/webhooks/{webhook_id}",
            json={"name": "renamed"},
            headers=TENANT_HEADERS,
        )
        cleared = await client.patch(
            f"/v1/webhooks/{webhook_id}",
            json={"headers": None, "is_active": False},
            headers=TENANT_HEADERS,
        )
    assert renamed.json()["data"]["name"] == "renamed"
    assert renamed.json()["data"]["headers"] == {"Authorization": "***"}
    assert cleared.json()["data"]["headers"] == {}
    assert cleared.json()["data"]["is_active"] is False


async def test_rotate_secret_returns_new_secret() -> None:
    async with _client() as client:
        created = await _register(client)
        webhook_id = created["webhook"]["id"]
        rotated = await client.post(f"/v1/webhooks/{webhook_id}/rotate-secret", headers=TENANT_HEADERS)
    assert rotated.status_code == 200
    assert rotated.json()["data"]["webhook_id"] == webhook_id
    assert rotated.json()["data"]["secret"] != created["secret"]


async def test_delete_returns_no_content() -> None:
    async with _client() as client:
        created = await _register(client)
        webhook_id = created["webhook"]["id"]
        deleted = await client.delete(f"/v1/webhooks/{webhook_id}", headers=TENANT_HEADERS)
        missing = await client.get(f"/v1/webhooks/{webhook_id}", headers=TENANT_HEADERS)
    assert deleted.status_code == 204
    assert deleted.content == b""
    assert missing.status_code == 404
    assert await load_destination(webhook_id) is None


async def test_test_send_and_delivery_history(monkeypatch, enqueued) -> None:
    subscriber = Subscriber(status_codes=[200])
    monkeypatch.setattr(executor_module, "_http_client", subscriber.client_factory())
    async with _client() as client:
        created = await _register(client)
        webhook_id = created["webhook"]["id"]
        sent = await client.post(f"/v1/webhooks/{webhook_id}/test", headers=TENANT_HEADERS)
        history = await client.get(
            f"/v1/webhooks/{webhook_id}/deliveries",
            params={"status": "success"},
            headers=TENANT_HEADERS,
        )
    delivery = sent.json()["data"]
    assert sent.status_code == 200
    assert delivery["status"] == "success"
    assert delivery["event_type"] == "test.ping"
    assert delivery["max_attempts"] == 1
    assert subscriber.requests[0].headers["Authorization"] == "Bearer abc"
    assert history.json()["data"]["total"] == 1
    assert history.json()["data"]["items"][0]["id"] == delivery["id"]
    assert enqueued.calls == []


async def test_history_rejects_unknown_status_filter() -> None:
    async with _client() as client:
        created = await _register(client)
        response = await client.get(
            f"/v1/webhooks/{created['webhook']['id']}/deliveries",
            params={"status": "lost"},
            headers=TENANT_HEADERS,
        )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "WEBHOOK_VALIDATION_ERROR"


async def test_manual_retry_endpoint(enqueued) -> None:
    async with _client() as client:
        created = await _register(client)
        webhook_id = created["webhook"]["id"]
        destination = await load_destination(webhook_id)
        failed = await create_delivery(destination, status="failed", attempt_number=4)
        succeeded = await create_delivery(destination, status="success")

        retried = await client.post(
            f"/v1/webhooks/{webhook_id}/deliveries/{failed.id}/retry",
            headers=TENANT_HEADERS,
        )
        conflict = await client.post(
            f"/v1/webhooks/{webhook_id}/deliveries/{succeeded.id}/retry",
            headers=TENANT_HEADERS,
        )
        missing = await client.post(
            f"/v1/webhooks/{webhook_id}/deliveries/unknown/retry",
            headers=TENANT_HEADERS,
        )

    assert retried.status_code == 200
    assert retried.json()["data"]["status"] == "retrying"
    assert retried.json()["data"]["attempt_number"] == 5
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "DELIVERY_STATE_CONFLICT"
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "DELIVERY_NOT_FOUND"
    assert [call["delivery_id"] for call in enqueued.calls] == [failed.id]


async def test_request_id_is_echoed() -> None:
    async with _client() as client:
        response = await client.get(
            "/v1/webhooks",
            headers={**TENANT_HEADERS, "X-Request-Id": "req-123"},
        )
    assert response.headers["X-Request-Id"] == "req-123"
    assert response.json()["meta"]["request_id"] == "req-123"


async def test_request_id_header_name_is_configurable(monkeypatch, settings) -> None:
    monkeypatch.setattr(settings, "request_id_header", "X-Correlation-Id")
    async with _client() as client:
        response = await client.get(
            "/v1/webhooks",
            headers={**TENANT_HEADERS, "X-Correlation-Id": "corr-9"},
        )
    assert response.headers["X-Correlation-Id"] == "corr-9"
    assert response.json()["meta"]["request_id"] == "corr-9"


async def test_delivery_history_reports_clamped_paging() -> None:
    async with _client() as client:
        created = await _register(client)
        response = await client.get(
            f"/v1/webhooks/{created['webhook']['id']}/deliveries",
            params={"limit": 500, "offset": -3},
            headers=TENANT_HEADERS,
        )
    data = response.json()["data"]
    assert data["items"] == []
    assert data["total"] == 0
    assert data["limit"] == 100
    assert data["offset"] == 0
