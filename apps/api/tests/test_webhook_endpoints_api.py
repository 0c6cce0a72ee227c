"""Tests for outbound webhook endpoint management endpoints."""

import asyncio
import uuid

from intake_crm.db.enums import Role, WebhookEventType
from intake_crm.db.models import AuditLog
from intake_crm.services import outbound_webhook_service
from intake_crm.services.outbound_webhook_service import DeliveryScheduler


async def _create(authed_client, **overrides):
    body = {"url": "https://hooks.example.com/crm", "events": ["call.completed", "lead.created"]}
    body.update(overrides)
    return await authed_client.post("/v1/webhooks/endpoints", json=body)


async def test_create_returns_secret_once(authed_client, db, test_org):
    res = await _create(authed_client)
    assert res.status_code == 201, res.text
    data = res.json()
    assert data["secret"].startswith("whsec_")
    assert data["events"] == ["call.completed", "lead.created"]

    res = await authed_client.get(f"/v1/webhooks/endpoints/{data['id']}")
    assert res.status_code == 200
    assert "secret" not in res.json()

    listed = (await authed_client.get("/v1/webhooks/endpoints")).json()
    assert [e["id"] for e in listed] == [data["id"]]
    assert all("secret" not in e for e in listed)

    audit = db.query(AuditLog).filter(
        AuditLog.organization_id == test_org.id,
        AuditLog.event_type == "webhook_endpoint_created",
    ).one()
    assert audit.details["url"] == "https://hooks.example.com/crm"


async def test_create_rejects_unknown_event(authed_client):
    res = await _create(authed_client, events=["call.exploded"])
    assert res.status_code == 422


async def test_create_rejects_non_http_url(authed_client):
    res = await _create(authed_client, url="ftp://hooks.example.com")
    assert res.status_code == 422


async def test_update_and_delete(authed_client):
    endpoint_id = (await _create(authed_client)).json()["id"]

    res = await authed_client.patch(
        f"/v1/webhooks/endpoints/{endpoint_id}",
        json={"events": ["qualification.updated"], "is_active": False},
    )
    assert res.status_code == 200
    assert res.json()["events"] == ["qualification.updated"]
    assert res.json()["is_active"] is False

    res = await authed_client.delete(f"/v1/webhooks/endpoints/{endpoint_id}")
    assert res.status_code == 204
    res = await authed_client.get(f"/v1/webhooks/endpoints/{endpoint_id}")
    assert res.status_code == 404


async def test_rotate_secret(authed_client):
    created = (await _create(authed_client)).json()
    res = await authed_client.post(f"/v1/webhooks/endpoints/{created['id']}/rotate-secret")
    assert res.status_code == 200
    assert res.json()["secret"].startswith("whsec_")
    assert res.json()["secret"] != created["secret"]


async def test_deliveries_listing_and_cancel(authed_client, db, test_org):
    endpoint_id = (await _create(authed_client)).json()["id"]
    outbound_webhook_service.emit(db, test_org.id, WebhookEventType.LEAD_CREATED, {"leadId": "l-1"})

    res = await authed_client.get(f"/v1/webhooks/endpoints/{endpoint_id}/deliveries")
    assert res.status_code == 200
    deliveries = res.json()
    assert len(deliveries) == 1
    assert deliveries[0]["status"] == "pending"

    res = await authed_client.get(f"/v1/webhooks/endpoints/{endpoint_id}/deliveries", params={"status": "delivered"})
    assert res.json() == []

    res = await authed_client.post(f"/v1/webhooks/deliveries/{deliveries[0]['id']}/cancel")
    assert res.status_code == 200
    assert res.json()["status"] == "failed"
    assert res.json()["last_error"] == "Canceled manually"


async def test_cancel_stops_the_scheduled_task(authed_client, db, test_org, monkeypatch):
    await _create(authed_client)
    [delivery] = outbound_webhook_service.emit(db, test_org.id, WebhookEventType.LEAD_CREATED, {"leadId": "l-1"})

    scheduler = DeliveryScheduler()
    scheduler.bind_loop(asyncio.get_running_loop())
    monkeypatch.setattr(outbound_webhook_service, "scheduler", scheduler)
    assert scheduler.schedule(delivery.id, delay=60) is True

    res = await authed_client.post(f"/v1/webhooks/deliveries/{delivery.id}/cancel")
    assert res.status_code == 200

    for _ in range(50):
        if not scheduler.is_scheduled(delivery.id):
            break
        await asyncio.sleep(0.01)
    assert scheduler.is_scheduled(delivery.id) is False
    assert scheduler.pending_count() == 0


async def test_unknown_endpoint_is_404(authed_client):
    res = await authed_client.get(f"/v1/webhooks/endpoints/{uuid.uuid4()}")
    assert res.status_code == 404


async def test_staff_cannot_manage_endpoints(client, user_factory, auth_factory, test_org):
    staff = user_factory(Role.STAFF)
    auth = auth_factory(staff, test_org)
    client.cookies.set(auth.cookie_name, auth.token)

    res = await client.get("/v1/webhooks/endpoints")
    assert res.status_code == 403


async def test_mutations_require_csrf(client, test_auth):
    client.cookies.set(test_auth.cookie_name, test_auth.token)
    res = await client.post(
        "/v1/webhooks/endpoints",
        json={"url": "https://hooks.example.com/crm", "events": ["call.completed"]},
    )
    assert res.status_code == 403


async def test_unauthenticated(client):
    res = await client.get("/v1/webhooks/endpoints")
    assert res.status_code == 401


async def test_endpoints_are_org_scoped(authed_client, db, user_factory, auth_factory, client):
    from intake_crm.db.models import Organization

    endpoint_id = (await _create(authed_client)).json()["id"]

    other_org = Organization(id=uuid.uuid4(), name="Other", slug=f"other-{uuid.uuid4().hex[:8]}")
    db.add(other_org)
    db.flush()
    outsider = user_factory(Role.ADMIN, org=other_org)
    auth = auth_factory(outsider, other_org)
    client.cookies.set(auth.cookie_name, auth.token)

    res = await client.get(f"/v1/webhooks/endpoints/{endpoint_id}")
    assert res.status_code == 404
