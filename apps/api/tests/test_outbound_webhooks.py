"""Tests for outbound webhook emit, signing, retry and settlement."""

import asyncio
import json
from unittest.mock import MagicMock

import httpx
import pytest
from sqlalchemy.orm import Session

from intake_crm.core.config import settings
from intake_crm.db.enums import AlertType, DeliveryStatus, WebhookEventType
from intake_crm.db.models import SystemAlert
from intake_crm.services import outbound_webhook_service, webhook_endpoint_service
from intake_crm.services.outbound_webhook_service import (
    DELIVERY_HEADER,
    DeliveryScheduler,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    backoff_seconds,
    canonical_body,
    sign_body,
)


@pytest.fixture
def endpoint_and_secret(db, test_org):
    return webhook_endpoint_service.create_endpoint(
        db,
        test_org.id,
        "https://hooks.example.com/crm",
        [WebhookEventType.CALL_COMPLETED.value, WebhookEventType.LEAD_CREATED.value],
    )


def _emit_one(db, test_org):
    deliveries = outbound_webhook_service.emit(
        db, test_org.id, WebhookEventType.CALL_COMPLETED, {"callId": "c-1", "durationSeconds": 12}
    )
    assert len(deliveries) == 1
    return deliveries[0]


# =============================================================================
# Emit
# =============================================================================

def test_emit_creates_delivery_per_subscribed_endpoint(db, test_org, endpoint_and_secret, delivery_scheduler):
    webhook_endpoint_service.create_endpoint(
        db, test_org.id, "https://other.example.com/hook", [WebhookEventType.MESSAGE_RECEIVED.value]
    )

    delivery = _emit_one(db, test_org)

    assert delivery.status == DeliveryStatus.PENDING.value
    assert delivery.attempt_count == 0
    assert delivery.max_attempts == 3
    assert delivery.payload["id"] == str(delivery.id)
    assert delivery.payload["event"] == "call.completed"
    assert delivery.payload["data"] == {"callId": "c-1", "durationSeconds": 12}
    assert delivery_scheduler.scheduled == [(delivery.id, 0.0)]


def test_emit_skips_inactive_endpoints(db, test_org, delivery_scheduler):
    webhook_endpoint_service.create_endpoint(
        db, test_org.id, "https://hooks.example.com/off", [WebhookEventType.CALL_COMPLETED.value], is_active=False
    )
    deliveries = outbound_webhook_service.emit(db, test_org.id, WebhookEventType.CALL_COMPLETED, {})
    assert deliveries == []
    assert delivery_scheduler.scheduled == []


# =============================================================================
# Attempts
# =============================================================================

async def test_successful_delivery_is_signed(db, test_org, endpoint_and_secret):
    _, secret = endpoint_and_secret
    delivery = _emit_one(db, test_org)
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["headers"] = request.headers
        captured["body"] = request.content
        return httpx.Response(204)

    result = await outbound_webhook_service.attempt_delivery(
        db, delivery.id, transport=httpx.MockTransport(handler)
    )

    assert result.attempted is True
    assert result.retry_after is None
    assert result.delivery.status == DeliveryStatus.DELIVERED.value
    assert result.delivery.attempt_count == 1
    assert result.delivery.delivered_at is not None

    body = captured["body"]
    assert body == canonical_body(json.loads(body))
    assert captured["headers"][SIGNATURE_HEADER] == sign_body(secret, body)
    assert captured["headers"][EVENT_HEADER] == "call.completed"
    assert captured["headers"][DELIVERY_HEADER] == str(delivery.id)


async def test_failures_retry_then_settle_failed_with_alert(db, test_org, endpoint_and_secret):
    delivery = _emit_one(db, test_org)
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500, text="boom")

    transport = httpx.MockTransport(handler)
    first = await outbound_webhook_service.attempt_delivery(db, delivery.id, transport=transport)
    assert first.retry_after == backoff_seconds(1)
    assert first.delivery.status == DeliveryStatus.PENDING.value
    assert first.delivery.last_error == "HTTP 500"

    second = await outbound_webhook_service.attempt_delivery(db, delivery.id, transport=transport)
    assert second.retry_after == backoff_seconds(2)

    third = await outbound_webhook_service.attempt_delivery(db, delivery.id, transport=transport)
    assert third.retry_after is None
    assert third.delivery.status == DeliveryStatus.FAILED.value
    assert third.delivery.attempt_count == 3
    assert third.delivery.response_code == 500

    # Exhausted: further attempts are no-ops
    fourth = await outbound_webhook_service.attempt_delivery(db, delivery.id, transport=transport)
    assert fourth.attempted is False
    assert len(calls) == 3

    alert = db.query(SystemAlert).filter(
        SystemAlert.organization_id == test_org.id,
        SystemAlert.alert_type == AlertType.WEBHOOK_DELIVERY_FAILED.value,
    ).one()
    assert "hooks.example.com" in alert.message


async def test_network_error_counts_as_attempt(db, test_org, endpoint_and_secret):
    delivery = _emit_one(db, test_org)

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = await outbound_webhook_service.attempt_delivery(
        db, delivery.id, transport=httpx.MockTransport(handler)
    )
    assert result.delivery.attempt_count == 1
    assert result.delivery.response_code is None
    assert result.delivery.last_error.startswith("ConnectError")


async def test_deactivated_endpoint_settles_without_sending(db, test_org, endpoint_and_secret):
    endpoint, _ = endpoint_and_secret
    delivery = _emit_one(db, test_org)
    webhook_endpoint_service.update_endpoint(db, endpoint, is_active=False)

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("should not be called")

    result = await outbound_webhook_service.attempt_delivery(
        db, delivery.id, transport=httpx.MockTransport(handler)
    )
    assert result.attempted is False
    assert result.delivery.status == DeliveryStatus.FAILED.value
    assert result.delivery.attempt_count == 0


async def test_rotated_secret_signs_next_attempt(db, test_org, endpoint_and_secret):
    endpoint, old_secret = endpoint_and_secret
    delivery = _emit_one(db, test_org)
    new_secret = webhook_endpoint_service.rotate_secret(db, endpoint)
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["signature"] = request.headers[SIGNATURE_HEADER]
        captured["body"] = request.content
        return httpx.Response(200)

    await outbound_webhook_service.attempt_delivery(db, delivery.id, transport=httpx.MockTransport(handler))
    assert new_secret != old_secret
    assert captured["signature"] == sign_body(new_secret, captured["body"])


async def test_deliver_pending_drives_to_settled(db, test_org, endpoint_and_secret):
    _emit_one(db, test_org)
    responses = iter([httpx.Response(502), httpx.Response(200)])
    sleeps = []

    def handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    summary = await outbound_webhook_service.deliver_pending(
        db, transport=httpx.MockTransport(handler), sleep=fake_sleep
    )
    assert summary == {"delivered": 1, "failed": 0}
    assert sleeps == [backoff_seconds(1)]


def test_cancel_pending_delivery(db, test_org, endpoint_and_secret, delivery_scheduler):
    delivery = _emit_one(db, test_org)
    canceled = outbound_webhook_service.cancel_delivery(db, delivery)
    assert canceled.status == DeliveryStatus.FAILED.value
    assert canceled.last_error == "Canceled manually"
    assert delivery_scheduler.canceled == [delivery.id]


def test_resume_pending_deliveries(db, test_org, endpoint_and_secret, delivery_scheduler):
    delivery = _emit_one(db, test_org)
    delivery_scheduler.scheduled.clear()

    assert outbound_webhook_service.resume_pending_deliveries(db) == 1
    assert delivery_scheduler.scheduled[0][0] == delivery.id


def test_backoff_schedule():
    assert [backoff_seconds(n) for n in (1, 2, 3, 4)] == [1.0, 5.0, 15.0, 15.0]


def test_attempt_count_cannot_exceed_max(db, test_org, endpoint_and_secret):
    from sqlalchemy.exc import IntegrityError

    delivery = _emit_one(db, test_org)
    delivery.attempt_count = delivery.max_attempts + 1
    with pytest.raises(IntegrityError):
        db.flush()
    db.rollback()


# =============================================================================
# Scheduler
# =============================================================================

async def test_schedule_from_worker_thread_needs_bound_loop(db, test_org, endpoint_and_secret, monkeypatch):
    delivery = _emit_one(db, test_org)
    done = asyncio.Event()

    async def fake_attempt(session, delivery_id, *, transport=None):
        done.set()

    monkeypatch.setattr(outbound_webhook_service, "attempt_delivery", fake_attempt)
    scheduler = DeliveryScheduler(session_factory=MagicMock)

    assert await asyncio.to_thread(scheduler.schedule, delivery.id) is False

    scheduler.bind_loop(asyncio.get_running_loop())
    assert await asyncio.to_thread(scheduler.schedule, delivery.id) is True
    await asyncio.wait_for(done.wait(), timeout=2)
    await scheduler.shutdown()


async def test_crashing_task_retries_then_settles_failed(db, test_org, endpoint_and_secret, monkeypatch):
    delivery = _emit_one(db, test_org)
    monkeypatch.setattr(settings, "OUTBOUND_WEBHOOK_BACKOFF_SECONDS", [0])
    crashes = []

    async def crashing_attempt(session, delivery_id, *, transport=None):
        crashes.append(delivery_id)
        raise RuntimeError("decoder blew up")

    monkeypatch.setattr(outbound_webhook_service, "attempt_delivery", crashing_attempt)
    scheduler = DeliveryScheduler(
        session_factory=lambda: Session(bind=db.connection(), join_transaction_mode="create_savepoint")
    )

    assert scheduler.schedule(delivery.id) is True
    for _ in range(100):
        if len(crashes) >= settings.OUTBOUND_WEBHOOK_MAX_ATTEMPTS and scheduler.pending_count() == 0:
            break
        await asyncio.sleep(0.01)

    assert crashes == [delivery.id] * settings.OUTBOUND_WEBHOOK_MAX_ATTEMPTS
    db.expire_all()
    assert delivery.status == DeliveryStatus.FAILED.value
    assert delivery.last_error == "Delivery task crashed repeatedly"
