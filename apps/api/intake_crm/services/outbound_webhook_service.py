"""
Outbound webhook dispatcher.

emit() fans an event out to every active endpoint of the org subscribed to
it, creating one delivery row per endpoint. Deliveries are attempted on the
process-wide DeliveryScheduler, never inline with the triggering request.

Retry policy: up to OUTBOUND_WEBHOOK_MAX_ATTEMPTS attempts, waiting
OUTBOUND_WEBHOOK_BACKOFF_SECONDS[attempt - 1] between them. The status and
attempt-count check at the top of attempt_delivery() is what stops a retry
that fires after a delivery was settled or canceled.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from intake_crm.core.config import settings
from intake_crm.core.encryption import decrypt_secret
from intake_crm.core.structured_logging import build_log_context
from intake_crm.db.enums import AlertSeverity, AlertType, DeliveryStatus, WebhookEventType
from intake_crm.db.models import OutgoingWebhookDelivery, OutgoingWebhookEndpoint
from intake_crm.utils.time import as_utc, now_utc
from intake_crm.utils.urls import safe_url

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"
MAX_RESPONSE_BODY_CHARS = 1000


# =============================================================================
# Signing
# =============================================================================

def canonical_body(payload: dict[str, Any]) -> bytes:
    """Exact bytes that are signed and sent."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def sign_body(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def backoff_seconds(attempt_count: int) -> float:
    """Delay before the next attempt, given how many attempts were made."""
    schedule = settings.OUTBOUND_WEBHOOK_BACKOFF_SECONDS or [1]
    index = min(max(attempt_count, 1), len(schedule)) - 1
    return float(schedule[index])


# =============================================================================
# Emit
# =============================================================================

def emit(
    db: Session,
    org_id: UUID,
    event_type: WebhookEventType,
    payload: dict[str, Any],
) -> list[OutgoingWebhookDelivery]:
    """
    Create a delivery per subscribed endpoint, commit, and schedule attempts.

    Never blocks on delivery. Returns the created deliveries.
    """
    endpoints = db.query(OutgoingWebhookEndpoint).filter(
        OutgoingWebhookEndpoint.organization_id == org_id,
        OutgoingWebhookEndpoint.is_active.is_(True),
    ).all()
    subscribed = [endpoint for endpoint in endpoints if event_type.value in (endpoint.events or [])]
    if not subscribed:
        return []

    occurred_at = now_utc().isoformat()
    deliveries = []
    for endpoint in subscribed:
        delivery_id = uuid.uuid4()
        delivery = OutgoingWebhookDelivery(
            id=delivery_id,
            organization_id=org_id,
            endpoint_id=endpoint.id,
            event_type=event_type.value,
            status=DeliveryStatus.PENDING.value,
            attempt_count=0,
            max_attempts=settings.OUTBOUND_WEBHOOK_MAX_ATTEMPTS,
            next_attempt_at=now_utc(),
            payload={
                "id": str(delivery_id),
                "event": event_type.value,
                "occurredAt": occurred_at,
                "data": payload,
            },
        )
        db.add(delivery)
        deliveries.append(delivery)
    db.commit()

    for delivery in deliveries:
        scheduler.schedule(delivery.id)
    logger.info(
        "Queued %d deliveries for %s",
        len(deliveries),
        event_type.value,
        extra=build_log_context(org_id=str(org_id)),
    )
    return deliveries


# =============================================================================
# Attempt
# =============================================================================

@dataclass
class AttemptResult:
    delivery: OutgoingWebhookDelivery
    attempted: bool
    retry_after: float | None = None


def _settle_failed(db: Session, delivery: OutgoingWebhookDelivery, reason: str) -> None:
    delivery.status = DeliveryStatus.FAILED.value
    delivery.next_attempt_at = None
    delivery.last_error = reason[:MAX_RESPONSE_BODY_CHARS]
    db.commit()


async def attempt_delivery(
    db: Session,
    delivery_id: UUID,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AttemptResult | None:
    """
    Make one delivery attempt.

    No-op for deliveries that are no longer pending or have exhausted their
    attempts. Returns None if the delivery does not exist.
    """
    delivery = db.get(OutgoingWebhookDelivery, delivery_id)
    if delivery is None:
        return None
    if delivery.status != DeliveryStatus.PENDING.value or delivery.attempt_count >= delivery.max_attempts:
        return AttemptResult(delivery=delivery, attempted=False)

    log_extra = build_log_context(org_id=str(delivery.organization_id), delivery_id=str(delivery.id))
    endpoint = db.get(OutgoingWebhookEndpoint, delivery.endpoint_id)
    if endpoint is None or not endpoint.is_active:
        _settle_failed(db, delivery, "Endpoint deleted or inactive")
        return AttemptResult(delivery=delivery, attempted=False)

    try:
        secret = decrypt_secret(endpoint.secret_encrypted)
    except (ValueError, RuntimeError) as e:
        logger.error("Cannot decrypt webhook secret: %s", e, extra=log_extra)
        _settle_failed(db, delivery, "Signing secret unavailable")
        return AttemptResult(delivery=delivery, attempted=False)

    body = canonical_body(delivery.payload)
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: sign_body(secret, body),
        EVENT_HEADER: delivery.event_type,
        DELIVERY_HEADER: str(delivery.id),
    }

    response_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    try:
        async with httpx.AsyncClient(
            timeout=settings.OUTBOUND_WEBHOOK_TIMEOUT_SECONDS, transport=transport
        ) as client:
            response = await client.post(endpoint.url, content=body, headers=headers)
        response_code = response.status_code
        response_body = response.text[:MAX_RESPONSE_BODY_CHARS]
        if not response.is_success:
            error = f"HTTP {response_code}"
    except httpx.HTTPError as e:
        error = f"{type(e).__name__}: {e}"[:MAX_RESPONSE_BODY_CHARS]

    now = now_utc()
    delivery.attempt_count += 1
    delivery.last_attempt_at = now
    delivery.response_code = response_code
    delivery.response_body = response_body

    if error is None:
        delivery.status = DeliveryStatus.DELIVERED.value
        delivery.delivered_at = now
        delivery.next_attempt_at = None
        delivery.last_error = None
        db.commit()
        logger.info("Webhook delivered to %s", safe_url(endpoint.url), extra=log_extra)
        return AttemptResult(delivery=delivery, attempted=True)

    delivery.last_error = error
    if delivery.attempt_count >= delivery.max_attempts:
        delivery.status = DeliveryStatus.FAILED.value
        delivery.next_attempt_at = None
        db.commit()
        logger.warning(
            "Webhook delivery to %s failed permanently after %d attempts (%s)",
            safe_url(endpoint.url),
            delivery.attempt_count,
            error,
            extra=log_extra,
        )
        _raise_delivery_alert(db, delivery, endpoint)
        return AttemptResult(delivery=delivery, attempted=True)

    delay = backoff_seconds(delivery.attempt_count)
    delivery.next_attempt_at = now + timedelta(seconds=delay)
    db.commit()
    logger.info(
        "Webhook delivery to %s failed (%s); retry %d in %ss",
        safe_url(endpoint.url),
        error,
        delivery.attempt_count + 1,
        delay,
        extra=log_extra,
    )
    return AttemptResult(delivery=delivery, attempted=True, retry_after=delay)


def _raise_delivery_alert(
    db: Session,
    delivery: OutgoingWebhookDelivery,
    endpoint: OutgoingWebhookEndpoint,
) -> None:
    from intake_crm.services import alert_service

    try:
        alert_service.create_or_update_alert(
            db,
            org_id=delivery.organization_id,
            alert_type=AlertType.WEBHOOK_DELIVERY_FAILED,
            severity=AlertSeverity.WARN,
            title="Outbound webhook delivery failed",
            message=f"{safe_url(endpoint.url)}: {delivery.last_error}",
            scope_key=str(endpoint.id),
            details={"endpoint_id": str(endpoint.id), "event_type": delivery.event_type},
        )
    except Exception:
        db.rollback()
        logger.exception("Failed to record webhook delivery alert")


# =============================================================================
# Scheduling
# =============================================================================

class DeliveryScheduler:
    """
    Process-scoped set of deferred delivery tasks keyed by delivery id.

    A delivery has at most one live task; schedule() refuses to double-book.
    Tasks live on the loop bound at startup. Sync route handlers run in a
    worker thread, so schedule() and cancel() hand their work to that loop.
    """

    def __init__(self, session_factory: Callable[[], Session] | None = None):
        self._tasks: dict[UUID, asyncio.Task] = {}
        self._crashes: dict[UUID, int] = {}
        self._session_factory = session_factory
        self._loop: asyncio.AbstractEventLoop | None = None
        self.transport: httpx.AsyncBaseTransport | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def _new_session(self) -> Session:
        if self._session_factory is None:
            from intake_crm.db.session import SessionLocal

            return SessionLocal()
        return self._session_factory()

    def is_scheduled(self, delivery_id: UUID) -> bool:
        task = self._tasks.get(delivery_id)
        return task is not None and not task.done()

    def schedule(self, delivery_id: UUID, delay: float = 0.0) -> bool:
        if self.is_scheduled(delivery_id):
            return False
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            loop = self._loop
            if loop is None or loop.is_closed():
                logger.warning("No event loop bound; delivery %s stays pending until resumed", delivery_id)
                return False
            loop.call_soon_threadsafe(self._start, delivery_id, delay)
            return True
        return self._start(delivery_id, delay)

    def _start(self, delivery_id: UUID, delay: float) -> bool:
        # Always runs on the loop thread
        if self.is_scheduled(delivery_id):
            return False
        self._tasks[delivery_id] = asyncio.get_running_loop().create_task(self._run(delivery_id, delay))
        return True

    async def _run(self, delivery_id: UUID, delay: float) -> None:
        result = None
        crashed = False
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            db = self._new_session()
            try:
                result = await attempt_delivery(db, delivery_id, transport=self.transport)
            finally:
                db.close()
        except asyncio.CancelledError:
            raise
        except Exception:
            crashed = True
            logger.exception("Webhook delivery task crashed for %s", delivery_id)
        finally:
            if self._tasks.get(delivery_id) is asyncio.current_task():
                del self._tasks[delivery_id]

        if crashed:
            crashes = self._crashes.get(delivery_id, 0) + 1
            if crashes < settings.OUTBOUND_WEBHOOK_MAX_ATTEMPTS:
                self._crashes[delivery_id] = crashes
                self.schedule(delivery_id, backoff_seconds(crashes))
            else:
                self._crashes.pop(delivery_id, None)
                self._abandon(delivery_id)
            return

        self._crashes.pop(delivery_id, None)
        if result is not None and result.retry_after is not None:
            self.schedule(delivery_id, result.retry_after)

    def _abandon(self, delivery_id: UUID) -> None:
        """Settle a delivery whose task keeps crashing so it is not left pending."""
        db = self._new_session()
        try:
            delivery = db.get(OutgoingWebhookDelivery, delivery_id)
            if delivery is not None and delivery.status == DeliveryStatus.PENDING.value:
                _settle_failed(db, delivery, "Delivery task crashed repeatedly")
                logger.error("Gave up on webhook delivery %s after repeated task crashes", delivery_id)
        except Exception:
            db.rollback()
            logger.exception("Could not settle crashed delivery %s; it stays pending", delivery_id)
        finally:
            db.close()

    def cancel(self, delivery_id: UUID) -> bool:
        task = self._tasks.get(delivery_id)
        if task is None or task.done():
            return False
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Only the owning loop may cancel its tasks
            task.get_loop().call_soon_threadsafe(self._cancel_task, delivery_id)
            return True
        self._cancel_task(delivery_id)
        return True

    def _cancel_task(self, delivery_id: UUID) -> None:
        self._crashes.pop(delivery_id, None)
        task = self._tasks.pop(delivery_id, None)
        if task is not None and not task.done():
            task.cancel()

    def pending_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        self._crashes.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loop = None


scheduler = DeliveryScheduler()


def list_pending_deliveries(db: Session) -> list[OutgoingWebhookDelivery]:
    return (
        db.query(OutgoingWebhookDelivery)
        .filter(
            OutgoingWebhookDelivery.status == DeliveryStatus.PENDING.value,
            OutgoingWebhookDelivery.attempt_count < OutgoingWebhookDelivery.max_attempts,
        )
        .order_by(OutgoingWebhookDelivery.created_at)
        .all()
    )


def resume_pending_deliveries(db: Session) -> int:
    """Reschedule pending deliveries after a restart, honoring next_attempt_at."""
    now = now_utc()
    count = 0
    for delivery in list_pending_deliveries(db):
        due = as_utc(delivery.next_attempt_at)
        delay = max(0.0, (due - now).total_seconds()) if due else 0.0
        if scheduler.schedule(delivery.id, delay):
            count += 1
    if count:
        logger.info("Resumed %d pending webhook deliveries", count)
    return count


async def deliver_pending(
    db: Session,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> dict[str, int]:
    """Drive every pending delivery to a settled state in this process."""
    summary = {"delivered": 0, "failed": 0}
    for delivery in list_pending_deliveries(db):
        while True:
            result = await attempt_delivery(db, delivery.id, transport=transport)
            if result is None or result.retry_after is None:
                break
            await sleep(result.retry_after)
        db.refresh(delivery)
        if delivery.status == DeliveryStatus.DELIVERED.value:
            summary["delivered"] += 1
        elif delivery.status == DeliveryStatus.FAILED.value:
            summary["failed"] += 1
    return summary


def cancel_delivery(db: Session, delivery: OutgoingWebhookDelivery) -> OutgoingWebhookDelivery:
    """Manually settle a pending delivery as failed and drop its scheduled retry."""
    if delivery.status == DeliveryStatus.PENDING.value:
        _settle_failed(db, delivery, "Canceled manually")
    scheduler.cancel(delivery.id)
    db.refresh(delivery)
    return delivery
