"""Outbound webhook endpoint management (admin only)."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from intake_crm.core.deps import get_db, require_csrf_header, require_roles
from intake_crm.db.enums import (
    ROLES_CAN_MANAGE_INTEGRATIONS,
    AuditEventType,
    DeliveryStatus,
    WebhookEventType,
)
from intake_crm.db.models import OutgoingWebhookDelivery, OutgoingWebhookEndpoint
from intake_crm.schemas.auth import UserSession
from intake_crm.services import audit_service, outbound_webhook_service, webhook_endpoint_service
from intake_crm.utils.urls import safe_url

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])

require_admin = require_roles(ROLES_CAN_MANAGE_INTEGRATIONS)


# =============================================================================
# Schemas
# =============================================================================

def _validate_url(value: str) -> str:
    value = value.strip()
    if not value.startswith(("https://", "http://")):
        raise ValueError("url must be an http(s) URL")
    return value


def _validate_events(values: list[str]) -> list[str]:
    unknown = [value for value in values if not WebhookEventType.has_value(value)]
    if unknown:
        raise ValueError(f"Unknown event types: {', '.join(sorted(set(unknown)))}")
    return values


class EndpointCreate(BaseModel):
    url: str = Field(..., max_length=2000)
    events: list[str] = Field(..., min_length=1)
    is_active: bool = True

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        return _validate_url(value)

    @field_validator("events")
    @classmethod
    def check_events(cls, value: list[str]) -> list[str]:
        return _validate_events(value)


class EndpointUpdate(BaseModel):
    url: Optional[str] = Field(None, max_length=2000)
    events: Optional[list[str]] = Field(None, min_length=1)
    is_active: Optional[bool] = None

    @field_validator("url")
    @classmethod
    def check_url(cls, value: Optional[str]) -> Optional[str]:
        return _validate_url(value) if value is not None else None

    @field_validator("events")
    @classmethod
    def check_events(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        return _validate_events(value) if value is not None else None


class EndpointResponse(BaseModel):
    id: str
    url: str
    events: list[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class EndpointWithSecretResponse(EndpointResponse):
    """Only returned on create; the secret cannot be read back later."""
    secret: str


class RotateSecretResponse(BaseModel):
    id: str
    secret: str


class DeliveryResponse(BaseModel):
    id: str
    endpoint_id: str
    event_type: str
    status: str
    attempt_count: int
    max_attempts: int
    response_code: Optional[int]
    last_error: Optional[str]
    last_attempt_at: Optional[datetime]
    next_attempt_at: Optional[datetime]
    delivered_at: Optional[datetime]
    created_at: datetime


def _endpoint_response(endpoint: OutgoingWebhookEndpoint) -> EndpointResponse:
    return EndpointResponse(
        id=str(endpoint.id),
        url=endpoint.url,
        events=list(endpoint.events or []),
        is_active=endpoint.is_active,
        created_at=endpoint.created_at,
        updated_at=endpoint.updated_at,
    )


def _delivery_response(delivery: OutgoingWebhookDelivery) -> DeliveryResponse:
    return DeliveryResponse(
        id=str(delivery.id),
        endpoint_id=str(delivery.endpoint_id),
        event_type=delivery.event_type,
        status=delivery.status,
        attempt_count=delivery.attempt_count,
        max_attempts=delivery.max_attempts,
        response_code=delivery.response_code,
        last_error=delivery.last_error,
        last_attempt_at=delivery.last_attempt_at,
        next_attempt_at=delivery.next_attempt_at,
        delivered_at=delivery.delivered_at,
        created_at=delivery.created_at,
    )


def _get_endpoint_or_404(db: Session, session: UserSession, endpoint_id: UUID) -> OutgoingWebhookEndpoint:
    endpoint = webhook_endpoint_service.get_endpoint(db, session.org_id, endpoint_id)
    if not endpoint:
        raise HTTPException(status_code=404, detail="Webhook endpoint not found")
    return endpoint


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/endpoints", response_model=list[EndpointResponse])
def list_endpoints(
    session: UserSession = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return [_endpoint_response(e) for e in webhook_endpoint_service.list_endpoints(db, session.org_id)]


@router.post(
    "/endpoints",
    response_model=EndpointWithSecretResponse,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
def create_endpoint(
    data: EndpointCreate,
    request: Request,
    session: UserSession = Depends(require_admin),
    db: Session = Depends(get_db),
):
    endpoint, secret = webhook_endpoint_service.create_endpoint(
        db, session.org_id, data.url, data.events, data.is_active
    )
    audit_service.log_event(
        db,
        org_id=session.org_id,
        event_type=AuditEventType.WEBHOOK_ENDPOINT_CREATED,
        actor_user_id=session.user_id,
        target_type="webhook_endpoint",
        target_id=endpoint.id,
        details={"url": safe_url(endpoint.url), "events": endpoint.events},
        request=request,
    )
    db.commit()
    return EndpointWithSecretResponse(**_endpoint_response(endpoint).model_dump(), secret=secret)


@router.get("/endpoints/{endpoint_id}", response_model=EndpointResponse)
def get_endpoint(
    endpoint_id: UUID,
    session: UserSession = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return _endpoint_response(_get_endpoint_or_404(db, session, endpoint_id))


@router.patch(
    "/endpoints/{endpoint_id}",
    response_model=EndpointResponse,
    dependencies=[Depends(require_csrf_header)],
)
def update_endpoint(
    endpoint_id: UUID,
    data: EndpointUpdate,
    request: Request,
    session: UserSession = Depends(require_admin),
    db: Session = Depends(get_db),
):
    endpoint = _get_endpoint_or_404(db, session, endpoint_id)
    endpoint = webhook_endpoint_service.update_endpoint(
        db, endpoint, url=data.url, events=data.events, is_active=data.is_active
    )
    audit_service.log_event(
        db,
        org_id=session.org_id,
        event_type=AuditEventType.WEBHOOK_ENDPOINT_UPDATED,
        actor_user_id=session.user_id,
        target_type="webhook_endpoint",
        target_id=endpoint.id,
        details={"fields": sorted(data.model_dump(exclude_unset=True).keys())},
        request=request,
    )
    db.commit()
    return _endpoint_response(endpoint)


@router.delete(
    "/endpoints/{endpoint_id}",
    status_code=204,
    dependencies=[Depends(require_csrf_header)],
)
def delete_endpoint(
    endpoint_id: UUID,
    request: Request,
    session: UserSession = Depends(require_admin),
    db: Session = Depends(get_db),
):
    endpoint = _get_endpoint_or_404(db, session, endpoint_id)
    target_id = endpoint.id
    url = safe_url(endpoint.url)
    webhook_endpoint_service.delete_endpoint(db, endpoint)
    audit_service.log_event(
        db,
        org_id=session.org_id,
        event_type=AuditEventType.WEBHOOK_ENDPOINT_DELETED,
        actor_user_id=session.user_id,
        target_type="webhook_endpoint",
        target_id=target_id,
        details={"url": url},
        request=request,
    )
    db.commit()


@router.post(
    "/endpoints/{endpoint_id}/rotate-secret",
    response_model=RotateSecretResponse,
    dependencies=[Depends(require_csrf_header)],
)
def rotate_secret(
    endpoint_id: UUID,
    request: Request,
    session: UserSession = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Issue a new signing secret. The old one stops working immediately."""
    endpoint = _get_endpoint_or_404(db, session, endpoint_id)
    secret = webhook_endpoint_service.rotate_secret(db, endpoint)
    audit_service.log_event(
        db,
        org_id=session.org_id,
        event_type=AuditEventType.WEBHOOK_SECRET_ROTATED,
        actor_user_id=session.user_id,
        target_type="webhook_endpoint",
        target_id=endpoint.id,
        request=request,
    )
    db.commit()
    return RotateSecretResponse(id=str(endpoint.id), secret=secret)


@router.get("/endpoints/{endpoint_id}/deliveries", response_model=list[DeliveryResponse])
def list_deliveries(
    endpoint_id: UUID,
    status: Optional[DeliveryStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: UserSession = Depends(require_admin),
    db: Session = Depends(get_db),
):
    endpoint = _get_endpoint_or_404(db, session, endpoint_id)
    deliveries = webhook_endpoint_service.list_deliveries(
        db,
        session.org_id,
        endpoint_id=endpoint.id,
        status=status.value if status else None,
        limit=limit,
        offset=offset,
    )
    return [_delivery_response(d) for d in deliveries]


@router.post(
    "/deliveries/{delivery_id}/cancel",
    response_model=DeliveryResponse,
    dependencies=[Depends(require_csrf_header)],
)
def cancel_delivery(
    delivery_id: UUID,
    session: UserSession = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Settle a pending delivery as failed. Settled deliveries are returned unchanged."""
    delivery = webhook_endpoint_service.get_delivery(db, session.org_id, delivery_id)
    if not delivery:
        raise HTTPException(status_code=404, detail="Delivery not found")
    delivery = outbound_webhook_service.cancel_delivery(db, delivery)
    return _delivery_response(delivery)
