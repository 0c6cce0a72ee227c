"""Org-scoped management of outbound webhook endpoints and their signing secrets."""

import secrets
from uuid import UUID

from sqlalchemy.orm import Session

from intake_crm.core.encryption import encrypt_secret
from intake_crm.db.models import OutgoingWebhookDelivery, OutgoingWebhookEndpoint

SECRET_PREFIX = "whsec_"


def generate_secret() -> str:
    return f"{SECRET_PREFIX}{secrets.token_urlsafe(32)}"


def create_endpoint(
    db: Session,
    org_id: UUID,
    url: str,
    events: list[str],
    is_active: bool = True,
) -> tuple[OutgoingWebhookEndpoint, str]:
    """Create an endpoint. Returns (endpoint, plaintext secret); the secret is never readable again."""
    secret = generate_secret()
    endpoint = OutgoingWebhookEndpoint(
        organization_id=org_id,
        url=url,
        secret_encrypted=encrypt_secret(secret),
        events=sorted(set(events)),
        is_active=is_active,
    )
    db.add(endpoint)
    db.commit()
    db.refresh(endpoint)
    return endpoint, secret


def list_endpoints(db: Session, org_id: UUID) -> list[OutgoingWebhookEndpoint]:
    return (
        db.query(OutgoingWebhookEndpoint)
        .filter(OutgoingWebhookEndpoint.organization_id == org_id)
        .order_by(OutgoingWebhookEndpoint.created_at.desc())
        .all()
    )


def get_endpoint(db: Session, org_id: UUID, endpoint_id: UUID) -> OutgoingWebhookEndpoint | None:
    return db.query(OutgoingWebhookEndpoint).filter(
        OutgoingWebhookEndpoint.id == endpoint_id,
        OutgoingWebhookEndpoint.organization_id == org_id,
    ).first()


def update_endpoint(
    db: Session,
    endpoint: OutgoingWebhookEndpoint,
    *,
    url: str | None = None,
    events: list[str] | None = None,
    is_active: bool | None = None,
) -> OutgoingWebhookEndpoint:
    if url is not None:
        endpoint.url = url
    if events is not None:
        endpoint.events = sorted(set(events))
    if is_active is not None:
        endpoint.is_active = is_active
    db.commit()
    db.refresh(endpoint)
    return endpoint


def rotate_secret(db: Session, endpoint: OutgoingWebhookEndpoint) -> str:
    """Replace the signing secret. Attempts made from now on sign with the new one."""
    secret = generate_secret()
    endpoint.secret_encrypted = encrypt_secret(secret)
    db.commit()
    return secret


def delete_endpoint(db: Session, endpoint: OutgoingWebhookEndpoint) -> None:
    db.delete(endpoint)
    db.commit()


def list_deliveries(
    db: Session,
    org_id: UUID,
    endpoint_id: UUID | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[OutgoingWebhookDelivery]:
    query = db.query(OutgoingWebhookDelivery).filter(
        OutgoingWebhookDelivery.organization_id == org_id,
    )
    if endpoint_id:
        query = query.filter(OutgoingWebhookDelivery.endpoint_id == endpoint_id)
    if status:
        query = query.filter(OutgoingWebhookDelivery.status == status)
    return query.order_by(OutgoingWebhookDelivery.created_at.desc()).offset(offset).limit(limit).all()


def get_delivery(db: Session, org_id: UUID, delivery_id: UUID) -> OutgoingWebhookDelivery | None:
    return db.query(OutgoingWebhookDelivery).filter(
        OutgoingWebhookDelivery.id == delivery_id,
        OutgoingWebhookDelivery.organization_id == org_id,
    ).first()
