"""Audit trail writer. Callers own the transaction; entries are flushed, not committed."""

from typing import Any
from uuid import UUID

from fastapi import Request
from sqlalchemy.orm import Session

from intake_crm.core.config import settings
from intake_crm.db.enums import AuditEventType
from intake_crm.db.models import AuditLog


def get_client_ip(request: Request | None) -> str | None:
    """
    Extract client IP from request.

    Only trusts X-Forwarded-For when TRUST_PROXY_HEADERS=True (behind reverse proxy).
    """
    if not request:
        return None

    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()

    if request.client:
        return request.client.host
    return None


def log_event(
    db: Session,
    org_id: UUID,
    event_type: AuditEventType,
    actor_user_id: UUID | None = None,
    target_type: str | None = None,
    target_id: UUID | None = None,
    details: dict[str, Any] | None = None,
    request: Request | None = None,
) -> AuditLog:
    """
    Record an audit event.

    Args:
        db: Database session
        org_id: Organization context
        event_type: Type of event
        actor_user_id: User who performed the action (None for provider/system events)
        target_type: Type of entity affected (e.g. 'call', 'lead', 'webhook_endpoint')
        target_id: ID of the affected entity
        details: Additional context (no secrets, phone numbers masked)
        request: FastAPI request for IP extraction
    """
    entry = AuditLog(
        organization_id=org_id,
        actor_user_id=actor_user_id,
        event_type=event_type.value,
        target_type=target_type,
        target_id=target_id,
        details=details,
        ip_address=get_client_ip(request),
    )
    db.add(entry)
    db.flush()
    return entry
