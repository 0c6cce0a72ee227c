"""
Ops endpoints: ingestion diagnostics and system alerts.

Org-scoped; admins only.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from intake_crm.core.deps import get_db, require_csrf_header, require_roles
from intake_crm.db.enums import (
    ROLES_CAN_MANAGE_INTEGRATIONS,
    AlertStatus,
    AlertType,
    IngestionOutcomeStatus,
)
from intake_crm.schemas.auth import UserSession
from intake_crm.services import alert_service, ingestion_outcome_service

router = APIRouter(prefix="/v1/ops", tags=["ops"])

require_admin = require_roles(ROLES_CAN_MANAGE_INTEGRATIONS)


# =============================================================================
# Pydantic Schemas
# =============================================================================

class IngestionOutcomeResponse(BaseModel):
    id: str
    provider: str
    event_type: str
    external_id: Optional[str]
    status: str
    error_code: Optional[str]
    error_message: Optional[str]
    payload: Optional[dict[str, Any]]
    created_at: datetime


class AlertResponse(BaseModel):
    id: str
    alert_type: str
    severity: str
    status: str
    title: str
    message: Optional[str]
    occurrence_count: int
    first_seen_at: datetime
    last_seen_at: datetime
    resolved_at: Optional[datetime]


def _alert_response(alert) -> AlertResponse:
    return AlertResponse(
        id=str(alert.id),
        alert_type=alert.alert_type,
        severity=alert.severity,
        status=alert.status,
        title=alert.title,
        message=alert.message,
        occurrence_count=alert.occurrence_count,
        first_seen_at=alert.first_seen_at,
        last_seen_at=alert.last_seen_at,
        resolved_at=alert.resolved_at,
    )


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/ingestion-outcomes", response_model=list[IngestionOutcomeResponse])
def list_ingestion_outcomes(
    provider: Optional[str] = Query(None),
    status: Optional[IngestionOutcomeStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: UserSession = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Recent provider webhooks for this org and what became of them."""
    outcomes = ingestion_outcome_service.list_outcomes(
        db, session.org_id, provider=provider, status=status, limit=limit, offset=offset
    )
    return [
        IngestionOutcomeResponse(
            id=str(o.id),
            provider=o.provider,
            event_type=o.event_type,
            external_id=o.external_id,
            status=o.status,
            error_code=o.error_code,
            error_message=o.error_message,
            payload=o.payload,
            created_at=o.created_at,
        )
        for o in outcomes
    ]


@router.get("/alerts", response_model=list[AlertResponse])
def list_alerts(
    status: Optional[AlertStatus] = Query(None),
    alert_type: Optional[AlertType] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    session: UserSession = Depends(require_admin),
    db: Session = Depends(get_db),
):
    alerts = alert_service.list_alerts(
        db, session.org_id, status=status, alert_type=alert_type, limit=limit, offset=offset
    )
    return [_alert_response(a) for a in alerts]


@router.post(
    "/alerts/{alert_id}/resolve",
    response_model=AlertResponse,
    dependencies=[Depends(require_csrf_header)],
)
def resolve_alert(
    alert_id: UUID,
    session: UserSession = Depends(require_admin),
    db: Session = Depends(get_db),
):
    alert = alert_service.get_alert_for_org(db, session.org_id, alert_id)
    if not alert:
        raise HTTPException(status_code=404, detail="Alert not found")
    return _alert_response(alert_service.resolve_alert(db, alert, session.user_id))
