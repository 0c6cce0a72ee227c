"""Lead qualification endpoints: read, (re)run, and attorney override."""

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from intake_crm.core.deps import (
    get_current_session,
    get_db,
    require_csrf_header,
    require_roles,
)
from intake_crm.db.enums import (
    ROLES_CAN_OVERRIDE_QUALIFICATION,
    Disposition,
    WebhookEventType,
)
from intake_crm.db.models import Qualification
from intake_crm.schemas.auth import UserSession
from intake_crm.services import outbound_webhook_service, qualification_service

router = APIRouter(prefix="/v1/leads", tags=["leads"])
logger = logging.getLogger(__name__)


# =============================================================================
# Schemas
# =============================================================================

class QualificationResponse(BaseModel):
    lead_id: str
    score: int
    disposition: str
    confidence: int
    reasons: dict[str, Any]
    qualified_by_user_id: Optional[str]
    updated_at: datetime


class QualificationOverride(BaseModel):
    disposition: Optional[Disposition] = None
    score: Optional[int] = Field(None, ge=0, le=100)
    note: str = Field(..., min_length=1, max_length=2000)


def _to_response(qualification: Qualification) -> QualificationResponse:
    return QualificationResponse(
        lead_id=str(qualification.lead_id),
        score=qualification.score,
        disposition=qualification.disposition,
        confidence=qualification.confidence,
        reasons=qualification.reasons or {},
        qualified_by_user_id=str(qualification.qualified_by_user_id) if qualification.qualified_by_user_id else None,
        updated_at=qualification.updated_at,
    )


def _get_lead_or_404(db: Session, session: UserSession, lead_id: UUID):
    lead = qualification_service.get_lead(db, session.org_id, lead_id)
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead


def _emit_updated(db: Session, qualification: Qualification) -> None:
    try:
        outbound_webhook_service.emit(
            db,
            qualification.organization_id,
            WebhookEventType.QUALIFICATION_UPDATED,
            qualification_service.qualification_payload(qualification),
        )
    except Exception:
        db.rollback()
        logger.exception("Failed to queue qualification.updated webhooks")


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/{lead_id}/qualification", response_model=QualificationResponse)
def get_qualification(
    lead_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    _get_lead_or_404(db, session, lead_id)
    qualification = qualification_service.get_qualification(db, session.org_id, lead_id)
    if not qualification:
        raise HTTPException(status_code=404, detail="Lead has not been qualified yet")
    return _to_response(qualification)


@router.post(
    "/{lead_id}/qualification/run",
    response_model=QualificationResponse,
    dependencies=[Depends(require_csrf_header)],
)
def run_qualification(
    lead_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Score the lead now. Re-running with unchanged data yields the same result."""
    lead = _get_lead_or_404(db, session, lead_id)
    qualification = qualification_service.run_qualification(db, lead, actor_user_id=session.user_id)
    _emit_updated(db, qualification)
    return _to_response(qualification)


@router.patch(
    "/{lead_id}/qualification",
    response_model=QualificationResponse,
    dependencies=[Depends(require_csrf_header)],
)
def override_qualification(
    lead_id: UUID,
    data: QualificationOverride,
    session: UserSession = Depends(require_roles(ROLES_CAN_OVERRIDE_QUALIFICATION)),
    db: Session = Depends(get_db),
):
    """
    Human override of disposition and/or score.

    The note is appended to the qualification's explanations with the
    overriding user's name; earlier explanations are kept.
    """
    lead = _get_lead_or_404(db, session, lead_id)
    qualification = qualification_service.get_qualification(db, session.org_id, lead_id)
    if not qualification:
        raise HTTPException(status_code=404, detail="Run qualification before overriding it")

    qualification = qualification_service.override_qualification(
        db,
        lead,
        qualification,
        actor_user_id=session.user_id,
        actor_name=session.display_name,
        note=data.note,
        disposition=data.disposition.value if data.disposition else None,
        score=data.score,
    )
    _emit_updated(db, qualification)
    return _to_response(qualification)
