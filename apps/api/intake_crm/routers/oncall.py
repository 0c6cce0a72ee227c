"""On-call configuration: org-level default and per-number overrides."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from intake_crm.core.deps import get_current_session, get_db, require_csrf_header, require_roles
from intake_crm.db.enums import ROLES_CAN_MANAGE_INTEGRATIONS, AuditEventType
from intake_crm.db.models import Organization, User
from intake_crm.schemas.auth import UserSession
from intake_crm.services import audit_service, oncall_service, tenant_service

router = APIRouter(prefix="/v1", tags=["on-call"])


class OnCallUpdate(BaseModel):
    user_id: Optional[UUID] = None


class OnCallResponse(BaseModel):
    user_id: Optional[str]
    display_name: Optional[str]


class PhoneNumberOnCallResponse(OnCallResponse):
    phone_number_id: str
    e164: str


def _on_call(user: User | None) -> dict:
    return {
        "user_id": str(user.id) if user else None,
        "display_name": user.display_name if user else None,
    }


def _get_org(db: Session, session: UserSession) -> Organization:
    org = db.get(Organization, session.org_id)
    if not org:
        raise HTTPException(status_code=404, detail="Organization not found")
    return org


@router.get("/org/on-call", response_model=OnCallResponse)
def get_org_on_call(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    org = _get_org(db, session)
    return OnCallResponse(**_on_call(oncall_service.get_org_on_call_user(db, org)))


@router.put(
    "/org/on-call",
    response_model=OnCallResponse,
    dependencies=[Depends(require_csrf_header)],
)
def set_org_on_call(
    data: OnCallUpdate,
    request: Request,
    session: UserSession = Depends(require_roles(ROLES_CAN_MANAGE_INTEGRATIONS)),
    db: Session = Depends(get_db),
):
    """Set or clear (user_id: null) the org-level on-call user."""
    org = _get_org(db, session)
    try:
        org = oncall_service.set_org_on_call(db, org, data.user_id)
    except oncall_service.InvalidOnCallTarget as e:
        raise HTTPException(status_code=400, detail=str(e))
    audit_service.log_event(
        db,
        org_id=session.org_id,
        event_type=AuditEventType.ONCALL_UPDATED,
        actor_user_id=session.user_id,
        target_type="organization",
        target_id=org.id,
        details={"user_id": str(data.user_id) if data.user_id else None},
        request=request,
    )
    db.commit()
    return OnCallResponse(**_on_call(oncall_service.get_active_user(db, org.id, org.on_call_user_id)))


@router.get("/phone-numbers/{phone_number_id}/on-call", response_model=PhoneNumberOnCallResponse)
def get_phone_number_on_call(
    phone_number_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    phone_number = tenant_service.get_phone_number(db, session.org_id, phone_number_id)
    if not phone_number:
        raise HTTPException(status_code=404, detail="Phone number not found")
    user = oncall_service.get_active_user(db, session.org_id, phone_number.on_call_user_id)
    return PhoneNumberOnCallResponse(
        phone_number_id=str(phone_number.id),
        e164=phone_number.e164,
        **_on_call(user),
    )


@router.put(
    "/phone-numbers/{phone_number_id}/on-call",
    response_model=PhoneNumberOnCallResponse,
    dependencies=[Depends(require_csrf_header)],
)
def set_phone_number_on_call(
    phone_number_id: UUID,
    data: OnCallUpdate,
    request: Request,
    session: UserSession = Depends(require_roles(ROLES_CAN_MANAGE_INTEGRATIONS)),
    db: Session = Depends(get_db),
):
    """Set or clear the per-number override. Cleared numbers fall back to the org on-call user."""
    phone_number = tenant_service.get_phone_number(db, session.org_id, phone_number_id)
    if not phone_number:
        raise HTTPException(status_code=404, detail="Phone number not found")
    try:
        phone_number = oncall_service.set_phone_number_on_call(db, phone_number, data.user_id)
    except oncall_service.InvalidOnCallTarget as e:
        raise HTTPException(status_code=400, detail=str(e))
    audit_service.log_event(
        db,
        org_id=session.org_id,
        event_type=AuditEventType.ONCALL_UPDATED,
        actor_user_id=session.user_id,
        target_type="phone_number",
        target_id=phone_number.id,
        details={"user_id": str(data.user_id) if data.user_id else None},
        request=request,
    )
    db.commit()
    user = oncall_service.get_active_user(db, session.org_id, phone_number.on_call_user_id)
    return PhoneNumberOnCallResponse(
        phone_number_id=str(phone_number.id),
        e164=phone_number.e164,
        **_on_call(user),
    )
