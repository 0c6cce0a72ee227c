"""Push device token registration for the current user."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from intake_crm.core.deps import get_current_session, get_db, require_csrf_header
from intake_crm.db.enums import DevicePlatform
from intake_crm.schemas.auth import UserSession
from intake_crm.services import push_service

router = APIRouter(
    prefix="/v1/me/device-tokens",
    tags=["devices"],
    dependencies=[Depends(require_csrf_header)],
)


class DeviceTokenRegister(BaseModel):
    token: str = Field(..., min_length=1, max_length=255)
    platform: DevicePlatform


class DeviceTokenRemove(BaseModel):
    token: str = Field(..., min_length=1, max_length=255)


class DeviceTokenResponse(BaseModel):
    id: str
    platform: str
    is_active: bool


@router.post("", response_model=DeviceTokenResponse)
def register_device_token(
    data: DeviceTokenRegister,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Register (or re-activate) an Expo push token for incoming-call alerts."""
    device = push_service.register_token(
        db, session.org_id, session.user_id, data.token, data.platform.value
    )
    return DeviceTokenResponse(id=str(device.id), platform=device.platform, is_active=device.is_active)


@router.delete("", status_code=204)
def remove_device_token(
    data: DeviceTokenRemove,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    if not push_service.deactivate_token(db, session.org_id, session.user_id, data.token):
        raise HTTPException(status_code=404, detail="Device token not found")
