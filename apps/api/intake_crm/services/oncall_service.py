"""
On-call routing for new inbound calls.

Priority: phone-number override → organization on-call user → org-wide
broadcast with an "on-call not configured" alert. Notification delivery
runs after the provider response and each channel fails independently.
"""

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from intake_crm.core.structured_logging import build_log_context
from intake_crm.core.websocket import manager
from intake_crm.db.enums import AlertSeverity, AlertType, RoutingTarget
from intake_crm.db.models import Organization, PhoneNumber, User
from intake_crm.services import alert_service, push_service
from intake_crm.utils.normalization import mask_phone

logger = logging.getLogger(__name__)


class InvalidOnCallTarget(ValueError):
    """User is not an active member of the organization."""
    pass


@dataclass(frozen=True)
class RoutingDecision:
    target: RoutingTarget
    reason: str
    user_id: UUID | None = None


# =============================================================================
# Lookups
# =============================================================================

def get_active_user(db: Session, org_id: UUID, user_id: UUID | None) -> User | None:
    if not user_id:
        return None
    return db.query(User).filter(
        User.id == user_id,
        User.organization_id == org_id,
        User.is_active.is_(True),
    ).first()


def get_org_on_call_user(db: Session, org: Organization) -> User | None:
    """
    Resolve the org-level on-call user.

    A pointer to a missing or deactivated user is cleared on read.
    """
    if not org.on_call_user_id:
        return None
    user = get_active_user(db, org.id, org.on_call_user_id)
    if user is None:
        logger.warning(
            "Clearing stale on-call pointer %s",
            org.on_call_user_id,
            extra=build_log_context(org_id=str(org.id)),
        )
        org.on_call_user_id = None
        db.commit()
    return user


# =============================================================================
# Routing
# =============================================================================

def route_inbound_call(db: Session, org_id: UUID, phone_number_id: UUID | None) -> RoutingDecision:
    """Pick who gets notified about a new call on phone_number_id."""
    if phone_number_id:
        phone_number = db.query(PhoneNumber).filter(
            PhoneNumber.id == phone_number_id,
            PhoneNumber.organization_id == org_id,
        ).first()
        if phone_number and phone_number.on_call_user_id:
            user = get_active_user(db, org_id, phone_number.on_call_user_id)
            if user:
                return RoutingDecision(RoutingTarget.SINGLE_USER, "phone_number_override", user.id)
            logger.info("Phone number on-call override is inactive; falling back to org on-call")

    org = db.query(Organization).filter(Organization.id == org_id).first()
    if org:
        user = get_org_on_call_user(db, org)
        if user:
            return RoutingDecision(RoutingTarget.SINGLE_USER, "org_on_call", user.id)

    logger.warning(
        "No on-call user configured; broadcasting call to organization",
        extra=build_log_context(org_id=str(org_id)),
    )
    try:
        alert_service.create_or_update_alert(
            db,
            org_id=org_id,
            alert_type=AlertType.ONCALL_NOT_CONFIGURED,
            severity=AlertSeverity.WARN,
            title="No on-call user configured",
            message="Inbound calls are being broadcast to everyone in the organization.",
            details={"phone_number_id": str(phone_number_id) if phone_number_id else None},
        )
    except Exception:
        db.rollback()
        logger.exception("Failed to record on-call alert")
    return RoutingDecision(RoutingTarget.ORG_BROADCAST, "oncall_not_configured")


# =============================================================================
# Notification
# =============================================================================

@dataclass
class CallNotification:
    """Everything delivery needs, resolved up front so delivery does no DB reads."""
    org_id: UUID
    decision: RoutingDecision
    message: dict[str, Any]
    push_tokens: list[str] = field(default_factory=list)
    push_title: str = "Incoming call"
    push_body: str = ""


def build_call_notification(
    db: Session,
    decision: RoutingDecision,
    *,
    org_id: UUID,
    call_id: UUID,
    lead_id: UUID,
    contact_name: str | None,
    from_e164: str,
    phone_number_label: str | None,
    provider: str,
) -> CallNotification:
    user_ids = [decision.user_id] if decision.target == RoutingTarget.SINGLE_USER else None
    tokens = push_service.active_tokens_for_users(db, org_id, user_ids)
    caller = contact_name or from_e164
    return CallNotification(
        org_id=org_id,
        decision=decision,
        message={
            "type": "incoming_call",
            "data": {
                "callId": str(call_id),
                "leadId": str(lead_id),
                "from": from_e164,
                "contactName": contact_name,
                "phoneNumberLabel": phone_number_label,
                "provider": provider,
                "routing": decision.reason,
            },
        },
        push_tokens=tokens,
        push_body=f"{caller} is calling" + (f" on {phone_number_label}" if phone_number_label else ""),
    )


async def deliver_call_notification(
    notification: CallNotification,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """Realtime and push fan-out. Each channel's failure is logged and contained."""
    log_extra = build_log_context(org_id=str(notification.org_id))
    summary: dict[str, Any] = {"realtime": 0, "push": 0, "invalid_tokens": 0}

    try:
        if notification.decision.target == RoutingTarget.SINGLE_USER:
            summary["realtime"] = await manager.send_to_user(notification.decision.user_id, notification.message)
        else:
            summary["realtime"] = await manager.send_to_org(notification.org_id, notification.message)
    except Exception:
        logger.exception("Realtime call notification failed", extra=log_extra)

    if notification.push_tokens:
        try:
            invalid = await push_service.send_expo_push(
                notification.push_tokens,
                title=notification.push_title,
                body=notification.push_body,
                data=notification.message["data"],
                transport=transport,
            )
            summary["push"] = len(notification.push_tokens) - len(invalid)
            summary["invalid_tokens"] = len(invalid)
            if invalid:
                _prune_tokens(invalid)
        except Exception:
            logger.exception("Push call notification failed", extra=log_extra)

    logger.info(
        "Call notification delivered target=%s realtime=%s push=%s from=%s",
        notification.decision.target.value,
        summary["realtime"],
        summary["push"],
        mask_phone(notification.message["data"].get("from")),
        extra=log_extra,
    )
    return summary


def _prune_tokens(tokens: list[str]) -> None:
    from intake_crm.db.session import SessionLocal

    db = SessionLocal()
    try:
        push_service.deactivate_tokens(db, tokens)
    finally:
        db.close()


# =============================================================================
# Configuration
# =============================================================================

def set_org_on_call(db: Session, org: Organization, user_id: UUID | None) -> Organization:
    """
    Set or clear the org-level on-call user.

    Raises:
        InvalidOnCallTarget: user is not active in the org
    """
    if user_id is not None and get_active_user(db, org.id, user_id) is None:
        raise InvalidOnCallTarget("User is not an active member of this organization")
    org.on_call_user_id = user_id
    db.commit()
    db.refresh(org)
    return org


def set_phone_number_on_call(db: Session, phone_number: PhoneNumber, user_id: UUID | None) -> PhoneNumber:
    """
    Set or clear the per-number on-call override.

    Raises:
        InvalidOnCallTarget: user is not active in the number's org
    """
    if user_id is not None and get_active_user(db, phone_number.organization_id, user_id) is None:
        raise InvalidOnCallTarget("User is not an active member of this organization")
    phone_number.on_call_user_id = user_id
    db.commit()
    db.refresh(phone_number)
    return phone_number
