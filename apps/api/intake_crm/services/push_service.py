"""Expo push notifications for the mobile app."""

import logging
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from intake_crm.core.config import settings
from intake_crm.db.models import DeviceToken, User
from intake_crm.utils.time import now_utc

logger = logging.getLogger(__name__)

EXPO_BATCH_SIZE = 100
INCOMING_CALL_CHANNEL = "incoming-calls"


def active_tokens_for_users(db: Session, org_id: UUID, user_ids: list[UUID] | None = None) -> list[str]:
    """Active push tokens for the given users, or for every active user in the org."""
    query = (
        db.query(DeviceToken.token)
        .join(User, User.id == DeviceToken.user_id)
        .filter(
            DeviceToken.organization_id == org_id,
            DeviceToken.is_active.is_(True),
            User.organization_id == org_id,
            User.is_active.is_(True),
        )
    )
    if user_ids is not None:
        query = query.filter(DeviceToken.user_id.in_(user_ids))
    return [row.token for row in query.all()]


def register_token(db: Session, org_id: UUID, user_id: UUID, token: str, platform: str) -> DeviceToken:
    """Upsert a device token for the user; a token re-registered by another user moves to them."""
    device = db.query(DeviceToken).filter(DeviceToken.token == token).first()
    if device is None:
        device = DeviceToken(organization_id=org_id, user_id=user_id, token=token, platform=platform)
        db.add(device)
    else:
        device.organization_id = org_id
        device.user_id = user_id
        device.platform = platform
        device.is_active = True
    device.last_used_at = now_utc()
    db.commit()
    db.refresh(device)
    return device


def deactivate_token(db: Session, org_id: UUID, user_id: UUID, token: str) -> bool:
    device = db.query(DeviceToken).filter(
        DeviceToken.token == token,
        DeviceToken.organization_id == org_id,
        DeviceToken.user_id == user_id,
    ).first()
    if not device:
        return False
    device.is_active = False
    db.commit()
    return True


def deactivate_tokens(db: Session, tokens: list[str]) -> int:
    if not tokens:
        return 0
    count = (
        db.query(DeviceToken)
        .filter(DeviceToken.token.in_(tokens))
        .update({DeviceToken.is_active: False}, synchronize_session=False)
    )
    db.commit()
    return count


async def send_expo_push(
    tokens: list[str],
    *,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[str]:
    """
    Send one notification to each token via Expo's batch API.

    Returns tokens Expo reported as DeviceNotRegistered.
    """
    if not tokens or not settings.PUSH_ENABLED:
        return []

    invalid: list[str] = []
    async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
        for start in range(0, len(tokens), EXPO_BATCH_SIZE):
            batch = tokens[start:start + EXPO_BATCH_SIZE]
            messages = [
                {
                    "to": token,
                    "title": title,
                    "body": body,
                    "data": data or {},
                    "sound": "default",
                    "priority": "high",
                    "channelId": INCOMING_CALL_CHANNEL,
                }
                for token in batch
            ]
            response = await client.post(settings.EXPO_PUSH_URL, json=messages)
            response.raise_for_status()
            tickets = response.json().get("data") or []
            for token, ticket in zip(batch, tickets):
                if ticket.get("status") == "error":
                    error = (ticket.get("details") or {}).get("error")
                    if error == "DeviceNotRegistered":
                        invalid.append(token)
                    else:
                        logger.warning("Expo push ticket error: %s", error or ticket.get("message"))
    return invalid
