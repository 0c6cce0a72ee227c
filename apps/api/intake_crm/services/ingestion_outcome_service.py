"""Diagnostic trail of provider webhooks and what became of each one."""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from intake_crm.db.enums import IngestionOutcomeStatus
from intake_crm.db.models import IngestionOutcome

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_CHARS = 2000


def record_outcome(
    db: Session,
    *,
    provider: str,
    event_type: str,
    status: IngestionOutcomeStatus,
    external_id: str | None = None,
    org_id: UUID | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
    payload: dict[str, Any] | None = None,
) -> IngestionOutcome | None:
    """
    Persist an ingestion outcome in its own commit.

    Never raises: a diagnostics failure must not change what the provider
    receives. The raw payload is kept only for events that were not persisted.
    """
    try:
        outcome = IngestionOutcome(
            organization_id=org_id,
            provider=provider,
            event_type=event_type,
            external_id=external_id,
            status=status.value,
            error_code=error_code,
            error_message=error_message[:MAX_ERROR_MESSAGE_CHARS] if error_message else None,
            payload=payload if status != IngestionOutcomeStatus.PERSISTED else None,
        )
        db.add(outcome)
        db.commit()
        return outcome
    except Exception:
        db.rollback()
        logger.exception(
            "Failed to record ingestion outcome provider=%s event=%s status=%s",
            provider,
            event_type,
            status.value,
        )
        return None


def list_outcomes(
    db: Session,
    org_id: UUID,
    *,
    provider: str | None = None,
    status: IngestionOutcomeStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[IngestionOutcome]:
    query = db.query(IngestionOutcome).filter(IngestionOutcome.organization_id == org_id)
    if provider:
        query = query.filter(IngestionOutcome.provider == provider)
    if status:
        query = query.filter(IngestionOutcome.status == status.value)
    return query.order_by(IngestionOutcome.created_at.desc()).offset(offset).limit(limit).all()
