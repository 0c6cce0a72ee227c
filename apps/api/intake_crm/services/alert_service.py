"""
System alerts service.

Manages deduplicated, actionable alerts with fingerprinting.
"""
import hashlib
from uuid import UUID

from sqlalchemy.orm import Session

from intake_crm.db.enums import AlertSeverity, AlertStatus, AlertType
from intake_crm.db.models import SystemAlert
from intake_crm.utils.time import now_utc


def fingerprint(alert_type: AlertType, scope_key: str | None = None) -> str:
    """
    Stable, PII-safe fingerprint for alert deduplication.

    No timestamps or random IDs; the same condition always maps to the same key.
    """
    normalized = f"{alert_type.value}:{scope_key or 'default'}"
    return hashlib.sha256(normalized.encode()).hexdigest()[:16]


def create_or_update_alert(
    db: Session,
    org_id: UUID,
    alert_type: AlertType,
    severity: AlertSeverity,
    title: str,
    message: str | None = None,
    scope_key: str | None = None,
    details: dict | None = None,
) -> SystemAlert:
    """
    Create a new alert or bump an existing one with the same fingerprint.

    Updates: last_seen_at, occurrence_count, message, details.
    Reopens resolved alerts if they recur.
    """
    dedupe_key = fingerprint(alert_type, scope_key)
    now = now_utc()

    existing = db.query(SystemAlert).filter(
        SystemAlert.organization_id == org_id,
        SystemAlert.dedupe_key == dedupe_key,
    ).first()

    if existing:
        existing.last_seen_at = now
        existing.occurrence_count += 1
        existing.message = message
        if details:
            existing.details = details
        if existing.status == AlertStatus.RESOLVED.value:
            existing.status = AlertStatus.OPEN.value
            existing.resolved_at = None
            existing.resolved_by_user_id = None
        db.commit()
        db.refresh(existing)
        return existing

    alert = SystemAlert(
        organization_id=org_id,
        dedupe_key=dedupe_key,
        alert_type=alert_type.value,
        severity=severity.value,
        status=AlertStatus.OPEN.value,
        title=title[:255],
        message=message,
        details=details,
        first_seen_at=now,
        last_seen_at=now,
    )
    db.add(alert)
    db.commit()
    db.refresh(alert)
    return alert


def list_alerts(
    db: Session,
    org_id: UUID,
    status: AlertStatus | None = None,
    alert_type: AlertType | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[SystemAlert]:
    """List alerts with optional filtering."""
    query = db.query(SystemAlert).filter(SystemAlert.organization_id == org_id)
    if status:
        query = query.filter(SystemAlert.status == status.value)
    if alert_type:
        query = query.filter(SystemAlert.alert_type == alert_type.value)
    return query.order_by(SystemAlert.last_seen_at.desc()).offset(offset).limit(limit).all()


def get_alert_for_org(db: Session, org_id: UUID, alert_id: UUID) -> SystemAlert | None:
    """Get a single alert scoped to org."""
    return db.query(SystemAlert).filter(
        SystemAlert.id == alert_id,
        SystemAlert.organization_id == org_id,
    ).first()


def resolve_alert(db: Session, alert: SystemAlert, user_id: UUID) -> SystemAlert:
    alert.status = AlertStatus.RESOLVED.value
    alert.resolved_at = now_utc()
    alert.resolved_by_user_id = user_id
    db.commit()
    db.refresh(alert)
    return alert
