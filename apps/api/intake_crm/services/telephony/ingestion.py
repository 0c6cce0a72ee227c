"""
Provider webhook ingestion pipeline.

normalize → resolve tenant → upsert conversation (new calls/messages), or
normalize → advance call state (status, recording, transcript callbacks).

Every path ends in an IngestionResult the router turns into provider
markup; nothing here raises to the router. Each webhook leaves one
ingestion-outcome row behind, except exact duplicates, which write nothing.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from sqlalchemy.orm import Session

from intake_crm.core.structured_logging import build_log_context
from intake_crm.db.enums import (
    AlertSeverity,
    AlertType,
    AuditEventType,
    Direction,
    IngestionOutcomeStatus,
    WebhookEventType,
)
from intake_crm.db.models import PhoneNumber
from intake_crm.services import (
    alert_service,
    audit_service,
    call_status_service,
    conversation_service,
    ingestion_outcome_service,
    oncall_service,
    outbound_webhook_service,
    tenant_service,
)
from intake_crm.services.conversation_service import ConversationResult
from intake_crm.services.telephony.errors import (
    CallNotFound,
    IngestionFailed,
    MissingRequiredField,
    NormalizationError,
    TenantNotFound,
)
from intake_crm.services.telephony.events import (
    CallStatusEvent,
    InboundCallEvent,
    InboundMessageEvent,
    NormalizedEvent,
    RecordingEvent,
)
from intake_crm.services.telephony.providers.base import EventKind
from intake_crm.services.telephony.providers.registry import normalize
from intake_crm.utils.normalization import mask_phone

logger = logging.getLogger(__name__)


class IngestionStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    UPDATED = "updated"
    INVALID = "invalid"
    UNSUPPORTED = "unsupported"
    TENANT_NOT_FOUND = "tenant_not_found"
    CALL_NOT_FOUND = "call_not_found"
    FAILED = "failed"


@dataclass
class IngestionResult:
    status: IngestionStatus
    provider: str
    event: NormalizedEvent | None = None
    phone_number: PhoneNumber | None = None
    conversation: ConversationResult | None = None
    status_update: call_status_service.StatusUpdateResult | None = None
    error: Exception | None = None

    @property
    def call_id(self) -> str | None:
        if self.conversation and self.conversation.call:
            return str(self.conversation.call.id)
        return None


def _event_name(kind: EventKind | None, event: NormalizedEvent | None = None) -> str:
    if isinstance(event, InboundCallEvent):
        return "call.inbound"
    if isinstance(event, InboundMessageEvent):
        return "message.inbound"
    if isinstance(event, RecordingEvent):
        return "call.recording"
    if isinstance(event, CallStatusEvent):
        return "call.status"
    return kind.value if kind else "unknown"


def _external_id(event: NormalizedEvent | None) -> str | None:
    if event is None:
        return None
    if isinstance(event, InboundMessageEvent):
        return event.provider_message_id
    return event.provider_call_id


def _safe_emit(db: Session, org_id, event_type: WebhookEventType, payload: dict) -> None:
    try:
        outbound_webhook_service.emit(db, org_id, event_type, payload)
    except Exception:
        db.rollback()
        logger.exception("Failed to queue %s webhooks", event_type.value, extra=build_log_context(org_id=str(org_id)))


def ingest(
    db: Session,
    provider: str,
    payload: Mapping[str, Any],
    kind: EventKind | None = None,
) -> IngestionResult:
    """Normalize a provider webhook and route it to the matching pipeline."""
    try:
        event = normalize(provider, payload, kind)
    except NormalizationError as exc:
        invalid = isinstance(exc, MissingRequiredField)
        logger.warning(
            "Rejected %s webhook: %s",
            provider,
            exc,
            extra=build_log_context(provider=provider),
        )
        ingestion_outcome_service.record_outcome(
            db,
            provider=provider,
            event_type=_event_name(kind),
            status=IngestionOutcomeStatus.SKIPPED,
            error_code="missing_required_field" if invalid else "unsupported_event",
            error_message=str(exc),
            payload=dict(payload),
        )
        return IngestionResult(
            status=IngestionStatus.INVALID if invalid else IngestionStatus.UNSUPPORTED,
            provider=provider,
            error=exc,
        )

    if isinstance(event, (InboundCallEvent, InboundMessageEvent)):
        return _ingest_new_conversation(db, event)
    return _ingest_call_update(db, event)


def _ingest_new_conversation(
    db: Session,
    event: InboundCallEvent | InboundMessageEvent,
) -> IngestionResult:
    provider = event.provider
    event_name = _event_name(None, event)
    log_extra = build_log_context(provider=provider, call_id=_external_id(event))

    try:
        phone_number = tenant_service.resolve_phone_number(db, event.to_candidates)
    except TenantNotFound as exc:
        logger.warning(
            "No inbound-enabled number for dialed %s; not ingesting",
            mask_phone(event.to_e164),
            extra=log_extra,
        )
        ingestion_outcome_service.record_outcome(
            db,
            provider=provider,
            event_type=event_name,
            external_id=_external_id(event),
            status=IngestionOutcomeStatus.FAILED,
            error_code="tenant_not_found",
            error_message=f"No inbound-enabled number for {mask_phone(event.to_e164)}",
            payload=event.raw,
        )
        return IngestionResult(status=IngestionStatus.TENANT_NOT_FOUND, provider=provider, event=event, error=exc)

    org_id = phone_number.organization_id
    log_extra = build_log_context(org_id=str(org_id), provider=provider, call_id=_external_id(event))

    try:
        if isinstance(event, InboundCallEvent):
            conversation = conversation_service.upsert_inbound_call(db, phone_number, event)
        else:
            conversation = conversation_service.upsert_inbound_message(db, phone_number, event)
    except IngestionFailed as exc:
        ingestion_outcome_service.record_outcome(
            db,
            provider=provider,
            event_type=event_name,
            external_id=_external_id(event),
            org_id=org_id,
            status=IngestionOutcomeStatus.FAILED,
            error_code="ingestion_failed",
            error_message=str(exc),
            payload=event.raw,
        )
        try:
            alert_service.create_or_update_alert(
                db,
                org_id=org_id,
                alert_type=AlertType.INGESTION_FAILED,
                severity=AlertSeverity.ERROR,
                title="Inbound webhook could not be saved",
                message=f"{provider} {event_name} failed to persist",
                scope_key=provider,
            )
        except Exception:
            db.rollback()
            logger.exception("Failed to record ingestion alert", extra=log_extra)
        return IngestionResult(
            status=IngestionStatus.FAILED,
            provider=provider,
            event=event,
            phone_number=phone_number,
            error=exc,
        )

    if conversation.is_duplicate:
        logger.info("Duplicate %s %s ignored", provider, event_name, extra=log_extra)
        return IngestionResult(
            status=IngestionStatus.DUPLICATE,
            provider=provider,
            event=event,
            phone_number=phone_number,
            conversation=conversation,
        )

    record = conversation.call or conversation.message
    is_call = conversation.call is not None
    audit_service.log_event(
        db,
        org_id=org_id,
        event_type=AuditEventType.INBOUND_CALL_RECEIVED if is_call else AuditEventType.INBOUND_SMS_RECEIVED,
        target_type="call" if is_call else "message",
        target_id=record.id,
        details={
            "provider": provider,
            "from": mask_phone(event.from_e164),
            "lead_id": str(conversation.lead.id),
            "is_new_lead": conversation.is_new_lead,
        },
    )
    db.commit()
    ingestion_outcome_service.record_outcome(
        db,
        provider=provider,
        event_type=event_name,
        external_id=_external_id(event),
        org_id=org_id,
        status=IngestionOutcomeStatus.PERSISTED,
    )
    logger.info(
        "Ingested %s %s from %s (new lead: %s)",
        provider,
        event_name,
        mask_phone(event.from_e164),
        conversation.is_new_lead,
        extra=log_extra,
    )

    if conversation.is_new_lead:
        _safe_emit(
            db,
            org_id,
            WebhookEventType.LEAD_CREATED,
            {"leadId": str(conversation.lead.id), "contactId": str(conversation.lead.contact_id), "source": conversation.lead.source},
        )
    if is_call:
        call = conversation.call
        _safe_emit(
            db,
            org_id,
            WebhookEventType.CALL_STARTED,
            {"callId": str(call.id), "leadId": str(call.lead_id), "direction": call.direction, "provider": provider},
        )
    else:
        message = conversation.message
        _safe_emit(
            db,
            org_id,
            WebhookEventType.MESSAGE_RECEIVED,
            {"messageId": str(message.id), "leadId": str(message.lead_id), "body": message.body},
        )

    return IngestionResult(
        status=IngestionStatus.CREATED,
        provider=provider,
        event=event,
        phone_number=phone_number,
        conversation=conversation,
    )


def _ingest_call_update(db: Session, event: CallStatusEvent | RecordingEvent) -> IngestionResult:
    provider = event.provider
    event_name = _event_name(None, event)
    log_extra = build_log_context(provider=provider, call_id=event.provider_call_id)
    # Callbacks that name our number only ever touch that number's tenant
    org_scope = tenant_service.find_owning_org(db, event.owned_candidates)

    try:
        if event.owned_candidates and org_scope is None:
            raise CallNotFound(provider, event.provider_call_id)
        if isinstance(event, RecordingEvent):
            call = call_status_service.apply_recording_event(db, event, org_id=org_scope)
            update = None
        else:
            update = call_status_service.apply_status_event(db, event, org_id=org_scope)
            call = update.call
    except CallNotFound as exc:
        logger.info("Callback for unknown %s call; acknowledging", provider, extra=log_extra)
        ingestion_outcome_service.record_outcome(
            db,
            provider=provider,
            event_type=event_name,
            external_id=event.provider_call_id,
            status=IngestionOutcomeStatus.SKIPPED,
            error_code="call_not_found",
            error_message=str(exc),
            payload=event.raw,
        )
        return IngestionResult(status=IngestionStatus.CALL_NOT_FOUND, provider=provider, event=event, error=exc)

    org_id = call.organization_id
    audit_service.log_event(
        db,
        org_id=org_id,
        event_type=(
            AuditEventType.RECORDING_RECEIVED if isinstance(event, RecordingEvent) else AuditEventType.CALL_STATUS_UPDATED
        ),
        target_type="call",
        target_id=call.id,
        details={"provider": provider, "status": call.status},
    )
    db.commit()
    ingestion_outcome_service.record_outcome(
        db,
        provider=provider,
        event_type=event_name,
        external_id=event.provider_call_id,
        org_id=org_id,
        status=IngestionOutcomeStatus.PERSISTED,
    )

    if update is not None and update.completed_now:
        _safe_emit(
            db,
            org_id,
            WebhookEventType.CALL_COMPLETED,
            call_status_service.call_completed_payload(call),
        )

    return IngestionResult(status=IngestionStatus.UPDATED, provider=provider, event=event, status_update=update)


def plan_call_notification(db: Session, result: IngestionResult) -> oncall_service.CallNotification | None:
    """
    Route a newly created inbound call to its on-call target.

    Returns None for anything other than a fresh inbound call. Routing errors
    are logged; they never affect the provider response.
    """
    if result.status != IngestionStatus.CREATED or result.conversation is None:
        return None
    call = result.conversation.call
    if call is None or call.direction != Direction.INBOUND.value:
        return None
    try:
        decision = oncall_service.route_inbound_call(db, call.organization_id, call.phone_number_id)
        contact = result.conversation.contact
        return oncall_service.build_call_notification(
            db,
            decision,
            org_id=call.organization_id,
            call_id=call.id,
            lead_id=call.lead_id,
            contact_name=contact.name if contact else None,
            from_e164=call.from_e164,
            phone_number_label=result.phone_number.label if result.phone_number else None,
            provider=call.provider,
        )
    except Exception:
        db.rollback()
        logger.exception(
            "On-call routing failed",
            extra=build_log_context(org_id=str(call.organization_id), call_id=str(call.id)),
        )
        return None
