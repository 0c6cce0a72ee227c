"""
Conversation upsert: Contact → Lead → Interaction → Call/Message.

Every create is "try insert inside a savepoint, on uniqueness conflict
re-fetch", so concurrent duplicate webhooks converge on the same rows.
The whole unit commits once; any other persistence failure rolls it back
and surfaces IngestionFailed.
"""

import logging
from dataclasses import dataclass
from typing import Callable
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from intake_crm.db.enums import (
    OPEN_LEAD_STATUSES,
    Channel,
    InteractionStatus,
    LeadPriority,
    LeadSource,
    LeadStatus,
)
from intake_crm.db.models import Call, Contact, Interaction, Lead, Message, PhoneNumber
from intake_crm.services.telephony.errors import IngestionFailed
from intake_crm.services.telephony.events import InboundCallEvent, InboundMessageEvent
from intake_crm.utils.normalization import mask_phone
from intake_crm.utils.time import now_utc

logger = logging.getLogger(__name__)

PLACEHOLDER_NAMES = {
    Channel.CALL: "Unknown Caller",
    Channel.SMS: "Unknown Sender",
}

_LEAD_DEFAULTS = {
    Channel.CALL: (LeadSource.PHONE, LeadPriority.HIGH),
    Channel.SMS: (LeadSource.SMS, LeadPriority.MEDIUM),
}


@dataclass
class ConversationResult:
    contact: Contact | None
    lead: Lead
    interaction: Interaction
    call: Call | None = None
    message: Message | None = None
    is_new_lead: bool = False
    is_duplicate: bool = False

    @property
    def org_id(self) -> UUID:
        return self.lead.organization_id


# =============================================================================
# Find-or-create steps
# =============================================================================

def find_or_create_contact(
    db: Session,
    org_id: UUID,
    phone: str,
    name: str | None,
    channel: Channel,
) -> Contact:
    """Contact keyed by (org_id, primary_phone); never by phone alone."""
    contact = db.query(Contact).filter(
        Contact.organization_id == org_id,
        Contact.primary_phone == phone,
    ).first()
    if contact:
        # Upgrade a placeholder once the provider tells us who is calling
        if name and contact.name in PLACEHOLDER_NAMES.values():
            contact.name = name
        return contact

    contact = Contact(
        organization_id=org_id,
        primary_phone=phone,
        name=name or PLACEHOLDER_NAMES[channel],
    )
    try:
        with db.begin_nested():
            db.add(contact)
    except IntegrityError:
        contact = db.query(Contact).filter(
            Contact.organization_id == org_id,
            Contact.primary_phone == phone,
        ).one()
    return contact


def find_open_lead(db: Session, org_id: UUID, contact_id: UUID) -> Lead | None:
    return (
        db.query(Lead)
        .filter(
            Lead.organization_id == org_id,
            Lead.contact_id == contact_id,
            Lead.status.in_([status.value for status in OPEN_LEAD_STATUSES]),
        )
        .order_by(Lead.created_at.desc())
        .first()
    )


def find_or_create_lead(
    db: Session,
    org_id: UUID,
    contact_id: UUID,
    channel: Channel,
) -> tuple[Lead, bool]:
    """Reuse the contact's open lead, or open a new one. Returns (lead, created)."""
    lead = find_open_lead(db, org_id, contact_id)
    if lead:
        return lead, False

    source, priority = _LEAD_DEFAULTS[channel]
    lead = Lead(
        organization_id=org_id,
        contact_id=contact_id,
        source=source.value,
        status=LeadStatus.NEW.value,
        priority=priority.value,
    )
    try:
        with db.begin_nested():
            db.add(lead)
    except IntegrityError:
        # Another webhook opened a lead for this contact first
        lead = find_open_lead(db, org_id, contact_id)
        if lead is None:
            raise
        return lead, False
    return lead, True


def find_active_sms_interaction(db: Session, org_id: UUID, lead_id: UUID) -> Interaction | None:
    return (
        db.query(Interaction)
        .filter(
            Interaction.organization_id == org_id,
            Interaction.lead_id == lead_id,
            Interaction.channel == Channel.SMS.value,
            Interaction.status == InteractionStatus.ACTIVE.value,
        )
        .order_by(Interaction.started_at.desc())
        .first()
    )


def get_call_by_provider_id(db: Session, org_id: UUID, provider: str, provider_call_id: str) -> Call | None:
    return db.query(Call).filter(
        Call.organization_id == org_id,
        Call.provider == provider,
        Call.provider_call_id == provider_call_id,
    ).first()


def get_message_by_provider_id(db: Session, org_id: UUID, provider: str, provider_message_id: str) -> Message | None:
    return db.query(Message).filter(
        Message.organization_id == org_id,
        Message.provider == provider,
        Message.provider_message_id == provider_message_id,
    ).first()


def _get_scoped(db: Session, model, org_id: UUID, record_id: UUID | None):
    if record_id is None:
        return None
    return db.query(model).filter(model.id == record_id, model.organization_id == org_id).first()


def _duplicate_of_call(db: Session, call: Call) -> ConversationResult:
    org_id = call.organization_id
    lead = _get_scoped(db, Lead, org_id, call.lead_id)
    return ConversationResult(
        contact=_get_scoped(db, Contact, org_id, lead.contact_id) if lead else None,
        lead=lead,
        interaction=_get_scoped(db, Interaction, org_id, call.interaction_id),
        call=call,
        is_duplicate=True,
    )


def _duplicate_of_message(db: Session, message: Message) -> ConversationResult:
    org_id = message.organization_id
    lead = _get_scoped(db, Lead, org_id, message.lead_id)
    return ConversationResult(
        contact=_get_scoped(db, Contact, org_id, lead.contact_id) if lead else None,
        lead=lead,
        interaction=_get_scoped(db, Interaction, org_id, message.interaction_id),
        message=message,
        is_duplicate=True,
    )


# =============================================================================
# Upsert
# =============================================================================

def upsert_conversation(
    db: Session,
    *,
    org_id: UUID,
    channel: Channel,
    contact_phone: str,
    contact_name: str | None,
    find_existing: Callable[[], Call | Message | None],
    build_record: Callable[[Lead, Interaction], Call | Message],
    interaction_metadata: dict | None = None,
) -> ConversationResult:
    """
    Idempotently materialize a conversation for one provider event.

    find_existing is the idempotency gate on (provider, provider id) and is
    checked before any write. build_record creates the Call/Message row once
    the lead and interaction exist.

    Raises:
        IngestionFailed: persistence failed; nothing was committed
    """
    on_duplicate = _duplicate_of_call if channel == Channel.CALL else _duplicate_of_message

    existing = find_existing()
    if existing is not None:
        return on_duplicate(db, existing)

    try:
        contact = find_or_create_contact(db, org_id, contact_phone, contact_name, channel)
        lead, is_new_lead = find_or_create_lead(db, org_id, contact.id, channel)

        interaction = None
        if channel == Channel.SMS:
            interaction = find_active_sms_interaction(db, org_id, lead.id)
        if interaction is None:
            interaction = Interaction(
                organization_id=org_id,
                lead_id=lead.id,
                channel=channel.value,
                status=InteractionStatus.ACTIVE.value,
                started_at=now_utc(),
                metadata_json=interaction_metadata,
            )
            db.add(interaction)
            db.flush()

        record = build_record(lead, interaction)
        try:
            with db.begin_nested():
                db.add(record)
        except IntegrityError:
            # Concurrent delivery of the same provider event won the insert
            db.rollback()
            existing = find_existing()
            if existing is None:
                raise
            return on_duplicate(db, existing)

        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(
            "Conversation upsert failed org=%s channel=%s from=%s",
            org_id,
            channel.value,
            mask_phone(contact_phone),
        )
        raise IngestionFailed(str(exc)) from exc

    call = record if isinstance(record, Call) else None
    message = record if isinstance(record, Message) else None
    return ConversationResult(
        contact=contact,
        lead=lead,
        interaction=interaction,
        call=call,
        message=message,
        is_new_lead=is_new_lead,
    )


def upsert_inbound_call(
    db: Session,
    phone_number: PhoneNumber,
    event: InboundCallEvent,
) -> ConversationResult:
    """Materialize the conversation for a new inbound (or provider-originated outbound) call."""
    org_id = phone_number.organization_id

    def build_call(lead: Lead, interaction: Interaction) -> Call:
        return Call(
            organization_id=org_id,
            interaction_id=interaction.id,
            lead_id=lead.id,
            phone_number_id=phone_number.id,
            provider=event.provider,
            provider_call_id=event.provider_call_id,
            secondary_call_id=event.secondary_call_id,
            direction=event.direction,
            status=event.status,
            from_e164=event.from_e164,
            to_e164=event.to_e164,
            started_at=now_utc(),
            transcript_json={"inboundPayload": event.raw},
            last_webhook_received_at=now_utc(),
        )

    return upsert_conversation(
        db,
        org_id=org_id,
        channel=Channel.CALL,
        contact_phone=event.from_e164,
        contact_name=event.caller_name,
        find_existing=lambda: get_call_by_provider_id(db, org_id, event.provider, event.provider_call_id),
        build_record=build_call,
        interaction_metadata={
            "provider": event.provider,
            "providerCallId": event.provider_call_id,
            "phoneNumberId": str(phone_number.id),
        },
    )


def upsert_inbound_message(
    db: Session,
    phone_number: PhoneNumber,
    event: InboundMessageEvent,
) -> ConversationResult:
    """Materialize the conversation for an inbound SMS."""
    org_id = phone_number.organization_id

    def build_message(lead: Lead, interaction: Interaction) -> Message:
        return Message(
            organization_id=org_id,
            interaction_id=interaction.id,
            lead_id=lead.id,
            provider=event.provider,
            provider_message_id=event.provider_message_id,
            direction="inbound",
            from_e164=event.from_e164,
            to_e164=event.to_e164,
            body=event.body,
        )

    return upsert_conversation(
        db,
        org_id=org_id,
        channel=Channel.SMS,
        contact_phone=event.from_e164,
        contact_name=event.sender_name,
        find_existing=lambda: get_message_by_provider_id(db, org_id, event.provider, event.provider_message_id),
        build_record=build_message,
        interaction_metadata={"provider": event.provider, "phoneNumberId": str(phone_number.id)},
    )
