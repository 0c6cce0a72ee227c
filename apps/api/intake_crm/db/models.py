"""SQLAlchemy ORM models for the intake CRM."""

import uuid
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from intake_crm.db.base import Base
from intake_crm.utils.time import now_utc


# =============================================================================
# Tenancy
# =============================================================================

class Organization(Base):
    """
    Tenant root (a law firm).

    on_call_user_id and primary_phone_number_id are plain pointers, not FKs:
    a stale on-call pointer is detected and cleared on read.
    """
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    timezone: Mapped[str] = mapped_column(
        String(50), default="America/New_York", server_default=text("'America/New_York'")
    )
    on_call_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    primary_phone_number_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=now_utc, server_default=func.now(), onupdate=now_utc
    )


class User(Base):
    """Staff member belonging to exactly one organization."""
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("organization_id", "email", name="uq_users_org_email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(50), default="staff", server_default=text("'staff'"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    token_version: Mapped[int] = mapped_column(Integer, default=1, server_default=text("1"))
    created_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())

    organization: Mapped["Organization"] = relationship()


class PhoneNumber(Base):
    """
    Provisioned E.164 number. The sole tenant-resolution key for inbound events.
    """
    __tablename__ = "phone_numbers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    label: Mapped[str | None] = mapped_column(String(100), nullable=True)
    e164: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    provider: Mapped[str] = mapped_column(String(20), default="twilio", server_default=text("'twilio'"))
    provider_sid: Mapped[str | None] = mapped_column(String(100), nullable=True)
    inbound_enabled: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    on_call_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())


class DeviceToken(Base):
    """Expo push token registered by a user's mobile app."""
    __tablename__ = "device_tokens"
    __table_args__ = (
        UniqueConstraint("token", name="uq_device_tokens_token"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(String(255), nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())
    last_used_at: Mapped[datetime | None] = mapped_column(nullable=True)


# =============================================================================
# Contacts, Leads, Intake
# =============================================================================

class Contact(Base):
    """Caller/sender identity, keyed by (organization_id, primary_phone)."""
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("organization_id", "primary_phone", name="uq_contacts_org_phone"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    primary_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    primary_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())


class PracticeArea(Base):
    __tablename__ = "practice_areas"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))


class Lead(Base):
    """
    Case-intake opportunity.

    score/disposition are a cache of the lead's Qualification record and are
    only written alongside it.
    """
    __tablename__ = "leads"
    __table_args__ = (
        Index("ix_leads_org_contact_created", "organization_id", "contact_id", "created_at"),
        # At most one open lead per contact
        Index(
            "uq_leads_open_per_contact",
            "organization_id",
            "contact_id",
            unique=True,
            postgresql_where=text("status IN ('new', 'in_progress', 'engaged', 'intake_started')"),
            sqlite_where=text("status IN ('new', 'in_progress', 'engaged', 'intake_started')"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="new", server_default=text("'new'"))
    priority: Mapped[str] = mapped_column(String(10), default="medium", server_default=text("'medium'"))
    practice_area_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("practice_areas.id", ondelete="SET NULL"), nullable=True
    )
    incident_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    incident_location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    disposition: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=now_utc, server_default=func.now(), onupdate=now_utc
    )

    contact: Mapped["Contact"] = relationship()


class Intake(Base):
    """Structured intake questionnaire for a lead."""
    __tablename__ = "intakes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leads.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    completion_status: Mapped[str] = mapped_column(
        String(20), default="not_started", server_default=text("'not_started'")
    )
    answers: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())


# =============================================================================
# Interactions: calls and messages
# =============================================================================

class Interaction(Base):
    """One communication session on a lead (a call, or a burst of SMS)."""
    __tablename__ = "interactions"
    __table_args__ = (
        Index("ix_interactions_lead_channel_status", "lead_id", "channel", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False
    )
    channel: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", server_default=text("'active'"))
    started_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())
    ended_at: Mapped[datetime | None] = mapped_column(nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)


class Call(Base):
    """
    One telephony call, 1:1 with an Interaction.

    (provider, provider_call_id) is the idempotency key for provider webhooks.
    secondary_call_id holds a second provider-assigned id (e.g. an AI
    conversation id) used as a lookup fallback for status callbacks.
    """
    __tablename__ = "calls"
    __table_args__ = (
        UniqueConstraint("provider", "provider_call_id", name="uq_calls_provider_call_id"),
        Index("ix_calls_provider_secondary", "provider", "secondary_call_id"),
        Index("ix_calls_org_started", "organization_id", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    interaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("interactions.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False
    )
    phone_number_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("phone_numbers.id", ondelete="SET NULL"), nullable=True
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_call_id: Mapped[str] = mapped_column(String(255), nullable=False)
    secondary_call_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    direction: Mapped[str] = mapped_column(String(10), default="inbound", server_default=text("'inbound'"))
    status: Mapped[str] = mapped_column(String(20), default="ringing", server_default=text("'ringing'"))
    from_e164: Mapped[str] = mapped_column(String(20), nullable=False)
    to_e164: Mapped[str] = mapped_column(String(20), nullable=False)
    started_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())
    ended_at: Mapped[datetime | None] = mapped_column(nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recording_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    transcript_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    transcript_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    ai_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    end_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_webhook_received_at: Mapped[datetime | None] = mapped_column(nullable=True)

    interaction: Mapped["Interaction"] = relationship()


class Message(Base):
    """One SMS on an sms Interaction."""
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("provider", "provider_message_id", name="uq_messages_provider_message_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    interaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("interactions.id", ondelete="CASCADE"), nullable=False
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), default="inbound", server_default=text("'inbound'"))
    from_e164: Mapped[str] = mapped_column(String(20), nullable=False)
    to_e164: Mapped[str] = mapped_column(String(20), nullable=False)
    body: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())


# =============================================================================
# Qualification
# =============================================================================

class Qualification(Base):
    """Latest qualification result for a lead. Source of truth for Lead.score/disposition."""
    __tablename__ = "qualifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leads.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    disposition: Mapped[str] = mapped_column(String(20), default="review", server_default=text("'review'"))
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    reasons: Mapped[dict] = mapped_column(JSON, nullable=False)
    qualified_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=now_utc, server_default=func.now(), onupdate=now_utc
    )


# =============================================================================
# Outbound webhooks
# =============================================================================

class OutgoingWebhookEndpoint(Base):
    """Org-registered receiver for lifecycle events. Secret is Fernet-encrypted."""
    __tablename__ = "outgoing_webhook_endpoints"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    events: Mapped[list] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=now_utc, server_default=func.now(), onupdate=now_utc
    )


class OutgoingWebhookDelivery(Base):
    """One event delivery to one endpoint, with its retry state."""
    __tablename__ = "outgoing_webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_endpoint_created", "endpoint_id", "created_at"),
        Index("ix_webhook_deliveries_status", "status"),
        CheckConstraint("attempt_count <= max_attempts", name="ck_webhook_deliveries_attempts"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    endpoint_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("outgoing_webhook_endpoints.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", server_default=text("'pending'"))
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, server_default=text("3"))
    last_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())

    endpoint: Mapped["OutgoingWebhookEndpoint"] = relationship()


# =============================================================================
# Ops: audit, ingestion outcomes, alerts
# =============================================================================

class AuditLog(Base):
    """
    Audit trail of ingestion and admin events.

    Never stores secrets. Phone numbers in details are masked.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_org_created", "organization_id", "created_at"),
        Index("idx_audit_org_event_created", "organization_id", "event_type", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True  # System events have no actor
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    target_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())


class IngestionOutcome(Base):
    """
    Diagnostic record of every provider webhook and what became of it.

    organization_id is null when the tenant could not be resolved.
    payload is only kept for events that were not persisted.
    """
    __tablename__ = "ingestion_outcomes"
    __table_args__ = (
        Index("ix_ingestion_outcomes_org_created", "organization_id", "created_at"),
        Index("ix_ingestion_outcomes_provider_external", "provider", "external_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())


class SystemAlert(Base):
    """
    Deduplicated actionable alerts.

    Alerts are grouped by dedupe_key (fingerprint hash).
    Occurrence count tracks how many times the same issue occurred.
    """
    __tablename__ = "system_alerts"
    __table_args__ = (
        Index("ix_system_alerts_org_status", "organization_id", "status", "severity"),
        UniqueConstraint("organization_id", "dedupe_key", name="uq_system_alerts_dedupe"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    dedupe_key: Mapped[str] = mapped_column(String(64), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), default="error", server_default=text("'error'"))
    status: Mapped[str] = mapped_column(String(20), default="open", server_default=text("'open'"))
    first_seen_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(default=now_utc, server_default=func.now())
    occurrence_count: Mapped[int] = mapped_column(Integer, default=1, server_default=text("1"))
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
