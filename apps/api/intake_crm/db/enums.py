"""Enum definitions for application constants."""

from enum import Enum


class Role(str, Enum):
    """
    User roles with increasing privilege levels.

    - STAFF: Intake staff (answer calls, work leads)
    - ATTORNEY: Reviews and overrides qualification
    - ADMIN: Firm admin (phone numbers, on-call, webhooks)
    """
    STAFF = "staff"
    ATTORNEY = "attorney"
    ADMIN = "admin"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_


ROLES_CAN_MANAGE_INTEGRATIONS = {Role.ADMIN}
ROLES_CAN_OVERRIDE_QUALIFICATION = {Role.ATTORNEY, Role.ADMIN}


class LeadStatus(str, Enum):
    """
    Lead lifecycle.

    new → in_progress/engaged → intake_started → qualified/unqualified/disqualified → closed
    """
    NEW = "new"
    IN_PROGRESS = "in_progress"
    ENGAGED = "engaged"
    INTAKE_STARTED = "intake_started"
    QUALIFIED = "qualified"
    UNQUALIFIED = "unqualified"
    DISQUALIFIED = "disqualified"
    CLOSED = "closed"


# Inbound contact events reuse a lead in one of these statuses
OPEN_LEAD_STATUSES = {
    LeadStatus.NEW,
    LeadStatus.IN_PROGRESS,
    LeadStatus.ENGAGED,
    LeadStatus.INTAKE_STARTED,
}


class LeadSource(str, Enum):
    PHONE = "phone"
    SMS = "sms"
    WEB = "web"
    REFERRAL = "referral"


class LeadPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Channel(str, Enum):
    """Interaction channel."""
    CALL = "call"
    SMS = "sms"


class InteractionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class CallStatus(str, Enum):
    """Canonical call states across all telephony providers."""
    QUEUED = "queued"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"
    FAILED = "failed"


TERMINAL_CALL_STATUSES = {
    CallStatus.COMPLETED,
    CallStatus.BUSY,
    CallStatus.NO_ANSWER,
    CallStatus.CANCELED,
    CallStatus.FAILED,
}


class CallOutcome(str, Enum):
    CONNECTED = "connected"
    COMPLETED = "completed"
    VOICEMAIL = "voicemail"
    NO_ANSWER = "no-answer"
    BUSY = "busy"
    FAILED = "failed"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class TelephonyProvider(str, Enum):
    TWILIO = "twilio"
    PLIVO = "plivo"
    ELEVENLABS = "elevenlabs"
    VAPI = "vapi"
    OPENAI = "openai"


class IntakeCompletion(str, Enum):
    NOT_STARTED = "not_started"
    PARTIAL = "partial"
    COMPLETE = "complete"


class Disposition(str, Enum):
    """Qualification outcome."""
    ACCEPT = "accept"
    REVIEW = "review"
    DECLINE = "decline"


class WebhookEventType(str, Enum):
    """Events org endpoints may subscribe to."""
    CALL_STARTED = "call.started"
    CALL_COMPLETED = "call.completed"
    LEAD_CREATED = "lead.created"
    MESSAGE_RECEIVED = "message.received"
    QUALIFICATION_UPDATED = "qualification.updated"

    @classmethod
    def has_value(cls, value: str) -> bool:
        return value in cls._value2member_map_


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class IngestionOutcomeStatus(str, Enum):
    PERSISTED = "persisted"
    FAILED = "failed"
    SKIPPED = "skipped"


class DevicePlatform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class RoutingTarget(str, Enum):
    """Who receives a new-call notification."""
    SINGLE_USER = "single_user"
    ORG_BROADCAST = "org_broadcast"


class AlertType(str, Enum):
    """Types of system alerts."""
    ONCALL_NOT_CONFIGURED = "oncall_not_configured"
    TENANT_NOT_FOUND = "tenant_not_found"
    INGESTION_FAILED = "ingestion_failed"
    WEBHOOK_DELIVERY_FAILED = "webhook_delivery_failed"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class AlertStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class AuditEventType(str, Enum):
    """Audit trail event types."""
    INBOUND_CALL_RECEIVED = "inbound_call_received"
    INBOUND_SMS_RECEIVED = "inbound_sms_received"
    CALL_STATUS_UPDATED = "call_status_updated"
    RECORDING_RECEIVED = "recording_received"
    QUALIFICATION_RUN = "qualification_run"
    QUALIFICATION_OVERRIDE = "qualification_override"
    WEBHOOK_ENDPOINT_CREATED = "webhook_endpoint_created"
    WEBHOOK_ENDPOINT_UPDATED = "webhook_endpoint_updated"
    WEBHOOK_ENDPOINT_DELETED = "webhook_endpoint_deleted"
    WEBHOOK_SECRET_ROTATED = "webhook_secret_rotated"
    ONCALL_UPDATED = "oncall_updated"
