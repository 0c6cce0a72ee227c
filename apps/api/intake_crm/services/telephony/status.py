"""Provider call-status vocabularies mapped onto canonical call states."""

import math
from datetime import datetime

from intake_crm.db.enums import CallOutcome, CallStatus

_TWILIO_STATUS = {
    "queued": CallStatus.QUEUED,
    "initiated": CallStatus.QUEUED,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.IN_PROGRESS,
    "answered": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.BUSY,
    "failed": CallStatus.FAILED,
    "no-answer": CallStatus.NO_ANSWER,
    "canceled": CallStatus.CANCELED,
}

_PLIVO_STATUS = {
    "ring": CallStatus.RINGING,
    "ringing": CallStatus.RINGING,
    "early_media": CallStatus.RINGING,
    "answer": CallStatus.IN_PROGRESS,
    "answered": CallStatus.IN_PROGRESS,
    "in-progress": CallStatus.IN_PROGRESS,
    "hangup": CallStatus.COMPLETED,
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.BUSY,
    "cancel": CallStatus.CANCELED,
    "canceled": CallStatus.CANCELED,
    "cancelled": CallStatus.CANCELED,
    "timeout": CallStatus.NO_ANSWER,
    "no-answer": CallStatus.NO_ANSWER,
    "failed": CallStatus.FAILED,
}

_VAPI_STATUS = {
    "scheduled": CallStatus.QUEUED,
    "queued": CallStatus.QUEUED,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.IN_PROGRESS,
    "forwarding": CallStatus.IN_PROGRESS,
}


def map_twilio_status(value: str | None) -> CallStatus | None:
    if not value:
        return None
    return _TWILIO_STATUS.get(value.strip().lower())


def map_plivo_status(value: str | None) -> CallStatus | None:
    if not value:
        return None
    return _PLIVO_STATUS.get(value.strip().lower())


def map_vapi_status(value: str | None, ended_reason: str | None = None) -> CallStatus | None:
    """Vapi reports 'ended' plus a free-form endedReason; derive the terminal state from it."""
    if not value:
        return None
    value = value.strip().lower()
    if value != "ended":
        return _VAPI_STATUS.get(value)
    return map_ended_reason(ended_reason)


def map_ended_reason(reason: str | None) -> CallStatus:
    reason = (reason or "").lower()
    if "busy" in reason:
        return CallStatus.BUSY
    if "did-not-answer" in reason or "no-answer" in reason or "voicemail" in reason:
        return CallStatus.NO_ANSWER
    if "error" in reason or "failed" in reason:
        return CallStatus.FAILED
    return CallStatus.COMPLETED


def calculate_duration_seconds(
    provided: int | None,
    started_at: datetime | None,
    ended_at: datetime | None,
) -> int | None:
    """Prefer the provider's duration; otherwise derive it from timestamps."""
    if provided is not None and provided >= 0:
        return provided
    if not started_at or not ended_at:
        return None
    return max(0, math.floor((ended_at - started_at).total_seconds()))


def derive_outcome(status: str, has_transcript: bool = False) -> str | None:
    """Business outcome for a terminal call state."""
    if status == CallStatus.COMPLETED:
        return CallOutcome.CONNECTED.value if has_transcript else CallOutcome.COMPLETED.value
    if status == CallStatus.BUSY:
        return CallOutcome.BUSY.value
    if status in (CallStatus.NO_ANSWER, CallStatus.CANCELED):
        return CallOutcome.NO_ANSWER.value
    if status == CallStatus.FAILED:
        return CallOutcome.FAILED.value
    return None


def parse_int(value) -> int | None:
    """Lenient integer parse for form-encoded numeric fields."""
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None
