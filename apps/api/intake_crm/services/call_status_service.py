"""
Call-status state machine.

queued → ringing → in-progress → {completed, busy, no-answer, canceled, failed}

Status only moves forward; terminal states absorb. Late or duplicate
callbacks still refresh cached payload data but never re-fire terminal
side effects.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from intake_crm.db.enums import TERMINAL_CALL_STATUSES, CallStatus, InteractionStatus
from intake_crm.db.models import Call, Interaction
from intake_crm.services.telephony.errors import CallNotFound
from intake_crm.services.telephony.events import CallStatusEvent, RecordingEvent
from intake_crm.services.telephony.status import calculate_duration_seconds, derive_outcome
from intake_crm.utils.time import as_utc, now_utc

logger = logging.getLogger(__name__)

_RANK = {
    CallStatus.QUEUED.value: 0,
    CallStatus.RINGING.value: 1,
    CallStatus.IN_PROGRESS.value: 2,
}
_TERMINAL_RANK = 3
_TERMINAL_VALUES = {status.value for status in TERMINAL_CALL_STATUSES}


def is_terminal(status: str | None) -> bool:
    return status in _TERMINAL_VALUES


def _rank(status: str | None) -> int:
    if is_terminal(status):
        return _TERMINAL_RANK
    return _RANK.get(status or "", -1)


@dataclass
class StatusUpdateResult:
    call: Call
    previous_status: str
    transitioned: bool
    became_terminal: bool

    @property
    def completed_now(self) -> bool:
        """True only on the first transition into completed."""
        return self.became_terminal and self.call.status == CallStatus.COMPLETED.value


def find_call(
    db: Session,
    provider: str,
    provider_call_id: str,
    secondary_call_id: str | None = None,
    org_id: UUID | None = None,
) -> Call:
    """
    Match a callback to an existing call by provider id, falling back to the
    provider's secondary id. Both ids are tried in both columns since some
    providers swap which one they send across the call lifecycle.

    The row is locked until the caller commits so duplicate callbacks
    serialize on it, and reloaded so the status read is never stale.

    Raises:
        CallNotFound
    """
    ids = [value for value in (provider_call_id, secondary_call_id) if value]
    for column in (Call.provider_call_id, Call.secondary_call_id):
        for value in ids:
            query = db.query(Call).filter(Call.provider == provider, column == value)
            if org_id is not None:
                query = query.filter(Call.organization_id == org_id)
            call = query.with_for_update().populate_existing().first()
            if call:
                return call
    raise CallNotFound(provider, provider_call_id)


def _cache_payload(call: Call, key: str, payload: dict) -> None:
    # Reassign so the JSON column is flagged dirty
    call.transcript_json = {**(call.transcript_json or {}), key: payload}
    call.last_webhook_received_at = now_utc()


def apply_status_event(db: Session, event: CallStatusEvent, org_id: UUID | None = None) -> StatusUpdateResult:
    """
    Advance a call from a provider status callback and commit.

    Raises:
        CallNotFound: callback for a call that was never ingested
    """
    call = find_call(db, event.provider, event.provider_call_id, event.secondary_call_id, org_id=org_id)
    previous = call.status
    already_terminal = is_terminal(previous)

    _cache_payload(call, "statusPayload", event.raw)

    # Enrichment is accepted at any point, including after the call ended
    if event.secondary_call_id and not call.secondary_call_id and event.secondary_call_id != call.provider_call_id:
        call.secondary_call_id = event.secondary_call_id
    if event.recording_url:
        call.recording_url = event.recording_url
    if event.transcript_text:
        call.transcript_text = event.transcript_text
    if event.transcript_turns:
        call.transcript_json = {**(call.transcript_json or {}), "turns": event.transcript_turns}
    if event.summary:
        call.ai_summary = event.summary
    if event.end_reason:
        call.end_reason = event.end_reason[:100]
    if event.structured_data:
        call.transcript_json = {**(call.transcript_json or {}), "structuredData": event.structured_data}
    if event.duration_seconds is not None and event.duration_seconds >= 0:
        call.duration_seconds = event.duration_seconds

    transitioned = False
    became_terminal = False
    new_status = event.status
    if new_status and not already_terminal and _rank(new_status) > _rank(previous):
        call.status = new_status
        transitioned = True
        if is_terminal(new_status):
            became_terminal = True
            _enter_terminal(db, call, event.duration_seconds)
    elif new_status and new_status != previous:
        logger.info(
            "Ignoring out-of-order status %s for call %s (currently %s)",
            new_status,
            call.id,
            previous,
        )

    if already_terminal and call.outcome:
        # A late transcript can upgrade completed → connected
        call.outcome = derive_outcome(call.status, bool(call.transcript_text)) or call.outcome

    db.commit()
    db.refresh(call)
    return StatusUpdateResult(
        call=call,
        previous_status=previous,
        transitioned=transitioned,
        became_terminal=became_terminal,
    )


def _enter_terminal(db: Session, call: Call, provided_duration: int | None) -> None:
    """Stamp ended_at once and close the interaction at the same instant."""
    ended_at = as_utc(call.ended_at) or now_utc()
    call.ended_at = ended_at
    call.duration_seconds = calculate_duration_seconds(
        provided_duration if provided_duration is not None else call.duration_seconds,
        as_utc(call.started_at),
        ended_at,
    )
    call.outcome = derive_outcome(call.status, bool(call.transcript_text))

    interaction = db.get(Interaction, call.interaction_id)
    if interaction and interaction.status != InteractionStatus.COMPLETED.value:
        interaction.status = InteractionStatus.COMPLETED.value
        interaction.ended_at = ended_at


def apply_recording_event(db: Session, event: RecordingEvent, org_id: UUID | None = None) -> Call:
    """
    Attach a recording to an existing call and commit.

    Raises:
        CallNotFound
    """
    call = find_call(db, event.provider, event.provider_call_id, org_id=org_id)
    _cache_payload(call, "recordingPayload", event.raw)
    call.recording_url = event.recording_url
    db.commit()
    db.refresh(call)
    return call


def call_completed_payload(call: Call) -> dict:
    """Payload for the call.completed outbound event."""
    return {
        "callId": str(call.id),
        "leadId": str(call.lead_id),
        "direction": call.direction,
        "durationSeconds": call.duration_seconds,
        "status": call.status,
    }
