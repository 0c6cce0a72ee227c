"""Twilio voice/status/recording/SMS callbacks (form-encoded)."""

from __future__ import annotations

from typing import Any, Mapping

from intake_crm.db.enums import Direction, TelephonyProvider
from intake_crm.services.telephony.errors import UnsupportedEvent
from intake_crm.services.telephony.events import (
    CallStatusEvent,
    InboundCallEvent,
    InboundMessageEvent,
    NormalizedEvent,
    RecordingEvent,
)
from intake_crm.services.telephony.providers.base import (
    EventKind,
    extract_display_name,
    optional,
    owned_candidates,
    require,
    require_phone,
    to_candidates,
)
from intake_crm.services.telephony.status import map_twilio_status, parse_int

PROVIDER = TelephonyProvider.TWILIO.value


def _is_outbound(payload: Mapping[str, Any]) -> bool:
    return (payload.get("Direction") or "").startswith("outbound")


class TwilioAdapter:
    name = PROVIDER

    def normalize(self, payload: Mapping[str, Any], kind: EventKind | None = None) -> NormalizedEvent:
        if kind == EventKind.VOICE:
            return self._voice(payload)
        if kind == EventKind.STATUS:
            return self._status(payload)
        if kind == EventKind.RECORDING:
            return self._recording(payload)
        if kind == EventKind.SMS:
            return self._sms(payload)
        if kind == EventKind.TRANSCRIPTION:
            return self._transcription(payload)
        raise UnsupportedEvent(PROVIDER, kind.value if kind else None)

    def _voice(self, payload: Mapping[str, Any]) -> InboundCallEvent:
        call_sid = require(PROVIDER, payload, "CallSid")
        raw_to = require(PROVIDER, payload, "To", "Called")
        from_e164 = require_phone(PROVIDER, "From", optional(payload, "From", "Caller"))
        to_e164 = require_phone(PROVIDER, "To", raw_to)
        direction = (
            Direction.OUTBOUND.value
            if _is_outbound(payload)
            else Direction.INBOUND.value
        )
        status = map_twilio_status(payload.get("CallStatus"))
        return InboundCallEvent(
            provider=PROVIDER,
            provider_call_id=call_sid,
            from_e164=from_e164,
            to_e164=to_e164,
            to_candidates=to_candidates(raw_to),
            direction=direction,
            status=status.value if status else "ringing",
            caller_name=extract_display_name(payload),
            raw=dict(payload),
        )

    def _status(self, payload: Mapping[str, Any]) -> CallStatusEvent:
        call_sid = require(PROVIDER, payload, "CallSid")
        status = map_twilio_status(payload.get("CallStatus"))
        return CallStatusEvent(
            provider=PROVIDER,
            provider_call_id=call_sid,
            status=status.value if status else None,
            duration_seconds=parse_int(payload.get("CallDuration")),
            recording_url=optional(payload, "RecordingUrl"),
            owned_candidates=owned_candidates(payload, _is_outbound(payload)),
            raw=dict(payload),
        )

    def _recording(self, payload: Mapping[str, Any]) -> RecordingEvent:
        return RecordingEvent(
            provider=PROVIDER,
            provider_call_id=require(PROVIDER, payload, "CallSid"),
            recording_url=require(PROVIDER, payload, "RecordingUrl"),
            duration_seconds=parse_int(payload.get("RecordingDuration")),
            owned_candidates=owned_candidates(payload, _is_outbound(payload)),
            raw=dict(payload),
        )

    def _sms(self, payload: Mapping[str, Any]) -> InboundMessageEvent:
        message_sid = require(PROVIDER, payload, "MessageSid", "SmsSid")
        raw_to = require(PROVIDER, payload, "To")
        return InboundMessageEvent(
            provider=PROVIDER,
            provider_message_id=message_sid,
            from_e164=require_phone(PROVIDER, "From", optional(payload, "From")),
            to_e164=require_phone(PROVIDER, "To", raw_to),
            to_candidates=to_candidates(raw_to),
            body=payload.get("Body") or "",
            raw=dict(payload),
        )

    def _transcription(self, payload: Mapping[str, Any]) -> CallStatusEvent:
        """<Record transcribe> callback: carries the transcript but no call status."""
        return CallStatusEvent(
            provider=PROVIDER,
            provider_call_id=require(PROVIDER, payload, "CallSid"),
            recording_url=optional(payload, "RecordingUrl"),
            transcript_text=optional(payload, "TranscriptionText"),
            owned_candidates=owned_candidates(payload, _is_outbound(payload)),
            raw=dict(payload),
        )
