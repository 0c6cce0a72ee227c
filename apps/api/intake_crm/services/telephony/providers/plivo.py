"""Plivo answer/hangup/recording/message callbacks (form-encoded)."""

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
from intake_crm.services.telephony.status import map_plivo_status, parse_int

PROVIDER = TelephonyProvider.PLIVO.value


class PlivoAdapter:
    name = PROVIDER

    def normalize(self, payload: Mapping[str, Any], kind: EventKind | None = None) -> NormalizedEvent:
        if kind == EventKind.VOICE:
            return self._answer(payload)
        if kind == EventKind.STATUS:
            return self._hangup(payload)
        if kind == EventKind.RECORDING:
            return self._recording(payload)
        if kind == EventKind.SMS:
            return self._message(payload)
        raise UnsupportedEvent(PROVIDER, kind.value if kind else None)

    def _answer(self, payload: Mapping[str, Any]) -> InboundCallEvent:
        call_uuid = require(PROVIDER, payload, "CallUUID")
        raw_to = require(PROVIDER, payload, "To")
        direction = (
            Direction.OUTBOUND.value
            if (payload.get("Direction") or "").lower() == "outbound"
            else Direction.INBOUND.value
        )
        status = map_plivo_status(payload.get("CallStatus"))
        return InboundCallEvent(
            provider=PROVIDER,
            provider_call_id=call_uuid,
            from_e164=require_phone(PROVIDER, "From", optional(payload, "From")),
            to_e164=require_phone(PROVIDER, "To", raw_to),
            to_candidates=to_candidates(raw_to),
            direction=direction,
            status=status.value if status else "ringing",
            caller_name=extract_display_name(payload),
            raw=dict(payload),
        )

    def _hangup(self, payload: Mapping[str, Any]) -> CallStatusEvent:
        call_uuid = require(PROVIDER, payload, "CallUUID")
        # Hangup callbacks may omit CallStatus entirely
        raw_status = payload.get("CallStatus") or ("hangup" if payload.get("HangupCause") else None)
        status = map_plivo_status(raw_status)
        duration = parse_int(payload.get("Duration"))
        if duration is None:
            duration = parse_int(payload.get("BillDuration"))
        return CallStatusEvent(
            provider=PROVIDER,
            provider_call_id=call_uuid,
            status=status.value if status else None,
            secondary_call_id=optional(payload, "RequestUUID"),
            duration_seconds=duration,
            recording_url=optional(payload, "RecordUrl", "RecordingUrl"),
            end_reason=optional(payload, "HangupCause", "HangupCauseName"),
            owned_candidates=owned_candidates(payload, (payload.get("Direction") or "").lower() == "outbound"),
            raw=dict(payload),
        )

    def _recording(self, payload: Mapping[str, Any]) -> RecordingEvent:
        return RecordingEvent(
            provider=PROVIDER,
            provider_call_id=require(PROVIDER, payload, "CallUUID"),
            recording_url=require(PROVIDER, payload, "RecordUrl", "RecordingUrl"),
            duration_seconds=parse_int(payload.get("RecordingDuration")),
            raw=dict(payload),
        )

    def _message(self, payload: Mapping[str, Any]) -> InboundMessageEvent:
        raw_to = require(PROVIDER, payload, "To")
        return InboundMessageEvent(
            provider=PROVIDER,
            provider_message_id=require(PROVIDER, payload, "MessageUUID"),
            from_e164=require_phone(PROVIDER, "From", optional(payload, "From")),
            to_e164=require_phone(PROVIDER, "To", raw_to),
            to_candidates=to_candidates(raw_to),
            body=payload.get("Text") or "",
            raw=dict(payload),
        )
