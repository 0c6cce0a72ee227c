"""Vapi server-message webhook (JSON, multiplexed on message.type)."""

from __future__ import annotations

from typing import Any, Mapping

from intake_crm.db.enums import TelephonyProvider
from intake_crm.services.telephony.errors import MissingRequiredField, UnsupportedEvent
from intake_crm.services.telephony.events import CallStatusEvent, InboundCallEvent, NormalizedEvent
from intake_crm.services.telephony.providers.base import (
    EventKind,
    dig,
    extract_display_name,
    require_phone,
    to_candidates,
)
from intake_crm.services.telephony.status import map_ended_reason, map_vapi_status, parse_int

PROVIDER = TelephonyProvider.VAPI.value

TO_PATHS = ("phoneNumber.number", "phoneNumber.phoneNumber", "phoneNumberNumber", "to", "destination")
FROM_PATHS = ("customer.number", "customer.phoneNumber", "from")

INBOUND_TYPES = {"assistant-request", "call-started"}


def _first(source: Any, paths: tuple[str, ...]) -> str | None:
    for path in paths:
        value = dig(source, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _message(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    message = payload.get("message")
    return message if isinstance(message, Mapping) else payload


def _call(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    """The call object lives at message.call, call, or is the body itself."""
    for candidate in (dig(payload, "message.call"), payload.get("call")):
        if isinstance(candidate, Mapping):
            return candidate
    return payload


def message_type(payload: Mapping[str, Any]) -> str | None:
    value = _message(payload).get("type")
    return value if isinstance(value, str) else None


class VapiAdapter:
    name = PROVIDER

    def normalize(self, payload: Mapping[str, Any], kind: EventKind | None = None) -> NormalizedEvent:
        event_type = message_type(payload)
        if event_type in INBOUND_TYPES:
            return self._inbound(payload)
        if event_type == "status-update":
            return self._status_update(payload)
        if event_type == "end-of-call-report":
            return self._end_of_call(payload)
        raise UnsupportedEvent(PROVIDER, event_type)

    def _call_id(self, call: Mapping[str, Any]) -> str:
        call_id = call.get("id")
        if not isinstance(call_id, str) or not call_id.strip():
            raise MissingRequiredField(PROVIDER, "call.id")
        return call_id.strip()

    def _inbound(self, payload: Mapping[str, Any]) -> InboundCallEvent:
        call = _call(payload)
        raw_to = _first(call, TO_PATHS) or _first(payload, ("to",))
        raw_from = _first(call, FROM_PATHS) or _first(payload, ("from",))
        if not raw_to:
            raise MissingRequiredField(PROVIDER, "phoneNumber.number")
        return InboundCallEvent(
            provider=PROVIDER,
            provider_call_id=self._call_id(call),
            secondary_call_id=call.get("phoneCallProviderId"),
            from_e164=require_phone(PROVIDER, "customer.number", raw_from),
            to_e164=require_phone(PROVIDER, "phoneNumber.number", raw_to),
            to_candidates=to_candidates(raw_to),
            direction="outbound" if call.get("type") == "outboundPhoneCall" else "inbound",
            status="ringing",
            caller_name=extract_display_name(call.get("customer") or {}) or extract_display_name(payload),
            raw=dict(payload),
        )

    def _status_update(self, payload: Mapping[str, Any]) -> CallStatusEvent:
        message = _message(payload)
        call = _call(payload)
        ended_reason = message.get("endedReason") or call.get("endedReason")
        status = map_vapi_status(message.get("status"), ended_reason)
        return CallStatusEvent(
            provider=PROVIDER,
            provider_call_id=self._call_id(call),
            secondary_call_id=call.get("phoneCallProviderId"),
            status=status.value if status else None,
            end_reason=ended_reason,
            raw=dict(payload),
        )

    def _end_of_call(self, payload: Mapping[str, Any]) -> CallStatusEvent:
        message = _message(payload)
        call = _call(payload)
        ended_reason = message.get("endedReason") or call.get("endedReason")

        transcript = message.get("transcript") or dig(message, "artifact.transcript")
        recording_url = message.get("recordingUrl") or dig(message, "artifact.recordingUrl")
        structured = dig(message, "analysis.structuredData")
        duration = parse_int(message.get("durationSeconds"))

        return CallStatusEvent(
            provider=PROVIDER,
            provider_call_id=self._call_id(call),
            secondary_call_id=call.get("phoneCallProviderId"),
            status=map_ended_reason(ended_reason).value,
            duration_seconds=duration,
            recording_url=recording_url if isinstance(recording_url, str) else None,
            transcript_text=transcript if isinstance(transcript, str) and transcript.strip() else None,
            summary=dig(message, "analysis.summary") or message.get("summary"),
            end_reason=ended_reason,
            structured_data=structured if isinstance(structured, Mapping) else None,
            raw=dict(payload),
        )
