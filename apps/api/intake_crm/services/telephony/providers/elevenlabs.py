"""ElevenLabs conversational-AI webhooks (JSON).

Two shapes arrive: the inbound-call personalization webhook fired when a
call connects, and the post-call transcription event. Post-call events
may be wrapped as {"type": "post_call_transcription", "data": {...}}.
"""

from __future__ import annotations

from typing import Any, Mapping

from intake_crm.db.enums import CallStatus, TelephonyProvider
from intake_crm.services.telephony.errors import MissingRequiredField, UnsupportedEvent
from intake_crm.services.telephony.events import CallStatusEvent, InboundCallEvent, NormalizedEvent
from intake_crm.services.telephony.providers.base import (
    EventKind,
    dig,
    extract_display_name,
    optional,
    require,
    require_phone,
    to_candidates,
)
from intake_crm.services.telephony.status import parse_int

PROVIDER = TelephonyProvider.ELEVENLABS.value


def _unwrap(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    data = payload.get("data")
    if isinstance(data, Mapping) and ("type" in payload or "event_timestamp" in payload):
        return data
    return payload


def _call_ids(payload: Mapping[str, Any]) -> tuple[str, str | None]:
    """(provider_call_id, secondary_call_id). The telephony call sid wins when present."""
    call_sid = optional(payload, "call_sid") or _string(dig(payload, "metadata.phone_call.call_sid"))
    conversation_id = optional(payload, "conversation_id")
    if call_sid:
        return call_sid, conversation_id
    if conversation_id:
        return conversation_id, conversation_id
    raise MissingRequiredField(PROVIDER, "call_sid")


def _string(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def normalize_turns(raw_turns: Any) -> list[dict[str, Any]]:
    """Transcript turns as [{role, text, time}] regardless of source key names."""
    turns: list[dict[str, Any]] = []
    if not isinstance(raw_turns, list):
        return turns
    for entry in raw_turns:
        if not isinstance(entry, Mapping):
            continue
        text = entry.get("message") or entry.get("text") or entry.get("content")
        if not text:
            continue
        turns.append(
            {
                "role": entry.get("role") or entry.get("speaker") or "unknown",
                "text": str(text),
                "time": entry.get("time_in_call_secs", entry.get("timeInCallSecs", entry.get("start_time"))),
            }
        )
    return turns


def turns_to_text(turns: list[dict[str, Any]]) -> str:
    return "\n".join(f"{turn['role']}: {turn['text']}" for turn in turns)


class ElevenLabsAdapter:
    name = PROVIDER

    def normalize(self, payload: Mapping[str, Any], kind: EventKind | None = None) -> NormalizedEvent:
        if kind == EventKind.VOICE:
            return self._inbound(payload)
        if kind == EventKind.STATUS:
            return self._post_call(payload)
        raise UnsupportedEvent(PROVIDER, kind.value if kind else None)

    def _inbound(self, payload: Mapping[str, Any]) -> InboundCallEvent:
        call_id, secondary = _call_ids(payload)
        raw_to = require(PROVIDER, payload, "called_number", "to_number")
        return InboundCallEvent(
            provider=PROVIDER,
            provider_call_id=call_id,
            secondary_call_id=secondary,
            from_e164=require_phone(PROVIDER, "caller_id", optional(payload, "caller_id", "from_number")),
            to_e164=require_phone(PROVIDER, "called_number", raw_to),
            to_candidates=to_candidates(raw_to),
            status=CallStatus.IN_PROGRESS.value,
            caller_name=extract_display_name(payload),
            raw=dict(payload),
        )

    def _post_call(self, payload: Mapping[str, Any]) -> CallStatusEvent:
        data = _unwrap(payload)
        call_id, secondary = _call_ids(data)

        raw_transcript = data.get("transcript")
        turns = normalize_turns(data.get("transcript_json") or raw_transcript)
        if isinstance(raw_transcript, str) and raw_transcript.strip():
            transcript_text = raw_transcript.strip()
        else:
            transcript_text = turns_to_text(turns) or None

        duration = parse_int(data.get("duration_seconds"))
        if duration is None:
            duration = parse_int(dig(data, "metadata.call_duration_secs"))

        failed = (optional(data, "status", "outcome") or "").lower() == "failed"
        return CallStatusEvent(
            provider=PROVIDER,
            provider_call_id=call_id,
            secondary_call_id=secondary,
            status=(CallStatus.FAILED if failed else CallStatus.COMPLETED).value,
            duration_seconds=duration,
            recording_url=optional(data, "recording_url"),
            transcript_text=transcript_text,
            transcript_turns=turns or None,
            summary=optional(data, "summary") or _string(dig(data, "analysis.transcript_summary")),
            end_reason=optional(data, "outcome", "termination_reason"),
            structured_data=data.get("extracted_data") if isinstance(data.get("extracted_data"), Mapping) else None,
            raw=dict(payload),
        )
