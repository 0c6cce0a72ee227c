"""OpenAI Realtime SIP webhook (JSON)."""

from __future__ import annotations

from typing import Any, Mapping

from intake_crm.db.enums import TelephonyProvider
from intake_crm.services.telephony.errors import MissingRequiredField, UnsupportedEvent
from intake_crm.services.telephony.events import InboundCallEvent, NormalizedEvent
from intake_crm.services.telephony.providers.base import EventKind, require_phone, to_candidates
from intake_crm.utils.normalization import extract_phone_from_sip_header

PROVIDER = TelephonyProvider.OPENAI.value

INCOMING_CALL = "realtime.call.incoming"


def sip_header(headers: Any, name: str) -> str | None:
    """Case-insensitive lookup in a [{name, value}] SIP header list."""
    if not isinstance(headers, list):
        return None
    for header in headers:
        if isinstance(header, Mapping) and str(header.get("name", "")).lower() == name.lower():
            value = header.get("value")
            return str(value) if value is not None else None
    return None


class OpenAIRealtimeAdapter:
    name = PROVIDER

    def normalize(self, payload: Mapping[str, Any], kind: EventKind | None = None) -> NormalizedEvent:
        event_type = payload.get("type")
        if event_type != INCOMING_CALL:
            raise UnsupportedEvent(PROVIDER, event_type)

        data = payload.get("data") or {}
        call_id = data.get("call_id") if isinstance(data, Mapping) else None
        if not call_id:
            raise MissingRequiredField(PROVIDER, "data.call_id")

        headers = data.get("sip_headers")
        raw_from = extract_phone_from_sip_header(sip_header(headers, "From"))
        raw_to = extract_phone_from_sip_header(sip_header(headers, "To"))
        return InboundCallEvent(
            provider=PROVIDER,
            provider_call_id=str(call_id),
            from_e164=require_phone(PROVIDER, "From", raw_from),
            to_e164=require_phone(PROVIDER, "To", raw_to),
            to_candidates=to_candidates(raw_to),
            status="ringing",
            raw=dict(payload),
        )
