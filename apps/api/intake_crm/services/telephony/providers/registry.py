"""Telephony provider adapter registry."""

from __future__ import annotations

from typing import Any, Mapping

from intake_crm.services.telephony.events import NormalizedEvent
from intake_crm.services.telephony.providers.base import EventKind, ProviderAdapter
from intake_crm.services.telephony.providers.elevenlabs import ElevenLabsAdapter
from intake_crm.services.telephony.providers.openai import OpenAIRealtimeAdapter
from intake_crm.services.telephony.providers.plivo import PlivoAdapter
from intake_crm.services.telephony.providers.twilio import TwilioAdapter
from intake_crm.services.telephony.providers.vapi import VapiAdapter

_ADAPTERS: dict[str, ProviderAdapter] = {
    "twilio": TwilioAdapter(),
    "plivo": PlivoAdapter(),
    "elevenlabs": ElevenLabsAdapter(),
    "vapi": VapiAdapter(),
    "openai": OpenAIRealtimeAdapter(),
}


def get_adapter(name: str) -> ProviderAdapter:
    adapter = _ADAPTERS.get(name)
    if not adapter:
        raise KeyError(f"Unknown telephony provider: {name}")
    return adapter


def normalize(provider: str, payload: Mapping[str, Any], kind: EventKind | None = None) -> NormalizedEvent:
    """Normalize a raw provider payload through its registered adapter."""
    return get_adapter(provider).normalize(payload, kind)
