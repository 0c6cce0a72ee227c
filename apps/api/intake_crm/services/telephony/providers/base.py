"""Provider adapter interface and shared payload helpers."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Protocol

from intake_crm.services.telephony.errors import MissingRequiredField
from intake_crm.services.telephony.events import NormalizedEvent
from intake_crm.utils.normalization import candidate_numbers, normalize_e164


class EventKind(str, Enum):
    """Which provider callback a payload arrived on."""
    VOICE = "voice"
    STATUS = "status"
    RECORDING = "recording"
    SMS = "sms"
    TRANSCRIPTION = "transcription"


class ProviderAdapter(Protocol):
    name: str

    def normalize(self, payload: Mapping[str, Any], kind: EventKind | None = None) -> NormalizedEvent:
        """Map a raw provider payload to a normalized event.

        Raises MissingRequiredField or UnsupportedEvent.
        """


def require(provider: str, payload: Mapping[str, Any], *keys: str) -> str:
    """First non-empty value among keys, or MissingRequiredField naming the first key."""
    for key in keys:
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    raise MissingRequiredField(provider, keys[0])


def optional(payload: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def require_phone(provider: str, field: str, value: str | None) -> str:
    """Normalize a required phone field, failing closed when absent or unparseable."""
    try:
        normalized = normalize_e164(value)
    except ValueError:
        normalized = None
    if not normalized:
        raise MissingRequiredField(provider, field)
    return normalized


def to_candidates(raw_to: str | None) -> tuple[str, ...]:
    return tuple(candidate_numbers(raw_to))


def owned_candidates(payload: Mapping[str, Any], outbound: bool) -> tuple[str, ...]:
    """Candidates for our own number on a call: the callee on inbound legs, the caller on outbound."""
    keys = ("From", "Caller") if outbound else ("To", "Called")
    return to_candidates(optional(payload, *keys))


def dig(payload: Any, path: str) -> Any:
    """Walk a dotted path through nested dicts; None if any hop is missing."""
    current = payload
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def extract_display_name(payload: Mapping[str, Any]) -> str | None:
    """Caller display name from whichever key the provider used."""
    for path in ("callerName", "CallerName", "caller_name", "name", "fullName", "full_name", "caller.name"):
        value = dig(payload, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
