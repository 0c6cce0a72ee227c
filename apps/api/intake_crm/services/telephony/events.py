"""
Normalized telephony events.

Every provider adapter maps its raw webhook payload to exactly one of
these variants. Downstream code never looks at raw provider fields.
"""

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class InboundCallEvent:
    provider: str
    provider_call_id: str
    from_e164: str
    to_e164: str
    # Ordered lookup candidates for the dialed number, to_e164 first
    to_candidates: tuple[str, ...]
    direction: str = "inbound"
    status: str = "ringing"
    caller_name: str | None = None
    secondary_call_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class InboundMessageEvent:
    provider: str
    provider_message_id: str
    from_e164: str
    to_e164: str
    to_candidates: tuple[str, ...]
    body: str = ""
    sender_name: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class CallStatusEvent:
    """Progress or completion report for an existing call."""
    provider: str
    provider_call_id: str
    status: str | None = None
    secondary_call_id: str | None = None
    duration_seconds: int | None = None
    recording_url: str | None = None
    transcript_text: str | None = None
    transcript_turns: list[dict[str, Any]] | None = None
    summary: str | None = None
    end_reason: str | None = None
    structured_data: dict[str, Any] | None = None
    # Our side of the call when the callback carries it; scopes the lookup to its owner
    owned_candidates: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class RecordingEvent:
    provider: str
    provider_call_id: str
    recording_url: str
    duration_seconds: int | None = None
    owned_candidates: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


NormalizedEvent = Union[InboundCallEvent, InboundMessageEvent, CallStatusEvent, RecordingEvent]
