"""Tests for telephony provider adapters and status mapping."""

import pytest

from intake_crm.db.enums import CallStatus
from intake_crm.services.telephony.errors import MissingRequiredField, UnsupportedEvent
from intake_crm.services.telephony.events import (
    CallStatusEvent,
    InboundCallEvent,
    InboundMessageEvent,
    RecordingEvent,
)
from intake_crm.services.telephony.providers.base import EventKind
from intake_crm.services.telephony.providers.registry import get_adapter, normalize
from intake_crm.services.telephony.status import (
    calculate_duration_seconds,
    derive_outcome,
    map_ended_reason,
    map_plivo_status,
    map_twilio_status,
    map_vapi_status,
)


# =============================================================================
# Twilio
# =============================================================================

class TestTwilio:
    def test_voice_webhook(self):
        event = normalize(
            "twilio",
            {
                "CallSid": "CA123",
                "From": "+15557654321",
                "To": "+15550001111",
                "CallStatus": "ringing",
                "Direction": "inbound",
                "CallerName": "Jane Roe",
            },
            EventKind.VOICE,
        )
        assert isinstance(event, InboundCallEvent)
        assert event.provider_call_id == "CA123"
        assert event.from_e164 == "+15557654321"
        assert event.to_e164 == "+15550001111"
        assert event.to_candidates[0] == "+15550001111"
        assert event.direction == "inbound"
        assert event.status == "ringing"
        assert event.caller_name == "Jane Roe"

    def test_voice_falls_back_to_called(self):
        event = normalize(
            "twilio",
            {"CallSid": "CA1", "From": "5557654321", "Called": "5550001111"},
            EventKind.VOICE,
        )
        assert event.to_e164 == "+15550001111"
        assert event.from_e164 == "+15557654321"

    def test_outbound_api_direction(self):
        event = normalize(
            "twilio",
            {"CallSid": "CA1", "From": "+15550001111", "To": "+15557654321", "Direction": "outbound-api"},
            EventKind.VOICE,
        )
        assert event.direction == "outbound"

    def test_voice_missing_call_sid(self):
        with pytest.raises(MissingRequiredField) as exc:
            normalize("twilio", {"From": "+15557654321", "To": "+15550001111"}, EventKind.VOICE)
        assert exc.value.field == "CallSid"

    def test_voice_unparseable_from(self):
        with pytest.raises(MissingRequiredField) as exc:
            normalize("twilio", {"CallSid": "CA1", "From": "anonymous", "To": "+15550001111"}, EventKind.VOICE)
        assert exc.value.field == "From"

    def test_status_callback(self):
        event = normalize(
            "twilio",
            {
                "CallSid": "CA123",
                "CallStatus": "completed",
                "CallDuration": "42",
                "ParentCallSid": "CA000",
                "To": "+15550001111",
                "Direction": "inbound",
                "RecordingUrl": "https://api.twilio.com/rec/RE1",
            },
            EventKind.STATUS,
        )
        assert isinstance(event, CallStatusEvent)
        assert event.status == "completed"
        assert event.duration_seconds == 42
        # A child leg must never be matched to its parent call
        assert event.secondary_call_id is None
        assert event.owned_candidates[0] == "+15550001111"
        assert event.recording_url == "https://api.twilio.com/rec/RE1"

    def test_status_callback_owned_number_follows_direction(self):
        event = normalize(
            "twilio",
            {
                "CallSid": "CA124",
                "CallStatus": "completed",
                "From": "+15550001111",
                "To": "+15557654321",
                "Direction": "outbound-api",
            },
            EventKind.STATUS,
        )
        assert event.owned_candidates[0] == "+15550001111"

        bare = normalize("twilio", {"CallSid": "CA125", "CallStatus": "ringing"}, EventKind.STATUS)
        assert bare.owned_candidates == ()

    def test_recording_callback(self):
        event = normalize(
            "twilio",
            {"CallSid": "CA123", "RecordingUrl": "https://api.twilio.com/rec/RE1", "RecordingDuration": "17"},
            EventKind.RECORDING,
        )
        assert isinstance(event, RecordingEvent)
        assert event.duration_seconds == 17

    def test_transcription_has_no_status(self):
        event = normalize(
            "twilio",
            {"CallSid": "CA123", "TranscriptionText": "I slipped at the store."},
            EventKind.TRANSCRIPTION,
        )
        assert isinstance(event, CallStatusEvent)
        assert event.status is None
        assert event.transcript_text == "I slipped at the store."

    def test_sms(self):
        event = normalize(
            "twilio",
            {"SmsSid": "SM1", "From": "+15557654321", "To": "+15550001111", "Body": "Need a lawyer"},
            EventKind.SMS,
        )
        assert isinstance(event, InboundMessageEvent)
        assert event.provider_message_id == "SM1"
        assert event.body == "Need a lawyer"

    def test_missing_kind_is_unsupported(self):
        with pytest.raises(UnsupportedEvent):
            normalize("twilio", {"CallSid": "CA1"})


# =============================================================================
# Plivo
# =============================================================================

class TestPlivo:
    def test_voice(self):
        event = normalize(
            "plivo",
            {"CallUUID": "uuid-1", "From": "15557654321", "To": "15550001111", "Direction": "inbound"},
            EventKind.VOICE,
        )
        assert isinstance(event, InboundCallEvent)
        assert event.provider_call_id == "uuid-1"
        assert event.to_e164 == "+15550001111"

    def test_hangup_maps_to_completed(self):
        event = normalize(
            "plivo",
            {"CallUUID": "uuid-1", "HangupCause": "NORMAL_CLEARING", "BillDuration": "30"},
            EventKind.STATUS,
        )
        assert event.status == CallStatus.COMPLETED.value
        assert event.duration_seconds == 30
        assert event.end_reason == "NORMAL_CLEARING"

    def test_sms(self):
        event = normalize(
            "plivo",
            {"MessageUUID": "msg-1", "From": "15557654321", "To": "15550001111", "Text": "Hello"},
            EventKind.SMS,
        )
        assert isinstance(event, InboundMessageEvent)
        assert event.body == "Hello"


# =============================================================================
# ElevenLabs
# =============================================================================

class TestElevenLabs:
    def test_inbound_prefers_call_sid(self):
        event = normalize(
            "elevenlabs",
            {
                "call_sid": "CA9",
                "conversation_id": "conv_1",
                "caller_id": "+15557654321",
                "called_number": "+15550001111",
            },
            EventKind.VOICE,
        )
        assert event.provider_call_id == "CA9"
        assert event.secondary_call_id == "conv_1"
        assert event.status == CallStatus.IN_PROGRESS.value

    def test_inbound_without_ids(self):
        with pytest.raises(MissingRequiredField):
            normalize(
                "elevenlabs",
                {"caller_id": "+15557654321", "called_number": "+15550001111"},
                EventKind.VOICE,
            )

    def test_post_call_wrapped_transcript_turns(self):
        event = normalize(
            "elevenlabs",
            {
                "type": "post_call_transcription",
                "event_timestamp": 1700000000,
                "data": {
                    "conversation_id": "conv_1",
                    "transcript": [
                        {"role": "agent", "message": "How can I help?"},
                        {"role": "user", "message": "I was rear-ended."},
                        {"role": "user", "message": None},
                    ],
                    "metadata": {"call_duration_secs": 95},
                    "analysis": {"transcript_summary": "Auto accident inquiry"},
                },
            },
            EventKind.STATUS,
        )
        assert event.provider_call_id == "conv_1"
        assert event.status == CallStatus.COMPLETED.value
        assert event.transcript_text == "agent: How can I help?\nuser: I was rear-ended."
        assert len(event.transcript_turns) == 2
        assert event.duration_seconds == 95
        assert event.summary == "Auto accident inquiry"

    def test_post_call_failed(self):
        event = normalize(
            "elevenlabs",
            {"conversation_id": "conv_2", "status": "failed"},
            EventKind.STATUS,
        )
        assert event.status == CallStatus.FAILED.value


# =============================================================================
# Vapi
# =============================================================================

class TestVapi:
    def test_assistant_request_is_inbound(self):
        event = normalize(
            "vapi",
            {
                "message": {
                    "type": "assistant-request",
                    "call": {
                        "id": "vapi-call-1",
                        "phoneCallProviderId": "CA55",
                        "phoneNumber": {"number": "+15550001111"},
                        "customer": {"number": "+15557654321", "name": "Sam"},
                    },
                }
            },
        )
        assert isinstance(event, InboundCallEvent)
        assert event.provider_call_id == "vapi-call-1"
        assert event.secondary_call_id == "CA55"
        assert event.caller_name == "Sam"

    def test_missing_call_id(self):
        with pytest.raises(MissingRequiredField) as exc:
            normalize(
                "vapi",
                {"message": {"type": "call-started", "call": {"phoneNumber": {"number": "+15550001111"},
                                                               "customer": {"number": "+15557654321"}}}},
            )
        assert exc.value.field == "call.id"

    def test_status_update_ended(self):
        event = normalize(
            "vapi",
            {"message": {"type": "status-update", "status": "ended", "endedReason": "customer-busy",
                         "call": {"id": "vapi-call-1"}}},
        )
        assert event.status == CallStatus.BUSY.value

    def test_end_of_call_report(self):
        event = normalize(
            "vapi",
            {
                "message": {
                    "type": "end-of-call-report",
                    "endedReason": "customer-ended-call",
                    "call": {"id": "vapi-call-1"},
                    "transcript": "AI: Hello\nUser: I need help",
                    "artifact": {"recordingUrl": "https://storage.vapi.ai/rec.wav"},
                    "analysis": {"summary": "Needs help", "structuredData": {"incidentDate": "2024-01-02"}},
                    "durationSeconds": 61.4,
                }
            },
        )
        assert event.status == CallStatus.COMPLETED.value
        assert event.recording_url == "https://storage.vapi.ai/rec.wav"
        assert event.structured_data == {"incidentDate": "2024-01-02"}
        assert event.duration_seconds == 61

    def test_other_messages_unsupported(self):
        with pytest.raises(UnsupportedEvent):
            normalize("vapi", {"message": {"type": "speech-update", "call": {"id": "x"}}})


# =============================================================================
# OpenAI Realtime SIP
# =============================================================================

class TestOpenAI:
    def test_incoming_call(self):
        event = normalize(
            "openai",
            {
                "type": "realtime.call.incoming",
                "data": {
                    "call_id": "rtc_1",
                    "sip_headers": [
                        {"name": "From", "value": '"Caller" <sip:+15557654321@sip.example.com>;tag=1'},
                        {"name": "to", "value": "<sip:+15550001111@sip.api.openai.com>"},
                    ],
                },
            },
        )
        assert event.provider_call_id == "rtc_1"
        assert event.from_e164 == "+15557654321"
        assert event.to_e164 == "+15550001111"

    def test_other_types_unsupported(self):
        with pytest.raises(UnsupportedEvent):
            normalize("openai", {"type": "realtime.call.ended", "data": {"call_id": "rtc_1"}})

    def test_missing_call_id(self):
        with pytest.raises(MissingRequiredField):
            normalize("openai", {"type": "realtime.call.incoming", "data": {}})


def test_unknown_provider():
    with pytest.raises(KeyError):
        get_adapter("skype")


# =============================================================================
# Status vocabularies
# =============================================================================

def test_status_maps():
    assert map_twilio_status("in-progress") == CallStatus.IN_PROGRESS
    assert map_twilio_status("initiated") == CallStatus.QUEUED
    assert map_twilio_status("bogus") is None
    assert map_plivo_status("timeout") == CallStatus.NO_ANSWER
    assert map_vapi_status("forwarding") == CallStatus.IN_PROGRESS
    assert map_vapi_status("ended", "assistant-error") == CallStatus.FAILED
    assert map_ended_reason("customer-did-not-answer") == CallStatus.NO_ANSWER
    assert map_ended_reason(None) == CallStatus.COMPLETED


def test_derive_outcome():
    assert derive_outcome("completed", has_transcript=True) == "connected"
    assert derive_outcome("completed") == "completed"
    assert derive_outcome("canceled") == "no-answer"
    assert derive_outcome("busy") == "busy"
    assert derive_outcome("failed") == "failed"
    assert derive_outcome("ringing") is None


def test_calculate_duration_prefers_provider_value():
    from datetime import datetime, timedelta, timezone

    started = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    ended = started + timedelta(seconds=90, milliseconds=700)
    assert calculate_duration_seconds(42, started, ended) == 42
    assert calculate_duration_seconds(None, started, ended) == 90
    assert calculate_duration_seconds(None, None, ended) is None
