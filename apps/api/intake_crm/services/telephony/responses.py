"""Caller-facing markup returned to telephony providers."""

import xml.etree.ElementTree as ET

from twilio.twiml.messaging_response import MessagingResponse
from twilio.twiml.voice_response import Connect, VoiceResponse

from intake_crm.core.config import settings

GREETING = "Thank you for calling. An AI assistant will be with you shortly."
RECORD_PROMPT = "Please describe your legal matter after the beep."
HOLD_MESSAGE = "Thank you for calling. Please hold while we connect you."
NOT_CONFIGURED_MESSAGE = "This number is not currently configured. Please try again later."
VOICEMAIL_FALLBACK = (
    "We're sorry, we can't take your call right now. "
    "Please leave your name, number and a short message after the tone."
)
SMS_REPLY = "Thank you for contacting us. An attorney will review your message shortly."

RECORD_MAX_SECONDS = 120


def callback_url(path: str) -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}{path}"


# =============================================================================
# Twilio (TwiML)
# =============================================================================

def twiml_answer(call_id: str | None = None) -> str:
    """Connect to the live media stream when configured, otherwise greet and record."""
    response = VoiceResponse()
    if settings.MEDIA_STREAM_URL:
        response.say(GREETING)
        connect = Connect()
        stream = connect.stream(url=settings.MEDIA_STREAM_URL)
        if call_id:
            stream.parameter(name="callId", value=call_id)
        response.append(connect)
        return str(response)

    response.say(GREETING)
    response.pause(length=2)
    response.say(RECORD_PROMPT)
    response.record(
        max_length=RECORD_MAX_SECONDS,
        transcribe=True,
        transcribe_callback=callback_url("/v1/telephony/twilio/transcription"),
        recording_status_callback=callback_url("/v1/telephony/twilio/recording"),
    )
    return str(response)


def twiml_hold() -> str:
    response = VoiceResponse()
    response.say(HOLD_MESSAGE)
    response.pause(length=2)
    return str(response)


def twiml_not_configured() -> str:
    response = VoiceResponse()
    response.say(NOT_CONFIGURED_MESSAGE)
    response.hangup()
    return str(response)


def twiml_voicemail_fallback() -> str:
    response = VoiceResponse()
    response.say(VOICEMAIL_FALLBACK)
    response.record(max_length=RECORD_MAX_SECONDS)
    response.hangup()
    return str(response)


def twiml_empty() -> str:
    return str(VoiceResponse())


def twiml_sms_reply() -> str:
    response = MessagingResponse()
    response.message(SMS_REPLY)
    return str(response)


def twiml_sms_empty() -> str:
    return str(MessagingResponse())


# =============================================================================
# Plivo XML
# =============================================================================

def _plivo(build) -> str:
    root = ET.Element("Response")
    build(root)
    return '<?xml version="1.0" encoding="UTF-8"?>' + ET.tostring(root, encoding="unicode")


def _speak(root: ET.Element, text: str) -> None:
    ET.SubElement(root, "Speak").text = text


def plivo_answer(call_id: str | None = None) -> str:
    def build(root):
        _speak(root, GREETING)
        if settings.MEDIA_STREAM_URL:
            stream = ET.SubElement(root, "Stream", bidirectional="true", keepCallAlive="true")
            stream.text = settings.MEDIA_STREAM_URL
            return
        ET.SubElement(root, "Wait", length="2")
        _speak(root, RECORD_PROMPT)
        ET.SubElement(
            root,
            "Record",
            maxLength=str(RECORD_MAX_SECONDS),
            callbackUrl=callback_url("/v1/telephony/plivo/recording"),
            callbackMethod="POST",
        )

    return _plivo(build)


def plivo_hold() -> str:
    def build(root):
        _speak(root, HOLD_MESSAGE)
        ET.SubElement(root, "Wait", length="2")

    return _plivo(build)


def plivo_not_configured() -> str:
    def build(root):
        _speak(root, NOT_CONFIGURED_MESSAGE)
        ET.SubElement(root, "Hangup")

    return _plivo(build)


def plivo_voicemail_fallback() -> str:
    def build(root):
        _speak(root, VOICEMAIL_FALLBACK)
        ET.SubElement(root, "Record", maxLength=str(RECORD_MAX_SECONDS))
        ET.SubElement(root, "Hangup")

    return _plivo(build)


def plivo_empty() -> str:
    return _plivo(lambda root: None)


def plivo_sms_reply(src: str, dst: str) -> str:
    def build(root):
        message = ET.SubElement(root, "Message", src=src, dst=dst, type="sms")
        message.text = SMS_REPLY

    return _plivo(build)
