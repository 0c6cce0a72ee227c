"""
Telephony provider webhooks.

Public endpoints (no session auth). Every handler answers 2xx with
provider markup or a JSON ack; malformed payloads, unknown numbers and
persistence failures degrade to benign responses so providers do not
retry. The only non-2xx answers are signature failures (403) and the
rate limiter (429).
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from intake_crm.core.config import settings
from intake_crm.core.deps import get_db
from intake_crm.core.rate_limit import WEBHOOK_LIMIT, limiter
from intake_crm.core.structured_logging import build_log_context
from intake_crm.db.enums import TelephonyProvider
from intake_crm.services import oncall_service
from intake_crm.services.telephony import responses, signatures
from intake_crm.services.telephony.ingestion import (
    IngestionResult,
    IngestionStatus,
    ingest,
    plan_call_notification,
)
from intake_crm.services.telephony.providers.base import EventKind
from intake_crm.services.telephony.providers.vapi import message_type

router = APIRouter(prefix="/v1/telephony", tags=["telephony"])
logger = logging.getLogger(__name__)

XML_MEDIA_TYPE = "application/xml"


# =============================================================================
# Helpers
# =============================================================================

def _xml(content: str) -> Response:
    return Response(content=content, media_type=XML_MEDIA_TYPE)


async def _form_params(request: Request) -> dict[str, str]:
    form = await request.form()
    return {key: str(value) for key, value in form.items()}


async def _json_body(request: Request) -> tuple[bytes, dict[str, Any]]:
    body = await request.body()
    try:
        data = json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    return body, data


def _public_url(request: Request) -> str:
    """The URL the provider signed: public base + path + query."""
    url = f"{settings.PUBLIC_BASE_URL.rstrip('/')}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def _check_twilio_signature(request: Request, params: dict[str, str]) -> None:
    if not settings.TWILIO_VALIDATE_SIGNATURES:
        return
    signature = request.headers.get("X-Twilio-Signature")
    if not settings.TWILIO_AUTH_TOKEN or not signatures.verify_twilio_signature(
        settings.TWILIO_AUTH_TOKEN, _public_url(request), params, signature
    ):
        logger.warning(
            "Twilio webhook signature rejected",
            extra=build_log_context(provider="twilio", route=request.url.path),
        )
        raise HTTPException(status_code=403, detail="Invalid signature")


def _queue_notification(db: Session, result: IngestionResult, background_tasks: BackgroundTasks) -> None:
    """Routing is resolved now; delivery runs after the response is sent."""
    notification = plan_call_notification(db, result)
    if notification is not None:
        background_tasks.add_task(oncall_service.deliver_call_notification, notification)


def _json_ack(result: IngestionResult) -> dict[str, Any]:
    ack: dict[str, Any] = {"status": result.status.value}
    if result.conversation is not None:
        ack["leadId"] = str(result.conversation.lead.id)
        if result.conversation.call is not None:
            ack["callId"] = str(result.conversation.call.id)
    if result.status_update is not None:
        ack["callId"] = str(result.status_update.call.id)
        ack["callStatus"] = result.status_update.call.status
    return ack


def _twilio_voice_markup(result: IngestionResult) -> str:
    if result.status == IngestionStatus.CREATED:
        return responses.twiml_answer(result.call_id)
    if result.status == IngestionStatus.DUPLICATE:
        return responses.twiml_hold()
    if result.status == IngestionStatus.TENANT_NOT_FOUND:
        return responses.twiml_not_configured()
    if result.status == IngestionStatus.FAILED:
        return responses.twiml_voicemail_fallback()
    return responses.twiml_empty()


def _plivo_voice_markup(result: IngestionResult) -> str:
    if result.status == IngestionStatus.CREATED:
        return responses.plivo_answer(result.call_id)
    if result.status == IngestionStatus.DUPLICATE:
        return responses.plivo_hold()
    if result.status == IngestionStatus.TENANT_NOT_FOUND:
        return responses.plivo_not_configured()
    if result.status == IngestionStatus.FAILED:
        return responses.plivo_voicemail_fallback()
    return responses.plivo_empty()


# =============================================================================
# Twilio
# =============================================================================

@router.post("/twilio/voice")
@limiter.limit(WEBHOOK_LIMIT)
async def twilio_voice(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Inbound call. Answers with TwiML that streams or records the call."""
    params = await _form_params(request)
    _check_twilio_signature(request, params)
    result = ingest(db, TelephonyProvider.TWILIO.value, params, EventKind.VOICE)
    _queue_notification(db, result, background_tasks)
    return _xml(_twilio_voice_markup(result))


@router.post("/twilio/status")
@limiter.limit(WEBHOOK_LIMIT)
async def twilio_status(request: Request, db: Session = Depends(get_db)):
    params = await _form_params(request)
    _check_twilio_signature(request, params)
    ingest(db, TelephonyProvider.TWILIO.value, params, EventKind.STATUS)
    return _xml(responses.twiml_empty())


@router.post("/twilio/recording")
@limiter.limit(WEBHOOK_LIMIT)
async def twilio_recording(request: Request, db: Session = Depends(get_db)):
    params = await _form_params(request)
    _check_twilio_signature(request, params)
    ingest(db, TelephonyProvider.TWILIO.value, params, EventKind.RECORDING)
    return _xml(responses.twiml_empty())


@router.post("/twilio/transcription")
@limiter.limit(WEBHOOK_LIMIT)
async def twilio_transcription(request: Request, db: Session = Depends(get_db)):
    params = await _form_params(request)
    _check_twilio_signature(request, params)
    ingest(db, TelephonyProvider.TWILIO.value, params, EventKind.TRANSCRIPTION)
    return _xml(responses.twiml_empty())


@router.post("/twilio/sms")
@limiter.limit(WEBHOOK_LIMIT)
async def twilio_sms(request: Request, db: Session = Depends(get_db)):
    """Inbound SMS. New messages get an auto-reply; everything else an empty response."""
    params = await _form_params(request)
    _check_twilio_signature(request, params)
    result = ingest(db, TelephonyProvider.TWILIO.value, params, EventKind.SMS)
    if result.status == IngestionStatus.CREATED:
        return _xml(responses.twiml_sms_reply())
    return _xml(responses.twiml_sms_empty())


# =============================================================================
# Plivo
# =============================================================================

@router.post("/plivo/voice")
@limiter.limit(WEBHOOK_LIMIT)
async def plivo_voice(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    params = await _form_params(request)
    result = ingest(db, TelephonyProvider.PLIVO.value, params, EventKind.VOICE)
    _queue_notification(db, result, background_tasks)
    return _xml(_plivo_voice_markup(result))


@router.post("/plivo/status")
@limiter.limit(WEBHOOK_LIMIT)
async def plivo_status(request: Request, db: Session = Depends(get_db)):
    params = await _form_params(request)
    ingest(db, TelephonyProvider.PLIVO.value, params, EventKind.STATUS)
    return _xml(responses.plivo_empty())


@router.post("/plivo/recording")
@limiter.limit(WEBHOOK_LIMIT)
async def plivo_recording(request: Request, db: Session = Depends(get_db)):
    params = await _form_params(request)
    ingest(db, TelephonyProvider.PLIVO.value, params, EventKind.RECORDING)
    return _xml(responses.plivo_empty())


@router.post("/plivo/sms")
@limiter.limit(WEBHOOK_LIMIT)
async def plivo_sms(request: Request, db: Session = Depends(get_db)):
    params = await _form_params(request)
    result = ingest(db, TelephonyProvider.PLIVO.value, params, EventKind.SMS)
    if result.status == IngestionStatus.CREATED:
        message = result.conversation.message
        # Reply travels back from the dialed number to the sender
        return _xml(responses.plivo_sms_reply(src=message.to_e164, dst=message.from_e164))
    return _xml(responses.plivo_empty())


# =============================================================================
# ElevenLabs
# =============================================================================

def _check_elevenlabs_signature(request: Request, body: bytes) -> None:
    if not settings.ELEVENLABS_WEBHOOK_SECRET:
        return
    header = request.headers.get("ElevenLabs-Signature")
    if not signatures.verify_elevenlabs_signature(body, header, settings.ELEVENLABS_WEBHOOK_SECRET):
        logger.warning(
            "ElevenLabs webhook signature rejected",
            extra=build_log_context(provider="elevenlabs", route=request.url.path),
        )
        raise HTTPException(status_code=403, detail="Invalid signature")


@router.post("/elevenlabs/inbound")
@limiter.limit(WEBHOOK_LIMIT)
async def elevenlabs_inbound(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    body, data = await _json_body(request)
    _check_elevenlabs_signature(request, body)
    result = ingest(db, TelephonyProvider.ELEVENLABS.value, data, EventKind.VOICE)
    _queue_notification(db, result, background_tasks)
    return _json_ack(result)


@router.post("/elevenlabs/post-call")
@limiter.limit(WEBHOOK_LIMIT)
async def elevenlabs_post_call(request: Request, db: Session = Depends(get_db)):
    body, data = await _json_body(request)
    _check_elevenlabs_signature(request, body)
    result = ingest(db, TelephonyProvider.ELEVENLABS.value, data, EventKind.STATUS)
    return _json_ack(result)


# =============================================================================
# Vapi
# =============================================================================

@router.post("/vapi")
@limiter.limit(WEBHOOK_LIMIT)
async def vapi_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    Vapi server messages. assistant-request must be answered with the
    assistant to use; every other message gets a JSON ack.
    """
    _, data = await _json_body(request)
    result = ingest(db, TelephonyProvider.VAPI.value, data)
    _queue_notification(db, result, background_tasks)
    if message_type(data) == "assistant-request" and settings.VAPI_ASSISTANT_ID:
        return {"assistantId": settings.VAPI_ASSISTANT_ID}
    return _json_ack(result)


# =============================================================================
# OpenAI Realtime SIP
# =============================================================================

@router.post("/openai")
@limiter.limit(WEBHOOK_LIMIT)
async def openai_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    body, data = await _json_body(request)
    if settings.OPENAI_WEBHOOK_SECRET and not signatures.verify_standard_webhook(
        body, request.headers, settings.OPENAI_WEBHOOK_SECRET
    ):
        logger.warning(
            "OpenAI webhook signature rejected",
            extra=build_log_context(provider="openai", route=request.url.path),
        )
        raise HTTPException(status_code=403, detail="Invalid signature")
    result = ingest(db, TelephonyProvider.OPENAI.value, data)
    _queue_notification(db, result, background_tasks)
    return _json_ack(result)
