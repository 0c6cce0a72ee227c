"""Inbound provider webhook signature verification."""

import base64
import hashlib
import hmac
import logging
import time
from typing import Mapping

from twilio.request_validator import RequestValidator

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


def verify_twilio_signature(auth_token: str, url: str, params: Mapping[str, str], signature: str | None) -> bool:
    """X-Twilio-Signature check over the full public URL and POSTed form params."""
    if not signature:
        return False
    return RequestValidator(auth_token).validate(url, dict(params), signature)


def verify_elevenlabs_signature(
    body: bytes,
    header: str | None,
    secret: str,
    now: float | None = None,
) -> bool:
    """
    ElevenLabs-Signature: "t=<unix>,v0=<hex>" where hex is
    HMAC-SHA256(secret, "<t>.<body>"). Older payloads use v1.
    """
    if not header:
        return False
    parts = dict(
        item.split("=", 1) for item in header.split(",") if "=" in item
    )
    timestamp = parts.get("t")
    signatures = [value for key, value in parts.items() if key in ("v0", "v1")]
    if not timestamp or not signatures:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    current = int(now if now is not None else time.time())
    if abs(current - ts) > SIGNATURE_TOLERANCE_SECONDS:
        return False

    signed = f"{timestamp}.".encode("utf-8") + body
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, value) for value in signatures)


def verify_standard_webhook(
    body: bytes,
    headers: Mapping[str, str],
    secret: str,
    now: float | None = None,
) -> bool:
    """
    Standard Webhooks scheme (webhook-id / webhook-timestamp / webhook-signature)
    as used by OpenAI. Secret may carry a "whsec_" base64 prefix.
    """
    msg_id = headers.get("webhook-id", "")
    timestamp = headers.get("webhook-timestamp", "")
    signature_header = headers.get("webhook-signature", "")
    if not msg_id or not timestamp or not signature_header:
        return False

    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False
    current = int(now if now is not None else time.time())
    if abs(current - ts) > SIGNATURE_TOLERANCE_SECONDS:
        return False

    if secret.startswith("whsec_"):
        try:
            key = base64.b64decode(secret[6:])
        except (ValueError, TypeError):
            logger.warning("Malformed whsec_ webhook secret")
            return False
    else:
        key = secret.encode("utf-8")

    signed_payload = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    expected = base64.b64encode(hmac.new(key, signed_payload, hashlib.sha256).digest()).decode("utf-8")

    # "v1,<sig> v1,<sig2>"
    for entry in signature_header.split(" "):
        version, _, sig = entry.partition(",")
        if version == "v1" and hmac.compare_digest(sig, expected):
            return True
    return False
