"""Phone number normalization for telephony payloads."""

import re
from typing import Iterable, Optional

_SIP_NUMBER = re.compile(r"(?:sips?|tel):([+\d][\d\-\.\(\) ]*)", re.IGNORECASE)
_BARE_NUMBER = re.compile(r"\+?\d{10,15}")


def _strip_uri(raw: str) -> str:
    """Reduce 'sip:+15551234567@host;params' or '<tel:+1555...>' to the number part."""
    value = raw.strip().strip("<>").strip('"')
    match = _SIP_NUMBER.search(value)
    if match:
        return match.group(1)
    if "@" in value:
        value = value.split("@", 1)[0]
    return value


def normalize_e164(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a provider-supplied phone number to E.164 (+15551234567).

    Accepts:
    - 10 digits: 5551234567 → +15551234567
    - 11 digits starting with 1: 15551234567 → +15551234567
    - Already E.164 or other international digits: → +<digits>
    - SIP/tel URIs: sip:+15551234567@pbx.example.com → +15551234567

    Returns:
        E.164 formatted phone or None if empty

    Raises:
        ValueError: If the value does not contain a plausible phone number
    """
    if not phone:
        return None

    cleaned = _strip_uri(str(phone))
    digits = re.sub(r"\D", "", cleaned)
    if not digits:
        raise ValueError(f"Invalid phone number '{phone}'")

    if len(digits) == 10 and not cleaned.startswith("+"):
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if 8 <= len(digits) <= 15:
        return f"+{digits}"

    raise ValueError(f"Invalid phone number '{phone}'")


def candidate_numbers(*raw_values: Optional[str]) -> list[str]:
    """
    Ordered, de-duplicated E.164 candidates for tenant lookup.

    The canonical normalization of each value comes first, followed by
    format variants (+<digits>, +1<digits>) so numbers stored in a slightly
    different shape still match. Unparseable values are skipped.
    """
    candidates: list[str] = []

    def _add(value: str) -> None:
        if value not in candidates:
            candidates.append(value)

    for raw in raw_values:
        if not raw:
            continue
        try:
            primary = normalize_e164(raw)
        except ValueError:
            continue
        if primary:
            _add(primary)
        digits = re.sub(r"\D", "", _strip_uri(str(raw)))
        _add(f"+{digits}")
        if len(digits) == 10:
            _add(f"+1{digits}")
        elif len(digits) == 11 and digits.startswith("1"):
            _add(f"+{digits}")
    return candidates


def extract_phone_from_sip_header(value: Optional[str]) -> Optional[str]:
    """Pull a phone number out of a SIP From/To header value."""
    if not value:
        return None
    match = re.search(r"sip:([+\d]+)@", value, re.IGNORECASE)
    if match:
        return match.group(1)
    match = _BARE_NUMBER.search(value)
    return match.group(0) if match else None


def mask_phone(phone: Optional[str]) -> str:
    """Mask a phone number for logs: ****1234."""
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    return f"****{digits[-4:]}" if len(digits) >= 4 else "****"


def first_present(values: Iterable[Optional[str]]) -> Optional[str]:
    for value in values:
        if value is not None and str(value).strip():
            return str(value).strip()
    return None
