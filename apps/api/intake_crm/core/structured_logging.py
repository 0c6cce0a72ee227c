"""Structured logging helpers (PII-safe)."""

from typing import Any


def build_log_context(
    *,
    org_id: str | None = None,
    provider: str | None = None,
    call_id: str | None = None,
    delivery_id: str | None = None,
    route: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict for ``extra=``."""
    context: dict[str, Any] = {}
    if org_id:
        context["org_id"] = org_id
    if provider:
        context["provider"] = provider
    if call_id:
        context["call_id"] = call_id
    if delivery_id:
        context["delivery_id"] = delivery_id
    if route:
        context["route"] = route
    return context
