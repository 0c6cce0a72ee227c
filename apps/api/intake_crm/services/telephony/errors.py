"""Exceptions raised along the telephony ingestion path."""


class IngestionError(Exception):
    """Base exception for telephony ingestion."""
    pass


class NormalizationError(IngestionError):
    """Provider payload could not be mapped to a normalized event."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(message)


class MissingRequiredField(NormalizationError):
    """A field every downstream step depends on is absent or unparseable."""

    def __init__(self, provider: str, field: str):
        self.field = field
        super().__init__(provider, f"{provider} payload missing required field '{field}'")


class UnsupportedEvent(NormalizationError):
    """Well-formed payload for an event type we do not ingest."""

    def __init__(self, provider: str, event_type: str | None):
        self.event_type = event_type
        super().__init__(provider, f"{provider} event '{event_type}' is not handled")


class TenantNotFound(IngestionError):
    """No inbound-enabled phone number matches the dialed number."""

    def __init__(self, candidates: list[str]):
        self.candidates = candidates
        super().__init__("No inbound-enabled phone number for dialed number")


class CallNotFound(IngestionError):
    """Status or recording callback for a call we never ingested."""

    def __init__(self, provider: str, provider_call_id: str):
        self.provider = provider
        self.provider_call_id = provider_call_id
        super().__init__(f"No {provider} call with id {provider_call_id}")


class IngestionFailed(IngestionError):
    """Persistence failed mid-upsert; the whole unit was rolled back."""
    pass
