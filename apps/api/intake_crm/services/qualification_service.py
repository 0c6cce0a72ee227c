"""
Lead qualification: a deterministic weighted-factor scorer plus the
persistence around it (one live Qualification per lead, mirrored onto the
lead's score/disposition cache in the same transaction).
"""

import copy
import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from intake_crm.db.enums import (
    OPEN_LEAD_STATUSES,
    AuditEventType,
    Disposition,
    IntakeCompletion,
    LeadStatus,
)
from intake_crm.db.models import Call, Contact, Intake, Lead, Qualification
from intake_crm.services import audit_service
from intake_crm.utils.time import now_utc

logger = logging.getLogger(__name__)

SCORER_PROVIDER = "rules"
SCORER_MODEL = "weighted_factors"
SCORER_VERSION = "1.0"

CONTACT_WEIGHT = 20
PRACTICE_AREA_WEIGHT = 15
INTAKE_WEIGHT = 25
INCIDENT_WEIGHT = 20
COMMUNICATION_WEIGHT = 20
TOTAL_WEIGHT = CONTACT_WEIGHT + PRACTICE_AREA_WEIGHT + INTAKE_WEIGHT + INCIDENT_WEIGHT + COMMUNICATION_WEIGHT
FACTOR_COUNT = 5

ACCEPT_MIN_SCORE = 70
DECLINE_BELOW_SCORE = 30
ACCEPT_MAX_MISSING_FIELDS = 2

# Recording without transcript earns 75% of communication credit
RECORDING_ONLY_CREDIT = 15
CALLS_ONLY_CREDIT = 10

DISQUALIFIER_FLAGS = {
    "statute_of_limitations_expired": ("statuteOfLimitationsExpired", "statute_of_limitations_expired"),
    "no_injury": ("noInjury", "no_injury"),
    "pre_existing_attorney": ("hasAttorney", "hasExistingAttorney", "existingAttorney", "pre_existing_attorney"),
}

DISPOSITION_LEAD_STATUS = {
    Disposition.ACCEPT.value: LeadStatus.QUALIFIED.value,
    Disposition.DECLINE.value: LeadStatus.UNQUALIFIED.value,
    Disposition.REVIEW.value: LeadStatus.IN_PROGRESS.value,
}

EVIDENCE_QUOTE_CHARS = 160


# =============================================================================
# Pure scoring
# =============================================================================

@dataclass(frozen=True)
class CallEvidence:
    has_transcript: bool = False
    has_recording: bool = False
    transcript_excerpt: str | None = None


@dataclass(frozen=True)
class ScoringInput:
    contact_phone: str | None = None
    contact_email: str | None = None
    practice_area_id: str | None = None
    intake_status: str | None = None
    intake_answers: dict[str, Any] = field(default_factory=dict)
    incident_date: str | None = None
    incident_location: str | None = None
    calls: tuple[CallEvidence, ...] = ()


@dataclass(frozen=True)
class ScoreResult:
    score: int
    disposition: str
    confidence: int
    reasons: dict[str, Any]


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _present(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _truthy_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1", "y")
    return value is True


def extract_disqualifiers(answers: dict[str, Any]) -> list[str]:
    """Disqualifier tags from intake answers: an explicit list and/or boolean flags."""
    found: list[str] = []
    explicit = answers.get("disqualifiers")
    if isinstance(explicit, list):
        for tag in explicit:
            if isinstance(tag, str) and tag.strip() and tag.strip() not in found:
                found.append(tag.strip())
    for tag, keys in DISQUALIFIER_FLAGS.items():
        if tag not in found and any(_truthy_flag(answers.get(key)) for key in keys):
            found.append(tag)
    has_injury = answers.get("hasInjury", answers.get("injured"))
    if "no_injury" not in found and has_injury is not None and not _truthy_flag(has_injury):
        found.append("no_injury")
    return found


def resolve_disposition(score: int, missing_fields: list[str], disqualifiers: list[str]) -> str:
    if disqualifiers or score < DECLINE_BELOW_SCORE:
        return Disposition.DECLINE.value
    if score >= ACCEPT_MIN_SCORE and len(missing_fields) <= ACCEPT_MAX_MISSING_FIELDS:
        return Disposition.ACCEPT.value
    return Disposition.REVIEW.value


def score_lead(inputs: ScoringInput) -> ScoreResult:
    """
    Score a lead 0-100 from five weighted factors.

    Same inputs always give the same result; nothing here reads the clock.
    """
    factors: list[dict[str, Any]] = []
    missing: list[str] = []

    def add(name: str, earned: float, evidence: str, quote: str | None = None) -> None:
        factors.append({"name": name, "weight": earned, "evidence": evidence, "evidence_quote": quote})

    # Contact completeness
    has_phone = _present(inputs.contact_phone)
    has_email = _present(inputs.contact_email)
    if not has_phone:
        missing.append("contact_phone")
    if not has_email:
        missing.append("contact_email")
    if has_phone and has_email:
        add("contact_completeness", CONTACT_WEIGHT, "Phone and email on file")
    elif has_phone or has_email:
        add("contact_completeness", CONTACT_WEIGHT / 2, f"Only {'phone' if has_phone else 'email'} on file")
    else:
        add("contact_completeness", 0, "No contact details on file")

    # Practice area
    if _present(inputs.practice_area_id):
        add("practice_area", PRACTICE_AREA_WEIGHT, "Practice area assigned")
    else:
        missing.append("practice_area")
        add("practice_area", 0, "No practice area assigned")

    # Intake completion
    if inputs.intake_status == IntakeCompletion.COMPLETE.value:
        add("intake_completion", INTAKE_WEIGHT, "Intake questionnaire complete")
    elif inputs.intake_status == IntakeCompletion.PARTIAL.value:
        missing.append("intake")
        add("intake_completion", INTAKE_WEIGHT / 2, "Intake questionnaire partially complete")
    else:
        missing.append("intake")
        add("intake_completion", 0, "Intake not started")

    # Incident details (lead fields first, intake answers as fallback)
    answers = inputs.intake_answers or {}
    incident_date = inputs.incident_date if _present(inputs.incident_date) else answers.get("incidentDate")
    incident_location = (
        inputs.incident_location if _present(inputs.incident_location) else answers.get("incidentLocation")
    )
    has_date = _present(incident_date)
    has_location = _present(incident_location)
    if not has_date:
        missing.append("incident_date")
    if not has_location:
        missing.append("incident_location")
    if has_date and has_location:
        add("incident_details", INCIDENT_WEIGHT, f"Incident on {incident_date} at {incident_location}")
    elif has_date:
        add("incident_details", INCIDENT_WEIGHT / 2, f"Incident date {incident_date}; location unknown")
    elif has_location:
        add("incident_details", INCIDENT_WEIGHT / 2, f"Incident at {incident_location}; date unknown")
    else:
        add("incident_details", 0, "No incident details")

    # Communication history
    calls = inputs.calls
    transcript_call = next((call for call in calls if call.has_transcript), None)
    if not calls:
        missing.append("call_history")
        add("communication_history", 0, "No calls on record")
    elif transcript_call:
        quote = (transcript_call.transcript_excerpt or "")[:EVIDENCE_QUOTE_CHARS] or None
        add("communication_history", COMMUNICATION_WEIGHT, f"{len(calls)} call(s), transcript available", quote)
    elif any(call.has_recording for call in calls):
        add("communication_history", RECORDING_ONLY_CREDIT, f"{len(calls)} call(s), recording without transcript")
    else:
        add("communication_history", CALLS_ONLY_CREDIT, f"{len(calls)} call(s), no recording or transcript")

    earned = sum(factor["weight"] for factor in factors)
    score = round_half_up(100 * earned / TOTAL_WEIGHT)
    evaluated = sum(1 for factor in factors if factor["weight"] > 0)
    confidence = min(100, round_half_up(100 * evaluated / FACTOR_COUNT))
    disqualifiers = extract_disqualifiers(answers)
    disposition = resolve_disposition(score, missing, disqualifiers)

    explanations = [f"Scored {score}/100 with evidence for {evaluated} of {FACTOR_COUNT} factors."]
    if disqualifiers:
        explanations.append(f"Declined: disqualifiers present ({', '.join(disqualifiers)}).")
    elif disposition == Disposition.ACCEPT.value:
        explanations.append(f"Accepted: score at least {ACCEPT_MIN_SCORE} with {len(missing)} missing field(s).")
    elif disposition == Disposition.DECLINE.value:
        explanations.append(f"Declined: score below {DECLINE_BELOW_SCORE}.")
    else:
        explanations.append("Needs review: " + (", ".join(missing) + " missing." if missing else "score below threshold."))

    reasons = {
        "score_factors": factors,
        "missing_fields": missing,
        "disqualifiers": disqualifiers,
        "routing": {
            "practice_area_id": inputs.practice_area_id,
            "notes": None if _present(inputs.practice_area_id) else "Assign a practice area before routing",
        },
        "model": {"provider": SCORER_PROVIDER, "model": SCORER_MODEL, "version": SCORER_VERSION},
        "explanations": explanations,
    }
    return ScoreResult(score=score, disposition=disposition, confidence=confidence, reasons=reasons)


# =============================================================================
# Persistence
# =============================================================================

def _iso(value: date | None) -> str | None:
    return value.isoformat() if value else None


def build_scoring_input(db: Session, lead: Lead) -> ScoringInput:
    """Gather everything the scorer looks at for one lead, scoped to its org."""
    org_id = lead.organization_id
    contact = db.query(Contact).filter(
        Contact.id == lead.contact_id,
        Contact.organization_id == org_id,
    ).first()
    intake = db.query(Intake).filter(
        Intake.lead_id == lead.id,
        Intake.organization_id == org_id,
    ).first()
    calls = (
        db.query(Call)
        .filter(Call.lead_id == lead.id, Call.organization_id == org_id)
        .order_by(Call.started_at)
        .all()
    )
    return ScoringInput(
        contact_phone=contact.primary_phone if contact else None,
        contact_email=contact.primary_email if contact else None,
        practice_area_id=str(lead.practice_area_id) if lead.practice_area_id else None,
        intake_status=intake.completion_status if intake else None,
        intake_answers=dict(intake.answers or {}) if intake else {},
        incident_date=_iso(lead.incident_date),
        incident_location=lead.incident_location,
        calls=tuple(
            CallEvidence(
                has_transcript=bool(call.transcript_text),
                has_recording=bool(call.recording_url),
                transcript_excerpt=call.transcript_text,
            )
            for call in calls
        ),
    )


def get_lead(db: Session, org_id: UUID, lead_id: UUID) -> Lead | None:
    return db.query(Lead).filter(Lead.id == lead_id, Lead.organization_id == org_id).first()


def get_qualification(db: Session, org_id: UUID, lead_id: UUID) -> Qualification | None:
    return db.query(Qualification).filter(
        Qualification.lead_id == lead_id,
        Qualification.organization_id == org_id,
    ).first()


def _derive_lead_status(db: Session, lead: Lead, disposition: str) -> None:
    """Move the lead to the status implied by a changed disposition."""
    if lead.status == LeadStatus.CLOSED.value:
        return
    target = DISPOSITION_LEAD_STATUS[disposition]
    open_values = {status.value for status in OPEN_LEAD_STATUSES}
    if target in open_values and lead.status not in open_values:
        # Reopening must not collide with another open lead for the contact
        other_open = db.query(Lead.id).filter(
            Lead.organization_id == lead.organization_id,
            Lead.contact_id == lead.contact_id,
            Lead.id != lead.id,
            Lead.status.in_(open_values),
        ).first()
        if other_open:
            return
    lead.status = target


def run_qualification(db: Session, lead: Lead, actor_user_id: UUID | None = None) -> Qualification:
    """Score the lead, upsert its Qualification and refresh the lead cache in one commit."""
    result = score_lead(build_scoring_input(db, lead))
    previous_disposition = lead.disposition

    qualification = get_qualification(db, lead.organization_id, lead.id)
    if qualification is None:
        qualification = Qualification(
            organization_id=lead.organization_id,
            lead_id=lead.id,
            score=result.score,
            disposition=result.disposition,
            confidence=result.confidence,
            reasons=result.reasons,
        )
        try:
            with db.begin_nested():
                db.add(qualification)
        except IntegrityError:
            qualification = get_qualification(db, lead.organization_id, lead.id)
            if qualification is None:
                raise
    qualification.score = result.score
    qualification.disposition = result.disposition
    qualification.confidence = result.confidence
    qualification.reasons = result.reasons
    qualification.qualified_by_user_id = actor_user_id

    lead.score = result.score
    lead.disposition = result.disposition
    if previous_disposition != result.disposition:
        _derive_lead_status(db, lead, result.disposition)

    audit_service.log_event(
        db,
        org_id=lead.organization_id,
        event_type=AuditEventType.QUALIFICATION_RUN,
        actor_user_id=actor_user_id,
        target_type="lead",
        target_id=lead.id,
        details={"score": result.score, "disposition": result.disposition},
    )
    db.commit()
    db.refresh(qualification)
    logger.info("Qualified lead %s: %s (%s)", lead.id, result.disposition, result.score)
    return qualification


def override_qualification(
    db: Session,
    lead: Lead,
    qualification: Qualification,
    *,
    actor_user_id: UUID,
    actor_name: str,
    note: str,
    disposition: str | None = None,
    score: int | None = None,
) -> Qualification:
    """
    Apply a human override.

    The attributed note is appended to reasons.explanations; nothing already
    there is replaced. Lead status moves only if the disposition changed.
    """
    previous_disposition = qualification.disposition
    previous_score = qualification.score
    new_disposition = disposition or previous_disposition
    new_score = score if score is not None else previous_score

    changes = []
    if new_disposition != previous_disposition:
        changes.append(f"disposition {previous_disposition} → {new_disposition}")
    if new_score != previous_score:
        changes.append(f"score {previous_score} → {new_score}")
    summary = "; ".join(changes) if changes else "no field changes"
    entry = f"Override by {actor_name} at {now_utc().isoformat(timespec='seconds')}: {summary}. Note: {note}"

    reasons = copy.deepcopy(qualification.reasons or {})
    reasons["explanations"] = list(reasons.get("explanations") or []) + [entry]
    qualification.reasons = reasons
    qualification.disposition = new_disposition
    qualification.score = new_score
    qualification.qualified_by_user_id = actor_user_id

    lead.score = new_score
    lead.disposition = new_disposition
    if new_disposition != previous_disposition:
        _derive_lead_status(db, lead, new_disposition)

    audit_service.log_event(
        db,
        org_id=lead.organization_id,
        event_type=AuditEventType.QUALIFICATION_OVERRIDE,
        actor_user_id=actor_user_id,
        target_type="lead",
        target_id=lead.id,
        details={
            "previous_disposition": previous_disposition,
            "disposition": new_disposition,
            "previous_score": previous_score,
            "score": new_score,
        },
    )
    db.commit()
    db.refresh(qualification)
    return qualification


def qualification_payload(qualification: Qualification) -> dict[str, Any]:
    """Payload for the qualification.updated outbound event."""
    return {
        "leadId": str(qualification.lead_id),
        "score": qualification.score,
        "disposition": qualification.disposition,
        "confidence": qualification.confidence,
    }
