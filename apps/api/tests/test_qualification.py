"""Tests for the lead qualification scorer, its persistence, and the API."""

import asyncio
import uuid
from datetime import date
from unittest.mock import MagicMock

import pytest

from intake_crm.db.enums import Disposition, IntakeCompletion, LeadStatus, Role, WebhookEventType
from intake_crm.db.models import AuditLog, Contact, Intake, Lead, OutgoingWebhookDelivery, PracticeArea, Qualification
from intake_crm.services import outbound_webhook_service, qualification_service, webhook_endpoint_service
from intake_crm.services.outbound_webhook_service import DeliveryScheduler
from intake_crm.services.qualification_service import (
    CallEvidence,
    ScoringInput,
    extract_disqualifiers,
    resolve_disposition,
    score_lead,
)


FULL_INPUT = ScoringInput(
    contact_phone="+15557654321",
    contact_email="jane@example.com",
    practice_area_id="pa-1",
    intake_status=IntakeCompletion.COMPLETE.value,
    incident_date="2024-03-01",
    incident_location="Main St",
    calls=(CallEvidence(has_transcript=True, has_recording=True, transcript_excerpt="I was hurt."),),
)


# =============================================================================
# Pure scoring
# =============================================================================

class TestScoreLead:
    def test_complete_lead_scores_full_marks(self):
        result = score_lead(FULL_INPUT)
        assert result.score == 100
        assert result.confidence == 100
        assert result.disposition == Disposition.ACCEPT.value
        assert result.reasons["missing_fields"] == []
        assert result.reasons["model"] == {"provider": "rules", "model": "weighted_factors", "version": "1.0"}

    def test_empty_lead_is_declined(self):
        result = score_lead(ScoringInput())
        assert result.score == 0
        assert result.confidence == 0
        assert result.disposition == Disposition.DECLINE.value
        assert "practice_area" in result.reasons["missing_fields"]
        assert result.reasons["routing"]["notes"] == "Assign a practice area before routing"

    def test_deterministic(self):
        assert score_lead(FULL_INPUT) == score_lead(FULL_INPUT)

    def test_partial_credit(self):
        result = score_lead(
            ScoringInput(
                contact_phone="+15557654321",
                intake_status=IntakeCompletion.PARTIAL.value,
                incident_date="2024-03-01",
                calls=(CallEvidence(has_recording=True),),
            )
        )
        # 10 + 0 + 12.5 + 10 + 15 = 47.5 of 100
        assert result.score == 48
        assert result.confidence == 80
        assert result.disposition == Disposition.REVIEW.value

    def test_calls_without_media(self):
        result = score_lead(ScoringInput(calls=(CallEvidence(),)))
        factor = next(f for f in result.reasons["score_factors"] if f["name"] == "communication_history")
        assert factor["weight"] == 10

    def test_incident_details_fall_back_to_intake_answers(self):
        result = score_lead(
            ScoringInput(intake_answers={"incidentDate": "2024-01-01", "incidentLocation": "I-95"})
        )
        factor = next(f for f in result.reasons["score_factors"] if f["name"] == "incident_details")
        assert factor["weight"] == 20

    def test_evidence_quote_comes_from_transcript(self):
        result = score_lead(FULL_INPUT)
        factor = next(f for f in result.reasons["score_factors"] if f["name"] == "communication_history")
        assert factor["evidence_quote"] == "I was hurt."

    def test_disqualifier_forces_decline(self):
        inputs = ScoringInput(**{**FULL_INPUT.__dict__, "intake_answers": {"hasAttorney": True}})
        result = score_lead(inputs)
        assert result.score == 100
        assert result.disposition == Disposition.DECLINE.value
        assert result.reasons["disqualifiers"] == ["pre_existing_attorney"]


class TestResolveDisposition:
    def test_boundaries(self):
        assert resolve_disposition(70, [], []) == Disposition.ACCEPT.value
        assert resolve_disposition(69, [], []) == Disposition.REVIEW.value
        assert resolve_disposition(30, [], []) == Disposition.REVIEW.value
        assert resolve_disposition(29, [], []) == Disposition.DECLINE.value

    def test_too_many_missing_fields_needs_review(self):
        assert resolve_disposition(90, ["a", "b"], []) == Disposition.ACCEPT.value
        assert resolve_disposition(90, ["a", "b", "c"], []) == Disposition.REVIEW.value

    def test_disqualifiers_win(self):
        assert resolve_disposition(100, [], ["no_injury"]) == Disposition.DECLINE.value


def test_extract_disqualifiers():
    assert extract_disqualifiers({}) == []
    assert extract_disqualifiers({"disqualifiers": ["conflict_of_interest"], "noInjury": "yes"}) == [
        "conflict_of_interest",
        "no_injury",
    ]
    assert extract_disqualifiers({"hasInjury": False}) == ["no_injury"]
    assert extract_disqualifiers({"statuteOfLimitationsExpired": "true"}) == ["statute_of_limitations_expired"]


# =============================================================================
# Persistence
# =============================================================================

@pytest.fixture
def lead(db, test_org):
    contact = Contact(
        organization_id=test_org.id,
        name="Jane Roe",
        primary_phone="+15557654321",
        primary_email="jane@example.com",
    )
    db.add(contact)
    db.flush()
    lead = Lead(organization_id=test_org.id, contact_id=contact.id, source="phone", status=LeadStatus.NEW.value)
    db.add(lead)
    db.flush()
    return lead


@pytest.fixture
def complete_lead(db, test_org, lead):
    area = PracticeArea(organization_id=test_org.id, name="Personal Injury")
    db.add(area)
    db.flush()
    lead.practice_area_id = area.id
    lead.incident_date = date(2024, 3, 1)
    lead.incident_location = "Main St"
    db.add(Intake(
        organization_id=test_org.id,
        lead_id=lead.id,
        completion_status=IntakeCompletion.COMPLETE.value,
        answers={},
    ))
    db.flush()
    return lead


class TestRunQualification:
    def test_creates_qualification_and_mirrors_lead(self, db, lead, test_user):
        qualification = qualification_service.run_qualification(db, lead, actor_user_id=test_user.id)

        db.refresh(lead)
        assert qualification.lead_id == lead.id
        assert lead.score == qualification.score
        assert lead.disposition == qualification.disposition
        assert qualification.qualified_by_user_id == test_user.id
        assert db.query(AuditLog).filter(AuditLog.event_type == "qualification_run").count() == 1

    def test_rerun_updates_in_place(self, db, lead):
        first = qualification_service.run_qualification(db, lead)
        second = qualification_service.run_qualification(db, lead)
        assert first.id == second.id
        assert db.query(Qualification).filter(Qualification.lead_id == lead.id).count() == 1

    def test_accept_moves_lead_to_qualified(self, db, complete_lead):
        qualification = qualification_service.run_qualification(db, complete_lead)
        db.refresh(complete_lead)
        assert qualification.disposition == Disposition.ACCEPT.value
        # Contact, practice area, intake and incident: 80 points
        assert qualification.score == 80
        assert complete_lead.status == LeadStatus.QUALIFIED.value

    def test_override_appends_attributed_note(self, db, lead, test_user):
        qualification = qualification_service.run_qualification(db, lead)
        before = list(qualification.reasons["explanations"])

        updated = qualification_service.override_qualification(
            db,
            lead,
            qualification,
            actor_user_id=test_user.id,
            actor_name="Admin User",
            note="Strong liability facts.",
            disposition=Disposition.ACCEPT.value,
            score=85,
        )
        explanations = updated.reasons["explanations"]
        assert explanations[:-1] == before
        assert explanations[-1].startswith("Override by Admin User at ")
        assert "Strong liability facts." in explanations[-1]
        assert updated.score == 85
        db.refresh(lead)
        assert lead.disposition == Disposition.ACCEPT.value
        assert lead.status == LeadStatus.QUALIFIED.value


# =============================================================================
# API
# =============================================================================

async def test_get_before_run_is_404(authed_client, lead):
    res = await authed_client.get(f"/v1/leads/{lead.id}/qualification")
    assert res.status_code == 404
    assert res.json()["detail"] == "Lead has not been qualified yet"


async def test_unknown_lead_is_404(authed_client):
    res = await authed_client.post(f"/v1/leads/{uuid.uuid4()}/qualification/run")
    assert res.status_code == 404


async def test_run_then_get(authed_client, lead, delivery_scheduler):
    res = await authed_client.post(f"/v1/leads/{lead.id}/qualification/run")
    assert res.status_code == 200, res.text
    data = res.json()
    assert data["lead_id"] == str(lead.id)
    assert 0 <= data["score"] <= 100

    res = await authed_client.get(f"/v1/leads/{lead.id}/qualification")
    assert res.status_code == 200
    assert res.json()["score"] == data["score"]


async def test_run_delivers_qualification_webhook_from_sync_handler(authed_client, db, test_org, lead, monkeypatch):
    webhook_endpoint_service.create_endpoint(
        db, test_org.id, "https://hooks.example.com/crm", [WebhookEventType.QUALIFICATION_UPDATED.value]
    )
    attempted = []
    done = asyncio.Event()

    async def fake_attempt(session, delivery_id, *, transport=None):
        attempted.append(delivery_id)
        done.set()

    # The handler runs in a worker thread; the task must still land on this loop
    scheduler = DeliveryScheduler(session_factory=MagicMock)
    scheduler.bind_loop(asyncio.get_running_loop())
    monkeypatch.setattr(outbound_webhook_service, "scheduler", scheduler)
    monkeypatch.setattr(outbound_webhook_service, "attempt_delivery", fake_attempt)

    res = await authed_client.post(f"/v1/leads/{lead.id}/qualification/run")
    assert res.status_code == 200, res.text

    await asyncio.wait_for(done.wait(), timeout=2)
    [delivery] = db.query(OutgoingWebhookDelivery).filter(
        OutgoingWebhookDelivery.event_type == WebhookEventType.QUALIFICATION_UPDATED.value
    ).all()
    assert attempted == [delivery.id]
    await scheduler.shutdown()


async def test_run_requires_csrf(client, test_auth, lead):
    client.cookies.set(test_auth.cookie_name, test_auth.token)
    res = await client.post(f"/v1/leads/{lead.id}/qualification/run")
    assert res.status_code == 403


async def test_override_requires_attorney_or_admin(client, db, user_factory, auth_factory, test_org, lead):
    qualification_service.run_qualification(db, lead)
    staff = user_factory(Role.STAFF)
    auth = auth_factory(staff, test_org)
    client.cookies.set(auth.cookie_name, auth.token)

    res = await client.patch(
        f"/v1/leads/{lead.id}/qualification",
        json={"disposition": "accept", "note": "Looks good"},
        headers={"X-Requested-With": "XMLHttpRequest"},
    )
    assert res.status_code == 403


async def test_override_by_attorney(client, db, user_factory, auth_factory, test_org, lead):
    qualification_service.run_qualification(db, lead)
    attorney = user_factory(Role.ATTORNEY, display_name="Alex Attorney")
    auth = auth_factory(attorney, test_org)
    client.cookies.set(auth.cookie_name, auth.token)

    res = await client.patch(
        f"/v1/leads/{lead.id}/qualification",
        json={"disposition": "decline", "score": 20, "note": "Outside our jurisdiction"},
        headers={"X-Requested-With": "XMLHttpRequest"},
    )
    assert res.status_code == 200, res.text
    data = res.json()
    assert data["disposition"] == "decline"
    assert data["score"] == 20
    assert data["qualified_by_user_id"] == str(attorney.id)
    assert data["reasons"]["explanations"][-1].startswith("Override by Alex Attorney")


async def test_override_validates_body(authed_client, db, lead):
    qualification_service.run_qualification(db, lead)
    res = await authed_client.patch(
        f"/v1/leads/{lead.id}/qualification",
        json={"score": 101, "note": "x"},
    )
    assert res.status_code == 422

    res = await authed_client.patch(f"/v1/leads/{lead.id}/qualification", json={"note": ""})
    assert res.status_code == 422


async def test_override_before_run_is_404(authed_client, lead):
    res = await authed_client.patch(f"/v1/leads/{lead.id}/qualification", json={"note": "n/a"})
    assert res.status_code == 404
    assert res.json()["detail"] == "Run qualification before overriding it"
