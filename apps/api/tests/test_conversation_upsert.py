"""Tests for tenant resolution and idempotent conversation upserts."""

import uuid

import pytest

from intake_crm.db.enums import Channel, InteractionStatus, LeadStatus
from intake_crm.db.models import Call, Contact, Interaction, Lead, Message, Organization
from intake_crm.services import conversation_service, tenant_service
from intake_crm.services.telephony.errors import IngestionFailed, TenantNotFound
from intake_crm.services.telephony.events import InboundCallEvent, InboundMessageEvent
from intake_crm.utils.normalization import candidate_numbers


def _call_event(call_id="CA100", from_e164="+15557654321", to="+15550001111", caller_name=None):
    return InboundCallEvent(
        provider="twilio",
        provider_call_id=call_id,
        from_e164=from_e164,
        to_e164=to,
        to_candidates=tuple(candidate_numbers(to)),
        caller_name=caller_name,
        raw={"CallSid": call_id},
    )


def _sms_event(message_id="SM100", from_e164="+15557654321", to="+15550001111", body="Hello"):
    return InboundMessageEvent(
        provider="twilio",
        provider_message_id=message_id,
        from_e164=from_e164,
        to_e164=to,
        to_candidates=tuple(candidate_numbers(to)),
        body=body,
        raw={"MessageSid": message_id},
    )


# =============================================================================
# Tenant resolution
# =============================================================================

class TestResolvePhoneNumber:
    def test_matches_in_candidate_order(self, db, phone_number_factory):
        phone_number = phone_number_factory("+15550001111")
        resolved = tenant_service.resolve_phone_number(db, candidate_numbers("5550001111"))
        assert resolved.id == phone_number.id

    def test_matches_variant_shape(self, db, phone_number_factory):
        # Stored without the country code prefix the canonical form would add
        phone_number = phone_number_factory("+5550002222")
        resolved = tenant_service.resolve_phone_number(db, candidate_numbers("5550002222"))
        assert resolved.id == phone_number.id

    def test_inbound_disabled_is_not_a_match(self, db, phone_number_factory):
        phone_number_factory("+15550003333", inbound_enabled=False)
        with pytest.raises(TenantNotFound):
            tenant_service.resolve_phone_number(db, ["+15550003333"])

    def test_no_candidates(self, db):
        with pytest.raises(TenantNotFound):
            tenant_service.resolve_phone_number(db, [])


# =============================================================================
# Calls
# =============================================================================

class TestUpsertInboundCall:
    def test_first_call_creates_contact_lead_interaction_and_call(self, db, test_phone_number):
        result = conversation_service.upsert_inbound_call(db, test_phone_number, _call_event(caller_name="Jane Roe"))

        assert result.is_duplicate is False
        assert result.is_new_lead is True
        assert result.contact.name == "Jane Roe"
        assert result.contact.primary_phone == "+15557654321"
        assert result.lead.status == LeadStatus.NEW.value
        assert result.lead.source == "phone"
        assert result.interaction.channel == Channel.CALL.value
        assert result.call.provider_call_id == "CA100"
        assert result.call.phone_number_id == test_phone_number.id
        assert result.call.organization_id == test_phone_number.organization_id

    def test_same_provider_call_id_is_idempotent(self, db, test_phone_number):
        first = conversation_service.upsert_inbound_call(db, test_phone_number, _call_event())
        second = conversation_service.upsert_inbound_call(db, test_phone_number, _call_event())

        assert second.is_duplicate is True
        assert second.call.id == first.call.id
        assert db.query(Call).filter(Call.provider_call_id == "CA100").count() == 1
        assert db.query(Interaction).filter(Interaction.lead_id == first.lead.id).count() == 1

    def test_second_call_reuses_open_lead(self, db, test_phone_number):
        first = conversation_service.upsert_inbound_call(db, test_phone_number, _call_event("CA1"))
        second = conversation_service.upsert_inbound_call(db, test_phone_number, _call_event("CA2"))

        assert second.is_new_lead is False
        assert second.lead.id == first.lead.id
        assert second.interaction.id != first.interaction.id
        assert db.query(Lead).filter(Lead.contact_id == first.contact.id).count() == 1

    def test_closed_lead_is_not_reused(self, db, test_phone_number):
        first = conversation_service.upsert_inbound_call(db, test_phone_number, _call_event("CA1"))
        first.lead.status = LeadStatus.CLOSED.value
        db.commit()

        second = conversation_service.upsert_inbound_call(db, test_phone_number, _call_event("CA2"))
        assert second.is_new_lead is True
        assert second.lead.id != first.lead.id
        assert second.contact.id == first.contact.id

    def test_placeholder_name_is_upgraded(self, db, test_phone_number):
        first = conversation_service.upsert_inbound_call(db, test_phone_number, _call_event("CA1"))
        placeholder = first.contact.name
        assert placeholder

        second = conversation_service.upsert_inbound_call(
            db, test_phone_number, _call_event("CA2", caller_name="Jane Roe")
        )
        assert second.contact.id == first.contact.id
        assert second.contact.name == "Jane Roe"

    def test_real_name_is_not_overwritten(self, db, test_phone_number):
        conversation_service.upsert_inbound_call(db, test_phone_number, _call_event("CA1", caller_name="Jane Roe"))
        second = conversation_service.upsert_inbound_call(
            db, test_phone_number, _call_event("CA2", caller_name="Someone Else")
        )
        assert second.contact.name == "Jane Roe"

    def test_contacts_are_scoped_per_org(self, db, test_phone_number, phone_number_factory):
        other_org = Organization(id=uuid.uuid4(), name="Other Firm", slug=f"other-{uuid.uuid4().hex[:8]}")
        db.add(other_org)
        db.flush()
        other_number = phone_number_factory("+15550009999", org=other_org)

        mine = conversation_service.upsert_inbound_call(db, test_phone_number, _call_event("CA1"))
        theirs = conversation_service.upsert_inbound_call(
            db, other_number, _call_event("CA2", to="+15550009999")
        )

        assert mine.contact.id != theirs.contact.id
        assert theirs.contact.organization_id == other_org.id
        assert theirs.lead.organization_id == other_org.id
        assert db.query(Contact).filter(Contact.primary_phone == "+15557654321").count() == 2


# =============================================================================
# SMS
# =============================================================================

class TestUpsertInboundMessage:
    def test_first_message(self, db, test_phone_number):
        result = conversation_service.upsert_inbound_message(db, test_phone_number, _sms_event())
        assert result.is_new_lead is True
        assert result.lead.source == "sms"
        assert result.message.body == "Hello"
        assert result.interaction.channel == Channel.SMS.value

    def test_messages_share_the_active_sms_interaction(self, db, test_phone_number):
        first = conversation_service.upsert_inbound_message(db, test_phone_number, _sms_event("SM1"))
        second = conversation_service.upsert_inbound_message(db, test_phone_number, _sms_event("SM2", body="Still there?"))

        assert second.interaction.id == first.interaction.id
        assert second.lead.id == first.lead.id
        assert db.query(Message).filter(Message.interaction_id == first.interaction.id).count() == 2

    def test_completed_sms_interaction_starts_a_new_one(self, db, test_phone_number):
        first = conversation_service.upsert_inbound_message(db, test_phone_number, _sms_event("SM1"))
        first.interaction.status = InteractionStatus.COMPLETED.value
        db.commit()

        second = conversation_service.upsert_inbound_message(db, test_phone_number, _sms_event("SM2"))
        assert second.interaction.id != first.interaction.id

    def test_duplicate_message(self, db, test_phone_number):
        first = conversation_service.upsert_inbound_message(db, test_phone_number, _sms_event("SM1"))
        second = conversation_service.upsert_inbound_message(db, test_phone_number, _sms_event("SM1"))
        assert second.is_duplicate is True
        assert second.message.id == first.message.id


# =============================================================================
# Tenant isolation of idempotency lookups
# =============================================================================

class TestProviderIdsAreScopedPerOrg:
    def test_repeat_call_id_on_another_orgs_number_never_returns_first_org(
        self, db, test_org, test_phone_number, other_org, phone_number_factory
    ):
        other_number = phone_number_factory("+15550009999", org=other_org)
        mine = conversation_service.upsert_inbound_call(db, test_phone_number, _call_event("CA1"))

        # Provider ids are globally unique, so the second org's insert is refused outright
        with pytest.raises(IngestionFailed):
            conversation_service.upsert_inbound_call(db, other_number, _call_event("CA1", to="+15550009999"))

        assert conversation_service.get_call_by_provider_id(db, other_org.id, "twilio", "CA1") is None
        assert conversation_service.get_call_by_provider_id(db, test_org.id, "twilio", "CA1").id == mine.call.id
        assert db.query(Lead).filter(Lead.organization_id == other_org.id).count() == 0

    def test_repeat_message_id_on_another_orgs_number(self, db, test_org, test_phone_number, other_org, phone_number_factory):
        other_number = phone_number_factory("+15550009999", org=other_org)
        mine = conversation_service.upsert_inbound_message(db, test_phone_number, _sms_event("SM1"))

        with pytest.raises(IngestionFailed):
            conversation_service.upsert_inbound_message(db, other_number, _sms_event("SM1", to="+15550009999"))

        assert conversation_service.get_message_by_provider_id(db, other_org.id, "twilio", "SM1") is None
        assert conversation_service.get_message_by_provider_id(db, test_org.id, "twilio", "SM1").id == mine.message.id

    def test_find_owning_org_ignores_inbound_flag(self, db, test_org, phone_number_factory):
        phone_number_factory("+15550003333", inbound_enabled=False)
        assert tenant_service.find_owning_org(db, candidate_numbers("5550003333")) == test_org.id
        assert tenant_service.find_owning_org(db, ["+15550004444"]) is None
        assert tenant_service.find_owning_org(db, ()) is None


def test_many_identical_deliveries_make_one_call_and_one_lead(db, test_phone_number):
    results = [
        conversation_service.upsert_inbound_call(db, test_phone_number, _call_event("CA777"))
        for _ in range(5)
    ]

    assert [r.is_duplicate for r in results] == [False, True, True, True, True]
    assert {r.call.id for r in results} == {results[0].call.id}
    assert {r.lead.id for r in results} == {results[0].lead.id}
    assert db.query(Call).filter(Call.provider_call_id == "CA777").count() == 1
    assert db.query(Lead).filter(Lead.organization_id == test_phone_number.organization_id).count() == 1
