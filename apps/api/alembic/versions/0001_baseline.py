"""Baseline migration - tenancy, intake pipeline, outbound webhooks, ops

Revision ID: 0001_baseline
Revises: 
Create Date: 2026-02-16

Creates every table used by the intake pipeline. PostgreSQL only.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables."""

    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')  # For gen_random_uuid()

    # ==========================================================================
    # Tenancy
    # ==========================================================================
    op.execute('''
        CREATE TABLE organizations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name VARCHAR(255) NOT NULL,
            slug VARCHAR(100) UNIQUE NOT NULL,
            timezone VARCHAR(50) NOT NULL DEFAULT 'America/New_York',
            on_call_user_id UUID,
            primary_phone_number_id UUID,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    op.execute('''
        CREATE TABLE users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            email VARCHAR(255) NOT NULL,
            display_name VARCHAR(255) NOT NULL,
            role VARCHAR(50) NOT NULL DEFAULT 'staff',
            is_active BOOLEAN NOT NULL DEFAULT true,
            token_version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_users_org_email UNIQUE (organization_id, email)
        )
    ''')
    op.execute('CREATE INDEX ix_users_organization_id ON users(organization_id)')

    op.execute('''
        CREATE TABLE phone_numbers (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            label VARCHAR(100),
            e164 VARCHAR(20) UNIQUE NOT NULL,
            provider VARCHAR(20) NOT NULL DEFAULT 'twilio',
            provider_sid VARCHAR(100),
            inbound_enabled BOOLEAN NOT NULL DEFAULT true,
            on_call_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX ix_phone_numbers_organization_id ON phone_numbers(organization_id)')

    op.execute('''
        CREATE TABLE device_tokens (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            token VARCHAR(255) NOT NULL,
            platform VARCHAR(20) NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            last_used_at TIMESTAMPTZ,
            CONSTRAINT uq_device_tokens_token UNIQUE (token)
        )
    ''')
    op.execute('CREATE INDEX ix_device_tokens_organization_id ON device_tokens(organization_id)')

    # ==========================================================================
    # Contacts, leads, intake
    # ==========================================================================
    op.execute('''
        CREATE TABLE contacts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            name VARCHAR(255) NOT NULL,
            primary_phone VARCHAR(20),
            primary_email VARCHAR(255),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_contacts_org_phone UNIQUE (organization_id, primary_phone)
        )
    ''')
    op.execute('CREATE INDEX ix_contacts_organization_id ON contacts(organization_id)')

    op.execute('''
        CREATE TABLE practice_areas (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            name VARCHAR(100) NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT true
        )
    ''')
    op.execute('CREATE INDEX ix_practice_areas_organization_id ON practice_areas(organization_id)')

    op.execute('''
        CREATE TABLE leads (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            source VARCHAR(20) NOT NULL,
            status VARCHAR(30) NOT NULL DEFAULT 'new',
            priority VARCHAR(10) NOT NULL DEFAULT 'medium',
            practice_area_id UUID REFERENCES practice_areas(id) ON DELETE SET NULL,
            incident_date DATE,
            incident_location VARCHAR(255),
            summary TEXT,
            score INTEGER,
            disposition VARCHAR(20),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX ix_leads_org_contact_created ON leads(organization_id, contact_id, created_at)')
    # At most one open lead per contact
    op.execute('''
        CREATE UNIQUE INDEX uq_leads_open_per_contact ON leads(organization_id, contact_id)
        WHERE status IN ('new', 'in_progress', 'engaged', 'intake_started')
    ''')

    op.execute('''
        CREATE TABLE intakes (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            lead_id UUID UNIQUE NOT NULL REFERENCES leads(id) ON DELETE CASCADE,
            completion_status VARCHAR(20) NOT NULL DEFAULT 'not_started',
            answers JSON,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    # ==========================================================================
    # Interactions, calls, messages
    # ==========================================================================
    op.execute('''
        CREATE TABLE interactions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            lead_id UUID NOT NULL REFERENCES leads(id) ON DELETE CASCADE,
            channel VARCHAR(10) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'active',
            started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            ended_at TIMESTAMPTZ,
            metadata JSON
        )
    ''')
    op.execute('CREATE INDEX ix_interactions_lead_channel_status ON interactions(lead_id, channel, status)')

    op.execute('''
        CREATE TABLE calls (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            interaction_id UUID UNIQUE NOT NULL REFERENCES interactions(id) ON DELETE CASCADE,
            lead_id UUID NOT NULL REFERENCES leads(id) ON DELETE CASCADE,
            phone_number_id UUID REFERENCES phone_numbers(id) ON DELETE SET NULL,
            provider VARCHAR(20) NOT NULL,
            provider_call_id VARCHAR(255) NOT NULL,
            secondary_call_id VARCHAR(255),
            direction VARCHAR(10) NOT NULL DEFAULT 'inbound',
            status VARCHAR(20) NOT NULL DEFAULT 'ringing',
            from_e164 VARCHAR(20) NOT NULL,
            to_e164 VARCHAR(20) NOT NULL,
            started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            ended_at TIMESTAMPTZ,
            duration_seconds INTEGER,
            recording_url TEXT,
            transcript_text TEXT,
            transcript_json JSON,
            ai_summary TEXT,
            end_reason VARCHAR(100),
            outcome VARCHAR(20),
            last_webhook_received_at TIMESTAMPTZ,
            CONSTRAINT uq_calls_provider_call_id UNIQUE (provider, provider_call_id)
        )
    ''')
    op.execute('CREATE INDEX ix_calls_provider_secondary ON calls(provider, secondary_call_id)')
    op.execute('CREATE INDEX ix_calls_org_started ON calls(organization_id, started_at)')

    op.execute('''
        CREATE TABLE messages (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            interaction_id UUID NOT NULL REFERENCES interactions(id) ON DELETE CASCADE,
            lead_id UUID NOT NULL REFERENCES leads(id) ON DELETE CASCADE,
            provider VARCHAR(20) NOT NULL,
            provider_message_id VARCHAR(255) NOT NULL,
            direction VARCHAR(10) NOT NULL DEFAULT 'inbound',
            from_e164 VARCHAR(20) NOT NULL,
            to_e164 VARCHAR(20) NOT NULL,
            body TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_messages_provider_message_id UNIQUE (provider, provider_message_id)
        )
    ''')

    # ==========================================================================
    # Qualification
    # ==========================================================================
    op.execute('''
        CREATE TABLE qualifications (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            lead_id UUID UNIQUE NOT NULL REFERENCES leads(id) ON DELETE CASCADE,
            score INTEGER NOT NULL,
            disposition VARCHAR(20) NOT NULL DEFAULT 'review',
            confidence INTEGER NOT NULL,
            reasons JSON NOT NULL,
            qualified_by_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    # ==========================================================================
    # Outbound webhooks
    # ==========================================================================
    op.execute('''
        CREATE TABLE outgoing_webhook_endpoints (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            url TEXT NOT NULL,
            secret_encrypted TEXT NOT NULL,
            events JSON,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute(
        'CREATE INDEX ix_outgoing_webhook_endpoints_organization_id '
        'ON outgoing_webhook_endpoints(organization_id)'
    )

    op.execute('''
        CREATE TABLE outgoing_webhook_deliveries (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            endpoint_id UUID NOT NULL REFERENCES outgoing_webhook_endpoints(id) ON DELETE CASCADE,
            event_type VARCHAR(50) NOT NULL,
            payload JSON NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            attempt_count INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            last_attempt_at TIMESTAMPTZ,
            next_attempt_at TIMESTAMPTZ,
            response_code INTEGER,
            response_body TEXT,
            last_error TEXT,
            delivered_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_webhook_deliveries_attempts CHECK (attempt_count <= max_attempts)
        )
    ''')
    op.execute(
        'CREATE INDEX ix_webhook_deliveries_endpoint_created '
        'ON outgoing_webhook_deliveries(endpoint_id, created_at)'
    )
    op.execute('CREATE INDEX ix_webhook_deliveries_status ON outgoing_webhook_deliveries(status)')

    # ==========================================================================
    # Ops
    # ==========================================================================
    op.execute('''
        CREATE TABLE audit_logs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            actor_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            event_type VARCHAR(50) NOT NULL,
            target_type VARCHAR(50),
            target_id UUID,
            details JSON,
            ip_address VARCHAR(45),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_audit_org_created ON audit_logs(organization_id, created_at)')
    op.execute(
        'CREATE INDEX idx_audit_org_event_created ON audit_logs(organization_id, event_type, created_at)'
    )

    op.execute('''
        CREATE TABLE ingestion_outcomes (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID REFERENCES organizations(id) ON DELETE CASCADE,
            provider VARCHAR(20) NOT NULL,
            event_type VARCHAR(50) NOT NULL,
            external_id VARCHAR(255),
            status VARCHAR(20) NOT NULL,
            error_code VARCHAR(50),
            error_message TEXT,
            payload JSON,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute(
        'CREATE INDEX ix_ingestion_outcomes_org_created ON ingestion_outcomes(organization_id, created_at)'
    )
    op.execute(
        'CREATE INDEX ix_ingestion_outcomes_provider_external ON ingestion_outcomes(provider, external_id)'
    )

    op.execute('''
        CREATE TABLE system_alerts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            dedupe_key VARCHAR(64) NOT NULL,
            alert_type VARCHAR(50) NOT NULL,
            severity VARCHAR(20) NOT NULL DEFAULT 'error',
            status VARCHAR(20) NOT NULL DEFAULT 'open',
            first_seen_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            last_seen_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            occurrence_count INTEGER NOT NULL DEFAULT 1,
            title VARCHAR(255) NOT NULL,
            message TEXT,
            details JSON,
            resolved_at TIMESTAMPTZ,
            resolved_by_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            CONSTRAINT uq_system_alerts_dedupe UNIQUE (organization_id, dedupe_key)
        )
    ''')
    op.execute('CREATE INDEX ix_system_alerts_org_status ON system_alerts(organization_id, status, severity)')


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    for table in (
        'system_alerts',
        'ingestion_outcomes',
        'audit_logs',
        'outgoing_webhook_deliveries',
        'outgoing_webhook_endpoints',
        'qualifications',
        'messages',
        'calls',
        'interactions',
        'intakes',
        'leads',
        'practice_areas',
        'contacts',
        'device_tokens',
        'phone_numbers',
        'users',
        'organizations',
    ):
        op.execute(f'DROP TABLE IF EXISTS {table} CASCADE')
