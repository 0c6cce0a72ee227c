"""CLI tools for intake CRM administration."""

import asyncio

import click

from intake_crm.db.enums import Role, TelephonyProvider
from intake_crm.db.models import Organization, PhoneNumber, User
from intake_crm.db.session import SessionLocal
from intake_crm.utils.normalization import normalize_e164


@click.group()
def cli():
    """Intake CRM CLI tools."""
    pass


def _get_org(db, slug: str) -> Organization | None:
    org = db.query(Organization).filter(Organization.slug == slug.lower().strip()).first()
    if not org:
        click.echo(f"❌ Organization not found: {slug}")
    return org


@cli.command()
@click.option("--name", required=True, help="Firm name")
@click.option("--slug", required=True, help="URL-friendly slug (lowercase, no spaces)")
@click.option("--timezone", default="America/New_York", show_default=True, help="IANA timezone")
def create_org(name: str, slug: str, timezone: str):
    """
    Create an organization (tenant).

    Example:
        python -m intake_crm.cli create-org --name "Acme Injury Law" --slug "acme"
    """
    db = SessionLocal()
    try:
        slug = slug.lower().strip()
        if not slug.replace("-", "").replace("_", "").isalnum():
            click.echo("❌ Slug must be alphanumeric (with optional hyphens/underscores)")
            return

        existing = db.query(Organization).filter(Organization.slug == slug).first()
        if existing:
            click.echo(f"❌ Organization with slug '{slug}' already exists")
            return

        org = Organization(name=name, slug=slug, timezone=timezone)
        db.add(org)
        db.commit()

        click.echo(f"✓ Created organization: {name}")
        click.echo(f"  ID: {org.id}")
        click.echo(f"  Slug: {slug}")

    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--org-slug", required=True, help="Organization slug")
@click.option("--email", required=True, help="User email")
@click.option("--name", required=True, help="Display name")
@click.option(
    "--role",
    type=click.Choice([r.value for r in Role]),
    default=Role.ADMIN.value,
    show_default=True,
)
def create_user(org_slug: str, email: str, name: str, role: str):
    """
    Create a user in an organization.

    Example:
        python -m intake_crm.cli create-user --org-slug acme --email "jane@acme.law" --name "Jane Doe" --role attorney
    """
    db = SessionLocal()
    try:
        org = _get_org(db, org_slug)
        if not org:
            return

        email = email.lower().strip()
        existing = db.query(User).filter(
            User.organization_id == org.id,
            User.email == email,
        ).first()
        if existing:
            click.echo(f"❌ User already exists: {email}")
            return

        user = User(organization_id=org.id, email=email, display_name=name, role=role)
        db.add(user)
        db.commit()

        click.echo(f"✓ Created {role}: {email}")
        click.echo(f"  ID: {user.id}")

    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--org-slug", required=True, help="Organization slug")
@click.option("--e164", required=True, help="Phone number, e.g. +15551234567")
@click.option(
    "--provider",
    type=click.Choice([p.value for p in TelephonyProvider]),
    default=TelephonyProvider.TWILIO.value,
    show_default=True,
)
@click.option("--label", default=None, help="Display label, e.g. 'Main line'")
def add_phone_number(org_slug: str, e164: str, provider: str, label: str | None):
    """
    Provision an inbound number for an organization.

    Example:
        python -m intake_crm.cli add-phone-number --org-slug acme --e164 "+15551234567" --label "Main line"
    """
    db = SessionLocal()
    try:
        org = _get_org(db, org_slug)
        if not org:
            return

        try:
            normalized = normalize_e164(e164)
        except ValueError as e:
            click.echo(f"❌ {e}")
            return

        existing = db.query(PhoneNumber).filter(PhoneNumber.e164 == normalized).first()
        if existing:
            click.echo(f"❌ {normalized} is already provisioned")
            return

        number = PhoneNumber(
            organization_id=org.id,
            e164=normalized,
            provider=provider,
            label=label,
        )
        db.add(number)
        db.flush()
        if org.primary_phone_number_id is None:
            org.primary_phone_number_id = number.id
        db.commit()

        click.echo(f"✓ Added {normalized} ({provider}) to {org.slug}")
        click.echo(f"  ID: {number.id}")

    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--email", required=True, help="User email to revoke sessions for")
def revoke_sessions(email: str):
    """
    Revoke all sessions for a user by bumping their token_version.

    Example:
        python -m intake_crm.cli revoke-sessions --email "user@example.com"
    """
    db = SessionLocal()
    try:
        users = db.query(User).filter(User.email == email.lower().strip()).all()
        if not users:
            click.echo(f"❌ User not found: {email}")
            return

        for user in users:
            user.token_version += 1
        db.commit()

        click.echo(f"✓ Revoked all sessions for {email} ({len(users)} account(s))")

    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
def deliver_pending():
    """
    Drive every pending outbound webhook delivery to delivered or failed.

    Honors the retry backoff between attempts.

    Example:
        python -m intake_crm.cli deliver-pending
    """
    from intake_crm.services import outbound_webhook_service

    db = SessionLocal()
    try:
        summary = asyncio.run(outbound_webhook_service.deliver_pending(db))
        click.echo(f"✓ Delivered: {summary['delivered']}  Failed: {summary['failed']}")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


if __name__ == "__main__":
    cli()
