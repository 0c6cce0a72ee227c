"""Resolve an inbound event's dialed number to its owning organization."""

from typing import Sequence

from sqlalchemy.orm import Session

from intake_crm.db.models import PhoneNumber
from intake_crm.services.telephony.errors import TenantNotFound


def resolve_phone_number(db: Session, candidates: Sequence[str]) -> PhoneNumber:
    """
    First inbound-enabled PhoneNumber matching the candidates, in candidate order.

    The returned record's organization_id is the tenant boundary for every
    write that follows.

    Raises:
        TenantNotFound: No candidate matches an inbound-enabled number
    """
    if not candidates:
        raise TenantNotFound([])

    matches = (
        db.query(PhoneNumber)
        .filter(
            PhoneNumber.e164.in_(list(candidates)),
            PhoneNumber.inbound_enabled.is_(True),
        )
        .all()
    )
    by_e164 = {number.e164: number for number in matches}
    for candidate in candidates:
        if candidate in by_e164:
            return by_e164[candidate]
    raise TenantNotFound(list(candidates))


def get_phone_number(db: Session, org_id, phone_number_id) -> PhoneNumber | None:
    return db.query(PhoneNumber).filter(
        PhoneNumber.id == phone_number_id,
        PhoneNumber.organization_id == org_id,
    ).first()


def find_owning_org(db: Session, candidates: Sequence[str]):
    """
    Organization owning the first candidate number, inbound-enabled or not.

    Status and recording callbacks use this to scope the call lookup; a
    number that stopped taking new calls still owns the calls it took.
    """
    if not candidates:
        return None
    matches = db.query(PhoneNumber).filter(PhoneNumber.e164.in_(list(candidates))).all()
    by_e164 = {number.e164: number.organization_id for number in matches}
    for candidate in candidates:
        if candidate in by_e164:
            return by_e164[candidate]
    return None
