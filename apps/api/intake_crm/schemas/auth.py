"""Authentication-related Pydantic schemas."""

from uuid import UUID

from pydantic import BaseModel

from intake_crm.db.enums import Role


class UserSession(BaseModel):
    """
    Full session context for authenticated requests.

    Returned by the get_current_session dependency; carries everything
    needed for tenant scoping and authorization.
    """
    user_id: UUID
    org_id: UUID
    role: Role
    email: str
    display_name: str
